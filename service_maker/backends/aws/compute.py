"""EC2 compute backend: thin async passthrough to the EC2 API."""

from __future__ import annotations

import logging
from typing import Any

import aioboto3
from botocore.exceptions import WaiterError

from service_maker.core.errors import WaitTimeoutError

logger = logging.getLogger(__name__)


class EC2ComputeBackend:
    """Implements the ComputeProvider protocol with aioboto3.

    A client is opened per call; aioboto3 clients are async context managers
    and are cheap to create from a shared session.
    """

    def __init__(
        self,
        region_name: str,
        endpoint_url: str | None = None,
        wait_delay: int = 15,
        wait_max_attempts: int = 40,
    ):
        self._session = aioboto3.Session(region_name=region_name)
        self._client_kwargs = {"region_name": region_name}
        if endpoint_url:
            self._client_kwargs["endpoint_url"] = endpoint_url
        self._wait_delay = wait_delay
        self._wait_max_attempts = wait_max_attempts

    def _client(self):
        return self._session.client("ec2", **self._client_kwargs)

    async def _call(self, operation: str, **params: Any) -> dict:
        async with self._client() as ec2:
            return await getattr(ec2, operation)(**params)

    async def run_instances(self, **params: Any) -> dict:
        return await self._call("run_instances", **params)

    async def describe_instances(self, **params: Any) -> dict:
        return await self._call("describe_instances", **params)

    async def terminate_instances(self, **params: Any) -> dict:
        return await self._call("terminate_instances", **params)

    async def start_instances(self, **params: Any) -> dict:
        return await self._call("start_instances", **params)

    async def stop_instances(self, **params: Any) -> dict:
        return await self._call("stop_instances", **params)

    async def create_security_group(self, **params: Any) -> dict:
        return await self._call("create_security_group", **params)

    async def describe_security_groups(self, **params: Any) -> dict:
        return await self._call("describe_security_groups", **params)

    async def authorize_security_group_ingress(self, **params: Any) -> dict:
        return await self._call("authorize_security_group_ingress", **params)

    async def create_tags(self, **params: Any) -> dict:
        return await self._call("create_tags", **params)

    async def delete_tags(self, **params: Any) -> dict:
        return await self._call("delete_tags", **params)

    async def wait_for(self, waiter_name: str, **params: Any) -> dict:
        """Wait on a boto waiter, then return the matching descriptors.

        Only running out of attempts is reported as a timeout; a waiter that
        hits a failure state raises WaiterError unchanged.
        """
        async with self._client() as ec2:
            waiter = ec2.get_waiter(waiter_name)
            try:
                await waiter.wait(
                    WaiterConfig={"Delay": self._wait_delay, "MaxAttempts": self._wait_max_attempts},
                    **params,
                )
            except WaiterError as exc:
                if "Max attempts exceeded" not in str(exc):
                    raise
                limit = self._wait_delay * self._wait_max_attempts
                logger.warning("Waiter %s gave up after %ds", waiter_name, limit)
                raise WaitTimeoutError(
                    f"Waiting for {waiter_name} timed out after {limit}s"
                ) from exc
            return await ec2.describe_instances(**params)
