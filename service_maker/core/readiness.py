"""Reachability probes used to decide when an instance has finished booting."""

from __future__ import annotations

import asyncio
import logging
import time

import requests

from service_maker.core.errors import WaitTimeoutError
from service_maker.core.interfaces import ComputeProvider
from service_maker.shared import config

logger = logging.getLogger(__name__)


async def _public_address(compute: ComputeProvider, provider_id: str) -> str | None:
    resp = await compute.describe_instances(InstanceIds=[provider_id])
    for reservation in resp.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            if instance.get("PublicIpAddress"):
                return instance["PublicIpAddress"]
    return None


class SshReachabilityProbe:
    """Waits until the instance accepts TCP connections on the SSH port."""

    def __init__(
        self,
        compute: ComputeProvider,
        port: int = config.SSH_PORT,
        timeout: float = 600,
        interval: float = 10,
        connect_timeout: float = 5,
    ):
        self._compute = compute
        self._port = port
        self._timeout = timeout
        self._interval = interval
        self._connect_timeout = connect_timeout

    async def wait_until_reachable(self, provider_id: str) -> None:
        deadline = time.monotonic() + self._timeout
        while time.monotonic() < deadline:
            address = await _public_address(self._compute, provider_id)
            if address and await self._connects(address):
                logger.info("Instance %s reachable at %s:%d", provider_id, address, self._port)
                return
            await asyncio.sleep(self._interval)
        raise WaitTimeoutError(
            f"Instance {provider_id} not reachable on port {self._port}: timed out after {self._timeout}s"
        )

    async def _connects(self, address: str) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(address, self._port), timeout=self._connect_timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        await writer.wait_closed()
        return True


class HttpHealthProbe:
    """Polls an HTTP health endpoint on the instance until it answers 200."""

    def __init__(
        self,
        compute: ComputeProvider,
        port: int = 80,
        path: str = "/health",
        timeout: float = 600,
        interval: float = 10,
    ):
        self._compute = compute
        self._port = port
        self._path = path
        self._timeout = timeout
        self._interval = interval

    async def wait_until_reachable(self, provider_id: str) -> None:
        deadline = time.monotonic() + self._timeout
        while time.monotonic() < deadline:
            address = await _public_address(self._compute, provider_id)
            if address and await asyncio.to_thread(self._healthy, address):
                return
            await asyncio.sleep(self._interval)
        raise WaitTimeoutError(f"Health check for {provider_id} timed out after {self._timeout}s")

    def _healthy(self, address: str) -> bool:
        url = f"http://{address}:{self._port}{self._path}"
        try:
            resp = requests.get(url, timeout=5)
        except requests.RequestException:
            return False
        if resp.status_code != 200:
            logger.debug("Health check got %s from %s", resp.status_code, url)
        return resp.status_code == 200
