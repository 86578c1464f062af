"""Lifecycle Adapter: provider-side instance lifecycle plus readiness polling.

Cloud-agnostic: depends on the InstanceStore, a ComputeProvider and a
ReachabilityProbe. Store records are advanced only through revision-checked
updates; background polling never overwrites a record that somebody else
advanced while the probe was running.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from botocore.exceptions import ClientError

from service_maker.core.errors import ConcurrencyError, InstanceNotFound, ProviderInstanceNotFound
from service_maker.core.instances import InstanceStore
from service_maker.core.interfaces import ComputeProvider, ReachabilityProbe
from service_maker.core.models import Instance, InstanceSpec, InstanceState, SecurityOptions
from service_maker.shared import config

logger = logging.getLogger(__name__)

SSH_INGRESS_RULE = {
    "IpProtocol": "tcp",
    "FromPort": config.SSH_PORT,
    "ToPort": config.SSH_PORT,
    "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
}


def _id_filter(domain_id: str) -> list[dict]:
    return [{"Name": f"tag:{config.ID_TAG_KEY}", "Values": [domain_id]}]


def _flatten(resp: dict) -> list[dict]:
    return [
        instance
        for reservation in resp.get("Reservations", [])
        for instance in reservation.get("Instances", [])
    ]


class LifecycleAdapter:
    def __init__(
        self,
        store: InstanceStore,
        compute: ComputeProvider,
        probe: ReachabilityProbe,
        key_name: str | None = None,
        default_security_group: str | None = None,
    ):
        self.store = store
        self._compute = compute
        self._probe = probe
        self._key_name = key_name if key_name is not None else config.KEY_NAME()
        self._default_security_group = default_security_group or config.DEFAULT_SECURITY_GROUP()
        self._polling: set[asyncio.Task] = set()

    # ---- Launch ----

    async def run_instances(
        self, spec: InstanceSpec, security: SecurityOptions | None = None
    ) -> Instance:
        """Launch one instance and return its pending Store record.

        Readiness polling continues in the background after this returns.
        """
        instance, _ = await self.launch_instance(spec, security)
        return instance

    async def launch_instance(
        self, spec: InstanceSpec, security: SecurityOptions | None = None
    ) -> tuple[Instance, str]:
        """Same as run_instances, also returning the launched provider id."""
        security = security or SecurityOptions()
        security.validate()

        group_name = await self.get_security_group(security)
        instance = await self.store.create_instance(spec.ami, spec.type)

        params = {
            "ImageId": spec.ami,
            "InstanceType": spec.type,
            "MinCount": 1,
            "MaxCount": 1,
            "SecurityGroups": [group_name],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": config.ID_TAG_KEY, "Value": instance.id},
                        {"Key": config.POOL_TAG_KEY, "Value": config.POOL_TAG_VALUE},
                    ],
                }
            ],
        }
        if self._key_name:
            params["KeyName"] = self._key_name

        try:
            resp = await self._compute.run_instances(**params)
        except Exception:
            logger.exception("Failed to launch %s (%s) for instance %s", spec.type, spec.ami, instance.id)
            await self._mark_failed(instance)
            raise

        provider_id = resp["Instances"][0]["InstanceId"]
        logger.info("Launched provider instance %s for instance %s", provider_id, instance.id)
        self._spawn_polling(instance)
        return instance, provider_id

    async def _mark_failed(self, instance: Instance) -> None:
        try:
            await self.store.update_instance(replace(instance, state=InstanceState.FAILED, uri=None))
        except Exception:
            logger.exception("Could not mark instance %s as failed", instance.id)

    async def get_security_group(self, security: SecurityOptions) -> str:
        """Resolve the security group name a launch should use."""
        security.validate()
        if security.create_security_group:
            return await self._create_security_group(security.create_security_group)
        if security.existing_security_group:
            await self._compute.describe_security_groups(
                GroupNames=[security.existing_security_group]
            )
            return security.existing_security_group

        name = self._default_security_group
        try:
            await self._compute.describe_security_groups(GroupNames=[name])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "InvalidGroup.NotFound":
                raise
            logger.info("Default security group %s missing, creating it", name)
            return await self._create_security_group(name)
        return name

    async def _create_security_group(self, name: str) -> str:
        resp = await self._compute.create_security_group(
            GroupName=name, Description=f"{name} security group"
        )
        await self._compute.authorize_security_group_ingress(
            GroupId=resp["GroupId"],
            GroupName=name,
            IpPermissions=[SSH_INGRESS_RULE],
        )
        logger.info("Created security group %s (%s)", name, resp["GroupId"])
        return name

    # ---- Readiness polling ----

    def _spawn_polling(self, instance: Instance) -> None:
        task = asyncio.create_task(self.begin_polling(instance), name=f"poll-{instance.id}")
        self._polling.add(task)
        task.add_done_callback(self._polling_done)

    def _polling_done(self, task: asyncio.Task) -> None:
        self._polling.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Readiness polling failed in %s", task.get_name(), exc_info=exc)

    async def wait_for_polling(self) -> None:
        """Wait until every in-flight polling task has finished."""
        while self._polling:
            await asyncio.gather(*list(self._polling), return_exceptions=True)

    async def begin_polling(self, instance: Instance) -> Instance:
        """Probe the instance, then record the outcome at the captured revision.

        Returns the record as stored afterwards. If the record was advanced
        concurrently, the update is dropped and the newer record returned.
        """
        provider_id = await self.resolve_provider_id(instance.id)
        try:
            await self._probe.wait_until_reachable(provider_id)
        except Exception as exc:
            logger.warning("Instance %s (%s) failed readiness probe: %s", instance.id, provider_id, exc)
            outcome = replace(instance, state=InstanceState.FAILED, uri=None)
        else:
            address = await self.get_public_ip_address(provider_id)
            outcome = replace(
                instance, state=InstanceState.READY, uri=f"{config.URI_SCHEME}://{address}"
            )

        try:
            updated = await self.store.update_instance(outcome)
        except ConcurrencyError:
            logger.info(
                "Instance %s changed while polling, keeping the newer record", instance.id
            )
            return await self.store.get_instance(instance.id)
        logger.info("Instance %s is %s", updated.id, updated.state.value)
        return updated

    # ---- Queries ----

    async def describe_instance(self, provider_id: str) -> list[dict]:
        resp = await self._compute.describe_instances(InstanceIds=[provider_id])
        return _flatten(resp)

    async def get_public_ip_address(self, provider_id: str) -> str:
        resp = await self._compute.describe_instances(InstanceIds=[provider_id])
        return resp["Reservations"][0]["Instances"][0]["PublicIpAddress"]

    async def resolve_provider_id(self, domain_id: str) -> str:
        resp = await self._compute.describe_instances(Filters=_id_filter(domain_id))
        instances = _flatten(resp)
        if not instances:
            raise ProviderInstanceNotFound(
                f"InvalidInstanceID.NotFound: no provider instance tagged {config.ID_TAG_KEY}={domain_id}"
            )
        return instances[0]["InstanceId"]

    # ---- Start / stop / terminate ----

    async def start_instances(self, instance: Instance) -> dict:
        provider_id = await self.resolve_provider_id(instance.id)
        await self._compute.start_instances(InstanceIds=[provider_id])
        result = await self._compute.wait_for("instance_running", Filters=_id_filter(instance.id))
        current = await self.store.get_instance(instance.id)
        restarted = await self.store.update_instance(
            replace(current, state=InstanceState.PENDING, uri=None)
        )
        logger.info("Started %s (%s), polling for readiness", instance.id, provider_id)
        self._spawn_polling(restarted)
        return result

    async def stop_instances(self, instance: Instance) -> dict:
        provider_id = await self.resolve_provider_id(instance.id)
        await self._compute.stop_instances(InstanceIds=[provider_id])
        result = await self._compute.wait_for("instance_stopped", Filters=_id_filter(instance.id))
        current = await self.store.get_instance(instance.id)
        await self.store.update_instance(replace(current, state=InstanceState.STOPPED, uri=None))
        logger.info("Stopped %s (%s)", instance.id, provider_id)
        return result

    async def terminate_instances(self, domain_id: str) -> dict:
        provider_id = await self.resolve_provider_id(domain_id)
        current = await self.store.get_instance(domain_id)
        terminating = await self._terminate(current, provider_id)
        result = await self._compute.wait_for("instance_terminated", Filters=_id_filter(domain_id))
        await self.store.update_instance(replace(terminating, state=InstanceState.TERMINATED))
        logger.info("Terminated %s (%s)", domain_id, provider_id)
        return result

    async def begin_termination(self, domain_id: str | None, provider_id: str) -> Instance | None:
        """Issue termination of a known provider instance without waiting.

        The Store record, if there is one, is moved to terminating first and
        returned. Instances without a record are terminated provider-side only.
        """
        current = None
        if domain_id:
            try:
                current = await self.store.get_instance(domain_id)
            except InstanceNotFound:
                logger.info("No record for %s (%s), terminating provider-side only", domain_id, provider_id)
        if current is None:
            await self._compute.terminate_instances(InstanceIds=[provider_id])
            return None
        return await self._terminate(current, provider_id)

    async def _terminate(self, current: Instance, provider_id: str) -> Instance:
        terminating = await self.store.update_instance(
            replace(current, state=InstanceState.TERMINATING, uri=None)
        )
        try:
            await self._compute.terminate_instances(InstanceIds=[provider_id])
        except Exception:
            logger.exception("Failed to terminate %s (%s)", current.id, provider_id)
            await self._restore(terminating, current)
            raise
        return terminating

    async def _restore(self, terminating: Instance, previous: Instance) -> None:
        try:
            await self.store.update_instance(
                replace(terminating, state=previous.state, uri=previous.uri)
            )
        except Exception:
            logger.exception(
                "Could not restore instance %s to %s", previous.id, previous.state.value
            )
