"""Pool Reconciler: keeps the tagged pool in the shape the policy asks for.

Pool membership lives on the provider side as the ``smake=pool`` tag; the
reconciler never keeps its own membership table.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from service_maker.core.errors import PoolExhausted
from service_maker.core.interfaces import ComputeProvider, PoolingPolicy
from service_maker.core.lifecycle import LifecycleAdapter
from service_maker.core.models import (
    InstanceSpec,
    ReconcileResult,
    RequiredInstance,
    SecurityOptions,
)
from service_maker.shared import config

logger = logging.getLogger(__name__)

TAG_ATTEMPTS = 3

POOL_TAGS = [{"Key": config.POOL_TAG_KEY, "Value": config.POOL_TAG_VALUE}]


def _launch_order(instance: dict):
    launched = instance.get("LaunchTime")
    return (launched is None, launched, instance["InstanceId"])


@dataclass
class _Outcome:
    created: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    failed_creates: list[str] = field(default_factory=list)
    failed_terminations: list[str] = field(default_factory=list)


class PoolReconciler:
    def __init__(
        self,
        lifecycle: LifecycleAdapter,
        compute: ComputeProvider,
        policy: PoolingPolicy,
        image_for_type: Callable[[str], str] = config.image_for_type,
    ):
        self._lifecycle = lifecycle
        self._compute = compute
        self._policy = policy
        self._image_for_type = image_for_type
        self._replacements: set[asyncio.Task] = set()

    async def initialize(
        self, required_shape: Iterable[RequiredInstance] | Mapping[str, int] | None = None
    ) -> ReconcileResult:
        """Bring the pool to the required shape.

        Returns once every create and terminate call has been issued; it does
        not wait for readiness or for terminations to finish. Surplus
        instances are terminated newest launch first. A failing create or
        terminate is logged and reported in the result; the rest of the
        shape is still issued.
        """
        if required_shape is None:
            required = self._policy.required_instances()
        elif isinstance(required_shape, Mapping):
            required = [RequiredInstance(type=t, count=c) for t, c in required_shape.items()]
        else:
            required = list(required_shape)

        members: dict[str, list[dict]] = {}
        for instance in await self._describe_pool():
            members.setdefault(instance["InstanceType"], []).append(instance)

        result = _Outcome()
        if not members:
            logger.info("Did not find existing pool resources")
        else:
            logger.info("Assimilating existing pool resources...")

        for req in required:
            present = members.get(req.type, [])
            diff = req.count - len(present)
            if diff < 0:
                for descriptor in present[diff:]:
                    await self._terminate_member(descriptor, result)
            elif diff > 0:
                for _ in range(diff):
                    await self._create_member(req.type, result)

        logger.info(
            "Instance pool started: %d created, %d terminated, %d failed",
            len(result.created), len(result.terminated),
            len(result.failed_creates) + len(result.failed_terminations),
        )
        return ReconcileResult(
            created=tuple(result.created),
            terminated=tuple(result.terminated),
            failed_creates=tuple(result.failed_creates),
            failed_terminations=tuple(result.failed_terminations),
        )

    async def _create_member(self, instance_type: str, result: _Outcome) -> None:
        try:
            result.created.append(await self._create(instance_type))
        except Exception:
            logger.exception("Failed to create %s pool instance", instance_type)
            result.failed_creates.append(instance_type)

    async def _terminate_member(self, descriptor: dict, result: _Outcome) -> None:
        provider_id = descriptor["InstanceId"]
        try:
            await self._terminate(descriptor)
        except Exception:
            logger.exception("Failed to terminate pool instance %s", provider_id)
            result.failed_terminations.append(provider_id)
        else:
            result.terminated.append(provider_id)

    async def get_pool_instances(self, instance_type: str | None = None) -> dict[str, list[str]]:
        """Map instance type to pool member ids, oldest launch first."""
        snapshot: dict[str, list[str]] = {}
        for instance in await self._describe_pool(instance_type):
            snapshot.setdefault(instance["InstanceType"], []).append(instance["InstanceId"])
        return snapshot

    async def _describe_pool(self, instance_type: str | None = None) -> list[dict]:
        filters = [
            {"Name": "tag-key", "Values": [config.POOL_TAG_KEY]},
            {"Name": "tag-value", "Values": [config.POOL_TAG_VALUE]},
            {"Name": "instance-state-name", "Values": ["running", "pending"]},
        ]
        if instance_type is not None:
            filters.append({"Name": "instance-type", "Values": [instance_type]})
        resp = await self._compute.describe_instances(Filters=filters)
        instances = [
            instance
            for reservation in resp.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        return sorted(instances, key=_launch_order)

    async def _create(self, instance_type: str) -> str:
        spec = InstanceSpec(ami=self._image_for_type(instance_type), type=instance_type)
        instance, provider_id = await self._lifecycle.launch_instance(spec, SecurityOptions())
        await self.apply_tags(POOL_TAGS, provider_id)
        logger.info("Starting new %s instance %s (%s)", instance_type, instance.id, provider_id)
        return instance.id

    async def _terminate(self, descriptor: dict) -> None:
        provider_id = descriptor["InstanceId"]
        tags = {t["Key"]: t["Value"] for t in descriptor.get("Tags", [])}
        await self._lifecycle.begin_termination(tags.get(config.ID_TAG_KEY), provider_id)
        logger.info("Terminating %s instance %s", descriptor["InstanceType"], provider_id)

    async def apply_tags(self, tags: list[dict], provider_id: str) -> str | None:
        """Tag a provider instance, retrying immediately on failure.

        Returns the provider id, or None once every attempt has failed.
        """
        for attempt in range(1, TAG_ATTEMPTS + 1):
            try:
                await self._compute.create_tags(Resources=[provider_id], Tags=tags)
            except Exception as exc:
                logger.warning(
                    "There was a problem applying tags to instance %s (attempt %d/%d): %s",
                    provider_id, attempt, TAG_ATTEMPTS, exc,
                )
                continue
            return provider_id
        logger.error("Giving up tagging instance %s after %d attempts", provider_id, TAG_ATTEMPTS)
        return None

    async def remove_from_pool(self, provider_id: str) -> str:
        await self._compute.delete_tags(
            Resources=[provider_id], Tags=[{"Key": config.POOL_TAG_KEY}]
        )
        return provider_id

    async def get_instance(self, instance_type: str) -> str:
        """Take one instance of ``instance_type`` out of the pool.

        Running instances are preferred over pending ones, oldest launch
        first. The policy is told about the removal and a replacement is
        provisioned in the background when it asks for one.
        """
        candidates = await self._describe_pool(instance_type)
        running = [i for i in candidates if i["State"]["Name"] == "running"]
        pending = [i for i in candidates if i["State"]["Name"] == "pending"]
        chosen = running or pending
        if not chosen:
            raise PoolExhausted(f"No running or pending {instance_type} instance in the pool")

        provider_id = chosen[0]["InstanceId"]
        await self.remove_from_pool(provider_id)
        logger.info("Handing out %s instance %s", instance_type, provider_id)

        if self._policy.notify_of_removal(instance_type, provider_id):
            task = asyncio.create_task(self._create(instance_type), name=f"replace-{provider_id}")
            self._replacements.add(task)
            task.add_done_callback(self._replacement_done)
        return provider_id

    def _replacement_done(self, task: asyncio.Task) -> None:
        self._replacements.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Provisioning replacement failed in %s", task.get_name(), exc_info=task.exception())

    async def wait_for_replacements(self) -> None:
        while self._replacements:
            await asyncio.gather(*list(self._replacements), return_exceptions=True)

    async def release_instance(self, provider_id: str) -> str | None:
        """Return an instance to the pool.

        Returns the provider id, or None if the pool tag could not be applied.
        """
        descriptors = await self._lifecycle.describe_instance(provider_id)
        instance_type = descriptors[0]["InstanceType"]
        if await self.apply_tags(POOL_TAGS, provider_id) is None:
            return None
        self._policy.notify_of_return(instance_type, provider_id)
        return provider_id
