"""Instance Store: optimistic-concurrency CRUD over instance records."""

from __future__ import annotations

import logging
import uuid

from service_maker.core.errors import InstanceNotFound, StoreError
from service_maker.core.interfaces import InstanceRepository
from service_maker.core.models import Instance, InstanceState
from service_maker.shared import config

logger = logging.getLogger(__name__)


class InstanceStore:
    def __init__(self, repository: InstanceRepository | None = None):
        if repository is None:
            from service_maker.backends.memory.state import InMemoryInstanceRepository

            repository = InMemoryInstanceRepository()
        self._repository = repository

    async def create_instance(self, ami: str | None = None, type: str | None = None) -> Instance:
        """Create a pending record, defaulting ami/type from configuration."""
        instance = Instance(
            id=str(uuid.uuid4()),
            ami=ami or config.DEFAULT_AMI(),
            type=type or config.DEFAULT_INSTANCE_TYPE(),
            state=InstanceState.PENDING,
            uri=None,
            revision=1,
        )
        try:
            created = await self._repository.create(instance)
        except Exception as exc:
            logger.exception("Failed to persist new instance %s", instance.id)
            raise StoreError(str(exc)) from exc
        logger.info("Created instance %s (ami=%s, type=%s)", created.id, created.ami, created.type)
        return created

    async def get_instance(self, instance_id: str) -> Instance:
        instance = await self._repository.find_one(instance_id)
        if instance is None:
            raise InstanceNotFound(f"Instance {instance_id} not found")
        return instance

    async def get_all_instances(self, *, ami: str | None = None, type: str | None = None) -> list[Instance]:
        filters = {}
        if ami is not None:
            filters["ami"] = ami
        if type is not None:
            filters["type"] = type
        return list(await self._repository.find(**filters))

    async def update_instance(self, instance: Instance) -> Instance:
        """Write ``instance`` if its revision is still the stored one.

        Raises ConcurrencyError on a stale revision and InstanceNotFound for
        an unknown id; the stored record is left unchanged in both cases.
        """
        updated = await self._repository.update(instance)
        logger.debug(
            "Instance %s now %s at revision %d", updated.id, updated.state.value, updated.revision
        )
        return updated
