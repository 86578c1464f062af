"""In-memory instance repository: the default Store capability."""

from __future__ import annotations

from dataclasses import replace

from service_maker.core.errors import ConcurrencyError, InstanceNotFound, StoreError
from service_maker.core.models import Instance


class InMemoryInstanceRepository:
    """Keeps records in a dict.

    Each method finishes without awaiting anything, so the revision check
    and the write in ``update`` cannot interleave with another coroutine.
    """

    def __init__(self):
        self._instances: dict[str, Instance] = {}

    async def create(self, instance: Instance) -> Instance:
        if instance.id in self._instances:
            raise StoreError(f"Instance {instance.id} already exists")
        self._instances[instance.id] = instance
        return instance

    async def find(self, **filters: str) -> list[Instance]:
        results = list(self._instances.values())
        for field, value in filters.items():
            results = [i for i in results if getattr(i, field) == value]
        return results

    async def find_one(self, instance_id: str) -> Instance | None:
        return self._instances.get(instance_id)

    async def update(self, instance: Instance) -> Instance:
        current = self._instances.get(instance.id)
        if current is None:
            raise InstanceNotFound(f"Instance {instance.id} not found")
        if current.revision != instance.revision:
            raise ConcurrencyError(instance.id, instance.revision, current.revision)
        stored = replace(instance, revision=instance.revision + 1)
        self._instances[instance.id] = stored
        return stored
