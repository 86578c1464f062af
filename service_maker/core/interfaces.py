"""Abstract interfaces for service-maker collaborators.

Core pool logic depends only on these protocols, never on cloud-specific
SDKs. To add a new backend, implement the protocol and pass it to the
constructor of the component that consumes it.
"""

from __future__ import annotations

from typing import Any, Protocol

from service_maker.core.models import Instance, RequiredInstance


class InstanceRepository(Protocol):
    """Persistence for instance records with optimistic concurrency."""

    async def create(self, instance: Instance) -> Instance:
        """Persist a new record."""
        ...

    async def find(self, **filters: str) -> list[Instance]:
        """Return records whose fields equal every given filter value."""
        ...

    async def find_one(self, instance_id: str) -> Instance | None:
        """Get a single record by domain id."""
        ...

    async def update(self, instance: Instance) -> Instance:
        """Compare-and-swap on (id, revision).

        Returns the stored record with revision + 1. Raises ConcurrencyError
        when the stored revision differs and InstanceNotFound when the id is
        unknown.
        """
        ...


class ComputeProvider(Protocol):
    """EC2-shaped compute capability.

    Keyword arguments and responses follow the EC2 API so that backends
    can pass them straight through to the SDK.
    """

    async def run_instances(self, **params: Any) -> dict: ...

    async def describe_instances(self, **params: Any) -> dict: ...

    async def terminate_instances(self, **params: Any) -> dict: ...

    async def start_instances(self, **params: Any) -> dict: ...

    async def stop_instances(self, **params: Any) -> dict: ...

    async def create_security_group(self, **params: Any) -> dict: ...

    async def describe_security_groups(self, **params: Any) -> dict: ...

    async def authorize_security_group_ingress(self, **params: Any) -> dict: ...

    async def create_tags(self, **params: Any) -> dict: ...

    async def delete_tags(self, **params: Any) -> dict: ...

    async def wait_for(self, waiter_name: str, **params: Any) -> dict:
        """Block until the named target state is reached.

        Returns the describe_instances response for ``params`` once the
        target state holds. Raises WaitTimeoutError when the bound is hit.
        """
        ...


class ReachabilityProbe(Protocol):
    """Decides whether a freshly started instance is usable."""

    async def wait_until_reachable(self, provider_id: str) -> None:
        """Return once reachable; raise otherwise."""
        ...


class PoolingPolicy(Protocol):
    """Decides the pool shape and reacts to membership changes."""

    def required_instances(self) -> list[RequiredInstance]:
        """The desired pool shape."""
        ...

    def notify_of_removal(self, instance_type: str, provider_id: str) -> bool:
        """Record that an instance left the pool.

        Returns True when a replacement should be provisioned.
        """
        ...

    def notify_of_return(self, instance_type: str, provider_id: str) -> None:
        """Record that an instance was released back into the pool."""
        ...
