"""Error taxonomy for the instance pool.

Provider failures are not represented here: they arrive as botocore
``ClientError`` instances and propagate to callers untouched.
"""

from __future__ import annotations


class ServiceMakerError(Exception):
    """Base class for errors raised by service_maker itself."""


class ValidationError(ServiceMakerError, ValueError):
    """A request was rejected before any provider call was made."""


class ConcurrencyError(ServiceMakerError):
    """An update carried a revision that is no longer current."""

    def __init__(self, instance_id: str, expected: int, actual: int | None = None):
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        detail = f", stored revision is {actual}" if actual is not None else ""
        super().__init__(
            f"Update of instance {instance_id} failed optimistic concurrency check: "
            f"expected revision {expected}{detail}"
        )


class NotFound(ServiceMakerError, KeyError):
    """A domain or provider resource does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class InstanceNotFound(NotFound):
    """No Store record exists for a domain id."""


class ProviderInstanceNotFound(NotFound):
    """No provider instance carries the requested domain id tag."""


class PoolExhausted(NotFound):
    """No running or pending pool instance of the requested type exists."""


class StoreError(ServiceMakerError):
    """The persistence capability rejected a write."""


class WaitTimeoutError(ServiceMakerError, TimeoutError):
    """A bounded wait for a provider target state ran out."""
