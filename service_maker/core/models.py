"""Domain records for managed instances."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum

from service_maker.core.errors import ValidationError


class InstanceState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class Instance:
    """A managed instance as recorded by the Store.

    ``id`` is the domain id; the provider id is only ever resolved through
    the ``ID`` tag on the provider resource.
    """

    id: str
    ami: str
    type: str
    state: InstanceState = InstanceState.PENDING
    uri: str | None = None
    revision: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "state", InstanceState(self.state))
        if self.revision < 1:
            raise ValidationError(f"Instance {self.id} has invalid revision {self.revision}")
        if self.uri is not None and self.state is not InstanceState.READY:
            raise ValidationError(
                f"Instance {self.id} may only carry a uri while ready (state={self.state.value})"
            )

    def to_item(self) -> dict:
        item = asdict(self)
        item["state"] = self.state.value
        return item

    @classmethod
    def from_item(cls, item: dict) -> Instance:
        return cls(
            id=item["id"],
            ami=item["ami"],
            type=item["type"],
            state=InstanceState(item["state"]),
            uri=item.get("uri"),
            revision=int(item["revision"]),
        )


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    ami: str
    type: str


@dataclass(frozen=True, slots=True)
class SecurityOptions:
    """Security group selection for a launch.

    At most one of the two names may be set; with neither, the default
    group is used.
    """

    create_security_group: str | None = None
    existing_security_group: str | None = None

    def validate(self) -> None:
        if self.create_security_group and self.existing_security_group:
            raise ValidationError(
                "Bad request: Both create_security_group and existing_security_group were specified."
            )


@dataclass(frozen=True, slots=True)
class RequiredInstance:
    type: str
    count: int


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of one reconciliation pass.

    ``created`` holds domain ids, ``terminated`` provider ids.
    ``failed_creates`` lists the instance type of every create that raised,
    ``failed_terminations`` the provider ids whose termination raised.
    """

    created: tuple[str, ...] = ()
    terminated: tuple[str, ...] = ()
    failed_creates: tuple[str, ...] = ()
    failed_terminations: tuple[str, ...] = ()
