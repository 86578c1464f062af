"""Pool sizing policies."""

from __future__ import annotations

import logging

from service_maker.core.errors import ValidationError
from service_maker.core.models import RequiredInstance

logger = logging.getLogger(__name__)


def parse_pool_shape(raw: str) -> dict[str, int]:
    """Parse ``"t2.micro=3,t2.small=1"`` into ``{"t2.micro": 3, "t2.small": 1}``."""
    shape: dict[str, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        instance_type, sep, count = part.partition("=")
        if not sep or not instance_type.strip():
            raise ValidationError(f"Invalid pool shape entry: {part!r}")
        try:
            shape[instance_type.strip()] = int(count)
        except ValueError:
            raise ValidationError(f"Invalid instance count in pool shape entry: {part!r}") from None
        if shape[instance_type.strip()] < 0:
            raise ValidationError(f"Negative instance count in pool shape entry: {part!r}")
    return shape


class NaivePolicy:
    """Keep a fixed number of instances per type.

    Every instance taken out of the pool is replaced, every released one is
    simply counted.
    """

    def __init__(self, shape: dict[str, int]):
        self._shape = dict(shape)
        self.removed: list[str] = []
        self.returned: list[str] = []

    @classmethod
    def from_string(cls, raw: str) -> NaivePolicy:
        return cls(parse_pool_shape(raw))

    def required_instances(self) -> list[RequiredInstance]:
        return [RequiredInstance(type=t, count=c) for t, c in self._shape.items()]

    def notify_of_removal(self, instance_type: str, provider_id: str) -> bool:
        self.removed.append(provider_id)
        logger.info("Pool lost %s instance %s, requesting replacement", instance_type, provider_id)
        return True

    def notify_of_return(self, instance_type: str, provider_id: str) -> None:
        self.returned.append(provider_id)
        logger.info("Pool regained %s instance %s", instance_type, provider_id)
