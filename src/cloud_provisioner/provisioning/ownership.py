"""Ownership tag deciding whether a possibly shared resource may be deleted."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from cloud_provisioner.config.models import OwnershipConfig


@dataclass(frozen=True)
class OwnershipTag:
    key: str
    value: str
    case_sensitive: bool = False

    @classmethod
    def from_config(cls, config: OwnershipConfig) -> OwnershipTag:
        return cls(
            key=config.tag_key,
            value=config.tag_value,
            case_sensitive=config.case_sensitive,
        )

    def as_tags(self) -> dict[str, str]:
        return {self.key: self.value}

    def _eq(self, a: str, b: str) -> bool:
        return a == b if self.case_sensitive else a.casefold() == b.casefold()

    def is_owned(self, tags: Mapping[str, str]) -> bool:
        """True only if *tags* carries this tag with a matching value."""
        return any(
            self._eq(key, self.key) and self._eq(value, self.value)
            for key, value in tags.items()
        )

    def __str__(self) -> str:
        return f"{self.key}={self.value}"
