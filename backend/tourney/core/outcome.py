"""Tagged outcomes for checks that fail as part of normal operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a verification step.

    ``reason`` is for server-side logs and metrics only; it must never be
    echoed to the client.
    """

    ok: bool
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Outcome[Any]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "Outcome[Any]":
        return cls(ok=False, reason=reason)

    def __bool__(self) -> bool:
        return self.ok
