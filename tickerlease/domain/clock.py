from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class LeaseClock(Protocol):
    """Single source of "now" for stamping and evaluating leases."""

    def utc_now(self) -> datetime: ...


class SystemLeaseClock:
    def utc_now(self) -> datetime:
        return datetime.now(tz=UTC)


@dataclass
class FrozenLeaseClock:
    """Manually advanced clock for deterministic tests and simulations."""

    now: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def utc_now(self) -> datetime:
        return self.now

    def advance(self, *, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value
