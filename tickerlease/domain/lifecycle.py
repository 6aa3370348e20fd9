from __future__ import annotations

from tickerlease.domain.errors import DomainInvariantError
from tickerlease.domain.models import TickerStatus, WorkItem

TERMINAL_STATUSES: frozenset[TickerStatus] = frozenset(
    {
        TickerStatus.DONE,
        TickerStatus.DUE_DONE,
        TickerStatus.FAILED,
        TickerStatus.CANCELLED,
    }
)

# Statuses that must carry a lease.
LEASED_STATUSES: frozenset[TickerStatus] = frozenset({TickerStatus.QUEUED, TickerStatus.INPROGRESS})

ALLOWED_TRANSITIONS: dict[TickerStatus, frozenset[TickerStatus]] = {
    TickerStatus.IDLE: frozenset({TickerStatus.QUEUED, TickerStatus.CANCELLED}),
    # Queued -> Queued is a steal: the lease moves to another holder.
    TickerStatus.QUEUED: frozenset({TickerStatus.QUEUED, TickerStatus.INPROGRESS, TickerStatus.CANCELLED}),
    TickerStatus.INPROGRESS: frozenset({TickerStatus.DONE, TickerStatus.DUE_DONE, TickerStatus.FAILED}),
    TickerStatus.DONE: frozenset(),
    TickerStatus.DUE_DONE: frozenset(),
    TickerStatus.FAILED: frozenset(),
    TickerStatus.CANCELLED: frozenset(),
}

# Explicit release path, only taken by the recovery service.
RELEASE_TRANSITIONS: dict[TickerStatus, frozenset[TickerStatus]] = {
    TickerStatus.QUEUED: frozenset({TickerStatus.IDLE}),
    TickerStatus.INPROGRESS: frozenset({TickerStatus.IDLE}),
}


def is_terminal(status: TickerStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(from_status: TickerStatus, to_status: TickerStatus, *, release: bool = False) -> bool:
    if to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        return True
    if release:
        return to_status in RELEASE_TRANSITIONS.get(from_status, frozenset())
    return False


def ensure_transition(from_status: TickerStatus, to_status: TickerStatus, *, release: bool = False) -> None:
    if not can_transition(from_status, to_status, release=release):
        raise DomainInvariantError(f"invalid transition: {from_status} -> {to_status}")


def ensure_lease_consistent(item: WorkItem) -> None:
    """Check the status/holder pairing a stored item must always satisfy."""
    if item.status == TickerStatus.IDLE and item.lock_holder is not None:
        raise DomainInvariantError(f"idle item {item.item_id} carries lock holder {item.lock_holder!r}")
    if item.status in LEASED_STATUSES and (item.lock_holder is None or item.locked_at is None):
        raise DomainInvariantError(f"{item.status} item {item.item_id} has no lease")
