from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tickerlease.domain.models import WorkItem


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class StoreUnavailableError(DomainDependencyError):
    pass


class ConcurrencyConflictError(DomainError):
    """Raised by a store when a guarded write sees a changed version token.

    The whole submitted batch is rejected; nothing from it is persisted.
    """

    def __init__(self, message: str, *, item_ids: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.item_ids = tuple(item_ids)


class ClaimCancelledError(asyncio.CancelledError):
    """Cancellation of a claim call, with whatever the store committed.

    ``claimed`` is empty when cancellation happened before the write was
    submitted or when the write lost a version race.
    """

    def __init__(self, message: str = "claim cancelled", *, claimed: Sequence[WorkItem] = ()) -> None:
        super().__init__(message)
        self.claimed = tuple(claimed)
