from __future__ import annotations

from typing import Literal

# Canonical error vocabulary for ticker execution write-backs.
ErrorCode = Literal[
    "handler_failed",
    "handler_missing",
    "lease_lost",
    "store_unavailable",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "handler_failed",
    "handler_missing",
    "lease_lost",
    "store_unavailable",
    "internal_error",
)

# Errors that a later occurrence or a retry may get past.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "handler_failed",
        "store_unavailable",
        "internal_error",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_error_code(code: str | None) -> ErrorCode:
    if code is not None and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persisted codes stable even if a handler emitted an unknown one.
    return "internal_error"
