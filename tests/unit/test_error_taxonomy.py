import pytest

from tickerlease.domain.error_taxonomy import (
    CANONICAL_ERROR_CODES,
    classify_error,
    is_canonical_error_code,
    resolve_error_code,
)


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("handler_failed") is True
    assert is_canonical_error_code("unknown_error") is False


@pytest.mark.unit
def test_unknown_codes_resolve_to_internal_error() -> None:
    assert resolve_error_code("lease_lost") == "lease_lost"
    assert resolve_error_code("delivery_transport_failed") == "internal_error"
    assert resolve_error_code(None) == "internal_error"


@pytest.mark.unit
def test_retry_classification_distinguishes_terminal_and_recoverable() -> None:
    assert classify_error("store_unavailable") == "recoverable"
    assert classify_error("handler_missing") == "terminal"
    assert classify_error("lease_lost") == "terminal"
    assert {classify_error(code) for code in CANONICAL_ERROR_CODES} == {"recoverable", "terminal"}
