import pytest

from newsletter.domain.error_taxonomy import (
    CANONICAL_ERROR_CODES,
    classify_error,
    error_code_for_status,
    is_canonical_error_code,
    resolve_error_code,
)


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("provider_server_error") is True
    assert is_canonical_error_code("unknown_error") is False


@pytest.mark.unit
def test_unknown_codes_resolve_to_internal_error() -> None:
    assert resolve_error_code("transport_timeout") == "transport_timeout"
    assert resolve_error_code("smtp_exploded") == "internal_error"


@pytest.mark.unit
def test_retry_classification_distinguishes_terminal_and_recoverable() -> None:
    assert classify_error("provider_server_error") == "recoverable"
    assert classify_error("transport_timeout") == "recoverable"
    assert classify_error("lease_expired") == "recoverable"
    assert classify_error("provider_rejected") == "terminal"
    assert classify_error("invalid_recipient") == "terminal"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (200, None),
        (202, None),
        (500, "provider_server_error"),
        (503, "provider_server_error"),
        (408, "provider_throttled"),
        (429, "provider_throttled"),
        (400, "provider_rejected"),
        (422, "provider_rejected"),
        (302, "unexpected_response"),
    ],
)
def test_status_code_mapping(status_code: int, expected: str | None) -> None:
    code = error_code_for_status(status_code)
    assert code == expected
    if code is not None:
        assert code in CANONICAL_ERROR_CODES
