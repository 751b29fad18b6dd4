from __future__ import annotations

import pytest

from cerberus_mcp.totp import generate_totp, normalize_secret

# RFC 6238 appendix B seed "12345678901234567890", base32 encoded
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.mark.parametrize(
    ("for_time", "code"),
    [
        (59, "287082"),
        (1111111109, "081804"),
        (1234567890, "005924"),
    ],
)
def test_rfc_vectors(for_time: int, code: str) -> None:
    assert generate_totp(RFC_SECRET, for_time=for_time).code == code


def test_expiry_counts_down_within_window() -> None:
    assert generate_totp(RFC_SECRET, for_time=60).expires_in == 30
    assert generate_totp(RFC_SECRET, for_time=89).expires_in == 1
    assert generate_totp(RFC_SECRET, for_time=89.7).timestamp == 89


def test_secret_is_normalized() -> None:
    assert normalize_secret(" gezd-gnbv gy3t ") == "GEZDGNBVGY3T"
    assert generate_totp("gezdgnbvgy3tqojqgezdgnbvgy3tqojq", for_time=59).code == "287082"


@pytest.mark.parametrize("secret", ["", "   ", "ABC1", "hello world!"])
def test_invalid_secrets_are_rejected(secret: str) -> None:
    with pytest.raises(ValueError):
        generate_totp(secret)
