"""Time-based one-time passwords for agents logging into 2FA-protected targets."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass

import pyotp

_BASE32 = re.compile(r"^[A-Z2-7]+=*$")


@dataclass(slots=True, frozen=True)
class TotpCode:
    code: str
    expires_in: int
    timestamp: int


def normalize_secret(secret: str) -> str:
    """Strip whitespace and dashes, upper-case, and check the base32 alphabet."""

    normalized = re.sub(r"[\s-]+", "", secret or "").upper()
    if not normalized or not _BASE32.match(normalized):
        raise ValueError("TOTP secret must be a non-empty base32 string (A-Z, 2-7)")
    return normalized


def generate_totp(secret: str, *, for_time: float | None = None, digits: int = 6, interval: int = 30) -> TotpCode:
    """RFC 6238 code (HMAC-SHA1) for ``secret`` at ``for_time`` (defaults to now)."""

    now = time.time() if for_time is None else for_time
    totp = pyotp.TOTP(normalize_secret(secret), digits=digits, interval=interval)
    return TotpCode(
        code=totp.at(now),
        expires_in=interval - int(now) % interval,
        timestamp=int(now),
    )


__all__ = ["TotpCode", "generate_totp", "normalize_secret"]
