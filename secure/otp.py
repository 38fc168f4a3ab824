"""
secure/otp.py -- RFC 6238 time-based one-time codes (TOTP).

Used for per-account second-factor codes derived from a shared secret rather
than from a stored envelope. Defaults follow RFC 6238: 30-second step,
6 digits, HMAC-SHA1. SHA256 and SHA512 are selectable for authenticators
that support them.

validate_code() accepts codes from +/- `window` steps around the given
instant to tolerate clock drift between server and authenticator app.
Comparison is constant-time.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from datetime import datetime, timezone

from core.errors import ValidationError

DEFAULT_TIME_STEP = 30
DEFAULT_DIGITS = 6

_ALGORITHMS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


class CodeProvider:
    """Generate and validate TOTP codes for one shared secret."""

    def __init__(
        self,
        secret: bytes,
        time_step: int = DEFAULT_TIME_STEP,
        digits: int = DEFAULT_DIGITS,
        algorithm: str = "SHA1",
    ) -> None:
        if not secret:
            raise ValidationError("TOTP secret must not be empty")
        if time_step <= 0:
            raise ValidationError("time_step must be greater than 0")
        if not 1 <= digits <= 10:
            raise ValidationError("digits must be between 1 and 10")
        digest = _ALGORITHMS.get(algorithm.upper())
        if digest is None:
            raise ValidationError(f"unsupported hash algorithm: {algorithm}")
        self._secret = bytes(secret)
        self._time_step = time_step
        self._digits = digits
        self._digest = digest

    def generate_code(self, at: datetime | None = None) -> str:
        """Return the code for the step containing `at` (default: now)."""
        return self._hotp(self._counter(at))

    def validate_code(self, code: str, at: datetime | None = None, window: int = 1) -> bool:
        """Return True if `code` matches any step within +/- `window` of `at`."""
        if window < 0:
            raise ValidationError("window must not be negative")
        counter = self._counter(at)
        submitted = code.encode("utf-8")
        matched = False
        for offset in range(-window, window + 1):
            if counter + offset < 0:
                continue
            # No early exit: every candidate is compared.
            if hmac.compare_digest(self._hotp(counter + offset).encode("utf-8"), submitted):
                matched = True
        return matched

    def _counter(self, at: datetime | None) -> int:
        at = at or datetime.now(timezone.utc)
        return int(at.timestamp()) // self._time_step

    def _hotp(self, counter: int) -> str:
        mac = hmac.new(self._secret, struct.pack(">Q", counter), self._digest).digest()
        offset = mac[-1] & 0x0F
        (binary,) = struct.unpack(">I", mac[offset : offset + 4])
        return str((binary & 0x7FFFFFFF) % (10**self._digits)).zfill(self._digits)
