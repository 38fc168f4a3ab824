"""
core/errors.py -- Exception taxonomy shared by auth/, secure/ and cache/.

Every failure the authentication core can raise derives from KonabraError so
the HTTP layer can install one handler per family instead of catching
library exceptions piecemeal.

  ValidationError      -- bad input rejected before any side effect.
  VerificationError    -- a credential failed to verify. Subclasses carry a
                          machine-readable `reason` for server-side logging;
                          callers facing a remote client should collapse them
                          into one generic "invalid" answer.
  PersistenceError     -- the session store failed. Aborts issuance; during
                          verification it is converted into InvalidTokenError
                          so an unreachable store never reads as "not revoked".

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
secure/, or cache/.
"""

from __future__ import annotations


class KonabraError(Exception):
    """Base class for every error raised by the authentication core."""


class ValidationError(KonabraError, ValueError):
    """Input rejected before any work was done (empty subject, short secret, bad code kind)."""


class PersistenceError(KonabraError):
    """The session-record store could not complete an operation."""


# ---------------------------------------------------------------------------
# Verification failures
# ---------------------------------------------------------------------------


class VerificationError(KonabraError):
    """A token, code, or envelope did not verify."""

    reason = "invalid"


class CryptographicError(VerificationError):
    """Signature, algorithm, ciphertext, or encoding check failed."""

    reason = "invalid"


class InvalidTokenError(CryptographicError):
    """Generic session-token failure. Never says which check failed."""

    reason = "invalid-token"

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class SignatureError(CryptographicError):
    reason = "signature-invalid"


class DecryptionError(CryptographicError):
    reason = "decrypt-failure"


class EnvelopeDecodeError(CryptographicError):
    reason = "decode-failure"


class CiphertextTooShortError(CryptographicError):
    reason = "ciphertext-too-short"


class ExpiryError(VerificationError):
    """The credential was authentic but its lifetime is over."""

    reason = "expired"


class ValueMismatchError(VerificationError):
    """The envelope was authentic but the submitted value does not match."""

    reason = "value-mismatch"
