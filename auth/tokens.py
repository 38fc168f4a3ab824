"""
auth/tokens.py -- Hashing helpers shared by the session and identity layers.

Security design decisions:
  Token digests: session tokens are stored as SHA-256(token) hex. A JWT
       already carries a random jti and ~256 bits of HMAC output, so a plain
       digest is enough to make stored values useless for forging requests,
       and it keeps revocation lookups O(1) by unique index.

  Passwords: bcrypt, used directly. Bcrypt is the right choice for
       low-entropy secrets because its cost factor makes brute-force
       expensive; it is the wrong choice for tokens, which are high-entropy
       and looked up on every request.

  Bearer extraction: a header that is present but malformed is treated the
       same as a missing one -- the caller gets None and answers 401.

Layer rule: no imports from api/, secure/, or cache/.
"""

from __future__ import annotations

import hashlib

import bcrypt

_BEARER_PREFIX = "Bearer "

# ---------------------------------------------------------------------------
# Token digests
# ---------------------------------------------------------------------------


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest of an encoded token, or "" for an empty token."""
    if not token:
        return ""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_bearer_token(header: str | None) -> str | None:
    """Return the credential from an `Authorization: Bearer <token>` header value."""
    if not header or not header.startswith(_BEARER_PREFIX):
        return None
    token = header[len(_BEARER_PREFIX) :].strip()
    return token or None


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes and recent releases reject longer
    inputs outright, so callers cap password length at the form layer.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input.
        return False
