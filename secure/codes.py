"""
secure/codes.py -- Random secret generators for tokens and short codes.

Every character is drawn with secrets.choice(), which uses the OS CSPRNG and
rejection sampling, so there is no modulo bias toward the start of the
alphabet.
"""

from __future__ import annotations

import secrets
import string

from core.errors import ValidationError

NUMERIC = "numeric"
ALPHANUMERIC = "alphanumeric"

_ALPHABETS: dict[str, str] = {
    NUMERIC: string.digits,
    ALPHANUMERIC: string.ascii_letters + string.digits,
}


def generate_code(kind: str, length: int) -> str:
    """Return a random code of `length` characters drawn from the `kind` alphabet.

    Raises ValidationError for an unknown kind or a non-positive length.
    """
    alphabet = _ALPHABETS.get(kind)
    if alphabet is None:
        raise ValidationError(f"invalid code type {kind!r}; expected one of {sorted(_ALPHABETS)}")
    if length <= 0:
        raise ValidationError(f"code length must be positive, got {length}")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_numeric_code(length: int) -> str:
    return generate_code(NUMERIC, length)


def generate_alphanumeric_code(length: int) -> str:
    return generate_code(ALPHANUMERIC, length)
