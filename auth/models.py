"""
auth/models.py -- Domain dataclasses for session tokens.

Pattern: Data class. SessionRecord mirrors one row of the session_tokens
table; TokenPair is what a sign-in hands back to the client; TokenClaims is
the typed view of a verified JWT payload.

Layer rule: no imports from api/, secure/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

from core.errors import ValidationError

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)

# Standard claims plus the kind discriminator. Callers may not set these.
RESERVED_CLAIMS = frozenset({"iss", "sub", "aud", "exp", "iat", "nbf", "jti", "type"})

Scalar = Union[str, int, float, bool, None]
ClaimValue = Union[Scalar, list]


@dataclass
class SessionRecord:
    """One issued token pair, stored by digest only.

    access_token_hash / refresh_token_hash are SHA-256 hex digests of the
    encoded JWTs. The raw tokens are never persisted: a leaked table lets an
    attacker see and revoke sessions, not use them.
    """

    id: str
    subject: str
    issued_at: datetime
    access_token_hash: str
    access_token_expires_at: datetime
    refresh_token_hash: str
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"

    def is_expired(self, now: datetime) -> bool:
        return self.access_token_expires_at < now and self.refresh_token_expires_at < now


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh token pair returned to the client after sign-in."""

    token_type: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime


def _is_scalar(value) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def validate_custom_claims(claims: dict | None) -> dict[str, ClaimValue]:
    """Return a copy of claims after checking keys and value types.

    Values must be JSON scalars or flat lists of scalars (e.g. roles).
    Nested mappings, bytes, datetimes and arbitrary objects are refused, as
    are keys that would shadow a standard claim.
    """
    checked: dict[str, ClaimValue] = {}
    for key, value in (claims or {}).items():
        if not isinstance(key, str) or not key:
            raise ValidationError("claim names must be non-empty strings")
        if key in RESERVED_CLAIMS:
            raise ValidationError(f"claim {key!r} is reserved")
        if isinstance(value, (list, tuple)):
            if not all(_is_scalar(v) and v is not None for v in value):
                raise ValidationError(f"claim {key!r} must be a list of scalars")
            checked[key] = list(value)
        elif _is_scalar(value):
            checked[key] = value
        else:
            raise ValidationError(f"claim {key!r} has unsupported type {type(value).__name__}")
    return checked


@dataclass(frozen=True)
class TokenClaims:
    """Verified JWT payload decoded into fixed fields plus a checked extension map."""

    issuer: str
    subject: str
    audience: list[str]
    expires_at: datetime
    issued_at: datetime
    not_before: datetime
    token_id: str
    kind: str
    extra: dict[str, ClaimValue] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> TokenClaims:
        """Build claims from a signature-checked payload.

        Raises ValueError when a standard claim is missing or mistyped.
        """
        for name in ("iss", "sub", "jti", "type"):
            if not isinstance(payload.get(name), str) or not payload[name]:
                raise ValueError(f"missing or invalid {name!r} claim")
        for name in ("exp", "iat", "nbf"):
            value = payload.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"missing or invalid {name!r} claim")
        aud = payload.get("aud")
        if isinstance(aud, str):
            aud = [aud]
        if not isinstance(aud, list) or not all(isinstance(a, str) for a in aud):
            raise ValueError("missing or invalid 'aud' claim")

        extra = {k: v for k, v in payload.items() if k not in RESERVED_CLAIMS}
        try:
            extra = validate_custom_claims(extra)
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc

        return cls(
            issuer=payload["iss"],
            subject=payload["sub"],
            audience=aud,
            expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
            not_before=datetime.fromtimestamp(payload["nbf"], timezone.utc),
            token_id=payload["jti"],
            kind=payload["type"],
            extra=extra,
        )

    @property
    def roles(self) -> list[str]:
        """Roles from the "roles" claim; accepts a single string or a list."""
        value = self.extra.get("roles")
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [r for r in value if isinstance(r, str)]
        return []

    def get(self, name: str, default=None):
        return self.extra.get(name, default)
