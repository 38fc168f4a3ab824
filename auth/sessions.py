"""
auth/sessions.py -- Session token lifecycle: issue, verify, rotate, revoke.

Security design decisions:
  Signing: python-jose with HS256 only. The header is inspected before
       decoding and anything other than HS256 (including "none") is refused,
       then jose is told to accept HS256 alone.

  Two checks per verification, both required:
       1. Stateless -- signature, "type" discriminator, and every standard
          claim (iss, sub, aud, exp, iat, nbf, jti) present and within policy.
          Time checks use the injected clock, not jose's wall clock.
       2. Stateful -- SHA-256(token) must match a live SessionRecord for the
          token's subject. This is what makes sign-out and "revoke all
          devices" effective before a token's natural expiry.

  One answer to the caller: every verification failure raises
       InvalidTokenError("invalid token"). The real reason is logged here and
       nowhere else, so callers cannot be used as an oracle.

  Fail closed: a store error on issuance raises PersistenceError and nothing
       is returned; a store error on verification is a failed verification.

  Custom claims: only JSON scalars and flat lists of scalars, and never a
       standard claim name (see auth/models.validate_custom_claims).

Lifecycle of a pair: issued -> active -> rotated | revoked | expired -> purged.
Expiry is detected lazily on the next read; purging piggy-backs on revoke and
issuance calls rather than a scheduled job.

Layer rule: no imports from api/, secure/, or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ACCESS, REFRESH, SessionRecord, TokenClaims, TokenPair, validate_custom_claims
from auth.tokens import hash_token
from core.errors import InvalidTokenError, PersistenceError, ValidationError

if TYPE_CHECKING:
    from auth.store import SessionStore

logger = logging.getLogger("konabra.auth")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "Bearer"
MIN_SECRET_BYTES = 32

DEFAULT_ACCESS_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TTL = timedelta(days=30)

# jose only checks the signature; every claim is checked below against the
# injected clock and configured policy.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iat": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
    "verify_at_hash": False,
}


class _Rejected(Exception):
    """Internal: carries the precise reason a token failed. Never leaves this module."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fingerprint(token_hash: str) -> str:
    return token_hash[:12]


class SessionTokenManager:
    """Issue and check bearer session tokens backed by a revocation store.

    Holds only immutable policy and a store handle, so one instance serves
    all request threads.

    Usage:
        manager = SessionTokenManager(store, secret, issuer="konabra", audience=["konabra"])
        pair = manager.create_token("user-1", {"roles": ["reporter"]})
        claims = manager.verify_access_token(pair.access_token)
        manager.revoke_token("user-1", pair.refresh_token)     # sign out this device
        manager.revoke_all_tokens("user-1")                    # sign out everywhere
    """

    def __init__(
        self,
        store: SessionStore,
        secret: str,
        issuer: str,
        audience: list[str],
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not isinstance(secret, str) or len(secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValidationError(f"signing secret must be at least {MIN_SECRET_BYTES} bytes")
        if not issuer:
            raise ValidationError("issuer must not be empty")
        if not audience or not all(isinstance(a, str) and a for a in audience):
            raise ValidationError("audience must be a non-empty list of strings")
        if access_ttl <= timedelta(0) or refresh_ttl <= timedelta(0):
            raise ValidationError("token lifetimes must be positive")
        if refresh_ttl < access_ttl:
            raise ValidationError("refresh token lifetime must not be shorter than the access token lifetime")
        self._store = store
        self._secret = secret
        self._issuer = issuer
        self._audience = tuple(audience)
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def create_token(self, subject: str, claims: dict | None = None) -> TokenPair:
        """Issue an access/refresh pair for subject and record it.

        claims are added to the access token only. Raises ValidationError for
        an empty subject or unsupported claims, PersistenceError if the record
        cannot be stored (in which case no tokens are returned).
        """
        if not isinstance(subject, str) or not subject:
            raise ValidationError("subject must not be empty")
        custom = validate_custom_claims(claims)

        # JWT time claims are whole seconds; keep the record in step with them.
        now = self._clock().replace(microsecond=0)
        self._purge_expired_quietly(subject, now)

        access_expires_at = now + self._access_ttl
        refresh_expires_at = now + self._refresh_ttl
        access_token = self._encode(subject, now, access_expires_at, ACCESS, custom)
        refresh_token = self._encode(subject, now, refresh_expires_at, REFRESH, {})

        record = SessionRecord(
            id=str(uuid.uuid4()),
            subject=subject,
            token_type=_TOKEN_TYPE,
            issued_at=now,
            access_token_hash=hash_token(access_token),
            access_token_expires_at=access_expires_at,
            refresh_token_hash=hash_token(refresh_token),
            refresh_token_expires_at=refresh_expires_at,
        )
        try:
            self._store.create(record)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist session for subject=%s: %s", subject, exc)
            raise PersistenceError("could not persist session record") from exc

        logger.info("Issued session %s for subject=%s", record.id, subject)
        return TokenPair(
            token_type=_TOKEN_TYPE,
            access_token=access_token,
            access_token_expires_at=access_expires_at,
            refresh_token=refresh_token,
            refresh_token_expires_at=refresh_expires_at,
        )

    def rotate_tokens(self, refresh_token: str, claims: dict | None = None) -> TokenPair:
        """Exchange a live refresh token for a new pair.

        The old record is deleted before the new pair is issued; of two
        concurrent rotations with the same refresh token only the one that
        deletes the record wins, the other gets InvalidTokenError.

        The two steps are not one transaction. If issuing the new pair fails
        with PersistenceError the old refresh token is already spent and the
        subject has to sign in again.
        """
        verified = self.verify_refresh_token(refresh_token)
        token_hash = hash_token(refresh_token)
        try:
            removed = self._store.delete_by_hash(verified.subject, token_hash)
        except SQLAlchemyError as exc:
            logger.error("Failed to retire refresh token %s: %s", _fingerprint(token_hash), exc)
            raise PersistenceError("could not retire refresh token") from exc
        if removed == 0:
            logger.warning("Refresh token %s was already used or revoked", _fingerprint(token_hash))
            raise InvalidTokenError()
        return self.create_token(verified.subject, claims)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(ACCESS, token)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(REFRESH, token)

    def _verify(self, kind: str, token: str) -> TokenClaims:
        try:
            return self._check(kind, token)
        except _Rejected as exc:
            logger.warning("Rejected %s token: %s", kind, exc)
            raise InvalidTokenError() from None

    def _check(self, kind: str, token: str) -> TokenClaims:
        if not isinstance(token, str) or not token:
            raise _Rejected("missing token")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise _Rejected(f"malformed token: {exc}") from exc
        if header.get("alg") != _ALGORITHM:
            raise _Rejected(f"unexpected signing algorithm {header.get('alg')!r}")

        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM], options=_DECODE_OPTIONS)
        except JWTError as exc:
            raise _Rejected(f"signature check failed: {exc}") from exc

        try:
            claims = TokenClaims.from_payload(payload)
        except ValueError as exc:
            raise _Rejected(str(exc)) from exc

        if claims.kind != kind:
            raise _Rejected(f"expected a {kind} token, got {claims.kind!r}")

        now = self._clock()
        if claims.expires_at <= now:
            raise _Rejected("token has expired")
        if claims.not_before > now:
            raise _Rejected("token not valid yet")
        if claims.issued_at > now:
            raise _Rejected("token issued in the future")
        if claims.issuer != self._issuer:
            raise _Rejected(f"unexpected issuer {claims.issuer!r}")
        if not set(claims.audience) & set(self._audience):
            raise _Rejected(f"unexpected audience {claims.audience!r}")

        token_hash = hash_token(token)
        try:
            record = self._store.find_active(claims.subject, token_hash, kind, now)
        except SQLAlchemyError as exc:
            # An unreachable store must never read as "not revoked".
            logger.error("Session store lookup failed: %s", exc)
            raise _Rejected("session store unavailable") from exc
        if record is None:
            raise _Rejected(f"no live session for token {_fingerprint(token_hash)}")
        return claims

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_token(self, subject: str, token: str) -> int:
        """Delete the session holding token, plus subject's expired sessions.

        Returns the number of records removed.
        """
        if not subject:
            raise ValidationError("subject must not be empty")
        token_hash = hash_token(token)
        now = self._clock()
        try:
            if not token_hash:
                removed = self._store.delete_expired(subject, now)
            else:
                removed = self._store.delete_by_hash_or_expired(subject, token_hash, now)
        except SQLAlchemyError as exc:
            logger.error("Failed to revoke token for subject=%s: %s", subject, exc)
            raise PersistenceError("could not revoke token") from exc
        logger.info("Revoked %d session(s) for subject=%s", removed, subject)
        return removed

    def revoke_all_tokens(self, subject: str) -> int:
        """Delete every session for subject (sign out on all devices)."""
        if not subject:
            raise ValidationError("subject must not be empty")
        try:
            removed = self._store.delete_for_subject(subject)
        except SQLAlchemyError as exc:
            logger.error("Failed to revoke sessions for subject=%s: %s", subject, exc)
            raise PersistenceError("could not revoke sessions") from exc
        logger.info("Revoked all %d session(s) for subject=%s", removed, subject)
        return removed

    def revoke_expired_tokens(self, subject: str) -> int:
        """Delete subject's sessions whose tokens have all expired. Table hygiene only."""
        if not subject:
            raise ValidationError("subject must not be empty")
        try:
            return self._store.delete_expired(subject, self._clock())
        except SQLAlchemyError as exc:
            raise PersistenceError("could not purge expired sessions") from exc

    def _purge_expired_quietly(self, subject: str, now: datetime) -> None:
        try:
            removed = self._store.delete_expired(subject, now)
        except SQLAlchemyError:
            logger.exception("Expired-session sweep failed for subject=%s; continuing", subject)
            return
        if removed:
            logger.debug("Purged %d expired session(s) for subject=%s", removed, subject)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode(self, subject: str, issued_at: datetime, expires_at: datetime, kind: str, custom: dict) -> str:
        payload = dict(custom)
        payload.update(
            {
                "iss": self._issuer,
                "sub": subject,
                "aud": list(self._audience),
                "exp": int(expires_at.timestamp()),
                "iat": int(issued_at.timestamp()),
                "nbf": int(issued_at.timestamp()),
                "jti": str(uuid.uuid4()),
                "type": kind,
            }
        )
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)
