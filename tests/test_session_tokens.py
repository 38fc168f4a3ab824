"""Unit tests for auth/sessions.py -- SessionTokenManager.

Covers:
- Issuance: claims layout, persisted digests (never raw tokens), TTL policy
- Verification: both stateless and stateful checks, kind discriminator
- Forgery: other key, other algorithm, "none" algorithm, tampered payload
- Revocation: single token, all tokens per subject, expired sweep
- Rotation: refresh token is single-use
- Fail-closed behaviour when the store errors
- Input validation
"""

from __future__ import annotations

import base64
import json
from datetime import timedelta

import pytest
from jose import jwt
from sqlalchemy.exc import OperationalError

from auth.models import SessionRecord, TokenPair
from auth.sessions import SessionTokenManager
from auth.tokens import hash_token
from core.errors import InvalidTokenError, PersistenceError, ValidationError
from conftest import AUDIENCE, ISSUER, SECRET

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _unverified_payload(token: str) -> dict:
    return jwt.get_unverified_claims(token)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


class _BrokenStore:
    """Store double whose every call fails like an unreachable database."""

    def _fail(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    create = find_active = delete_for_subject = delete_expired = _fail
    delete_by_hash = delete_by_hash_or_expired = _fail


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class TestCreateToken:
    def test_access_token_claims(self, token_manager):
        pair = token_manager.create_token("user-1", {"roles": ["reporter"]})
        payload = _unverified_payload(pair.access_token)
        assert payload["sub"] == "user-1"
        assert payload["type"] == "access"
        assert payload["roles"] == ["reporter"]
        assert payload["iss"] == ISSUER
        assert payload["aud"] == AUDIENCE
        for claim in ("exp", "iat", "nbf", "jti"):
            assert claim in payload

    def test_refresh_token_carries_no_custom_claims(self, token_manager):
        pair = token_manager.create_token("user-1", {"roles": ["reporter"]})
        payload = _unverified_payload(pair.refresh_token)
        assert payload["type"] == "refresh"
        assert "roles" not in payload

    def test_default_lifetimes(self, token_manager, clock):
        pair = token_manager.create_token("user-1")
        assert isinstance(pair, TokenPair)
        assert pair.token_type == "Bearer"
        assert pair.access_token_expires_at == clock.now + timedelta(minutes=15)
        assert pair.refresh_token_expires_at == clock.now + timedelta(days=30)

    def test_only_digests_are_persisted(self, token_manager, session_store):
        pair = token_manager.create_token("user-1")
        [record] = session_store.list_for_subject("user-1")
        assert record.access_token_hash == hash_token(pair.access_token)
        assert record.refresh_token_hash == hash_token(pair.refresh_token)
        stored = json.dumps([str(v) for v in vars(record).values()])
        assert pair.access_token not in stored
        assert pair.refresh_token not in stored

    def test_one_record_per_issuance(self, token_manager, session_store):
        token_manager.create_token("user-1")
        token_manager.create_token("user-1")
        assert session_store.count_for_subject("user-1") == 2

    @pytest.mark.parametrize("subject", ["", None])
    def test_empty_subject_rejected(self, token_manager, session_store, subject):
        with pytest.raises(ValidationError):
            token_manager.create_token(subject)

    @pytest.mark.parametrize(
        "claims",
        [
            {"profile": {"nested": True}},
            {"sub": "someone-else"},
            {"type": "refresh"},
            {"roles": [{"admin": True}]},
            {"blob": b"raw-bytes"},
        ],
    )
    def test_structured_or_reserved_claims_rejected(self, token_manager, session_store, claims):
        with pytest.raises(ValidationError):
            token_manager.create_token("user-1", claims)
        assert session_store.count_for_subject("user-1") == 0

    def test_scalar_claims_accepted(self, token_manager):
        claims = {"email": "a@example.com", "phoneNumber": None, "age": 31, "verified": True, "score": 0.5}
        pair = token_manager.create_token("user-1", claims)
        verified = token_manager.verify_access_token(pair.access_token)
        assert verified.get("email") == "a@example.com"
        assert verified.get("verified") is True
        assert verified.get("phoneNumber") is None

    def test_persistence_failure_aborts_issuance(self, clock):
        manager = SessionTokenManager(_BrokenStore(), secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock)
        with pytest.raises(PersistenceError):
            manager.create_token("user-1")

    def test_issuance_sweeps_expired_records(self, token_manager, session_store, clock):
        token_manager.create_token("user-1")
        clock.advance(days=31)
        token_manager.create_token("user-1")
        assert session_store.count_for_subject("user-1") == 1


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerify:
    def test_fresh_access_token_verifies(self, token_manager):
        pair = token_manager.create_token("user-1", {"roles": ["reporter"]})
        claims = token_manager.verify_access_token(pair.access_token)
        assert claims.subject == "user-1"
        assert claims.kind == "access"
        assert claims.roles == ["reporter"]
        assert claims.issuer == ISSUER

    def test_refresh_token_verifies_as_refresh_only(self, token_manager):
        pair = token_manager.create_token("user-1")
        assert token_manager.verify_refresh_token(pair.refresh_token).kind == "refresh"
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            token_manager.verify_refresh_token(pair.access_token)

    def test_access_token_expires(self, token_manager, clock):
        pair = token_manager.create_token("user-1")
        clock.advance(minutes=14, seconds=59)
        token_manager.verify_access_token(pair.access_token)
        clock.advance(seconds=2)
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(pair.access_token)
        # The refresh token outlives it.
        assert token_manager.verify_refresh_token(pair.refresh_token).subject == "user-1"

    def test_forged_with_other_key_fails(self, token_manager, clock):
        pair = token_manager.create_token("user-1", {"roles": ["reporter"]})
        claims = _unverified_payload(pair.access_token)
        forged = jwt.encode(claims, "x" * 48, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(forged)

    def test_other_hmac_algorithm_rejected(self, token_manager):
        pair = token_manager.create_token("user-1")
        claims = _unverified_payload(pair.access_token)
        other_alg = jwt.encode(claims, SECRET, algorithm="HS512")
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(other_alg)

    def test_none_algorithm_rejected(self, token_manager):
        pair = token_manager.create_token("user-1")
        claims = _unverified_payload(pair.access_token)
        header = _b64url(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        body = _b64url(json.dumps(claims).encode())
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(f"{header}.{body}.")

    def test_tampered_payload_rejected(self, token_manager):
        pair = token_manager.create_token("user-1", {"roles": ["reporter"]})
        header, body, signature = pair.access_token.split(".")
        claims = _unverified_payload(pair.access_token)
        claims["roles"] = ["admin"]
        tampered = ".".join([header, _b64url(json.dumps(claims).encode()), signature])
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(tampered)

    def test_signed_but_unrecorded_token_rejected(self, token_manager, clock):
        """A correctly signed token with no session record (never issued here) fails."""
        now = int(clock.now.timestamp())
        stray = jwt.encode(
            {
                "iss": ISSUER,
                "sub": "user-1",
                "aud": AUDIENCE,
                "exp": now + 600,
                "iat": now,
                "nbf": now,
                "jti": "stray",
                "type": "access",
            },
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(stray)

    @pytest.mark.parametrize("missing", ["exp", "iat", "nbf", "iss", "aud", "sub", "jti", "type"])
    def test_missing_standard_claim_rejected(self, token_manager, missing):
        pair = token_manager.create_token("user-1")
        claims = _unverified_payload(pair.access_token)
        del claims[missing]
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(jwt.encode(claims, SECRET, algorithm="HS256"))

    def test_token_from_the_future_rejected(self, token_manager, clock):
        pair = token_manager.create_token("user-1")
        clock.advance(seconds=-30)
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(pair.access_token)
        clock.advance(seconds=30)
        assert token_manager.verify_access_token(pair.access_token).subject == "user-1"

    def test_not_before_in_the_future_rejected(self, token_manager, session_store, clock):
        """A recorded, correctly signed token is still refused before its nbf."""
        now = int(clock.now.timestamp())
        early = jwt.encode(
            {
                "iss": ISSUER,
                "sub": "user-1",
                "aud": AUDIENCE,
                "exp": now + 600,
                "iat": now,
                "nbf": now + 60,
                "jti": "early",
                "type": "access",
            },
            SECRET,
            algorithm="HS256",
        )
        session_store.create(
            SessionRecord(
                id="early-session",
                subject="user-1",
                issued_at=clock.now,
                access_token_hash=hash_token(early),
                access_token_expires_at=clock.now + timedelta(minutes=10),
                refresh_token_hash="unused-refresh-digest",
                refresh_token_expires_at=clock.now + timedelta(days=1),
            )
        )
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(early)
        clock.advance(seconds=61)
        assert token_manager.verify_access_token(early).subject == "user-1"

    def test_wrong_audience_or_issuer_rejected(self, session_store, clock):
        issuer_a = SessionTokenManager(session_store, secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock)
        other_aud = SessionTokenManager(session_store, secret=SECRET, issuer=ISSUER, audience=["admin"], clock=clock)
        other_iss = SessionTokenManager(session_store, secret=SECRET, issuer="elsewhere", audience=AUDIENCE, clock=clock)
        pair = issuer_a.create_token("user-1")
        with pytest.raises(InvalidTokenError):
            other_aud.verify_access_token(pair.access_token)
        with pytest.raises(InvalidTokenError):
            other_iss.verify_access_token(pair.access_token)

    def test_error_message_is_generic(self, token_manager):
        with pytest.raises(InvalidTokenError) as excinfo:
            token_manager.verify_access_token("garbage")
        assert str(excinfo.value) == "invalid token"

    @pytest.mark.parametrize("token", ["", None, "a.b", "a.b.c"])
    def test_malformed_tokens(self, token_manager, token):
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(token)

    def test_store_failure_fails_closed(self, token_manager, clock):
        pair = token_manager.create_token("user-1")
        broken = SessionTokenManager(_BrokenStore(), secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock)
        with pytest.raises(InvalidTokenError):
            broken.verify_access_token(pair.access_token)


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevocation:
    def test_revoked_access_token_fails(self, token_manager):
        pair = token_manager.create_token("user-1")
        token_manager.verify_access_token(pair.access_token)
        assert token_manager.revoke_token("user-1", pair.access_token) == 1
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(pair.access_token)

    def test_revoking_by_refresh_token_kills_the_pair(self, token_manager):
        pair = token_manager.create_token("user-1")
        token_manager.revoke_token("user-1", pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            token_manager.verify_access_token(pair.access_token)
        with pytest.raises(InvalidTokenError):
            token_manager.verify_refresh_token(pair.refresh_token)

    def test_revoke_leaves_other_devices(self, token_manager):
        phone = token_manager.create_token("user-1")
        laptop = token_manager.create_token("user-1")
        token_manager.revoke_token("user-1", phone.access_token)
        assert token_manager.verify_access_token(laptop.access_token).subject == "user-1"

    def test_revoke_requires_matching_subject(self, token_manager):
        pair = token_manager.create_token("user-1")
        assert token_manager.revoke_token("user-2", pair.access_token) == 0
        token_manager.verify_access_token(pair.access_token)

    def test_revoke_sweeps_expired_records(self, token_manager, session_store, clock):
        token_manager.create_token("user-1")
        clock.advance(days=31)
        fresh = token_manager.create_token("user-2")
        assert token_manager.revoke_token("user-1", "unknown-token") == 1
        assert session_store.count_for_subject("user-1") == 0
        token_manager.verify_access_token(fresh.access_token)

    def test_revoke_all_is_per_subject(self, token_manager):
        a1 = token_manager.create_token("subject-a")
        a2 = token_manager.create_token("subject-a")
        b1 = token_manager.create_token("subject-b")

        assert token_manager.revoke_all_tokens("subject-a") == 2

        for pair in (a1, a2):
            with pytest.raises(InvalidTokenError):
                token_manager.verify_access_token(pair.access_token)
            with pytest.raises(InvalidTokenError):
                token_manager.verify_refresh_token(pair.refresh_token)
        assert token_manager.verify_access_token(b1.access_token).subject == "subject-b"
        assert token_manager.verify_refresh_token(b1.refresh_token).subject == "subject-b"

    def test_revoke_expired_tokens_keeps_live_sessions(self, token_manager, session_store, clock):
        token_manager.create_token("user-1")
        clock.advance(days=20)
        live = token_manager.create_token("user-1")
        clock.advance(days=11)
        assert token_manager.revoke_expired_tokens("user-1") == 1
        assert token_manager.verify_refresh_token(live.refresh_token).subject == "user-1"

    def test_record_with_only_access_expired_is_kept(self, token_manager, session_store, clock):
        pair = token_manager.create_token("user-1")
        clock.advance(hours=1)
        assert token_manager.revoke_expired_tokens("user-1") == 0
        token_manager.verify_refresh_token(pair.refresh_token)

    def test_revocation_store_failure_propagates(self, clock):
        manager = SessionTokenManager(_BrokenStore(), secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock)
        with pytest.raises(PersistenceError):
            manager.revoke_token("user-1", "token")
        with pytest.raises(PersistenceError):
            manager.revoke_all_tokens("user-1")
        with pytest.raises(PersistenceError):
            manager.revoke_expired_tokens("user-1")


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


class TestRotation:
    def test_rotate_issues_new_pair_and_retires_old(self, token_manager, clock):
        old = token_manager.create_token("user-1", {"roles": ["reporter"]})
        clock.advance(minutes=20)
        new = token_manager.rotate_tokens(old.refresh_token, {"roles": ["reporter", "moderator"]})

        assert token_manager.verify_access_token(new.access_token).roles == ["reporter", "moderator"]
        with pytest.raises(InvalidTokenError):
            token_manager.verify_refresh_token(old.refresh_token)

    def test_refresh_token_is_single_use(self, token_manager):
        old = token_manager.create_token("user-1")
        token_manager.rotate_tokens(old.refresh_token)
        with pytest.raises(InvalidTokenError):
            token_manager.rotate_tokens(old.refresh_token)

    def test_failed_reissue_leaves_old_refresh_token_spent(self, session_store, clock):
        class _InsertFails:
            def __init__(self, inner):
                self._inner = inner

            def __getattr__(self, name):
                return getattr(self._inner, name)

            def create(self, record):
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        manager = SessionTokenManager(session_store, secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock)
        old = manager.create_token("user-1")
        failing = SessionTokenManager(
            _InsertFails(session_store), secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock
        )
        with pytest.raises(PersistenceError):
            failing.rotate_tokens(old.refresh_token)
        with pytest.raises(InvalidTokenError):
            manager.verify_refresh_token(old.refresh_token)

    def test_access_token_cannot_rotate(self, token_manager):
        pair = token_manager.create_token("user-1")
        with pytest.raises(InvalidTokenError):
            token_manager.rotate_tokens(pair.access_token)


# ---------------------------------------------------------------------------
# Construction policy
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_short_secret_rejected(self, session_store):
        with pytest.raises(ValidationError):
            SessionTokenManager(session_store, secret="x" * 31, issuer=ISSUER, audience=AUDIENCE)

    def test_empty_audience_rejected(self, session_store):
        with pytest.raises(ValidationError):
            SessionTokenManager(session_store, secret=SECRET, issuer=ISSUER, audience=[])

    def test_refresh_shorter_than_access_rejected(self, session_store):
        with pytest.raises(ValidationError):
            SessionTokenManager(
                session_store,
                secret=SECRET,
                issuer=ISSUER,
                audience=AUDIENCE,
                access_ttl=timedelta(hours=2),
                refresh_ttl=timedelta(hours=1),
            )

    def test_custom_ttls(self, session_store, clock):
        manager = SessionTokenManager(
            session_store,
            secret=SECRET,
            issuer=ISSUER,
            audience=AUDIENCE,
            access_ttl=timedelta(seconds=5),
            refresh_ttl=timedelta(hours=1),
            clock=clock,
        )
        pair = manager.create_token("user-1")
        clock.advance(seconds=6)
        with pytest.raises(InvalidTokenError):
            manager.verify_access_token(pair.access_token)
        manager.verify_refresh_token(pair.refresh_token)
