"""
secure/protector.py -- Encrypt-then-MAC envelopes for one-time tokens and codes.

A Protector turns a short secret (a 32-character token or a 6-digit code)
plus caller metadata and an expiry into an opaque, base64 "signature" string.
Later, the caller hands the signature back together with whatever the user
typed; the Protector proves the envelope is one it issued, that it has not
expired, and that the typed value matches. The server keeps no per-code state
beyond what the caller chooses to correlate (see cache/store.py).

Key derivation:
  HKDF-SHA256(master_key, info=_HKDF_INFO) -> 64 bytes
    bytes  0..31 -> AES-256-GCM key
    bytes 32..63 -> HMAC-SHA256 key
  One provisioned secret, two independent subkeys.

Wire format (all base64 is standard alphabet with padding):
  envelope   = b64( json{"version", "payload", "signature"} )
  payload    = b64( nonce(12) || AES-GCM ciphertext || tag(16) )
  signature  = b64( HMAC-SHA256(payload + "|" + version) )
  plaintext  = json{"value", "metadata", "version", "expiresAt"}

The MAC covers the encoded ciphertext and the version string together, so a
tampered version label fails the MAC before any version-specific decoding
runs. Encodings are canonical: an envelope that decodes to the same bytes
through a non-canonical base64 or JSON spelling is rejected, so no two
distinct strings verify as the same envelope.

Verification order:
  decode envelope -> constant-time MAC check -> version lookup ->
  AES-GCM decrypt -> decode plaintext -> expiry -> value comparison

Security note:
  Never log plaintext values, ciphertext, or keys. Failure reasons only.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from core.errors import (
    CiphertextTooShortError,
    DecryptionError,
    EnvelopeDecodeError,
    ExpiryError,
    SignatureError,
    ValidationError,
    ValueMismatchError,
    VerificationError,
)
from secure.codes import generate_alphanumeric_code, generate_code

logger = logging.getLogger("konabra.secure")

MASTER_KEY_SIZE = 64
KEY_LENGTH = 32  # AES-256 and HMAC-SHA256 subkeys
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16
TOKEN_LENGTH = 32

ENVELOPE_VERSION = "v1"

# Longest envelope string accepted for decoding or produced on issuance.
MAX_ENVELOPE_LENGTH = 16 * 1024

_HKDF_INFO = b"konabra-protector-key-derivation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(text: str, error: type[VerificationError], what: str) -> bytes:
    """Strict, canonical base64 decode. Raises `error` on any deviation."""
    if not isinstance(text, str):
        raise error(f"{what} is not a string")
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise error(f"{what} is not valid base64") from exc
    # Unused trailing bits make several spellings decode to the same bytes.
    if _b64encode(raw) != text:
        raise error(f"{what} is not canonical base64")
    return raw


def _dump_json(obj: dict) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=True).encode("ascii")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Envelope:
    """Versioned container exchanged with callers as an opaque string."""

    version: str
    payload: str  # base64 of nonce || ciphertext || tag
    signature: str  # base64 of the envelope MAC

    def encode(self) -> str:
        return _b64encode(self._to_json())

    @classmethod
    def decode(cls, encoded: str) -> Envelope:
        if isinstance(encoded, str) and len(encoded) > MAX_ENVELOPE_LENGTH:
            raise EnvelopeDecodeError("envelope exceeds maximum length")
        raw = _b64decode(encoded, EnvelopeDecodeError, "envelope")
        try:
            doc = json.loads(raw)
        except (UnicodeDecodeError, ValueError, RecursionError) as exc:
            raise EnvelopeDecodeError("envelope is not valid JSON") from exc
        if not isinstance(doc, dict) or set(doc) != {"version", "payload", "signature"}:
            raise EnvelopeDecodeError("envelope has unexpected shape")
        if not all(isinstance(doc[k], str) for k in doc):
            raise EnvelopeDecodeError("envelope fields must be strings")
        envelope = cls(version=doc["version"], payload=doc["payload"], signature=doc["signature"])
        if envelope._to_json() != raw:
            raise EnvelopeDecodeError("envelope is not canonical JSON")
        return envelope

    def _to_json(self) -> bytes:
        return _dump_json({"version": self.version, "payload": self.payload, "signature": self.signature})


@dataclass(frozen=True)
class _Payload:
    value: str
    metadata: dict[str, str]
    version: str
    expires_at: float  # Unix seconds

    def to_json(self) -> bytes:
        return _dump_json(
            {
                "value": self.value,
                "metadata": self.metadata,
                "version": self.version,
                "expiresAt": self.expires_at,
            }
        )


def _decode_v1_payload(plain: bytes) -> _Payload:
    try:
        doc = json.loads(plain)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise EnvelopeDecodeError("payload is not valid JSON") from exc
    if not isinstance(doc, dict):
        raise EnvelopeDecodeError("payload has unexpected shape")
    value = doc.get("value")
    metadata = doc.get("metadata", {})
    version = doc.get("version")
    expires_at = doc.get("expiresAt")
    if not isinstance(value, str) or not isinstance(version, str):
        raise EnvelopeDecodeError("payload value/version missing")
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
        raise EnvelopeDecodeError("payload expiresAt missing")
    if not isinstance(metadata, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
    ):
        raise EnvelopeDecodeError("payload metadata malformed")
    return _Payload(value=value, metadata=metadata, version=version, expires_at=float(expires_at))


# Plaintext decoders keyed by the MAC-protected envelope version. A new wire
# version adds an entry here; existing "v1" envelopes keep verifying as-is.
_PAYLOAD_DECODERS: dict[str, Callable[[bytes], _Payload]] = {
    ENVELOPE_VERSION: _decode_v1_payload,
}


@dataclass(frozen=True)
class TokenInfo:
    value: str
    metadata: dict[str, str] = field(default_factory=dict)
    expires_at: datetime | None = None
    signature: str = ""


@dataclass(frozen=True)
class ShortCodeInfo:
    code: str
    metadata: dict[str, str] = field(default_factory=dict)
    expires_at: datetime | None = None
    signature: str = ""


# ---------------------------------------------------------------------------
# Protector
# ---------------------------------------------------------------------------


class Protector:
    """Issue and verify encrypted, signed, expiring one-time secrets.

    Holds only immutable key material after construction, so one instance
    is safe to share across threads.

    Usage:
        protector = Protector(settings.master_key_bytes())
        info = protector.generate_short_code("numeric", 6, timedelta(minutes=10), {"purpose": "verify"})
        send_sms(phone, info.code)
        ...
        protector.verify_short_code(info.signature, submitted_code)
    """

    def __init__(self, master_key: bytes, clock: Callable[[], datetime] | None = None) -> None:
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) != MASTER_KEY_SIZE:
            raise ValidationError(f"master key must be {MASTER_KEY_SIZE} bytes")
        derived = HKDF(
            algorithm=hashes.SHA256(),
            length=2 * KEY_LENGTH,
            salt=None,  # deterministic: the same master key must yield the same subkeys
            info=_HKDF_INFO,
        ).derive(bytes(master_key))
        self._aes = AESGCM(derived[:KEY_LENGTH])
        self._hmac_key = derived[KEY_LENGTH:]
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Tokens (long, link-friendly secrets)
    # ------------------------------------------------------------------

    def generate_token(self, ttl: timedelta, metadata: dict[str, str] | None = None) -> TokenInfo:
        """Mint a 32-character alphanumeric token valid for `ttl`."""
        value = generate_alphanumeric_code(TOKEN_LENGTH)
        signature, expires_at, metadata = self._issue(value, ttl, metadata)
        return TokenInfo(value=value, metadata=metadata, expires_at=expires_at, signature=signature)

    def verify_token(self, encoded: str, expected_value: str) -> TokenInfo:
        """Verify a token envelope against the value the user submitted.

        Raises a VerificationError subclass describing the failure.
        """
        payload = self._open(encoded, expected_value, "token")
        return TokenInfo(
            value=payload.value,
            metadata=payload.metadata,
            expires_at=datetime.fromtimestamp(payload.expires_at, timezone.utc),
            signature=encoded,
        )

    # ------------------------------------------------------------------
    # Short codes (human-typeable, SMS-friendly)
    # ------------------------------------------------------------------

    def generate_short_code(
        self,
        kind: str,
        length: int,
        ttl: timedelta,
        metadata: dict[str, str] | None = None,
    ) -> ShortCodeInfo:
        """Mint a `length`-character code of `kind` ("numeric" or "alphanumeric")."""
        code = generate_code(kind, length)
        signature, expires_at, metadata = self._issue(code, ttl, metadata)
        return ShortCodeInfo(code=code, metadata=metadata, expires_at=expires_at, signature=signature)

    def verify_short_code(self, encoded: str, expected_code: str) -> ShortCodeInfo:
        payload = self._open(encoded, expected_code, "short code")
        return ShortCodeInfo(
            code=payload.value,
            metadata=payload.metadata,
            expires_at=datetime.fromtimestamp(payload.expires_at, timezone.utc),
            signature=encoded,
        )

    # ------------------------------------------------------------------
    # Shared issue / open paths
    # ------------------------------------------------------------------

    def _issue(
        self, value: str, ttl: timedelta, metadata: dict[str, str] | None
    ) -> tuple[str, datetime, dict[str, str]]:
        if not isinstance(ttl, timedelta) or ttl <= timedelta(0):
            raise ValidationError("ttl must be a positive timedelta")
        metadata = dict(metadata or {})
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()):
            raise ValidationError("metadata keys and values must be strings")
        expires_at = self._clock() + ttl
        payload = _Payload(
            value=value,
            metadata=metadata,
            version=ENVELOPE_VERSION,
            expires_at=expires_at.timestamp(),
        )
        return self._encrypt_and_sign(payload), expires_at, metadata

    def _open(self, encoded: str, expected: str, kind: str) -> _Payload:
        try:
            payload = self._decrypt_and_verify(encoded)
            if self._clock().timestamp() > payload.expires_at:
                raise ExpiryError(f"{kind} has expired")
            if not isinstance(expected, str) or not hmac.compare_digest(
                payload.value.encode("utf-8"), expected.encode("utf-8")
            ):
                raise ValueMismatchError(f"{kind} does not match")
        except VerificationError as exc:
            logger.warning("%s verification failed: %s (%s)", kind, exc.reason, exc)
            raise
        return payload

    def _encrypt_and_sign(self, payload: _Payload) -> str:
        ciphertext = self._encrypt(payload.to_json())
        cipher_b64 = _b64encode(ciphertext)
        mac = self._envelope_mac(cipher_b64, payload.version)
        encoded = Envelope(version=payload.version, payload=cipher_b64, signature=_b64encode(mac)).encode()
        if len(encoded) > MAX_ENVELOPE_LENGTH:
            raise ValidationError("metadata too large for an envelope")
        return encoded

    def _decrypt_and_verify(self, encoded: str) -> _Payload:
        envelope = Envelope.decode(encoded)

        actual_mac = _b64decode(envelope.signature, SignatureError, "signature")
        expected_mac = self._envelope_mac(envelope.payload, envelope.version)
        if not hmac.compare_digest(expected_mac, actual_mac):
            raise SignatureError("invalid signature")

        decoder = _PAYLOAD_DECODERS.get(envelope.version)
        if decoder is None:
            raise EnvelopeDecodeError(f"unsupported envelope version {envelope.version!r}")

        ciphertext = _b64decode(envelope.payload, EnvelopeDecodeError, "payload")
        payload = decoder(self._decrypt(ciphertext))
        if payload.version != envelope.version:
            raise EnvelopeDecodeError("payload version does not match envelope")
        return payload

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aes.encrypt(nonce, plaintext, None)

    def _decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise CiphertextTooShortError(
                f"ciphertext too short: {len(ciphertext)} bytes (minimum {NONCE_SIZE + TAG_SIZE})"
            )
        try:
            return self._aes.decrypt(ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:], None)
        except InvalidTag as exc:
            raise DecryptionError("authenticated decryption failed") from exc

    def _envelope_mac(self, payload_b64: str, version: str) -> bytes:
        message = f"{payload_b64}|{version}".encode("utf-8")
        return hmac.new(self._hmac_key, message, hashlib.sha256).digest()
