"""Webhook secret verification and authenticated encryption.

Two concerns live here:

* ``verify_secret`` compares the shared webhook secret in constant time,
  tolerating clients that percent-encode it one or more times in transit.
* ``TokenCipher`` seals opaque payloads with AES-GCM. OAuth2 tokens at rest and
  the references embedded in download and connect links all use it.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import unquote_plus

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ValidationError

from va_bridge.errors import CryptoError, NotFoundError

logger = logging.getLogger("va_bridge.security")

NONCE_SIZE = 12
TAG_SIZE = 16
VALID_KEY_SIZES = (16, 24, 32)

SECRET_NOT_CONFIGURED = "webhook secret is not configured"  # noqa: S105
SECRET_MISSING = "missing secret"  # noqa: S105
SECRET_MISMATCH = "request URL: secret did not match"  # noqa: S105


# ---------------------------------------------------------------------------
# Secret verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecretCheck:
    """Outcome of a webhook secret comparison."""

    accepted: bool
    reason: str | None = None


def verify_secret(expected: str | None, candidate: str | None) -> SecretCheck:
    """Compare ``candidate`` against ``expected``, unescaping until a fixed point."""
    if not expected:
        return SecretCheck(accepted=False, reason=SECRET_NOT_CONFIGURED)
    if candidate is None or candidate == "":
        return SecretCheck(accepted=False, reason=SECRET_MISSING)

    expected_bytes = expected.encode("utf-8")
    current = candidate
    while True:
        if hmac.compare_digest(current.encode("utf-8"), expected_bytes):
            return SecretCheck(accepted=True)
        unescaped = unquote_plus(current)
        if unescaped == current:
            return SecretCheck(accepted=False, reason=SECRET_MISMATCH)
        current = unescaped


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------


class TokenCipher:
    """AES-GCM envelope cipher keyed by the configured encryption secret.

    Envelopes are ``nonce || ciphertext || tag`` so a single value carries
    everything needed to decrypt it with the key.
    """

    def __init__(self, secret: str) -> None:
        """Build the cipher, rejecting keys AES cannot use."""
        key = secret.encode("utf-8")
        if len(key) not in VALID_KEY_SIZES:
            msg = "encryption secret must be 16, 24 or 32 bytes"
            raise CryptoError(msg)
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Seal ``plaintext`` under a fresh random nonce."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, envelope: bytes) -> bytes:
        """Open an envelope produced by :meth:`encrypt`; fails closed."""
        if len(envelope) < NONCE_SIZE + TAG_SIZE:
            msg = "token too short"
            raise CryptoError(msg)
        nonce, sealed = envelope[:NONCE_SIZE], envelope[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            msg = "failed to decrypt token"
            raise CryptoError(msg) from exc

    @staticmethod
    def encode(data: bytes) -> str:
        """URL-safe base64 text for embedding envelopes in URLs and records."""
        return base64.urlsafe_b64encode(data).decode("ascii")

    @staticmethod
    def decode(text: str) -> bytes:
        """Reverse :meth:`encode`; raises ValueError on malformed input."""
        try:
            return base64.urlsafe_b64decode(text.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as exc:
            msg = "token is not valid base64"
            raise ValueError(msg) from exc

    def encrypt_token(self, token: dict[str, Any]) -> str:
        """Encrypt an OAuth2 token dict for storage."""
        return self.encode(self.encrypt(json.dumps(token).encode("utf-8")))

    def decrypt_token(self, blob: str) -> dict[str, Any]:
        """Decrypt a stored OAuth2 token."""
        try:
            envelope = self.decode(blob)
        except ValueError as exc:
            raise CryptoError(str(exc)) from exc
        try:
            token = json.loads(self.decrypt(envelope))
        except ValueError as exc:
            msg = "stored token is not valid JSON"
            raise CryptoError(msg) from exc
        if not isinstance(token, dict):
            msg = "stored token is not an object"
            raise CryptoError(msg)
        return token


# ---------------------------------------------------------------------------
# Sealed references
# ---------------------------------------------------------------------------

KIND_FILE = "file"
KIND_CONNECT = "connect"


class SealedReference(BaseModel):
    """An id plus the instant after which links carrying it stop working.

    ``kind`` separates uses, so a file link cannot be replayed as a connect link.
    """

    kind: str = KIND_FILE
    id: str
    expiry: datetime


def seal_reference(
    cipher: TokenCipher,
    ref_id: str,
    ttl: timedelta,
    *,
    kind: str = KIND_FILE,
    now: datetime | None = None,
) -> str:
    """Return a URL-safe token for ``ref_id``, valid for ``ttl``."""
    issued = now or datetime.now(timezone.utc)
    reference = SealedReference(kind=kind, id=ref_id, expiry=issued + ttl)
    return cipher.encode(cipher.encrypt(reference.model_dump_json().encode("utf-8")))


def open_reference(
    cipher: TokenCipher,
    token: str,
    *,
    kind: str = KIND_FILE,
    now: datetime | None = None,
) -> SealedReference:
    """Decode, decrypt and check the expiry of a sealed reference.

    Raises:
        ValueError: ``token`` is not valid base64.
        CryptoError: The envelope fails authentication or holds no reference
            of the requested kind.
        NotFoundError: The reference decrypted but has expired.

    """
    envelope = cipher.decode(token)
    plaintext = cipher.decrypt(envelope)
    try:
        reference = SealedReference.model_validate_json(plaintext)
    except ValidationError as exc:
        msg = "failed to decode reference"
        raise CryptoError(msg) from exc
    if reference.kind != kind:
        msg = f"expected a {kind} reference"
        raise CryptoError(msg)
    current = now or datetime.now(timezone.utc)
    if current > reference.expiry:
        logger.info("%s reference for %s expired at %s", kind, reference.id, reference.expiry.isoformat())
        msg = f"{kind} not found"
        raise NotFoundError(msg)
    return reference
