"""Key derivation and field-level authenticated encryption.

Fields are encrypted with AES-256-GCM under a key derived from the user's
password with PBKDF2-HMAC-SHA256. Each call to ``encrypt`` uses a fresh 96-bit
nonce and produces a versioned, base64-encoded envelope:

    base64( version[1] || nonce[12] || ciphertext || tag[16] )

The version byte is also passed to GCM as associated data, so changing it
invalidates the tag.

Security considerations:
- Key and salt are held in mutable buffers and zeroed on ``clear_key``.
- ``decrypt`` never returns data that failed authentication.
- Nothing in this module logs key material or plaintext.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from enum import Enum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import KEY_BYTES, MIN_PBKDF2_ITERATIONS, PBKDF2_ITERATIONS, SALT_BYTES
from .errors import DecryptionError, KeyDerivationError, NotInitializedError

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
NONCE_BYTES = 12
TAG_BYTES = 16
_HEADER = bytes([ENVELOPE_VERSION])
_MIN_ENVELOPE_BYTES = len(_HEADER) + NONCE_BYTES + TAG_BYTES


class CryptoState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLEARED = "cleared"


class CryptoService:
    """Owns the in-memory key and performs all encryption for one store."""

    def __init__(self, iterations: int = PBKDF2_ITERATIONS):
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise ValueError(
                f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}, got {iterations}"
            )
        self.iterations = iterations
        self.state = CryptoState.UNINITIALIZED
        self._key: bytearray | None = None
        self._salt: bytearray | None = None

    def initialize_encryption(
        self,
        password: str,
        salt: bytes | None = None,
        iterations: int | None = None,
    ) -> bytes:
        """Derive the key from ``password`` and move to READY.

        A fresh random salt is generated unless ``salt`` is given (re-opening an
        existing store). Returns the salt that was used so the caller can
        persist it next to the data.
        """
        if not password:
            raise KeyDerivationError("A non-empty password is required")

        iterations = iterations or self.iterations
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise KeyDerivationError(
                f"Refusing to derive a key with only {iterations} iterations"
            )

        salt_bytes = bytes(salt) if salt is not None else secrets.token_bytes(SALT_BYTES)
        if not salt_bytes:
            raise KeyDerivationError("Salt must not be empty")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=salt_bytes,
            iterations=iterations,
        )
        try:
            derived = kdf.derive(password.encode("utf-8"))
        except UnicodeEncodeError as exc:
            raise KeyDerivationError("Password is not valid text") from exc

        self._wipe()
        self._key = bytearray(derived)
        self._salt = bytearray(salt_bytes)
        self.iterations = iterations
        self.state = CryptoState.READY
        logger.debug("Encryption key derived (%d iterations)", iterations)
        return salt_bytes

    def is_initialized(self) -> bool:
        return self.state is CryptoState.READY

    @property
    def salt(self) -> bytes | None:
        return bytes(self._salt) if self._salt is not None else None

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` into a v1 envelope."""
        aead = self._aead()
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = aead.encrypt(nonce, plaintext.encode("utf-8"), _HEADER)
        return base64.b64encode(_HEADER + nonce + sealed).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        """Authenticate and decrypt a v1 envelope."""
        aead = self._aead()
        raw = _decode_envelope(envelope)

        if raw[0] != ENVELOPE_VERSION:
            raise DecryptionError(f"Unsupported envelope version {raw[0]}")

        nonce = raw[1 : 1 + NONCE_BYTES]
        sealed = raw[1 + NONCE_BYTES :]
        try:
            plaintext = aead.decrypt(nonce, sealed, raw[:1])
        except InvalidTag:
            raise DecryptionError("Authentication failed: wrong key or tampered data") from None

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from None

    def constant_time_compare(self, a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    def clear_key(self) -> None:
        """Zero the key and salt buffers and move to CLEARED."""
        self._wipe()
        self.state = CryptoState.CLEARED
        logger.debug("Encryption key cleared")

    def _wipe(self) -> None:
        for buf in (self._key, self._salt):
            if buf is not None:
                for i in range(len(buf)):
                    buf[i] = 0
        self._key = None
        self._salt = None

    def _aead(self) -> AESGCM:
        if self.state is not CryptoState.READY or self._key is None:
            raise NotInitializedError(f"Encryption is not initialized (state: {self.state.value})")
        return AESGCM(bytes(self._key))


def _decode_envelope(envelope: str) -> bytes:
    if not isinstance(envelope, str) or not envelope:
        raise DecryptionError("Envelope is empty")
    try:
        raw = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError):
        raise DecryptionError("Envelope is not valid base64") from None
    # Reject alternate encodings of the same bytes (e.g. altered padding bits)
    if base64.b64encode(raw).decode("ascii") != envelope:
        raise DecryptionError("Envelope is not canonically encoded")
    if len(raw) < _MIN_ENVELOPE_BYTES:
        raise DecryptionError("Envelope is truncated")
    return raw


def generate_message_id(conversation_id: str, author: str, timestamp: int, content: str) -> str:
    """Content-addressed message id: identical input always yields the same id."""
    payload = "\x00".join((conversation_id, author, str(timestamp), content))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
