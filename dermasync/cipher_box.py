"""
Field-level encryption for patient documents.

Each value is sealed with AES-256-GCM under the installation key. The nonce,
ciphertext and tag are concatenated, base64 encoded and prefixed with a
version tag so stored strings can be recognised without guessing:

    enc:v1:<base64(nonce || ciphertext || tag)>

Values written by older clients carry no prefix. Those are still read: a
string that base64-decodes to at least nonce + tag + 1 bytes is treated as
legacy ciphertext and decryption is attempted. Plaintext that happens to be
valid base64 of that length is misclassified by this rule; decryption then
fails authentication and the input is returned unchanged. Legacy values
sealed under a retired key are recognised through `retired_keys`, so
`encrypt` never wraps them a second time.

`encrypt`/`decrypt` are fail-open: errors are logged and the input comes
back untouched. Callers that must not store plaintext use `encrypt_strict`
and `decrypt_strict`, which raise `CipherError`.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_SIZE = 32  # 256-bit key
NONCE_SIZE = 12
TAG_SIZE = 16
ENVELOPE_PREFIX = "enc:v1:"


class CipherError(Exception):
    """Raised by the strict encrypt/decrypt variants."""


def generate_key() -> bytes:
    """Return a fresh 256-bit key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def _b64decode(value: str) -> bytes | None:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


class CipherBox:
    """Encrypts and decrypts individual string fields with one loaded key."""

    def __init__(self, key: bytes, retired_keys: list[bytes] | None = None):
        for candidate in [key, *(retired_keys or [])]:
            if len(candidate) != KEY_SIZE:
                raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)
        self._retired = [AESGCM(k) for k in retired_keys or []]

    def __repr__(self) -> str:
        return "CipherBox(key=<redacted>)"

    # Classification

    def is_envelope(self, value: str) -> bool:
        return value.startswith(ENVELOPE_PREFIX)

    def looks_encrypted(self, value: str) -> bool:
        """Envelope values, or bare base64 long enough to hold nonce + tag."""
        if not value:
            return False
        if self.is_envelope(value):
            return True
        raw = _b64decode(value)
        return raw is not None and len(raw) > NONCE_SIZE + TAG_SIZE

    def is_encrypted(self, value: str) -> bool:
        """
        Whether `encrypt` should leave `value` alone.

        Envelope values always count. Legacy bare base64 only counts when it
        authenticates under the current key or a retired one, so plaintext
        that is valid base64 still gets encrypted.
        """
        if not value:
            return False
        if self.is_envelope(value):
            return True
        if not self.looks_encrypted(value):
            return False
        raw = _b64decode(value)
        for aesgcm in [self._aesgcm, *self._retired]:
            try:
                self._open(raw, aesgcm)
            except CipherError:
                continue
            return True
        return False

    # Strict variants

    def encrypt_strict(self, plaintext: str) -> str:
        """Encrypt or raise `CipherError`. Already-encrypted input is returned as is."""
        if not plaintext or self.is_encrypted(plaintext):
            return plaintext
        try:
            nonce = os.urandom(NONCE_SIZE)
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except (ValueError, TypeError, UnicodeEncodeError, OverflowError) as e:
            raise CipherError(f"Encryption failed: {type(e).__name__}") from e
        return ENVELOPE_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt_strict(self, value: str) -> str:
        """
        Decrypt or raise `CipherError`.

        Plaintext (anything that does not look encrypted) is returned as is.
        """
        if not value or not self.looks_encrypted(value):
            return value
        encoded = value[len(ENVELOPE_PREFIX):] if self.is_envelope(value) else value
        raw = _b64decode(encoded)
        if raw is None:
            raise CipherError("Ciphertext is not valid base64")
        return self._open(raw)

    def _open(self, raw: bytes, aesgcm: AESGCM | None = None) -> str:
        if len(raw) <= NONCE_SIZE + TAG_SIZE:
            raise CipherError("Ciphertext is too short")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            return (aesgcm or self._aesgcm).decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as e:
            raise CipherError("Authentication failed") from e
        except UnicodeDecodeError as e:
            raise CipherError("Decrypted bytes are not UTF-8") from e

    # Fail-open variants

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a field. On failure the input is returned unchanged."""
        try:
            return self.encrypt_strict(plaintext)
        except CipherError as e:
            logger.warning("Encryption failed, keeping original value (%s)", e)
            return plaintext

    def decrypt(self, value: str) -> str:
        """Decrypt a field. On failure the input is returned unchanged."""
        try:
            return self.decrypt_strict(value)
        except CipherError as e:
            logger.warning(
                "Decryption failed for value of length %d, keeping original (%s)",
                len(value), e,
            )
            return value
