from __future__ import annotations
import binascii
import os
from base64 import b64decode, b64encode, urlsafe_b64decode
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16
WIRE_SEPARATOR = "."

class CryptoError(RuntimeError):
    pass

class CryptoConfigError(CryptoError):
    """The encryption key is missing or not 32 bytes. Fatal at startup."""

class SecretCodecError(CryptoError):
    """A stored secret cannot be turned back into plaintext."""

class SecretFormatError(SecretCodecError):
    """Wrong number of segments, or a segment that is not valid base64."""

class SecretTamperedError(SecretCodecError):
    """Authentication tag did not verify: tampered, corrupted, or a different key."""

@dataclass(frozen=True)
class EncryptedSecret:
    iv: str
    auth_tag: str
    ciphertext: str

    def to_wire(self) -> str:
        return WIRE_SEPARATOR.join((self.iv, self.auth_tag, self.ciphertext))

    @classmethod
    def from_wire(cls, value: str) -> "EncryptedSecret":
        parts = (value or "").split(WIRE_SEPARATOR)
        if len(parts) != 3:
            raise SecretFormatError(f"expected 3 segments, got {len(parts)}")
        iv, auth_tag, ciphertext = parts
        return cls(iv=iv, auth_tag=auth_tag, ciphertext=ciphertext)

def parse_key(raw: str) -> bytes:
    """
    Decode ENCRYPTION_KEY. Accepts 64 hex chars (``openssl rand -hex 32``)
    or urlsafe base64 that decodes to exactly 32 bytes.
    """
    key_str = (raw or "").strip()
    if not key_str:
        raise CryptoConfigError("ENCRYPTION_KEY is empty. Generate one with: openssl rand -hex 32")

    if len(key_str) == KEY_BYTES * 2:
        try:
            return bytes.fromhex(key_str)
        except ValueError:
            pass  # may still be base64

    try:
        key = urlsafe_b64decode(key_str + "=" * (-len(key_str) % 4))
    except (binascii.Error, ValueError) as e:
        raise CryptoConfigError("ENCRYPTION_KEY must be 64 hex chars or urlsafe base64 of 32 bytes") from e
    if len(key) != KEY_BYTES:
        raise CryptoConfigError(f"ENCRYPTION_KEY must decode to exactly {KEY_BYTES} bytes, got {len(key)}")
    return key

def _b64d(segment: str, name: str) -> bytes:
    try:
        return b64decode(segment.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise SecretFormatError(f"{name} segment is not valid base64") from e

class SecretCodec:
    """
    AES-256-GCM with a fresh 128-bit IV per call and a 128-bit tag.
    Holds only the immutable key, so one instance can be shared freely.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise CryptoConfigError(f"encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_key_string(cls, raw: str) -> "SecretCodec":
        return cls(parse_key(raw))

    @classmethod
    def from_settings(cls, settings) -> "SecretCodec":
        return cls.from_key_string(settings.ENCRYPTION_KEY)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = os.urandom(IV_BYTES)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedSecret(
            iv=b64encode(iv).decode("ascii"),
            auth_tag=b64encode(tag).decode("ascii"),
            ciphertext=b64encode(body).decode("ascii"),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        iv = _b64d(secret.iv, "iv")
        tag = _b64d(secret.auth_tag, "authTag")
        body = _b64d(secret.ciphertext, "ciphertext")
        if len(iv) != IV_BYTES:
            raise SecretFormatError(f"iv must be {IV_BYTES} bytes, got {len(iv)}")
        if len(tag) != TAG_BYTES:
            raise SecretFormatError(f"authTag must be {TAG_BYTES} bytes, got {len(tag)}")
        try:
            plain = self._aead.decrypt(iv, body + tag, None)
        except InvalidTag as e:
            raise SecretTamperedError("authentication tag mismatch") from e
        return plain.decode("utf-8")

    def encrypt_to_str(self, plaintext: str) -> str:
        """Encrypt and return the storable wire string. Never log the result."""
        return self.encrypt(plaintext).to_wire()

    def decrypt_from_str(self, stored: str) -> str:
        return self.decrypt(EncryptedSecret.from_wire(stored))
