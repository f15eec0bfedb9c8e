from __future__ import annotations

import hashlib
import hmac
import os
from typing import Callable, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESSIV

from gatehouse.core.config import (
    MAX_ENCODED_PASSWORD_LENGTH,
    SALT_SIZE_BYTES,
    PasswordFormat,
    Settings,
    get_settings,
)
from gatehouse.core.errors import (
    ConfigurationError,
    IdentityStoreError,
    PasswordTooLongError,
    UnsupportedOperationError,
)
from gatehouse.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material


# AES-SIV takes a double-length key: 256, 384, or 512 bits.
_AESSIV_KEY_SIZES = {32, 48, 64}


class PasswordCipher(Protocol):
    """Reversible cipher used for the encrypted password format.

    Implementations must be deterministic: encrypting the same bytes twice yields
    the same ciphertext, so credentials can be verified by re-encoding.
    """

    def encrypt(self, data: bytes) -> bytes:
        ...

    def decrypt(self, data: bytes) -> bytes:
        ...


class AesSivPasswordCipher:
    def __init__(self, key: bytes) -> None:
        if len(key) not in _AESSIV_KEY_SIZES:
            raise ConfigurationError("Password encryption key must be 32, 48, or 64 bytes")
        self._aead = AESSIV(key)

    @classmethod
    def from_key_material(cls, value: str) -> AesSivPasswordCipher:
        try:
            key = decode_key_material(value)
        except ValueError as exc:
            raise ConfigurationError(f"Password encryption key is invalid: {exc}") from exc
        return cls(key)

    def encrypt(self, data: bytes) -> bytes:
        return self._aead.encrypt(data, None)

    def decrypt(self, data: bytes) -> bytes:
        try:
            return self._aead.decrypt(data, None)
        except InvalidTag as exc:
            raise IdentityStoreError("Stored password could not be decrypted with the configured key") from exc


class PasswordCodec:
    """Encode, decode, and verify stored credentials for every password format."""

    def __init__(
        self,
        *,
        hash_algorithm: str = "sha256",
        cipher: PasswordCipher | None = None,
        random_bytes: Callable[[int], bytes] = os.urandom,
    ) -> None:
        try:
            hashlib.new(hash_algorithm)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported password hash algorithm: {hash_algorithm}") from exc
        self._hash_algorithm = hash_algorithm
        self._cipher = cipher
        self._random_bytes = random_bytes

    def generate_salt(self) -> str:
        return b64encode_bytes(self._random_bytes(SALT_SIZE_BYTES))

    def encode(self, plaintext: str, fmt: PasswordFormat, salt: str) -> str:
        if fmt == PasswordFormat.CLEAR:
            return plaintext
        payload = _salt_bytes(salt) + plaintext.encode("utf-8")
        if fmt == PasswordFormat.HASHED:
            digest = hashlib.new(self._hash_algorithm, payload).digest()
            return b64encode_bytes(digest)
        if fmt == PasswordFormat.ENCRYPTED:
            return b64encode_bytes(self._require_cipher().encrypt(payload))
        raise ConfigurationError(f"Unsupported password format: {fmt}")

    def decode(self, stored: str, fmt: PasswordFormat) -> str:
        if fmt == PasswordFormat.CLEAR:
            return stored
        if fmt == PasswordFormat.HASHED:
            raise UnsupportedOperationError("Cannot decode a hashed password")
        if fmt == PasswordFormat.ENCRYPTED:
            try:
                ciphertext = b64decode_str(stored)
            except ValueError as exc:
                raise IdentityStoreError("Stored password is not valid base64") from exc
            payload = self._require_cipher().decrypt(ciphertext)
            # Drop the salt prefix that encode() prepended.
            return payload[SALT_SIZE_BYTES:].decode("utf-8")
        raise ConfigurationError(f"Unsupported password format: {fmt}")

    def verify(self, plaintext: str, stored: str, fmt: PasswordFormat, salt: str) -> bool:
        # Compare encoded forms; stored values are never decoded for comparison.
        candidate = self.encode(plaintext, fmt, salt)
        return hmac.compare_digest(candidate.encode("utf-8"), stored.encode("utf-8"))

    def ensure_storable(self, encoded: str, *, param: str = "password") -> str:
        if len(encoded) > MAX_ENCODED_PASSWORD_LENGTH:
            raise PasswordTooLongError(
                f"The encoded {param} exceeds {MAX_ENCODED_PASSWORD_LENGTH} characters",
                param=param,
            )
        return encoded

    def _require_cipher(self) -> PasswordCipher:
        if self._cipher is None:
            raise ConfigurationError("PASSWORD_ENCRYPTION_KEY is required for the encrypted password format")
        return self._cipher


def _salt_bytes(salt: str) -> bytes:
    try:
        return b64decode_str(salt)
    except ValueError as exc:
        raise IdentityStoreError("Password salt is not valid base64") from exc


def build_password_codec(settings: Settings | None = None) -> PasswordCodec:
    # The cipher is only built when key material is configured.
    settings = settings or get_settings()
    key_material = (settings.password_encryption_key or "").strip()
    cipher = AesSivPasswordCipher.from_key_material(key_material) if key_material else None
    return PasswordCodec(hash_algorithm=settings.password_hash_algorithm, cipher=cipher)
