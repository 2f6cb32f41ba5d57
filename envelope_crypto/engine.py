"""Envelope encryption: AES-256-GCM content keys wrapped under a key derived
from a signature over a fixed challenge (PBKDF2-HMAC-SHA256)."""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from contracts.errors import AuthenticationFailed, CryptoUnavailable, ValidationError
from contracts.schemas import NONCE_SIZE, EncryptionEnvelope, WrappedKey
from envelope_crypto.keys import KEY_SIZE, SecretKey

# Changing either value orphans every wrapped key already on the ledger.
WRAPPING_KEY_SALT = b"digital_vault_salt"
WRAPPING_KEY_ITERATIONS = 100_000


def _random_bytes(n: int) -> bytes:
    try:
        return os.urandom(n)
    except NotImplementedError as e:
        raise CryptoUnavailable("no system randomness source") from e


def _cipher(key: SecretKey) -> AESGCM:
    try:
        return AESGCM(key.material)
    except UnsupportedAlgorithm as e:
        raise CryptoUnavailable("AES-GCM not supported by the crypto backend") from e


def _secret_bytes(secret: bytes | bytearray | str) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise ValidationError("wrapping secret must not be empty")
    return bytes(secret)


class EncryptionEngine:
    def __init__(
        self,
        *,
        salt: bytes = WRAPPING_KEY_SALT,
        iterations: int = WRAPPING_KEY_ITERATIONS,
    ) -> None:
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self._salt = bytes(salt)
        self._iterations = int(iterations)

    def generate_content_key(self) -> SecretKey:
        return SecretKey(_random_bytes(KEY_SIZE), label="content_key")

    def encrypt(self, plaintext: bytes, key: SecretKey) -> EncryptionEnvelope:
        # Fresh random 96-bit nonce per call.
        nonce = _random_bytes(NONCE_SIZE)
        ciphertext = _cipher(key).encrypt(nonce, bytes(plaintext), None)
        return EncryptionEnvelope(nonce=nonce, ciphertext=ciphertext)

    def decrypt(self, envelope: EncryptionEnvelope, key: SecretKey) -> bytes:
        try:
            return _cipher(key).decrypt(envelope.nonce, envelope.ciphertext, None)
        except InvalidTag as e:
            raise AuthenticationFailed("ciphertext failed authentication") from e

    def derive_wrapping_key(self, secret: bytes | bytearray | str) -> SecretKey:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=self._salt,
            iterations=self._iterations,
        )
        try:
            derived = kdf.derive(_secret_bytes(secret))
        except UnsupportedAlgorithm as e:
            raise CryptoUnavailable("PBKDF2-HMAC-SHA256 not supported by the crypto backend") from e
        return SecretKey(derived, label="wrapping_key")

    def wrap_key(self, content_key: SecretKey, wrapping_key: SecretKey) -> WrappedKey:
        envelope = self.encrypt(bytes(content_key.material), wrapping_key)
        return WrappedKey(nonce=envelope.nonce, wrapped_bytes=envelope.ciphertext)

    def unwrap_key(self, wrapped: WrappedKey, wrapping_key: SecretKey) -> SecretKey:
        try:
            raw = _cipher(wrapping_key).decrypt(wrapped.nonce, wrapped.wrapped_bytes, None)
        except InvalidTag as e:
            raise AuthenticationFailed("wrapping key does not match the original signer") from e
        if len(raw) != KEY_SIZE:
            raise AuthenticationFailed("unwrapped key has unexpected length")
        return SecretKey(raw, label="content_key")
