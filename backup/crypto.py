"""Optional password-derived encryption for snapshots stored remotely.

Payload layout: ``MAGIC | salt (16) | nonce (12) | AES-256-GCM ciphertext+tag``.
The salt travels with every payload so a password alone can decrypt it.
"""
from __future__ import annotations

import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import BackupVerificationError

MAGIC = b"SLENC1"
SALT_SIZE = 16
NONCE_SIZE = 12
KDF_ITERATIONS = 200_000


def derive_key(password: str, salt: bytes, *, iterations: int = KDF_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


class SnapshotCipher:
    """AES-GCM wrapper keyed from a user password; the password is never stored."""

    def __init__(self, password: str, *, iterations: int = KDF_ITERATIONS) -> None:
        if not password:
            raise ValueError("encryption password must not be empty")
        self._password = password
        self._iterations = int(iterations)

    @staticmethod
    def is_encrypted(payload: bytes) -> bool:
        return payload.startswith(MAGIC)

    def encrypt(self, plaintext: bytes) -> bytes:
        salt = secrets.token_bytes(SALT_SIZE)
        nonce = secrets.token_bytes(NONCE_SIZE)
        key = derive_key(self._password, salt, iterations=self._iterations)
        return MAGIC + salt + nonce + AESGCM(key).encrypt(nonce, plaintext, MAGIC)

    def decrypt(self, payload: bytes) -> bytes:
        if not self.is_encrypted(payload):
            raise BackupVerificationError("payload is not an encrypted snapshot")
        offset = len(MAGIC)
        salt = payload[offset : offset + SALT_SIZE]
        offset += SALT_SIZE
        nonce = payload[offset : offset + NONCE_SIZE]
        offset += NONCE_SIZE
        key = derive_key(self._password, salt, iterations=self._iterations)
        try:
            return AESGCM(key).decrypt(nonce, payload[offset:], MAGIC)
        except InvalidTag as exc:
            raise BackupVerificationError("wrong password or tampered snapshot") from exc


__all__ = ["SnapshotCipher", "derive_key"]
