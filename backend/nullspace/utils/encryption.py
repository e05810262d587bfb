"""Password-derived authenticated encryption for note and vault payloads.

Blob layout: ``[12-byte nonce][ciphertext][16-byte GCM tag]``.

- Key: Argon2id(password, salt) -> 32 bytes, written straight into a
  ``bytearray`` owned by the manager so it can be overwritten with zeros.
- Cipher: AES-256-GCM with a fresh random nonce per call.
- Every decryption failure raises the same ``DecryptionError``; callers cannot
  tell a wrong password from tampered data.

Typical use::

    salt = EncryptionManager.generate_salt()
    with EncryptionManager.new_from_password(password, salt) as enc:
        blob = enc.encrypt(b"...")
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
from typing import Optional

from argon2.low_level import ARGON2_VERSION, Type, core, error_to_str, ffi, lib
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from nullspace.config import KdfParams
from nullspace.errors import CipherError, DecryptionError, KeyDerivationError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 16
MIN_SALT_SIZE = 8
MAX_SALT_SIZE = 64


def _b64e(b: bytes) -> str:
    """Standard base64 without padding."""
    return base64.b64encode(b).decode("ascii").rstrip("=")


def _b64d(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.b64decode(s + pad, validate=True)


def wipe(buf: bytearray) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    buf[:] = bytes(len(buf))


def decode_salt(salt: str) -> bytes:
    if not isinstance(salt, str) or not salt:
        raise KeyDerivationError("Salt must be a non-empty string")
    try:
        raw = _b64d(salt)
    except (binascii.Error, ValueError):
        raise KeyDerivationError("Salt is not valid base64") from None
    if not MIN_SALT_SIZE <= len(raw) <= MAX_SALT_SIZE:
        raise KeyDerivationError(f"Salt must decode to {MIN_SALT_SIZE}-{MAX_SALT_SIZE} bytes")
    return raw


def derive_key(password: str, salt: str, params: KdfParams) -> bytearray:
    """Run Argon2id into a fresh bytearray; the password copy is wiped afterwards."""
    if not isinstance(password, str) or not password:
        raise KeyDerivationError("Password must be a non-empty string")
    problems = params.problems()
    if problems:
        raise KeyDerivationError("Invalid key derivation parameters: " + "; ".join(problems))
    raw_salt = decode_salt(salt)

    key = bytearray(params.hash_len)
    pwd = bytearray(password.encode("utf-8"))
    c_out = ffi.from_buffer("uint8_t[]", key, require_writable=True)
    c_pwd = ffi.from_buffer("uint8_t[]", pwd)
    c_salt = ffi.new("uint8_t[]", raw_salt)
    try:
        ctx = ffi.new(
            "argon2_context *",
            {
                "version": ARGON2_VERSION,
                "out": c_out,
                "outlen": len(key),
                "pwd": c_pwd,
                "pwdlen": len(pwd),
                "salt": c_salt,
                "saltlen": len(raw_salt),
                "secret": ffi.NULL,
                "secretlen": 0,
                "ad": ffi.NULL,
                "adlen": 0,
                "t_cost": params.time_cost,
                "m_cost": params.memory_cost,
                "lanes": params.parallelism,
                "threads": params.parallelism,
                "allocate_cbk": ffi.NULL,
                "free_cbk": ffi.NULL,
                "flags": lib.ARGON2_DEFAULT_FLAGS,
            },
        )
        rc = core(ctx, Type.ID.value)
    except BaseException:
        wipe(key)
        raise
    finally:
        ffi.release(c_out)
        ffi.release(c_pwd)
        wipe(pwd)
    if rc != lib.ARGON2_OK:
        wipe(key)
        raise KeyDerivationError(f"Argon2 failed: {error_to_str(rc)}")
    return key


class EncryptionManager:
    """Holds one derived key; ``close()`` zeroes it.

    Use as a context manager so the key is wiped on every exit path. The
    finalizer wipes it too, but nothing should rely on collection timing.
    """

    def __init__(self, key: bytearray):
        if not isinstance(key, bytearray) or len(key) != KEY_SIZE:
            raise ValueError("key must be a 32-byte bytearray")
        self._key = key
        self._closed = False

    @staticmethod
    def generate_salt() -> str:
        return _b64e(secrets.token_bytes(SALT_SIZE))

    @classmethod
    def new_from_password(
        cls, password: str, salt: str, params: Optional[KdfParams] = None
    ) -> EncryptionManager:
        key = derive_key(password, salt, params or KdfParams.from_env())
        logger.debug("Derived vault key (argon2id)")
        return cls(key)

    @property
    def closed(self) -> bool:
        return self._closed

    def _cipher(self) -> AESGCM:
        if self._closed:
            raise CipherError("Encryption manager is closed")
        return AESGCM(self._key)

    def encrypt(self, plaintext: bytes) -> bytes:
        if not isinstance(plaintext, (bytes, bytearray, memoryview)):
            raise TypeError("plaintext must be bytes")
        aead = self._cipher()
        nonce = os.urandom(NONCE_SIZE)
        try:
            return nonce + aead.encrypt(nonce, bytes(plaintext), None)
        except (OverflowError, ValueError) as exc:
            raise CipherError(f"Encryption failed: {exc}") from exc

    def decrypt(self, blob: bytes) -> bytes:
        if not isinstance(blob, (bytes, bytearray, memoryview)):
            raise TypeError("blob must be bytes")
        aead = self._cipher()
        data = bytes(blob)
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError()
        try:
            return aead.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
        except InvalidTag:
            raise DecryptionError() from None

    def encrypt_text(self, text: str) -> str:
        return base64.b64encode(self.encrypt(text.encode("utf-8"))).decode("ascii")

    def decrypt_text(self, data_b64: str) -> str:
        try:
            blob = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError() from None
        try:
            return self.decrypt(blob).decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError() from None

    def close(self) -> None:
        if not self._closed:
            wipe(self._key)
            self._closed = True

    def __enter__(self) -> EncryptionManager:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self) -> None:
        key = getattr(self, "_key", None)
        if key is not None and not getattr(self, "_closed", True):
            wipe(key)

    def __repr__(self) -> str:
        return f"EncryptionManager(closed={self._closed})"
