"""Vault password verifier using passlib.

Provides two small functions used when creating and unlocking a vault:
- hash_password(plain: str) -> str
- verify_password(plain: str, hashed: str) -> bool

Uses argon2 via passlib's CryptContext. Costs follow the same
NULLSPACE_ARGON2_* environment variables as key derivation (see
``nullspace.config.KdfParams``). The verifier hash carries its own random
salt, independent of the vault salt used for the encryption key.
"""
from __future__ import annotations

from functools import lru_cache

from passlib.context import CryptContext

from nullspace.config import KdfParams


@lru_cache(maxsize=4)
def _context(params: KdfParams) -> CryptContext:
    return CryptContext(
        schemes=["argon2"],
        deprecated="auto",
        argon2__type="ID",
        argon2__time_cost=params.time_cost,
        argon2__memory_cost=params.memory_cost,
        argon2__parallelism=params.parallelism,
    )


def pwd_context() -> CryptContext:
    return _context(KdfParams.from_env())


def hash_password(plain: str) -> str:
    """Hash a plaintext password and return the encoded hash string."""
    if plain is None:
        raise ValueError("Password must not be None")
    return pwd_context().hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash.

    Returns True if the password matches, False otherwise (including for a
    malformed stored hash).
    """
    if plain is None or hashed is None:
        return False
    try:
        return pwd_context().verify(plain, hashed)
    except (ValueError, TypeError):
        return False
