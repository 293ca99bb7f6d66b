"""
Password Hashing
================

bcrypt hashing for the database-backed auth provider.

Version: 0.1.0
"""

from passlib.context import CryptContext


_pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=12,
)


def hash_password(password: str) -> str:
    """Hash a plain-text password."""
    return _pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Check a password against a stored hash.

    Malformed hashes count as a mismatch.
    """
    try:
        return _pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def needs_rehash(hashed_password: str) -> bool:
    """True when the hash was made with outdated parameters."""
    return _pwd_context.needs_update(hashed_password)
