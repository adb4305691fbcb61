"""Password hashing for password-kind protections.

Protections of kind ``PASSWORD`` store an Argon2id hash in the ``password``
column. Hashes written by older releases are plain SHA-1 hex digests; they
still verify, always report ``needs_rehash`` and are replaced with an Argon2
hash by ``Protection.check_password`` on the next successful check.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets

from argon2 import PasswordHasher, Type, exceptions
from argon2.exceptions import VerificationError

logger = logging.getLogger(__name__)

# Protection passwords are checked on block interaction, so keep hashing
# cheaper than an account login hash.
TIME_COST = 2
MEMORY_COST = 19456  # 19 MiB
PARALLELISM = 1
HASH_LENGTH = 32

LEGACY_DIGEST_PATTERN = re.compile(r"[0-9a-fA-F]{40}")

_default_hasher = PasswordHasher(
    type=Type.ID,
    time_cost=TIME_COST,
    memory_cost=MEMORY_COST,
    parallelism=PARALLELISM,
    hash_len=HASH_LENGTH,
)


def hash_password(password: str) -> str:
    """Hash a plaintext protection password using Argon2id.

    Args:
        password: Plaintext password.

    Returns:
        Argon2id hash string in the ``$argon2id$v=19$...`` format.

    Raises:
        TypeError: If ``password`` is not a string.
    """
    if not isinstance(password, str):
        raise TypeError("password must be a string")
    return _default_hasher.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    """Verify a plaintext password against a stored hash.

    Returns:
        True if the password matches, False for a mismatch, an empty hash, or
        a hash that is neither Argon2 nor a legacy SHA-1 digest.
    """
    if not hashed:
        return False
    if is_legacy_digest(hashed):
        digest = hashlib.sha1(password.encode("utf-8")).hexdigest()
        return secrets.compare_digest(digest, hashed.lower())
    try:
        return _default_hasher.verify(hashed, password)
    except (VerificationError, exceptions.InvalidHashError):
        return False


def is_legacy_digest(hash_value: str | None) -> bool:
    """Check if a stored value is a SHA-1 hex digest from an older release."""
    return isinstance(hash_value, str) and LEGACY_DIGEST_PATTERN.fullmatch(hash_value) is not None


def is_argon2_hash(hash_value: str | None) -> bool:
    """Check if a given string is an Argon2 hash."""
    return isinstance(hash_value, str) and hash_value.startswith("$argon2")


def needs_rehash(hashed: str) -> bool:
    """Check whether a stored hash should be replaced on next successful check."""
    if not is_argon2_hash(hashed):
        return True
    try:
        return _default_hasher.check_needs_rehash(hashed)
    except exceptions.InvalidHashError:
        logger.warning("Stored protection password hash could not be parsed")
        return True
