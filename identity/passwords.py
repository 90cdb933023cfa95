"""
identity/passwords.py -- Password hashing primitive.

Security design decisions:
  bcrypt directly (no passlib wrapper). Bcrypt is the right choice for
  low-entropy secrets because its cost factor makes brute force expensive.
  The cost comes from Settings.bcrypt_rounds (BCRYPT_ROUNDS); tests lower it
  to 4.

  verify_password() distinguishes "wrong secret" (returns False) from "the
  stored value is not a bcrypt hash" (raises CorruptData). A corrupted
  credential must never look like a failed login attempt. A plaintext over
  72 UTF-8 bytes can never match a stored hash, so it is False as well.

  dummy_hash() provides a fixed hash for timing equalization: the verifier
  runs bcrypt even when no credential was found, so response time does not
  reveal whether an identifier exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional

import bcrypt

from core.config import get_settings
from core.errors import CorruptData, ValidationFailed

# bcrypt reads at most 72 bytes of input.
MAX_SECRET_BYTES = 72

# $2b$12$ + 22 chars of salt + 31 chars of checksum, bcrypt's base64 alphabet.
_BCRYPT_HASH_RE = re.compile(r"^\$2[abxy]?\$\d{2}\$[./A-Za-z0-9]{53}$")


def secret_fits(plain: str) -> bool:
    """Return True if plain is within bcrypt's input limit once UTF-8 encoded."""
    return len(plain.encode("utf-8")) <= MAX_SECRET_BYTES


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValidationFailed for a secret over MAX_SECRET_BYTES: bcrypt would
    otherwise truncate it (4.x) or refuse it (5.x).
    """
    if not secret_fits(plain):
        raise ValidationFailed(
            f"Secret must be at most {MAX_SECRET_BYTES} bytes",
            details={"fields": ["secret"]},
        )
    salt = bcrypt.gensalt(rounds=rounds or get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def is_password_hash(value: Optional[str]) -> bool:
    """Return True if value is shaped like a bcrypt hash."""
    return bool(value) and _BCRYPT_HASH_RE.match(value) is not None


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash.

    Raises CorruptData if hashed is not a well-formed bcrypt hash. A
    plaintext too long to have been hashed is a non-match, not an error.
    """
    if not is_password_hash(hashed):
        raise CorruptData("Stored credential is not a valid bcrypt hash")
    if not secret_fits(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError as exc:
        raise CorruptData("Stored credential is not a valid bcrypt hash") from exc


@lru_cache(maxsize=1)
def dummy_hash() -> str:
    """Hash used to equalize timing when there is no stored credential to check."""
    return hash_password("authgraph_timing_dummy")
