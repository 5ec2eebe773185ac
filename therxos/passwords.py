"""bcrypt password hashing."""
from __future__ import annotations

import logging
from typing import Optional

import bcrypt

log = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def hash_password(plain: str) -> str:
    # bcrypt only looks at the first 72 bytes
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        log.warning("[Auth] Stored password hash is malformed")
        return False


def check_password_strength(plain: str) -> None:
    if not plain or len(plain) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
