"""
auth/passwords.py -- bcrypt password hashing and the password strength policy.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection hashes a password longer than 72 bytes, which bcrypt 4.x rejects.
bcrypt.checkpw compares digests in constant time, so verify() does not leak
how much of a candidate matched.

Timing equalization: burn() runs a full verification against a dummy hash
with the same cost factor. Callers use it on every path that would otherwise
return before running bcrypt (unknown user, service account), so response
time does not reveal whether an account exists.
"""

from __future__ import annotations

import re
from functools import cached_property

import bcrypt

from auth.errors import ValidationError

# bcrypt only reads the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72
_MIN_LENGTH = 8


class PasswordHasher:
    """Salted, adaptive-cost password hashing.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Secret1!")
        hasher.verify("Secret1!", stored)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """Return a bcrypt hash. gensalt() draws from os.urandom; no entropy means no hash."""
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        """Return True iff password matches. A malformed stored hash never matches."""
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    @cached_property
    def _dummy_hash(self) -> str:
        return self.hash("notez_timing_dummy")

    def burn(self, password: str) -> None:
        """Spend one verification's worth of time without checking anything."""
        self.verify(password, self._dummy_hash)


def check_password_policy(password: str) -> None:
    """Raise ValidationError unless the password meets the strength policy."""
    if len(password) < _MIN_LENGTH:
        raise ValidationError(f"Password must be at least {_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must not exceed {_BCRYPT_MAX_BYTES} bytes")
    if not re.search(r"[A-Z]", password):
        raise ValidationError("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        raise ValidationError("Password must contain at least one number")
    if not re.search(r"[^A-Za-z0-9]", password):
        raise ValidationError("Password must contain at least one special character")
