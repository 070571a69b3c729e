"""
auth/passwords.py -- bcrypt hashing for passwords and every stored secret.

Passwords, refresh tokens, email-verification codes, password-reset tokens
and 2FA backup codes are all stored as bcrypt hashes. The salt is random per
hash, so a stored hash cannot be looked up by equality -- callers compare the
presented secret against candidate rows one at a time.

bcrypt only reads the first 72 bytes of its input (and bcrypt >= 5 refuses
longer input outright). Refresh tokens are JWTs well past that length and
share a long common prefix, so longer inputs are reduced to their SHA-256
digest first. The reduction depends only on input length, so hash() and
verify() always agree.

Using bcrypt directly rather than passlib: passlib's wrap-bug detection trips
over bcrypt 4.x, and direct usage has no compatibility shim.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from collections.abc import Callable, Iterable
from typing import TypeVar

import bcrypt

logger = logging.getLogger("authcore.auth.passwords")

_BCRYPT_MAX_BYTES = 72

Row = TypeVar("Row")


def _prepare(plain: str) -> bytes:
    raw = plain.encode("utf-8")
    if len(raw) > _BCRYPT_MAX_BYTES:
        # base64 keeps the digest free of NUL bytes, which bcrypt treats as a terminator
        return base64.b64encode(hashlib.sha256(raw).digest())
    return raw


class PasswordHasher:
    """Salted one-way hash + compare with a configurable cost factor.

    rounds is the bcrypt log2 work factor (4-31). Tests use 4; production 12.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization dummy [C1]. Computed once so the first login
        # attempt for an unknown account is not measurably slower than the rest.
        self._dummy_hash = self.hash("authcore_timing_dummy")

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(_prepare(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. Malformed hashes compare False."""
        try:
            return bcrypt.checkpw(_prepare(plain), hashed.encode("utf-8"))
        except ValueError:
            logger.warning("Stored hash is not a valid bcrypt hash")
            return False

    def equalize_timing(self, plain: str) -> None:
        """Spend one compare's worth of work when there is no real hash to check.

        Call on every "account not found" branch of a credential check so the
        response time does not reveal whether the account exists [C1].
        """
        self.verify(plain, self._dummy_hash)

    def find_match(self, plain: str, candidates: Iterable[Row], stored_hash: Callable[[Row], str]) -> Row | None:
        """Return the first candidate whose stored_hash(candidate) matches plain, else None.

        Linear scan: salted hashes cannot be indexed. Callers keep the
        candidate list small (one identifier, one user).
        """
        for candidate in candidates:
            if self.verify(plain, stored_hash(candidate)):
                return candidate
        return None
