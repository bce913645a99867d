"""
auth/passwords.py -- bcrypt password hashing with timing equalization.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

The dummy hash enables timing equalization in verify_login() so response time
does not reveal whether an email has an account [C1]. It is generated with the
same cost factor as real hashes; a cheaper dummy would leak the difference.

All methods are CPU-bound; async callers run them through the thread pool
(see auth/flows.py).
"""

from __future__ import annotations

import bcrypt

_BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """One-way adaptive hashing with a configurable bcrypt cost factor."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first login attempt is not measurably slower.
        self._dummy_hash = self.hash("accountgate_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password.

        bcrypt only reads the first 72 bytes, and current releases refuse
        longer input, so the encoded password is cut to 72 bytes first.
        """
        return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash.

        bcrypt.checkpw compares in constant time. A malformed stored hash is a
        mismatch, never an exception.
        """
        try:
            return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
        except ValueError:
            return False

    def verify_login(self, plain: str, hashed: str | None) -> bool:
        """Verify a login password, running bcrypt even when there is no hash [C1].

        - No account / no password: bcrypt runs against the dummy hash, False.
        - Wrong password: bcrypt runs against the real hash, False.
        """
        if hashed is None:
            self.verify(plain, self._dummy_hash)
            return False
        return self.verify(plain, hashed)


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]
