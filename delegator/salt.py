"""Delegation salts drawn from the operating system's CSPRNG.

Each salt is 8 random bytes read as a big-endian unsigned integer. Uniqueness
is probabilistic: with 64 bits of entropy collisions are negligible, and no
record of issued salts is kept.
"""

from __future__ import annotations

import secrets

SALT_BYTES = 8


class SaltGenerator:
    """Produces non-zero random salts.

    Stateless apart from the OS entropy source, so one instance may be
    shared freely between threads and tasks.
    """

    def __init__(self, num_bytes: int = SALT_BYTES) -> None:
        if num_bytes < SALT_BYTES:
            raise ValueError(f"salts need at least {SALT_BYTES} bytes of entropy")
        self._num_bytes = num_bytes

    @property
    def num_bytes(self) -> int:
        return self._num_bytes

    def next(self) -> int:
        while True:
            salt = int.from_bytes(secrets.token_bytes(self._num_bytes), "big")
            # Zero is rejected by the builder; redraw on the 2**-64 event.
            if salt:
                return salt


_default = SaltGenerator()


def new_salt() -> int:
    """Return a fresh salt from the shared default generator."""
    return _default.next()
