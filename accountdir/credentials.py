"""
Credential Verifier.

The repositories and the ingestion consumer never hash passwords
themselves; they call a :class:`CredentialVerifier`.  The production
implementation delegates to ``bcrypt``.  Token issuance belongs to the
HTTP layer and is not part of this package.
"""

from __future__ import annotations

from typing import Protocol

import bcrypt

__all__ = ["BcryptCredentialVerifier", "CredentialVerifier"]


class CredentialVerifier(Protocol):
    """Hashes and verifies password material."""

    def hash_password(self, plaintext: str) -> str: ...

    def verify_password(self, plaintext: str, hashed: str) -> bool: ...


class BcryptCredentialVerifier:
    """bcrypt-backed verifier.

    Hashes are ``$2b$`` strings (60 characters), which is what the record
    codec stores in its ``PW`` segment.
    """

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds

    def hash_password(self, plaintext: str) -> str:
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(plaintext.encode("utf-8"), salt).decode("ascii")

    def verify_password(self, plaintext: str, hashed: str) -> bool:
        if not plaintext or not hashed:
            return False
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("ascii"))
        except ValueError:
            # Not a bcrypt hash (e.g. an {SSHA} value copied from the directory).
            return False
