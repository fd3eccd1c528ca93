"""
Shared Enumerations for AccountDirectory Models.

StrEnum values compare equal to their string equivalents, so code such
as ``if role == "admin"`` keeps working.
"""

from __future__ import annotations

from enum import StrEnum


class UserRole(StrEnum):
    """Account roles.

    The directory and the relational table both store the lower-case
    value.  ``from_legacy`` accepts the Spanish labels written by older
    producers.
    """

    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"

    @classmethod
    def from_legacy(cls, value: str) -> "UserRole":
        normalized = value.strip().lower()
        aliases = {
            "moderador": cls.MODERATOR,
            "usuario": cls.USER,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class ConsumerState(StrEnum):
    """Lifecycle of the ingestion consumer."""

    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    PROCESSING = "processing"
    STOPPED = "stopped"


class IngestionOutcome(StrEnum):
    """What happened to a single bus message."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    IGNORED = "ignored"
    FAILED = "failed"
