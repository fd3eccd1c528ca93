"""
Account Audit Trail.

Every change a store makes to an account (and every record the consumer
ingests) produces one :class:`AuditEvent`.  The event is always written to
the component's log as an ``AUDIT`` line; stores that own a
:class:`~accountdir.database.DatabaseManager` also pass it as ``sink`` so
the event lands in the local ``audit_log`` table.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Optional, Union

from pydantic import BaseModel, Field

from accountdir.logger import StructuredLogger

if TYPE_CHECKING:
    from accountdir.database import DatabaseManager

__all__ = ["AuditAction", "AuditEvent", "audit"]

# Scalars only; never passwords or tokens.
DetailValue = Union[str, int, float, bool, None]

SYSTEM_ACTOR = "system"


class AuditAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    INGEST = "INGEST"


class AuditEvent(BaseModel):
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: AuditAction
    record_id: str
    store: Optional[str] = None
    actor: str = SYSTEM_ACTOR
    details: dict[str, DetailValue] = Field(default_factory=dict)


def audit(
    logger: StructuredLogger,
    action: AuditAction,
    record_id: str,
    *,
    store: Optional[str] = None,
    actor: str = SYSTEM_ACTOR,
    details: Optional[dict[str, DetailValue]] = None,
    sink: Optional[DatabaseManager] = None,
) -> AuditEvent:
    """Record one audit event and return it.

    A failure to write the ``audit_log`` row is logged and swallowed: the
    account change it describes has already happened.
    """
    event = AuditEvent(
        action=action,
        record_id=record_id,
        store=store,
        actor=actor,
        details=details or {},
    )
    logger.info(
        "AUDIT %s %s", event.action, event.record_id,
        extra={"audit": event.model_dump(mode="json")},
    )
    if sink is not None:
        try:
            with sink.write_lock:
                sink.sqlite.execute(
                    "INSERT INTO audit_log (at, action, record_id, store, actor, details) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        event.at.isoformat(),
                        str(event.action),
                        event.record_id,
                        event.store,
                        event.actor,
                        json.dumps(event.details),
                    ),
                )
                sink.sqlite.commit()
        except sqlite3.Error as exc:
            logger.warning("Audit row for %s not persisted: %s", record_id, exc)
    return event
