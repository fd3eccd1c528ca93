"""
Local Cache Schema.

The SQLite file next to the service holds two tables:

- ``usuarios``: read cache mirroring the Supabase ``usuarios`` table.
  Column names follow the remote table so rows move between the two
  without renaming.  ``email`` is ``UNIQUE`` here as well.
- ``audit_log``: one row per :class:`~accountdir.utils.audit.AuditEvent`
  recorded by the relational store.

The applied version is kept in ``PRAGMA user_version``.  A fresh file is
created in one transaction; a file already at :data:`SCHEMA_VERSION` is
left alone.
"""

from __future__ import annotations

import sqlite3

from accountdir.logger import StructuredLogger

__all__ = ["SCHEMA_VERSION", "USERS_CACHE_COLUMNS", "initialize_schema", "schema_version"]

SCHEMA_VERSION: int = 1

USERS_CACHE_COLUMNS: tuple[str, ...] = (
    "id",
    "email",
    "password",
    "rol",
    "email_verified",
    "nombre_completo",
    "nacionalidad",
    "telefono",
    "created_at",
    "updated_at",
    "last_login_at",
    "password_reset_token",
    "password_reset_expires",
    "email_verification_token",
    "created_by_admin",
    "initial_password_changed",
)

_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS usuarios (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password TEXT,
        rol TEXT NOT NULL DEFAULT 'user'
            CHECK (rol IN ('admin', 'moderator', 'user')),
        email_verified INTEGER NOT NULL DEFAULT 0,
        nombre_completo TEXT,
        nacionalidad TEXT,
        telefono TEXT,
        created_at TEXT,
        updated_at TEXT,
        last_login_at TEXT,
        password_reset_token TEXT,
        password_reset_expires TEXT,
        email_verification_token TEXT,
        created_by_admin INTEGER NOT NULL DEFAULT 0,
        initial_password_changed INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usuarios_rol ON usuarios(rol)",
    "CREATE INDEX IF NOT EXISTS idx_usuarios_created_at ON usuarios(created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        at TEXT NOT NULL,
        action TEXT NOT NULL
            CHECK (action IN ('CREATE', 'UPDATE', 'DELETE', 'INGEST')),
        record_id TEXT NOT NULL,
        store TEXT,
        actor TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_record ON audit_log(record_id)",
)


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create the cache tables if this file predates them.  Safe on every startup."""
    found = schema_version(conn)
    if found >= SCHEMA_VERSION:
        logger.info("Cache schema at version %d.", found)
        return

    try:
        conn.execute("BEGIN")
        for statement in _DDL:
            conn.execute(statement)
        # PRAGMA does not take bound parameters.
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION:d}")
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        logger.error("Cache schema creation failed; file left at version %d.", found)
        raise
    logger.info("Cache schema created at version %d.", SCHEMA_VERSION)
