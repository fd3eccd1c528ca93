"""
Connections for the relational (secondary) store.

- Supabase: the ``usuarios`` table that backs up the directory.  Its
  unique constraint on ``email`` is the authoritative duplicate check on
  this side.
- SQLite: a local read cache of ``usuarios`` rows, so reads keep answering
  while Supabase is unreachable, plus the ``audit_log`` table.

Queries live in :mod:`accountdir.repositories.relational_repository`.

Usage::

    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
        sqlite_path=Path(config.SQLITE_PATH),
        logger=StructuredLogger(name="database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Optional

from supabase import Client as SupabaseClient
from supabase import create_client

from accountdir.logger import StructuredLogger

_IN_MEMORY = ":memory:"


def _open_cache(path: Path) -> sqlite3.Connection:
    if str(path) != _IN_MEMORY:
        path.parent.mkdir(parents=True, exist_ok=True)
    # Shared by the consumer thread and request threads; writers hold write_lock.
    conn = sqlite3.connect(str(path), check_same_thread=False, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


class DatabaseManager:
    """Owns the Supabase client (optional) and the SQLite cache connection.

    Without a URL and key no Supabase client is built: :attr:`is_online`
    is ``False`` and :attr:`supabase` raises ``RuntimeError``, so the
    relational store serves reads from the cache and refuses writes.

    ``supabase_client`` injects a ready client (tests pass a mock).

    Raises
    ------
    PermissionError
        If the cache file cannot be opened or created.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        sqlite_path: Path,
        logger: StructuredLogger,
        supabase_client: Optional[SupabaseClient] = None,
    ) -> None:
        self._logger = logger
        self._write_lock = threading.RLock()
        self._closed = False
        self._supabase = supabase_client or self._connect_supabase(supabase_url, supabase_key)

        try:
            self._sqlite_conn = _open_cache(sqlite_path)
        except (OSError, sqlite3.OperationalError) as exc:
            self._logger.error("Cannot open local cache %s: %s", sqlite_path, exc)
            raise PermissionError(f"Local cache {sqlite_path} is not writable: {exc}") from exc
        self._logger.info("Local cache opened at %s", sqlite_path)

    def _connect_supabase(self, url: str, key: str) -> Optional[SupabaseClient]:
        if not (url and key):
            self._logger.warning("Supabase not configured; relational store is cache-only.")
            return None
        try:
            client = create_client(url, key)
        except Exception as exc:
            # supabase-py raises plain exceptions for a malformed URL or key.
            self._logger.error(
                "Supabase client could not be created (%s); relational store is cache-only.",
                exc,
            )
            return None
        self._logger.info("Supabase client ready.")
        return client

    @property
    def supabase(self) -> SupabaseClient:
        if self._supabase is None:
            raise RuntimeError("Supabase is not configured.")
        return self._supabase

    @property
    def is_online(self) -> bool:
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Hold around every cache write and its ``commit()``."""
        return self._write_lock

    def close(self) -> None:
        """Close the cache connection.  Further calls are no-ops."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._sqlite_conn.close()
        self._logger.info("Local cache closed.")
