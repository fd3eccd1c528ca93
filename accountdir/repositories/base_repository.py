"""
Base Repository.

Common plumbing for stores built on :class:`DatabaseManager`: access to
the Supabase client and the SQLite cache, and the remote-first read path
used by every query.
"""

from __future__ import annotations

import sqlite3
from typing import Callable, Optional, TypeVar

from supabase import Client as SupabaseClient

from accountdir.database import DatabaseManager
from accountdir.errors import RepositoryError
from accountdir.logger import StructuredLogger

T = TypeVar("T")


class BaseRepository:
    """Holds the ``DatabaseManager`` and logger injected by the service factory."""

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def supabase(self) -> SupabaseClient:
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._db.sqlite

    def _read(
        self,
        operation: str,
        remote: Callable[[], T],
        cached: Callable[[], T],
        warm: Optional[Callable[[T], None]] = None,
    ) -> T:
        """Answer a query from Supabase, or from the cache when Supabase is out.

        Whatever Supabase returns is the answer, ``None`` and empty results
        included; the cache is consulted only when Supabase is not
        configured or the call raised.  *warm* receives each remote answer
        so later offline reads see it.

        Raises
        ------
        RepositoryError
            When the cache query fails too.  An unreadable cache must not
            look like an empty store.
        """
        if self._db.is_online:
            try:
                answer = remote()
            except Exception as exc:
                self._logger.warning("Supabase %s failed, reading cache: %s", operation, exc)
            else:
                if warm is not None and answer is not None:
                    warm(answer)
                return answer

        try:
            return cached()
        except sqlite3.Error as exc:
            self._logger.error("Cache %s failed: %s", operation, exc)
            raise RepositoryError(f"{operation}: no readable source", original_error=exc) from exc

    def _commit(self) -> None:
        self.sqlite.commit()
