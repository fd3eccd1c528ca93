"""
Relational Repository.

Secondary record store backed by the Supabase ``usuarios`` table, with the
local SQLite cache answering reads when Supabase is unreachable.

- Reads: Supabase first, cache fallback (``BaseRepository._read``).
  Successful Supabase reads warm the cache.
- Writes: Supabase only.  Failures raise :class:`RepositoryError` so the
  fallback composite can report both stores' errors.  PostgreSQL unique
  violations (``23505``) become :class:`DuplicateError`; the table's
  unique constraint on ``email`` is the authoritative duplicate check.

Column names follow the remote table (``rol``, ``nombre_completo``, ...).
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import JsonValue

from accountdir.credentials import CredentialVerifier
from accountdir.database import DatabaseManager
from accountdir.errors import DuplicateError, RecordNotFoundError, RepositoryError
from accountdir.logger import StructuredLogger
from accountdir.models.enums import UserRole
from accountdir.models.user import (
    FindAllOptions,
    UserCreate,
    UserPage,
    UserRecord,
    UserUpdate,
    is_password_hash,
)
from accountdir.repositories.base_repository import BaseRepository
from accountdir.schema import USERS_CACHE_COLUMNS
from accountdir.utils.audit import AuditAction, audit
from accountdir.utils.string_helpers import sanitize_postgrest_value

__all__ = ["RelationalRepository"]

_UNIQUE_VIOLATION = "23505"

# record attribute -> table column (only where they differ)
_COLUMN_NAMES: dict[str, str] = {
    "role": "rol",
    "full_name": "nombre_completo",
    "nationality": "nacionalidad",
    "phone": "telefono",
}
_FIELD_NAMES: dict[str, str] = {column: field for field, column in _COLUMN_NAMES.items()}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_row(record: UserRecord) -> dict[str, JsonValue]:
    row: dict[str, JsonValue] = {}
    for field_name, value in record.model_dump().items():
        column = _COLUMN_NAMES.get(field_name, field_name)
        if column not in USERS_CACHE_COLUMNS:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, UserRole):
            value = str(value)
        row[column] = value
    return row


def _from_row(row: dict[str, object]) -> UserRecord:
    data: dict[str, object] = {}
    for column, value in row.items():
        if column not in USERS_CACHE_COLUMNS:
            continue
        field_name = _FIELD_NAMES.get(column, column)
        if field_name == "role":
            value = UserRole.from_legacy(str(value or UserRole.USER))
        elif field_name in ("email_verified", "created_by_admin", "initial_password_changed"):
            value = bool(value)
        data[field_name] = value
    return UserRecord(**data)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _is_unique_violation(exc: Exception) -> bool:
    return str(getattr(exc, "code", "")) == _UNIQUE_VIOLATION or _UNIQUE_VIOLATION in str(exc)


class RelationalRepository(BaseRepository):
    """Supabase + SQLite-cache :class:`~accountdir.repositories.record_store.RecordStore`."""

    TABLE = "usuarios"

    def __init__(
        self,
        db: DatabaseManager,
        verifier: CredentialVerifier,
        logger: StructuredLogger,
        table: str = "usuarios",
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        super().__init__(db, logger)
        self._verifier = verifier
        self._remote_table = table
        self._clock = clock
        self._id_factory = id_factory

    def _table(self):
        return self.supabase.table(self._remote_table)

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def _cache_to_sqlite(self, record: UserRecord) -> None:
        """Upsert *record* into the local cache.  Failures are non-fatal."""
        row = _to_row(record)
        columns = [c for c in USERS_CACHE_COLUMNS if c in row]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        try:
            with self._db.write_lock:
                # A stale row may still hold this email under another id.
                self.sqlite.execute(
                    f"DELETE FROM {self.TABLE} WHERE email = ? AND id != ?",
                    (record.email, record.id),
                )
                self.sqlite.execute(
                    f"INSERT INTO {self.TABLE} ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) "
                    f"ON CONFLICT(id) DO UPDATE SET {assignments}",
                    [row[c] for c in columns],
                )
                self._commit()
        except sqlite3.Error as exc:
            self._logger.warning(
                "Failed to cache user %s to SQLite (non-fatal): %s", record.id, exc
            )

    def _cache_many(self, records: list[UserRecord]) -> None:
        for record in records:
            self._cache_to_sqlite(record)

    def _evict(self, record_id: str) -> None:
        try:
            with self._db.write_lock:
                self.sqlite.execute(f"DELETE FROM {self.TABLE} WHERE id = ?", (record_id,))
                self._commit()
        except sqlite3.Error as exc:
            self._logger.warning("Failed to evict user %s from cache: %s", record_id, exc)

    def _cached_rows(self, where: str = "", params: tuple[object, ...] = ()) -> list[UserRecord]:
        rows = self.sqlite.execute(f"SELECT * FROM {self.TABLE} {where}", params).fetchall()
        return [_from_row(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _find_one(self, column: str, value: str, operation: str) -> Optional[UserRecord]:
        def _supabase() -> Optional[UserRecord]:
            response = self._table().select("*").eq(column, value).maybe_single().execute()
            # maybe_single() returns no response at all when nothing matched
            if response is None or not response.data:
                return None
            return _from_row(response.data)

        def _sqlite() -> Optional[UserRecord]:
            rows = self._cached_rows(f"WHERE {column} = ?", (value,))
            return rows[0] if rows else None

        return self._read(operation, remote=_supabase, cached=_sqlite, warm=self._cache_to_sqlite)

    def find_by_id(self, record_id: str) -> Optional[UserRecord]:
        return self._find_one("id", record_id, "find_by_id")

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        return self._find_one("email", email.strip().lower(), "find_by_email")

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def find_all(self, options: FindAllOptions) -> UserPage:
        """Page of users, newest first, filtered server-side when online."""

        def _supabase() -> UserPage:
            query = self._table().select("*", count="exact")
            if options.role is not None:
                query = query.eq("rol", str(options.role))
            if options.email_verified is not None:
                query = query.eq("email_verified", options.email_verified)
            if options.search:
                term = sanitize_postgrest_value(options.search.strip())
                if term:
                    query = query.or_(f"nombre_completo.ilike.%{term}%,email.ilike.%{term}%")
            response = (
                query.order("created_at", desc=True)
                .range(options.offset, options.offset + options.limit - 1)
                .execute()
            )
            users = [_from_row(row) for row in response.data or []]
            total = response.count if response.count is not None else len(users)
            return UserPage(users=users, total=total, page=options.page, limit=options.limit)

        def _sqlite() -> UserPage:
            matching = [r for r in self._cached_rows("ORDER BY created_at DESC") if options.matches(r)]
            window = matching[options.offset: options.offset + options.limit]
            return UserPage(users=window, total=len(matching), page=options.page, limit=options.limit)

        return self._read(
            "find_all",
            remote=_supabase,
            cached=_sqlite,
            warm=lambda page: self._cache_many(page.users),
        )

    def find_by_role(self, role: UserRole) -> list[UserRecord]:
        def _supabase() -> list[UserRecord]:
            response = self._table().select("*").eq("rol", str(role)).execute()
            return [_from_row(row) for row in response.data or []]

        return self._read(
            "find_by_role",
            remote=_supabase,
            cached=lambda: self._cached_rows("WHERE rol = ?", (str(role),)),
            warm=self._cache_many,
        )

    def count(self) -> int:
        def _supabase() -> int:
            response = self._table().select("id", count="exact").execute()
            return response.count if response.count is not None else len(response.data or [])

        def _sqlite() -> int:
            row = self.sqlite.execute(f"SELECT COUNT(*) FROM {self.TABLE}").fetchone()
            return int(row[0])

        return self._read(
            "count",
            remote=_supabase,
            cached=_sqlite,
        )

    def count_by_role(self) -> dict[UserRole, int]:
        def _tally(roles: list[object]) -> dict[UserRole, int]:
            counts: dict[UserRole, int] = {role: 0 for role in UserRole}
            for value in roles:
                try:
                    counts[UserRole.from_legacy(str(value))] += 1
                except ValueError:
                    continue
            return counts

        def _supabase() -> dict[UserRole, int]:
            response = self._table().select("rol").execute()
            return _tally([row.get("rol") for row in response.data or []])

        def _sqlite() -> dict[UserRole, int]:
            rows = self.sqlite.execute(f"SELECT rol FROM {self.TABLE}").fetchall()
            return _tally([row[0] for row in rows])

        return self._read(
            "count_by_role",
            remote=_supabase,
            cached=_sqlite,
        )

    def find_by_date_range(self, start: datetime, end: datetime) -> list[UserRecord]:
        def _supabase() -> list[UserRecord]:
            response = (
                self._table()
                .select("*")
                .gte("created_at", start.isoformat())
                .lte("created_at", end.isoformat())
                .execute()
            )
            return [_from_row(row) for row in response.data or []]

        def _sqlite() -> list[UserRecord]:
            return [
                r for r in self._cached_rows()
                if r.created_at is not None
                and _aware(start) <= _aware(r.created_at) <= _aware(end)
            ]

        return self._read(
            "find_by_date_range",
            remote=_supabase,
            cached=_sqlite,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, operation: str, call: Callable[[], object]) -> object:
        """Run a Supabase write, translating failures."""
        try:
            return call()
        except Exception as exc:
            if _is_unique_violation(exc):
                raise DuplicateError(
                    f"{operation}: email already registered", original_error=exc
                ) from exc
            self._logger.error("Supabase %s failed: %s", operation, exc)
            raise RepositoryError(f"{operation} failed on Supabase: {exc}", exc) from exc

    def _hash_material(self, material: str) -> str:
        return material if is_password_hash(material) else self._verifier.hash_password(material)

    def create(self, data: UserCreate) -> UserRecord:
        now = self._clock()
        record = UserRecord(
            id=data.id or self._id_factory(),
            email=data.email,
            password=self._hash_material(data.password),
            role=data.role,
            email_verified=data.email_verified,
            full_name=data.full_name,
            nationality=data.nationality,
            phone=data.phone,
            created_at=data.created_at or now,
            updated_at=now,
            email_verification_token=data.email_verification_token,
            created_by_admin=data.created_by_admin,
            initial_password_changed=data.initial_password_changed,
        )
        response = self._write("create", lambda: self._table().insert(_to_row(record)).execute())
        rows = getattr(response, "data", None) or []
        created = _from_row(rows[0]) if rows else record
        self._cache_to_sqlite(created)
        audit(
            self._logger,
            AuditAction.CREATE,
            created.id,
            store="relational",
            details={"role": str(created.role)},
            sink=self._db,
        )
        return created

    def update(self, record_id: str, changes: UserUpdate) -> UserRecord:
        current = self.find_by_id(record_id)
        if current is None:
            raise RecordNotFoundError(f"User record not found: {record_id}")

        updated = changes.apply_to(current, self._clock())
        fields = changes.changes()
        if fields.get("password"):
            updated = updated.model_copy(update={"password": self._hash_material(fields["password"])})
        else:
            updated = updated.model_copy(update={"password": current.password})

        row = _to_row(updated)
        row.pop("id")
        response = self._write(
            "update", lambda: self._table().update(row).eq("id", record_id).execute()
        )
        rows = getattr(response, "data", None) or []
        if not rows:
            raise RecordNotFoundError(f"User record not found: {record_id}")
        result = _from_row(rows[0])
        self._cache_to_sqlite(result)
        audit(
            self._logger,
            AuditAction.UPDATE,
            record_id,
            store="relational",
            details={
                "fields": ",".join(sorted(k for k in fields if k != "password")),
                "password_changed": "password" in fields,
            },
            sink=self._db,
        )
        return result

    def delete(self, record_id: str) -> bool:
        response = self._write(
            "delete", lambda: self._table().delete().eq("id", record_id).execute()
        )
        self._evict(record_id)
        deleted = bool(getattr(response, "data", None))
        if deleted:
            audit(self._logger, AuditAction.DELETE, record_id, store="relational", sink=self._db)
        return deleted

    def update_last_login(self, record_id: str) -> None:
        stamp = self._clock().isoformat()
        response = self._write(
            "update_last_login",
            lambda: self._table().update({"last_login_at": stamp}).eq("id", record_id).execute(),
        )
        rows = getattr(response, "data", None) or []
        if not rows:
            raise RecordNotFoundError(f"User record not found: {record_id}")
        self._cache_to_sqlite(_from_row(rows[0]))

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        record = self.find_by_email(email)
        if record is None or not record.password:
            return None
        if self._verifier.verify_password(password, record.password):
            return record
        return None
