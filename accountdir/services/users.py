"""
User Management Service.

Wraps the record store in the ``ServiceResult`` envelope so that an HTTP
layer (or a CLI) can branch on ``status_code`` instead of catching
repository exceptions.  Records leave this service without password
material.

Status mapping:
    - RecordValidationError / pydantic ValidationError -> 400
    - RecordNotFoundError -> 404
    - DuplicateError -> 409
    - AggregateFailoverError (both stores down) -> 503
    - anything else -> 500
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from accountdir.errors import (
    AggregateFailoverError,
    DuplicateError,
    RecordNotFoundError,
    RecordValidationError,
)
from accountdir.logger import StructuredLogger
from accountdir.models.enums import UserRole
from accountdir.models.service_models import ServiceResult
from accountdir.models.user import FindAllOptions, UserCreate, UserPage, UserRecord, UserUpdate
from accountdir.repositories.record_store import RecordStore
from accountdir.services.base_service import BaseService


class UserService(BaseService):
    """Service layer for user account operations."""

    def __init__(self, store: RecordStore, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._store = store

    def _failure(self, operation: str, exc: Exception) -> ServiceResult:
        if isinstance(exc, (RecordValidationError, ValidationError)):
            return ServiceResult(success=False, error=str(exc), status_code=400)
        if isinstance(exc, RecordNotFoundError):
            return ServiceResult(success=False, error="User not found.", status_code=404)
        if isinstance(exc, DuplicateError):
            return ServiceResult(success=False, error=str(exc), status_code=409)
        if isinstance(exc, AggregateFailoverError):
            self._logger.error("%s unavailable: %s", operation, exc)
            return ServiceResult(
                success=False,
                error="User storage is temporarily unavailable.",
                status_code=503,
            )
        self._logger.error("Failed to %s: %s", operation, exc, exc_info=True)
        return ServiceResult(
            success=False,
            error=f"Unexpected error during {operation}: {exc}",
            status_code=500,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_user(self, payload: Mapping[str, Any]) -> ServiceResult[UserRecord]:
        """Validate *payload* and create the account.  Returns 201 on success."""
        try:
            record = self._store.create(UserCreate.model_validate(dict(payload)))
        except Exception as exc:
            return self._failure("create user", exc)
        return ServiceResult(success=True, data=record.without_secrets(), status_code=201)

    def get_user(self, record_id: str) -> ServiceResult[UserRecord]:
        try:
            record: Optional[UserRecord] = self._store.find_by_id(record_id)
        except Exception as exc:
            return self._failure("get user", exc)
        if record is None:
            return ServiceResult(success=False, error="User not found.", status_code=404)
        return ServiceResult(success=True, data=record.without_secrets())

    def update_user(self, record_id: str, payload: Mapping[str, Any]) -> ServiceResult[UserRecord]:
        """Apply a partial update.  Keys absent from *payload* are left untouched."""
        try:
            record = self._store.update(record_id, UserUpdate.model_validate(dict(payload)))
        except Exception as exc:
            return self._failure("update user", exc)
        return ServiceResult(success=True, data=record.without_secrets())

    def delete_user(self, record_id: str) -> ServiceResult[bool]:
        try:
            deleted = self._store.delete(record_id)
        except Exception as exc:
            return self._failure("delete user", exc)
        if not deleted:
            return ServiceResult(success=False, error="User not found.", status_code=404)
        return ServiceResult(success=True, data=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_users(self, options: Optional[Mapping[str, Any]] = None) -> ServiceResult[UserPage]:
        try:
            page = self._store.find_all(FindAllOptions.model_validate(dict(options or {})))
        except Exception as exc:
            return self._failure("list users", exc)
        page.users = [user.without_secrets() for user in page.users]
        return ServiceResult(success=True, data=page)

    def list_by_role(self, role: str) -> ServiceResult[list[UserRecord]]:
        try:
            validated_role = UserRole.from_legacy(role)
        except ValueError:
            return ServiceResult(
                success=False,
                error=f"Invalid role specified: '{role}'. "
                      f"Must be one of: {', '.join(r.value for r in UserRole)}.",
                status_code=400,
            )
        try:
            users = self._store.find_by_role(validated_role)
        except Exception as exc:
            return self._failure("list users by role", exc)
        return ServiceResult(success=True, data=[user.without_secrets() for user in users])

    def list_created_between(self, start: datetime, end: datetime) -> ServiceResult[list[UserRecord]]:
        if start > end:
            return ServiceResult(
                success=False, error="start must not be after end.", status_code=400
            )
        try:
            users = self._store.find_by_date_range(start, end)
        except Exception as exc:
            return self._failure("list users by date", exc)
        return ServiceResult(success=True, data=[user.without_secrets() for user in users])

    def stats(self) -> ServiceResult[dict[str, int]]:
        """Total accounts plus a count per role (every role present, zero included)."""
        try:
            total = self._store.count()
            by_role = self._store.count_by_role()
        except Exception as exc:
            return self._failure("compute user stats", exc)
        data: dict[str, int] = {"total": total}
        data.update({str(role): by_role.get(role, 0) for role in UserRole})
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> ServiceResult[UserRecord]:
        """Check credentials and stamp ``last_login_at``.

        Wrong email and wrong password produce the same 401 answer.
        """
        try:
            record = self._store.authenticate(email, password)
        except Exception as exc:
            return self._failure("authenticate", exc)
        if record is None:
            return ServiceResult(success=False, error="Invalid credentials.", status_code=401)

        try:
            self._store.update_last_login(record.id)
        except Exception as exc:
            self._logger.warning("Could not record last login for %s: %s", record.id, exc)
        return ServiceResult(success=True, data=record.without_secrets())
