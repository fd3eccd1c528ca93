"""
Fallback Repository.

Composes two :class:`RecordStore` implementations.  Every call goes to the
primary; if the primary cannot answer it goes to the secondary, exactly
once.  There is no reconciliation: a record written to the secondary
while the primary was down stays only there until repaired by other
means.

Which failures fail over
------------------------
Only infrastructure failures (:class:`RepositoryError` and its
subclasses, plus anything unexpected) move the call to the secondary.
Domain outcomes from a healthy primary (:class:`DuplicateError`,
:class:`RecordValidationError`, :class:`RecordNotFoundError`,
:class:`CodecBudgetError`) are final answers and are re-raised as they
are.  Retrying a duplicate on the other store would let the same email
land twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, TypeVar

from accountdir.errors import (
    AggregateFailoverError,
    CodecBudgetError,
    DuplicateError,
    RecordNotFoundError,
    RecordValidationError,
)
from accountdir.logger import StructuredLogger
from accountdir.models.enums import UserRole
from accountdir.models.user import (
    FindAllOptions,
    UserCreate,
    UserPage,
    UserRecord,
    UserUpdate,
)
from accountdir.repositories.record_store import RecordStore

__all__ = ["FallbackRepository"]

T = TypeVar("T")

_AUTHORITATIVE: tuple[type[Exception], ...] = (
    DuplicateError,
    RecordValidationError,
    RecordNotFoundError,
    CodecBudgetError,
)


class FallbackRepository:
    """Primary-then-secondary :class:`RecordStore`.

    Parameters
    ----------
    primary:
        Tried first for every operation (the directory in production).
    secondary:
        Used once when the primary raises an infrastructure error.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        primary: RecordStore,
        secondary: RecordStore,
        logger: StructuredLogger,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._logger = logger

    def _with_fallback(self, operation: str, call: Callable[[RecordStore], T]) -> T:
        try:
            return call(self._primary)
        except _AUTHORITATIVE:
            raise
        except Exception as primary_error:
            self._logger.warning(
                "Primary store failed for %s, using secondary: %s",
                operation,
                primary_error,
            )
            try:
                return call(self._secondary)
            except _AUTHORITATIVE:
                raise
            except Exception as secondary_error:
                self._logger.error(
                    "Secondary store also failed for %s: %s", operation, secondary_error
                )
                raise AggregateFailoverError(operation, primary_error, secondary_error) from secondary_error

    # ------------------------------------------------------------------
    # RecordStore
    # ------------------------------------------------------------------

    def create(self, data: UserCreate) -> UserRecord:
        """Create on the primary (or the secondary when it is down).

        The secondary is asked about the email first so that uniqueness
        holds across both stores.  That check is best effort: if the
        secondary cannot answer, creation proceeds.
        """
        try:
            if self._secondary.exists_by_email(data.email):
                raise DuplicateError(
                    f"Email already registered: {data.email}", value=data.email
                )
        except DuplicateError:
            raise
        except Exception as exc:
            self._logger.warning(
                "Secondary email check unavailable for create: %s", exc
            )
        return self._with_fallback("create", lambda store: store.create(data))

    def find_by_id(self, record_id: str) -> Optional[UserRecord]:
        return self._with_fallback("find_by_id", lambda store: store.find_by_id(record_id))

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        return self._with_fallback("find_by_email", lambda store: store.find_by_email(email))

    def exists_by_email(self, email: str) -> bool:
        return self._with_fallback("exists_by_email", lambda store: store.exists_by_email(email))

    def update(self, record_id: str, changes: UserUpdate) -> UserRecord:
        return self._with_fallback("update", lambda store: store.update(record_id, changes))

    def delete(self, record_id: str) -> bool:
        return self._with_fallback("delete", lambda store: store.delete(record_id))

    def find_all(self, options: FindAllOptions) -> UserPage:
        return self._with_fallback("find_all", lambda store: store.find_all(options))

    def find_by_role(self, role: UserRole) -> list[UserRecord]:
        return self._with_fallback("find_by_role", lambda store: store.find_by_role(role))

    def count(self) -> int:
        return self._with_fallback("count", lambda store: store.count())

    def count_by_role(self) -> dict[UserRole, int]:
        return self._with_fallback("count_by_role", lambda store: store.count_by_role())

    def find_by_date_range(self, start: datetime, end: datetime) -> list[UserRecord]:
        return self._with_fallback(
            "find_by_date_range", lambda store: store.find_by_date_range(start, end)
        )

    def update_last_login(self, record_id: str) -> None:
        self._with_fallback("update_last_login", lambda store: store.update_last_login(record_id))

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        """Only the record (or ``None``) is returned; the answering store is not disclosed."""
        return self._with_fallback(
            "authenticate", lambda store: store.authenticate(email, password)
        )
