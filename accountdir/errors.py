"""
Error Taxonomy.

Every failure raised by the directory client, the repositories and the
ingestion consumer derives from :class:`AccountDirectoryError`.  Each
exception carries the lower-level cause in ``original_error`` so callers
can log it without re-parsing messages.

Two families matter to the fallback layer:

- **Infrastructure errors** (:class:`DirectoryConnectionError`,
  :class:`DirectoryOperationError`, :class:`RepositoryError`) mean a backend
  could not answer.  They trigger failover to the secondary store.
- **Domain outcomes** (:class:`DuplicateError`,
  :class:`RecordValidationError`, :class:`RecordNotFoundError`,
  :class:`CodecBudgetError`) are authoritative answers from a healthy
  backend and are surfaced unchanged.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "AccountDirectoryError",
    "AggregateFailoverError",
    "CodecBudgetError",
    "CollisionError",
    "DirectoryConnectionError",
    "DirectoryOperationError",
    "DuplicateError",
    "PartialUpdateError",
    "RecordNotFoundError",
    "RecordValidationError",
    "RepositoryError",
    "SearchError",
]


class AccountDirectoryError(Exception):
    """Base class for all AccountDirectory failures."""

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        self.message: str = message
        self.original_error: Optional[Exception] = original_error
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class RepositoryError(AccountDirectoryError):
    """A backing store could not complete the operation."""


class DirectoryConnectionError(RepositoryError):
    """Bind or connect to the directory server failed."""


class DirectoryOperationError(RepositoryError):
    """An add, modify or delete was rejected by the directory server.

    ``result_code`` and ``description`` are copied from the LDAP result
    when available (e.g. ``68`` / ``entryAlreadyExists``).
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        result_code: Optional[int] = None,
        description: Optional[str] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.result_code: Optional[int] = result_code
        self.description: Optional[str] = description


class SearchError(RepositoryError):
    """A directory search failed.

    The directory client logs and swallows this one: a failed search is
    reported to callers as "no entries".
    """


class AggregateFailoverError(RepositoryError):
    """Both the primary and the secondary store failed the same operation."""

    def __init__(
        self,
        operation: str,
        primary_error: Exception,
        secondary_error: Exception,
    ) -> None:
        super().__init__(
            f"{operation} failed on both stores: "
            f"primary={primary_error!s}; secondary={secondary_error!s}",
            original_error=secondary_error,
        )
        self.operation: str = operation
        self.primary_error: Exception = primary_error
        self.secondary_error: Exception = secondary_error


# ---------------------------------------------------------------------------
# Domain outcomes
# ---------------------------------------------------------------------------

class RecordValidationError(AccountDirectoryError):
    """Input failed validation before reaching a store."""


class RecordNotFoundError(AccountDirectoryError):
    """The addressed record does not exist."""


class DuplicateError(AccountDirectoryError):
    """The email (or derived uid) is already taken."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        field: str = "email",
        value: Optional[str] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.field: str = field
        self.value: Optional[str] = value


class CodecBudgetError(AccountDirectoryError):
    """The mandatory metadata fields alone exceed the description budget."""


class CollisionError(AccountDirectoryError):
    """No free record id was found within the regeneration limit."""


class PartialUpdateError(AccountDirectoryError):
    """Critical attributes were written but the metadata write failed.

    Never raised out of the repository; constructed so the failure can be
    logged with a stable type name.
    """
