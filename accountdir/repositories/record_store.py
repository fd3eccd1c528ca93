"""
Record Store contract.

The operations every user-record backend implements.  The directory
repository, the relational repository and the fallback composite all
satisfy this protocol, so callers are wired against ``RecordStore`` and
never against a concrete backend.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from accountdir.models.enums import UserRole
from accountdir.models.user import (
    FindAllOptions,
    UserCreate,
    UserPage,
    UserRecord,
    UserUpdate,
)

__all__ = ["RecordStore"]


class RecordStore(Protocol):
    """User-record persistence.

    Raises
    ------
    DuplicateError
        ``create`` / ``update`` when the email (or derived uid) is taken.
    RecordNotFoundError
        ``update`` / ``update_last_login`` when the id does not resolve.
    RepositoryError
        When the backend itself could not answer.
    """

    def create(self, data: UserCreate) -> UserRecord: ...

    def find_by_id(self, record_id: str) -> Optional[UserRecord]: ...

    def find_by_email(self, email: str) -> Optional[UserRecord]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def update(self, record_id: str, changes: UserUpdate) -> UserRecord: ...

    def delete(self, record_id: str) -> bool: ...

    def find_all(self, options: FindAllOptions) -> UserPage: ...

    def find_by_role(self, role: UserRole) -> list[UserRecord]: ...

    def count(self) -> int: ...

    def count_by_role(self) -> dict[UserRole, int]: ...

    def find_by_date_range(self, start: datetime, end: datetime) -> list[UserRecord]: ...

    def update_last_login(self, record_id: str) -> None: ...

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]: ...
