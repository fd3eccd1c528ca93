"""
User Record Models.

``UserRecord`` is the logical account shared by both stores.  The write
DTOs (``UserCreate`` / ``UserUpdate``) separate "field not supplied" from
"field explicitly cleared" through pydantic's ``model_fields_set``.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from accountdir.models.enums import UserRole

__all__ = [
    "FindAllOptions",
    "UserCreate",
    "UserPage",
    "UserRecord",
    "UserUpdate",
    "is_password_hash",
]

_PASSWORD_HASH_RE = re.compile(r"^\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53}$")


def is_password_hash(value: Optional[str]) -> bool:
    """Return ``True`` when *value* looks like a bcrypt hash."""
    return bool(value) and _PASSWORD_HASH_RE.match(value) is not None


def _normalize_email(value: str) -> str:
    return value.strip().lower()


class UserRecord(BaseModel):
    """A user account as read from either store."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)

    id: str
    email: str
    password: Optional[str] = Field(default=None, repr=False)
    role: UserRole = UserRole.USER
    email_verified: bool = False
    full_name: Optional[str] = None
    nationality: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_reset_token: Optional[str] = Field(default=None, repr=False)
    password_reset_expires: Optional[datetime] = None
    email_verification_token: Optional[str] = Field(default=None, repr=False)
    created_by_admin: bool = False
    initial_password_changed: bool = False

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return _normalize_email(value)

    def without_secrets(self) -> "UserRecord":
        """Copy of the record safe to hand to presentation code."""
        return self.model_copy(
            update={
                "password": None,
                "password_reset_token": None,
                "email_verification_token": None,
            }
        )


class UserCreate(BaseModel):
    """Input for ``RecordStore.create``.

    ``id`` is optional; stores generate a UUID when it is missing.
    """

    id: Optional[str] = None
    email: str = Field(min_length=3)
    password: str = Field(min_length=1, repr=False)
    role: UserRole = UserRole.USER
    email_verified: bool = False
    full_name: Optional[str] = None
    nationality: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    email_verification_token: Optional[str] = Field(default=None, repr=False)
    created_by_admin: bool = False
    initial_password_changed: bool = False

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        normalized = _normalize_email(value)
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized


class UserUpdate(BaseModel):
    """Partial update.  Only fields present in ``model_fields_set`` apply.

    Passing ``None`` (or ``""`` for text fields) explicitly clears the
    value; omitting the field leaves it untouched.
    """

    email: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    role: Optional[UserRole] = None
    email_verified: Optional[bool] = None
    full_name: Optional[str] = None
    nationality: Optional[str] = None
    phone: Optional[str] = None
    last_login_at: Optional[datetime] = None
    password_reset_token: Optional[str] = Field(default=None, repr=False)
    password_reset_expires: Optional[datetime] = None
    email_verification_token: Optional[str] = Field(default=None, repr=False)
    created_by_admin: Optional[bool] = None
    initial_password_changed: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = _normalize_email(value)
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized

    def changes(self) -> dict[str, object]:
        """The explicitly supplied fields and their values."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    def apply_to(self, record: UserRecord, now: datetime) -> UserRecord:
        """Return *record* with these changes merged and ``updated_at`` bumped."""
        changes = self.changes()
        for key in ("email", "role", "email_verified", "created_by_admin",
                    "initial_password_changed"):
            # Non-nullable on the record: an explicit None means "keep".
            if key in changes and changes[key] is None:
                del changes[key]
        for key in ("full_name", "nationality", "phone"):
            if changes.get(key) == "":
                changes[key] = None
        changes["updated_at"] = now
        return record.model_copy(update=changes)


class FindAllOptions(BaseModel):
    """Paging and filter options for ``find_all``."""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=500)
    search: Optional[str] = None
    role: Optional[UserRole] = None
    email_verified: Optional[bool] = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def matches(self, record: UserRecord) -> bool:
        """Client-side filter shared by stores that cannot filter natively."""
        if self.role is not None and record.role != self.role:
            return False
        if self.email_verified is not None and record.email_verified != self.email_verified:
            return False
        if self.search:
            needle = self.search.strip().lower()
            haystack = f"{record.full_name or ''} {record.email}".lower()
            if needle not in haystack:
                return False
        return True


class UserPage(BaseModel):
    """One page of ``find_all`` results."""

    users: list[UserRecord]
    total: int
    page: int
    limit: int
