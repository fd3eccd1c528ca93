"""
Record Codec.

Packs the fields of a :class:`UserRecord` that have no home in the
``inetOrgPerson`` schema into the single-valued ``description`` attribute,
and unpacks them again.

Wire format
-----------
Ordered ``key:value`` segments joined by ``|``::

    SV:1|ID:1b4e28ba-2fa1-11d2-883f-0016d3cca427|Rol:admin|Ver:S|C:2024-03-01

``SV`` is always first so future layouts can be told apart.  The key
table (:data:`FIELD_TABLE`) is the single source of truth for keys,
per-field length limits and value kinds.

Length budget
-------------
Directory servers commonly cap ``description`` at 200 characters.  The
budget is enforced per field *before* joining: free text is truncated to
the field's own limit, and if the joined result is still too long whole
optional fields are dropped in :data:`DROP_ORDER`.  Values are never cut
in the middle.  ``Nom``, ``Nac`` and ``Tel`` go first because their full
values are also stored in ``cn``, ``st`` and ``telephoneNumber``.

Legacy descriptions
-------------------
Entries migrated by the earlier tooling carry
``Migrado desde Supabase - {json}``.  :func:`decode` reads those too so the
foreign id (``supabase_id``) keeps resolving.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Callable, Optional

from pydantic import BaseModel

from accountdir.errors import CodecBudgetError
from accountdir.models.enums import UserRole
from accountdir.models.user import UserRecord, is_password_hash

__all__ = [
    "DEFAULT_BUDGET",
    "DROP_ORDER",
    "FIELD_TABLE",
    "LEGACY_PREFIX",
    "SCHEMA_VERSION",
    "DecodedMetadata",
    "ValueKind",
    "decode",
    "encode",
]

DEFAULT_BUDGET: int = 200
SCHEMA_VERSION: str = "1"
LEGACY_PREFIX: str = "Migrado desde Supabase - "

_SEPARATOR = "|"
_UNSAFE_CHARS_RE = re.compile(r"[|\x00-\x1f\x7f]")


class ValueKind(StrEnum):
    """How a segment value is rendered and parsed."""

    RAW = "raw"
    TEXT = "text"
    DATE = "date"
    FLAG = "flag"
    ROLE = "role"


@dataclass(frozen=True)
class FieldSpec:
    """One row of the key table."""

    key: str
    attr: str
    kind: ValueKind
    max_len: Optional[int] = None
    mandatory: bool = False


FIELD_TABLE: tuple[FieldSpec, ...] = (
    FieldSpec("SV", "schema_version", ValueKind.RAW, mandatory=True),
    FieldSpec("ID", "id", ValueKind.RAW, mandatory=True),
    FieldSpec("Rol", "role", ValueKind.ROLE, mandatory=True),
    FieldSpec("Ver", "email_verified", ValueKind.FLAG, mandatory=True),
    FieldSpec("PW", "password_hash", ValueKind.RAW, mandatory=True),
    FieldSpec("C", "created_at", ValueKind.DATE),
    FieldSpec("U", "updated_at", ValueKind.DATE),
    FieldSpec("L", "last_login_at", ValueKind.DATE),
    FieldSpec("Nom", "full_name", ValueKind.TEXT, 10),
    FieldSpec("Nac", "nationality", ValueKind.TEXT, 5),
    FieldSpec("Tel", "phone", ValueKind.TEXT, 10),
    FieldSpec("TV", "email_verification_token", ValueKind.TEXT, 6),
    FieldSpec("TR", "password_reset_token", ValueKind.TEXT, 6),
    FieldSpec("RE", "password_reset_expires", ValueKind.DATE),
    FieldSpec("CA", "created_by_admin", ValueKind.FLAG),
    FieldSpec("IP", "initial_password_changed", ValueKind.FLAG),
)

_SPEC_BY_KEY: dict[str, FieldSpec] = {spec.key: spec for spec in FIELD_TABLE}

DROP_ORDER: tuple[str, ...] = (
    "Nom", "Nac", "Tel", "TV", "TR", "RE", "L", "U", "IP", "CA", "C",
)


class DecodedMetadata(BaseModel):
    """Fields recovered from a ``description`` value.

    Only keys that were present in the input are set; check
    ``model_fields_set`` to tell "absent" from "present but empty".
    """

    schema_version: Optional[str] = None
    id: Optional[str] = None
    role: Optional[UserRole] = None
    email_verified: Optional[bool] = None
    password_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    full_name: Optional[str] = None
    nationality: Optional[str] = None
    phone: Optional[str] = None
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    created_by_admin: Optional[bool] = None
    initial_password_changed: Optional[bool] = None
    legacy: bool = False


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------

def _clean(value: str) -> str:
    return _UNSAFE_CHARS_RE.sub("", value).strip()


def _format_date(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%d")


def _format_value(spec: FieldSpec, value: object) -> Optional[str]:
    """Render *value* for *spec*, or ``None`` when the segment is omitted."""
    if value is None:
        return None
    if spec.kind is ValueKind.FLAG:
        return "S" if value else "N"
    if spec.kind is ValueKind.DATE:
        return _format_date(value)  # type: ignore[arg-type]
    if spec.kind is ValueKind.ROLE:
        return str(value)
    text = _clean(str(value))
    if not text:
        return None
    if spec.max_len is not None:
        text = text[: spec.max_len].rstrip()
    return text


def _record_values(record: UserRecord) -> dict[str, object]:
    values: dict[str, object] = record.model_dump()
    values["schema_version"] = SCHEMA_VERSION
    password = record.password
    values["password_hash"] = password if is_password_hash(password) else None
    return values


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------

def encode(record: UserRecord, budget: int = DEFAULT_BUDGET) -> str:
    """Encode the non-standard fields of *record* into a description string.

    Parameters
    ----------
    record:
        The record to encode.  ``password`` contributes a ``PW`` segment
        only when it is already a hash.
    budget:
        Maximum length of the returned string.

    Raises
    ------
    CodecBudgetError
        If the mandatory segments alone exceed *budget*.
    """
    values = _record_values(record)
    segments: dict[str, str] = {}
    for spec in FIELD_TABLE:
        rendered = _format_value(spec, values.get(spec.attr))
        if rendered is not None:
            segments[spec.key] = f"{spec.key}:{rendered}"

    def _joined() -> str:
        return _SEPARATOR.join(segments[spec.key] for spec in FIELD_TABLE if spec.key in segments)

    text = _joined()
    for key in DROP_ORDER:
        if len(text) <= budget:
            return text
        if key in segments:
            del segments[key]
            text = _joined()

    if len(text) > budget:
        raise CodecBudgetError(
            f"Mandatory metadata for record {record.id} needs {len(text)} "
            f"characters; budget is {budget}."
        )
    return text


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------

def _parse_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if len(value) == 10:
        return parsed.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_flag(value: str) -> bool:
    if value in ("S", "N"):
        return value == "S"
    raise ValueError(f"Flag must be 'S' or 'N', got {value!r}")


_PARSERS: dict[ValueKind, Callable[[str], object]] = {
    ValueKind.RAW: lambda value: value,
    ValueKind.TEXT: lambda value: value,
    ValueKind.DATE: _parse_date,
    ValueKind.FLAG: _parse_flag,
    ValueKind.ROLE: UserRole.from_legacy,
}


def decode(text: Optional[str]) -> DecodedMetadata:
    """Decode a description string.

    Malformed segments (no ``:``, unparsable value) and unknown keys are
    skipped.  Never raises for bad input: an unreadable description
    yields an empty :class:`DecodedMetadata`.
    """
    if not text:
        return DecodedMetadata()
    if text.startswith(LEGACY_PREFIX):
        return _decode_legacy(text[len(LEGACY_PREFIX):])

    fields: dict[str, object] = {}
    for segment in text.split(_SEPARATOR):
        key, sep, raw_value = segment.partition(":")
        if not sep or not raw_value:
            continue
        spec = _SPEC_BY_KEY.get(key.strip())
        if spec is None:
            continue
        try:
            fields[spec.attr] = _PARSERS[spec.kind](raw_value)
        except ValueError:
            continue
    return DecodedMetadata(**fields)


_LEGACY_KEYS: dict[str, str] = {
    "supabase_id": "id",
    "rol": "role",
    "email_verified": "email_verified",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "last_login_at": "last_login_at",
    "nombre_completo": "full_name",
    "nacionalidad": "nationality",
    "telefono": "phone",
    "email_verification_token": "email_verification_token",
    "password_reset_token": "password_reset_token",
    "password_reset_expires": "password_reset_expires",
    "created_by_admin": "created_by_admin",
    "initial_password_changed": "initial_password_changed",
}


def _decode_legacy(body: str) -> DecodedMetadata:
    try:
        data = json.loads(body)
    except ValueError:
        return DecodedMetadata(legacy=True)
    if not isinstance(data, dict):
        return DecodedMetadata(legacy=True)

    fields: dict[str, object] = {"legacy": True}
    for source_key, attr in _LEGACY_KEYS.items():
        value = data.get(source_key)
        if value is None:
            continue
        try:
            if attr == "role":
                fields[attr] = UserRole.from_legacy(str(value))
            elif attr.endswith(("_at", "_expires")):
                fields[attr] = _parse_date(str(value))
            elif attr in ("email_verified", "created_by_admin", "initial_password_changed"):
                fields[attr] = bool(value)
            else:
                fields[attr] = str(value)
        except ValueError:
            continue
    password = data.get("password")
    if isinstance(password, str) and is_password_hash(password):
        fields["password_hash"] = password
    return DecodedMetadata(**fields)
