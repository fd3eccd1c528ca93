"""
Event Bus Models.

Envelope and payload schemas for account events.  Incoming JSON is
camelCase; it is passed through :func:`normalize_keys` before validation
so the models only ever see snake_case keys.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, JsonValue, field_validator

from accountdir.utils.string_helpers import normalize_keys

__all__ = [
    "ConfirmationEvent",
    "ConfirmationPayload",
    "EventEnvelope",
    "UserCreatedPayload",
]


class EventEnvelope(BaseModel):
    """Transport envelope shared by every event on the bus.

    ``payload`` may arrive as an object or as a JSON-encoded string;
    :meth:`payload_dict` decodes the second form.
    """

    model_config = ConfigDict(extra="ignore")

    message_id: str = ""
    event_type: str
    schema_version: str = "1.0"
    occurred_at: Optional[str] = None
    producer: Optional[str] = None
    correlation_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    payload: Union[dict[str, JsonValue], str, None] = None

    @classmethod
    def from_raw(cls, raw: Union[bytes, str]) -> "EventEnvelope":
        """Parse a raw message value.

        Raises
        ------
        ValueError
            If the bytes are not a JSON object.
        pydantic.ValidationError
            If required envelope fields are missing.
        """
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Event envelope must be a JSON object")
        # Only the envelope keys are normalised; payload keys are
        # handled by the payload model.
        payload = data.pop("payload", None)
        envelope = normalize_keys(data)
        envelope["payload"] = payload
        return cls.model_validate(envelope)

    def payload_dict(self) -> dict[str, JsonValue]:
        """Return the payload as a snake_case dict, decoding double-encoded JSON."""
        payload = self.payload
        if isinstance(payload, str):
            payload = json.loads(payload)
        if not isinstance(payload, dict):
            raise ValueError("Event payload must be a JSON object")
        return normalize_keys(payload)


class UserCreatedPayload(BaseModel):
    """Payload of ``<namespace>.user.created``.

    Older producers send Spanish field names (``nombre_completo``,
    ``telefono``); both spellings are accepted.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_id: str = Field(min_length=1)
    full_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("full_name", "nombre_completo"),
    )
    email: str = Field(min_length=3)
    password: str = Field(min_length=1, repr=False)
    nationality_or_origin: str = Field(min_length=1)
    roles: list[str] = Field(min_length=1)
    created_at: datetime
    phone: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("phone", "telefono"),
    )

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized

    @field_validator("created_at", mode="before")
    @classmethod
    def _require_iso_string(cls, value: object) -> object:
        if isinstance(value, str):
            # Accept the trailing "Z" form JavaScript producers emit.
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        return value


class ConfirmationPayload(BaseModel):
    """Payload published after an ingested account is persisted."""

    user_id: str = Field(serialization_alias="userId")
    nationality_or_origin: str = Field(serialization_alias="nationalityOrOrigin")
    roles: list[str]
    created_at: str = Field(serialization_alias="createdAt")


class ConfirmationEvent(BaseModel):
    """Message shape written to the confirmation topic."""

    event_type: str
    schema_version: str = "1.0"
    correlation_id: Optional[str] = None
    payload: ConfirmationPayload

    def to_bytes(self) -> bytes:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True),
            ensure_ascii=False,
        ).encode("utf-8")
