"""
Data Models Package.

Re-exports the Pydantic models and enums:
    from accountdir.models import UserRecord, UserCreate, UserUpdate, UserRole
"""

from accountdir.models.enums import ConsumerState, IngestionOutcome, UserRole
from accountdir.models.event_models import (
    ConfirmationEvent,
    ConfirmationPayload,
    EventEnvelope,
    UserCreatedPayload,
)
from accountdir.models.service_models import ServiceResult
from accountdir.models.user import (
    FindAllOptions,
    UserCreate,
    UserPage,
    UserRecord,
    UserUpdate,
    is_password_hash,
)

__all__ = [
    "ConfirmationEvent",
    "ConfirmationPayload",
    "ConsumerState",
    "EventEnvelope",
    "FindAllOptions",
    "IngestionOutcome",
    "ServiceResult",
    "UserCreate",
    "UserCreatedPayload",
    "UserPage",
    "UserRecord",
    "UserRole",
    "UserUpdate",
    "is_password_hash",
]
