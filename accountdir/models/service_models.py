"""
Service Layer Data Transfer Objects.

Typed return envelope for callers (HTTP handlers, CLI commands) that
branch on outcome instead of catching repository exceptions.
"""

from __future__ import annotations

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

__all__ = ["ServiceResult"]


class ServiceResult(BaseModel, Generic[T]):
    """
    Standard service return envelope.

    Generic over ``T`` so callers can annotate return types precisely
    (e.g. ``ServiceResult[UserRecord]``).  ``status_code`` follows HTTP
    conventions so an HTTP layer can pass it straight through.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    status_code: int = 200
