from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class AuditEventType(str, Enum):
    LEDGER = "ledger"
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    SETTLEMENT = "settlement"
    REJECTION = "rejection"
    ERROR = "error"


class AuditEvent(DBSerializableModel):
    """
    Structured audit record persisted to DB and mirrored to the file log.
    """

    collection_name: ClassVar[str] = "hp_audit_log"

    id: Optional[str] = Field(default=None)
    event_type: AuditEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Request id or webhook event id that caused this entry.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ProcessedWebhookEvent(DBSerializableModel):
    """
    Marker that a payment-provider event id has been fully applied.
    """

    collection_name: ClassVar[str] = "processed_webhook_events"
    primary_key: ClassVar[Optional[str]] = "event_id"

    event_id: str
    event_type: str
    processed_at: datetime = Field(default_factory=utcnow)
