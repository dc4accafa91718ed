"""Audit log types."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditAction(str, Enum):
    """Actions recorded by the access engine."""

    ROLE_ASSIGNED = "ROLE_ASSIGNED"
    ROLE_REMOVED = "ROLE_REMOVED"
    MEMBER_EXPELLED = "MEMBER_EXPELLED"
    RECONCILIATION_FIX_APPLIED = "RECONCILIATION_FIX_APPLIED"
    BILLING_GRACE_STARTED = "BILLING_GRACE_STARTED"
    BILLING_RECOVERED = "BILLING_RECOVERED"
    BILLING_DEBTOR_STARTED = "BILLING_DEBTOR_STARTED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    FEATURE_FLAG_TOGGLED = "FEATURE_FLAG_TOGGLED"


SYSTEM_ACTOR = "system"


class AuditLogCreate(BaseModel):
    """Request to create an audit log entry."""

    model_config = ConfigDict(frozen=True)

    action: AuditAction
    entity_type: str
    entity_id: str
    details: dict[str, Any] | None = None
    performed_by: str = SYSTEM_ACTOR


class AuditLogEntry(BaseModel):
    """Audit log entry from database."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    action: str
    entity_type: str
    entity_id: str
    details: dict[str, Any] | None = None
    performed_by: str
    created_at: datetime
