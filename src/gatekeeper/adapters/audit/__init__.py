"""Audit logging adapters."""

from gatekeeper.adapters.audit.repository import AuditRepository, record_safely
from gatekeeper.adapters.audit.types import (
    SYSTEM_ACTOR,
    AuditAction,
    AuditLogCreate,
    AuditLogEntry,
)

__all__ = [
    "SYSTEM_ACTOR",
    "AuditAction",
    "AuditLogCreate",
    "AuditLogEntry",
    "AuditRepository",
    "record_safely",
]
