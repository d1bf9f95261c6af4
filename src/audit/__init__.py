"""Audit domain: immutable entries and the append-only per-record log."""

from heritage.audit.log import AuditLog
from heritage.audit.models import ACTION_LABELS, AuditAction, AuditEntry

__all__ = [
    "ACTION_LABELS",
    "AuditAction",
    "AuditEntry",
    "AuditLog",
]
