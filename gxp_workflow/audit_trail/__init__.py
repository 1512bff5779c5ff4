"""
Audit trail module for GxP compliance.

Provides the append-only audit log and the per-case timeline. Entries are
written inside the caller's transaction and carry a SHA-256 checksum.
"""

from .models import AuditAction, AuditEntry, AuditQuery, TimelineEntry
from .storage import AuditEntryDB, AuditTrail, TimelineEntryDB

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditEntryDB",
    "AuditQuery",
    "AuditTrail",
    "TimelineEntry",
    "TimelineEntryDB",
]
