"""
Data models for the audit trail and the per-case timeline.

These models define the structure of audit entries and timeline entries
in compliance with 21 CFR Part 11 requirements.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
)


class AuditAction(str, Enum):
    """Audit actions written by the workflow engine."""

    # Data operations
    CREATE = "CREATE"
    UPDATE = "UPDATE"

    # Workflow events
    TRANSITION = "TRANSITION"
    SIGN = "SIGN"

    # Electronic signature events
    ESIGNATURE_CREATED = "ESIGNATURE_CREATED"
    ESIGNATURE_AUTH_FAILED = "ESIGNATURE_AUTH_FAILED"
    ESIGNATURE_MODIFICATION_BLOCKED = "ESIGNATURE_MODIFICATION_BLOCKED"
    ESIGNATURE_DELETION_BLOCKED = "ESIGNATURE_DELETION_BLOCKED"

    # Data integrity events
    INTEGRITY_CHECK = "INTEGRITY_CHECK"


class AuditEntry(BaseModel):
    """
    Immutable audit trail entry compliant with 21 CFR Part 11.

    Each entry captures who did what to which entity and when, together
    with the values before and after the change.
    """

    model_config = ConfigDict(use_enum_values=True, from_attributes=True)

    id: str = Field(..., description="Unique identifier for the audit entry")
    timestamp: datetime = Field(..., description="UTC timestamp of the action")

    # Who
    user_id: str = Field(..., description="ID of user performing the action")

    # What
    action: AuditAction = Field(..., description="Type of action performed")
    entity_type: Optional[str] = Field(None, description="Type of entity affected")
    entity_id: Optional[str] = Field(None, description="ID of entity affected")

    # Changes
    old_values: Optional[Dict[str, Any]] = Field(
        None, description="Previous values (for updates)"
    )
    new_values: Optional[Dict[str, Any]] = Field(
        None, description="New values (for updates)"
    )

    # Where
    application: str = Field(..., description="Application name")

    details: Optional[Dict[str, Any]] = Field(
        None, description="Additional context-specific details"
    )

    success: bool = Field(True, description="Whether the action succeeded")
    error_message: Optional[str] = Field(
        None, description="Error message if action failed"
    )

    checksum: Optional[str] = Field(
        None, description="Checksum of the entry for integrity verification"
    )

    def calculate_checksum(self) -> str:
        """
        Calculate the SHA-256 checksum for the audit entry.

        Returns:
            Hex digest of the checksum
        """
        data = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "details": self.details,
            "success": self.success,
        }
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()

    def verify_checksum(self, expected_checksum: Optional[str] = None) -> bool:
        """Verify the entry against its stored (or the given) checksum."""
        expected = expected_checksum or self.checksum
        return expected is not None and self.calculate_checksum() == expected

    def to_log_format(self) -> str:
        parts = [
            f"[{self.timestamp.isoformat()}]",
            f"USER={self.user_id}",
            f"ACTION={self.action}",
        ]
        if self.entity_type and self.entity_id:
            parts.append(f"ENTITY={self.entity_type}:{self.entity_id}")
        if not self.success:
            parts.append(f"ERROR='{self.error_message}'")
        return " ".join(parts)


class TimelineEntry(BaseModel):
    """One event in the history of a case."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    case_type: str
    case_id: int
    action: str
    description: Optional[str] = None
    actor_id: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    timestamp: datetime
    payload: Optional[Dict[str, Any]] = None


class AuditQuery(BaseModel):
    """Query parameters for searching audit logs."""

    start_date: Optional[datetime] = Field(None, description="Start of time range")
    end_date: Optional[datetime] = Field(None, description="End of time range")

    user_ids: Optional[List[str]] = Field(None, description="Filter by user IDs")
    actions: Optional[List[AuditAction]] = Field(
        None, description="Filter by action types"
    )
    entity_types: Optional[List[str]] = Field(
        None, description="Filter by entity types"
    )
    entity_ids: Optional[List[str]] = Field(None, description="Filter by entity IDs")

    failures_only: bool = Field(False, description="Only show failed actions")

    limit: int = Field(100, description="Maximum results to return", gt=0, le=1000)
    offset: int = Field(0, description="Result offset for pagination", ge=0)

    @field_validator("end_date")
    @classmethod
    def validate_date_range(
        cls, v: Optional[datetime], info: ValidationInfo
    ) -> Optional[datetime]:
        """Ensure end date is after start date."""
        if v and info.data.get("start_date"):
            if v < info.data["start_date"]:
                raise ValueError("End date must be after start date")
        return v
