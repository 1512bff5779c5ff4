"""
Persistence for the audit trail and the case timeline.

Both tables are insert-only. Writes happen inside the caller's session so
that they commit or roll back together with the change they describe.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    and_,
    desc,
    select,
)
from sqlalchemy.orm import Session

from ..db import Base, Database, insert_only, utcnow
from .models import AuditAction, AuditEntry, AuditQuery, TimelineEntry

logger = logging.getLogger(__name__)


@insert_only
class AuditEntryDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for audit entries."""

    __tablename__ = "audit_trail"

    id = Column(String(50), primary_key=True)
    timestamp = Column(DateTime, nullable=False, index=True)

    user_id = Column(String(100), nullable=False, index=True)

    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(100), nullable=True, index=True)
    entity_id = Column(String(100), nullable=True, index=True)

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    application = Column(String(100), nullable=False)
    details = Column(JSON, nullable=True)

    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)

    checksum = Column(String(128), nullable=False)

    __table_args__ = (
        Index("idx_audit_timestamp_action", timestamp, action),
        Index("idx_audit_entity", entity_type, entity_id),
        Index("idx_audit_user_timestamp", user_id, timestamp),
    )


@insert_only
class TimelineEntryDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for case timeline entries."""

    __tablename__ = "case_timeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_type = Column(String(50), nullable=False)
    case_id = Column(Integer, nullable=False)
    action = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    actor_id = Column(String(100), nullable=False)
    old_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    payload = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_timeline_case", case_type, case_id, timestamp),
    )


class AuditTrail:
    """Append-only writer and reader for audit and timeline entries."""

    def __init__(self, db: Database, application: str = "GxP Case Workflow"):
        self.db = db
        self.application = application

    def record(
        self,
        session: Session,
        *,
        user_id: str,
        action: AuditAction,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """Add an audit entry to ``session``; it commits with the caller."""
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=timestamp or utcnow(),
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            old_values=old_values,
            new_values=new_values,
            application=self.application,
            details=details,
            success=success,
            error_message=error_message,
        )
        entry.checksum = entry.calculate_checksum()
        session.add(AuditEntryDB(**entry.model_dump()))
        return entry

    def record_security_event(self, **kwargs: Any) -> AuditEntry:
        """Write an audit entry in its own transaction.

        Used for failed re-authentication and blocked signature changes,
        which must persist even though the request itself fails.
        """
        with self.db.transaction() as session:
            entry = self.record(session, success=False, **kwargs)
        logger.warning("Security event recorded: %s", entry.to_log_format())
        return entry

    def record_timeline(
        self,
        session: Session,
        *,
        case_type: str,
        case_id: int,
        action: str,
        actor_id: str,
        description: Optional[str] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> TimelineEntryDB:
        row = TimelineEntryDB(
            case_type=case_type,
            case_id=case_id,
            action=action,
            description=description,
            actor_id=actor_id,
            old_status=old_status,
            new_status=new_status,
            timestamp=timestamp or utcnow(),
            payload=payload,
        )
        session.add(row)
        return row

    def timeline(
        self, session: Session, case_type: str, case_id: int
    ) -> List[TimelineEntry]:
        """Timeline of a case in the order it happened."""
        rows = session.scalars(
            select(TimelineEntryDB)
            .where(
                and_(
                    TimelineEntryDB.case_type == case_type,
                    TimelineEntryDB.case_id == case_id,
                )
            )
            .order_by(TimelineEntryDB.timestamp, TimelineEntryDB.id)
        ).all()
        return [TimelineEntry.model_validate(row) for row in rows]

    def query(self, session: Session, query: AuditQuery) -> List[AuditEntry]:
        """Query audit entries with filters, newest first."""
        stmt = select(AuditEntryDB)
        if query.start_date:
            stmt = stmt.where(AuditEntryDB.timestamp >= query.start_date)
        if query.end_date:
            stmt = stmt.where(AuditEntryDB.timestamp <= query.end_date)
        if query.user_ids:
            stmt = stmt.where(AuditEntryDB.user_id.in_(query.user_ids))
        if query.actions:
            stmt = stmt.where(
                AuditEntryDB.action.in_([AuditAction(a).value for a in query.actions])
            )
        if query.entity_types:
            stmt = stmt.where(AuditEntryDB.entity_type.in_(query.entity_types))
        if query.entity_ids:
            stmt = stmt.where(AuditEntryDB.entity_id.in_(query.entity_ids))
        if query.failures_only:
            stmt = stmt.where(AuditEntryDB.success.is_(False))

        stmt = (
            stmt.order_by(desc(AuditEntryDB.timestamp))
            .offset(query.offset)
            .limit(query.limit)
        )
        return [AuditEntry.model_validate(row) for row in session.scalars(stmt)]

    def verify_integrity(self, session: Session) -> Dict[str, Any]:
        """Recompute every stored checksum and report mismatches."""
        total = 0
        corrupted: List[str] = []
        for row in session.scalars(select(AuditEntryDB)):
            total += 1
            entry = AuditEntry.model_validate(row)
            if not entry.verify_checksum():
                corrupted.append(entry.id)

        if corrupted:
            logger.error("Audit integrity check found %d corrupted entries", len(corrupted))
        return {
            "total_entries": total,
            "corrupted_entries": corrupted,
            "integrity_valid": not corrupted,
        }

    def run_integrity_check(self, user_id: str) -> Dict[str, Any]:
        """Verify the trail and record the check itself as an INTEGRITY_CHECK entry."""
        with self.db.reader() as session:
            report = self.verify_integrity(session)
        with self.db.transaction() as session:
            self.record(
                session,
                user_id=user_id,
                action=AuditAction.INTEGRITY_CHECK,
                entity_type="AuditTrail",
                details=report,
                success=report["integrity_valid"],
                error_message=None
                if report["integrity_valid"]
                else f"{len(report['corrupted_entries'])} corrupted entries",
            )
        logger.info(
            "Integrity check by %s: %d entries, %d corrupted",
            user_id,
            report["total_entries"],
            len(report["corrupted_entries"]),
        )
        return report
