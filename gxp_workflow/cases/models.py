"""
SQLAlchemy models for workflow cases.

Every case table carries a ``status`` column written only by the transition
executor, and a ``version`` column used as SQLAlchemy's optimistic
``version_id_col``.
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db import Base, utcnow


def _jsonable(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class CaseMixin:
    """
    Columns and behavior shared by every case type.

    Subclasses set ``case_type`` and ``entity_type`` (the name used for
    audit entries and signatures) and declare their own ``version`` column.
    """

    case_type: ClassVar[str]
    entity_type: ClassVar[str]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    created_by_id: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_by_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def mark_closed(self, actor_id: str, at: datetime) -> None:
        """Stamp the move into a terminal state."""
        self.closed_at = at
        self.closed_by_id = actor_id

    def to_dict(self) -> Dict[str, Any]:
        data = {
            column.key: _jsonable(getattr(self, column.key))
            for column in self.__table__.columns  # type: ignore[attr-defined]
        }
        data["case_type"] = self.case_type
        return data


class OOSCase(CaseMixin, Base):  # type: ignore[valid-type,misc]
    """Out-of-specification investigation."""

    __tablename__ = "oos_cases"
    case_type = "OOS"
    entity_type = "OOSCase"

    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="MEDIUM")
    batch_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    test_result_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    test_name: Mapped[str] = mapped_column(String(200), nullable=False)
    test_method: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    spec_min: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    spec_max: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    actual_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    initial_description: Mapped[str] = mapped_column(Text, nullable=False)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Phase 1: laboratory investigation
    phase1_investigator_id: Mapped[Optional[str]] = mapped_column(String(100))
    phase1_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    phase1_lab_checks: Mapped[Optional[str]] = mapped_column(Text)
    phase1_retesting: Mapped[Optional[str]] = mapped_column(Text)
    phase1_findings: Mapped[Optional[str]] = mapped_column(Text)
    phase1_conclusion: Mapped[Optional[str]] = mapped_column(Text)
    phase1_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Phase 2: full investigation
    phase2_lead_id: Mapped[Optional[str]] = mapped_column(String(100))
    phase2_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    phase2_root_cause_analysis: Mapped[Optional[str]] = mapped_column(Text)
    phase2_impact_assessment: Mapped[Optional[str]] = mapped_column(Text)
    phase2_findings: Mapped[Optional[str]] = mapped_column(Text)
    phase2_conclusion: Mapped[Optional[str]] = mapped_column(Text)
    phase2_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # CAPA
    root_cause: Mapped[Optional[str]] = mapped_column(Text)
    corrective_action: Mapped[Optional[str]] = mapped_column(Text)
    preventive_action: Mapped[Optional[str]] = mapped_column(Text)
    capa_proposed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    capa_proposed_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    capa_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    capa_approved_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    capa_approval_signature_id: Mapped[Optional[str]] = mapped_column(String(50))
    capa_implementation_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    capa_implementation_notes: Mapped[Optional[str]] = mapped_column(Text)
    capa_effectiveness_check: Mapped[Optional[str]] = mapped_column(Text)

    # Closure
    closure_type: Mapped[Optional[str]] = mapped_column(String(20))
    final_conclusion: Mapped[Optional[str]] = mapped_column(Text)
    closure_signature_id: Mapped[Optional[str]] = mapped_column(String(50))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    def mark_closed(self, actor_id: str, at: datetime) -> None:
        super().mark_closed(actor_id, at)
        self.closure_type = self.status.replace("CLOSED_", "", 1)


class BatchRecord(CaseMixin, Base):  # type: ignore[valid-type,misc]
    """Electronic batch record."""

    __tablename__ = "batch_records"
    case_type = "BATCH_RECORD"
    entity_type = "BatchRecord"

    batch_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    recipe_id: Mapped[Optional[str]] = mapped_column(String(100))
    recipe_version: Mapped[Optional[str]] = mapped_column(String(20))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    started_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    actual_yield: Mapped[Optional[float]] = mapped_column(Float)
    yield_unit: Mapped[Optional[str]] = mapped_column(String(20))

    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reviewed_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    review_signature_id: Mapped[Optional[str]] = mapped_column(String(50))

    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    approval_signature_id: Mapped[Optional[str]] = mapped_column(String(50))

    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejected_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    rejection_signature_id: Mapped[Optional[str]] = mapped_column(String(50))

    steps: Mapped[List["BatchRecordStep"]] = relationship(
        back_populates="batch_record",
        order_by="BatchRecordStep.sequence",
        cascade="all, delete-orphan",
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["steps"] = [step.to_dict() for step in self.steps]
        return data


class BatchRecordStep(Base):  # type: ignore[valid-type,misc]
    """One executed step of a batch record."""

    __tablename__ = "batch_record_steps"
    entity_type: ClassVar[str] = "BatchRecordStep"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_record_id: Mapped[int] = mapped_column(
        ForeignKey("batch_records.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    step_number: Mapped[str] = mapped_column(String(20), nullable=False)
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    instructions: Mapped[Optional[str]] = mapped_column(Text)
    acceptance_criteria: Mapped[Optional[str]] = mapped_column(Text)
    requires_verification: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    started_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    actual_value: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    verified_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    verification_signature_id: Mapped[Optional[str]] = mapped_column(String(50))

    batch_record: Mapped[BatchRecord] = relationship(back_populates="steps")

    def to_dict(self) -> Dict[str, Any]:
        return {
            column.key: _jsonable(getattr(self, column.key))
            for column in self.__table__.columns
        }


class BatchDeviation(CaseMixin, Base):  # type: ignore[valid-type,misc]
    """Deviation raised against a batch record, remediated through CAPA."""

    __tablename__ = "batch_deviations"
    case_type = "DEVIATION"
    entity_type = "BatchDeviation"

    batch_record_id: Mapped[int] = mapped_column(
        ForeignKey("batch_records.id"), nullable=False, index=True
    )
    batch_record_step_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("batch_record_steps.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    immediate_cause: Mapped[Optional[str]] = mapped_column(Text)
    assigned_to_id: Mapped[Optional[str]] = mapped_column(String(100))
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    investigation_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    root_cause_analysis: Mapped[Optional[str]] = mapped_column(Text)
    corrective_action: Mapped[Optional[str]] = mapped_column(Text)
    preventive_action: Mapped[Optional[str]] = mapped_column(Text)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_by_id: Mapped[Optional[str]] = mapped_column(String(100))
    approval_signature_id: Mapped[Optional[str]] = mapped_column(String(50))
    implementation_notes: Mapped[Optional[str]] = mapped_column(Text)
    closure_notes: Mapped[Optional[str]] = mapped_column(Text)
    effectiveness_verification: Mapped[Optional[str]] = mapped_column(Text)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}
