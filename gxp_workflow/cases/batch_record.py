"""
Electronic batch record (eBR) workflow.

A batch record is executed step by step, then submitted for review. Release
needs two BATCH_RELEASE signatures: a review recorded in place, followed by
the approval (or a rejection) that moves the record to a terminal state.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..audit_trail import AuditAction
from ..db import utcnow
from ..exceptions import GuardFailed, NotFound
from ..workflow.actions import ActionPayload, CaseTypeAdapter, TransitionAction, validate_model
from ..workflow.executor import SignaturePayload, TransitionExecutor, json_safe, next_sequence
from ..workflow.graph import StateGraph
from ..workflow.guards import (
    GuardContext,
    all_steps_terminal,
    evaluate_guards,
    fields_present,
    signature_recorded,
    status_in,
)
from .models import BatchRecord, BatchRecordStep

logger = logging.getLogger(__name__)

BATCH_RECORD_GRAPH = StateGraph.build(
    "BATCH_RECORD",
    initial="DRAFT",
    terminal=["APPROVED", "REJECTED", "CANCELLED"],
    transitions={
        "DRAFT": ["IN_PROGRESS"],
        "IN_PROGRESS": ["PENDING_REVIEW"],
        "PENDING_REVIEW": ["APPROVED", "REJECTED"],
    },
)

STEP_GRAPH = StateGraph.build(
    "BatchRecordStep",
    initial="PENDING",
    terminal=["COMPLETED", "SKIPPED", "FAILED"],
    transitions={
        "PENDING": ["IN_PROGRESS", "SKIPPED"],
        "IN_PROGRESS": ["COMPLETED", "FAILED"],
    },
)


class StepDefinition(ActionPayload):
    step_number: str
    step_name: str
    sequence: Optional[int] = None
    instructions: Optional[str] = None
    acceptance_criteria: Optional[str] = None
    requires_verification: bool = False


class BatchRecordCreate(ActionPayload):
    batch_id: str
    recipe_id: Optional[str] = None
    recipe_version: Optional[str] = None
    notes: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)


class NoFields(ActionPayload):
    pass


class CompleteRecord(ActionPayload):
    notes: Optional[str] = None
    actual_yield: Optional[float] = None
    yield_unit: Optional[str] = None


class RejectRecord(ActionPayload):
    reason: Optional[str] = None


class CompleteStep(ActionPayload):
    actual_value: Optional[str] = None
    notes: Optional[str] = None
    outcome: Literal["COMPLETED", "FAILED"] = "COMPLETED"


class SkipStep(ActionPayload):
    reason: str


def number_batch_record(session: Session, now: datetime) -> str:
    return f"EBR-{next_sequence(session, BatchRecord.case_number, 'EBR-'):06d}"


def create_steps(session: Session, record: BatchRecord, data: Dict[str, Any]) -> None:
    """Reject a second record for one batch and attach the step plan."""
    with session.no_autoflush:
        existing = session.scalar(
            select(BatchRecord.id).where(BatchRecord.batch_id == record.batch_id)
        )
    if existing is not None:
        raise GuardFailed(
            "create",
            [{"guard": "unique_batch", "message": "batch already has an electronic batch record"}],
        )
    for index, step in enumerate(data.get("steps") or [], start=1):
        record.steps.append(
            BatchRecordStep(
                sequence=step.get("sequence") or index,
                step_number=step["step_number"],
                step_name=step["step_name"],
                instructions=step.get("instructions"),
                acceptance_criteria=step.get("acceptance_criteria"),
                requires_verification=step.get("requires_verification", False),
                status=STEP_GRAPH.initial,
            )
        )


ACTIONS = (
    TransitionAction(
        name="start",
        timeline_action="RECORD_STARTED",
        description="Batch record execution started",
        target="IN_PROGRESS",
        actor_fields=("started_by_id",),
        timestamp_fields=("started_at",),
        role_group="investigator",
        payload_model=NoFields,
    ),
    TransitionAction(
        name="complete",
        timeline_action="RECORD_COMPLETED",
        description="Batch record execution completed and submitted for review",
        target="PENDING_REVIEW",
        guards=(all_steps_terminal(),),
        payload_fields={
            "notes": "notes",
            "actual_yield": "actual_yield",
            "yield_unit": "yield_unit",
        },
        actor_fields=("completed_by_id",),
        timestamp_fields=("completed_at",),
        role_group="investigator",
        notify_fields=("created_by_id",),
        payload_model=CompleteRecord,
    ),
    TransitionAction(
        name="review",
        timeline_action="RECORD_REVIEWED",
        description="Batch record reviewed with electronic signature",
        from_states=("PENDING_REVIEW",),
        signature_scope="BATCH_RELEASE",
        default_meaning="Reviewed and verified batch record execution",
        signature_field="review_signature_id",
        actor_fields=("reviewed_by_id",),
        timestamp_fields=("reviewed_at",),
        notify_fields=("completed_by_id",),
        payload_model=NoFields,
    ),
    TransitionAction(
        name="approve",
        timeline_action="RECORD_APPROVED",
        description="Batch record approved for release",
        target="APPROVED",
        guards=(signature_recorded("review_signature_id", "BATCH_RELEASE", "review"),),
        signature_scope="BATCH_RELEASE",
        default_meaning="Approved for release",
        signature_field="approval_signature_id",
        actor_fields=("approved_by_id",),
        timestamp_fields=("approved_at",),
        notify_fields=("created_by_id", "completed_by_id", "reviewed_by_id"),
        payload_model=NoFields,
    ),
    TransitionAction(
        name="reject",
        timeline_action="RECORD_REJECTED",
        description="Batch record rejected: {reason}",
        target="REJECTED",
        guards=(fields_present("reason"),),
        signature_scope="BATCH_RELEASE",
        default_meaning="Rejected: batch record does not meet release criteria",
        signature_field="rejection_signature_id",
        payload_fields={"reason": "rejection_reason"},
        actor_fields=("rejected_by_id",),
        timestamp_fields=("rejected_at",),
        notify_fields=("created_by_id", "completed_by_id"),
        payload_model=RejectRecord,
    ),
)


def build_batch_record_adapter() -> CaseTypeAdapter:
    return CaseTypeAdapter(
        graph=BATCH_RECORD_GRAPH,
        model=BatchRecord,
        actions=ACTIONS,
        create_model=BatchRecordCreate,
        number_case=number_batch_record,
        created_description=lambda record: (
            f"Batch record created for batch {record.batch_id} "
            f"with {len(record.steps)} steps"
        ),
        on_create=create_steps,
        route_prefix="/batch-records",
    )


class BatchRecordSteps:
    """
    Step execution within a batch record.

    Steps move along ``STEP_GRAPH`` while their record is IN_PROGRESS. The
    record row is locked and touched on every step change so concurrent
    step updates serialize on the record's version. Each operation writes a
    timeline entry on the record and an audit entry on the step.
    """

    def __init__(self, executor: TransitionExecutor):
        self.executor = executor

    @property
    def adapter(self) -> CaseTypeAdapter:
        return self.executor.adapters.get(BatchRecord.case_type)

    def start(self, record_id: int, step_id: int, actor_id: str) -> Dict[str, Any]:
        with self.executor.case_transaction(self.adapter, record_id) as (session, _):
            self.executor.authorize(session, actor_id, "investigator", "start-step")
            record, step = self._load(session, record_id, step_id, actor_id, "start-step")
            old_status = self._move(step, "IN_PROGRESS")
            now = utcnow()
            step.started_at = now
            step.started_by_id = actor_id
            result = self._record(
                session,
                record,
                step,
                "STEP_STARTED",
                f"Step {step.step_number} started",
                actor_id,
                old_status,
                now,
                {"started_at": now, "started_by_id": actor_id},
            )
        logger.info("Step %s of record %s started by %s", step_id, record_id, actor_id)
        return result

    def complete(
        self,
        record_id: int,
        step_id: int,
        actor_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        data = validate_model(CompleteStep, payload, "complete-step")
        with self.executor.case_transaction(self.adapter, record_id) as (session, _):
            self.executor.authorize(session, actor_id, "investigator", "complete-step")
            record, step = self._load(session, record_id, step_id, actor_id, "complete-step")
            old_status = self._move(step, data["outcome"])
            now = utcnow()
            step.completed_at = now
            step.completed_by_id = actor_id
            changes: Dict[str, Any] = {"completed_at": now, "completed_by_id": actor_id}
            for key in ("actual_value", "notes"):
                if data.get(key) is not None:
                    setattr(step, key, data[key])
                    changes[key] = data[key]
            result = self._record(
                session,
                record,
                step,
                "STEP_COMPLETED",
                f"Step {step.step_number} {data['outcome'].lower()}",
                actor_id,
                old_status,
                now,
                changes,
            )
        logger.info(
            "Step %s of record %s %s by %s", step_id, record_id, data["outcome"], actor_id
        )
        return result

    def skip(
        self,
        record_id: int,
        step_id: int,
        actor_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        data = validate_model(SkipStep, payload, "skip-step")
        with self.executor.case_transaction(self.adapter, record_id) as (session, _):
            self.executor.authorize(session, actor_id, "approver", "skip-step")
            record, step = self._load(session, record_id, step_id, actor_id, "skip-step")
            old_status = self._move(step, "SKIPPED")
            now = utcnow()
            step.notes = data["reason"]
            result = self._record(
                session,
                record,
                step,
                "STEP_SKIPPED",
                f"Step {step.step_number} skipped: {data['reason']}",
                actor_id,
                old_status,
                now,
                {"notes": data["reason"]},
            )
        logger.info("Step %s of record %s skipped by %s", step_id, record_id, actor_id)
        return result

    def verify(
        self,
        record_id: int,
        step_id: int,
        actor_id: str,
        signature: Optional[SignaturePayload],
    ) -> Dict[str, Any]:
        """Countersign a completed step with a QC_APPROVAL signature."""
        with self.executor.case_transaction(self.adapter, record_id) as (session, _):
            self.executor.authorize(session, actor_id, "approver", "verify-step")
            record, step = self._load(
                session, record_id, step_id, actor_id, "verify-step", require_running=False
            )
            problems = []
            if step.status != "COMPLETED":
                problems.append(
                    {"guard": "step_completed", "message": "step must be completed before verification"}
                )
            if not step.requires_verification:
                problems.append(
                    {"guard": "requires_verification", "message": "step does not require verification"}
                )
            if step.verification_signature_id is not None:
                problems.append({"guard": "not_verified", "message": "step is already verified"})
            if problems:
                raise GuardFailed("verify-step", problems)

            signed = self.executor.sign_within(
                session,
                actor_id,
                signature,
                "QC_APPROVAL",
                BatchRecordStep.entity_type,
                step.id,
                "verify-step",
                "Verified step execution",
            )
            now = utcnow()
            step.verified_at = now
            step.verified_by_id = actor_id
            step.verification_signature_id = signed.id
            result = self._record(
                session,
                record,
                step,
                "STEP_VERIFIED",
                f"Step {step.step_number} verified with electronic signature",
                actor_id,
                step.status,
                now,
                {
                    "verified_at": now,
                    "verified_by_id": actor_id,
                    "verification_signature_id": signed.id,
                },
                audit_action=AuditAction.SIGN,
            )
            result["signature"] = signed.to_dict()
        logger.info("Step %s of record %s verified by %s", step_id, record_id, actor_id)
        return result

    def _load(
        self,
        session: Session,
        record_id: int,
        step_id: int,
        actor_id: str,
        operation: str,
        require_running: bool = True,
    ) -> Tuple[BatchRecord, BatchRecordStep]:
        adapter = self.adapter
        record = self.executor.lock_case(session, adapter, record_id)
        self.executor.ensure_open(adapter, record)
        step = session.get(BatchRecordStep, step_id)
        if step is None or step.batch_record_id != record.id:
            raise NotFound(BatchRecordStep.entity_type, step_id)
        if require_running:
            evaluate_guards(
                [status_in("IN_PROGRESS")],
                GuardContext(session, record, {}, actor_id, operation),
            )
        return record, step

    def _move(self, step: BatchRecordStep, target: str) -> str:
        old_status = step.status
        STEP_GRAPH.check(old_status, target)
        step.status = target
        return old_status

    def _record(
        self,
        session: Session,
        record: BatchRecord,
        step: BatchRecordStep,
        timeline_action: str,
        description: str,
        actor_id: str,
        old_status: str,
        now: datetime,
        changes: Dict[str, Any],
        audit_action: AuditAction = AuditAction.UPDATE,
    ) -> Dict[str, Any]:
        record.updated_at = now
        step_info = {"step_id": step.id, "step_number": step.step_number}
        self.executor.audit.record_timeline(
            session,
            case_type=BatchRecord.case_type,
            case_id=record.id,
            action=timeline_action,
            description=description,
            actor_id=actor_id,
            payload=json_safe({**step_info, "old_status": old_status, "new_status": step.status}),
            timestamp=now,
        )
        self.executor.audit.record(
            session,
            user_id=actor_id,
            action=audit_action,
            entity_type=BatchRecordStep.entity_type,
            entity_id=step.id,
            old_values={"status": old_status},
            new_values=json_safe({"status": step.status, **changes}),
            details={"batch_record_id": record.id, "case_number": record.case_number},
            timestamp=now,
        )
        session.flush()
        return step.to_dict()
