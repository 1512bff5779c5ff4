"""Batch deviation workflow: investigation and CAPA through to closure."""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from sqlalchemy.orm import Session

from ..exceptions import NotFound
from ..workflow.actions import ActionPayload, CaseTypeAdapter, FieldUpdate, TransitionAction
from ..workflow.executor import next_sequence
from ..workflow.graph import StateGraph
from ..workflow.guards import status_in
from .models import BatchDeviation, BatchRecord, BatchRecordStep

DEVIATION_GRAPH = StateGraph.build(
    "DEVIATION",
    initial="OPEN",
    terminal=["CLOSED"],
    transitions={
        "OPEN": ["UNDER_INVESTIGATION"],
        "UNDER_INVESTIGATION": ["CAPA_PROPOSED"],
        "CAPA_PROPOSED": ["CAPA_APPROVED"],
        "CAPA_APPROVED": ["IMPLEMENTING"],
        "IMPLEMENTING": ["CLOSED"],
    },
)

Severity = Literal["MINOR", "MAJOR", "CRITICAL"]


class DeviationCreate(ActionPayload):
    batch_record_id: int
    batch_record_step_id: Optional[int] = None
    type: str
    severity: Severity
    title: str
    description: str
    immediate_cause: Optional[str] = None
    assigned_to_id: Optional[str] = None
    due_date: Optional[datetime] = None


class Investigate(ActionPayload):
    root_cause_analysis: Optional[str] = None


class ProposeCapa(ActionPayload):
    root_cause_analysis: Optional[str] = None
    corrective_action: Optional[str] = None
    preventive_action: Optional[str] = None


class NoFields(ActionPayload):
    pass


class Implement(ActionPayload):
    implementation_notes: Optional[str] = None


class Close(ActionPayload):
    closure_notes: Optional[str] = None
    effectiveness_verification: Optional[str] = None


class DeviationUpdate(ActionPayload):
    severity: Optional[Severity] = None
    title: Optional[str] = None
    description: Optional[str] = None
    immediate_cause: Optional[str] = None
    assigned_to_id: Optional[str] = None
    due_date: Optional[datetime] = None


def number_deviation(session: Session, now: datetime) -> str:
    return f"DEV-{next_sequence(session, BatchDeviation.case_number, 'DEV-'):06d}"


def check_subject(session: Session, deviation: BatchDeviation, data: Dict[str, Any]) -> None:
    """The deviation must point at an existing record, and at one of its steps."""
    if session.get(BatchRecord, deviation.batch_record_id) is None:
        raise NotFound(BatchRecord.entity_type, deviation.batch_record_id)
    step_id = deviation.batch_record_step_id
    if step_id is not None:
        step = session.get(BatchRecordStep, step_id)
        if step is None or step.batch_record_id != deviation.batch_record_id:
            raise NotFound(BatchRecordStep.entity_type, step_id)


ACTIONS = (
    TransitionAction(
        name="investigate",
        timeline_action="INVESTIGATION_STARTED",
        description="Deviation investigation started",
        target="UNDER_INVESTIGATION",
        payload_fields={"root_cause_analysis": "root_cause_analysis"},
        timestamp_fields=("investigation_started_at",),
        role_group="investigator",
        notify_fields=("assigned_to_id",),
        payload_model=Investigate,
    ),
    TransitionAction(
        name="propose-capa",
        timeline_action="CAPA_PROPOSED",
        description="CAPA proposed for deviation",
        target="CAPA_PROPOSED",
        payload_fields={
            "root_cause_analysis": "root_cause_analysis",
            "corrective_action": "corrective_action",
            "preventive_action": "preventive_action",
        },
        role_group="investigator",
        payload_model=ProposeCapa,
    ),
    TransitionAction(
        name="approve",
        timeline_action="CAPA_APPROVED",
        description="Deviation CAPA approved with electronic signature",
        target="CAPA_APPROVED",
        guards=(status_in("CAPA_PROPOSED"),),
        signature_scope="DEVIATION_APPROVAL",
        default_meaning="Approved deviation CAPA",
        signature_field="approval_signature_id",
        actor_fields=("approved_by_id",),
        timestamp_fields=("approved_at",),
        notify_fields=("created_by_id", "assigned_to_id"),
        payload_model=NoFields,
    ),
    TransitionAction(
        name="implement",
        timeline_action="IMPLEMENTATION_STARTED",
        description="CAPA implementation started",
        target="IMPLEMENTING",
        payload_fields={"implementation_notes": "implementation_notes"},
        role_group="investigator",
        payload_model=Implement,
    ),
    TransitionAction(
        name="close",
        timeline_action="DEVIATION_CLOSED",
        description="Deviation closed",
        target="CLOSED",
        guards=(status_in("IMPLEMENTING"),),
        payload_fields={
            "closure_notes": "closure_notes",
            "effectiveness_verification": "effectiveness_verification",
        },
        notify_fields=("created_by_id", "assigned_to_id"),
        payload_model=Close,
    ),
)

UPDATES = (
    FieldUpdate(
        name="update",
        timeline_action="DEVIATION_UPDATED",
        description="Deviation details updated",
        payload_fields={
            "severity": "severity",
            "title": "title",
            "description": "description",
            "immediate_cause": "immediate_cause",
            "assigned_to_id": "assigned_to_id",
            "due_date": "due_date",
        },
        payload_model=DeviationUpdate,
    ),
)


def build_deviation_adapter() -> CaseTypeAdapter:
    return CaseTypeAdapter(
        graph=DEVIATION_GRAPH,
        model=BatchDeviation,
        actions=ACTIONS,
        create_model=DeviationCreate,
        number_case=number_deviation,
        created_description=lambda deviation: (
            f"{deviation.severity} deviation reported: {deviation.title}"
        ),
        updates=UPDATES,
        on_create=check_subject,
        route_prefix="/deviations",
    )
