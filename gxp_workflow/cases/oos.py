"""
Out-of-specification (OOS) investigation workflow.

An OOS case moves from a laboratory investigation (phase 1) through an
optional full investigation (phase 2) and a CAPA cycle to one of three
closed outcomes. Approving the CAPA and closing the case are each gated by
a QC_APPROVAL electronic signature.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from sqlalchemy.orm import Session

from ..workflow.actions import ActionPayload, CaseTypeAdapter, FieldUpdate, TransitionAction
from ..workflow.executor import next_sequence
from ..workflow.graph import StateGraph
from ..workflow.guards import fields_present, status_in
from .models import OOSCase

CLOSED_STATES = ("CLOSED_CONFIRMED", "CLOSED_INVALIDATED", "CLOSED_INCONCLUSIVE")

OOS_GRAPH = StateGraph.build(
    "OOS",
    initial="OPEN",
    terminal=CLOSED_STATES,
    transitions={
        "OPEN": ["PHASE_1_LAB_INVESTIGATION"],
        "PHASE_1_LAB_INVESTIGATION": ["PHASE_1_COMPLETE", "CLOSED_INVALIDATED"],
        "PHASE_1_COMPLETE": ["PHASE_2_FULL_INVESTIGATION", "CAPA_PROPOSED", *CLOSED_STATES],
        "PHASE_2_FULL_INVESTIGATION": ["PHASE_2_COMPLETE"],
        "PHASE_2_COMPLETE": ["CAPA_PROPOSED", *CLOSED_STATES],
        "CAPA_PROPOSED": ["CAPA_APPROVED"],
        "CAPA_APPROVED": ["CAPA_IMPLEMENTING"],
        "CAPA_IMPLEMENTING": ["CLOSED_CONFIRMED"],
    },
)


class OOSCreate(ActionPayload):
    batch_id: str
    test_name: str
    initial_description: str
    priority: Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"] = "MEDIUM"
    test_result_id: Optional[str] = None
    test_method: Optional[str] = None
    spec_min: Optional[float] = None
    spec_max: Optional[float] = None
    actual_value: Optional[float] = None
    unit: Optional[str] = None
    due_date: Optional[datetime] = None


class StartPhase1(ActionPayload):
    investigator_id: Optional[str] = None


class CompletePhase1(ActionPayload):
    conclusion: str
    # Required: a missing flag must not silently close the case as invalidated.
    proceed_to_phase2: bool


class StartPhase2(ActionPayload):
    lead_id: Optional[str] = None


class CompletePhase2(ActionPayload):
    conclusion: str
    root_cause: Optional[str] = None


class ProposeCapa(ActionPayload):
    root_cause: Optional[str] = None
    corrective_action: Optional[str] = None
    preventive_action: Optional[str] = None


class NoFields(ActionPayload):
    pass


class CloseCase(ActionPayload):
    closure_type: Literal["CONFIRMED", "INVALIDATED", "INCONCLUSIVE"]
    final_conclusion: Optional[str] = None


class Phase1Update(ActionPayload):
    lab_checks: Optional[str] = None
    retesting: Optional[str] = None
    findings: Optional[str] = None
    conclusion: Optional[str] = None


class Phase2Update(ActionPayload):
    root_cause_analysis: Optional[str] = None
    impact_assessment: Optional[str] = None
    findings: Optional[str] = None
    conclusion: Optional[str] = None


class ImplementationUpdate(ActionPayload):
    implementation_notes: Optional[str] = None
    effectiveness_check: Optional[str] = None


class DetailsUpdate(ActionPayload):
    priority: Optional[Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]] = None
    due_date: Optional[datetime] = None
    test_name: Optional[str] = None
    test_method: Optional[str] = None


def _phase1_outcome(payload: Dict[str, Any]) -> str:
    return "PHASE_1_COMPLETE" if payload["proceed_to_phase2"] else "CLOSED_INVALIDATED"


def _closure_state(payload: Dict[str, Any]) -> str:
    return f"CLOSED_{payload['closure_type']}"


def _closure_meaning(payload: Dict[str, Any]) -> str:
    return f"I confirm the closure of this OOS case as {payload['closure_type']}"


def number_oos_case(session: Session, now: datetime) -> str:
    """``OOS-<year>-<NNNN>``, numbered per calendar year."""
    prefix = f"OOS-{now.year}-"
    return f"{prefix}{next_sequence(session, OOSCase.case_number, prefix):04d}"


ACTIONS = (
    TransitionAction(
        name="start-phase1",
        timeline_action="PHASE1_STARTED",
        description="Phase 1 laboratory investigation started",
        target="PHASE_1_LAB_INVESTIGATION",
        payload_fields={"investigator_id": "phase1_investigator_id"},
        actor_fields=("phase1_investigator_id",),
        timestamp_fields=("phase1_started_at",),
        role_group="investigator",
        notify_fields=("phase1_investigator_id", "created_by_id"),
        payload_model=StartPhase1,
    ),
    TransitionAction(
        name="complete-phase1",
        timeline_action="PHASE1_COMPLETED",
        description="Phase 1 completed: {conclusion}",
        target=_phase1_outcome,
        payload_fields={"conclusion": "phase1_conclusion"},
        timestamp_fields=("phase1_completed_at",),
        notify_fields=("created_by_id",),
        payload_model=CompletePhase1,
    ),
    TransitionAction(
        name="start-phase2",
        timeline_action="PHASE2_STARTED",
        description="Phase 2 full investigation started",
        target="PHASE_2_FULL_INVESTIGATION",
        payload_fields={"lead_id": "phase2_lead_id"},
        actor_fields=("phase2_lead_id",),
        timestamp_fields=("phase2_started_at",),
        notify_fields=("phase2_lead_id",),
        payload_model=StartPhase2,
    ),
    TransitionAction(
        name="complete-phase2",
        timeline_action="PHASE2_COMPLETED",
        description="Phase 2 completed: {conclusion}",
        target="PHASE_2_COMPLETE",
        payload_fields={"conclusion": "phase2_conclusion", "root_cause": "root_cause"},
        timestamp_fields=("phase2_completed_at",),
        notify_fields=("created_by_id",),
        payload_model=CompletePhase2,
    ),
    TransitionAction(
        name="propose-capa",
        timeline_action="CAPA_PROPOSED",
        description="CAPA proposed",
        target="CAPA_PROPOSED",
        guards=(
            status_in("PHASE_1_COMPLETE", "PHASE_2_COMPLETE"),
            fields_present("corrective_action", "preventive_action"),
        ),
        payload_fields={
            "root_cause": "root_cause",
            "corrective_action": "corrective_action",
            "preventive_action": "preventive_action",
        },
        actor_fields=("capa_proposed_by_id",),
        timestamp_fields=("capa_proposed_at",),
        payload_model=ProposeCapa,
    ),
    TransitionAction(
        name="approve-capa",
        timeline_action="CAPA_APPROVED",
        description="CAPA approved with electronic signature",
        target="CAPA_APPROVED",
        signature_scope="QC_APPROVAL",
        default_meaning="I approve this CAPA for implementation",
        signature_field="capa_approval_signature_id",
        actor_fields=("capa_approved_by_id",),
        timestamp_fields=("capa_approved_at",),
        notify_fields=("capa_proposed_by_id", "created_by_id"),
        payload_model=NoFields,
    ),
    TransitionAction(
        name="start-implementation",
        timeline_action="IMPLEMENTATION_STARTED",
        description="CAPA implementation started",
        target="CAPA_IMPLEMENTING",
        timestamp_fields=("capa_implementation_started_at",),
        payload_model=NoFields,
    ),
    TransitionAction(
        name="close",
        timeline_action="CASE_CLOSED",
        description="Case closed as {closure_type}",
        target=_closure_state,
        guards=(status_in("PHASE_1_COMPLETE", "PHASE_2_COMPLETE", "CAPA_IMPLEMENTING"),),
        signature_scope="QC_APPROVAL",
        default_meaning=_closure_meaning,
        signature_field="closure_signature_id",
        payload_fields={"final_conclusion": "final_conclusion"},
        notify_fields=("created_by_id", "phase1_investigator_id", "phase2_lead_id"),
        payload_model=CloseCase,
    ),
)

UPDATES = (
    FieldUpdate(
        name="update-phase1",
        timeline_action="PHASE1_UPDATED",
        description="Phase 1 investigation data updated",
        payload_fields={
            "lab_checks": "phase1_lab_checks",
            "retesting": "phase1_retesting",
            "findings": "phase1_findings",
            "conclusion": "phase1_conclusion",
        },
        allowed_states=("PHASE_1_LAB_INVESTIGATION",),
        payload_model=Phase1Update,
    ),
    FieldUpdate(
        name="update-phase2",
        timeline_action="PHASE2_UPDATED",
        description="Phase 2 investigation data updated",
        payload_fields={
            "root_cause_analysis": "phase2_root_cause_analysis",
            "impact_assessment": "phase2_impact_assessment",
            "findings": "phase2_findings",
            "conclusion": "phase2_conclusion",
        },
        allowed_states=("PHASE_2_FULL_INVESTIGATION",),
        payload_model=Phase2Update,
    ),
    FieldUpdate(
        name="update-implementation",
        timeline_action="IMPLEMENTATION_UPDATED",
        description="CAPA implementation progress updated",
        payload_fields={
            "implementation_notes": "capa_implementation_notes",
            "effectiveness_check": "capa_effectiveness_check",
        },
        allowed_states=("CAPA_IMPLEMENTING",),
        payload_model=ImplementationUpdate,
    ),
    FieldUpdate(
        name="update-details",
        timeline_action="CASE_UPDATED",
        description="Case details updated",
        payload_fields={
            "priority": "priority",
            "due_date": "due_date",
            "test_name": "test_name",
            "test_method": "test_method",
        },
        role_group="approver",
        payload_model=DetailsUpdate,
    ),
)


def build_oos_adapter() -> CaseTypeAdapter:
    return CaseTypeAdapter(
        graph=OOS_GRAPH,
        model=OOSCase,
        actions=ACTIONS,
        create_model=OOSCreate,
        number_case=number_oos_case,
        created_description=lambda case: (
            f"OOS case opened for {case.test_name} on batch {case.batch_id}"
        ),
        updates=UPDATES,
        route_prefix="/oos",
    )
