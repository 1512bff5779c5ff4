"""
Tests for the transition executor.

Cover the single-transaction contract: status, timeline and audit change
together or not at all, and notifications follow only a commit.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from gxp_workflow.audit_trail import AuditAction, AuditQuery
from gxp_workflow.cases.models import OOSCase
from gxp_workflow.exceptions import (
    AuthenticationFailed,
    CaseClosed,
    ConcurrentModification,
    GuardFailed,
    InvalidPayload,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SignatureRequired,
    StorageError,
    UnknownAction,
)
from gxp_workflow.workflow.notifications import NotificationSink


class FailingSink(NotificationSink):
    def notify(self, event):
        raise RuntimeError("mail server unavailable")


def audit_for(engine, entity_type, entity_id, actions=None):
    with engine.db.reader() as session:
        return engine.audit.query(
            session,
            AuditQuery(
                entity_types=[entity_type],
                entity_ids=[str(entity_id)],
                actions=actions,
            ),
        )


def to_phase1_complete(engine, case_id):
    engine.executor.execute("OOS", case_id, "start-phase1", "analyst")
    engine.executor.execute(
        "OOS",
        case_id,
        "complete-phase1",
        "qcm",
        {"conclusion": "No assignable lab error", "proceedToPhase2": True},
    )


def to_capa_proposed(engine, case_id):
    to_phase1_complete(engine, case_id)
    engine.executor.execute(
        "OOS",
        case_id,
        "propose-capa",
        "qcm",
        {
            "rootCause": "Balance drift",
            "correctiveAction": "Recalibrate balance",
            "preventiveAction": "Weekly calibration check",
        },
    )


class TestCreateCase:
    """Test case creation."""

    def test_create_assigns_number_and_initial_state(self, engine, oos_case):
        case = engine.executor.get_case("OOS", oos_case)

        assert case["status"] == "OPEN"
        assert case["case_number"] == f"OOS-{datetime.now(timezone.utc).year}-0001"
        assert case["created_by_id"] == "analyst"
        assert case["priority"] == "MEDIUM"
        assert case["version"] == 1

    def test_numbers_are_sequential(self, engine, oos_case):
        second = engine.executor.create_case(
            "OOS",
            "analyst",
            {"batchId": "B-1002", "testName": "pH", "initialDescription": "pH 8.1"},
        )

        assert second.case["case_number"].endswith("-0002")

    def test_create_writes_timeline_and_audit(self, engine, oos_case):
        timeline = engine.executor.timeline("OOS", oos_case)
        assert [e.action for e in timeline] == ["CASE_OPENED"]
        assert timeline[0].new_status == "OPEN"
        assert "Assay" in timeline[0].description

        created = audit_for(engine, "OOSCase", oos_case, [AuditAction.CREATE])
        assert len(created) == 1
        assert created[0].new_values["batch_id"] == "B-1001"

    def test_create_validates_payload(self, engine):
        """Missing required fields are reported without creating anything."""
        with pytest.raises(InvalidPayload) as exc_info:
            engine.executor.create_case("OOS", "analyst", {"batchId": "B-1"})

        locations = {e["loc"] for e in exc_info.value.details["errors"]}
        assert {"testName", "initialDescription"} <= locations

    def test_create_requires_investigator_role(self, engine):
        with pytest.raises(PermissionDenied):
            engine.executor.create_case(
                "OOS",
                "qp",
                {"batchId": "B-1", "testName": "Assay", "initialDescription": "low"},
            )

    def test_unknown_case_type(self, engine):
        with pytest.raises(NotFound):
            engine.executor.create_case("CHANGE_CONTROL", "analyst", {})


class TestExecute:
    """Test a committed transition and what it writes."""

    def test_transition_updates_case(self, engine, oos_case):
        result = engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        assert result.old_status == "OPEN"
        assert result.new_status == "PHASE_1_LAB_INVESTIGATION"
        assert result.status == "PHASE_1_LAB_INVESTIGATION"
        assert result.case["phase1_investigator_id"] == "analyst"
        assert result.case["phase1_started_at"] is not None
        assert result.case["version"] == 2

    def test_one_timeline_and_one_audit_entry(self, engine, oos_case):
        """Timeline and audit agree on status, actor and timestamp."""
        engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        timeline = engine.executor.timeline("OOS", oos_case)
        transitions = audit_for(engine, "OOSCase", oos_case, [AuditAction.TRANSITION])

        assert [e.action for e in timeline] == ["CASE_OPENED", "PHASE1_STARTED"]
        assert len(transitions) == 1
        entry, audit = timeline[-1], transitions[0]
        assert entry.old_status == audit.old_values["status"] == "OPEN"
        assert entry.new_status == audit.new_values["status"] == "PHASE_1_LAB_INVESTIGATION"
        assert entry.actor_id == audit.user_id == "analyst"
        assert entry.timestamp == audit.timestamp
        assert audit.details["action"] == "start-phase1"

    def test_payload_fields_are_stored(self, engine, oos_case):
        engine.executor.execute(
            "OOS", oos_case, "start-phase1", "analyst", {"investigatorId": "qcm"}
        )

        assert engine.executor.get_case("OOS", oos_case)["phase1_investigator_id"] == "qcm"

    def test_description_rendered_from_payload(self, engine, oos_case):
        to_phase1_complete(engine, oos_case)

        entry = engine.executor.timeline("OOS", oos_case)[-1]
        assert entry.description == "Phase 1 completed: No assignable lab error"
        assert entry.payload["proceed_to_phase2"] is True


class TestRejections:
    """Test that refused requests change nothing."""

    def assert_untouched(self, engine, case_id, status="OPEN"):
        case = engine.executor.get_case("OOS", case_id)
        assert case["status"] == status
        assert audit_for(engine, "OOSCase", case_id, [AuditAction.TRANSITION]) == []

    def test_unknown_action(self, engine, oos_case):
        with pytest.raises(UnknownAction) as exc_info:
            engine.executor.execute("OOS", oos_case, "teleport", "analyst")

        assert exc_info.value.status_code == 404
        assert "start-phase1" in exc_info.value.details["available"]

    def test_missing_case(self, engine):
        with pytest.raises(NotFound):
            engine.executor.execute("OOS", 999, "start-phase1", "analyst")

    def test_missing_role(self, engine, oos_case):
        """A QC analyst may investigate but not approve."""
        engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        with pytest.raises(PermissionDenied) as exc_info:
            engine.executor.execute(
                "OOS",
                oos_case,
                "complete-phase1",
                "analyst",
                {"conclusion": "x", "proceedToPhase2": True},
            )

        assert exc_info.value.status_code == 403
        assert "QC Manager" in exc_info.value.details["required_roles"]

    def test_inactive_user(self, engine, oos_case):
        with pytest.raises(PermissionDenied):
            engine.executor.execute("OOS", oos_case, "start-phase1", "inactive")
        self.assert_untouched(engine, oos_case)

    def test_unknown_user(self, engine, oos_case):
        with pytest.raises(NotFound):
            engine.executor.execute("OOS", oos_case, "start-phase1", "ghost")

    def test_undeclared_edge(self, engine, oos_case):
        with pytest.raises(InvalidTransition) as exc_info:
            engine.executor.execute("OOS", oos_case, "start-phase2", "qcm")

        assert exc_info.value.allowed == ["PHASE_1_LAB_INVESTIGATION"]
        self.assert_untouched(engine, oos_case)

    def test_invalid_payload(self, engine, oos_case):
        """The outcome flag of phase 1 has no default."""
        engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        with pytest.raises(InvalidPayload):
            engine.executor.execute(
                "OOS", oos_case, "complete-phase1", "qcm", {"conclusion": "done"}
            )
        with pytest.raises(InvalidPayload):
            engine.executor.execute(
                "OOS",
                oos_case,
                "complete-phase1",
                "qcm",
                {"conclusion": "done", "proceedToPhase2": True, "colour": "red"},
            )

        assert engine.executor.get_case("OOS", oos_case)["status"] == "PHASE_1_LAB_INVESTIGATION"

    def test_guard_failure_lists_unmet_guards(self, engine, oos_case):
        to_phase1_complete(engine, oos_case)

        with pytest.raises(GuardFailed) as exc_info:
            engine.executor.execute("OOS", oos_case, "propose-capa", "qcm", {})

        assert exc_info.value.guard_names == ["fields_present"]
        assert "corrective_action" in exc_info.value.message
        assert engine.executor.get_case("OOS", oos_case)["status"] == "PHASE_1_COMPLETE"

    def test_closed_case_is_frozen(self, engine, oos_case):
        engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")
        engine.executor.execute(
            "OOS",
            oos_case,
            "complete-phase1",
            "qcm",
            {"conclusion": "Pipetting error", "proceedToPhase2": False},
        )

        with pytest.raises(CaseClosed):
            engine.executor.execute("OOS", oos_case, "start-phase2", "qcm")
        with pytest.raises(CaseClosed):
            engine.executor.update_fields(
                "OOS", oos_case, "update-details", "qcm", {"priority": "HIGH"}
            )


class TestSignatureGate:
    """Test actions that require an electronic signature."""

    def test_signature_required(self, engine, oos_case):
        to_capa_proposed(engine, oos_case)

        with pytest.raises(SignatureRequired) as exc_info:
            engine.executor.execute("OOS", oos_case, "approve-capa", "qa")

        assert exc_info.value.details["scope"] == "QC_APPROVAL"
        assert engine.executor.get_case("OOS", oos_case)["status"] == "CAPA_PROPOSED"

    def test_wrong_password_leaves_case_unchanged(self, engine, oos_case, signed):
        to_capa_proposed(engine, oos_case)

        with pytest.raises(AuthenticationFailed):
            engine.executor.execute(
                "OOS", oos_case, "approve-capa", "qa", signature=signed(password="nope")
            )

        assert engine.executor.get_case("OOS", oos_case)["status"] == "CAPA_PROPOSED"
        assert engine.signatures.list_for_entity("OOSCase", oos_case) == []
        with engine.db.reader() as session:
            failures = engine.audit.query(session, AuditQuery(failures_only=True))
        assert [f.action for f in failures] == [AuditAction.ESIGNATURE_AUTH_FAILED.value]

    def test_signed_transition_links_signature(self, engine, oos_case, signed):
        to_capa_proposed(engine, oos_case)

        result = engine.executor.execute(
            "OOS", oos_case, "approve-capa", "qa", signature=signed()
        )

        assert result.signature is not None
        assert result.signature.meaning == "I approve this CAPA for implementation"
        assert result.case["capa_approval_signature_id"] == result.signature.id
        assert result.to_dict()["signature"]["signer"]["id"] == "qa"
        signs = audit_for(engine, "OOSCase", oos_case, [AuditAction.TRANSITION])
        assert signs[0].new_values["signature_id"] == result.signature.id


class TestStorageFailures:
    """Test rollback and error mapping for database failures."""

    def test_failure_after_writes_rolls_back_everything(self, engine, oos_case, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("INSERT INTO audit_trail", {}, Exception("disk I/O error"))

        monkeypatch.setattr(engine.audit, "record", broken)

        with pytest.raises(StorageError) as exc_info:
            engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable
        case = engine.executor.get_case("OOS", oos_case)
        assert case["status"] == "OPEN"
        assert case["version"] == 1
        assert [e.action for e in engine.executor.timeline("OOS", oos_case)] == ["CASE_OPENED"]

    def test_stale_data_maps_to_conflict(self, engine, oos_case, monkeypatch):
        def stale(*args, **kwargs):
            raise StaleDataError("UPDATE statement on table 'oos_cases' matched 0 rows")

        monkeypatch.setattr(engine.audit, "record", stale)

        with pytest.raises(ConcurrentModification) as exc_info:
            engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        assert exc_info.value.status_code == 409
        assert exc_info.value.retryable

    def test_version_column_detects_lost_update(self, engine, oos_case):
        """A writer holding an old version cannot overwrite a newer one."""
        with engine.db.reader() as stale_session:
            stale = stale_session.get(OOSCase, oos_case)
            engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

            stale.priority = "HIGH"
            with pytest.raises(StaleDataError):
                stale_session.flush()

        assert engine.executor.get_case("OOS", oos_case)["priority"] == "MEDIUM"


class TestNotifications:
    """Test post-commit notification dispatch."""

    def test_event_sent_after_commit(self, engine, oos_case, sink):
        engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")
        engine.executor.execute(
            "OOS",
            oos_case,
            "complete-phase1",
            "qcm",
            {"conclusion": "No lab error", "proceedToPhase2": True},
        )

        assert [e.action for e in sink.events] == ["start-phase1", "complete-phase1"]
        event = sink.events[-1]
        assert event.actor_id == "qcm"
        assert event.old_status == "PHASE_1_LAB_INVESTIGATION"
        assert event.new_status == "PHASE_1_COMPLETE"
        assert event.recipient_ids == ["analyst"]

    def test_no_event_for_failed_transition(self, engine, oos_case, sink):
        with pytest.raises(InvalidTransition):
            engine.executor.execute("OOS", oos_case, "start-phase2", "qcm")

        assert sink.events == []

    def test_sink_failure_does_not_undo_transition(self, engine, oos_case):
        engine.executor.notifier = FailingSink()

        result = engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        assert result.status == "PHASE_1_LAB_INVESTIGATION"
        assert engine.executor.get_case("OOS", oos_case)["status"] == "PHASE_1_LAB_INVESTIGATION"


class TestFieldUpdates:
    """Test timeline-only edits of case data."""

    def test_update_records_timeline_without_status_change(self, engine, oos_case):
        engine.executor.execute("OOS", oos_case, "start-phase1", "analyst")

        result = engine.executor.update_fields(
            "OOS", oos_case, "update-phase1", "analyst", {"findings": "Balance out of tolerance"}
        )

        assert result.status == "PHASE_1_LAB_INVESTIGATION"
        assert result.case["phase1_findings"] == "Balance out of tolerance"
        entry = engine.executor.timeline("OOS", oos_case)[-1]
        assert entry.action == "PHASE1_UPDATED"
        assert entry.new_status is None
        updates = audit_for(engine, "OOSCase", oos_case, [AuditAction.UPDATE])
        assert updates[0].old_values == {"phase1_findings": None}
        assert updates[0].new_values == {"phase1_findings": "Balance out of tolerance"}

    def test_update_limited_to_phase(self, engine, oos_case):
        with pytest.raises(GuardFailed):
            engine.executor.update_fields(
                "OOS", oos_case, "update-phase1", "analyst", {"findings": "early"}
            )

    def test_details_update_requires_approver(self, engine, oos_case):
        with pytest.raises(PermissionDenied):
            engine.executor.update_fields(
                "OOS", oos_case, "update-details", "analyst", {"priority": "HIGH"}
            )

        result = engine.executor.update_fields(
            "OOS", oos_case, "update-details", "qcm", {"priority": "HIGH"}
        )
        assert result.case["priority"] == "HIGH"

    def test_unknown_update(self, engine, oos_case):
        with pytest.raises(UnknownAction):
            engine.executor.update_fields("OOS", oos_case, "update-everything", "qcm", {})


CAPA = {"correctiveAction": "Recalibrate", "preventiveAction": "Weekly checks"}

ATTEMPTS = {
    "OOS": [
        ("start-phase1", {}),
        ("complete-phase1", {"conclusion": "x", "proceedToPhase2": True}),
        ("complete-phase1", {"conclusion": "x", "proceedToPhase2": False}),
        ("start-phase2", {}),
        ("complete-phase2", {"conclusion": "x"}),
        ("propose-capa", CAPA),
        ("approve-capa", {}),
        ("start-implementation", {}),
        ("close", {"closureType": "CONFIRMED"}),
        ("close", {"closureType": "INVALIDATED"}),
        ("close", {"closureType": "INCONCLUSIVE"}),
    ],
    "BATCH_RECORD": [
        ("start", {}),
        ("complete", {}),
        ("review", {}),
        ("approve", {}),
        ("reject", {"reason": "Yield out of range"}),
    ],
    "DEVIATION": [
        ("investigate", {}),
        ("propose-capa", CAPA),
        ("approve", {}),
        ("implement", {}),
        ("close", {}),
    ],
}

OOS_PATH = [
    ("start-phase1", {}),
    ("complete-phase1", {"conclusion": "No lab error", "proceedToPhase2": True}),
    ("start-phase2", {}),
    ("complete-phase2", {"conclusion": "Supplier lot"}),
    ("propose-capa", CAPA),
    ("approve-capa", {}),
    ("start-implementation", {}),
]
BATCH_PATH = [("start", {}), ("complete", {})]
DEVIATION_PATH = [
    ("investigate", {}),
    ("propose-capa", CAPA),
    ("approve", {}),
    ("implement", {}),
    ("close", {}),
]

REACHABLE = (
    [
        ("OOS", state, OOS_PATH[:i])
        for i, state in enumerate(
            [
                "OPEN",
                "PHASE_1_LAB_INVESTIGATION",
                "PHASE_1_COMPLETE",
                "PHASE_2_FULL_INVESTIGATION",
                "PHASE_2_COMPLETE",
                "CAPA_PROPOSED",
                "CAPA_APPROVED",
                "CAPA_IMPLEMENTING",
            ]
        )
    ]
    + [
        (
            "OOS",
            "CLOSED_INVALIDATED",
            [
                ("start-phase1", {}),
                ("complete-phase1", {"conclusion": "Dilution error", "proceedToPhase2": False}),
            ],
        )
    ]
    + [
        ("BATCH_RECORD", state, BATCH_PATH[:i])
        for i, state in enumerate(["DRAFT", "IN_PROGRESS", "PENDING_REVIEW"])
    ]
    + [("BATCH_RECORD", "REJECTED", BATCH_PATH + [("reject", {"reason": "Yield low"})])]
    + [
        ("DEVIATION", state, DEVIATION_PATH[:i])
        for i, state in enumerate(
            ["OPEN", "UNDER_INVESTIGATION", "CAPA_PROPOSED", "CAPA_APPROVED", "IMPLEMENTING", "CLOSED"]
        )
    ]
)


class TestUndeclaredTransitions:
    """Every action off the graph is refused and leaves no trace."""

    @pytest.fixture
    def admin(self, engine, password):
        engine.add_user("admin", "admin@example.com", "Ada Admin", password, ["Admin"])
        return "admin"

    def open_case(self, engine, case_type, actor):
        if case_type == "OOS":
            payload = {"batchId": "B-5001", "testName": "Assay", "initialDescription": "Assay low"}
        elif case_type == "BATCH_RECORD":
            payload = {"batchId": "B-5001"}
        else:
            record = engine.executor.create_case("BATCH_RECORD", actor, {"batchId": "B-5002"})
            payload = {
                "batchRecordId": record.case_id,
                "type": "PROCESS",
                "severity": "MINOR",
                "title": "Late sampling",
                "description": "Sample pulled late",
            }
        return engine.executor.create_case(case_type, actor, payload).case_id

    def is_declared(self, adapter, state, name, payload):
        if adapter.graph.is_terminal(state):
            return False
        action = adapter.action(name)
        if action.in_place:
            return state in action.from_states
        target = action.resolve_target(action.validate_payload(payload))
        return adapter.graph.can_transition(state, target)

    def trail(self, engine, adapter, case_id):
        with engine.db.reader() as session:
            audit = engine.audit.query(
                session,
                AuditQuery(
                    entity_types=[adapter.entity_type],
                    entity_ids=[str(case_id)],
                    limit=1000,
                ),
            )
        return (
            len(engine.executor.timeline(adapter.case_type, case_id)),
            len(audit),
            len(engine.signatures.list_for_entity(adapter.entity_type, case_id)),
        )

    @pytest.mark.gxp
    @pytest.mark.parametrize(
        "case_type,state,path",
        REACHABLE,
        ids=[f"{case_type}-{state}" for case_type, state, _ in REACHABLE],
    )
    def test_undeclared_transition_not_persisted(
        self, engine, admin, signed, case_type, state, path
    ):
        adapter = engine.adapters.get(case_type)
        assert {name for name, _ in ATTEMPTS[case_type]} == set(adapter.action_names())
        case_id = self.open_case(engine, case_type, admin)
        for name, payload in path:
            engine.executor.execute(case_type, case_id, name, admin, payload, signed())
        assert engine.executor.get_case(case_type, case_id)["status"] == state

        attempted = 0
        for name, payload in ATTEMPTS[case_type]:
            if self.is_declared(adapter, state, name, payload):
                continue
            attempted += 1
            before = self.trail(engine, adapter, case_id)

            with pytest.raises((InvalidTransition, GuardFailed, CaseClosed)):
                engine.executor.execute(case_type, case_id, name, admin, payload, signed())

            assert engine.executor.get_case(case_type, case_id)["status"] == state
            assert self.trail(engine, adapter, case_id) == before

        assert attempted > 0
