"""Tests for batch deviations."""

import pytest

from gxp_workflow.exceptions import (
    CaseClosed,
    InvalidPayload,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SignatureRequired,
)


@pytest.fixture
def deviation(engine, batch_record):
    """An OPEN major deviation against the blend step."""
    return engine.executor.create_case(
        "DEVIATION",
        "operator",
        {
            "batchRecordId": batch_record["id"],
            "batchRecordStepId": batch_record["steps"][1]["id"],
            "type": "EQUIPMENT",
            "severity": "MAJOR",
            "title": "Blender stopped during run",
            "description": "Blender tripped after 12 of 15 minutes",
            "assignedToId": "qcm",
        },
    ).case


def run(engine, deviation_id, action, actor, payload=None, signature=None):
    return engine.executor.execute("DEVIATION", deviation_id, action, actor, payload, signature)


def to_capa_proposed(engine, deviation_id):
    run(engine, deviation_id, "investigate", "qcm", {"rootCauseAnalysis": "Worn motor brush"})
    run(
        engine,
        deviation_id,
        "propose-capa",
        "qcm",
        {"correctiveAction": "Replace brush", "preventiveAction": "Add to PM plan"},
    )


class TestReporting:
    """Test raising a deviation against a batch record."""

    def test_created_open(self, deviation, batch_record):
        assert deviation["status"] == "OPEN"
        assert deviation["case_number"] == "DEV-000001"
        assert deviation["batch_record_id"] == batch_record["id"]
        assert deviation["severity"] == "MAJOR"

    def test_unknown_record(self, engine):
        with pytest.raises(NotFound) as exc_info:
            engine.executor.create_case(
                "DEVIATION",
                "operator",
                {
                    "batchRecordId": 404,
                    "type": "PROCESS",
                    "severity": "MINOR",
                    "title": "t",
                    "description": "d",
                },
            )

        assert exc_info.value.details["entity_type"] == "BatchRecord"

    def test_step_must_belong_to_record(self, engine, batch_record):
        other = engine.executor.create_case(
            "BATCH_RECORD",
            "operator",
            {"batchId": "B-3001", "steps": [{"stepNumber": "10", "stepName": "Granulate"}]},
        ).case

        with pytest.raises(NotFound):
            engine.executor.create_case(
                "DEVIATION",
                "operator",
                {
                    "batchRecordId": batch_record["id"],
                    "batchRecordStepId": other["steps"][0]["id"],
                    "type": "PROCESS",
                    "severity": "MINOR",
                    "title": "t",
                    "description": "d",
                },
            )

    def test_severity_vocabulary(self, engine, batch_record):
        with pytest.raises(InvalidPayload):
            engine.executor.create_case(
                "DEVIATION",
                "operator",
                {
                    "batchRecordId": batch_record["id"],
                    "type": "PROCESS",
                    "severity": "SEVERE",
                    "title": "t",
                    "description": "d",
                },
            )


class TestLifecycle:
    """Test the investigation and CAPA path."""

    def test_full_lifecycle(self, engine, deviation, signed, sink):
        deviation_id = deviation["id"]
        to_capa_proposed(engine, deviation_id)
        approved = run(engine, deviation_id, "approve", "qa", signature=signed())
        run(engine, deviation_id, "implement", "operator", {"implementationNotes": "Brush replaced"})
        closed = run(
            engine,
            deviation_id,
            "close",
            "qa",
            {"closureNotes": "Effective", "effectivenessVerification": "Three runs without trip"},
        )

        assert approved.signature.scope == "DEVIATION_APPROVAL"
        assert approved.signature.meaning == "Approved deviation CAPA"
        assert approved.case["approval_signature_id"] == approved.signature.id
        assert closed.status == "CLOSED"
        assert closed.case["root_cause_analysis"] == "Worn motor brush"
        assert closed.case["closed_by_id"] == "qa"
        assert [e.action for e in engine.executor.timeline("DEVIATION", deviation_id)] == [
            "CASE_OPENED",
            "INVESTIGATION_STARTED",
            "CAPA_PROPOSED",
            "CAPA_APPROVED",
            "IMPLEMENTATION_STARTED",
            "DEVIATION_CLOSED",
        ]
        assert set(sink.events[-1].recipient_ids) == {"operator", "qcm"}

    def test_approval_needs_signature(self, engine, deviation):
        to_capa_proposed(engine, deviation["id"])

        with pytest.raises(SignatureRequired):
            run(engine, deviation["id"], "approve", "qa")

    def test_operator_cannot_approve(self, engine, deviation, signed):
        to_capa_proposed(engine, deviation["id"])

        with pytest.raises(PermissionDenied):
            run(engine, deviation["id"], "approve", "operator", signature=signed())

    def test_cannot_skip_implementation(self, engine, deviation, signed):
        to_capa_proposed(engine, deviation["id"])
        run(engine, deviation["id"], "approve", "qa", signature=signed())

        with pytest.raises(InvalidTransition) as exc_info:
            run(engine, deviation["id"], "close", "qa")

        assert exc_info.value.allowed == ["IMPLEMENTING"]

    def test_closed_deviation_is_frozen(self, engine, deviation, signed):
        to_capa_proposed(engine, deviation["id"])
        run(engine, deviation["id"], "approve", "qa", signature=signed())
        run(engine, deviation["id"], "implement", "operator")
        run(engine, deviation["id"], "close", "qa")

        with pytest.raises(CaseClosed):
            engine.executor.update_fields(
                "DEVIATION", deviation["id"], "update", "qa", {"severity": "CRITICAL"}
            )


class TestUpdates:
    def test_update_details(self, engine, deviation):
        result = engine.executor.update_fields(
            "DEVIATION",
            deviation["id"],
            "update",
            "operator",
            {"severity": "CRITICAL", "immediateCause": "Motor overload"},
        )

        assert result.status == "OPEN"
        assert result.case["severity"] == "CRITICAL"
        assert result.case["immediate_cause"] == "Motor overload"
        assert engine.executor.timeline("DEVIATION", deviation["id"])[-1].action == "DEVIATION_UPDATED"
