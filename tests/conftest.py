"""Shared fixtures: a file-backed SQLite database per test, seeded users and services."""

from typing import List

import pytest

from gxp_workflow import SignaturePayload, WorkflowConfig, WorkflowEngine
from gxp_workflow.workflow.notifications import NotificationEvent, NotificationSink

PASSWORD = "Correct-Horse-42"

USERS = [
    ("analyst", "Alice Analyst", ["QC Analyst"]),
    ("qcm", "Quinn Manager", ["QC Manager"]),
    ("qa", "Sam Quality", ["QA"]),
    ("qp", "Pat Person", ["QP"]),
    ("operator", "Olu Operator", ["Production Operator"]),
]


class RecordingSink(NotificationSink):
    """Collects events instead of sending them."""

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def config(tmp_path):
    """Configuration pointing at a fresh SQLite file."""
    return WorkflowConfig(
        application_name="Workflow Tests",
        environment="development",
        database_url=f"sqlite:///{tmp_path / 'workflow.db'}",
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(config, sink):
    """Engine with tables created and the standard users seeded."""
    engine = WorkflowEngine.from_config(config, notifier=sink)
    engine.db.create_all()
    for user_id, name, roles in USERS:
        engine.add_user(user_id, f"{user_id}@example.com", name, PASSWORD, roles)
    with engine.db.transaction() as session:
        engine.users.add_user(
            session,
            "inactive",
            "inactive@example.com",
            "Former Employee",
            PASSWORD,
            ["QA"],
            is_active=False,
        )
    return engine


@pytest.fixture
def signed():
    """Build the signature part of a request."""

    def build(password: str = PASSWORD, meaning=None, comment=None) -> SignaturePayload:
        return SignaturePayload(password=password, meaning=meaning, comment=comment)

    return build


@pytest.fixture
def oos_case(engine):
    """An OPEN OOS case for an assay failure; returns its id."""
    result = engine.executor.create_case(
        "OOS",
        "analyst",
        {
            "batchId": "B-1001",
            "testName": "Assay",
            "initialDescription": "Assay result 92.1% below the 95.0% limit",
            "specMin": 95.0,
            "specMax": 105.0,
            "actualValue": 92.1,
            "unit": "%",
        },
    )
    return result.case_id


@pytest.fixture
def batch_record(engine):
    """A DRAFT batch record with two steps; the second requires verification."""
    result = engine.executor.create_case(
        "BATCH_RECORD",
        "operator",
        {
            "batchId": "B-2001",
            "recipeId": "R-10",
            "recipeVersion": "3",
            "steps": [
                {"stepNumber": "10", "stepName": "Dispense API"},
                {
                    "stepNumber": "20",
                    "stepName": "Blend",
                    "requiresVerification": True,
                    "acceptanceCriteria": "Blend uniformity RSD <= 5%",
                },
            ],
        },
    )
    return result.case
