"""
GxP Case Workflow - audited, signature-gated case workflows for regulated labs
and manufacturing.

One declarative engine drives three case types: out-of-specification (OOS)
investigations, electronic batch records and batch deviations. Every status
change runs through a single transition executor that checks the state
graph and guards, collects a 21 CFR Part 11 electronic signature where the
action requires one, and writes a timeline entry and an audit entry in the
same database transaction.

Key Features
------------
* **State Graphs**: Declarative successor maps validated at construction
* **Guards**: Named predicates evaluated against the locked case
* **Electronic Signatures**: Re-authentication, a versioned meaning vocabulary,
  one signature per signer and entity, ECDSA-sealed immutable records
* **Audit Trail**: Insert-only, checksummed audit log and per-case timeline
* **Concurrency**: Row locks plus optimistic version columns

Quick Start
-----------
>>> from gxp_workflow import SignaturePayload, WorkflowConfig, WorkflowEngine
>>>
>>> engine = WorkflowEngine.from_config(WorkflowConfig(database_url="sqlite:///cases.db"))
>>> engine.db.create_all()
>>> case = engine.executor.create_case(
...     "OOS",
...     "analyst-1",
...     {"batchId": "B-1001", "testName": "Assay", "initialDescription": "Assay 92%"},
... )
>>> engine.executor.execute("OOS", case.case_id, "start-phase1", "analyst-1")

Compliance Standards
-------------------
* FDA 21 CFR Part 11 (Electronic Records and Signatures)
* EU GMP Annex 11 (Computerised Systems)
* ALCOA+ Data Integrity Principles

License
-------
MIT License - See LICENSE file for details.
"""

__version__ = "1.0.0"
__author__ = "Manuel Knott"

from .config import WorkflowConfig, configure, get_config, set_config
from .engine import WorkflowEngine
from .exceptions import (
    AuthenticationFailed,
    CaseClosed,
    ConcurrentModification,
    DuplicateSignature,
    GuardFailed,
    InvalidPayload,
    InvalidSignatureMeaning,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SignatureImmutable,
    SignatureRequired,
    StorageError,
    UnknownAction,
    WorkflowError,
)
from .workflow import SignaturePayload, StateGraph, TransitionExecutor, TransitionResult

__all__ = [
    "__version__",
    "WorkflowConfig",
    "configure",
    "get_config",
    "set_config",
    "WorkflowEngine",
    "SignaturePayload",
    "StateGraph",
    "TransitionExecutor",
    "TransitionResult",
    "AuthenticationFailed",
    "CaseClosed",
    "ConcurrentModification",
    "DuplicateSignature",
    "GuardFailed",
    "InvalidPayload",
    "InvalidSignatureMeaning",
    "InvalidTransition",
    "NotFound",
    "PermissionDenied",
    "SignatureImmutable",
    "SignatureRequired",
    "StorageError",
    "UnknownAction",
    "WorkflowError",
]
