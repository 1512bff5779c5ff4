"""
Declarative case workflow engine.

State graphs, guards and actions describe each case type; the transition
executor is the only code that moves a case between states.
"""

from .actions import (
    ActionPayload,
    AdapterRegistry,
    CaseTypeAdapter,
    FieldUpdate,
    TransitionAction,
    validate_model,
)
from .executor import SignaturePayload, TransitionExecutor, TransitionResult
from .graph import GraphRegistry, StateGraph
from .guards import (
    Guard,
    GuardContext,
    all_steps_terminal,
    evaluate_guards,
    fields_present,
    signature_recorded,
    status_in,
)
from .notifications import (
    LoggingNotificationSink,
    NotificationEvent,
    NotificationSink,
    NullNotificationSink,
)

__all__ = [
    "ActionPayload",
    "AdapterRegistry",
    "CaseTypeAdapter",
    "FieldUpdate",
    "TransitionAction",
    "validate_model",
    "SignaturePayload",
    "TransitionExecutor",
    "TransitionResult",
    "GraphRegistry",
    "StateGraph",
    "Guard",
    "GuardContext",
    "all_steps_terminal",
    "evaluate_guards",
    "fields_present",
    "signature_recorded",
    "status_in",
    "LoggingNotificationSink",
    "NotificationEvent",
    "NotificationSink",
    "NullNotificationSink",
]
