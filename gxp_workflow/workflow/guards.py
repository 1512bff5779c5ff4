"""
Guard predicates evaluated at transition time.

A guard looks at fresh data for the locked case and returns ``None`` when
it holds, or a message describing what is missing.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..electronic_signatures.models import ElectronicSignatureDB
from ..exceptions import GuardFailed


@dataclass
class GuardContext:
    """Data a guard may look at. Built per attempt and never stored."""

    session: Session
    case: Any
    payload: Dict[str, Any]
    actor_id: str
    action: str
    target: Optional[str] = None


@dataclass(frozen=True)
class Guard:
    name: str
    check: Callable[[GuardContext], Optional[str]]
    description: str = ""

    def __call__(self, ctx: GuardContext) -> Optional[str]:
        return self.check(ctx)


def evaluate_guards(guards: Iterable[Guard], ctx: GuardContext) -> None:
    """Run every guard and raise GuardFailed listing all that did not hold."""
    failures: List[Dict[str, str]] = []
    for guard in guards:
        message = guard(ctx)
        if message:
            failures.append({"guard": guard.name, "message": message})
    if failures:
        raise GuardFailed(ctx.action, failures)


def status_in(*states: str) -> Guard:
    """The case must currently be in one of ``states``."""

    def check(ctx: GuardContext) -> Optional[str]:
        if ctx.case.status not in states:
            return f"status must be one of {', '.join(states)} (is {ctx.case.status})"
        return None

    return Guard("status_in", check, f"status in {', '.join(states)}")


def fields_present(*names: str) -> Guard:
    """Every named payload field must be present and non-blank."""

    def check(ctx: GuardContext) -> Optional[str]:
        missing = [
            name
            for name in names
            if ctx.payload.get(name) is None
            or (isinstance(ctx.payload.get(name), str) and not ctx.payload[name].strip())
        ]
        if missing:
            return f"missing required fields: {', '.join(missing)}"
        return None

    return Guard("fields_present", check, f"fields {', '.join(names)} present")


def all_steps_terminal(
    relationship: str = "steps", open_statuses: Sequence[str] = ("PENDING", "IN_PROGRESS")
) -> Guard:
    """No child step may still be pending or in progress."""

    def check(ctx: GuardContext) -> Optional[str]:
        open_steps = sorted(
            step.step_number
            for step in getattr(ctx.case, relationship)
            if step.status in open_statuses
        )
        if open_steps:
            numbers = ", ".join(str(n) for n in open_steps)
            return f"steps not finished: {numbers}"
        return None

    return Guard("all_steps_terminal", check, "all steps completed")


def signature_recorded(column: str, scope: str, label: str) -> Guard:
    """The case must already hold a signature of ``scope`` in ``column``."""

    def check(ctx: GuardContext) -> Optional[str]:
        signature_id = getattr(ctx.case, column)
        if signature_id is not None:
            row = ctx.session.get(ElectronicSignatureDB, signature_id)
            if row is not None and row.scope == scope:
                return None
        return f"{label} required"

    return Guard(f"{label}_signature_recorded", check, f"{label} signature present")
