"""
Transition executor.

The only writer of case ``status``. Each call runs in one database
transaction. The transaction loads and locks the case, checks the state
graph and the guards, signs, updates the case, and writes one timeline
entry plus one audit entry. Notification happens after commit and cannot
undo the transition.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..access_control import User, UserDirectory
from ..audit_trail import AuditAction, AuditTrail, TimelineEntry
from ..db import Database, utcnow
from ..electronic_signatures import ElectronicSignatureService, SignatureRecord
from ..exceptions import (
    CaseClosed,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    SignatureRequired,
    StorageError,
    WorkflowError,
)
from .actions import AdapterRegistry, CaseTypeAdapter, TransitionAction, validate_model
from .guards import GuardContext, evaluate_guards, status_in
from .notifications import (
    LoggingNotificationSink,
    NotificationEvent,
    NotificationSink,
    dispatch,
)

logger = logging.getLogger(__name__)


def json_safe(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Round-trip through JSON so datetimes and floats store uniformly."""
    if values is None:
        return None
    return json.loads(json.dumps(values, default=str))


@dataclass
class SignaturePayload:
    """Credentials and intent supplied with a signature-gated request."""

    password: str
    meaning: Optional[str] = None
    comment: Optional[str] = None


@dataclass
class TransitionResult:
    """Outcome of a committed action."""

    case_type: str
    case_id: int
    action: str
    old_status: Optional[str]
    new_status: Optional[str]
    case: Dict[str, Any]
    signature: Optional[SignatureRecord] = None
    timestamp: Optional[datetime] = None

    @property
    def status(self) -> str:
        return self.case["status"]

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.case)
        if self.signature is not None:
            data["signature"] = self.signature.to_dict()
        return data


@dataclass
class _Pending:
    """Notification prepared inside the transaction, sent after commit."""

    events: List[NotificationEvent] = field(default_factory=list)


class TransitionExecutor:
    """Runs guarded, signature-gated, fully audited case transitions."""

    def __init__(
        self,
        db: Database,
        audit: AuditTrail,
        users: UserDirectory,
        signatures: ElectronicSignatureService,
        adapters: AdapterRegistry,
        role_policy: Optional[Dict[str, List[str]]] = None,
        notifier: Optional[NotificationSink] = None,
    ):
        self.db = db
        self.audit = audit
        self.users = users
        self.signatures = signatures
        self.adapters = adapters
        self.role_policy = role_policy or {}
        self.notifier = notifier or LoggingNotificationSink()

    # Shared building blocks

    @contextmanager
    def case_transaction(
        self, adapter: CaseTypeAdapter, case_id: int
    ) -> Iterator[Tuple[Session, _Pending]]:
        """Transaction scope mapping storage failures to workflow errors.

        Notifications queued on the yielded ``_Pending`` are dispatched only
        once the transaction has committed.
        """
        pending = _Pending()
        try:
            with self.db.transaction() as session:
                yield session, pending
        except WorkflowError:
            raise
        except StaleDataError as exc:
            logger.warning(
                "Concurrent modification of %s %s", adapter.case_type, case_id
            )
            raise ConcurrentModification(adapter.case_type, case_id) from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "Storage failure on %s %s; transaction rolled back",
                adapter.case_type,
                case_id,
            )
            raise StorageError(
                "Storage failure; no changes were made",
                details={"case_type": adapter.case_type, "case_id": str(case_id)},
            ) from exc

        for event in pending.events:
            dispatch(self.notifier, event)

    def authorize(
        self, session: Session, actor_id: str, role_group: str, action: str
    ) -> User:
        user = self.users.get(session, actor_id)
        self.users.require_roles(user, self.role_policy.get(role_group, ()), action)
        return user

    def lock_case(self, session: Session, adapter: CaseTypeAdapter, case_id: int) -> Any:
        """Load the case with a row lock; NotFound when it does not exist."""
        model = adapter.model
        case = session.scalars(
            select(model).where(model.id == case_id).with_for_update()
        ).first()
        if case is None:
            raise NotFound(adapter.entity_type, case_id)
        return case

    def ensure_open(self, adapter: CaseTypeAdapter, case: Any) -> None:
        if adapter.graph.is_terminal(case.status):
            raise CaseClosed(adapter.case_type, case.id, case.status)

    def sign_within(
        self,
        session: Session,
        actor_id: str,
        signature: Optional[SignaturePayload],
        scope: str,
        entity_type: str,
        entity_id: Any,
        action: str,
        default_meaning: Optional[str],
    ) -> SignatureRecord:
        """Sign inside ``session`` so the signature commits with the change."""
        if signature is None or not signature.password:
            raise SignatureRequired(action, scope)
        return self.signatures.sign(
            actor_id,
            signature.password,
            scope,
            entity_type,
            entity_id,
            signature.meaning or default_meaning or "",
            signature.comment,
            session=session,
        )

    # Transitions

    def execute(
        self,
        case_type: str,
        case_id: int,
        action_name: str,
        actor_id: str,
        payload: Optional[Dict[str, Any]] = None,
        signature: Optional[SignaturePayload] = None,
    ) -> TransitionResult:
        """
        Perform ``action_name`` on a case.

        Raises:
            UnknownAction, PermissionDenied, NotFound, CaseClosed,
            InvalidTransition, GuardFailed, SignatureRequired,
            AuthenticationFailed, InvalidSignatureMeaning, DuplicateSignature,
            ConcurrentModification, StorageError
        """
        adapter = self.adapters.get(case_type)
        action = adapter.action(action_name)
        data = action.validate_payload(payload)

        with self.case_transaction(adapter, case_id) as (session, pending):
            self.authorize(session, actor_id, action.role_group, action.name)
            case = self.lock_case(session, adapter, case_id)
            self.ensure_open(adapter, case)

            old_status = case.status
            new_status = self._resolve_target(adapter, action, old_status, data)

            evaluate_guards(
                action.guards,
                GuardContext(
                    session=session,
                    case=case,
                    payload=data,
                    actor_id=actor_id,
                    action=action.name,
                    target=new_status,
                ),
            )

            now = utcnow()
            signed: Optional[SignatureRecord] = None
            if action.requires_signature:
                signed = self.sign_within(
                    session,
                    actor_id,
                    signature,
                    action.signature_scope,  # type: ignore[arg-type]
                    adapter.entity_type,
                    case.id,
                    action.name,
                    action.resolve_meaning(data),
                )
                if action.signature_field:
                    setattr(case, action.signature_field, signed.id)

            old_values, new_values = self._apply(
                adapter, case, action, data, actor_id, now, new_status
            )
            if signed is not None:
                new_values["signature_id"] = signed.id

            self.audit.record_timeline(
                session,
                case_type=adapter.case_type,
                case_id=case.id,
                action=action.timeline_action,
                description=action.render_description(data),
                actor_id=actor_id,
                old_status=old_status,
                new_status=new_status,
                payload=json_safe(data) or None,
                timestamp=now,
            )
            self.audit.record(
                session,
                user_id=actor_id,
                action=AuditAction.SIGN if action.in_place else AuditAction.TRANSITION,
                entity_type=adapter.entity_type,
                entity_id=case.id,
                old_values=json_safe(old_values),
                new_values=json_safe(new_values),
                details={"action": action.name, "case_number": case.case_number},
                timestamp=now,
            )
            session.flush()

            result = TransitionResult(
                case_type=adapter.case_type,
                case_id=case.id,
                action=action.name,
                old_status=old_status,
                new_status=new_status,
                case=case.to_dict(),
                signature=signed,
                timestamp=now,
            )
            pending.events.append(
                self._event(
                    adapter, action, case, data, actor_id, old_status, new_status, now, signed
                )
            )

        logger.info(
            "%s %s: %s %s -> %s by %s",
            adapter.case_type,
            result.case["case_number"],
            action.name,
            old_status,
            new_status,
            actor_id,
        )
        return result

    def _resolve_target(
        self,
        adapter: CaseTypeAdapter,
        action: TransitionAction,
        current: str,
        data: Dict[str, Any],
    ) -> str:
        if action.in_place:
            if current not in action.from_states:
                raise InvalidTransition(
                    adapter.case_type,
                    current,
                    current,
                    action.from_states,
                    reason=f"'{action.name}' is only allowed from the listed states",
                )
            return current
        target = action.resolve_target(data)
        adapter.graph.check(current, target)  # type: ignore[arg-type]
        return target  # type: ignore[return-value]

    def _apply(
        self,
        adapter: CaseTypeAdapter,
        case: Any,
        action: TransitionAction,
        data: Dict[str, Any],
        actor_id: str,
        now: datetime,
        new_status: str,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        old_values: Dict[str, Any] = {"status": case.status}
        new_values: Dict[str, Any] = {"status": new_status}

        def assign(column: str, value: Any) -> None:
            if column not in old_values:
                old_values[column] = getattr(case, column)
            setattr(case, column, value)
            new_values[column] = value

        status_changed = case.status != new_status
        case.status = new_status
        for column in action.timestamp_fields:
            assign(column, now)
        for column in action.actor_fields:
            assign(column, actor_id)
        for key, column in action.payload_fields.items():
            if data.get(key) is not None:
                assign(column, data[key])
        if action.signature_field:
            old_values.setdefault(action.signature_field, None)
            new_values[action.signature_field] = getattr(case, action.signature_field)
        if status_changed and adapter.graph.is_terminal(new_status):
            case.mark_closed(actor_id, now)
            new_values["closed_at"] = now
        return old_values, new_values

    def _event(
        self,
        adapter: CaseTypeAdapter,
        action: TransitionAction,
        case: Any,
        data: Dict[str, Any],
        actor_id: str,
        old_status: Optional[str],
        new_status: Optional[str],
        now: datetime,
        signed: Optional[SignatureRecord],
    ) -> NotificationEvent:
        recipients = []
        for column in action.notify_fields:
            user_id = getattr(case, column, None)
            if user_id and user_id != actor_id and user_id not in recipients:
                recipients.append(user_id)
        return NotificationEvent(
            case_type=adapter.case_type,
            case_id=case.id,
            case_number=case.case_number,
            action=action.name,
            actor_id=actor_id,
            old_status=old_status,
            new_status=new_status,
            timestamp=now,
            title=f"{case.case_number}: {action.timeline_action}",
            message=action.render_description(data),
            recipient_ids=recipients,
            signature_id=signed.id if signed else None,
        )

    # Field updates and creation

    def update_fields(
        self,
        case_type: str,
        case_id: int,
        update_name: str,
        actor_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """Edit case data without moving its status; timeline and audit only."""
        adapter = self.adapters.get(case_type)
        update = adapter.update(update_name)
        data = update.validate_payload(payload)

        with self.case_transaction(adapter, case_id) as (session, _pending):
            self.authorize(session, actor_id, update.role_group, update.name)
            case = self.lock_case(session, adapter, case_id)
            self.ensure_open(adapter, case)
            if update.allowed_states:
                evaluate_guards(
                    [status_in(*update.allowed_states)],
                    GuardContext(session, case, data, actor_id, update.name),
                )

            old_values: Dict[str, Any] = {}
            new_values: Dict[str, Any] = {}
            for key, column in update.payload_fields.items():
                if key in data and data[key] is not None:
                    old_values[column] = getattr(case, column)
                    new_values[column] = data[key]
                    setattr(case, column, data[key])

            now = utcnow()
            self.audit.record_timeline(
                session,
                case_type=adapter.case_type,
                case_id=case.id,
                action=update.timeline_action,
                description=update.description,
                actor_id=actor_id,
                payload=json_safe(data) or None,
                timestamp=now,
            )
            self.audit.record(
                session,
                user_id=actor_id,
                action=AuditAction.UPDATE,
                entity_type=adapter.entity_type,
                entity_id=case.id,
                old_values=json_safe(old_values),
                new_values=json_safe(new_values),
                details={"action": update.name, "case_number": case.case_number},
                timestamp=now,
            )
            session.flush()
            result = TransitionResult(
                case_type=adapter.case_type,
                case_id=case.id,
                action=update.name,
                old_status=case.status,
                new_status=case.status,
                case=case.to_dict(),
                timestamp=now,
            )
        return result

    def create_case(
        self, case_type: str, actor_id: str, payload: Dict[str, Any]
    ) -> TransitionResult:
        """Create a case in its initial state with a fresh case number."""
        adapter = self.adapters.get(case_type)
        data = validate_model(adapter.create_model, payload, "create")

        with self.case_transaction(adapter, 0) as (session, _pending):
            self.authorize(session, actor_id, "investigator", "create")
            now = utcnow()
            columns = {
                key: value
                for key, value in data.items()
                if key in adapter.model.__table__.columns
            }
            case = adapter.model(**columns)
            case.status = adapter.graph.initial
            case.case_number = adapter.number_case(session, now)
            case.created_by_id = actor_id
            case.created_at = now
            session.add(case)
            if adapter.on_create is not None:
                adapter.on_create(session, case, data)
            session.flush()

            self.audit.record_timeline(
                session,
                case_type=adapter.case_type,
                case_id=case.id,
                action="CASE_OPENED",
                description=adapter.created_description(case),
                actor_id=actor_id,
                new_status=case.status,
                timestamp=now,
            )
            self.audit.record(
                session,
                user_id=actor_id,
                action=AuditAction.CREATE,
                entity_type=adapter.entity_type,
                entity_id=case.id,
                new_values=json_safe(columns | {"case_number": case.case_number}),
                timestamp=now,
            )
            session.flush()
            result = TransitionResult(
                case_type=adapter.case_type,
                case_id=case.id,
                action="create",
                old_status=None,
                new_status=case.status,
                case=case.to_dict(),
                timestamp=now,
            )

        logger.info(
            "%s %s opened by %s", adapter.case_type, result.case["case_number"], actor_id
        )
        return result

    # Reads

    def get_case(self, case_type: str, case_id: int) -> Dict[str, Any]:
        adapter = self.adapters.get(case_type)
        with self.db.reader() as session:
            case = session.get(adapter.model, case_id)
            if case is None:
                raise NotFound(adapter.entity_type, case_id)
            return case.to_dict()

    def timeline(self, case_type: str, case_id: int) -> List[TimelineEntry]:
        adapter = self.adapters.get(case_type)
        with self.db.reader() as session:
            if session.get(adapter.model, case_id) is None:
                raise NotFound(adapter.entity_type, case_id)
            return self.audit.timeline(session, adapter.case_type, case_id)


def next_sequence(session: Session, column: Any, prefix: str) -> int:
    """Next running number for identifiers starting with ``prefix``."""
    count = session.scalar(select(func.count()).where(column.like(f"{prefix}%")))
    return int(count or 0) + 1
