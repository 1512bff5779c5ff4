"""
Declarative actions and the per-case-type adapter that groups them.

An adapter is configuration: a state graph, an ORM model and the actions a
caller may request. The transition executor interprets it; no adapter holds
business logic of its own.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
)

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from ..exceptions import InvalidPayload, NotFound, UnknownAction
from .graph import StateGraph
from .guards import Guard

TargetResolver = Union[str, Callable[[Dict[str, Any]], str]]
MeaningResolver = Union[str, Callable[[Dict[str, Any]], str]]


class ActionPayload(BaseModel):
    """Base for request payloads; accepts camelCase and snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


@dataclass(frozen=True)
class TransitionAction:
    """
    One caller-facing verb of a case type.

    Attributes:
        name: Verb used in the route, e.g. ``"approve-capa"``.
        timeline_action: Action name written to the timeline.
        description: Timeline description; ``{field}`` placeholders are filled
            from the payload.
        target: Target state, or a function of the payload returning it.
            ``None`` declares an in-place action that records an event (for
            example a review signature) without moving the status.
        from_states: States an in-place action is legal from.
        guards: Predicates that must all hold.
        signature_scope: Scope of the signature the action requires.
        default_meaning: Meaning used when the caller gives none.
        signature_field: Case column receiving the signature id.
        payload_fields: Payload key to case column.
        actor_fields: Case columns stamped with the acting user. Payload
            fields mapped to the same column take precedence.
        timestamp_fields: Case columns stamped with the transition time.
        role_group: Name of the role list (see ``WorkflowConfig``) allowed
            to perform the action.
        notify_fields: Case columns holding user ids to notify.
        payload_model: Pydantic model validating the payload.
    """

    name: str
    timeline_action: str
    description: str
    target: Optional[TargetResolver] = None
    from_states: Tuple[str, ...] = ()
    guards: Tuple[Guard, ...] = ()
    signature_scope: Optional[str] = None
    default_meaning: Optional[MeaningResolver] = None
    signature_field: Optional[str] = None
    payload_fields: Mapping[str, str] = field(default_factory=dict)
    actor_fields: Tuple[str, ...] = ()
    timestamp_fields: Tuple[str, ...] = ()
    role_group: str = "approver"
    notify_fields: Tuple[str, ...] = ()
    payload_model: Optional[Type[BaseModel]] = None

    @property
    def in_place(self) -> bool:
        return self.target is None

    @property
    def requires_signature(self) -> bool:
        return self.signature_scope is not None

    def resolve_target(self, payload: Dict[str, Any]) -> Optional[str]:
        if self.target is None or isinstance(self.target, str):
            return self.target
        return self.target(payload)

    def resolve_meaning(self, payload: Dict[str, Any]) -> Optional[str]:
        if self.default_meaning is None or isinstance(self.default_meaning, str):
            return self.default_meaning
        return self.default_meaning(payload)

    def render_description(self, payload: Dict[str, Any]) -> str:
        values = {k: v for k, v in payload.items() if v is not None}
        try:
            return self.description.format(**values)
        except (KeyError, IndexError):
            return self.description

    def validate_payload(self, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return validate_model(self.payload_model, payload, self.name)


@dataclass(frozen=True)
class FieldUpdate:
    """Timeline-only edit of case data; never moves the status."""

    name: str
    timeline_action: str
    description: str
    payload_fields: Mapping[str, str]
    allowed_states: Tuple[str, ...] = ()
    role_group: str = "investigator"
    payload_model: Optional[Type[BaseModel]] = None

    def validate_payload(self, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return validate_model(self.payload_model, payload, self.name)


def validate_model(
    model: Optional[Type[BaseModel]],
    payload: Optional[Dict[str, Any]],
    action: str,
    mode: str = "python",
) -> Dict[str, Any]:
    """Validate ``payload`` with ``model`` and return it with snake_case keys."""
    payload = payload or {}
    if model is None:
        return dict(payload)
    try:
        return model.model_validate(payload).model_dump(mode=mode)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise InvalidPayload(action, errors) from exc


@dataclass
class CaseTypeAdapter:
    """Everything the executor needs to know about one case type."""

    graph: StateGraph
    model: Type[Any]
    actions: Sequence[TransitionAction]
    create_model: Type[BaseModel]
    number_case: Callable[[Session, datetime], str]
    created_description: Callable[[Any], str]
    updates: Sequence[FieldUpdate] = ()
    on_create: Optional[Callable[[Session, Any, Dict[str, Any]], None]] = None
    route_prefix: str = ""

    def __post_init__(self) -> None:
        names = [a.name for a in self.actions] + [u.name for u in self.updates]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate action names for {self.case_type}")
        for action in self.actions:
            if isinstance(action.target, str) and action.target not in self.graph.states:
                raise ValueError(
                    f"Action {action.name} targets undeclared state {action.target}"
                )
            for state in action.from_states:
                if state not in self.graph.states:
                    raise ValueError(
                        f"Action {action.name} starts from undeclared state {state}"
                    )

    @property
    def case_type(self) -> str:
        return self.graph.case_type

    @property
    def entity_type(self) -> str:
        return self.model.entity_type

    def action(self, name: str) -> TransitionAction:
        for action in self.actions:
            if action.name == name:
                return action
        raise UnknownAction(self.case_type, name, self.action_names())

    def update(self, name: str) -> FieldUpdate:
        for update in self.updates:
            if update.name == name:
                return update
        raise UnknownAction(self.case_type, name, [u.name for u in self.updates])

    def action_names(self) -> List[str]:
        return [a.name for a in self.actions]


class AdapterRegistry:
    """Adapters by case type."""

    def __init__(self, adapters: Sequence[CaseTypeAdapter] = ()):
        self._adapters: Dict[str, CaseTypeAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: CaseTypeAdapter) -> None:
        if adapter.case_type in self._adapters:
            raise ValueError(f"Adapter for {adapter.case_type} already registered")
        self._adapters[adapter.case_type] = adapter

    def get(self, case_type: str) -> CaseTypeAdapter:
        try:
            return self._adapters[case_type]
        except KeyError:
            raise NotFound("Case type", case_type) from None

    def __iter__(self) -> Any:
        return iter(self._adapters.values())

    def case_types(self) -> List[str]:
        return sorted(self._adapters)
