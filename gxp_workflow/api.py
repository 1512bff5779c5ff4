"""
HTTP API for the case workflow.

Routes per case type are generated from the adapters:

- POST /{prefix}                        - Open a case
- GET  /{prefix}/{id}                   - Read a case
- GET  /{prefix}/{id}/timeline          - Ordered timeline
- POST /{prefix}/{id}/{action}          - One route per declared action
- PUT  /{prefix}/{id}/{section}         - Timeline-only field updates

Batch record steps:

- POST /batch-records/{id}/steps/{step_id}/start|complete|skip|verify

Electronic signatures live under /signatures. PUT, PATCH and DELETE on a
signature are always refused with 403 ESIGNATURE_IMMUTABLE.

The acting user is taken from the ``X-User-Id`` header.

Run with:
    uvicorn gxp_workflow.api:create_app --factory --port 8000
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .config import WorkflowConfig
from .engine import WorkflowEngine
from .exceptions import AuthenticationFailed, WorkflowError
from .workflow.actions import ActionPayload, CaseTypeAdapter, FieldUpdate
from .workflow.executor import SignaturePayload
from .workflow.notifications import NotificationSink

logger = logging.getLogger(__name__)

JSONBody = Optional[Dict[str, Any]]


class SignRequest(ActionPayload):
    scope: str
    entity_type: str
    entity_id: str
    password: str
    meaning: str
    comment: Optional[str] = None


class PasswordCheck(ActionPayload):
    password: str


def _build_error_payload(
    code: str, message: str, details: Any = None, trace_id: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "trace_id": trace_id,
        }
    }


def current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Acting user id; authentication itself happens upstream."""
    if not x_user_id:
        raise AuthenticationFailed("", "X-User-Id header is required")
    return x_user_id


def split_signature(body: JSONBody) -> Tuple[Dict[str, Any], Optional[SignaturePayload]]:
    """Separate signature credentials from the action payload."""
    payload = dict(body or {})
    password = payload.pop("password", None)
    meanings = [
        payload.pop(key, None) for key in ("signatureMeaning", "signature_meaning", "meaning")
    ]
    comment = payload.pop("comment", None)
    if not password:
        return payload, None
    meaning = next((m for m in meanings if m), None)
    return payload, SignaturePayload(password=password, meaning=meaning, comment=comment)


def _update_path(update: FieldUpdate) -> str:
    section = update.name[len("update"):].lstrip("-") if update.name.startswith("update") else update.name
    return f"/{{case_id}}/{section}" if section else "/{case_id}"


def _case_router(engine: WorkflowEngine, adapter: CaseTypeAdapter) -> APIRouter:
    router = APIRouter(prefix=adapter.route_prefix, tags=[adapter.case_type])
    case_type = adapter.case_type
    executor = engine.executor

    @router.post("", status_code=201)
    def create_case(body: Dict[str, Any] = Body(...), actor_id: str = Depends(current_user)):
        return executor.create_case(case_type, actor_id, body).to_dict()

    @router.get("/{case_id}")
    def get_case(case_id: int):
        return executor.get_case(case_type, case_id)

    @router.get("/{case_id}/timeline")
    def get_timeline(case_id: int):
        return [entry.model_dump(mode="json") for entry in executor.timeline(case_type, case_id)]

    def action_endpoint(action_name: str) -> Callable[..., Dict[str, Any]]:
        def perform(
            case_id: int,
            body: JSONBody = Body(None),
            actor_id: str = Depends(current_user),
        ) -> Dict[str, Any]:
            payload, signature = split_signature(body)
            result = executor.execute(
                case_type, case_id, action_name, actor_id, payload, signature
            )
            return result.to_dict()

        return perform

    for action in adapter.actions:
        router.add_api_route(
            f"/{{case_id}}/{action.name}",
            action_endpoint(action.name),
            methods=["POST"],
            name=f"{case_type.lower()}_{action.name.replace('-', '_')}",
        )

    def update_endpoint(update_name: str) -> Callable[..., Dict[str, Any]]:
        def update_case(
            case_id: int,
            body: JSONBody = Body(None),
            actor_id: str = Depends(current_user),
        ) -> Dict[str, Any]:
            return executor.update_fields(case_type, case_id, update_name, actor_id, body).to_dict()

        return update_case

    for update in adapter.updates:
        router.add_api_route(
            _update_path(update),
            update_endpoint(update.name),
            methods=["PUT", "PATCH"],
            name=f"{case_type.lower()}_{update.name.replace('-', '_')}",
        )

    return router


def _steps_router(engine: WorkflowEngine) -> APIRouter:
    router = APIRouter(prefix="/batch-records/{record_id}/steps", tags=["BATCH_RECORD"])
    steps = engine.steps

    @router.post("/{step_id}/start")
    def start_step(record_id: int, step_id: int, actor_id: str = Depends(current_user)):
        return steps.start(record_id, step_id, actor_id)

    @router.post("/{step_id}/complete")
    def complete_step(
        record_id: int,
        step_id: int,
        body: JSONBody = Body(None),
        actor_id: str = Depends(current_user),
    ):
        return steps.complete(record_id, step_id, actor_id, body)

    @router.post("/{step_id}/skip")
    def skip_step(
        record_id: int,
        step_id: int,
        body: JSONBody = Body(None),
        actor_id: str = Depends(current_user),
    ):
        return steps.skip(record_id, step_id, actor_id, body)

    @router.post("/{step_id}/verify")
    def verify_step(
        record_id: int,
        step_id: int,
        body: JSONBody = Body(None),
        actor_id: str = Depends(current_user),
    ):
        _, signature = split_signature(body)
        return steps.verify(record_id, step_id, actor_id, signature)

    return router


def _signatures_router(engine: WorkflowEngine) -> APIRouter:
    router = APIRouter(prefix="/signatures", tags=["signatures"])
    signatures = engine.signatures

    @router.get("/scopes")
    def list_scopes():
        return {"version": signatures.vocabulary.version, "scopes": signatures.list_scopes()}

    @router.get("/meanings/{scope}")
    def list_meanings(scope: str):
        return {"scope": scope, "meanings": signatures.list_meanings(scope)}

    @router.post("/sign", status_code=201)
    def sign(request: SignRequest, actor_id: str = Depends(current_user)):
        record = signatures.sign(
            actor_id,
            request.password,
            request.scope,
            request.entity_type,
            request.entity_id,
            request.meaning,
            request.comment,
        )
        return record.to_dict()

    @router.post("/verify-password")
    def verify_password(request: PasswordCheck, actor_id: str = Depends(current_user)):
        user = signatures.verify_password(actor_id, request.password)
        return {"valid": True, "user_id": user.id}

    @router.get("/entity/{entity_type}/{entity_id}")
    def for_entity(entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in signatures.list_for_entity(entity_type, entity_id)]

    @router.get("/user/{user_id}")
    def for_user(user_id: str) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in signatures.list_for_user(user_id)]

    @router.get("/{signature_id}/verify")
    def verify(signature_id: str):
        return signatures.verify(signature_id).to_dict()

    @router.get("/{signature_id}")
    def get_signature(signature_id: str):
        return signatures.get(signature_id).to_dict()

    @router.api_route("/{signature_id}", methods=["PUT", "PATCH"])
    def modify_signature(
        signature_id: str,
        body: JSONBody = Body(None),
        actor_id: str = Depends(current_user),
    ):
        signatures.block_modification(signature_id, actor_id, body)

    @router.delete("/{signature_id}")
    def delete_signature(signature_id: str, actor_id: str = Depends(current_user)):
        signatures.block_deletion(signature_id, actor_id)

    return router


def create_app(
    engine: Optional[WorkflowEngine] = None,
    config: Optional[WorkflowConfig] = None,
    notifier: Optional[NotificationSink] = None,
) -> FastAPI:
    """Build the FastAPI application around a workflow engine."""
    engine = engine or WorkflowEngine.from_config(config, notifier=notifier)
    app = FastAPI(title=engine.config.application_name, version=__version__)
    app.state.engine = engine

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        trace_id = uuid.uuid4().hex
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "[%s] %s %s failed: %s %s",
            trace_id,
            request.method,
            request.url.path,
            exc.code,
            exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_build_error_payload(exc.code, exc.message, exc.details, trace_id),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        trace_id = uuid.uuid4().hex
        errors = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning("[%s] %s %s rejected: invalid request", trace_id, request.method, request.url.path)
        return JSONResponse(
            status_code=400,
            content=_build_error_payload(
                "VALIDATION_ERROR", "Invalid request", {"errors": errors}, trace_id
            ),
        )

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "environment": engine.config.environment,
            "case_types": engine.adapters.case_types(),
        }

    @app.get("/graphs/{case_type}")
    def graph(case_type: str):
        return engine.adapters.get(case_type).graph.to_dict()

    for adapter in engine.adapters:
        app.include_router(_case_router(engine, adapter))
    app.include_router(_steps_router(engine))
    app.include_router(_signatures_router(engine))
    return app
