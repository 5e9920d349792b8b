"""FastAPI endpoints for the automation engine."""

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..components import EngineComponents
from ..core.exceptions import (
    EventValidationError,
    UnknownEventTypeError,
    WorkflowEngineError,
    create_error_response,
)
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..models.core import Event, EventType, QueueStats, is_known_event_type, normalize_event
from .security import require_cron_authorization, require_runner_secret

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/automations", tags=["automations"])


def get_components(request: Request) -> EngineComponents:
    """Dependency to get the engine components wired at startup."""
    return request.app.state.components


# Request/Response models
class TickResponse(BaseModel):
    ok: bool = True
    processed: int = Field(..., description="Items completed, including dropped ones")
    released: int = Field(..., description="Items released for retry")
    dropped: int = Field(..., description="Items completed without evaluation")


class BatchTickResponse(BaseModel):
    ok: bool = True
    processed: int
    failed: int


class TriggerEvaluateRequest(BaseModel):
    """Event to evaluate; stage-change fields may be given at top level or inside ``payload``."""
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: str = Field(..., alias="workspaceId", min_length=1)
    event_type: str = Field(EventType.ENTITY_STAGE_CHANGED.value, alias="eventType")
    entity_id: Optional[str] = Field(None, alias="entityId")
    container_id: Optional[str] = Field(None, alias="containerId")
    from_stage_id: Optional[str] = Field(None, alias="fromStageId")
    to_stage_id: Optional[str] = Field(None, alias="toStageId")
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_key: Optional[str] = Field(None, alias="eventKey")

    def to_event(self) -> Event:
        payload = dict(self.payload)
        for key, value in (
            ("entityId", self.entity_id),
            ("containerId", self.container_id),
            ("fromStageId", self.from_stage_id),
            ("toStageId", self.to_stage_id),
        ):
            if value is not None:
                payload[key] = value

        entity_id = self.entity_id or payload.get("entityId")
        if not isinstance(entity_id, str) or not entity_id.strip():
            raise EventValidationError(
                "entityId is required",
                event_type=self.event_type,
                validation_errors=["entityId: field required"],
                error_code="missing_fields",
            )
        return _build_event(self.workspace_id, self.event_type, entity_id, payload)


class TriggerEvaluateResponse(BaseModel):
    ok: bool = True
    triggered: int = Field(..., description="Number of runs created")


class EnqueueEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: str = Field(..., alias="workspaceId", min_length=1)
    event_type: str = Field(..., alias="eventType", min_length=1)
    entity_id: str = Field(..., alias="entityId", min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey")


class EnqueueEventResponse(BaseModel):
    ok: bool = True
    id: int


def _build_event(workspace_id: str, event_type: str, entity_id: str, payload: Dict[str, Any]) -> Event:
    try:
        return Event(workspace_id=workspace_id, event_type=event_type, entity_id=entity_id, payload=payload)
    except ValidationError as e:
        raise EventValidationError(
            "Invalid event",
            event_type=event_type,
            validation_errors=[err["msg"] for err in e.errors()],
            error_code="invalid_body",
        )


def _validate_event(event: Event) -> Event:
    """Reject unknown types and malformed payloads; return the normalized event."""
    if not is_known_event_type(event.event_type):
        raise UnknownEventTypeError(
            f"Unknown event type '{event.event_type}'",
            event_type=event.event_type,
            error_code="unknown_event_type",
        )
    try:
        return normalize_event(event)
    except ValidationError as e:
        raise EventValidationError(
            f"Invalid payload for {event.event_type}",
            event_type=event.event_type,
            validation_errors=[
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ],
            error_code="missing_fields",
        )


def run_tick(components: EngineComponents) -> Tuple[int, Dict[str, Any]]:
    """Run one consumer tick and return the status code and body of the tick endpoint."""
    try:
        result = components.consumer.tick()
    except WorkflowEngineError as e:
        logger.error(f"Runner tick failed: {e.message}")
        return status_code_for_error(e), create_error_response(e)
    return status.HTTP_200_OK, TickResponse(**result.model_dump()).model_dump()


# Endpoints

@router.post(
    "/runner/tick",
    response_model=TickResponse,
    summary="Process one batch of queued events",
    dependencies=[Depends(require_runner_secret)],
)
def runner_tick(components: EngineComponents = Depends(get_components)) -> JSONResponse:
    """
    Lock a batch of queued events, evaluate them and resolve each one.

    Requires ``Authorization: Bearer <runner_secret>``.
    """
    status_code, body = run_tick(components)
    return JSONResponse(status_code=status_code, content=body, headers={"Cache-Control": "no-store"})


@router.api_route(
    "/runner/cron",
    methods=["GET", "POST"],
    summary="Scheduler entrypoint for the runner",
    dependencies=[Depends(require_cron_authorization)],
)
def runner_cron(components: EngineComponents = Depends(get_components)) -> JSONResponse:
    """
    Wrapper called by the periodic scheduler.

    Runs the tick in-process and forwards its outcome: ``{ok, runner}`` on
    success, ``{ok: false, error: "runner_failed", status, response}`` otherwise.
    """
    status_code, body = run_tick(components)
    if status_code >= 400:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": "runner_failed", "status": status_code, "response": body},
            headers={"Cache-Control": "no-store"},
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"ok": True, "runner": body},
        headers={"Cache-Control": "no-store"},
    )


@router.post(
    "/triggers/evaluate",
    response_model=TriggerEvaluateResponse,
    summary="Evaluate one event against the workspace's active workflows",
    dependencies=[Depends(require_runner_secret)],
)
def evaluate_triggers(
    request: TriggerEvaluateRequest,
    components: EngineComponents = Depends(get_components)
) -> TriggerEvaluateResponse:
    """
    Match the event against every active workflow of its workspace and
    materialize a run per match.

    Raises:
        EventValidationError: If the event payload is malformed (400)
        UnknownEventTypeError: If the event type is not supported (400)
    """
    event = _validate_event(request.to_event())
    triggered = components.local_evaluator.evaluate(event, event_key=request.event_key)
    return TriggerEvaluateResponse(triggered=triggered)


@router.post(
    "/events",
    response_model=EnqueueEventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a domain event",
    dependencies=[Depends(require_runner_secret)],
)
def enqueue_event(
    request: EnqueueEventRequest,
    x_workspace_id: Optional[str] = Header(None),
    components: EngineComponents = Depends(get_components)
) -> EnqueueEventResponse:
    """
    Validate and enqueue an event for the next tick.

    The ``X-Workspace-Id`` header must name the same workspace as the body.
    """
    if not x_workspace_id or x_workspace_id != request.workspace_id:
        raise EventValidationError(
            "X-Workspace-Id header does not match workspaceId",
            event_type=request.event_type,
            error_code="workspace_mismatch",
        )

    event = _validate_event(
        _build_event(request.workspace_id, request.event_type, request.entity_id, request.payload)
    )
    item = components.queue.enqueue(event, idempotency_key=request.idempotency_key)
    logger.info(f"Enqueued {event.event_type} event {item.id} for workspace {event.workspace_id}")
    return EnqueueEventResponse(id=item.id)


@router.post(
    "/steps/tick",
    response_model=BatchTickResponse,
    summary="Execute one batch of queued run steps",
    dependencies=[Depends(require_runner_secret)],
)
def steps_tick(components: EngineComponents = Depends(get_components)) -> BatchTickResponse:
    result = components.step_executor.tick()
    return BatchTickResponse(processed=result.processed, failed=result.failed)


@router.post(
    "/outbox/tick",
    response_model=BatchTickResponse,
    summary="Send one batch of queued outbox messages",
    dependencies=[Depends(require_runner_secret)],
)
def outbox_tick(components: EngineComponents = Depends(get_components)) -> BatchTickResponse:
    result = components.outbox.tick()
    return BatchTickResponse(processed=result.processed, failed=result.failed)


@router.get(
    "/queue/stats",
    response_model=QueueStats,
    summary="Queue depth",
    dependencies=[Depends(require_runner_secret)],
)
def queue_stats(components: EngineComponents = Depends(get_components)) -> QueueStats:
    """Pending, in-flight and processed item counts."""
    return components.queue.stats()


@router.get("/health", summary="Liveness probe")
async def health() -> Dict[str, Any]:
    return {"ok": True, "status": "healthy"}
