"""FastAPI application factory and HTTP schemas for the mail scheduler.

This module provides the REST control surface of the scheduler service:

- Pydantic models defining request/response schemas
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- Endpoints for message management, scheduling, manual sends, stats,
  scheduler control and Prometheus metrics

Every endpoint goes through :meth:`MailSchedulerCore.handle_command`.
Command failures are mapped to HTTP status codes from their error code:
``not_found`` to 404, ``invalid_transition``/``already_sent`` to 409,
``no_transport`` to 503 and anything else to 400.

Example:
    Creating and running the API application::

        from async_mail_scheduler.core import MailSchedulerCore
        from async_mail_scheduler.api import create_app

        core = MailSchedulerCore(db_path="/data/mail_scheduler.db", transport=transport)
        app = create_app(core, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager
import logging

from fastapi import FastAPI, HTTPException, APIRouter, Depends, status, Request
from fastapi.responses import Response, JSONResponse
from fastapi.security import APIKeyHeader
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field, ConfigDict

from .core import MailSchedulerCore
from .models import MessageRecord

logger = logging.getLogger(__name__)

service: MailSchedulerCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "already_sent": status.HTTP_409_CONFLICT,
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "no_transport": status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None
    code: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    running: bool
    active_since: Optional[int] = None
    uptime_seconds: int = 0
    tick_interval: float
    active_jobs: List[str] = Field(default_factory=list)


class TickReportInfo(BaseModel):
    due: int
    sent: int
    retrying: int
    failed: int
    skipped: int
    errors: Dict[str, str] = Field(default_factory=dict)


class RunNowResponse(CommandStatus):
    triggered: bool
    report: Optional[TickReportInfo] = None


class MessagePayload(BaseModel):
    """Payload accepted when creating a draft message.

    Field validation is performed by the core so that the HTTP API and the
    command interface reject the same inputs.
    """
    model_config = ConfigDict(extra="allow")
    id: Optional[str] = None
    subject: str
    body: str
    recipient_email: str
    recipient_name: str
    recipient_contact_id: Optional[str] = None
    sender_user_id: str
    sender_email: str
    sender_name: str
    email_type: Optional[str] = None
    max_retries: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class MessageUpdatePayload(BaseModel):
    """Content fields that can change while a message is still editable.

    ``max_retries`` and the sending user are fixed at creation; the core
    rejects them with ``validation_error``.
    """
    model_config = ConfigDict(extra="allow")
    subject: Optional[str] = None
    body: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_contact_id: Optional[str] = None
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    email_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SchedulePayload(BaseModel):
    """Send time given either as epoch seconds or as an ISO-8601 datetime."""
    scheduled_ts: Optional[int] = None
    scheduled_at: Optional[str] = None


class CleanupPayload(BaseModel):
    days_old: Optional[int] = Field(default=None, ge=0)


class MessageResponse(CommandStatus):
    message: MessageRecord


class MessagesResponse(CommandStatus):
    messages: List[MessageRecord]


class DispatchResultInfo(BaseModel):
    id: str
    outcome: str
    error: Optional[str] = None
    retry_count: Optional[int] = None
    next_attempt_ts: Optional[int] = None


class SendNowResponse(CommandStatus):
    result: DispatchResultInfo


class StatsResponse(CommandStatus):
    by_status: Dict[str, int]
    total_scheduled: int
    scheduler: Dict[str, Any]


class CleanupResponse(CommandStatus):
    removed: int


def _require_service() -> MailSchedulerCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a failed command result into an ``HTTPException``."""
    if isinstance(result, dict) and result.get("ok") is True:
        return result
    code = result.get("code") if isinstance(result, dict) else None
    detail = {"error": result.get("error") if isinstance(result, dict) else None, "code": code}
    raise HTTPException(status_code=ERROR_STATUS_CODES.get(code, status.HTTP_400_BAD_REQUEST), detail=detail)


def create_app(
    svc: MailSchedulerCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_mail_scheduler.core.MailSchedulerCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    api = FastAPI(title="Async Mail Scheduler", lifespan=lifespan)
    api.state.api_token = api_token
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    messages = APIRouter(prefix="/messages", tags=["messages"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors()}
        )

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def scheduler_status():
        """Return the scheduler loop state."""
        result = await _require_service().handle_command("status", {})
        return StatusResponse.model_validate(result)

    @commands.post("/start", response_model=StatusResponse, response_model_exclude_none=True)
    async def start():
        """Start the scheduler loop (no-op when running)."""
        result = await _require_service().handle_command("start", {})
        return StatusResponse.model_validate(_raise_for_result(result))

    @commands.post("/stop", response_model=StatusResponse, response_model_exclude_none=True)
    async def stop():
        """Stop the scheduler loop (no-op when stopped)."""
        result = await _require_service().handle_command("stop", {})
        return StatusResponse.model_validate(_raise_for_result(result))

    @commands.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Process due messages immediately."""
        result = await _require_service().handle_command("run now", {})
        return RunNowResponse.model_validate(_raise_for_result(result))

    @commands.post("/cleanup", response_model=CleanupResponse, response_model_exclude_none=True)
    async def cleanup(payload: CleanupPayload = CleanupPayload()):
        """Deactivate terminal messages older than ``days_old`` (default: configured retention)."""
        result = await _require_service().handle_command("cleanup", payload.model_dump())
        return CleanupResponse.model_validate(_raise_for_result(result))

    @messages.post("", response_model=MessageResponse, response_model_exclude_none=True,
                   status_code=status.HTTP_201_CREATED)
    async def create_message(payload: MessagePayload):
        """Create a draft message."""
        data = payload.model_dump(exclude_none=True)
        result = await _require_service().handle_command("createMessage", data)
        return MessageResponse.model_validate(_raise_for_result(result))

    @messages.get("", response_model=MessagesResponse, response_model_exclude_none=True)
    async def list_messages(status: Optional[str] = None, user_id: Optional[str] = None,
                            limit: Optional[int] = None):
        """List active messages, newest first."""
        payload = {"status": status, "user_id": user_id, "limit": limit}
        result = await _require_service().handle_command("listMessages", payload)
        return MessagesResponse.model_validate(_raise_for_result(result))

    @messages.get("/{message_id}", response_model=MessageResponse, response_model_exclude_none=True)
    async def get_message(message_id: str):
        result = await _require_service().handle_command("getMessage", {"id": message_id})
        return MessageResponse.model_validate(_raise_for_result(result))

    @messages.patch("/{message_id}", response_model=MessageResponse, response_model_exclude_none=True)
    async def update_message(message_id: str, payload: MessageUpdatePayload):
        """Change content fields of a draft or scheduled message."""
        data = {**payload.model_dump(exclude_none=True), "id": message_id}
        result = await _require_service().handle_command("updateMessage", data)
        return MessageResponse.model_validate(_raise_for_result(result))

    @messages.delete("/{message_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_message(message_id: str):
        """Soft-delete a message."""
        result = await _require_service().handle_command("deleteMessage", {"id": message_id})
        return BasicOkResponse.model_validate(_raise_for_result(result))

    @messages.post("/{message_id}/schedule", response_model=MessageResponse, response_model_exclude_none=True)
    async def schedule_message(message_id: str, payload: SchedulePayload):
        """Attach a future send time to a draft or scheduled message."""
        data = {"id": message_id, **payload.model_dump(exclude_none=True)}
        result = await _require_service().handle_command("scheduleMessage", data)
        return MessageResponse.model_validate(_raise_for_result(result))

    @messages.post("/{message_id}/cancel", response_model=MessageResponse, response_model_exclude_none=True)
    async def cancel_message(message_id: str):
        """Cancel a scheduled message."""
        result = await _require_service().handle_command("cancelMessage", {"id": message_id})
        return MessageResponse.model_validate(_raise_for_result(result))

    @messages.post("/{message_id}/send-now", response_model=SendNowResponse, response_model_exclude_none=True)
    async def send_now(message_id: str):
        """Deliver a message immediately, bypassing its scheduled time."""
        result = await _require_service().handle_command("sendNow", {"id": message_id})
        return SendNowResponse.model_validate(_raise_for_result(result))

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats(user_id: Optional[str] = None):
        """Return per-status message counts."""
        result = await _require_service().handle_command("stats", {"user_id": user_id})
        return StatsResponse.model_validate(_raise_for_result(result))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=_require_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(commands)
    api.include_router(messages)
    return api
