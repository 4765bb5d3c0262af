import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

import httpx
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from notify_gate.config import settings
from notify_gate.errors import InvalidInput, ProviderNotConfigured, SessionStoreError
from notify_gate.formatter import SessionReply, format_session_reply
from notify_gate.gate import DispatchGate, DispatchResult, build_gate
from notify_gate.logging_utils import setup_logging, RequestLoggingMiddleware, attach_log_data
from notify_gate.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from notify_gate.schemas import (
    ConnectionTestRequest,
    ConnectionTestResponse,
    DispatchQueuedResponse,
    DispatchRequest,
    ErrorResponse,
    HealthResponse,
    SessionCountResponse,
    SessionResponse,
    SessionStatusResponse,
    TicketAssociationRequest,
    WebhookRequest,
    WebhookResponse,
)
from notify_gate.storage import (
    SessionLocal,
    check_db_health,
    create_inbound_message,
    delete_inbound_message,
    find_organization,
    find_organization_by_business_number,
    get_db,
    init_db,
)
from notify_gate.utils import mask_phone, normalize_phone, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and wire the dispatch gate.
    Shutdown: close the provider HTTP client.
    """
    init_db()
    http_client = httpx.Client(timeout=settings.PROVIDER_SEND_TIMEOUT_SECONDS)
    app.state.gate = build_gate(settings, SessionLocal, http_client)
    logger.info(
        f"Dispatch gate ready: messaging_enabled={settings.MESSAGING_ENABLED}, "
        f"debug_mode={settings.DEBUG_MODE}"
    )
    yield
    http_client.close()


app = FastAPI(
    title="WhatsApp Notification Gate",
    description="Consent-gated WhatsApp notifications for multi-tenant queues",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_dispatch_gate(request: Request) -> DispatchGate:
    """Dependency returning the gate built at startup."""
    return request.app.state.gate


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Inbound Webhook Route
# =============================================================================

def _webhook_error(request: Request, result: str, detail: str, status_code: int, message_id=None) -> HTTPException:
    record_webhook_outcome(result)
    attach_log_data(request, message_id=message_id, dup=False, result=result)
    return HTTPException(status_code=status_code, detail=detail)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> WebhookResponse:
    """
    Consume an inbound customer message from the provider.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Records the message once (duplicate message_id returns 200 untouched)
    - Opens or extends the customer's consent session for the tenant
    - Acknowledges the contact with a welcome or extension message

    This is the only way a consent session comes into existence.
    """
    logger.info("Webhook request received")
    raw_body = await request.body()

    if not x_signature:
        logger.error("Missing X-Signature header")
        raise _webhook_error(request, "invalid_signature", "invalid signature", status.HTTP_401_UNAUTHORIZED)

    if not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Invalid HMAC signature")
        raise _webhook_error(request, "invalid_signature", "invalid signature", status.HTTP_401_UNAUTHORIZED)

    body_dict = None
    try:
        body_dict = json.loads(raw_body)
        webhook_data = WebhookRequest.model_validate(body_dict)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        raise _webhook_error(
            request, "validation_error", f"Invalid JSON: {e}", status.HTTP_422_UNPROCESSABLE_ENTITY
        )
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        raise _webhook_error(
            request,
            "validation_error",
            str(e),
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            message_id=body_dict.get("message_id") if isinstance(body_dict, dict) else None,
        )

    organization_id = webhook_data.organization_id
    if organization_id is None:
        org = find_organization_by_business_number(db, webhook_data.to)
    else:
        org = find_organization(db, organization_id)
    if org is not None:
        organization_id = org.id
    organization_name = org.name if org is not None else None

    customer_phone = normalize_phone(webhook_data.from_msisdn)
    success, is_duplicate = create_inbound_message(
        db=db,
        message_id=webhook_data.message_id,
        from_msisdn=customer_phone,
        to_msisdn=normalize_phone(webhook_data.to),
        ts=webhook_data.ts,
        text=webhook_data.text,
        organization_id=organization_id,
    )
    if not success:
        logger.error(f"Failed to store inbound message: {webhook_data.message_id}")
        raise _webhook_error(
            request, "error", "Failed to store message",
            status.HTTP_500_INTERNAL_SERVER_ERROR, message_id=webhook_data.message_id,
        )

    if not is_duplicate:
        try:
            session = gate.session_store.create_or_extend_session(
                customer_phone, organization_id, customer_name=webhook_data.customer_name
            )
        except SessionStoreError as e:
            logger.error(f"Failed to open session for {mask_phone(customer_phone)}: {e}")
            delete_inbound_message(db, webhook_data.message_id)
            raise _webhook_error(
                request, "error", "Failed to open session",
                status.HTTP_500_INTERNAL_SERVER_ERROR, message_id=webhook_data.message_id,
            )
        logger.info(
            f"Session {session.id} live for {mask_phone(customer_phone)} "
            f"(org={organization_id}) until {session.expires_at.isoformat()}"
        )
        if org is not None and settings.SESSION_REPLIES_ENABLED:
            reply = SessionReply.SESSION_OPENED if session.opened else SessionReply.SESSION_EXTENDED
            body = format_session_reply(
                reply, session.expires_at, gate.session_store.window, organization_name
            )
            background_tasks.add_task(gate.dispatch, customer_phone, organization_id, body)

    result = "duplicate" if is_duplicate else "created"
    record_webhook_outcome(result)
    attach_log_data(
        request, message_id=webhook_data.message_id, dup=is_duplicate, result=result, org=organization_id
    )
    return WebhookResponse(status="ok")


# =============================================================================
# Session Routes
# =============================================================================

@app.get("/sessions/{phone}", response_model=SessionStatusResponse)
def session_status(
    phone: str,
    organization_id: Annotated[Optional[str], Query(description="Owning organization")] = None,
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> SessionStatusResponse:
    """Report whether a phone number currently has a consent session."""
    store = gate.session_store
    digits = normalize_phone(phone)
    if not digits:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid phone")
    try:
        session = store.get_active_session(digits, organization_id)
    except SessionStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    if session is None:
        return SessionStatusResponse(phone_number=digits, has_active_session=False)
    return SessionStatusResponse(
        phone_number=digits,
        has_active_session=True,
        session=SessionResponse.model_validate(session),
        time_remaining_seconds=session.time_remaining(store.now()).total_seconds(),
    )


@app.delete("/sessions/{phone}", response_model=SessionCountResponse)
def deactivate_session(
    phone: str,
    organization_id: Annotated[Optional[str], Query(description="Owning organization")] = None,
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> SessionCountResponse:
    """Close the customer's consent session(s)."""
    try:
        count = gate.session_store.deactivate_session(phone, organization_id)
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    except SessionStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return SessionCountResponse(count=count)


@app.put(
    "/sessions/{phone}/ticket",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse, "description": "No live session"}},
)
def associate_session_ticket(
    phone: str,
    payload: TicketAssociationRequest,
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> SessionResponse:
    """Link the customer's live session to a ticket without extending it."""
    try:
        session = gate.session_store.associate_with_ticket(
            phone, payload.organization_id, payload.ticket_id, customer_name=payload.customer_name
        )
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    except SessionStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no active session")
    return SessionResponse.model_validate(session)


@app.post("/sessions/cleanup", response_model=SessionCountResponse)
def cleanup_sessions(gate: DispatchGate = Depends(get_dispatch_gate)) -> SessionCountResponse:
    """Flag lapsed sessions inactive."""
    try:
        count = gate.session_store.cleanup_expired_sessions()
    except SessionStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return SessionCountResponse(count=count)


@app.get("/organizations/{organization_id}/sessions", response_model=list[SessionResponse])
def organization_sessions(
    organization_id: str,
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> list[SessionResponse]:
    """Live consent sessions of one organization, newest first."""
    try:
        sessions = gate.session_store.list_active_sessions(organization_id)
    except SessionStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return [SessionResponse.model_validate(s) for s in sessions]


# =============================================================================
# Dispatch Route
# =============================================================================

@app.post(
    "/notifications/dispatch",
    response_model=DispatchResult,
    responses={202: {"model": DispatchQueuedResponse, "description": "Queued for background dispatch"}},
)
def dispatch_notification(
    payload: DispatchRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    background: Annotated[bool, Query(description="Return immediately and dispatch afterwards")] = False,
    gate: DispatchGate = Depends(get_dispatch_gate),
):
    """
    Dispatch one customer notification through the gate.

    Returns 200 with a tagged result, or 202 when queued with ?background=true.
    A notification that cannot be sent is not an HTTP error for the caller.
    """
    notification = payload.kind if payload.kind is not None else payload.message
    kwargs = {"ticket_id": payload.ticket_id, "reference_id": payload.reference_id}

    if background:
        background_tasks.add_task(
            gate.dispatch, payload.phone, payload.organization_id, notification, payload.context, **kwargs
        )
        attach_log_data(request, org=payload.organization_id, outcome="queued")
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED, content=DispatchQueuedResponse().model_dump()
        )

    result = gate.dispatch(payload.phone, payload.organization_id, notification, payload.context, **kwargs)
    attach_log_data(request, org=payload.organization_id, outcome=result.outcome.value)
    return result


# =============================================================================
# Provider Routes
# =============================================================================

@app.post("/providers/test-connection", response_model=ConnectionTestResponse)
def probe_provider_connection(
    payload: ConnectionTestRequest,
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> ConnectionTestResponse:
    """Probe provider credentials before they are saved."""
    result = gate.resolver.test_connection(payload.instance_id, payload.token, payload.base_url)
    return ConnectionTestResponse(
        success=result.ok,
        message=result.detail,
        response_time_ms=result.response_time_ms,
        details=result.payload,
    )


@app.post(
    "/providers/{organization_id}/test",
    response_model=ConnectionTestResponse,
    responses={404: {"model": ErrorResponse, "description": "No provider configured"}},
)
def probe_organization_provider(
    organization_id: str,
    gate: DispatchGate = Depends(get_dispatch_gate),
) -> ConnectionTestResponse:
    """Probe an organization's stored instance and record its health status."""
    try:
        result = gate.resolver.test_tenant_connection(organization_id)
    except ProviderNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return ConnectionTestResponse(
        success=result.ok,
        message=result.detail,
        response_time_ms=result.response_time_ms,
        status="active" if result.ok else "error",
        details=result.payload,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
