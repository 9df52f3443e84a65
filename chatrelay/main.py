import json
import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException

from chatrelay import storage
from chatrelay.config import settings
from chatrelay.errors import MessageNotFound, RelayError, ValidationError
from chatrelay.gateway import GatewayClient
from chatrelay.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from chatrelay.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from chatrelay.pipeline import DeliveryPipeline, OutboundRequest
from chatrelay.realtime import RealtimeFanout, WebSocketConnection
from chatrelay.reconciler import StatusReconciler
from chatrelay.retry import RetryScheduler
from chatrelay.schemas import (
    ContactResponse,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    IncomingWebhookPayload,
    MarkReadData,
    MarkReadRequest,
    MarkReadResponse,
    MessageSnapshot,
    MessagesListResponse,
    MessageStatusData,
    MessageStatusResponse,
    Pagination,
    SendMessageRequest,
    SendTemplateRequest,
    StatusCallbackPayload,
    SubmissionResponse,
    WebhookResponse,
)
from chatrelay.storage import MessageStore, check_db_health, get_db, init_db
from chatrelay.utils import verify_gateway_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


def build_gateway() -> GatewayClient:
    return GatewayClient(
        account_sid=settings.GATEWAY_ACCOUNT_SID,
        auth_token=settings.GATEWAY_AUTH_TOKEN,
        base_url=settings.GATEWAY_BASE_URL,
        timeout_s=settings.GATEWAY_TIMEOUT_SECONDS,
    )


def build_fanout() -> RealtimeFanout:
    return RealtimeFanout(
        inactivity_timeout=settings.REALTIME_INACTIVITY_TIMEOUT_SECONDS,
        sweep_interval=settings.REALTIME_SWEEP_INTERVAL_SECONDS,
        heartbeat_interval=settings.REALTIME_HEARTBEAT_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the fanout, gateway client, pipeline and reconciler
    - Shutdown: wait for background submissions, close connections and the gateway client
    """
    init_db()

    store = MessageStore()
    fanout = build_fanout()
    gateway = build_gateway()
    reconciler = StatusReconciler(store=store, broadcaster=fanout, gateway=gateway)
    pipeline = DeliveryPipeline(
        store=store,
        gateway=gateway,
        scheduler=RetryScheduler(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        ),
        broadcaster=fanout,
        from_number=settings.GATEWAY_FROM_NUMBER,
        status_callback_url=settings.STATUS_CALLBACK_URL,
        default_country_code=settings.DEFAULT_COUNTRY_CODE,
        channel_prefix=settings.GATEWAY_CHANNEL_PREFIX,
        on_submitted=reconciler.replay_pending,
    )

    app.state.store = store
    app.state.fanout = fanout
    app.state.gateway = gateway
    app.state.pipeline = pipeline
    app.state.reconciler = reconciler

    fanout.start()
    yield
    await pipeline.aclose()
    await fanout.stop()
    await gateway.aclose()


app = FastAPI(
    title="Chat Relay API",
    description="Relays CRM conversation messages to WhatsApp through a messaging gateway",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.add_middleware(RequestLoggingMiddleware)


def get_pipeline(request: Request) -> DeliveryPipeline:
    return request.app.state.pipeline


def get_reconciler(request: Request) -> StatusReconciler:
    return request.app.state.reconciler


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


# =============================================================================
# Error Envelopes
# =============================================================================

def _error_response(status_code: int, error: str, code: Optional[str] = None, details: Any = None) -> JSONResponse:
    body = ErrorResponse(error=error, code=code, details=details)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body, exclude_none=True))


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{exc.code}: {exc.message}")
        return _error_response(exc.http_status, "Upstream request failed", exc.code)
    return _error_response(exc.http_status, exc.message, exc.code, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request",
        "VALIDATION_ERROR",
        jsonable_encoder(exc.errors()),
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "INTERNAL_ERROR")


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. Gateway credentials are configured

    Otherwise returns 503 (Service Unavailable).
    """
    if not (settings.GATEWAY_ACCOUNT_SID and settings.GATEWAY_AUTH_TOKEN and settings.GATEWAY_FROM_NUMBER):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Gateway credentials not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


@app.get("/api/health")
async def api_health(request: Request) -> Dict[str, Any]:
    """Status summary for the CRM widget."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "connections": request.app.state.fanout.connection_count,
        "pendingSubmissions": request.app.state.pipeline.pending,
    }


# =============================================================================
# Webhook Routes
# =============================================================================

async def _read_webhook_payload(request: Request, endpoint: str) -> Dict[str, Any]:
    """
    Decode a gateway webhook body (form-encoded or JSON) and check its signature.

    Raises:
        HTTPException: 400 for an unreadable body, 401 for a bad signature
    """
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            decoded = json.loads(await request.body())
            payload = decoded if isinstance(decoded, dict) else {}
        else:
            form = await request.form()
            payload = {key: value for key, value in form.items() if isinstance(value, str)}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Unreadable webhook body: {e}")
        record_webhook_outcome(endpoint, "validation_error")
        log_webhook_data(request=request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Bad Request")

    if settings.WEBHOOK_VALIDATE_SIGNATURE:
        if settings.WEBHOOK_PUBLIC_URL:
            url = settings.WEBHOOK_PUBLIC_URL.rstrip("/") + request.url.path
        else:
            url = str(request.url)
        signature = request.headers.get("X-Twilio-Signature", "")
        if not verify_gateway_signature(url, payload, signature, settings.GATEWAY_AUTH_TOKEN):
            logger.error("Invalid webhook signature")
            record_webhook_outcome(endpoint, "invalid_signature")
            log_webhook_data(request=request, message_id=payload.get("MessageSid"), result="invalid_signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    return payload


@app.post(
    "/webhook/incoming",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing MessageSid"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def webhook_incoming(
    request: Request,
    reconciler: StatusReconciler = Depends(get_reconciler),
):
    """
    Store an inbound WhatsApp message.

    First sight of a MessageSid creates an inbound record (status received)
    and notifies the conversation; a repeat only re-reports 'received'.
    """
    payload = await _read_webhook_payload(request, "incoming")
    message_sid = payload.get("MessageSid")
    logger.info(f"Processing incoming message webhook: {message_sid}")

    try:
        inbound = IncomingWebhookPayload.from_payload(payload)
    except PydanticValidationError as e:
        logger.error(f"Invalid incoming webhook: {e}")
        record_webhook_outcome("incoming", "validation_error")
        log_webhook_data(request=request, message_id=message_sid, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Bad Request")

    try:
        _, created = await reconciler.record_inbound(inbound)
    except Exception:
        logger.exception(f"Error processing incoming webhook: {message_sid}")
        record_webhook_outcome("incoming", "error")
        log_webhook_data(request=request, message_id=message_sid, result="error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="Internal server error").model_dump(exclude_none=True),
        )

    result = "created" if created else "duplicate"
    record_webhook_outcome("incoming", result)
    log_webhook_data(request=request, message_id=message_sid, dup=not created, result=result)
    return WebhookResponse(status="ok", result=result)


@app.post(
    "/webhook/status",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing MessageSid or MessageStatus"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Internal failure, gateway should retry"},
    },
)
async def webhook_status(
    request: Request,
    reconciler: StatusReconciler = Depends(get_reconciler),
):
    """
    Reconcile a delivery-status callback.

    Answers 200 for every processed callback, including messages this
    instance does not track, so the gateway stops retrying; 500 only on an
    internal failure.
    """
    payload = await _read_webhook_payload(request, "status")
    message_sid = payload.get("MessageSid")

    try:
        callback = StatusCallbackPayload.model_validate(payload)
    except PydanticValidationError:
        logger.error(f"Invalid webhook data: {payload}")
        record_webhook_outcome("status", "validation_error")
        log_webhook_data(request=request, message_id=message_sid, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook data")

    logger.info(f"Processing status webhook for MessageSid: {callback.message_sid}, Status: {callback.message_status}")

    try:
        outcome = await reconciler.reconcile(callback)
    except Exception:
        logger.exception(f"Error processing status webhook: {message_sid}")
        record_webhook_outcome("status", "error")
        log_webhook_data(request=request, message_id=message_sid, result="error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="Internal server error").model_dump(exclude_none=True),
        )

    result = outcome.outcome.value
    record_webhook_outcome("status", result)
    log_webhook_data(request=request, message_id=message_sid, result=result)
    return WebhookResponse(status="ok", result=result)


# =============================================================================
# Message API Routes
# =============================================================================

@app.post(
    "/api/messages/send-message",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
    responses={400: {"model": ErrorResponse}},
)
async def send_message(
    payload: SendMessageRequest,
    pipeline: DeliveryPipeline = Depends(get_pipeline),
) -> SubmissionResponse:
    """
    Queue an outbound text or media message.

    Responds 202 once the queued record exists; the gateway submission and
    its retries continue in the background.
    """
    result = await pipeline.accept(
        OutboundRequest(
            conversation_id=payload.conversation_id,
            to=payload.to,
            body=payload.body,
            media_urls=payload.media_list(),
            contact_name=payload.contact_name,
            from_name=payload.from_name,
        )
    )
    if not result.accepted:
        raise result.error
    return SubmissionResponse(data=result.message)


@app.post(
    "/api/messages/send-template",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
    responses={400: {"model": ErrorResponse}},
)
async def send_template(
    payload: SendTemplateRequest,
    pipeline: DeliveryPipeline = Depends(get_pipeline),
) -> SubmissionResponse:
    """Queue an outbound template message."""
    if not payload.template_id:
        raise ValidationError("templateId is required", details={"missing": ["templateId"]})
    result = await pipeline.accept(
        OutboundRequest(
            conversation_id=payload.conversation_id,
            to=payload.to,
            template_id=payload.template_id,
            template_variables=payload.template_variables,
            contact_name=payload.contact_name,
            from_name=payload.from_name,
        )
    )
    if not result.accepted:
        raise result.error
    return SubmissionResponse(data=result.message)


@app.get("/api/messages/messages", response_model=MessagesListResponse)
def list_messages(
    contact_id: Annotated[Optional[str], Query(alias="contactId")] = None,
    conversation_id: Annotated[Optional[str], Query(alias="conversationId")] = None,
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
    direction: Annotated[Optional[str], Query()] = None,
    start_date: Annotated[Optional[datetime], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[datetime], Query(alias="endDate")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List messages, newest first, with filtering and page-based pagination.
    """
    messages, total = storage.get_messages(
        db,
        conversation_id=conversation_id or contact_id,
        status=status_filter,
        direction=direction,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=(page - 1) * limit,
    )
    contact_name = (messages[0].contact_name or messages[0].from_name) if messages else None

    return MessagesListResponse(
        data=[MessageSnapshot.model_validate(message) for message in messages],
        contact_name=contact_name or "Unknown Contact",
        pagination=Pagination(
            total=total,
            page=page,
            total_pages=math.ceil(total / limit),
            limit=limit,
        ),
    )


@app.get(
    "/api/messages/contact/{conversation_id}",
    response_model=ContactResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_contact(conversation_id: str, db: Session = Depends(get_db)) -> ContactResponse:
    """Name and phone of a conversation's counterparty."""
    contact = storage.get_contact(db, conversation_id)
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
    return ContactResponse(name=contact["name"], phone=contact["phone"])


@app.patch(
    "/api/messages/messages/read",
    response_model=MarkReadResponse,
    responses={400: {"model": ErrorResponse}},
)
async def mark_messages_read(
    payload: MarkReadRequest,
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> MarkReadResponse:
    """Mark messages read by id list, or every unread inbound message of a conversation."""
    result = await reconciler.mark_read(
        message_ids=payload.message_ids,
        conversation_id=payload.conversation_id,
    )
    return MarkReadResponse(
        data=MarkReadData(
            matched_count=result["matched_count"],
            modified_count=result["modified_count"],
        )
    )


@app.get(
    "/api/messages/messages/{message_id}/status",
    response_model=MessageStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_message_status(
    message_id: str,
    refresh: bool = False,
    store: MessageStore = Depends(get_store),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> MessageStatusResponse:
    """
    Status snapshot by internal or gateway id.

    With refresh=true the gateway is asked for the current status first.
    """
    if refresh:
        await reconciler.refresh(message_id)

    record = await store.run(storage.get_message, message_id)
    if record is None:
        raise MessageNotFound("Message not found")

    error = None
    if record.error_message or record.error_code:
        error = ErrorDetail(code=record.error_code, message=record.error_message)
    return MessageStatusResponse(
        data=MessageStatusData(
            message_id=record.id,
            gateway_message_id=record.gateway_message_id,
            status=record.status,
            timestamp=record.created_at,
            error=error,
        )
    )


@app.post(
    "/api/messages/messages/{message_id}/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def retry_message(
    message_id: str,
    pipeline: DeliveryPipeline = Depends(get_pipeline),
) -> SubmissionResponse:
    """Manually resubmit a failed outbound message."""
    result = await pipeline.retry(message_id)
    return SubmissionResponse(message="Message is being retried", data=result.message)


# =============================================================================
# Realtime Channel
# =============================================================================

@app.websocket("/ws")
async def realtime_channel(websocket: WebSocket):
    """
    Realtime subscription channel.

    Client frames: {"event": "join", "data": "<conversationId>"},
    {"event": "pong"}, {"event": "message:ack", "data": {...}}.
    Server frames: {"event": "new-message" | "message-status-update" |
    "messages-read" | "ping" | "ack", "data": ...}.
    """
    fanout: RealtimeFanout = websocket.app.state.fanout
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    fanout.register(connection)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"success": False, "error": "invalid JSON"}})
                continue
            reply = await fanout.handle_frame(connection.id, frame)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect as e:
        logger.debug(f"Client {connection.id} closed the channel: {e.code}")
    finally:
        fanout.unregister(connection.id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
