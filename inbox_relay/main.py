import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from inbox_relay.cloud_api import CloudApiClient
from inbox_relay.config import Settings, get_settings
from inbox_relay.dispatcher import OutboundDispatcher
from inbox_relay.errors import InvalidArgument, MalformedEvent, UpstreamError
from inbox_relay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from inbox_relay.metrics import get_metrics, get_metrics_content_type, record_webhook_event
from inbox_relay.reconciler import WebhookReconciler
from inbox_relay.schemas import (
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    SendRequest,
    SendResponse,
    StatusResponse,
    WebhookResponse,
)
from inbox_relay.storage import ConversationStore, build_store
from inbox_relay.utils import verify_hmac_signature

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. Cloud API credentials and verify token are set
    2. The store is reachable and its schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    settings: Settings = request.app.state.settings
    if not (settings.VERIFY_TOKEN and settings.WA_TOKEN and settings.WA_PHONE_NUMBER_ID):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Cloud API credentials not configured")

    if not request.app.state.store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Store not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """Subscription handshake: echo hub.challenge when the verify token matches."""
    if mode == "subscribe" and token == request.app.state.settings.VERIFY_TOKEN:
        logger.info("Webhook subscription verified")
        return PlainTextResponse(challenge or "")
    logger.warning(f"Webhook verification rejected: mode={mode}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={401: {"description": "Invalid signature"}},
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
) -> WebhookResponse:
    """
    Apply a webhook delivery to the inbox.

    Every delivery with a valid signature is acknowledged with 200, including
    unrecognized payloads and deliveries where some items were skipped, so
    the provider never redelivers.
    """
    raw_body = await request.body()

    app_secret = request.app.state.settings.WA_APP_SECRET
    if app_secret and not (
        x_hub_signature_256 and verify_hmac_signature(raw_body, x_hub_signature_256, app_secret)
    ):
        logger.error("Invalid or missing X-Hub-Signature-256")
        record_webhook_event("delivery", "invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"Webhook body is not JSON, acknowledging: {e}")
        record_webhook_event("delivery", "ignored")
        log_webhook_data(request, result="ignored")
        return WebhookResponse(status="ignored")

    reconciler: WebhookReconciler = request.app.state.reconciler
    try:
        report = await run_in_threadpool(reconciler.process, payload)
    except MalformedEvent as e:
        logger.warning(f"Unrecognized webhook payload, acknowledging: {e}")
        record_webhook_event("delivery", "ignored")
        log_webhook_data(request, result="ignored")
        return WebhookResponse(status="ignored")

    log_webhook_data(request, result="ok", report=report)
    return WebhookResponse(status="ok")


# =============================================================================
# Management Routes
# =============================================================================

@router.get("/api/messages", response_model=list[ConversationResponse])
async def list_messages(
    request: Request,
    phone: Annotated[Optional[str], Query(description="Only this contact")] = None,
) -> list[ConversationResponse]:
    """
    All conversations with their messages, most recently active first.
    With ?phone= the list holds that one conversation, or nothing.
    """
    store: ConversationStore = request.app.state.store
    if phone:
        conv = store.get_conversation(phone)
        conversations = [conv] if conv is not None else []
    else:
        conversations = store.list_conversations()

    logger.info(f"GET /api/messages: returned {len(conversations)} conversations")
    return [ConversationResponse.model_validate(c) for c in conversations]


@router.get(
    "/api/status/{phone}",
    response_model=StatusResponse,
    response_model_exclude_none=True,
)
async def last_status(phone: str, request: Request) -> StatusResponse:
    """Status and timestamp of the newest message for a contact, in any direction."""
    latest = request.app.state.store.latest_message(phone)
    if latest is None:
        return StatusResponse(status="unknown")
    return StatusResponse(status=latest.status, last_update=latest.ts)


@router.post(
    "/api/send",
    response_model=SendResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing to or text"},
        502: {"model": ErrorResponse, "description": "Cloud API rejected the message"},
    },
)
def send_message(request: Request, body: Optional[SendRequest] = None) -> SendResponse:
    """Send a text message through the Cloud API and record it as sent."""
    body = body or SendRequest()
    dispatcher: OutboundDispatcher = request.app.state.dispatcher
    result = dispatcher.send(body.to, body.text)
    return SendResponse(ok=True, id=result.provider_message_id)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Error Handlers
# =============================================================================

async def invalid_argument_handler(request: Request, exc: InvalidArgument) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_argument", "detail": str(exc)},
    )


async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "cloud_api_error", "details": exc.payload},
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ConversationStore] = None,
    cloud_client: Optional[CloudApiClient] = None,
) -> FastAPI:
    """
    Build the application. Anything not passed in is built from settings at
    startup and torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or get_settings()
        setup_logging(app_settings.LOG_LEVEL)

        app_store = store or build_store(app_settings)
        app_client = cloud_client or CloudApiClient.from_settings(app_settings)

        app.state.settings = app_settings
        app.state.store = app_store
        app.state.reconciler = WebhookReconciler(app_store)
        app.state.dispatcher = OutboundDispatcher(app_store, app_client)
        logger.info("Inbox relay started")
        yield
        # Only close what we built
        if cloud_client is None:
            app_client.close()
        if store is None:
            app_store.close()

    app = FastAPI(
        title="Inbox Relay",
        description="WhatsApp Cloud API webhook relay and conversation inbox",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(InvalidArgument, invalid_argument_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    app.include_router(router)
    return app


app = create_app()
