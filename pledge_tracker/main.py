import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Path, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from pledge_tracker.aggregation import compute_totals
from pledge_tracker.broadcast import ConnectionManager, broadcast_totals
from pledge_tracker.config import settings
from pledge_tracker.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data, utc_timestamp
from pledge_tracker.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from pledge_tracker.poller import PollerState, TextPledgePoller
from pledge_tracker.storage import StoreError, TextPledgeStore, TierNotFound, TierPledgeStore
from pledge_tracker.utils import (
    cents_to_dollars,
    dollars_to_cents,
    format_currency,
    to_display_time,
    to_utc_iso,
)
from pledge_tracker.schemas import (
    MAX_TIER_CENTS,
    ErrorResponse,
    HealthResponse,
    PaddlePledgeResponse,
    PaddlePledgeUpdateResponse,
    ReadinessResponse,
    ResetResponse,
    TextPledgeResponse,
    TierCountUpdate,
    TotalsResponse,
    WebhookResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

COUNT_ERROR = "Count must be a non-negative number"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open both stores, seed tiers, start the text pledge poller
    - Shutdown: stop the poller and close connection pools

    Each store is initialised on its own; if one is down at startup the
    other keeps serving.
    """
    tier_store = TierPledgeStore(settings.primary_database_url(), settings.QUERY_TIMEOUT_SECONDS)
    text_store = TextPledgeStore(settings.SMS_DATABASE_URL, settings.QUERY_TIMEOUT_SECONDS)

    try:
        await tier_store.init_schema(settings.PADDLE_TIERS, create_tables=settings.AUTO_CREATE_SCHEMA)
    except StoreError:
        logger.error("Primary store unavailable at startup")
    try:
        await text_store.init_schema(create_tables=settings.AUTO_CREATE_SCHEMA)
    except StoreError:
        logger.error("SMS store unavailable at startup")

    connections = ConnectionManager(send_timeout=settings.BROADCAST_SEND_TIMEOUT_SECONDS)
    poller_state = PollerState()
    poller = TextPledgePoller(
        text_store=text_store,
        tier_store=tier_store,
        state=poller_state,
        broadcaster=connections,
        interval=settings.POLL_INTERVAL_SECONDS,
        goal_amount=settings.GOAL_AMOUNT_CENTS,
    )

    app.state.tier_store = tier_store
    app.state.text_store = text_store
    app.state.connections = connections
    app.state.broadcaster = connections
    app.state.poller_state = poller_state
    app.state.poller = poller

    poller.start()
    yield
    await poller.stop()
    tier_store.dispose()
    text_store.dispose()


app = FastAPI(
    title="Pledge Tracker API",
    description="Live paddle and text pledge totals for a fundraising event",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Bad input is a 400 across the API."""
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in errors
    ) or "Invalid request"
    logger.warning(f"Validation error on {request.url.path}: {detail}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})


# =============================================================================
# Dependencies
# =============================================================================

def get_tier_store(request: Request) -> TierPledgeStore:
    return request.app.state.tier_store


def get_text_store(request: Request) -> TextPledgeStore:
    return request.app.state.text_store


def get_poller_state(request: Request) -> PollerState:
    return request.app.state.poller_state


async def push_current_totals(request: Request, source: str) -> None:
    """
    Recompute totals and broadcast them. A failure here never fails the
    request that triggered it; the mutation has already been committed.
    """
    try:
        snapshot = await compute_totals(
            request.app.state.tier_store,
            request.app.state.text_store,
            settings.GOAL_AMOUNT_CENTS,
        )
    except StoreError:
        logger.error(f"Skipping {source} broadcast: totals unavailable")
        return
    await broadcast_totals(request.app.state.broadcaster, snapshot, source=source)


def paddle_row(pledge) -> dict:
    return {
        "tier_cents": pledge.tier_cents,
        "count": pledge.count,
        "total_cents": pledge.total_cents,
        "tier_dollars": pledge.tier_cents // 100,
        "tierFormatted": format_currency(pledge.tier_cents),
        "totalFormatted": format_currency(pledge.total_cents),
    }


def text_pledge_row(pledge) -> TextPledgeResponse:
    amount_cents = dollars_to_cents(pledge.pledge_amount)
    return TextPledgeResponse(
        id=pledge.id,
        amount_cents=amount_cents,
        amount_dollars=cents_to_dollars(amount_cents),
        amountFormatted=format_currency(amount_cents),
        phone_number=pledge.phone_number,
        message=pledge.message_text,
        created_at=to_utc_iso(pledge.created_at),
        created_at_local=to_display_time(pledge.created_at, settings.DISPLAY_TIMEZONE),
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe - always returns OK once the app is running."""
    return HealthResponse(status="OK", timestamp=utc_timestamp())


@app.get("/health/ready", response_model=ReadinessResponse)
async def health_ready(
    response: Response,
    tier_store: TierPledgeStore = Depends(get_tier_store),
    text_store: TextPledgeStore = Depends(get_text_store),
) -> ReadinessResponse:
    """
    Readiness probe - 200 only when both stores answer, otherwise 503
    with the per-store result.
    """
    primary_ok = await tier_store.ping()
    sms_ok = await text_store.ping()

    if not (primary_ok and sms_ok):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(status="not_ready", primary=primary_ok, sms=sms_ok)

    return ReadinessResponse(status="ready", primary=True, sms=True)


# =============================================================================
# Totals Route
# =============================================================================

@app.get(
    "/api/totals",
    response_model=TotalsResponse,
    responses={500: {"model": ErrorResponse}},
)
async def get_totals(
    tier_store: TierPledgeStore = Depends(get_tier_store),
    text_store: TextPledgeStore = Depends(get_text_store),
) -> TotalsResponse:
    """
    Current paddle, text and grand totals in cents with display strings
    and goal progress.
    """
    try:
        snapshot = await compute_totals(tier_store, text_store, settings.GOAL_AMOUNT_CENTS)
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch totals"
        )

    return TotalsResponse(**snapshot.to_payload())


# =============================================================================
# Paddle Pledge Routes
# =============================================================================

@app.get(
    "/api/paddle-pledges",
    response_model=list[PaddlePledgeResponse],
    responses={500: {"model": ErrorResponse}},
)
async def list_paddle_pledges(
    tier_store: TierPledgeStore = Depends(get_tier_store),
) -> list[PaddlePledgeResponse]:
    """All paddle tiers, highest tier first."""
    try:
        pledges = await tier_store.fetch_tiers()
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch paddle pledges"
        )

    logger.debug(f"Fetched {len(pledges)} paddle tiers")
    return [PaddlePledgeResponse(**paddle_row(p)) for p in pledges]


@app.put(
    "/api/paddle-pledges/{tier_cents}",
    response_model=PaddlePledgeUpdateResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid count"},
        404: {"model": ErrorResponse, "description": "Unknown tier"},
        500: {"model": ErrorResponse},
    },
)
async def update_paddle_pledge(
    tier_cents: Annotated[int, Path(le=MAX_TIER_CENTS)],
    request: Request,
    tier_store: TierPledgeStore = Depends(get_tier_store),
) -> PaddlePledgeUpdateResponse:
    """
    Set the pledge count for one tier and broadcast the new totals.

    Body:
        - count: integer, 0 to MAX_TIER_COUNT
    """
    try:
        body = await request.json()
        update = TierCountUpdate.model_validate(body)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Rejected count update for tier {tier_cents}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=COUNT_ERROR)

    try:
        pledge = await tier_store.update_tier_count(tier_cents, update.count)
    except TierNotFound:
        logger.warning(f"Paddle tier not found: {tier_cents}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Paddle pledge tier not found"
        )
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update paddle pledge"
        )

    logger.info(f"Paddle tier {tier_cents} set to {pledge.count} (total_cents={pledge.total_cents})")
    await push_current_totals(request, source="paddle_update")

    return PaddlePledgeUpdateResponse(
        id=pledge.id,
        updated_at=pledge.updated_at,
        **paddle_row(pledge),
    )


# =============================================================================
# Text Pledge Routes
# =============================================================================

@app.get(
    "/api/text-pledges",
    response_model=list[TextPledgeResponse],
    responses={500: {"model": ErrorResponse}},
)
async def list_text_pledges(
    text_store: TextPledgeStore = Depends(get_text_store),
) -> list[TextPledgeResponse]:
    """Most recent text pledges, newest first."""
    try:
        pledges = await text_store.fetch_recent(limit=settings.TEXT_PLEDGE_LIMIT)
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch text pledges"
        )

    return [text_pledge_row(p) for p in pledges]


# =============================================================================
# Reset Routes
# =============================================================================

@app.delete(
    "/api/reset",
    response_model=ResetResponse,
    responses={500: {"model": ErrorResponse}},
)
async def reset_all(
    request: Request,
    tier_store: TierPledgeStore = Depends(get_tier_store),
    text_store: TextPledgeStore = Depends(get_text_store),
    poller_state: PollerState = Depends(get_poller_state),
) -> ResetResponse:
    """
    Delete every text pledge, zero every paddle tier, reset the poller
    baseline and broadcast the zeroed totals.
    """
    logger.info("Resetting all pledge data")
    try:
        deleted = await text_store.delete_all()
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reset pledge data"
        )
    poller_state.reset()

    try:
        await tier_store.reset_counts()
    except StoreError:
        # delete_all has already committed, so publish the partial reset
        await push_current_totals(request, source="reset")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reset pledge data"
        )

    await push_current_totals(request, source="reset")
    return ResetResponse(message="All pledge data has been reset", deleted=deleted)


@app.delete(
    "/api/reset-sms",
    response_model=ResetResponse,
    responses={500: {"model": ErrorResponse}},
)
async def reset_sms(
    request: Request,
    text_store: TextPledgeStore = Depends(get_text_store),
    poller_state: PollerState = Depends(get_poller_state),
) -> ResetResponse:
    """Delete text pledges only; paddle tiers are untouched."""
    logger.info("Resetting SMS pledge data")
    try:
        deleted = await text_store.delete_all()
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reset SMS pledge data"
        )
    poller_state.reset()

    await push_current_totals(request, source="reset_sms")
    return ResetResponse(message="SMS pledge data has been reset", deleted=deleted)


# =============================================================================
# Webhook Route
# =============================================================================

@app.post("/api/webhook/simpletexting", response_model=WebhookResponse)
async def simpletexting_webhook(request: Request) -> WebhookResponse:
    """
    SimpleTexting intake. Acknowledges any payload; nothing is parsed or
    stored yet, text pledges reach the SMS store through the provider.
    """
    raw_body = await request.body()
    logger.info("SimpleTexting webhook received", extra={"payload_bytes": len(raw_body)})
    logger.debug(f"Webhook body: {raw_body[:1024]!r}")

    record_webhook_outcome("received")
    log_webhook_data(request=request, payload_bytes=len(raw_body), result="received")

    return WebhookResponse()


# =============================================================================
# Real-time Route
# =============================================================================

@app.websocket("/ws")
async def totals_socket(websocket: WebSocket) -> None:
    """
    Real-time channel. Clients receive {"event": "totals_updated", "data": ...}
    whenever totals change; anything they send is ignored.
    """
    connections: ConnectionManager = websocket.app.state.connections
    await connections.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(websocket)


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
