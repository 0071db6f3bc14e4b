"""Tracking Service FastAPI application."""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.config import Settings
from shared.database import Database
from shared.errors import NotFoundError, TrackingError
from shared.message_broker import MessageBroker

from .access import load_authorized_shipment
from .broadcast import BroadcastHub
from .domain import (
    Advisory,
    CallerIdentity,
    LocationSample,
    Role,
    RouteSummary,
    SampleInput,
    TrackingStats,
)
from .eta import EtaPredictor
from .ingestion import IngestionGateway
from .recommendations import RecommendationEngine
from .route_analysis import RouteAnalysisEngine, RouteAnalysisService
from .store import SqlLocationStore

# Settings
settings = Settings(
    service_name="tracking-service",
    service_port=8007,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database, store and live-event plumbing
database = Database(settings.database_url)
store = SqlLocationStore(database.session_factory)
message_broker: Optional[MessageBroker] = (
    MessageBroker(settings.rabbitmq_url, settings.node_id)
    if settings.broadcast_relay_enabled else None
)
hub = BroadcastHub(
    authorizer=partial(load_authorized_shipment, store),
    send_timeout=settings.broadcast_send_timeout_seconds,
    message_broker=message_broker,
)

eta_predictor = EtaPredictor(settings)
route_analysis = RouteAnalysisService(store, RouteAnalysisEngine(settings))
gateway = IngestionGateway(
    store=store,
    hub=hub,
    settings=settings,
    eta_predictor=eta_predictor,
    recommendation_engine=RecommendationEngine(settings, eta_predictor),
    route_analysis=route_analysis,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    # Startup
    logger.info("Starting Tracking Service...")

    await database.create_tables()
    if message_broker:
        await message_broker.connect()
    await hub.start()

    logger.info("Tracking Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Tracking Service...")
    await hub.close()
    if message_broker:
        await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Tracking Service", lifespan=lifespan)


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError):
    """Translate domain errors into the uniform error body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


def parse_caller(
    user_id: Optional[str], role: Optional[str], organization_id: Optional[str]
) -> CallerIdentity:
    """Build the caller identity asserted by the upstream auth gateway."""
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return CallerIdentity(
            user_id=UUID(user_id),
            role=Role(role),
            organization_id=UUID(organization_id) if organization_id else None,
        )
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid caller identity")


async def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_organization_id: Optional[str] = Header(default=None),
) -> CallerIdentity:
    """Caller identity dependency."""
    return parse_caller(x_user_id, x_user_role, x_organization_id)


# Request/Response models
class LocationUpdateRequest(BaseModel):
    """Position sample submitted by a courier."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Optional[datetime] = None


class LocationUpdateResponse(BaseModel):
    """Accepted sample with live analytics."""
    sample_id: UUID
    eta: datetime
    confidence: str
    risk_score: int
    advisories: List[Advisory]
    status: str
    backfill: bool = False


class LatestLocationResponse(BaseModel):
    shipment_id: UUID
    status: str
    latest_location: Optional[LocationSample] = None
    tracking_stats: TrackingStats


class LocationHistoryResponse(BaseModel):
    shipment_id: UUID
    locations: List[LocationSample]
    total: int


class RouteSummaryResponse(RouteSummary):
    """Route summary with the comparison against recent trips, when there are any."""
    comparison: Optional[Dict[str, Any]] = None


class DeliveryRequest(BaseModel):
    notes: Optional[str] = None


class DeliveryResponse(BaseModel):
    shipment_id: UUID
    status: str
    delivered_at: datetime
    route_summary: Optional[RouteSummary] = None


# API Endpoints
@app.post(
    "/shipments/{shipment_id}/locations",
    response_model=LocationUpdateResponse,
    status_code=201,
)
async def update_location(
    shipment_id: UUID,
    request: LocationUpdateRequest,
    caller: CallerIdentity = Depends(get_caller),
):
    """
    Ingest a position sample.

    The sample is stored first; ETA and advisories are computed afterwards
    and fall back to defaults if analytics fail or run out of time.
    """
    result = await gateway.ingest(
        shipment_id, SampleInput(**request.model_dump()), caller
    )
    return LocationUpdateResponse(
        sample_id=result.sample.id,
        eta=result.eta,
        confidence=result.confidence.value,
        risk_score=result.risk_score,
        advisories=result.advisories,
        status=result.status.value,
        backfill=result.backfill,
    )


@app.get("/shipments/{shipment_id}/locations/latest", response_model=LatestLocationResponse)
async def get_latest_location(
    shipment_id: UUID, caller: CallerIdentity = Depends(get_caller)
):
    """Get the most recent sample of a shipment with its tracking stats."""
    shipment = await load_authorized_shipment(store, shipment_id, caller)
    return LatestLocationResponse(
        shipment_id=shipment_id,
        status=shipment.status.value,
        latest_location=await store.get_latest_sample(shipment_id),
        tracking_stats=await store.tracking_stats(shipment_id),
    )


@app.get("/shipments/{shipment_id}/locations", response_model=LocationHistoryResponse)
async def get_location_history(
    shipment_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
    caller: CallerIdentity = Depends(get_caller),
):
    """Get time-bounded location history, oldest first."""
    await load_authorized_shipment(store, shipment_id, caller)
    history = await store.get_history(shipment_id, start=start, end=end, limit=limit)
    return LocationHistoryResponse(shipment_id=shipment_id, locations=history, total=len(history))


@app.get("/shipments/{shipment_id}/advisories", response_model=List[Advisory])
async def get_active_advisories(
    shipment_id: UUID,
    limit: int = Query(default=10, ge=1, le=50),
    caller: CallerIdentity = Depends(get_caller),
):
    """Get unacknowledged advisories, newest first."""
    await load_authorized_shipment(store, shipment_id, caller)
    return await store.get_active_advisories(shipment_id, limit)


@app.post("/advisories/{advisory_id}/acknowledge", response_model=Advisory)
async def acknowledge_advisory(
    advisory_id: UUID, caller: CallerIdentity = Depends(get_caller)
):
    """Mark an advisory as acknowledged."""
    advisory = await store.get_advisory(advisory_id)
    if not advisory:
        raise NotFoundError("Advisory not found", code="ADVISORY_NOT_FOUND")
    await load_authorized_shipment(store, advisory.shipment_id, caller)
    return await store.acknowledge_advisory(advisory_id)


@app.post("/shipments/{shipment_id}/delivery", response_model=DeliveryResponse)
async def confirm_delivery(
    shipment_id: UUID,
    request: DeliveryRequest,
    caller: CallerIdentity = Depends(get_caller),
):
    """Confirm delivery and compute the route summary."""
    result = await gateway.complete_delivery(shipment_id, caller, request.notes)
    return DeliveryResponse(
        shipment_id=result.shipment_id,
        status=result.status.value,
        delivered_at=result.delivered_at,
        route_summary=result.route_summary,
    )


@app.post(
    "/shipments/{shipment_id}/route-summary", response_model=RouteSummaryResponse, status_code=201
)
async def trigger_route_summary(
    shipment_id: UUID, caller: CallerIdentity = Depends(get_caller)
):
    """Run route analysis on demand; each run appends a new summary."""
    await load_authorized_shipment(store, shipment_id, caller)
    summary = await route_analysis.run(shipment_id)
    return RouteSummaryResponse(
        **summary.model_dump(), comparison=await route_analysis.compare(summary)
    )


@app.get("/shipments/{shipment_id}/route-summary", response_model=RouteSummaryResponse)
async def get_route_summary(
    shipment_id: UUID, caller: CallerIdentity = Depends(get_caller)
):
    """Get the latest route summary."""
    await load_authorized_shipment(store, shipment_id, caller)
    summary = await store.get_route_summary(shipment_id)
    if not summary:
        raise NotFoundError("Route summary not found", code="ROUTE_SUMMARY_NOT_FOUND")
    return RouteSummaryResponse(
        **summary.model_dump(), comparison=await route_analysis.compare(summary)
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    database_up = await database.ping()
    return {
        "status": "healthy" if database_up else "degraded",
        "service": "tracking-service",
        "database": "up" if database_up else "down",
        **hub.stats(),
    }


@app.websocket("/ws")
async def tracking_socket(websocket: WebSocket):
    """
    Live tracking channel.

    Control frames: {"action": "join" | "leave", "shipment_id": "<uuid>"}.
    Pushed frames: {"type", "shipmentId", "payload"}.
    """
    try:
        caller = parse_caller(
            websocket.headers.get("x-user-id"),
            websocket.headers.get("x-user-role"),
            websocket.headers.get("x-organization-id"),
        )
    except HTTPException:
        await websocket.close(code=4401, reason="Authentication required")
        return

    await websocket.accept()
    connection_id = uuid4().hex
    hub.connect(connection_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "payload": {"message": "Invalid JSON"}})
                continue
            await handle_control_frame(websocket, connection_id, caller, message)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)


async def handle_control_frame(
    websocket: WebSocket, connection_id: str, caller: CallerIdentity, message: Any
):
    """Apply one join/leave control frame and reply."""
    if not isinstance(message, dict):
        await websocket.send_json({"type": "error", "payload": {"message": "Invalid frame"}})
        return

    action = message.get("action")
    try:
        shipment_id = UUID(str(message.get("shipment_id")))
    except ValueError:
        await websocket.send_json({"type": "error", "payload": {"message": "Invalid shipment_id"}})
        return

    if action == "join":
        ack = await hub.subscribe(connection_id, shipment_id, caller)
        reply: Dict[str, Any] = {
            "type": "joined" if ack.accepted else "error",
            "shipmentId": str(shipment_id),
            "payload": {"message": "Successfully joined shipment room"}
            if ack.accepted else {"message": ack.reason},
        }
    elif action == "leave":
        await hub.unsubscribe(connection_id, shipment_id)
        reply = {
            "type": "left",
            "shipmentId": str(shipment_id),
            "payload": {"message": "Successfully left shipment room"},
        }
    else:
        reply = {"type": "error", "payload": {"message": f"Unknown action: {action}"}}

    await websocket.send_json(reply)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
