"""Location ingestion gateway and trip completion."""
import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from shared.config import Settings
from shared.errors import AuthorizationError, InsufficientDataError, InvalidStateError, ValidationError
from shared.events import EventType, as_utc, utcnow
from shared.geo import is_valid_latitude, is_valid_longitude

from .access import load_authorized_shipment
from .broadcast import BroadcastHub
from .domain import (
    Advisory,
    CallerIdentity,
    DeliveryResult,
    EtaPrediction,
    IngestionResult,
    LocationSample,
    RecommendationReport,
    Role,
    SampleInput,
    ShipmentStatus,
    ShipmentView,
    ValidatedSample,
)
from .eta import EtaPredictor
from .recommendations import RecommendationEngine
from .route_analysis import RouteAnalysisService
from .store import LocationStore

logger = logging.getLogger(__name__)


def validate_sample(sample: SampleInput, settings: Settings, now: datetime) -> ValidatedSample:
    """
    Check ranges and normalize a raw sample.

    Accuracy above the configured maximum is clamped rather than rejected.
    """
    if not is_valid_latitude(sample.latitude):
        raise ValidationError("Latitude must be between -90 and 90", code="INVALID_COORDINATES")
    if not is_valid_longitude(sample.longitude):
        raise ValidationError("Longitude must be between -180 and 180", code="INVALID_COORDINATES")

    speed = sample.speed
    if speed is not None:
        if not math.isfinite(speed) or speed < 0:
            raise ValidationError("Speed must be a non-negative number", code="INVALID_SPEED")
        if speed > settings.max_speed:
            raise ValidationError(
                f"Speed must not exceed {settings.max_speed} m/s", code="INVALID_SPEED"
            )

    heading = sample.heading
    if heading is not None and not (math.isfinite(heading) and 0 <= heading <= 360):
        raise ValidationError("Heading must be between 0 and 360 degrees", code="INVALID_HEADING")

    accuracy = sample.accuracy
    if accuracy is not None:
        if not math.isfinite(accuracy) or accuracy < 0:
            raise ValidationError("Accuracy must be a positive number", code="INVALID_ACCURACY")
        accuracy = min(accuracy, settings.max_accuracy)

    recorded_at = as_utc(sample.timestamp) or now
    if recorded_at > now + timedelta(seconds=settings.max_clock_skew_seconds):
        raise ValidationError("Timestamp is in the future", code="INVALID_TIMESTAMP")

    return ValidatedSample(
        latitude=sample.latitude,
        longitude=sample.longitude,
        accuracy=accuracy,
        speed=speed,
        heading=heading,
        recorded_at=recorded_at,
    )


class IngestionGateway:
    """
    Orchestrates validation, persistence, status transition, analytics and broadcast.

    The stored sample is the durable fact. Analytics run inside a time budget
    and fall back to default values; they never undo the write.
    """

    def __init__(
        self,
        store: LocationStore,
        hub: BroadcastHub,
        settings: Settings,
        eta_predictor: Optional[EtaPredictor] = None,
        recommendation_engine: Optional[RecommendationEngine] = None,
        route_analysis: Optional[RouteAnalysisService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hub = hub
        self.settings = settings
        self.eta_predictor = eta_predictor or EtaPredictor(settings)
        self.recommendation_engine = recommendation_engine or RecommendationEngine(
            settings, self.eta_predictor
        )
        self.route_analysis = route_analysis
        self.clock = clock

    async def ingest(
        self, shipment_id: UUID, sample: SampleInput, caller: CallerIdentity
    ) -> IngestionResult:
        now = self.clock()
        validated = validate_sample(sample, self.settings, now)

        shipment = await load_authorized_shipment(self.store, shipment_id, caller)
        if shipment.status.is_terminal:
            raise InvalidStateError(
                f"Shipment is {shipment.status.value}; no further tracking accepted"
            )

        stored = await self.store.append_sample(shipment_id, validated)

        status = shipment.status
        status_changed = False
        if shipment.status == ShipmentStatus.PENDING:
            status_changed = await self.store.transition_status(
                shipment_id, ShipmentStatus.PENDING, ShipmentStatus.IN_TRANSIT
            )
            if status_changed:
                status = ShipmentStatus.IN_TRANSIT
            else:
                refreshed = await self.store.get_shipment(shipment_id)
                status = refreshed.status if refreshed else status

        # A late sample never stands in for the current position
        current = await self._latest_sample(shipment_id, stored)
        backfill = current.id != stored.id

        eta, report = await self._run_analytics(shipment, current)
        advisories: List[Advisory] = []
        if not backfill:
            advisories = await self._record_analytics(shipment_id, eta, report)

        await self._broadcast(
            shipment_id, stored, eta, report, advisories, status_changed, backfill
        )

        logger.info(
            f"Ingested sample {stored.id} for shipment {shipment_id} "
            f"(risk={report.risk_score}, advisories={len(advisories)}, "
            f"status_changed={status_changed}, backfill={backfill})"
        )

        return IngestionResult(
            sample=stored,
            eta=eta.eta,
            confidence=eta.confidence,
            risk_score=report.risk_score,
            advisories=advisories,
            status=status,
            status_changed=status_changed,
            backfill=backfill,
        )

    async def complete_delivery(
        self, shipment_id: UUID, caller: CallerIdentity, notes: Optional[str] = None
    ) -> DeliveryResult:
        """Confirm delivery, broadcast it and compute the trip's route summary."""
        shipment = await load_authorized_shipment(self.store, shipment_id, caller)
        if caller.role != Role.COURIER:
            raise AuthorizationError(
                "You can only confirm delivery for your assigned shipments",
                code="SHIPMENT_ACCESS_DENIED",
            )
        if shipment.status == ShipmentStatus.DELIVERED:
            raise InvalidStateError("Shipment already delivered", code="ALREADY_DELIVERED")
        if shipment.status != ShipmentStatus.IN_TRANSIT:
            raise InvalidStateError("Shipment must be in transit before confirming delivery")

        delivered_at = self.clock()
        changed = await self.store.transition_status(
            shipment_id,
            ShipmentStatus.IN_TRANSIT,
            ShipmentStatus.DELIVERED,
            delivered_at=delivered_at,
            delivery_notes=notes,
        )
        if not changed:
            raise InvalidStateError("Shipment status changed concurrently")

        await self.hub.publish(
            shipment_id,
            EventType.DELIVERED,
            {"delivered_at": delivered_at.isoformat(), "delivery_notes": notes},
        )
        await self.hub.publish(
            shipment_id,
            EventType.STATUS_UPDATE,
            {"status": ShipmentStatus.DELIVERED.value, "updated_at": delivered_at.isoformat()},
        )

        summary = None
        if self.route_analysis:
            try:
                summary = await self.route_analysis.run(shipment_id)
            except InsufficientDataError as e:
                logger.info(f"No route summary for shipment {shipment_id}: {e.message}")
            except Exception as e:
                logger.error(
                    f"Route analysis failed for shipment {shipment_id}: {str(e)}", exc_info=True
                )

        logger.info(f"Shipment {shipment_id} delivered")
        return DeliveryResult(
            shipment_id=shipment_id,
            status=ShipmentStatus.DELIVERED,
            delivered_at=delivered_at,
            route_summary=summary,
        )

    async def _latest_sample(self, shipment_id: UUID, stored: LocationSample) -> LocationSample:
        try:
            latest = await self.store.get_latest_sample(shipment_id)
        except Exception as e:
            logger.error(
                f"Latest sample lookup failed for shipment {shipment_id}: {str(e)}", exc_info=True
            )
            return stored
        if latest is None or latest.recorded_at <= stored.recorded_at:
            return stored
        return latest

    async def _run_analytics(
        self, shipment: ShipmentView, current: LocationSample
    ) -> Tuple[EtaPrediction, RecommendationReport]:
        try:
            return await asyncio.wait_for(
                self._analyze(shipment, current),
                timeout=self.settings.analytics_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Analytics for shipment {shipment.id} exceeded "
                f"{self.settings.analytics_timeout_seconds}s, using fallback values"
            )
        except Exception as e:
            logger.error(
                f"Analytics failed for shipment {shipment.id}: {str(e)}", exc_info=True
            )
        return self.eta_predictor.fallback(self.clock()), RecommendationReport()

    async def _analyze(
        self, shipment: ShipmentView, current: LocationSample
    ) -> Tuple[EtaPrediction, RecommendationReport]:
        history = await self.store.get_history(shipment.id)
        if not any(s.id == current.id for s in history):
            history.append(current)
        historical_speed = await self.store.historical_average_speed(
            shipment.destination_address, self.settings.historical_route_limit
        )
        now = self.clock()

        def compute() -> Tuple[EtaPrediction, RecommendationReport]:
            eta = self.eta_predictor.predict(
                shipment, current.coordinate, history, historical_speed, now=now
            )
            report = self.recommendation_engine.analyze(
                shipment, current, history, eta=eta, now=now
            )
            return eta, report

        return await asyncio.to_thread(compute)

    async def _record_analytics(
        self, shipment_id: UUID, eta: EtaPrediction, report: RecommendationReport
    ) -> List[Advisory]:
        advisories: List[Advisory] = []
        try:
            advisories = await self.store.save_advisories(shipment_id, report.advisories)
            await self.store.update_tracking_fields(
                shipment_id, eta.eta, eta.confidence, report.risk_score
            )
        except Exception as e:
            logger.error(
                f"Failed to record analytics for shipment {shipment_id}: {str(e)}", exc_info=True
            )
        return advisories

    async def _broadcast(
        self,
        shipment_id: UUID,
        sample: LocationSample,
        eta: EtaPrediction,
        report: RecommendationReport,
        advisories: List[Advisory],
        status_changed: bool,
        backfill: bool = False,
    ):
        location_payload = sample.model_dump(mode="json")
        location_payload["backfill"] = backfill
        if not backfill:
            location_payload.update({
                "eta": eta.eta.isoformat(),
                "confidence": eta.confidence.value,
                "risk_score": report.risk_score,
            })
        await self.hub.publish(shipment_id, EventType.LOCATION_UPDATE, location_payload)

        if status_changed:
            await self.hub.publish(
                shipment_id,
                EventType.STATUS_UPDATE,
                {"status": ShipmentStatus.IN_TRANSIT.value, "updated_at": self.clock().isoformat()},
            )

        if advisories:
            await self.hub.publish(
                shipment_id,
                EventType.ADVISORY,
                {
                    "advisories": [a.model_dump(mode="json") for a in advisories],
                    "risk_score": report.risk_score,
                },
            )
