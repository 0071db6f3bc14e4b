"""Domain types shared by the tracking pipeline."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ShipmentStatus(str, Enum):
    """Shipment lifecycle status."""
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED)


class Role(str, Enum):
    """Caller roles recognised by the access rule."""
    COURIER = "courier"
    ADMIN = "admin"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AdvisoryType(str, Enum):
    ROUTE_DEVIATION = "route_deviation"
    DELAY_ALERT = "delay_alert"
    SPEED_PATTERN = "speed_pattern"
    IDLE_ALERT = "idle_alert"
    GPS_WARNING = "gps_warning"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PerformanceGrade(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    AVERAGE = "AVERAGE"
    POOR = "POOR"


class AnomalyType(str, Enum):
    SPEED_SPIKE = "speed_spike"
    GPS_JUMP = "gps_jump"
    TIME_GAP = "time_gap"


class Coordinate(BaseModel):
    """Canonical latitude/longitude pair."""
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float


class CallerIdentity(BaseModel):
    """Authenticated caller, as asserted by the upstream auth gateway."""
    user_id: UUID
    role: Role
    organization_id: Optional[UUID] = None


class ShipmentView(BaseModel):
    """Read-only view of a shipment with destination normalized to a Coordinate."""
    id: UUID
    tracking_number: Optional[str] = None
    status: ShipmentStatus
    origin: Optional[Coordinate] = None
    destination: Coordinate
    origin_address: Optional[str] = None
    destination_address: Optional[str] = None
    courier_id: Optional[UUID] = None
    organization_id: Optional[UUID] = None
    planned_delivery_time: Optional[datetime] = None
    predicted_eta: Optional[datetime] = None
    eta_confidence: Optional[Confidence] = None
    risk_score: int = 0
    route_efficiency: Optional[float] = None
    delivered_at: Optional[datetime] = None


class SampleInput(BaseModel):
    """Raw position sample as submitted by a courier device."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Optional[datetime] = None


class ValidatedSample(BaseModel):
    """Sample that passed validation and is ready to be stored."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    recorded_at: datetime


class LocationSample(BaseModel):
    """Persisted position sample."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    shipment_id: UUID
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    recorded_at: datetime

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)


class TrackingStats(BaseModel):
    """Sample count and time span recorded for a shipment."""
    total_updates: int = 0
    first_update: Optional[datetime] = None
    last_update: Optional[datetime] = None


class AdvisoryDraft(BaseModel):
    """Advisory produced by an analyzer, not yet persisted."""
    type: AdvisoryType
    message: str
    severity: Severity
    data: Dict[str, Any] = Field(default_factory=dict)


class Advisory(AdvisoryDraft):
    """Persisted advisory."""
    id: UUID
    shipment_id: UUID
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    created_at: datetime


class EtaPrediction(BaseModel):
    """Arrival prediction for a shipment."""
    eta: datetime
    confidence: Confidence
    remaining_distance: Optional[float] = None
    estimated_speed: Optional[float] = None
    traffic_factor: float = 1.0
    historical_factor: float = 1.0
    is_fallback: bool = False

    @classmethod
    def fallback(cls, now: datetime, seconds: int) -> "EtaPrediction":
        return cls(
            eta=now + timedelta(seconds=seconds),
            confidence=Confidence.LOW,
            is_fallback=True,
        )


class RecommendationReport(BaseModel):
    """Advisories fired for one ingestion event and the resulting risk score."""
    advisories: List[AdvisoryDraft] = Field(default_factory=list)
    risk_score: int = 0


class Anomaly(BaseModel):
    type: AnomalyType
    index: int
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class RouteRecommendation(BaseModel):
    type: str
    message: str
    priority: str


class RouteSummaryData(BaseModel):
    """Computed metrics for a completed trip."""
    shipment_id: UUID
    total_distance: float
    total_time: float
    average_speed: float
    max_speed: float
    idle_time: float
    route_efficiency: float
    performance_grade: PerformanceGrade
    anomalies: List[Anomaly] = Field(default_factory=list)
    recommendations: List[RouteRecommendation] = Field(default_factory=list)


class RouteSummary(RouteSummaryData):
    """Persisted, immutable route summary."""
    id: UUID
    destination_address: Optional[str] = None
    created_at: datetime


class IngestionResult(BaseModel):
    """Synchronous response of an accepted sample."""
    sample: LocationSample
    eta: datetime
    confidence: Confidence
    risk_score: int
    advisories: List[Advisory] = Field(default_factory=list)
    status: ShipmentStatus
    status_changed: bool = False
    backfill: bool = False


class DeliveryResult(BaseModel):
    shipment_id: UUID
    status: ShipmentStatus
    delivered_at: datetime
    route_summary: Optional[RouteSummary] = None


class SubscriptionAck(BaseModel):
    shipment_id: UUID
    accepted: bool
    reason: Optional[str] = None
