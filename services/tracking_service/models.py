"""Database models for Tracking Service."""
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid

from shared.database import Base
from shared.events import utcnow

from .domain import ShipmentStatus


class Shipment(Base):
    """Shipment as owned by dispatch; tracking mutates status and derived fields only."""

    __tablename__ = "shipments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tracking_number = Column(String(100), nullable=True, unique=True)
    status = Column(String(20), default=ShipmentStatus.PENDING.value, nullable=False, index=True)

    origin_address = Column(Text, nullable=True)
    origin_latitude = Column(Float, nullable=True)
    origin_longitude = Column(Float, nullable=True)
    destination_address = Column(Text, nullable=True)
    destination_latitude = Column(Float, nullable=False)
    destination_longitude = Column(Float, nullable=False)

    courier_id = Column(Uuid, nullable=True, index=True)
    organization_id = Column(Uuid, nullable=True, index=True)
    planned_delivery_time = Column(DateTime(timezone=True), nullable=True)

    # Derived tracking fields
    predicted_eta = Column(DateTime(timezone=True), nullable=True)
    eta_confidence = Column(String(10), nullable=True)
    risk_score = Column(Integer, default=0, nullable=False)
    route_efficiency = Column(Float, nullable=True)

    delivered_at = Column(DateTime(timezone=True), nullable=True)
    delivery_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class LocationSampleRecord(Base):
    """Append-only position samples."""

    __tablename__ = "location_samples"

    id = Column(Uuid, primary_key=True, default=uuid4)
    shipment_id = Column(Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_location_samples_shipment_recorded", "shipment_id", "recorded_at"),
    )


class AdvisoryRecord(Base):
    """Advisories generated by the recommendation engine."""

    __tablename__ = "advisories"

    id = Column(Uuid, primary_key=True, default=uuid4)
    shipment_id = Column(Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    advisory_type = Column(String(30), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(10), nullable=False, index=True)
    data = Column(JSON, nullable=True)
    acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_advisories_shipment_ack_created", "shipment_id", "acknowledged", "created_at"),
    )


class RouteSummaryRecord(Base):
    """One row per route-analysis run; never updated."""

    __tablename__ = "route_summaries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    shipment_id = Column(Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    destination_address = Column(Text, nullable=True, index=True)

    total_distance = Column(Float, nullable=False)
    total_time = Column(Float, nullable=False)
    average_speed = Column(Float, nullable=False)
    max_speed = Column(Float, nullable=False)
    idle_time = Column(Float, nullable=False)
    route_efficiency = Column(Float, nullable=False)
    performance_grade = Column(String(20), nullable=False)
    anomalies = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_route_summaries_shipment_created", "shipment_id", "created_at"),
    )
