"""Location store: persistence of samples, advisories, route summaries and shipment status."""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select, update

from shared.events import as_utc, utcnow

from .domain import (
    Advisory,
    AdvisoryDraft,
    Confidence,
    Coordinate,
    LocationSample,
    RouteSummary,
    RouteSummaryData,
    ShipmentStatus,
    ShipmentView,
    TrackingStats,
    ValidatedSample,
)
from .models import AdvisoryRecord, LocationSampleRecord, RouteSummaryRecord, Shipment

logger = logging.getLogger(__name__)


class LocationStore(ABC):
    """Persistence operations the tracking pipeline relies on."""

    @abstractmethod
    async def get_shipment(self, shipment_id: UUID) -> Optional[ShipmentView]:
        ...

    @abstractmethod
    async def append_sample(self, shipment_id: UUID, sample: ValidatedSample) -> LocationSample:
        ...

    @abstractmethod
    async def transition_status(
        self,
        shipment_id: UUID,
        from_status: ShipmentStatus,
        to_status: ShipmentStatus,
        **fields,
    ) -> bool:
        """Atomically move from_status -> to_status. True only for the caller that won."""

    @abstractmethod
    async def get_history(
        self,
        shipment_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[LocationSample]:
        """Samples ordered by recorded time, oldest first. `limit` keeps the most recent."""

    @abstractmethod
    async def get_latest_sample(self, shipment_id: UUID) -> Optional[LocationSample]:
        ...

    @abstractmethod
    async def tracking_stats(self, shipment_id: UUID) -> TrackingStats:
        ...

    @abstractmethod
    async def update_tracking_fields(
        self,
        shipment_id: UUID,
        predicted_eta: datetime,
        eta_confidence: Confidence,
        risk_score: int,
    ) -> None:
        ...

    @abstractmethod
    async def save_advisories(
        self, shipment_id: UUID, drafts: Sequence[AdvisoryDraft]
    ) -> List[Advisory]:
        ...

    @abstractmethod
    async def get_active_advisories(self, shipment_id: UUID, limit: int = 10) -> List[Advisory]:
        ...

    @abstractmethod
    async def get_advisory(self, advisory_id: UUID) -> Optional[Advisory]:
        ...

    @abstractmethod
    async def acknowledge_advisory(self, advisory_id: UUID) -> Optional[Advisory]:
        ...

    @abstractmethod
    async def save_route_summary(
        self, summary: RouteSummaryData, destination_address: Optional[str]
    ) -> RouteSummary:
        """Insert an immutable summary and copy its efficiency onto the shipment."""

    @abstractmethod
    async def get_route_summary(self, shipment_id: UUID) -> Optional[RouteSummary]:
        ...

    @abstractmethod
    async def list_route_summaries(self, limit: int = 20) -> List[RouteSummary]:
        ...

    @abstractmethod
    async def historical_average_speed(
        self, destination_address: Optional[str], limit: int = 10
    ) -> Optional[float]:
        """Mean average_speed of the latest summaries for a destination, or None."""


def shipment_to_view(row: Shipment) -> ShipmentView:
    origin = None
    if row.origin_latitude is not None and row.origin_longitude is not None:
        origin = Coordinate(latitude=row.origin_latitude, longitude=row.origin_longitude)
    return ShipmentView(
        id=row.id,
        tracking_number=row.tracking_number,
        status=ShipmentStatus(row.status),
        origin=origin,
        destination=Coordinate(
            latitude=row.destination_latitude,
            longitude=row.destination_longitude,
        ),
        origin_address=row.origin_address,
        destination_address=row.destination_address,
        courier_id=row.courier_id,
        organization_id=row.organization_id,
        planned_delivery_time=as_utc(row.planned_delivery_time),
        predicted_eta=as_utc(row.predicted_eta),
        eta_confidence=Confidence(row.eta_confidence) if row.eta_confidence else None,
        risk_score=row.risk_score or 0,
        route_efficiency=row.route_efficiency,
        delivered_at=as_utc(row.delivered_at),
    )


def sample_to_domain(row: LocationSampleRecord) -> LocationSample:
    return LocationSample(
        id=row.id,
        shipment_id=row.shipment_id,
        latitude=row.latitude,
        longitude=row.longitude,
        accuracy=row.accuracy,
        speed=row.speed,
        heading=row.heading,
        recorded_at=as_utc(row.recorded_at),
    )


def advisory_to_domain(row: AdvisoryRecord) -> Advisory:
    return Advisory(
        id=row.id,
        shipment_id=row.shipment_id,
        type=row.advisory_type,
        message=row.message,
        severity=row.severity,
        data=row.data or {},
        acknowledged=row.acknowledged,
        acknowledged_at=as_utc(row.acknowledged_at),
        created_at=as_utc(row.created_at),
    )


def summary_to_domain(row: RouteSummaryRecord) -> RouteSummary:
    return RouteSummary(
        id=row.id,
        shipment_id=row.shipment_id,
        destination_address=row.destination_address,
        total_distance=row.total_distance,
        total_time=row.total_time,
        average_speed=row.average_speed,
        max_speed=row.max_speed,
        idle_time=row.idle_time,
        route_efficiency=row.route_efficiency,
        performance_grade=row.performance_grade,
        anomalies=row.anomalies or [],
        recommendations=row.recommendations or [],
        created_at=as_utc(row.created_at),
    )


class SqlLocationStore(LocationStore):
    """SQLAlchemy implementation; every call runs in its own short transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_shipment(self, shipment_id: UUID) -> Optional[ShipmentView]:
        async with self.session_factory() as session:
            row = await session.get(Shipment, shipment_id)
            return shipment_to_view(row) if row else None

    async def append_sample(self, shipment_id: UUID, sample: ValidatedSample) -> LocationSample:
        async with self.session_factory() as session:
            record = LocationSampleRecord(
                id=uuid4(),
                shipment_id=shipment_id,
                latitude=sample.latitude,
                longitude=sample.longitude,
                accuracy=sample.accuracy,
                speed=sample.speed,
                heading=sample.heading,
                recorded_at=sample.recorded_at,
                received_at=utcnow(),
            )
            session.add(record)
            await session.commit()
            return sample_to_domain(record)

    async def transition_status(
        self,
        shipment_id: UUID,
        from_status: ShipmentStatus,
        to_status: ShipmentStatus,
        **fields,
    ) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Shipment)
                .where(Shipment.id == shipment_id, Shipment.status == from_status.value)
                .values(status=to_status.value, updated_at=utcnow(), **fields)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            changed = result.rowcount == 1

        if changed:
            logger.info(
                f"Shipment {shipment_id} status {from_status.value} -> {to_status.value}"
            )
        return changed

    async def get_history(
        self,
        shipment_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[LocationSample]:
        query = select(LocationSampleRecord).where(LocationSampleRecord.shipment_id == shipment_id)
        if start is not None:
            query = query.where(LocationSampleRecord.recorded_at >= start)
        if end is not None:
            query = query.where(LocationSampleRecord.recorded_at <= end)

        async with self.session_factory() as session:
            if limit is not None:
                query = query.order_by(
                    LocationSampleRecord.recorded_at.desc(),
                    LocationSampleRecord.received_at.desc(),
                ).limit(limit)
                result = await session.execute(query)
                rows = list(reversed(result.scalars().all()))
            else:
                query = query.order_by(
                    LocationSampleRecord.recorded_at,
                    LocationSampleRecord.received_at,
                )
                result = await session.execute(query)
                rows = result.scalars().all()

        return [sample_to_domain(row) for row in rows]

    async def get_latest_sample(self, shipment_id: UUID) -> Optional[LocationSample]:
        history = await self.get_history(shipment_id, limit=1)
        return history[0] if history else None

    async def tracking_stats(self, shipment_id: UUID) -> TrackingStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.count(LocationSampleRecord.id),
                    func.min(LocationSampleRecord.recorded_at),
                    func.max(LocationSampleRecord.recorded_at),
                ).where(LocationSampleRecord.shipment_id == shipment_id)
            )
            total, first, last = result.one()
        return TrackingStats(
            total_updates=total, first_update=as_utc(first), last_update=as_utc(last)
        )

    async def update_tracking_fields(
        self,
        shipment_id: UUID,
        predicted_eta: datetime,
        eta_confidence: Confidence,
        risk_score: int,
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Shipment)
                .where(Shipment.id == shipment_id)
                .values(
                    predicted_eta=predicted_eta,
                    eta_confidence=eta_confidence.value,
                    risk_score=risk_score,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def save_advisories(
        self, shipment_id: UUID, drafts: Sequence[AdvisoryDraft]
    ) -> List[Advisory]:
        if not drafts:
            return []

        async with self.session_factory() as session:
            now = utcnow()
            records = [
                AdvisoryRecord(
                    id=uuid4(),
                    shipment_id=shipment_id,
                    advisory_type=draft.type.value,
                    message=draft.message,
                    severity=draft.severity.value,
                    data=draft.model_dump(mode="json")["data"],
                    acknowledged=False,
                    created_at=now,
                )
                for draft in drafts
            ]
            session.add_all(records)
            await session.commit()
            return [advisory_to_domain(record) for record in records]

    async def get_active_advisories(self, shipment_id: UUID, limit: int = 10) -> List[Advisory]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AdvisoryRecord)
                .where(
                    AdvisoryRecord.shipment_id == shipment_id,
                    AdvisoryRecord.acknowledged.is_(False),
                )
                .order_by(AdvisoryRecord.created_at.desc())
                .limit(limit)
            )
            return [advisory_to_domain(row) for row in result.scalars().all()]

    async def get_advisory(self, advisory_id: UUID) -> Optional[Advisory]:
        async with self.session_factory() as session:
            row = await session.get(AdvisoryRecord, advisory_id)
            return advisory_to_domain(row) if row else None

    async def acknowledge_advisory(self, advisory_id: UUID) -> Optional[Advisory]:
        async with self.session_factory() as session:
            row = await session.get(AdvisoryRecord, advisory_id)
            if not row:
                return None
            if not row.acknowledged:
                row.acknowledged = True
                row.acknowledged_at = utcnow()
                await session.commit()
            return advisory_to_domain(row)

    async def save_route_summary(
        self, summary: RouteSummaryData, destination_address: Optional[str]
    ) -> RouteSummary:
        data = summary.model_dump(mode="json")
        async with self.session_factory() as session:
            record = RouteSummaryRecord(
                id=uuid4(),
                shipment_id=summary.shipment_id,
                destination_address=destination_address,
                total_distance=summary.total_distance,
                total_time=summary.total_time,
                average_speed=summary.average_speed,
                max_speed=summary.max_speed,
                idle_time=summary.idle_time,
                route_efficiency=summary.route_efficiency,
                performance_grade=summary.performance_grade.value,
                anomalies=data["anomalies"],
                recommendations=data["recommendations"],
                created_at=utcnow(),
            )
            session.add(record)
            await session.execute(
                update(Shipment)
                .where(Shipment.id == summary.shipment_id)
                .values(route_efficiency=summary.route_efficiency, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return summary_to_domain(record)

    async def get_route_summary(self, shipment_id: UUID) -> Optional[RouteSummary]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RouteSummaryRecord)
                .where(RouteSummaryRecord.shipment_id == shipment_id)
                .order_by(RouteSummaryRecord.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return summary_to_domain(row) if row else None

    async def list_route_summaries(self, limit: int = 20) -> List[RouteSummary]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RouteSummaryRecord)
                .order_by(RouteSummaryRecord.created_at.desc())
                .limit(limit)
            )
            return [summary_to_domain(row) for row in result.scalars().all()]

    async def historical_average_speed(
        self, destination_address: Optional[str], limit: int = 10
    ) -> Optional[float]:
        if not destination_address:
            return None

        latest = (
            select(RouteSummaryRecord.average_speed)
            .where(
                RouteSummaryRecord.destination_address == destination_address,
                RouteSummaryRecord.total_time > 0,
            )
            .order_by(RouteSummaryRecord.created_at.desc())
            .limit(limit)
            .subquery()
        )
        async with self.session_factory() as session:
            result = await session.execute(select(func.avg(latest.c.average_speed)))
            value = result.scalar()
        return float(value) if value is not None else None
