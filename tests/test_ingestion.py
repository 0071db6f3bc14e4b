"""
Ingestion Gateway Tests

Validation, authorization, first-sample status transition, analytics
fallback, broadcast and trip completion against the in-memory store.
"""
import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from shared.errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from services.tracking_service.domain import (
    AdvisoryType,
    Confidence,
    Role,
    SampleInput,
    ShipmentStatus,
)
from services.tracking_service.ingestion import validate_sample

from .fixtures import DELHI, MUMBAI, NOON, admin_of, courier_of, make_sample, make_shipment
from .mocks import RecordingSender


def sample_at(coordinate=DELHI, **kwargs):
    return SampleInput(latitude=coordinate.latitude, longitude=coordinate.longitude, **kwargs)


async def watch(hub, shipment, caller=None):
    observer = RecordingSender()
    connection_id = uuid4().hex
    hub.connect(connection_id, observer)
    ack = await hub.subscribe(connection_id, shipment.id, caller or courier_of(shipment))
    assert ack.accepted
    return observer


class TestValidateSample:

    @pytest.mark.parametrize("latitude,longitude", [(95, 77), (-90.5, 0), (28, 200), (28, -181)])
    def test_out_of_range_coordinates(self, settings, latitude, longitude):
        with pytest.raises(ValidationError) as exc_info:
            validate_sample(SampleInput(latitude=latitude, longitude=longitude), settings, NOON)
        assert exc_info.value.code == "INVALID_COORDINATES"
        assert exc_info.value.status_code == 400

    @pytest.mark.parametrize("speed", [-1, 250, float("nan")])
    def test_bad_speed(self, settings, speed):
        with pytest.raises(ValidationError) as exc_info:
            validate_sample(sample_at(speed=speed), settings, NOON)
        assert exc_info.value.code == "INVALID_SPEED"

    @pytest.mark.parametrize("heading", [-5, 361])
    def test_bad_heading(self, settings, heading):
        with pytest.raises(ValidationError) as exc_info:
            validate_sample(sample_at(heading=heading), settings, NOON)
        assert exc_info.value.code == "INVALID_HEADING"

    def test_negative_accuracy(self, settings):
        with pytest.raises(ValidationError) as exc_info:
            validate_sample(sample_at(accuracy=-3), settings, NOON)
        assert exc_info.value.code == "INVALID_ACCURACY"

    def test_accuracy_is_clamped(self, settings):
        validated = validate_sample(sample_at(accuracy=50000), settings, NOON)
        assert validated.accuracy == settings.max_accuracy

    def test_future_timestamp_rejected(self, settings):
        with pytest.raises(ValidationError) as exc_info:
            validate_sample(sample_at(timestamp=NOON + timedelta(minutes=10)), settings, NOON)
        assert exc_info.value.code == "INVALID_TIMESTAMP"

    def test_small_clock_skew_accepted(self, settings):
        validated = validate_sample(sample_at(timestamp=NOON + timedelta(seconds=30)), settings, NOON)
        assert validated.recorded_at == NOON + timedelta(seconds=30)

    def test_missing_timestamp_uses_now(self, settings):
        assert validate_sample(sample_at(), settings, NOON).recorded_at == NOON

    def test_naive_timestamp_read_as_utc(self, settings):
        validated = validate_sample(sample_at(timestamp=datetime(2026, 3, 10, 11, 0)), settings, NOON)
        assert validated.recorded_at == NOON - timedelta(hours=1)

    def test_boundaries_accepted(self, settings):
        validated = validate_sample(
            SampleInput(latitude=90, longitude=-180, speed=200, heading=360, accuracy=0),
            settings, NOON,
        )
        assert validated.speed == 200


class TestIngestRejections:

    @pytest.mark.asyncio
    async def test_invalid_sample_stores_nothing(self, gateway, store, hub, shipment, courier):
        observer = await watch(hub, shipment)

        for bad in (SampleInput(latitude=95, longitude=77), SampleInput(latitude=28, longitude=200)):
            with pytest.raises(ValidationError):
                await gateway.ingest(shipment.id, bad, courier)

        assert store.sample_count(shipment.id) == 0
        assert store.shipments[shipment.id].status == ShipmentStatus.PENDING
        assert observer.frames == []

    @pytest.mark.asyncio
    async def test_unknown_shipment(self, gateway, courier):
        with pytest.raises(NotFoundError) as exc_info:
            await gateway.ingest(uuid4(), sample_at(), courier)
        assert exc_info.value.code == "SHIPMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unassigned_courier(self, gateway, store, shipment):
        stranger = courier_of(make_shipment())
        with pytest.raises(AuthorizationError):
            await gateway.ingest(shipment.id, sample_at(), stranger)
        assert store.sample_count(shipment.id) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED])
    async def test_terminal_shipment(self, gateway, store, status):
        shipment = store.add_shipment(make_shipment(status=status))
        with pytest.raises(InvalidStateError):
            await gateway.ingest(shipment.id, sample_at(), courier_of(shipment))
        assert store.sample_count(shipment.id) == 0


class TestIngest:

    @pytest.mark.asyncio
    async def test_first_sample_starts_transit(self, gateway, store, hub, shipment, courier):
        observer = await watch(hub, shipment)

        result = await gateway.ingest(shipment.id, sample_at(speed=10), courier)

        assert result.status == ShipmentStatus.IN_TRANSIT
        assert result.status_changed
        assert store.shipments[shipment.id].status == ShipmentStatus.IN_TRANSIT
        assert [f["type"] for f in observer.frames] == ["location_update", "status_update"]
        assert observer.frames[1]["payload"]["status"] == "in_transit"

    @pytest.mark.asyncio
    async def test_later_samples_keep_status(self, gateway, store, hub, shipment, courier, clock):
        await gateway.ingest(shipment.id, sample_at(speed=10), courier)
        observer = await watch(hub, shipment)
        clock.advance(seconds=30)

        result = await gateway.ingest(shipment.id, sample_at(speed=10), courier)

        assert not result.status_changed
        assert result.status == ShipmentStatus.IN_TRANSIT
        assert observer.of_type("status_update") == []
        assert len(store.transitions) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_samples_transition_once(self, gateway, store, hub, shipment, courier):
        observer = await watch(hub, shipment)

        results = await asyncio.gather(*(
            gateway.ingest(shipment.id, sample_at(speed=8 + i), courier) for i in range(5)
        ))

        assert store.sample_count(shipment.id) == 5
        assert len(store.transitions) == 1
        assert sum(r.status_changed for r in results) == 1
        assert all(r.status == ShipmentStatus.IN_TRANSIT for r in results)
        assert len(observer.of_type("status_update")) == 1
        assert len(observer.of_type("location_update")) == 5

    @pytest.mark.asyncio
    async def test_delhi_to_mumbai_eta(self, gateway, store, shipment, courier):
        """A courier leaving Delhi at 10 m/s has roughly 1150 km to go."""
        result = await gateway.ingest(shipment.id, sample_at(DELHI, speed=10), courier)

        travel_seconds = (result.eta - NOON).total_seconds()
        assert travel_seconds == pytest.approx(114_800, rel=0.01)
        assert result.confidence == Confidence.LOW
        assert result.risk_score == 0
        assert result.advisories == []

        updated = store.shipments[shipment.id]
        assert updated.predicted_eta == result.eta
        assert updated.eta_confidence == Confidence.LOW
        assert updated.risk_score == 0

    @pytest.mark.asyncio
    async def test_location_update_payload(self, gateway, hub, shipment, courier):
        observer = await watch(hub, shipment, admin_of(shipment))

        result = await gateway.ingest(shipment.id, sample_at(MUMBAI, speed=4, heading=90), courier)

        frame = observer.of_type("location_update")[0]
        assert frame["shipmentId"] == str(shipment.id)
        assert frame["payload"]["id"] == str(result.sample.id)
        assert frame["payload"]["latitude"] == MUMBAI.latitude
        assert frame["payload"]["heading"] == 90
        assert frame["payload"]["confidence"] == "low"
        assert frame["payload"]["risk_score"] == 0

    @pytest.mark.asyncio
    async def test_advisories_persisted_and_broadcast(self, gateway, store, hub, shipment, courier):
        observer = await watch(hub, shipment)

        result = await gateway.ingest(shipment.id, sample_at(accuracy=6000), courier)

        assert [a.type for a in result.advisories] == [AdvisoryType.GPS_WARNING]
        assert result.risk_score == 30
        assert list(store.advisories) == [result.advisories[0].id]
        frame = observer.of_type("advisory")[0]
        assert frame["payload"]["risk_score"] == 30
        assert frame["payload"]["advisories"][0]["type"] == "gps_warning"

    @pytest.mark.asyncio
    async def test_late_sample_sorted_into_history(self, gateway, store, shipment, courier, clock):
        await gateway.ingest(shipment.id, sample_at(speed=10), courier)
        clock.advance(minutes=5)
        await gateway.ingest(shipment.id, sample_at(speed=10), courier)
        late = await gateway.ingest(
            shipment.id, sample_at(speed=10, timestamp=NOON + timedelta(minutes=2)), courier
        )

        history = await store.get_history(shipment.id)
        assert [s.recorded_at for s in history] == [
            NOON, NOON + timedelta(minutes=2), NOON + timedelta(minutes=5)
        ]
        assert history[1].id == late.sample.id

    @pytest.mark.asyncio
    async def test_late_sample_does_not_replace_current_position(
        self, gateway, store, hub, shipment, courier
    ):
        near_mumbai = SampleInput(latitude=19.2, longitude=MUMBAI.longitude, speed=10)
        live = await gateway.ingest(shipment.id, near_mumbai, courier)
        observer = await watch(hub, shipment)

        late = await gateway.ingest(
            shipment.id, sample_at(DELHI, speed=10, timestamp=NOON - timedelta(minutes=30)), courier
        )

        assert late.backfill
        assert not live.backfill
        assert late.eta == live.eta
        assert late.advisories == []
        assert store.shipments[shipment.id].predicted_eta == live.eta
        assert (await store.get_latest_sample(shipment.id)).id == live.sample.id

        frame = observer.of_type("location_update")[0]
        assert frame["payload"]["latitude"] == DELHI.latitude
        assert frame["payload"]["backfill"] is True
        assert "eta" not in frame["payload"]

    @pytest.mark.asyncio
    async def test_historical_speed_feeds_eta(self, gateway, store, shipment, courier):
        other = store.add_shipment(make_shipment())
        store.add_samples(other.id, [
            make_sample(0, 0, NOON - timedelta(hours=2), shipment_id=other.id),
            make_sample(0, 0.4, NOON - timedelta(hours=1), shipment_id=other.id),
        ])
        await gateway.route_analysis.run(other.id)

        result = await gateway.ingest(shipment.id, sample_at(DELHI, speed=10), courier)

        historical = store.summaries[0].average_speed
        baseline = 114_800
        expected = baseline / (historical / 10)
        assert (result.eta - NOON).total_seconds() == pytest.approx(expected, rel=0.01)


class TestAnalyticsFallback:

    @pytest.mark.asyncio
    async def test_analytics_error_keeps_sample(self, gateway, store, hub, shipment, courier, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("analytics exploded")

        monkeypatch.setattr(gateway.recommendation_engine, "analyze", broken)
        observer = await watch(hub, shipment)

        result = await gateway.ingest(shipment.id, sample_at(accuracy=6000), courier)

        assert store.sample_count(shipment.id) == 1
        assert result.eta == NOON + timedelta(hours=2)
        assert result.confidence == Confidence.LOW
        assert result.risk_score == 0
        assert result.advisories == []
        assert len(observer.of_type("location_update")) == 1

    @pytest.mark.asyncio
    async def test_analytics_timeout(self, gateway, store, shipment, courier, settings, monkeypatch):
        async def slow_history_lookup(*args, **kwargs):
            await asyncio.sleep(5)

        settings.analytics_timeout_seconds = 0.05
        monkeypatch.setattr(store, "historical_average_speed", slow_history_lookup)

        result = await gateway.ingest(shipment.id, sample_at(speed=10), courier)

        assert result.eta == NOON + timedelta(hours=2)
        assert result.confidence == Confidence.LOW
        assert result.status == ShipmentStatus.IN_TRANSIT
        assert store.sample_count(shipment.id) == 1

    @pytest.mark.asyncio
    async def test_recording_failure_does_not_fail_ingest(self, gateway, store, shipment, courier, monkeypatch):
        async def broken_save(*args, **kwargs):
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(store, "save_advisories", broken_save)

        result = await gateway.ingest(shipment.id, sample_at(accuracy=6000), courier)

        assert result.advisories == []
        assert result.risk_score == 30


class TestCompleteDelivery:

    @pytest.fixture
    async def in_transit(self, gateway, shipment, courier, clock):
        await gateway.ingest(shipment.id, sample_at(DELHI, speed=12), courier)
        clock.advance(hours=1)
        await gateway.ingest(
            shipment.id, SampleInput(latitude=28.3, longitude=77.0, speed=12), courier
        )
        clock.advance(minutes=5)
        return shipment

    @pytest.mark.asyncio
    async def test_delivery_broadcasts_and_summarizes(self, gateway, store, hub, in_transit, courier):
        observer = await watch(hub, in_transit)

        result = await gateway.complete_delivery(in_transit.id, courier, "Left at reception")

        assert result.status == ShipmentStatus.DELIVERED
        assert store.shipments[in_transit.id].status == ShipmentStatus.DELIVERED
        assert store.shipments[in_transit.id].delivered_at == result.delivered_at
        assert [f["type"] for f in observer.frames] == ["delivered", "status_update"]
        assert observer.frames[0]["payload"]["delivery_notes"] == "Left at reception"
        assert result.route_summary is not None
        assert result.route_summary.total_time == 3600
        assert store.summaries == [result.route_summary]

    @pytest.mark.asyncio
    async def test_tracking_stops_after_delivery(self, gateway, in_transit, courier):
        await gateway.complete_delivery(in_transit.id, courier)
        with pytest.raises(InvalidStateError):
            await gateway.ingest(in_transit.id, sample_at(), courier)

    @pytest.mark.asyncio
    async def test_already_delivered(self, gateway, in_transit, courier):
        await gateway.complete_delivery(in_transit.id, courier)
        with pytest.raises(InvalidStateError) as exc_info:
            await gateway.complete_delivery(in_transit.id, courier)
        assert exc_info.value.code == "ALREADY_DELIVERED"

    @pytest.mark.asyncio
    async def test_admin_cannot_confirm(self, gateway, in_transit):
        admin = admin_of(in_transit)
        assert admin.role == Role.ADMIN
        with pytest.raises(AuthorizationError) as exc_info:
            await gateway.complete_delivery(in_transit.id, admin)
        assert exc_info.value.code == "SHIPMENT_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_pending_shipment(self, gateway, shipment, courier):
        with pytest.raises(InvalidStateError):
            await gateway.complete_delivery(shipment.id, courier)

    @pytest.mark.asyncio
    async def test_single_sample_trip_has_no_summary(self, gateway, store, shipment, courier):
        await gateway.ingest(shipment.id, sample_at(speed=10), courier)

        result = await gateway.complete_delivery(shipment.id, courier)

        assert result.status == ShipmentStatus.DELIVERED
        assert result.route_summary is None
        assert store.summaries == []
