"""Tests for the recommendation engine analyzers and risk scoring."""
from datetime import timedelta

import pytest

from services.tracking_service.domain import (
    AdvisoryDraft,
    AdvisoryType,
    Confidence,
    Coordinate,
    EtaPrediction,
    Severity,
)
from services.tracking_service.recommendations import AnalysisContext

from .fixtures import DELHI, NOON, make_sample, make_shipment

pytestmark = pytest.mark.unit

EQUATOR_DESTINATION = Coordinate(latitude=1.0, longitude=0.0)


def context_for(shipment, history, eta=None, now=None):
    return AnalysisContext(
        shipment=shipment,
        current=history[-1],
        history=history,
        eta=eta,
        now=now or history[-1].recorded_at,
    )


def stationary(count, speed=0.0, interval=60, start=NOON, accuracy=None):
    return [
        make_sample(
            DELHI.latitude, DELHI.longitude, start + timedelta(seconds=i * interval),
            speed=speed, accuracy=accuracy,
        )
        for i in range(count)
    ]


class TestRouteDeviation:

    @pytest.fixture
    def shipment(self):
        return make_shipment(destination=EQUATOR_DESTINATION)

    def deviation_for(self, engine, shipment, current_latitude):
        history = [
            make_sample(0.0, 0.0, NOON),
            make_sample(current_latitude, 0.0, NOON + timedelta(minutes=5)),
        ]
        return engine.analyze_route_deviation(context_for(shipment, history))

    def test_small_change_ignored(self, recommendation_engine, shipment):
        assert self.deviation_for(recommendation_engine, shipment, -0.005) is None

    def test_medium_deviation(self, recommendation_engine, shipment):
        advisory = self.deviation_for(recommendation_engine, shipment, -0.02)
        assert advisory.type == AdvisoryType.ROUTE_DEVIATION
        assert advisory.severity == Severity.MEDIUM
        assert advisory.data["deviation_meters"] == pytest.approx(2223.9, abs=1)
        assert advisory.message.startswith("Driver has deviated 2km from optimal route")

    def test_high_deviation(self, recommendation_engine, shipment):
        advisory = self.deviation_for(recommendation_engine, shipment, -0.1)
        assert advisory.severity == Severity.HIGH
        assert advisory.data["suggested_action"] == "redirect_driver"

    def test_needs_two_samples(self, recommendation_engine, shipment):
        history = [make_sample(-0.5, 0.0, NOON)]
        assert recommendation_engine.analyze_route_deviation(context_for(shipment, history)) is None


class TestDelay:

    @pytest.fixture
    def shipment(self):
        return make_shipment(planned_delivery_time=NOON)

    def eta(self, minutes_late, fallback=False):
        return EtaPrediction(
            eta=NOON + timedelta(minutes=minutes_late),
            confidence=Confidence.LOW,
            is_fallback=fallback,
        )

    def test_medium_delay(self, recommendation_engine, shipment):
        advisory = recommendation_engine.analyze_delay(
            context_for(shipment, stationary(5), eta=self.eta(45))
        )
        assert advisory.type == AdvisoryType.DELAY_ALERT
        assert advisory.severity == Severity.MEDIUM
        assert advisory.data["delay_minutes"] == 45
        assert "45 minutes late" in advisory.message

    def test_high_delay(self, recommendation_engine, shipment):
        advisory = recommendation_engine.analyze_delay(
            context_for(shipment, stationary(5), eta=self.eta(90))
        )
        assert advisory.severity == Severity.HIGH

    def test_within_tolerance(self, recommendation_engine, shipment):
        assert recommendation_engine.analyze_delay(
            context_for(shipment, stationary(5), eta=self.eta(30))
        ) is None

    def test_short_history_skipped(self, recommendation_engine, shipment):
        assert recommendation_engine.analyze_delay(
            context_for(shipment, stationary(4), eta=self.eta(90))
        ) is None

    def test_fallback_eta_skipped(self, recommendation_engine, shipment):
        assert recommendation_engine.analyze_delay(
            context_for(shipment, stationary(5), eta=self.eta(90, fallback=True))
        ) is None

    def test_no_planned_time(self, recommendation_engine):
        assert recommendation_engine.analyze_delay(
            context_for(make_shipment(), stationary(5), eta=self.eta(90))
        ) is None


class TestSpeedPattern:

    def history(self, prior_count, current_speed):
        history = stationary(prior_count, speed=20.0)
        history.append(make_sample(
            DELHI.latitude, DELHI.longitude,
            NOON + timedelta(seconds=prior_count * 60), speed=current_speed,
        ))
        return history

    def test_sharp_slowdown(self, recommendation_engine):
        advisory = recommendation_engine.analyze_speed_pattern(
            context_for(make_shipment(), self.history(10, 5.0))
        )
        assert advisory.type == AdvisoryType.SPEED_PATTERN
        assert advisory.severity == Severity.LOW
        assert advisory.data["average_speed"] == pytest.approx(20.0)
        assert advisory.data["speed_ratio"] == pytest.approx(0.25)

    def test_mild_slowdown_ignored(self, recommendation_engine):
        assert recommendation_engine.analyze_speed_pattern(
            context_for(make_shipment(), self.history(10, 7.0))
        ) is None

    def test_stopped_is_not_a_slowdown(self, recommendation_engine):
        assert recommendation_engine.analyze_speed_pattern(
            context_for(make_shipment(), self.history(10, 0.0))
        ) is None

    def test_needs_ten_prior_samples(self, recommendation_engine):
        assert recommendation_engine.analyze_speed_pattern(
            context_for(make_shipment(), self.history(9, 5.0))
        ) is None


class TestIdleTime:

    def test_idle_for_whole_window(self, recommendation_engine):
        history = stationary(12)
        advisory = recommendation_engine.analyze_idle_time(context_for(make_shipment(), history))

        assert advisory.type == AdvisoryType.IDLE_ALERT
        assert advisory.severity == Severity.MEDIUM
        assert advisory.data["idle_duration_minutes"] == 11
        assert "idle for 11+ minutes" in advisory.message

    def test_one_moving_sample_suppresses(self, recommendation_engine):
        history = stationary(12)
        history[6] = history[6].model_copy(update={"speed": 3.0})
        assert recommendation_engine.analyze_idle_time(context_for(make_shipment(), history)) is None

    def test_gps_drift_still_counts_as_idle(self, recommendation_engine):
        history = stationary(12, speed=0.4)
        assert recommendation_engine.analyze_idle_time(context_for(make_shipment(), history)) is not None

    def test_window_not_yet_covered(self, recommendation_engine):
        history = stationary(6)
        assert recommendation_engine.analyze_idle_time(context_for(make_shipment(), history)) is None

    def test_idle_since_last_movement(self, recommendation_engine):
        history = stationary(13)
        history[0] = history[0].model_copy(update={"speed": 5.0})
        advisory = recommendation_engine.analyze_idle_time(context_for(make_shipment(), history))
        assert advisory.data["idle_since"] == NOON.isoformat()
        assert advisory.data["idle_duration_minutes"] == 12


class TestGpsAccuracy:

    @pytest.mark.parametrize("accuracy,severity", [
        (1500, Severity.MEDIUM),
        (5000, Severity.MEDIUM),
        (6000, Severity.HIGH),
    ])
    def test_poor_accuracy(self, recommendation_engine, accuracy, severity):
        history = stationary(1, accuracy=accuracy)
        advisory = recommendation_engine.analyze_gps_accuracy(context_for(make_shipment(), history))
        assert advisory.type == AdvisoryType.GPS_WARNING
        assert advisory.severity == severity
        assert f"({accuracy}m)" in advisory.message

    @pytest.mark.parametrize("accuracy", [None, 5, 1000])
    def test_acceptable_accuracy(self, recommendation_engine, accuracy):
        history = stationary(1, accuracy=accuracy)
        assert recommendation_engine.analyze_gps_accuracy(context_for(make_shipment(), history)) is None


class TestRiskScore:

    def draft(self, severity):
        return AdvisoryDraft(type=AdvisoryType.GPS_WARNING, message="x", severity=severity)

    def test_weights_sum(self, recommendation_engine):
        drafts = [self.draft(Severity.LOW), self.draft(Severity.MEDIUM)]
        assert recommendation_engine.risk_score(drafts) == 20

    def test_capped_at_100(self, recommendation_engine):
        drafts = [self.draft(Severity.HIGH)] * 4
        assert recommendation_engine.risk_score(drafts) == 100

    def test_no_advisories(self, recommendation_engine):
        assert recommendation_engine.risk_score([]) == 0


class TestAnalyze:

    def test_combines_fired_advisories(self, recommendation_engine):
        history = stationary(12, accuracy=6000)
        report = recommendation_engine.analyze(
            make_shipment(), history[-1], history, now=history[-1].recorded_at
        )

        types = {a.type for a in report.advisories}
        assert types == {AdvisoryType.IDLE_ALERT, AdvisoryType.GPS_WARNING}
        assert report.risk_score == 45

    def test_failing_analyzer_is_skipped(self, recommendation_engine):
        def broken_analyzer(context):
            raise ValueError("bad sample")

        recommendation_engine.analyzers = [
            broken_analyzer,
            recommendation_engine.analyze_gps_accuracy,
        ]
        history = stationary(1, accuracy=2000)
        report = recommendation_engine.analyze(make_shipment(), history[-1], history, now=NOON)

        assert [a.type for a in report.advisories] == [AdvisoryType.GPS_WARNING]
        assert report.risk_score == 15
