"""Recommendation engine: per-sample advisories and risk scoring."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from shared.config import Settings
from shared.events import utcnow
from shared.geo import distance_between

from .domain import (
    AdvisoryDraft,
    AdvisoryType,
    EtaPrediction,
    LocationSample,
    RecommendationReport,
    Severity,
    ShipmentView,
)
from .eta import EtaPredictor

logger = logging.getLogger(__name__)


@dataclass
class AnalysisContext:
    """Inputs shared by every analyzer for one ingestion event."""
    shipment: ShipmentView
    current: LocationSample
    history: Sequence[LocationSample]  # ordered, includes current
    eta: Optional[EtaPrediction]
    now: datetime

    @property
    def prior(self) -> List[LocationSample]:
        return [s for s in self.history if s.id != self.current.id]


Analyzer = Callable[[AnalysisContext], Optional[AdvisoryDraft]]


class RecommendationEngine:
    """
    Runs five independent analyzers over the latest sample.

    Each analyzer fires at most one advisory. The risk score is the capped sum
    of severity weights of this event's advisories only.
    """

    def __init__(self, settings: Settings, eta_predictor: Optional[EtaPredictor] = None):
        self.settings = settings
        self.eta_predictor = eta_predictor or EtaPredictor(settings)
        self.analyzers: List[Analyzer] = [
            self.analyze_route_deviation,
            self.analyze_delay,
            self.analyze_speed_pattern,
            self.analyze_idle_time,
            self.analyze_gps_accuracy,
        ]

    def analyze(
        self,
        shipment: ShipmentView,
        current: LocationSample,
        history: Sequence[LocationSample],
        eta: Optional[EtaPrediction] = None,
        historical_speed: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RecommendationReport:
        now = now or utcnow()
        if eta is None:
            eta = self.eta_predictor.predict(
                shipment, current.coordinate, history, historical_speed, now=now
            )

        context = AnalysisContext(
            shipment=shipment,
            current=current,
            history=history,
            eta=eta,
            now=now,
        )

        advisories = []
        for analyzer in self.analyzers:
            try:
                advisory = analyzer(context)
            except Exception as e:
                logger.error(
                    f"Analyzer {analyzer.__name__} failed for shipment {shipment.id}: {str(e)}",
                    exc_info=True,
                )
                continue
            if advisory:
                advisories.append(advisory)

        return RecommendationReport(
            advisories=advisories,
            risk_score=self.risk_score(advisories),
        )

    def risk_score(self, advisories: Sequence[AdvisoryDraft]) -> int:
        weights = self.settings.severity_weights
        total = sum(weights[advisory.severity.value] for advisory in advisories)
        return min(total, self.settings.max_risk_score)

    # Analyzers

    def analyze_route_deviation(self, context: AnalysisContext) -> Optional[AdvisoryDraft]:
        """Compare progress to destination against the start-to-destination baseline."""
        if len(context.history) < 2:
            return None

        start = context.history[0]
        destination = context.shipment.destination
        baseline = distance_between(start, destination)
        remaining = distance_between(context.current, destination)
        deviation = abs(baseline - remaining)

        if deviation <= self.settings.route_deviation_medium:
            return None

        severity = (
            Severity.HIGH if deviation > self.settings.route_deviation_high else Severity.MEDIUM
        )
        return AdvisoryDraft(
            type=AdvisoryType.ROUTE_DEVIATION,
            message=(
                f"Driver has deviated {round(deviation / 1000)}km from optimal route. "
                "Consider route correction."
            ),
            severity=severity,
            data={
                "deviation_meters": deviation,
                "current_location": context.current.coordinate.model_dump(),
                "suggested_action": "redirect_driver",
            },
        )

    def analyze_delay(self, context: AnalysisContext) -> Optional[AdvisoryDraft]:
        planned = context.shipment.planned_delivery_time
        if planned is None or len(context.history) < self.settings.delay_min_history:
            return None
        if context.eta is None or context.eta.is_fallback:
            return None

        delay_minutes = (context.eta.eta - planned).total_seconds() / 60
        if delay_minutes <= self.settings.delay_medium_minutes:
            return None

        severity = (
            Severity.HIGH if delay_minutes > self.settings.delay_high_minutes else Severity.MEDIUM
        )
        return AdvisoryDraft(
            type=AdvisoryType.DELAY_ALERT,
            message=(
                f"Shipment expected to be {round(delay_minutes)} minutes late. "
                "Consider notifying customer."
            ),
            severity=severity,
            data={
                "delay_minutes": round(delay_minutes),
                "current_eta": context.eta.eta.isoformat(),
                "planned_eta": planned.isoformat(),
            },
        )

    def analyze_speed_pattern(self, context: AnalysisContext) -> Optional[AdvisoryDraft]:
        window = self.settings.speed_pattern_window
        prior = context.prior
        if len(prior) < window:
            return None

        recent_speeds = [s.speed for s in prior[-window:] if s.speed is not None and s.speed > 0]
        if not recent_speeds:
            return None

        average_speed = sum(recent_speeds) / len(recent_speeds)
        current_speed = context.current.speed or 0

        if not (0 < current_speed < average_speed * self.settings.speed_pattern_ratio):
            return None

        return AdvisoryDraft(
            type=AdvisoryType.SPEED_PATTERN,
            message="Driver speed significantly below average. Check for traffic or obstacles.",
            severity=Severity.LOW,
            data={
                "current_speed": current_speed,
                "average_speed": average_speed,
                "speed_ratio": current_speed / average_speed,
            },
        )

    def analyze_idle_time(self, context: AnalysisContext) -> Optional[AdvisoryDraft]:
        """Fire when the whole trailing window is observed and nothing in it moved."""
        if not context.history:
            return None

        window_start = context.current.recorded_at - timedelta(
            seconds=self.settings.idle_window_seconds
        )
        if context.history[0].recorded_at > window_start:
            return None

        window = [
            s for s in context.history
            if window_start <= s.recorded_at <= context.current.recorded_at
        ]
        if not window:
            return None

        if any((s.speed or 0) > self.settings.idle_movement_speed for s in window):
            return None

        last_moving = None
        for sample in context.history:
            if sample.recorded_at < window_start and (sample.speed or 0) > self.settings.idle_movement_speed:
                last_moving = sample.recorded_at

        idle_since = last_moving or context.history[0].recorded_at
        idle_minutes = (context.current.recorded_at - idle_since).total_seconds() / 60

        return AdvisoryDraft(
            type=AdvisoryType.IDLE_ALERT,
            message=(
                f"Driver has been idle for {round(idle_minutes)}+ minutes. Check for issues."
            ),
            severity=Severity.MEDIUM,
            data={
                "idle_duration_minutes": round(idle_minutes),
                "idle_since": idle_since.isoformat(),
            },
        )

    def analyze_gps_accuracy(self, context: AnalysisContext) -> Optional[AdvisoryDraft]:
        accuracy = context.current.accuracy or 0
        if accuracy <= self.settings.gps_accuracy_medium:
            return None

        severity = (
            Severity.HIGH if accuracy > self.settings.gps_accuracy_high else Severity.MEDIUM
        )
        return AdvisoryDraft(
            type=AdvisoryType.GPS_WARNING,
            message=f"GPS accuracy is poor ({round(accuracy)}m). Location may be unreliable.",
            severity=severity,
            data={
                "accuracy_meters": accuracy,
                "recommendation": "wait_for_better_signal",
            },
        )
