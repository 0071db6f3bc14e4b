"""Post-trip route analysis and anomaly detection."""
import logging
import math
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import numpy as np

from shared.config import Settings
from shared.errors import InsufficientDataError, NotFoundError
from shared.geo import distance_between

from .domain import (
    Anomaly,
    AnomalyType,
    LocationSample,
    PerformanceGrade,
    RouteRecommendation,
    RouteSummary,
    RouteSummaryData,
)
from .store import LocationStore

logger = logging.getLogger(__name__)

MS_TO_KMH = 3.6


class RouteAnalysisEngine:
    """
    Batch metrics over a completed trip.

    All computations take the full sample history ordered by recorded time.
    Missing speeds are read as 0.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.grade_bands = [
            (PerformanceGrade.EXCELLENT, settings.grade_excellent_below_kmh),
            (PerformanceGrade.GOOD, settings.grade_good_below_kmh),
            (PerformanceGrade.AVERAGE, settings.grade_average_below_kmh),
            (PerformanceGrade.POOR, math.inf),
        ]

    def analyze(self, shipment_id: UUID, samples: Sequence[LocationSample]) -> RouteSummaryData:
        if len(samples) < 2:
            raise InsufficientDataError(
                f"Route analysis needs at least 2 samples, got {len(samples)}"
            )

        total_distance = self.total_distance(samples)
        total_time = self.total_time(samples)
        average_speed = total_distance / total_time if total_time > 0 else 0.0

        summary = RouteSummaryData(
            shipment_id=shipment_id,
            total_distance=total_distance,
            total_time=total_time,
            average_speed=average_speed,
            max_speed=self.max_speed(samples),
            idle_time=self.idle_time(samples),
            route_efficiency=self.route_efficiency(samples, total_distance),
            performance_grade=self.performance_grade(average_speed),
            anomalies=self.detect_anomalies(samples),
        )
        summary.recommendations = self.route_recommendations(summary)
        return summary

    def total_distance(self, samples: Sequence[LocationSample]) -> float:
        return float(sum(
            distance_between(prev, curr) for prev, curr in zip(samples, samples[1:])
        ))

    def total_time(self, samples: Sequence[LocationSample]) -> float:
        return (samples[-1].recorded_at - samples[0].recorded_at).total_seconds()

    def max_speed(self, samples: Sequence[LocationSample]) -> float:
        return float(np.max(self._speeds(samples)))

    def idle_time(self, samples: Sequence[LocationSample]) -> float:
        """Sum of intervals whose closing sample is at or below the idle speed."""
        deltas = self._time_deltas(samples)
        closing_speeds = self._speeds(samples)[1:]
        return float(np.sum(deltas[closing_speeds <= self.settings.idle_speed_threshold]))

    def route_efficiency(self, samples: Sequence[LocationSample], total_distance: float) -> float:
        if total_distance <= 0:
            return 1.0
        direct = distance_between(samples[0], samples[-1])
        return min(1.0, max(direct / total_distance, self.settings.min_route_efficiency))

    def performance_grade(self, average_speed: float) -> PerformanceGrade:
        speed_kmh = average_speed * MS_TO_KMH
        for grade, upper in self.grade_bands:
            if speed_kmh < upper:
                return grade
        return PerformanceGrade.POOR

    def route_recommendations(self, summary: RouteSummaryData) -> List[RouteRecommendation]:
        recommendations = []

        if summary.average_speed * MS_TO_KMH < self.settings.low_average_speed_kmh:
            recommendations.append(RouteRecommendation(
                type="speed_optimization",
                message="Average speed is very low. Check for route obstacles or traffic patterns.",
                priority="high",
            ))

        if summary.route_efficiency < self.settings.low_efficiency_threshold:
            recommendations.append(RouteRecommendation(
                type="route_optimization",
                message="Route efficiency is low. Consider more direct routes.",
                priority="medium",
            ))

        if summary.idle_time > self.settings.excessive_idle_seconds:
            recommendations.append(RouteRecommendation(
                type="idle_reduction",
                message=(
                    f"Excessive idle time ({round(summary.idle_time / 60)} minutes). "
                    "Optimize stops."
                ),
                priority="medium",
            ))

        return recommendations

    # Anomaly detection

    def detect_anomalies(self, samples: Sequence[LocationSample]) -> List[Anomaly]:
        return (
            self.detect_speed_spikes(samples)
            + self.detect_gps_jumps(samples)
            + self.detect_time_gaps(samples)
        )

    def detect_speed_spikes(self, samples: Sequence[LocationSample]) -> List[Anomaly]:
        speeds = self._speeds(samples)
        changes = np.abs(np.diff(speeds))
        anomalies = []
        for i in np.flatnonzero(changes > self.settings.speed_spike_threshold) + 1:
            anomalies.append(Anomaly(
                type=AnomalyType.SPEED_SPIKE,
                index=int(i),
                timestamp=samples[i].recorded_at,
                data={
                    "value": float(speeds[i]),
                    "previous_value": float(speeds[i - 1]),
                    "change": float(changes[i - 1]),
                },
            ))
        return anomalies

    def detect_gps_jumps(self, samples: Sequence[LocationSample]) -> List[Anomaly]:
        """Two-step window: compare sample i against sample i-2."""
        anomalies = []
        for i in range(2, len(samples)):
            distance = distance_between(samples[i - 2], samples[i])
            elapsed = (samples[i].recorded_at - samples[i - 2].recorded_at).total_seconds()
            implied_speed = self._implied_speed(distance, elapsed)
            if implied_speed is None or implied_speed <= self.settings.gps_jump_speed_threshold:
                continue
            anomalies.append(Anomaly(
                type=AnomalyType.GPS_JUMP,
                index=i,
                timestamp=samples[i].recorded_at,
                data={
                    "distance": distance,
                    "implied_speed": implied_speed if math.isfinite(implied_speed) else None,
                },
            ))
        return anomalies

    def detect_time_gaps(self, samples: Sequence[LocationSample]) -> List[Anomaly]:
        deltas = self._time_deltas(samples)
        anomalies = []
        for i in np.flatnonzero(deltas > self.settings.time_gap_threshold_seconds) + 1:
            anomalies.append(Anomaly(
                type=AnomalyType.TIME_GAP,
                index=int(i),
                timestamp=samples[i].recorded_at,
                data={"gap_duration": float(deltas[i - 1])},
            ))
        return anomalies

    def compare_with_history(
        self, summary: RouteSummaryData, history: Sequence[RouteSummaryData]
    ) -> Optional[Dict[str, Any]]:
        """Percentage deltas of this trip against the mean of prior trips."""
        prior = [h for h in history if h.shipment_id != summary.shipment_id]
        if not prior:
            return None

        averages = {
            "avg_distance": float(np.mean([h.total_distance for h in prior])),
            "avg_time": float(np.mean([h.total_time for h in prior])),
            "avg_speed": float(np.mean([h.average_speed for h in prior])),
            "route_count": len(prior),
        }

        def percent_change(current: float, baseline: float) -> Optional[float]:
            if baseline == 0:
                return None
            return (current - baseline) / baseline * 100

        return {
            "historical": averages,
            "comparison": {
                "distance_vs_avg": percent_change(summary.total_distance, averages["avg_distance"]),
                "time_vs_avg": percent_change(summary.total_time, averages["avg_time"]),
                "speed_vs_avg": percent_change(summary.average_speed, averages["avg_speed"]),
            },
        }

    @staticmethod
    def _speeds(samples: Sequence[LocationSample]) -> np.ndarray:
        return np.array([s.speed or 0.0 for s in samples], dtype=float)

    @staticmethod
    def _time_deltas(samples: Sequence[LocationSample]) -> np.ndarray:
        return np.array([
            (curr.recorded_at - prev.recorded_at).total_seconds()
            for prev, curr in zip(samples, samples[1:])
        ], dtype=float)

    @staticmethod
    def _implied_speed(distance: float, elapsed: float) -> Optional[float]:
        if elapsed > 0:
            return distance / elapsed
        # Same timestamp: any displacement is a teleport, none is no signal
        return math.inf if distance > 0 else None


class RouteAnalysisService:
    """Loads a trip, analyzes it and persists the summary."""

    def __init__(self, store: LocationStore, engine: RouteAnalysisEngine, history_limit: int = 20):
        self.store = store
        self.engine = engine
        self.history_limit = history_limit

    async def run(self, shipment_id: UUID) -> RouteSummary:
        shipment = await self.store.get_shipment(shipment_id)
        if not shipment:
            raise NotFoundError("Shipment not found", code="SHIPMENT_NOT_FOUND")

        samples = await self.store.get_history(shipment_id)
        summary = self.engine.analyze(shipment_id, samples)
        saved = await self.store.save_route_summary(summary, shipment.destination_address)

        logger.info(
            f"Route summary for shipment {shipment_id}: "
            f"{summary.total_distance:.0f}m in {summary.total_time:.0f}s, "
            f"grade={summary.performance_grade.value}, anomalies={len(summary.anomalies)}"
        )
        return saved

    async def compare(self, summary: RouteSummaryData) -> Optional[Dict[str, Any]]:
        """Compare a trip with the most recent summaries of other shipments."""
        try:
            history = await self.store.list_route_summaries(self.history_limit)
        except Exception as e:
            logger.error(
                f"Error loading route history for shipment {summary.shipment_id}: {str(e)}",
                exc_info=True,
            )
            return None
        return self.engine.compare_with_history(summary, history)
