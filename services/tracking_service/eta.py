"""Dynamic ETA prediction."""
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

import numpy as np

from shared.config import Settings
from shared.events import utcnow
from shared.geo import distance_between

from .domain import Confidence, Coordinate, EtaPrediction, LocationSample, ShipmentView

logger = logging.getLogger(__name__)


class EtaPredictor:
    """
    Predicts arrival time from remaining distance and recent movement.

    The adjusted speed combines:
    - a recency-weighted average of the latest plausible speed readings
    - a time-of-day traffic multiplier
    - the historical speed ratio for the shipment's destination
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        if settings.local_timezone.upper() == "UTC":
            self.local_tz: tzinfo = timezone.utc
        else:
            self.local_tz = ZoneInfo(settings.local_timezone)

    def predict(
        self,
        shipment: ShipmentView,
        current_location: Coordinate,
        history: Sequence[LocationSample],
        historical_speed: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> EtaPrediction:
        """Predict arrival; never raises, falls back to a fixed horizon on error."""
        now = now or utcnow()
        try:
            remaining_distance = distance_between(current_location, shipment.destination)
            estimated_speed = self.estimate_speed(history)
            traffic_factor = self.traffic_factor(now)
            historical_factor = self.historical_factor(historical_speed)

            adjusted_speed = max(
                estimated_speed * traffic_factor * historical_factor,
                self.settings.min_adjusted_speed,
            )
            eta = now + timedelta(seconds=remaining_distance / adjusted_speed)

            return EtaPrediction(
                eta=eta,
                confidence=self.confidence(len(history)),
                remaining_distance=remaining_distance,
                estimated_speed=adjusted_speed,
                traffic_factor=traffic_factor,
                historical_factor=historical_factor,
            )
        except Exception as e:
            logger.error(f"Error calculating ETA for shipment {shipment.id}: {str(e)}", exc_info=True)
            return self.fallback(now)

    def fallback(self, now: Optional[datetime] = None) -> EtaPrediction:
        return EtaPrediction.fallback(now or utcnow(), self.settings.default_eta_seconds)

    def estimate_speed(self, history: Sequence[LocationSample]) -> float:
        """Recency-weighted mean of the last N plausible speeds."""
        recent = history[-self.settings.eta_speed_window:]
        speeds = [
            s.speed for s in recent
            if s.speed is not None and 0 < s.speed <= self.settings.max_plausible_speed
        ]
        if not speeds:
            return self.settings.default_speed

        weights = np.arange(1, len(speeds) + 1) / len(speeds)
        return float(np.average(speeds, weights=weights))

    def traffic_factor(self, now: datetime) -> float:
        hour = now.astimezone(self.local_tz).hour

        if 7 <= hour <= 9 or 17 <= hour <= 19:
            return self.settings.rush_hour_factor
        if hour >= 22 or hour <= 5:
            return self.settings.night_factor
        return self.settings.normal_factor

    def historical_factor(self, historical_speed: Optional[float]) -> float:
        if historical_speed is None or historical_speed <= 0:
            return 1.0
        return historical_speed / self.settings.default_speed

    def confidence(self, data_points: int) -> Confidence:
        if data_points >= self.settings.high_confidence_samples:
            return Confidence.HIGH
        if data_points >= self.settings.medium_confidence_samples:
            return Confidence.MEDIUM
        return Confidence.LOW
