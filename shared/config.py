"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for the tracking service."""

    # Service info
    service_name: str = "tracking-service"
    service_port: int = 8000
    node_id: str = "tracking-node-1"

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "tracking_db"
    database_url_override: Optional[str] = None

    # RabbitMQ (cross-node broadcast relay)
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    broadcast_relay_enabled: bool = False

    # Logging
    log_level: str = "INFO"

    # Sample validation
    max_accuracy: float = 10000.0
    max_speed: float = 200.0
    max_clock_skew_seconds: int = 300

    # Time budgets
    analytics_timeout_seconds: float = 2.0
    broadcast_send_timeout_seconds: float = 1.0

    # ETA prediction
    default_speed: float = 10.0
    max_plausible_speed: float = 50.0
    min_adjusted_speed: float = 0.5
    eta_speed_window: int = 10
    default_eta_seconds: int = 2 * 60 * 60
    rush_hour_factor: float = 1 / 1.5
    normal_factor: float = 1.0
    night_factor: float = 1 / 0.8
    local_timezone: str = "UTC"
    high_confidence_samples: int = 20
    medium_confidence_samples: int = 10
    historical_route_limit: int = 10

    # Recommendation thresholds
    route_deviation_medium: float = 1000.0
    route_deviation_high: float = 5000.0
    delay_medium_minutes: float = 30.0
    delay_high_minutes: float = 60.0
    delay_min_history: int = 5
    speed_pattern_ratio: float = 0.3
    speed_pattern_window: int = 10
    idle_window_seconds: int = 10 * 60
    idle_movement_speed: float = 0.5
    gps_accuracy_medium: float = 1000.0
    gps_accuracy_high: float = 5000.0

    # Risk weights
    severity_weight_low: int = 5
    severity_weight_medium: int = 15
    severity_weight_high: int = 30
    max_risk_score: int = 100

    # Route analysis
    idle_speed_threshold: float = 2.0
    speed_spike_threshold: float = 20.0
    gps_jump_speed_threshold: float = 50.0
    time_gap_threshold_seconds: float = 300.0
    min_route_efficiency: float = 0.01
    grade_excellent_below_kmh: float = 15.0
    grade_good_below_kmh: float = 30.0
    grade_average_below_kmh: float = 45.0
    low_average_speed_kmh: float = 20.0
    low_efficiency_threshold: float = 0.7
    excessive_idle_seconds: float = 600.0

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    @property
    def severity_weights(self) -> dict[str, int]:
        """Risk weight per advisory severity."""
        return {
            "low": self.severity_weight_low,
            "medium": self.severity_weight_medium,
            "high": self.severity_weight_high,
        }

    class Config:
        env_file = ".env"
        case_sensitive = False
