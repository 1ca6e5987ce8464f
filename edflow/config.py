"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Clinical constants have safe defaults and are overridable per site
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()

DEFAULT_ALGORITHM = "adult-simple-v1"


class ScoringConfig(BaseModel):
    """EWS scoring configuration."""

    default_algorithm: str = Field(
        default=DEFAULT_ALGORITHM, description="Algorithm id used when callers pass none"
    )
    unknown_algorithm_policy: Literal["error", "fallback"] = Field(
        default="error",
        description="Raise on unknown algorithm ids, or fall back to the default algorithm",
    )

    @field_validator("default_algorithm")
    def validate_default_algorithm(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("default_algorithm must not be empty")
        return v


class MonitoringConfig(BaseModel):
    """Observation cadence and scheduler configuration."""

    tick_interval_seconds: float = Field(
        default=30.0, gt=0.0, description="Interval between overdue checks"
    )

    # EWS-driven observation intervals
    ews_high_threshold: int = Field(default=5, ge=0, description="EWS at or above is high")
    ews_medium_threshold: int = Field(default=3, ge=0, description="EWS at or above is medium")
    high_interval_minutes: int = Field(default=15, gt=0)
    medium_interval_minutes: int = Field(default=30, gt=0)
    low_interval_minutes: int = Field(default=60, gt=0)

    # Acuity caps keyed by Australasian Triage Scale category
    acuity_interval_minutes: dict[int, int] = Field(
        default_factory=lambda: {1: 15, 2: 15, 3: 30, 4: 60, 5: 60},
        description="Longest allowed observation interval per ATS category",
    )

    @model_validator(mode="after")
    def thresholds_ordered(self) -> "MonitoringConfig":
        """High EWS threshold must sit above the medium one."""
        if self.ews_high_threshold <= self.ews_medium_threshold:
            raise ValueError("ews_high_threshold must be greater than ews_medium_threshold")
        if not (
            self.high_interval_minutes
            <= self.medium_interval_minutes
            <= self.low_interval_minutes
        ):
            raise ValueError("observation intervals must shorten as EWS rises")
        return self

    def interval_for_ews(self, ews: int | None) -> int:
        """Minutes until the next observation is due after a score of ``ews``."""
        score = ews or 0
        if score >= self.ews_high_threshold:
            return self.high_interval_minutes
        if score >= self.ews_medium_threshold:
            return self.medium_interval_minutes
        return self.low_interval_minutes

    def interval_for_acuity(self, ats: int | None) -> int | None:
        if ats is None:
            return None
        return self.acuity_interval_minutes.get(ats)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _policy_to_literal(val: str) -> Literal["error", "fallback"]:
        return "fallback" if val.strip().lower() == "fallback" else "error"

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    scoring_config = ScoringConfig(
        default_algorithm=os.getenv("EWS_DEFAULT_ALGORITHM", DEFAULT_ALGORITHM),
        unknown_algorithm_policy=_policy_to_literal(
            os.getenv("EWS_UNKNOWN_ALGORITHM_POLICY", "error")
        ),
    )

    monitoring_config = MonitoringConfig(
        tick_interval_seconds=float(os.getenv("MONITORING_TICK_INTERVAL_SECONDS", "30.0")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        scoring=scoring_config,
        monitoring=monitoring_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup, including the scoring registry lookup."""
    # Local import keeps config importable without the service layer
    from edflow.services.scoring import get_algorithm

    try:
        config = get_config()
        get_algorithm(config.scoring.default_algorithm)
        print(f"Configuration loaded for {config.environment} environment")
    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nSCORING")
    print(f"Default Algorithm: {config.scoring.default_algorithm}")
    print(f"Unknown Algorithm Policy: {config.scoring.unknown_algorithm_policy}")

    print("\nMONITORING")
    print(f"Tick Interval: {config.monitoring.tick_interval_seconds}s")
    print(
        "Observation Intervals: "
        f"{config.monitoring.high_interval_minutes}m / "
        f"{config.monitoring.medium_interval_minutes}m / "
        f"{config.monitoring.low_interval_minutes}m"
    )


if __name__ == "__main__":
    validate_config()
    print_config_summary()
