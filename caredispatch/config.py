"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Job periods and batch bounds live here, not in the services
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class SchedulerConfig(BaseModel):
    """Reminder scheduler configuration."""

    tick_interval_seconds: float = Field(
        default=3600.0, gt=0.0, description="Nominal period between reminder ticks"
    )
    lookahead_minutes: int = Field(
        default=60, gt=0, description="Reminders due within this window are fired"
    )
    claim_lease_seconds: float = Field(
        default=300.0, gt=0.0, description="How long a claimed reminder stays exclusive"
    )
    max_concurrent_items: int = Field(
        default=10, gt=0, description="Reminders processed concurrently within one tick"
    )
    catch_up_overdue: bool = Field(
        default=True, description="Also fire reminders whose due time is already past"
    )


class DispatcherConfig(BaseModel):
    """Notification dispatcher configuration."""

    sweep_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Period of the deferred-notification sweep"
    )
    sweep_batch_size: int = Field(
        default=500, gt=0, description="Scheduled notifications handled per sweep"
    )
    push_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Upper bound for one push or SMS attempt"
    )
    claim_lease_seconds: float = Field(
        default=120.0, gt=0.0, description="How long a claimed notification stays exclusive"
    )
    max_concurrent_deliveries: int = Field(
        default=10, gt=0, description="Deliveries in flight at once"
    )


class AuditConfig(BaseModel):
    """Audit ledger retention configuration."""

    retention_months: int = Field(default=6, gt=0, description="Records older are swept")
    retention_batch_size: int = Field(
        default=1000, gt=0, le=10_000, description="Records deleted per batch"
    )
    sweep_interval_seconds: float = Field(
        default=86400.0, gt=0.0, description="Period of the retention sweep"
    )
    max_batches_per_sweep: int = Field(
        default=10, gt=0, description="Upper bound on batches one sweep may run"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    service_name: str = Field(default="care-dispatch", description="Reported by health checks")

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
    v = val.strip().lower()
    if v in {"dev", "development"}:
        return "development"
    if v in {"stage", "staging"}:
        return "staging"
    return "production"


def _level_to_literal(val: str) -> LogLevel:
    v = val.strip().upper()
    return cast(LogLevel, v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO")


def _parse_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    scheduler_config = SchedulerConfig(
        tick_interval_seconds=float(os.getenv("REMINDER_TICK_INTERVAL_SECONDS", "3600")),
        lookahead_minutes=int(os.getenv("REMINDER_LOOKAHEAD_MINUTES", "60")),
        claim_lease_seconds=float(os.getenv("REMINDER_CLAIM_LEASE_SECONDS", "300")),
        max_concurrent_items=int(os.getenv("REMINDER_MAX_CONCURRENT_ITEMS", "10")),
        catch_up_overdue=_parse_bool(os.getenv("REMINDER_CATCH_UP_OVERDUE"), True),
    )

    dispatcher_config = DispatcherConfig(
        sweep_interval_seconds=float(os.getenv("NOTIFICATION_SWEEP_INTERVAL_SECONDS", "60")),
        sweep_batch_size=int(os.getenv("NOTIFICATION_SWEEP_BATCH_SIZE", "500")),
        push_timeout_seconds=float(os.getenv("PUSH_TIMEOUT_SECONDS", "10")),
        claim_lease_seconds=float(os.getenv("NOTIFICATION_CLAIM_LEASE_SECONDS", "120")),
        max_concurrent_deliveries=int(os.getenv("MAX_CONCURRENT_DELIVERIES", "10")),
    )

    audit_config = AuditConfig(
        retention_months=int(os.getenv("AUDIT_RETENTION_MONTHS", "6")),
        retention_batch_size=int(os.getenv("AUDIT_RETENTION_BATCH_SIZE", "1000")),
        sweep_interval_seconds=float(os.getenv("AUDIT_SWEEP_INTERVAL_SECONDS", "86400")),
        max_batches_per_sweep=int(os.getenv("AUDIT_MAX_BATCHES_PER_SWEEP", "10")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=_parse_bool(os.getenv("DEBUG"), debug),
        service_name=os.getenv("SERVICE_NAME", "care-dispatch"),
        scheduler=scheduler_config,
        dispatcher=dispatcher_config,
        audit=audit_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def reset_config_cache() -> None:
    """Drop the cached configuration so the next get_config() re-reads the env."""
    get_config.cache_clear()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"✅ Configuration loaded for {config.environment} environment")
    except Exception as e:
        print(f"❌ Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\n⏰ REMINDER SCHEDULER")
    print(f"Tick Interval: {config.scheduler.tick_interval_seconds}s")
    print(f"Lookahead: {config.scheduler.lookahead_minutes}m")
    print(f"Catch Up Overdue: {config.scheduler.catch_up_overdue}")

    print("\n📨 NOTIFICATION DISPATCHER")
    print(f"Sweep Interval: {config.dispatcher.sweep_interval_seconds}s")
    print(f"Push Timeout: {config.dispatcher.push_timeout_seconds}s")

    print("\n🗄️  AUDIT LEDGER")
    print(f"Retention: {config.audit.retention_months} months")
    print(f"Batch Size: {config.audit.retention_batch_size}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
