"""
Scheduler settings.

All values can be overridden via environment variables prefixed with
``REPORT_SCHEDULER_`` (e.g. ``REPORT_SCHEDULER_MAX_CONCURRENT_EXECUTIONS=10``)
or a ``.env`` file.

Order of precedence (highest → lowest):
    1. Explicit keyword arguments
    2. Environment variables
    3. ``.env`` file
    4. Defaults below
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerSettings(BaseSettings):
    """Tuning knobs for the scheduling engine."""

    model_config = SettingsConfigDict(
        env_prefix="REPORT_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Execution queue ──────────────────────────────────────────
    max_concurrent_executions: int = Field(
        default=5, ge=1, description="Global cap on running executions (all tenants)"
    )
    tick_interval_seconds: float = Field(
        default=1.0, gt=0, description="Driver tick: timer heap poll + queue processing"
    )
    allow_overlapping_executions: bool = Field(
        default=False,
        description="Let a timer/trigger fire enqueue while the same schedule is in flight",
    )
    history_limit: int = Field(
        default=500, ge=1, description="Finished executions kept per schedule"
    )

    # ── Off-peak window ──────────────────────────────────────────
    off_peak_check_seconds: float = Field(
        default=60.0, gt=0, description="How often the off-peak reorder runs"
    )
    off_peak_start_hour: int = Field(
        default=22, ge=0, le=23, description="Off-peak when local hour is greater than this"
    )
    off_peak_end_hour: int = Field(
        default=6, ge=0, le=23, description="Off-peak when local hour is less than this"
    )
    off_peak_timezone: str | None = Field(
        default=None, description="IANA zone for the off-peak window (None = host local time)"
    )

    # ── Observability ────────────────────────────────────────────
    service_name: str = "report-scheduler"
    log_level: str = "INFO"
    json_logs: bool | None = None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache(maxsize=1)
def get_settings() -> SchedulerSettings:
    """Process-wide settings, read once from the environment."""
    return SchedulerSettings()


__all__ = ["SchedulerSettings", "get_settings"]
