"""Configuration models for govrun."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from govrun.integrations.hatchet import HatchetConfig


class ReconcilerConfig(BaseModel):
    """Schedule reconciliation settings."""

    enabled: bool = Field(default=True)
    max_concurrent: int = Field(default=10, ge=1)
    store_timeout_seconds: float = Field(default=10.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay_seconds: float = Field(default=0.5, ge=0.0)
    retry_max_delay_seconds: float = Field(default=8.0, ge=0.0)
    schedule_prefix: str = Field(default="governance:")
    prune_removed: bool = Field(default=True)
    resume_paused: bool = Field(default=True)


class StabilityConfig(BaseModel):
    """Weighting of cached-prefix stability violations against the model call ceiling."""

    weight: float = Field(default=1.0, ge=0.0)
    escalation: Literal["linear", "exponential"] = Field(default="linear")


class BudgetConfig(BaseModel):
    """Default per-run budget."""

    max_model_calls: int = Field(default=50, ge=0)
    max_tool_invocations: int = Field(default=200, ge=0)
    max_duration_seconds: float = Field(default=900.0, ge=0.0)
    max_spend_usd: float = Field(default=5.0, ge=0.0)
    require_stable_cached_prefix: bool = Field(default=True)
    stability: StabilityConfig = Field(default_factory=StabilityConfig)
    tick_interval_seconds: float = Field(default=5.0, gt=0.0)


class ScheduleDeclaration(BaseModel):
    """One declared schedule as written in govrun.yaml."""

    schedule_id: str | None = None
    charter: str | None = None
    cron: str
    timezone: str | None = None
    entrypoint: str
    model: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)


class GovernanceConfig(BaseModel):
    """Governance schedule declarations and their defaults."""

    enabled: bool = Field(default=True)
    default_model: str = Field(default="deepseek-v3.2")
    default_timezone: str = Field(default="UTC")
    schedules: list[ScheduleDeclaration] = Field(default_factory=list)


class GovrunConfig(BaseSettings):
    """Root configuration model for govrun."""

    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)
    hatchet: HatchetConfig = Field(default_factory=HatchetConfig)

    model_config = SettingsConfigDict(
        env_prefix="GOVRUN_",
        env_nested_delimiter="__",
        extra="ignore",
    )
