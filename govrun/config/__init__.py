"""Unified configuration system for govrun."""

from govrun.config.loader import YAMLConfigLoader
from govrun.config.manager import ConfigManager, ReloadResult
from govrun.config.models import (
    BudgetConfig,
    GovernanceConfig,
    GovrunConfig,
    HatchetConfig,
    ReconcilerConfig,
    ScheduleDeclaration,
    StabilityConfig,
)
from govrun.errors import ConfigLoadError

__all__ = [
    "BudgetConfig",
    "ConfigLoadError",
    "ConfigManager",
    "GovernanceConfig",
    "GovrunConfig",
    "HatchetConfig",
    "ReconcilerConfig",
    "ReloadResult",
    "ScheduleDeclaration",
    "StabilityConfig",
    "YAMLConfigLoader",
]
