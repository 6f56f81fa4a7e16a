"""External integrations (isolated layer)."""

from govrun.integrations.hatchet import HatchetClient, HatchetConfig

__all__ = ["HatchetClient", "HatchetConfig"]
