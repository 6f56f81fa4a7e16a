"""Repeated reconciliation sweeps that follow edits to govrun.yaml."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from pydantic import ValidationError

from govrun.config.manager import ConfigManager, ReloadResult
from govrun.config.models import GovrunConfig
from govrun.errors import ConfigLoadError
from govrun.metrics import GovrunMetrics
from govrun.schedules.desired import DesiredStateSource
from govrun.schedules.models import SweepReport
from govrun.schedules.reconciler import ScheduleReconciler
from govrun.schedules.store import ScheduleStore

logger = logging.getLogger(__name__)


class SyncWatcher:
    """Sweep on an interval and reload configuration between passes.

    Schedule declarations are re-read by the desired-state source on every
    pass. Reconciler settings come from the :class:`ConfigManager`; when a
    reload changes them the reconciler is rebuilt before the next pass.
    """

    def __init__(
        self,
        manager: ConfigManager,
        store: ScheduleStore,
        source: DesiredStateSource,
        *,
        metrics: GovrunMetrics | None = None,
    ) -> None:
        self._manager = manager
        self._store = store
        self._source = source
        self.metrics = metrics or GovrunMetrics()
        self._config = manager.get()
        self.reconciler = self._build_reconciler(self._config)
        manager.on_change(self._on_config_change)

    def _build_reconciler(self, config: GovrunConfig) -> ScheduleReconciler:
        return ScheduleReconciler(self._store, self._source, config=config.reconciler, metrics=self.metrics)

    def _on_config_change(self, old: GovrunConfig, new: GovrunConfig) -> None:
        self._config = new
        if old.reconciler != new.reconciler:
            logger.info("sync_watch_reconciler_rebuilt")
            self.reconciler = self._build_reconciler(new)

    @property
    def enabled(self) -> bool:
        return self._config.reconciler.enabled and self._config.governance.enabled

    def reload(self) -> ReloadResult | None:
        """Reload configuration; a broken file is logged and the old config kept."""
        try:
            return self._manager.reload()
        except (ConfigLoadError, ValidationError) as exc:
            logger.warning("sync_watch_reload_failed error=%s", exc)
            return None

    async def run_once(self, *, dry_run: bool = False) -> SweepReport | None:
        if not self.enabled:
            logger.info("sync_watch_pass_skipped reason=disabled")
            return None
        try:
            return await self.reconciler.sweep(dry_run=dry_run)
        except ConfigLoadError as exc:
            logger.warning("sync_watch_pass_failed error=%s", exc)
            return None

    async def run(
        self,
        *,
        interval: float,
        dry_run: bool = False,
        passes: int | None = None,
        on_report: Callable[[SweepReport], None] | None = None,
    ) -> int:
        """Sweep every *interval* seconds; stop after *passes* sweeps if given.

        Returns the number of passes run.
        """
        completed = 0
        while passes is None or completed < passes:
            if completed:
                await asyncio.sleep(interval)
                self.reload()
            report = await self.run_once(dry_run=dry_run)
            completed += 1
            if report is not None and on_report is not None:
                on_report(report)
        return completed
