"""`govrun sync`: reconciliation sweeps against the configured store."""

from __future__ import annotations

import asyncio
import json

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from govrun.config import ConfigManager, GovrunConfig, YAMLConfigLoader
from govrun.errors import ConfigLoadError
from govrun.integrations.hatchet import HatchetClient
from govrun.schedules import (
    HatchetScheduleStore,
    InMemoryScheduleStore,
    ScheduleReconciler,
    ScheduleStore,
    SweepReport,
    SyncWatcher,
    YAMLDesiredStateSource,
)

console = Console()

STORE_CHOICES = ("hatchet", "memory")

_OUTCOME_STYLES = {
    "created": "green",
    "updated": "cyan",
    "resumed": "cyan",
    "unchanged": "dim",
    "paused": "yellow",
    "error": "red",
}


def build_store(kind: str, config: GovrunConfig) -> ScheduleStore:
    """Return the schedule store named by *kind*."""
    if kind == "memory":
        return InMemoryScheduleStore()
    if kind == "hatchet":
        client = HatchetClient(config.hatchet)
        client.connect()
        return HatchetScheduleStore(client, workflow_name=config.hatchet.workflow_name)
    raise typer.BadParameter(f"store must be one of: {', '.join(STORE_CHOICES)}")


def print_report(report: SweepReport) -> None:
    """Print the per-schedule outcome table."""
    title = "Schedule Sync (dry run)" if report.dry_run else "Schedule Sync"
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Schedule")
    table.add_column("Outcome")
    table.add_column("Detail", style="dim")
    for result in report.results:
        style = _OUTCOME_STYLES.get(result.outcome.value, "")
        outcome = f"[{style}]{result.outcome.value}[/{style}]" if style else result.outcome.value
        detail = result.detail or ""
        if result.error is not None:
            detail = f"{result.error_type}: {result.error}"
        table.add_row(result.schedule_id, outcome, detail)
    console.print(table)
    counts = ", ".join(f"{name}={count}" for name, count in report.counts().items() if count)
    console.print(f"Total: {len(report.results)} ({counts or 'nothing declared'})")


def emit_report(report: SweepReport, output_json: bool) -> None:
    if output_json:
        typer.echo(json.dumps({"dry_run": report.dry_run, "results": report.as_rows()}, indent=2))
    else:
        print_report(report)


def sync_command(
    *,
    config: str | None = None,
    dry_run: bool = False,
    store: str = "hatchet",
    output_json: bool = False,
    watch: bool = False,
    interval: float = 60.0,
    passes: int | None = None,
    store_impl: ScheduleStore | None = None,
) -> SweepReport | None:
    """Run one sweep and print its report. Exits with code 1 when any schedule failed.

    With ``watch`` the sweep repeats every ``interval`` seconds, reloading
    govrun.yaml before each pass, until interrupted or ``passes`` ran. The
    last report is returned and failures do not end the loop.
    """
    config_path = YAMLConfigLoader.resolve_path(config)
    try:
        manager = ConfigManager.load(config_path=str(config_path))
    except (ConfigLoadError, ValidationError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc
    cfg = manager.get()
    source = YAMLDesiredStateSource(config_path)

    if watch:
        watcher = SyncWatcher(manager, store_impl or build_store(store, cfg), source)
        reports: list[SweepReport] = []

        def on_report(report: SweepReport) -> None:
            reports.append(report)
            emit_report(report, output_json)

        if not output_json:
            console.print(f"Watching {config_path} every {interval:g}s")
        asyncio.run(watcher.run(interval=interval, dry_run=dry_run, passes=passes, on_report=on_report))
        return reports[-1] if reports else None

    if not cfg.reconciler.enabled or not cfg.governance.enabled:
        console.print("[yellow]Governance schedule sync is disabled; nothing to do.[/yellow]")
        return None

    target = store_impl or build_store(store, cfg)
    reconciler = ScheduleReconciler(target, source, config=cfg.reconciler)
    try:
        report = asyncio.run(reconciler.sweep(dry_run=dry_run))
    except ConfigLoadError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc

    emit_report(report, output_json)
    if not report.ok:
        raise typer.Exit(code=1)
    return report
