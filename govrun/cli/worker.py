"""`govrun worker`: serve scheduled governance runs from Hatchet."""

from __future__ import annotations

import importlib
from typing import Any

import typer
from rich.console import Console

from govrun.budget import RunBudget, RunLauncher, register_scheduled_run
from govrun.config import ConfigManager, YAMLConfigLoader
from govrun.integrations.hatchet import HatchetClient

console = Console()


def load_callable(spec: str) -> Any:
    """Import ``package.module:attribute`` and return the attribute."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name.strip() or not attr.strip():
        raise typer.BadParameter("run body must look like 'package.module:function'")
    module = importlib.import_module(module_name.strip())
    target: Any = module
    for part in attr.strip().split("."):
        target = getattr(target, part)
    if not callable(target):
        raise typer.BadParameter(f"{spec} is not callable")
    return target


def build_launcher(body: str | None, budget: RunBudget) -> RunLauncher:
    default_entrypoint = load_callable(body) if body else None
    return RunLauncher(default_budget=budget, default_entrypoint=default_entrypoint)


def worker_command(*, config: str | None = None, body: str | None = None) -> None:
    """Connect to Hatchet, register the scheduled-run task and block serving it."""
    config_path = YAMLConfigLoader.resolve_path(config)
    cfg = ConfigManager.load(config_path=str(config_path)).get()
    launcher = build_launcher(body, RunBudget.from_config(cfg.budget))

    client = HatchetClient(cfg.hatchet)
    client.connect()
    register_scheduled_run(client, launcher, name=cfg.hatchet.workflow_name)
    console.print(f"[green]Serving[/green] {cfg.hatchet.workflow_name} on {cfg.hatchet.server_url}")
    client.start_worker()
