"""CLI tools: govrun init, govrun sync, govrun worker."""

import sys
from importlib import metadata

import typer

from govrun.cli.init_config import init_config_command
from govrun.cli.sync import STORE_CHOICES, sync_command
from govrun.cli.worker import worker_command

app = typer.Typer(
    name="govrun",
    help="govrun: governance schedule reconciliation and run budgets.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if not value:
        return
    try:
        version = metadata.version("govrun")
    except metadata.PackageNotFoundError:
        version = "unknown"
    typer.echo(f"govrun {version}")
    raise typer.Exit(0)


@app.callback()
def root(
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """govrun command line."""


@app.command("init")
def init_command(
    path: str = typer.Option(".", "--path", help="Output directory"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing govrun.yaml"),
) -> None:
    """Generate default govrun.yaml in target directory."""
    try:
        init_config_command(path=path, force=force)
    except FileExistsError as exc:
        typer.echo(f"Error: {exc} (use --force to overwrite)", err=True)
        raise typer.Exit(1) from exc


@app.command("sync")
def sync(
    config: str = typer.Option("", "--config", help="Optional config file path"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Describe and compare without writing"),
    store: str = typer.Option("hatchet", "--store", help="Schedule store: hatchet or memory"),
    output_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    watch: bool = typer.Option(False, "--watch", help="Keep sweeping and reload govrun.yaml between passes"),
    interval: float = typer.Option(60.0, "--interval", min=0.1, help="Seconds between watch passes"),
    passes: int = typer.Option(
        0, "--passes", min=0, help="Stop watching after N passes (0 = run until interrupted)"
    ),
) -> None:
    """Reconcile declared governance schedules with the schedule store."""
    normalized = store.strip().lower()
    if normalized not in STORE_CHOICES:
        raise typer.BadParameter(f"store must be one of: {', '.join(STORE_CHOICES)}", param_hint="--store")
    sync_command(
        config=config or None,
        dry_run=dry_run,
        store=normalized,
        output_json=output_json,
        watch=watch,
        interval=interval,
        passes=passes or None,
    )


@app.command("worker")
def worker(
    config: str = typer.Option("", "--config", help="Optional config file path"),
    body: str = typer.Option("", "--body", help="Default run body as 'package.module:function'"),
) -> None:
    """Serve scheduled governance runs from Hatchet (blocking)."""
    worker_command(config=config or None, body=body or None)


def main() -> None:
    """CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)
