"""Unit tests for govrun sync and govrun worker helpers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from govrun.cli import app
from govrun.cli.sync import sync_command
from govrun.cli.worker import build_launcher, load_callable
from govrun.budget.models import RunBudget
from govrun.config.models import BudgetConfig
from govrun.schedules.store import InMemoryScheduleStore

runner = CliRunner()

CONFIG = """
reconciler:
  max_retries: 0
governance:
  default_model: model-a
  schedules:
    - charter: COMMUNITY
      cron: "0 */6 * * *"
      entrypoint: COMMUNITY
    - charter: ENGINEERING
      cron: "0 9 * * 1-5"
      entrypoint: ENGINEERING
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "govrun.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


def test_sync_memory_store_json(config_file: Path) -> None:
    result = runner.invoke(app, ["sync", "--config", str(config_file), "--store", "memory", "--json"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["dry_run"] is False
    assert {row["schedule_id"]: row["outcome"] for row in data["results"]} == {
        "governance:community": "created",
        "governance:engineering": "created",
    }


def test_sync_table_output(config_file: Path) -> None:
    result = runner.invoke(app, ["sync", "--config", str(config_file), "--store", "memory", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "dry run" in result.stdout
    assert "created=2" in result.stdout


def test_sync_rejects_unknown_store(config_file: Path) -> None:
    result = runner.invoke(app, ["sync", "--config", str(config_file), "--store", "redis"])
    assert result.exit_code == 2


def test_sync_reuses_store_between_passes(config_file: Path) -> None:
    store = InMemoryScheduleStore()
    sync_command(config=str(config_file), store_impl=store)

    config_file.write_text(CONFIG.replace("    - charter: ENGINEERING\n      cron: \"0 9 * * 1-5\"\n      entrypoint: ENGINEERING\n", ""), encoding="utf-8")
    report = sync_command(config=str(config_file), store_impl=store)

    assert report.get("governance:community").outcome.value == "unchanged"
    assert report.get("governance:engineering").outcome.value == "paused"
    assert store.get("governance:engineering").paused is True


def test_sync_exits_1_when_a_schedule_fails(tmp_path: Path) -> None:
    path = tmp_path / "govrun.yaml"
    path.write_text(
        "governance:\n  schedules:\n    - charter: BAD\n      cron: every hour\n      entrypoint: BAD\n",
        encoding="utf-8",
    )
    with pytest.raises(typer.Exit) as exc_info:
        sync_command(config=str(path), store_impl=InMemoryScheduleStore())
    assert exc_info.value.exit_code == 1


def test_sync_exits_2_on_invalid_config(tmp_path: Path) -> None:
    path = tmp_path / "govrun.yaml"
    path.write_text("reconciler:\n  max_concurrent: 0\n", encoding="utf-8")
    result = runner.invoke(app, ["sync", "--config", str(path), "--store", "memory"])
    assert result.exit_code == 2


def test_sync_exits_2_on_broken_yaml(tmp_path: Path) -> None:
    path = tmp_path / "govrun.yaml"
    path.write_text("governance: [unclosed\n", encoding="utf-8")
    result = runner.invoke(app, ["sync", "--config", str(path), "--store", "memory"])
    assert result.exit_code == 2


def test_sync_disabled_governance_is_a_noop(tmp_path: Path) -> None:
    path = tmp_path / "govrun.yaml"
    path.write_text("governance:\n  enabled: false\n", encoding="utf-8")
    store = InMemoryScheduleStore()
    assert sync_command(config=str(path), store_impl=store) is None
    assert store.calls == {}


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("govrun ")


def test_load_callable_resolves_module_attribute() -> None:
    assert load_callable("json:dumps") is json.dumps


@pytest.mark.parametrize("spec", ["json", "json:", ":dumps", "json:decoder"])
def test_load_callable_rejects_bad_specs(spec: str) -> None:
    with pytest.raises(typer.BadParameter):
        load_callable(spec)


def test_build_launcher_uses_default_body() -> None:
    budget = RunBudget.from_config(BudgetConfig())
    launcher = build_launcher("json:dumps", budget)
    assert launcher.resolve("ANY") is json.dumps
    assert launcher.default_budget is budget


def test_sync_watch_runs_requested_passes(config_file: Path) -> None:
    result = runner.invoke(
        app,
        [
            "sync", "--config", str(config_file), "--store", "memory",
            "--watch", "--interval", "0.1", "--passes", "2", "--json",
        ],
    )

    assert result.exit_code == 0, result.output
    assert result.stdout.count('"dry_run"') == 2
    assert '"unchanged"' in result.stdout


def test_sync_watch_returns_last_report_and_keeps_going_on_failures(tmp_path: Path) -> None:
    path = tmp_path / "govrun.yaml"
    path.write_text(
        "governance:\n  schedules:\n    - charter: BAD\n      cron: every hour\n      entrypoint: BAD\n",
        encoding="utf-8",
    )
    store = InMemoryScheduleStore()

    report = sync_command(config=str(path), store_impl=store, watch=True, interval=0.0, passes=2)

    assert report is not None
    assert report.ok is False
    assert store.write_count == 0
