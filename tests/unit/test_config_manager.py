"""ConfigManager: layering, listeners and section reload."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from govrun.config.manager import LIVE_SECTIONS, ConfigManager, ReloadResult, _collect_env_overrides
from govrun.config.models import GovrunConfig
from govrun.errors import ConfigLoadError


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "govrun.yaml"
    path.write_text(
        "reconciler:\n  max_retries: 2\n"
        "budget:\n  max_model_calls: 10\n"
        "governance:\n  default_model: model-a\n"
        "hatchet:\n  namespace: blue\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def listener_calls() -> list[tuple[GovrunConfig, GovrunConfig]]:
    return []


def _load(path: Path, **overrides) -> ConfigManager:  # type: ignore[no-untyped-def]
    return ConfigManager.load(config_path=str(path), overrides=overrides or None)


def test_instance_is_shared_and_reset_between_tests() -> None:
    first = ConfigManager.instance()
    assert ConfigManager.instance() is first
    assert first.get() == GovrunConfig()
    assert first.config_path is None


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    cfg = _load(tmp_path / "absent.yaml").get()
    assert cfg.reconciler.max_retries == 3
    assert cfg.hatchet.workflow_name == "governance_scheduled_run"


def test_layers_apply_in_precedence_order(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOVRUN_RECONCILER__MAX_RETRIES", "5")
    monkeypatch.setenv("GOVRUN_BUDGET__MAX_MODEL_CALLS", "30")

    cfg = _load(config_file, budget={"max_model_calls": 40}).get()

    assert cfg.governance.default_model == "model-a"  # yaml only
    assert cfg.reconciler.max_retries == 5  # env beats yaml
    assert cfg.budget.max_model_calls == 40  # overrides beat env


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("false", False),
        ("none", None),
        ("12", 12),
        ("0.25", 0.25),
        ('["a", "b"]', ["a", "b"]),
        ("governance:", "governance:"),
    ],
)
def test_env_values_are_coerced(monkeypatch: pytest.MonkeyPatch, raw: str, expected: object) -> None:
    monkeypatch.setenv("GOVRUN_RECONCILER__SCHEDULE_PREFIX", raw)
    assert _collect_env_overrides() == {"reconciler": {"schedule_prefix": expected}}


def test_config_path_variable_is_not_a_setting(monkeypatch: pytest.MonkeyPatch, config_file: Path) -> None:
    monkeypatch.setenv("GOVRUN_CONFIG", str(config_file))
    assert _collect_env_overrides() == {}


def test_hatchet_section_reads_env_references(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HATCHET_TOKEN_FOR_TESTS", "secret")
    path = tmp_path / "govrun.yaml"
    path.write_text("hatchet:\n  api_token: ${HATCHET_TOKEN_FOR_TESTS}\n", encoding="utf-8")
    assert _load(path).get().hatchet.api_token == "secret"


def test_invalid_file_keeps_previous_config(config_file: Path) -> None:
    manager = _load(config_file)
    before = manager.get()

    config_file.write_text("reconciler:\n  max_concurrent: 0\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        ConfigManager.load(config_path=str(config_file))

    assert manager.get() is before


def test_load_notifies_listeners(config_file: Path, listener_calls) -> None:  # type: ignore[no-untyped-def]
    manager = _load(config_file)
    manager.on_change(lambda old, new: listener_calls.append((old, new)))

    _load(config_file, reconciler={"max_retries": 4})

    assert len(listener_calls) == 1
    old, new = listener_calls[0]
    assert (old.reconciler.max_retries, new.reconciler.max_retries) == (2, 4)


def test_reload_swaps_live_sections(config_file: Path, listener_calls) -> None:  # type: ignore[no-untyped-def]
    manager = _load(config_file)
    manager.on_change(lambda old, new: listener_calls.append((old, new)))

    config_file.write_text(
        "reconciler:\n  max_retries: 6\n"
        "budget:\n  max_model_calls: 10\n"
        "governance:\n  default_model: model-b\n"
        "hatchet:\n  namespace: blue\n",
        encoding="utf-8",
    )
    result = manager.reload()

    assert result == ReloadResult(applied=("reconciler", "governance"))
    assert result.changed
    cfg = manager.get()
    assert cfg.reconciler.max_retries == 6
    assert cfg.governance.default_model == "model-b"
    assert [new for _, new in listener_calls] == [cfg]


def test_reload_leaves_hatchet_section_for_restart(config_file: Path, listener_calls) -> None:  # type: ignore[no-untyped-def]
    manager = _load(config_file)
    manager.on_change(lambda old, new: listener_calls.append((old, new)))

    config_file.write_text(config_file.read_text(encoding="utf-8").replace("blue", "green"), encoding="utf-8")
    result = manager.reload()

    assert result.applied == ()
    assert result.restart_required == ("hatchet",)
    assert manager.get().hatchet.namespace == "blue"
    assert listener_calls == []


def test_reload_without_edits_is_a_noop(config_file: Path) -> None:
    manager = _load(config_file)
    before = manager.get()

    result = manager.reload()

    assert not result.changed
    assert manager.get() is before


def test_reload_keeps_runtime_overrides(config_file: Path) -> None:
    manager = _load(config_file, budget={"max_model_calls": 99})
    config_file.write_text(
        config_file.read_text(encoding="utf-8").replace("max_retries: 2", "max_retries: 1"), encoding="utf-8"
    )

    manager.reload()

    assert manager.get().budget.max_model_calls == 99
    assert manager.get().reconciler.max_retries == 1


def test_reload_of_broken_yaml_raises_and_keeps_config(config_file: Path) -> None:
    manager = _load(config_file)
    before = manager.get()
    config_file.write_text("reconciler: [oops\n", encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        manager.reload()
    assert manager.get() is before


def test_live_sections_exclude_connection_settings() -> None:
    assert "hatchet" not in LIVE_SECTIONS
    assert set(LIVE_SECTIONS) < set(GovrunConfig.model_fields)
