"""Unit tests for desired-state sources and declaration materialization."""

from __future__ import annotations

from pathlib import Path

import pytest

from govrun.config.models import ScheduleDeclaration
from govrun.errors import ConfigLoadError, InvalidDesiredStateError
from govrun.schedules.desired import (
    StaticDesiredStateSource,
    YAMLDesiredStateSource,
    declaration_id,
    materialize,
)


def _decl(**fields) -> ScheduleDeclaration:
    base = {"cron": "0 * * * *", "entrypoint": "COMMUNITY", "model": "model-a", "timezone": "UTC"}
    base.update(fields)
    return ScheduleDeclaration.model_validate(base)


def test_declaration_id_from_charter_is_prefixed_and_lowercased() -> None:
    assert declaration_id(_decl(charter="COMMUNITY"), "governance:") == "governance:community"


def test_explicit_schedule_id_wins_over_charter() -> None:
    assert declaration_id(_decl(schedule_id="gov-eng", charter="ENG"), "governance:") == "gov-eng"


def test_declaration_without_any_id_is_invalid() -> None:
    with pytest.raises(InvalidDesiredStateError) as exc_info:
        materialize(_decl(), "governance:")
    assert exc_info.value.schedule_id == "<unnamed>"


def test_materialize_builds_payload_with_message_and_model() -> None:
    descriptor = materialize(_decl(charter="COMMUNITY", input={"priority": "high"}), "governance:")
    assert descriptor.schedule_id == "governance:community"
    assert descriptor.input_payload == {"message": "COMMUNITY", "model": "model-a", "priority": "high"}
    assert descriptor.model_id == "model-a"


def test_materialize_rejects_input_overriding_reserved_keys() -> None:
    with pytest.raises(InvalidDesiredStateError, match="must not override 'model'"):
        materialize(_decl(charter="X", input={"model": "sneaky"}), "governance:")


def test_materialize_without_model_fails_fast() -> None:
    with pytest.raises(InvalidDesiredStateError, match="model is required"):
        materialize(_decl(charter="X", model=None), "governance:")


def test_materialize_invalid_cron_reports_schedule_id() -> None:
    with pytest.raises(InvalidDesiredStateError) as exc_info:
        materialize(_decl(charter="X", cron="not a cron"), "governance:")
    assert exc_info.value.schedule_id == "governance:x"


@pytest.mark.asyncio
async def test_static_source_applies_defaults() -> None:
    source = StaticDesiredStateSource(
        [{"charter": "COMMUNITY", "cron": "0 * * * *", "entrypoint": "COMMUNITY"}],
        default_model="deepseek-v3.2",
        default_timezone="Europe/Berlin",
    )
    [decl] = await source.load()
    assert decl.model == "deepseek-v3.2"
    assert decl.timezone == "Europe/Berlin"


@pytest.mark.asyncio
async def test_static_source_replace_is_seen_on_next_load() -> None:
    source = StaticDesiredStateSource([_decl(charter="A")])
    source.replace([_decl(charter="B"), _decl(charter="C")])
    loaded = await source.load()
    assert [d.charter for d in loaded] == ["B", "C"]


@pytest.mark.asyncio
async def test_yaml_source_rereads_file_each_pass(tmp_path: Path) -> None:
    cfg = tmp_path / "govrun.yaml"
    cfg.write_text(
        "governance:\n"
        "  default_model: model-a\n"
        "  schedules:\n"
        "    - charter: COMMUNITY\n"
        "      cron: '0 * * * *'\n"
        "      entrypoint: COMMUNITY\n",
        encoding="utf-8",
    )
    source = YAMLDesiredStateSource(cfg)
    first = await source.load()
    assert [d.charter for d in first] == ["COMMUNITY"]
    assert first[0].model == "model-a"
    assert first[0].timezone == "UTC"

    cfg.write_text(
        "governance:\n"
        "  schedules:\n"
        "    - schedule_id: gov-eng\n"
        "      cron: '0 * * * *'\n"
        "      entrypoint: ENGINEERING\n"
        "      model: model-b\n",
        encoding="utf-8",
    )
    second = await source.load()
    assert [d.schedule_id for d in second] == ["gov-eng"]
    assert second[0].model == "model-b"


@pytest.mark.asyncio
async def test_yaml_source_missing_file_is_empty(tmp_path: Path) -> None:
    assert await YAMLDesiredStateSource(tmp_path / "absent.yaml").load() == []


@pytest.mark.asyncio
async def test_yaml_source_structural_error_fails_the_pass(tmp_path: Path) -> None:
    cfg = tmp_path / "govrun.yaml"
    cfg.write_text("governance:\n  schedules:\n    - charter: X\n", encoding="utf-8")
    with pytest.raises(ConfigLoadError, match="Invalid governance section"):
        await YAMLDesiredStateSource(cfg).load()
