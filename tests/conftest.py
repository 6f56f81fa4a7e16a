"""Shared test fixtures for govrun."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from govrun.config.manager import ConfigManager
from govrun.config.models import ReconcilerConfig
from govrun.integrations.hatchet import HatchetClient
from govrun.schedules.models import ScheduleDescriptor
from govrun.schedules.store import InMemoryScheduleStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop GOVRUN_/HATCHET_ variables and reset the config singleton."""
    for key in list(os.environ):
        if key.startswith(("GOVRUN_", "HATCHET_")):
            monkeypatch.delenv(key, raising=False)
    ConfigManager._reset_for_tests()
    yield
    ConfigManager._reset_for_tests()


@pytest.fixture
def make_descriptor() -> Callable[..., ScheduleDescriptor]:
    def _make(
        schedule_id: str = "governance:community",
        *,
        cron: str = "0 * * * *",
        time_zone: str = "UTC",
        entrypoint: str = "COMMUNITY",
        model: str = "model-a",
        extra: dict[str, Any] | None = None,
    ) -> ScheduleDescriptor:
        payload = {"message": entrypoint, "model": model, **(extra or {})}
        return ScheduleDescriptor(
            schedule_id=schedule_id,
            cron_expression=cron,
            time_zone=time_zone,
            entrypoint=entrypoint,
            model_id=model,
            input_payload=payload,
        )

    return _make


@pytest.fixture
def store() -> InMemoryScheduleStore:
    return InMemoryScheduleStore()


@pytest.fixture
def fast_reconciler_config() -> ReconcilerConfig:
    """Reconciler settings with no backoff sleeps and a short store timeout."""
    return ReconcilerConfig(
        max_concurrent=4,
        store_timeout_seconds=0.2,
        max_retries=2,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
    )


@pytest.fixture
def mock_hatchet_client() -> MagicMock:
    """HatchetClient double with async cron methods."""
    client = MagicMock(spec=HatchetClient)
    client.list_crons = AsyncMock(return_value=[])
    client.create_cron = AsyncMock(return_value="cron-1")
    client.delete_cron = AsyncMock(return_value=None)
    return client
