"""Unit tests for RetryPolicy."""

from __future__ import annotations

import asyncio

import pytest

from govrun.config.models import ReconcilerConfig
from govrun.errors import ScheduleConflictError, StoreUnavailableError, TransientStoreError
from govrun.schedules.retry import RetryPolicy


def test_calculate_delay_is_bounded_exponential() -> None:
    policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=3.0)
    assert [policy.calculate_delay(i) for i in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_from_config_maps_fields() -> None:
    policy = RetryPolicy.from_config(
        ReconcilerConfig(max_retries=4, retry_base_delay_seconds=0.1, store_timeout_seconds=2.0)
    )
    assert policy.max_attempts == 5
    assert policy.base_delay_seconds == 0.1
    assert policy.timeout_seconds == 2.0


@pytest.mark.asyncio
async def test_call_retries_transient_then_succeeds() -> None:
    attempts = {"n": 0}
    retried: list[tuple[str, int]] = []

    async def flaky() -> str:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise TransientStoreError("describe", "blip")
        return "ok"

    policy = RetryPolicy(max_retries=3, base_delay_seconds=0.0, max_delay_seconds=0.0)
    result = await policy.call("describe", "s1", flaky, on_retry=lambda op, n, _e: retried.append((op, n)))
    assert result == "ok"
    assert retried == [("describe", 1), ("describe", 2)]


@pytest.mark.asyncio
async def test_call_exhausted_raises_store_unavailable() -> None:
    async def always_down() -> None:
        raise TransientStoreError("create", "down")

    policy = RetryPolicy(max_retries=2, base_delay_seconds=0.0, max_delay_seconds=0.0)
    with pytest.raises(StoreUnavailableError) as exc_info:
        await policy.call("create", "s1", always_down)
    assert exc_info.value.attempts == 3
    assert exc_info.value.operation == "create"
    assert isinstance(exc_info.value.__cause__, TransientStoreError)


@pytest.mark.asyncio
async def test_call_treats_timeout_as_transient() -> None:
    calls = {"n": 0}

    async def slow_once() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            await asyncio.sleep(1.0)
        return "done"

    policy = RetryPolicy(max_retries=1, base_delay_seconds=0.0, max_delay_seconds=0.0, timeout_seconds=0.05)
    assert await policy.call("describe", "s1", slow_once) == "done"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_call_does_not_retry_conflicts() -> None:
    calls = {"n": 0}

    async def conflict() -> None:
        calls["n"] += 1
        raise ScheduleConflictError("s1")

    with pytest.raises(ScheduleConflictError):
        await RetryPolicy(max_retries=3).call("create", "s1", conflict)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_timed_out_write_confirmed_by_verify_is_not_resent() -> None:
    calls = {"write": 0, "verify": 0}

    async def write_then_stall() -> None:
        calls["write"] += 1
        await asyncio.sleep(1.0)

    async def landed() -> bool:
        calls["verify"] += 1
        return True

    policy = RetryPolicy(max_retries=3, base_delay_seconds=0.0, max_delay_seconds=0.0, timeout_seconds=0.05)
    assert await policy.call("create", "s1", write_then_stall, verify=landed) is None
    assert calls == {"write": 1, "verify": 1}


@pytest.mark.asyncio
async def test_timed_out_write_not_confirmed_is_retried() -> None:
    calls = {"write": 0}

    async def stall_once() -> str:
        calls["write"] += 1
        if calls["write"] == 1:
            await asyncio.sleep(1.0)
        return "written"

    async def not_landed() -> bool:
        return False

    policy = RetryPolicy(max_retries=1, base_delay_seconds=0.0, max_delay_seconds=0.0, timeout_seconds=0.05)
    assert await policy.call("update", "s1", stall_once, verify=not_landed) == "written"
    assert calls["write"] == 2


@pytest.mark.asyncio
async def test_verify_failure_falls_back_to_retry() -> None:
    calls = {"write": 0}

    async def stall_once() -> str:
        calls["write"] += 1
        if calls["write"] == 1:
            await asyncio.sleep(1.0)
        return "written"

    async def verify_down() -> bool:
        raise TransientStoreError("describe", "blip")

    policy = RetryPolicy(max_retries=1, base_delay_seconds=0.0, max_delay_seconds=0.0, timeout_seconds=0.05)
    assert await policy.call("create", "s1", stall_once, verify=verify_down) == "written"
    assert calls["write"] == 2


@pytest.mark.asyncio
async def test_verify_is_only_consulted_after_timeouts() -> None:
    attempts = {"n": 0}
    verified = {"n": 0}

    async def flaky() -> str:
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise TransientStoreError("create", "refused")
        return "ok"

    async def landed() -> bool:
        verified["n"] += 1
        return True

    policy = RetryPolicy(max_retries=2, base_delay_seconds=0.0, max_delay_seconds=0.0)
    assert await policy.call("create", "s1", flaky, verify=landed) == "ok"
    assert verified["n"] == 0
