"""Unit tests for InMemoryScheduleStore."""

from __future__ import annotations

import pytest

from govrun.errors import ScheduleConflictError, ScheduleNotFoundError, TransientStoreError
from govrun.schedules.store import InMemoryScheduleStore, ScheduleStore


def test_inmemory_store_satisfies_protocol(store: InMemoryScheduleStore) -> None:
    assert isinstance(store, ScheduleStore)


@pytest.mark.asyncio
async def test_create_then_describe_reports_hash(store, make_descriptor) -> None:
    descriptor = make_descriptor()
    await store.create(descriptor)
    state = await store.describe(descriptor.schedule_id)
    assert state.exists is True
    assert state.config_hash == descriptor.config_hash
    assert state.paused is False
    assert state.input_payload == descriptor.input_payload


@pytest.mark.asyncio
async def test_describe_missing_is_absent(store) -> None:
    state = await store.describe("governance:nope")
    assert state.exists is False
    assert state.config_hash is None


@pytest.mark.asyncio
async def test_create_existing_conflicts(store, make_descriptor) -> None:
    await store.create(make_descriptor())
    with pytest.raises(ScheduleConflictError):
        await store.create(make_descriptor())


@pytest.mark.asyncio
async def test_update_missing_raises_not_found(store, make_descriptor) -> None:
    with pytest.raises(ScheduleNotFoundError):
        await store.update(make_descriptor())


@pytest.mark.asyncio
async def test_update_keeps_pause_flag(store, make_descriptor) -> None:
    store.seed_descriptor(make_descriptor(model="model-b"), paused=True)
    await store.update(make_descriptor())
    state = await store.describe("governance:community")
    assert state.paused is True
    assert state.config_hash == make_descriptor().config_hash


@pytest.mark.asyncio
async def test_pause_resume_and_idempotent_delete(store, make_descriptor) -> None:
    await store.create(make_descriptor())
    await store.pause("governance:community")
    assert (await store.describe("governance:community")).paused is True
    await store.resume("governance:community")
    assert (await store.describe("governance:community")).paused is False
    await store.delete("governance:community")
    await store.delete("governance:community")
    assert "governance:community" not in store
    with pytest.raises(ScheduleNotFoundError):
        await store.pause("governance:community")


@pytest.mark.asyncio
async def test_list_schedule_ids_filters_prefix(store, make_descriptor) -> None:
    await store.create(make_descriptor("governance:b"))
    await store.create(make_descriptor("governance:a"))
    await store.create(make_descriptor("other:c"))
    assert await store.list_schedule_ids("governance:") == ["governance:a", "governance:b"]


@pytest.mark.asyncio
async def test_fail_next_injects_transient_errors(store) -> None:
    store.fail_next("describe", times=2)
    for _ in range(2):
        with pytest.raises(TransientStoreError):
            await store.describe("x")
    assert (await store.describe("x")).exists is False
    assert store.calls["describe"] == 3


@pytest.mark.asyncio
async def test_write_count_tracks_mutations(store, make_descriptor) -> None:
    await store.describe("governance:community")
    await store.create(make_descriptor())
    await store.pause("governance:community")
    assert store.write_count == 2
