import asyncio

import pytest

from am_ingest.config import BackfillSettings
from am_ingest.pipelines.backfill import BackfillScheduler
from am_ingest.pipelines.records import AssetPayload
from gdrive.resolver import IdentifierResolver

from .fakes import FakeDrive, drive_settings, make_client


async def seed_assets(store, ids):
    for asset_id in ids:
        await store.upsert_asset(AssetPayload(id=asset_id, predicted_ids=[], scores=[]))


def build_scheduler(store, fake, *, batch_size=20, interval_seconds=3600.0):
    config = drive_settings()
    resolver = IdentifierResolver(store, make_client(fake, config), config)
    return BackfillScheduler(
        store,
        resolver,
        BackfillSettings(batch_size=batch_size, interval_seconds=interval_seconds),
    )


class BlockingResolver:
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def resolve_batch(self, ids):
        self.entered.set()
        await self.release.wait()
        return {asset_id: f"f{asset_id}" for asset_id in ids}


@pytest.mark.asyncio
async def test_cycle_resolves_and_never_reselects(store):
    await seed_assets(store, ["1", "2", "3", "4", "5"])
    fake = FakeDrive({"1.jpg": "f1", "2.jpg": "f2", "3.png": "f3"})
    scheduler = build_scheduler(store, fake)

    summary = await scheduler.run_cycle()

    assert summary.as_dict() == {"selected": 5, "resolved": 3, "unresolved": 2, "skipped": False}
    assert await store.get_identifiers(["1", "2", "3"]) == {"1": "f1", "2": "f2", "3": "f3"}
    assert sorted(await store.list_missing_identifiers(20)) == ["4", "5"]


@pytest.mark.asyncio
async def test_unresolved_ids_rotate_to_back_of_queue(store):
    await seed_assets(store, ["1", "2", "3", "4"])
    fake = FakeDrive({})
    scheduler = build_scheduler(store, fake, batch_size=2)

    await scheduler.run_cycle()
    first = fake.list_calls[-1].url.params["q"]
    await scheduler.run_cycle()
    second = fake.list_calls[-1].url.params["q"]

    assert "name='1.jpg'" in first and "name='2.jpg'" in first
    assert "name='3.jpg'" in second and "name='4.jpg'" in second
    assert "name='1.jpg'" not in second


@pytest.mark.asyncio
async def test_empty_queue_is_a_noop(store):
    fake = FakeDrive({})
    scheduler = build_scheduler(store, fake)

    summary = await scheduler.run_cycle()

    assert summary.selected == 0
    assert fake.requests == []


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(store):
    await seed_assets(store, ["1"])
    resolver = BlockingResolver()
    scheduler = BackfillScheduler(store, resolver, BackfillSettings())

    first = asyncio.create_task(scheduler.run_cycle())
    await asyncio.wait_for(resolver.entered.wait(), timeout=5)

    overlapping = await scheduler.run_cycle()
    resolver.release.set()
    completed = await first

    assert overlapping.skipped is True
    assert completed.resolved == 1


@pytest.mark.asyncio
async def test_start_stop_lifecycle(store):
    await seed_assets(store, ["1", "2"])
    fake = FakeDrive({"1.jpg": "f1", "2.jpg": "f2"})
    scheduler = build_scheduler(store, fake)

    assert scheduler.start(batch_size=5) is True
    assert scheduler.is_running
    assert scheduler.start() is False
    assert scheduler.batch_size == 5

    for _ in range(100):
        if await store.count_missing_identifiers() == 0:
            break
        await asyncio.sleep(0.05)
    assert await store.count_missing_identifiers() == 0

    assert scheduler.stop() is True
    await scheduler.aclose()
    assert not scheduler.is_running
    assert scheduler.stop() is False
    await scheduler.resolver.client.aclose()


@pytest.mark.asyncio
async def test_scheduler_can_be_restarted(store):
    scheduler = build_scheduler(store, FakeDrive({}))

    scheduler.start()
    await scheduler.aclose()
    assert scheduler.start() is True
    await scheduler.aclose()

    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_start_during_stopping_cycle_keeps_loop_alive(store):
    await seed_assets(store, ["1"])
    resolver = BlockingResolver()
    scheduler = BackfillScheduler(store, resolver, BackfillSettings(interval_seconds=3600))

    scheduler.start()
    await asyncio.wait_for(resolver.entered.wait(), timeout=5)
    assert scheduler.stop() is True

    assert scheduler.start() is True
    resolver.release.set()
    for _ in range(20):
        await asyncio.sleep(0.01)

    assert scheduler.is_running
    await scheduler.aclose()
    assert not scheduler.is_running
