import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.database import AsyncSessionLocal
from app.errors import ArchiveTimeoutError, StorageError
from app.services.archiving import ArchivingScheduler
from models.space import VirtualSpace, SpaceStatus
from models.user import UserRole


async def expired_space(factory, tutor):
    now = datetime.utcnow()
    return await factory.space(tutor, start=now - timedelta(hours=2), end=now - timedelta(minutes=5))


async def status_of(space_id):
    async with AsyncSessionLocal() as db:
        return (await db.execute(select(VirtualSpace.status).where(VirtualSpace.id == space_id))).scalar_one()


@pytest.mark.asyncio
async def test_start_twice_keeps_a_single_timer():
    scheduler = ArchivingScheduler(interval_seconds=3600)
    scheduler.start()
    first = scheduler._timer_task
    scheduler.start()
    second = scheduler._timer_task
    await asyncio.sleep(0.01)

    assert first is not second
    assert first.cancelled() or first.done()
    assert scheduler.running
    scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_stop_without_start_is_a_no_op():
    scheduler = ArchivingScheduler(interval_seconds=3600)
    scheduler.stop()
    scheduler.stop()
    assert not scheduler.running
    await scheduler.drain()


@pytest.mark.asyncio
async def test_timer_sweeps_on_each_interval(factory):
    tutor = await factory.user(UserRole.TUTOR)
    space = await expired_space(factory, tutor)
    scheduler = ArchivingScheduler(interval_seconds=0.05, archive_timeout=10)
    scheduler.start()
    try:
        for _ in range(100):
            if await status_of(space.id) == SpaceStatus.ARCHIVED.value:
                break
            await asyncio.sleep(0.05)
    finally:
        scheduler.stop()
        await scheduler.drain()
    assert await status_of(space.id) == SpaceStatus.ARCHIVED.value


@pytest.mark.asyncio
async def test_run_on_start_sweeps_immediately(factory, monkeypatch):
    scheduler = ArchivingScheduler(interval_seconds=3600, run_on_start=True)
    swept = asyncio.Event()

    async def fake_sweep(now=None):
        swept.set()
        return 0

    monkeypatch.setattr(scheduler, "archive_expired_spaces", fake_sweep)
    scheduler.start()
    try:
        await asyncio.wait_for(swept.wait(), timeout=2)
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_overlapping_sweep_is_skipped(factory, archiver):
    tutor = await factory.user(UserRole.TUTOR)
    space = await expired_space(factory, tutor)

    async with archiver._sweep_lock:
        assert archiver.sweeping
        assert await archiver.archive_expired_spaces() == 0
        assert await status_of(space.id) == SpaceStatus.ACTIVE.value

    assert await archiver.archive_expired_spaces() == 1


@pytest.mark.asyncio
async def test_stop_lets_the_running_sweep_finish(factory, archiver, monkeypatch):
    tutor = await factory.user(UserRole.TUTOR)
    space = await expired_space(factory, tutor)
    release = asyncio.Event()
    original = archiver._archive_space

    async def slow_archive(space_id, actor_id, *, force):
        await release.wait()
        return await original(space_id, actor_id, force=force)

    monkeypatch.setattr(archiver, "_archive_space", slow_archive)
    archiver.interval_seconds = 0.01
    archiver.start()
    while not archiver.sweeping:
        await asyncio.sleep(0.01)

    archiver.stop()
    release.set()
    await archiver.drain()

    assert await status_of(space.id) == SpaceStatus.ARCHIVED.value


@pytest.mark.asyncio
async def test_failing_space_does_not_stop_the_sweep(factory, archiver, monkeypatch):
    tutor = await factory.user(UserRole.TUTOR)
    broken = await expired_space(factory, tutor)
    healthy = await expired_space(factory, tutor)
    original = archiver._archive_space

    async def flaky_archive(space_id, actor_id, *, force):
        if space_id == broken.id:
            raise StorageError("disk full")
        return await original(space_id, actor_id, force=force)

    monkeypatch.setattr(archiver, "_archive_space", flaky_archive)

    assert await archiver.archive_expired_spaces() == 1
    assert await status_of(broken.id) == SpaceStatus.ACTIVE.value
    assert await status_of(healthy.id) == SpaceStatus.ARCHIVED.value

    # the next sweep picks the leftover space up again
    monkeypatch.setattr(archiver, "_archive_space", original)
    assert await archiver.archive_expired_spaces() == 1
    assert await status_of(broken.id) == SpaceStatus.ARCHIVED.value


@pytest.mark.asyncio
async def test_slow_archive_times_out(factory, monkeypatch):
    tutor = await factory.user(UserRole.TUTOR)
    space = await expired_space(factory, tutor)
    scheduler = ArchivingScheduler(interval_seconds=3600, archive_timeout=0.05)

    async def hanging_archive(space_id, actor_id, *, force):
        await asyncio.sleep(5)

    monkeypatch.setattr(scheduler, "_archive_space", hanging_archive)

    with pytest.raises(ArchiveTimeoutError):
        await scheduler.archive_space(space.id)
    # a timed out space is counted as failed, not archived
    assert await scheduler.archive_expired_spaces() == 0
    assert await status_of(space.id) == SpaceStatus.ACTIVE.value


def test_explicit_zero_settings_are_kept():
    scheduler = ArchivingScheduler(interval_seconds=0, archive_timeout=0, run_on_start=False)
    assert scheduler.interval_seconds == 0
    assert scheduler.archive_timeout == 0
    assert scheduler.run_on_start is False
