"""Tests for the daily auto-claim sweep."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from maimai.cache import ResultCache
from maimai.clock import LocalClock
from maimai.db import Database
from maimai.dispatch import DispatchFacade
from maimai.errors import RemoteToolFailure, TransportFailure
from maimai.models import PlainText
from maimai.scheduler import CLAIM_TOOL, ClaimScheduler

TZ = "Asia/Shanghai"
# 02:00 UTC is 10:00 in Shanghai; 00:00 UTC is 08:00.
AFTER_GATE = datetime(2024, 5, 1, 2, 0, tzinfo=timezone.utc)
BEFORE_GATE = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)
TODAY = "2024-05-01"


class FakeClient:
    def __init__(self, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._error = error
        self._gate = gate

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> PlainText:
        self.calls.append((name, dict(arguments or {})))
        if self._gate is not None:
            await self._gate.wait()
        if self._error is not None:
            raise self._error
        return PlainText("**2** coupons claimed")


def _db(tmp_path) -> Database:
    db = Database(tmp_path / "maimai.db")
    db.initialize()
    return db


def _scheduler(db, client, now=AFTER_GATE, notifier=None, interval_seconds=600.0, sleep=None):
    facade = DispatchFacade(
        store=db,
        cache=ResultCache(ttl_seconds=300),
        cacheable_tools=frozenset({"now-time-info"}),
        client_factory=lambda token: client,
    )
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return ClaimScheduler(
        store=db,
        dispatcher=facade,
        clock=LocalClock(now=lambda: now),
        notifier=notifier or AsyncMock(),
        claim_hour=9,
        timezone=TZ,
        interval_seconds=interval_seconds,
        **kwargs,
    )


def _enabled_user(db, user_id="u1", last_date="2024-04-30"):
    db.upsert(user_id, token=f"tok-{user_id}", auto_claim_enabled=True, last_auto_claim_date=last_date)


@pytest.mark.asyncio
async def test_eligible_user_is_claimed_once_and_recorded(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    notifier = AsyncMock()
    scheduler = _scheduler(db, client, notifier=notifier)

    attempts = await scheduler.run_sweep()

    assert attempts == 1
    assert client.calls == [(CLAIM_TOOL, {})]
    user = db.get("u1")
    assert user.last_auto_claim_date == TODAY
    assert user.last_auto_claim_at == "2024-05-01 10:00:00"
    assert user.last_auto_claim_status == "success"
    notifier.assert_awaited_once()
    user_id, text = notifier.await_args.args
    assert user_id == "u1"
    assert TODAY in text
    assert "<b>2</b> coupons claimed" in text


@pytest.mark.asyncio
async def test_second_tick_same_day_makes_no_call(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    scheduler = _scheduler(db, client)

    await scheduler.run_sweep()
    assert await scheduler.run_sweep() == 0

    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_user_already_claimed_today_is_skipped(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db, last_date=TODAY)
    client = FakeClient()

    assert await _scheduler(db, client).run_sweep() == 0
    assert client.calls == []


@pytest.mark.asyncio
async def test_gate_closed_before_threshold_hour(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    scheduler = _scheduler(db, client, now=BEFORE_GATE)

    assert await scheduler.run_sweep() == 0
    assert client.calls == []
    assert db.get("u1").last_auto_claim_date == "2024-04-30"


@pytest.mark.asyncio
async def test_unknown_timezone_closes_gate(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    scheduler = _scheduler(db, client)
    scheduler._timezone = "Nowhere/Atlantis"

    assert await scheduler.run_sweep() == 0
    assert client.calls == []


@pytest.mark.asyncio
async def test_disabled_and_tokenless_users_are_skipped(tmp_path):
    db = _db(tmp_path)
    db.upsert("off", token="tok", auto_claim_enabled=False)
    db.upsert("no-token", auto_claim_enabled=True)
    client = FakeClient()

    assert await _scheduler(db, client).run_sweep() == 0
    assert client.calls == []
    assert db.get("off").last_auto_claim_date is None


@pytest.mark.asyncio
async def test_remote_failure_is_recorded_for_today_and_not_retried(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient(error=RemoteToolFailure("inventory exhausted"))
    notifier = AsyncMock()
    scheduler = _scheduler(db, client, notifier=notifier)

    await scheduler.run_sweep()

    user = db.get("u1")
    assert user.last_auto_claim_date == TODAY
    assert "inventory exhausted" in user.last_auto_claim_status
    assert user.last_auto_claim_status.startswith("failed")
    notifier.assert_awaited_once()
    assert "inventory exhausted" in notifier.await_args.args[1]

    await scheduler.run_sweep()
    assert len(client.calls) == 1
    assert scheduler.in_flight == frozenset()


@pytest.mark.asyncio
async def test_notification_failure_does_not_abort_sweep(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db, "u1")
    _enabled_user(db, "u2")
    client = FakeClient(error=TransportFailure("timed out"))
    notifier = AsyncMock(side_effect=RuntimeError("telegram down"))
    scheduler = _scheduler(db, client, notifier=notifier)

    assert await scheduler.run_sweep() == 2

    assert db.get("u1").last_auto_claim_date == TODAY
    assert db.get("u2").last_auto_claim_date == TODAY
    assert notifier.await_count == 2


@pytest.mark.asyncio
async def test_overlapping_sweeps_claim_once_per_user(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    gate = asyncio.Event()
    client = FakeClient(gate=gate)
    scheduler = _scheduler(db, client)

    first = asyncio.create_task(scheduler.run_sweep())
    for _ in range(5):
        await asyncio.sleep(0)
    assert scheduler.in_flight == frozenset({"u1"})

    assert await scheduler.run_sweep() == 0

    gate.set()
    assert await first == 1
    assert await scheduler.run_sweep() == 0
    assert len(client.calls) == 1
    assert scheduler.in_flight == frozenset()


@pytest.mark.asyncio
async def test_sweep_with_stale_snapshot_rechecks_record(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    scheduler = _scheduler(db, client)
    stale = db.all_users()
    await scheduler.run_sweep()

    db.all_users = lambda: stale  # type: ignore[method-assign]
    assert await scheduler.run_sweep() == 0
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_run_forever_sweeps_at_start_and_every_interval(tmp_path):
    db = _db(tmp_path)
    sleeps: list[float] = []
    sweeps = 0
    scheduler = None

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 3:
            scheduler.stop()

    scheduler = _scheduler(db, FakeClient(), interval_seconds=600.0, sleep=fake_sleep)
    original = scheduler.run_sweep

    async def counting_sweep() -> int:
        nonlocal sweeps
        sweeps += 1
        return await original()

    scheduler.run_sweep = counting_sweep  # type: ignore[method-assign]
    await scheduler.run_forever()

    assert sleeps == [600.0, 600.0, 600.0]
    assert sweeps == 3


@pytest.mark.asyncio
async def test_startup_sweep_runs_even_without_interval(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    fake_sleep = AsyncMock()
    scheduler = _scheduler(db, client, interval_seconds=0, sleep=fake_sleep)

    await scheduler.run_forever()

    assert len(client.calls) == 1
    fake_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_sweep_error_is_logged_and_loop_continues(tmp_path):
    db = _db(tmp_path)
    sleeps: list[float] = []
    scheduler = None

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            scheduler.stop()

    scheduler = _scheduler(db, FakeClient(), sleep=fake_sleep)
    scheduler.run_sweep = AsyncMock(side_effect=RuntimeError("db locked"))  # type: ignore[method-assign]

    await scheduler.run_forever()

    assert scheduler.run_sweep.await_count == 2


@pytest.mark.asyncio
async def test_start_and_stop_background_task(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    client = FakeClient()
    idle = asyncio.Event()
    scheduler = _scheduler(db, client, sleep=lambda seconds: idle.wait())

    task = scheduler.start()
    assert scheduler.start() is task
    for _ in range(5):
        await asyncio.sleep(0)
    assert len(client.calls) == 1

    scheduler.stop()
    await asyncio.gather(task, return_exceptions=True)
    assert task.done()


@pytest.mark.asyncio
async def test_store_error_for_one_user_does_not_skip_others(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db, "u1")
    _enabled_user(db, "u2")
    client = FakeClient()
    upsert = db.upsert

    def failing_upsert(user_id, **fields):
        if user_id == "u1":
            raise sqlite3.OperationalError("database is locked")
        return upsert(user_id, **fields)

    db.upsert = failing_upsert  # type: ignore[method-assign]
    scheduler = _scheduler(db, client)

    assert await scheduler.run_sweep() == 2

    assert len(client.calls) == 2
    assert db.get("u2").last_auto_claim_date == TODAY
    assert db.get("u1").last_auto_claim_date == "2024-04-30"
    assert scheduler.in_flight == frozenset()


@pytest.mark.asyncio
async def test_start_after_stop_during_sweep_keeps_loop_running(tmp_path):
    db = _db(tmp_path)
    _enabled_user(db)
    gate = asyncio.Event()
    idle = asyncio.Event()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await idle.wait()

    scheduler = _scheduler(db, FakeClient(gate=gate), sleep=fake_sleep)

    task = scheduler.start()
    for _ in range(5):
        await asyncio.sleep(0)
    assert scheduler.in_flight == frozenset({"u1"})

    scheduler.stop()
    assert scheduler.start() is task
    gate.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert not task.done()
    assert sleeps == [600.0]

    scheduler.stop()
    await asyncio.gather(task, return_exceptions=True)
    assert task.done()


@pytest.mark.asyncio
async def test_start_after_idle_stop_runs_a_new_loop(tmp_path):
    db = _db(tmp_path)
    idle = asyncio.Event()
    scheduler = _scheduler(db, FakeClient(), sleep=lambda seconds: idle.wait())

    first = scheduler.start()
    for _ in range(5):
        await asyncio.sleep(0)
    scheduler.stop()
    second = scheduler.start()

    assert second is not first
    for _ in range(5):
        await asyncio.sleep(0)
    assert not second.done()
    assert first.done()

    scheduler.stop()
    await asyncio.gather(first, second, return_exceptions=True)
