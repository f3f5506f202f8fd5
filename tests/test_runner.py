"""Tests for the prediction runner."""

from datetime import datetime, timedelta

import pytest
import redis.asyncio as redis
from sqlalchemy import select

from restock.db.models import PredictionRun
from restock.store.base import StoreError
from restock.store.sql import SQLPredictionStore
from restock.worker.runner import PredictionRunError, PredictionRunner

NOW = datetime(2024, 3, 1, 2, 0)


class FakeLock:
    """In-process stand-in for the Redis run lock."""

    def __init__(self, held=False, broken=False):
        self.held = held
        self.broken = broken
        self.released = []

    async def acquire_lock(self, run_id, ttl_seconds=None):
        if self.broken:
            raise redis.ConnectionError("redis down")
        if self.held:
            return None
        self.held = True
        return f"token-{run_id}"

    async def safe_unlock(self, run_id, token):
        self.released.append((run_id, token))
        self.held = False
        return True


class ExplodingStore(SQLPredictionStore):
    async def get_rules(self, with_watermark=False, with_estimate=False):
        raise RuntimeError("schema mismatch")


async def load_runs(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(PredictionRun).order_by(PredictionRun.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_run_updates_then_evaluates(session_factory, store, add_rule, add_event, list_entries):
    start = NOW - timedelta(days=21)
    await add_rule(ema_days=7.0, confidence_score=80.0, last_purchased_at=start)
    await add_event(start + timedelta(days=7))

    summary = await PredictionRunner(store, session_factory).run(trigger="http", now=NOW)

    assert summary.status == "completed"
    assert summary.stats.ema_updated == 1
    assert summary.stats.auto_added == 1
    assert summary.to_dict()["ok"] is True
    assert summary.to_dict()["skipped"] is False
    assert len(await list_entries(status="active")) == 1

    [run] = await load_runs(session_factory)
    assert run.run_id == summary.run_id
    assert run.trigger == "http"
    assert run.status == "completed"
    assert run.auto_added == 1
    assert run.ema_updated == 1
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_rerun_is_idempotent(session_factory, store, add_rule, add_event, list_entries):
    start = NOW - timedelta(days=21)
    await add_rule(ema_days=7.0, confidence_score=80.0, last_purchased_at=start)
    await add_event(start + timedelta(days=7))
    runner = PredictionRunner(store, session_factory)

    await runner.run(now=NOW)
    second = await runner.run(now=NOW)

    assert second.stats.ema_updated == 0
    assert second.stats.auto_added == 0
    assert len(await list_entries(status="active")) == 1


@pytest.mark.asyncio
async def test_run_is_skipped_while_lock_held(session_factory, store, add_rule, list_entries):
    await add_rule(ema_days=7.0, confidence_score=95.0, last_purchased_at=NOW - timedelta(days=14))
    lock = FakeLock(held=True)

    summary = await PredictionRunner(store, session_factory, lock_manager=lock).run(now=NOW)

    assert summary.skipped
    assert await list_entries() == []
    assert [r.status for r in await load_runs(session_factory)] == ["skipped"]
    assert lock.released == []


@pytest.mark.asyncio
async def test_lock_is_released_after_run(session_factory, store):
    lock = FakeLock()

    summary = await PredictionRunner(store, session_factory, lock_manager=lock).run(now=NOW)

    assert lock.released == [(summary.run_id, f"token-{summary.run_id}")]
    assert lock.held is False


@pytest.mark.asyncio
async def test_lock_outage_does_not_block_run(session_factory, store):
    lock = FakeLock(broken=True)

    summary = await PredictionRunner(store, session_factory, lock_manager=lock).run(now=NOW)

    assert summary.status == "completed"
    assert lock.released == []


@pytest.mark.asyncio
async def test_fatal_error_marks_run_failed(session_factory):
    lock = FakeLock()
    runner = PredictionRunner(ExplodingStore(session_factory), session_factory, lock_manager=lock)

    with pytest.raises(PredictionRunError) as exc_info:
        await runner.run(now=NOW)

    [run] = await load_runs(session_factory)
    assert run.run_id == exc_info.value.run_id
    assert run.status == "failed"
    assert "schema mismatch" in run.error_message
    assert lock.held is False


class FlakyRulesStore(SQLPredictionStore):
    """The first rule listing times out; later ones succeed."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.failures_left = 1

    async def get_rules(self, with_watermark=False, with_estimate=False):
        if self.failures_left:
            self.failures_left -= 1
            raise StoreError("rules fetch timed out")
        return await super().get_rules(with_watermark, with_estimate)


@pytest.mark.asyncio
async def test_failed_rule_listing_does_not_abort_run(session_factory, add_rule, list_entries):
    await add_rule(ema_days=7.0, confidence_score=90.0, last_purchased_at=NOW - timedelta(days=14))
    runner = PredictionRunner(FlakyRulesStore(session_factory), session_factory)

    summary = await runner.run(now=NOW)

    [run] = await load_runs(session_factory)
    assert summary.status == "completed"
    assert summary.stats.errors == 1
    assert summary.stats.auto_added == 1
    assert len(await list_entries(status="active")) == 1
    assert run.status == "completed"
    assert run.errors == 1
