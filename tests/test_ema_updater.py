"""Tests for the EMA updater."""

from datetime import datetime, timedelta

import pytest

from restock.predict.ema_updater import EMAUpdater
from restock.store.base import StoreError
from restock.store.sql import SQLPredictionStore

WATERMARK = datetime(2024, 1, 1)


@pytest.mark.asyncio
async def test_cold_start_seeds_with_raw_interval(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=0.0, confidence_score=0.0, last_purchased_at=WATERMARK)
    await add_event(datetime(2024, 1, 8))

    stats = await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.ema_days == 7.0
    assert updated.last_purchased_at == datetime(2024, 1, 8)
    assert stats.ema_updated == 1
    assert stats.errors == 0


@pytest.mark.asyncio
async def test_subsequent_event_applies_smoothing(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=7.0, confidence_score=40.0, last_purchased_at=WATERMARK)
    await add_event(WATERMARK + timedelta(days=10))

    await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.ema_days == pytest.approx(0.3 * 10 + 0.7 * 7.0, abs=0.01)
    # 10 days vs 7 predicted is outside tolerance
    assert updated.confidence_score == 40.0


@pytest.mark.asyncio
async def test_close_interval_raises_confidence(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=7.0, confidence_score=40.0, last_purchased_at=WATERMARK)
    await add_event(WATERMARK + timedelta(days=7, hours=12))

    await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.confidence_score == 50.0
    assert updated.status == "suggest_only"


@pytest.mark.asyncio
async def test_confidence_is_capped_and_status_derived(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=7.0, confidence_score=80.0, last_purchased_at=WATERMARK)
    for week in (1, 2, 3):
        await add_event(WATERMARK + timedelta(days=7 * week))

    stats = await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.confidence_score == 100.0
    assert updated.ema_days == 7.0
    assert updated.status == "auto_add"
    assert updated.last_purchased_at == WATERMARK + timedelta(days=21)
    assert stats.ema_updated == 3


@pytest.mark.asyncio
async def test_duplicate_timestamps_are_skipped(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=0.0, confidence_score=0.0, last_purchased_at=WATERMARK)
    await add_event(datetime(2024, 1, 8))
    await add_event(datetime(2024, 1, 8))

    stats = await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert stats.ema_updated == 1
    assert updated.ema_days == 7.0
    assert updated.last_purchased_at == datetime(2024, 1, 8)


@pytest.mark.asyncio
async def test_rerun_without_new_events_is_noop(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=0.0, confidence_score=0.0, last_purchased_at=WATERMARK)
    await add_event(datetime(2024, 1, 8))

    await EMAUpdater(store).run()
    first = await load_rule(rule.id)
    stats = await EMAUpdater(store).run()
    second = await load_rule(rule.id)

    assert stats.ema_updated == 0
    assert (second.ema_days, second.confidence_score, second.last_purchased_at) == (
        first.ema_days, first.confidence_score, first.last_purchased_at
    )


@pytest.mark.asyncio
async def test_rule_without_watermark_is_ignored(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=0.0, confidence_score=0.0, last_purchased_at=None)
    await add_event(datetime(2024, 1, 8))

    await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.ema_days == 0.0
    assert updated.last_purchased_at is None


@pytest.mark.asyncio
async def test_values_are_rounded_to_two_decimals(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=0.0, confidence_score=0.0, last_purchased_at=WATERMARK)
    await add_event(WATERMARK + timedelta(days=7, hours=5))

    await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.ema_days == 7.21  # 7 + 5/24 = 7.2083...


@pytest.mark.asyncio
async def test_manual_override_keeps_status(store, add_rule, add_event, load_rule):
    rule = await add_rule(
        ema_days=7.0,
        confidence_score=80.0,
        last_purchased_at=WATERMARK,
        status="manual_only",
        manual_override=True,
    )
    await add_event(WATERMARK + timedelta(days=7))

    await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.confidence_score == 90.0
    assert updated.status == "manual_only"
    assert updated.manual_override is True


class FailingEventsStore(SQLPredictionStore):
    """Fails the event fetch for one product."""

    def __init__(self, session_factory, failing_product):
        super().__init__(session_factory)
        self.failing_product = failing_product

    async def list_purchase_events(self, household_id, product_id, after_timestamp=None):
        if product_id == self.failing_product:
            raise StoreError("connection reset")
        return await super().list_purchase_events(household_id, product_id, after_timestamp)


@pytest.mark.asyncio
async def test_failed_rule_does_not_abort_batch(session_factory, add_rule, add_event, load_rule):
    broken = await add_rule(product_id="bread", ema_days=0.0, last_purchased_at=WATERMARK)
    healthy = await add_rule(product_id="milk", ema_days=0.0, last_purchased_at=WATERMARK)
    await add_event(datetime(2024, 1, 8), product_id="bread")
    await add_event(datetime(2024, 1, 8), product_id="milk")

    stats = await EMAUpdater(FailingEventsStore(session_factory, "bread")).run()

    assert stats.errors == 1
    assert stats.ema_updated == 1
    assert (await load_rule(broken.id)).last_purchased_at == WATERMARK
    assert (await load_rule(healthy.id)).ema_days == 7.0


class UnreachableStore(SQLPredictionStore):
    async def get_rules(self, with_watermark=False, with_estimate=False):
        raise StoreError("connection refused")


@pytest.mark.asyncio
async def test_rule_listing_failure_is_counted(session_factory):
    stats = await EMAUpdater(UnreachableStore(session_factory)).run()

    assert stats.errors == 1
    assert stats.ema_updated == 0
