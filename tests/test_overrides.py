"""Tests for manual override and reset to automatic control."""

from datetime import datetime, timedelta

import pytest

from restock.predict.ema_updater import EMAUpdater
from restock.predict.overrides import force_manual, reset_to_automatic

START = datetime(2024, 1, 1)


@pytest.mark.asyncio
async def test_force_manual_pins_interval(store, add_rule, load_rule):
    rule = await add_rule(ema_days=7.0, confidence_score=90.0, status="auto_add")

    await force_manual(store, rule, ema_days=10.0)

    updated = await load_rule(rule.id)
    assert updated.manual_override is True
    assert updated.status == "manual_only"
    assert updated.ema_days == 10.0
    assert updated.confidence_score == 90.0


@pytest.mark.asyncio
async def test_force_manual_rejects_negative_interval(store, add_rule):
    rule = await add_rule(ema_days=7.0)

    with pytest.raises(ValueError):
        await force_manual(store, rule, ema_days=-1.0)


@pytest.mark.asyncio
async def test_override_survives_ema_update(store, add_rule, add_event, load_rule):
    rule = await add_rule(ema_days=7.0, confidence_score=80.0, last_purchased_at=START)
    await force_manual(store, rule)
    await add_event(START + timedelta(days=7))

    await EMAUpdater(store).run()

    updated = await load_rule(rule.id)
    assert updated.confidence_score == 90.0
    assert updated.status == "manual_only"


@pytest.mark.asyncio
async def test_reset_rebuilds_from_history(store, add_rule, add_event):
    rule = await add_rule(
        ema_days=30.0,
        confidence_score=20.0,
        last_purchased_at=START,
        status="manual_only",
        manual_override=True,
    )
    for offset in (0, 7, 17):
        await add_event(START + timedelta(days=offset))

    refreshed = await reset_to_automatic(store, rule)

    assert refreshed.manual_override is False
    assert refreshed.ema_days == 7.9
    assert refreshed.confidence_score == 70.0
    assert refreshed.status == "suggest_only"
    assert refreshed.last_purchased_at == START + timedelta(days=17)


@pytest.mark.asyncio
async def test_reset_with_short_history_keeps_interval(store, add_rule, add_event):
    rule = await add_rule(
        ema_days=12.0,
        confidence_score=0.0,
        last_purchased_at=START,
        manual_override=True,
    )
    await add_event(START)

    refreshed = await reset_to_automatic(store, rule)

    assert refreshed.ema_days == 12.0
    assert refreshed.confidence_score == 10.0
    assert refreshed.status == "manual_only"
    assert refreshed.manual_override is False
