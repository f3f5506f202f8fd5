"""Manual control of inventory rules."""

import logging
from datetime import datetime
from typing import List, Optional

from restock.db.models import InventoryRule
from restock.predict.scoring import (
    CONFIDENCE_MAX,
    CONFIDENCE_SUGGEST,
    CONFIDENCE_STEP,
    RuleStatus,
    derive_status,
    interval_days,
    round2,
    smooth,
)
from restock.store.base import PredictionStore, StoreError

logger = logging.getLogger(__name__)

MIN_BOOTSTRAP_DAYS = 1.0
MIN_RESET_CONFIDENCE = 10.0


async def force_manual(
    store: PredictionStore,
    rule: InventoryRule,
    ema_days: Optional[float] = None,
) -> None:
    """
    Put a rule under manual control, optionally pinning its interval.

    The override survives EMA updates and feedback signals until
    reset_to_automatic is called.
    """
    if ema_days is not None and ema_days < 0:
        raise ValueError("ema_days must be >= 0")

    fields = {"manual_override": True, "status": RuleStatus.MANUAL_ONLY.value}
    if ema_days is not None:
        fields["ema_days"] = round2(ema_days)
    await store.update_rule(rule.id, fields)
    logger.info(f"Rule {rule.id} forced to manual_only")


def bootstrap_estimate(purchase_dates: List[datetime]) -> Optional[tuple[float, float]]:
    """
    Estimate an interval and confidence from a full purchase history.

    Returns:
        (ema_days, confidence) or None when fewer than two purchases exist
    """
    dates = sorted(purchase_dates)
    intervals = [
        interval_days(prev, cur) for prev, cur in zip(dates, dates[1:])
    ]
    intervals = [i for i in intervals if i > 0]
    if not intervals:
        return None

    ema = 0.0
    for interval in intervals:
        ema = smooth(ema, interval)

    ema = max(MIN_BOOTSTRAP_DAYS, round(ema, 1))
    confidence = min(CONFIDENCE_MAX, CONFIDENCE_SUGGEST + len(intervals) * CONFIDENCE_STEP)
    return ema, confidence


async def reset_to_automatic(store: PredictionStore, rule: InventoryRule) -> InventoryRule:
    """
    Clear a manual override and rebuild the estimate from purchase history.

    With at least two distinct purchases the estimate is recomputed from
    scratch; otherwise the current interval is kept and confidence gets a
    small floor so the rule can start learning again.

    Returns:
        The reloaded rule
    """
    events = await store.list_purchase_events(rule.household_id, rule.product_id)
    estimate = bootstrap_estimate([e.purchased_at for e in events])

    if estimate is not None:
        ema_days, confidence = estimate
    else:
        ema_days = float(rule.ema_days)
        confidence = max(MIN_RESET_CONFIDENCE, float(rule.confidence_score))

    fields = {
        "manual_override": False,
        "ema_days": round2(ema_days),
        "confidence_score": round2(confidence),
        "status": derive_status(confidence).value,
    }
    if events:
        fields["last_purchased_at"] = events[-1].purchased_at

    await store.update_rule(rule.id, fields)
    logger.info(
        f"Rule {rule.id} back under automatic control: "
        f"ema={fields['ema_days']} confidence={fields['confidence_score']}"
    )

    refreshed = await store.get_rule(rule.household_id, rule.product_id)
    if refreshed is None:
        raise StoreError(f"Inventory rule {rule.id} disappeared during reset")
    return refreshed
