"""Fold new purchase events into each rule's interval estimate.

For every rule with a watermark, the purchases recorded after it are walked
in order. Each positive interval updates the exponential moving average and
may raise the confidence score; the watermark then moves to the newest event
so a rerun with no new purchases changes nothing.
"""

import logging
from datetime import datetime
from typing import List, Optional

from restock import metrics
from restock.db.models import InventoryRule, PurchaseEvent
from restock.predict.scoring import (
    adjust_confidence,
    derive_status,
    interval_days,
    round2,
    smooth,
)
from restock.predict.stats import RunStats
from restock.store.base import PredictionStore, StoreError

logger = logging.getLogger(__name__)


class EMAUpdater:
    """Recomputes purchase-interval estimates from unprocessed events."""

    def __init__(self, store: PredictionStore):
        self.store = store

    async def run(self) -> RunStats:
        """
        Update every rule that has purchases past its watermark.

        Returns:
            RunStats with ema_updated (events folded in) and errors filled in
        """
        stats = RunStats()
        try:
            rules = await self.store.get_rules(with_watermark=True)
        except StoreError as e:
            logger.error(f"EMA update could not load rules: {e}")
            metrics.rule_errors_total.labels(stage="ema").inc()
            stats.errors += 1
            return stats
        logger.info(f"EMA update: {len(rules)} rules with a watermark")

        for rule in rules:
            try:
                folded = await self.update_rule(rule)
            except StoreError as e:
                logger.error(f"EMA update failed for rule {rule.id}: {e}")
                metrics.rule_errors_total.labels(stage="ema").inc()
                stats.errors += 1
                continue
            stats.ema_updated += folded

        metrics.ema_events_folded_total.inc(stats.ema_updated)
        return stats

    async def update_rule(self, rule: InventoryRule) -> int:
        """
        Fold the rule's new purchases and persist the result in one write.

        Returns:
            Number of events that contributed an interval
        """
        events = await self.store.list_purchase_events(
            rule.household_id, rule.product_id, after_timestamp=rule.last_purchased_at
        )
        if not events:
            return 0

        ema, confidence, watermark, folded = fold_events(
            ema_days=float(rule.ema_days),
            confidence=float(rule.confidence_score),
            watermark=rule.last_purchased_at,
            events=events,
        )

        fields = {
            "ema_days": round2(ema),
            "confidence_score": round2(confidence),
            "last_purchased_at": watermark,
        }
        if not rule.manual_override:
            fields["status"] = derive_status(fields["confidence_score"]).value

        await self.store.update_rule(rule.id, fields)
        logger.debug(
            f"Rule {rule.id}: ema {rule.ema_days} -> {fields['ema_days']}, "
            f"confidence {rule.confidence_score} -> {fields['confidence_score']} "
            f"({folded}/{len(events)} events)"
        )
        return folded


def fold_events(
    ema_days: float,
    confidence: float,
    watermark: datetime,
    events: List[PurchaseEvent],
) -> tuple[float, float, Optional[datetime], int]:
    """
    Apply the EMA and confidence update for each event in chronological order.

    Same-timestamp duplicates produce no interval but still move the
    watermark forward.

    Returns:
        Tuple of (ema_days, confidence, new_watermark, events_folded)
    """
    previous = watermark
    folded = 0

    for event in events:
        interval = interval_days(previous, event.purchased_at)
        previous = event.purchased_at
        watermark = event.purchased_at

        if interval <= 0:
            continue

        predicted = ema_days if ema_days > 0 else interval
        ema_days = smooth(ema_days, interval)
        confidence = adjust_confidence(confidence, interval, predicted)
        folded += 1

    return ema_days, confidence, watermark, folded
