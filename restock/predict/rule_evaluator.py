"""Act on rules whose predicted next purchase date has passed."""

import logging
from datetime import datetime
from typing import Optional

from restock import metrics
from restock.db.models import InventoryRule
from restock.predict.scoring import (
    ListEntryStatus,
    RuleStatus,
    effective_status,
    next_predicted_date,
    rule_mode,
)
from restock.predict.stats import RunStats
from restock.store.base import PredictionStore, StoreError

logger = logging.getLogger(__name__)


class RuleEvaluator:
    """
    Decides per due rule whether to auto-add, suggest, or wait.

    Confidence >= 85 adds the product to the active list unless it is already
    there or snoozed; 50-84 flags the rule as a suggestion; below 50 the
    estimate is still maturing and nothing happens.
    """

    def __init__(self, store: PredictionStore):
        self.store = store

    async def run(self, now: Optional[datetime] = None) -> RunStats:
        """
        Evaluate every rule that has an estimate and a watermark.

        Args:
            now: Evaluation time (naive UTC); defaults to the current time

        Returns:
            RunStats with processed, auto_added, suggested and errors filled in
        """
        now = now or datetime.utcnow()
        stats = RunStats()

        try:
            rules = await self.store.get_rules(with_watermark=True, with_estimate=True)
        except StoreError as e:
            logger.error(f"Rule evaluation could not load rules: {e}")
            metrics.rule_errors_total.labels(stage="evaluate").inc()
            stats.errors += 1
            return stats
        logger.info(f"Rule evaluation: {len(rules)} rules with an estimate")

        for rule in rules:
            try:
                await self.evaluate_rule(rule, now, stats)
            except StoreError as e:
                logger.error(f"Evaluation failed for rule {rule.id}: {e}")
                metrics.rule_errors_total.labels(stage="evaluate").inc()
                stats.errors += 1

        metrics.auto_adds_total.inc(stats.auto_added)
        metrics.suggestions_total.inc(stats.suggested)
        return stats

    async def evaluate_rule(self, rule: InventoryRule, now: datetime, stats: RunStats) -> None:
        quantity_modifier = await self.store.get_most_recent_purchase_quantity(
            rule.household_id, rule.product_id
        )
        due_at = next_predicted_date(rule.last_purchased_at, rule.ema_days, quantity_modifier)
        if due_at > now:
            return

        stats.processed += 1
        status = effective_status(rule_mode(rule))

        if status == RuleStatus.AUTO_ADD:
            await self._auto_add(rule, now, stats)
        elif status == RuleStatus.SUGGEST_ONLY:
            await self._suggest(rule, stats)
        # manual_only: still learning, nothing to do

    async def _auto_add(self, rule: InventoryRule, now: datetime, stats: RunStats) -> None:
        active = await self.store.find_active_entry(rule.household_id, rule.product_id)
        if active is not None:
            logger.debug(f"Rule {rule.id}: product already on the list")
            return

        snoozed = await self.store.find_snoozed_entry(rule.household_id, rule.product_id)
        if snoozed is not None and snoozed.snooze_until and snoozed.snooze_until > now:
            logger.debug(f"Rule {rule.id}: snoozed until {snoozed.snooze_until.isoformat()}")
            return

        await self.store.insert_list_entry({
            "household_id": rule.household_id,
            "product_id": rule.product_id,
            "quantity": 1,
            "status": ListEntryStatus.ACTIVE.value,
            "added_at": now,
        })
        stats.auto_added += 1
        logger.info(f"Auto-added product {rule.product_id} for household {rule.household_id}")

        await self.store.update_rule(rule.id, {"status": RuleStatus.AUTO_ADD.value})

    async def _suggest(self, rule: InventoryRule, stats: RunStats) -> None:
        await self.store.update_rule(rule.id, {"status": RuleStatus.SUGGEST_ONLY.value})
        stats.suggested += 1
