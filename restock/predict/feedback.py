"""Confidence adjustments driven by what people do with list entries.

Deleting or snoozing an entry the engine added automatically is evidence the
estimate is wrong; adding a product the engine only suggested is evidence it
is right. Each signal moves the score by a fixed amount and re-derives the
status, unless the rule is under a manual override.
"""

import logging
from enum import Enum
from typing import Optional

from restock import metrics
from restock.config import settings
from restock.db.models import InventoryRule, ListEntry
from restock.predict.scoring import (
    ListEntryStatus,
    RuleStatus,
    clamp_confidence,
    derive_status,
    round2,
)
from restock.store.base import PredictionStore

logger = logging.getLogger(__name__)


class FeedbackSignal(str, Enum):
    DELETED = "deleted"
    SNOOZED = "snoozed"
    ACCEPTED = "accepted"


def signal_delta(signal: FeedbackSignal) -> float:
    if signal == FeedbackSignal.DELETED:
        return -settings.delete_penalty
    if signal == FeedbackSignal.SNOOZED:
        return -settings.snooze_penalty
    return settings.acceptance_bonus


async def apply_confidence_delta(
    store: PredictionStore,
    rule: InventoryRule,
    delta: float,
) -> float:
    """
    Shift a rule's confidence and persist the re-derived status.

    Returns:
        The new confidence score
    """
    score = round2(clamp_confidence(float(rule.confidence_score) + delta))
    fields = {"confidence_score": score}
    if not rule.manual_override:
        fields["status"] = derive_status(score).value
    await store.update_rule(rule.id, fields)
    return score


async def record_signal(
    store: PredictionStore,
    signal: FeedbackSignal,
    entry: ListEntry,
    previous_status: Optional[str] = None,
) -> Optional[float]:
    """
    Apply the confidence change for a list action, if it qualifies.

    Deletions and snoozes only count against rules in auto_add status and
    only when the entry was active beforehand. Additions only count for
    rules in suggest_only status.

    Args:
        store: Backing store
        signal: What happened to the entry
        entry: The entry acted on
        previous_status: Entry status before the action (defaults to entry.status)

    Returns:
        The new confidence score, or None if the action does not qualify
    """
    rule = await store.get_rule(entry.household_id, entry.product_id)
    if rule is None:
        return None

    if signal in (FeedbackSignal.DELETED, FeedbackSignal.SNOOZED):
        before = previous_status or entry.status
        if rule.status != RuleStatus.AUTO_ADD.value or before != ListEntryStatus.ACTIVE.value:
            return None
    elif rule.status != RuleStatus.SUGGEST_ONLY.value:
        return None

    score = await apply_confidence_delta(store, rule, signal_delta(signal))
    metrics.confidence_feedback_total.labels(signal=signal.value).inc()
    logger.info(
        f"Rule {rule.id} {signal.value}: confidence {rule.confidence_score} -> {score}"
    )
    return score
