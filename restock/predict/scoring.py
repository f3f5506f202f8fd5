"""Purchase-cycle scoring shared by the EMA updater and the rule evaluator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Union

ALPHA = 0.3  # EMA smoothing factor
CONFIDENCE_AUTO_ADD = 85.0
CONFIDENCE_SUGGEST = 50.0
CONFIDENCE_MIN = 0.0
CONFIDENCE_MAX = 100.0
CONFIDENCE_STEP = 10.0  # reward for a purchase close to the predicted cadence
VARIANCE_TOLERANCE = 0.15
SECONDS_PER_DAY = 86400


class RuleStatus(str, Enum):
    """Operational mode of an inventory rule."""

    AUTO_ADD = "auto_add"
    SUGGEST_ONLY = "suggest_only"
    MANUAL_ONLY = "manual_only"


class ListEntryStatus(str, Enum):
    """Lifecycle status of a shopping list entry."""

    ACTIVE = "active"
    PURCHASED = "purchased"
    SNOOZED = "snoozed"


@dataclass(frozen=True)
class Derived:
    """Status follows the confidence score."""

    score: float


@dataclass(frozen=True)
class ManualOverride:
    """A person forced the rule to manual_only; the score is ignored."""


RuleMode = Union[Derived, ManualOverride]


def derive_status(score: float) -> RuleStatus:
    """Map a confidence score onto a rule status."""
    if score >= CONFIDENCE_AUTO_ADD:
        return RuleStatus.AUTO_ADD
    if score >= CONFIDENCE_SUGGEST:
        return RuleStatus.SUGGEST_ONLY
    return RuleStatus.MANUAL_ONLY


def rule_mode(rule) -> RuleMode:
    """Build the tagged mode for an inventory rule row."""
    if rule.manual_override:
        return ManualOverride()
    return Derived(float(rule.confidence_score))


def effective_status(mode: RuleMode) -> RuleStatus:
    """Status to act on: a manual override always wins over the score."""
    if isinstance(mode, ManualOverride):
        return RuleStatus.MANUAL_ONLY
    return derive_status(mode.score)


def interval_days(previous: datetime, current: datetime) -> float:
    """Days elapsed between two purchases (fractional)."""
    return (current - previous).total_seconds() / SECONDS_PER_DAY


def smooth(ema_old: float, interval: float, alpha: float = ALPHA) -> float:
    """
    Fold one interval sample into the running estimate.

    A zero estimate means no data yet, so the first sample seeds it as-is.
    """
    if ema_old == 0:
        return interval
    return alpha * interval + (1 - alpha) * ema_old


def adjust_confidence(score: float, interval: float, predicted: float) -> float:
    """
    Reward a purchase that landed close to the predicted cadence.

    Args:
        score: Current confidence score
        interval: Observed interval in days
        predicted: Estimate before this purchase (the interval itself on cold start)

    Returns:
        New score; never lower than the input and never above CONFIDENCE_MAX
    """
    if predicted <= 0:
        return score
    variance = abs(interval - predicted) / predicted
    if variance <= VARIANCE_TOLERANCE:
        return min(CONFIDENCE_MAX, score + CONFIDENCE_STEP)
    return score


def clamp_confidence(score: float) -> float:
    return max(CONFIDENCE_MIN, min(CONFIDENCE_MAX, score))


def next_predicted_date(
    last_purchased_at: datetime,
    ema_days: float,
    quantity_modifier: int = 1,
) -> datetime:
    """Date the product is expected to run out again."""
    return last_purchased_at + timedelta(days=ema_days * quantity_modifier)


def round2(value: float) -> float:
    return round(value, 2)
