"""Pure settlement arithmetic: fees, completion averages, star rating, bonus and XP."""

from __future__ import annotations

import math
from datetime import datetime
from fractions import Fraction

from task_escrow_service.services.ledger_store import parse_timestamp

_SECONDS_PER_DAY = 86400

# (threshold of completed tasks, stars), highest first
_STAR_TIERS: tuple[tuple[int, int], ...] = ((20, 4), (10, 3), (3, 2))
_FAST_COMPLETION_DAYS = 3
_MAX_STARS = 5
_MIN_STARS = 1

# Exact tenths so floor() never trips over binary floating point.
_XP_MULTIPLIER_TENTHS: dict[str, int] = {"high": 15, "medium": 12, "low": 10}


def proportional_fee(gold: int, ratio: float) -> int:
    """Return ceil(gold * ratio), computed exactly."""
    return math.ceil(Fraction(gold) * Fraction(str(ratio)))


def completion_days(accepted_at: str | None, completed_at: str) -> float | None:
    """Days between acceptance and completion, or None when acceptance is unknown."""
    if accepted_at is None:
        return None
    elapsed = parse_timestamp(completed_at) - parse_timestamp(accepted_at)
    return max(elapsed.total_seconds(), 0.0) / _SECONDS_PER_DAY


def hours_since(start: str, now: datetime) -> float:
    """Hours elapsed since ``start``, rounded to one decimal."""
    elapsed = now - parse_timestamp(start)
    return round(max(elapsed.total_seconds(), 0.0) / 3600, 1)


def rolling_average(previous_average: float, previous_count: int, new_value: float) -> float:
    """Fold one more sample into a running mean, rounded to one decimal."""
    if previous_count <= 0:
        return round(new_value, 1)
    total = previous_average * previous_count + new_value
    return round(total / (previous_count + 1), 1)


def star_rating(total_tasks_completed: int, average_completion_days: float) -> int:
    """
    Derive the star rating from completed-task count and average speed.

    Base 1 star; 3+ tasks gives 2, 10+ gives 3, 20+ gives 4. A positive
    average of at most 3 days adds one star. Result is clamped to 1..5.
    """
    stars = _MIN_STARS
    for threshold, tier_stars in _STAR_TIERS:
        if total_tasks_completed >= threshold:
            stars = tier_stars
            break
    if 0 < average_completion_days <= _FAST_COMPLETION_DAYS:
        stars += 1
    return max(_MIN_STARS, min(_MAX_STARS, stars))


def bonus_gold(amount: int) -> int:
    """The bonus-release gold credit: floor(amount * 0.1)."""
    return (amount * 10) // 100


def bonus_xp(amount: int, priority_level: str) -> int:
    """The bonus-release XP: floor(floor(amount / 10) * priority multiplier)."""
    base = amount // 10
    tenths = _XP_MULTIPLIER_TENTHS.get(priority_level, _XP_MULTIPLIER_TENTHS["low"])
    return (base * tenths) // 10
