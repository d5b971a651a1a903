from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP

from models import BudgetStatusLevel

SECONDS_PER_DAY = 24 * 60 * 60
PERCENT_QUANTUM = Decimal("0.01")
LOW_USAGE_PERCENT = 50.0
LATE_PERIOD_DAYS = 7


@dataclass(frozen=True)
class Classification:
    remaining_cents: int
    usage_percentage: float
    days_remaining: int
    status: BudgetStatusLevel


def usage_percentage(amount_cents: int, spent_cents: int) -> float:
    if amount_cents <= 0:
        return 0.0
    percent = Decimal(spent_cents) * 100 / Decimal(amount_cents)
    return float(percent.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP))


def status_for(amount_cents: int, spent_cents: int) -> BudgetStatusLevel:
    # Strict comparisons, first match wins: exactly 80% is on_track, exactly
    # 100% is warning. Scaled to integers so no float rounding sneaks in.
    if spent_cents > amount_cents:
        return BudgetStatusLevel.over_budget
    if spent_cents * 5 > amount_cents * 4:
        return BudgetStatusLevel.warning
    if spent_cents * 2 > amount_cents:
        return BudgetStatusLevel.on_track
    return BudgetStatusLevel.safe


def days_remaining(end_date: date, now: datetime) -> int:
    delta = datetime.combine(end_date, time.min) - now
    seconds = delta.total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


def classify(
    amount_cents: int, spent_cents: int, end_date: date, now: datetime
) -> Classification:
    return Classification(
        remaining_cents=amount_cents - spent_cents,
        usage_percentage=usage_percentage(amount_cents, spent_cents),
        days_remaining=days_remaining(end_date, now),
        status=status_for(amount_cents, spent_cents),
    )


@dataclass(frozen=True)
class PaceMetrics:
    days_total: int
    days_elapsed: int
    daily_budget_cents: int
    daily_spent_cents: int
    projected_overrun_cents: int


def pace(
    amount_cents: int,
    spent_cents: int,
    start_date: date,
    end_date: date,
    now: datetime,
) -> PaceMetrics:
    days_total = (end_date - start_date).days
    days_elapsed = max(0, (now.date() - start_date).days)
    left = days_remaining(end_date, now)

    daily_budget = round(amount_cents / days_total) if days_total > 0 else 0
    daily_spent = spent_cents / days_elapsed if days_elapsed > 0 else 0.0

    overrun = 0
    if daily_spent > 0 and left > 0:
        projected = spent_cents + daily_spent * left
        if projected > amount_cents:
            overrun = round(projected - amount_cents)

    return PaceMetrics(
        days_total=days_total,
        days_elapsed=days_elapsed,
        daily_budget_cents=daily_budget,
        daily_spent_cents=round(daily_spent),
        projected_overrun_cents=overrun,
    )


def recommendations(classification: Classification) -> list[str]:
    advice: list[str] = []
    status = classification.status
    if status == BudgetStatusLevel.over_budget:
        advice.append("Budget exceeded. Review and reduce spending immediately.")
        advice.append("Consider increasing the budget amount if necessary.")
    elif status == BudgetStatusLevel.warning:
        advice.append("Approaching the budget limit. Review upcoming expenses.")
        advice.append("Consider prioritizing essential expenses only.")
    else:
        advice.append("Budget is healthy. Continue current spending patterns.")

    if (
        classification.days_remaining <= LATE_PERIOD_DAYS
        and classification.usage_percentage < LOW_USAGE_PERCENT
    ):
        advice.append(
            "Significant budget remaining with little time left. "
            "Consider planned expenses."
        )
    return advice
