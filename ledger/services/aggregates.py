"""Spending aggregates shared by settlement, budget views and the digest."""

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from ledger.models.schemas import ExpenseRecord

DAYS_PER_MONTH = 30


class CalendarWindows(NamedTuple):
    yesterday: datetime
    today: datetime
    tomorrow: datetime
    week: datetime
    month: datetime


class BudgetProgress(BaseModel):
    category: str
    daily_budget: float
    weekly_budget: float
    monthly_budget: float
    spent_today: float
    spent_this_week: float
    spent_this_month: float
    daily_percent: float
    weekly_percent: float
    monthly_percent: float


def active(expenses: Iterable[ExpenseRecord]) -> list[ExpenseRecord]:
    return [e for e in expenses if not e.discarded]


def after(
    expenses: Iterable[ExpenseRecord], cutoff: datetime | None
) -> list[ExpenseRecord]:
    """Records strictly newer than ``cutoff`` (all of them when it is None)."""
    return [e for e in expenses if cutoff is None or e.timestamp > cutoff]


def within(
    expenses: Iterable[ExpenseRecord],
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ExpenseRecord]:
    """Records in the half-open window ``[start, end)``."""
    return [
        e
        for e in expenses
        if (start is None or e.timestamp >= start) and (end is None or e.timestamp < end)
    ]


def total_spent(expenses: Iterable[ExpenseRecord]) -> float:
    return sum(e.amount for e in expenses)


def spent_by_user(expenses: Iterable[ExpenseRecord]) -> dict[str, float]:
    totals: dict[str, float] = defaultdict(float)
    for e in expenses:
        totals[e.user] += e.amount
    return dict(totals)


def spent_by_category(expenses: Iterable[ExpenseRecord]) -> dict[str, float]:
    totals: dict[str, float] = defaultdict(float)
    for e in expenses:
        totals[e.category] += e.amount
    return dict(totals)


def ranked(totals: dict[str, float]) -> list[tuple[str, float]]:
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)


def calendar_windows(now: datetime, tz: ZoneInfo) -> CalendarWindows:
    """Day, week (Monday start) and month boundaries around ``now`` in ``tz``."""
    local = now.astimezone(tz)
    today = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return CalendarWindows(
        yesterday=today - timedelta(days=1),
        today=today,
        tomorrow=today + timedelta(days=1),
        week=today - timedelta(days=today.weekday()),
        month=today.replace(day=1),
    )


def percent(spent: float, budget: float) -> float:
    return spent / budget * 100 if budget > 0 else 0.0


def budget_status(pct: float) -> tuple[str, str]:
    if pct <= 80:
        return "✅", "On Track"
    if pct <= 100:
        return "⚠️", "Close to Limit"
    return "🚨", "Off Track"


def budget_progress(
    category: str,
    budgets: dict[str, float],
    expenses: Iterable[ExpenseRecord],
    now: datetime,
    tz: ZoneInfo,
) -> BudgetProgress:
    monthly = budgets.get(category, 0.0)
    daily = monthly / DAYS_PER_MONTH
    weekly = monthly * 7 / DAYS_PER_MONTH

    windows = calendar_windows(now, tz)
    spent = [e for e in active(expenses) if e.category == category]
    today = total_spent(within(spent, windows.today, windows.tomorrow))
    week = total_spent(within(spent, windows.week, windows.tomorrow))
    month = total_spent(within(spent, windows.month, windows.tomorrow))

    return BudgetProgress(
        category=category,
        daily_budget=daily,
        weekly_budget=weekly,
        monthly_budget=monthly,
        spent_today=today,
        spent_this_week=week,
        spent_this_month=month,
        daily_percent=percent(today, daily),
        weekly_percent=percent(week, weekly),
        monthly_percent=percent(month, monthly),
    )
