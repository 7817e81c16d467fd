from datetime import date, datetime
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from ledger.models.schemas import Ledger
from ledger.services.aggregates import (
    DAYS_PER_MONTH,
    budget_status,
    calendar_windows,
    percent,
    total_spent,
    within,
)


class WindowSummary(BaseModel):
    spent: float
    budget: float
    percent: float
    emoji: str
    status: str


class DailyDigest(BaseModel):
    day: date
    days_elapsed: int
    today: WindowSummary
    daily_average: WindowSummary
    week: WindowSummary
    month: WindowSummary
    yesterday: WindowSummary


def _window(spent: float, budget: float) -> WindowSummary:
    pct = percent(spent, budget)
    emoji, status = budget_status(pct)
    return WindowSummary(spent=spent, budget=budget, percent=pct, emoji=emoji, status=status)


def build_daily_digest(ledger: Ledger, now: datetime, tz: ZoneInfo) -> DailyDigest:
    """Spending against the combined budget over fixed calendar windows."""
    monthly_budget = sum(ledger.budgets.values())
    daily_budget = monthly_budget / DAYS_PER_MONTH
    weekly_budget = monthly_budget * 7 / DAYS_PER_MONTH

    windows = calendar_windows(now, tz)
    expenses = ledger.active_expenses()

    today = total_spent(within(expenses, windows.today, windows.tomorrow))
    yesterday = total_spent(within(expenses, windows.yesterday, windows.today))
    week = total_spent(within(expenses, windows.week, windows.tomorrow))
    month = total_spent(within(expenses, windows.month, windows.tomorrow))

    days_elapsed = windows.today.day
    return DailyDigest(
        day=windows.today.date(),
        days_elapsed=days_elapsed,
        today=_window(today, daily_budget),
        daily_average=_window(month / days_elapsed, daily_budget),
        week=_window(week, weekly_budget),
        month=_window(month, monthly_budget),
        yesterday=_window(yesterday, daily_budget),
    )
