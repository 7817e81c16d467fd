"""HTML snippets for Telegram replies."""

import html
from datetime import datetime

from ledger.models.schemas import Ledger, SettlementReport
from ledger.services.aggregates import BudgetProgress
from ledger.services.digest import DailyDigest, WindowSummary


def format_amount(amount: float, symbol: str = "₹", decimals: int | None = None) -> str:
    """₹5,800 for whole amounts, ₹5,800.50 otherwise."""
    if decimals is not None:
        return f"{symbol}{amount:,.{decimals}f}"
    if amount == int(amount):
        return f"{symbol}{int(amount):,}"
    return f"{symbol}{amount:,.2f}"


def escape(text: str) -> str:
    return html.escape(text, quote=False)


def format_date(ts: datetime | None, with_time: bool = True) -> str:
    if ts is None:
        return "Never"
    if with_time:
        return ts.strftime("%d %b %Y, %H:%M")
    return ts.strftime("%d %b")


def format_progress(progress: BudgetProgress, symbol: str = "₹") -> list[str]:
    def line(label: str, spent: float, budget: float, pct: float) -> str:
        return (
            f"{label}: {format_amount(spent, symbol, 0)}/"
            f"{format_amount(budget, symbol, 0)} ({pct:.0f}%)"
        )

    return [
        f"<b>{escape(progress.category)}:</b>",
        line("Today", progress.spent_today, progress.daily_budget, progress.daily_percent),
        line("Week", progress.spent_this_week, progress.weekly_budget, progress.weekly_percent),
        line(
            "Month", progress.spent_this_month, progress.monthly_budget, progress.monthly_percent
        ),
    ]


def format_settlement(report: SettlementReport, ledger: Ledger, symbol: str = "₹") -> str:
    if report.total == 0:
        return "💸 <b>No Expenses</b>\n\nNothing recorded since the last settlement."

    header = (
        f"<b>Total:</b> {format_amount(report.total, symbol, 2)} • "
        f"<b>Per person:</b> {format_amount(report.share, symbol, 2)}"
    )
    if report.all_clear:
        return f"💸 <b>All Settled!</b>\n\n{header}"

    lines = [
        f"{escape(ledger.display_name(t.debtor))} → {escape(ledger.display_name(t.creditor))}: "
        f"<b>{format_amount(t.amount, symbol, 2)}</b>"
        for t in report.transfers
    ]
    return "💸 <b>Settlements</b>\n\n" + "\n".join([header, "", *lines])


def format_digest(digest: DailyDigest, symbol: str = "₹") -> str:
    def block(icon: str, title: str, window: WindowSummary, note: str = "") -> str:
        return (
            f"{icon} <b>{title}</b>{note}\n"
            f"{format_amount(window.spent, symbol, 0)} / {format_amount(window.budget, symbol, 0)}"
            f" • {window.percent:.1f}%\n"
            f"{window.emoji} <i>{window.status}</i>"
        )

    return "\n\n".join(
        [
            f"🌙 <b>Daily Summary</b>\n{digest.day.strftime('%d %B %Y')}",
            "<b>📊 CURRENT TRACKING</b>",
            block("📅", "Today", digest.today),
            block(
                "📊",
                "Daily Average",
                digest.daily_average,
                f" <i>({digest.days_elapsed} days)</i>",
            ),
            block("📈", "This Week", digest.week),
            block("📆", "This Month", digest.month),
            "<b>📜 RETROSPECTIVE</b>",
            block("🔙", "Yesterday", digest.yesterday),
            "💡 <i>Keep tracking your expenses!</i>",
        ]
    )
