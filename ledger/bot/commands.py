import math
from collections.abc import Callable
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from loguru import logger

from ledger.bot.formatters import (
    escape,
    format_amount,
    format_date,
    format_progress,
    format_settlement,
)
from ledger.config import Settings
from ledger.db.repository import LedgerRepository
from ledger.models.schemas import (
    UNCATEGORIZED,
    ExpenseRecord,
    InboundMessage,
    Ledger,
    Member,
    Reply,
    TaggedExpense,
    to_user_name,
)
from ledger.parsing.expense_parser import CATEGORY_RE, extract_expenses
from ledger.parsing.tagging import resolve_tagged_expense
from ledger.services.aggregates import (
    active,
    budget_progress,
    calendar_windows,
    percent,
    ranked,
    spent_by_category,
    spent_by_user,
    total_spent,
    within,
)
from ledger.services.settlement import (
    SettleOutcome,
    complete_if_all_settled,
    compute_settlement,
    eligible_expenses,
    mark_settled,
    settled_count,
)

COMMENT_LIMIT = 200
SEARCH_LIMIT = 10
LAST_DEFAULT = 10
LAST_MAX = 20
TOP_SPENDERS = 5
MEDALS = ("🥇", "🥈", "🥉")

HELP_TEXT = """💰 <b>Expense Tracker</b>

<b>Add Expenses:</b>
• 90-grocery or 90 grocery
• 50+30-food or grocery 120
• 100-food split @alice (also: for @alice, by @alice)

<b>Basic Commands:</b>
/categories - View all categories
/summary - Budget overview
/budget - Today / week / month progress
/owe - Settlement calculations
/settled - Mark yourself as settled

<b>Advanced Commands:</b>
/stats - Spending statistics
/monthly - This month's report
/topspenders - Leaderboard
/last 10 - Recent expenses
/search &lt;term&gt; - Find expenses
/alerts - Budget warnings
/clearall - Discard all expenses

<b>Manage:</b>
/addcategory travel 5000
/setbudget grocery 300
/deletecategory travel
/addmember John
/removemember John
/members - View all members
/revert - Reply to an expense to undo it"""

Handler = Callable[[Ledger, InboundMessage, list[str]], Reply | None]


def split_command(text: str) -> tuple[str | None, list[str]]:
    """'/last@ledger_bot 5' -> ('last', ['5']); plain text -> (None, [])."""
    if not text.startswith("/"):
        return None, []
    head, *args = text.split()
    return head[1:].split("@", 1)[0].lower(), args


def parse_budget(raw: str) -> float | None:
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


class CommandProcessor:
    """Turns one inbound chat message into ledger changes and a reply.

    Every message is handled as its own unit of work against a fresh ledger
    snapshot; see :meth:`LedgerRepository.run`.
    """

    def __init__(
        self,
        repo: LedgerRepository,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repo = repo
        self.settings = settings
        self.tz = ZoneInfo(settings.timezone)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.commands: dict[str, Handler] = {
            "categories": self.categories,
            "addcategory": self.add_category,
            "setbudget": self.set_budget,
            "deletecategory": self.delete_category,
            "members": self.members,
            "addmember": self.add_member,
            "removemember": self.remove_member,
            "summary": self.summary,
            "budget": self.budget,
            "owe": self.owe,
            "settled": self.settled,
            "revert": self.revert,
            "stats": self.stats,
            "topspenders": self.top_spenders,
            "monthly": self.monthly,
            "search": self.search,
            "last": self.last,
            "clearall": self.clear_all,
            "alerts": self.alerts,
        }

    def amount(self, value: float, decimals: int | None = None) -> str:
        return format_amount(value, self.settings.currency_symbol, decimals)

    def handle(self, message: InboundMessage) -> Reply | None:
        text = message.text.strip()
        if not text:
            return None

        command, args = split_command(text)
        if command in ("start", "help"):
            return Reply(text=HELP_TEXT)

        attempts = self.settings.commit_attempts
        if command is not None:
            handler = self.commands.get(command)
            if handler is None:
                return None
            logger.info("/{} from {}", command, message.sender_id)
            return self.repo.run(lambda ledger: handler(ledger, message, args), attempts)

        return self.repo.run(lambda ledger: self.record_expense(ledger, message), attempts)

    # ── Expenses ──────────────────────────────────────────────────────

    def _unknown_category(self, category: str) -> str:
        return (
            f'❌ "{escape(category)}" - category doesn\'t exist. '
            "Use /categories to see available categories."
        )

    def _record(
        self,
        message: InboundMessage,
        payer: Member,
        amount: float,
        category: str,
        now: datetime,
    ) -> ExpenseRecord:
        return ExpenseRecord(
            id=message.message_id,
            user=payer.user_name,
            amount=amount,
            category=category,
            comment=message.text.strip()[:COMMENT_LIMIT],
            timestamp=now,
            telegram_user_id=payer.telegram_user_id,
        )

    def _confirmation(
        self,
        ledger: Ledger,
        message: InboundMessage,
        records: list[ExpenseRecord],
        now: datetime,
        note: str | None = None,
        errors: list[str] | None = None,
    ) -> Reply:
        lines = [f"{self.amount(r.amount)} - {escape(r.category)}" for r in records]
        text = f"✅ <b>{chr(10).join(lines)}</b>"
        if note:
            text += f"\n<i>{escape(note)}</i>"

        progress = []
        for category in dict.fromkeys(r.category for r in records):
            if category in ledger.budgets:
                stats = budget_progress(category, ledger.budgets, ledger.expenses, now, self.tz)
                progress.extend(format_progress(stats, self.settings.currency_symbol))
        if progress:
            text += "\n\n" + "\n".join(progress)
        if errors:
            text += "\n\n" + "\n\n".join(errors)
        return Reply(text=text, reply_to=message.message_id)

    def record_expense(self, ledger: Ledger, message: InboundMessage) -> Reply | None:
        now = self.clock()
        tagged = resolve_tagged_expense(message.text, message.mentions, ledger.members)
        if tagged is not None:
            return self._record_tagged(ledger, message, tagged, now)

        result = extract_expenses(message.text, ledger.budgets)
        errors = [self._unknown_category(c) for c in result.unknown_categories]
        if not result.expenses:
            return Reply(text="\n\n".join(errors)) if errors else None

        payer = ledger.ensure_member(
            message.sender_id, message.sender_first_name, message.sender_username
        )
        records = [
            self._record(message, payer, e.amount, e.category or UNCATEGORIZED, now)
            for e in result.expenses
        ]
        ledger.add_expenses(records)
        logger.info(
            "Logged {} expense(s) for {} from message {}",
            len(records),
            payer.user_name,
            message.message_id,
        )
        return self._confirmation(ledger, message, records, now, errors=errors)

    def _record_tagged(
        self, ledger: Ledger, message: InboundMessage, tagged: TaggedExpense, now: datetime
    ) -> Reply:
        if tagged.category != UNCATEGORIZED and tagged.category not in ledger.budgets:
            return Reply(text=self._unknown_category(tagged.category))

        sender = ledger.ensure_member(
            message.sender_id, message.sender_first_name, message.sender_username
        )
        target = ledger.member(tagged.member.user_name) or tagged.member

        if tagged.relation == "by":
            shares = [(target, tagged.amount)]
            note = f"Paid by {target.label}"
        elif tagged.relation == "split" and target.user_name != sender.user_name:
            half = tagged.amount / 2
            shares = [(sender, half), (target, half)]
            note = f"Split between {sender.label} and {target.label}"
        else:
            shares = [(sender, tagged.amount)]
            note = f"{sender.label} paid for {target.label}"

        records = [
            self._record(message, payer, amount, tagged.category, now) for payer, amount in shares
        ]
        ledger.add_expenses(records)
        logger.info(
            "Logged tagged expense ({}) {} -> {} from message {}",
            tagged.relation,
            sender.user_name,
            target.user_name,
            message.message_id,
        )
        return self._confirmation(ledger, message, records, now, note=note)

    def revert(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if message.reply_to_message_id is None:
            return Reply(
                text="❌ <b>Invalid Usage</b>\n\n"
                "Reply to an expense message and type /revert to undo it."
            )

        reverted = ledger.discard(message.reply_to_message_id)
        if not reverted:
            return Reply(
                text="❌ <b>Expense Not Found</b>\n\nExpense not found or already reverted."
            )

        logger.info("Reverted {} record(s) of message {}", len(reverted), message.reply_to_message_id)
        lines = "\n".join(f"{self.amount(e.amount)} - {escape(e.category)}" for e in reverted)
        return Reply(
            text=f"♻️ <b>Expense Reverted</b>\n\n{lines}\n<i>removed</i>",
            reply_to=message.message_id,
        )

    def clear_all(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        count = ledger.discard_all()
        if not count:
            return Reply(text="🗑️ <b>No active expenses</b>")
        return Reply(text=f"🗑️ <b>Cleared {count} expenses</b>")

    # ── Categories ────────────────────────────────────────────────────

    def categories(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not ledger.budgets:
            return Reply(
                text="❌ <b>No categories yet</b>\n\nAdd one with:\n"
                "/addcategory &lt;name&gt; &lt;budget&gt;"
            )
        lines = [f"• {escape(c)}: {self.amount(b)}" for c, b in sorted(ledger.budgets.items())]
        return Reply(text="📂 <b>Categories</b>\n\n" + "\n".join(lines))

    def _category_and_budget(
        self, args: list[str], command: str, example: str
    ) -> tuple[str, float] | Reply:
        if len(args) < 2:
            return Reply(
                text=f"❌ <b>Usage</b>\n\n/{command} &lt;name&gt; &lt;budget&gt;\n"
                f"Example: /{command} {example}"
            )
        name = args[0].lower()
        if not CATEGORY_RE.match(name):
            return Reply(
                text="❌ <b>Invalid name</b>\n\nCategory names can only contain letters."
            )
        budget = parse_budget(args[1])
        if budget is None:
            return Reply(text="❌ <b>Invalid budget</b>\n\nBudget must be a positive number.")
        return name, budget

    def add_category(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        parsed = self._category_and_budget(args, "addcategory", "travel 2000")
        if isinstance(parsed, Reply):
            return parsed
        name, budget = parsed

        if name in ledger.budgets:
            return Reply(
                text=f'❌ <b>Already exists</b>\n\n"{name}" already exists with budget '
                f"{self.amount(ledger.budgets[name])}.\nUse /setbudget to update it."
            )
        ledger.set_budget(name, budget)
        return Reply(text=f"✅ <b>Added</b>\n\n{name}: {self.amount(budget)}")

    def set_budget(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        parsed = self._category_and_budget(args, "setbudget", "grocery 300")
        if isinstance(parsed, Reply):
            return parsed
        name, budget = parsed

        if name not in ledger.budgets:
            return Reply(
                text=f'❌ <b>Not found</b>\n\n"{name}" doesn\'t exist.\n'
                "Use /categories to see available categories."
            )
        old = ledger.budgets[name]
        ledger.set_budget(name, budget)
        return Reply(
            text=f"💰 <b>Budget Updated</b>\n\n{name}\n{self.amount(old)} → {self.amount(budget)}"
        )

    def delete_category(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not args:
            return Reply(
                text="❌ <b>Usage</b>\n\n/deletecategory &lt;name&gt;\n"
                "Example: /deletecategory travel"
            )
        name = args[0].lower()
        if name not in ledger.budgets:
            return Reply(
                text=f'❌ <b>Not found</b>\n\n"{escape(name)}" doesn\'t exist.\n'
                "Use /categories to see available categories."
            )
        if any(e.category == name for e in ledger.active_expenses()):
            return Reply(
                text=f'⚠️ <b>Cannot delete</b>\n\n"{name}" has active expenses.\n'
                "Revert or clear those expenses first."
            )
        ledger.delete_budget(name)
        return Reply(text=f"🗑️ <b>Deleted</b>\n\n{name} has been removed.")

    # ── Members ───────────────────────────────────────────────────────

    def members(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not ledger.members:
            return Reply(
                text="👥 <b>No Members</b>\n\n"
                "Members are added when they log their first expense or via /addmember."
            )
        lines = [f"• {escape(m.label)}" for m in ledger.members]
        return Reply(
            text="👥 <b>Registered Members</b>\n\n"
            + "\n".join(lines)
            + f"\n\n<i>Total: {len(ledger.members)}</i>"
        )

    def add_member(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not args:
            return Reply(text="❌ <b>Usage</b>\n\n/addmember &lt;name&gt;\nExample: /addmember John")
        name = " ".join(args)
        user_name = to_user_name(name)
        if ledger.member(user_name) is not None:
            return Reply(text=f'❌ <b>Already added</b>\n\n"{escape(name)}" is already registered.')

        ledger.add_member(Member(user_name=user_name, display_name=name))
        return Reply(text=f"✅ <b>Added</b>\n\n{escape(name)} has been added to the group.")

    def remove_member(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not args:
            return Reply(
                text="❌ <b>Usage</b>\n\n/removemember &lt;name&gt;\nExample: /removemember John"
            )
        name = " ".join(args)
        removed = ledger.remove_member(to_user_name(name))
        if removed is None:
            return Reply(
                text=f'❌ <b>Not found</b>\n\n"{escape(name)}" is not registered.\n'
                "Use /members to see all members."
            )
        text = (
            f"🗑️ <b>Removed</b>\n\n{escape(removed.label)} has been removed from the group.\n"
            "<i>Their past expenses stay in the ledger for reference.</i>"
        )
        if complete_if_all_settled(ledger.settlement, ledger.roster(), self.clock()):
            logger.info("Removing {} completed the settle-up round", removed.user_name)
            text += "\n\n🎉 <b>All Settled!</b>\nEveryone left has settled up. Ledger has been reset."
        return Reply(text=text)

    # ── Budgets ───────────────────────────────────────────────────────

    def _this_month(self, ledger: Ledger):
        windows = calendar_windows(self.clock(), self.tz)
        return windows, within(ledger.active_expenses(), windows.month, windows.tomorrow)

    def summary(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not ledger.budgets:
            return Reply(
                text="📊 <b>No Categories</b>\n\nUse /addcategory to create categories first."
            )
        _, month = self._this_month(ledger)
        by_category = spent_by_category(month)

        blocks = []
        for category, budget in ledger.budgets.items():
            spent = by_category.get(category, 0.0)
            remaining = budget - spent
            status = "✅" if remaining >= 0 else "⚠️"
            blocks.append(
                f"{status} <b>{escape(category)}</b>: {self.amount(spent, 0)}/{self.amount(budget)}"
                f" ({percent(spent, budget):.1f}%)\n   Left: {self.amount(remaining, 0)}"
            )
        return Reply(text="📊 <b>Summary</b>\n\n" + "\n\n".join(blocks))

    def budget(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        if not ledger.budgets:
            return Reply(
                text="📊 <b>No Categories</b>\n\nUse /addcategory to create categories first."
            )
        now = self.clock()
        lines = []
        for category in ledger.budgets:
            stats = budget_progress(category, ledger.budgets, ledger.expenses, now, self.tz)
            lines.append("\n".join(format_progress(stats, self.settings.currency_symbol)))
        return Reply(text="💰 <b>Budget Progress</b>\n\n" + "\n\n".join(lines))

    def alerts(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        _, month = self._this_month(ledger)
        by_category = spent_by_category(month)

        lines = []
        for category, budget in ledger.budgets.items():
            if budget <= 0:
                continue
            spent = by_category.get(category, 0.0)
            pct = percent(spent, budget)
            if pct >= 75:
                icon = "⚠️" if pct >= 90 else "⚡"
                lines.append(
                    f"{icon} <b>{escape(category)}</b>: {pct:.0f}% "
                    f"({self.amount(spent, 0)}/{self.amount(budget)})"
                )
        if not lines:
            return Reply(text="✅ <b>All budgets healthy</b>")
        return Reply(text="⚠️ <b>Budget Alerts</b>\n\n" + "\n".join(lines))

    def monthly(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        windows, month = self._this_month(ledger)
        if not month:
            return Reply(text="📅 <b>No expenses this month</b>")

        lines = [
            f"{escape(category)}: <b>{self.amount(amount, 2)}</b>"
            for category, amount in ranked(spent_by_category(month))
        ]
        return Reply(
            text=f"📅 <b>{windows.today.strftime('%B %Y')}</b>\n\n"
            f"<b>Total:</b> {self.amount(total_spent(month), 2)}\n"
            f"<b>Expenses:</b> {len(month)}\n\n" + "\n".join(lines)
        )

    # ── Settlement ────────────────────────────────────────────────────

    def owe(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        report = compute_settlement(
            ledger.expenses, ledger.roster(), ledger.settlement.last_settled_date
        )
        return Reply(text=format_settlement(report, ledger, self.settings.currency_symbol))

    def settled(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        member = ledger.member_by_telegram_id(message.sender_id)
        if member is None:
            return Reply(
                text="❌ <b>Not a member</b>\n\n"
                "Log an expense first or ask someone to /addmember you."
            )

        roster = ledger.roster()
        outcome = mark_settled(ledger.settlement, roster, member.user_name, self.clock())
        cutoff = ledger.settlement.last_settled_date
        if outcome is SettleOutcome.ALREADY_SETTLED:
            last = format_date(cutoff.astimezone(self.tz) if cutoff else None)
            return Reply(
                text="✅ <b>Already Settled</b>\n\nYou're already marked as settled.\n"
                f"Last full settlement: {last}"
            )

        ledger.mark_dirty()
        if outcome is SettleOutcome.ALL_SETTLED:
            logger.info("All {} members settled, new period from {}", len(roster), cutoff)
            return Reply(
                text="🎉 <b>All Settled!</b>\n\nEveryone has settled up!\nLedger has been reset.\n\n"
                "<i>Previous expenses archived.\nStart fresh!</i>"
            )
        return Reply(
            text="✅ <b>Marked as Settled</b>\n\n"
            f"Status: {settled_count(ledger.settlement, roster)}/{len(roster)} members settled\n"
            "<i>Waiting for others to settle...</i>"
        )

    # ── Reports ───────────────────────────────────────────────────────

    def _eligible(self, ledger: Ledger) -> list[ExpenseRecord]:
        return eligible_expenses(ledger.expenses, ledger.settlement.last_settled_date)

    def stats(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        expenses = self._eligible(ledger)
        if not expenses:
            return Reply(text="📊 <b>No expenses yet</b>")

        total = total_spent(expenses)
        top_user, top_user_amount = ranked(spent_by_user(expenses))[0]
        top_category, top_category_amount = ranked(spent_by_category(expenses))[0]
        return Reply(
            text="📊 <b>Stats</b>\n\n"
            f"<b>Total:</b> {self.amount(total, 2)}\n"
            f"<b>Expenses:</b> {len(expenses)}\n"
            f"<b>Average:</b> {self.amount(total / len(expenses), 2)}\n\n"
            f"<b>Top spender:</b> {escape(ledger.display_name(top_user))} "
            f"({self.amount(top_user_amount, 2)})\n"
            f"<b>Top category:</b> {escape(top_category)} ({self.amount(top_category_amount, 2)})"
        )

    def top_spenders(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        expenses = self._eligible(ledger)
        if not expenses:
            return Reply(text="🏆 <b>No expenses yet</b>")

        lines = []
        for idx, (user, amount) in enumerate(ranked(spent_by_user(expenses))[:TOP_SPENDERS]):
            medal = MEDALS[idx] if idx < len(MEDALS) else "  "
            lines.append(
                f"{medal} {escape(ledger.display_name(user))}: <b>{self.amount(amount, 2)}</b>"
            )
        return Reply(text="🏆 <b>Top Spenders</b>\n\n" + "\n".join(lines))

    def _newest_first(self, expenses: list[ExpenseRecord]) -> list[ExpenseRecord]:
        return sorted(expenses, key=lambda e: e.timestamp, reverse=True)

    def search(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        term = " ".join(args).lower().strip()
        if not term:
            return Reply(
                text="❌ <b>Usage:</b> /search &lt;term&gt;\n<i>Example: /search grocery</i>"
            )

        results = self._newest_first(
            [
                e
                for e in ledger.active_expenses()
                if term in e.category.lower() or term in e.comment.lower()
            ]
        )
        if not results:
            return Reply(text=f'🔍 <b>No results for "{escape(term)}"</b>')

        lines = [
            f"{format_date(e.timestamp.astimezone(self.tz), with_time=False)} • "
            f"{escape(ledger.display_name(e.user))} • <b>{self.amount(e.amount)}</b> - "
            f"{escape(e.category)}"
            for e in results[:SEARCH_LIMIT]
        ]
        more = (
            f"\n\n<i>+{len(results) - SEARCH_LIMIT} more</i>" if len(results) > SEARCH_LIMIT else ""
        )
        return Reply(text=f"🔍 <b>Results ({len(results)})</b>\n\n" + "\n".join(lines) + more)

    def last(self, ledger: Ledger, message: InboundMessage, args: list[str]) -> Reply:
        try:
            count = int(args[0]) if args else LAST_DEFAULT
        except ValueError:
            count = LAST_DEFAULT
        if count <= 0:
            count = LAST_DEFAULT

        recent = self._newest_first(active(ledger.expenses))[: min(count, LAST_MAX)]
        if not recent:
            return Reply(text="📝 <b>No expenses yet</b>")

        lines = [
            f"{format_date(e.timestamp.astimezone(self.tz))} • {escape(ledger.display_name(e.user))}\n"
            f"<b>{self.amount(e.amount)}</b> - {escape(e.category)}"
            for e in recent
        ]
        return Reply(text=f"📝 <b>Last {len(recent)}</b>\n\n" + "\n\n".join(lines))
