import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, PrivateAttr

UNCATEGORIZED = "uncategorized"

Relation = Literal["for", "by", "split"]


def to_user_name(name: str) -> str:
    """Stable roster key for a human name: 'John Doe' -> 'john_doe'."""
    return re.sub(r"\s+", "_", name.strip().lower())


class ExpenseRecord(BaseModel):
    id: int
    user: str
    amount: float = Field(ge=0)
    category: str = UNCATEGORIZED
    comment: str = ""
    timestamp: datetime
    discarded: bool = False
    telegram_user_id: int | None = None


class Member(BaseModel):
    user_name: str
    telegram_user_id: int | None = None
    display_name: str | None = None
    username: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.username or self.user_name


class SettlementState(BaseModel):
    settled: dict[str, bool] = {}
    last_settled_date: datetime | None = None


class Ledger(BaseModel):
    """A full snapshot of the group's ledger, loaded and committed as a unit."""

    version: int = 0
    degraded: bool = False
    budgets: dict[str, float] = {}
    expenses: list[ExpenseRecord] = []
    members: list[Member] = []
    settlement: SettlementState = Field(default_factory=SettlementState)

    _dirty: bool = PrivateAttr(default=False)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_dirty(self) -> None:
        self._dirty = True

    def mark_clean(self) -> None:
        self._dirty = False

    # Roster

    def member(self, user_name: str) -> Member | None:
        return next((m for m in self.members if m.user_name == user_name), None)

    def member_by_telegram_id(self, telegram_user_id: int) -> Member | None:
        return next(
            (m for m in self.members if m.telegram_user_id == telegram_user_id), None
        )

    def roster(self) -> list[str]:
        return [m.user_name for m in self.members]

    def display_name(self, user_name: str) -> str:
        member = self.member(user_name)
        return member.label if member else user_name

    def add_member(self, member: Member) -> None:
        self.members.append(member)
        self.mark_dirty()

    def remove_member(self, user_name: str) -> Member | None:
        member = self.member(user_name)
        if member is None:
            return None
        self.members.remove(member)
        self.settlement.settled.pop(user_name, None)
        self.mark_dirty()
        return member

    def ensure_member(
        self,
        telegram_user_id: int,
        first_name: str | None = None,
        username: str | None = None,
    ) -> Member:
        """Return the roster entry for a Telegram user, registering it if needed.

        A member added by hand (no Telegram id yet) whose key matches the
        sender's derived name is claimed instead of creating a duplicate.
        """
        existing = self.member_by_telegram_id(telegram_user_id)
        if existing is not None:
            display_name = first_name or existing.display_name
            handle = username or existing.username
            if (existing.display_name, existing.username) != (display_name, handle):
                existing.display_name = display_name
                existing.username = handle
                self.mark_dirty()
            return existing

        base = to_user_name(first_name or username or f"user{telegram_user_id}")
        unclaimed = self.member(base)
        if unclaimed is not None and unclaimed.telegram_user_id is None:
            unclaimed.telegram_user_id = telegram_user_id
            unclaimed.username = username or unclaimed.username
            self.mark_dirty()
            return unclaimed

        user_name = base
        counter = 1
        while self.member(user_name) is not None:
            user_name = f"{base}_{counter}"
            counter += 1

        member = Member(
            user_name=user_name,
            telegram_user_id=telegram_user_id,
            display_name=first_name or None,
            username=username or None,
        )
        self.add_member(member)
        return member

    # Budgets

    def set_budget(self, category: str, budget: float) -> None:
        self.budgets[category] = budget
        self.mark_dirty()

    def delete_budget(self, category: str) -> None:
        del self.budgets[category]
        self.mark_dirty()

    # Expenses

    def active_expenses(self) -> list[ExpenseRecord]:
        return [e for e in self.expenses if not e.discarded]

    def find_expenses(self, expense_id: int) -> list[ExpenseRecord]:
        return [e for e in self.expenses if e.id == expense_id]

    def add_expenses(self, records: list[ExpenseRecord]) -> None:
        if records:
            self.expenses.extend(records)
            self.mark_dirty()

    def discard(self, expense_id: int) -> list[ExpenseRecord]:
        """Discard every active record created by one message."""
        targets = [e for e in self.find_expenses(expense_id) if not e.discarded]
        for expense in targets:
            expense.discarded = True
        if targets:
            self.mark_dirty()
        return targets

    def discard_all(self) -> int:
        targets = self.active_expenses()
        for expense in targets:
            expense.discarded = True
        if targets:
            self.mark_dirty()
        return len(targets)


# ── Parsing ───────────────────────────────────────────────────────────


class ParsedExpense(BaseModel):
    amount: float
    category: str | None = None


class ExtractionResult(BaseModel):
    expenses: list[ParsedExpense] = []
    unknown_categories: list[str] = []


class MentionSpan(BaseModel):
    offset: int
    length: int
    text: str
    user_id: int | None = None
    display_name: str | None = None


class TaggedExpense(BaseModel):
    amount: float
    category: str
    member: Member
    relation: Relation
    cleaned_comment: str


class InboundMessage(BaseModel):
    chat_id: int
    message_id: int
    text: str
    sender_id: int
    sender_first_name: str | None = None
    sender_username: str | None = None
    mentions: list[MentionSpan] = []
    reply_to_message_id: int | None = None


class Reply(BaseModel):
    text: str
    reply_to: int | None = None


# ── Settlement ────────────────────────────────────────────────────────


class Transfer(BaseModel):
    debtor: str
    creditor: str
    amount: float


class SettlementReport(BaseModel):
    total: float = 0.0
    share: float = 0.0
    balances: dict[str, float] = {}
    transfers: list[Transfer] = []
    all_clear: bool = True


# ── API ───────────────────────────────────────────────────────────────


class ParseRequest(BaseModel):
    message: str


class ParseResponse(BaseModel):
    parsed: ParsedExpense | None = None


class DigestResponse(BaseModel):
    success: bool
    message: str
    timestamp: datetime
