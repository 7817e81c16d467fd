"""Equal-split balances, debt resolution and the group settle-up cycle."""

from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from ledger.models.schemas import (
    ExpenseRecord,
    SettlementReport,
    SettlementState,
    Transfer,
)
from ledger.services.aggregates import active, after, spent_by_user, total_spent

# Residue below one cent counts as settled
EPSILON = 0.01


class SettleOutcome(str, Enum):
    ALREADY_SETTLED = "already_settled"
    PENDING = "pending"
    ALL_SETTLED = "all_settled"


def eligible_expenses(
    expenses: Iterable[ExpenseRecord], cutoff: datetime | None
) -> list[ExpenseRecord]:
    """Active records logged after the last full settlement."""
    return after(active(expenses), cutoff)


def compute_settlement(
    expenses: Iterable[ExpenseRecord],
    roster: list[str],
    cutoff: datetime | None = None,
) -> SettlementReport:
    """
    Work out who owes whom so that everyone ends up paying an equal share.

    Algorithm:
    1. Every user owes ``total / len(users)``
    2. Balance = what they paid - their share
    3. Match the largest debtor with the largest creditor and settle as much
       as possible, repeat until one side runs out

    When the roster is empty the distinct payers stand in for it. Otherwise
    only expenses paid by roster members take part.
    """
    eligible = eligible_expenses(expenses, cutoff)
    if roster:
        members = set(roster)
        eligible = [e for e in eligible if e.user in members]
    users = list(roster) or list(dict.fromkeys(e.user for e in eligible))

    if not users or not eligible:
        return SettlementReport(balances={u: 0.0 for u in users}, all_clear=True)

    total = total_spent(eligible)
    share = total / len(users)
    spent = spent_by_user(eligible)
    balances = {u: spent.get(u, 0.0) - share for u in users}

    transfers = resolve_transfers(balances)
    return SettlementReport(
        total=total,
        share=share,
        balances=balances,
        transfers=transfers,
        all_clear=not transfers,
    )


def resolve_transfers(balances: dict[str, float]) -> list[Transfer]:
    """
    Greedily turn balances into pairwise payments.

    Positive balance = overpaid (creditor), negative = owes (debtor).
    Both sides are sorted by magnitude, largest first.
    """
    debtors = [[u, -b] for u, b in balances.items() if b < -EPSILON]
    creditors = [[u, b] for u, b in balances.items() if b > EPSILON]
    debtors.sort(key=lambda x: x[1], reverse=True)
    creditors.sort(key=lambda x: x[1], reverse=True)

    transfers = []
    i, j = 0, 0
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]
        amount = min(debtor[1], creditor[1])
        transfers.append(Transfer(debtor=debtor[0], creditor=creditor[0], amount=amount))

        debtor[1] -= amount
        creditor[1] -= amount
        if debtor[1] < EPSILON:
            i += 1
        if creditor[1] < EPSILON:
            j += 1

    return transfers


def mark_settled(
    state: SettlementState, roster: list[str], user_name: str, now: datetime
) -> SettleOutcome:
    """Record that ``user_name`` has paid up.

    Once every roster member is marked the flags are cleared and the
    cutoff moves to ``now``, which starts a fresh settlement period.
    """
    if state.settled.get(user_name):
        return SettleOutcome.ALREADY_SETTLED

    state.settled[user_name] = True
    if complete_if_all_settled(state, roster, now):
        return SettleOutcome.ALL_SETTLED
    return SettleOutcome.PENDING


def complete_if_all_settled(state: SettlementState, roster: list[str], now: datetime) -> bool:
    """Start a new period when every roster member is marked settled.

    Also needed after the roster shrinks, since removing the last
    unsettled member completes the round. An empty roster never completes.
    """
    if not roster or not all(state.settled.get(u) for u in roster):
        return False
    state.settled = {}
    state.last_settled_date = now
    return True


def settled_count(state: SettlementState, roster: list[str]) -> int:
    return sum(1 for u in roster if state.settled.get(u))
