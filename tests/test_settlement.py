from datetime import datetime, timedelta, timezone

import pytest

from ledger.models.schemas import ExpenseRecord, SettlementState
from ledger.services.settlement import (
    EPSILON,
    SettleOutcome,
    complete_if_all_settled,
    compute_settlement,
    eligible_expenses,
    mark_settled,
    resolve_transfers,
    settled_count,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

_ids = iter(range(1, 10000))


def expense(user, amount, when=T0, discarded=False):
    return ExpenseRecord(
        id=next(_ids), user=user, amount=amount, timestamp=when, discarded=discarded
    )


def apply(balances, transfers):
    left = dict(balances)
    for t in transfers:
        left[t.debtor] += t.amount
        left[t.creditor] -= t.amount
    return left


def test_two_member_scenario():
    report = compute_settlement([expense("alice", 300), expense("bob", 100)], ["alice", "bob"])
    assert report.total == 400
    assert report.share == 200
    assert report.balances == {"alice": 100, "bob": -100}
    assert [(t.debtor, t.creditor, t.amount) for t in report.transfers] == [
        ("bob", "alice", 100)
    ]
    assert not report.all_clear


def test_three_members_one_payer():
    report = compute_settlement([expense("alice", 300)], ["alice", "bob", "carol"])
    assert [(t.debtor, t.creditor, t.amount) for t in report.transfers] == [
        ("bob", "alice", 100),
        ("carol", "alice", 100),
    ]
    left = apply(report.balances, report.transfers)
    assert all(abs(v) < EPSILON for v in left.values())


@pytest.mark.parametrize(
    "payments",
    [
        [("a", 10), ("b", 33.33), ("c", 0.01), ("a", 250.5)],
        [("a", 100), ("b", 100), ("c", 100), ("d", 1)],
        [("a", 19.99), ("b", 7), ("c", 7), ("d", 1000), ("e", 0.5)],
    ],
)
def test_balances_sum_to_zero_and_transfers_clear_them(payments):
    roster = ["a", "b", "c", "d", "e"]
    report = compute_settlement([expense(u, amt) for u, amt in payments], roster)
    assert sum(report.balances.values()) == pytest.approx(0, abs=1e-9)
    left = apply(report.balances, report.transfers)
    assert all(abs(v) < EPSILON for v in left.values())


def test_sub_epsilon_residue_is_all_clear():
    report = compute_settlement(
        [expense("alice", 100.005), expense("bob", 100)], ["alice", "bob"]
    )
    assert report.transfers == []
    assert report.all_clear


def test_nothing_to_settle():
    report = compute_settlement([], ["alice", "bob"])
    assert report.all_clear
    assert report.total == 0
    assert report.balances == {"alice": 0, "bob": 0}

    assert compute_settlement([], []).all_clear


def test_payers_stand_in_for_empty_roster():
    report = compute_settlement([expense("alice", 60), expense("bob", 20)], [])
    assert set(report.balances) == {"alice", "bob"}
    assert report.transfers[0].amount == 20


def test_expenses_of_non_members_are_ignored():
    report = compute_settlement(
        [expense("alice", 100), expense("mallory", 500)], ["alice", "bob"]
    )
    assert report.total == 100
    assert sum(report.balances.values()) == pytest.approx(0)


def test_cutoff_and_discarded_records_are_excluded():
    cutoff = T0 + timedelta(days=1)
    expenses = [
        expense("alice", 500, when=T0),
        expense("alice", 70, when=cutoff),
        expense("bob", 40, when=cutoff + timedelta(hours=1)),
        expense("bob", 999, when=cutoff + timedelta(hours=2), discarded=True),
    ]
    assert [e.amount for e in eligible_expenses(expenses, cutoff)] == [40]

    report = compute_settlement(expenses, ["alice", "bob"], cutoff)
    assert report.total == 40
    assert [(t.debtor, t.creditor, t.amount) for t in report.transfers] == [
        ("alice", "bob", 20)
    ]


def test_resolve_transfers_matches_largest_first():
    transfers = resolve_transfers({"a": -50, "b": -10, "c": 35, "d": 25})
    assert [(t.debtor, t.creditor, t.amount) for t in transfers] == [
        ("a", "c", 35),
        ("a", "d", 15),
        ("b", "d", 10),
    ]


class TestMarkSettled:
    roster = ["alice", "bob"]

    def test_cycle(self):
        state = SettlementState()
        now = T0 + timedelta(days=3)

        assert mark_settled(state, self.roster, "alice", now) is SettleOutcome.PENDING
        assert settled_count(state, self.roster) == 1
        assert state.last_settled_date is None

        assert mark_settled(state, self.roster, "alice", now) is SettleOutcome.ALREADY_SETTLED

        assert mark_settled(state, self.roster, "bob", now) is SettleOutcome.ALL_SETTLED
        assert state.settled == {}
        assert state.last_settled_date == now

    def test_all_settled_leaves_no_eligible_expenses(self):
        state = SettlementState()
        expenses = [expense("alice", 300), expense("bob", 100)]
        now = T0 + timedelta(hours=1)
        mark_settled(state, self.roster, "alice", now)
        mark_settled(state, self.roster, "bob", now)

        report = compute_settlement(expenses, self.roster, state.last_settled_date)
        assert report.all_clear
        assert report.total == 0

    def test_shrinking_roster_completes_the_round(self):
        state = SettlementState()
        now = T0 + timedelta(days=1)
        mark_settled(state, ["alice", "bob", "carol"], "alice", now)
        mark_settled(state, ["alice", "bob", "carol"], "bob", now)

        assert complete_if_all_settled(state, ["alice", "bob"], now)
        assert state.settled == {}
        assert state.last_settled_date == now

    def test_empty_roster_never_completes(self):
        state = SettlementState(settled={"alice": True})
        assert not complete_if_all_settled(state, [], T0)
        assert state.last_settled_date is None
