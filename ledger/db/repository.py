import threading
import time
from collections.abc import Callable
from typing import TypeVar

from loguru import logger
from tinydb import Query, TinyDB

from ledger.models.schemas import (
    ExpenseRecord,
    Ledger,
    Member,
    SettlementState,
)

T = TypeVar("T")


class StorageError(Exception):
    """The ledger could not be written."""


class VersionConflictError(StorageError):
    """Someone else committed since the snapshot was loaded."""


class LedgerRepository:
    """Read-all / replace-all access to the ledger tables.

    Every unit of work loads a versioned snapshot and commits it back with a
    version check, so two overlapping updates cannot silently overwrite
    each other.
    """

    def __init__(
        self,
        db_path: str = "group_ledger.json",
        write_retries: int = 3,
        retry_backoff: float = 0.2,
    ):
        self.db = TinyDB(db_path)
        self.write_retries = max(write_retries, 1)
        self.retry_backoff = retry_backoff
        self._lock = threading.Lock()

    def _meta(self) -> dict:
        docs = self.db.table("meta").all()
        return dict(docs[0]) if docs else {}

    def _read(self) -> Ledger:
        meta = self._meta()
        budgets = {
            doc["category"]: float(doc["budget"]) for doc in self.db.table("budgets").all()
        }
        expenses = [ExpenseRecord(**doc) for doc in self.db.table("expenses").all()]
        members = [Member(**doc) for doc in self.db.table("members").all()]
        settled = {
            doc["user_name"]: bool(doc["settled"])
            for doc in self.db.table("settlements").all()
        }
        return Ledger(
            version=meta.get("version", 0),
            budgets=budgets,
            expenses=expenses,
            members=members,
            settlement=SettlementState(
                settled=settled, last_settled_date=meta.get("last_settled_date")
            ),
        )

    def load(self) -> Ledger:
        """Load the whole ledger; an unreadable store yields an empty snapshot."""
        try:
            return self._read()
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ledger read failed, continuing with empty data: {}", e)
            return Ledger(degraded=True)

    def _replace(self, name: str, rows: list[dict]) -> None:
        table = self.db.table(name)
        delay = self.retry_backoff
        for attempt in range(1, self.write_retries + 1):
            try:
                table.truncate()
                if rows:
                    table.insert_multiple(rows)
                return
            except OSError as e:
                if attempt == self.write_retries:
                    raise StorageError(f"Could not write table {name!r}") from e
                logger.warning(
                    "Writing {} failed (attempt {}/{}): {}", name, attempt, self.write_retries, e
                )
                time.sleep(delay)
                delay *= 2

    def commit(self, ledger: Ledger) -> None:
        """Replace every table with the snapshot's contents."""
        if ledger.degraded:
            raise StorageError("Refusing to overwrite the ledger with a partial snapshot")

        with self._lock:
            current = self._meta().get("version", 0)
            if current != ledger.version:
                raise VersionConflictError(
                    f"Ledger changed (loaded v{ledger.version}, now v{current})"
                )

            self._replace(
                "budgets",
                [{"category": c, "budget": b} for c, b in ledger.budgets.items()],
            )
            self._replace("expenses", [e.model_dump(mode="json") for e in ledger.expenses])
            self._replace("members", [m.model_dump(mode="json") for m in ledger.members])
            self._replace(
                "settlements",
                [{"user_name": u, "settled": s} for u, s in ledger.settlement.settled.items()],
            )
            cutoff = ledger.settlement.last_settled_date
            self._replace(
                "meta",
                [
                    {
                        "version": current + 1,
                        "last_settled_date": cutoff.isoformat() if cutoff else None,
                    }
                ],
            )

        ledger.version = current + 1
        ledger.mark_clean()

    def run(self, unit_of_work: Callable[[Ledger], T], attempts: int = 3) -> T:
        """Load, apply ``unit_of_work`` and commit, retrying on conflicts.

        The callable may run more than once and must only touch the snapshot
        it is given.
        """
        for attempt in range(1, attempts + 1):
            ledger = self.load()
            result = unit_of_work(ledger)
            if not ledger.dirty:
                return result
            try:
                self.commit(ledger)
                return result
            except VersionConflictError as e:
                logger.warning("Commit conflict (attempt {}/{}): {}", attempt, attempts, e)
        raise StorageError(f"Gave up after {attempts} conflicting commits")

    def get_expenses(self, expense_id: int) -> list[ExpenseRecord]:
        """All records for one message id, discarded ones included."""
        Expense = Query()
        docs = self.db.table("expenses").search(Expense.id == expense_id)
        return [ExpenseRecord(**doc) for doc in docs]
