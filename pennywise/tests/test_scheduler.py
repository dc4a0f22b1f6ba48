import unittest
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert, select

from pennywise.accounts import create_account
from pennywise.db import accounts, create_db_engine, init_db, transactions, users
from pennywise.errors import StorageError
from pennywise.ledger import apply_create
from pennywise.recurrence import WorkItem
from pennywise.scheduler import (
    IntervalTrigger,
    WorkQueue,
    run_recurring_cycle,
    trigger_recurring_transactions,
)
from pennywise.schemas import AccountPayload, TransactionPayload


class WorkQueueTests(unittest.TestCase):
    def test_failed_item_is_retried_until_it_succeeds(self) -> None:
        queue = WorkQueue(max_attempts=3)
        queue.put([WorkItem(transaction_id=1, user_id=1)])
        attempts = []

        def handler(item: WorkItem) -> None:
            attempts.append(item.transaction_id)
            if len(attempts) == 1:
                raise StorageError("database is locked")

        report = queue.drain(handler)

        self.assertEqual(attempts, [1, 1])
        self.assertEqual(report.processed, 1)
        self.assertEqual(report.retried, 1)
        self.assertEqual(report.abandoned, 0)
        self.assertEqual(len(queue), 0)

    def test_failing_item_does_not_block_others(self) -> None:
        queue = WorkQueue(max_attempts=2)
        queue.put(
            [
                WorkItem(transaction_id=1, user_id=1),
                WorkItem(transaction_id=2, user_id=1),
                WorkItem(transaction_id=3, user_id=2),
            ]
        )
        handled = []

        def handler(item: WorkItem) -> None:
            if item.transaction_id == 2:
                raise StorageError("constraint failed")
            handled.append(item.transaction_id)

        report = queue.drain(handler)

        self.assertEqual(handled, [1, 3])
        self.assertEqual(report.processed, 2)
        self.assertEqual(report.retried, 1)
        self.assertEqual(report.abandoned, 1)

    def test_interval_trigger_rejects_non_positive_period(self) -> None:
        trigger = IntervalTrigger()

        with self.assertRaises(ValueError):
            trigger.schedule("noop", 0, lambda: None)


class RecurringCycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        with self.engine.begin() as conn:
            self.user_id = conn.execute(
                insert(users).values(email="ana@example.com", name="Ana").returning(users.c.id)
            ).scalar_one()
        self.account_id = create_account(
            self.engine, self.user_id, AccountPayload(name="Checking", balance=Decimal("1000"))
        )["id"]
        for amount, interval in [("15.99", "MONTHLY"), ("5", "DAILY")]:
            apply_create(
                self.engine,
                self.user_id,
                TransactionPayload(
                    account_id=self.account_id,
                    type="EXPENSE",
                    amount=Decimal(amount),
                    description="Subscription",
                    date=datetime(2024, 4, 1),
                    category="entertainment",
                    is_recurring=True,
                    recurring_interval=interval,
                ),
            )

    def tearDown(self) -> None:
        self.engine.dispose()

    def _balance(self) -> Decimal:
        with self.engine.begin() as conn:
            return conn.execute(
                select(accounts.c.balance).where(accounts.c.id == self.account_id)
            ).scalar_one()

    def test_cycle_processes_each_due_item_once(self) -> None:
        queue = WorkQueue()
        now = datetime(2024, 4, 2, 0, 0)

        report = run_recurring_cycle(self.engine, queue, now)

        self.assertEqual(report.processed, 2)
        self.assertEqual(self._balance(), Decimal("958.02"))
        with self.engine.begin() as conn:
            generated = conn.execute(
                select(transactions.c.id).where(transactions.c.description.like("%(Recurring)"))
            ).all()
        self.assertEqual(len(generated), 2)

        self.assertEqual(trigger_recurring_transactions(self.engine, queue, now), 0)

    def test_duplicate_delivery_is_skipped_after_first_processing(self) -> None:
        queue = WorkQueue()
        now = datetime(2024, 4, 2)
        trigger_recurring_transactions(self.engine, queue, now)
        trigger_recurring_transactions(self.engine, queue, now)
        self.assertEqual(len(queue), 4)

        run_recurring_cycle(self.engine, queue, now)

        self.assertEqual(self._balance(), Decimal("958.02"))


if __name__ == "__main__":
    unittest.main()
