import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from backend.store import RecordStore, daily_exchange_rates, expenses, metadata


class RecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(engine)
        self.store = RecordStore(engine)

    def _expense(self, on_date: date, amount: str = "1.00") -> dict:
        return {
            "created_by": 1,
            "amount": Decimal(amount),
            "date": on_date,
            "currency": "USD",
        }

    def test_insert_select_update_delete(self) -> None:
        created = self.store.insert(
            expenses, [self._expense(date(2024, 1, 2)), self._expense(date(2024, 1, 1))]
        )

        ordered = self.store.select(expenses, {"created_by": 1}, order_by="date")
        updated = self.store.update(expenses, created[0]["id"], {"status": "pending"})
        removed = self.store.delete(expenses, created[1]["id"])

        self.assertEqual([row["date"] for row in ordered], [date(2024, 1, 1), date(2024, 1, 2)])
        self.assertEqual(updated["status"], "pending")
        self.assertEqual(removed, 1)
        self.assertEqual(len(self.store.select(expenses)), 1)
        self.assertIsNone(self.store.update(expenses, 999, {"status": "pending"}))

    def test_descending_order(self) -> None:
        self.store.insert(
            expenses, [self._expense(date(2024, 1, 1)), self._expense(date(2024, 1, 3))]
        )

        rows = self.store.select(expenses, order_by=["-date"])

        self.assertEqual(rows[0]["date"], date(2024, 1, 3))

    def test_transaction_rolls_back_on_error(self) -> None:
        self.store.insert(daily_exchange_rates, [{"date": "2024-01-01", "rates": {}}])

        with self.assertRaises(IntegrityError):
            with self.store.transaction() as tx:
                tx.insert(expenses, [self._expense(date(2024, 1, 1))])
                tx.insert(daily_exchange_rates, [{"date": "2024-01-01", "rates": {}}])

        self.assertEqual(self.store.select(expenses), [])


if __name__ == "__main__":
    unittest.main()
