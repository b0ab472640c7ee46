import unittest
from datetime import date
from decimal import Decimal

from ledger_backend.errors import NotFound
from ledger_backend.persistence import (
    build_expecting_transaction,
    create_user,
    delete_expecting_transaction,
    fetch_expecting_transactions,
    fetch_transactions,
    save_expecting_transaction,
)
from ledger_backend.recurring_processor import (
    CATCH_UP_SUFFIX,
    build_occurrence_transaction,
    due_occurrences,
    get_missing_months,
    materialize_occurrence,
    process_expecting_transactions,
)
from ledger_backend.state import SessionState
from ledger_backend.storage import create_storage_engine, init_storage, read_user

RATES = {"EUR": Decimal("1"), "USD": Decimal("1.25")}


class MissingMonthsTests(unittest.TestCase):
    def test_lists_unprocessed_months_before_current(self) -> None:
        months = get_missing_months(date(2023, 11, 20), ["2023-12"], date(2024, 3, 1))

        self.assertEqual(months, ["2023-11", "2024-01", "2024-02"])

    def test_nothing_missing_in_start_month(self) -> None:
        self.assertEqual(get_missing_months(date(2024, 3, 1), [], date(2024, 3, 31)), [])


class RecurringProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_storage_engine("sqlite://")
        init_storage(self.engine)
        self.user_id = create_user(self.engine, "EUR", "EUR")
        self.state = SessionState(user_id=self.user_id)
        self.state.balance.fetch_or_init(self.engine, self.user_id)

    def definition(self, pay_day=5, start=date(2024, 1, 5), currency="EUR", save=True):
        expecting = build_expecting_transaction(
            amount=Decimal("1000"),
            transaction_type="income",
            category="Salary",
            pay_day=pay_day,
            start_date=start,
            currency_code=currency,
            base_currency="EUR",
            rates={"EUR": Decimal("1"), "USD": Decimal("1.1")},
            description="Pay",
        )
        if save:
            save_expecting_transaction(self.engine, expecting, self.user_id)
        return expecting

    def process(self, definitions, today, state=None):
        return process_expecting_transactions(
            self.engine, definitions, self.user_id, RATES, "EUR", state=state, today=today
        )

    def stored_balance(self) -> Decimal:
        with self.engine.begin() as conn:
            return Decimal(read_user(conn, self.user_id)["current_balance"])

    def test_catches_up_missed_months_and_current_month(self) -> None:
        expecting = self.definition()

        materialized = self.process([expecting], date(2024, 4, 10), state=self.state)

        self.assertEqual(
            [tx.date for tx in materialized],
            [date(2024, 1, 5), date(2024, 2, 5), date(2024, 3, 5), date(2024, 4, 10)],
        )
        self.assertEqual(
            [tx.description for tx in materialized],
            [f"Pay {CATCH_UP_SUFFIX}"] * 3 + ["Pay"],
        )
        self.assertEqual(expecting.processed_months, ["2024-01", "2024-02", "2024-03", "2024-04"])
        self.assertEqual(self.stored_balance(), Decimal("4000"))
        self.assertEqual(self.state.balance.current_balance, Decimal("4000"))
        self.assertEqual(len(self.state.transactions), 4)
        self.assertEqual(
            fetch_expecting_transactions(self.engine, self.user_id)[0].processed_months,
            ["2024-01", "2024-02", "2024-03", "2024-04"],
        )

    def test_second_run_is_a_no_op(self) -> None:
        expecting = self.definition()
        self.process([expecting], date(2024, 4, 10))

        self.assertEqual(self.process([expecting], date(2024, 4, 10)), [])
        self.assertEqual(len(fetch_transactions(self.engine, self.user_id)), 4)

    def test_stale_copy_does_not_duplicate_months(self) -> None:
        self.definition()
        first_copy = fetch_expecting_transactions(self.engine, self.user_id)
        second_copy = fetch_expecting_transactions(self.engine, self.user_id)

        self.assertEqual(len(self.process(first_copy, date(2024, 4, 10))), 4)
        self.assertEqual(self.process(second_copy, date(2024, 4, 10)), [])
        self.assertEqual(len(fetch_transactions(self.engine, self.user_id)), 4)
        self.assertEqual(self.stored_balance(), Decimal("4000"))

    def test_current_month_waits_for_pay_day(self) -> None:
        expecting = self.definition(pay_day=20, start=date(2024, 4, 1))

        self.assertEqual(self.process([expecting], date(2024, 4, 10)), [])

        materialized = self.process([expecting], date(2024, 4, 21))
        self.assertEqual([tx.date for tx in materialized], [date(2024, 4, 21)])

    def test_definition_starting_later_is_not_due(self) -> None:
        expecting = self.definition(start=date(2024, 6, 1), save=False)

        self.assertEqual(due_occurrences(expecting, date(2024, 4, 10)), [])

    def test_deleted_definition_is_skipped(self) -> None:
        expecting = self.definition()
        delete_expecting_transaction(self.engine, expecting.id, self.user_id)

        self.assertEqual(self.process([expecting], date(2024, 4, 10)), [])
        self.assertEqual(self.stored_balance(), Decimal("0"))
        self.assertEqual(expecting.processed_months, [])

    def test_materialize_raises_for_deleted_definition(self) -> None:
        expecting = self.definition()
        occurrence = due_occurrences(expecting, date(2024, 2, 1))[0]
        transaction = build_occurrence_transaction(expecting, occurrence, RATES, "EUR")
        delete_expecting_transaction(self.engine, expecting.id, self.user_id)

        with self.assertRaises(NotFound):
            materialize_occurrence(self.engine, expecting, transaction, occurrence.month, self.user_id)
        self.assertEqual(fetch_transactions(self.engine, self.user_id), [])

    def test_materialize_reports_already_recorded_month(self) -> None:
        expecting = self.definition()
        occurrence = due_occurrences(expecting, date(2024, 2, 1))[0]
        transaction = build_occurrence_transaction(expecting, occurrence, RATES, "EUR")

        self.assertTrue(
            materialize_occurrence(self.engine, expecting, transaction, occurrence.month, self.user_id)
        )
        retry = build_occurrence_transaction(expecting, occurrence, RATES, "EUR")
        self.assertFalse(
            materialize_occurrence(self.engine, expecting, retry, occurrence.month, self.user_id)
        )

    def test_uses_snapshot_rate_for_base_amount(self) -> None:
        expecting = self.definition(currency="USD", start=date(2024, 4, 1))

        materialized = self.process([expecting], date(2024, 4, 10))

        self.assertEqual(materialized[0].exchange_rate, Decimal("1.25"))
        self.assertEqual(materialized[0].base_amount, Decimal("800"))
        self.assertEqual(materialized[0].orig_amount, Decimal("1000"))

    def test_falls_back_to_definition_rate(self) -> None:
        expecting = self.definition(currency="USD", start=date(2024, 4, 1), save=False)
        occurrence = due_occurrences(expecting, date(2024, 4, 10))[0]

        transaction = build_occurrence_transaction(expecting, occurrence, {"EUR": Decimal("1")}, "EUR")

        self.assertEqual(transaction.exchange_rate, Decimal("1.1"))

    def test_signature_ignores_catch_up_suffix(self) -> None:
        expecting = self.definition(save=False)
        occurrence = due_occurrences(expecting, date(2024, 2, 10))[0]

        transaction = build_occurrence_transaction(expecting, occurrence, RATES, "EUR")

        self.assertTrue(occurrence.catch_up)
        self.assertEqual(transaction.signature, "1000|income|Salary|Pay|2024-01-05|EUR")


if __name__ == "__main__":
    unittest.main()
