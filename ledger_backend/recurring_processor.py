from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from typing import Iterable, List, Mapping, Set

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ledger_backend.errors import NotFound
from ledger_backend.models import ExpectingTransaction, Transaction, month_key
from ledger_backend.persistence import (
    compute_base_amount,
    mirror_balance_effect,
    new_record_id,
    stage_transaction_save,
)
from ledger_backend.signatures import compute_signature
from ledger_backend.state import SessionState
from ledger_backend.storage import (
    DEFAULT_COMMIT_ATTEMPTS,
    expecting_transactions,
    processed_months,
    run_atomic,
)

logger = logging.getLogger(__name__)

CATCH_UP_SUFFIX = "(added for missed month)"


@dataclass(frozen=True)
class DueOccurrence:
    month: str
    date: date
    catch_up: bool


def get_missing_months(
    start_date: date, processed: Iterable[str], today: date
) -> List[str]:
    """Months from the start month through last month that were never processed."""
    processed_set: Set[str] = set(processed)
    current = _month_start(start_date)
    end = _add_months(_month_start(today), -1)
    missing: List[str] = []
    while current <= end:
        key = month_key(current)
        if key not in processed_set:
            missing.append(key)
        current = _add_months(current, 1)
    return missing


def due_occurrences(expecting: ExpectingTransaction, today: date) -> List[DueOccurrence]:
    processed = set(expecting.processed_months)
    occurrences = [
        DueOccurrence(
            month=month,
            date=date(int(month[:4]), int(month[5:7]), expecting.pay_day),
            catch_up=True,
        )
        for month in get_missing_months(expecting.start_date, processed, today)
    ]
    current_month = month_key(today)
    if (
        today.day >= expecting.pay_day
        and current_month not in processed
        and current_month >= month_key(expecting.start_date)
    ):
        # recorded on the processing day, never later than today
        occurrences.append(DueOccurrence(month=current_month, date=today, catch_up=False))
    return occurrences


def build_occurrence_transaction(
    expecting: ExpectingTransaction,
    occurrence: DueOccurrence,
    rates: Mapping[str, Decimal],
    base_currency: str,
) -> Transaction:
    code = expecting.currency.code
    if code == base_currency:
        exchange_rate = Decimal("1")
    else:
        snapshot_rate = rates.get(code)
        exchange_rate = Decimal(str(snapshot_rate)) if snapshot_rate else expecting.exchange_rate

    description = expecting.description
    if occurrence.catch_up:
        description = " ".join(part for part in (description, CATCH_UP_SUFFIX) if part)

    return Transaction(
        id=new_record_id(),
        signature=compute_signature(
            expecting.orig_amount,
            expecting.type,
            expecting.category,
            expecting.description,
            occurrence.date,
            code,
        ),
        orig_amount=expecting.orig_amount,
        base_amount=compute_base_amount(expecting.orig_amount, code, base_currency, exchange_rate),
        currency=expecting.currency,
        type=expecting.type,
        date=occurrence.date,
        category=expecting.category,
        description=description,
        exchange_rate=exchange_rate,
        has_transaction_completed=True,
    )


def materialize_occurrence(
    engine: Engine,
    expecting: ExpectingTransaction,
    transaction: Transaction,
    month: str,
    user_id: int,
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> bool:
    """Record one month of a definition; False when it was already recorded.

    Raises NotFound when the definition no longer exists.
    """

    def unit(conn: Connection) -> bool:
        definition = conn.execute(
            select(expecting_transactions.c.id).where(
                expecting_transactions.c.id == expecting.id,
                expecting_transactions.c.user_id == user_id,
            )
        ).first()
        if not definition:
            raise NotFound(f"Expecting transaction {expecting.id} does not exist.")
        already_processed = conn.execute(
            select(processed_months.c.id).where(
                processed_months.c.expecting_transaction_id == expecting.id,
                processed_months.c.month == month,
            )
        ).first()
        if already_processed:
            return False
        stage_transaction_save(conn, transaction, user_id, is_future=False)
        conn.execute(
            insert(processed_months).values(expecting_transaction_id=expecting.id, month=month)
        )
        return True

    try:
        return run_atomic(engine, unit, attempts=attempts)
    except IntegrityError:
        logger.info("Month %s of %s was recorded by another session", month, expecting.id)
        return False


def process_expecting_transactions(
    engine: Engine,
    expecting: Iterable[ExpectingTransaction],
    user_id: int,
    rates: Mapping[str, Decimal],
    base_currency: str,
    state: SessionState | None = None,
    today: date | None = None,
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> List[Transaction]:
    """Materialize every missing and currently due month of each definition."""
    reference_day = today or date.today()
    materialized: List[Transaction] = []

    for definition in expecting:
        for occurrence in due_occurrences(definition, reference_day):
            transaction = build_occurrence_transaction(
                definition, occurrence, rates, base_currency
            )
            try:
                created = materialize_occurrence(
                    engine, definition, transaction, occurrence.month, user_id, attempts=attempts
                )
            except NotFound:
                logger.info("Skipping deleted expecting transaction %s", definition.id)
                break
            if occurrence.month not in definition.processed_months:
                definition.processed_months.append(occurrence.month)
            if not created:
                continue
            materialized.append(transaction)
            if state is not None:
                state.transactions.append(transaction)
                mirror_balance_effect(state, transaction)

    if materialized:
        logger.info(
            "Materialized %d recurring transactions for user %s", len(materialized), user_id
        )
    return materialized


def _month_start(value: date) -> date:
    return date(value.year, value.month, 1)


def _add_months(value: date, months: int) -> date:
    total_month = value.month - 1 + months
    year = value.year + total_month // 12
    month = total_month % 12 + 1
    return date(year, month, 1)
