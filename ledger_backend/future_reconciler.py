from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Dict, List

from sqlalchemy import delete, select, update
from sqlalchemy.engine import Connection, Engine

from ledger_backend.persistence import row_to_transaction
from ledger_backend.state import SessionState
from ledger_backend.storage import (
    DEFAULT_COMMIT_ATTEMPTS,
    future_transactions,
    read_ledger,
    read_user,
    run_atomic,
    transactions,
    write_balance,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class ReconciliationResult:
    reconciled_ids: List[str] = field(default_factory=list)
    balance_delta: Decimal = ZERO
    ledger_deltas: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.reconciled_ids)


def process_future_transactions(
    engine: Engine,
    user_id: int,
    state: SessionState | None = None,
    today: date | None = None,
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> ReconciliationResult:
    """Complete every future transaction that has come due, in one unit.

    The summed balance and ledger deltas are written to the user row once,
    however many transactions come due.
    """
    reference_day = today or date.today()
    with engine.begin() as conn:
        candidate_ids = conn.execute(
            select(future_transactions.c.id).where(future_transactions.c.user_id == user_id)
        ).scalars().all()
    if not candidate_ids:
        return ReconciliationResult()

    def unit(conn: Connection) -> ReconciliationResult:
        result = ReconciliationResult()
        user_row = read_user(conn, user_id)
        if user_row is None or user_row["current_balance"] is None:
            logger.warning("Skipping reconciliation, balance of user %s is not initialized", user_id)
            return result
        current_ledger = read_ledger(conn, user_id)
        # another session may have reconciled some of them since the listing
        rows = conn.execute(
            select(future_transactions).where(
                future_transactions.c.user_id == user_id,
                future_transactions.c.id.in_(candidate_ids),
            )
        ).mappings().all()

        due = [row_to_transaction(row) for row in rows if row["date"] <= reference_day]
        if not due:
            return result

        for transaction in due:
            result.reconciled_ids.append(transaction.id)
            result.balance_delta += transaction.signed_base_amount
            code = transaction.currency.code
            result.ledger_deltas[code] = (
                result.ledger_deltas.get(code, ZERO) + transaction.signed_orig_amount
            )

        conn.execute(
            update(transactions)
            .where(transactions.c.id.in_(result.reconciled_ids))
            .values(has_transaction_completed=True)
        )
        conn.execute(
            delete(future_transactions).where(
                future_transactions.c.id.in_(result.reconciled_ids)
            )
        )
        write_balance(conn, user_row, result.balance_delta, result.ledger_deltas, current_ledger)
        return result

    result = run_atomic(engine, unit, attempts=attempts)
    if result.count:
        logger.info("Reconciled %d future transactions for user %s", result.count, user_id)

    if state is not None and result.count:
        state.balance.apply(result.balance_delta, result.ledger_deltas)
        for transaction_id in result.reconciled_ids:
            state.future_transactions.remove(transaction_id)
        state.transactions.mark_completed(result.reconciled_ids)
    return result
