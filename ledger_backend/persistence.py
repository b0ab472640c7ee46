from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from typing import Iterable, List, Mapping
from uuid import uuid4

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ledger_backend.currency_conversion import normalize_currency, to_base_currency
from ledger_backend.errors import (
    NotFound,
    PreconditionFailed,
    UnknownCurrency,
    UserNotInitialized,
)
from ledger_backend.models import (
    MAX_PAY_DAY,
    ExpectingTransaction,
    Transaction,
    TransactionCategory,
    TransactionType,
    get_currency,
    is_future_date,
)
from ledger_backend.signatures import compute_expecting_signature, compute_signature
from ledger_backend.state import SessionState
from ledger_backend.storage import (
    DEFAULT_COMMIT_ATTEMPTS,
    expecting_transactions,
    future_transactions,
    processed_months,
    read_ledger,
    read_user,
    run_atomic,
    transactions,
    users,
    write_balance,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeletedTransaction:
    transaction: Transaction
    was_future: bool


def new_record_id() -> str:
    return str(uuid4())


def resolve_exchange_rate(
    currency_code: str, base_currency: str, rates: Mapping[str, Decimal]
) -> Decimal:
    if currency_code == base_currency:
        return Decimal("1")
    rate = rates.get(currency_code)
    if not rate:
        raise UnknownCurrency(currency_code)
    return rate if isinstance(rate, Decimal) else Decimal(str(rate))


def compute_base_amount(
    amount: Decimal, currency_code: str, base_currency: str, exchange_rate: Decimal
) -> Decimal:
    if currency_code == base_currency:
        return amount
    return to_base_currency(amount, currency_code, exchange_rate)


def build_transaction(
    amount: Decimal,
    transaction_type: str,
    category: str,
    transaction_date: date,
    currency_code: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
    description: str | None = None,
    transaction_id: str | None = None,
    today: date | None = None,
) -> Transaction:
    """Assemble a transaction from a user draft."""
    if amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    normalized_type = TransactionType.validate(transaction_type)
    normalized_category = TransactionCategory.validate(category)
    currency = get_currency(currency_code)
    base_code = normalize_currency(base_currency)
    exchange_rate = resolve_exchange_rate(currency.code, base_code, rates)
    description = description.strip() if description else None
    reference_day = today or date.today()
    return Transaction(
        id=transaction_id or new_record_id(),
        signature=compute_signature(
            amount,
            normalized_type,
            normalized_category,
            description,
            transaction_date,
            currency.code,
        ),
        orig_amount=amount,
        base_amount=compute_base_amount(amount, currency.code, base_code, exchange_rate),
        currency=currency,
        type=normalized_type,
        date=transaction_date,
        category=normalized_category,
        description=description,
        exchange_rate=exchange_rate,
        has_transaction_completed=not is_future_date(transaction_date, reference_day),
    )


def build_expecting_transaction(
    amount: Decimal,
    transaction_type: str,
    category: str,
    pay_day: int,
    start_date: date,
    currency_code: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
    description: str | None = None,
    expecting_id: str | None = None,
) -> ExpectingTransaction:
    if amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    if not is_valid_pay_day(pay_day):
        raise ValueError(f"Pay day must be between 1 and {MAX_PAY_DAY}.")
    normalized_type = TransactionType.validate(transaction_type)
    normalized_category = TransactionCategory.validate(category)
    currency = get_currency(currency_code)
    base_code = normalize_currency(base_currency)
    exchange_rate = resolve_exchange_rate(currency.code, base_code, rates)
    description = description.strip() if description else None
    return ExpectingTransaction(
        id=expecting_id or new_record_id(),
        signature=compute_expecting_signature(
            amount,
            normalized_type,
            normalized_category,
            description,
            pay_day,
            start_date,
            currency.code,
        ),
        orig_amount=amount,
        base_amount=compute_base_amount(amount, currency.code, base_code, exchange_rate),
        currency=currency,
        type=normalized_type,
        pay_day=pay_day,
        start_date=start_date,
        category=normalized_category,
        description=description,
        exchange_rate=exchange_rate,
    )


def is_valid_pay_day(pay_day: int) -> bool:
    return 1 <= pay_day <= MAX_PAY_DAY


def stage_transaction_save(
    conn: Connection, transaction: Transaction, user_id: int, is_future: bool
) -> None:
    """Write a transaction and its balance effect on an open connection."""
    user_row = read_user(conn, user_id)
    if user_row is None:
        raise UserNotInitialized(f"User {user_id} does not exist.")
    current_ledger: Mapping[str, Decimal] = {}
    if not is_future:
        if user_row["current_balance"] is None:
            raise UserNotInitialized(f"Balance of user {user_id} is not initialized.")
        current_ledger = read_ledger(conn, user_id)

    values = _transaction_values(transaction, user_id)
    conn.execute(insert(transactions).values(**values))
    if is_future:
        conn.execute(insert(future_transactions).values(**values))
        return

    write_balance(
        conn,
        user_row,
        transaction.signed_base_amount,
        {transaction.currency.code: transaction.signed_orig_amount},
        current_ledger,
    )


def save_transaction(
    engine: Engine,
    transaction: Transaction,
    user_id: int,
    state: SessionState | None = None,
    today: date | None = None,
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> Transaction:
    is_future = is_future_date(transaction.date, today or date.today())
    transaction = transaction.with_completed(not is_future)

    try:
        run_atomic(
            engine,
            lambda conn: stage_transaction_save(conn, transaction, user_id, is_future),
            attempts=attempts,
        )
    except IntegrityError as exc:
        raise PreconditionFailed(f"Transaction id {transaction.id} already exists.") from exc
    logger.debug("Saved transaction %s for user %s (future=%s)", transaction.id, user_id, is_future)

    if state is not None:
        state.transactions.append(transaction)
        mirror_balance_effect(state, transaction)
    return transaction


def mirror_balance_effect(state: SessionState, transaction: Transaction) -> None:
    if transaction.has_transaction_completed:
        state.balance.update_current_balance(transaction.signed_base_amount)
        state.balance.update_ledger(transaction.currency.code, transaction.signed_orig_amount)
    else:
        state.future_transactions.add(transaction)


def delete_transaction(
    engine: Engine,
    transaction_id: str,
    user_id: int,
    state: SessionState | None = None,
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> DeletedTransaction:
    def unit(conn: Connection) -> DeletedTransaction:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if row is None:
            raise NotFound(f"Transaction {transaction_id} does not exist.")
        user_row = read_user(conn, user_id)
        if user_row is None:
            raise NotFound(f"User {user_id} does not exist.")
        if user_row["current_balance"] is None:
            raise PreconditionFailed(f"Balance of user {user_id} is not initialized.")
        current_ledger = read_ledger(conn, user_id)

        transaction = row_to_transaction(row)
        conn.execute(delete(transactions).where(transactions.c.id == transaction_id))
        if not transaction.has_transaction_completed:
            conn.execute(
                delete(future_transactions).where(future_transactions.c.id == transaction_id)
            )
            return DeletedTransaction(transaction=transaction, was_future=True)

        write_balance(
            conn,
            user_row,
            -transaction.signed_base_amount,
            {transaction.currency.code: -transaction.signed_orig_amount},
            current_ledger,
        )
        return DeletedTransaction(transaction=transaction, was_future=False)

    deleted = run_atomic(engine, unit, attempts=attempts)
    logger.debug("Deleted transaction %s for user %s", transaction_id, user_id)

    if state is not None:
        state.transactions.remove(transaction_id)
        if deleted.was_future:
            state.future_transactions.remove(transaction_id)
        else:
            tx = deleted.transaction
            state.balance.update_current_balance(-tx.signed_base_amount)
            state.balance.update_ledger(tx.currency.code, -tx.signed_orig_amount)
    return deleted


def save_unlogged_transactions(
    engine: Engine,
    user_id: int,
    pending: Iterable[Transaction],
    today: date | None = None,
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> List[Transaction]:
    """Persist transactions recorded before the user had an account.

    Drafts whose id is already stored are skipped, so a repeated flush saves
    nothing twice. Returns the transactions saved by this call; the caller
    applies their balance effect.
    """
    pending = list(pending)
    if not pending:
        return []

    with engine.begin() as conn:
        stored_ids = set(
            conn.execute(
                select(transactions.c.id).where(
                    transactions.c.user_id == user_id,
                    transactions.c.id.in_([tx.id for tx in pending]),
                )
            ).scalars()
        )

    saved: List[Transaction] = []
    for transaction in pending:
        if transaction.id in stored_ids:
            continue
        saved.append(
            save_transaction(engine, transaction, user_id, today=today, attempts=attempts)
        )
    logger.info("Stored %d unlogged transactions for user %s", len(saved), user_id)
    return saved


def fetch_transactions(
    engine: Engine, user_id: int, state: SessionState | None = None
) -> List[Transaction]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.asc(), transactions.c.id.asc())
        ).mappings().all()
    fetched = [row_to_transaction(row) for row in rows]
    if state is not None:
        state.transactions.set(fetched)
    return fetched


def fetch_future_transactions(
    engine: Engine, user_id: int, state: SessionState | None = None
) -> List[Transaction]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(future_transactions)
            .where(future_transactions.c.user_id == user_id)
            .order_by(future_transactions.c.date.asc())
        ).mappings().all()
    fetched = [row_to_transaction(row) for row in rows]
    if state is not None:
        state.future_transactions.set(fetched)
        state.future_transactions.has_fetched = True
    return fetched


def fetch_expecting_transactions(
    engine: Engine, user_id: int, state: SessionState | None = None
) -> List[ExpectingTransaction]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(expecting_transactions)
            .where(expecting_transactions.c.user_id == user_id)
            .order_by(expecting_transactions.c.created_at.asc(), expecting_transactions.c.id.asc())
        ).mappings().all()
        month_rows = conn.execute(
            select(processed_months.c.expecting_transaction_id, processed_months.c.month)
            .join(
                expecting_transactions,
                expecting_transactions.c.id == processed_months.c.expecting_transaction_id,
            )
            .where(expecting_transactions.c.user_id == user_id)
            .order_by(processed_months.c.month.asc())
        ).all()

    months_by_id: dict[str, List[str]] = {}
    for expecting_id, month in month_rows:
        months_by_id.setdefault(expecting_id, []).append(month)
    fetched = [
        row_to_expecting_transaction(row, months_by_id.get(row["id"], [])) for row in rows
    ]
    if state is not None:
        state.expecting_transactions.set(fetched)
        state.expecting_transactions.has_fetched = True
    return fetched


def save_expecting_transaction(
    engine: Engine,
    expecting: ExpectingTransaction,
    user_id: int,
    state: SessionState | None = None,
) -> ExpectingTransaction:
    if not is_valid_pay_day(expecting.pay_day):
        raise ValueError(f"Pay day must be between 1 and {MAX_PAY_DAY}.")

    def unit(conn: Connection) -> None:
        if read_user(conn, user_id) is None:
            raise UserNotInitialized(f"User {user_id} does not exist.")
        conn.execute(
            insert(expecting_transactions).values(
                id=expecting.id,
                user_id=user_id,
                signature=expecting.signature,
                orig_amount=expecting.orig_amount,
                base_amount=expecting.base_amount,
                currency=expecting.currency.code,
                type=expecting.type,
                pay_day=expecting.pay_day,
                start_date=expecting.start_date,
                category=expecting.category,
                description=expecting.description,
                exchange_rate=expecting.exchange_rate,
            )
        )
        if expecting.processed_months:
            conn.execute(
                insert(processed_months),
                [
                    {"expecting_transaction_id": expecting.id, "month": month}
                    for month in sorted(set(expecting.processed_months))
                ],
            )

    run_atomic(engine, unit)
    if state is not None:
        state.expecting_transactions.append(expecting)
    return expecting


def delete_expecting_transaction(
    engine: Engine,
    expecting_id: str,
    user_id: int,
    state: SessionState | None = None,
) -> None:
    def unit(conn: Connection) -> None:
        exists = conn.execute(
            select(expecting_transactions.c.id).where(
                expecting_transactions.c.id == expecting_id,
                expecting_transactions.c.user_id == user_id,
            )
        ).first()
        if not exists:
            raise NotFound(f"Expecting transaction {expecting_id} does not exist.")
        conn.execute(
            delete(processed_months).where(
                processed_months.c.expecting_transaction_id == expecting_id
            )
        )
        conn.execute(
            delete(expecting_transactions).where(expecting_transactions.c.id == expecting_id)
        )

    run_atomic(engine, unit)
    if state is not None:
        state.expecting_transactions.remove(expecting_id)


def create_user(engine: Engine, base_currency: str, selected_currency: str) -> int:
    with engine.begin() as conn:
        result = conn.execute(
            insert(users)
            .values(
                base_currency=get_currency(base_currency).code,
                selected_currency=get_currency(selected_currency).code,
            )
            .returning(users.c.id)
        )
        return result.scalar_one()


def read_user_settings(
    engine: Engine, user_id: int, default_base: str, default_selected: str
) -> tuple[str, str]:
    """Return the stored (base, selected) currencies, storing the defaults for new users."""

    def unit(conn: Connection) -> tuple[str, str]:
        user_row = read_user(conn, user_id)
        if user_row is not None:
            return user_row["base_currency"], user_row["selected_currency"]
        conn.execute(
            insert(users).values(
                id=user_id, base_currency=default_base, selected_currency=default_selected
            )
        )
        return default_base, default_selected

    return run_atomic(engine, unit)


def load_user_settings(engine: Engine, user_id: int, state: SessionState) -> None:
    """Load the user's currencies, storing the session defaults for new users."""
    if state.has_fetched_settings:
        return
    base_currency, selected_currency = read_user_settings(
        engine, user_id, state.settings.base_currency, state.settings.selected_currency
    )
    state.settings.base_currency = base_currency
    state.settings.selected_currency = selected_currency
    state.has_fetched_settings = True


def update_user_settings(
    engine: Engine,
    user_id: int,
    base_currency: str | None = None,
    selected_currency: str | None = None,
    state: SessionState | None = None,
) -> tuple[str, str]:
    values = {}
    if base_currency is not None:
        values["base_currency"] = get_currency(base_currency).code
    if selected_currency is not None:
        values["selected_currency"] = get_currency(selected_currency).code

    def unit(conn: Connection) -> tuple[str, str]:
        user_row = read_user(conn, user_id)
        if user_row is None:
            raise NotFound(f"User {user_id} does not exist.")
        new_base = values.get("base_currency", user_row["base_currency"])
        if new_base != user_row["base_currency"]:
            has_transactions = conn.execute(
                select(func.count()).select_from(transactions).where(
                    transactions.c.user_id == user_id
                )
            ).scalar_one()
            if has_transactions:
                raise PreconditionFailed(
                    "Base currency cannot change once transactions are recorded."
                )
        if values:
            conn.execute(update(users).where(users.c.id == user_id).values(**values))
        return new_base, values.get("selected_currency", user_row["selected_currency"])

    base, selected = run_atomic(engine, unit)
    if state is not None:
        state.settings.base_currency = base
        state.settings.selected_currency = selected
    return base, selected


def row_to_transaction(row: Mapping) -> Transaction:
    return Transaction(
        id=row["id"],
        signature=row["signature"],
        orig_amount=Decimal(row["orig_amount"]),
        base_amount=Decimal(row["base_amount"]),
        currency=get_currency(row["currency"]),
        type=row["type"],
        date=row["date"],
        category=row["category"],
        description=row["description"],
        exchange_rate=Decimal(row["exchange_rate"]),
        has_transaction_completed=bool(row["has_transaction_completed"]),
    )


def row_to_expecting_transaction(row: Mapping, months: List[str]) -> ExpectingTransaction:
    return ExpectingTransaction(
        id=row["id"],
        signature=row["signature"],
        orig_amount=Decimal(row["orig_amount"]),
        base_amount=Decimal(row["base_amount"]),
        currency=get_currency(row["currency"]),
        type=row["type"],
        pay_day=row["pay_day"],
        start_date=row["start_date"],
        category=row["category"],
        description=row["description"],
        exchange_rate=Decimal(row["exchange_rate"]),
        processed_months=list(months),
    )


def _transaction_values(transaction: Transaction, user_id: int) -> dict:
    return {
        "id": transaction.id,
        "user_id": user_id,
        "signature": transaction.signature,
        "orig_amount": transaction.orig_amount,
        "base_amount": transaction.base_amount,
        "currency": transaction.currency.code,
        "type": transaction.type,
        "date": transaction.date,
        "category": transaction.category,
        "description": transaction.description,
        "exchange_rate": transaction.exchange_rate,
        "has_transaction_completed": transaction.has_transaction_completed,
    }
