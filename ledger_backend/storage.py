from __future__ import annotations

from decimal import Decimal
import logging
from typing import Callable, Mapping, TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from ledger_backend.errors import ConcurrentModification
from ledger_backend.models import DEFAULT_BASE_CURRENCY

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COMMIT_ATTEMPTS = 5

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("base_currency", String(3), nullable=False, server_default=DEFAULT_BASE_CURRENCY),
    Column("selected_currency", String(3), nullable=False, server_default=DEFAULT_BASE_CURRENCY),
    Column("current_balance", Numeric(18, 8)),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

balance_ledger = Table(
    "balance_ledger",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("currency", String(3), primary_key=True),
    Column("amount", Numeric(18, 8), nullable=False),
)


def _transaction_columns() -> list[Column]:
    return [
        Column("id", String(36), primary_key=True),
        Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
        Column("signature", String(500), nullable=False),
        Column("orig_amount", Numeric(18, 8), nullable=False),
        Column("base_amount", Numeric(18, 8), nullable=False),
        Column("currency", String(3), nullable=False),
        Column("type", String(20), nullable=False),
        Column("date", Date, nullable=False),
        Column("category", String(100), nullable=False),
        Column("description", String(500)),
        Column("exchange_rate", Numeric(18, 8), nullable=False),
        Column("has_transaction_completed", Boolean, nullable=False),
    ]


transactions = Table("transactions", metadata, *_transaction_columns())

# Twins of transactions dated after the day they were saved on.
future_transactions = Table("future_transactions", metadata, *_transaction_columns())

expecting_transactions = Table(
    "expecting_transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("signature", String(500), nullable=False),
    Column("orig_amount", Numeric(18, 8), nullable=False),
    Column("base_amount", Numeric(18, 8), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("type", String(20), nullable=False),
    Column("pay_day", Integer, nullable=False),
    Column("start_date", Date, nullable=False),
    Column("category", String(100), nullable=False),
    Column("description", String(500)),
    Column("exchange_rate", Numeric(18, 8), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

processed_months = Table(
    "processed_months",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "expecting_transaction_id",
        String(36),
        ForeignKey("expecting_transactions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("month", String(7), nullable=False),
    UniqueConstraint("expecting_transaction_id", "month", name="uq_processed_months_month"),
)


def create_storage_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


def init_storage(engine: Engine) -> None:
    metadata.create_all(engine)


def run_atomic(
    engine: Engine,
    unit: Callable[[Connection], T],
    attempts: int = DEFAULT_COMMIT_ATTEMPTS,
) -> T:
    """Run ``unit`` inside one database transaction.

    The unit must read everything it needs before writing and must not touch
    anything outside the connection: it is re-run from scratch when the user
    row changed underneath it.
    """

    @retry(
        stop=stop_after_attempt(attempts),
        wait=wait_random(min=0, max=0.05),
        retry=retry_if_exception_type(ConcurrentModification),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    def _attempt() -> T:
        with engine.begin() as conn:
            return unit(conn)

    return _attempt()


def read_user(conn: Connection, user_id: int) -> Mapping | None:
    return conn.execute(select(users).where(users.c.id == user_id)).mappings().first()


def read_ledger(conn: Connection, user_id: int) -> dict[str, Decimal]:
    rows = conn.execute(
        select(balance_ledger.c.currency, balance_ledger.c.amount).where(
            balance_ledger.c.user_id == user_id
        )
    ).all()
    return {currency: Decimal(amount) for currency, amount in rows}


def write_balance(
    conn: Connection,
    user_row: Mapping,
    balance_delta: Decimal,
    ledger_deltas: Mapping[str, Decimal],
    current_ledger: Mapping[str, Decimal],
) -> Decimal:
    """Apply balance and ledger deltas against the row version read earlier."""
    new_balance = Decimal(user_row["current_balance"]) + balance_delta
    result = conn.execute(
        update(users)
        .where(users.c.id == user_row["id"], users.c.version == user_row["version"])
        .values(current_balance=new_balance, version=users.c.version + 1)
    )
    if result.rowcount == 0:
        raise ConcurrentModification(f"Balance of user {user_row['id']} changed concurrently.")

    for currency, delta in ledger_deltas.items():
        if currency in current_ledger:
            conn.execute(
                update(balance_ledger)
                .where(
                    balance_ledger.c.user_id == user_row["id"],
                    balance_ledger.c.currency == currency,
                )
                .values(amount=current_ledger[currency] + delta)
            )
        else:
            conn.execute(
                insert(balance_ledger).values(
                    user_id=user_row["id"], currency=currency, amount=delta
                )
            )
    return new_balance
