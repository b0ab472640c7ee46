"""Per-session state containers mirroring the persistent store.

A ``SessionState`` is created when a user's session starts and dropped when
it ends. Engine functions receive it explicitly and only apply changes to it
after the corresponding atomic unit committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import Dict, Iterable, List, Mapping

from sqlalchemy import insert, update
from sqlalchemy.engine import Engine

from ledger_backend.models import DEFAULT_BASE_CURRENCY, ExpectingTransaction, Transaction
from ledger_backend.signatures import SignatureIndex
from ledger_backend.storage import read_ledger, read_user, run_atomic, users

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class BalanceSnapshot:
    current_balance: Decimal
    balance_ledger: Mapping[str, Decimal]


class BalanceLedgerStore:
    """Local aggregate balance and per-currency ledger."""

    def __init__(self) -> None:
        self.current_balance: Decimal = ZERO
        self.balance_ledger: Dict[str, Decimal] = {}
        self.has_fetched = False

    def update_current_balance(self, delta: Decimal) -> None:
        self.current_balance += delta

    def update_ledger(self, currency: str, delta: Decimal) -> None:
        self.balance_ledger[currency] = self.balance_ledger.get(currency, ZERO) + delta

    def apply(self, balance_delta: Decimal, ledger_deltas: Mapping[str, Decimal]) -> None:
        self.update_current_balance(balance_delta)
        for currency, delta in ledger_deltas.items():
            self.update_ledger(currency, delta)

    def fetch_or_init(self, engine: Engine, user_id: int) -> None:
        """Load the user's balance, initialising it to zero on first use.

        Runs at most once per session; later calls return immediately so a
        balance that another session is updating is never reset.
        """
        if self.has_fetched:
            return
        self.load(*self.read_or_init(engine, user_id))

    def read_or_init(self, engine: Engine, user_id: int) -> tuple[Decimal, Dict[str, Decimal]]:
        """Read the stored balance and ledger without touching the local copy."""

        def unit(conn) -> tuple[Decimal, Dict[str, Decimal]]:
            user_row = read_user(conn, user_id)
            if user_row is not None and user_row["current_balance"] is not None:
                return Decimal(user_row["current_balance"]), read_ledger(conn, user_id)
            if user_row is None:
                conn.execute(insert(users).values(id=user_id, current_balance=ZERO))
            else:
                conn.execute(
                    update(users)
                    .where(users.c.id == user_id)
                    .values(current_balance=ZERO, version=users.c.version + 1)
                )
            logger.info("Initialised balance for user %s", user_id)
            return ZERO, {}

        return run_atomic(engine, unit)

    def load(self, balance: Decimal, ledger: Mapping[str, Decimal]) -> None:
        self.current_balance = balance
        self.balance_ledger = dict(ledger)
        self.has_fetched = True

    def snapshot(self) -> BalanceSnapshot:
        return BalanceSnapshot(
            current_balance=self.current_balance,
            balance_ledger=dict(self.balance_ledger),
        )

    def clear(self) -> None:
        self.current_balance = ZERO
        self.balance_ledger = {}
        self.has_fetched = False


class TransactionList:
    """Visible transactions plus the signature index used for duplicate checks."""

    def __init__(self, items: Iterable[Transaction] = ()) -> None:
        self.items: List[Transaction] = list(items)
        self.signatures = SignatureIndex(tx.signature for tx in self.items)

    def set(self, items: Iterable[Transaction]) -> None:
        self.items = list(items)
        self.signatures.rebuild(tx.signature for tx in self.items)

    def append(self, transaction: Transaction) -> None:
        self.items.append(transaction)
        self.signatures.add(transaction.signature)

    def remove(self, transaction_id: str) -> None:
        self.set(tx for tx in self.items if tx.id != transaction_id)

    def mark_completed(self, transaction_ids: Iterable[str]) -> None:
        completed = set(transaction_ids)
        self.items = [
            tx.with_completed(True) if tx.id in completed else tx for tx in self.items
        ]

    def get(self, transaction_id: str) -> Transaction | None:
        for tx in self.items:
            if tx.id == transaction_id:
                return tx
        return None

    def is_duplicate(self, signature: str) -> bool:
        return self.signatures.is_duplicate(signature)

    def clear(self) -> None:
        self.set([])

    def __len__(self) -> int:
        return len(self.items)


class FutureTransactionList:
    def __init__(self) -> None:
        self.items: List[Transaction] = []
        self.has_fetched = False

    def set(self, items: Iterable[Transaction]) -> None:
        self.items = list(items)

    def add(self, transaction: Transaction) -> None:
        self.items.append(transaction)

    def remove(self, transaction_id: str) -> None:
        self.items = [tx for tx in self.items if tx.id != transaction_id]

    def ids(self) -> List[str]:
        return [tx.id for tx in self.items]

    def clear(self) -> None:
        self.items = []
        self.has_fetched = False


class ExpectingTransactionList:
    def __init__(self) -> None:
        self.items: List[ExpectingTransaction] = []
        self.signatures = SignatureIndex()
        self.has_fetched = False

    def set(self, items: Iterable[ExpectingTransaction]) -> None:
        self.items = list(items)
        self.signatures.rebuild(tx.signature for tx in self.items)

    def append(self, expecting: ExpectingTransaction) -> None:
        self.items.append(expecting)
        self.signatures.add(expecting.signature)

    def remove(self, expecting_id: str) -> None:
        self.set(tx for tx in self.items if tx.id != expecting_id)

    def is_duplicate(self, signature: str) -> bool:
        return self.signatures.is_duplicate(signature)

    def clear(self) -> None:
        self.set([])
        self.has_fetched = False


@dataclass
class UserSettings:
    base_currency: str = DEFAULT_BASE_CURRENCY
    selected_currency: str = DEFAULT_BASE_CURRENCY


@dataclass
class SessionState:
    user_id: int | None = None
    settings: UserSettings = field(default_factory=UserSettings)
    has_fetched_settings: bool = False
    balance: BalanceLedgerStore = field(default_factory=BalanceLedgerStore)
    transactions: TransactionList = field(default_factory=TransactionList)
    future_transactions: FutureTransactionList = field(default_factory=FutureTransactionList)
    expecting_transactions: ExpectingTransactionList = field(
        default_factory=ExpectingTransactionList
    )
    is_loading: bool = False
    # drafts recorded before the account existed, flushed on first login
    unlogged_transactions: List[Transaction] = field(default_factory=list)

    def clear(self) -> None:
        """Teardown at logout."""
        self.user_id = None
        self.unlogged_transactions = []
        self.settings = UserSettings()
        self.has_fetched_settings = False
        self.balance.clear()
        self.transactions.clear()
        self.future_transactions.clear()
        self.expecting_transactions.clear()
        self.is_loading = False
