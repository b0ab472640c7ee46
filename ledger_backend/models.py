from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import List, Optional

from ledger_backend.errors import UnknownCurrency

DEFAULT_BASE_CURRENCY = "EUR"
MAX_PAY_DAY = 28

CATEGORIES = (
    "Salary",
    "Rent",
    "Groceries",
    "Food",
    "Internet & Phone",
    "Health Insurance",
    "Savings",
    "Fixed Expenses",
    "Shopping",
    "Entertainment",
    "Car Maintenance",
    "Kids & School",
    "Pets",
    "Gym & Fitness",
    "Streaming Services",
    "Home",
    "Investment",
    "Vacation",
    "Birthdays",
    "Christmas",
    "Party",
    "Date",
    "Garden",
    "Other",
)


class TransactionType:
    INCOME = "income"
    EXPENSE = "expense"
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class TransactionCategory:
    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip()
        for category in CATEGORIES:
            if category.lower() == normalized.lower():
                return category
        raise ValueError("Invalid category.")


@dataclass(frozen=True)
class Currency:
    code: str
    symbol: str
    name: str


CURRENCIES: dict[str, Currency] = {
    currency.code: currency
    for currency in (
        Currency("EUR", "€", "Euro"),
        Currency("USD", "$", "US Dollar"),
        Currency("GBP", "£", "British Pound"),
        Currency("CZK", "Kč", "Czech Koruna"),
        Currency("PLN", "zł", "Polish Złoty"),
        Currency("CHF", "Fr", "Swiss Franc"),
        Currency("SEK", "kr", "Swedish Krona"),
        Currency("HUF", "Ft", "Hungarian Forint"),
        Currency("JPY", "¥", "Japanese Yen"),
        Currency("CAD", "C$", "Canadian Dollar"),
        Currency("AUD", "A$", "Australian Dollar"),
    )
}


def get_currency(code: str) -> Currency:
    normalized = code.strip().upper()
    try:
        return CURRENCIES[normalized]
    except KeyError as exc:
        raise UnknownCurrency(normalized) from exc


def signed_amount(amount: Decimal, transaction_type: str) -> Decimal:
    """Income adds to a balance, expense subtracts from it."""
    return amount if transaction_type == TransactionType.INCOME else -amount


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def is_future_date(value: date, today: date) -> bool:
    return value > today


@dataclass(frozen=True)
class Transaction:
    id: str
    signature: str
    orig_amount: Decimal
    base_amount: Decimal
    currency: Currency
    type: str
    date: date
    category: str
    exchange_rate: Decimal
    description: Optional[str] = None
    has_transaction_completed: bool = True

    @property
    def signed_base_amount(self) -> Decimal:
        return signed_amount(self.base_amount, self.type)

    @property
    def signed_orig_amount(self) -> Decimal:
        return signed_amount(self.orig_amount, self.type)

    def with_completed(self, completed: bool) -> "Transaction":
        return replace(self, has_transaction_completed=completed)


@dataclass
class ExpectingTransaction:
    """Recurring definition that yields one transaction per month on pay_day."""

    id: str
    signature: str
    orig_amount: Decimal
    base_amount: Decimal
    currency: Currency
    type: str
    pay_day: int
    start_date: date
    category: str
    exchange_rate: Decimal
    description: Optional[str] = None
    processed_months: List[str] = field(default_factory=list)
