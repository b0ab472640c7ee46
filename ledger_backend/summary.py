from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from ledger_backend.currency_conversion import convert_between, round_to_two
from ledger_backend.models import Transaction, TransactionType

ZERO = Decimal("0")


@dataclass(frozen=True)
class CategorySummary:
    category: str
    total: Decimal
    percentage: Decimal
    currency: str


@dataclass(frozen=True)
class PeriodSummary:
    currency: str
    total_income: Decimal
    total_expenses: Decimal
    net: Decimal
    transaction_count: int
    has_multiple_currencies: bool


def convert_to_selected_currency(
    selected_currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
    amount_in_base: Decimal,
    amount_in_orig: Optional[Decimal] = None,
    orig_currency: Optional[str] = None,
) -> Decimal:
    """Express one amount in the display currency, converting as little as possible."""
    if selected_currency == base_currency:
        return amount_in_base
    if orig_currency and selected_currency == orig_currency and amount_in_orig is not None:
        return amount_in_orig
    if orig_currency and amount_in_orig is not None:
        return convert_between(amount_in_orig, orig_currency, selected_currency, rates, base_currency)
    return convert_between(amount_in_base, base_currency, selected_currency, rates, base_currency)


def calculate_total_in_currency(
    transactions: Iterable[Transaction],
    selected_currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
) -> Decimal:
    total = ZERO
    for txn in transactions:
        total += convert_to_selected_currency(
            selected_currency,
            base_currency,
            rates,
            txn.base_amount,
            txn.orig_amount,
            txn.currency.code,
        )
    return round_to_two(total)


def summarize_period(
    transactions: Iterable[Transaction],
    selected_currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> PeriodSummary:
    filtered = [
        txn
        for txn in transactions
        if txn.has_transaction_completed
        and (year is None or txn.date.year == year)
        and (month is None or txn.date.month == month)
    ]
    income = calculate_total_in_currency(
        _of_type(filtered, TransactionType.INCOME), selected_currency, base_currency, rates
    )
    expenses = calculate_total_in_currency(
        _of_type(filtered, TransactionType.EXPENSE), selected_currency, base_currency, rates
    )
    return PeriodSummary(
        currency=selected_currency,
        total_income=income,
        total_expenses=expenses,
        net=income - expenses,
        transaction_count=len(filtered),
        has_multiple_currencies=has_multiple_currencies(filtered),
    )


def category_breakdown(
    transactions: Iterable[Transaction],
    selected_currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
    transaction_type: str = TransactionType.EXPENSE,
) -> List[CategorySummary]:
    totals: dict[str, Decimal] = {}
    for txn in _of_type(transactions, transaction_type):
        if not txn.has_transaction_completed:
            continue
        amount = convert_to_selected_currency(
            selected_currency,
            base_currency,
            rates,
            txn.base_amount,
            txn.orig_amount,
            txn.currency.code,
        )
        totals[txn.category] = totals.get(txn.category, ZERO) + amount

    grand_total = sum(totals.values(), ZERO)
    breakdown = [
        CategorySummary(
            category=category,
            total=round_to_two(total),
            percentage=round_to_two(total / grand_total * 100) if grand_total else ZERO,
            currency=selected_currency,
        )
        for category, total in totals.items()
    ]
    return sorted(breakdown, key=lambda item: (-item.total, item.category))


def get_years_from_transactions(transactions: Iterable[Transaction]) -> List[str]:
    years = {f"{txn.date.year:04d}" for txn in transactions}
    return sorted(years, reverse=True)


def has_multiple_currencies(transactions: Iterable[Transaction]) -> bool:
    seen: set[str] = set()
    for txn in transactions:
        seen.add(txn.currency.code)
        if len(seen) > 1:
            return True
    return False


def _of_type(transactions: Iterable[Transaction], transaction_type: str) -> List[Transaction]:
    return [txn for txn in transactions if txn.type == transaction_type]
