from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Mapping

from ledger_backend.errors import UnknownCurrency
from ledger_backend.models import DEFAULT_BASE_CURRENCY

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

# Units of each currency per 1 EUR.
DEFAULT_RATES: dict[str, Decimal] = {
    "EUR": Decimal("1"),
    "USD": Decimal("1.08"),
    "GBP": Decimal("0.86"),
    "CZK": Decimal("25.20"),
    "PLN": Decimal("4.30"),
    "CHF": Decimal("0.95"),
    "SEK": Decimal("11.40"),
    "HUF": Decimal("395.00"),
    "JPY": Decimal("162.00"),
    "CAD": Decimal("1.48"),
    "AUD": Decimal("1.65"),
}


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 unit of ``base_currency``.
    """

    rates: Mapping[str, Decimal] = None
    base_currency: str = DEFAULT_BASE_CURRENCY

    def __post_init__(self) -> None:
        normalized = {
            normalize_currency(code): _coerce_amount(rate)
            for code, rate in (self.rates or DEFAULT_RATES).items()
        }
        base = normalize_currency(self.base_currency)
        normalized.setdefault(base, Decimal("1"))
        object.__setattr__(self, "rates", normalized)
        object.__setattr__(self, "base_currency", base)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise UnknownCurrency(normalized) from exc

    def convert(
        self, source_currency: str, target_currency: str, amount: Decimal | int | float | str
    ) -> Decimal:
        return convert_between(
            amount,
            normalize_currency(source_currency),
            normalize_currency(target_currency),
            self.rates,
            self.base_currency,
        )


def to_base_currency(
    amount: Decimal | int | float | str,
    currency_code: str,
    rate: Decimal | int | float | str | None,
) -> Decimal:
    """Convert an amount in ``currency_code`` to the base currency."""
    if not rate or _coerce_amount(rate) <= 0:
        raise UnknownCurrency(currency_code)
    return _coerce_amount(amount) / _coerce_amount(rate)


def convert_between(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal],
    base_currency: str,
) -> Decimal:
    """Convert through the base currency without intermediate rounding."""
    coerced_amount = _coerce_amount(amount)
    if source_currency == target_currency:
        return coerced_amount

    if source_currency == base_currency:
        amount_in_base = coerced_amount
    else:
        amount_in_base = coerced_amount / _rate_or_one(rates, source_currency)

    if target_currency == base_currency:
        return amount_in_base
    return amount_in_base * _rate_or_one(rates, target_currency)


def round_to_two(value: Decimal | int | float | str) -> Decimal:
    return _coerce_amount(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def parse_rates(raw: str) -> dict[str, Decimal]:
    """Parse ``"USD=1.08,GBP=0.86"`` into a rate mapping."""
    parsed: dict[str, Decimal] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        code, separator, value = chunk.partition("=")
        if not separator:
            raise ValueError(f"Invalid rate entry: {chunk!r}")
        try:
            rate = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid rate for {code.strip()}: {value!r}") from exc
        if rate <= 0:
            raise ValueError(f"Rate for {code.strip()} must be greater than zero.")
        parsed[normalize_currency(code)] = rate
    return parsed


def rebase_rates(rates: Mapping[str, Decimal], base_currency: str) -> dict[str, Decimal]:
    """Re-express rates so that ``base_currency`` has rate 1."""
    pivot = rates.get(base_currency)
    if not pivot:
        raise UnknownCurrency(base_currency)
    return {code: _coerce_amount(rate) / pivot for code, rate in rates.items()}


def _rate_or_one(rates: Mapping[str, Decimal], currency: str) -> Decimal:
    rate = rates.get(currency)
    if not rate:
        logger.warning("No rate loaded for %s, treating it as 1", currency)
        return Decimal("1")
    return _coerce_amount(rate)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
