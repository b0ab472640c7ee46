from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable

SIGNATURE_DELIMITER = "|"


def compute_signature(
    amount: Decimal | int | float | str,
    transaction_type: str,
    category: str,
    description: str | None,
    date_or_pay_day: date | int | str,
    currency_code: str,
) -> str:
    """Content fingerprint of a transaction draft, used for duplicate prompts."""
    return _join(
        _format_amount(amount),
        transaction_type,
        category,
        description or "",
        _format_date(date_or_pay_day),
        currency_code,
    )


def compute_expecting_signature(
    amount: Decimal | int | float | str,
    transaction_type: str,
    category: str,
    description: str | None,
    pay_day: int,
    start_date: date | str,
    currency_code: str,
) -> str:
    return _join(
        _format_amount(amount),
        transaction_type,
        category,
        description or "",
        str(pay_day),
        _format_date(start_date),
        currency_code,
    )


class SignatureIndex:
    """Signatures of the records currently loaded in a session."""

    def __init__(self, signatures: Iterable[str] = ()) -> None:
        self._signatures: set[str] = set(signatures)

    def rebuild(self, signatures: Iterable[str]) -> None:
        self._signatures = set(signatures)

    def add(self, signature: str) -> None:
        self._signatures.add(signature)

    def is_duplicate(self, signature: str) -> bool:
        return signature in self._signatures

    def __len__(self) -> int:
        return len(self._signatures)


def _join(*parts: str) -> str:
    return SIGNATURE_DELIMITER.join(parts)


def _format_amount(amount: Decimal | int | float | str) -> str:
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    # 11, 11.0 and 11.00 must fingerprint the same
    return format(value.normalize(), "f")


def _format_date(value: date | int | str) -> str:
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
