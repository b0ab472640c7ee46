from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
import os
from typing import Mapping

from ledger_backend.currency_conversion import (
    DEFAULT_RATES,
    normalize_currency,
    parse_rates,
    rebase_rates,
)
from ledger_backend.models import CURRENCIES, DEFAULT_BASE_CURRENCY
from ledger_backend.storage import DEFAULT_COMMIT_ATTEMPTS

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./ledger.db"
    frontend_origin: str = "http://localhost:3000"
    base_currency: str = DEFAULT_BASE_CURRENCY
    rates: Mapping[str, Decimal] = None
    commit_attempts: int = DEFAULT_COMMIT_ATTEMPTS
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.rates is None:
            object.__setattr__(self, "rates", dict(DEFAULT_RATES))


def get_base_currency() -> str:
    raw = os.getenv("BASE_CURRENCY", DEFAULT_BASE_CURRENCY)
    try:
        normalized = normalize_currency(raw)
    except ValueError:
        return DEFAULT_BASE_CURRENCY
    return normalized if normalized in CURRENCIES else DEFAULT_BASE_CURRENCY


def get_commit_attempts() -> int:
    raw = os.getenv("LEDGER_COMMIT_ATTEMPTS", str(DEFAULT_COMMIT_ATTEMPTS))
    try:
        attempts = int(raw)
    except ValueError:
        return DEFAULT_COMMIT_ATTEMPTS
    return attempts if attempts > 0 else DEFAULT_COMMIT_ATTEMPTS


def load_settings() -> Settings:
    base_currency = get_base_currency()
    rates = rebase_rates(DEFAULT_RATES, base_currency)
    raw_rates = os.getenv("EXCHANGE_RATES")
    if raw_rates:
        rates.update(parse_rates(raw_rates))
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./ledger.db"),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
        base_currency=base_currency,
        rates=rates,
        commit_attempts=get_commit_attempts(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
