from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date
import logging
from typing import Dict, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from ledger_backend.currency_conversion import StaticRateProvider, rebase_rates
from ledger_backend.future_reconciler import process_future_transactions
from ledger_backend.persistence import (
    fetch_expecting_transactions,
    fetch_future_transactions,
    fetch_transactions,
    mirror_balance_effect,
    read_user_settings,
    save_unlogged_transactions,
)
from ledger_backend.recurring_processor import process_expecting_transactions
from ledger_backend.state import SessionState
from ledger_backend.storage import DEFAULT_COMMIT_ATTEMPTS

logger = logging.getLogger(__name__)


class SessionLoader:
    """Runs the session start sequence for one user.

    Order: settings, balance, unlogged transactions (first login only),
    future reconciliation, record fetches, recurring processing. ``cancel()``
    stops the sequence at the next await boundary; units already running are
    left to finish but their results are no longer applied to the state, and
    the next load re-reads the stored balance. A loader that replaces another
    waits for it to go idle before starting.
    """

    def __init__(
        self,
        engine: Engine,
        state: SessionState,
        rate_provider: StaticRateProvider,
        attempts: int = DEFAULT_COMMIT_ATTEMPTS,
        previous: Optional[SessionLoader] = None,
    ) -> None:
        self.engine = engine
        self.state = state
        self.rate_provider = rate_provider
        self.attempts = attempts
        self._previous = previous
        self._cancelled = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    async def load(
        self, user_id: int, first_login: bool = False, today: Optional[date] = None
    ) -> bool:
        if self._previous is not None:
            # the replaced loader may still be finishing a unit
            await self._previous.wait_idle()
            self._previous = None
        if self._cancelled:
            return False

        state = self.state
        state.user_id = user_id
        state.is_loading = True
        self._idle.clear()
        completed = False
        try:
            if not state.has_fetched_settings:
                base_currency, selected_currency = await run_in_threadpool(
                    read_user_settings,
                    self.engine,
                    user_id,
                    state.settings.base_currency,
                    state.settings.selected_currency,
                )
                if self._cancelled:
                    return False
                state.settings.base_currency = base_currency
                state.settings.selected_currency = selected_currency
                state.has_fetched_settings = True

            if not state.balance.has_fetched:
                balance, ledger = await run_in_threadpool(
                    state.balance.read_or_init, self.engine, user_id
                )
                if self._cancelled:
                    return False
                state.balance.load(balance, ledger)

            if first_login and state.unlogged_transactions:
                pending = list(state.unlogged_transactions)
                saved = await run_in_threadpool(
                    save_unlogged_transactions, self.engine, user_id, pending, today, self.attempts
                )
                flushed = {tx.id for tx in pending}
                state.unlogged_transactions = [
                    tx for tx in state.unlogged_transactions if tx.id not in flushed
                ]
                if self._cancelled:
                    return False
                for transaction in saved:
                    mirror_balance_effect(state, transaction)

            reconciliation = await run_in_threadpool(
                process_future_transactions, self.engine, user_id, None, today, self.attempts
            )
            if self._cancelled:
                return False
            state.balance.apply(reconciliation.balance_delta, reconciliation.ledger_deltas)

            fetched, expecting, future = await asyncio.gather(
                run_in_threadpool(fetch_transactions, self.engine, user_id),
                run_in_threadpool(fetch_expecting_transactions, self.engine, user_id),
                run_in_threadpool(fetch_future_transactions, self.engine, user_id),
            )
            if self._cancelled:
                return False
            state.transactions.set(fetched)
            state.expecting_transactions.set(expecting)
            state.expecting_transactions.has_fetched = True
            state.future_transactions.set(future)
            state.future_transactions.has_fetched = True

            # processed months are recorded on copies until the unit result is applied
            definitions = [
                replace(definition, processed_months=list(definition.processed_months))
                for definition in expecting
            ]
            materialized = await run_in_threadpool(
                process_expecting_transactions,
                self.engine,
                definitions,
                user_id,
                rebase_rates(self.rate_provider.rates, state.settings.base_currency),
                state.settings.base_currency,
                None,
                today,
                self.attempts,
            )
            if self._cancelled:
                return False
            state.expecting_transactions.set(definitions)
            for transaction in materialized:
                state.transactions.append(transaction)
                mirror_balance_effect(state, transaction)
            completed = True
            logger.debug("Session for user %s loaded", user_id)
            return True
        finally:
            if not completed:
                # committed units may be missing from the local balance
                state.balance.has_fetched = False
            if not self._cancelled:
                state.is_loading = False
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()


class SessionRegistry:
    """Live session states keyed by user id."""

    def __init__(self) -> None:
        self._states: Dict[int, SessionState] = {}
        self._loaders: Dict[int, SessionLoader] = {}

    def get(self, user_id: int) -> Optional[SessionState]:
        return self._states.get(user_id)

    def get_or_create(self, user_id: int) -> SessionState:
        state = self._states.get(user_id)
        if state is None:
            state = SessionState(user_id=user_id)
            self._states[user_id] = state
        return state

    def start(
        self,
        user_id: int,
        engine: Engine,
        rate_provider: StaticRateProvider,
        attempts: int = DEFAULT_COMMIT_ATTEMPTS,
    ) -> SessionLoader:
        previous = self._loaders.get(user_id)
        if previous is not None:
            previous.cancel()
        loader = SessionLoader(
            engine, self.get_or_create(user_id), rate_provider, attempts, previous=previous
        )
        self._loaders[user_id] = loader
        return loader

    def end(self, user_id: int) -> None:
        loader = self._loaders.pop(user_id, None)
        if loader is not None:
            loader.cancel()
        state = self._states.pop(user_id, None)
        if state is not None:
            state.clear()
