from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from typing import NoReturn

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.engine import Engine

from ledger_backend.config import Settings, configure_logging, load_settings
from ledger_backend.currency_conversion import (
    StaticRateProvider,
    convert_between,
    normalize_currency,
    rebase_rates,
    round_to_two,
)
from ledger_backend.errors import (
    ConcurrentModification,
    LedgerError,
    NotFound,
    PreconditionFailed,
    UnknownCurrency,
    UserNotInitialized,
)
from ledger_backend.future_reconciler import process_future_transactions
from ledger_backend.models import (
    ExpectingTransaction,
    Transaction,
    TransactionCategory,
    TransactionType,
    get_currency,
)
from ledger_backend.persistence import (
    build_expecting_transaction,
    build_transaction,
    create_user,
    delete_expecting_transaction,
    delete_transaction,
    is_valid_pay_day,
    load_user_settings,
    save_expecting_transaction,
    save_transaction,
    update_user_settings,
)
from ledger_backend.recurring_processor import process_expecting_transactions
from ledger_backend.session import SessionRegistry
from ledger_backend.state import SessionState
from ledger_backend.storage import create_storage_engine, init_storage, users
from ledger_backend.summary import (
    category_breakdown,
    get_years_from_transactions,
    summarize_period,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    UnknownCurrency: 400,
    NotFound: 404,
    UserNotInitialized: 409,
    PreconditionFailed: 409,
    ConcurrentModification: 503,
}


@dataclass
class LedgerContext:
    settings: Settings
    engine: Engine
    rate_provider: StaticRateProvider
    sessions: SessionRegistry

    def rates_for(self, base_currency: str) -> dict[str, Decimal]:
        return rebase_rates(self.rate_provider.rates, base_currency)


class UserPayload(BaseModel):
    base_currency: str | None = None
    selected_currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "UserPayload") -> "UserPayload":
        if payload.base_currency is not None:
            payload.base_currency = get_currency(normalize_currency(payload.base_currency)).code
        if payload.selected_currency is not None:
            payload.selected_currency = get_currency(
                normalize_currency(payload.selected_currency)
            ).code
        return payload


class UserSettingsResponse(BaseModel):
    id: int
    base_currency: str
    selected_currency: str


class BalanceResponse(BaseModel):
    current_balance: Decimal
    balance_ledger: dict[str, Decimal]
    base_currency: str


class TransactionPayload(BaseModel):
    amount: Decimal
    type: str
    category: str
    date: date
    currency: str | None = None
    description: str | None = None
    id: str | None = None
    confirm_duplicate: bool = False

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.category = TransactionCategory.validate(payload.category)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.description = payload.description.strip() if payload.description else None
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class TransactionResponse(BaseModel):
    id: str
    signature: str
    orig_amount: Decimal
    base_amount: Decimal
    currency: str
    currency_symbol: str
    type: str
    date: date
    category: str
    description: str | None = None
    exchange_rate: Decimal
    has_transaction_completed: bool


class SaveTransactionResponse(BaseModel):
    saved: bool
    duplicate: bool
    transaction: TransactionResponse | None = None
    balance: BalanceResponse


class DuplicateCheckResponse(BaseModel):
    duplicate: bool
    signature: str


class ExpectingTransactionPayload(BaseModel):
    amount: Decimal
    type: str
    category: str
    pay_day: int
    start_date: date
    currency: str | None = None
    description: str | None = None
    confirm_duplicate: bool = False

    @classmethod
    def validate_payload(
        cls, payload: "ExpectingTransactionPayload"
    ) -> "ExpectingTransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.category = TransactionCategory.validate(payload.category)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.description = payload.description.strip() if payload.description else None
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        if payload.pay_day < 1:
            raise ValueError("Pay day must be at least 1.")
        return payload


class ExpectingTransactionResponse(BaseModel):
    id: str
    signature: str
    orig_amount: Decimal
    base_amount: Decimal
    currency: str
    type: str
    pay_day: int
    start_date: date
    category: str
    description: str | None = None
    exchange_rate: Decimal
    processed_months: list[str]


class SaveExpectingTransactionResponse(BaseModel):
    saved: bool
    duplicate: bool = False
    pay_day_too_high: bool = False
    expecting_transaction: ExpectingTransactionResponse | None = None


class SessionStartPayload(BaseModel):
    first_login: bool = False
    unlogged_transactions: list[TransactionPayload] = []


class SessionResponse(BaseModel):
    user_id: int
    loaded: bool
    base_currency: str
    selected_currency: str
    balance: BalanceResponse
    transaction_count: int
    future_transaction_count: int
    expecting_transaction_count: int


class RecurringProcessResponse(BaseModel):
    materialized: list[TransactionResponse]
    balance: BalanceResponse


class ReconcileResponse(BaseModel):
    reconciled_ids: list[str]
    balance_delta: Decimal
    balance: BalanceResponse


class RatesResponse(BaseModel):
    base_currency: str
    rates: dict[str, Decimal]


class ConvertPayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str


class ConvertResponse(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str


class CategorySummaryResponse(BaseModel):
    category: str
    total: Decimal
    percentage: Decimal
    currency: str


class SummaryResponse(BaseModel):
    currency: str
    current_balance: Decimal
    total_income: Decimal
    total_expenses: Decimal
    net: Decimal
    transaction_count: int
    has_multiple_currencies: bool
    categories: list[CategorySummaryResponse]
    years: list[str]


def get_context(request: Request) -> LedgerContext:
    return request.app.state.ledger


def get_user_id(engine: Engine, x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def require_session(context: LedgerContext, user_id: int) -> SessionState:
    state = context.sessions.get(user_id)
    if state is None or not state.balance.has_fetched:
        raise HTTPException(status_code=409, detail="Session not started.")
    return state


def raise_ledger_error(exc: LedgerError) -> NoReturn:
    status_code = ERROR_STATUS.get(type(exc), 500)
    logger.warning("Ledger operation failed (%s): %s", type(exc).__name__, exc)
    raise HTTPException(status_code=status_code, detail=str(exc)) from exc


def balance_response(state: SessionState) -> BalanceResponse:
    snapshot = state.balance.snapshot()
    return BalanceResponse(
        current_balance=round_to_two(snapshot.current_balance),
        balance_ledger={
            code: round_to_two(amount) for code, amount in sorted(snapshot.balance_ledger.items())
        },
        base_currency=state.settings.base_currency,
    )


def transaction_response(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        signature=transaction.signature,
        orig_amount=round_to_two(transaction.orig_amount),
        base_amount=round_to_two(transaction.base_amount),
        currency=transaction.currency.code,
        currency_symbol=transaction.currency.symbol,
        type=transaction.type,
        date=transaction.date,
        category=transaction.category,
        description=transaction.description,
        exchange_rate=transaction.exchange_rate,
        has_transaction_completed=transaction.has_transaction_completed,
    )


def expecting_response(expecting: ExpectingTransaction) -> ExpectingTransactionResponse:
    return ExpectingTransactionResponse(
        id=expecting.id,
        signature=expecting.signature,
        orig_amount=round_to_two(expecting.orig_amount),
        base_amount=round_to_two(expecting.base_amount),
        currency=expecting.currency.code,
        type=expecting.type,
        pay_day=expecting.pay_day,
        start_date=expecting.start_date,
        category=expecting.category,
        description=expecting.description,
        exchange_rate=expecting.exchange_rate,
        processed_months=sorted(expecting.processed_months),
    )


def session_response(state: SessionState, loaded: bool) -> SessionResponse:
    return SessionResponse(
        user_id=state.user_id,
        loaded=loaded,
        base_currency=state.settings.base_currency,
        selected_currency=state.settings.selected_currency,
        balance=balance_response(state),
        transaction_count=len(state.transactions),
        future_transaction_count=len(state.future_transactions.items),
        expecting_transaction_count=len(state.expecting_transactions.items),
    )


def draft_transaction(
    context: LedgerContext, state: SessionState, payload: TransactionPayload
) -> Transaction:
    base_currency = state.settings.base_currency
    try:
        return build_transaction(
            amount=payload.amount,
            transaction_type=payload.type,
            category=payload.category,
            transaction_date=payload.date,
            currency_code=payload.currency or state.settings.selected_currency,
            base_currency=base_currency,
            rates=context.rates_for(base_currency),
            description=payload.description,
            transaction_id=payload.id,
        )
    except UnknownCurrency as exc:
        raise_ledger_error(exc)


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/users", response_model=UserSettingsResponse)
def create_user_record(payload: UserPayload, request: Request) -> UserSettingsResponse:
    context = get_context(request)
    try:
        payload = UserPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    base_currency = payload.base_currency or context.settings.base_currency
    selected_currency = payload.selected_currency or base_currency
    user_id = create_user(context.engine, base_currency, selected_currency)
    return UserSettingsResponse(
        id=user_id, base_currency=base_currency, selected_currency=selected_currency
    )


@router.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> UserSettingsResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    with context.engine.begin() as conn:
        row = conn.execute(
            select(users.c.base_currency, users.c.selected_currency).where(users.c.id == user_id)
        ).mappings().first()
    return UserSettingsResponse(
        id=user_id, base_currency=row["base_currency"], selected_currency=row["selected_currency"]
    )


@router.put("/users/me/settings", response_model=UserSettingsResponse)
def put_user_settings(
    payload: UserPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    try:
        payload = UserPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        base_currency, selected_currency = update_user_settings(
            context.engine,
            user_id,
            base_currency=payload.base_currency,
            selected_currency=payload.selected_currency,
            state=context.sessions.get(user_id),
        )
    except LedgerError as exc:
        raise_ledger_error(exc)
    return UserSettingsResponse(
        id=user_id, base_currency=base_currency, selected_currency=selected_currency
    )


@router.post("/session/start", response_model=SessionResponse)
async def start_session(
    payload: SessionStartPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SessionResponse:
    context = get_context(request)
    user_id = await run_in_threadpool(get_user_id, context.engine, x_user_id)
    loader = context.sessions.start(
        user_id, context.engine, context.rate_provider, context.settings.commit_attempts
    )
    state = loader.state

    if payload.first_login and payload.unlogged_transactions and not state.balance.has_fetched:
        await run_in_threadpool(
            _stage_unlogged_transactions, context, state, user_id, payload.unlogged_transactions
        )

    try:
        loaded = await loader.load(user_id, first_login=payload.first_login)
    except LedgerError as exc:
        raise_ledger_error(exc)
    return session_response(state, loaded)


def _stage_unlogged_transactions(
    context: LedgerContext,
    state: SessionState,
    user_id: int,
    drafts: list[TransactionPayload],
) -> None:
    try:
        validated = [TransactionPayload.validate_payload(draft) for draft in drafts]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    # drafts are converted into the stored base currency
    load_user_settings(context.engine, user_id, state)
    state.unlogged_transactions = [draft_transaction(context, state, draft) for draft in validated]


@router.post("/session/end")
def end_session(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    context.sessions.end(user_id)
    return {"status": "ended"}


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BalanceResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    return balance_response(require_session(context, user_id))


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    request: Request,
    year: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    items = [
        tx for tx in state.transactions.items if year is None or tx.date.year == year
    ]
    items.sort(key=lambda tx: (tx.date, tx.id), reverse=True)
    return [transaction_response(tx) for tx in items]


@router.post("/transactions/check-duplicate", response_model=DuplicateCheckResponse)
def check_duplicate_transaction(
    payload: TransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DuplicateCheckResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    transaction = draft_transaction(context, state, payload)
    return DuplicateCheckResponse(
        duplicate=state.transactions.is_duplicate(transaction.signature),
        signature=transaction.signature,
    )


@router.post("/transactions", response_model=SaveTransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SaveTransactionResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    transaction = draft_transaction(context, state, payload)
    if state.transactions.is_duplicate(transaction.signature) and not payload.confirm_duplicate:
        return SaveTransactionResponse(
            saved=False, duplicate=True, balance=balance_response(state)
        )
    if state.transactions.get(transaction.id) is not None:
        raise HTTPException(status_code=409, detail="Transaction id already exists.")

    try:
        saved = save_transaction(
            context.engine,
            transaction,
            user_id,
            state=state,
            attempts=context.settings.commit_attempts,
        )
    except LedgerError as exc:
        raise_ledger_error(exc)
    return SaveTransactionResponse(
        saved=True,
        duplicate=False,
        transaction=transaction_response(saved),
        balance=balance_response(state),
    )


@router.delete("/transactions/{transaction_id}", response_model=BalanceResponse)
def remove_transaction(
    transaction_id: str,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BalanceResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    try:
        delete_transaction(
            context.engine,
            transaction_id,
            user_id,
            state=state,
            attempts=context.settings.commit_attempts,
        )
    except LedgerError as exc:
        raise_ledger_error(exc)
    return balance_response(state)


@router.get("/future-transactions", response_model=list[TransactionResponse])
def list_future_transactions(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[TransactionResponse]:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    items = sorted(state.future_transactions.items, key=lambda tx: (tx.date, tx.id))
    return [transaction_response(tx) for tx in items]


@router.post("/future-transactions/process", response_model=ReconcileResponse)
def reconcile_future_transactions(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReconcileResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    try:
        result = process_future_transactions(
            context.engine, user_id, state=state, attempts=context.settings.commit_attempts
        )
    except LedgerError as exc:
        raise_ledger_error(exc)
    return ReconcileResponse(
        reconciled_ids=result.reconciled_ids,
        balance_delta=round_to_two(result.balance_delta),
        balance=balance_response(state),
    )


@router.get("/expecting-transactions", response_model=list[ExpectingTransactionResponse])
def list_expecting_transactions(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[ExpectingTransactionResponse]:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    return [expecting_response(item) for item in state.expecting_transactions.items]


@router.post("/expecting-transactions", response_model=SaveExpectingTransactionResponse)
def create_expecting_transaction(
    payload: ExpectingTransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SaveExpectingTransactionResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    try:
        payload = ExpectingTransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not is_valid_pay_day(payload.pay_day):
        return SaveExpectingTransactionResponse(saved=False, pay_day_too_high=True)

    base_currency = state.settings.base_currency
    try:
        expecting = build_expecting_transaction(
            amount=payload.amount,
            transaction_type=payload.type,
            category=payload.category,
            pay_day=payload.pay_day,
            start_date=payload.start_date,
            currency_code=payload.currency or state.settings.selected_currency,
            base_currency=base_currency,
            rates=context.rates_for(base_currency),
            description=payload.description,
        )
        if (
            state.expecting_transactions.is_duplicate(expecting.signature)
            and not payload.confirm_duplicate
        ):
            return SaveExpectingTransactionResponse(saved=False, duplicate=True)
        save_expecting_transaction(context.engine, expecting, user_id, state=state)
    except LedgerError as exc:
        raise_ledger_error(exc)
    return SaveExpectingTransactionResponse(
        saved=True, expecting_transaction=expecting_response(expecting)
    )


@router.delete("/expecting-transactions/{expecting_id}")
def remove_expecting_transaction(
    expecting_id: str,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    try:
        delete_expecting_transaction(context.engine, expecting_id, user_id, state=state)
    except LedgerError as exc:
        raise_ledger_error(exc)
    return {"status": "deleted"}


@router.post("/expecting-transactions/process", response_model=RecurringProcessResponse)
def run_expecting_transactions(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringProcessResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    base_currency = state.settings.base_currency
    try:
        materialized = process_expecting_transactions(
            context.engine,
            state.expecting_transactions.items,
            user_id,
            context.rates_for(base_currency),
            base_currency,
            state=state,
            attempts=context.settings.commit_attempts,
        )
    except LedgerError as exc:
        raise_ledger_error(exc)
    return RecurringProcessResponse(
        materialized=[transaction_response(tx) for tx in materialized],
        balance=balance_response(state),
    )


@router.get("/currency/rates", response_model=RatesResponse)
def get_rates(request: Request, base: str | None = None) -> RatesResponse:
    context = get_context(request)
    try:
        base_currency = normalize_currency(base) if base else context.rate_provider.base_currency
        rates = context.rates_for(base_currency)
    except UnknownCurrency as exc:
        raise_ledger_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RatesResponse(base_currency=base_currency, rates=rates)


@router.post("/currency/convert", response_model=ConvertResponse)
def convert_currency(payload: ConvertPayload, request: Request) -> ConvertResponse:
    context = get_context(request)
    try:
        source = get_currency(normalize_currency(payload.from_currency)).code
        target = get_currency(normalize_currency(payload.to_currency)).code
        context.rate_provider.get_rate(source)
        context.rate_provider.get_rate(target)
    except UnknownCurrency as exc:
        raise_ledger_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    amount = context.rate_provider.convert(source, target, payload.amount)
    return ConvertResponse(
        amount=round_to_two(amount), from_currency=source, to_currency=target
    )


@router.get("/summary", response_model=SummaryResponse)
def get_summary(
    request: Request,
    year: int | None = None,
    month: int | None = None,
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SummaryResponse:
    context = get_context(request)
    user_id = get_user_id(context.engine, x_user_id)
    state = require_session(context, user_id)
    if month is not None and not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")

    base_currency = state.settings.base_currency
    try:
        selected = (
            get_currency(normalize_currency(currency)).code
            if currency
            else state.settings.selected_currency
        )
    except UnknownCurrency as exc:
        raise_ledger_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    rates = context.rates_for(base_currency)
    period = summarize_period(
        state.transactions.items, selected, base_currency, rates, year=year, month=month
    )
    in_period = [
        tx
        for tx in state.transactions.items
        if (year is None or tx.date.year == year) and (month is None or tx.date.month == month)
    ]
    categories = category_breakdown(in_period, selected, base_currency, rates)
    current_balance = convert_between(
        state.balance.current_balance, base_currency, selected, rates, base_currency
    )
    return SummaryResponse(
        currency=selected,
        current_balance=round_to_two(current_balance),
        total_income=period.total_income,
        total_expenses=period.total_expenses,
        net=period.net,
        transaction_count=period.transaction_count,
        has_multiple_currencies=period.has_multiple_currencies,
        categories=[
            CategorySummaryResponse(
                category=item.category,
                total=item.total,
                percentage=item.percentage,
                currency=item.currency,
            )
            for item in categories
        ],
        years=get_years_from_transactions(state.transactions.items),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    engine = create_storage_engine(settings.database_url)
    context = LedgerContext(
        settings=settings,
        engine=engine,
        rate_provider=StaticRateProvider(
            rates=settings.rates, base_currency=settings.base_currency
        ),
        sessions=SessionRegistry(),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        init_storage(engine)
        yield
        engine.dispose()

    application = FastAPI(title="budget-ledger", lifespan=lifespan)
    application.state.ledger = context
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(router)
    return application


app = create_app()
