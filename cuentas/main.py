import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

import bcrypt
from fastapi import FastAPI, File, Header, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine, insert, select
from sqlalchemy.exc import IntegrityError

from cuentas import store
from cuentas.budget_engine import (
    DEFAULT_GOAL_POLICY,
    CategoryShare,
    GoalPolicy,
    Window,
    category_breakdown,
    dashboard_summary,
    filter_window,
    paginate,
    period_stats,
    prepare_for_view,
    recent_transactions,
    search_transactions,
)
from cuentas.categories import (
    Category,
    category_slug,
    category_usage,
    discover_categories,
    find_category,
    normalize_tag,
    overlay_without,
    plan_rename,
    plan_soft_delete,
    resolve_category,
)
from cuentas.currency_conversion import (
    STORED_CURRENCY,
    DolarApiProvider,
    ExchangeRateApiProvider,
    MarketRateProvider,
    RateProviderUnavailable,
    RateSnapshot,
    StaticRateProvider,
    append_note,
    build_amount_snapshot,
    display_amount,
    fetch_rate_snapshot,
    has_snapshot,
    normalize_currency,
    original_currency_note,
)
from cuentas.dates import FALLBACK_POLICIES, is_today_sentinel
from cuentas.import_parser import export_transactions_csv, parse_import_csv
from cuentas.recurring_checklist import (
    ChecklistEntry,
    build_checklist,
    ensure_cancellable,
    prefill_from_entry,
)
from cuentas.transactions import (
    DEFAULT_DESCRIPTION,
    DEFAULT_ICON,
    GOAL_META,
    TYPE_EXPENSE,
    CustomCategory,
    Preferences,
    Transaction,
    normalize_goal_type,
    normalize_periodicity,
    normalize_transaction_type,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

TODAY_LABEL = "Hoy"
PERCENT_STEP = Decimal("0.01")


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_DISPLAY_CURRENCY", STORED_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        logger.warning("Ignoring unsupported DEFAULT_DISPLAY_CURRENCY %r", raw)
        return STORED_CURRENCY


def get_system_monthly_goal() -> Decimal:
    raw = os.getenv("DEFAULT_MONTHLY_GOAL", "3000")
    try:
        return Decimal(raw)
    except InvalidOperation:
        logger.warning("Ignoring invalid DEFAULT_MONTHLY_GOAL %r", raw)
        return Decimal("3000")


def build_rate_provider():
    if os.getenv("FX_PROVIDER", "live").strip().lower() == "static":
        return StaticRateProvider()
    timeout_seconds = float(os.getenv("FX_TIMEOUT_SECONDS", "8"))
    return MarketRateProvider(
        global_provider=ExchangeRateApiProvider(timeout_seconds=timeout_seconds),
        ars_provider=DolarApiProvider(timeout_seconds=timeout_seconds),
    )


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
SYSTEM_MONTHLY_GOAL = get_system_monthly_goal()
FX_PROVIDER = build_rate_provider()

database_url = os.getenv("DATABASE_URL", "sqlite:///./cuentas.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Creating tables if missing")
    store.metadata.create_all(engine)
    yield


app = FastAPI(title="Cuentas", lifespan=lifespan)

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CredentialsPayload(BaseModel):
    username: str
    password: str


class UserResponse(BaseModel):
    id: int
    username: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    monthly_goal: Decimal | None = None
    display_currency: str | None = None
    date_fallback: str | None = None
    travel_mode_start: date | None = None
    clear_travel_mode: bool = False

    @classmethod
    def validate_payload(cls, payload: "UserSettingsPayload") -> "UserSettingsPayload":
        if payload.monthly_goal is not None and payload.monthly_goal < 0:
            raise ValueError("Monthly goal cannot be negative.")
        if payload.display_currency is not None:
            payload.display_currency = normalize_currency(payload.display_currency)
        if payload.date_fallback is not None:
            payload.date_fallback = payload.date_fallback.strip().lower()
            if payload.date_fallback not in FALLBACK_POLICIES:
                raise ValueError("Invalid date fallback policy.")
        return payload


class UserSettingsResponse(BaseModel):
    id: int
    username: str
    monthly_goal: Decimal
    display_currency: str
    date_fallback: str
    travel_mode_start: date | None = None


class TransactionPayload(BaseModel):
    desc: str | None = None
    amount: Decimal | None = None
    currency: str = STORED_CURRENCY
    type: str = TYPE_EXPENSE
    tag: str | None = None
    custom_tag: str | None = None
    custom_icon: str | None = None
    date: str | None = None
    icon: str | None = None
    details: str | None = None
    exclude_from_budget: bool = False
    goal_type: str | None = None
    periodicity: int | None = None
    payment_method: str | None = None
    card_digits: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.amount is None:
            raise ValueError("Amount required.")
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.type = normalize_transaction_type(payload.type)
        payload.currency = normalize_currency(payload.currency)
        payload.goal_type = normalize_goal_type(payload.goal_type)
        payload.periodicity = normalize_periodicity(payload.goal_type, payload.periodicity)
        if payload.goal_type == GOAL_META:
            payload.exclude_from_budget = False
        payload.desc = payload.desc.strip() if payload.desc and payload.desc.strip() else DEFAULT_DESCRIPTION
        payload.tag = payload.tag.strip() if payload.tag else None
        payload.custom_tag = payload.custom_tag.strip() if payload.custom_tag else None
        payload.details = payload.details.strip() if payload.details else None
        payload.date = payload.date.strip() if payload.date else None
        _validate_card_digits(payload.card_digits)
        return payload


class TransactionUpdatePayload(BaseModel):
    desc: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    type: str | None = None
    tag: str | None = None
    date: str | None = None
    icon: str | None = None
    details: str | None = None
    exclude_from_budget: bool | None = None
    goal_type: str | None = None
    periodicity: int | None = None
    payment_method: str | None = None
    card_digits: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionUpdatePayload") -> "TransactionUpdatePayload":
        if payload.amount is not None and payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        if payload.type is not None:
            payload.type = normalize_transaction_type(payload.type)
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
            if payload.amount is None:
                raise ValueError("Currency requires an amount.")
        if payload.goal_type is not None:
            payload.goal_type = normalize_goal_type(payload.goal_type)
        if payload.desc is not None:
            payload.desc = payload.desc.strip() or DEFAULT_DESCRIPTION
        if payload.date is not None and not payload.date.strip():
            raise ValueError("Date cannot be blank.")
        _validate_card_digits(payload.card_digits)
        return payload


class TransactionResponse(BaseModel):
    id: int
    desc: str
    amount: Decimal
    display_amount: Decimal
    display_currency: str
    is_translated: bool
    tag: str
    type: str
    date: str
    icon: str
    details: str | None = None
    amount_usd: Decimal | None = None
    amount_ars: Decimal | None = None
    amount_ils: Decimal | None = None
    amount_eur: Decimal | None = None
    exclude_from_budget: bool
    goal_type: str
    is_cancelled: bool
    is_recurring: bool
    periodicity: int | None = None
    payment_method: str | None = None
    card_digits: str | None = None


class ImportResponse(BaseModel):
    inserted_count: int
    skipped_count: int


class CategoryPayload(BaseModel):
    label: str
    icon: str = DEFAULT_ICON

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.label = payload.label.strip()
        payload.icon = payload.icon.strip() or DEFAULT_ICON
        if not payload.label:
            raise ValueError("Category name required.")
        return payload


class CategoryRenamePayload(BaseModel):
    old_tag: str
    new_tag: str
    new_icon: str


class CategoryResponse(BaseModel):
    id: str
    label: str
    icon: str
    count: int = 0


class CategoryChangeResponse(BaseModel):
    count: int


class TotalsResponse(BaseModel):
    income: Decimal
    expense: Decimal
    balance: Decimal


class CategoryShareResponse(BaseModel):
    tag: str
    total: Decimal
    percentage: Decimal


class ChecklistPrefillResponse(BaseModel):
    desc: str
    amount: Decimal
    currency: str
    tag: str
    icon: str
    type: str
    goal_type: str
    periodicity: int | None = None
    exclude_from_budget: bool
    details: str | None = None
    payment_method: str | None = None
    card_digits: str | None = None
    date: str


class ChecklistEntryResponse(BaseModel):
    transaction_id: int
    label: str
    tag: str
    icon: str
    amount: Decimal
    goal_type: str
    periodicity: int | None = None
    is_paid: bool
    due_day: int
    prefill: ChecklistPrefillResponse | None = None


class DashboardResponse(BaseModel):
    month: date
    display_currency: str
    days_left: int
    totals: TotalsResponse
    goal_expense: Decimal
    monthly_goal: Decimal
    goal_progress: Decimal
    previous_goal_expense: Decimal
    month_over_month_change: Decimal
    top_categories: list[CategoryShareResponse]
    recent: list[TransactionResponse]
    checklist: list[ChecklistEntryResponse]


class PeriodStatsResponse(BaseModel):
    year: int
    month: int | None = None
    display_currency: str
    totals: TotalsResponse
    goal_expense: Decimal
    monthly_goal: Decimal
    goal_progress: Decimal
    categories: list[CategoryShareResponse]
    year_trend: list[Decimal]
    available_years: list[int]


def current_date() -> date:
    return date.today()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(store.users.c.id).where(store.users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def load_user_state(user_id: int) -> tuple[Preferences, list[Transaction]]:
    with engine.begin() as conn:
        preferences = store.load_preferences(conn, user_id)
        history = store.list_transactions(conn, user_id)
    return preferences, history


def resolve_display_currency(value: str | None, preferences: Preferences) -> str:
    if not value:
        return preferences.display_currency
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def fetch_rates() -> RateSnapshot:
    try:
        return fetch_rate_snapshot(FX_PROVIDER)
    except RateProviderUnavailable as exc:
        logger.error("Aborting write, exchange rates unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Exchange rates unavailable.") from exc


def stored_date(value: str | None, today: date) -> str:
    if not value or value == today.isoformat() or is_today_sentinel(value):
        return TODAY_LABEL
    return value


def transaction_response(txn: Transaction, currency: str) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        desc=txn.desc,
        amount=txn.amount,
        display_amount=display_amount(txn, currency),
        display_currency=currency,
        is_translated=has_snapshot(txn, currency),
        tag=txn.tag,
        type=txn.type,
        date=txn.date,
        icon=txn.icon,
        details=txn.details,
        amount_usd=txn.amount_usd,
        amount_ars=txn.amount_ars,
        amount_ils=txn.amount_ils,
        amount_eur=txn.amount_eur,
        exclude_from_budget=txn.exclude_from_budget,
        goal_type=txn.goal_type,
        is_cancelled=txn.is_cancelled,
        is_recurring=txn.is_recurring,
        periodicity=txn.periodicity,
        payment_method=txn.payment_method,
        card_digits=txn.card_digits,
    )


def share_response(share: CategoryShare) -> CategoryShareResponse:
    return CategoryShareResponse(
        tag=share.tag,
        total=share.total,
        percentage=share.percentage.quantize(PERCENT_STEP),
    )


def checklist_response(entry: ChecklistEntry, today: date) -> ChecklistEntryResponse:
    txn = entry.transaction
    prefill = None
    if not entry.is_paid:
        prefill = ChecklistPrefillResponse(**prefill_from_entry(entry, today))
    return ChecklistEntryResponse(
        transaction_id=txn.id,
        label=entry.label,
        tag=txn.tag,
        icon=txn.icon,
        amount=txn.amount,
        goal_type=txn.goal_type,
        periodicity=txn.periodicity,
        is_paid=entry.is_paid,
        due_day=entry.due_day,
        prefill=prefill,
    )


def settings_response(row) -> UserSettingsResponse:
    return UserSettingsResponse(
        id=row["id"],
        username=row["username"],
        monthly_goal=row["monthly_goal"],
        display_currency=row["display_currency"],
        date_fallback=row["date_fallback"],
        travel_mode_start=row["travel_mode_start"],
    )


def _validate_card_digits(value: str | None) -> None:
    if value and (len(value) != 4 or not value.isdigit()):
        raise ValueError("Card digits must be the last 4 digits.")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    username = payload.username.strip().lower()
    if not username or not payload.password:
        raise HTTPException(status_code=400, detail="Username and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(store.users)
        .values(
            username=username,
            hashed_password=hashed_password,
            monthly_goal=SYSTEM_MONTHLY_GOAL,
            display_currency=SYSTEM_DEFAULT_CURRENCY,
        )
        .returning(store.users.c.id, store.users.c.username, store.users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Username already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Registered user %s", row["id"])
    return UserResponse(id=row["id"], username=row["username"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    username = payload.username.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(
            select(store.users).where(store.users.c.username == username)
        ).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], username=row["username"], created_at=row["created_at"])


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(store.users).where(store.users.c.id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return settings_response(row)


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = UserSettingsPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        found = store.update_preferences(
            conn,
            user_id,
            monthly_goal=payload.monthly_goal,
            display_currency=payload.display_currency,
            date_fallback=payload.date_fallback,
            travel_mode_start=payload.travel_mode_start,
            clear_travel_mode=payload.clear_travel_mode,
        )
        if not found:
            raise HTTPException(status_code=404, detail="User not found.")
        row = conn.execute(
            select(store.users).where(store.users.c.id == user_id)
        ).mappings().first()
    return settings_response(row)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    currency: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    search: str | None = Query(None),
    type_: str | None = Query(None, alias="type"),
    tag: str | None = Query(None),
    year: int | None = Query(None),
    month: int | None = Query(None),
    page: int | None = Query(None, ge=1),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    display_currency = resolve_display_currency(currency, preferences)
    reference = current_date()
    try:
        transaction_type = normalize_transaction_type(type_) if type_ else None
        window = None
        if month is not None:
            if not 1 <= month <= 12:
                raise ValueError("Month must be between 1 and 12.")
            window = Window.for_month(year if year is not None else reference.year, month)
        elif year is not None:
            window = Window.for_year(year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    visible = prepare_for_view(history, preferences, today=reference)
    if window is not None:
        visible = filter_window(
            visible, window, today=reference, fallback=preferences.date_fallback
        )
    matches = search_transactions(visible, text=search, transaction_type=transaction_type, tag=tag)
    ordered = recent_transactions(
        matches, limit=limit, today=reference, fallback=preferences.date_fallback
    )
    if page is not None:
        ordered = paginate(ordered, page)
    return [transaction_response(txn, display_currency) for txn in ordered]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    preferences, history = load_user_state(user_id)
    catalog = discover_categories(history, preferences.custom_categories)
    new_category = None
    try:
        if payload.custom_tag and payload.type == TYPE_EXPENSE:
            category = find_category(catalog, payload.custom_tag)
            if category is None:
                new_category = CustomCategory(
                    label=payload.custom_tag,
                    icon=(payload.custom_icon or "").strip() or DEFAULT_ICON,
                    id=category_slug(payload.custom_tag),
                )
                category = Category(
                    id=new_category.id, label=new_category.label, icon=new_category.icon
                )
        else:
            category = resolve_category(catalog, payload.tag, payload.type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    rates = fetch_rates()
    snapshot = build_amount_snapshot(payload.amount, payload.currency, rates)
    fields = {
        "desc": payload.desc,
        "tag": category.label,
        "type": payload.type,
        "date": stored_date(payload.date, current_date()),
        "icon": payload.icon or category.icon,
        "details": append_note(
            payload.details, original_currency_note(payload.amount, payload.currency)
        ),
        "exclude_from_budget": payload.exclude_from_budget,
        "goal_type": payload.goal_type,
        "is_cancelled": False,
        "periodicity": payload.periodicity,
        "payment_method": payload.payment_method,
        "card_digits": payload.card_digits,
    }
    fields.update(snapshot.as_fields())

    try:
        with engine.begin() as conn:
            if new_category is not None:
                store.add_custom_category(conn, user_id, new_category)
            created = store.create_transaction(conn, user_id, fields)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return transaction_response(created, preferences.display_currency)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    preferences, history = load_user_state(user_id)
    existing = next((txn for txn in history if txn.id == transaction_id), None)
    if existing is None:
        raise HTTPException(status_code=404, detail="Transaction not found.")

    fields: dict = {}
    txn_type = payload.type or existing.type
    if payload.type is not None:
        fields["type"] = payload.type
    if payload.desc is not None:
        fields["desc"] = payload.desc
    if payload.tag is not None or payload.type is not None:
        catalog = discover_categories(history, preferences.custom_categories)
        tag = payload.tag
        if tag is None and payload.type in (None, existing.type):
            tag = existing.tag
        try:
            category = resolve_category(catalog, tag, txn_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        fields["tag"] = category.label
        fields["icon"] = category.icon
    if payload.icon is not None:
        fields["icon"] = payload.icon.strip() or DEFAULT_ICON

    goal_type = payload.goal_type or existing.goal_type
    try:
        periodicity = normalize_periodicity(
            goal_type,
            payload.periodicity if payload.periodicity is not None else existing.periodicity,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.goal_type is not None or payload.periodicity is not None:
        fields["goal_type"] = goal_type
        fields["periodicity"] = periodicity
    if payload.exclude_from_budget is not None:
        fields["exclude_from_budget"] = payload.exclude_from_budget
    if goal_type == GOAL_META:
        fields["exclude_from_budget"] = False

    details = existing.details
    if payload.details is not None:
        details = payload.details.strip() or None
        fields["details"] = details
    if payload.date is not None:
        fields["date"] = stored_date(payload.date.strip(), current_date())
    if payload.payment_method is not None:
        fields["payment_method"] = payload.payment_method.strip() or None
    if payload.card_digits is not None:
        fields["card_digits"] = payload.card_digits or None

    if payload.amount is not None:
        currency = payload.currency or STORED_CURRENCY
        rates = fetch_rates()
        fields.update(build_amount_snapshot(payload.amount, currency, rates).as_fields())
        fields["details"] = append_note(details, original_currency_note(payload.amount, currency))

    with engine.begin() as conn:
        updated = store.update_transaction(conn, user_id, transaction_id, fields)
    if updated is None:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(updated, preferences.display_currency)


@app.post("/transactions/{transaction_id}/cancel-recurrence", response_model=TransactionResponse)
def cancel_recurrence(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = store.get_transaction(conn, user_id, transaction_id)
        if existing is None:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        try:
            ensure_cancellable(existing)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        updated = store.update_transaction(
            conn, user_id, transaction_id, {"is_cancelled": True}
        )
        preferences = store.load_preferences(conn, user_id)
    return transaction_response(updated, preferences.display_currency)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        if not store.delete_transaction(conn, user_id, transaction_id):
            raise HTTPException(status_code=404, detail="Transaction not found.")
    logger.info("Deleted transaction %s for user %s", transaction_id, user_id)
    return {"status": "deleted"}


@app.post("/transactions/import", response_model=ImportResponse)
async def import_transactions(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportResponse:
    user_id = get_user_id(x_user_id)
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc

    try:
        parse_result = parse_import_csv(decoded, filename=file.filename, today=current_date())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    preferences, history = load_user_state(user_id)
    catalog = discover_categories(history, preferences.custom_categories)
    insert_rows = []
    for row in parse_result.rows:
        known = find_category(catalog, row.tag)
        insert_rows.append(
            {
                "desc": row.desc,
                "amount": row.amount,
                "type": row.type,
                "tag": known.label if known else row.tag,
                "date": row.date,
                "icon": known.icon if known else row.icon,
                "details": row.details,
            }
        )

    with engine.begin() as conn:
        inserted = store.create_transactions(conn, user_id, insert_rows)
    return ImportResponse(inserted_count=inserted, skipped_count=parse_result.skipped)


@app.get("/transactions/export")
def export_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> Response:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    ordered = recent_transactions(
        history, today=current_date(), fallback=preferences.date_fallback
    )
    return Response(
        content=export_transactions_csv(ordered),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="cuentas.csv"'},
    )


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    catalog = discover_categories(history, preferences.custom_categories)
    counts = {}
    for usage in category_usage(history):
        key = normalize_tag(usage.tag)
        counts[key] = counts.get(key, 0) + usage.count
    return [
        CategoryResponse(
            id=category.id,
            label=category.label,
            icon=category.icon,
            count=counts.get(normalize_tag(category.label), 0),
        )
        for category in catalog
    ]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    entry = CustomCategory(label=payload.label, icon=payload.icon, id=category_slug(payload.label))
    try:
        with engine.begin() as conn:
            store.add_custom_category(conn, user_id, entry)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(id=entry.id, label=entry.label, icon=entry.icon)


@app.put("/categories/rename", response_model=CategoryChangeResponse)
def rename_category(
    payload: CategoryRenamePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryChangeResponse:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    try:
        plan = plan_rename(history, payload.old_tag, payload.new_tag, payload.new_icon)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    custom = list(preferences.custom_categories)
    remaining = overlay_without(custom, payload.old_tag)
    overlay_changed = len(remaining) != len(custom)
    if overlay_changed:
        remaining = overlay_without(remaining, plan.tag)
        remaining.append(CustomCategory(label=plan.tag, icon=plan.icon, id=category_slug(plan.tag)))

    with engine.begin() as conn:
        count = store.bulk_retag(conn, user_id, plan.transaction_ids, plan.tag, plan.icon)
        if overlay_changed:
            store.replace_custom_categories(conn, user_id, remaining)
    return CategoryChangeResponse(count=count)


@app.delete("/categories", response_model=CategoryChangeResponse)
def delete_category(
    tag: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryChangeResponse:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    try:
        plan = plan_soft_delete(history, tag)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    custom = list(preferences.custom_categories)
    remaining = overlay_without(custom, tag)
    with engine.begin() as conn:
        count = store.bulk_retag(conn, user_id, plan.transaction_ids, plan.tag, plan.icon)
        if len(remaining) != len(custom):
            store.replace_custom_categories(conn, user_id, remaining)
    return CategoryChangeResponse(count=count)


@app.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    display_currency = resolve_display_currency(currency, preferences)
    reference = current_date()
    summary = dashboard_summary(
        history,
        preferences,
        display_currency=display_currency,
        today=reference,
    )
    originals = {txn.id: txn for txn in history}
    checklist = build_checklist(history, today=reference, fallback=preferences.date_fallback)
    return DashboardResponse(
        month=summary.month,
        display_currency=display_currency,
        days_left=summary.days_left,
        totals=TotalsResponse(
            income=summary.totals.income,
            expense=summary.totals.expense,
            balance=summary.totals.balance,
        ),
        goal_expense=summary.goal_expense,
        monthly_goal=summary.monthly_goal,
        goal_progress=summary.goal_progress.quantize(PERCENT_STEP),
        previous_goal_expense=summary.previous_goal_expense,
        month_over_month_change=summary.month_over_month_change.quantize(PERCENT_STEP),
        top_categories=[share_response(share) for share in summary.top_categories],
        recent=[
            transaction_response(originals[txn.id], display_currency) for txn in summary.recent
        ],
        checklist=[checklist_response(entry, reference) for entry in checklist],
    )


@app.get("/recurring/checklist", response_model=list[ChecklistEntryResponse])
def get_recurring_checklist(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ChecklistEntryResponse]:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    reference = current_date()
    checklist = build_checklist(history, today=reference, fallback=preferences.date_fallback)
    return [checklist_response(entry, reference) for entry in checklist]


@app.get("/reports/stats", response_model=PeriodStatsResponse)
def get_period_stats(
    year: int | None = Query(None),
    month: int | None = Query(None),
    currency: str | None = Query(None),
    include_recurring: bool = Query(False),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PeriodStatsResponse:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    display_currency = resolve_display_currency(currency, preferences)
    reference = current_date()
    policy = GoalPolicy(exclude_recurring=not include_recurring)
    try:
        stats = period_stats(
            history,
            preferences,
            year if year is not None else reference.year,
            month,
            display_currency=display_currency,
            policy=policy,
            today=reference,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return PeriodStatsResponse(
        year=stats.year,
        month=stats.month,
        display_currency=display_currency,
        totals=TotalsResponse(
            income=stats.totals.income,
            expense=stats.totals.expense,
            balance=stats.totals.balance,
        ),
        goal_expense=stats.goal_expense,
        monthly_goal=preferences.monthly_goal,
        goal_progress=stats.goal_progress.quantize(PERCENT_STEP),
        categories=[share_response(share) for share in stats.categories],
        year_trend=stats.year_trend,
        available_years=stats.available_years,
    )


@app.get("/reports/category-breakdown", response_model=list[CategoryShareResponse])
def get_category_breakdown(
    year: int | None = Query(None),
    month: int | None = Query(None),
    top: int | None = Query(None, ge=1),
    goal_only: bool = Query(False),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryShareResponse]:
    user_id = get_user_id(x_user_id)
    preferences, history = load_user_state(user_id)
    display_currency = resolve_display_currency(currency, preferences)
    reference = current_date()
    selected_month = month if month is not None else reference.month
    if not 1 <= selected_month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
    try:
        window = Window.for_month(year if year is not None else reference.year, selected_month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    prepared = prepare_for_view(
        history,
        preferences,
        display_currency=display_currency,
        today=reference,
    )
    scoped = filter_window(prepared, window, today=reference, fallback=preferences.date_fallback)
    shares = category_breakdown(
        scoped, top_n=top, policy=DEFAULT_GOAL_POLICY if goal_only else None
    )
    return [share_response(share) for share in shares]
