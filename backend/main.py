import logging
import os
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import Table, create_engine, delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from backend.currency_conversion import (
    ExchangeRateService,
    FrankfurterRateProvider,
    RateProviderUnavailable,
    normalize_currency,
)
from backend.defaults import ensure_account_defaults
from backend.groups import (
    GroupNotFound,
    create_group,
    get_group,
    list_groups,
    list_members,
    require_member,
)
from backend.recurrence_engine import (
    SUPPORTED_FREQUENCIES,
    NewExpense,
    Recurrence,
    create_expense as create_expense_record,
    delete_recurring_rule,
    process_recurring_expenses,
    reschedule_recurring_rule,
    settle_pending_expenses,
)
from backend.reporting import (
    BreakdownEntry,
    ExpenseLine,
    WalletBalance,
    category_breakdown,
    daily_expense_totals,
    monthly_report,
    monthly_trend,
    summarize_dashboard,
    tag_breakdown,
)
from backend.store import (
    RecordStore,
    categories,
    expense_tags,
    expenses,
    metadata,
    recurring_expenses,
    tags,
    users,
    wallets,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./expense_ledger.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
store = RecordStore(engine)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
rate_service = ExchangeRateService(
    store,
    FrankfurterRateProvider(
        base_url=os.getenv("FX_API_BASE_URL", "https://api.frankfurter.app"),
        timeout=float(os.getenv("FX_API_TIMEOUT", "8")),
    ),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class CredentialsPayload(BaseModel):
    email: str
    password: str
    full_name: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    currency: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    currency: str


class CategoryType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid category type.")
        return normalized


class WalletType:
    values = {"cash", "bank", "credit_card", "digital_wallet"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid wallet type.")
        return normalized


class CategoryPayload(BaseModel):
    name: str
    type: str = "expense"
    icon: str | None = None
    color: str | None = None
    group_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.type = CategoryType.validate(payload.type)
        return payload


class CategoryResponse(BaseModel):
    id: int
    created_by: int
    name: str
    type: str
    icon: str | None = None
    color: str | None = None
    group_id: int | None = None
    created_at: datetime | None = None


class TagPayload(BaseModel):
    name: str
    color: str | None = None
    group_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "TagPayload") -> "TagPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Tag name required.")
        return payload


class TagResponse(BaseModel):
    id: int
    created_by: int
    name: str
    color: str | None = None
    group_id: int | None = None
    created_at: datetime | None = None


class WalletPayload(BaseModel):
    name: str
    type: str
    balance: Decimal = Decimal("0")
    currency: str | None = None
    color: str | None = None
    icon: str | None = None
    group_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "WalletPayload") -> "WalletPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Wallet name required.")
        payload.type = WalletType.validate(payload.type)
        payload.currency = payload.currency.strip() if payload.currency else None
        return payload


class WalletResponse(BaseModel):
    id: int
    created_by: int
    name: str
    type: str
    balance: Decimal
    currency: str
    color: str | None = None
    icon: str | None = None
    group_id: int | None = None
    created_at: datetime | None = None


class RecurrencePayload(BaseModel):
    frequency: str
    interval: int = 1
    end_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "RecurrencePayload") -> "RecurrencePayload":
        payload.frequency = payload.frequency.strip().lower()
        if payload.frequency not in SUPPORTED_FREQUENCIES:
            raise ValueError("Only daily, weekly, monthly, or yearly schedules are supported.")
        if payload.interval < 1:
            raise ValueError("Interval must be a positive integer.")
        return payload


class ExpensePayload(BaseModel):
    amount: Decimal
    description: str = ""
    date: date
    currency: str | None = None
    category_id: int | None = None
    wallet_id: int | None = None
    group_id: int | None = None
    tag_ids: list[int] = []
    recurrence: RecurrencePayload | None = None

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.description = payload.description.strip()
        payload.currency = payload.currency.strip() if payload.currency else None
        if payload.recurrence is not None:
            payload.recurrence = RecurrencePayload.validate_payload(payload.recurrence)
            end_date = payload.recurrence.end_date
            if end_date is not None and end_date < payload.date:
                raise ValueError("End date must be on or after the expense date.")
        return payload


class ExpenseResponse(BaseModel):
    id: int
    created_by: int
    amount: Decimal
    description: str
    date: date
    currency: str
    category_id: int | None = None
    wallet_id: int | None = None
    group_id: int | None = None
    status: str
    recurring_expense_id: int | None = None
    tag_ids: list[int] = []
    created_at: datetime | None = None


class RecurringExpensePayload(BaseModel):
    amount: Decimal
    description: str = ""
    currency: str | None = None
    category_id: int | None = None
    wallet_id: int | None = None
    frequency: str
    interval: int = 1
    end_date: date | None = None

    @classmethod
    def validate_payload(
        cls, payload: "RecurringExpensePayload"
    ) -> "RecurringExpensePayload":
        if payload.amount <= 0:
            raise ValueError("Recurring expense amount must be greater than zero.")
        payload.description = payload.description.strip()
        payload.currency = payload.currency.strip() if payload.currency else None
        payload.frequency = payload.frequency.strip().lower()
        if payload.frequency not in SUPPORTED_FREQUENCIES:
            raise ValueError("Only daily, weekly, monthly, or yearly schedules are supported.")
        if payload.interval < 1:
            raise ValueError("Interval must be a positive integer.")
        return payload


class RecurringExpenseResponse(BaseModel):
    id: int
    created_by: int
    expense_id: int | None = None
    amount: Decimal
    description: str
    currency: str
    category_id: int | None = None
    wallet_id: int | None = None
    group_id: int | None = None
    frequency: str
    interval: int
    start_date: date
    end_date: date | None = None
    last_processed: date | None = None
    created_at: datetime | None = None


class RecurringProcessResponse(BaseModel):
    generated: int
    settled: int


class RateResponse(BaseModel):
    date: date
    source: str
    target: str
    rate: Decimal


class DashboardSummaryResponse(BaseModel):
    currency: str
    total_expenses: Decimal
    total_income: Decimal
    total_balance: Decimal
    net_savings: Decimal


class DailyTotalResponse(BaseModel):
    date: date
    label: str
    amount: Decimal


class BreakdownResponse(BaseModel):
    key: str
    name: str
    amount: Decimal


class MonthlyReportResponse(BaseModel):
    month: str
    currency: str
    income: Decimal
    expense: Decimal
    savings: Decimal
    savings_rate: Decimal
    categories: list[BreakdownResponse]
    daily: list[DailyTotalResponse]


class TrendPointResponse(BaseModel):
    month: str
    label: str
    income: Decimal
    expense: Decimal


class GroupPayload(BaseModel):
    name: str
    description: str | None = None


class GroupResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    created_by: int
    created_at: datetime | None = None


class GroupMemberResponse(BaseModel):
    id: int
    group_id: int
    user_id: int
    role: str
    permissions: dict[str, bool]
    joined_at: datetime | None = None
    email: str | None = None
    full_name: str | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
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


def resolve_display_currency(conn, user_id: int) -> str:
    currency = conn.execute(
        select(users.c.currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if currency:
        try:
            return normalize_currency(currency)
        except ValueError:
            pass
    return SYSTEM_DEFAULT_CURRENCY


def resolve_currency(value: str | None, conn, user_id: int) -> str:
    if value:
        return normalize_currency(value)
    return resolve_display_currency(conn, user_id)


def ensure_owned(conn, table: Table, record_id: int | None, user_id: int, label: str) -> None:
    if record_id is None:
        return
    match = conn.execute(
        select(table.c.id).where(table.c.id == record_id, table.c.created_by == user_id)
    ).first()
    if not match:
        raise HTTPException(status_code=404, detail=f"{label} not found.")


def ensure_group_member(group_id: int | None, user_id: int) -> None:
    try:
        require_member(store, group_id, user_id)
    except GroupNotFound as exc:
        raise HTTPException(status_code=404, detail="Group not found.") from exc


def parse_month_value(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError as exc:
        raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def fetch_tag_ids(conn, expense_ids: list[int]) -> dict[int, list[int]]:
    if not expense_ids:
        return {}
    rows = conn.execute(
        select(expense_tags.c.expense_id, expense_tags.c.tag_id)
        .where(expense_tags.c.expense_id.in_(expense_ids))
        .order_by(expense_tags.c.id.asc())
    ).mappings().all()
    tag_ids: dict[int, list[int]] = {}
    for row in rows:
        tag_ids.setdefault(row["expense_id"], []).append(row["tag_id"])
    return tag_ids


def fetch_expense_lines(conn, user_id: int) -> list[ExpenseLine]:
    rows = conn.execute(
        select(
            expenses.c.id,
            expenses.c.amount,
            expenses.c.date,
            expenses.c.currency,
            categories.c.id.label("category_id"),
            categories.c.name.label("category_name"),
            categories.c.type.label("kind"),
        )
        .select_from(
            expenses.outerjoin(categories, expenses.c.category_id == categories.c.id)
        )
        .where(expenses.c.created_by == user_id)
    ).mappings().all()

    tags_by_expense: dict[int, list[tuple[int, str]]] = {}
    if rows:
        tag_rows = conn.execute(
            select(expense_tags.c.expense_id, tags.c.id, tags.c.name)
            .select_from(expense_tags.join(tags, expense_tags.c.tag_id == tags.c.id))
            .where(expense_tags.c.expense_id.in_([row["id"] for row in rows]))
            .order_by(expense_tags.c.id.asc())
        ).mappings().all()
        for tag_row in tag_rows:
            tags_by_expense.setdefault(tag_row["expense_id"], []).append(
                (tag_row["id"], tag_row["name"])
            )

    return [
        ExpenseLine(
            amount=row["amount"],
            date=row["date"],
            currency=row["currency"],
            kind=row["kind"],
            category_id=row["category_id"],
            category_name=row["category_name"],
            tags=tuple(tags_by_expense.get(row["id"], [])),
        )
        for row in rows
    ]


def to_breakdown_response(entries: list[BreakdownEntry]) -> list[BreakdownResponse]:
    return [
        BreakdownResponse(key=entry.key, name=entry.name, amount=entry.amount)
        for entry in entries
    ]


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(
            email=email,
            hashed_password=hashed_password,
            full_name=payload.full_name,
            currency=SYSTEM_DEFAULT_CURRENCY,
        )
        .returning(users.c.id, users.c.email, users.c.full_name, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    ensure_account_defaults(store, row["id"])
    return UserResponse(**row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return UserResponse(**row)


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="User not found.")
        currency = resolve_display_currency(conn, user_id)
    return UserSettingsResponse(id=row["id"], email=row["email"], currency=currency)


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.currency is None:
        raise HTTPException(status_code=400, detail="Currency required.")
    try:
        normalized_currency = normalize_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        row = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(currency=normalized_currency)
            .returning(users.c.id, users.c.email, users.c.currency)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(**row)


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    ensure_account_defaults(store, user_id)
    rows = store.select(categories, {"created_by": user_id}, order_by=["name", "id"])
    return [CategoryResponse(**row) for row in rows]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_group_member(payload.group_id, user_id)
    try:
        [row] = store.insert(categories, [{**payload.model_dump(), "created_by": user_id}])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(**row)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        with engine.begin() as conn:
            ensure_group_member(payload.group_id, user_id)
            row = conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.created_by == user_id)
                .values(**payload.model_dump())
                .returning(*categories.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return CategoryResponse(**row)


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_owned(conn, categories, category_id, user_id, "Category")
        in_use = conn.execute(
            select(expenses.c.id).where(expenses.c.category_id == category_id).limit(1)
        ).first()
        if in_use:
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(delete(categories).where(categories.c.id == category_id))
    return {"status": "deleted"}


@app.get("/tags", response_model=list[TagResponse])
def list_tags(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[TagResponse]:
    user_id = get_user_id(x_user_id)
    ensure_account_defaults(store, user_id)
    rows = store.select(tags, {"created_by": user_id}, order_by=["name", "id"])
    return [TagResponse(**row) for row in rows]


@app.post("/tags", response_model=TagResponse)
def create_tag(
    payload: TagPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TagResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TagPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_group_member(payload.group_id, user_id)
    try:
        [row] = store.insert(tags, [{**payload.model_dump(), "created_by": user_id}])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Tag already exists.") from exc
    return TagResponse(**row)


@app.put("/tags/{tag_id}", response_model=TagResponse)
def update_tag(
    tag_id: int,
    payload: TagPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TagResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TagPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        with engine.begin() as conn:
            ensure_group_member(payload.group_id, user_id)
            row = conn.execute(
                update(tags)
                .where(tags.c.id == tag_id, tags.c.created_by == user_id)
                .values(**payload.model_dump())
                .returning(*tags.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Tag already exists.") from exc
    if not row:
        raise HTTPException(status_code=404, detail="Tag not found.")
    return TagResponse(**row)


@app.delete("/tags/{tag_id}")
def delete_tag(tag_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_owned(conn, tags, tag_id, user_id, "Tag")
        conn.execute(delete(expense_tags).where(expense_tags.c.tag_id == tag_id))
        conn.execute(delete(tags).where(tags.c.id == tag_id))
    return {"status": "deleted"}


@app.get("/wallets", response_model=list[WalletResponse])
def list_wallets(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[WalletResponse]:
    user_id = get_user_id(x_user_id)
    rows = store.select(wallets, {"created_by": user_id}, order_by=["name", "id"])
    return [WalletResponse(**row) for row in rows]


@app.post("/wallets", response_model=WalletResponse)
def create_wallet(
    payload: WalletPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> WalletResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = WalletPayload.validate_payload(payload)
        with engine.begin() as conn:
            ensure_group_member(payload.group_id, user_id)
            payload.currency = resolve_currency(payload.currency, conn, user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    [row] = store.insert(wallets, [{**payload.model_dump(), "created_by": user_id}])
    return WalletResponse(**row)


@app.put("/wallets/{wallet_id}", response_model=WalletResponse)
def update_wallet(
    wallet_id: int,
    payload: WalletPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> WalletResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = WalletPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ensure_group_member(payload.group_id, user_id)
    with engine.begin() as conn:
        try:
            payload.currency = resolve_currency(payload.currency, conn, user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(wallets)
            .where(wallets.c.id == wallet_id, wallets.c.created_by == user_id)
            .values(**payload.model_dump())
            .returning(*wallets.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Wallet not found.")
    return WalletResponse(**row)


@app.delete("/wallets/{wallet_id}")
def delete_wallet(wallet_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(wallets).where(wallets.c.id == wallet_id, wallets.c.created_by == user_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Wallet not found.")
    return {"status": "deleted"}


@app.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(
    status: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExpenseResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [expenses.c.created_by == user_id]
    if status:
        conditions.append(expenses.c.status == status.strip().lower())
    with engine.begin() as conn:
        rows = conn.execute(
            select(expenses)
            .where(*conditions)
            .order_by(expenses.c.date.desc(), expenses.c.id.desc())
        ).mappings().all()
        tag_ids = fetch_tag_ids(conn, [row["id"] for row in rows])
    return [ExpenseResponse(**row, tag_ids=tag_ids.get(row["id"], [])) for row in rows]


@app.post("/expenses", response_model=ExpenseResponse)
def create_expense(
    payload: ExpensePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_owned(conn, categories, payload.category_id, user_id, "Category")
        ensure_group_member(payload.group_id, user_id)
        ensure_owned(conn, wallets, payload.wallet_id, user_id, "Wallet")
        for tag_id in payload.tag_ids:
            ensure_owned(conn, tags, tag_id, user_id, "Tag")
        try:
            currency = resolve_currency(payload.currency, conn, user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    recurrence = None
    if payload.recurrence is not None:
        recurrence = Recurrence(
            frequency=payload.recurrence.frequency,
            interval=payload.recurrence.interval,
            end_date=payload.recurrence.end_date,
        )
    new_expense = NewExpense(
        amount=payload.amount,
        date=payload.date,
        currency=currency,
        description=payload.description,
        category_id=payload.category_id,
        wallet_id=payload.wallet_id,
        group_id=payload.group_id,
        tag_ids=tuple(payload.tag_ids),
        recurrence=recurrence,
    )
    try:
        row = create_expense_record(store, user_id, new_expense)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseResponse(**row, tag_ids=list(dict.fromkeys(payload.tag_ids)))


@app.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpensePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    tag_ids = list(dict.fromkeys(payload.tag_ids))
    with engine.begin() as conn:
        ensure_owned(conn, categories, payload.category_id, user_id, "Category")
        ensure_group_member(payload.group_id, user_id)
        ensure_owned(conn, wallets, payload.wallet_id, user_id, "Wallet")
        for tag_id in tag_ids:
            ensure_owned(conn, tags, tag_id, user_id, "Tag")
        try:
            currency = resolve_currency(payload.currency, conn, user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(expenses)
            .where(expenses.c.id == expense_id, expenses.c.created_by == user_id)
            .values(
                amount=payload.amount,
                description=payload.description,
                date=payload.date,
                currency=currency,
                category_id=payload.category_id,
                wallet_id=payload.wallet_id,
                group_id=payload.group_id,
            )
            .returning(*expenses.c)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Expense not found.")
        conn.execute(delete(expense_tags).where(expense_tags.c.expense_id == expense_id))
        if tag_ids:
            conn.execute(
                insert(expense_tags),
                [{"expense_id": expense_id, "tag_id": tag_id} for tag_id in tag_ids],
            )
    return ExpenseResponse(**row, tag_ids=tag_ids)


@app.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_owned(conn, expenses, expense_id, user_id, "Expense")
        conn.execute(delete(expense_tags).where(expense_tags.c.expense_id == expense_id))
        conn.execute(delete(expenses).where(expenses.c.id == expense_id))
    return {"status": "deleted"}


@app.get("/recurring-expenses", response_model=list[RecurringExpenseResponse])
def list_recurring_expenses(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringExpenseResponse]:
    user_id = get_user_id(x_user_id)
    rows = store.select(
        recurring_expenses, {"created_by": user_id}, order_by=["-created_at", "-id"]
    )
    return [RecurringExpenseResponse(**row) for row in rows]


@app.put("/recurring-expenses/{rule_id}", response_model=RecurringExpenseResponse)
def update_recurring_expense(
    rule_id: int,
    payload: RecurringExpensePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RecurringExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_owned(conn, recurring_expenses, rule_id, user_id, "Recurring expense")
        ensure_owned(conn, categories, payload.category_id, user_id, "Category")
        ensure_owned(conn, wallets, payload.wallet_id, user_id, "Wallet")
        try:
            currency = resolve_currency(payload.currency, conn, user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        row = reschedule_recurring_rule(
            store, rule_id, {**payload.model_dump(), "currency": currency}
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not row:
        raise HTTPException(status_code=404, detail="Recurring expense not found.")
    return RecurringExpenseResponse(**row)


@app.delete("/recurring-expenses/{rule_id}")
def delete_recurring_expense(
    rule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_owned(conn, recurring_expenses, rule_id, user_id, "Recurring expense")
    if not delete_recurring_rule(store, rule_id):
        raise HTTPException(status_code=404, detail="Recurring expense not found.")
    return {"status": "deleted"}


@app.post("/recurring-expenses/process", response_model=RecurringProcessResponse)
def process_recurring(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringProcessResponse:
    user_id = get_user_id(x_user_id)
    today = date.today()
    generated = process_recurring_expenses(store, user_id, today)
    settled = settle_pending_expenses(store, user_id, today)
    log.info(
        "Recurring sweep for user %s: %d generated, %d settled", user_id, generated, settled
    )
    return RecurringProcessResponse(generated=generated, settled=settled)


@app.get("/currency/rate", response_model=RateResponse)
def currency_rate(
    on_date: date = Query(..., alias="date"),
    source: str = Query(..., alias="from"),
    target: str = Query(..., alias="to"),
) -> RateResponse:
    try:
        rate = rate_service.get_rate(on_date, source, target)
    except RateProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RateResponse(
        date=on_date,
        source=normalize_currency(source),
        target=normalize_currency(target),
        rate=rate,
    )


@app.get("/currency/latest", response_model=RateResponse)
def currency_latest(
    source: str = Query(..., alias="from"),
    target: str = Query(..., alias="to"),
) -> RateResponse:
    return currency_rate(on_date=date.today(), source=source, target=target)


@app.get("/dashboard/summary", response_model=DashboardSummaryResponse)
def dashboard_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        display_currency = resolve_display_currency(conn, user_id)
        expense_lines = fetch_expense_lines(conn, user_id)
        wallet_rows = conn.execute(
            select(wallets.c.balance, wallets.c.currency).where(wallets.c.created_by == user_id)
        ).mappings().all()
    totals = summarize_dashboard(
        expense_lines,
        [WalletBalance(balance=row["balance"], currency=row["currency"]) for row in wallet_rows],
        display_currency,
        rate_service,
    )
    return DashboardSummaryResponse(
        currency=totals.currency,
        total_expenses=totals.total_expenses,
        total_income=totals.total_income,
        total_balance=totals.total_balance,
        net_savings=totals.net_savings,
    )


@app.get("/dashboard/daily", response_model=list[DailyTotalResponse])
def dashboard_daily(
    days: int = Query(7, ge=1, le=31),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[DailyTotalResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        display_currency = resolve_display_currency(conn, user_id)
        expense_lines = fetch_expense_lines(conn, user_id)
    return [
        DailyTotalResponse(date=entry.date, label=entry.label, amount=entry.amount)
        for entry in daily_expense_totals(
            expense_lines, display_currency, rate_service, days=days
        )
    ]


@app.get("/reports/monthly", response_model=MonthlyReportResponse)
def report_monthly(
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthlyReportResponse:
    user_id = get_user_id(x_user_id)
    try:
        month_value = parse_month_value(month) if month else date.today()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        display_currency = resolve_display_currency(conn, user_id)
        expense_lines = fetch_expense_lines(conn, user_id)
    report = monthly_report(expense_lines, month_value, display_currency, rate_service)
    return MonthlyReportResponse(
        month=report.month.strftime("%Y-%m"),
        currency=report.currency,
        income=report.income,
        expense=report.expense,
        savings=report.savings,
        savings_rate=report.savings_rate,
        categories=to_breakdown_response(report.categories),
        daily=[
            DailyTotalResponse(date=entry.date, label=entry.label, amount=entry.amount)
            for entry in report.daily
        ],
    )


@app.get("/reports/categories", response_model=list[BreakdownResponse])
def report_categories(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BreakdownResponse]:
    user_id = get_user_id(x_user_id)
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        display_currency = resolve_display_currency(conn, user_id)
        expense_lines = fetch_expense_lines(conn, user_id)
    return to_breakdown_response(
        category_breakdown(expense_lines, display_currency, rate_service, start_date, end_date)
    )


@app.get("/reports/tags", response_model=list[BreakdownResponse])
def report_tags(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BreakdownResponse]:
    user_id = get_user_id(x_user_id)
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        display_currency = resolve_display_currency(conn, user_id)
        expense_lines = fetch_expense_lines(conn, user_id)
    return to_breakdown_response(
        tag_breakdown(expense_lines, display_currency, rate_service, start_date, end_date)
    )


@app.get("/reports/trend", response_model=list[TrendPointResponse])
def report_trend(
    months: int = Query(6, ge=1, le=24),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TrendPointResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        display_currency = resolve_display_currency(conn, user_id)
        expense_lines = fetch_expense_lines(conn, user_id)
    return [
        TrendPointResponse(
            month=point.month.strftime("%Y-%m"),
            label=point.label,
            income=point.income,
            expense=point.expense,
        )
        for point in monthly_trend(expense_lines, display_currency, rate_service, months=months)
    ]


@app.get("/groups", response_model=list[GroupResponse])
def list_user_groups(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[GroupResponse]:
    user_id = get_user_id(x_user_id)
    return [GroupResponse(**row) for row in list_groups(store, user_id)]


@app.post("/groups", response_model=GroupResponse)
def create_user_group(
    payload: GroupPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GroupResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = create_group(store, user_id, payload.name, payload.description)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return GroupResponse(**row)


@app.get("/groups/{group_id}", response_model=GroupResponse)
def get_user_group(
    group_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GroupResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = get_group(store, group_id, user_id)
    except GroupNotFound as exc:
        raise HTTPException(status_code=404, detail="Group not found.") from exc
    return GroupResponse(**row)


@app.get("/groups/{group_id}/members", response_model=list[GroupMemberResponse])
def list_group_members(
    group_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[GroupMemberResponse]:
    user_id = get_user_id(x_user_id)
    try:
        rows = list_members(store, group_id, user_id)
    except GroupNotFound as exc:
        raise HTTPException(status_code=404, detail="Group not found.") from exc
    return [GroupMemberResponse(**row) for row in rows]
