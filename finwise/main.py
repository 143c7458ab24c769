import logging
import os
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import FastAPI, HTTPException, Header, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import create_engine, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from finwise.budget_engine import Transaction as BudgetTransaction
from finwise.budget_engine import evaluate_subcategory_budgets
from finwise.cache import TTLCache
from finwise.categories import (
    CategoryConfig,
    CategoryConfigMissing,
    CategoryNotFound,
    CategoryStore,
    FixedCategory,
    VariableCategory,
)
from finwise.identity import (
    DEFAULT_TOKEN_TTL_SECONDS,
    EmailAlreadyRegistered,
    Identity,
    IdentityProvider,
    InvalidCredentials,
    InvalidToken,
)
from finwise.scheduler import process_fixed_expenses
from finwise.schema import (
    USER_OWNED_TABLES,
    goals,
    metadata,
    reminders,
    transactions,
    users,
)
from finwise.stats_engine import StatTransaction, monthly_stats, summarize

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:19006")
DEV_ORIGINS = [
    "http://localhost:19006",
    "http://localhost:8081",
    "capacitor://localhost",
    "ionic://localhost",
    "http://10.0.2.2:3002",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({frontend_origin, *DEV_ORIGINS}),
    allow_origin_regex=r"^(https?://([a-z0-9-]+\.)*finwiseapp\.com|http://192\.168\.\d+\.\d+(:\d+)?)$",
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./finwise.db")
engine_kwargs: dict = {}
if database_url.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(database_url, **engine_kwargs)

CATEGORY_STORE = CategoryStore(
    TTLCache(ttl_seconds=float(os.getenv("CATEGORY_CACHE_TTL_SECONDS", "30")))
)
IDENTITY_PROVIDER = IdentityProvider(
    token_ttl_seconds=int(os.getenv("TOKEN_TTL_SECONDS", str(DEFAULT_TOKEN_TTL_SECONDS)))
)

MAX_BALANCE = Decimal("1000000")
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s-]{10,}$")
BIRTH_DATE_PATTERN = re.compile(r"^\d{2}/\d{2}/\d{4}$")
REMINDER_PRIORITIES = {"low", "medium", "high"}
GOALS_CATEGORY = "Goals"


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


def to_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def coerce_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class ReminderPriority:
    @classmethod
    def validate(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in REMINDER_PRIORITIES:
            raise ValueError("Priority must be low, medium or high.")
        return normalized


class RegisterPayload(BaseModel):
    email: str
    password: str
    name: str
    phone: str | None = None

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.email = payload.email.strip().lower()
        payload.name = payload.name.strip()
        if not payload.email or not payload.name or not payload.password.strip():
            raise ValueError("Email, name and password are required.")
        if not EMAIL_PATTERN.match(payload.email):
            raise ValueError("Invalid email format. Use user@domain.com.")
        if len(payload.password) < 6:
            raise ValueError("Password must have at least 6 characters.")
        payload.phone = strip_or_none(payload.phone)
        if payload.phone and not PHONE_PATTERN.match(payload.phone):
            raise ValueError("Invalid phone number. Use the format +5511999999999.")
        return payload


class LoginPayload(BaseModel):
    email: str
    password: str


class RefreshPayload(BaseModel):
    refresh_token: str


class AuthUserResponse(BaseModel):
    uid: str
    email: str
    name: str | None = None
    phone: str | None = None


class AuthResponse(BaseModel):
    user: AuthUserResponse
    token: str
    refresh_token: str


class TokenResponse(BaseModel):
    token: str
    refresh_token: str


class ValidateTokenResponse(BaseModel):
    user: AuthUserResponse
    valid: bool


class MessageResponse(BaseModel):
    message: str


class ProfileResponse(BaseModel):
    uid: str
    email: str
    name: str | None = None
    phone: str | None = None
    created_at: datetime | None = None


class ProfileUpdatePayload(BaseModel):
    name: str | None = None
    phone: str | None = None


class CompleteProfilePayload(BaseModel):
    full_name: str
    nickname: str | None = None
    birth_date: str | None = None
    gender: str | None = None
    postal_code: str | None = None
    city: str | None = None
    state: str | None = None
    financial_goal: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CompleteProfilePayload") -> "CompleteProfilePayload":
        payload.full_name = payload.full_name.strip()
        if not payload.full_name:
            raise ValueError("Full name is required.")
        payload.birth_date = strip_or_none(payload.birth_date)
        if payload.birth_date and not BIRTH_DATE_PATTERN.match(payload.birth_date):
            raise ValueError("Invalid date format. Use DD/MM/YYYY.")
        payload.postal_code = strip_or_none(payload.postal_code)
        if payload.postal_code:
            digits = re.sub(r"\D", "", payload.postal_code)
            if len(digits) != 8:
                raise ValueError("Invalid postal code. It must have 8 digits.")
            payload.postal_code = digits
        return payload

    def parsed_birth_date(self) -> date | None:
        if not self.birth_date:
            return None
        try:
            return datetime.strptime(self.birth_date, "%d/%m/%Y").date()
        except ValueError as exc:
            raise ValueError("Invalid date format. Use DD/MM/YYYY.") from exc


class CompleteProfileResponse(BaseModel):
    full_name: str
    nickname: str
    birth_date: str
    email: str
    phone: str
    gender: str
    postal_code: str
    city: str
    state: str
    financial_goal: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BalancePayload(BaseModel):
    balance: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "BalancePayload") -> "BalancePayload":
        if payload.balance is None:
            raise ValueError("Balance is required.")
        if payload.balance < 0:
            raise ValueError("Balance cannot be negative.")
        if payload.balance > MAX_BALANCE:
            raise ValueError("Maximum allowed balance is 1,000,000.00.")
        return payload


class BalanceResponse(BaseModel):
    balance: Decimal


class CategoryConfigPayload(BaseModel):
    variable: list[VariableCategory] = Field(default_factory=list)
    fixed: list[FixedCategory] = Field(default_factory=list)
    salary: Decimal | None = None
    pay_day: int | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryConfigPayload") -> "CategoryConfigPayload":
        if payload.salary is None or payload.salary <= 0:
            raise ValueError("Salary must be greater than zero.")
        if payload.pay_day is None or not 1 <= payload.pay_day <= 31:
            raise ValueError("Pay day must be between 1 and 31.")
        for category in [*payload.variable, *payload.fixed]:
            category.name = category.name.strip()
            if not category.name:
                raise ValueError("Category name required.")
        return payload


class CategoryConfigResponse(BaseModel):
    data: CategoryConfig
    cached: bool


class SalaryCheckResponse(BaseModel):
    should_receive: bool
    salary: Decimal | None = None
    pay_day: int | None = None
    message: str | None = None


class SubcategoryUpdatePayload(BaseModel):
    category_id: str
    subcategory_name: str
    updates: dict[str, Any]


class BudgetStatusEntry(BaseModel):
    category_id: str
    category: str
    subcategory: str
    limit: Decimal
    current_value: Decimal
    remaining: Decimal
    status: str


class BudgetStatusResponse(BaseModel):
    start_date: date
    end_date: date
    budgets: list[BudgetStatusEntry]


class FixedExpenseRunResponse(BaseModel):
    processed: int
    message: str


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    category: str
    subcategory: str | None = None
    date: datetime
    paid: bool = False
    fixed: bool = False
    reminder: bool = False
    ignore: bool = False
    note: str | None = None
    source: str | None = None
    wallet: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        payload.subcategory = strip_or_none(payload.subcategory)
        payload.note = payload.note.strip() if payload.note else ""
        payload.source = strip_or_none(payload.source) or "Other"
        payload.wallet = strip_or_none(payload.wallet) or "Wallet"
        payload.date = to_naive(payload.date)
        return payload


class TransactionUpdatePayload(BaseModel):
    amount: Decimal | None = None
    type: str | None = None
    note: str | None = None
    category: str | None = None
    subcategory: str | None = None
    date: datetime | None = None

    def changes(self) -> dict:
        values = self.model_dump(exclude_unset=True, exclude_none=True)
        if not values:
            raise ValueError("No valid fields provided for update.")
        if "type" in values:
            values["type"] = TransactionType.validate(values["type"])
        if "amount" in values and values["amount"] <= 0:
            raise ValueError("Amount must be greater than zero.")
        if "category" in values:
            values["category"] = values["category"].strip()
            if not values["category"]:
                raise ValueError("Category required.")
        if "date" in values:
            values["date"] = to_naive(values["date"])
        return values


class TransactionSearchPayload(BaseModel):
    query: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    type: str | None = None
    category: str | None = None


class TransactionResponse(BaseModel):
    id: int
    user_id: str
    type: str
    amount: Decimal
    category: str
    subcategory: str | None = None
    date: datetime
    paid: bool
    fixed: bool
    reminder: bool
    ignore: bool
    note: str
    source: str
    wallet: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionBalanceResponse(BaseModel):
    balance: Decimal
    total_income: Decimal
    total_expense: Decimal
    transaction_count: int


class ReminderPayload(BaseModel):
    title: str
    due_date: datetime
    description: str | None = None
    priority: str | None = None
    category: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ReminderPayload", now: datetime) -> "ReminderPayload":
        payload.title = payload.title.strip()
        if not payload.title:
            raise ValueError("Title and due date are required.")
        payload.due_date = to_naive(payload.due_date)
        if payload.due_date < now:
            raise ValueError("Due date must be in the future.")
        payload.priority = ReminderPriority.validate(payload.priority)
        payload.description = strip_or_none(payload.description)
        payload.category = strip_or_none(payload.category)
        return payload


class ReminderUpdatePayload(BaseModel):
    title: str | None = None
    due_date: datetime | None = None
    description: str | None = None
    priority: str | None = None
    category: str | None = None
    is_completed: bool | None = None

    def changes(self) -> dict:
        values = self.model_dump(exclude_unset=True, exclude_none=True)
        if not values:
            raise ValueError("No valid fields provided for update.")
        if "title" in values:
            values["title"] = values["title"].strip()
            if not values["title"]:
                raise ValueError("Title cannot be empty.")
        if "priority" in values:
            values["priority"] = ReminderPriority.validate(values["priority"])
        if "due_date" in values:
            values["due_date"] = to_naive(values["due_date"])
        return values


class ReminderResponse(BaseModel):
    id: int
    user_id: str
    title: str
    description: str | None = None
    due_date: datetime
    priority: str | None = None
    category: str | None = None
    is_completed: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GoalPayload(BaseModel):
    name: str
    target_amount: Decimal

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Goal name required.")
        if payload.target_amount <= 0:
            raise ValueError("Target amount must be greater than zero.")
        return payload


class GoalResponse(BaseModel):
    id: int
    user_id: str
    name: str
    target_amount: Decimal
    current_amount: Decimal
    progress: Decimal
    created_at: datetime | None = None


class GoalDepositPayload(BaseModel):
    amount: Decimal


class GoalDepositResponse(BaseModel):
    goal_id: int
    amount: Decimal
    current_amount: Decimal
    previous_balance: Decimal
    balance: Decimal
    progress: Decimal
    transaction_id: int


class CategorySummaryResponse(BaseModel):
    total: Decimal
    count: int
    percentage: Decimal


class LargestTransactionResponse(BaseModel):
    amount: Decimal
    description: str
    category: str


class SummaryResponse(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    balance: Decimal
    categories: dict[str, CategorySummaryResponse]
    most_frequent_category: str | None = None
    largest_transaction: LargestTransactionResponse | None = None


class MonthlyStatResponse(BaseModel):
    month: str
    income: Decimal
    expense: Decimal
    balance: Decimal


class MonthlyStatsResponse(BaseModel):
    months: list[MonthlyStatResponse]
    average_income: Decimal
    average_expense: Decimal
    trend: str


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Token not provided.")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Token not provided.")
    return token


def get_current_identity(authorization: str | None) -> Identity:
    token = bearer_token(authorization)
    try:
        with engine.begin() as conn:
            return IDENTITY_PROVIDER.verify_token(conn, token)
    except InvalidToken as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired token.") from exc


def get_current_user_id(authorization: str | None) -> str:
    return get_current_identity(authorization).uid


def ensure_user_record(conn, identity: Identity) -> None:
    existing = conn.execute(select(users.c.id).where(users.c.id == identity.uid)).first()
    if existing:
        return
    now = datetime.now()
    conn.execute(
        insert(users).values(
            id=identity.uid,
            email=identity.email,
            name=identity.display_name or "New User",
            phone=identity.phone,
            balance=Decimal("0"),
            created_at=now,
            updated_at=now,
        )
    )


def get_owned_row(conn, table, record_id: int, user_id: str, label: str):
    row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail=f"{label} not found.")
    if row["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied.")
    return row


def transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        amount=row["amount"],
        category=row["category"],
        subcategory=row["subcategory"],
        date=row["date"],
        paid=row["paid"],
        fixed=row["fixed"],
        reminder=row["reminder"],
        ignore=row["ignore"],
        note=row["note"] or "",
        source=row["source"] or "",
        wallet=row["wallet"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def reminder_response(row) -> ReminderResponse:
    return ReminderResponse(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        due_date=row["due_date"],
        priority=row["priority"],
        category=row["category"],
        is_completed=row["is_completed"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def goal_progress(current_amount: Decimal, target_amount: Decimal) -> Decimal:
    target = coerce_decimal(target_amount)
    if target <= 0:
        return Decimal("0")
    return coerce_decimal(current_amount) / target * Decimal("100")


def goal_response(row) -> GoalResponse:
    return GoalResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        target_amount=row["target_amount"],
        current_amount=row["current_amount"],
        progress=goal_progress(row["current_amount"], row["target_amount"]),
        created_at=row["created_at"],
    )


def fetch_stat_transactions(user_id: str) -> list[StatTransaction]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(
                transactions.c.amount,
                transactions.c.type,
                transactions.c.category,
                transactions.c.date,
                transactions.c.note,
            ).where(transactions.c.user_id == user_id)
        ).mappings().all()
    return [
        StatTransaction(
            amount=coerce_decimal(row["amount"]),
            type=row["type"],
            category=row["category"],
            date=row["date"],
            note=row["note"],
        )
        for row in rows
    ]


def fetch_totals_by_type(user_id: str) -> dict[str, Decimal]:
    total_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("total")
    stmt = (
        select(transactions.c.type, total_expr)
        .where(transactions.c.user_id == user_id)
        .group_by(transactions.c.type)
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return {row["type"]: coerce_decimal(row["total"]) for row in rows}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterPayload) -> AuthResponse:
    try:
        payload = RegisterPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    now = datetime.now()
    try:
        with engine.begin() as conn:
            identity = IDENTITY_PROVIDER.create_user(
                conn, payload.email, payload.password, payload.name, payload.phone
            )
            conn.execute(
                insert(users).values(
                    id=identity.uid,
                    email=identity.email,
                    name=payload.name,
                    phone=payload.phone,
                    balance=Decimal("0"),
                    created_at=now,
                    updated_at=now,
                )
            )
            token = IDENTITY_PROVIDER.issue_token(conn, identity.uid, now=now)
    except EmailAlreadyRegistered as exc:
        raise HTTPException(status_code=409, detail="Email already in use.") from exc

    return AuthResponse(
        user=AuthUserResponse(
            uid=identity.uid, email=identity.email, name=payload.name, phone=payload.phone
        ),
        token=token,
        refresh_token=token,
    )


@app.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginPayload) -> AuthResponse:
    if not payload.email.strip() or not payload.password.strip():
        raise HTTPException(status_code=400, detail="Email and password are required.")
    try:
        with engine.begin() as conn:
            identity = IDENTITY_PROVIDER.authenticate(conn, payload.email, payload.password)
            row = conn.execute(
                select(users.c.name, users.c.phone).where(users.c.id == identity.uid)
            ).mappings().first()
            if not row:
                raise HTTPException(status_code=404, detail="User not found.")
            token = IDENTITY_PROVIDER.issue_token(conn, identity.uid)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail="Invalid credentials.") from exc

    return AuthResponse(
        user=AuthUserResponse(
            uid=identity.uid, email=identity.email, name=row["name"], phone=row["phone"]
        ),
        token=token,
        refresh_token=token,
    )


@app.post("/auth/logout", response_model=MessageResponse)
def logout(authorization: str | None = Header(None)) -> MessageResponse:
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            with engine.begin() as conn:
                IDENTITY_PROVIDER.revoke_token(conn, token)
    return MessageResponse(message="Logged out successfully.")


@app.post("/auth/refresh", response_model=TokenResponse)
def refresh_token(payload: RefreshPayload) -> TokenResponse:
    if not payload.refresh_token.strip():
        raise HTTPException(status_code=400, detail="Refresh token is required.")
    try:
        with engine.begin() as conn:
            identity = IDENTITY_PROVIDER.verify_token(conn, payload.refresh_token)
            IDENTITY_PROVIDER.revoke_token(conn, payload.refresh_token)
            token = IDENTITY_PROVIDER.issue_token(conn, identity.uid)
    except InvalidToken as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token.") from exc
    return TokenResponse(token=token, refresh_token=token)


@app.post("/auth/validate-token", response_model=ValidateTokenResponse)
def validate_token(authorization: str | None = Header(None)) -> ValidateTokenResponse:
    identity = get_current_identity(authorization)
    return ValidateTokenResponse(
        user=AuthUserResponse(
            uid=identity.uid,
            email=identity.email,
            name=identity.display_name,
            phone=identity.phone,
        ),
        valid=True,
    )


@app.get("/user/profile", response_model=ProfileResponse)
def get_profile(authorization: str | None = Header(None)) -> ProfileResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return ProfileResponse(
        uid=row["id"],
        email=row["email"],
        name=row["name"],
        phone=row["phone"],
        created_at=row["created_at"],
    )


@app.patch("/user/profile", response_model=MessageResponse)
def update_profile(
    payload: ProfileUpdatePayload, authorization: str | None = Header(None)
) -> MessageResponse:
    user_id = get_current_user_id(authorization)
    values: dict = {"updated_at": datetime.now()}
    if strip_or_none(payload.name):
        values["name"] = payload.name.strip()
    if strip_or_none(payload.phone):
        values["phone"] = payload.phone.strip()
    with engine.begin() as conn:
        result = conn.execute(update(users).where(users.c.id == user_id).values(**values))
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="User not found.")
    return MessageResponse(message="Profile updated successfully.")


@app.put("/user/complete-profile", response_model=MessageResponse)
def update_complete_profile(
    payload: CompleteProfilePayload, authorization: str | None = Header(None)
) -> MessageResponse:
    identity = get_current_identity(authorization)
    try:
        payload = CompleteProfilePayload.validate_payload(payload)
        birth_date = payload.parsed_birth_date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_user_record(conn, identity)
        conn.execute(
            update(users)
            .where(users.c.id == identity.uid)
            .values(
                name=payload.full_name,
                nickname=strip_or_none(payload.nickname),
                birth_date=birth_date,
                gender=strip_or_none(payload.gender),
                postal_code=payload.postal_code,
                city=strip_or_none(payload.city),
                state=strip_or_none(payload.state),
                financial_goal=strip_or_none(payload.financial_goal),
                updated_at=datetime.now(),
            )
        )
    return MessageResponse(message="Profile updated successfully.")


@app.get("/user/complete-profile", response_model=CompleteProfileResponse)
def get_complete_profile(authorization: str | None = Header(None)) -> CompleteProfileResponse:
    identity = get_current_identity(authorization)
    with engine.begin() as conn:
        ensure_user_record(conn, identity)
        row = conn.execute(select(users).where(users.c.id == identity.uid)).mappings().first()
    birth_date = row["birth_date"].strftime("%d/%m/%Y") if row["birth_date"] else ""
    return CompleteProfileResponse(
        full_name=row["name"] or "",
        nickname=row["nickname"] or "",
        birth_date=birth_date,
        email=row["email"] or "",
        phone=row["phone"] or "",
        gender=row["gender"] or "",
        postal_code=row["postal_code"] or "",
        city=row["city"] or "",
        state=row["state"] or "",
        financial_goal=row["financial_goal"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@app.get("/user/balance", response_model=BalanceResponse)
def get_balance(authorization: str | None = Header(None)) -> BalanceResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        balance = conn.execute(
            select(users.c.balance).where(users.c.id == user_id)
        ).first()
    if not balance:
        raise HTTPException(status_code=404, detail="User not found.")
    return BalanceResponse(balance=coerce_decimal(balance[0]))


@app.patch("/user/balance", response_model=BalanceResponse)
def update_balance(
    payload: BalancePayload, authorization: str | None = Header(None)
) -> BalanceResponse:
    user_id = get_current_user_id(authorization)
    try:
        payload = BalancePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        result = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(balance=payload.balance, updated_at=datetime.now())
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="User not found.")
    return BalanceResponse(balance=payload.balance)


@app.delete("/user/profile", response_model=MessageResponse)
def delete_account(authorization: str | None = Header(None)) -> MessageResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        for table in USER_OWNED_TABLES:
            conn.execute(delete(table).where(table.c.user_id == user_id))
        conn.execute(delete(users).where(users.c.id == user_id))
        IDENTITY_PROVIDER.delete_user(conn, user_id)
    CATEGORY_STORE.invalidate(user_id)
    return MessageResponse(message="Account deleted successfully.")


@app.get("/user-categories", response_model=CategoryConfigResponse)
def get_user_categories(authorization: str | None = Header(None)) -> CategoryConfigResponse:
    user_id = get_current_user_id(authorization)
    cached = CATEGORY_STORE.get_cached(user_id)
    if cached is not None:
        return CategoryConfigResponse(data=cached, cached=True)
    with engine.begin() as conn:
        config = CATEGORY_STORE.load(conn, user_id)
    return CategoryConfigResponse(data=config or CategoryConfig(), cached=False)


@app.post("/user-categories/save", response_model=CategoryConfigResponse)
def save_user_categories(
    payload: CategoryConfigPayload, authorization: str | None = Header(None)
) -> CategoryConfigResponse:
    user_id = get_current_user_id(authorization)
    try:
        payload = CategoryConfigPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    now = datetime.now()
    config = CategoryConfig(
        variable=payload.variable,
        fixed=payload.fixed,
        salary=payload.salary,
        pay_day=payload.pay_day,
        last_salary_payment=now,
    )
    with engine.begin() as conn:
        saved = CATEGORY_STORE.save(conn, user_id, config, now)
    return CategoryConfigResponse(data=saved, cached=False)


@app.get("/user-categories/check-salary", response_model=SalaryCheckResponse)
def check_salary_payment(authorization: str | None = Header(None)) -> SalaryCheckResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        config = CATEGORY_STORE.load(conn, user_id)
    if config is None:
        return SalaryCheckResponse(should_receive=False, message="Salary not configured.")
    if config.salary is None or config.pay_day is None:
        return SalaryCheckResponse(should_receive=False, message="Salary data incomplete.")

    today = datetime.now()
    last_payment = config.last_salary_payment
    paid_this_month = last_payment is not None and (
        (last_payment.year, last_payment.month) == (today.year, today.month)
    )
    return SalaryCheckResponse(
        should_receive=today.day == config.pay_day and not paid_this_month,
        salary=config.salary,
        pay_day=config.pay_day,
    )


@app.post("/user-categories/update-last-payment", response_model=MessageResponse)
def update_last_payment(authorization: str | None = Header(None)) -> MessageResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        updated = CATEGORY_STORE.mark_salary_paid(conn, user_id, datetime.now())
    if not updated:
        raise HTTPException(status_code=404, detail="User categories not found.")
    return MessageResponse(message="Last payment date updated.")


@app.patch("/user-categories/update-subcategory", response_model=CategoryConfigResponse)
def update_subcategory(
    payload: SubcategoryUpdatePayload, authorization: str | None = Header(None)
) -> CategoryConfigResponse:
    user_id = get_current_user_id(authorization)
    try:
        with engine.begin() as conn:
            config = CATEGORY_STORE.update_subcategory(
                conn,
                user_id,
                payload.category_id,
                payload.subcategory_name,
                payload.updates,
                datetime.now(),
            )
    except (CategoryConfigMissing, CategoryNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CategoryConfigResponse(data=config, cached=False)


@app.get("/user-categories/budget-status", response_model=BudgetStatusResponse)
def budget_status(authorization: str | None = Header(None)) -> BudgetStatusResponse:
    user_id = get_current_user_id(authorization)
    today = date.today()
    start_date = today.replace(day=1)
    with engine.begin() as conn:
        config = CATEGORY_STORE.load(conn, user_id)
        rows = conn.execute(
            select(
                transactions.c.amount,
                transactions.c.type,
                transactions.c.date,
                transactions.c.category,
                transactions.c.subcategory,
            ).where(
                transactions.c.user_id == user_id,
                transactions.c.type == "expense",
                transactions.c.date >= datetime.combine(start_date, datetime.min.time()),
            )
        ).mappings().all()
    if config is None:
        return BudgetStatusResponse(start_date=start_date, end_date=today, budgets=[])

    evaluations = evaluate_subcategory_budgets(
        config.all_categories(),
        [
            BudgetTransaction(
                amount=coerce_decimal(row["amount"]),
                type=row["type"],
                date=row["date"].date(),
                category=row["category"],
                subcategory=row["subcategory"],
            )
            for row in rows
        ],
        start_date,
        today,
    )
    return BudgetStatusResponse(
        start_date=start_date,
        end_date=today,
        budgets=[
            BudgetStatusEntry(
                category_id=evaluation.category_id,
                category=evaluation.category,
                subcategory=evaluation.subcategory,
                limit=evaluation.limit,
                current_value=evaluation.current_value,
                remaining=evaluation.remaining,
                status=evaluation.status,
            )
            for evaluation in evaluations
        ],
    )


@app.post("/fixed-expenses/process", response_model=FixedExpenseRunResponse)
def run_fixed_expenses(authorization: str | None = Header(None)) -> FixedExpenseRunResponse:
    user_id = get_current_user_id(authorization)
    result = process_fixed_expenses(engine, user_id, CATEGORY_STORE)
    if result.processed_count == 0:
        message = "No fixed expenses due."
    else:
        message = f"{result.processed_count} fixed expense(s) processed."
    return FixedExpenseRunResponse(processed=result.processed_count, message=message)


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload, authorization: str | None = Header(None)
) -> TransactionResponse:
    user_id = get_current_user_id(authorization)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    now = datetime.now()
    with engine.begin() as conn:
        row = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                type=payload.type,
                amount=payload.amount,
                category=payload.category,
                subcategory=payload.subcategory,
                date=payload.date,
                paid=payload.paid,
                fixed=payload.fixed,
                reminder=payload.reminder,
                ignore=payload.ignore,
                note=payload.note,
                source=payload.source,
                wallet=payload.wallet,
                created_at=now,
                updated_at=now,
            )
            .returning(*transactions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return transaction_response(row)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(authorization: str | None = Header(None)) -> list[TransactionResponse]:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [transaction_response(row) for row in rows]


@app.post("/transactions/search", response_model=list[TransactionResponse])
def search_transactions(
    payload: TransactionSearchPayload, authorization: str | None = Header(None)
) -> list[TransactionResponse]:
    user_id = get_current_user_id(authorization)
    stmt = select(transactions).where(transactions.c.user_id == user_id)
    if payload.type:
        stmt = stmt.where(transactions.c.type == payload.type.strip().lower())
    if payload.category:
        stmt = stmt.where(transactions.c.category == payload.category)
    if payload.query and payload.query.strip():
        term = f"%{payload.query.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(transactions.c.note).like(term),
                func.lower(transactions.c.category).like(term),
                func.lower(func.coalesce(transactions.c.subcategory, "")).like(term),
                func.lower(transactions.c.source).like(term),
            )
        )
    if payload.start_date:
        stmt = stmt.where(transactions.c.date >= to_naive(payload.start_date))
    if payload.end_date:
        stmt = stmt.where(transactions.c.date <= to_naive(payload.end_date))
    stmt = stmt.order_by(transactions.c.date.desc(), transactions.c.id.desc())

    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [transaction_response(row) for row in rows]


@app.get("/transactions/balance", response_model=TransactionBalanceResponse)
def transaction_balance(authorization: str | None = Header(None)) -> TransactionBalanceResponse:
    user_id = get_current_user_id(authorization)
    totals = fetch_totals_by_type(user_id)
    with engine.begin() as conn:
        count = conn.execute(
            select(func.count()).where(transactions.c.user_id == user_id)
        ).scalar_one()
    total_income = totals.get("income", Decimal("0"))
    total_expense = totals.get("expense", Decimal("0"))
    return TransactionBalanceResponse(
        balance=total_income - total_expense,
        total_income=total_income,
        total_expense=total_expense,
        transaction_count=int(count or 0),
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, authorization: str | None = Header(None)
) -> TransactionResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        row = get_owned_row(conn, transactions, transaction_id, user_id, "Transaction")
    return transaction_response(row)


@app.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    authorization: str | None = Header(None),
) -> TransactionResponse:
    user_id = get_current_user_id(authorization)
    try:
        values = payload.changes()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        get_owned_row(conn, transactions, transaction_id, user_id, "Transaction")
        row = conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id)
            .values(updated_at=datetime.now(), **values)
            .returning(*transactions.c)
        ).mappings().first()
    return transaction_response(row)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int, authorization: str | None = Header(None)
) -> Response:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        get_owned_row(conn, transactions, transaction_id, user_id, "Transaction")
        conn.execute(delete(transactions).where(transactions.c.id == transaction_id))
    return Response(status_code=204)


@app.post("/reminders", response_model=ReminderResponse, status_code=201)
def create_reminder(
    payload: ReminderPayload, authorization: str | None = Header(None)
) -> ReminderResponse:
    user_id = get_current_user_id(authorization)
    now = datetime.now()
    try:
        payload = ReminderPayload.validate_payload(payload, now)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(reminders)
                .values(
                    user_id=user_id,
                    title=payload.title,
                    description=payload.description,
                    due_date=payload.due_date,
                    priority=payload.priority,
                    category=payload.category,
                    is_completed=False,
                    created_at=now,
                    updated_at=now,
                )
                .returning(*reminders.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A reminder with this title already exists.") from exc
    return reminder_response(row)


@app.get("/reminders", response_model=list[ReminderResponse])
def list_reminders(
    completed: bool | None = Query(None),
    priority: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    authorization: str | None = Header(None),
) -> list[ReminderResponse]:
    user_id = get_current_user_id(authorization)
    stmt = select(reminders).where(reminders.c.user_id == user_id)
    if completed is not None:
        stmt = stmt.where(reminders.c.is_completed == completed)
    if priority and priority.strip().lower() in REMINDER_PRIORITIES:
        stmt = stmt.where(reminders.c.priority == priority.strip().lower())
    stmt = stmt.order_by(reminders.c.due_date.asc(), reminders.c.id.asc())
    if limit:
        stmt = stmt.limit(limit)
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [reminder_response(row) for row in rows]


@app.get("/reminders/{reminder_id}", response_model=ReminderResponse)
def get_reminder(reminder_id: int, authorization: str | None = Header(None)) -> ReminderResponse:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        row = get_owned_row(conn, reminders, reminder_id, user_id, "Reminder")
    return reminder_response(row)


@app.put("/reminders/{reminder_id}", response_model=ReminderResponse)
def update_reminder(
    reminder_id: int,
    payload: ReminderUpdatePayload,
    authorization: str | None = Header(None),
) -> ReminderResponse:
    user_id = get_current_user_id(authorization)
    try:
        values = payload.changes()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            get_owned_row(conn, reminders, reminder_id, user_id, "Reminder")
            row = conn.execute(
                update(reminders)
                .where(reminders.c.id == reminder_id)
                .values(updated_at=datetime.now(), **values)
                .returning(*reminders.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A reminder with this title already exists.") from exc
    return reminder_response(row)


@app.delete("/reminders/{reminder_id}", status_code=204)
def delete_reminder(reminder_id: int, authorization: str | None = Header(None)) -> Response:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        get_owned_row(conn, reminders, reminder_id, user_id, "Reminder")
        conn.execute(delete(reminders).where(reminders.c.id == reminder_id))
    return Response(status_code=204)


@app.post("/goals", response_model=GoalResponse, status_code=201)
def create_goal(payload: GoalPayload, authorization: str | None = Header(None)) -> GoalResponse:
    user_id = get_current_user_id(authorization)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    now = datetime.now()
    with engine.begin() as conn:
        row = conn.execute(
            insert(goals)
            .values(
                user_id=user_id,
                name=payload.name,
                target_amount=payload.target_amount,
                current_amount=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            .returning(*goals.c)
        ).mappings().first()
    return goal_response(row)


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(authorization: str | None = Header(None)) -> list[GoalResponse]:
    user_id = get_current_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(goals).where(goals.c.user_id == user_id).order_by(goals.c.id.asc())
        ).mappings().all()
    return [goal_response(row) for row in rows]


@app.post("/goals/{goal_id}/deposit", response_model=GoalDepositResponse)
def deposit_to_goal(
    goal_id: int, payload: GoalDepositPayload, authorization: str | None = Header(None)
) -> GoalDepositResponse:
    user_id = get_current_user_id(authorization)
    if payload.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be greater than zero.")

    now = datetime.now()
    with engine.begin() as conn:
        goal = get_owned_row(conn, goals, goal_id, user_id, "Goal")
        current_amount = conn.execute(
            update(goals)
            .where(
                goals.c.id == goal_id,
                goals.c.current_amount + payload.amount <= goals.c.target_amount,
            )
            .values(current_amount=goals.c.current_amount + payload.amount, updated_at=now)
            .returning(goals.c.current_amount)
        ).scalar_one_or_none()
        if current_amount is None:
            raise HTTPException(status_code=400, detail="Amount exceeds the goal target.")

        new_balance = conn.execute(
            update(users)
            .where(users.c.id == user_id, users.c.balance >= payload.amount)
            .values(balance=users.c.balance - payload.amount, updated_at=now)
            .returning(users.c.balance)
        ).scalar_one_or_none()
        if new_balance is None:
            balance = conn.execute(
                select(users.c.balance).where(users.c.id == user_id)
            ).scalar_one_or_none()
            if balance is None:
                raise HTTPException(status_code=404, detail="User not found.")
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient balance. Current balance: {coerce_decimal(balance):.2f}",
            )
        new_balance = coerce_decimal(new_balance)
        previous_balance = new_balance + payload.amount
        transaction_id = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                type="expense",
                amount=payload.amount,
                category=GOALS_CATEGORY,
                subcategory=goal["name"],
                date=now,
                paid=True,
                fixed=False,
                reminder=False,
                ignore=False,
                note=f"Goal deposit: {goal['name']}",
                source="Goal",
                wallet="Wallet",
                created_at=now,
                updated_at=now,
            )
            .returning(transactions.c.id)
        ).scalar_one()

    return GoalDepositResponse(
        goal_id=goal_id,
        amount=payload.amount,
        current_amount=current_amount,
        previous_balance=previous_balance,
        balance=new_balance,
        progress=goal_progress(current_amount, goal["target_amount"]),
        transaction_id=transaction_id,
    )


@app.get("/stats/summary", response_model=SummaryResponse)
def stats_summary(authorization: str | None = Header(None)) -> SummaryResponse:
    user_id = get_current_user_id(authorization)
    summary = summarize(fetch_stat_transactions(user_id))
    largest = summary.largest_transaction
    return SummaryResponse(
        total_income=summary.total_income,
        total_expense=summary.total_expense,
        balance=summary.balance,
        categories={
            name: CategorySummaryResponse(
                total=category.total, count=category.count, percentage=category.percentage
            )
            for name, category in summary.categories.items()
        },
        most_frequent_category=summary.most_frequent_category,
        largest_transaction=LargestTransactionResponse(
            amount=largest.amount, description=largest.description, category=largest.category
        )
        if largest
        else None,
    )


@app.get("/stats/monthly", response_model=MonthlyStatsResponse)
def stats_monthly(authorization: str | None = Header(None)) -> MonthlyStatsResponse:
    user_id = get_current_user_id(authorization)
    report = monthly_stats(fetch_stat_transactions(user_id))
    return MonthlyStatsResponse(
        months=[
            MonthlyStatResponse(
                month=month.month,
                income=month.income,
                expense=month.expense,
                balance=month.balance,
            )
            for month in report.months
        ],
        average_income=report.average_income,
        average_expense=report.average_expense,
        trend=report.trend,
    )
