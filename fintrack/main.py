import logging
import math
import os
import re
import tempfile
from datetime import date, datetime, timedelta, timezone
from datetime import date as date_type
from decimal import Decimal
from typing import Any

import bcrypt
import jwt
from fastapi import FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from fintrack.analytics import (
    DEFAULT_PERIOD,
    AccountBalance,
    BudgetUsage,
    assess_financial_health,
    fold_flows,
    monthly_trend,
    previous_month_range,
    resolve_range,
    round_money,
    round_whole,
    shift_month_keep_day,
    trend_start,
)
from fintrack.budget_engine import BudgetRule, Transaction, evaluate_budget
from fintrack.csv_parser import ParsedTransaction, parse_transactions_csv
from fintrack.ledger import (
    CategoryOption,
    LedgerEntry,
    creation_deltas,
    normalize_type,
    parse_tags,
    plan_bulk_import,
    reconcile_update,
    reversal_deltas,
    storable_amount,
    to_cents,
)
from fintrack.log_config import setup_logging
from fintrack.recurring import normalize_frequency, resolve_next_date

API_VERSION = "1.0.0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
setup_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="fintrack", version=API_VERSION)

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./fintrack.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(tempfile.gettempdir(), "fintrack-uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))

JWT_SECRET = os.getenv("JWT_SECRET", "fintrack-development-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
if "JWT_SECRET" not in os.environ:
    logger.warning("JWT_SECRET is not set; using the development signing key")
SPREADSHEET_EXTENSIONS = {".xls", ".xlsx"}

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))

HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
RECENT_LIMIT = 5
RECENT_ACTIVITY_DAYS = 30
RECENT_ACTIVITY_LIMIT = 10
CATEGORY_HISTORY_MONTHS = 6

DEFAULT_CATEGORIES = [
    {"name": "Food & Dining", "type": "expense", "color": "#FF6B6B", "icon": "restaurant"},
    {"name": "Transportation", "type": "expense", "color": "#4ECDC4", "icon": "directions_car"},
    {"name": "Shopping", "type": "expense", "color": "#45B7D1", "icon": "shopping_cart"},
    {"name": "Entertainment", "type": "expense", "color": "#96CEB4", "icon": "movie"},
    {"name": "Bills & Utilities", "type": "expense", "color": "#FFEAA7", "icon": "receipt"},
    {"name": "Healthcare", "type": "expense", "color": "#DDA0DD", "icon": "local_hospital"},
    {"name": "Education", "type": "expense", "color": "#FFB347", "icon": "school"},
    {"name": "Groceries", "type": "expense", "color": "#98FB98", "icon": "shopping_basket"},
    {"name": "Other Expenses", "type": "expense", "color": "#B0B0B0", "icon": "category"},
    {"name": "Salary", "type": "income", "color": "#98D8C8", "icon": "work"},
    {"name": "Freelance", "type": "income", "color": "#F7DC6F", "icon": "laptop"},
    {"name": "Investment", "type": "income", "color": "#BB8FCE", "icon": "trending_up"},
    {"name": "Business", "type": "income", "color": "#85C1E9", "icon": "business"},
    {"name": "Other Income", "type": "income", "color": "#F8C471", "icon": "account_balance"},
]

DEFAULT_ACCOUNTS = [
    {"name": "Main Checking", "type": "checking", "color": "#1976d2", "icon": "account_balance"},
    {"name": "Savings", "type": "savings", "color": "#388e3c", "icon": "savings"},
]

UPLOAD_TEMPLATE = [
    {
        "date": "2024-01-15",
        "description": "Grocery Shopping",
        "amount": -85.50,
        "category": "Food & Dining",
        "tags": "groceries,weekly",
    },
    {
        "date": "2024-01-16",
        "description": "Salary Deposit",
        "amount": 3000.00,
        "category": "Salary",
        "tags": "income",
    },
]

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("monthly_income", Numeric(12, 2)),
    Column("preferences", JSON),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_login", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("balance", Numeric(12, 2), nullable=False, default=0),
    Column("initial_balance", Numeric(12, 2), nullable=False, default=0),
    Column("color", String(7), nullable=False, server_default="#1976d2"),
    Column("icon", String(50), nullable=False, server_default="account_balance"),
    Column("description", String(500)),
    Column("bank", JSON),
    Column("credit_limit", Numeric(12, 2), nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("color", String(7), nullable=False),
    Column("icon", String(50), nullable=False, server_default="category"),
    Column("description", String(500)),
    Column("parent_category_id", Integer, ForeignKey("categories.id")),
    Column("sort_order", Integer, nullable=False, default=0),
    Column("is_default", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("type", String(20), nullable=False),
    Column("date", Date, nullable=False),
    Column("description", String(500), nullable=False),
    Column("notes", String(1000)),
    Column("tags", JSON, nullable=False, default=list),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("recurring_frequency", String(20)),
    Column("recurring_end_date", Date),
    Column("recurring_next_date", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("period", String(20), nullable=False, server_default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("alert_threshold", Integer, nullable=False, default=80),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ())]
        field = ".".join(location[1:]) if len(location) > 1 else "".join(location)
        errors.append({"field": field, "message": error.get("msg", "Invalid value.")})
    return JSONResponse(status_code=400, content={"detail": "Validation failed.", "errors": errors})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error."})


def clean_required(value: str | None, label: str, max_length: int) -> str:
    cleaned = value.strip() if value else ""
    if not cleaned:
        raise ValueError(f"{label} required.")
    if len(cleaned) > max_length:
        raise ValueError(f"{label} must be at most {max_length} characters.")
    return cleaned


def clean_optional(value: str | None, label: str, max_length: int) -> str | None:
    cleaned = value.strip() if value else ""
    if len(cleaned) > max_length:
        raise ValueError(f"{label} must be at most {max_length} characters.")
    return cleaned or None


def validate_color(value: str) -> str:
    cleaned = value.strip()
    if not HEX_COLOR.match(cleaned):
        raise ValueError("Color must be a valid hex color.")
    return cleaned


class AccountType:
    values = {"checking", "savings", "credit", "investment", "cash"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


class BudgetPeriod:
    values = {"weekly", "monthly", "yearly"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Budget period must be weekly, monthly, or yearly.")
        return normalized


class Currency:
    values = {"USD", "EUR", "GBP", "INR", "CAD", "AUD", "JPY"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Unsupported currency.")
        return normalized


class RegisterPayload(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    currency: str = "USD"

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.email = payload.email.strip().lower()
        if not EMAIL_PATTERN.match(payload.email):
            raise ValueError("A valid email is required.")
        if len(payload.password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        payload.first_name = clean_required(payload.first_name, "First name", 50)
        payload.last_name = clean_required(payload.last_name, "Last name", 50)
        payload.currency = Currency.validate(payload.currency)
        return payload


class CredentialsPayload(BaseModel):
    email: str
    password: str


class ProfileUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: str | None = None
    last_name: str | None = None
    currency: str | None = None
    monthly_income: Decimal | None = None
    preferences: dict[str, Any] | None = None

    @classmethod
    def validate_changes(cls, payload: "ProfileUpdatePayload") -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if "first_name" in changes:
            changes["first_name"] = clean_required(payload.first_name, "First name", 50)
        if "last_name" in changes:
            changes["last_name"] = clean_required(payload.last_name, "Last name", 50)
        if "currency" in changes:
            if payload.currency is None:
                raise ValueError("Currency required.")
            changes["currency"] = Currency.validate(payload.currency)
        if payload.monthly_income is not None:
            if payload.monthly_income < 0:
                raise ValueError("Monthly income cannot be negative.")
            changes["monthly_income"] = storable_amount(payload.monthly_income)
        if "preferences" in changes and payload.preferences is None:
            changes["preferences"] = {}
        return changes


class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    full_name: str
    currency: str
    monthly_income: Decimal | None = None
    preferences: dict[str, Any] = {}
    last_login: datetime | None = None
    created_at: datetime | None = None


class AuthResponse(UserResponse):
    token: str
    token_type: str = "bearer"


class BankDetails(BaseModel):
    name: str | None = None
    account_number: str | None = None
    routing_number: str | None = None


class AccountPayload(BaseModel):
    name: str
    type: str
    balance: Decimal = Decimal("0")
    color: str = "#1976d2"
    icon: str = "account_balance"
    description: str | None = None
    bank: BankDetails | None = None
    credit_limit: Decimal = Decimal("0")

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = clean_required(payload.name, "Account name", 100)
        payload.type = AccountType.validate(payload.type)
        payload.balance = storable_amount(payload.balance)
        payload.color = validate_color(payload.color)
        payload.icon = clean_required(payload.icon, "Icon", 50)
        payload.description = clean_optional(payload.description, "Description", 500)
        if payload.credit_limit < 0:
            raise ValueError("Credit limit cannot be negative.")
        payload.credit_limit = storable_amount(payload.credit_limit) if payload.type == "credit" else Decimal("0")
        if payload.bank is not None:
            payload.bank = BankDetails(
                name=clean_optional(payload.bank.name, "Bank name", 100),
                account_number=clean_optional(payload.bank.account_number, "Account number", 50),
                routing_number=clean_optional(payload.bank.routing_number, "Routing number", 50),
            )
        return payload


class AccountUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    type: str | None = None
    color: str | None = None
    icon: str | None = None
    description: str | None = None
    credit_limit: Decimal | None = None
    bank: BankDetails | None = None
    is_active: bool | None = None


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    balance: Decimal
    initial_balance: Decimal
    available_balance: Decimal
    color: str
    icon: str
    description: str | None = None
    bank: BankDetails | None = None
    credit_limit: Decimal
    is_active: bool
    transaction_count: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AccountSummary(BaseModel):
    total_accounts: int
    active_accounts: int
    total_balance: Decimal


class AccountListResponse(BaseModel):
    data: list[AccountResponse]
    summary: AccountSummary


class AccountStats(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    transaction_count: int


class CategoryRef(BaseModel):
    id: int
    name: str
    type: str | None = None
    color: str | None = None
    icon: str | None = None


class AccountRef(BaseModel):
    id: int
    name: str
    type: str
    color: str | None = None


class TransactionPayload(BaseModel):
    account_id: int
    category_id: int
    amount: Decimal
    type: str
    date: date
    description: str
    notes: str | None = None
    tags: list[str] = []
    is_recurring: bool = False
    recurring_frequency: str | None = None
    recurring_end_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = normalize_type(payload.type)
        payload.amount = storable_amount(payload.amount)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.description = clean_required(payload.description, "Description", 500)
        payload.notes = clean_optional(payload.notes, "Notes", 1000)

        cleaned_tags = list(parse_tags(payload.tags))
        for tag in cleaned_tags:
            if len(tag) > 50:
                raise ValueError("Tags must be at most 50 characters.")
        payload.tags = cleaned_tags

        if payload.is_recurring:
            if not payload.recurring_frequency:
                raise ValueError("Recurring transactions require a frequency.")
            payload.recurring_frequency = normalize_frequency(payload.recurring_frequency)
            if payload.recurring_end_date is not None and payload.recurring_end_date < payload.date:
                raise ValueError("Recurring end date must be on or after the transaction date.")
        else:
            payload.recurring_frequency = None
            payload.recurring_end_date = None
        return payload


class TransactionUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int | None = None
    category_id: int | None = None
    amount: Decimal | None = None
    type: str | None = None
    description: str | None = None
    notes: str | None = None
    tags: list[str] | None = None
    is_recurring: bool | None = None
    recurring_frequency: str | None = None
    recurring_end_date: date | None = None
    date: date_type | None = None


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    category_id: int
    amount: Decimal
    type: str
    date: date
    description: str
    notes: str | None = None
    tags: list[str] = []
    is_recurring: bool = False
    recurring_frequency: str | None = None
    recurring_end_date: date | None = None
    recurring_next_date: date | None = None
    account: AccountRef | None = None
    category: CategoryRef | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AccountDetailResponse(AccountResponse):
    recent_transactions: list[TransactionResponse]
    stats: AccountStats


class BalanceHistoryTransaction(BaseModel):
    id: int
    amount: Decimal
    type: str
    description: str


class BalanceHistoryPoint(BaseModel):
    date: date
    balance: Decimal
    transaction: BalanceHistoryTransaction | None = None


class BalanceHistoryResponse(BaseModel):
    account: dict[str, Any]
    history: list[BalanceHistoryPoint]


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class FlowSummaryResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal


class TransactionListResponse(BaseModel):
    data: list[TransactionResponse]
    pagination: PaginationResponse
    summary: FlowSummaryResponse


class BulkImportPayload(BaseModel):
    transactions: list[Any]

    @classmethod
    def validate_payload(cls, payload: "BulkImportPayload") -> "BulkImportPayload":
        if not payload.transactions:
            raise ValueError("Transactions array required.")
        return payload


class ImportFailureResponse(BaseModel):
    row: int
    error: str


class BulkImportResponse(BaseModel):
    imported: int
    errors: int
    total: int
    details: list[ImportFailureResponse] | None = None


class CategoryPayload(BaseModel):
    name: str
    type: str
    color: str
    icon: str = "category"
    description: str | None = None
    parent_category_id: int | None = None
    sort_order: int = 0

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = clean_required(payload.name, "Category name", 100)
        payload.type = normalize_type(payload.type)
        payload.color = validate_color(payload.color)
        payload.icon = clean_required(payload.icon, "Icon", 50)
        payload.description = clean_optional(payload.description, "Description", 500)
        return payload


class CategoryUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    type: str | None = None
    color: str | None = None
    icon: str | None = None
    description: str | None = None
    parent_category_id: int | None = None
    sort_order: int | None = None
    is_active: bool | None = None


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    color: str
    icon: str
    description: str | None = None
    parent_category_id: int | None = None
    sort_order: int
    is_default: bool
    is_active: bool
    transaction_count: int | None = None
    total_amount: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CategorySummary(BaseModel):
    total_categories: int
    income_categories: int
    expense_categories: int
    active_categories: int


class CategoryListResponse(BaseModel):
    data: list[CategoryResponse] | dict[str, list[CategoryResponse]]
    summary: CategorySummary


class CategoryStats(BaseModel):
    transaction_count: int
    total_amount: Decimal
    average_amount: Decimal


class MonthlyStat(BaseModel):
    year: int
    month: int
    total: Decimal
    count: int


class CategoryDetailResponse(CategoryResponse):
    stats: CategoryStats
    recent_transactions: list[TransactionResponse]
    monthly_stats: list[MonthlyStat]


class BudgetPayload(BaseModel):
    name: str
    category_id: int
    amount: Decimal
    period: str = "monthly"
    start_date: date
    end_date: date
    alert_threshold: int = 80

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.name = clean_required(payload.name, "Budget name", 100)
        payload.amount = storable_amount(payload.amount)
        if payload.amount <= 0:
            raise ValueError("Budget amount must be greater than zero.")
        payload.period = BudgetPeriod.validate(payload.period)
        if payload.end_date <= payload.start_date:
            raise ValueError("End date must be after start date.")
        if not 0 <= payload.alert_threshold <= 100:
            raise ValueError("Alert threshold must be between 0 and 100.")
        return payload


class BudgetUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    category_id: int | None = None
    amount: Decimal | None = None
    period: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    alert_threshold: int | None = None
    is_active: bool | None = None


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    name: str
    category_id: int
    category: CategoryRef | None = None
    amount: Decimal
    period: str
    start_date: date
    end_date: date
    alert_threshold: int
    is_active: bool
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    status: str
    transaction_count: int
    days_remaining: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BudgetSummary(BaseModel):
    total_budgets: int
    active_budgets: int
    over_budget_count: int
    warning_count: int
    total_budgeted: Decimal
    total_spent: Decimal


class BudgetListResponse(BaseModel):
    data: list[BudgetResponse]
    summary: BudgetSummary


class DailySpending(BaseModel):
    date: date
    total: Decimal
    count: int


class BudgetDetailResponse(BudgetResponse):
    transactions: list[TransactionResponse]
    daily_spending: list[DailySpending]


class CategoryTotal(BaseModel):
    category_id: int
    name: str
    color: str | None = None
    icon: str | None = None
    total: Decimal
    count: int
    average: Decimal | None = None


class TrendEntry(BaseModel):
    year: int
    month: int
    income: Decimal
    expense: Decimal
    net: Decimal


class AccountFlow(BaseModel):
    account_id: int
    name: str
    type: str
    color: str | None = None
    income: Decimal
    expense: Decimal
    net: Decimal


class SpendingSummary(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal
    period: str
    start_date: date
    end_date: date | None = None


class SpendingAnalyticsResponse(BaseModel):
    spending_by_category: list[CategoryTotal]
    income_by_category: list[CategoryTotal]
    monthly_trend: list[TrendEntry]
    spending_by_account: list[AccountFlow]
    recent_transactions: list[TransactionResponse]
    summary: SpendingSummary


class HealthScoresResponse(BaseModel):
    savings_rate: int
    budget_adherence: int
    emergency_fund: int
    expense_control: int
    debt_management: int


class HealthMetricsResponse(BaseModel):
    savings_rate: Decimal
    expense_ratio: Decimal
    emergency_fund_ratio: Decimal
    debt_to_income_ratio: Decimal
    total_balance: Decimal
    total_debt: Decimal


class InsightResponse(BaseModel):
    type: str
    title: str
    description: str
    action: str


class HealthPeriod(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal


class FinancialHealthResponse(BaseModel):
    overall_score: int
    scores: HealthScoresResponse
    metrics: HealthMetricsResponse
    insights: list[InsightResponse]
    period: HealthPeriod


class UploadResponse(BaseModel):
    transactions: list[ParsedTransaction]
    count: int
    preview: list[ParsedTransaction]
    skipped_rows: list[int] = []


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def issue_token(user_id: int) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + timedelta(days=JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def get_user_id(authorization: str | None = Header(None)) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing access token.")
    try:
        claims = jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = int(claims["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        logger.info("Rejected access token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid access token.") from exc
    with engine.begin() as conn:
        result = conn.execute(
            select(users.c.id).where(users.c.id == user_id, users.c.is_active.is_(True))
        )
        if not result.first():
            raise HTTPException(status_code=401, detail="User not found or inactive.")
    return user_id


def coerce_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def seed_defaults(conn, user_id: int) -> None:
    conn.execute(
        insert(categories),
        [
            {
                "user_id": user_id,
                "is_default": True,
                "is_active": True,
                "sort_order": index,
                **category,
            }
            for index, category in enumerate(DEFAULT_CATEGORIES)
        ],
    )
    conn.execute(
        insert(accounts),
        [
            {
                "user_id": user_id,
                "balance": Decimal("0"),
                "initial_balance": Decimal("0"),
                "credit_limit": Decimal("0"),
                "is_active": True,
                **account,
            }
            for account in DEFAULT_ACCOUNTS
        ],
    )


def apply_balance_deltas(conn, user_id: int, deltas: dict[int, Decimal]) -> None:
    for account_id, delta in deltas.items():
        conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .values(balance=func.round(accounts.c.balance + delta, 2))
        )
        logger.debug("Adjusted account %s balance by %s", account_id, delta)


def fetch_active_account(conn, user_id: int, account_id: int):
    row = conn.execute(
        select(accounts.c.id).where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.is_active.is_(True),
        )
    ).first()
    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return row


def fetch_active_category(conn, user_id: int, category_id: int):
    row = conn.execute(
        select(categories.c.id, categories.c.type).where(
            categories.c.id == category_id,
            categories.c.user_id == user_id,
            categories.c.is_active.is_(True),
        )
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return row


def ensure_category_matches(category_type: str, txn_type: str) -> None:
    if category_type != txn_type:
        raise HTTPException(
            status_code=409, detail="Category type does not match transaction type."
        )


def ensure_unique_active_account(conn, user_id: int, name: str, exclude_id: int | None = None) -> None:
    conditions = [
        accounts.c.user_id == user_id,
        accounts.c.name == name,
        accounts.c.is_active.is_(True),
    ]
    if exclude_id is not None:
        conditions.append(accounts.c.id != exclude_id)
    if conn.execute(select(accounts.c.id).where(*conditions).limit(1)).first():
        raise HTTPException(status_code=409, detail="An active account with this name already exists.")


def validate_parent_category(
    conn, user_id: int, parent_id: int | None, category_type: str, category_id: int | None = None
) -> None:
    if parent_id is None:
        return
    if category_id is not None and parent_id == category_id:
        raise HTTPException(status_code=400, detail="A category cannot be its own parent.")
    parent = conn.execute(
        select(categories.c.type).where(
            categories.c.id == parent_id,
            categories.c.user_id == user_id,
            categories.c.is_active.is_(True),
        )
    ).first()
    if not parent:
        raise HTTPException(status_code=400, detail="Parent category not found.")
    if parent[0] != category_type:
        raise HTTPException(status_code=400, detail="Parent category must have the same type.")


def category_in_use(conn, user_id: int, category_id: int) -> bool:
    txn_match = conn.execute(
        select(transactions.c.id)
        .where(transactions.c.user_id == user_id, transactions.c.category_id == category_id)
        .limit(1)
    ).first()
    if txn_match:
        return True
    budget_match = conn.execute(
        select(budgets.c.id)
        .where(budgets.c.user_id == user_id, budgets.c.category_id == category_id)
        .limit(1)
    ).first()
    return bool(budget_match)


def ensure_budget_category(conn, user_id: int, category_id: int) -> None:
    category = fetch_active_category(conn, user_id, category_id)
    if category["type"] != "expense":
        raise HTTPException(status_code=400, detail="Budgets can only track expense categories.")


def ensure_no_budget_overlap(
    conn,
    user_id: int,
    category_id: int,
    start_date: date,
    end_date: date,
    exclude_id: int | None = None,
) -> None:
    conditions = [
        budgets.c.user_id == user_id,
        budgets.c.category_id == category_id,
        budgets.c.is_active.is_(True),
        budgets.c.start_date <= end_date,
        budgets.c.end_date >= start_date,
    ]
    if exclude_id is not None:
        conditions.append(budgets.c.id != exclude_id)
    if conn.execute(select(budgets.c.id).where(*conditions).limit(1)).first():
        raise HTTPException(
            status_code=409,
            detail="An active budget already exists for this category in the selected period.",
        )


def transaction_select():
    join_stmt = transactions.outerjoin(
        accounts, accounts.c.id == transactions.c.account_id
    ).outerjoin(categories, categories.c.id == transactions.c.category_id)
    return select(
        transactions,
        accounts.c.name.label("account_name"),
        accounts.c.type.label("account_type"),
        accounts.c.color.label("account_color"),
        categories.c.name.label("category_name"),
        categories.c.type.label("category_type"),
        categories.c.color.label("category_color"),
        categories.c.icon.label("category_icon"),
    ).select_from(join_stmt)


def serialize_transaction(row) -> TransactionResponse:
    account = None
    if row["account_name"] is not None:
        account = AccountRef(
            id=row["account_id"],
            name=row["account_name"],
            type=row["account_type"],
            color=row["account_color"],
        )
    category = None
    if row["category_name"] is not None:
        category = CategoryRef(
            id=row["category_id"],
            name=row["category_name"],
            type=row["category_type"],
            color=row["category_color"],
            icon=row["category_icon"],
        )
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        amount=row["amount"],
        type=row["type"],
        date=row["date"],
        description=row["description"],
        notes=row["notes"],
        tags=row["tags"] or [],
        is_recurring=row["is_recurring"],
        recurring_frequency=row["recurring_frequency"],
        recurring_end_date=row["recurring_end_date"],
        recurring_next_date=row["recurring_next_date"],
        account=account,
        category=category,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def fetch_transaction(conn, user_id: int, transaction_id: int) -> TransactionResponse:
    row = conn.execute(
        transaction_select().where(
            transactions.c.id == transaction_id, transactions.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return serialize_transaction(row)


def serialize_user(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        full_name=f"{row['first_name']} {row['last_name']}",
        currency=row["currency"],
        monthly_income=row["monthly_income"],
        preferences=row["preferences"] or {},
        last_login=row["last_login"],
        created_at=row["created_at"],
    )


def serialize_account(row, transaction_count: int | None = None) -> AccountResponse:
    balance = coerce_decimal(row["balance"])
    credit_limit = coerce_decimal(row["credit_limit"])
    available = credit_limit + balance if row["type"] == "credit" else balance
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        balance=balance,
        initial_balance=row["initial_balance"],
        available_balance=available,
        color=row["color"],
        icon=row["icon"],
        description=row["description"],
        bank=row["bank"],
        credit_limit=credit_limit,
        is_active=row["is_active"],
        transaction_count=transaction_count,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def serialize_category(
    row, transaction_count: int | None = None, total_amount: Decimal | None = None
) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        color=row["color"],
        icon=row["icon"],
        description=row["description"],
        parent_category_id=row["parent_category_id"],
        sort_order=row["sort_order"],
        is_default=row["is_default"],
        is_active=row["is_active"],
        transaction_count=transaction_count,
        total_amount=total_amount,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def budget_select():
    join_stmt = budgets.join(categories, categories.c.id == budgets.c.category_id)
    return select(
        budgets,
        categories.c.name.label("category_name"),
        categories.c.type.label("category_type"),
        categories.c.color.label("category_color"),
        categories.c.icon.label("category_icon"),
    ).select_from(join_stmt)


def budget_transactions_stmt(user_id: int, row):
    return transaction_select().where(
        transactions.c.user_id == user_id,
        transactions.c.category_id == row["category_id"],
        transactions.c.type == "expense",
        transactions.c.date >= row["start_date"],
        transactions.c.date <= row["end_date"],
    )


def evaluate_budget_row(txn_rows, row, today: date):
    items = [
        Transaction(
            amount=txn["amount"],
            type=txn["type"],
            date=txn["date"],
            category_id=txn["category_id"],
            account_id=txn["account_id"],
        )
        for txn in txn_rows
    ]
    rule = BudgetRule(
        amount=coerce_decimal(row["amount"]),
        category_id=row["category_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        alert_threshold=row["alert_threshold"],
    )
    try:
        return evaluate_budget(items, rule, today)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid budget {row['id']}: {exc}") from exc


def serialize_budget(row, evaluation) -> dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "category_id": row["category_id"],
        "category": CategoryRef(
            id=row["category_id"],
            name=row["category_name"],
            type=row["category_type"],
            color=row["category_color"],
            icon=row["category_icon"],
        ),
        "amount": row["amount"],
        "period": row["period"],
        "start_date": row["start_date"],
        "end_date": row["end_date"],
        "alert_threshold": row["alert_threshold"],
        "is_active": row["is_active"],
        "spent": round_money(evaluation.spent),
        "remaining": round_money(evaluation.remaining),
        "percentage": round_money(evaluation.percentage),
        "status": evaluation.status,
        "transaction_count": evaluation.transaction_count,
        "days_remaining": evaluation.days_remaining,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def fetch_budget_row(conn, user_id: int, budget_id: int):
    row = conn.execute(
        budget_select().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Budget not found.")
    return row


def category_totals(conn, conditions: list, txn_type: str, with_average: bool) -> list[CategoryTotal]:
    total_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("total")
    count_expr = func.count(transactions.c.id).label("count")
    stmt = (
        select(
            categories.c.id,
            categories.c.name,
            categories.c.color,
            categories.c.icon,
            total_expr,
            count_expr,
        )
        .select_from(transactions.join(categories, categories.c.id == transactions.c.category_id))
        .where(*conditions, transactions.c.type == txn_type)
        .group_by(categories.c.id, categories.c.name, categories.c.color, categories.c.icon)
    )
    results = []
    for row in conn.execute(stmt).mappings().all():
        total = coerce_decimal(row["total"])
        average = round_money(total / row["count"]) if with_average and row["count"] else None
        results.append(
            CategoryTotal(
                category_id=row["id"],
                name=row["name"],
                color=row["color"],
                icon=row["icon"],
                total=round_money(total),
                count=row["count"],
                average=average,
            )
        )
    return sorted(results, key=lambda item: item.total, reverse=True)


def stage_upload(contents: bytes, suffix: str) -> str:
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    fd, path = tempfile.mkstemp(prefix="upload-", suffix=suffix, dir=UPLOAD_DIR)
    with os.fdopen(fd, "wb") as handle:
        handle.write(contents)
    return path


def read_staged_csv(path: str) -> str:
    with open(path, "rb") as handle:
        raw = handle.read()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValueError("CSV must be UTF-8 encoded.") from exc


def remove_staged_upload(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.warning("Staged upload %s was already removed", path)


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/")
def api_info() -> dict:
    return {
        "name": "fintrack",
        "version": API_VERSION,
        "docs": "/docs",
        "login": "/login",
        "endpoints": {
            "auth": "/api/auth",
            "accounts": "/api/accounts",
            "categories": "/api/categories",
            "transactions": "/api/transactions",
            "budgets": "/api/budgets",
            "analytics": "/api/analytics",
            "upload": "/api/upload",
        },
    }


@app.get("/login")
def login_page(request: Request):
    return templates.TemplateResponse(request, "login.html", {"api_base": "/api"})


@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterPayload) -> AuthResponse:
    try:
        payload = RegisterPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(users)
        .values(
            email=payload.email,
            hashed_password=hash_password(payload.password),
            first_name=payload.first_name,
            last_name=payload.last_name,
            currency=payload.currency,
            preferences={},
            is_active=True,
            last_login=func.now(),
        )
        .returning(users.c.id)
    )
    try:
        with engine.begin() as conn:
            user_id = conn.execute(stmt).scalar_one()
            seed_defaults(conn, user_id)
            row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    logger.info("Registered user %s", user_id)
    return AuthResponse(**serialize_user(row).model_dump(), token=issue_token(user_id))


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: CredentialsPayload) -> AuthResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
        if not row or not row["is_active"] or not verify_password(payload.password, row["hashed_password"]):
            raise HTTPException(status_code=401, detail="Invalid credentials.")
        conn.execute(update(users).where(users.c.id == row["id"]).values(last_login=func.now()))
        row = conn.execute(select(users).where(users.c.id == row["id"])).mappings().one()

    logger.info("User %s logged in", row["id"])
    return AuthResponse(**serialize_user(row).model_dump(), token=issue_token(row["id"]))


@app.get("/api/auth/me", response_model=UserResponse)
def current_user(authorization: str | None = Header(None)) -> UserResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return serialize_user(row)


@app.put("/api/auth/profile", response_model=UserResponse)
def update_profile(
    payload: ProfileUpdatePayload,
    authorization: str | None = Header(None),
) -> UserResponse:
    user_id = get_user_id(authorization)
    try:
        changes = ProfileUpdatePayload.validate_changes(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if changes:
            conn.execute(update(users).where(users.c.id == user_id).values(**changes))
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return serialize_user(row)


@app.put("/api/auth/change-password")
def change_password(
    payload: ChangePasswordPayload,
    authorization: str | None = Header(None),
) -> dict:
    user_id = get_user_id(authorization)
    if len(payload.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
        )
    with engine.begin() as conn:
        hashed = conn.execute(
            select(users.c.hashed_password).where(users.c.id == user_id)
        ).scalar_one()
        if not verify_password(payload.current_password, hashed):
            raise HTTPException(status_code=400, detail="Current password is incorrect.")
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(hashed_password=hash_password(payload.new_password))
        )
    logger.info("User %s changed password", user_id)
    return {"status": "password_changed"}


@app.post("/api/auth/logout")
def logout(authorization: str | None = Header(None)) -> dict:
    get_user_id(authorization)
    return {"status": "logged_out"}


@app.get("/api/accounts", response_model=AccountListResponse)
def list_accounts(
    include_inactive: bool = Query(False),
    authorization: str | None = Header(None),
) -> AccountListResponse:
    user_id = get_user_id(authorization)
    conditions = [accounts.c.user_id == user_id]
    if not include_inactive:
        conditions.append(accounts.c.is_active.is_(True))
    with engine.begin() as conn:
        rows = conn.execute(
            select(accounts).where(*conditions).order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
        ).mappings().all()
        counts = dict(
            conn.execute(
                select(transactions.c.account_id, func.count(transactions.c.id))
                .where(transactions.c.user_id == user_id)
                .group_by(transactions.c.account_id)
            ).all()
        )

    active_rows = [row for row in rows if row["is_active"]]
    total_balance = sum((coerce_decimal(row["balance"]) for row in active_rows), Decimal("0"))
    return AccountListResponse(
        data=[serialize_account(row, counts.get(row["id"], 0)) for row in rows],
        summary=AccountSummary(
            total_accounts=len(rows),
            active_accounts=len(active_rows),
            total_balance=round_money(total_balance),
        ),
    )


@app.get("/api/accounts/{account_id}", response_model=AccountDetailResponse)
def get_account(
    account_id: int, authorization: str | None = Header(None)
) -> AccountDetailResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Account not found.")
        recent_rows = conn.execute(
            transaction_select()
            .where(transactions.c.user_id == user_id, transactions.c.account_id == account_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(RECENT_LIMIT)
        ).mappings().all()
        stat_rows = conn.execute(
            select(
                transactions.c.type,
                func.coalesce(func.sum(transactions.c.amount), 0),
                func.count(transactions.c.id),
            )
            .where(transactions.c.user_id == user_id, transactions.c.account_id == account_id)
            .group_by(transactions.c.type)
        ).all()

    flows = fold_flows((txn_type, total) for txn_type, total, _ in stat_rows)
    account = serialize_account(row, sum(count for _, _, count in stat_rows))
    return AccountDetailResponse(
        **account.model_dump(),
        recent_transactions=[serialize_transaction(txn) for txn in recent_rows],
        stats=AccountStats(
            total_income=round_money(flows.income),
            total_expenses=round_money(flows.expense),
            transaction_count=account.transaction_count or 0,
        ),
    )


@app.post("/api/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    payload: AccountPayload, authorization: str | None = Header(None)
) -> AccountResponse:
    user_id = get_user_id(authorization)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_unique_active_account(conn, user_id, payload.name)
        account_id = conn.execute(
            insert(accounts)
            .values(
                user_id=user_id,
                name=payload.name,
                type=payload.type,
                balance=payload.balance,
                initial_balance=payload.balance,
                color=payload.color,
                icon=payload.icon,
                description=payload.description,
                bank=payload.bank.model_dump() if payload.bank else None,
                credit_limit=payload.credit_limit,
                is_active=True,
            )
            .returning(accounts.c.id)
        ).scalar_one()
        row = conn.execute(select(accounts).where(accounts.c.id == account_id)).mappings().one()

    logger.info("Created account %s for user %s", account_id, user_id)
    return serialize_account(row, 0)


@app.put("/api/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int,
    payload: AccountUpdatePayload,
    authorization: str | None = Header(None),
) -> AccountResponse:
    user_id = get_user_id(authorization)
    changes = payload.model_dump(exclude_unset=True)
    is_active = changes.pop("is_active", None)

    with engine.begin() as conn:
        existing = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Account not found.")

        merged = {
            "name": existing["name"],
            "type": existing["type"],
            "balance": existing["balance"],
            "color": existing["color"],
            "icon": existing["icon"],
            "description": existing["description"],
            "bank": existing["bank"],
            "credit_limit": existing["credit_limit"],
        }
        merged.update(changes)
        try:
            candidate = AccountPayload.validate_payload(AccountPayload(**merged))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        resulting_active = existing["is_active"] if is_active is None else is_active
        if resulting_active:
            ensure_unique_active_account(conn, user_id, candidate.name, exclude_id=account_id)

        conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .values(
                name=candidate.name,
                type=candidate.type,
                color=candidate.color,
                icon=candidate.icon,
                description=candidate.description,
                bank=candidate.bank.model_dump() if candidate.bank else None,
                credit_limit=candidate.credit_limit,
                is_active=resulting_active,
            )
        )
        row = conn.execute(select(accounts).where(accounts.c.id == account_id)).mappings().one()
    return serialize_account(row)


@app.delete("/api/accounts/{account_id}")
def delete_account(account_id: int, authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        existing = conn.execute(
            select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Account not found.")
        linked = conn.execute(
            select(func.count(transactions.c.id)).where(
                transactions.c.user_id == user_id, transactions.c.account_id == account_id
            )
        ).scalar_one()
        if linked:
            conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
                .values(is_active=False)
            )
            logger.info("Deactivated account %s with %s linked transactions", account_id, linked)
            return {"status": "deactivated"}
        conn.execute(
            accounts.delete().where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        )
    return {"status": "deleted"}


@app.get("/api/accounts/{account_id}/balance-history", response_model=BalanceHistoryResponse)
def account_balance_history(
    account_id: int,
    days: int = Query(30, ge=1, le=3650),
    authorization: str | None = Header(None),
) -> BalanceHistoryResponse:
    user_id = get_user_id(authorization)
    start_date = date.today() - timedelta(days=days)
    with engine.begin() as conn:
        account = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not account:
            raise HTTPException(status_code=404, detail="Account not found.")
        earlier = conn.execute(
            select(transactions.c.type, func.coalesce(func.sum(transactions.c.amount), 0))
            .where(
                transactions.c.user_id == user_id,
                transactions.c.account_id == account_id,
                transactions.c.date < start_date,
            )
            .group_by(transactions.c.type)
        ).all()
        window_rows = conn.execute(
            select(transactions)
            .where(
                transactions.c.user_id == user_id,
                transactions.c.account_id == account_id,
                transactions.c.date >= start_date,
            )
            .order_by(transactions.c.date.asc(), transactions.c.id.asc())
        ).mappings().all()

    running = coerce_decimal(account["initial_balance"]) + fold_flows(earlier).net
    history = [BalanceHistoryPoint(date=start_date, balance=round_money(running))]
    for row in window_rows:
        running += to_cents(row["amount"]) if row["type"] == "income" else -to_cents(row["amount"])
        history.append(
            BalanceHistoryPoint(
                date=row["date"],
                balance=round_money(running),
                transaction=BalanceHistoryTransaction(
                    id=row["id"],
                    amount=row["amount"],
                    type=row["type"],
                    description=row["description"],
                ),
            )
        )
    return BalanceHistoryResponse(
        account={
            "id": account["id"],
            "name": account["name"],
            "current_balance": coerce_decimal(account["balance"]),
        },
        history=history,
    )


@app.get("/api/categories", response_model=CategoryListResponse)
def list_categories(
    category_type: str | None = Query(None, alias="type"),
    include_inactive: bool = Query(False),
    authorization: str | None = Header(None),
) -> CategoryListResponse:
    user_id = get_user_id(authorization)
    conditions = [categories.c.user_id == user_id]
    if category_type:
        try:
            conditions.append(categories.c.type == normalize_type(category_type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not include_inactive:
        conditions.append(categories.c.is_active.is_(True))

    with engine.begin() as conn:
        rows = conn.execute(
            select(categories)
            .where(*conditions)
            .order_by(categories.c.sort_order.asc(), categories.c.name.asc())
        ).mappings().all()
        stats = {
            category_id: (count, coerce_decimal(total))
            for category_id, count, total in conn.execute(
                select(
                    transactions.c.category_id,
                    func.count(transactions.c.id),
                    func.coalesce(func.sum(transactions.c.amount), 0),
                )
                .where(transactions.c.user_id == user_id)
                .group_by(transactions.c.category_id)
            ).all()
        }

    items = []
    for row in rows:
        count, total = stats.get(row["id"], (0, Decimal("0")))
        items.append(serialize_category(row, count, round_money(total)))

    grouped = {
        "income": [item for item in items if item.type == "income"],
        "expense": [item for item in items if item.type == "expense"],
    }
    return CategoryListResponse(
        data=items if category_type else grouped,
        summary=CategorySummary(
            total_categories=len(items),
            income_categories=len(grouped["income"]),
            expense_categories=len(grouped["expense"]),
            active_categories=sum(1 for item in items if item.is_active),
        ),
    )


@app.get("/api/categories/{category_id}", response_model=CategoryDetailResponse)
def get_category(
    category_id: int, authorization: str | None = Header(None)
) -> CategoryDetailResponse:
    user_id = get_user_id(authorization)
    history_start = shift_month_keep_day(date.today(), -CATEGORY_HISTORY_MONTHS)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Category not found.")
        count, total = conn.execute(
            select(
                func.count(transactions.c.id),
                func.coalesce(func.sum(transactions.c.amount), 0),
            ).where(transactions.c.user_id == user_id, transactions.c.category_id == category_id)
        ).one()
        recent_rows = conn.execute(
            transaction_select()
            .where(transactions.c.user_id == user_id, transactions.c.category_id == category_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(RECENT_LIMIT)
        ).mappings().all()
        history_rows = conn.execute(
            select(transactions.c.date, transactions.c.amount).where(
                transactions.c.user_id == user_id,
                transactions.c.category_id == category_id,
                transactions.c.date >= history_start,
            )
        ).all()

    buckets: dict[tuple[int, int], list[Decimal]] = {}
    for txn_date, amount in history_rows:
        buckets.setdefault((txn_date.year, txn_date.month), []).append(coerce_decimal(amount))
    monthly_stats = [
        MonthlyStat(
            year=year,
            month=month,
            total=round_money(sum(buckets[(year, month)], Decimal("0"))),
            count=len(buckets[(year, month)]),
        )
        for year, month in sorted(buckets)
    ]

    total = coerce_decimal(total)
    category = serialize_category(row, count, round_money(total))
    return CategoryDetailResponse(
        **category.model_dump(),
        stats=CategoryStats(
            transaction_count=count,
            total_amount=round_money(total),
            average_amount=round_money(total / count) if count else Decimal("0.00"),
        ),
        recent_transactions=[serialize_transaction(txn) for txn in recent_rows],
        monthly_stats=monthly_stats,
    )


@app.post("/api/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryPayload, authorization: str | None = Header(None)
) -> CategoryResponse:
    user_id = get_user_id(authorization)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            validate_parent_category(conn, user_id, payload.parent_category_id, payload.type)
            category_id = conn.execute(
                insert(categories)
                .values(
                    user_id=user_id,
                    name=payload.name,
                    type=payload.type,
                    color=payload.color,
                    icon=payload.icon,
                    description=payload.description,
                    parent_category_id=payload.parent_category_id,
                    sort_order=payload.sort_order,
                    is_default=False,
                    is_active=True,
                )
                .returning(categories.c.id)
            ).scalar_one()
            row = conn.execute(select(categories).where(categories.c.id == category_id)).mappings().one()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return serialize_category(row)


@app.put("/api/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryUpdatePayload,
    authorization: str | None = Header(None),
) -> CategoryResponse:
    user_id = get_user_id(authorization)
    changes = payload.model_dump(exclude_unset=True)
    is_active = changes.pop("is_active", None)

    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(categories).where(
                    categories.c.id == category_id, categories.c.user_id == user_id
                )
            ).mappings().first()
            if not existing:
                raise HTTPException(status_code=404, detail="Category not found.")

            merged = {
                "name": existing["name"],
                "type": existing["type"],
                "color": existing["color"],
                "icon": existing["icon"],
                "description": existing["description"],
                "parent_category_id": existing["parent_category_id"],
                "sort_order": existing["sort_order"],
            }
            merged.update(changes)
            try:
                candidate = CategoryPayload.validate_payload(CategoryPayload(**merged))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc

            if existing["is_default"]:
                if candidate.name != existing["name"] or candidate.type != existing["type"]:
                    raise HTTPException(
                        status_code=400, detail="Default categories cannot change name or type."
                    )
                if is_active is False:
                    raise HTTPException(
                        status_code=400, detail="Default categories cannot be deactivated."
                    )
            if candidate.type != existing["type"] and category_in_use(conn, user_id, category_id):
                raise HTTPException(
                    status_code=409, detail="Category type cannot change while it is in use."
                )
            validate_parent_category(
                conn, user_id, candidate.parent_category_id, candidate.type, category_id
            )

            conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.user_id == user_id)
                .values(
                    name=candidate.name,
                    type=candidate.type,
                    color=candidate.color,
                    icon=candidate.icon,
                    description=candidate.description,
                    parent_category_id=candidate.parent_category_id,
                    sort_order=candidate.sort_order,
                    is_active=existing["is_active"] if is_active is None else is_active,
                )
            )
            row = conn.execute(select(categories).where(categories.c.id == category_id)).mappings().one()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return serialize_category(row)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int, authorization: str | None = Header(None)
) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories.c.id, categories.c.is_default).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Category not found.")
        if row["is_default"]:
            raise HTTPException(status_code=400, detail="Default categories cannot be deleted.")
        if category_in_use(conn, user_id, category_id):
            conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.user_id == user_id)
                .values(is_active=False)
            )
            return {"status": "deactivated"}
        conn.execute(
            update(categories)
            .where(categories.c.user_id == user_id, categories.c.parent_category_id == category_id)
            .values(parent_category_id=None)
        )
        conn.execute(
            categories.delete().where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        )
    return {"status": "deleted"}


@app.get("/api/transactions", response_model=TransactionListResponse)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    category_id: int | None = Query(None),
    account_id: int | None = Query(None),
    txn_type: str | None = Query(None, alias="type"),
    search: str | None = Query(None),
    sort_by: str = Query("date"),
    sort_order: str = Query("desc"),
    authorization: str | None = Header(None),
) -> TransactionListResponse:
    user_id = get_user_id(authorization)
    sort_columns = {
        "date": transactions.c.date,
        "amount": transactions.c.amount,
        "description": transactions.c.description,
        "type": transactions.c.type,
        "created_at": transactions.c.created_at,
    }
    if sort_by not in sort_columns:
        raise HTTPException(status_code=400, detail="Unsupported sort field.")
    if sort_order not in {"asc", "desc"}:
        raise HTTPException(status_code=400, detail="Sort order must be asc or desc.")

    conditions = [transactions.c.user_id == user_id]
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)
    if category_id is not None:
        conditions.append(transactions.c.category_id == category_id)
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    if txn_type:
        try:
            conditions.append(transactions.c.type == normalize_type(txn_type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    if search and search.strip():
        conditions.append(transactions.c.description.ilike(f"%{search.strip()}%"))

    sort_column = sort_columns[sort_by]
    ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()
    tiebreak = transactions.c.id.asc() if sort_order == "asc" else transactions.c.id.desc()

    with engine.begin() as conn:
        total = conn.execute(
            select(func.count(transactions.c.id)).where(*conditions)
        ).scalar_one()
        rows = conn.execute(
            transaction_select()
            .where(*conditions)
            .order_by(ordering, tiebreak)
            .offset((page - 1) * limit)
            .limit(limit)
        ).mappings().all()
        flow_rows = conn.execute(
            select(transactions.c.type, func.coalesce(func.sum(transactions.c.amount), 0))
            .where(*conditions)
            .group_by(transactions.c.type)
        ).all()

    flows = fold_flows(flow_rows)
    return TransactionListResponse(
        data=[serialize_transaction(row) for row in rows],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
        summary=FlowSummaryResponse(
            total_income=round_money(flows.income),
            total_expenses=round_money(flows.expense),
            net_income=round_money(flows.net),
        ),
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, authorization: str | None = Header(None)
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        return fetch_transaction(conn, user_id, transaction_id)


@app.post("/api/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload, authorization: str | None = Header(None)
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        fetch_active_account(conn, user_id, payload.account_id)
        category = fetch_active_category(conn, user_id, payload.category_id)
        ensure_category_matches(category["type"], payload.type)

        transaction_id = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                account_id=payload.account_id,
                category_id=payload.category_id,
                amount=payload.amount,
                type=payload.type,
                date=payload.date,
                description=payload.description,
                notes=payload.notes,
                tags=payload.tags,
                is_recurring=payload.is_recurring,
                recurring_frequency=payload.recurring_frequency,
                recurring_end_date=payload.recurring_end_date,
                recurring_next_date=resolve_next_date(
                    payload.is_recurring,
                    payload.recurring_frequency,
                    payload.date,
                    payload.recurring_end_date,
                ),
            )
            .returning(transactions.c.id)
        ).scalar_one()
        apply_balance_deltas(
            conn,
            user_id,
            creation_deltas(LedgerEntry(payload.account_id, payload.amount, payload.type)),
        )
        result = fetch_transaction(conn, user_id, transaction_id)

    logger.info("Created transaction %s on account %s", transaction_id, payload.account_id)
    return result


@app.put("/api/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    authorization: str | None = Header(None),
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    changes = payload.model_dump(exclude_unset=True)

    with engine.begin() as conn:
        existing = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")

        merged = {
            key: existing[key]
            for key in (
                "account_id",
                "category_id",
                "amount",
                "type",
                "date",
                "description",
                "notes",
                "tags",
                "is_recurring",
                "recurring_frequency",
                "recurring_end_date",
            )
        }
        merged["tags"] = merged["tags"] or []
        merged.update(changes)
        try:
            candidate = TransactionPayload.validate_payload(TransactionPayload(**merged))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if candidate.account_id != existing["account_id"]:
            fetch_active_account(conn, user_id, candidate.account_id)
        if candidate.category_id != existing["category_id"]:
            category_type = fetch_active_category(conn, user_id, candidate.category_id)["type"]
        else:
            category_type = conn.execute(
                select(categories.c.type).where(categories.c.id == candidate.category_id)
            ).scalar_one()
        ensure_category_matches(category_type, candidate.type)

        deltas = reconcile_update(
            LedgerEntry(existing["account_id"], existing["amount"], existing["type"]),
            LedgerEntry(candidate.account_id, candidate.amount, candidate.type),
        )
        conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(
                account_id=candidate.account_id,
                category_id=candidate.category_id,
                amount=candidate.amount,
                type=candidate.type,
                date=candidate.date,
                description=candidate.description,
                notes=candidate.notes,
                tags=candidate.tags,
                is_recurring=candidate.is_recurring,
                recurring_frequency=candidate.recurring_frequency,
                recurring_end_date=candidate.recurring_end_date,
                recurring_next_date=resolve_next_date(
                    candidate.is_recurring,
                    candidate.recurring_frequency,
                    candidate.date,
                    candidate.recurring_end_date,
                ),
            )
        )
        apply_balance_deltas(conn, user_id, deltas)
        result = fetch_transaction(conn, user_id, transaction_id)

    logger.info("Updated transaction %s; balance deltas %s", transaction_id, deltas)
    return result


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, authorization: str | None = Header(None)
) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        existing = conn.execute(
            select(transactions.c.account_id, transactions.c.amount, transactions.c.type).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        apply_balance_deltas(
            conn,
            user_id,
            reversal_deltas(LedgerEntry(existing["account_id"], existing["amount"], existing["type"])),
        )
        conn.execute(
            transactions.delete().where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        )
    logger.info("Deleted transaction %s", transaction_id)
    return {"status": "deleted"}


@app.post(
    "/api/transactions/bulk-import",
    response_model=BulkImportResponse,
    response_model_exclude_none=True,
)
@app.post(
    "/api/upload/bulk-import",
    response_model=BulkImportResponse,
    response_model_exclude_none=True,
)
def bulk_import_transactions(
    payload: BulkImportPayload, authorization: str | None = Header(None)
) -> BulkImportResponse:
    user_id = get_user_id(authorization)
    try:
        payload = BulkImportPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        account_id = conn.execute(
            select(accounts.c.id)
            .where(accounts.c.user_id == user_id, accounts.c.is_active.is_(True))
            .order_by(accounts.c.created_at.asc(), accounts.c.id.asc())
            .limit(1)
        ).scalar_one_or_none()
        if account_id is None:
            raise HTTPException(status_code=400, detail="No active account found.")
        options = [
            CategoryOption(id=row["id"], name=row["name"], type=row["type"])
            for row in conn.execute(
                select(categories.c.id, categories.c.name, categories.c.type)
                .where(categories.c.user_id == user_id, categories.c.is_active.is_(True))
                .order_by(categories.c.id.asc())
            ).mappings().all()
        ]

        plan = plan_bulk_import(payload.transactions, account_id, options)
        if plan.rows:
            conn.execute(
                insert(transactions),
                [
                    {
                        "user_id": user_id,
                        "account_id": row.account_id,
                        "category_id": row.category_id,
                        "amount": row.amount,
                        "type": row.type,
                        "date": row.date,
                        "description": row.description,
                        "notes": None,
                        "tags": list(row.tags),
                        "is_recurring": False,
                    }
                    for row in plan.rows
                ],
            )
        apply_balance_deltas(conn, user_id, plan.deltas)

    logger.info(
        "Bulk import for user %s: %s imported, %s failed",
        user_id,
        len(plan.rows),
        len(plan.failures),
    )
    return BulkImportResponse(
        imported=len(plan.rows),
        errors=len(plan.failures),
        total=len(payload.transactions),
        details=[
            ImportFailureResponse(row=failure.row, error=failure.error) for failure in plan.failures
        ]
        or None,
    )


@app.get("/api/budgets", response_model=BudgetListResponse)
def list_budgets(
    period: str | None = Query(None),
    is_active: bool | None = Query(None),
    category_type: str | None = Query(None),
    authorization: str | None = Header(None),
) -> BudgetListResponse:
    user_id = get_user_id(authorization)
    today = date.today()
    conditions = [budgets.c.user_id == user_id]
    try:
        if period:
            conditions.append(budgets.c.period == BudgetPeriod.validate(period))
        if category_type:
            conditions.append(categories.c.type == normalize_type(category_type))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if is_active is not None:
        conditions.append(budgets.c.is_active.is_(is_active))

    with engine.begin() as conn:
        rows = conn.execute(
            budget_select().where(*conditions).order_by(budgets.c.created_at.desc(), budgets.c.id.desc())
        ).mappings().all()
        items = []
        for row in rows:
            txn_rows = conn.execute(budget_transactions_stmt(user_id, row)).mappings().all()
            items.append(BudgetResponse(**serialize_budget(row, evaluate_budget_row(txn_rows, row, today))))

    return BudgetListResponse(
        data=items,
        summary=BudgetSummary(
            total_budgets=len(items),
            active_budgets=sum(1 for item in items if item.is_active),
            over_budget_count=sum(1 for item in items if item.status == "over"),
            warning_count=sum(1 for item in items if item.status == "warning"),
            total_budgeted=round_money(sum((item.amount for item in items), Decimal("0"))),
            total_spent=round_money(sum((item.spent for item in items), Decimal("0"))),
        ),
    )


@app.get("/api/budgets/{budget_id}", response_model=BudgetDetailResponse)
def get_budget(
    budget_id: int, authorization: str | None = Header(None)
) -> BudgetDetailResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = fetch_budget_row(conn, user_id, budget_id)
        txn_rows = conn.execute(
            budget_transactions_stmt(user_id, row).order_by(
                transactions.c.date.desc(), transactions.c.id.desc()
            )
        ).mappings().all()

    evaluation = evaluate_budget_row(txn_rows, row, date.today())
    daily: dict[date, list[Decimal]] = {}
    for txn in txn_rows:
        daily.setdefault(txn["date"], []).append(coerce_decimal(txn["amount"]))
    return BudgetDetailResponse(
        **serialize_budget(row, evaluation),
        transactions=[serialize_transaction(txn) for txn in txn_rows],
        daily_spending=[
            DailySpending(
                date=day,
                total=round_money(sum(daily[day], Decimal("0"))),
                count=len(daily[day]),
            )
            for day in sorted(daily)
        ],
    )


@app.post("/api/budgets", response_model=BudgetResponse, status_code=201)
def create_budget(
    payload: BudgetPayload, authorization: str | None = Header(None)
) -> BudgetResponse:
    user_id = get_user_id(authorization)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_budget_category(conn, user_id, payload.category_id)
        ensure_no_budget_overlap(
            conn, user_id, payload.category_id, payload.start_date, payload.end_date
        )
        budget_id = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                name=payload.name,
                category_id=payload.category_id,
                amount=payload.amount,
                period=payload.period,
                start_date=payload.start_date,
                end_date=payload.end_date,
                alert_threshold=payload.alert_threshold,
                is_active=True,
            )
            .returning(budgets.c.id)
        ).scalar_one()
        row = fetch_budget_row(conn, user_id, budget_id)
        txn_rows = conn.execute(budget_transactions_stmt(user_id, row)).mappings().all()

    logger.info("Created budget %s for category %s", budget_id, payload.category_id)
    return BudgetResponse(**serialize_budget(row, evaluate_budget_row(txn_rows, row, date.today())))


@app.put("/api/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    authorization: str | None = Header(None),
) -> BudgetResponse:
    user_id = get_user_id(authorization)
    changes = payload.model_dump(exclude_unset=True)
    is_active = changes.pop("is_active", None)

    with engine.begin() as conn:
        existing = conn.execute(
            select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Budget not found.")

        merged = {
            key: existing[key]
            for key in (
                "name",
                "category_id",
                "amount",
                "period",
                "start_date",
                "end_date",
                "alert_threshold",
            )
        }
        merged.update(changes)
        try:
            candidate = BudgetPayload.validate_payload(BudgetPayload(**merged))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        resulting_active = existing["is_active"] if is_active is None else is_active
        if candidate.category_id != existing["category_id"]:
            ensure_budget_category(conn, user_id, candidate.category_id)
        if resulting_active:
            ensure_no_budget_overlap(
                conn,
                user_id,
                candidate.category_id,
                candidate.start_date,
                candidate.end_date,
                exclude_id=budget_id,
            )

        conn.execute(
            update(budgets)
            .where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
            .values(
                name=candidate.name,
                category_id=candidate.category_id,
                amount=candidate.amount,
                period=candidate.period,
                start_date=candidate.start_date,
                end_date=candidate.end_date,
                alert_threshold=candidate.alert_threshold,
                is_active=resulting_active,
            )
        )
        row = fetch_budget_row(conn, user_id, budget_id)
        txn_rows = conn.execute(budget_transactions_stmt(user_id, row)).mappings().all()

    return BudgetResponse(**serialize_budget(row, evaluate_budget_row(txn_rows, row, date.today())))


@app.delete("/api/budgets/{budget_id}")
def delete_budget(budget_id: int, authorization: str | None = Header(None)) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        result = conn.execute(
            budgets.delete().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Budget not found.")
    return {"status": "deleted"}


@app.get("/api/analytics/spending", response_model=SpendingAnalyticsResponse)
def spending_analytics(
    period: str = Query(DEFAULT_PERIOD),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    authorization: str | None = Header(None),
) -> SpendingAnalyticsResponse:
    user_id = get_user_id(authorization)
    today = date.today()
    try:
        range_start, range_end = resolve_range(period, start_date, end_date, today)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    conditions = [transactions.c.user_id == user_id, transactions.c.date >= range_start]
    if range_end is not None:
        conditions.append(transactions.c.date <= range_end)

    with engine.begin() as conn:
        spending = category_totals(conn, conditions, "expense", with_average=True)
        income = category_totals(conn, conditions, "income", with_average=False)
        trend_rows = conn.execute(
            select(transactions.c.date, transactions.c.type, transactions.c.amount).where(
                transactions.c.user_id == user_id,
                transactions.c.date >= trend_start(today),
            )
        ).all()
        account_rows = conn.execute(
            select(
                accounts.c.id,
                accounts.c.name,
                accounts.c.type,
                accounts.c.color,
                transactions.c.type.label("txn_type"),
                func.coalesce(func.sum(transactions.c.amount), 0).label("total"),
            )
            .select_from(transactions.join(accounts, accounts.c.id == transactions.c.account_id))
            .where(*conditions)
            .group_by(
                accounts.c.id,
                accounts.c.name,
                accounts.c.type,
                accounts.c.color,
                transactions.c.type,
            )
        ).mappings().all()
        recent_rows = conn.execute(
            transaction_select()
            .where(
                transactions.c.user_id == user_id,
                transactions.c.date >= today - timedelta(days=RECENT_ACTIVITY_DAYS),
            )
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(RECENT_ACTIVITY_LIMIT)
        ).mappings().all()
        totals = fold_flows(
            conn.execute(
                select(transactions.c.type, func.coalesce(func.sum(transactions.c.amount), 0))
                .where(*conditions)
                .group_by(transactions.c.type)
            ).all()
        )

    by_account: dict[int, dict[str, Any]] = {}
    for row in account_rows:
        entry = by_account.setdefault(
            row["id"],
            {"name": row["name"], "type": row["type"], "color": row["color"], "flows": []},
        )
        entry["flows"].append((row["txn_type"], row["total"]))
    account_flows = []
    for account_id, entry in by_account.items():
        flows = fold_flows(entry["flows"])
        account_flows.append(
            AccountFlow(
                account_id=account_id,
                name=entry["name"],
                type=entry["type"],
                color=entry["color"],
                income=round_money(flows.income),
                expense=round_money(flows.expense),
                net=round_money(flows.net),
            )
        )
    account_flows.sort(key=lambda item: item.expense, reverse=True)

    return SpendingAnalyticsResponse(
        spending_by_category=spending,
        income_by_category=income,
        monthly_trend=[
            TrendEntry(
                year=point.year,
                month=point.month,
                income=point.income,
                expense=point.expense,
                net=point.net,
            )
            for point in monthly_trend(trend_rows)
        ],
        spending_by_account=account_flows,
        recent_transactions=[serialize_transaction(row) for row in recent_rows],
        summary=SpendingSummary(
            total_income=round_money(totals.income),
            total_expenses=round_money(totals.expense),
            net_income=round_money(totals.net),
            period=period,
            start_date=range_start,
            end_date=range_end,
        ),
    )


@app.get("/api/analytics/health", response_model=FinancialHealthResponse)
def financial_health(
    authorization: str | None = Header(None),
) -> FinancialHealthResponse:
    user_id = get_user_id(authorization)
    today = date.today()
    last_month_start, this_month_start = previous_month_range(today)

    with engine.begin() as conn:
        flows = fold_flows(
            conn.execute(
                select(transactions.c.type, func.coalesce(func.sum(transactions.c.amount), 0))
                .where(
                    transactions.c.user_id == user_id,
                    transactions.c.date >= last_month_start,
                    transactions.c.date < this_month_start,
                )
                .group_by(transactions.c.type)
            ).all()
        )
        balances = [
            AccountBalance(type=row["type"], balance=coerce_decimal(row["balance"]))
            for row in conn.execute(
                select(accounts.c.type, accounts.c.balance).where(
                    accounts.c.user_id == user_id, accounts.c.is_active.is_(True)
                )
            ).mappings().all()
        ]
        usages = []
        for row in conn.execute(
            budget_select().where(
                budgets.c.user_id == user_id,
                budgets.c.is_active.is_(True),
                budgets.c.start_date <= today,
                budgets.c.end_date >= today,
            )
        ).mappings().all():
            txn_rows = conn.execute(budget_transactions_stmt(user_id, row)).mappings().all()
            evaluation = evaluate_budget_row(txn_rows, row, today)
            usages.append(BudgetUsage(budgeted=coerce_decimal(row["amount"]), spent=evaluation.spent))

    report = assess_financial_health(flows.income, flows.expense, balances, usages)
    return FinancialHealthResponse(
        overall_score=report.overall_score,
        scores=HealthScoresResponse(
            savings_rate=round_whole(report.scores.savings_rate),
            budget_adherence=round_whole(report.scores.budget_adherence),
            emergency_fund=round_whole(report.scores.emergency_fund),
            expense_control=round_whole(report.scores.expense_control),
            debt_management=round_whole(report.scores.debt_management),
        ),
        metrics=HealthMetricsResponse(
            savings_rate=report.metrics.savings_rate,
            expense_ratio=report.metrics.expense_ratio,
            emergency_fund_ratio=report.metrics.emergency_fund_ratio,
            debt_to_income_ratio=report.metrics.debt_to_income_ratio,
            total_balance=report.metrics.total_balance,
            total_debt=report.metrics.total_debt,
        ),
        insights=[
            InsightResponse(
                type=insight.type,
                title=insight.title,
                description=insight.description,
                action=insight.action,
            )
            for insight in report.insights
        ],
        period=HealthPeriod(
            month=last_month_start.strftime("%Y-%m"),
            income=round_money(flows.income),
            expenses=round_money(flows.expense),
        ),
    )


@app.get("/api/upload/template")
def upload_template(authorization: str | None = Header(None)) -> dict:
    get_user_id(authorization)
    return {
        "template": UPLOAD_TEMPLATE,
        "instructions": {
            "required_columns": ["date", "description", "amount"],
            "optional_columns": ["category", "tags"],
            "date_format": "YYYY-MM-DD",
            "amount_format": "Negative for expenses, positive for income",
        },
    }


@app.post("/api/upload/transactions", response_model=UploadResponse)
async def upload_transactions(
    file: UploadFile | None = File(None),
    authorization: str | None = Header(None),
) -> UploadResponse:
    get_user_id(authorization)
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    extension = os.path.splitext(file.filename)[1].lower()
    if extension in SPREADSHEET_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Excel files not yet supported.")
    if extension != ".csv":
        raise HTTPException(status_code=400, detail="Only CSV and Excel files are allowed.")

    contents = await file.read()
    if len(contents) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File exceeds the upload size limit.")

    staged_path = stage_upload(contents, extension)
    try:
        parsed = parse_transactions_csv(read_staged_csv(staged_path))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        remove_staged_upload(staged_path)

    if not parsed.rows:
        raise HTTPException(status_code=400, detail="No valid transactions found in file.")
    logger.info(
        "Parsed upload %s: %s rows, %s skipped",
        file.filename,
        len(parsed.rows),
        len(parsed.skipped_rows),
    )
    return UploadResponse(
        transactions=parsed.rows,
        count=len(parsed.rows),
        preview=parsed.rows[:RECENT_LIMIT],
        skipped_rows=parsed.skipped_rows,
    )
