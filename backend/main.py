import json
import os
from datetime import datetime
from decimal import Decimal
from typing import Any

import bcrypt
from fastapi import FastAPI, HTTPException, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Column,
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

from backend.debt_normalizer import (
    DEFAULT_POLICY,
    DebtNormalizationError,
    normalize_debt_type,
    normalize_debts,
)
from backend.debt_strategy import compare_records, report_to_dict, summarize_debts
from backend.liability_source import (
    CompositeLiabilitySource,
    LiabilitySource,
    LiabilitySourceUnavailable,
    PlaidLiabilitySource,
    StaticLiabilitySource,
    empty_liabilities,
)
from backend.logging_config import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:8081")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./induswealth.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

MAX_APR = Decimal("100")


def build_liability_source() -> LiabilitySource:
    source: LiabilitySource = PlaidLiabilitySource(
        client_id=os.getenv("PLAID_CLIENT_ID"),
        secret=os.getenv("PLAID_SECRET"),
        environment=os.getenv("PLAID_ENV", "sandbox"),
    )
    fallback_path = os.getenv("LIABILITIES_FALLBACK_FILE")
    if fallback_path:
        with open(fallback_path, encoding="utf-8") as handle:
            fallback = StaticLiabilitySource(liabilities=json.load(handle))
        source = CompositeLiabilitySource(primary=source, fallback=fallback)
    return source


LIABILITY_SOURCE = build_liability_source()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("plaid_access_token", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

custom_debts = Table(
    "custom_debts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("debt_type", String(50), nullable=False, server_default="other"),
    Column("balance", Numeric(15, 2), nullable=False),
    Column("apr", Numeric(5, 2), nullable=False, server_default="15.00"),
    Column("min_payment", Numeric(15, 2), server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

debt_apr_overrides = Table(
    "debt_apr_overrides",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("plaid_account_id", String(255), nullable=False),
    Column("apr", Numeric(5, 2), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    UniqueConstraint("user_id", "plaid_account_id", name="uq_apr_overrides_user_account"),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    plaid_access_token: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    plaid_linked: bool


class CustomDebtPayload(BaseModel):
    name: str
    debt_type: str | None = None
    balance: Decimal
    apr: Decimal | None = None
    min_payment: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "CustomDebtPayload") -> "CustomDebtPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Debt name required.")
        payload.debt_type = normalize_debt_type(payload.debt_type)
        if payload.balance < 0:
            raise ValueError("Balance must not be negative.")
        if payload.apr is None:
            payload.apr = DEFAULT_POLICY.default_apr(payload.debt_type)
        validate_apr(payload.apr)
        if payload.min_payment is not None and payload.min_payment < 0:
            raise ValueError("Minimum payment must not be negative.")
        return payload


class CustomDebtResponse(BaseModel):
    id: str
    name: str
    debt_type: str
    balance: float
    apr: float
    min_payment: float
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AprOverridePayload(BaseModel):
    plaid_account_id: str
    apr: Decimal

    @classmethod
    def validate_payload(cls, payload: "AprOverridePayload") -> "AprOverridePayload":
        payload.plaid_account_id = payload.plaid_account_id.strip()
        if not payload.plaid_account_id:
            raise ValueError("plaid_account_id required.")
        validate_apr(payload.apr)
        return payload


class AprOverrideResponse(BaseModel):
    plaid_account_id: str
    apr: float
    updated_at: datetime | None = None


class DebtCalculatePayload(BaseModel):
    extra_payment: Decimal | None = None
    liabilities: dict[str, Any] | None = None
    custom_debts: list[dict[str, Any]] | None = None
    rollover_extra: bool = False


class DebtSummaryResponse(BaseModel):
    total_balance: float
    total_minimum_monthly: float
    highest_apr: float
    highest_apr_account: str | None = None
    total_monthly_interest_cost: float
    accounts_count: int


def validate_apr(apr: Decimal) -> Decimal:
    if apr < 0 or apr > MAX_APR:
        raise ValueError("APR must be between 0 and 100.")
    return apr


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


def resolve_access_token(conn, user_id: int) -> str | None:
    token = conn.execute(
        select(users.c.plaid_access_token).where(users.c.id == user_id)
    ).scalar_one_or_none()
    return token or os.getenv("PLAID_ACCESS_TOKEN_OVERRIDE")


def fetch_custom_debt_rows(conn, user_id: int) -> list[dict]:
    rows = conn.execute(
        select(custom_debts)
        .where(custom_debts.c.user_id == user_id)
        .order_by(custom_debts.c.created_at.desc(), custom_debts.c.id.desc())
    ).mappings().all()
    return [dict(row) for row in rows]


def fetch_apr_overrides(conn, user_id: int) -> dict[str, Decimal]:
    rows = conn.execute(
        select(debt_apr_overrides.c.plaid_account_id, debt_apr_overrides.c.apr).where(
            debt_apr_overrides.c.user_id == user_id
        )
    ).all()
    return {account_id: apr for account_id, apr in rows}


def custom_debt_response(row: dict) -> CustomDebtResponse:
    return CustomDebtResponse(
        id=f"custom_{row['id']}",
        name=row["name"],
        debt_type=row["debt_type"],
        balance=float(row["balance"]),
        apr=float(row["apr"]),
        min_payment=float(row["min_payment"] or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def load_liabilities(access_token: str | None) -> tuple[dict, str]:
    if not access_token:
        return empty_liabilities(), "not_linked"
    try:
        return dict(LIABILITY_SOURCE.get_liabilities(access_token)), "connected"
    except LiabilitySourceUnavailable as exc:
        logger.warning(
            "Liability source unavailable",
            extra={"error_code": exc.error_code},
        )
        if exc.login_required:
            return empty_liabilities(), "login_required"
        return empty_liabilities(), "unavailable"


def build_debt_records(liabilities: dict, custom_rows: list[dict], overrides: dict):
    try:
        return normalize_debts(liabilities, custom_rows, overrides)
    except DebtNormalizationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


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
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        plaid_linked=bool(row["plaid_access_token"]),
    )


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    token = payload.plaid_access_token.strip() if payload.plaid_access_token else None
    with engine.begin() as conn:
        row = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(plaid_access_token=token)
            .returning(users.c.id, users.c.email, users.c.plaid_access_token)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        plaid_linked=bool(row["plaid_access_token"]),
    )


@app.get("/debt")
def get_debt_overview(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        access_token = resolve_access_token(conn, user_id)
        custom_rows = fetch_custom_debt_rows(conn, user_id)
        overrides = fetch_apr_overrides(conn, user_id)

    liabilities, plaid_status = load_liabilities(access_token)
    records = build_debt_records(liabilities, custom_rows, overrides)
    report = compare_records(records, Decimal("0"))
    return {
        "success": True,
        "analysis": report_to_dict(report),
        "raw_liabilities": liabilities,
        "custom_debts": [custom_debt_response(row).model_dump(mode="json") for row in custom_rows],
        "plaid_status": plaid_status,
    }


@app.post("/debt/calculate")
def calculate_debt(
    payload: DebtCalculatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        overrides = fetch_apr_overrides(conn, user_id)
        custom_rows = (
            payload.custom_debts
            if payload.custom_debts is not None
            else fetch_custom_debt_rows(conn, user_id)
        )
        access_token = None if payload.liabilities is not None else resolve_access_token(conn, user_id)

    liabilities = payload.liabilities
    if liabilities is None and not access_token:
        liabilities = empty_liabilities()
    elif liabilities is None:
        try:
            liabilities = dict(LIABILITY_SOURCE.get_liabilities(access_token))
        except LiabilitySourceUnavailable as exc:
            logger.warning(
                "Liability source unavailable",
                extra={"error_code": exc.error_code},
            )
            raise HTTPException(status_code=502, detail=exc.user_message) from exc

    records = build_debt_records(liabilities, custom_rows, overrides)
    report = compare_records(
        records,
        payload.extra_payment or Decimal("0"),
        rollover_extra=payload.rollover_extra,
    )
    return {"success": True, "analysis": report_to_dict(report)}


@app.get("/debt/summary", response_model=DebtSummaryResponse)
def get_debt_summary(x_user_id: str | None = Header(None, alias="x-user-id")) -> DebtSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        access_token = resolve_access_token(conn, user_id)
        custom_rows = fetch_custom_debt_rows(conn, user_id)
        overrides = fetch_apr_overrides(conn, user_id)

    liabilities, _ = load_liabilities(access_token)
    summary = summarize_debts(build_debt_records(liabilities, custom_rows, overrides))
    return DebtSummaryResponse(
        total_balance=float(summary.total_balance),
        total_minimum_monthly=float(summary.total_minimum_monthly),
        highest_apr=float(summary.highest_apr),
        highest_apr_account=summary.highest_apr_account,
        total_monthly_interest_cost=float(summary.total_monthly_interest_cost),
        accounts_count=summary.accounts_count,
    )


@app.get("/debt/custom", response_model=list[CustomDebtResponse])
def list_custom_debts(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CustomDebtResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = fetch_custom_debt_rows(conn, user_id)
    return [custom_debt_response(row) for row in rows]


@app.post("/debt/custom", response_model=CustomDebtResponse)
def create_custom_debt(
    payload: CustomDebtPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CustomDebtResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CustomDebtPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(custom_debts)
        .values(
            user_id=user_id,
            name=payload.name,
            debt_type=payload.debt_type,
            balance=payload.balance,
            apr=payload.apr,
            min_payment=payload.min_payment or Decimal("0"),
        )
        .returning(*custom_debts.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create debt.")
    logger.info("Custom debt created", extra={"user_id": user_id, "debt_id": row["id"]})
    return custom_debt_response(dict(row))


@app.put("/debt/custom/{debt_id}", response_model=CustomDebtResponse)
def update_custom_debt(
    debt_id: int,
    payload: CustomDebtPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CustomDebtResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CustomDebtPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(custom_debts)
        .where(custom_debts.c.id == debt_id, custom_debts.c.user_id == user_id)
        .values(
            name=payload.name,
            debt_type=payload.debt_type,
            balance=payload.balance,
            apr=payload.apr,
            min_payment=payload.min_payment or Decimal("0"),
        )
        .returning(*custom_debts.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Debt not found.")
    return custom_debt_response(dict(row))


@app.delete("/debt/custom/{debt_id}")
def delete_custom_debt(
    debt_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = custom_debts.delete().where(
        custom_debts.c.id == debt_id, custom_debts.c.user_id == user_id
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Debt not found.")
    return {"status": "deleted"}


@app.put("/debt/apr-override", response_model=AprOverrideResponse)
def save_apr_override(
    payload: AprOverridePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AprOverrideResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AprOverridePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        existing = conn.execute(
            select(debt_apr_overrides.c.id).where(
                debt_apr_overrides.c.user_id == user_id,
                debt_apr_overrides.c.plaid_account_id == payload.plaid_account_id,
            )
        ).scalar_one_or_none()
        if existing is None:
            stmt = insert(debt_apr_overrides).values(
                user_id=user_id,
                plaid_account_id=payload.plaid_account_id,
                apr=payload.apr,
            )
        else:
            stmt = (
                update(debt_apr_overrides)
                .where(debt_apr_overrides.c.id == existing)
                .values(apr=payload.apr)
            )
        row = conn.execute(
            stmt.returning(
                debt_apr_overrides.c.plaid_account_id,
                debt_apr_overrides.c.apr,
                debt_apr_overrides.c.updated_at,
            )
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to save APR override.")
    return AprOverrideResponse(
        plaid_account_id=row["plaid_account_id"],
        apr=float(row["apr"]),
        updated_at=row["updated_at"],
    )


@app.delete("/debt/apr-override/{plaid_account_id}")
def delete_apr_override(
    plaid_account_id: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = debt_apr_overrides.delete().where(
        debt_apr_overrides.c.user_id == user_id,
        debt_apr_overrides.c.plaid_account_id == plaid_account_id,
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="APR override not found.")
    return {"status": "deleted"}
