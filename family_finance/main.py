import os
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
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

from family_finance.logger import get_logger
from family_finance.schedule_projection import (
    STATUS_OVERDUE,
    STATUS_PAID,
    STATUS_PENDING,
    SUPPORTED_FREQUENCIES,
    ScheduleDefinition,
    ScheduleInstance,
    ValidationError,
    aggregate_for_period,
    annual_overview,
    annual_total,
    build_schedule,
    classify_period,
    derive_status,
    due_date_for,
    format_due_pattern,
    is_due_in_month,
    next_due_date,
    normalize_frequency,
    record_payment,
    upcoming_occurrences,
)

logger = get_logger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./family_finance.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_default_upcoming_days() -> int:
    raw = os.getenv("UPCOMING_DAYS", "30")
    try:
        value = int(raw)
    except ValueError:
        return 30
    return value if value >= 0 else 30


DEFAULT_UPCOMING_DAYS = get_default_upcoming_days()
DEFAULT_FAMILY_CURRENCY = "INR"
AUTO_LINKED_EDIT_MESSAGE = (
    "Auto-linked schedules cannot be edited. "
    "Edit the source insurance, loan or investment instead."
)
AUTO_LINKED_DELETE_MESSAGE = (
    "Auto-linked schedules cannot be deleted. "
    "Delete or close the source insurance, loan or investment instead."
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

families = Table(
    "families",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default=DEFAULT_FAMILY_CURRENCY),
    Column("owner_id", Integer, ForeignKey("users.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

family_members = Table(
    "family_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, ForeignKey("families.id"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, unique=True),
    Column("role", String(20), nullable=False, server_default="member"),
    Column("relationship", String(50)),
    Column("joined_at", DateTime, nullable=False, server_default=func.now()),
)

scheduled_payments = Table(
    "scheduled_payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, ForeignKey("families.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("category", String(50), nullable=False, server_default="other"),
    Column("frequency", String(20), nullable=False),
    Column("due_day", Integer, nullable=False),
    Column("due_months", JSON, nullable=False),
    Column("start_date", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("is_auto_linked", Boolean, nullable=False, default=False),
    Column("linked_type", String(20)),
    Column("linked_id", Integer),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("notes", String(500)),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

scheduled_instances = Table(
    "scheduled_instances",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, ForeignKey("families.id"), nullable=False),
    Column("schedule_id", Integer, ForeignKey("scheduled_payments.id"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("due_date", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("status", String(20), nullable=False, server_default=STATUS_PENDING),
    Column("paid_amount", Numeric(12, 2)),
    Column("paid_date", Date),
    Column("notes", String(500)),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("schedule_id", "year", "month", name="uq_instances_schedule_period"),
)

insurance_policies = Table(
    "insurance_policies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, ForeignKey("families.id"), nullable=False),
    Column("provider", String(255), nullable=False),
    Column("policy_number", String(100), nullable=False),
    Column("policy_name", String(255)),
    Column("type", String(20), nullable=False),
    Column("premium", Numeric(12, 2), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("premium_day", Integer, nullable=False),
    Column("due_months", JSON, nullable=False),
    Column("coverage", Numeric(14, 2)),
    Column("start_date", Date, nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("linked_schedule_id", Integer, ForeignKey("scheduled_payments.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

loans = Table(
    "loans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, ForeignKey("families.id"), nullable=False),
    Column("lender", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("principal", Numeric(14, 2), nullable=False),
    Column("interest_rate", Numeric(6, 3), nullable=False),
    Column("emi", Numeric(12, 2), nullable=False),
    Column("emi_day", Integer, nullable=False),
    Column("tenure_months", Integer, nullable=False),
    Column("start_date", Date, nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("linked_schedule_id", Integer, ForeignKey("scheduled_payments.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

investments = Table(
    "investments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("family_id", Integer, ForeignKey("families.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("invested_amount", Numeric(14, 2), nullable=False),
    Column("sip_amount", Numeric(12, 2)),
    Column("sip_day", Integer),
    Column("start_date", Date, nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("linked_schedule_id", Integer, ForeignKey("scheduled_payments.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


def current_date() -> date:
    return date.today()


class FamilyRole:
    values = {"admin", "member", "viewer"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid family role.")
        return normalized


class ScheduleCategory:
    values = {"insurance", "education", "tax", "maintenance", "subscription", "vehicle", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid schedule category.")
        return normalized


class InsuranceType:
    values = {"lic", "term", "health", "vehicle", "property", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid insurance type.")
        return normalized


class LoanType:
    values = {"home", "car", "personal", "gold", "education", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid loan type.")
        return normalized


class InvestmentType:
    values = {"mutual-fund", "fd", "rd", "ppf", "epf", "gold", "stocks", "nps", "chit", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid investment type.")
        return normalized


def _validate_status(value: str, allowed: set[str], label: str) -> str:
    normalized = value.strip().lower()
    if normalized not in allowed:
        raise ValueError(f"Invalid {label} status.")
    return normalized


def _validate_day(value: int, label: str) -> int:
    if value < 1 or value > 31:
        raise ValueError(f"{label} must be between 1 and 31.")
    return value


class FamilyCreatePayload(BaseModel):
    name: str
    owner_email: str
    owner_name: str
    currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "FamilyCreatePayload") -> "FamilyCreatePayload":
        payload.name = payload.name.strip()
        payload.owner_email = payload.owner_email.strip().lower()
        payload.owner_name = payload.owner_name.strip()
        if not payload.name:
            raise ValueError("Family name required.")
        if not payload.owner_email or not payload.owner_name:
            raise ValueError("Owner email and name required.")
        if payload.currency is not None:
            normalized = payload.currency.strip().upper()
            if len(normalized) != 3 or not normalized.isalpha():
                raise ValueError("Currency must be a 3-letter ISO 4217 code.")
            payload.currency = normalized
        return payload


class MemberPayload(BaseModel):
    email: str
    name: str
    role: str = "member"
    relationship: str | None = None

    @classmethod
    def validate_payload(cls, payload: "MemberPayload") -> "MemberPayload":
        payload.email = payload.email.strip().lower()
        payload.name = payload.name.strip()
        if not payload.email or not payload.name:
            raise ValueError("Member email and name required.")
        payload.role = FamilyRole.validate(payload.role)
        payload.relationship = payload.relationship.strip() if payload.relationship else None
        return payload


class MemberRolePayload(BaseModel):
    role: str


class MemberResponse(BaseModel):
    id: int
    user_id: int
    email: str
    name: str
    role: str
    relationship: str | None = None
    joined_at: datetime | None = None


class FamilyResponse(BaseModel):
    id: int
    name: str
    currency: str
    owner_id: int | None = None
    members: list[MemberResponse] = []
    created_at: datetime | None = None


class SchedulePayload(BaseModel):
    name: str
    amount: Decimal
    frequency: str = "monthly"
    due_day: int
    due_months: list[int] | None = None
    start_date: date
    category: str | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "SchedulePayload") -> "SchedulePayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Schedule name required.")
        payload.frequency = normalize_frequency(payload.frequency or "monthly")
        payload.category = ScheduleCategory.validate(payload.category or "other")
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class ScheduleResponse(BaseModel):
    id: int
    family_id: int
    name: str
    category: str
    frequency: str
    due_day: int
    due_months: list[int]
    start_date: date
    amount: Decimal
    is_auto_linked: bool
    linked_type: str | None = None
    linked_id: int | None = None
    is_active: bool
    notes: str | None = None
    next_due_date: date | None = None
    due_status: str | None = None
    due_pattern: str
    created_at: datetime | None = None


class ScheduleInstanceCreatePayload(BaseModel):
    schedule_id: int
    year: int
    month: int


class PayInstancePayload(BaseModel):
    paid_amount: Decimal | None = None
    paid_date: date | None = None
    notes: str | None = None


class ScheduleInstanceResponse(BaseModel):
    id: int | None = None
    schedule_id: int
    schedule_name: str | None = None
    year: int
    month: int
    due_date: date
    amount: Decimal
    status: str
    paid_amount: Decimal | None = None
    paid_date: date | None = None


class CategoryTotalResponse(BaseModel):
    category: str
    count: int
    amount: Decimal


class PeriodSummaryResponse(BaseModel):
    year: int
    month: int
    reference_date: date
    items: list[ScheduleInstanceResponse]
    total_amount: Decimal
    paid_amount: Decimal
    pending_amount: Decimal
    overdue_amount: Decimal
    annual_total: Decimal
    by_category: list[CategoryTotalResponse]


class MonthOverviewResponse(BaseModel):
    month: int
    count: int
    total_amount: Decimal
    schedule_ids: list[int]


class UpcomingScheduleResponse(BaseModel):
    schedule_id: int
    name: str
    due_date: date
    amount: Decimal
    days_until: int


class InsurancePayload(BaseModel):
    provider: str
    policy_number: str
    policy_name: str | None = None
    type: str
    premium: Decimal
    frequency: str = "yearly"
    premium_day: int
    due_months: list[int] | None = None
    coverage: Decimal | None = None
    start_date: date
    status: str = "active"

    @classmethod
    def validate_payload(cls, payload: "InsurancePayload") -> "InsurancePayload":
        payload.provider = payload.provider.strip()
        payload.policy_number = payload.policy_number.strip()
        if not payload.provider or not payload.policy_number:
            raise ValueError("Provider and policy number required.")
        payload.policy_name = payload.policy_name.strip() if payload.policy_name else None
        payload.type = InsuranceType.validate(payload.type)
        if payload.premium <= 0:
            raise ValueError("Premium must be greater than zero.")
        payload.frequency = normalize_frequency(payload.frequency or "yearly")
        if payload.frequency not in SUPPORTED_FREQUENCIES:
            raise ValueError("Invalid premium frequency.")
        payload.premium_day = _validate_day(payload.premium_day, "Premium day")
        payload.status = _validate_status(
            payload.status, {"active", "expired", "surrendered"}, "insurance"
        )
        return payload


class InsuranceResponse(BaseModel):
    id: int
    family_id: int
    provider: str
    policy_number: str
    policy_name: str | None = None
    type: str
    premium: Decimal
    frequency: str
    premium_day: int
    due_months: list[int]
    coverage: Decimal | None = None
    start_date: date
    status: str
    linked_schedule_id: int | None = None
    created_at: datetime | None = None


class LoanPayload(BaseModel):
    lender: str
    type: str
    principal: Decimal
    interest_rate: Decimal
    emi: Decimal
    emi_day: int | None = None
    tenure_months: int
    start_date: date
    status: str = "active"

    @classmethod
    def validate_payload(cls, payload: "LoanPayload") -> "LoanPayload":
        payload.lender = payload.lender.strip()
        if not payload.lender:
            raise ValueError("Lender required.")
        payload.type = LoanType.validate(payload.type)
        if payload.principal <= 0:
            raise ValueError("Principal must be greater than zero.")
        if payload.interest_rate < 0:
            raise ValueError("Interest rate must not be negative.")
        if payload.emi <= 0:
            raise ValueError("EMI must be greater than zero.")
        if payload.tenure_months <= 0:
            raise ValueError("Tenure must be at least one month.")
        payload.emi_day = _validate_day(payload.emi_day or payload.start_date.day, "EMI day")
        payload.status = _validate_status(payload.status, {"active", "closed"}, "loan")
        return payload


class LoanResponse(BaseModel):
    id: int
    family_id: int
    lender: str
    type: str
    principal: Decimal
    interest_rate: Decimal
    emi: Decimal
    emi_day: int
    tenure_months: int
    start_date: date
    status: str
    linked_schedule_id: int | None = None
    created_at: datetime | None = None


class InvestmentPayload(BaseModel):
    name: str
    type: str
    invested_amount: Decimal
    sip_amount: Decimal | None = None
    sip_day: int | None = None
    start_date: date
    status: str = "active"

    @classmethod
    def validate_payload(cls, payload: "InvestmentPayload") -> "InvestmentPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Investment name required.")
        payload.type = InvestmentType.validate(payload.type)
        if payload.invested_amount < 0:
            raise ValueError("Invested amount must not be negative.")
        if payload.sip_amount is not None:
            if payload.sip_amount <= 0:
                raise ValueError("SIP amount must be greater than zero.")
            payload.sip_day = _validate_day(payload.sip_day or payload.start_date.day, "SIP day")
        payload.status = _validate_status(
            payload.status, {"active", "matured", "closed"}, "investment"
        )
        return payload


class InvestmentResponse(BaseModel):
    id: int
    family_id: int
    name: str
    type: str
    invested_amount: Decimal
    sip_amount: Decimal | None = None
    sip_day: int | None = None
    start_date: date
    status: str
    linked_schedule_id: int | None = None
    created_at: datetime | None = None


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


def get_membership(conn, user_id: int) -> dict:
    row = conn.execute(
        select(family_members).where(family_members.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Family not found.")
    return dict(row)


def require_admin(membership: dict) -> None:
    if membership["role"] != "admin":
        raise HTTPException(status_code=403, detail="Only family admins can manage members.")


def require_writer(membership: dict) -> None:
    if membership["role"] == "viewer":
        raise HTTPException(status_code=403, detail="Viewers cannot modify family records.")


def resolve_family(user_id: int, *, write: bool = False) -> int:
    with engine.begin() as conn:
        membership = get_membership(conn, user_id)
    if write:
        require_writer(membership)
    return membership["family_id"]


def row_to_schedule(row) -> ScheduleDefinition:
    return ScheduleDefinition(
        id=row["id"],
        name=row["name"],
        frequency=row["frequency"],
        due_day=row["due_day"],
        due_months=tuple(sorted(row["due_months"] or ())),
        start_date=row["start_date"],
        amount=coerce_decimal(row["amount"]),
        is_auto_linked=bool(row["is_auto_linked"]),
        linked_type=row["linked_type"],
        linked_id=row["linked_id"],
        is_active=bool(row["is_active"]),
        category=row["category"],
    )


def row_to_instance(row, schedule_name: str | None = None) -> ScheduleInstance:
    return ScheduleInstance(
        id=row["id"],
        schedule_id=row["schedule_id"],
        year=row["year"],
        month=row["month"],
        due_date=row["due_date"],
        amount=coerce_decimal(row["amount"]),
        status=row["status"],
        paid_amount=coerce_decimal(row["paid_amount"]) if row["paid_amount"] is not None else None,
        paid_date=row["paid_date"],
        name=schedule_name,
    )


def schedule_response(row, reference_date: date) -> ScheduleResponse:
    schedule = row_to_schedule(row)
    next_due = next_due_date(schedule, reference_date)
    return ScheduleResponse(
        id=row["id"],
        family_id=row["family_id"],
        name=row["name"],
        category=row["category"],
        frequency=row["frequency"],
        due_day=row["due_day"],
        due_months=list(schedule.due_months),
        start_date=row["start_date"],
        amount=row["amount"],
        is_auto_linked=bool(row["is_auto_linked"]),
        linked_type=row["linked_type"],
        linked_id=row["linked_id"],
        is_active=bool(row["is_active"]),
        notes=row["notes"],
        next_due_date=next_due,
        due_status=classify_period(next_due, reference_date) if next_due else None,
        due_pattern=format_due_pattern(schedule.frequency, schedule.due_months, schedule.due_day),
        created_at=row["created_at"],
    )


def instance_response(instance: ScheduleInstance) -> ScheduleInstanceResponse:
    return ScheduleInstanceResponse(
        id=instance.id,
        schedule_id=instance.schedule_id,
        schedule_name=instance.name,
        year=instance.year,
        month=instance.month,
        due_date=instance.due_date,
        amount=instance.amount,
        status=instance.status,
        paid_amount=instance.paid_amount,
        paid_date=instance.paid_date,
    )


def member_response(row) -> MemberResponse:
    return MemberResponse(
        id=row["id"],
        user_id=row["user_id"],
        email=row["email"],
        name=row["name"],
        role=row["role"],
        relationship=row["relationship"],
        joined_at=row["joined_at"],
    )


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def validate_period(year: int, month: int) -> None:
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
    if year < 1 or year > 9999:
        raise HTTPException(status_code=400, detail="Invalid year.")


def fetch_schedule_row(conn, family_id: int, schedule_id: int):
    row = conn.execute(
        select(scheduled_payments).where(
            scheduled_payments.c.id == schedule_id,
            scheduled_payments.c.family_id == family_id,
        )
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Scheduled payment not found.")
    return row


def fetch_active_schedules(conn, family_id: int) -> list:
    return conn.execute(
        select(scheduled_payments)
        .where(
            scheduled_payments.c.family_id == family_id,
            scheduled_payments.c.is_active.is_(True),
        )
        .order_by(scheduled_payments.c.due_day.asc(), scheduled_payments.c.id.asc())
    ).mappings().all()


def fetch_schedule_names(conn, family_id: int) -> dict[int, str]:
    rows = conn.execute(
        select(scheduled_payments.c.id, scheduled_payments.c.name).where(
            scheduled_payments.c.family_id == family_id
        )
    ).mappings().all()
    return {row["id"]: row["name"] for row in rows}


def ensure_schedule_editable(row, message: str) -> None:
    if row["is_auto_linked"]:
        logger.warning(
            "Rejected change to auto-linked schedule %s (%s %s).",
            row["id"],
            row["linked_type"],
            row["linked_id"],
        )
        raise HTTPException(status_code=409, detail=message)


def sync_linked_schedule(
    conn,
    *,
    family_id: int,
    user_id: int,
    linked_type: str,
    linked_id: int,
    name: str,
    category: str,
    frequency: str,
    due_day: int,
    due_months: list[int] | None,
    start_date: date,
    amount: Decimal,
    active: bool = True,
) -> int | None:
    """Create or refresh the auto-linked schedule owned by a source record.

    Returns the schedule id, or ``None`` when the source has no schedule and
    is not active. Raises ``ValidationError`` when the source's payment terms
    do not form a valid schedule.
    """
    existing = conn.execute(
        select(scheduled_payments.c.id).where(
            scheduled_payments.c.family_id == family_id,
            scheduled_payments.c.linked_type == linked_type,
            scheduled_payments.c.linked_id == linked_id,
        )
    ).scalar_one_or_none()

    if not active:
        if existing is not None:
            deactivate_linked_schedule(conn, family_id, linked_type, linked_id)
        return existing

    schedule = build_schedule(
        name=name,
        frequency=frequency,
        due_day=due_day,
        due_months=due_months,
        start_date=start_date,
        amount=amount,
        is_auto_linked=True,
        linked_type=linked_type,
        linked_id=linked_id,
        category=category,
    )
    values = dict(
        name=schedule.name,
        category=category,
        frequency=schedule.frequency,
        due_day=schedule.due_day,
        due_months=list(schedule.due_months),
        start_date=schedule.start_date,
        amount=schedule.amount,
        is_active=True,
    )
    if existing is not None:
        conn.execute(
            update(scheduled_payments)
            .where(scheduled_payments.c.id == existing)
            .values(**values)
        )
        logger.info("Refreshed auto-linked schedule %s for %s %s.", existing, linked_type, linked_id)
        return existing

    schedule_id = conn.execute(
        insert(scheduled_payments)
        .values(
            family_id=family_id,
            is_auto_linked=True,
            linked_type=linked_type,
            linked_id=linked_id,
            created_by=user_id,
            **values,
        )
        .returning(scheduled_payments.c.id)
    ).scalar_one()
    logger.info("Created auto-linked schedule %s for %s %s.", schedule_id, linked_type, linked_id)
    return schedule_id


def deactivate_linked_schedule(conn, family_id: int, linked_type: str, linked_id: int) -> None:
    result = conn.execute(
        update(scheduled_payments)
        .where(
            scheduled_payments.c.family_id == family_id,
            scheduled_payments.c.linked_type == linked_type,
            scheduled_payments.c.linked_id == linked_id,
            scheduled_payments.c.is_active.is_(True),
        )
        .values(is_active=False)
    )
    if result.rowcount:
        logger.info("Deactivated auto-linked schedule for %s %s.", linked_type, linked_id)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


def _family_response(conn, family_id: int) -> FamilyResponse:
    family = conn.execute(select(families).where(families.c.id == family_id)).mappings().first()
    if not family:
        raise HTTPException(status_code=404, detail="Family not found.")
    member_rows = conn.execute(
        select(
            family_members.c.id,
            family_members.c.user_id,
            family_members.c.role,
            family_members.c.relationship,
            family_members.c.joined_at,
            users.c.email,
            users.c.name,
        )
        .select_from(family_members.join(users, users.c.id == family_members.c.user_id))
        .where(family_members.c.family_id == family_id)
        .order_by(family_members.c.id.asc())
    ).mappings().all()
    return FamilyResponse(
        id=family["id"],
        name=family["name"],
        currency=family["currency"],
        owner_id=family["owner_id"],
        members=[member_response(row) for row in member_rows],
        created_at=family["created_at"],
    )


@app.post("/families", response_model=FamilyResponse)
def create_family(payload: FamilyCreatePayload) -> FamilyResponse:
    try:
        payload = FamilyCreatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            owner_id = conn.execute(
                insert(users)
                .values(email=payload.owner_email, name=payload.owner_name)
                .returning(users.c.id)
            ).scalar_one()
            family_id = conn.execute(
                insert(families)
                .values(
                    name=payload.name,
                    currency=payload.currency or DEFAULT_FAMILY_CURRENCY,
                    owner_id=owner_id,
                )
                .returning(families.c.id)
            ).scalar_one()
            conn.execute(
                insert(family_members).values(
                    family_id=family_id, user_id=owner_id, role="admin", relationship="self"
                )
            )
            response = _family_response(conn, family_id)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    logger.info("Created family %s with owner %s.", family_id, owner_id)
    return response


@app.get("/families/me", response_model=FamilyResponse)
def get_my_family(x_user_id: str | None = Header(None, alias="x-user-id")) -> FamilyResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        membership = get_membership(conn, user_id)
        return _family_response(conn, membership["family_id"])


@app.post("/families/me/members", response_model=MemberResponse)
def add_family_member(
    payload: MemberPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MemberResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = MemberPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            membership = get_membership(conn, user_id)
            require_admin(membership)
            existing_user = conn.execute(
                select(users.c.id).where(users.c.email == payload.email)
            ).scalar_one_or_none()
            if existing_user is None:
                member_user_id = conn.execute(
                    insert(users)
                    .values(email=payload.email, name=payload.name)
                    .returning(users.c.id)
                ).scalar_one()
            else:
                member_user_id = existing_user
            member_id = conn.execute(
                insert(family_members)
                .values(
                    family_id=membership["family_id"],
                    user_id=member_user_id,
                    role=payload.role,
                    relationship=payload.relationship,
                )
                .returning(family_members.c.id)
            ).scalar_one()
            row = conn.execute(
                select(
                    family_members.c.id,
                    family_members.c.user_id,
                    family_members.c.role,
                    family_members.c.relationship,
                    family_members.c.joined_at,
                    users.c.email,
                    users.c.name,
                )
                .select_from(family_members.join(users, users.c.id == family_members.c.user_id))
                .where(family_members.c.id == member_id)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="User already belongs to a family.") from exc

    logger.info("Added member %s to family %s.", member_user_id, membership["family_id"])
    return member_response(row)


@app.put("/families/me/members/{member_id}", response_model=MemberResponse)
def update_family_member_role(
    member_id: int,
    payload: MemberRolePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MemberResponse:
    user_id = get_user_id(x_user_id)
    try:
        role = FamilyRole.validate(payload.role)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        membership = get_membership(conn, user_id)
        require_admin(membership)
        family_id = membership["family_id"]
        target = conn.execute(
            select(family_members).where(
                family_members.c.id == member_id, family_members.c.family_id == family_id
            )
        ).mappings().first()
        if not target:
            raise HTTPException(status_code=404, detail="Family member not found.")
        if target["role"] == "admin" and role != "admin":
            _ensure_other_admin(conn, family_id, member_id)
        conn.execute(
            update(family_members).where(family_members.c.id == member_id).values(role=role)
        )
        row = conn.execute(
            select(
                family_members.c.id,
                family_members.c.user_id,
                family_members.c.role,
                family_members.c.relationship,
                family_members.c.joined_at,
                users.c.email,
                users.c.name,
            )
            .select_from(family_members.join(users, users.c.id == family_members.c.user_id))
            .where(family_members.c.id == member_id)
        ).mappings().first()
    return member_response(row)


@app.delete("/families/me/members/{member_id}")
def remove_family_member(
    member_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        membership = get_membership(conn, user_id)
        require_admin(membership)
        family_id = membership["family_id"]
        target = conn.execute(
            select(family_members).where(
                family_members.c.id == member_id, family_members.c.family_id == family_id
            )
        ).mappings().first()
        if not target:
            raise HTTPException(status_code=404, detail="Family member not found.")
        if target["role"] == "admin":
            _ensure_other_admin(conn, family_id, member_id)
        conn.execute(family_members.delete().where(family_members.c.id == member_id))
    logger.info("Removed member %s from family %s.", member_id, family_id)
    return {"status": "deleted"}


def _ensure_other_admin(conn, family_id: int, member_id: int) -> None:
    other_admins = conn.execute(
        select(func.count())
        .select_from(family_members)
        .where(
            family_members.c.family_id == family_id,
            family_members.c.role == "admin",
            family_members.c.id != member_id,
        )
    ).scalar_one()
    if not other_admins:
        raise HTTPException(status_code=409, detail="A family needs at least one admin.")


@app.get("/schedules", response_model=list[ScheduleResponse])
def list_schedules(
    linked: str | None = Query(None),
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduleResponse]:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    today = reference_date or current_date()
    with engine.begin() as conn:
        rows = fetch_active_schedules(conn, family_id)
    if linked == "auto":
        rows = [row for row in rows if row["is_auto_linked"]]
    elif linked == "manual":
        rows = [row for row in rows if not row["is_auto_linked"]]
    elif linked not in (None, "all"):
        raise HTTPException(status_code=400, detail="linked must be all, auto, or manual.")
    return [schedule_response(row, today) for row in rows]


@app.get("/schedules/overview", response_model=list[MonthOverviewResponse])
def schedules_overview(
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[MonthOverviewResponse]:
    user_id = get_user_id(x_user_id)
    validate_period(year, 1)
    family_id = resolve_family(user_id)
    with engine.begin() as conn:
        rows = fetch_active_schedules(conn, family_id)
    schedules = [row_to_schedule(row) for row in rows]
    return [
        MonthOverviewResponse(
            month=entry.month,
            count=entry.count,
            total_amount=entry.total_amount,
            schedule_ids=entry.schedule_ids,
        )
        for entry in annual_overview(schedules, year)
    ]


@app.get("/schedules/upcoming", response_model=list[UpcomingScheduleResponse])
def upcoming_schedules(
    days: int = Query(DEFAULT_UPCOMING_DAYS),
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[UpcomingScheduleResponse]:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    today = reference_date or current_date()
    with engine.begin() as conn:
        rows = fetch_active_schedules(conn, family_id)
    names = {row["id"]: row["name"] for row in rows}
    try:
        upcoming = upcoming_occurrences([row_to_schedule(row) for row in rows], today, days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        UpcomingScheduleResponse(
            schedule_id=entry.schedule_id,
            name=names[entry.schedule_id],
            due_date=entry.due_date,
            amount=entry.amount,
            days_until=entry.days_until,
        )
        for entry in upcoming
    ]


@app.get("/schedules/summary", response_model=PeriodSummaryResponse)
def schedules_summary(
    year: int = Query(...),
    month: int = Query(...),
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PeriodSummaryResponse:
    user_id = get_user_id(x_user_id)
    validate_period(year, month)
    family_id = resolve_family(user_id)
    today = reference_date or current_date()
    with engine.begin() as conn:
        schedule_rows = fetch_active_schedules(conn, family_id)
        names = fetch_schedule_names(conn, family_id)
        categories = {
            row["id"]: row["category"]
            for row in conn.execute(
                select(scheduled_payments.c.id, scheduled_payments.c.category).where(
                    scheduled_payments.c.family_id == family_id
                )
            ).mappings()
        }
        instance_rows = conn.execute(
            select(scheduled_instances).where(
                scheduled_instances.c.family_id == family_id,
                scheduled_instances.c.year == year,
                scheduled_instances.c.month == month,
            )
        ).mappings().all()

    schedules = [row_to_schedule(row) for row in schedule_rows]
    persisted = [row_to_instance(row, names.get(row["schedule_id"])) for row in instance_rows]
    summary = aggregate_for_period(schedules, year, month, today, persisted)

    by_category: dict[str, dict] = {}
    for item in summary.items:
        bucket = by_category.setdefault(
            categories.get(item.schedule_id) or "other", {"count": 0, "amount": Decimal("0")}
        )
        bucket["count"] += 1
        bucket["amount"] += item.amount

    return PeriodSummaryResponse(
        year=year,
        month=month,
        reference_date=today,
        items=[instance_response(item) for item in summary.items],
        total_amount=summary.total_amount,
        paid_amount=summary.paid_amount,
        pending_amount=summary.pending_amount,
        overdue_amount=summary.overdue_amount,
        annual_total=annual_total(schedules),
        by_category=[
            CategoryTotalResponse(category=category, count=bucket["count"], amount=bucket["amount"])
            for category, bucket in sorted(by_category.items())
        ],
    )


@app.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
def get_schedule(
    schedule_id: int,
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ScheduleResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    with engine.begin() as conn:
        row = fetch_schedule_row(conn, family_id, schedule_id)
    return schedule_response(row, reference_date or current_date())


@app.post("/schedules", response_model=ScheduleResponse)
def create_schedule(
    payload: SchedulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ScheduleResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = SchedulePayload.validate_payload(payload)
        schedule = build_schedule(
            name=payload.name,
            frequency=payload.frequency,
            due_day=payload.due_day,
            due_months=payload.due_months,
            start_date=payload.start_date,
            amount=payload.amount,
            category=payload.category,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(scheduled_payments)
        .values(
            family_id=family_id,
            name=schedule.name,
            category=payload.category,
            frequency=schedule.frequency,
            due_day=schedule.due_day,
            due_months=list(schedule.due_months),
            start_date=schedule.start_date,
            amount=schedule.amount,
            is_auto_linked=False,
            is_active=True,
            notes=payload.notes,
            created_by=user_id,
        )
        .returning(*scheduled_payments.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create scheduled payment.")
    logger.info("Created schedule %s for family %s.", row["id"], family_id)
    return schedule_response(row, current_date())


@app.put("/schedules/{schedule_id}", response_model=ScheduleResponse)
def update_schedule(
    schedule_id: int,
    payload: SchedulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ScheduleResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = SchedulePayload.validate_payload(payload)
        schedule = build_schedule(
            id=schedule_id,
            name=payload.name,
            frequency=payload.frequency,
            due_day=payload.due_day,
            due_months=payload.due_months,
            start_date=payload.start_date,
            amount=payload.amount,
            category=payload.category,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        existing = fetch_schedule_row(conn, family_id, schedule_id)
        ensure_schedule_editable(existing, AUTO_LINKED_EDIT_MESSAGE)
        row = conn.execute(
            update(scheduled_payments)
            .where(
                scheduled_payments.c.id == schedule_id,
                scheduled_payments.c.family_id == family_id,
                scheduled_payments.c.is_auto_linked.is_(False),
            )
            .values(
                name=schedule.name,
                category=payload.category,
                frequency=schedule.frequency,
                due_day=schedule.due_day,
                due_months=list(schedule.due_months),
                start_date=schedule.start_date,
                amount=schedule.amount,
                notes=payload.notes,
            )
            .returning(*scheduled_payments.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Scheduled payment not found.")
    logger.info("Updated schedule %s.", schedule_id)
    return schedule_response(row, current_date())


@app.delete("/schedules/{schedule_id}")
def delete_schedule(
    schedule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    with engine.begin() as conn:
        existing = fetch_schedule_row(conn, family_id, schedule_id)
        ensure_schedule_editable(existing, AUTO_LINKED_DELETE_MESSAGE)
        result = conn.execute(
            update(scheduled_payments)
            .where(
                scheduled_payments.c.id == schedule_id,
                scheduled_payments.c.family_id == family_id,
                scheduled_payments.c.is_auto_linked.is_(False),
            )
            .values(is_active=False)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Scheduled payment not found.")
    logger.info("Deactivated schedule %s.", schedule_id)
    return {"status": "deleted"}


def _instance_rows_for_period(conn, family_id: int, year: int, month: int) -> list:
    return conn.execute(
        select(scheduled_instances)
        .where(
            scheduled_instances.c.family_id == family_id,
            scheduled_instances.c.year == year,
            scheduled_instances.c.month == month,
        )
        .order_by(scheduled_instances.c.due_date.asc(), scheduled_instances.c.schedule_id.asc())
    ).mappings().all()


@app.get("/schedule-instances", response_model=list[ScheduleInstanceResponse])
def list_schedule_instances(
    year: int = Query(...),
    month: int = Query(...),
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduleInstanceResponse]:
    user_id = get_user_id(x_user_id)
    validate_period(year, month)
    family_id = resolve_family(user_id)
    today = reference_date or current_date()
    with engine.begin() as conn:
        names = fetch_schedule_names(conn, family_id)
        rows = _instance_rows_for_period(conn, family_id, year, month)
    return [
        instance_response(derive_status(row_to_instance(row, names.get(row["schedule_id"])), today))
        for row in rows
    ]


@app.post("/schedule-instances/generate", response_model=list[ScheduleInstanceResponse])
def generate_schedule_instances(
    year: int = Query(...),
    month: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduleInstanceResponse]:
    user_id = get_user_id(x_user_id)
    validate_period(year, month)
    family_id = resolve_family(user_id, write=True)
    created: list[ScheduleInstanceResponse] = []
    try:
        with engine.begin() as conn:
            schedule_rows = fetch_active_schedules(conn, family_id)
            existing_ids = set(
                conn.execute(
                    select(scheduled_instances.c.schedule_id).where(
                        scheduled_instances.c.family_id == family_id,
                        scheduled_instances.c.year == year,
                        scheduled_instances.c.month == month,
                    )
                ).scalars()
            )
            for row in schedule_rows:
                if row["id"] in existing_ids:
                    continue
                schedule = row_to_schedule(row)
                if not is_due_in_month(schedule, year, month):
                    continue
                inserted = conn.execute(
                    insert(scheduled_instances)
                    .values(
                        family_id=family_id,
                        schedule_id=schedule.id,
                        year=year,
                        month=month,
                        due_date=due_date_for(year, month, schedule.due_day),
                        amount=schedule.amount,
                        status=STATUS_PENDING,
                        created_by=user_id,
                    )
                    .returning(*scheduled_instances.c)
                ).mappings().first()
                created.append(instance_response(row_to_instance(inserted, schedule.name)))
    except IntegrityError as exc:
        logger.warning(
            "Concurrent instance generation for family %s in %04d-%02d.", family_id, year, month
        )
        raise HTTPException(
            status_code=409, detail="Instances for that month were generated concurrently; retry."
        ) from exc

    if created:
        logger.info(
            "Generated %d schedule instances for family %s in %04d-%02d.",
            len(created),
            family_id,
            year,
            month,
        )
    return created


@app.post("/schedule-instances", response_model=ScheduleInstanceResponse)
def create_schedule_instance(
    payload: ScheduleInstanceCreatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ScheduleInstanceResponse:
    user_id = get_user_id(x_user_id)
    validate_period(payload.year, payload.month)
    family_id = resolve_family(user_id, write=True)
    try:
        with engine.begin() as conn:
            schedule_row = fetch_schedule_row(conn, family_id, payload.schedule_id)
            schedule = row_to_schedule(schedule_row)
            if not is_due_in_month(schedule, payload.year, payload.month):
                raise HTTPException(
                    status_code=400, detail="Scheduled payment is not due in that month."
                )
            row = conn.execute(
                insert(scheduled_instances)
                .values(
                    family_id=family_id,
                    schedule_id=schedule.id,
                    year=payload.year,
                    month=payload.month,
                    due_date=due_date_for(payload.year, payload.month, schedule.due_day),
                    amount=schedule.amount,
                    status=STATUS_PENDING,
                    created_by=user_id,
                )
                .returning(*scheduled_instances.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Instance already exists for that month.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create schedule instance.")
    return instance_response(row_to_instance(row, schedule.name))


@app.post("/schedule-instances/{instance_id}/pay", response_model=ScheduleInstanceResponse)
def pay_schedule_instance(
    instance_id: int,
    payload: PayInstancePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ScheduleInstanceResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    with engine.begin() as conn:
        row = conn.execute(
            select(scheduled_instances).where(
                scheduled_instances.c.id == instance_id,
                scheduled_instances.c.family_id == family_id,
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Schedule instance not found.")
        instance = row_to_instance(row, fetch_schedule_names(conn, family_id).get(row["schedule_id"]))
        if instance.status == STATUS_PAID:
            raise HTTPException(status_code=409, detail="Scheduled payment has already been paid.")
        try:
            paid = record_payment(
                instance,
                payload.paid_amount if payload.paid_amount is not None else instance.amount,
                payload.paid_date or current_date(),
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        values = dict(status=paid.status, paid_amount=paid.paid_amount, paid_date=paid.paid_date)
        if payload.notes:
            values["notes"] = payload.notes.strip()
        result = conn.execute(
            update(scheduled_instances)
            .where(
                scheduled_instances.c.id == instance_id,
                scheduled_instances.c.status != STATUS_PAID,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=409, detail="Scheduled payment has already been paid.")

    logger.info("Recorded payment of %s for schedule instance %s.", paid.paid_amount, instance_id)
    return instance_response(paid)


@app.get("/schedule-instances/upcoming", response_model=list[ScheduleInstanceResponse])
def upcoming_schedule_instances(
    days: int = Query(DEFAULT_UPCOMING_DAYS),
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduleInstanceResponse]:
    user_id = get_user_id(x_user_id)
    if days < 0:
        raise HTTPException(status_code=400, detail="days must not be negative.")
    family_id = resolve_family(user_id)
    today = reference_date or current_date()
    with engine.begin() as conn:
        names = fetch_schedule_names(conn, family_id)
        rows = conn.execute(
            select(scheduled_instances)
            .where(
                scheduled_instances.c.family_id == family_id,
                scheduled_instances.c.status != STATUS_PAID,
                scheduled_instances.c.due_date >= today,
                scheduled_instances.c.due_date <= today + timedelta(days=days),
            )
            .order_by(scheduled_instances.c.due_date.asc(), scheduled_instances.c.id.asc())
        ).mappings().all()
    return [
        instance_response(derive_status(row_to_instance(row, names.get(row["schedule_id"])), today))
        for row in rows
    ]


@app.get("/schedule-instances/overdue", response_model=list[ScheduleInstanceResponse])
def overdue_schedule_instances(
    reference_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduleInstanceResponse]:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    today = reference_date or current_date()
    with engine.begin() as conn:
        names = fetch_schedule_names(conn, family_id)
        rows = conn.execute(
            select(scheduled_instances)
            .where(
                scheduled_instances.c.family_id == family_id,
                scheduled_instances.c.status != STATUS_PAID,
                scheduled_instances.c.due_date < today,
            )
            .order_by(scheduled_instances.c.due_date.asc(), scheduled_instances.c.id.asc())
        ).mappings().all()
    instances = [
        derive_status(row_to_instance(row, names.get(row["schedule_id"])), today) for row in rows
    ]
    return [instance_response(item) for item in instances if item.status == STATUS_OVERDUE]


def insurance_response(row) -> InsuranceResponse:
    return InsuranceResponse(
        id=row["id"],
        family_id=row["family_id"],
        provider=row["provider"],
        policy_number=row["policy_number"],
        policy_name=row["policy_name"],
        type=row["type"],
        premium=row["premium"],
        frequency=row["frequency"],
        premium_day=row["premium_day"],
        due_months=list(row["due_months"] or []),
        coverage=row["coverage"],
        start_date=row["start_date"],
        status=row["status"],
        linked_schedule_id=row["linked_schedule_id"],
        created_at=row["created_at"],
    )


def _sync_insurance_schedule(conn, family_id: int, user_id: int, policy_id: int, payload) -> int | None:
    label = payload.policy_name or payload.policy_number
    return sync_linked_schedule(
        conn,
        family_id=family_id,
        user_id=user_id,
        linked_type="insurance",
        linked_id=policy_id,
        name=f"{payload.provider} {label} Premium",
        category="insurance",
        frequency=payload.frequency,
        due_day=payload.premium_day,
        due_months=payload.due_months,
        start_date=payload.start_date,
        amount=payload.premium,
        active=payload.status == "active",
    )


@app.get("/insurance", response_model=list[InsuranceResponse])
def list_insurance(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[InsuranceResponse]:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(insurance_policies)
            .where(insurance_policies.c.family_id == family_id)
            .order_by(insurance_policies.c.created_at.desc(), insurance_policies.c.id.desc())
        ).mappings().all()
    return [insurance_response(row) for row in rows]


@app.post("/insurance", response_model=InsuranceResponse)
def create_insurance(
    payload: InsurancePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InsuranceResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = InsurancePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        policy_id = conn.execute(
            insert(insurance_policies)
            .values(
                family_id=family_id,
                provider=payload.provider,
                policy_number=payload.policy_number,
                policy_name=payload.policy_name,
                type=payload.type,
                premium=payload.premium,
                frequency=payload.frequency,
                premium_day=payload.premium_day,
                due_months=payload.due_months or [],
                coverage=payload.coverage,
                start_date=payload.start_date,
                status=payload.status,
            )
            .returning(insurance_policies.c.id)
        ).scalar_one()
        try:
            schedule_id = _sync_insurance_schedule(conn, family_id, user_id, policy_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(insurance_policies)
            .where(insurance_policies.c.id == policy_id)
            .values(
                linked_schedule_id=schedule_id,
                due_months=_linked_due_months(conn, schedule_id, payload.due_months),
            )
            .returning(*insurance_policies.c)
        ).mappings().first()

    logger.info("Created insurance policy %s for family %s.", policy_id, family_id)
    return insurance_response(row)


@app.put("/insurance/{policy_id}", response_model=InsuranceResponse)
def update_insurance(
    policy_id: int,
    payload: InsurancePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InsuranceResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = InsurancePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        exists = conn.execute(
            select(insurance_policies.c.id).where(
                insurance_policies.c.id == policy_id,
                insurance_policies.c.family_id == family_id,
            )
        ).first()
        if not exists:
            raise HTTPException(status_code=404, detail="Insurance policy not found.")
        try:
            schedule_id = _sync_insurance_schedule(conn, family_id, user_id, policy_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(insurance_policies)
            .where(insurance_policies.c.id == policy_id)
            .values(
                provider=payload.provider,
                policy_number=payload.policy_number,
                policy_name=payload.policy_name,
                type=payload.type,
                premium=payload.premium,
                frequency=payload.frequency,
                premium_day=payload.premium_day,
                due_months=_linked_due_months(conn, schedule_id, payload.due_months),
                coverage=payload.coverage,
                start_date=payload.start_date,
                status=payload.status,
                linked_schedule_id=schedule_id,
            )
            .returning(*insurance_policies.c)
        ).mappings().first()

    logger.info("Updated insurance policy %s.", policy_id)
    return insurance_response(row)


@app.delete("/insurance/{policy_id}")
def delete_insurance(policy_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    with engine.begin() as conn:
        result = conn.execute(
            update(insurance_policies)
            .where(
                insurance_policies.c.id == policy_id,
                insurance_policies.c.family_id == family_id,
            )
            .values(status="surrendered")
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Insurance policy not found.")
        deactivate_linked_schedule(conn, family_id, "insurance", policy_id)
    return {"status": "deleted"}


def _linked_due_months(conn, schedule_id: int | None, fallback: list[int] | None) -> list[int]:
    if schedule_id is None:
        return list(fallback or [])
    months = conn.execute(
        select(scheduled_payments.c.due_months).where(scheduled_payments.c.id == schedule_id)
    ).scalar_one_or_none()
    return list(months or fallback or [])


def loan_response(row) -> LoanResponse:
    return LoanResponse(
        id=row["id"],
        family_id=row["family_id"],
        lender=row["lender"],
        type=row["type"],
        principal=row["principal"],
        interest_rate=row["interest_rate"],
        emi=row["emi"],
        emi_day=row["emi_day"],
        tenure_months=row["tenure_months"],
        start_date=row["start_date"],
        status=row["status"],
        linked_schedule_id=row["linked_schedule_id"],
        created_at=row["created_at"],
    )


def _sync_loan_schedule(conn, family_id: int, user_id: int, loan_id: int, payload) -> int | None:
    return sync_linked_schedule(
        conn,
        family_id=family_id,
        user_id=user_id,
        linked_type="loan",
        linked_id=loan_id,
        name=f"{payload.lender} {payload.type.title()} Loan EMI",
        category="other",
        frequency="monthly",
        due_day=payload.emi_day,
        due_months=None,
        start_date=payload.start_date,
        amount=payload.emi,
        active=payload.status == "active",
    )


@app.get("/loans", response_model=list[LoanResponse])
def list_loans(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[LoanResponse]:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(loans)
            .where(loans.c.family_id == family_id)
            .order_by(loans.c.created_at.desc(), loans.c.id.desc())
        ).mappings().all()
    return [loan_response(row) for row in rows]


@app.post("/loans", response_model=LoanResponse)
def create_loan(
    payload: LoanPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> LoanResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = LoanPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        loan_id = conn.execute(
            insert(loans)
            .values(
                family_id=family_id,
                lender=payload.lender,
                type=payload.type,
                principal=payload.principal,
                interest_rate=payload.interest_rate,
                emi=payload.emi,
                emi_day=payload.emi_day,
                tenure_months=payload.tenure_months,
                start_date=payload.start_date,
                status=payload.status,
            )
            .returning(loans.c.id)
        ).scalar_one()
        try:
            schedule_id = _sync_loan_schedule(conn, family_id, user_id, loan_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(loans)
            .where(loans.c.id == loan_id)
            .values(linked_schedule_id=schedule_id)
            .returning(*loans.c)
        ).mappings().first()

    logger.info("Created loan %s for family %s.", loan_id, family_id)
    return loan_response(row)


@app.put("/loans/{loan_id}", response_model=LoanResponse)
def update_loan(
    loan_id: int,
    payload: LoanPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> LoanResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = LoanPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        exists = conn.execute(
            select(loans.c.id).where(loans.c.id == loan_id, loans.c.family_id == family_id)
        ).first()
        if not exists:
            raise HTTPException(status_code=404, detail="Loan not found.")
        try:
            schedule_id = _sync_loan_schedule(conn, family_id, user_id, loan_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(loans)
            .where(loans.c.id == loan_id)
            .values(
                lender=payload.lender,
                type=payload.type,
                principal=payload.principal,
                interest_rate=payload.interest_rate,
                emi=payload.emi,
                emi_day=payload.emi_day,
                tenure_months=payload.tenure_months,
                start_date=payload.start_date,
                status=payload.status,
                linked_schedule_id=schedule_id,
            )
            .returning(*loans.c)
        ).mappings().first()

    logger.info("Updated loan %s.", loan_id)
    return loan_response(row)


@app.delete("/loans/{loan_id}")
def delete_loan(loan_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    with engine.begin() as conn:
        result = conn.execute(
            update(loans)
            .where(loans.c.id == loan_id, loans.c.family_id == family_id)
            .values(status="closed")
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Loan not found.")
        deactivate_linked_schedule(conn, family_id, "loan", loan_id)
    return {"status": "deleted"}


def investment_response(row) -> InvestmentResponse:
    return InvestmentResponse(
        id=row["id"],
        family_id=row["family_id"],
        name=row["name"],
        type=row["type"],
        invested_amount=row["invested_amount"],
        sip_amount=row["sip_amount"],
        sip_day=row["sip_day"],
        start_date=row["start_date"],
        status=row["status"],
        linked_schedule_id=row["linked_schedule_id"],
        created_at=row["created_at"],
    )


def _sync_investment_schedule(
    conn, family_id: int, user_id: int, investment_id: int, payload
) -> int | None:
    has_sip = payload.sip_amount is not None
    return sync_linked_schedule(
        conn,
        family_id=family_id,
        user_id=user_id,
        linked_type="investment",
        linked_id=investment_id,
        name=f"{payload.name} SIP",
        category="other",
        frequency="monthly",
        due_day=payload.sip_day or payload.start_date.day,
        due_months=None,
        start_date=payload.start_date,
        amount=payload.sip_amount if has_sip else Decimal("0"),
        active=has_sip and payload.status == "active",
    )


@app.get("/investments", response_model=list[InvestmentResponse])
def list_investments(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvestmentResponse]:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(investments)
            .where(investments.c.family_id == family_id)
            .order_by(investments.c.created_at.desc(), investments.c.id.desc())
        ).mappings().all()
    return [investment_response(row) for row in rows]


@app.post("/investments", response_model=InvestmentResponse)
def create_investment(
    payload: InvestmentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = InvestmentPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        investment_id = conn.execute(
            insert(investments)
            .values(
                family_id=family_id,
                name=payload.name,
                type=payload.type,
                invested_amount=payload.invested_amount,
                sip_amount=payload.sip_amount,
                sip_day=payload.sip_day,
                start_date=payload.start_date,
                status=payload.status,
            )
            .returning(investments.c.id)
        ).scalar_one()
        try:
            schedule_id = _sync_investment_schedule(conn, family_id, user_id, investment_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(investments)
            .where(investments.c.id == investment_id)
            .values(linked_schedule_id=schedule_id)
            .returning(*investments.c)
        ).mappings().first()

    logger.info("Created investment %s for family %s.", investment_id, family_id)
    return investment_response(row)


@app.put("/investments/{investment_id}", response_model=InvestmentResponse)
def update_investment(
    investment_id: int,
    payload: InvestmentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    try:
        payload = InvestmentPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        exists = conn.execute(
            select(investments.c.id).where(
                investments.c.id == investment_id, investments.c.family_id == family_id
            )
        ).first()
        if not exists:
            raise HTTPException(status_code=404, detail="Investment not found.")
        try:
            schedule_id = _sync_investment_schedule(conn, family_id, user_id, investment_id, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            update(investments)
            .where(investments.c.id == investment_id)
            .values(
                name=payload.name,
                type=payload.type,
                invested_amount=payload.invested_amount,
                sip_amount=payload.sip_amount,
                sip_day=payload.sip_day,
                start_date=payload.start_date,
                status=payload.status,
                linked_schedule_id=schedule_id,
            )
            .returning(*investments.c)
        ).mappings().first()

    logger.info("Updated investment %s.", investment_id)
    return investment_response(row)


@app.delete("/investments/{investment_id}")
def delete_investment(
    investment_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    family_id = resolve_family(user_id, write=True)
    with engine.begin() as conn:
        result = conn.execute(
            update(investments)
            .where(investments.c.id == investment_id, investments.c.family_id == family_id)
            .values(status="closed")
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Investment not found.")
        deactivate_linked_schedule(conn, family_id, "investment", investment_id)
    return {"status": "deleted"}
