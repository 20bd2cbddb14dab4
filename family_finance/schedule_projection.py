from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from family_finance.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")
ALL_MONTHS: Tuple[int, ...] = tuple(range(1, 13))
QUARTERLY_MONTHS: Tuple[int, ...] = (1, 4, 7, 10)
HALF_YEARLY_MONTHS: Tuple[int, ...] = (1, 7)
DEFAULT_YEARLY_MONTHS: Tuple[int, ...] = (1,)

SUPPORTED_FREQUENCIES = {"monthly", "quarterly", "half-yearly", "yearly", "custom"}
FREQUENCY_ALIASES = {
    "halfyearly": "half-yearly",
    "half_yearly": "half-yearly",
    "semiannual": "half-yearly",
    "annual": "yearly",
    "annually": "yearly",
}
SUPPORTED_LINKED_TYPES = {"insurance", "loan", "investment", "credit_card"}

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_OVERDUE = "overdue"

PERIOD_OVERDUE = "overdue"
PERIOD_DUE_THIS_PERIOD = "due_this_period"
PERIOD_FUTURE = "future"

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class ValidationError(ValueError):
    """Raised when a schedule definition or payment is not acceptable."""


@dataclass(frozen=True)
class ScheduleDefinition:
    id: Optional[int]
    name: str
    frequency: str
    due_day: int
    due_months: Tuple[int, ...]
    start_date: date
    amount: Decimal
    is_auto_linked: bool = False
    linked_type: Optional[str] = None
    linked_id: Optional[int] = None
    is_active: bool = True
    category: Optional[str] = None


@dataclass(frozen=True)
class ScheduleInstance:
    schedule_id: int
    year: int
    month: int
    due_date: date
    amount: Decimal
    status: str = STATUS_PENDING
    paid_amount: Optional[Decimal] = None
    paid_date: Optional[date] = None
    id: Optional[int] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PeriodSummary:
    year: int
    month: int
    items: List[ScheduleInstance]
    total_amount: Decimal
    paid_amount: Decimal
    pending_amount: Decimal
    overdue_amount: Decimal


@dataclass(frozen=True)
class MonthOverview:
    month: int
    schedule_ids: List[int] = field(default_factory=list)
    total_amount: Decimal = ZERO

    @property
    def count(self) -> int:
        return len(self.schedule_ids)


@dataclass(frozen=True)
class UpcomingOccurrence:
    schedule_id: int
    due_date: date
    amount: Decimal
    days_until: int


# ----------------------------------------------------------------------------
# Calendar arithmetic
# ----------------------------------------------------------------------------


def days_in_month(year: int, month: int) -> int:
    return monthrange(year, month)[1]


def clamp_day(day: int, year: int, month: int) -> int:
    return min(day, days_in_month(year, month))


def due_date_for(year: int, month: int, due_day: int) -> date:
    return date(year, month, clamp_day(due_day, year, month))


def ordinal_suffix(day: int) -> str:
    if day in (1, 21, 31):
        return "st"
    if day in (2, 22):
        return "nd"
    if day in (3, 23):
        return "rd"
    return "th"


def format_due_pattern(frequency: str, due_months: Sequence[int], due_day: int) -> str:
    """Human readable recurrence, e.g. ``Jan, Apr, Jul, Oct (10th)``."""
    day_label = f"{due_day}{ordinal_suffix(due_day)}"
    if normalize_frequency(frequency) == "monthly":
        return f"Every month on the {day_label}"
    months = sorted(set(due_months))
    if not months:
        return f"On the {day_label}"
    if len(months) == 1:
        return f"{MONTH_NAMES[months[0] - 1]} ({day_label})"
    short_names = ", ".join(MONTH_NAMES[m - 1][:3] for m in months)
    return f"{short_names} ({day_label})"


def _to_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _shift_month(year: int, month: int, months: int) -> Tuple[int, int]:
    total_month = month - 1 + months
    return year + total_month // 12, total_month % 12 + 1


# ----------------------------------------------------------------------------
# Frequency expansion
# ----------------------------------------------------------------------------


def normalize_frequency(value: str) -> str:
    normalized = value.strip().lower()
    return FREQUENCY_ALIASES.get(normalized, normalized)


def resolve_due_months(
    frequency: str, explicit_due_months: Optional[Iterable[int]] = None
) -> Tuple[int, ...]:
    """Map a frequency to the sorted months (1=January) it falls due in.

    ``monthly`` resolves to every month. Callers that only need the next
    occurrence of a monthly schedule do not consult the month set at all and
    work from ``due_day`` alone (see :func:`next_due_date`); callers that test
    month membership (aggregation, the annual overview) may use either path
    and get the same answer.

    ``quarterly`` is pinned to calendar quarters and ``half-yearly`` to January
    and July, whatever the schedule's start date. ``yearly`` honours explicit
    months and otherwise falls back to January. ``custom`` must carry at least
    one explicit month.
    """
    normalized = normalize_frequency(frequency)
    explicit = _normalize_months(explicit_due_months or ())
    if normalized == "monthly":
        return ALL_MONTHS
    if normalized == "quarterly":
        return QUARTERLY_MONTHS
    if normalized == "half-yearly":
        return HALF_YEARLY_MONTHS
    if normalized == "yearly":
        return explicit or DEFAULT_YEARLY_MONTHS
    if normalized == "custom":
        if not explicit:
            raise ValidationError("Custom schedules require at least one due month.")
        return explicit
    raise ValidationError(
        "Only monthly, quarterly, half-yearly, yearly, or custom schedules are supported."
    )


def occurrences_per_year(frequency: str, due_months: Optional[Iterable[int]] = None) -> int:
    try:
        return len(resolve_due_months(frequency, due_months))
    except ValidationError:
        return 0


def _normalize_months(months: Iterable[int]) -> Tuple[int, ...]:
    normalized = set()
    for month in months:
        value = int(month)
        if value < 1 or value > 12:
            raise ValidationError("Due months must be between 1 and 12.")
        normalized.add(value)
    return tuple(sorted(normalized))


def _months_for_schedule(schedule: ScheduleDefinition) -> Tuple[int, ...]:
    # Stored rows are not re-validated; anything unusable means "never due".
    try:
        return resolve_due_months(schedule.frequency, schedule.due_months)
    except ValidationError:
        return ()


# ----------------------------------------------------------------------------
# Definitions and instances
# ----------------------------------------------------------------------------


def build_schedule(
    *,
    name: str,
    frequency: str,
    due_day: int,
    start_date: date,
    amount: Decimal | int | float | str,
    due_months: Optional[Iterable[int]] = None,
    id: Optional[int] = None,
    is_auto_linked: bool = False,
    linked_type: Optional[str] = None,
    linked_id: Optional[int] = None,
    is_active: bool = True,
    category: Optional[str] = None,
) -> ScheduleDefinition:
    normalized_frequency = normalize_frequency(frequency)
    if normalized_frequency not in SUPPORTED_FREQUENCIES:
        raise ValidationError(
            "Only monthly, quarterly, half-yearly, yearly, or custom schedules are supported."
        )
    if due_day < 1 or due_day > 31:
        raise ValidationError("Due day must be between 1 and 31.")
    coerced_amount = _coerce_amount(amount)
    if coerced_amount <= ZERO:
        raise ValidationError("Schedule amount must be greater than zero.")
    name = name.strip()
    if not name:
        raise ValidationError("Schedule name required.")
    if is_auto_linked:
        if linked_type not in SUPPORTED_LINKED_TYPES or linked_id is None:
            raise ValidationError("Auto-linked schedules require a linked source.")

    if normalized_frequency == "monthly":
        months = ALL_MONTHS
    else:
        months = resolve_due_months(normalized_frequency, due_months)

    return ScheduleDefinition(
        id=id,
        name=name,
        frequency=normalized_frequency,
        due_day=due_day,
        due_months=months,
        start_date=start_date,
        amount=coerced_amount,
        is_auto_linked=is_auto_linked,
        linked_type=linked_type,
        linked_id=linked_id,
        is_active=is_active,
        category=category,
    )


def record_payment(
    instance: ScheduleInstance,
    paid_amount: Decimal | int | float | str,
    paid_date: date,
) -> ScheduleInstance:
    if instance.status == STATUS_PAID:
        raise ValidationError("Scheduled payment has already been paid.")
    coerced = _coerce_amount(paid_amount)
    if coerced <= ZERO:
        raise ValidationError("Paid amount must be greater than zero.")
    return replace(instance, status=STATUS_PAID, paid_amount=coerced, paid_date=paid_date)


def classify_occurrence(
    due_date: date, reference_date: date | datetime, paid: bool = False
) -> str:
    if paid:
        return STATUS_PAID
    if due_date < _to_date(reference_date):
        return STATUS_OVERDUE
    return STATUS_PENDING


def classify_period(due_date: date, reference_date: date | datetime) -> str:
    """Place a due date relative to the calendar month holding the reference date."""
    today = _to_date(reference_date)
    if due_date < today:
        return PERIOD_OVERDUE
    if (due_date.year, due_date.month) == (today.year, today.month):
        return PERIOD_DUE_THIS_PERIOD
    return PERIOD_FUTURE


def days_until(due_date: date, reference_date: date | datetime) -> int:
    return (due_date - _to_date(reference_date)).days


def derive_status(instance: ScheduleInstance, reference_date: date | datetime) -> ScheduleInstance:
    status = classify_occurrence(
        instance.due_date, reference_date, paid=instance.status == STATUS_PAID
    )
    if status == instance.status:
        return instance
    return replace(instance, status=status)


# ----------------------------------------------------------------------------
# Next occurrence
# ----------------------------------------------------------------------------


def next_due_date(
    schedule: ScheduleDefinition, reference_date: date | datetime
) -> Optional[date]:
    """Return the first occurrence on or after ``reference_date``.

    A payment due on the reference date itself is the next occurrence, not
    an overdue one. Returns ``None`` for a non-monthly schedule that resolves
    to no due months.
    """
    today = _to_date(reference_date)

    if normalize_frequency(schedule.frequency) == "monthly":
        candidate = due_date_for(today.year, today.month, schedule.due_day)
        if candidate >= today:
            return candidate
        year, month = _shift_month(today.year, today.month, 1)
        return due_date_for(year, month, schedule.due_day)

    due_months = _months_for_schedule(schedule)
    if not due_months:
        logger.debug("Schedule %s has no due months; no next occurrence.", schedule.id)
        return None

    if today.month in due_months:
        candidate = due_date_for(today.year, today.month, schedule.due_day)
        if candidate >= today:
            return candidate

    later_months = [m for m in due_months if m > today.month]
    if later_months:
        return due_date_for(today.year, later_months[0], schedule.due_day)
    return due_date_for(today.year + 1, due_months[0], schedule.due_day)


def upcoming_occurrences(
    schedules: Iterable[ScheduleDefinition],
    reference_date: date | datetime,
    days_ahead: int,
) -> List[UpcomingOccurrence]:
    if days_ahead < 0:
        raise ValueError("days_ahead must not be negative.")
    today = _to_date(reference_date)
    horizon = today + timedelta(days=days_ahead)
    upcoming: List[UpcomingOccurrence] = []
    for schedule in schedules:
        if not schedule.is_active or schedule.id is None:
            continue
        due = next_due_date(schedule, max(today, schedule.start_date))
        if due is None or due > horizon:
            continue
        upcoming.append(
            UpcomingOccurrence(
                schedule_id=schedule.id,
                due_date=due,
                amount=_coerce_amount(schedule.amount),
                days_until=days_until(due, today),
            )
        )
    upcoming.sort(key=lambda entry: (entry.due_date, entry.schedule_id))
    return upcoming


# ----------------------------------------------------------------------------
# Period aggregation
# ----------------------------------------------------------------------------


def is_due_in_month(schedule: ScheduleDefinition, year: int, month: int) -> bool:
    if not schedule.is_active:
        return False
    if due_date_for(year, month, schedule.due_day) < schedule.start_date:
        return False
    if normalize_frequency(schedule.frequency) == "monthly":
        return True
    return month in _months_for_schedule(schedule)


def synthesize_instance(schedule: ScheduleDefinition, year: int, month: int) -> ScheduleInstance:
    if schedule.id is None:
        raise ValueError("schedule.id is required to synthesize an instance.")
    return ScheduleInstance(
        schedule_id=schedule.id,
        year=year,
        month=month,
        due_date=due_date_for(year, month, schedule.due_day),
        amount=_coerce_amount(schedule.amount),
        status=STATUS_PENDING,
        name=schedule.name,
    )


def aggregate_for_period(
    schedules: Iterable[ScheduleDefinition],
    year: int,
    month: int,
    reference_date: date | datetime,
    persisted: Iterable[ScheduleInstance] = (),
) -> PeriodSummary:
    if month < 1 or month > 12:
        raise ValueError("month must be between 1 and 12.")
    today = _to_date(reference_date)

    by_schedule: Dict[int, ScheduleInstance] = {}
    for schedule in schedules:
        if is_due_in_month(schedule, year, month):
            instance = synthesize_instance(schedule, year, month)
            by_schedule[instance.schedule_id] = instance

    for instance in persisted:
        if instance.year != year or instance.month != month:
            continue
        existing = by_schedule.get(instance.schedule_id)
        if existing is not None and instance.name is None:
            instance = replace(instance, name=existing.name)
        by_schedule[instance.schedule_id] = instance

    items = sorted(
        (derive_status(instance, today) for instance in by_schedule.values()),
        key=lambda item: (item.due_date, item.schedule_id),
    )

    total_amount = ZERO
    paid_amount = ZERO
    pending_amount = ZERO
    overdue_amount = ZERO
    for item in items:
        amount = _coerce_amount(item.amount)
        total_amount += amount
        if item.status == STATUS_PAID:
            paid_amount += (
                _coerce_amount(item.paid_amount) if item.paid_amount is not None else amount
            )
            continue
        # Overdue amounts stay inside the pending bucket.
        pending_amount += amount
        if item.status == STATUS_OVERDUE:
            overdue_amount += amount

    return PeriodSummary(
        year=year,
        month=month,
        items=items,
        total_amount=total_amount,
        paid_amount=paid_amount,
        pending_amount=pending_amount,
        overdue_amount=overdue_amount,
    )


def annual_overview(schedules: Iterable[ScheduleDefinition], year: int) -> List[MonthOverview]:
    schedule_list = [schedule for schedule in schedules if schedule.id is not None]
    overview: List[MonthOverview] = []
    for month in ALL_MONTHS:
        due = [s for s in schedule_list if is_due_in_month(s, year, month)]
        overview.append(
            MonthOverview(
                month=month,
                schedule_ids=[s.id for s in due],
                total_amount=sum((_coerce_amount(s.amount) for s in due), ZERO),
            )
        )
    return overview


def annual_total(schedules: Iterable[ScheduleDefinition]) -> Decimal:
    total = ZERO
    for schedule in schedules:
        if not schedule.is_active:
            continue
        total += _coerce_amount(schedule.amount) * occurrences_per_year(
            schedule.frequency, schedule.due_months
        )
    return total


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
