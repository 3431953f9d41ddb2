"""
Payment Schedule Module

Pure functions for installment sizing and due-date stepping.

Installments assume a fixed 4 weeks or 30 days per month. The approximation
is intentional: weekly and daily learners pay round2(monthly / 4) and
round2(monthly / 30) respectively, and the last installment is capped by
amount_due_now() so the ledger never overshoots its total.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import Optional, TypeVar, Union

from .money import ZERO, AmountLike, round2, to_decimal


class PaymentSchedule(Enum):
    """Payment cadence"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ONCE = "once"


WEEKS_PER_MONTH = Decimal('4')
DAYS_PER_MONTH = Decimal('30')

DateLike = TypeVar('DateLike', date, datetime)


def installment_amount(cost_per_month: AmountLike, schedule: PaymentSchedule,
                       duration_months: int) -> Decimal:
    """Amount of a single scheduled payment"""
    cost = to_decimal(cost_per_month)

    if schedule == PaymentSchedule.MONTHLY:
        return cost
    elif schedule == PaymentSchedule.ONCE:
        return cost * duration_months
    elif schedule == PaymentSchedule.WEEKLY:
        return round2(cost / WEEKS_PER_MONTH)
    elif schedule == PaymentSchedule.DAILY:
        return round2(cost / DAYS_PER_MONTH)
    raise ValueError(f"Unsupported payment schedule: {schedule}")


def add_months(start: DateLike, months: int) -> DateLike:
    """Add months to a date, clamping the day to the target month's length"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def next_due_date(from_date: DateLike, schedule: PaymentSchedule) -> Optional[DateLike]:
    """
    Next due date after a payment made on from_date.

    Returns None for one-off programs: they never fall due again.
    """
    if schedule == PaymentSchedule.DAILY:
        return from_date + timedelta(days=1)
    elif schedule == PaymentSchedule.WEEKLY:
        return from_date + timedelta(days=7)
    elif schedule == PaymentSchedule.MONTHLY:
        return add_months(from_date, 1)
    elif schedule == PaymentSchedule.ONCE:
        return None
    raise ValueError(f"Unsupported payment schedule: {schedule}")


def remaining_balance(total_amount: AmountLike, amount_paid: AmountLike) -> Decimal:
    """Outstanding balance, never negative"""
    return max(to_decimal(total_amount) - to_decimal(amount_paid), ZERO)


def amount_due_now(program) -> Decimal:
    """Next installment for a program, capped at what is left to pay"""
    installment = installment_amount(
        program.cost_per_month, program.payment_schedule, program.duration_months
    )
    return min(installment, remaining_balance(program.total_amount, program.amount_paid))


def installments_needed(total_amount: AmountLike, installment: AmountLike) -> int:
    """Number of installments of the given size that settle total_amount"""
    installment = to_decimal(installment)
    if installment <= ZERO:
        raise ValueError("Installment must be positive")
    return int((to_decimal(total_amount) / installment).to_integral_value(rounding=ROUND_CEILING))


def progress_percent(amount_paid: AmountLike, total_amount: AmountLike) -> Decimal:
    """Percentage of the total already paid, capped at 100"""
    total = to_decimal(total_amount)
    if total <= ZERO:
        return Decimal('100.00')
    return round2(min(to_decimal(amount_paid) / total * 100, Decimal('100')))


def coerce_schedule(value: Union[str, PaymentSchedule]) -> PaymentSchedule:
    """Parse a schedule name, raising ValueError for unknown cadences"""
    if isinstance(value, PaymentSchedule):
        return value
    try:
        return PaymentSchedule(str(value).lower())
    except ValueError:
        raise ValueError(f"Unsupported payment schedule: {value}")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: Union[date, datetime, str]) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Naive datetimes are taken to be UTC; bare dates become midnight UTC;
    strings are parsed as ISO 8601 (a trailing 'Z' is accepted).
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    elif not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
