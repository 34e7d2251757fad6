from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import DataIntegrityError
from models import RecurringInterval, Transaction


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone, stored naive."""
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Day-of-month is kept; shorter months snap to their last day.
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def next_occurrence(from_date: date, interval: RecurringInterval) -> date:
    if interval == RecurringInterval.daily:
        return from_date + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return from_date + timedelta(weeks=1)
    if interval == RecurringInterval.fortnightly:
        return from_date + timedelta(weeks=2)
    if interval == RecurringInterval.monthly:
        return _add_months(from_date, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(from_date, 12)
    raise ValueError(f"Unsupported recurring interval: {interval!r}")


def is_due(txn: Transaction, today: Optional[date] = None) -> bool:
    today = today or local_today()
    if txn.last_processed is None:
        return True
    return txn.next_recurring_date is not None and txn.next_recurring_date <= today


def schedule_advance(txn: Transaction, now: datetime) -> date:
    """Next recurring date for a template processed at ``now``."""
    if txn.recurring_interval is None:
        raise DataIntegrityError(
            f"Recurring transaction {txn.id} has no recurring interval"
        )
    return next_occurrence(now.date(), txn.recurring_interval)
