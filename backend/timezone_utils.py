"""
Timezone utilities for tenant-aware date handling.

Payments are recorded against the tenant's local calendar, so "today" and the
month a payment belongs to must be computed in the tenant's timezone rather
than the server's UTC clock.
"""
import calendar
from datetime import datetime, date
from typing import Optional
import pytz

from config import settings


def get_tenant_timezone(tenant_timezone: Optional[str] = None):
    """
    Get pytz timezone object for tenant.

    Falls back to UTC if the stored timezone name is unknown.
    """
    try:
        return pytz.timezone(tenant_timezone or settings.DEFAULT_TIMEZONE)
    except pytz.exceptions.UnknownTimeZoneError:
        return pytz.UTC


def get_tenant_today(tenant_timezone: Optional[str] = None) -> date:
    """
    Get current date in tenant's timezone.

    This ensures "today" reflects the tenant's local time,
    not the server's UTC time.
    """
    tz = get_tenant_timezone(tenant_timezone)
    utc_now = datetime.utcnow().replace(tzinfo=pytz.UTC)
    return utc_now.astimezone(tz).date()


def utc_to_tenant_date(utc_datetime: datetime, tenant_timezone: Optional[str] = None) -> date:
    """Convert a UTC datetime (naive or aware) to a date in the tenant's timezone."""
    tz = get_tenant_timezone(tenant_timezone)

    if utc_datetime.tzinfo is None:
        utc_datetime = utc_datetime.replace(tzinfo=pytz.UTC)

    return utc_datetime.astimezone(tz).date()


def month_key(day: date) -> str:
    """Calendar month of a date as YYYY-MM"""
    return f"{day.year:04d}-{day.month:02d}"


def add_months(day: date, months: int) -> date:
    """
    Add calendar months, clamping to the last day of the target month.

    Jan 31 + 1 month = Feb 28 (or 29), Mar 31 + 1 month = Apr 30.
    """
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))
