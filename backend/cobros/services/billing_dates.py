from __future__ import annotations

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

_DAY_STEPS = {
    "daily": 1,
    "weekly": 7,
    "biweekly": 15,
}

_MONTH_STEPS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


def next_billing_date(base: datetime, interval: str, count: int = 1) -> datetime:
    """Date of the next charge after ``base``.

    Calendar intervals clamp to the last day of the target month, so Jan 31
    plus one month is Feb 28 (Feb 29 on leap years). Unknown intervals bill
    monthly.
    """
    steps = max(int(count or 1), 1)
    code = (interval or "").strip().lower()
    if code in _DAY_STEPS:
        return base + timedelta(days=_DAY_STEPS[code] * steps)
    months = _MONTH_STEPS.get(code, 1)
    return base + relativedelta(months=months * steps)


def add_months(base, months: int = 1):
    return base + relativedelta(months=months)
