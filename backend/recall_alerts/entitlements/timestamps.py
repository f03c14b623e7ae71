"""Normalization of billing-provider instants to UTC, minute granularity.

Start instants round down to the start of their day and end instants round up
to the last minute of their day. This absorbs provider clock jitter and keeps
comparisons stable across a day.
"""

from datetime import datetime, time, timedelta, timezone

# Far enough out that adding any sane grace window cannot overflow.
_FAR_FUTURE_DAY = datetime(9999, 12, 31)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def normalize_time(value: datetime, at_start: bool = False) -> datetime:
    """Round ``value`` to its day start (``at_start``) or day end, then to the minute."""
    value = to_naive_utc(value)
    day = value.date()
    if at_start:
        return datetime.combine(day, time.min)
    return datetime.combine(day, time(23, 59))


def far_future(grace_period: timedelta) -> datetime:
    """Sentinel expiration for subscriptions with no scheduled end.

    Pulled back by the grace window so ``expires_at + grace_period`` stays
    representable.
    """
    return normalize_time(_FAR_FUTURE_DAY - grace_period)
