"""Grace-Period Clock — pure helpers deciding whether an expiration is still live.

An entitlement stays active until ``expires_at + grace_period``. The stored
``expires_at`` is the provider's real expiration; only compare it through
these helpers so every read path applies the same window.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current instant as naive UTC (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_grace_period(now: datetime, grace_period: timedelta) -> datetime:
    """Earliest ``expires_at`` still considered active at ``now``.

    Used as the SQL cut-off (``expires_at >= start_of_grace_period(now)``).
    """
    return now - grace_period


def is_active(expires_at: datetime | None, now: datetime, grace_period: timedelta) -> bool:
    """True while ``now <= expires_at + grace_period``.

    Monotonic in ``now``: once false it stays false for later instants.
    A missing expiration is never active.
    """
    if expires_at is None:
        return False
    return start_of_grace_period(now, grace_period) <= expires_at
