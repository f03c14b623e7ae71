"""Shared API dependencies — single import point for all routers.

Re-exports database, authentication and component dependencies so that
router modules can import everything they need from one place::

    from recall_alerts.api.deps import get_current_subscriber, get_coordinator
"""

from recall_alerts.auth.dependencies import get_current_subscriber, require_worker
from recall_alerts.billing.dependencies import (
    get_coordinator,
    get_plan_catalog,
    get_reconciler,
    get_targeting_engine,
)
from recall_alerts.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_subscriber",
    "require_worker",
    "get_plan_catalog",
    "get_coordinator",
    "get_reconciler",
    "get_targeting_engine",
]
