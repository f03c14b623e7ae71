"""SQLAlchemy models for the recall-alert service.

All models are imported here so that ``Base.metadata`` knows every table.
If you add a new model, import it in this file.
"""

from recall_alerts.models.entitlement import (
    ACTIVE_STATUSES,
    INACTIVE_STATUSES,
    Entitlement,
    EntitlementStatus,
    VehicleSlot,
)
from recall_alerts.models.preference import Preference
from recall_alerts.models.subscriber import ELEVATED_ROLES, Role, Subscriber

__all__ = [
    "ACTIVE_STATUSES",
    "ELEVATED_ROLES",
    "INACTIVE_STATUSES",
    "Entitlement",
    "EntitlementStatus",
    "Preference",
    "Role",
    "Subscriber",
    "VehicleSlot",
]
