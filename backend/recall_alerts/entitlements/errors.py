"""Domain errors raised by the entitlement and targeting core."""

import uuid


class EntitlementError(Exception):
    """Base class for entitlement, reconciliation and targeting errors."""


class ValidationError(EntitlementError):
    """Malformed input data. The caller must fix it; never retried."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ConflictError(EntitlementError):
    """A business rule would be violated (e.g. a second active recall entitlement)."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class LockContention(EntitlementError):
    """Another writer holds a live lease on the subscriber."""

    def __init__(self, subscriber_id: uuid.UUID | str) -> None:
        super().__init__(f"Subscriber {subscriber_id} is locked by another writer")
        self.subscriber_id = subscriber_id


class NotFound(EntitlementError):
    """An unknown subscriber, entitlement or slot reference."""

    def __init__(self, kind: str, ref: object) -> None:
        super().__init__(f"{kind} {ref} not found")
        self.kind = kind
        self.ref = ref


class UpstreamMismatch(EntitlementError):
    """A billing event disagrees with local state; only a full resync fixes it."""
