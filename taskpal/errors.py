# FILE: taskpal/errors.py
"""
Error taxonomy for the ledger / inventory core.

Every error carries:
  - code:         short stable identifier, echoed in HTTP payloads;
  - status_code:  HTTP status used by the boundary layer.

Business-rule errors (UnknownAccessory, AlreadyOwned, NotOwned, NotEquipped,
InsufficientPoints, LockedAccessory) are always raised before the ledger is
touched, so callers never need to roll anything back.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class TaskpalError(Exception):
    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            out["details"] = dict(self.details)
        return out


class SourceUnavailable(TaskpalError):
    """External task service unreachable or misconfigured."""

    code = "source_unavailable"
    status_code = 503


class InvalidRequest(TaskpalError):
    code = "invalid_request"
    status_code = 400


class UnknownAccessory(TaskpalError):
    code = "unknown_accessory"
    status_code = 404

    def __init__(self, accessory_id: str) -> None:
        super().__init__("Accessory not found", accessory_id=accessory_id)
        self.accessory_id = accessory_id


class AlreadyOwned(TaskpalError):
    code = "already_owned"
    status_code = 409

    def __init__(self, accessory_id: str) -> None:
        super().__init__("Already owned", accessory_id=accessory_id)
        self.accessory_id = accessory_id


class NotOwned(TaskpalError):
    code = "not_owned"
    status_code = 400

    def __init__(self, accessory_id: str) -> None:
        super().__init__("You do not own this accessory", accessory_id=accessory_id)
        self.accessory_id = accessory_id


class NotEquipped(TaskpalError):
    code = "not_equipped"
    status_code = 400

    def __init__(self, accessory_id: str) -> None:
        super().__init__("Accessory is not equipped", accessory_id=accessory_id)
        self.accessory_id = accessory_id


class InsufficientPoints(TaskpalError):
    code = "insufficient_points"
    status_code = 400

    def __init__(self, accessory_id: str, *, cost: int, points: int) -> None:
        super().__init__("Not enough points", accessory_id=accessory_id, cost=cost, points=points)
        self.accessory_id = accessory_id
        self.cost = cost
        self.points = points


class LockedAccessory(TaskpalError):
    code = "locked_accessory"
    status_code = 403

    def __init__(self, accessory_id: str, *, threshold: int, lifetime_points: int) -> None:
        super().__init__(
            "Accessory is locked",
            accessory_id=accessory_id,
            unlock_threshold=threshold,
            lifetime_points=lifetime_points,
        )
        self.accessory_id = accessory_id
        self.threshold = threshold
        self.lifetime_points = lifetime_points


class PersistenceFailure(TaskpalError):
    """
    Durable write failed. The in-memory ledger is not committed when this is
    raised; the last successfully persisted state stays authoritative.
    """

    code = "persistence_failure"
    status_code = 500

    def __init__(self, message: str = "Failed to persist ledger", *, user_id: Optional[str] = None) -> None:
        super().__init__(message, user_id=user_id)
        self.user_id = user_id


__all__ = [
    "TaskpalError",
    "SourceUnavailable",
    "InvalidRequest",
    "UnknownAccessory",
    "AlreadyOwned",
    "NotOwned",
    "NotEquipped",
    "InsufficientPoints",
    "LockedAccessory",
    "PersistenceFailure",
]
