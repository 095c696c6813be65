"""Error taxonomy for the load lifecycle and settlement engine.

Messages are written to be shown to an operator verbatim. Everything except
``IOFailure`` is raised before any write is attempted.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class TMSError(Exception):
    """Base class for engine errors."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class NotFound(TMSError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str) -> None:
        label = entity_type.replace("_", " ").capitalize()
        super().__init__(f"{label} '{entity_id}' not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class PermissionDenied(TMSError):
    code = "permission_denied"


class PreconditionFailed(TMSError):
    """Locked-load edit without a reason, delete blocked by references, or duplicate invoice target."""

    code = "precondition_failed"

    def __init__(self, message: str, blockers: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.blockers = list(blockers or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["blockers"] = self.blockers
        return payload


class ValidationFailed(TMSError):
    code = "validation_failed"


class IOFailure(TMSError):
    """Store rejected a write; local state has already been rolled back."""

    code = "io_failure"
