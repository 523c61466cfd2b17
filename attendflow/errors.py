"""
Error taxonomy for the flow engine.

Services raise these exceptions; station controllers convert them into
``CommandResult`` values so that no error crosses the notification boundary.
Each class carries a stable ``code`` used in those results.
"""

from __future__ import annotations

from typing import Optional


class FlowError(Exception):
    """Base class for every error the engine reports to a station."""

    code = "flow_error"

    def __init__(self, message: str, entity_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class InvalidTransitionError(FlowError):
    """Raised when a status change is not legal from the current status."""

    code = "invalid_transition"


class PreconditionFailedError(FlowError):
    """Raised when a required field or condition for a transition is missing."""

    code = "precondition_failed"


class ExaminerLockedError(PreconditionFailedError):
    """Raised when a station acts on an encounter another station has locked."""

    code = "examiner_locked"


class AlreadyAdministeredError(FlowError):
    """Raised on a repeat administration.  Benign; callers treat it as a no-op."""

    code = "already_administered"


class ConcurrentModificationError(FlowError):
    """Raised when the stored row no longer matches the version a station acted on."""

    code = "concurrent_modification"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(message, entity_id)
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailableError(FlowError):
    """Raised on a transient store outage.  Never retried automatically."""

    code = "store_unavailable"


class EntityNotFoundError(FlowError):
    """Raised when an encounter or checklist item id is unknown to the store."""

    code = "not_found"
