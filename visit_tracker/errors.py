"""Error taxonomy for the visit tracker.

Every error carries the HTTP status it maps to, so the API layer can render
it without knowing about individual cases.
"""

from typing import Any, Dict, Optional


class VisitTrackerError(Exception):
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.message}
        payload.update({k: v for k, v in self.extra.items() if v is not None})
        return payload


class ValidationError(VisitTrackerError):
    """Missing or malformed request field, or unknown location."""

    status_code = 400


class NoOpenSession(VisitTrackerError):
    status_code = 404


class AlreadyFinalized(VisitTrackerError):
    status_code = 400

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message, sessionId=session_id)
        self.session_id = session_id


class SessionBusy(VisitTrackerError):
    """Another request holds the per-key lease for too long."""

    status_code = 409
    retryable = True


class StoreUnavailable(VisitTrackerError):
    status_code = 503
    retryable = True
