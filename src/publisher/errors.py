"""Errors surfaced synchronously to schedule service callers."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ScheduleError(Exception):
    """Validation, authorization or state error with a stable error code."""

    # Error codes
    REQUIRED_FIELDS_MISSING = "SCHEDULE_REQUIRED_FIELDS_MISSING"
    VARIANT_NOT_FOUND = "VARIANT_NOT_FOUND"
    ACCESS_DENIED = "SCHEDULE_ACCESS_DENIED"
    TIME_MUST_BE_FUTURE = "SCHEDULE_TIME_MUST_BE_FUTURE"
    TIME_TOO_FAR = "SCHEDULE_TIME_TOO_FAR"
    INVALID_TIME = "SCHEDULE_INVALID_TIME"
    INVALID_TIMEZONE = "SCHEDULE_INVALID_TIMEZONE"
    NOT_FOUND = "SCHEDULE_NOT_FOUND"
    CANNOT_BE_MODIFIED = "SCHEDULE_CANNOT_BE_MODIFIED"
    CANNOT_BE_CANCELLED = "SCHEDULE_CANNOT_BE_CANCELLED"
    NO_UPDATES = "SCHEDULE_NO_UPDATES"
    MISSING_DATE_RANGE = "MISSING_DATE_RANGE"

    def __init__(
        self,
        msg: str,
        error_code: str,
        status_code: int = 400,
        severity: str = "error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(msg)
        self.error_code = error_code
        self.status_code = status_code
        self.severity = severity
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error entry in the ``{"errors": [...]}`` response envelope."""
        return {
            "error_code": self.error_code,
            "error_description": str(self),
            "error_severity": self.severity,
        }

    @classmethod
    def not_found(cls) -> "ScheduleError":
        return cls("Schedule not found", cls.NOT_FOUND, status_code=404)

    @classmethod
    def access_denied(cls) -> "ScheduleError":
        return cls("Access denied to this schedule", cls.ACCESS_DENIED, status_code=403)

    @classmethod
    def variant_not_found(cls) -> "ScheduleError":
        return cls("Variant not found", cls.VARIANT_NOT_FOUND, status_code=404)


def error_response(error: ScheduleError) -> Dict[str, Any]:
    """Response body plus the HTTP status to send it with."""
    return {"errors": [error.to_dict()], "http_status": error.status_code}
