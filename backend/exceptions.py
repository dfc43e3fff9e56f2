"""
Custom exception classes for the application.

This module defines domain-specific exceptions that provide better error handling
and clearer error messages throughout the application. Every error carries the
identifiers it concerns and the moment it was raised, so operators can line
them up against logs and process-manager journals.
"""
from datetime import datetime, timezone


class ApplicationError(Exception):
    """Base exception for all application errors"""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ConfigurationError(ApplicationError):
    """Raised when a session's source or destination is invalid"""

    def __init__(self, message: str, field: str | None = None, session_id: str | None = None):
        details = {}
        if field:
            details["field"] = field
        if session_id:
            details["session_id"] = session_id
        super().__init__(message, details)


class SessionNotFound(ApplicationError):
    """Raised when an operation targets a session that does not exist"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found", {"session_id": session_id})


class ScheduleNotFound(ApplicationError):
    """Raised when an operation targets a schedule that does not exist"""

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule '{schedule_id}' not found", {"schedule_id": schedule_id})


class InvalidTransitionError(ApplicationError):
    """Raised when a session state change is not in the transition table"""

    def __init__(self, session_id: str, current: str, target: str):
        details = {"session_id": session_id, "current": current, "target": target}
        super().__init__(
            f"Session '{session_id}' cannot move from {current} to {target}",
            details
        )


class ProcessStartError(ApplicationError):
    """Raised when the external encoding process fails to reach running"""

    def __init__(self, session_id: str, message: str, instance_name: str | None = None):
        details = {"session_id": session_id}
        if instance_name:
            details["instance_name"] = instance_name
        super().__init__(message, details)


class ProcessNotFound(ApplicationError):
    """Raised when a process handle is requested for an untracked session"""

    def __init__(self, session_id: str):
        super().__init__(f"No process is tracked for session '{session_id}'", {"session_id": session_id})


class ProcessControlError(ApplicationError):
    """Raised when the external process-control facility fails or times out"""

    def __init__(self, operation: str, instance_name: str, message: str):
        details = {"operation": operation, "instance_name": instance_name}
        super().__init__(message, details)


class ScheduleValidationError(ApplicationError):
    """Raised when a schedule rule is malformed"""

    def __init__(self, message: str, field: str | None = None, schedule_id: str | None = None):
        details = {}
        if field:
            details["field"] = field
        if schedule_id:
            details["schedule_id"] = schedule_id
        super().__init__(message, details)


class TimezoneError(ScheduleValidationError):
    """Raised when a timezone identifier cannot be resolved"""

    def __init__(self, tz_name: str):
        self.tz_name = tz_name
        super().__init__(f"Unknown timezone '{tz_name}'", field="timezone")
        self.details["timezone"] = tz_name


class PersistenceError(ApplicationError):
    """Raised when storage stays unavailable after local retries"""

    def __init__(self, operation: str, message: str):
        details = {"operation": operation}
        super().__init__(message, details)
