"""Error taxonomy for alert evaluation and lifecycle operations."""

from __future__ import annotations

from enum import Enum
from uuid import UUID


class ErrorCategory(str, Enum):
    """High-level error categories shared across alerting boundaries."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


class AlertingErrorCode(str, Enum):
    """Machine-readable error codes for alerting failures."""

    CONFIGURATION_DEFECT = "configuration_defect"
    ALERT_CONFLICT = "alert_conflict"
    ALERT_NOT_FOUND = "alert_not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    TASK_LINKAGE_FAILED = "task_linkage_failed"
    TASK_LINKAGE_TIMEOUT = "task_linkage_timeout"


class AlertingError(Exception):
    """Base class for alerting errors carrying a code, category, and details."""

    category = ErrorCategory.INTERNAL
    retryable = False

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error with a machine-readable code and details."""
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


class ConfigurationDefect(AlertingError):
    """Raised when a rule is malformed or incompatible with an observation."""

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        rule_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the defect with the offending rule identifier."""
        merged = dict(details or {})
        if rule_id is not None:
            merged.setdefault("rule_id", rule_id)
        super().__init__(AlertingErrorCode.CONFIGURATION_DEFECT.value, message, merged)
        self.rule_id = rule_id


class AlertConflictError(AlertingError):
    """Raised when a lifecycle guard is violated by the alert's current state."""

    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        *,
        alert_id: UUID,
        current_status: str | None = None,
        claimed_by: str | None = None,
    ) -> None:
        """Initialize the conflict with the alert's observed state."""
        super().__init__(
            AlertingErrorCode.ALERT_CONFLICT.value,
            message,
            {
                "alert_id": str(alert_id),
                "current_status": current_status,
                "claimed_by": claimed_by,
            },
        )
        self.alert_id = alert_id
        self.current_status = current_status
        self.claimed_by = claimed_by


class AlertNotFoundError(AlertingError):
    """Raised when an alert identifier does not exist."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, alert_id: UUID) -> None:
        """Initialize the error for the missing alert."""
        super().__init__(
            AlertingErrorCode.ALERT_NOT_FOUND.value,
            f"Alert not found: {alert_id}",
            {"alert_id": str(alert_id)},
        )
        self.alert_id = alert_id


class UpstreamUnavailable(AlertingError):
    """Raised when the rule catalog or metric history cannot be reached in time."""

    category = ErrorCategory.DEPENDENCY
    retryable = True

    def __init__(
        self,
        dependency: str,
        message: str,
        *,
        timed_out: bool = False,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error with the failing dependency name."""
        code = (
            AlertingErrorCode.UPSTREAM_TIMEOUT.value
            if timed_out
            else AlertingErrorCode.UPSTREAM_UNAVAILABLE.value
        )
        merged = dict(details or {})
        merged.setdefault("dependency", dependency)
        super().__init__(code, message, merged)
        self.dependency = dependency
        self.timed_out = timed_out


class TaskLinkageFailure(AlertingError):
    """Raised when a follow-up task request fails or times out."""

    category = ErrorCategory.DEPENDENCY

    def __init__(
        self,
        message: str,
        *,
        alert_id: UUID,
        timed_out: bool = False,
    ) -> None:
        """Initialize the failure for the alert whose task was requested."""
        code = (
            AlertingErrorCode.TASK_LINKAGE_TIMEOUT.value
            if timed_out
            else AlertingErrorCode.TASK_LINKAGE_FAILED.value
        )
        super().__init__(code, message, {"alert_id": str(alert_id)})
        self.alert_id = alert_id
        self.timed_out = timed_out
