"""One-way follow-up task requests for newly created alerts."""

from __future__ import annotations

import logging

from alerting.domain import AlertRule, FollowUpTaskRequest
from alerting.errors import TaskLinkageFailure
from alerting.interfaces import TaskLinker
from alerting.timeouts import call_with_timeout
from config import settings
from models import Alert

logger = logging.getLogger(__name__)


class TaskLinkageNotifier:
    """Request follow-up tasks without letting failures reach the caller."""

    def __init__(
        self,
        task_linker: TaskLinker | None,
        *,
        timeout_seconds: float | None = None,
        enabled: bool | None = None,
    ) -> None:
        """Initialize the notifier with an optional external task creator."""
        task_config = settings.task_linkage
        self._task_linker = task_linker
        self._timeout_seconds = timeout_seconds or task_config.timeout_seconds
        self._enabled = task_config.enabled if enabled is None else enabled

    def notify(self, alert: Alert, rule: AlertRule) -> bool:
        """Request a follow-up task when the rule asks for one.

        Returns whether the request was delivered. Failures and timeouts are
        logged as ``TaskLinkageFailure`` and never raised.
        """
        if self._task_linker is None or not self._enabled or not rule.create_follow_up_task:
            return False
        request = FollowUpTaskRequest(
            alert_id=alert.id,
            patient_id=alert.patient_id,
            rule_id=alert.rule_id,
            severity=alert.severity,
            message=alert.message,
        )
        try:
            call_with_timeout(
                self._task_linker.create_follow_up_task,
                request,
                timeout_seconds=self._timeout_seconds,
                name="task_linkage",
            )
        except TimeoutError as exc:
            self._log_failure(
                TaskLinkageFailure(str(exc), alert_id=alert.id, timed_out=True),
            )
            return False
        except Exception as exc:
            self._log_failure(
                TaskLinkageFailure(f"Follow-up task request failed: {exc}", alert_id=alert.id),
                exc_info=True,
            )
            return False
        logger.info(
            "Requested follow-up task: alert_id=%s rule_id=%s severity=%s",
            alert.id,
            alert.rule_id,
            alert.severity,
        )
        return True

    def _log_failure(self, failure: TaskLinkageFailure, *, exc_info: bool = False) -> None:
        logger.warning(
            "Follow-up task linkage failed: alert_id=%s code=%s error=%s",
            failure.alert_id,
            failure.code,
            failure.message,
            exc_info=exc_info,
        )
