"""Enqueue entry points for notifications, reminders and manager alerts.

Callers (the submission flow, the scheduler) only enqueue; delivery happens
in the worker process.
"""

import logging
from datetime import UTC, datetime, timedelta

import redis

from ..integrations.queue import FAILED, Queues

logger = logging.getLogger(__name__)

ACTIVITY_LOG_SUBMITTED = "activity_log_submitted"
WEEKLY_REMINDER = "weekly_reminder"
MANAGER_ALERT = "manager_alert"


class NotificationDispatcher:
    def __init__(self, queues: Queues) -> None:
        self.queues = queues

    def create_notification(self, notification_type: str, data: dict) -> dict:
        """Queue an immediate notification, e.g. ``activity_log_submitted``."""
        try:
            job = self.queues.notifications.add(notification_type, data)
        except redis.RedisError as exc:
            logger.error("Notification queuing failed (%s): %s", notification_type, exc)
            return {"success": False, "error": str(exc)}
        logger.info("Notification queued: %s (job %s)", notification_type, job.id)
        return {"success": True, "jobId": job.id}

    def create_reminder(
        self,
        facilitator_id: int,
        deadline: datetime,
        now: datetime | None = None,
        dedup_key: str | None = None,
    ) -> dict:
        """Queue a reminder that becomes visible to the worker at ``deadline``.

        With ``dedup_key`` the reminder is only queued once per key, even
        after it has been delivered. A reminder under that key which ended
        in failure is replaced so the next pass can try again.
        """
        now = now or datetime.now(deadline.tzinfo or UTC)
        delay_ms = max((deadline - now) // timedelta(milliseconds=1), 0)
        payload = {"facilitatorId": facilitator_id, "deadline": deadline.isoformat()}
        try:
            if dedup_key is not None:
                existing = self.queues.reminders.get_job(dedup_key)
                if existing is not None and existing.state != FAILED:
                    logger.debug("Reminder %s already %s, skipping", dedup_key, existing.state)
                    return {"success": True, "jobId": dedup_key, "duplicate": True}
            job = self.queues.reminders.add(WEEKLY_REMINDER, payload, delay_ms=delay_ms, job_id=dedup_key)
        except redis.RedisError as exc:
            logger.error("Reminder scheduling failed for facilitator %s: %s", facilitator_id, exc)
            return {"success": False, "error": str(exc)}
        logger.info("Reminder scheduled for facilitator %s (job %s, delay %d ms)", facilitator_id, job.id, delay_ms)
        return {"success": True, "jobId": job.id, "delay": delay_ms}

    def create_alert(self, manager_id: int, alert_type: str, data: dict) -> dict:
        payload = {"managerId": manager_id, "alertType": alert_type, "data": data}
        try:
            job = self.queues.alerts.add(MANAGER_ALERT, payload)
        except redis.RedisError as exc:
            logger.error("Alert queuing failed for manager %s: %s", manager_id, exc)
            return {"success": False, "error": str(exc)}
        logger.info("Alert queued for manager %s: %s (job %s)", manager_id, alert_type, job.id)
        return {"success": True, "jobId": job.id}
