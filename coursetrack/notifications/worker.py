"""Queue consumer: one handler per job type, one thread per queue."""

import logging
import threading
from datetime import datetime

from ..integrations.queue import Job, JobQueue, Queues
from .composer import NotificationComposer
from .errors import DeliveryError
from .service import ACTIVITY_LOG_SUBMITTED, MANAGER_ALERT, WEEKLY_REMINDER

logger = logging.getLogger(__name__)


def _checked(result: dict) -> dict:
    """Turn a composer failure into a retryable exception."""
    if not result.get("success"):
        raise DeliveryError(result.get("error") or "unknown delivery failure")
    out = {"success": True, "messageId": result.get("messageId")}
    if "message" in result:
        out["message"] = result["message"]
    return out


class NotificationWorker:
    def __init__(self, queues: Queues, composer: NotificationComposer, poll_interval: float = 1.0) -> None:
        self.queues = queues
        self.composer = composer
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.handlers = {
            queues.notifications.name: {ACTIVITY_LOG_SUBMITTED: self.handle_activity_log_submitted},
            queues.reminders.name: {WEEKLY_REMINDER: self.handle_weekly_reminder},
            queues.alerts.name: {MANAGER_ALERT: self.handle_manager_alert},
        }
        for queue in queues:
            queue.on("completed", self._log_completed(queue.name))
            queue.on("failed", self._log_failed(queue.name))

    # ── Handlers ───────────────────────────────────────────────────────

    def handle_activity_log_submitted(self, job: Job) -> dict:
        log_id = job.data["activityLogId"]
        logger.info("Processing activity log notification for log %s", log_id)
        return _checked(self.composer.send_activity_log_notice(log_id))

    def handle_weekly_reminder(self, job: Job) -> dict:
        facilitator_id = job.data["facilitatorId"]
        logger.info("Processing reminder for facilitator %s", facilitator_id)
        deadline = datetime.fromisoformat(job.data["deadline"])
        return _checked(self.composer.send_reminder_notice(facilitator_id, deadline))

    def handle_manager_alert(self, job: Job) -> dict:
        manager_id, alert_type = job.data["managerId"], job.data["alertType"]
        logger.info("Processing manager alert %s for manager %s", alert_type, manager_id)
        return _checked(self.composer.send_manager_alert(manager_id, alert_type, job.data.get("data", {})))

    # ── Lifecycle events ───────────────────────────────────────────────

    @staticmethod
    def _log_completed(queue_name: str):
        def listener(job: Job, result) -> None:
            logger.info("[%s] job %s (%s) completed: %s", queue_name, job.id, job.name, result)
        return listener

    @staticmethod
    def _log_failed(queue_name: str):
        def listener(job: Job, exc: Exception) -> None:
            logger.error(
                "[%s] job %s (%s) failed after %d attempt(s): %s",
                queue_name, job.id, job.name, job.attempts_made, exc,
            )
        return listener

    # ── Run loop ───────────────────────────────────────────────────────

    def run_once(self) -> int:
        """Process at most one ready job per queue. Returns jobs processed."""
        processed = 0
        for queue in self.queues:
            if queue.process_next(self.handlers[queue.name]) is not None:
                processed += 1
        return processed

    def _consume(self, queue: JobQueue) -> None:
        handlers = self.handlers[queue.name]
        while not self._stop.is_set():
            try:
                job = queue.process_next(handlers)
            except Exception:
                logger.exception("[%s] queue unavailable, backing off", queue.name)
                job = None
            if job is None:
                self._stop.wait(self.poll_interval)

    def start(self) -> None:
        self._stop.clear()
        for queue in self.queues:
            queue.recover_stalled()
            thread = threading.Thread(target=self._consume, args=(queue,), name=f"worker-{queue.name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Notification worker started on queues: %s", ", ".join(q.name for q in self.queues))

    def stop(self, timeout: float | None = 30.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info("Notification worker stopped")
