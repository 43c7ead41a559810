"""Periodic reminder and missed-deadline passes.

Both passes only read the database and enqueue jobs. Nothing is
checkpointed: a restart runs both passes again straight away, and a pass
that dies halfway is repeated on the next tick since the underlying
condition (an unsubmitted log) persists until the facilitator submits.
"""

import logging
from datetime import datetime, tzinfo

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import sessionmaker

from ..activity.periods import iso_week, previous_iso_week, reminder_deadline
from ..activity.service import active_users_by_role, has_pending_log, unsubmitted_logs_for_week
from ..auth.models import UserRole
from .service import NotificationDispatcher

logger = logging.getLogger(__name__)


def reminder_dedup_key(facilitator_id: int, year: int, week: int) -> str:
    return f"weekly_reminder:{facilitator_id}:{year}-W{week:02d}"


class ReminderScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        tz: tzinfo,
        dedup_reminders: bool = True,
        reminder_interval_hours: int = 24,
        missed_deadline_interval_minutes: int = 60,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self.tz = tz
        self.dedup_reminders = dedup_reminders
        self.reminder_interval_hours = reminder_interval_hours
        self.missed_deadline_interval_minutes = missed_deadline_interval_minutes
        self._scheduler: BackgroundScheduler | None = None

    def schedule_weekly_reminders(self, now: datetime | None = None) -> int:
        """Queue a deadline reminder for each facilitator with an open log this week.

        Returns the number of reminders newly queued.
        """
        now = now or datetime.now(self.tz)
        year, week = iso_week(now)
        deadline = reminder_deadline(now)

        with self._session_factory() as db:
            facilitator_ids = [
                f.id
                for f in active_users_by_role(db, UserRole.FACILITATOR)
                if has_pending_log(db, f.id, year, week)
            ]

        scheduled = 0
        for facilitator_id in facilitator_ids:
            dedup_key = reminder_dedup_key(facilitator_id, year, week) if self.dedup_reminders else None
            result = self._dispatcher.create_reminder(facilitator_id, deadline, now=now, dedup_key=dedup_key)
            if result["success"] and not result.get("duplicate"):
                scheduled += 1

        logger.info(
            "Reminder pass for week %d/%d: %d facilitator(s) pending, %d reminder(s) queued",
            week, year, len(facilitator_ids), scheduled,
        )
        return scheduled

    def check_missed_deadlines(self, now: datetime | None = None) -> int:
        """Alert every active manager about each unsubmitted log from last week.

        Returns the number of alerts queued.
        """
        now = now or datetime.now(self.tz)
        year, week = previous_iso_week(now)

        with self._session_factory() as db:
            missed = [
                {
                    "facilitatorName": log.facilitator.full_name,
                    "facilitatorId": log.facilitator_id,
                    "moduleName": log.assignment.module.name,
                    "weekNumber": log.week_number,
                    "year": log.year,
                    "deadline": now.isoformat(),
                }
                for log in unsubmitted_logs_for_week(db, year, week)
            ]
            manager_ids = [m.id for m in active_users_by_role(db, UserRole.MANAGER)] if missed else []

        queued = 0
        for data in missed:
            for manager_id in manager_ids:
                if self._dispatcher.create_alert(manager_id, "missed_deadline", data)["success"]:
                    queued += 1

        logger.info(
            "Missed-deadline pass for week %d/%d: %d missed submission(s), %d alert(s) queued",
            week, year, len(missed), queued,
        )
        return queued

    # ── Periodic execution ─────────────────────────────────────────────

    def start(self) -> None:
        """Run both passes now, then on their fixed intervals."""
        if self._scheduler is not None:
            logger.info("Scheduler already running, skipping initialization")
            return

        first_run = datetime.now(self.tz)
        self._scheduler = BackgroundScheduler(timezone=self.tz)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_job(
            self.schedule_weekly_reminders,
            trigger="interval",
            hours=self.reminder_interval_hours,
            id="schedule_weekly_reminders",
            next_run_time=first_run,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.check_missed_deadlines,
            trigger="interval",
            minutes=self.missed_deadline_interval_minutes,
            id="check_missed_deadlines",
            next_run_time=first_run,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started: reminders every %d h, missed-deadline checks every %d min",
            self.reminder_interval_hours, self.missed_deadline_interval_minutes,
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Scheduler stopped")

    @staticmethod
    def _on_job_error(event) -> None:
        logger.error("Scheduled pass %s failed, will retry next run: %s", event.job_id, event.exception)
