"""Activity log queries and the submission flow that triggers notifications."""

import logging
from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session, joinedload

from ..auth.models import User, UserRole
from ..config import settings
from ..courses.models import CourseAssignment
from ..notifications.service import ACTIVITY_LOG_SUBMITTED, NotificationDispatcher
from .models import ActivityLog
from .periods import week_deadline

logger = logging.getLogger(__name__)

_WITH_MODULE = joinedload(ActivityLog.assignment).joinedload(CourseAssignment.module)


def active_users_by_role(db: Session, role: UserRole) -> list[User]:
    return (
        db.query(User)
        .filter(User.role == role, User.is_active == True)  # noqa: E712
        .order_by(User.id)
        .all()
    )


def get_activity_log(db: Session, log_id: int) -> ActivityLog | None:
    """Load an active log with its assignment, module and facilitator.

    Soft-deleted logs are treated as missing.
    """
    return (
        db.query(ActivityLog)
        .options(_WITH_MODULE, joinedload(ActivityLog.facilitator))
        .filter(ActivityLog.id == log_id, ActivityLog.is_active == True)  # noqa: E712
        .first()
    )


def pending_logs_for_facilitator(db: Session, facilitator_id: int) -> list[ActivityLog]:
    """All active, unsubmitted logs of a facilitator, oldest week first."""
    return (
        db.query(ActivityLog)
        .options(_WITH_MODULE)
        .filter(
            ActivityLog.facilitator_id == facilitator_id,
            ActivityLog.is_active == True,  # noqa: E712
            ActivityLog.submitted_at.is_(None),
        )
        .order_by(ActivityLog.year.asc(), ActivityLog.week_number.asc())
        .all()
    )


def has_pending_log(db: Session, facilitator_id: int, year: int, week: int) -> bool:
    return (
        db.query(ActivityLog.id)
        .filter(
            ActivityLog.facilitator_id == facilitator_id,
            ActivityLog.year == year,
            ActivityLog.week_number == week,
            ActivityLog.is_active == True,  # noqa: E712
            ActivityLog.submitted_at.is_(None),
        )
        .first()
        is not None
    )


def unsubmitted_logs_for_week(db: Session, year: int, week: int) -> list[ActivityLog]:
    return (
        db.query(ActivityLog)
        .options(_WITH_MODULE, joinedload(ActivityLog.facilitator))
        .filter(
            ActivityLog.year == year,
            ActivityLog.week_number == week,
            ActivityLog.is_active == True,  # noqa: E712
            ActivityLog.submitted_at.is_(None),
        )
        .order_by(ActivityLog.id)
        .all()
    )


def _as_aware(moment: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def submit_activity_log(
    db: Session,
    dispatcher: NotificationDispatcher,
    log_id: int,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> ActivityLog | None:
    """Mark a log submitted and queue the follow-up notifications.

    The facilitator gets an ``activity_log_submitted`` notice and every
    active manager an alert: ``late_submission`` when the log's week has
    already ended, ``activity_log_submitted`` otherwise. A log that was
    already submitted is returned untouched. Returns None if not found.

    Weeks end on Sunday 23:59:59.999 in ``tz`` (default: the configured
    TIMEZONE), the same calendar the missed-deadline pass uses.
    """
    log = get_activity_log(db, log_id)
    if log is None:
        return None
    if log.submitted_at is not None:
        return log

    tz = tz or ZoneInfo(settings.timezone)
    now = now or datetime.now(tz)
    log.submitted_at = now
    db.commit()

    dispatcher.create_notification(
        ACTIVITY_LOG_SUBMITTED,
        {
            "activityLogId": log.id,
            "facilitatorId": log.facilitator_id,
            "weekNumber": log.week_number,
            "year": log.year,
        },
    )

    deadline = week_deadline(log.year, log.week_number, tzinfo=tz)
    alert_type = "late_submission" if _as_aware(now) > deadline else ACTIVITY_LOG_SUBMITTED
    data = {
        "facilitatorName": log.facilitator.full_name,
        "facilitatorId": log.facilitator_id,
        "moduleName": log.assignment.module.name,
        "weekNumber": log.week_number,
        "year": log.year,
        "submittedAt": now.isoformat(),
        "deadline": deadline.isoformat(),
    }
    for manager in active_users_by_role(db, UserRole.MANAGER):
        dispatcher.create_alert(manager.id, alert_type, data)

    logger.info("Activity log %s submitted (week %s/%s, %s)", log.id, log.week_number, log.year, alert_type)
    return log
