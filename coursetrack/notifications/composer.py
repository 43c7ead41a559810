"""Notification content and delivery for the three job types.

Each entry point loads what it needs from the database, renders an email
and hands it to the mail gateway. Lookup failures raise NotFoundError;
transport failures come back as ``{"success": False, "error": ...}``.
"""

import json
import logging
from datetime import datetime
from html import escape

from sqlalchemy.orm import Session, sessionmaker

from ..activity.models import STATUS_FIELDS, ActivityLog
from ..activity.service import get_activity_log, pending_logs_for_facilitator
from ..auth.models import User
from ..integrations.mailer import MailGateway
from .errors import NotFoundError

logger = logging.getLogger(__name__)

_FOOTER_TEXT = "--\nCourse Activity Tracker\nThis message was sent automatically.\n"


def _status_value(log: ActivityLog, attr: str) -> str:
    value = getattr(log, attr)
    return getattr(value, "value", value) or "n/a"


def _module_label(log: ActivityLog) -> str:
    module = log.assignment.module
    return f"{module.name} ({module.code})"


def _details_html(rows: list[tuple[str, object]]) -> str:
    items = "".join(f"<li><strong>{escape(label)}:</strong> {escape(str(value))}</li>" for label, value in rows)
    return f"<ul>{items}</ul>"


def _details_text(rows: list[tuple[str, object]]) -> str:
    return "".join(f"  {label}: {value}\n" for label, value in rows)


class NotificationComposer:
    def __init__(self, session_factory: sessionmaker, mailer: MailGateway) -> None:
        self._session_factory = session_factory
        self._mailer = mailer

    def _load_user(self, db: Session, user_id: int, what: str) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"{what} {user_id} not found")
        return user

    # ── Activity log submitted ─────────────────────────────────────────

    def send_activity_log_notice(self, activity_log_id: int) -> dict:
        with self._session_factory() as db:
            log = get_activity_log(db, activity_log_id)
            if log is None:
                raise NotFoundError(f"Activity log {activity_log_id} not found")
            facilitator = log.assignment.facilitator

            rows = [(label, _status_value(log, attr)) for attr, label in STATUS_FIELDS]
            submitted = log.submitted_at.isoformat() if log.submitted_at else "not submitted"
            notes_html = f"<p><strong>Notes:</strong> {escape(log.notes)}</p>" if log.notes else ""
            notes_text = f"\nNotes: {log.notes}\n" if log.notes else ""

            html = (
                "<h2>Activity Log Submitted</h2>"
                f"<p><strong>Facilitator:</strong> {escape(facilitator.full_name)}</p>"
                f"<p><strong>Module:</strong> {escape(_module_label(log))}</p>"
                f"<p><strong>Week:</strong> {log.week_number}, {log.year}</p>"
                f"<p><strong>Submitted:</strong> {escape(submitted)}</p>"
                "<hr><h3>Activity Status:</h3>"
                f"{_details_html(rows)}{notes_html}"
            )
            text = (
                f"Activity Log Submitted\n{'=' * 22}\n\n"
                f"Facilitator: {facilitator.full_name}\n"
                f"Module: {_module_label(log)}\n"
                f"Week: {log.week_number}, {log.year}\n"
                f"Submitted: {submitted}\n\n"
                f"Activity Status:\n{_details_text(rows)}{notes_text}\n{_FOOTER_TEXT}"
            )
            subject = f"Activity Log Submitted - Week {log.week_number}"
            return self._mailer.send(facilitator.email, subject, html, text)

    # ── Weekly reminder ────────────────────────────────────────────────

    def send_reminder_notice(self, facilitator_id: int, deadline: datetime) -> dict:
        with self._session_factory() as db:
            facilitator = self._load_user(db, facilitator_id, "Facilitator")
            pending = pending_logs_for_facilitator(db, facilitator_id)
            if not pending:
                logger.info("Facilitator %s has no pending logs, reminder skipped", facilitator_id)
                return {"success": True, "message": "No pending logs found"}

            lines = [f"{_module_label(log)} - Week {log.week_number}, {log.year}" for log in pending]
            due = deadline.strftime("%A, %d %B %Y")
            items = "".join(f"<li>{escape(line)}</li>" for line in lines)

            html = (
                "<h2>Weekly Activity Log Reminder</h2>"
                f"<p>Dear {escape(facilitator.full_name)},</p>"
                "<p>This is a reminder that you have pending activity logs that need to be submitted.</p>"
                f"<p><strong>Deadline:</strong> {escape(due)}</p>"
                f"<hr><h3>Pending Activity Logs:</h3><ul>{items}</ul>"
                "<p>Please log into the system and submit your activity logs before the deadline.</p>"
            )
            text = (
                f"Dear {facilitator.full_name},\n\n"
                "You have pending activity logs that need to be submitted.\n"
                f"Deadline: {due}\n\n"
                + "".join(f"  - {line}\n" for line in lines)
                + f"\nPlease submit them before the deadline.\n\n{_FOOTER_TEXT}"
            )
            return self._mailer.send(facilitator.email, "Weekly Activity Log Reminder", html, text)

    # ── Manager alerts ─────────────────────────────────────────────────

    def send_manager_alert(self, manager_id: int, alert_type: str, data: dict) -> dict:
        with self._session_factory() as db:
            manager = self._load_user(db, manager_id, "Manager")
            subject, intro, rows, outro = _alert_template(alert_type, data)

            if rows is None:
                dump = json.dumps(data, indent=2, ensure_ascii=False, default=str)
                body_html = (
                    f"<p><strong>Alert Type:</strong> {escape(alert_type)}</p>"
                    f"<p><strong>Data:</strong></p><pre>{escape(dump)}</pre>"
                )
                body_text = f"Alert Type: {alert_type}\nData:\n{dump}\n"
            else:
                body_html = f"<hr><h3>Details:</h3>{_details_html(rows)}"
                body_text = f"Details:\n{_details_text(rows)}"

            html = (
                f"<h2>{escape(subject)}</h2>"
                f"<p>Dear {escape(manager.full_name)},</p>"
                f"<p>{escape(intro)}</p>{body_html}"
                + (f"<p>{escape(outro)}</p>" if outro else "")
            )
            closing = f"{outro}\n" if outro else ""
            text = f"Dear {manager.full_name},\n\n{intro}\n\n{body_text}\n{closing}\n{_FOOTER_TEXT}"
            return self._mailer.send(manager.email, subject, html, text)


def _alert_template(alert_type: str, data: dict) -> tuple[str, str, list[tuple[str, object]] | None, str]:
    """Return (subject, intro, detail rows, closing line) for an alert type.

    Unknown types get ``rows=None`` and the payload is dumped verbatim.
    """
    week = f"{data.get('weekNumber', '?')}, {data.get('year', '?')}"
    if alert_type == "missed_deadline":
        return (
            "Facilitator Missed Activity Log Deadline",
            "A facilitator has missed the weekly activity log deadline.",
            [
                ("Facilitator", data.get("facilitatorName", "")),
                ("Module", data.get("moduleName", "")),
                ("Week", week),
                ("Deadline", data.get("deadline", "")),
            ],
            "Please follow up with the facilitator to ensure compliance.",
        )
    if alert_type == "late_submission":
        return (
            "Late Activity Log Submission",
            "A facilitator has submitted their activity log after the deadline.",
            [
                ("Facilitator", data.get("facilitatorName", "")),
                ("Module", data.get("moduleName", "")),
                ("Week", week),
                ("Submitted", data.get("submittedAt", "")),
                ("Deadline", data.get("deadline", "")),
            ],
            "",
        )
    return (
        "Activity Tracker Alert",
        "An alert has been triggered in the activity tracker system.",
        None,
        "",
    )
