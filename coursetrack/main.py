"""Worker process: queue consumers plus the periodic scheduler."""

import getpass
import logging
import signal
import threading
from pathlib import Path
from zoneinfo import ZoneInfo

from .config import settings, setup_logging
from .database.base import ConnectError, connect, make_session_factory
from .integrations.mailer import SmtpMailer, encrypt_value
from .integrations.queue import create_queues
from .notifications.composer import NotificationComposer
from .notifications.scheduler import ReminderScheduler
from .notifications.service import NotificationDispatcher
from .notifications.worker import NotificationWorker

logger = logging.getLogger(__name__)


def _run_migrations(database_url: str) -> None:
    """Run Alembic migrations (upgrade head) on startup."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(Path(__file__).parent.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    command.upgrade(alembic_cfg, "head")


def main() -> None:
    setup_logging()
    logger.info("Starting notification worker...")

    try:
        engine = connect(settings.database_urls)
    except ConnectError as exc:
        logger.critical("Failed to initialize database: %s", exc)
        raise SystemExit(1) from exc

    _run_migrations(engine.url.render_as_string(hide_password=False))
    session_factory = make_session_factory(engine)
    queues = create_queues(settings)

    composer = NotificationComposer(session_factory, SmtpMailer.from_settings(settings))
    worker = NotificationWorker(queues, composer, poll_interval=settings.worker_poll_interval)
    scheduler = ReminderScheduler(
        session_factory,
        NotificationDispatcher(queues),
        tz=ZoneInfo(settings.timezone),
        dedup_reminders=settings.reminder_dedup,
        reminder_interval_hours=settings.reminder_interval_hours,
        missed_deadline_interval_minutes=settings.missed_deadline_interval_minutes,
    )

    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received %s. Shutting down gracefully...", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    worker.start()
    scheduler.start()
    logger.info("Notification worker started successfully")
    try:
        while not stop.wait(1.0):
            pass
    finally:
        scheduler.shutdown()
        worker.stop()
        queues.close()
        engine.dispose()


def encrypt_secret() -> None:
    """Print SMTP_PASS in its encrypted form for the .env file."""
    plaintext = getpass.getpass("SMTP password: ")
    if not plaintext:
        raise SystemExit("Nothing to encrypt")
    print(encrypt_value(plaintext, settings.secret_key))


if __name__ == "__main__":
    main()
