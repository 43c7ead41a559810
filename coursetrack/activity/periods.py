"""ISO-8601 week arithmetic for the weekly reporting cycle."""

from datetime import date, datetime, time, timedelta

END_OF_DAY = time(23, 59, 59, 999_000)


def iso_week(moment: date | datetime) -> tuple[int, int]:
    """Return ``(iso_year, iso_week)`` for ``moment``.

    Around New Year the ISO year can differ from the calendar year
    (2024-12-30 is week 1 of 2025), so callers match logs on both values.
    """
    iso = moment.isocalendar()
    return iso.year, iso.week


def previous_iso_week(moment: date | datetime) -> tuple[int, int]:
    """The ISO week before the one containing ``moment``."""
    return iso_week(moment - timedelta(days=7))


def reminder_deadline(now: datetime) -> datetime:
    """Now plus seven days, clamped to the last millisecond of that day."""
    return datetime.combine((now + timedelta(days=7)).date(), END_OF_DAY, tzinfo=now.tzinfo)


def week_deadline(year: int, week: int, tzinfo=None) -> datetime:
    """Sunday 23:59:59.999 of the given ISO week."""
    sunday = date.fromisocalendar(year, week, 7)
    return datetime.combine(sunday, END_OF_DAY, tzinfo=tzinfo)
