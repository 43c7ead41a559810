"""Failure kinds raised while processing notification jobs.

The job queue retries any exception except UnrecoverableError, so the
split below decides whether a job is retried.
"""

from ..integrations.queue import UnrecoverableError


class NotFoundError(UnrecoverableError):
    """A referenced log, facilitator or manager no longer exists."""


class DeliveryError(Exception):
    """The mail relay did not accept the message. Retried with backoff."""
