"""Tests for the enqueue entry points."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import redis

from coursetrack.notifications.service import NotificationDispatcher

NOW = datetime(2024, 1, 31, 9, 0, tzinfo=UTC)


class TestCreateNotification:
    def test_queues_immediate_job(self, dispatcher, queues):
        result = dispatcher.create_notification("activity_log_submitted", {"activityLogId": 1})
        assert result == {"success": True, "jobId": "1"}
        assert queues.notifications.counts()["waiting"] == 1

    def test_broker_error_reported(self):
        queues = MagicMock()
        queues.notifications.add.side_effect = redis.ConnectionError("down")
        result = NotificationDispatcher(queues).create_notification("activity_log_submitted", {})
        assert result == {"success": False, "error": "down"}


class TestCreateReminder:
    def test_delay_until_deadline(self, dispatcher, queues):
        result = dispatcher.create_reminder(3, NOW + timedelta(hours=2), now=NOW)
        assert result["delay"] == 7_200_000
        job = queues.reminders.get_job(result["jobId"])
        assert job.data == {"facilitatorId": 3, "deadline": "2024-01-31T11:00:00+00:00"}

    def test_past_deadline_is_immediate(self, dispatcher, queues):
        result = dispatcher.create_reminder(3, NOW - timedelta(minutes=5), now=NOW)
        assert result["delay"] == 0
        assert queues.reminders.counts()["waiting"] == 1

    def test_dedup_key_reported_as_duplicate(self, dispatcher, queues):
        first = dispatcher.create_reminder(3, NOW, now=NOW, dedup_key="weekly_reminder:3:2024-W05")
        second = dispatcher.create_reminder(3, NOW, now=NOW, dedup_key="weekly_reminder:3:2024-W05")
        assert first["jobId"] == "weekly_reminder:3:2024-W05"
        assert second["duplicate"] is True
        assert queues.reminders.counts()["waiting"] == 1


class TestCreateAlert:
    def test_payload_shape(self, dispatcher, queues):
        dispatcher.create_alert(7, "missed_deadline", {"weekNumber": 4})
        job = queues.alerts.get_job("1")
        assert job.name == "manager_alert"
        assert job.data == {"managerId": 7, "alertType": "missed_deadline", "data": {"weekNumber": 4}}
