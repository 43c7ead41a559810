"""Tests for database connection with fallback."""

import pytest

from coursetrack.database.base import ConnectError, _redact, connect

_UNREACHABLE = "sqlite:////nonexistent-dir/does/not/exist.db"


class TestConnect:
    def test_uses_first_reachable(self):
        engine = connect(["sqlite://"])
        assert engine.url.drivername == "sqlite"
        engine.dispose()

    def test_falls_back_to_next_url(self, tmp_path):
        fallback = f"sqlite:///{tmp_path / 'fallback.db'}"
        engine = connect([_UNREACHABLE, fallback])
        assert engine.url.database == str(tmp_path / "fallback.db")
        engine.dispose()

    def test_raises_when_all_fail(self):
        with pytest.raises(ConnectError) as exc_info:
            connect([_UNREACHABLE])
        assert len(exc_info.value.failures) == 1
        assert exc_info.value.failures[0][0] == _UNREACHABLE

    def test_raises_when_nothing_configured(self):
        with pytest.raises(ConnectError, match="no database configured"):
            connect([])


class TestRedact:
    def test_hides_password(self):
        assert _redact("postgresql://user:secret@db:5432/app") == "postgresql://user:***@db:5432/app"

    def test_leaves_url_without_credentials(self):
        assert _redact("sqlite:///./coursetrack.db") == "sqlite:///./coursetrack.db"
