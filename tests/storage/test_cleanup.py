"""Unit tests for the cleanup scheduler.

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from fido_auth.exceptions import TransientStorageError
from fido_auth.storage import CleanupScheduler, SessionStore, UserDirectory


class TestRunOnce:
    """Tests for CleanupScheduler.run_once."""

    def test_sweeps_expired_sessions(self, sessions: SessionStore, users: UserDirectory, clock) -> None:
        # Arrange
        user_id = users.get_or_create("1001", "octocat").id
        sessions.create(user_id)
        sessions.create(user_id)
        clock.advance(days=31)
        live = sessions.create(user_id)
        scheduler = CleanupScheduler(sessions)

        # Act
        result = scheduler.run_once()

        # Assert
        assert result.sessions_removed == 2
        assert result.device_flows_removed == 0
        assert sessions.validate(live.token) == user_id
        assert scheduler.runs == 1

    def test_purges_device_flows_through_coordinator(self, sessions: SessionStore) -> None:
        coordinator = MagicMock()
        coordinator.purge_stale.return_value = 3

        result = CleanupScheduler(sessions, coordinator).run_once()

        assert result.device_flows_removed == 3
        coordinator.purge_stale.assert_called_once_with()

    def test_storage_error_propagates(self) -> None:
        sessions = MagicMock()
        sessions.sweep_expired.side_effect = TransientStorageError("db down")

        with pytest.raises(TransientStorageError):
            CleanupScheduler(sessions).run_once()

    def test_rejects_non_positive_interval(self, sessions: SessionStore) -> None:
        with pytest.raises(ValueError):
            CleanupScheduler(sessions, interval_seconds=0)


class TestBackgroundLoop:
    """Tests for the periodic task."""

    @pytest.mark.asyncio
    async def test_runs_immediately_on_start(self) -> None:
        """The first sweep happens at startup, not after one interval."""
        # Arrange
        sessions = MagicMock()
        sessions.sweep_expired.return_value = 0
        scheduler = CleanupScheduler(sessions, interval_seconds=3600)

        # Act
        await scheduler.start()
        for _ in range(50):
            if scheduler.runs:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        # Assert
        assert scheduler.runs == 1
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_failed_run_does_not_stop_the_loop(self) -> None:
        """A storage outage during one sweep is logged; later sweeps still run."""
        # Arrange
        calls = {"n": 0}

        def sweep_expired() -> int:
            calls["n"] += 1
            if calls["n"] == 1:
                raise TransientStorageError("db down")
            return 0

        sessions = MagicMock()
        sessions.sweep_expired.side_effect = sweep_expired
        scheduler = CleanupScheduler(sessions, interval_seconds=0.01)

        # Act
        await scheduler.start()
        for _ in range(100):
            if scheduler.runs >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        # Assert
        assert scheduler.runs >= 2
        assert sessions.sweep_expired.call_count >= 3

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self) -> None:
        sessions = MagicMock()
        sessions.sweep_expired.return_value = 0
        scheduler = CleanupScheduler(sessions, interval_seconds=3600)

        await scheduler.start()
        await scheduler.start()
        assert scheduler.is_running is True
        await scheduler.stop()

        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, sessions: SessionStore) -> None:
        await CleanupScheduler(sessions).stop()
