"""Unit tests for the user directory.

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.
"""

from __future__ import annotations

import threading
from datetime import timedelta

from fido_auth.storage import UserDirectory


class TestGetOrCreate:
    """Tests for UserDirectory.get_or_create."""

    def test_creates_user_on_first_sight(self, users: UserDirectory, clock) -> None:
        """First login for an external id creates a user."""
        # Act
        user = users.get_or_create("1001", "octocat")

        # Assert
        assert user.external_id == "1001"
        assert user.external_login == "octocat"
        assert user.created_at == clock.now
        assert users.count() == 1

    def test_same_external_id_returns_same_user(self, users: UserDirectory, clock) -> None:
        """Repeated calls resolve to the same row."""
        # Arrange
        first = users.get_or_create("1001", "octocat")
        clock.advance(days=3)

        # Act
        second = users.get_or_create("1001", "octocat")

        # Assert
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert users.count() == 1

    def test_refreshes_login_but_keeps_identity(self, users: UserDirectory) -> None:
        """A renamed account keeps its id; the stored login follows the provider."""
        # Arrange
        original = users.get_or_create("1001", "octocat")

        # Act
        renamed = users.get_or_create("1001", "octo-renamed")

        # Assert
        assert renamed.id == original.id
        assert renamed.external_login == "octo-renamed"

    def test_different_external_ids_get_different_users(self, users: UserDirectory) -> None:
        """Distinct identities never share a user."""
        # Act
        a = users.get_or_create("1001", "alice")
        b = users.get_or_create("2002", "bob")

        # Assert
        assert a.id != b.id
        assert users.count() == 2

    def test_concurrent_first_logins_create_one_user(self, users: UserDirectory) -> None:
        """Racing first logins for one identity all resolve to a single row."""
        # Arrange
        results: list[str] = []
        errors: list[BaseException] = []
        barrier = threading.Barrier(8)

        def login() -> None:
            try:
                barrier.wait()
                results.append(users.get_or_create("1001", "octocat").id)
            except BaseException as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=login) for _ in range(8)]

        # Act
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Assert
        assert errors == []
        assert len(set(results)) == 1
        assert users.count() == 1


class TestLookups:
    """Tests for get and get_by_external_id."""

    def test_get_by_internal_id(self, users: UserDirectory) -> None:
        """get() returns the user for its internal id."""
        created = users.get_or_create("1001", "octocat")

        assert users.get(created.id) == created

    def test_get_unknown_returns_none(self, users: UserDirectory) -> None:
        """Unknown ids return None rather than raising."""
        assert users.get("no-such-user") is None
        assert users.get_by_external_id("9999") is None

    def test_get_by_external_id(self, users: UserDirectory) -> None:
        """Lookup by provider id finds the same user."""
        created = users.get_or_create("1001", "octocat")

        assert users.get_by_external_id("1001") == created

    def test_to_dict_serializes_timestamp(self, users: UserDirectory, clock) -> None:
        """to_dict renders created_at as ISO-8601."""
        user = users.get_or_create("1001", "octocat")

        data = user.to_dict()

        assert data["id"] == user.id
        assert data["created_at"] == clock.now.isoformat()


class TestTimestamps:
    """UTC handling of stored timestamps."""

    def test_created_at_round_trips_as_aware_utc(self, users: UserDirectory, clock) -> None:
        """Timestamps come back timezone-aware and equal to what was stored."""
        clock.advance(seconds=1, microseconds=250)

        user = users.get_or_create("1001", "octocat")
        fetched = users.get(user.id)

        assert fetched is not None
        assert fetched.created_at.tzinfo is not None
        assert fetched.created_at - clock.now == timedelta(0)
