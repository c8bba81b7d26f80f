from datetime import timedelta
from unittest.mock import patch

import pytest

from authcore.service.lockout import LockoutTracker


@pytest.fixture
def tracker(store, clock):
    return LockoutTracker(store, max_attempts=5, lockout_duration=timedelta(minutes=15), clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("locked@example.com", "argon2id:v1:placeholder")


class TestLockoutThreshold:
    def test_below_threshold_stays_open(self, tracker, user):
        for expected in range(1, 5):
            state = tracker.record_failure(user.id)
            assert state.attempt_count == expected
            assert state.locked_until is None

        assert tracker.check_locked(user.email).is_locked is False

    def test_fifth_failure_locks(self, tracker, user, clock):
        for _ in range(5):
            tracker.record_failure(user.id)

        status = tracker.check_locked(user.email)
        assert status.is_locked is True
        assert status.locked_until == clock.now + timedelta(minutes=15)

    def test_sixth_failure_does_not_move_lock(self, tracker, user, store, clock):
        for _ in range(5):
            tracker.record_failure(user.id)
        locked_until = store.get_user(user.id).locked_until

        clock.advance(minutes=5)
        state = tracker.record_failure(user.id)

        assert state.locked_until == locked_until
        assert tracker.check_locked(user.email).locked_until == locked_until

    def test_lock_event_is_logged_once(self, tracker, user):
        with patch("authcore.service.lockout.logger") as mock_logger:
            for _ in range(6):
                tracker.record_failure(user.id)

        events = [c.args[0] for c in mock_logger.warning.call_args_list]
        assert events == ["account_locked"]


class TestLockoutExpiry:
    def test_expired_lock_is_cleared_on_check(self, tracker, user, store, clock):
        for _ in range(5):
            tracker.record_failure(user.id)

        clock.advance(minutes=15)
        status = tracker.check_locked(user.email)

        assert status.is_locked is False
        stored = store.get_user(user.id)
        assert stored.login_attempts == 0
        assert stored.locked_until is None

    def test_failure_after_expiry_counts_from_one(self, tracker, user, clock):
        for _ in range(5):
            tracker.record_failure(user.id)
        clock.advance(minutes=16)

        assert tracker.check_locked(user.email).is_locked is False
        assert tracker.record_failure(user.id).attempt_count == 1

    def test_failure_after_expiry_without_check_counts_from_one(self, tracker, user, clock):
        for _ in range(5):
            tracker.record_failure(user.id)
        clock.advance(minutes=16)

        state = tracker.record_failure(user.id)
        assert state.attempt_count == 1
        assert state.locked_until is None

    def test_stale_lock_stays_in_storage_until_checked(self, tracker, user, store, clock):
        for _ in range(5):
            tracker.record_failure(user.id)
        clock.advance(days=1)

        # No background sweep: storage still says locked until the next read
        assert store.get_user(user.id).locked_until is not None


class TestLockoutReset:
    def test_success_resets_counter(self, tracker, user, store):
        for _ in range(3):
            tracker.record_failure(user.id)

        tracker.record_success(user.id)

        stored = store.get_user(user.id)
        assert stored.login_attempts == 0
        assert stored.locked_until is None

    def test_unknown_identity_is_never_locked(self, tracker):
        assert tracker.check_locked("nobody@example.com").is_locked is False

    def test_unknown_user_operations_do_not_raise(self, tracker):
        assert tracker.record_failure("missing-user") is None
        tracker.record_success("missing-user")

    def test_from_settings(self, store, settings):
        tracker = LockoutTracker.from_settings(store, settings)

        assert tracker.max_attempts == 5
        assert tracker.lockout_duration == timedelta(minutes=15)
