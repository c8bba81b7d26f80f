from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import LoginAttemptState, User

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LockoutStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def update_login_attempts(
        self, user_id: str, attempts: int, locked_until: Optional[datetime]
    ) -> None:
        ...

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_until: datetime,
    ) -> Optional[LoginAttemptState]:
        ...


@dataclass
class LockStatus:
    is_locked: bool
    locked_until: Optional[datetime] = None


class LockoutTracker:
    """Per-user Open/Locked state machine over the user store.

    Expired locks are cleared lazily by :meth:`check_locked`; there is no sweep.
    None of the operations raise for an unknown user.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        clock: Clock = _now,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self._clock = clock

    @classmethod
    def from_settings(
        cls, store: LockoutStore, settings: Settings, *, clock: Clock = _now
    ) -> "LockoutTracker":
        return cls(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_minutes),
            clock=clock,
        )

    def check_locked(self, email: str) -> LockStatus:
        user = self.store.get_user_by_email(email)
        if not user:
            return LockStatus(is_locked=False)
        return self.check_user(user)

    def check_user(self, user: User) -> LockStatus:
        if user.locked_until is None:
            return LockStatus(is_locked=False)
        if user.locked_until > self._clock():
            return LockStatus(is_locked=True, locked_until=user.locked_until)
        self.store.update_login_attempts(user.id, 0, None)
        logger.info("account_unlocked", user_id=user.id)
        return LockStatus(is_locked=False)

    def record_failure(self, user_id: str) -> Optional[LoginAttemptState]:
        now = self._clock()
        state = self.store.record_login_failure(
            user_id,
            now=now,
            max_attempts=self.max_attempts,
            lockout_until=now + self.lockout_duration,
        )
        if state is None:
            return None
        if state.locked_until is not None and state.attempt_count == self.max_attempts:
            logger.warning(
                "account_locked",
                user_id=user_id,
                attempts=state.attempt_count,
                locked_until=state.locked_until.isoformat(),
            )
        return state

    def record_success(self, user_id: str) -> None:
        self.store.update_login_attempts(user_id, 0, None)
