from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import LoginAttemptState, RefreshToken, User


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process user and refresh-token store for development and tests.

    All reads hand back copies so callers cannot mutate stored state
    without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, password_hash, name=name, role=role)
            self.users[user.id] = user
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = _now()
            return True

    def update_login_attempts(
        self, user_id: str, attempts: int, locked_until: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.login_attempts = attempts
            user.locked_until = locked_until
            user.updated_at = _now()

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_until: datetime,
    ) -> Optional[LoginAttemptState]:
        """Atomically count a failed login and set the lock when the threshold is reached.

        An active lock is left untouched; an expired lock restarts the count at 1.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.locked_until is not None and user.locked_until > now:
                user.login_attempts += 1
            else:
                if user.locked_until is not None:
                    user.login_attempts = 0
                    user.locked_until = None
                user.login_attempts += 1
                if user.login_attempts >= max_attempts:
                    user.locked_until = lockout_until
            user.updated_at = now
            return LoginAttemptState(
                attempt_count=user.login_attempts, locked_until=user.locked_until
            )

    # refresh tokens
    def create_refresh_token(
        self, token: str, owner_id: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(token=token, owner_id=owner_id, expires_at=expires_at)
            self.refresh_tokens[token] = record
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Remove a token and return it; only one concurrent caller gets the record."""
        with self._data_lock:
            return self.refresh_tokens.pop(token, None)

    def delete_refresh_token_if_owned(self, token: str, owner_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.owner_id != owner_id:
                return False
            del self.refresh_tokens[token]
            return True

    def delete_refresh_tokens_for_owner(self, owner_id: str) -> int:
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.owner_id == owner_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            return len(stale)

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or _now()
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.expires_at <= cutoff]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self.logger.info("refresh_tokens_expired_removed", count=len(stale))
            return len(stale)
