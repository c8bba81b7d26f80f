from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    role: str = "user"
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
    ) -> "User":
        now = _now()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            role=role,
            created_at=now,
            updated_at=now,
        )

    def public_profile(self) -> "UserProfile":
        return UserProfile(
            id=self.id,
            email=self.email,
            name=self.name,
            role=self.role,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class UserProfile:
    """User as returned to callers; never carries the digest or lockout counters."""

    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class RefreshToken:
    token: str
    owner_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _now())


@dataclass
class LoginAttemptState:
    attempt_count: int
    locked_until: Optional[datetime] = None


__all__ = ["User", "UserProfile", "RefreshToken", "LoginAttemptState"]
