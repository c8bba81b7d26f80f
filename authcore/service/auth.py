from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from authcore.logging import get_logger, hash_identity
from authcore.service.errors import (
    AccountLockedError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    TokenInvalidError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from authcore.service.lockout import LockoutTracker
from authcore.service.passwords import CredentialHasher, DigestScheme, detect_scheme
from authcore.service.tokens import AccessClaims, AccessTokenIssuer, RefreshTokenService
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import User, UserProfile

logger = get_logger(__name__)

# Verified against unknown emails so both failure paths cost one argon2 verify
_DUMMY_PASSWORD = "Unused!Credential#7f3e9b"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        ...


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: UserProfile
    token_type: str = "bearer"


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class LogoutResult:
    revoked: int
    all_devices: bool


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Register, login, refresh and logout on top of the security primitives.

    Every operation returns a plain result or raises one ``ServiceError``
    subclass; storage faults propagate unchanged.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        lockout: LockoutTracker,
        refresh_tokens: RefreshTokenService,
        access_tokens: AccessTokenIssuer,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout
        self.refresh_tokens = refresh_tokens
        self.access_tokens = access_tokens
        self.logger = logger
        self._dummy_digest: Optional[str] = None

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, digest: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, digest)

    async def _burn_verify(self, password: str) -> None:
        if self._dummy_digest is None:
            self._dummy_digest = await self._hash(_DUMMY_PASSWORD)
        await self._verify(password, self._dummy_digest)

    async def register(
        self, email: str, password: str, name: Optional[str] = None
    ) -> UserProfile:
        normalized = normalize_email(email)
        if "@" not in normalized:
            raise ValidationError("a valid email address is required", detail={"field": "email"})
        if self.store.get_user_by_email(normalized):
            raise EmailAlreadyExistsError()
        digest = await self._hash(password)
        try:
            user = self.store.create_user(normalized, digest, name=name)
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same email
            raise EmailAlreadyExistsError()
        self.logger.info("user_registered", user_id=user.id, email_hash=hash_identity(normalized))
        return user.public_profile()

    async def login(self, email: str, password: str) -> LoginResult:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            await self._burn_verify(password or "")
            self.logger.info("login_failed", email_hash=hash_identity(normalized), reason="unknown_user")
            raise InvalidCredentialsError()

        status = self.lockout.check_user(user)
        if status.is_locked:
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(status.locked_until)

        if not await self._verify(password or "", user.password_hash):
            state = self.lockout.record_failure(user.id)
            self.logger.info(
                "login_failed",
                user_id=user.id,
                reason="bad_password",
                attempts=state.attempt_count if state else None,
            )
            raise InvalidCredentialsError()

        self.lockout.record_success(user.id)
        await self._maybe_rehash(user, password)
        result = LoginResult(
            access_token=self.access_tokens.issue(user.id, user.role),
            refresh_token=self.refresh_tokens.issue(user.id),
            expires_in=self.access_tokens.expires_in,
            user=user.public_profile(),
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    async def _maybe_rehash(self, user: User, password: str) -> None:
        if detect_scheme(user.password_hash) != DigestScheme.ARGON2ID_V1:
            return
        if not self.hasher.needs_rehash(user.password_hash):
            return
        try:
            digest = await self._hash(password)
        except WeakPasswordError:
            # Policy tightened since this password was set; keep the old digest
            self.logger.info("password_rehash_skipped", user_id=user.id, reason="weak_password")
            return
        self.store.update_password_hash(user.id, digest)
        self.logger.info("password_rehashed", user_id=user.id)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        user_id = self.refresh_tokens.validate(refresh_token)
        if not user_id:
            raise TokenInvalidError()
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        rotated = self.refresh_tokens.rotate(refresh_token)
        if not rotated:
            # Consumed by a concurrent refresh between validate and rotate
            self.logger.warning("refresh_token_reuse_rejected", user_id=user_id)
            raise TokenInvalidError()
        _, new_token = rotated
        return RefreshResult(
            access_token=self.access_tokens.issue(user.id, user.role),
            refresh_token=new_token,
            expires_in=self.access_tokens.expires_in,
        )

    async def logout(
        self,
        user_id: str,
        *,
        refresh_token: Optional[str] = None,
        logout_all: bool = False,
    ) -> LogoutResult:
        if logout_all:
            count = self.refresh_tokens.revoke_all(user_id)
            return LogoutResult(revoked=count, all_devices=True)
        if refresh_token:
            if not self.refresh_tokens.revoke(refresh_token, user_id):
                raise TokenInvalidError()
            return LogoutResult(revoked=1, all_devices=False)
        raise ValidationError(
            "refresh_token or logout_all is required",
            detail={"fields": ["refresh_token", "logout_all"]},
        )

    async def get_profile(self, user_id: str) -> UserProfile:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user.public_profile()

    def authenticate(self, authorization: Optional[str]) -> AccessClaims:
        """Resolve an ``Authorization: Bearer <token>`` header into access claims."""
        if not authorization:
            raise TokenInvalidError("missing bearer token")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise TokenInvalidError("missing bearer token")
        claims = self.access_tokens.verify(token.strip())
        if not claims:
            raise TokenInvalidError()
        return claims


__all__ = [
    "AuthService",
    "AuthStore",
    "LoginResult",
    "RefreshResult",
    "LogoutResult",
    "normalize_email",
]
