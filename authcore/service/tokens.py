from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.passwords import generate_secure_token
from authcore.storage.models import RefreshToken

logger = get_logger(__name__)

Clock = Callable[[], datetime]

REFRESH_TOKEN_BYTES = 64


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self, token: str, owner_id: str, expires_at: datetime
    ) -> RefreshToken:
        ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        ...

    def delete_refresh_token(self, token: str) -> Optional[RefreshToken]:
        ...

    def delete_refresh_token_if_owned(self, token: str, owner_id: str) -> bool:
        ...

    def delete_refresh_tokens_for_owner(self, owner_id: str) -> int:
        ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        ...


class RefreshTokenService:
    """Opaque, stored, single-use refresh tokens.

    ``rotate`` and ``revoke`` are single conditional deletes against the
    store, so of several concurrent callers exactly one wins.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        ttl: timedelta = timedelta(days=30),
        clock: Clock = _now,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls, store: RefreshTokenStore, settings: Settings, *, clock: Clock = _now
    ) -> "RefreshTokenService":
        return cls(store, ttl=timedelta(days=settings.refresh_token_ttl_days), clock=clock)

    def issue(self, user_id: str) -> str:
        token = generate_secure_token(REFRESH_TOKEN_BYTES)
        self.store.create_refresh_token(token, user_id, self._clock() + self.ttl)
        return token

    def validate(self, token: str) -> Optional[str]:
        """Return the owning user id, or None for an unknown or expired token."""
        if not token:
            return None
        record = self.store.get_refresh_token(token)
        if not record:
            return None
        if record.is_expired(self._clock()):
            self.store.delete_refresh_token(token)
            logger.info("refresh_token_expired", user_id=record.owner_id)
            return None
        return record.owner_id

    def rotate(self, token: str) -> Optional[tuple[str, str]]:
        """Consume ``token`` and issue its successor.

        Returns ``(user_id, new_token)``, or None when the token was already
        consumed, revoked, or expired.
        """
        if not token:
            return None
        record = self.store.delete_refresh_token(token)
        if not record:
            return None
        if record.is_expired(self._clock()):
            return None
        new_token = self.issue(record.owner_id)
        logger.info("refresh_token_rotated", user_id=record.owner_id)
        return record.owner_id, new_token

    def revoke(self, token: str, user_id: str) -> bool:
        if not token:
            return False
        revoked = self.store.delete_refresh_token_if_owned(token, user_id)
        if revoked:
            logger.info("refresh_token_revoked", user_id=user_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_refresh_tokens_for_owner(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    def cleanup_expired(self) -> int:
        return self.store.delete_expired_refresh_tokens(self._clock())


@dataclass
class AccessClaims:
    user_id: str
    role: str
    expires_at: datetime
    token_id: str


class AccessTokenIssuer:
    """Stateless HS256 access tokens; validity is signature, audience and expiry only."""

    token_type = "access"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "authcore",
        audience: str = "authcore-clients",
        ttl: timedelta = timedelta(minutes=15),
        clock: Clock = _now,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must be non-empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = _now) -> "AccessTokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            clock=clock,
        )

    @property
    def expires_in(self) -> int:
        return int(self.ttl.total_seconds())

    def issue(self, user_id: str, role: str) -> str:
        now = self._clock()
        payload = {
            "sub": user_id,
            "role": role,
            "token_type": self.token_type,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def verify(self, token: str) -> Optional[AccessClaims]:
        payload = self._decode_jwt(token)
        if not payload:
            return None
        if payload.get("token_type") != self.token_type:
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        return AccessClaims(
            user_id=sub,
            role=str(payload.get("role", "user")),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            token_id=str(payload.get("jti", "")),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        # Well-formed tokens are base64url only; anything else cannot be compared or decoded
        if not token or not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), sig_b64.encode("ascii")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload
