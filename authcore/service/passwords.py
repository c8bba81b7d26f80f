from __future__ import annotations

import hashlib
import hmac
import secrets
from enum import Enum
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import WeakPasswordError
from authcore.service.strength import StrengthValidator

logger = get_logger(__name__)

CURRENT_SCHEME_PREFIX = "argon2id:v1:"
LEGACY_PBKDF2_PREFIX = "v2:"
DEFAULT_TOKEN_BYTES = 32


class DigestScheme(str, Enum):
    ARGON2ID_V1 = "argon2id:v1"
    LEGACY_PBKDF2_V2 = "v2"
    LEGACY_SALTED = "salt:hash"
    UNKNOWN = "unknown"


def detect_scheme(digest: str) -> DigestScheme:
    if digest.startswith(CURRENT_SCHEME_PREFIX):
        return DigestScheme.ARGON2ID_V1
    if digest.startswith(LEGACY_PBKDF2_PREFIX):
        return DigestScheme.LEGACY_PBKDF2_V2
    if ":" in digest:
        return DigestScheme.LEGACY_SALTED
    return DigestScheme.UNKNOWN


def generate_secure_token(nbytes: int = DEFAULT_TOKEN_BYTES) -> str:
    """Hex token from the OS CSPRNG; ``nbytes`` of entropy, ``2 * nbytes`` characters."""
    return secrets.token_hex(nbytes)


class CredentialHasher:
    """Scheme-tagged password digests: HMAC-SHA256 pepper, then argon2id.

    Verification dispatches on the scheme tag and never raises; anything other
    than the current scheme fails closed.
    """

    def __init__(
        self,
        pepper: str,
        *,
        time_cost: int = 2,
        memory_cost_kib: int = 19456,
        parallelism: int = 1,
        validator: Optional[StrengthValidator] = None,
    ) -> None:
        if not pepper:
            raise ValueError("pepper must be a non-empty secret")
        self._pepper = pepper.encode()
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )
        self.validator = validator or StrengthValidator()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, validator: Optional[StrengthValidator] = None
    ) -> "CredentialHasher":
        return cls(
            settings.pepper_secret,
            time_cost=settings.hash_time_cost,
            memory_cost_kib=settings.hash_memory_cost_kib,
            parallelism=settings.hash_parallelism,
            validator=validator,
        )

    def _pepper_password(self, password: str) -> str:
        return hmac.new(self._pepper, password.encode(), hashlib.sha256).hexdigest()

    def hash(self, password: str) -> str:
        report = self.validator.validate(password)
        if not report.is_valid:
            errors = report.errors or ["password is too weak"]
            raise WeakPasswordError(errors, score=report.score)
        return CURRENT_SCHEME_PREFIX + self._pwd_hasher.hash(self._pepper_password(password))

    def verify(self, password: str, digest: str) -> bool:
        if not password or not digest:
            return False
        scheme = detect_scheme(digest)
        if scheme == DigestScheme.ARGON2ID_V1:
            encoded = digest[len(CURRENT_SCHEME_PREFIX) :]
            try:
                peppered = self._pepper_password(password)
            except UnicodeEncodeError:
                # Lone surrogates survive JSON decoding but can never match a stored digest
                logger.warning("password_not_encodable")
                return False
            try:
                return self._pwd_hasher.verify(encoded, peppered)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError) as exc:
                logger.warning("digest_verification_error", error=str(exc))
                return False
        if scheme in (DigestScheme.LEGACY_PBKDF2_V2, DigestScheme.LEGACY_SALTED):
            logger.warning("legacy_digest_scheme", scheme=scheme.value)
            return False
        logger.warning("unknown_digest_scheme", digest_length=len(digest))
        return False

    def needs_rehash(self, digest: str) -> bool:
        """True for any digest not produced by the current scheme and parameters."""
        if detect_scheme(digest) != DigestScheme.ARGON2ID_V1:
            return True
        try:
            return self._pwd_hasher.check_needs_rehash(digest[len(CURRENT_SCHEME_PREFIX) :])
        except InvalidHash:
            return True
