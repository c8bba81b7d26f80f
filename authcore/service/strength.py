from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

MIN_LENGTH = 8
MAX_LENGTH = 128
MIN_SCORE = 4

COMMON_WEAK_PATTERNS = ("password", "123456", "qwerty", "admin", "letmein")

_SYMBOL_RE = re.compile(r"""[!@#$%^&*(),.?":{}|<>\-_=+\[\]\\;'`~]""")
_TRIPLE_RUN_RE = re.compile(r"(.)\1{2,}")
_SHORT_REPEAT_RE = re.compile(r"^(.{1,2})\1+$", re.DOTALL)


@dataclass
class StrengthReport:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0
    strength: str = "weak"


def strength_label(score: int) -> str:
    if score <= 3:
        return "weak"
    if score <= 5:
        return "medium"
    if score <= 7:
        return "strong"
    return "very-strong"


class StrengthValidator:
    """Deterministic password strength scoring.

    A password must have no rule violations *and* reach ``min_score``; a
    password that trips no single rule can still be rejected as weak overall.
    """

    def __init__(
        self,
        *,
        min_length: int = MIN_LENGTH,
        max_length: int = MAX_LENGTH,
        min_score: int = MIN_SCORE,
        deny_list: tuple[str, ...] = COMMON_WEAK_PATTERNS,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.min_score = min_score
        self.deny_list = tuple(p.lower() for p in deny_list)

    def validate(self, password: str) -> StrengthReport:
        errors: List[str] = []
        score = 0

        try:
            password.encode("utf-8")
        except UnicodeEncodeError:
            errors.append("password contains characters that cannot be encoded")

        if len(password) < self.min_length:
            errors.append(f"password must be at least {self.min_length} characters")
        elif len(password) >= 12:
            score += 2
        else:
            score += 1

        if len(password) > self.max_length:
            errors.append(f"password must be at most {self.max_length} characters")

        if re.search(r"[a-z]", password):
            score += 1
        if re.search(r"[A-Z]", password):
            score += 1
        if re.search(r"\d", password):
            score += 1
        if _SYMBOL_RE.search(password):
            score += 1

        if not _TRIPLE_RUN_RE.search(password):
            score += 1
        if not _SHORT_REPEAT_RE.match(password):
            score += 1

        lowered = password.lower()
        if any(pattern in lowered for pattern in self.deny_list):
            errors.append("password contains a common weak pattern")
        else:
            score += 1

        return StrengthReport(
            is_valid=not errors and score >= self.min_score,
            errors=errors,
            score=score,
            strength=strength_label(score),
        )


_default_validator = StrengthValidator()


def validate_password_strength(password: str) -> StrengthReport:
    return _default_validator.validate(password)
