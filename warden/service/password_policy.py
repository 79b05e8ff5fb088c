from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.hashing import CredentialHasher
from warden.storage.models import PasswordHistoryEntry

logger = get_logger(__name__)

DEFAULT_MIN_LENGTH = 12
DEFAULT_MAX_LENGTH = 128
DEFAULT_HISTORY_LIMIT = 5

SYMBOLS = "!@#$%^&*()_+-=[]{};':\",./<>?\\|`~"

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "123456789", "12345678", "12345", "1234567",
        "qwerty", "abc123", "password1", "password123", "admin", "letmein",
        "welcome", "monkey", "dragon", "master", "sunshine", "princess",
        "qwerty123", "football", "baseball", "superman", "batman", "trustno1",
        "hello123", "freedom", "whatever", "qazwsx", "changeme", "secret",
        "iloveyou", "starwars", "passw0rd", "p@ssw0rd", "p@ssword", "admin123",
        "welcome1", "welcome123", "login", "shadow", "michael", "111111",
        "000000", "1q2w3e4r", "1qaz2wsx", "zaq12wsx", "qwertyuiop",
        "correcthorsebatterystaple", "passwordpassword", "letmein123",
    }
)

KEYBOARD_ROWS = ("qwertyuiop", "asdfghjkl", "zxcvbnm", "1234567890")
KEYBOARD_DIAGONALS = ("qazwsx", "edcrfv", "tgbyhn", "ujmikl", "wsxedc", "rfvtgb")
KEYBOARD_RUN = 4

_REPEAT_RE = re.compile(r"(.)\1\1")


class PasswordHistoryReader(Protocol):
    def list_password_history(
        self, user_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...


@dataclass(frozen=True)
class PolicyViolation:
    code: str
    message: str


@dataclass
class PolicyReport:
    valid: bool
    violations: List[PolicyViolation] = field(default_factory=list)
    score: int = 0
    strength: str = "weak"

    @property
    def messages(self) -> List[str]:
        return [v.message for v in self.violations]

    def as_detail(self) -> dict:
        return {
            "violations": [{"code": v.code, "message": v.message} for v in self.violations],
            "strength": self.strength,
            "score": self.score,
        }


def _keyboard_fragments() -> frozenset[str]:
    fragments = set()
    for row in KEYBOARD_ROWS:
        for start in range(len(row) - KEYBOARD_RUN + 1):
            chunk = row[start : start + KEYBOARD_RUN]
            fragments.add(chunk)
            fragments.add(chunk[::-1])
    for diagonal in KEYBOARD_DIAGONALS:
        fragments.add(diagonal)
        fragments.add(diagonal[::-1])
    return frozenset(fragments)


_KEYBOARD_FRAGMENTS = _keyboard_fragments()


def has_monotonic_sequence(password: str, run: int = 3) -> bool:
    """True for runs like ``abc``, ``123``, ``cba`` or ``321`` (case-insensitive)."""
    lowered = password.lower()
    for start in range(len(lowered) - run + 1):
        window = lowered[start : start + run]
        if not (window.isdigit() or (window.isalpha() and window.isascii())):
            continue
        steps = {ord(b) - ord(a) for a, b in zip(window, window[1:])}
        if steps == {1} or steps == {-1}:
            return True
    return False


def has_keyboard_pattern(password: str) -> bool:
    lowered = password.lower()
    return any(fragment in lowered for fragment in _KEYBOARD_FRAGMENTS)


def has_repeated_characters(password: str) -> bool:
    return bool(_REPEAT_RE.search(password))


class PasswordPolicyEngine:
    """Strength and reuse rules for user-chosen passwords.

    ``validate`` is a pure function of its arguments. ``history_check`` only
    reads previously stored hashes and compares them with the shared hasher.
    """

    def __init__(
        self,
        hasher: CredentialHasher,
        history: Optional[PasswordHistoryReader] = None,
        *,
        min_length: int = DEFAULT_MIN_LENGTH,
        max_length: int = DEFAULT_MAX_LENGTH,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.hasher = hasher
        self.history = history
        self.min_length = min_length
        self.max_length = max_length
        self.history_limit = history_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        hasher: CredentialHasher,
        history: Optional[PasswordHistoryReader] = None,
    ) -> "PasswordPolicyEngine":
        return cls(
            hasher,
            history,
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            history_limit=settings.password_history_limit,
        )

    def validate(
        self,
        password: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> PolicyReport:
        violations: List[PolicyViolation] = []
        if not isinstance(password, str) or not password:
            violations.append(PolicyViolation("required", "Password is required"))
            return PolicyReport(valid=False, violations=violations)

        if len(password) < self.min_length:
            violations.append(
                PolicyViolation(
                    "too_short",
                    f"Password must be at least {self.min_length} characters long",
                )
            )
        if len(password) > self.max_length:
            violations.append(
                PolicyViolation(
                    "too_long",
                    f"Password must not exceed {self.max_length} characters",
                )
            )
        if not any(c.isupper() for c in password):
            violations.append(
                PolicyViolation("missing_uppercase", "Password must contain an uppercase letter")
            )
        if not any(c.islower() for c in password):
            violations.append(
                PolicyViolation("missing_lowercase", "Password must contain a lowercase letter")
            )
        if not any(c.isdigit() for c in password):
            violations.append(
                PolicyViolation("missing_digit", "Password must contain a number")
            )
        if not any(not c.isalnum() and not c.isspace() for c in password):
            violations.append(
                PolicyViolation("missing_symbol", "Password must contain a special character")
            )
        if password.lower() in COMMON_PASSWORDS:
            violations.append(
                PolicyViolation("common_password", "Password is too common")
            )
        if has_monotonic_sequence(password):
            violations.append(
                PolicyViolation(
                    "sequential_characters",
                    "Password must not contain sequences such as 123 or abc",
                )
            )
        if has_keyboard_pattern(password):
            violations.append(
                PolicyViolation(
                    "keyboard_pattern",
                    "Password must not contain keyboard patterns such as qwerty",
                )
            )
        if has_repeated_characters(password):
            violations.append(
                PolicyViolation(
                    "repeated_characters",
                    "Password must not repeat a character three or more times in a row",
                )
            )
        if self._contains_personal_info(password, email, display_name):
            violations.append(
                PolicyViolation(
                    "personal_information",
                    "Password must not contain your name or email",
                )
            )

        score = self._score(password, len(violations))
        return PolicyReport(
            valid=not violations,
            violations=violations,
            score=score,
            strength=self.strength_label(score),
        )

    def history_check(self, user_id: str, candidate: str) -> bool:
        """Return True when ``candidate`` matches one of the last stored hashes."""
        if self.history is None or self.history_limit <= 0:
            return False
        entries = self.history.list_password_history(user_id, self.history_limit)
        for entry in entries:
            if self.hasher.verify(entry.password_hash, candidate):
                logger.info("password_reuse_detected", user_id=user_id)
                return True
        return False

    def requirements(self) -> List[str]:
        reqs = [
            f"At least {self.min_length} characters long",
            f"No more than {self.max_length} characters",
            "At least one uppercase letter",
            "At least one lowercase letter",
            "At least one number",
            "At least one special character",
            "Not a commonly used password",
            "No sequences (123, abc) or keyboard patterns (qwerty)",
            "No character repeated three times in a row",
            "Must not contain your name or email",
        ]
        if self.history_limit > 0:
            reqs.append(f"Must differ from your last {self.history_limit} passwords")
        return reqs

    def generate_secure_password(self, length: int = 16) -> str:
        length = max(length, self.min_length, 4)
        length = min(length, self.max_length)
        pools = (string.ascii_uppercase, string.ascii_lowercase, string.digits, SYMBOLS)
        alphabet = "".join(pools)
        while True:
            chars = [secrets.choice(pool) for pool in pools]
            chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
            # Fisher-Yates with a CSPRNG
            for i in range(len(chars) - 1, 0, -1):
                j = secrets.randbelow(i + 1)
                chars[i], chars[j] = chars[j], chars[i]
            candidate = "".join(chars)
            if self.validate(candidate).valid:
                return candidate

    @staticmethod
    def strength_label(score: int) -> str:
        if score < 40:
            return "weak"
        if score < 60:
            return "medium"
        if score < 80:
            return "strong"
        return "very-strong"

    @staticmethod
    def _score(password: str, violation_count: int) -> int:
        score = min(40, len(password) * 2)
        classes = (
            any(c.isupper() for c in password),
            any(c.islower() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        )
        score += 10 * sum(classes)
        if len(password) >= 16:
            score += 10
        if len(set(password)) >= 0.6 * len(password):
            score += 10
        score -= 20 * violation_count
        return max(0, min(100, score))

    @staticmethod
    def _contains_personal_info(
        password: str, email: Optional[str], display_name: Optional[str]
    ) -> bool:
        lowered = password.lower()
        tokens: List[str] = []
        if email and "@" in email:
            tokens.append(email.split("@", 1)[0].lower())
        if display_name:
            tokens.extend(part.lower() for part in re.split(r"\s+", display_name) if part)
        return any(len(token) > 2 and token in lowered for token in tokens)
