from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from medauth.storage.models import SELF_REGISTRABLE_ROLES, Role

MAX_PASSWORD_LENGTH = 128
MIN_PASSWORD_LENGTH = 8
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 50

GENDERS = frozenset({"MALE", "FEMALE", "OTHER"})
BLOOD_TYPES = frozenset(
    {
        "A_POSITIVE",
        "A_NEGATIVE",
        "B_POSITIVE",
        "B_NEGATIVE",
        "AB_POSITIVE",
        "AB_NEGATIVE",
        "O_POSITIVE",
        "O_NEGATIVE",
    }
)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")
_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass
class FieldIssue:
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


def normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    return normalize_unicode(value.strip().lower())


def email_issue(value: Any) -> Optional[str]:
    """Return a message describing why ``value`` is not a usable email, else None."""
    if not isinstance(value, str) or not value.strip():
        return "Valid email is required"
    normalized = normalize_email(value)
    if len(normalized) > 254 or len(normalized) < 3:
        return "Valid email is required"
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return "Valid email is required"
    if not _EMAIL_LOCAL_PART.match(local):
        return "Valid email is required"
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        return "Valid email is required"
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return "Valid email is required"
    return None


def password_issues(password: Any) -> List[str]:
    """Every unmet password rule, in a stable order."""
    if not isinstance(password, str) or not password:
        return ["Password is required"]
    issues: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        issues.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        issues.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        issues.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        issues.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        issues.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        issues.append("Password must contain at least one special character")
    return issues


def parse_role(value: Any) -> Optional[Role]:
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().upper())
    except ValueError:
        return None


def normalize_phone(value: str) -> Optional[str]:
    compact = _PHONE_SEPARATORS.sub("", value)
    if _PHONE_PATTERN.match(compact):
        return compact
    return None


def parse_date_of_birth(value: str, *, today: Optional[date] = None) -> Optional[date]:
    """ISO-8601 calendar date that is not in the future and at most 150 years back."""
    try:
        parsed = date.fromisoformat(value[:10])
    except (TypeError, ValueError):
        return None
    today = today or date.today()
    if parsed > today or today.year - parsed.year > 150:
        return None
    return parsed


def _name_issue(value: Any, label: str) -> Optional[str]:
    text = normalize_unicode(value).strip() if isinstance(value, str) else ""
    if not MIN_NAME_LENGTH <= len(text) <= MAX_NAME_LENGTH:
        return f"{label} must be between {MIN_NAME_LENGTH} and {MAX_NAME_LENGTH} characters"
    return None


def registration_issues(data: Dict[str, Any]) -> List[FieldIssue]:
    """Validate a registration payload and report every failure at once.

    ``data`` uses snake_case keys. Optional profile fields are only checked
    when present and non-empty.
    """
    issues: List[FieldIssue] = []

    message = email_issue(data.get("email"))
    if message:
        issues.append(FieldIssue("email", message))

    for message in password_issues(data.get("password")):
        issues.append(FieldIssue("password", message))

    role = parse_role(data.get("role", Role.PATIENT.value))
    if role is None or role not in SELF_REGISTRABLE_ROLES:
        issues.append(FieldIssue("role", "Valid role is required"))

    for key, label in (("first_name", "First name"), ("last_name", "Last name")):
        message = _name_issue(data.get(key), label)
        if message:
            issues.append(FieldIssue(key, message))

    phone = data.get("phone")
    if phone and (not isinstance(phone, str) or normalize_phone(phone) is None):
        issues.append(FieldIssue("phone", "Valid phone number is required"))

    dob = data.get("date_of_birth")
    if dob and (not isinstance(dob, str) or parse_date_of_birth(dob) is None):
        issues.append(FieldIssue("date_of_birth", "Valid date of birth is required"))

    gender = data.get("gender")
    if gender and gender not in GENDERS:
        issues.append(FieldIssue("gender", "Valid gender is required"))

    blood_type = data.get("blood_type")
    if blood_type and blood_type not in BLOOD_TYPES:
        issues.append(FieldIssue("blood_type", "Valid blood type is required"))

    return issues


__all__ = [
    "BLOOD_TYPES",
    "FieldIssue",
    "GENDERS",
    "email_issue",
    "normalize_email",
    "normalize_phone",
    "normalize_unicode",
    "parse_date_of_birth",
    "parse_role",
    "password_issues",
    "registration_issues",
]
