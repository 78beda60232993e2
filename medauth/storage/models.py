from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps from older rows as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    NURSE = "NURSE"
    RECEPTIONIST = "RECEPTIONIST"
    PHARMACIST = "PHARMACIST"
    ADMIN = "ADMIN"


# ADMIN accounts are only created by an operator (see scripts/bootstrap_admin.py).
SELF_REGISTRABLE_ROLES = frozenset(role for role in Role if role is not Role.ADMIN)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: Role = Role.PATIENT
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    profile: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        role: Role,
        profile: Optional[Dict[str, Any]] = None,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            role=role,
            created_at=now,
            updated_at=now,
            profile=dict(profile or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "role": self.role.value,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "profile": self.profile,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data.get("role", Role.PATIENT.value)),
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
            profile=dict(data.get("profile") or {}),
        )


@dataclass
class Session:
    id: str
    user_id: str
    email: str
    role: Role
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account: Account,
        ttl_seconds: int,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_session_id(),
            user_id=account.id,
            email=account.email,
            role=account.role,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=str(data["user_id"]),
            email=data["email"],
            role=Role(data["role"]),
            created_at=_parse_ts(data.get("created_at")),
            expires_at=_parse_ts(data.get("expires_at")),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )


def new_session_id() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


def _parse_ts(value: Any) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))
