from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medauth.service.validation import email_issue, normalize_email
from medauth.storage.models import Account, Session

MAX_STRING_LENGTH = 256
MAX_PASSWORD_INPUT = 1024
MAX_TOKEN_LENGTH = 4096


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorEnvelope(BaseModel):
    """Body of every error response."""

    error: str
    message: str
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    path: str
    details: Optional[Any] = None


# -- requests -------------------------------------------------------------


class RegisterRequest(CamelModel):
    # Every field is optional here so the service can report all issues at once.
    email: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_INPUT)
    first_name: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    last_name: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    role: Optional[str] = Field(default="PATIENT", max_length=32)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    gender: Optional[str] = Field(default=None, max_length=16)
    blood_type: Optional[str] = Field(default=None, max_length=16)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=MAX_STRING_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        message = email_issue(value)
        if message:
            raise ValueError(message)
        return normalize_email(value)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class AccountStatusRequest(CamelModel):
    is_active: bool


# -- responses ------------------------------------------------------------


class ProfileResponse(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    patient_id: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    blood_type: Optional[str] = None


class UserResponse(CamelModel):
    id: str
    email: str
    role: str
    is_active: bool
    created_at: datetime
    profile: ProfileResponse

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        known = set(ProfileResponse.model_fields)
        return cls(
            id=account.id,
            email=account.email,
            role=account.role.value,
            is_active=account.is_active,
            created_at=account.created_at,
            profile=ProfileResponse(
                **{k: v for k, v in account.profile.items() if k in known}
            ),
        )


class TokensResponse(CamelModel):
    access_token: str
    refresh_token: str


class AuthResponse(CamelModel):
    message: str
    user: UserResponse
    tokens: TokensResponse


class RefreshResponse(CamelModel):
    access_token: str
    refresh_token: Optional[str] = None


class MessageResponse(CamelModel):
    message: str


class UserEnvelope(CamelModel):
    user: UserResponse


class SessionResponse(CamelModel):
    id: str
    user_id: str
    role: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            role=session.role.value,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_addr=session.ip_addr,
            user_agent=session.user_agent,
        )


class SessionListResponse(CamelModel):
    sessions: List[SessionResponse]


class RevokeAllResponse(CamelModel):
    message: str
    revoked: int
