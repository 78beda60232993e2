from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from medauth.config import Settings
from medauth.logging import get_logger, log_security_event
from medauth.service.errors import (
    AuthenticationError,
    AuthRequiredError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    SessionExpiredError,
    TokenExpiredError,
    ValidationError,
)
from medauth.service.passwords import PasswordHasher
from medauth.service.sessions import SessionStore
from medauth.service.tokens import (
    TokenExpired,
    TokenInvalid,
    TokenPayload,
    TokenService,
    extract_bearer_token,
)
from medauth.service.validation import (
    email_issue,
    normalize_email,
    normalize_phone,
    normalize_unicode,
    parse_role,
    registration_issues,
)
from medauth.storage.errors import ConstraintViolation
from medauth.storage.models import Account, Role, Session

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.PATIENT,
        profile: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def count_accounts(self, role: Optional[Role] = None) -> int: ...

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]: ...

    def update_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...


@dataclass
class ClientContext:
    """Where a request came from; recorded on sessions and audit entries."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: Role
    session_id: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: Optional[str] = None


@dataclass
class RegistrationData:
    email: str
    password: str
    first_name: str
    last_name: str
    role: str = Role.PATIENT.value
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    blood_type: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "password": self.password,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "phone": self.phone,
            "address": self.address,
            "date_of_birth": self.date_of_birth,
            "gender": self.gender,
            "blood_type": self.blood_type,
        }


@dataclass
class AuthResult:
    account: Account
    session: Session
    tokens: TokenPair


class AuthService:
    """Credential checks, session lifecycle and token issuance.

    Request-scoped and stateless: everything that must survive a request
    lives in the session store or the account store.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionStore,
        tokens: TokenService,
        hasher: PasswordHasher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.hasher = hasher
        self.settings = settings
        self.logger = logger

    # -- registration and login ----------------------------------------

    async def register(
        self, data: RegistrationData, client: Optional[ClientContext] = None
    ) -> AuthResult:
        issues = registration_issues(data.as_dict())
        if issues:
            raise ValidationError(
                "Validation failed", detail=[issue.to_dict() for issue in issues]
            )

        email = normalize_email(data.email)
        if self.store.get_account_by_email(email):
            log_security_event(
                "registration_conflict", client=client, level="info", email=email
            )
            raise ConflictError("User with this email already exists")

        role = parse_role(data.role) or Role.PATIENT
        profile = self._build_profile(data, role)
        password_hash = self.hasher.hash(data.password)
        try:
            account = self.store.create_account(
                email, password_hash, role=role, profile=profile
            )
        except ConstraintViolation:
            raise ConflictError("User with this email already exists") from None

        session = await self._open_session(account, client)
        tokens = self._issue_pair(account, session)
        self.logger.info("user_registered", user_id=account.id, role=account.role.value)
        return AuthResult(account=account, session=session, tokens=tokens)

    def _build_profile(self, data: RegistrationData, role: Role) -> Dict[str, Any]:
        profile: Dict[str, Any] = {
            "first_name": normalize_unicode(data.first_name).strip(),
            "last_name": normalize_unicode(data.last_name).strip(),
        }
        if data.phone:
            profile["phone"] = normalize_phone(data.phone)
        if data.address:
            profile["address"] = normalize_unicode(data.address).strip()
        if role == Role.PATIENT:
            profile["patient_id"] = self._next_patient_id()
            if data.date_of_birth:
                profile["date_of_birth"] = data.date_of_birth[:10]
            if data.gender:
                profile["gender"] = data.gender
            if data.blood_type:
                profile["blood_type"] = data.blood_type
        return profile

    def _next_patient_id(self) -> str:
        year = datetime.now(timezone.utc).year
        count = self.store.count_accounts(Role.PATIENT)
        return f"P-{year}-{count + 1:04d}"

    async def login(
        self, email: str, password: str, client: Optional[ClientContext] = None
    ) -> AuthResult:
        normalized = normalize_email(email) if isinstance(email, str) else ""
        account = None
        if not email_issue(normalized):
            account = self.store.get_account_by_email(normalized)

        if account is None:
            # Same hashing cost as a real verify so timing does not reveal the email
            self.hasher.dummy_verify(password or "")
            log_security_event(
                "login_failed", client=client, reason="unknown_email", email=normalized
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        password_ok = self.hasher.verify(password or "", account.password_hash)
        if not account.is_active:
            log_security_event(
                "login_failed", client=client, reason="account_inactive", user_id=account.id
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not password_ok:
            log_security_event(
                "login_failed", client=client, reason="bad_password", user_id=account.id
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.hasher.needs_rehash(account.password_hash):
            new_hash = self.hasher.hash(password)
            self.store.update_password_hash(account.id, new_hash)
            account.password_hash = new_hash
            self.logger.info("password_rehashed", user_id=account.id)

        session = await self._open_session(account, client)
        tokens = self._issue_pair(account, session)
        log_security_event(
            "login_succeeded", client=client, level="info", user_id=account.id, session_id=session.id
        )
        return AuthResult(account=account, session=session, tokens=tokens)

    # -- request authentication ----------------------------------------

    async def authenticate(
        self, authorization: Optional[str], client: Optional[ClientContext] = None
    ) -> AuthContext:
        token = extract_bearer_token(authorization)
        if not token:
            log_security_event("auth_token_missing", client=client, level="info")
            raise AuthRequiredError("Authentication required")
        try:
            payload = self.tokens.verify_access_token(token)
        except TokenExpired:
            log_security_event("auth_token_expired", client=client, level="info")
            raise TokenExpiredError("Token expired") from None
        except TokenInvalid as exc:
            log_security_event("auth_token_invalid", client=client, reason=str(exc))
            raise InvalidTokenError("Invalid token") from None

        session = await self.sessions.get(payload.session_id)
        if session is None or session.user_id != payload.user_id:
            log_security_event(
                "auth_session_invalid",
                client=client,
                user_id=payload.user_id,
                session_id=payload.session_id,
            )
            raise SessionExpiredError("Session expired or invalid")

        account = self.store.get_account(payload.user_id)
        if account is None or not account.is_active:
            log_security_event("auth_account_inactive", client=client, user_id=payload.user_id)
            raise AuthenticationError("User not found or inactive")

        return AuthContext(
            user_id=account.id,
            email=account.email,
            role=account.role,
            session_id=session.id,
        )

    async def refresh(
        self, refresh_token: str, client: Optional[ClientContext] = None
    ) -> TokenPair:
        try:
            payload = self.tokens.verify_refresh_token(refresh_token)
        except TokenExpired:
            log_security_event("refresh_token_expired", client=client, level="info")
            raise TokenExpiredError("Refresh token expired") from None
        except TokenInvalid as exc:
            log_security_event("refresh_token_invalid", client=client, reason=str(exc))
            raise InvalidTokenError("Invalid refresh token") from None

        session = await self.sessions.get(payload.session_id)
        if session is None or session.user_id != payload.user_id:
            log_security_event(
                "refresh_session_invalid",
                client=client,
                user_id=payload.user_id,
                session_id=payload.session_id,
            )
            raise SessionExpiredError("Session expired or invalid")

        account = self.store.get_account(payload.user_id)
        if account is None or not account.is_active:
            log_security_event("refresh_account_inactive", client=client, user_id=payload.user_id)
            raise AuthenticationError("User not found or inactive")

        if self.settings.rotate_refresh_tokens:
            origin = client or ClientContext(ip_addr=session.ip_addr, user_agent=session.user_agent)
            new_session = await self._open_session(account, origin)
            await self.sessions.delete(session.id, account.id)
            self.logger.info(
                "session_rotated", user_id=account.id, old_session_id=session.id, session_id=new_session.id
            )
            return self._issue_pair(account, new_session)

        return TokenPair(access_token=self.tokens.issue_access_token(self._payload(account, session)))

    async def logout(self, identity: AuthContext) -> None:
        await self.sessions.delete(identity.session_id, identity.user_id)
        self.logger.info("user_logged_out", user_id=identity.user_id)

    def get_profile(self, user_id: str) -> Account:
        account = self.store.get_account(user_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    # -- administration -------------------------------------------------

    def list_sessions(self, user_id: str) -> List[Session]:
        self.get_profile(user_id)
        return self.sessions.list_user_sessions(user_id)

    async def revoke_session(self, session_id: str, *, actor: Optional[AuthContext] = None) -> None:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        await self.sessions.delete(session_id, session.user_id)
        log_security_event(
            "session_revoked",
            level="info",
            session_id=session_id,
            user_id=session.user_id,
            actor_id=actor.user_id if actor else None,
        )

    async def revoke_all_sessions(
        self, user_id: str, *, actor: Optional[AuthContext] = None
    ) -> int:
        self.get_profile(user_id)
        revoked = await self.sessions.delete_user_sessions(user_id)
        log_security_event(
            "sessions_revoked",
            level="info",
            user_id=user_id,
            count=revoked,
            actor_id=actor.user_id if actor else None,
        )
        return revoked

    async def set_account_active(
        self, user_id: str, is_active: bool, *, actor: Optional[AuthContext] = None
    ) -> Account:
        account = self.store.set_account_active(user_id, is_active)
        if account is None:
            raise NotFoundError("User not found")
        revoked = 0
        if not is_active:
            revoked = await self.sessions.delete_user_sessions(user_id)
        log_security_event(
            "account_status_changed",
            level="info",
            user_id=user_id,
            is_active=is_active,
            sessions_revoked=revoked,
            actor_id=actor.user_id if actor else None,
        )
        return account

    # -- helpers ----------------------------------------------------------

    async def _open_session(
        self, account: Account, client: Optional[ClientContext]
    ) -> Session:
        session = Session.new(
            account,
            self.settings.session_ttl_seconds,
            ip_addr=client.ip_addr if client else None,
            user_agent=client.user_agent if client else None,
        )
        await self.sessions.put(session)
        return session

    @staticmethod
    def _payload(account: Account, session: Session) -> TokenPayload:
        return TokenPayload(
            user_id=account.id,
            email=account.email,
            role=account.role,
            session_id=session.id,
        )

    def _issue_pair(self, account: Account, session: Session) -> TokenPair:
        payload = self._payload(account, session)
        return TokenPair(
            access_token=self.tokens.issue_access_token(payload),
            refresh_token=self.tokens.issue_refresh_token(payload),
        )
