from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from medauth.logging import get_logger
from medauth.storage.models import Role, new_session_id

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpired(TokenError):
    """Signature and claims were valid but ``exp`` has passed."""


class TokenInvalid(TokenError):
    """Malformed token, bad signature, wrong type, issuer or audience."""


@dataclass
class TokenPayload:
    user_id: str
    email: str
    role: Role
    session_id: str
    token_type: str = ACCESS
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    jti: Optional[str] = None


def generate_session_id() -> str:
    return new_session_id()


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the token from ``Bearer <token>``; anything else yields None."""
    if not header or not isinstance(header, str):
        return None
    parts = header.split(" ")
    if len(parts) != 2:
        return None
    scheme, token = parts
    if scheme != "Bearer" or not token:
        return None
    return token


class TokenService:
    """HS256 access and refresh tokens signed with separate secrets."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be configured")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self._ttl = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.time) -> "TokenService":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttl[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttl[REFRESH]

    def issue_access_token(self, payload: TokenPayload) -> str:
        return self._issue(payload, ACCESS)

    def issue_refresh_token(self, payload: TokenPayload) -> str:
        return self._issue(payload, REFRESH)

    def verify_access_token(self, token: str) -> TokenPayload:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenPayload:
        return self._verify(token, REFRESH)

    def peek_subject(self, authorization: Optional[str]) -> Optional[str]:
        """Account id of a valid access token in an Authorization header, else None."""
        token = extract_bearer_token(authorization)
        if not token:
            return None
        try:
            return self.verify_access_token(token).user_id
        except TokenError:
            return None

    def _issue(self, payload: TokenPayload, token_type: str) -> str:
        now = int(self._clock())
        claims = {
            "sub": payload.user_id,
            "email": payload.email,
            "role": payload.role.value,
            "sid": payload.session_id,
            "typ": token_type,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self._ttl[token_type],
            "jti": str(uuid.uuid4()),
        }
        return self._encode(claims, self._secrets[token_type])

    def _verify(self, token: str, token_type: str) -> TokenPayload:
        if not token or not isinstance(token, str):
            raise TokenInvalid("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed header") from None
        if not isinstance(header, dict):
            raise TokenInvalid("malformed header")
        # Reject alg=none and algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._secrets[token_type], signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid("signature mismatch")

        try:
            claims = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed payload") from None
        if not isinstance(claims, dict):
            raise TokenInvalid("malformed payload")
        if claims.get("typ") != token_type:
            raise TokenInvalid("wrong token type")
        if claims.get("iss") != self.issuer:
            raise TokenInvalid("issuer mismatch")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid("audience mismatch")

        try:
            exp_ts = float(claims["exp"])
            iat_ts = float(claims.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("missing expiry") from None
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpired("token expired")

        try:
            return TokenPayload(
                user_id=str(claims["sub"]),
                email=str(claims["email"]),
                role=Role(claims["role"]),
                session_id=str(claims["sid"]),
                token_type=token_type,
                issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
                jti=claims.get("jti"),
            )
        except (KeyError, ValueError):
            raise TokenInvalid("missing claims") from None

    @staticmethod
    def _encode(claims: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


__all__ = [
    "TokenError",
    "TokenExpired",
    "TokenInvalid",
    "TokenPayload",
    "TokenService",
    "extract_bearer_token",
    "generate_session_id",
]
