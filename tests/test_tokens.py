"""Unit tests for the token service.

Tests for:
- Access/refresh issuance and verification round trip
- Expiry with clock-skew leeway
- Signature, algorithm, type, issuer and audience checks
- Bearer header parsing and session id generation
"""

import base64
import json

import pytest

from medauth.service.tokens import (
    TokenExpired,
    TokenInvalid,
    TokenPayload,
    TokenService,
    extract_bearer_token,
    generate_session_id,
)
from medauth.storage.models import Role


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def _service(clock, **overrides):
    params = dict(
        access_secret="access-secret-for-unit-tests-0123456789",
        refresh_secret="refresh-secret-for-unit-tests-0123456789",
        issuer="mesmtf-api",
        audience="mesmtf-client",
        access_ttl_seconds=15 * 60,
        refresh_ttl_seconds=7 * 24 * 3600,
        leeway_seconds=30,
        clock=clock,
    )
    params.update(overrides)
    return TokenService(**params)


@pytest.fixture
def service(clock):
    return _service(clock)


@pytest.fixture
def payload():
    return TokenPayload(
        user_id="6f1c7c1e-0000-4000-8000-000000000001",
        email="patient@example.com",
        role=Role.PATIENT,
        session_id=generate_session_id(),
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestRoundTrip:
    def test_access_token_round_trip(self, service, payload, clock):
        token = service.issue_access_token(payload)
        decoded = service.verify_access_token(token)

        assert decoded.user_id == payload.user_id
        assert decoded.email == payload.email
        assert decoded.role == Role.PATIENT
        assert decoded.session_id == payload.session_id
        assert decoded.token_type == "access"
        assert decoded.issued_at.timestamp() == int(clock.now)
        assert decoded.expires_at.timestamp() == int(clock.now) + 15 * 60
        assert decoded.jti

    def test_refresh_token_round_trip(self, service, payload):
        token = service.issue_refresh_token(payload)
        decoded = service.verify_refresh_token(token)

        assert decoded.session_id == payload.session_id
        assert decoded.token_type == "refresh"

    def test_each_token_gets_unique_jti(self, service, payload):
        first = service.verify_access_token(service.issue_access_token(payload))
        second = service.verify_access_token(service.issue_access_token(payload))
        assert first.jti != second.jti


class TestExpiry:
    def test_expired_access_token_raises_token_expired(self, service, payload, clock):
        token = service.issue_access_token(payload)
        clock.now += 15 * 60 + 31

        with pytest.raises(TokenExpired):
            service.verify_access_token(token)

    def test_leeway_accepts_small_clock_skew(self, service, payload, clock):
        token = service.issue_access_token(payload)
        clock.now += 15 * 60 + 10

        assert service.verify_access_token(token).user_id == payload.user_id

    def test_expired_refresh_token_raises_token_expired(self, service, payload, clock):
        token = service.issue_refresh_token(payload)
        clock.now += 7 * 24 * 3600 + 60

        with pytest.raises(TokenExpired):
            service.verify_refresh_token(token)


class TestRejection:
    def test_refresh_token_is_not_an_access_token(self, service, payload):
        refresh = service.issue_refresh_token(payload)
        with pytest.raises(TokenInvalid):
            service.verify_access_token(refresh)

    def test_access_token_is_not_a_refresh_token(self, service, payload):
        access = service.issue_access_token(payload)
        with pytest.raises(TokenInvalid):
            service.verify_refresh_token(access)

    def test_token_signed_with_other_secret_rejected(self, service, payload, clock):
        other = _service(clock, access_secret="a-completely-different-access-secret-xyz")
        with pytest.raises(TokenInvalid):
            service.verify_access_token(other.issue_access_token(payload))

    def test_tampered_payload_rejected(self, service, payload):
        header, body, sig = service.issue_access_token(payload).split(".")
        claims = json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))
        claims["role"] = "ADMIN"
        with pytest.raises(TokenInvalid):
            service.verify_access_token(f"{header}.{_b64(claims)}.{sig}")

    def test_alg_none_rejected(self, service, payload):
        _, body, _ = service.issue_access_token(payload).split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{body}."
        with pytest.raises(TokenInvalid):
            service.verify_access_token(forged)

    def test_wrong_issuer_rejected(self, service, payload, clock):
        other = _service(clock, issuer="someone-else")
        with pytest.raises(TokenInvalid):
            service.verify_access_token(other.issue_access_token(payload))

    def test_wrong_audience_rejected(self, service, payload, clock):
        other = _service(clock, audience="another-client")
        with pytest.raises(TokenInvalid):
            service.verify_access_token(other.issue_access_token(payload))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "not.a.jwt"])
    def test_malformed_tokens_rejected(self, service, token):
        with pytest.raises(TokenInvalid):
            service.verify_access_token(token)

    def test_expired_and_invalid_share_base_class(self):
        from medauth.service.tokens import TokenError

        assert issubclass(TokenExpired, TokenError)
        assert issubclass(TokenInvalid, TokenError)

    def test_identical_secrets_refused(self, clock):
        with pytest.raises(ValueError):
            _service(clock, refresh_secret="access-secret-for-unit-tests-0123456789")


class TestBearerParsing:
    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer ", "bearer abc", "Token abc", "Bearer a b", "Bearer  abc"],
    )
    def test_rejects_malformed_headers(self, header):
        assert extract_bearer_token(header) is None

    def test_extracts_token(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_peek_subject(self, service, payload):
        token = service.issue_access_token(payload)
        assert service.peek_subject(f"Bearer {token}") == payload.user_id
        assert service.peek_subject("Bearer garbage") is None
        assert service.peek_subject(None) is None


def test_session_ids_are_256_bit_hex():
    ids = {generate_session_id() for _ in range(50)}
    assert len(ids) == 50
    for sid in ids:
        assert len(sid) == 64
        int(sid, 16)
