"""Tests for HS256 token issuance and verification."""

import base64
import json

import pytest

from tenantgate.service.tokens import (
    TokenError,
    TokenExpiredError,
    TokenIssuer,
    TokenSubject,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        access_secret="access-secret",
        refresh_secret="refresh-secret",
        access_ttl_seconds=60,
        refresh_ttl_seconds=600,
        clock=clock,
    )


@pytest.fixture
def subject():
    return TokenSubject(
        user_id="u-1", email="ada@example.com", roles=("USER",), is_active=True
    )


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def test_access_token_round_trip(issuer, subject):
    claims = issuer.verify_access_token(issuer.issue_access_token(subject))

    assert claims.subject == subject
    assert claims.token_type == "access"
    assert claims.expires_at - claims.issued_at == 60


def test_payload_shape(issuer, subject):
    payload = _payload(issuer.issue_refresh_token(subject))

    assert payload["sub"] == "u-1"
    assert payload["email"] == "ada@example.com"
    assert payload["roles"] == ["USER"]
    assert payload["isActive"] is True
    assert payload["token_type"] == "refresh"
    assert payload["exp"] - payload["iat"] == 600


def test_tokens_minted_in_same_second_differ(issuer, subject):
    assert issuer.issue_refresh_token(subject) != issuer.issue_refresh_token(subject)


def test_refresh_token_not_accepted_as_access(issuer, subject):
    refresh = issuer.issue_refresh_token(subject)
    access = issuer.issue_access_token(subject)

    with pytest.raises(TokenError):
        issuer.verify_access_token(refresh)
    with pytest.raises(TokenError):
        issuer.verify_refresh_token(access)


def test_expired_token_raises_expired(issuer, subject, clock):
    token = issuer.issue_access_token(subject)
    clock.now += 61

    with pytest.raises(TokenExpiredError):
        issuer.verify_access_token(token)


def test_token_expires_exactly_at_exp(issuer, subject, clock):
    token = issuer.issue_refresh_token(subject)
    clock.now += 600

    with pytest.raises(TokenExpiredError):
        issuer.verify_refresh_token(token)


def test_leeway_extends_validity(subject, clock):
    lenient = TokenIssuer(
        access_secret="a",
        refresh_secret="r",
        access_ttl_seconds=60,
        leeway_seconds=30,
        clock=clock,
    )
    token = lenient.issue_access_token(subject)
    clock.now += 75

    assert lenient.verify_access_token(token).subject.user_id == "u-1"


def test_tampered_signature_rejected(issuer, subject):
    token = issuer.issue_access_token(subject)
    header, payload, signature = token.split(".")
    forged = dict(_payload(token), roles=["ADMIN"])
    forged_segment = (
        base64.urlsafe_b64encode(json.dumps(forged).encode()).decode().rstrip("=")
    )

    with pytest.raises(TokenError) as excinfo:
        issuer.verify_access_token(f"{header}.{forged_segment}.{signature}")
    assert not isinstance(excinfo.value, TokenExpiredError)


def test_token_signed_with_other_secret_rejected(subject, clock):
    other = TokenIssuer(access_secret="x", refresh_secret="y", clock=clock)
    mine = TokenIssuer(access_secret="access-secret", refresh_secret="z", clock=clock)

    with pytest.raises(TokenError):
        mine.verify_access_token(other.issue_access_token(subject))


def test_alg_none_rejected(issuer, subject):
    token = issuer.issue_access_token(subject)
    _, payload, _ = token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

    with pytest.raises(TokenError):
        issuer.verify_access_token(f"{header}.{payload}.")


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "é.é.é"])
def test_malformed_tokens_rejected(issuer, token):
    with pytest.raises(TokenError):
        issuer.verify_refresh_token(token)


def test_non_string_roles_are_ignored(issuer, clock):
    token = issuer._encode_jwt(
        {
            "sub": "u-1",
            "email": "ada@example.com",
            "roles": ["USER", 7, None, "ADMIN"],
            "isActive": True,
            "token_type": "access",
            "iat": int(clock.now),
            "exp": int(clock.now) + 60,
        },
        b"access-secret",
    )

    assert issuer.verify_access_token(token).subject.roles == ("USER", "ADMIN")


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        TokenIssuer(access_secret="", refresh_secret="r")
