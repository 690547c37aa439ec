from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from tenantgate.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Signature, structure, type or expiry check failed."""


class TokenExpiredError(TokenError):
    """The token was well-formed and correctly signed but has expired."""


@dataclass(frozen=True)
class TokenSubject:
    """Identity fields embedded in every token."""

    user_id: str
    email: str
    roles: tuple[str, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class TokenClaims:
    subject: TokenSubject
    token_type: str
    jti: str
    issued_at: int
    expires_at: int


class TokenIssuer:
    """Compact HS256 JWTs with separate access and refresh signing secrets."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token signing secrets must be non-empty")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls[REFRESH]

    def issue_access_token(self, subject: TokenSubject) -> str:
        return self._issue(subject, ACCESS)

    def issue_refresh_token(self, subject: TokenSubject) -> str:
        return self._issue(subject, REFRESH)

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    def _issue(self, subject: TokenSubject, token_type: str) -> str:
        now = int(self._clock())
        payload = {
            "sub": subject.user_id,
            "email": subject.email,
            "roles": list(subject.roles),
            "isActive": subject.is_active,
            "token_type": token_type,
            # distinct tokens even when minted in the same second
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self._ttls[token_type],
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        payload = self._decode_jwt(token, self._secrets[token_type])
        if payload is None:
            raise TokenError("invalid token")
        if payload.get("token_type") != token_type:
            raise TokenError("wrong token type")
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            subject = TokenSubject(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                roles=_string_roles(payload.get("roles")),
                is_active=bool(payload.get("isActive", True)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError("malformed claims") from exc
        if exp <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired")
        return TokenClaims(
            subject=subject,
            token_type=token_type,
            jti=str(payload.get("jti", "")),
            issued_at=iat,
            expires_at=exp,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # pin the algorithm; anything but HS256 is rejected before signature checks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload


def _string_roles(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        return ()
    return tuple(r for r in raw if isinstance(r, str))
