from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import List, Optional, Protocol

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
)
from tenantgate.service.passwords import CredentialHasher, InvalidCredentialFormat
from tenantgate.service.tokens import (
    TokenError,
    TokenExpiredError,
    TokenIssuer,
    TokenSubject,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
REFRESH_REJECTED = "token expired or invalid"


class AuthStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, *, roles: Optional[List[str]] = None
    ) -> User: ...

    def get_user(
        self, user_id: str, *, include_credentials: bool = False
    ) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, *, include_credentials: bool = False
    ) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def set_refresh_token_hash(self, user_id: str, token_hash: str) -> None: ...

    def clear_refresh_token_hash(self, user_id: str) -> None: ...

    def swap_refresh_token_hash(
        self, user_id: str, expected: Optional[str], new: str
    ) -> bool: ...


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Caller identity decoded from a verified access token."""

    user_id: str
    email: str
    roles: tuple[str, ...] = ()
    is_active: bool = True

    @classmethod
    def from_subject(cls, subject: TokenSubject) -> "AuthenticatedIdentity":
        return cls(
            user_id=subject.user_id,
            email=subject.email,
            roles=subject.roles,
            is_active=subject.is_active,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def _subject_for(user: User) -> TokenSubject:
    return TokenSubject(
        user_id=user.id,
        email=user.email,
        roles=tuple(r for r in user.roles if isinstance(r, str)),
        is_active=user.is_active,
    )


class AuthService:
    """Registration, login, refresh-token rotation and logout.

    The store keeps one refresh-token hash per user. Login overwrites it,
    refresh swaps it only if it is still the hash the presented token matched,
    and logout clears it, so at most one refresh token per user is ever valid.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        tokens: Optional[TokenIssuer] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher or CredentialHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )
        self.tokens = tokens or TokenIssuer(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            leeway_seconds=settings.jwt_leeway_seconds,
        )
        self.logger = logger
        # verified against on unknown emails
        self._dummy_credential = self.hasher.hash(secrets.token_urlsafe(16))

    async def register(
        self, email: str, password: str, *, roles: Optional[List[str]] = None
    ) -> User:
        if self.store.get_user_by_email(email):
            raise ConflictError(f"user with email {email} already exists")
        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(email, password_hash, roles=roles)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration of the same email
            raise ConflictError(f"user with email {email} already exists") from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> TokenPair:
        user = self.store.get_user_by_email(email, include_credentials=True)
        if not user:
            # same argon2 work as a wrong password so timing does not reveal the email
            self.hasher.verify(password, self._dummy_credential)
            self.logger.warning("login_failed", reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        try:
            matched = self.hasher.verify(password, user.password_hash)
        except InvalidCredentialFormat:
            self.logger.warning(
                "login_failed", user_id=user.id, reason="malformed_credential"
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not matched:
            self.logger.warning("login_failed", user_id=user.id, reason="mismatch")
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.hasher.needs_rehash(user.password_hash):
            self.store.set_password_hash(user.id, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)

        pair = self._issue_pair(user)
        self.store.set_refresh_token_hash(user.id, self.hasher.hash(pair.refresh_token))
        self.logger.info("login_succeeded", user_id=user.id)
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token.

        Every failure, including unexpected store errors, surfaces as the same
        ForbiddenError; the cause is only logged.
        """
        try:
            return self._rotate(refresh_token)
        except Exception as exc:
            self.logger.warning(
                "refresh_rejected", reason=type(exc).__name__, detail=str(exc)
            )
            raise ForbiddenError(REFRESH_REJECTED) from exc

    def _rotate(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.verify_refresh_token(refresh_token)
        user = self.store.get_user_by_email(
            claims.subject.email, include_credentials=True
        )
        if not user:
            raise LookupError("user not found")
        if user.id != claims.subject.user_id:
            raise LookupError("subject does not match user")
        stored_hash = user.refresh_token_hash
        if not stored_hash:
            raise LookupError("no active refresh token")
        if not self.hasher.verify(refresh_token, stored_hash):
            raise LookupError("refresh token superseded")

        pair = self._issue_pair(user)
        new_hash = self.hasher.hash(pair.refresh_token)
        if not self.store.swap_refresh_token_hash(user.id, stored_hash, new_hash):
            raise LookupError("concurrent rotation")
        self.logger.info("refresh_rotated", user_id=user.id)
        return pair

    async def logout(self, user_id: str) -> dict:
        self.store.clear_refresh_token_hash(user_id)
        self.logger.info("logout", user_id=user_id)
        return {"message": "Logged out successfully"}

    async def authenticate(
        self, authorization: Optional[str]
    ) -> AuthenticatedIdentity:
        """Resolve an ``Authorization: Bearer`` header into an identity."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.tokens.verify_access_token(token)
        except TokenExpiredError:
            raise AuthenticationError("token expired")
        except TokenError:
            raise AuthenticationError("invalid token")
        return AuthenticatedIdentity.from_subject(claims.subject)

    def _issue_pair(self, user: User) -> TokenPair:
        subject = _subject_for(user)
        return TokenPair(
            access_token=self.tokens.issue_access_token(subject),
            refresh_token=self.tokens.issue_refresh_token(subject),
        )

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None
