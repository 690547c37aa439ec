from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tenantgate.storage.models import Tenant, TenantRole, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error half of the response envelope, restricted to stable codes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# emails are opaque unique keys: no case folding or trimming
def _validate_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    return value


class CredentialsRequest(ApiModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(CredentialsRequest):
    pass


class LoginRequest(CredentialsRequest):
    pass


class TokenRefreshRequest(ApiModel):
    # left untyped so a malformed token is refused like any other bad token
    refresh_token: Optional[Any] = None


class TokenResponse(ApiModel):
    access_token: str
    refresh_token: Optional[str] = None


class MessageResponse(ApiModel):
    message: str


class UserTenantResponse(ApiModel):
    tenant_id: str
    default: bool


class UserResponse(ApiModel):
    id: str
    email: str
    roles: List[str]
    is_active: bool
    tenants: List[UserTenantResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            roles=list(user.roles),
            is_active=user.is_active,
            tenants=[
                UserTenantResponse(tenant_id=t.tenant_id, default=t.default)
                for t in user.tenants
            ],
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class IdentityResponse(ApiModel):
    user_id: str
    email: str
    roles: List[str]
    is_active: bool


class DefaultTenantRequest(ApiModel):
    tenant_id: str = Field(..., min_length=1, max_length=128)


class TenantNameRequest(ApiModel):
    name: str = Field(..., min_length=1, max_length=128)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class TenantMemberRequest(ApiModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    role: TenantRole = TenantRole.VIEWER


class JoinRequestResponseRequest(ApiModel):
    approve: bool


class TenantMemberResponse(ApiModel):
    user_id: str
    role: TenantRole


class TenantJoinRequestResponse(ApiModel):
    user_id: str
    requested_at: datetime


class TenantResponse(ApiModel):
    id: str
    name: str
    created_by: str
    updated_by: str
    members: List[TenantMemberResponse]
    join_requests: List[TenantJoinRequestResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            created_by=tenant.created_by,
            updated_by=tenant.updated_by,
            members=[
                TenantMemberResponse(user_id=m.user_id, role=m.role)
                for m in tenant.members
            ],
            join_requests=[
                TenantJoinRequestResponse(user_id=r.user_id, requested_at=r.requested_at)
                for r in tenant.join_requests
            ],
            created_at=tenant.created_at,
            updated_at=tenant.updated_at,
        )


class CustomerRequest(ApiModel):
    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class CustomerUpdateRequest(ApiModel):
    email: Optional[str] = Field(default=None, max_length=254)
    metadata: Optional[Dict[str, str]] = None


class CheckoutSessionRequest(ApiModel):
    customer_id: str = Field(..., min_length=1, max_length=255)
    price_id: str = Field(..., min_length=1, max_length=255)
    success_url: str = Field(..., min_length=1, max_length=2048)
    cancel_url: str = Field(..., min_length=1, max_length=2048)


class PortalSessionRequest(ApiModel):
    customer_id: str = Field(..., min_length=1, max_length=255)
    return_url: str = Field(..., min_length=1, max_length=2048)
