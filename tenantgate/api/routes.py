from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from tenantgate.api.schemas import (
    CheckoutSessionRequest,
    CustomerRequest,
    CustomerUpdateRequest,
    DefaultTenantRequest,
    Envelope,
    IdentityResponse,
    JoinRequestResponseRequest,
    LoginRequest,
    MessageResponse,
    PortalSessionRequest,
    RegisterRequest,
    TenantMemberRequest,
    TenantNameRequest,
    TenantResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from tenantgate.config import Settings
from tenantgate.logging import get_correlation_id, get_logger
from tenantgate.service.auth import REFRESH_REJECTED, AuthenticatedIdentity, TokenPair
from tenantgate.service.errors import ForbiddenError
from tenantgate.service.guards import (
    ADMIN_ROLE,
    RoutePolicy,
    authorize,
    resolve_tenant_id,
)
from tenantgate.service.runtime import check_rate_limit, get_runtime
from tenantgate.storage.models import TenantRole

logger = get_logger(__name__)

router = APIRouter()

REFRESH_COOKIE = "refresh_token"

AUTHENTICATED = RoutePolicy()
ADMIN_ONLY = RoutePolicy.of(roles=[ADMIN_ROLE])
TENANT_MEMBER = RoutePolicy.of(tenant_roles=list(TenantRole))
TENANT_MANAGER = RoutePolicy.of(tenant_roles=[TenantRole.OWNER, TenantRole.ADMIN])
TENANT_OWNER = RoutePolicy.of(tenant_roles=[TenantRole.OWNER])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)
    return info


async def get_identity(
    authorization: Optional[str] = Header(None),
) -> AuthenticatedIdentity:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require(policy: RoutePolicy) -> Callable:
    """Build a dependency that authenticates the caller and applies ``policy``.

    The tenant for tenant-role checks is the ``tenant_id`` path parameter
    when the route has one, otherwise the ``X-Tenant-ID`` header.
    """

    async def _dependency(
        request: Request,
        identity: AuthenticatedIdentity = Depends(get_identity),
        x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    ) -> AuthenticatedIdentity:
        runtime = get_runtime()
        tenant_id = resolve_tenant_id(request.path_params.get("tenant_id"), x_tenant_id)
        authorize(policy, identity, tenant_id=tenant_id, tenants=runtime.store)
        return identity

    return _dependency


def _apply_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _token_response(pair: TokenPair, response: Response, settings: Settings) -> Envelope:
    _apply_refresh_cookie(response, pair.refresh_token, settings)
    body = TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token if settings.refresh_token_in_body else None,
    )
    return _ok(body.dump())


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    client_host = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime,
        f"register:{client_host}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(body.email, body.password)
    return _ok(UserResponse.from_model(user).dump())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for an access token and refresh token.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    pair = await runtime.auth.login(body.email, body.password)
    return _token_response(pair, response, runtime.settings)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token; the body token wins over the cookie."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if not isinstance(token, str) or not token:
        raise ForbiddenError(REFRESH_REJECTED)
    pair = await runtime.auth.refresh(token)
    return _token_response(pair, response, runtime.settings)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    identity: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    runtime = get_runtime()
    result = await runtime.auth.logout(identity.user_id)
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        secure=runtime.settings.is_production,
        httponly=True,
        samesite="strict",
    )
    return _ok(MessageResponse(**result).dump())


# users


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def current_user(identity: AuthenticatedIdentity = Depends(require(AUTHENTICATED))):
    return _ok(
        IdentityResponse(
            user_id=identity.user_id,
            email=identity.email,
            roles=list(identity.roles),
            is_active=identity.is_active,
        ).dump()
    )


@router.put("/users/me/default-tenant", response_model=Envelope, tags=["users"])
async def set_default_tenant(
    body: DefaultTenantRequest,
    identity: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    user = get_runtime().users.set_default_tenant(identity.user_id, body.tenant_id)
    return _ok(UserResponse.from_model(user).dump())


@router.delete("/users/me/tenants/{tenant_id}", response_model=Envelope, tags=["users"])
async def remove_own_tenant(
    tenant_id: str,
    identity: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    user = get_runtime().tenants.leave_tenant(identity, tenant_id)
    return _ok(UserResponse.from_model(user).dump())


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(_: AuthenticatedIdentity = Depends(require(ADMIN_ONLY))):
    users = get_runtime().users.list_users()
    return _ok([UserResponse.from_model(u).dump() for u in users])


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, _: AuthenticatedIdentity = Depends(require(ADMIN_ONLY))):
    user = get_runtime().users.get_user(user_id)
    return _ok(UserResponse.from_model(user).dump())


@router.post("/users/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str, _: AuthenticatedIdentity = Depends(require(ADMIN_ONLY))
):
    user = get_runtime().users.deactivate_user(user_id)
    return _ok(UserResponse.from_model(user).dump())


@router.post("/users/{user_id}/activate", response_model=Envelope, tags=["users"])
async def activate_user(
    user_id: str, _: AuthenticatedIdentity = Depends(require(ADMIN_ONLY))
):
    user = get_runtime().users.activate_user(user_id)
    return _ok(UserResponse.from_model(user).dump())


# tenants


@router.post("/tenants", response_model=Envelope, status_code=201, tags=["tenants"])
async def create_tenant(
    body: TenantNameRequest,
    identity: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    tenant = get_runtime().tenants.create_tenant(identity, body.name)
    return _ok(TenantResponse.from_model(tenant).dump())


@router.get("/tenants", response_model=Envelope, tags=["tenants"])
async def list_tenants(_: AuthenticatedIdentity = Depends(require(AUTHENTICATED))):
    tenants = get_runtime().tenants.list_tenants()
    return _ok([TenantResponse.from_model(t).dump() for t in tenants])


@router.get("/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def get_tenant(
    tenant_id: str, _: AuthenticatedIdentity = Depends(require(TENANT_MEMBER))
):
    tenant = get_runtime().tenants.get_tenant(tenant_id)
    return _ok(TenantResponse.from_model(tenant).dump())


@router.patch("/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def update_tenant(
    tenant_id: str,
    body: TenantNameRequest,
    identity: AuthenticatedIdentity = Depends(require(TENANT_MANAGER)),
):
    tenant = get_runtime().tenants.update_tenant(tenant_id, body.name, identity)
    return _ok(TenantResponse.from_model(tenant).dump())


@router.delete("/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def delete_tenant(
    tenant_id: str, _: AuthenticatedIdentity = Depends(require(TENANT_OWNER))
):
    get_runtime().tenants.delete_tenant(tenant_id)
    return _ok({"deleted": True})


@router.post("/tenants/{tenant_id}/members", response_model=Envelope, tags=["tenants"])
async def add_tenant_member(
    tenant_id: str,
    body: TenantMemberRequest,
    identity: AuthenticatedIdentity = Depends(require(TENANT_MANAGER)),
):
    tenant = get_runtime().tenants.add_member(tenant_id, body.user_id, body.role, identity)
    return _ok(TenantResponse.from_model(tenant).dump())


@router.delete(
    "/tenants/{tenant_id}/members/{user_id}", response_model=Envelope, tags=["tenants"]
)
async def remove_tenant_member(
    tenant_id: str,
    user_id: str,
    identity: AuthenticatedIdentity = Depends(require(TENANT_MANAGER)),
):
    tenant = get_runtime().tenants.remove_member(tenant_id, user_id, identity)
    return _ok(TenantResponse.from_model(tenant).dump())


@router.post(
    "/tenants/{tenant_id}/join-requests", response_model=Envelope, tags=["tenants"]
)
async def request_to_join_tenant(
    tenant_id: str,
    identity: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    tenant = get_runtime().tenants.request_to_join(identity.user_id, tenant_id)
    return _ok(TenantResponse.from_model(tenant).dump())


@router.post(
    "/tenants/{tenant_id}/join-requests/{user_id}",
    response_model=Envelope,
    tags=["tenants"],
)
async def respond_to_join_request(
    tenant_id: str,
    user_id: str,
    body: JoinRequestResponseRequest,
    _: AuthenticatedIdentity = Depends(require(TENANT_MANAGER)),
):
    tenant = get_runtime().tenants.respond_to_join_request(
        tenant_id, user_id, body.approve
    )
    return _ok(TenantResponse.from_model(tenant).dump())


# billing


@router.post("/billing/customers", response_model=Envelope, status_code=201, tags=["billing"])
async def create_customer(
    body: CustomerRequest, _: AuthenticatedIdentity = Depends(require(AUTHENTICATED))
):
    customer = await get_runtime().billing.create_customer(body.email)
    return _ok(customer)


@router.get("/billing/customers/{customer_id}", response_model=Envelope, tags=["billing"])
async def get_customer(
    customer_id: str, _: AuthenticatedIdentity = Depends(require(ADMIN_ONLY))
):
    return _ok(await get_runtime().billing.get_customer(customer_id))


@router.patch("/billing/customers/{customer_id}", response_model=Envelope, tags=["billing"])
async def update_customer(
    customer_id: str,
    body: CustomerUpdateRequest,
    _: AuthenticatedIdentity = Depends(require(ADMIN_ONLY)),
):
    customer = await get_runtime().billing.update_customer(
        customer_id, email=body.email, metadata=body.metadata
    )
    return _ok(customer)


@router.delete("/billing/customers/{customer_id}", response_model=Envelope, tags=["billing"])
async def delete_customer(
    customer_id: str, _: AuthenticatedIdentity = Depends(require(ADMIN_ONLY))
):
    return _ok(await get_runtime().billing.delete_customer(customer_id))


@router.post("/billing/checkout-sessions", response_model=Envelope, tags=["billing"])
async def create_checkout_session(
    body: CheckoutSessionRequest,
    _: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    session = await get_runtime().billing.create_checkout_session(
        body.customer_id, body.price_id, body.success_url, body.cancel_url
    )
    return _ok(session)


@router.post("/billing/portal-sessions", response_model=Envelope, tags=["billing"])
async def create_portal_session(
    body: PortalSessionRequest,
    _: AuthenticatedIdentity = Depends(require(AUTHENTICATED)),
):
    session = await get_runtime().billing.create_billing_portal_session(
        body.customer_id, body.return_url
    )
    return _ok(session)


@router.get("/healthz", response_model=Envelope, tags=["meta"])
async def healthz():
    return _ok({"status": "ok"})
