"""Authorization decisions for protected routes.

Two independent checks run in order: the global role check, which the
``ADMIN`` role always passes, and the tenant role check, which looks up the
caller's membership in the target tenant and grants no bypass to anyone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.auth import AuthenticatedIdentity
from tenantgate.service.errors import ForbiddenError
from tenantgate.storage.models import Tenant, TenantRole

logger = get_logger(__name__)

ADMIN_ROLE = "ADMIN"
PERMISSION_DENIED = "You do not have permission to access this resource"


class TenantLookup(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...


@dataclass(frozen=True)
class RoutePolicy:
    """Role requirements attached to a single route.

    Empty sets mean the corresponding check is not applied.
    """

    roles: FrozenSet[str] = field(default_factory=frozenset)
    tenant_roles: FrozenSet[TenantRole] = field(default_factory=frozenset)

    @classmethod
    def of(
        cls,
        roles: Iterable[str] = (),
        tenant_roles: Iterable[TenantRole] = (),
    ) -> "RoutePolicy":
        return cls(
            roles=frozenset(roles),
            tenant_roles=frozenset(TenantRole(r) for r in tenant_roles),
        )


def is_privileged(identity: Optional[AuthenticatedIdentity]) -> bool:
    return identity is not None and ADMIN_ROLE in identity.roles


def check_roles(
    required: Optional[Iterable[str]], identity: Optional[AuthenticatedIdentity]
) -> None:
    required_set = frozenset(required or ())
    if not required_set:
        return
    if identity is None:
        raise ForbiddenError(PERMISSION_DENIED)
    if is_privileged(identity):
        return
    held = {r for r in identity.roles if isinstance(r, str)}
    if held & required_set:
        return
    logger.warning(
        "role_check_denied", user_id=identity.user_id, required=sorted(required_set)
    )
    raise ForbiddenError(PERMISSION_DENIED)


def resolve_tenant_id(
    path_value: Optional[str], header_value: Optional[str]
) -> Optional[str]:
    """The route's tenant path parameter wins over the X-Tenant-ID header."""
    if path_value:
        return path_value
    return header_value or None


def check_tenant_roles(
    required: Optional[Iterable[TenantRole]],
    identity: Optional[AuthenticatedIdentity],
    tenant_id: Optional[str],
    tenants: TenantLookup,
) -> None:
    required_set = frozenset(TenantRole(r) for r in (required or ()))
    if not required_set:
        return
    if identity is None or not tenant_id:
        raise ForbiddenError(PERMISSION_DENIED)
    tenant = tenants.get_tenant(tenant_id)
    if tenant is None:
        raise ForbiddenError(PERMISSION_DENIED)
    role = tenant.role_of(identity.user_id)
    if role is None or role not in required_set:
        logger.warning(
            "tenant_role_check_denied",
            user_id=identity.user_id,
            tenant_id=tenant_id,
            held=role.value if role else None,
        )
        raise ForbiddenError(PERMISSION_DENIED)


def authorize(
    policy: RoutePolicy,
    identity: Optional[AuthenticatedIdentity],
    *,
    tenant_id: Optional[str] = None,
    tenants: Optional[TenantLookup] = None,
) -> None:
    check_roles(policy.roles, identity)
    if policy.tenant_roles:
        if tenants is None:
            raise ForbiddenError(PERMISSION_DENIED)
        check_tenant_roles(policy.tenant_roles, identity, tenant_id, tenants)
