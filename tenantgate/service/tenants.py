from __future__ import annotations

from typing import List, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.auth import AuthenticatedIdentity
from tenantgate.service.errors import ConflictError, NotFoundError, ValidationError
from tenantgate.service.users import UserService
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    Tenant,
    TenantJoinRequest,
    TenantMember,
    TenantRole,
    User,
)

logger = get_logger(__name__)


class TenantStore(Protocol):
    def create_tenant(self, name: str, owner_id: str) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def list_tenants(self) -> List[Tenant]: ...

    def update_tenant_name(
        self, tenant_id: str, name: str, updated_by: str
    ) -> Optional[Tenant]: ...

    def delete_tenant(self, tenant_id: str) -> bool: ...

    def add_tenant_member(
        self, tenant_id: str, member: TenantMember
    ) -> Optional[Tenant]: ...

    def remove_tenant_member(self, tenant_id: str, user_id: str) -> Optional[Tenant]: ...

    def add_join_request(
        self, tenant_id: str, request: TenantJoinRequest
    ) -> Optional[Tenant]: ...

    def remove_join_request(self, tenant_id: str, user_id: str) -> Optional[Tenant]: ...


class TenantService:
    """Tenant lifecycle, membership and the join-request workflow.

    Membership lives on the tenant document; the user's own tenant list is
    kept in step through ``UserService``.
    """

    def __init__(self, store: TenantStore, users: UserService) -> None:
        self.store = store
        self.users = users

    def create_tenant(self, identity: AuthenticatedIdentity, name: str) -> Tenant:
        try:
            tenant = self.store.create_tenant(name, identity.user_id)
        except ConstraintViolation as exc:
            raise ConflictError(f"tenant {name} already exists") from exc
        self.users.add_tenant_to_user(identity.user_id, tenant.id)
        logger.info("tenant_created", tenant_id=tenant.id, owner_id=identity.user_id)
        return tenant

    def list_tenants(self) -> List[Tenant]:
        return self.store.list_tenants()

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    def update_tenant(
        self, tenant_id: str, name: str, identity: AuthenticatedIdentity
    ) -> Tenant:
        try:
            tenant = self.store.update_tenant_name(tenant_id, name, identity.user_id)
        except ConstraintViolation as exc:
            raise ConflictError(f"tenant {name} already exists") from exc
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    def delete_tenant(self, tenant_id: str) -> None:
        tenant = self.get_tenant(tenant_id)
        if not self.store.delete_tenant(tenant_id):
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        for member in tenant.members:
            # the tenant is gone, so the one-tenant minimum cannot apply
            self.users.remove_tenant_from_user(
                member.user_id, tenant_id, enforce_minimum=False
            )
        logger.info("tenant_deleted", tenant_id=tenant_id)

    def add_member(
        self,
        tenant_id: str,
        user_id: str,
        role: TenantRole,
        identity: AuthenticatedIdentity,
    ) -> Tenant:
        if user_id == identity.user_id:
            raise ValidationError("You cannot add yourself to the tenant")
        self.users.get_user(user_id)
        try:
            tenant = self.store.add_tenant_member(
                tenant_id, TenantMember(user_id=user_id, role=TenantRole(role))
            )
        except ConstraintViolation as exc:
            raise ConflictError("User is already a member of this tenant") from exc
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        self.users.add_tenant_to_user(user_id, tenant_id)
        logger.info("tenant_member_added", tenant_id=tenant_id, user_id=user_id)
        return tenant

    def remove_member(
        self, tenant_id: str, user_id: str, identity: AuthenticatedIdentity
    ) -> Tenant:
        if user_id == identity.user_id:
            raise ValidationError("You cannot remove yourself from the tenant")
        if not self.get_tenant(tenant_id).is_member(user_id):
            raise NotFoundError(
                "Member not found", detail={"tenant_id": tenant_id, "user_id": user_id}
            )
        tenant = self.store.remove_tenant_member(tenant_id, user_id)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        self.users.remove_tenant_from_user(user_id, tenant_id, enforce_minimum=False)
        logger.info("tenant_member_removed", tenant_id=tenant_id, user_id=user_id)
        return tenant

    def leave_tenant(self, identity: AuthenticatedIdentity, tenant_id: str) -> User:
        """Drop the caller's membership and the matching entry in their tenant list.

        The one-tenant minimum is checked before either side changes.
        """
        user = self.users.remove_tenant_from_user(identity.user_id, tenant_id)
        tenant = self.store.get_tenant(tenant_id)
        if tenant and tenant.is_member(identity.user_id):
            self.store.remove_tenant_member(tenant_id, identity.user_id)
            logger.info("tenant_member_left", tenant_id=tenant_id, user_id=identity.user_id)
        return user

    def request_to_join(self, user_id: str, tenant_id: str) -> Tenant:
        tenant = self.get_tenant(tenant_id)
        if tenant.has_join_request(user_id):
            raise ValidationError("You have already requested to join this tenant")
        if tenant.is_member(user_id):
            raise ValidationError("You are already a member of this tenant")
        try:
            updated = self.store.add_join_request(
                tenant_id, TenantJoinRequest(user_id=user_id)
            )
        except ConstraintViolation as exc:
            raise ValidationError(
                "You have already requested to join this tenant"
            ) from exc
        if not updated:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        logger.info("tenant_join_requested", tenant_id=tenant_id, user_id=user_id)
        return updated

    def respond_to_join_request(
        self, tenant_id: str, user_id: str, approve: bool
    ) -> Tenant:
        tenant = self.get_tenant(tenant_id)
        if not tenant.has_join_request(user_id):
            raise NotFoundError(
                "Join request not found",
                detail={"tenant_id": tenant_id, "user_id": user_id},
            )
        if approve and not tenant.is_member(user_id):
            try:
                self.store.add_tenant_member(
                    tenant_id, TenantMember(user_id=user_id, role=TenantRole.VIEWER)
                )
            except ConstraintViolation:
                logger.info(
                    "tenant_join_already_member", tenant_id=tenant_id, user_id=user_id
                )
            self.users.add_tenant_to_user(user_id, tenant_id)
        updated = self.store.remove_join_request(tenant_id, user_id)
        if not updated:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        logger.info(
            "tenant_join_answered",
            tenant_id=tenant_id,
            user_id=user_id,
            approved=approve,
        )
        return updated
