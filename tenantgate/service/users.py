from __future__ import annotations

from typing import List, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.errors import NotFoundError, ValidationError
from tenantgate.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(
        self, user_id: str, *, include_credentials: bool = False
    ) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]: ...

    def add_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]: ...

    def remove_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]: ...

    def set_default_tenant(self, user_id: str, tenant_id: str) -> Optional[User]: ...


class UserService:
    """Account administration and each user's list of tenants."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    def deactivate_user(self, user_id: str) -> User:
        user = self.store.set_user_active(user_id, False)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        logger.info("user_deactivated", user_id=user_id)
        return user

    def activate_user(self, user_id: str) -> User:
        user = self.store.set_user_active(user_id, True)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        logger.info("user_activated", user_id=user_id)
        return user

    def grant_role(self, user_id: str, role: str) -> User:
        user = self.get_user(user_id)
        if role in user.roles:
            return user
        updated = self.store.set_user_roles(user_id, [*user.roles, role])
        if not updated:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        logger.info("user_role_granted", user_id=user_id, role=role)
        return updated

    def add_tenant_to_user(self, user_id: str, tenant_id: str) -> User:
        """Append a tenant; the first one a user joins becomes the default."""
        user = self.store.add_user_tenant(user_id, tenant_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    def remove_tenant_from_user(
        self, user_id: str, tenant_id: str, *, enforce_minimum: bool = True
    ) -> User:
        user = self.get_user(user_id)
        if not user.has_tenant(tenant_id):
            return user
        if enforce_minimum and len(user.tenants) <= 1:
            raise ValidationError("User must have at least one tenant")
        updated = self.store.remove_user_tenant(user_id, tenant_id)
        if not updated:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return updated

    def set_default_tenant(self, user_id: str, tenant_id: str) -> User:
        self.get_user(user_id)
        user = self.store.set_default_tenant(user_id, tenant_id)
        if not user:
            raise NotFoundError(
                "Tenant not found for user",
                detail={"user_id": user_id, "tenant_id": tenant_id},
            )
        return user
