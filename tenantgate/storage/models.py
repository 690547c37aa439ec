from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class TenantRole(str, Enum):
    """Roles a user can hold inside a single tenant."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


DEFAULT_USER_ROLES = ("USER",)


@dataclass
class UserTenant:
    tenant_id: str
    default: bool = False


@dataclass
class User:
    """A registered account.

    ``password_hash`` and ``refresh_token_hash`` are only populated when a
    store lookup is made with ``include_credentials=True``.
    """

    id: str
    email: str
    roles: List[str] = field(default_factory=lambda: list(DEFAULT_USER_ROLES))
    is_active: bool = True
    tenants: List[UserTenant] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    password_hash: Optional[str] = None
    refresh_token_hash: Optional[str] = None

    @classmethod
    def new(cls, email: str, *, roles: Optional[List[str]] = None) -> "User":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            roles=list(roles) if roles else list(DEFAULT_USER_ROLES),
            created_at=now,
            updated_at=now,
        )

    @property
    def default_tenant_id(self) -> Optional[str]:
        return next((t.tenant_id for t in self.tenants if t.default), None)

    def has_tenant(self, tenant_id: str) -> bool:
        return any(t.tenant_id == tenant_id for t in self.tenants)


@dataclass
class TenantMember:
    user_id: str
    role: TenantRole = TenantRole.VIEWER


@dataclass
class TenantJoinRequest:
    user_id: str
    requested_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Tenant:
    id: str
    name: str
    created_by: str
    updated_by: str
    members: List[TenantMember] = field(default_factory=list)
    join_requests: List[TenantJoinRequest] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, name: str, owner_id: str) -> "Tenant":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            created_by=owner_id,
            updated_by=owner_id,
            members=[TenantMember(user_id=owner_id, role=TenantRole.OWNER)],
            created_at=now,
            updated_at=now,
        )

    def role_of(self, user_id: str) -> Optional[TenantRole]:
        for member in self.members:
            if member.user_id == user_id:
                return member.role
        return None

    def is_member(self, user_id: str) -> bool:
        return self.role_of(user_id) is not None

    def has_join_request(self, user_id: str) -> bool:
        return any(r.user_id == user_id for r in self.join_requests)
