from __future__ import annotations

import copy
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    Tenant,
    TenantJoinRequest,
    TenantMember,
    TenantRole,
    User,
    UserTenant,
)


class MemoryStore:
    """In-process document store used for tests and single-node development.

    Credentials live beside the user documents rather than on them, so every
    read hands back a sanitized ``User`` unless ``include_credentials`` is set.
    When ``state_path`` is given the whole store is snapshotted to JSON after
    each write and reloaded on start.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.password_hashes: Dict[str, str] = {}
        self.refresh_token_hashes: Dict[str, Optional[str]] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _public_user(self, user: User, include_credentials: bool = False) -> User:
        snapshot = copy.deepcopy(user)
        if include_credentials:
            return replace(
                snapshot,
                password_hash=self.password_hashes.get(user.id),
                refresh_token_hash=self.refresh_token_hashes.get(user.id),
            )
        return snapshot

    def _touch(self, user: User) -> None:
        user.updated_at = datetime.utcnow()

    # users
    def create_user(
        self, email: str, password_hash: str, *, roles: Optional[List[str]] = None
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, field="email"
                )
            user = User.new(email, roles=roles)
            self.users[user.id] = user
            self.password_hashes[user.id] = password_hash
            self.refresh_token_hashes[user.id] = None
            self._persist_state()
            return self._public_user(user)

    def get_user(
        self, user_id: str, *, include_credentials: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return self._public_user(user, include_credentials)

    def get_user_by_email(
        self, email: str, *, include_credentials: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                return None
            return self._public_user(user, include_credentials)

    def list_users(self) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._public_user(u) for u in ordered]

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._touch(user)
            self._persist_state()
            return self._public_user(user)

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(dict.fromkeys(roles))
            self._touch(user)
            self._persist_state()
            return self._public_user(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise KeyError(user_id)
            self.password_hashes[user_id] = password_hash
            self._persist_state()

    # refresh tokens
    def set_refresh_token_hash(self, user_id: str, token_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise KeyError(user_id)
            self.refresh_token_hashes[user_id] = token_hash
            self._persist_state()

    def clear_refresh_token_hash(self, user_id: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise KeyError(user_id)
            self.refresh_token_hashes[user_id] = None
            self._persist_state()

    def swap_refresh_token_hash(
        self, user_id: str, expected: Optional[str], new: str
    ) -> bool:
        """Replace the stored hash only if it still equals ``expected``."""
        with self._data_lock:
            if user_id not in self.users:
                return False
            if self.refresh_token_hashes.get(user_id) != expected:
                return False
            self.refresh_token_hashes[user_id] = new
            self._persist_state()
            return True

    # user tenant list
    def add_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.has_tenant(tenant_id):
                user.tenants.append(
                    UserTenant(tenant_id=tenant_id, default=not user.tenants)
                )
                self._touch(user)
                self._persist_state()
            return self._public_user(user)

    def remove_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            remaining = [t for t in user.tenants if t.tenant_id != tenant_id]
            if len(remaining) != len(user.tenants):
                if remaining and not any(t.default for t in remaining):
                    remaining[0].default = True
                user.tenants = remaining
                self._touch(user)
                self._persist_state()
            return self._public_user(user)

    def set_default_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.has_tenant(tenant_id):
                return None
            for entry in user.tenants:
                entry.default = entry.tenant_id == tenant_id
            self._touch(user)
            self._persist_state()
            return self._public_user(user)

    # tenants
    def create_tenant(self, name: str, owner_id: str) -> Tenant:
        with self._data_lock:
            if any(t.name == name for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant name already exists", {"field": "name"}, field="name"
                )
            tenant = Tenant.new(name, owner_id)
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return copy.deepcopy(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return copy.deepcopy(tenant) if tenant else None

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            ordered = sorted(self.tenants.values(), key=lambda t: t.created_at)
            return copy.deepcopy(ordered)

    def update_tenant_name(
        self, tenant_id: str, name: str, updated_by: str
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            if any(t.name == name and t.id != tenant_id for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant name already exists", {"field": "name"}, field="name"
                )
            tenant.name = name
            tenant.updated_by = updated_by
            tenant.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(tenant)

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._data_lock:
            removed = self.tenants.pop(tenant_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def add_tenant_member(
        self, tenant_id: str, member: TenantMember
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            if tenant.is_member(member.user_id):
                raise ConstraintViolation(
                    "user is already a member", {"user_id": member.user_id}
                )
            tenant.members.append(TenantMember(member.user_id, TenantRole(member.role)))
            tenant.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(tenant)

    def remove_tenant_member(self, tenant_id: str, user_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.members = [m for m in tenant.members if m.user_id != user_id]
            tenant.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.deepcopy(tenant)

    def add_join_request(
        self, tenant_id: str, request: TenantJoinRequest
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            if tenant.has_join_request(request.user_id):
                raise ConstraintViolation(
                    "join request already pending", {"user_id": request.user_id}
                )
            tenant.join_requests.append(copy.deepcopy(request))
            self._persist_state()
            return copy.deepcopy(tenant)

    def remove_join_request(self, tenant_id: str, user_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.join_requests = [
                r for r in tenant.join_requests if r.user_id != user_id
            ]
            self._persist_state()
            return copy.deepcopy(tenant)

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": self.password_hashes.get(user_id),
                    "refresh_token_hash": self.refresh_token_hashes.get(user_id),
                }
                for user_id in self.users
            ],
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
        }
        try:
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        assert self.state_path is not None
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.password_hashes = {}
        self.refresh_token_hashes = {}
        for entry in data.get("credentials", []):
            self.password_hashes[entry["user_id"]] = entry.get("password_hash")
            self.refresh_token_hashes[entry["user_id"]] = entry.get("refresh_token_hash")
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), tenants=len(self.tenants)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "roles": list(user.roles),
            "is_active": user.is_active,
            "tenants": [
                {"tenant_id": t.tenant_id, "default": t.default} for t in user.tenants
            ],
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            roles=list(data.get("roles") or []),
            is_active=data.get("is_active", True),
            tenants=[
                UserTenant(tenant_id=t["tenant_id"], default=bool(t.get("default")))
                for t in data.get("tenants", [])
            ],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "created_by": tenant.created_by,
            "updated_by": tenant.updated_by,
            "members": [
                {"user_id": m.user_id, "role": TenantRole(m.role).value}
                for m in tenant.members
            ],
            "join_requests": [
                {
                    "user_id": r.user_id,
                    "requested_at": self._serialize_datetime(r.requested_at),
                }
                for r in tenant.join_requests
            ],
            "created_at": self._serialize_datetime(tenant.created_at),
            "updated_at": self._serialize_datetime(tenant.updated_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            name=data["name"],
            created_by=data["created_by"],
            updated_by=data.get("updated_by") or data["created_by"],
            members=[
                TenantMember(user_id=m["user_id"], role=TenantRole(m["role"]))
                for m in data.get("members", [])
            ],
            join_requests=[
                TenantJoinRequest(
                    user_id=r["user_id"],
                    requested_at=self._deserialize_datetime(r["requested_at"]),
                )
                for r in data.get("join_requests", [])
            ],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )
