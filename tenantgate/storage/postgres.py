from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        refresh_token_hash TEXT,
        roles JSONB NOT NULL DEFAULT '["USER"]'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        tenants JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_by TEXT NOT NULL,
        updated_by TEXT NOT NULL,
        members JSONB NOT NULL DEFAULT '[]'::jsonb,
        join_requests JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_PUBLIC_USER_COLUMNS = "id, email, roles, is_active, tenants, created_at, updated_at"


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresStore:
    """Postgres-backed document store.

    Users and tenants are one row each; embedded lists (tenant memberships,
    join requests, a user's tenant list) are JSONB columns mutated with
    single ``UPDATE`` statements so concurrent writers never lose entries.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    def _user_from_row(self, row: dict, include_credentials: bool = False) -> User:
        user = User(
            id=str(row["id"]),
            email=row["email"],
            roles=list(_json(row.get("roles")) or []),
            is_active=row.get("is_active", True),
            tenants=[
                UserTenant(tenant_id=t["tenant_id"], default=bool(t.get("default")))
                for t in _json(row.get("tenants")) or []
            ],
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )
        if include_credentials:
            user.password_hash = row.get("password_hash")
            user.refresh_token_hash = row.get("refresh_token_hash")
        return user

    def _tenant_from_row(self, row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            members=[
                TenantMember(user_id=m["user_id"], role=TenantRole(m["role"]))
                for m in _json(row.get("members")) or []
            ],
            join_requests=[
                TenantJoinRequest(
                    user_id=r["user_id"],
                    requested_at=datetime.fromisoformat(r["requested_at"]),
                )
                for r in _json(row.get("join_requests")) or []
            ],
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    def _user_columns(self, include_credentials: bool) -> str:
        if include_credentials:
            return _PUBLIC_USER_COLUMNS + ", password_hash, refresh_token_hash"
        return _PUBLIC_USER_COLUMNS

    # users
    def create_user(
        self, email: str, password_hash: str, *, roles: Optional[List[str]] = None
    ) -> User:
        user = User.new(email, roles=roles)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, roles, is_active, tenants, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, '[]'::jsonb, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        password_hash,
                        json.dumps(user.roles),
                        user.is_active,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, field="email"
            )
        return user

    def get_user(
        self, user_id: str, *, include_credentials: bool = False
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._user_columns(include_credentials)} FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row, include_credentials)

    def get_user_by_email(
        self, email: str, *, include_credentials: bool = False
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._user_columns(include_credentials)} FROM app_user WHERE email = %s",
                (email,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row, include_credentials)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_PUBLIC_USER_COLUMNS} FROM app_user ORDER BY created_at"
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def _update_user_returning(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                sql + f" RETURNING {_PUBLIC_USER_COLUMNS}", params
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user_returning(
            "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s",
            (is_active, user_id),
        )

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        return self._update_user_returning(
            "UPDATE app_user SET roles = %s, updated_at = now() WHERE id = %s",
            (json.dumps(list(dict.fromkeys(roles))), user_id),
        )

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise KeyError(user_id)

    # refresh tokens
    def set_refresh_token_hash(self, user_id: str, token_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET refresh_token_hash = %s WHERE id = %s",
                (token_hash, user_id),
            )
            if cur.rowcount == 0:
                raise KeyError(user_id)

    def clear_refresh_token_hash(self, user_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET refresh_token_hash = NULL WHERE id = %s",
                (user_id,),
            )
            if cur.rowcount == 0:
                raise KeyError(user_id)

    def swap_refresh_token_hash(
        self, user_id: str, expected: Optional[str], new: str
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET refresh_token_hash = %s
                WHERE id = %s AND refresh_token_hash IS NOT DISTINCT FROM %s
                """,
                (new, user_id, expected),
            )
            return cur.rowcount == 1

    # user tenant list
    def add_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        entry = json.dumps([{"tenant_id": tenant_id}])
        return self._update_user_returning(
            """
            UPDATE app_user SET
                tenants = CASE
                    WHEN tenants @> %s::jsonb THEN tenants
                    ELSE tenants || jsonb_build_array(jsonb_build_object(
                        'tenant_id', %s::text, 'default', jsonb_array_length(tenants) = 0))
                END,
                updated_at = now()
            WHERE id = %s
            """,
            (entry, tenant_id, user_id),
        )

    def remove_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        user = self._update_user_returning(
            """
            UPDATE app_user SET
                tenants = COALESCE(
                    (SELECT jsonb_agg(t) FROM jsonb_array_elements(tenants) t
                     WHERE t->>'tenant_id' <> %s),
                    '[]'::jsonb),
                updated_at = now()
            WHERE id = %s
            """,
            (tenant_id, user_id),
        )
        if user and user.tenants and user.default_tenant_id is None:
            return self.set_default_tenant(user_id, user.tenants[0].tenant_id)
        return user

    def set_default_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        entry = json.dumps([{"tenant_id": tenant_id}])
        return self._update_user_returning(
            """
            UPDATE app_user SET
                tenants = (SELECT jsonb_agg(jsonb_set(t, '{default}', to_jsonb(t->>'tenant_id' = %s)))
                           FROM jsonb_array_elements(tenants) t),
                updated_at = now()
            WHERE id = %s AND tenants @> %s::jsonb
            """,
            (tenant_id, user_id, entry),
        )

    # tenants
    def create_tenant(self, name: str, owner_id: str) -> Tenant:
        tenant = Tenant.new(name, owner_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant (id, name, created_by, updated_by, members, join_requests, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, '[]'::jsonb, %s, %s)
                    """,
                    (
                        tenant.id,
                        name,
                        owner_id,
                        owner_id,
                        json.dumps(
                            [{"user_id": owner_id, "role": TenantRole.OWNER.value}]
                        ),
                        tenant.created_at,
                        tenant.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "tenant name already exists", {"field": "name"}, field="name"
            )
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self) -> List[Tenant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tenant ORDER BY created_at").fetchall()
        return [self._tenant_from_row(row) for row in rows]

    def _update_tenant_returning(self, sql: str, params: tuple) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(sql + " RETURNING *", params).fetchone()
        return self._tenant_from_row(row) if row else None

    def update_tenant_name(
        self, tenant_id: str, name: str, updated_by: str
    ) -> Optional[Tenant]:
        try:
            return self._update_tenant_returning(
                "UPDATE tenant SET name = %s, updated_by = %s, updated_at = now() WHERE id = %s",
                (name, updated_by, tenant_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "tenant name already exists", {"field": "name"}, field="name"
            )

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM tenant WHERE id = %s", (tenant_id,))
            return cur.rowcount > 0

    def add_tenant_member(
        self, tenant_id: str, member: TenantMember
    ) -> Optional[Tenant]:
        probe = json.dumps([{"user_id": member.user_id}])
        entry = json.dumps(
            [{"user_id": member.user_id, "role": TenantRole(member.role).value}]
        )
        tenant = self._update_tenant_returning(
            """
            UPDATE tenant SET members = members || %s::jsonb, updated_at = now()
            WHERE id = %s AND NOT members @> %s::jsonb
            """,
            (entry, tenant_id, probe),
        )
        if tenant is None and self.get_tenant(tenant_id) is not None:
            raise ConstraintViolation(
                "user is already a member", {"user_id": member.user_id}
            )
        return tenant

    def remove_tenant_member(self, tenant_id: str, user_id: str) -> Optional[Tenant]:
        return self._update_tenant_returning(
            """
            UPDATE tenant SET
                members = COALESCE(
                    (SELECT jsonb_agg(m) FROM jsonb_array_elements(members) m
                     WHERE m->>'user_id' <> %s),
                    '[]'::jsonb),
                updated_at = now()
            WHERE id = %s
            """,
            (user_id, tenant_id),
        )

    def add_join_request(
        self, tenant_id: str, request: TenantJoinRequest
    ) -> Optional[Tenant]:
        probe = json.dumps([{"user_id": request.user_id}])
        entry = json.dumps(
            [
                {
                    "user_id": request.user_id,
                    "requested_at": request.requested_at.isoformat(),
                }
            ]
        )
        tenant = self._update_tenant_returning(
            """
            UPDATE tenant SET join_requests = join_requests || %s::jsonb
            WHERE id = %s AND NOT join_requests @> %s::jsonb
            """,
            (entry, tenant_id, probe),
        )
        if tenant is None and self.get_tenant(tenant_id) is not None:
            raise ConstraintViolation(
                "join request already pending", {"user_id": request.user_id}
            )
        return tenant

    def remove_join_request(self, tenant_id: str, user_id: str) -> Optional[Tenant]:
        return self._update_tenant_returning(
            """
            UPDATE tenant SET join_requests = COALESCE(
                (SELECT jsonb_agg(r) FROM jsonb_array_elements(join_requests) r
                 WHERE r->>'user_id' <> %s),
                '[]'::jsonb)
            WHERE id = %s
            """,
            (user_id, tenant_id),
        )
