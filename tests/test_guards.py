import pytest

from tenantgate.service.auth import AuthenticatedIdentity
from tenantgate.service.errors import ForbiddenError
from tenantgate.service.guards import (
    PERMISSION_DENIED,
    RoutePolicy,
    authorize,
    check_roles,
    check_tenant_roles,
    is_privileged,
    resolve_tenant_id,
)
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import TenantMember, TenantRole


def _identity(user_id="u-1", roles=("USER",)):
    return AuthenticatedIdentity(user_id=user_id, email=f"{user_id}@example.com", roles=roles)


@pytest.fixture
def tenant_store():
    return MemoryStore()


@pytest.fixture
def acme(tenant_store):
    tenant = tenant_store.create_tenant("acme", "owner-1")
    tenant_store.add_tenant_member(tenant.id, TenantMember("editor-1", TenantRole.EDITOR))
    tenant_store.add_tenant_member(tenant.id, TenantMember("viewer-1", TenantRole.VIEWER))
    return tenant


class TestRoleCheck:
    def test_no_requirement_passes_anyone(self):
        check_roles([], None)
        check_roles(None, _identity())

    def test_matching_role_passes(self):
        check_roles(["USER", "SUPPORT"], _identity(roles=("SUPPORT",)))

    def test_missing_role_is_forbidden(self):
        with pytest.raises(ForbiddenError) as excinfo:
            check_roles(["SUPPORT"], _identity(roles=("USER",)))
        assert excinfo.value.message == PERMISSION_DENIED
        assert excinfo.value.status_code == 403

    def test_admin_bypasses_any_role_requirement(self):
        check_roles(["SOMETHING_ELSE"], _identity(roles=("ADMIN",)))

    def test_missing_identity_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            check_roles(["USER"], None)

    def test_non_string_roles_are_ignored(self):
        identity = AuthenticatedIdentity(user_id="u", email="u@x", roles=(1, None))
        with pytest.raises(ForbiddenError):
            check_roles(["USER"], identity)

    def test_is_privileged(self):
        assert is_privileged(_identity(roles=("USER", "ADMIN")))
        assert not is_privileged(_identity())
        assert not is_privileged(None)


class TestTenantRoleCheck:
    def test_member_with_required_role_passes(self, tenant_store, acme):
        check_tenant_roles(
            [TenantRole.OWNER, TenantRole.EDITOR],
            _identity("editor-1"),
            acme.id,
            tenant_store,
        )

    def test_member_without_required_role_is_forbidden(self, tenant_store, acme):
        with pytest.raises(ForbiddenError):
            check_tenant_roles(
                [TenantRole.OWNER], _identity("viewer-1"), acme.id, tenant_store
            )

    def test_non_member_is_forbidden(self, tenant_store, acme):
        with pytest.raises(ForbiddenError):
            check_tenant_roles(
                [TenantRole.VIEWER], _identity("stranger"), acme.id, tenant_store
            )

    def test_global_admin_gets_no_tenant_bypass(self, tenant_store, acme):
        with pytest.raises(ForbiddenError):
            check_tenant_roles(
                [TenantRole.VIEWER],
                _identity("root", roles=("ADMIN",)),
                acme.id,
                tenant_store,
            )

    def test_missing_tenant_id_is_forbidden(self, tenant_store, acme):
        with pytest.raises(ForbiddenError):
            check_tenant_roles([TenantRole.OWNER], _identity("owner-1"), None, tenant_store)

    def test_unknown_tenant_is_forbidden(self, tenant_store, acme):
        with pytest.raises(ForbiddenError):
            check_tenant_roles([TenantRole.OWNER], _identity("owner-1"), "nope", tenant_store)

    def test_string_roles_are_accepted(self, tenant_store, acme):
        check_tenant_roles(["OWNER"], _identity("owner-1"), acme.id, tenant_store)


class TestAuthorize:
    def test_both_checks_must_pass(self, tenant_store, acme):
        policy = RoutePolicy.of(roles=["USER"], tenant_roles=[TenantRole.OWNER])

        authorize(policy, _identity("owner-1"), tenant_id=acme.id, tenants=tenant_store)
        with pytest.raises(ForbiddenError):
            authorize(
                policy,
                _identity("owner-1", roles=("GUEST",)),
                tenant_id=acme.id,
                tenants=tenant_store,
            )

    def test_admin_passes_role_check_but_not_tenant_check(self, tenant_store, acme):
        policy = RoutePolicy.of(roles=["SUPPORT"], tenant_roles=[TenantRole.VIEWER])

        with pytest.raises(ForbiddenError):
            authorize(
                policy,
                _identity("root", roles=("ADMIN",)),
                tenant_id=acme.id,
                tenants=tenant_store,
            )

    def test_empty_policy_allows(self):
        authorize(RoutePolicy(), _identity())

    def test_tenant_policy_without_lookup_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            authorize(RoutePolicy.of(tenant_roles=["OWNER"]), _identity(), tenant_id="t")


@pytest.mark.parametrize(
    "path_value,header_value,expected",
    [
        ("t-path", "t-header", "t-path"),
        (None, "t-header", "t-header"),
        ("", "t-header", "t-header"),
        (None, None, None),
        (None, "", None),
    ],
)
def test_resolve_tenant_id_prefers_path(path_value, header_value, expected):
    assert resolve_tenant_id(path_value, header_value) == expected
