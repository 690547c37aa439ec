import pytest

from tenantgate.service.auth import AuthenticatedIdentity
from tenantgate.service.errors import ConflictError, NotFoundError, ValidationError
from tenantgate.service.tenants import TenantService
from tenantgate.service.users import UserService
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import TenantRole


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenants(store):
    return TenantService(store, UserService(store))


@pytest.fixture
def owner(store):
    user = store.create_user("owner@example.com", "hash")
    return AuthenticatedIdentity(user_id=user.id, email=user.email, roles=("USER",))


@pytest.fixture
def guest(store):
    return store.create_user("guest@example.com", "hash")


@pytest.fixture
def acme(tenants, owner):
    return tenants.create_tenant(owner, "acme")


def test_create_tenant_makes_creator_owner(store, acme, owner):
    assert acme.role_of(owner.user_id) == TenantRole.OWNER
    assert acme.created_by == owner.user_id
    user = store.get_user(owner.user_id)
    assert user.default_tenant_id == acme.id


def test_duplicate_tenant_name_conflicts(tenants, owner, acme):
    with pytest.raises(ConflictError):
        tenants.create_tenant(owner, "acme")


def test_get_unknown_tenant(tenants):
    with pytest.raises(NotFoundError) as excinfo:
        tenants.get_tenant("missing")
    assert excinfo.value.message == "Tenant not found"


def test_update_tenant_records_editor(tenants, owner, acme):
    updated = tenants.update_tenant(acme.id, "acme-renamed", owner)

    assert updated.name == "acme-renamed"
    assert updated.updated_by == owner.user_id


def test_update_unknown_tenant(tenants, owner):
    with pytest.raises(NotFoundError):
        tenants.update_tenant("missing", "x", owner)


def test_add_member_updates_both_sides(store, tenants, owner, acme, guest):
    tenant = tenants.add_member(acme.id, guest.id, TenantRole.EDITOR, owner)

    assert tenant.role_of(guest.id) == TenantRole.EDITOR
    assert store.get_user(guest.id).has_tenant(acme.id)


def test_cannot_add_self(tenants, owner, acme):
    with pytest.raises(ValidationError) as excinfo:
        tenants.add_member(acme.id, owner.user_id, TenantRole.ADMIN, owner)
    assert excinfo.value.message == "You cannot add yourself to the tenant"


def test_add_existing_member_conflicts(tenants, owner, acme, guest):
    tenants.add_member(acme.id, guest.id, TenantRole.VIEWER, owner)

    with pytest.raises(ConflictError):
        tenants.add_member(acme.id, guest.id, TenantRole.EDITOR, owner)


def test_add_unknown_user_is_not_found(tenants, owner, acme):
    with pytest.raises(NotFoundError):
        tenants.add_member(acme.id, "ghost", TenantRole.VIEWER, owner)


def test_remove_member(store, tenants, owner, acme, guest):
    tenants.add_member(acme.id, guest.id, TenantRole.VIEWER, owner)

    tenant = tenants.remove_member(acme.id, guest.id, owner)

    assert not tenant.is_member(guest.id)
    assert not store.get_user(guest.id).has_tenant(acme.id)


def test_cannot_remove_self(tenants, owner, acme):
    with pytest.raises(ValidationError) as excinfo:
        tenants.remove_member(acme.id, owner.user_id, owner)
    assert excinfo.value.message == "You cannot remove yourself from the tenant"


def test_remove_non_member_is_not_found(tenants, owner, acme, guest):
    with pytest.raises(NotFoundError) as excinfo:
        tenants.remove_member(acme.id, guest.id, owner)
    assert excinfo.value.message == "Member not found"


def test_join_request_flow_approved(store, tenants, acme, guest):
    pending = tenants.request_to_join(guest.id, acme.id)
    assert pending.has_join_request(guest.id)

    tenant = tenants.respond_to_join_request(acme.id, guest.id, approve=True)

    assert tenant.role_of(guest.id) == TenantRole.VIEWER
    assert not tenant.has_join_request(guest.id)
    assert store.get_user(guest.id).default_tenant_id == acme.id


def test_join_request_rejected(store, tenants, acme, guest):
    tenants.request_to_join(guest.id, acme.id)

    tenant = tenants.respond_to_join_request(acme.id, guest.id, approve=False)

    assert not tenant.is_member(guest.id)
    assert tenant.join_requests == []
    assert store.get_user(guest.id).tenants == []


def test_duplicate_join_request(tenants, acme, guest):
    tenants.request_to_join(guest.id, acme.id)

    with pytest.raises(ValidationError) as excinfo:
        tenants.request_to_join(guest.id, acme.id)
    assert excinfo.value.message == "You have already requested to join this tenant"


def test_member_cannot_request_to_join(tenants, owner, acme):
    with pytest.raises(ValidationError) as excinfo:
        tenants.request_to_join(owner.user_id, acme.id)
    assert excinfo.value.message == "You are already a member of this tenant"


def test_join_request_for_unknown_tenant(tenants, guest):
    with pytest.raises(NotFoundError):
        tenants.request_to_join(guest.id, "missing")


def test_respond_without_request_is_not_found(tenants, acme, guest):
    with pytest.raises(NotFoundError) as excinfo:
        tenants.respond_to_join_request(acme.id, guest.id, approve=True)
    assert excinfo.value.message == "Join request not found"


def test_delete_tenant_detaches_members(store, tenants, owner, acme, guest):
    tenants.add_member(acme.id, guest.id, TenantRole.VIEWER, owner)

    tenants.delete_tenant(acme.id)

    assert store.get_tenant(acme.id) is None
    assert store.get_user(owner.user_id).tenants == []
    assert store.get_user(guest.id).tenants == []


def test_delete_unknown_tenant(tenants):
    with pytest.raises(NotFoundError):
        tenants.delete_tenant("missing")


def test_leave_tenant_drops_membership_and_list_entry(store, tenants, owner, acme):
    second = tenants.create_tenant(owner, "globex")

    user = tenants.leave_tenant(owner, acme.id)

    assert [t.tenant_id for t in user.tenants] == [second.id]
    assert user.default_tenant_id == second.id
    assert not store.get_tenant(acme.id).is_member(owner.user_id)


def test_leave_last_tenant_changes_nothing(store, tenants, owner, acme):
    with pytest.raises(ValidationError):
        tenants.leave_tenant(owner, acme.id)

    assert store.get_tenant(acme.id).role_of(owner.user_id) == TenantRole.OWNER
    assert store.get_user(owner.user_id).has_tenant(acme.id)
