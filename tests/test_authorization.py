"""
Tests for the RBAC model, the in-memory policy engine and AuthorizationSync.

Verifies that:
- Default roles carry the documented permissions
- Denials override grants, and grants override roles
- Role and relation changes are idempotent
- Scopes are validated against the acted-on organization
- Every change lands in the audit trail
"""

from datetime import timedelta

import pytest

from tenancy.organizations import (
    AuthorizationSync,
    ForbiddenError,
    InMemoryAuthorizationClient,
    PermissionDeniedError,
    build_permission_map,
)
from tenancy.organizations.rbac import DEFAULT_PERMISSION_MAP, Permission, get_role_permissions
from tenancy.storage import InMemoryDocumentStore, Repositories
from tenancy.types import AuditLogQuery, Scope, utc_now


ORG = Scope.organization("org1")


class TestRolePermissions:
    """Tests for default role definitions."""

    def test_owner_has_every_permission(self):
        """Test the owner role holds all permissions."""
        assert get_role_permissions("owner") == frozenset(p.value for p in Permission)

    def test_admin_cannot_delete_or_change_roles(self):
        """Test admin lacks deletion, role changes and overrides."""
        admin = get_role_permissions("admin")
        assert "organizations:update" in admin
        assert "teams:addMember" in admin
        assert "organizations:delete" not in admin
        assert "members:updateRole" not in admin
        assert "permissions:grant" not in admin

    def test_member_is_read_only(self):
        """Test member only lists."""
        assert get_role_permissions("member") == frozenset({
            "organizations:read", "members:list", "teams:list", "invitations:list",
        })

    def test_unknown_role_has_nothing(self):
        """Test unknown roles grant nothing."""
        assert get_role_permissions("ghost") == frozenset()


class TestPermissionMap:
    """Tests for the operation permission map."""

    def test_defaults(self):
        """Test the default map is used without overrides."""
        assert build_permission_map() == DEFAULT_PERMISSION_MAP
        assert DEFAULT_PERMISSION_MAP["suspend_member"] == "members:remove"

    def test_override_and_skip(self):
        """Test overrides replace entries and False disables a check."""
        permission_map = build_permission_map({"add_member": False, "create_team": "custom:perm"})

        assert permission_map["add_member"] is False
        assert permission_map["create_team"] == "custom:perm"

    def test_unknown_operation_rejected(self):
        """Test typos in operation names are caught."""
        with pytest.raises(ValueError):
            build_permission_map({"add_memebr": False})

    def test_true_rejected(self):
        """Test True is not a valid requirement."""
        with pytest.raises(ValueError):
            build_permission_map({"add_member": True})


class TestInMemoryAuthorizationClient:
    """Tests for policy evaluation."""

    @pytest.mark.asyncio
    async def test_role_grants_permission_in_scope_only(self):
        """Test roles apply only to the scope they were assigned in."""
        client = InMemoryAuthorizationClient()
        await client.assign_role("alice", "admin", ORG)

        assert await client.can("alice", "members:add", ORG)
        assert not await client.can("alice", "members:add", Scope.organization("org2"))

    @pytest.mark.asyncio
    async def test_deny_overrides_role(self):
        """Test an explicit denial beats a role."""
        client = InMemoryAuthorizationClient()
        await client.assign_role("alice", "owner", ORG)
        await client.deny_permission("alice", "members:add", ORG, reason="probation")

        result = await client.check("alice", "members:add", ORG)

        assert not result.allowed
        assert result.reason == "Explicitly denied"
        assert "members:add" not in await client.get_user_permissions("alice", ORG)

    @pytest.mark.asyncio
    async def test_grant_without_role(self):
        """Test a direct grant allows a permission no role provides."""
        client = InMemoryAuthorizationClient()
        await client.assign_role("bob", "member", ORG)
        await client.grant_permission("bob", "teams:create", ORG)

        assert await client.can("bob", "teams:create", ORG)
        assert "teams:create" in await client.get_user_permissions("bob", ORG)

    @pytest.mark.asyncio
    async def test_expired_overrides_and_roles_ignored(self):
        """Test expired grants and assignments no longer apply."""
        client = InMemoryAuthorizationClient()
        past = utc_now() - timedelta(minutes=1)
        await client.grant_permission("bob", "teams:create", ORG, expires_at=past)
        await client.assign_role("bob", "admin", ORG, expires_at=past)

        assert not await client.can("bob", "teams:create", ORG)
        assert await client.get_user_roles("bob", ORG) == []

    @pytest.mark.asyncio
    async def test_assign_and_revoke_are_idempotent(self):
        """Test repeating assign/revoke is harmless."""
        client = InMemoryAuthorizationClient()
        await client.assign_role("alice", "admin", ORG)
        await client.assign_role("alice", "admin", ORG)

        assert len(await client.get_user_roles("alice", ORG)) == 1
        assert await client.revoke_role("alice", "admin", ORG) is True
        assert await client.revoke_role("alice", "admin", ORG) is False

    @pytest.mark.asyncio
    async def test_relations(self):
        """Test relation add/remove."""
        client = InMemoryAuthorizationClient()
        await client.add_relation("alice", "member", "team", "t1")
        await client.add_relation("alice", "member", "team", "t1")

        assert await client.has_relation("alice", "member", "team", "t1")
        assert await client.remove_relation("alice", "member", "team", "t1")
        assert not await client.remove_relation("alice", "member", "team", "t1")

    @pytest.mark.asyncio
    async def test_require_raises_with_permission_name(self):
        """Test require raises a denial naming the permission."""
        client = InMemoryAuthorizationClient()

        with pytest.raises(PermissionDeniedError) as exc_info:
            await client.require("alice", "teams:delete", ORG)

        assert exc_info.value.message == "Permission denied: teams:delete is required"
        assert exc_info.value.required_permission == "teams:delete"
        assert exc_info.value.code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_changes_are_audited(self, authz_client, audit_service):
        """Test role and permission changes are recorded in the audit trail."""
        await authz_client.assign_role("alice", "admin", ORG, actor_id="root")
        await authz_client.grant_permission("alice", "teams:create", ORG, actor_id="root")

        entries = await authz_client.get_audit_log(AuditLogQuery(scope=ORG))

        actions = sorted(e.action for e in entries)
        assert actions == ["permission.grant", "role.assign"]
        assert all(e.actor_id == "root" for e in entries)


class TestAuthorizationSync:
    """Tests for the policy engine bridge."""

    @pytest.fixture
    def repos(self):
        return Repositories(InMemoryDocumentStore())

    @pytest.fixture
    def sync(self, repos, authz_client):
        return AuthorizationSync(authz_client, repos.teams)

    @pytest.mark.asyncio
    async def test_resolve_scope_defaults_to_organization(self, sync):
        """Test a missing scope resolves to the organization."""
        assert await sync.resolve_scope("org1") == ORG

    @pytest.mark.asyncio
    async def test_resolve_scope_rejects_other_organization(self, sync):
        """Test organization scopes must match the acted-on organization."""
        with pytest.raises(ForbiddenError) as exc_info:
            await sync.resolve_scope("org1", Scope.organization("org2"))

        assert exc_info.value.message == "Permission scope organization mismatch"

    @pytest.mark.asyncio
    async def test_resolve_scope_validates_team(self, sync, repos):
        """Test team scopes must name a team of the organization."""
        own = await repos.teams.insert({"organization_id": "org1", "name": "A", "slug": "a"})
        foreign = await repos.teams.insert({"organization_id": "org2", "name": "B", "slug": "b"})

        assert await sync.resolve_scope("org1", Scope.team(own)) == Scope.team(own)
        with pytest.raises(ForbiddenError) as exc_info:
            await sync.resolve_scope("org1", Scope.team(foreign))
        assert exc_info.value.message == "Permission scope team must belong to organization"

    @pytest.mark.asyncio
    async def test_team_relations(self, sync):
        """Test team membership is tracked as a member relation."""
        await sync.add_team_relation("bob", "t1")
        assert await sync.has_team_relation("bob", "t1")

        await sync.remove_team_relation("bob", "t1")
        assert not await sync.has_team_relation("bob", "t1")

    @pytest.mark.asyncio
    async def test_audit_log_is_scoped_to_organization(self, sync):
        """Test audit reads never return another organization's entries."""
        await sync.assign_role("alice", "admin", ORG)
        await sync.assign_role("alice", "admin", Scope.organization("org2"))

        entries = await sync.get_audit_log("org1")

        assert len(entries) == 1
        assert entries[0].scope == ORG

    @pytest.mark.asyncio
    async def test_audit_log_includes_organization_teams(self, sync, repos):
        """Test entries in the scope of the organization's teams are part of its trail."""
        own = await repos.teams.insert({"organization_id": "org1", "name": "A", "slug": "a"})
        foreign = await repos.teams.insert({"organization_id": "org2", "name": "B", "slug": "b"})
        await sync.assign_role("alice", "admin", ORG)
        await sync.assign_role("bob", "admin", Scope.team(own))
        await sync.assign_role("carol", "admin", Scope.team(foreign))

        entries = await sync.get_audit_log("org1")

        assert sorted(e.user_id for e in entries) == ["alice", "bob"]
        assert len(await sync.get_audit_log("org1", limit=1, offset=1)) == 1


class TestAuditService:
    """Tests for the audit trail."""

    @pytest.mark.asyncio
    async def test_sensitive_fields_redacted(self, audit_service):
        """Test secrets never reach stored values and long strings are truncated."""
        await audit_service.log(
            action="organization.update",
            resource_type="organization",
            actor_id="alice",
            scope=ORG,
            new_values={"api_key": "sk-123", "settings": {"webhook_secret": "s"}, "bio": "x" * 20000},
        )

        entries, total = await audit_service.query(AuditLogQuery(scope=ORG))

        assert total == 1
        values = entries[0].new_values
        assert values["api_key"] == "[REDACTED]"
        assert values["settings"]["webhook_secret"] == "[REDACTED]"
        assert values["bio"].endswith("...[truncated]")

    @pytest.mark.asyncio
    async def test_organization_activity_window(self, audit_service):
        """Test activity only includes recent entries of the organization."""
        await audit_service.log(action="role.assign", resource_type="role", scope=ORG)
        await audit_service.log(action="role.assign", resource_type="role", scope=Scope.organization("org2"))

        activity = await audit_service.get_organization_activity("org1", days=1)

        assert len(activity) == 1
        assert activity[0].scope == ORG

    @pytest.mark.asyncio
    async def test_log_never_raises(self, audit_service, monkeypatch):
        """Test storage failures are swallowed and reported as None."""
        async def broken_insert(fields):
            raise ConnectionError("store down")

        monkeypatch.setattr(audit_service.repository, "insert", broken_insert)

        assert await audit_service.log(action="role.assign", resource_type="role", scope=ORG) is None
