"""
Tests for the team hierarchy and team membership.

Verifies that:
- Team slugs are unique within an organization
- Parents must exist in the same organization
- Re-parenting never creates a cycle
- Deleting a team moves its children to its own parent
- Team membership requires organization membership and mirrors a relation
"""

import pytest

from conftest import as_user
from tenancy.organizations import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    UnauthorizedForScopeError,
)
from tenancy.types import OrganizationCreate, TeamCreate, TeamUpdate


async def make_chain(tenants, org_id, *names):
    """Create nested teams, each the child of the previous one."""
    ids = []
    parent = None
    for name in names:
        parent = await tenants.create_team(as_user("alice"), org_id, TeamCreate(name=name, parent_team_id=parent))
        ids.append(parent)
    return ids


class TestCreateTeam:
    """Tests for team creation."""

    @pytest.mark.asyncio
    async def test_slugs_unique_per_organization(self, tenants, acme):
        """Test colliding names are suffixed inside one organization only."""
        other = await tenants.create_organization(as_user("alice"), OrganizationCreate(name="Globex"))

        first = await tenants.create_team(as_user("alice"), acme, TeamCreate(name="Engineering"))
        second = await tenants.create_team(as_user("alice"), acme, TeamCreate(name="engineering"))
        elsewhere = await tenants.create_team(as_user("alice"), other, TeamCreate(name="Engineering"))

        assert (await tenants.get_team(as_user("alice"), first)).slug == "engineering"
        assert (await tenants.get_team(as_user("alice"), second)).slug == "engineering-1"
        assert (await tenants.get_team(as_user("alice"), elsewhere)).slug == "engineering"

    @pytest.mark.asyncio
    async def test_missing_parent(self, tenants, acme):
        """Test a parent must exist."""
        with pytest.raises(NotFoundError) as exc_info:
            await tenants.create_team(as_user("alice"), acme, TeamCreate(name="Core", parent_team_id="nope"))

        assert exc_info.value.message == "Parent team not found"

    @pytest.mark.asyncio
    async def test_foreign_parent(self, tenants, acme):
        """Test a parent must belong to the same organization."""
        other = await tenants.create_organization(as_user("alice"), OrganizationCreate(name="Globex"))
        foreign = await tenants.create_team(as_user("alice"), other, TeamCreate(name="Ops"))

        with pytest.raises(ForbiddenError) as exc_info:
            await tenants.create_team(as_user("alice"), acme, TeamCreate(name="Core", parent_team_id=foreign))

        assert exc_info.value.message == "Parent team must belong to the same organization"

    @pytest.mark.asyncio
    async def test_team_limit(self, make_tenants, tenancy_settings):
        """Test the configured team limit."""
        tenancy_settings.max_teams = 1
        tenants = make_tenants()
        org_id = await tenants.create_organization(as_user("alice"), OrganizationCreate(name="Acme"))
        await tenants.create_team(as_user("alice"), org_id, TeamCreate(name="One"))

        with pytest.raises(LimitExceededError) as exc_info:
            await tenants.create_team(as_user("alice"), org_id, TeamCreate(name="Two"))

        assert exc_info.value.limit == 1

    @pytest.mark.asyncio
    async def test_plain_member_cannot_create(self, tenants, acme):
        """Test teams:create is required."""
        await tenants.add_member(as_user("alice"), acme, "bob", "member")

        with pytest.raises(ForbiddenError):
            await tenants.create_team(as_user("bob"), acme, TeamCreate(name="Core"))


class TestReadTeams:
    """Tests for team listings."""

    @pytest.mark.asyncio
    async def test_list_filters(self, tenants, acme):
        """Test all, root-only and children listings."""
        eng, core = await make_chain(tenants, acme, "Eng", "Core")
        sales = await tenants.create_team(as_user("alice"), acme, TeamCreate(name="Sales"))

        everything = await tenants.list_teams(as_user("alice"), acme)
        roots = await tenants.list_teams(as_user("alice"), acme, parent_team_id=None)
        children = await tenants.list_teams(as_user("alice"), acme, parent_team_id=eng)

        assert {t.id for t in everything} == {eng, core, sales}
        assert {t.id for t in roots} == {eng, sales}
        assert [t.id for t in children] == [core]
        assert await tenants.count_teams(as_user("alice"), acme) == 3

    @pytest.mark.asyncio
    async def test_tree(self, tenants, acme):
        """Test the forest nests children under their parents."""
        eng, core, infra = await make_chain(tenants, acme, "Eng", "Core", "Infra")

        tree = await tenants.list_teams_as_tree(as_user("alice"), acme)

        assert len(tree) == 1
        assert tree[0].team.id == eng
        assert tree[0].children[0].team.id == core
        assert tree[0].children[0].children[0].team.id == infra

    @pytest.mark.asyncio
    async def test_paginated(self, tenants, acme):
        """Test team pages report the total."""
        for name in ["A", "B", "C"]:
            await tenants.create_team(as_user("alice"), acme, TeamCreate(name=name))

        page = await tenants.list_teams_paginated(as_user("alice"), acme, offset=0, limit=2)

        assert len(page.items) == 2
        assert page.total == 3
        assert page.has_more

    @pytest.mark.asyncio
    async def test_missing_team_is_none(self, tenants, acme):
        """Test reading an unknown team yields None."""
        assert await tenants.get_team(as_user("alice"), "missing") is None

    @pytest.mark.asyncio
    async def test_non_member_cannot_read(self, tenants, acme):
        """Test teams are only visible to organization members."""
        team_id = await tenants.create_team(as_user("alice"), acme, TeamCreate(name="Eng"))

        with pytest.raises(UnauthorizedForScopeError):
            await tenants.get_team(as_user("carol"), team_id)


class TestTeamHierarchy:
    """Tests for re-parenting and deletion."""

    @pytest.mark.asyncio
    async def test_self_parent_rejected(self, tenants, acme):
        """Test a team cannot be its own parent."""
        (eng,) = await make_chain(tenants, acme, "Eng")

        with pytest.raises(InvalidStateError) as exc_info:
            await tenants.update_team(as_user("alice"), eng, TeamUpdate(parent_team_id=eng))

        assert exc_info.value.message == "Team cannot be its own parent"

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, tenants, acme):
        """Test moving an ancestor under its descendant fails."""
        eng, core, infra = await make_chain(tenants, acme, "Eng", "Core", "Infra")

        with pytest.raises(InvalidStateError) as exc_info:
            await tenants.update_team(as_user("alice"), eng, TeamUpdate(parent_team_id=infra))

        assert exc_info.value.message == "Setting this parent would create a cycle in the team hierarchy"
        assert (await tenants.get_team(as_user("alice"), eng)).parent_team_id is None

    @pytest.mark.asyncio
    async def test_move_to_root(self, tenants, acme):
        """Test an explicit None parent moves a team to the root."""
        eng, core = await make_chain(tenants, acme, "Eng", "Core")

        await tenants.update_team(as_user("alice"), core, TeamUpdate(parent_team_id=None))

        assert (await tenants.get_team(as_user("alice"), core)).parent_team_id is None

    @pytest.mark.asyncio
    async def test_update_only_set_fields(self, tenants, acme):
        """Test unset fields keep their values."""
        eng, core = await make_chain(tenants, acme, "Eng", "Core")

        await tenants.update_team(as_user("alice"), core, TeamUpdate(description="Platform"))

        team = await tenants.get_team(as_user("alice"), core)
        assert team.description == "Platform"
        assert team.parent_team_id == eng
        assert team.slug == "core"

    @pytest.mark.asyncio
    async def test_delete_reparents_children_to_root(self, tenants, acme):
        """Test children of a deleted root team become roots."""
        eng, core = await make_chain(tenants, acme, "Eng", "Core")

        await tenants.delete_team(as_user("alice"), eng)

        assert await tenants.get_team(as_user("alice"), eng) is None
        assert (await tenants.get_team(as_user("alice"), core)).parent_team_id is None

    @pytest.mark.asyncio
    async def test_delete_reparents_children_to_grandparent(self, tenants, acme):
        """Test children of a nested team move up one level."""
        eng, core, infra = await make_chain(tenants, acme, "Eng", "Core", "Infra")

        await tenants.delete_team(as_user("alice"), core)

        assert (await tenants.get_team(as_user("alice"), infra)).parent_team_id == eng

    @pytest.mark.asyncio
    async def test_delete_removes_memberships(self, tenants, acme_with_bob, authz_client, store):
        """Test team rows and relations go with the team."""
        (eng,) = await make_chain(tenants, acme_with_bob, "Eng")
        await tenants.add_team_member(as_user("alice"), eng, "bob")

        await tenants.delete_team(as_user("alice"), eng)

        assert await store.find("team_members", team_id=eng) == []
        assert not await authz_client.has_relation("bob", "member", "team", eng)

    @pytest.mark.asyncio
    async def test_delete_missing_team(self, tenants, acme):
        """Test deleting an unknown team fails."""
        with pytest.raises(NotFoundError):
            await tenants.delete_team(as_user("alice"), "missing")


class TestTeamMembers:
    """Tests for team membership."""

    @pytest.mark.asyncio
    async def test_add_requires_organization_membership(self, tenants, acme):
        """Test only organization members can join a team."""
        (eng,) = await make_chain(tenants, acme, "Eng")

        with pytest.raises(ForbiddenError) as exc_info:
            await tenants.add_team_member(as_user("alice"), eng, "carol")

        assert exc_info.value.message == "User must be a member of the organization first"

    @pytest.mark.asyncio
    async def test_add_creates_relation(self, tenants, acme_with_bob, authz_client):
        """Test joining a team adds a member relation."""
        (eng,) = await make_chain(tenants, acme_with_bob, "Eng")

        await tenants.add_team_member(as_user("alice"), eng, "bob", role="lead")

        assert await tenants.is_team_member(as_user("alice"), eng, "bob")
        assert await authz_client.has_relation("bob", "member", "team", eng)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, tenants, acme_with_bob):
        """Test a user joins a team at most once."""
        (eng,) = await make_chain(tenants, acme_with_bob, "Eng")
        await tenants.add_team_member(as_user("alice"), eng, "bob")

        with pytest.raises(AlreadyExistsError) as exc_info:
            await tenants.add_team_member(as_user("alice"), eng, "bob")

        assert exc_info.value.message == "User is already a member of this team"

    @pytest.mark.asyncio
    async def test_suspended_member_cannot_join(self, tenants, acme_with_bob):
        """Test suspended organization members are not added to teams."""
        (eng,) = await make_chain(tenants, acme_with_bob, "Eng")
        await tenants.suspend_member(as_user("alice"), acme_with_bob, "bob")

        with pytest.raises(ForbiddenError):
            await tenants.add_team_member(as_user("alice"), eng, "bob")

    @pytest.mark.asyncio
    async def test_remove(self, tenants, acme_with_bob, authz_client):
        """Test removal drops the row and relation; a second removal fails."""
        (eng,) = await make_chain(tenants, acme_with_bob, "Eng")
        await tenants.add_team_member(as_user("alice"), eng, "bob")

        await tenants.remove_team_member(as_user("alice"), eng, "bob")

        assert not await tenants.is_team_member(as_user("alice"), eng, "bob")
        assert not await authz_client.has_relation("bob", "member", "team", eng)
        with pytest.raises(NotFoundError) as exc_info:
            await tenants.remove_team_member(as_user("alice"), eng, "bob")
        assert exc_info.value.message == "User is not a member of this team"

    @pytest.mark.asyncio
    async def test_update_role_and_list(self, tenants, acme_with_bob):
        """Test team roles are stored and listings sort by user."""
        (eng,) = await make_chain(tenants, acme_with_bob, "Eng")
        await tenants.add_team_member(as_user("alice"), eng, "bob")
        await tenants.add_team_member(as_user("alice"), eng, "alice")

        await tenants.update_team_member_role(as_user("alice"), eng, "bob", "lead")

        members = await tenants.list_team_members(as_user("bob"), eng, sort_by="user_id", sort_order="asc")
        assert [(m.user_id, m.role) for m in members] == [("alice", None), ("bob", "lead")]
