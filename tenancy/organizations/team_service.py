"""
Team hierarchy and team membership.

This module provides:
- Team CRUD with per-organization slug uniqueness
- A nested team forest: parent validation, cycle detection on re-parenting,
  and re-parenting of children when a team is deleted
- Tree and flat listings
- Team membership, constrained by organization membership and mirrored as
  ``member`` relations in the policy engine
"""

import logging
from typing import Any, Dict, List, Optional

from tenancy.config import TenancySettings
from tenancy.organizations.authorization_sync import AuthorizationSync
from tenancy.organizations.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
)
from tenancy.organizations.helpers import ensure_unique_slug, generate_team_slug, sort_items
from tenancy.storage.repositories import Repositories
from tenancy.types.organization import (
    SortOrder,
    Team,
    TeamCreate,
    TeamMember,
    TeamTreeNode,
    TeamUpdate,
    utc_now,
)

logger = logging.getLogger(__name__)

TEAM_MEMBER_SORT_FIELDS = ("user_id", "role", "created_at")

# Default for list_teams: no parent filter
ALL_TEAMS: Any = object()


class TeamService:
    """Business logic for the team forest of each organization."""

    def __init__(
        self,
        repositories: Repositories,
        authz: AuthorizationSync,
        settings: Optional[TenancySettings] = None,
    ):
        self.repos = repositories
        self.authz = authz
        self.settings = settings or TenancySettings()

    async def check_team_limit(self, organization_id: str) -> None:
        """
        Raises:
            LimitExceededError: If the organization already has the maximum
                number of teams.
        """
        limit = self.settings.max_teams
        if limit is None:
            return
        if await self.count_teams(organization_id) >= limit:
            raise LimitExceededError(
                f"Maximum number of teams ({limit}) for this organization reached.",
                limit=limit,
            )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_team(self, team_id: str) -> Optional[Team]:
        return await self.repos.teams.get(team_id)

    async def require_team(self, team_id: str) -> Team:
        team = await self.repos.teams.get(team_id)
        if team is None:
            raise NotFoundError("Team not found")
        return team

    async def list_teams(
        self,
        organization_id: str,
        parent_team_id: Any = ALL_TEAMS,
    ) -> List[Team]:
        """
        List an organization's teams.

        Args:
            organization_id: The organization ID.
            parent_team_id: Omitted for every team, None for root teams only,
                or a team ID for that team's direct children.
        """
        teams = await self.repos.teams.list_for_organization(organization_id)
        if parent_team_id is ALL_TEAMS:
            return teams
        return [t for t in teams if t.parent_team_id == parent_team_id]

    async def count_teams(self, organization_id: str) -> int:
        return await self.repos.teams.count(organization_id=organization_id)

    async def list_as_tree(self, organization_id: str) -> List[TeamTreeNode]:
        """
        Build the organization's team forest from one flat listing.

        Teams whose parent is missing from the organization are treated as
        roots so no team is ever dropped from the tree.
        """
        teams = await self.repos.teams.list_for_organization(organization_id)
        by_id = {t.id: t for t in teams}
        children: Dict[Optional[str], List[Team]] = {}
        for team in teams:
            parent = team.parent_team_id if team.parent_team_id in by_id else None
            children.setdefault(parent, []).append(team)

        def build(team: Team) -> TeamTreeNode:
            return TeamTreeNode(
                team=team,
                children=[build(child) for child in children.get(team.id, [])],
            )

        return [build(root) for root in children.get(None, [])]

    # =========================================================================
    # Hierarchy Validation
    # =========================================================================

    async def _require_parent(self, organization_id: str, parent_team_id: str) -> Team:
        parent = await self.repos.teams.get(parent_team_id)
        if parent is None:
            raise NotFoundError("Parent team not found")
        if parent.organization_id != organization_id:
            raise ForbiddenError("Parent team must belong to the same organization")
        return parent

    async def _assert_no_cycle(self, team: Team, parent: Team) -> None:
        """
        Walk up from ``parent``; reaching ``team`` means a cycle.

        The walk is bounded by the organization's team count so corrupted
        data cannot loop forever.
        """
        if parent.id == team.id:
            raise InvalidStateError("Team cannot be its own parent")

        max_steps = await self.count_teams(team.organization_id)
        current: Optional[Team] = parent
        steps = 0
        while current is not None and steps <= max_steps:
            if current.id == team.id:
                raise InvalidStateError(
                    "Setting this parent would create a cycle in the team hierarchy"
                )
            if current.parent_team_id is None:
                return
            current = await self.repos.teams.get(current.parent_team_id)
            steps += 1

    async def _unique_team_slug(
        self, organization_id: str, base_slug: str, current_team_id: Optional[str] = None
    ) -> str:
        async def is_taken(slug: str) -> bool:
            existing = await self.repos.teams.get_by_slug(organization_id, slug)
            return existing is not None and existing.id != current_team_id

        return await ensure_unique_slug(base_slug, is_taken)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create(self, actor_id: str, organization_id: str, data: TeamCreate) -> str:
        """
        Create a team, optionally nested under ``data.parent_team_id``.

        Raises:
            NotFoundError: If the parent team does not exist.
            ForbiddenError: If the parent team is in another organization.
        """
        if data.parent_team_id:
            await self._require_parent(organization_id, data.parent_team_id)

        slug = await self._unique_team_slug(
            organization_id, generate_team_slug(data.slug or data.name)
        )
        team_id = await self.repos.teams.insert({
            "organization_id": organization_id,
            "name": data.name,
            "slug": slug,
            "description": data.description,
            "metadata": data.metadata or {},
            "parent_team_id": data.parent_team_id or None,
            "created_at": utc_now(),
        })

        logger.info(f"Team created: {team_id} ({slug}) in {organization_id} by {actor_id}")
        return team_id

    async def update(self, actor_id: str, team_id: str, changes: TeamUpdate) -> None:
        """
        Apply the explicitly set fields of ``changes``.

        Raises:
            NotFoundError: If the team or the new parent does not exist.
            ForbiddenError: If the new parent is in another organization.
            InvalidStateError: If the new parent would create a cycle.
        """
        team = await self.require_team(team_id)
        update_data = changes.model_dump(exclude_unset=True)

        if "parent_team_id" in update_data:
            new_parent_id = update_data["parent_team_id"]
            if new_parent_id:
                parent = await self._require_parent(team.organization_id, new_parent_id)
                await self._assert_no_cycle(team, parent)
            else:
                update_data["parent_team_id"] = None

        if "slug" in update_data:
            requested = update_data["slug"]
            if requested:
                update_data["slug"] = await self._unique_team_slug(
                    team.organization_id, generate_team_slug(requested), team.id
                )
            else:
                update_data.pop("slug", None)
        if "metadata" in update_data and update_data["metadata"] is None:
            update_data["metadata"] = {}
        if "name" in update_data and not update_data["name"]:
            del update_data["name"]

        if not update_data:
            return

        await self.repos.teams.patch(team_id, update_data)
        logger.info(f"Team updated: {team_id} by {actor_id}")

    async def delete(self, actor_id: str, team_id: str) -> Team:
        """
        Delete a team.

        Direct children move to the deleted team's own parent, then every
        team membership (relation and row) is removed, then the team row.

        Returns:
            The deleted team.
        """
        team = await self.require_team(team_id)

        for child in await self.repos.teams.list_children(team_id):
            await self.repos.teams.patch(child.id, {"parent_team_id": team.parent_team_id})

        for team_member in await self.repos.team_members.list_for_team(team_id):
            await self.authz.remove_team_relation(team_member.user_id, team_id)
            await self.repos.team_members.delete(team_member.id)

        await self.repos.teams.delete(team_id)
        logger.info(f"Team deleted: {team_id} by {actor_id}")
        return team


class TeamMembershipService:
    """Team-level membership, constrained by organization membership."""

    def __init__(self, repositories: Repositories, authz: AuthorizationSync):
        self.repos = repositories
        self.authz = authz

    async def get_team_member(self, team_id: str, user_id: str) -> Optional[TeamMember]:
        return await self.repos.team_members.get_team_member(team_id, user_id)

    async def is_team_member(self, team_id: str, user_id: str) -> bool:
        return await self.get_team_member(team_id, user_id) is not None

    async def list_team_members(
        self,
        team_id: str,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.ASC,
    ) -> List[TeamMember]:
        members = await self.repos.team_members.list_for_team(team_id)
        return sort_items(members, sort_by, sort_order, TEAM_MEMBER_SORT_FIELDS)

    async def add(
        self,
        actor_id: str,
        team: Team,
        user_id: str,
        role: Optional[str] = None,
    ) -> str:
        """
        Add an organization member to a team.

        Raises:
            ForbiddenError: If the user is not an active member of the
                team's organization.
            AlreadyExistsError: If the user is already on the team.
        """
        member = await self.repos.members.get_member(team.organization_id, user_id)
        if member is None or not member.is_active:
            raise ForbiddenError("User must be a member of the organization first")
        if await self.is_team_member(team.id, user_id):
            raise AlreadyExistsError("User is already a member of this team")

        team_member_id = await self.repos.team_members.insert({
            "team_id": team.id,
            "user_id": user_id,
            "role": role,
            "created_at": utc_now(),
        })
        await self.authz.add_team_relation(user_id, team.id)

        logger.info(f"Team member added: {user_id} to {team.id} by {actor_id}")
        return team_member_id

    async def update_role(self, team_id: str, user_id: str, role: Optional[str]) -> None:
        team_member = await self.get_team_member(team_id, user_id)
        if team_member is None:
            raise NotFoundError("User is not a member of this team")
        await self.repos.team_members.patch(team_member.id, {"role": role})
        logger.info(f"Team member role updated: {user_id} in {team_id} -> {role}")

    async def remove(self, actor_id: str, team_id: str, user_id: str) -> None:
        """
        Raises:
            NotFoundError: If the user is not on the team.
        """
        team_member = await self.get_team_member(team_id, user_id)
        if team_member is None:
            raise NotFoundError("User is not a member of this team")

        await self.authz.remove_team_relation(user_id, team_id)
        await self.repos.team_members.delete(team_member.id)
        logger.info(f"Team member removed: {user_id} from {team_id} by {actor_id}")
