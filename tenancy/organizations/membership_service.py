"""
Membership lifecycle: add, remove, role changes, suspension and leaving.

This module provides:
- Single and best-effort bulk member add/remove
- Role updates synchronized with the policy engine
- Suspension (status only, roles untouched)
- Self-service leave with last-owner protection
- Domain-based self-join

Every operation writes the store first and syncs the policy engine after,
in a fixed order so an interrupted call can be retried.
"""

import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from tenancy.config import TenancySettings
from tenancy.organizations.authorization_sync import AuthorizationSync
from tenancy.organizations.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    TenancyError,
)
from tenancy.organizations.helpers import email_domain, sort_items
from tenancy.storage.repositories import Repositories
from tenancy.types.organization import (
    BulkError,
    BulkResult,
    Member,
    MemberInput,
    MemberStatus,
    MemberStatusFilter,
    Organization,
    Scope,
    SortOrder,
    utc_now,
)

logger = logging.getLogger(__name__)

MEMBER_SORT_FIELDS = ("role", "joined_at", "created_at", "user_id")


class MembershipService:
    """Business logic for organization membership."""

    def __init__(
        self,
        repositories: Repositories,
        authz: AuthorizationSync,
        settings: TenancySettings,
    ):
        self.repos = repositories
        self.authz = authz
        self.settings = settings

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_member(self, organization_id: str, user_id: str) -> Optional[Member]:
        return await self.repos.members.get_member(organization_id, user_id)

    async def list_members(
        self,
        organization_id: str,
        status: MemberStatusFilter = MemberStatusFilter.ACTIVE,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> List[Member]:
        """
        List members, active only unless ``status`` says otherwise.

        Args:
            organization_id: The organization ID.
            status: "active" (default), "suspended" or "all".
            sort_by: One of role, joined_at, created_at, user_id.
            sort_order: "asc" or "desc" (default).
        """
        members = await self.repos.members.list_for_organization(organization_id)
        status = MemberStatusFilter(status)
        if status != MemberStatusFilter.ALL:
            members = [m for m in members if m.status.value == status.value]
        return sort_items(members, sort_by, sort_order, MEMBER_SORT_FIELDS)

    async def count_members(
        self,
        organization_id: str,
        status: MemberStatusFilter = MemberStatusFilter.ACTIVE,
    ) -> int:
        status = MemberStatusFilter(status)
        if status == MemberStatusFilter.ALL:
            return await self.repos.members.count(organization_id=organization_id)
        return await self.repos.members.count(organization_id=organization_id, status=status.value)

    async def count_active_role_holders(self, organization_id: str, role: str) -> int:
        """Full scan of active members holding ``role``."""
        members = await self.repos.members.list_for_organization(organization_id)
        return sum(1 for m in members if m.is_active and m.role == role)

    async def check_member_limit(self, organization_id: str, adding: int = 1) -> None:
        """
        Raises:
            LimitExceededError: If adding ``adding`` members would pass the limit.
        """
        limit = self.settings.max_members
        if limit is None:
            return
        count = await self.count_members(organization_id, MemberStatusFilter.ALL)
        if count + adding > limit:
            raise LimitExceededError(
                f"Maximum number of members ({limit}) for this organization reached.",
                limit=limit,
            )

    # =========================================================================
    # Add
    # =========================================================================

    async def _insert_member(self, organization_id: str, user_id: str, role: str) -> str:
        now = utc_now()
        return await self.repos.members.insert({
            "organization_id": organization_id,
            "user_id": user_id,
            "role": role,
            "status": MemberStatus.ACTIVE,
            "joined_at": now,
            "created_at": now,
        })

    async def add(
        self,
        actor_id: str,
        organization_id: str,
        user_id: str,
        role: str,
        duplicate_message: str = "User is already a member of this organization",
    ) -> str:
        """
        Add a member and assign their role.

        Returns:
            The new member row ID.

        Raises:
            AlreadyExistsError: If the user already has a Member row.
        """
        if await self.get_member(organization_id, user_id):
            raise AlreadyExistsError(duplicate_message)

        member_id = await self._insert_member(organization_id, user_id, role)
        await self.authz.assign_role(user_id, role, Scope.organization(organization_id), actor_id=actor_id)

        logger.info(f"Member added: {user_id} to {organization_id} as {role}")
        return member_id

    async def bulk_add(
        self,
        actor_id: str,
        organization_id: str,
        members: Iterable[MemberInput],
        before_add: Optional[Callable[[MemberInput], Awaitable[None]]] = None,
    ) -> BulkResult[str]:
        """
        Best-effort add of many members.

        Each entry succeeds or fails on its own; failures are reported in
        ``errors`` and never abort the remaining entries.

        Args:
            before_add: Awaited for each entry right before it is written.
                A ``TenancyError`` raised from it fails only that entry.
        """
        result: BulkResult[str] = BulkResult()
        for item in members:
            try:
                if await self.get_member(organization_id, item.user_id):
                    raise AlreadyExistsError("User is already a member of this organization")
                await self.check_member_limit(organization_id)
                if before_add is not None:
                    await before_add(item)
                await self.add(actor_id, organization_id, item.user_id, item.role)
                result.success.append(item.user_id)
            except LimitExceededError as e:
                result.errors.append(BulkError(id=item.user_id, code="FORBIDDEN", message=e.message))
            except TenancyError as e:
                result.errors.append(BulkError(id=item.user_id, code=e.code, message=e.message))

        logger.info(
            f"Bulk add to {organization_id}: "
            f"{len(result.success)} added, {len(result.errors)} failed"
        )
        return result

    async def join_by_domain(
        self,
        organization: Organization,
        user_id: str,
        email: Optional[str],
        role: str = "member",
    ) -> str:
        """
        Join an organization whose allowed domains include the email's domain.

        Raises:
            ForbiddenError: If the organization is not active, has no allowed
                domains, or the email domain is not allowed.
            AlreadyExistsError: If the user is already a member.
        """
        if not organization.is_active:
            raise ForbiddenError("Organization is not accepting new members by domain")
        if not organization.allowed_domains:
            raise ForbiddenError("Organization does not allow domain-based join")
        domain = email_domain(email)
        if domain is None or domain not in organization.allowed_domains:
            raise ForbiddenError("Your email domain is not allowed to join this organization")

        await self.check_member_limit(organization.id)
        return await self.add(
            user_id,
            organization.id,
            user_id,
            role,
            duplicate_message="You are already a member of this organization",
        )

    # =========================================================================
    # Remove
    # =========================================================================

    async def _remove_team_relations(self, organization_id: str, user_id: str) -> List[str]:
        """Drop the user's team relations in this organization; returns team-member row IDs."""
        team_ids = {t.id for t in await self.repos.teams.list_for_organization(organization_id)}
        row_ids = []
        for team_member in await self.repos.team_members.list_for_user(user_id):
            if team_member.team_id in team_ids:
                await self.authz.remove_team_relation(user_id, team_member.team_id)
                row_ids.append(team_member.id)
        return row_ids

    async def _delete_member(self, actor_id: Optional[str], member: Member) -> None:
        """Relations -> team-member rows -> member row -> role."""
        team_member_ids = await self._remove_team_relations(member.organization_id, member.user_id)
        for team_member_id in team_member_ids:
            await self.repos.team_members.delete(team_member_id)
        await self.repos.members.delete(member.id)
        await self.authz.revoke_role(
            member.user_id, member.role, Scope.organization(member.organization_id), actor_id=actor_id
        )

    async def _require_removable(self, organization_id: str, user_id: str) -> Member:
        member = await self.get_member(organization_id, user_id)
        if member is None:
            raise NotFoundError("Member not found")
        org = await self.repos.organizations.get(organization_id)
        if org is not None and org.owner_id == user_id:
            raise ForbiddenError("Cannot remove the organization owner. Transfer ownership first.")
        return member

    async def remove(self, actor_id: str, organization_id: str, user_id: str) -> None:
        """
        Remove a member.

        Raises:
            NotFoundError: If the user is not a member.
            ForbiddenError: If the user is the structural owner.
        """
        member = await self._require_removable(organization_id, user_id)
        await self._delete_member(actor_id, member)
        logger.info(f"Member removed: {user_id} from {organization_id}")

    async def bulk_remove(
        self,
        actor_id: str,
        organization_id: str,
        user_ids: Iterable[str],
        before_remove: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> BulkResult[str]:
        """Best-effort removal of many members; ``before_remove`` can veto an entry."""
        result: BulkResult[str] = BulkResult()
        for user_id in user_ids:
            try:
                if before_remove is not None:
                    await before_remove(user_id)
                await self.remove(actor_id, organization_id, user_id)
                result.success.append(user_id)
            except TenancyError as e:
                result.errors.append(BulkError(id=user_id, code=e.code, message=e.message))

        logger.info(
            f"Bulk remove from {organization_id}: "
            f"{len(result.success)} removed, {len(result.errors)} failed"
        )
        return result

    async def leave(self, user_id: str, organization_id: str) -> Member:
        """
        Remove the caller's own membership.

        Returns:
            The membership that was removed.

        Raises:
            ForbiddenError: If the caller is the structural owner.
            InvalidStateError: If the caller is the last active holder of the
                creator role.
            NotFoundError: If the caller is not a member.
        """
        org = await self.repos.organizations.get(organization_id)
        if org is not None and org.owner_id == user_id:
            raise ForbiddenError(
                "Cannot leave organization as the owner. "
                "Transfer ownership or delete the organization first."
            )

        member = await self.get_member(organization_id, user_id)
        if member is None:
            raise NotFoundError("You are not a member of this organization")

        creator_role = self.settings.creator_role
        if member.role == creator_role:
            holders = await self.count_active_role_holders(organization_id, creator_role)
            if holders <= 1:
                raise InvalidStateError("Cannot leave: you are the last owner. Transfer ownership first.")

        await self._delete_member(user_id, member)
        logger.info(f"Member left: {user_id} from {organization_id}")
        return member

    # =========================================================================
    # Role and Status
    # =========================================================================

    async def update_role(
        self,
        actor_id: str,
        organization_id: str,
        user_id: str,
        role: str,
    ) -> str:
        """
        Change a member's role: read old -> write new -> revoke old -> assign new.

        Returns:
            The previous role.

        Raises:
            NotFoundError: If the user is not a member.
        """
        member = await self.get_member(organization_id, user_id)
        if member is None:
            raise NotFoundError("Member not found")

        old_role = member.role
        await self.repos.members.patch(member.id, {"role": role})

        scope = Scope.organization(organization_id)
        if old_role != role:
            await self.authz.revoke_role(user_id, old_role, scope, actor_id=actor_id)
        await self.authz.assign_role(user_id, role, scope, actor_id=actor_id)

        logger.info(f"Member role updated: {user_id} in {organization_id} {old_role} -> {role}")
        return old_role

    async def suspend(self, organization_id: str, user_id: str) -> None:
        """
        Suspend a member. Role assignments are left in place.

        Raises:
            ForbiddenError: If the user is the structural owner.
            NotFoundError: If the user is not a member.
        """
        org = await self.repos.organizations.get(organization_id)
        if org is not None and org.owner_id == user_id:
            raise ForbiddenError("Cannot suspend the organization owner. Transfer ownership first.")
        member = await self.get_member(organization_id, user_id)
        if member is None:
            raise NotFoundError("Member not found")

        await self.repos.members.patch(member.id, {
            "status": MemberStatus.SUSPENDED,
            "suspended_at": utc_now(),
        })
        logger.info(f"Member suspended: {user_id} in {organization_id}")

    async def unsuspend(self, organization_id: str, user_id: str) -> None:
        member = await self.get_member(organization_id, user_id)
        if member is None:
            raise NotFoundError("Member not found")

        await self.repos.members.patch(member.id, {
            "status": MemberStatus.ACTIVE,
            "suspended_at": None,
        })
        logger.info(f"Member unsuspended: {user_id} in {organization_id}")
