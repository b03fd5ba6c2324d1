"""
Organization lifecycle: creation, update, status and cascading deletion.

This module provides:
- Organization creation with globally unique slugs
- Updates including status transitions (active/suspended/archived)
- Cascading deletion that cleans up the policy engine first
- Membership-scoped listings and domain-based discovery

Security Notes:
- Permission checks happen in the orchestrator before these methods run
- Organization changes are recorded in the audit trail
"""

import logging
from typing import Dict, List, Optional

from tenancy.config import TenancySettings
from tenancy.organizations.authorization_sync import AuthorizationSync
from tenancy.organizations.helpers import ensure_unique_slug, generate_slug
from tenancy.storage.repositories import Repositories
from tenancy.types.organization import (
    AuditAction,
    Organization,
    OrganizationCreate,
    OrganizationSettings,
    OrganizationStatus,
    OrganizationUpdate,
    OrganizationWithRole,
    ResourceType,
    Scope,
    utc_now,
)

logger = logging.getLogger(__name__)


class OrganizationService:
    """Business logic for organization records."""

    def __init__(
        self,
        repositories: Repositories,
        authz: AuthorizationSync,
        settings: TenancySettings,
        audit_service: Optional[object] = None,
    ):
        """
        Initialize the organization service.

        Args:
            repositories: Entity adapters.
            authz: Policy engine bridge.
            settings: Tenancy settings (creator role).
            audit_service: Optional audit service for logging actions.
        """
        self.repos = repositories
        self.authz = authz
        self.settings = settings
        self.audit = audit_service

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, organization_id: str) -> Optional[Organization]:
        return await self.repos.organizations.get(organization_id)

    async def get_by_slug(self, slug: str) -> Optional[Organization]:
        return await self.repos.organizations.get_by_slug(slug.strip().lower())

    async def list_for_user(self, user_id: str) -> List[OrganizationWithRole]:
        """Organizations the user belongs to, with the user's role in each."""
        result = []
        for member in await self.repos.members.list_for_user(user_id):
            org = await self.repos.organizations.get(member.organization_id)
            if org is not None:
                result.append(OrganizationWithRole(**org.model_dump(), role=member.role))
        return result

    async def count_owned_by(self, user_id: str) -> int:
        return await self.repos.organizations.count(owner_id=user_id)

    async def list_joinable_by_domain(self, domain: str) -> List[Organization]:
        """Active organizations whose allowed domains include ``domain``."""
        domain = domain.strip().lower()
        return [
            org
            for org in await self.repos.organizations.find(status=OrganizationStatus.ACTIVE)
            if domain in org.allowed_domains
        ]

    async def _slug_taken(self, slug: str) -> bool:
        return await self.repos.organizations.get_by_slug(slug) is not None

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create(self, user_id: str, data: OrganizationCreate) -> str:
        """
        Create an organization owned by ``user_id``.

        The creator gets a Member row and, once the organization exists, the
        creator role scoped to it.

        Args:
            user_id: ID of the user creating the organization.
            data: Organization creation data.

        Returns:
            The new organization ID.
        """
        base_slug = generate_slug(data.slug or data.name)
        slug = await ensure_unique_slug(base_slug, self._slug_taken)
        now = utc_now()

        organization_id = await self.repos.organizations.insert({
            "name": data.name,
            "slug": slug,
            "logo": data.logo,
            "metadata": data.metadata or {},
            "settings": data.settings or OrganizationSettings(),
            "allowed_domains": data.allowed_domains or [],
            "owner_id": user_id,
            "status": OrganizationStatus.ACTIVE,
            "created_at": now,
        })

        creator_role = self.settings.creator_role
        await self.repos.members.insert({
            "organization_id": organization_id,
            "user_id": user_id,
            "role": creator_role,
            "status": "active",
            "joined_at": now,
            "created_at": now,
        })
        await self.authz.assign_role(
            user_id, creator_role, Scope.organization(organization_id), actor_id=user_id
        )

        if self.audit:
            await self.audit.log(
                action=AuditAction.ORGANIZATION_CREATE,
                resource_type=ResourceType.ORGANIZATION,
                user_id=user_id,
                actor_id=user_id,
                scope=Scope.organization(organization_id),
                resource_id=organization_id,
                new_values={"name": data.name, "slug": slug},
            )

        logger.info(f"Organization created: {organization_id} ({slug})")
        return organization_id

    async def update(
        self,
        user_id: str,
        organization_id: str,
        changes: OrganizationUpdate,
    ) -> None:
        """
        Apply the explicitly set fields of ``changes``.

        A changed slug is normalized and made unique; keeping the current
        slug is not a collision.
        """
        current = await self.repos.organizations.get(organization_id)
        if current is None:
            return

        update_data: Dict[str, object] = changes.model_dump(exclude_unset=True)
        if "slug" in update_data:
            requested = update_data["slug"]
            if not requested:
                del update_data["slug"]
            else:
                base_slug = generate_slug(str(requested))
                if base_slug != current.slug:
                    update_data["slug"] = await ensure_unique_slug(base_slug, self._slug_taken)
                else:
                    update_data["slug"] = base_slug
        if "metadata" in update_data and update_data["metadata"] is None:
            update_data["metadata"] = {}
        if "allowed_domains" in update_data and update_data["allowed_domains"] is None:
            update_data["allowed_domains"] = []
        if "settings" in update_data and update_data["settings"] is None:
            del update_data["settings"]
        if "status" in update_data and update_data["status"] is None:
            del update_data["status"]
        if "name" in update_data and not update_data["name"]:
            del update_data["name"]

        if not update_data:
            return

        update_data["updated_at"] = utc_now()
        await self.repos.organizations.patch(organization_id, update_data)

        if self.audit:
            await self.audit.log(
                action=AuditAction.ORGANIZATION_UPDATE,
                resource_type=ResourceType.ORGANIZATION,
                user_id=user_id,
                actor_id=user_id,
                scope=Scope.organization(organization_id),
                resource_id=organization_id,
                old_values={key: getattr(current, key, None) for key in update_data if key != "updated_at"},
                new_values=update_data,
            )

        logger.info(f"Organization updated: {organization_id}")

    async def set_owner(self, organization_id: str, new_owner_id: str) -> None:
        await self.repos.organizations.patch(organization_id, {
            "owner_id": new_owner_id,
            "updated_at": utc_now(),
        })

    async def delete(self, user_id: str, organization_id: str) -> None:
        """
        Delete an organization and everything it owns.

        Policy-engine state is cleaned up first, while the member and team
        rows that drive the cleanup still exist. Entity rows then go in the
        order teams (with their team members) -> invitations -> members ->
        organization.
        """
        org = await self.repos.organizations.get(organization_id)
        if org is None:
            return

        scope = Scope.organization(organization_id)
        members = await self.repos.members.list_for_organization(organization_id)
        teams = await self.repos.teams.list_for_organization(organization_id)

        # Authorization cleanup
        for member in members:
            await self.authz.revoke_role(member.user_id, member.role, scope, actor_id=user_id)
        for team in teams:
            for team_member in await self.repos.team_members.list_for_team(team.id):
                await self.authz.remove_team_relation(team_member.user_id, team.id)

        # Entity cascade
        for team in teams:
            for team_member in await self.repos.team_members.list_for_team(team.id):
                await self.repos.team_members.delete(team_member.id)
            await self.repos.teams.delete(team.id)
        for invitation in await self.repos.invitations.list_for_organization(organization_id):
            await self.repos.invitations.delete(invitation.id)
        for member in members:
            await self.repos.members.delete(member.id)
        await self.repos.organizations.delete(organization_id)

        if self.audit:
            await self.audit.log(
                action=AuditAction.ORGANIZATION_DELETE,
                resource_type=ResourceType.ORGANIZATION,
                user_id=user_id,
                actor_id=user_id,
                scope=scope,
                resource_id=organization_id,
                old_values={"name": org.name, "slug": org.slug},
            )

        logger.info(
            f"Organization deleted: {organization_id} "
            f"({len(members)} members, {len(teams)} teams)"
        )
