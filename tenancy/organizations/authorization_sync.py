"""
Bridge between entity mutations and the external policy engine.

Lifecycle services call into ``AuthorizationSync`` at the exact point a role
or relation changes. Calls are issued sequentially after the corresponding
store write; since the store and the policy engine cannot share a
transaction, every call here is idempotent so an interrupted operation can
be re-driven safely.
"""

import logging
from datetime import datetime
from typing import List, Optional

from tenancy.organizations.errors import ForbiddenError, InvalidStateError
from tenancy.organizations.rbac import AuthorizationClient
from tenancy.storage.repositories import TeamRepository
from tenancy.types.organization import (
    AuditLogEntry,
    AuditLogQuery,
    PermissionCheck,
    RoleAssignment,
    Scope,
    ScopeType,
)

logger = logging.getLogger(__name__)

MEMBER_RELATION = "member"
TEAM_OBJECT_TYPE = "team"
MAX_AUDIT_WINDOW = 500


class AuthorizationSync:
    """
    Stateless facade over an ``AuthorizationClient``.

    Scopes are always ``{organization, id}`` or ``{team, id}``; team
    membership is tracked as a ``member`` relation, separate from roles.
    """

    def __init__(self, client: AuthorizationClient, teams: TeamRepository):
        """
        Args:
            client: The policy engine.
            teams: Team adapter used to validate team scopes.
        """
        self.client = client
        self.teams = teams

    # =========================================================================
    # Roles
    # =========================================================================

    async def assign_role(
        self,
        user_id: str,
        role: str,
        scope: Scope,
        actor_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        await self.client.assign_role(user_id, role, scope, expires_at=expires_at, actor_id=actor_id)
        logger.debug(f"Assigned role {role} to {user_id} in {scope.type.value}:{scope.id}")

    async def revoke_role(
        self,
        user_id: str,
        role: str,
        scope: Scope,
        actor_id: Optional[str] = None,
    ) -> None:
        await self.client.revoke_role(user_id, role, scope, actor_id=actor_id)
        logger.debug(f"Revoked role {role} from {user_id} in {scope.type.value}:{scope.id}")

    # =========================================================================
    # Team Relations
    # =========================================================================

    async def add_team_relation(self, user_id: str, team_id: str) -> None:
        await self.client.add_relation(user_id, MEMBER_RELATION, TEAM_OBJECT_TYPE, team_id)

    async def remove_team_relation(self, user_id: str, team_id: str) -> None:
        await self.client.remove_relation(user_id, MEMBER_RELATION, TEAM_OBJECT_TYPE, team_id)

    async def has_team_relation(self, user_id: str, team_id: str) -> bool:
        return await self.client.has_relation(user_id, MEMBER_RELATION, TEAM_OBJECT_TYPE, team_id)

    # =========================================================================
    # Direct Permission Overrides
    # =========================================================================

    async def resolve_scope(self, organization_id: str, scope: Optional[Scope] = None) -> Scope:
        """
        Validate that ``scope`` lies inside ``organization_id``.

        Args:
            organization_id: The organization being acted on.
            scope: Requested scope; defaults to the organization itself.

        Returns:
            The validated scope.

        Raises:
            ForbiddenError: If the scope points at another organization or at
                a team outside this organization.
            InvalidStateError: If the scope type is unsupported.
        """
        if scope is None:
            return Scope.organization(organization_id)
        if scope.type == ScopeType.ORGANIZATION:
            if scope.id != organization_id:
                raise ForbiddenError("Permission scope organization mismatch")
            return scope
        if scope.type == ScopeType.TEAM:
            team = await self.teams.get(scope.id)
            if team is None or team.organization_id != organization_id:
                raise ForbiddenError("Permission scope team must belong to organization")
            return scope
        raise InvalidStateError("Unsupported permission scope type")

    async def grant_permission(
        self,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        await self.client.grant_permission(
            user_id, permission, scope, reason=reason, expires_at=expires_at, actor_id=actor_id
        )

    async def deny_permission(
        self,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        await self.client.deny_permission(
            user_id, permission, scope, reason=reason, expires_at=expires_at, actor_id=actor_id
        )

    # =========================================================================
    # Checks and Introspection
    # =========================================================================

    async def can(self, user_id: str, permission: str, scope: Scope) -> bool:
        return await self.client.can(user_id, permission, scope)

    async def require(self, user_id: str, permission: str, scope: Scope) -> None:
        """
        Raises:
            PermissionDeniedError: If the permission is not held.
        """
        await self.client.require(user_id, permission, scope)

    async def check(self, user_id: str, permission: str, scope: Scope) -> PermissionCheck:
        return await self.client.check(user_id, permission, scope)

    async def get_user_roles(
        self, user_id: str, scope: Optional[Scope] = None
    ) -> List[RoleAssignment]:
        return await self.client.get_user_roles(user_id, scope)

    async def get_user_permissions(self, user_id: str, scope: Scope) -> List[str]:
        return await self.client.get_user_permissions(user_id, scope)

    async def get_audit_log(
        self,
        organization_id: str,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        """
        Audit entries of an organization, newest first.

        Covers the organization scope and the scope of every team that
        currently belongs to it. Each scope is queried for the first
        ``offset + limit`` entries (at most 500) before merging, so
        pagination is exact within that window.
        """
        teams = await self.teams.list_for_organization(organization_id)
        scopes = [Scope.organization(organization_id)] + [Scope.team(team.id) for team in teams]
        window = min(offset + limit, MAX_AUDIT_WINDOW)

        entries: List[AuditLogEntry] = []
        for scope in scopes:
            found = await self.client.get_audit_log(AuditLogQuery(
                scope=scope,
                user_id=user_id,
                action=action,
                limit=window,
            ))
            entries.extend(entry for entry in found if entry.scope == scope)

        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[offset:offset + limit]
