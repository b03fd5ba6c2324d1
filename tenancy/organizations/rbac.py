"""
Role-Based Access Control (RBAC) model and policy engine client.

This module provides:
- Default permission definitions and role-to-permission mappings
- The operation-to-permission map consulted before each guarded operation
- The ``AuthorizationClient`` contract for external policy engines
- ``InMemoryAuthorizationClient``, a policy engine for tests and
  single-process deployments

Security Notes:
- Permission checks fail closed (deny by default)
- Explicit denials override grants and roles
- Failed authorization attempts are logged for security monitoring
- Role assignment/revocation and relation changes are idempotent
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Union

from tenancy.organizations.errors import PermissionDeniedError
from tenancy.types.organization import (
    AuditAction,
    AuditLogEntry,
    AuditLogQuery,
    PermissionCheck,
    PermissionOverride,
    ResourceType,
    RoleAssignment,
    Scope,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Permission Definitions
# =============================================================================


class Permission(str, Enum):
    """
    Default permissions for tenancy resources.

    Permissions follow the format: resource:action
    """
    # Organization permissions
    ORGANIZATIONS_CREATE = "organizations:create"
    ORGANIZATIONS_READ = "organizations:read"
    ORGANIZATIONS_UPDATE = "organizations:update"
    ORGANIZATIONS_DELETE = "organizations:delete"

    # Member permissions
    MEMBERS_ADD = "members:add"
    MEMBERS_REMOVE = "members:remove"
    MEMBERS_UPDATE_ROLE = "members:updateRole"
    MEMBERS_LIST = "members:list"

    # Team permissions
    TEAMS_CREATE = "teams:create"
    TEAMS_UPDATE = "teams:update"
    TEAMS_DELETE = "teams:delete"
    TEAMS_ADD_MEMBER = "teams:addMember"
    TEAMS_REMOVE_MEMBER = "teams:removeMember"
    TEAMS_LIST = "teams:list"

    # Invitation permissions
    INVITATIONS_CREATE = "invitations:create"
    INVITATIONS_CANCEL = "invitations:cancel"
    INVITATIONS_RESEND = "invitations:resend"
    INVITATIONS_LIST = "invitations:list"

    # Direct permission overrides
    PERMISSIONS_GRANT = "permissions:grant"
    PERMISSIONS_DENY = "permissions:deny"


# =============================================================================
# Role Definitions
# =============================================================================


_TEAM_PERMISSIONS = frozenset({
    Permission.TEAMS_CREATE,
    Permission.TEAMS_UPDATE,
    Permission.TEAMS_DELETE,
    Permission.TEAMS_ADD_MEMBER,
    Permission.TEAMS_REMOVE_MEMBER,
    Permission.TEAMS_LIST,
})

_INVITATION_PERMISSIONS = frozenset({
    Permission.INVITATIONS_CREATE,
    Permission.INVITATIONS_CANCEL,
    Permission.INVITATIONS_RESEND,
    Permission.INVITATIONS_LIST,
})

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    # Owner: full control
    "owner": frozenset(p.value for p in Permission),

    # Admin: everything except deletion, role changes and overrides
    "admin": frozenset(p.value for p in {
        Permission.ORGANIZATIONS_READ,
        Permission.ORGANIZATIONS_UPDATE,
        Permission.MEMBERS_ADD,
        Permission.MEMBERS_REMOVE,
        Permission.MEMBERS_LIST,
    } | _TEAM_PERMISSIONS | _INVITATION_PERMISSIONS),

    # Member: read-only listings
    "member": frozenset(p.value for p in {
        Permission.ORGANIZATIONS_READ,
        Permission.MEMBERS_LIST,
        Permission.TEAMS_LIST,
        Permission.INVITATIONS_LIST,
    }),
}


def get_role_permissions(
    role: str,
    roles: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> FrozenSet[str]:
    """
    Get all permissions for a role.

    Args:
        role: The role name.
        roles: Role definitions (defaults to ROLE_PERMISSIONS).

    Returns:
        Frozenset of permission strings; empty for unknown roles.
    """
    return (roles if roles is not None else ROLE_PERMISSIONS).get(role, frozenset())


def has_permission(
    role: str,
    permission: str,
    roles: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> bool:
    """Check if a role grants a permission."""
    return permission in get_role_permissions(role, roles)


# =============================================================================
# Operation Permission Map
# =============================================================================


PermissionRequirement = Union[str, bool]

# Guarded operation -> permission checked before it runs. ``False`` skips the check.
DEFAULT_PERMISSION_MAP: Dict[str, PermissionRequirement] = {
    "update_organization": Permission.ORGANIZATIONS_UPDATE.value,
    "delete_organization": Permission.ORGANIZATIONS_DELETE.value,
    "transfer_ownership": Permission.ORGANIZATIONS_UPDATE.value,
    "add_member": Permission.MEMBERS_ADD.value,
    "bulk_add_members": Permission.MEMBERS_ADD.value,
    "remove_member": Permission.MEMBERS_REMOVE.value,
    "bulk_remove_members": Permission.MEMBERS_REMOVE.value,
    "update_member_role": Permission.MEMBERS_UPDATE_ROLE.value,
    "suspend_member": Permission.MEMBERS_REMOVE.value,
    "unsuspend_member": Permission.MEMBERS_REMOVE.value,
    "create_team": Permission.TEAMS_CREATE.value,
    "update_team": Permission.TEAMS_UPDATE.value,
    "delete_team": Permission.TEAMS_DELETE.value,
    "add_team_member": Permission.TEAMS_ADD_MEMBER.value,
    "update_team_member_role": Permission.TEAMS_ADD_MEMBER.value,
    "remove_team_member": Permission.TEAMS_REMOVE_MEMBER.value,
    "invite_member": Permission.INVITATIONS_CREATE.value,
    "bulk_invite_members": Permission.INVITATIONS_CREATE.value,
    "resend_invitation": Permission.INVITATIONS_RESEND.value,
    "cancel_invitation": Permission.INVITATIONS_CANCEL.value,
    "grant_permission": Permission.PERMISSIONS_GRANT.value,
    "deny_permission": Permission.PERMISSIONS_DENY.value,
}


def build_permission_map(
    overrides: Optional[Mapping[str, PermissionRequirement]] = None,
) -> Dict[str, PermissionRequirement]:
    """
    Merge overrides into the default operation permission map.

    Raises:
        ValueError: If an override names an unknown operation or uses ``True``.
    """
    permission_map = dict(DEFAULT_PERMISSION_MAP)
    for operation, requirement in (overrides or {}).items():
        if operation not in DEFAULT_PERMISSION_MAP:
            raise ValueError(f"Unknown operation in permission map: {operation}")
        if requirement is True:
            raise ValueError(f"Permission for {operation} must be a string or False")
        permission_map[operation] = requirement
    return permission_map


# =============================================================================
# Authorization Client Contract
# =============================================================================


class AuthorizationClient(ABC):
    """
    Contract of the external policy engine.

    Implementations must treat assign/revoke and relation add/remove as
    idempotent: repeating a call is harmless.
    """

    @abstractmethod
    async def assign_role(
        self,
        user_id: str,
        role: str,
        scope: Scope,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def revoke_role(
        self,
        user_id: str,
        role: str,
        scope: Scope,
        actor_id: Optional[str] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def add_relation(
        self, subject_id: str, relation: str, object_type: str, object_id: str
    ) -> None:
        ...

    @abstractmethod
    async def remove_relation(
        self, subject_id: str, relation: str, object_type: str, object_id: str
    ) -> bool:
        ...

    @abstractmethod
    async def has_relation(
        self, subject_id: str, relation: str, object_type: str, object_id: str
    ) -> bool:
        ...

    @abstractmethod
    async def grant_permission(
        self,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def deny_permission(
        self,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def check(self, user_id: str, permission: str, scope: Scope) -> PermissionCheck:
        """Evaluate a permission and explain the outcome."""

    @abstractmethod
    async def get_user_roles(
        self, user_id: str, scope: Optional[Scope] = None
    ) -> List[RoleAssignment]:
        ...

    @abstractmethod
    async def get_user_permissions(self, user_id: str, scope: Scope) -> List[str]:
        ...

    @abstractmethod
    async def get_audit_log(self, query: AuditLogQuery) -> List[AuditLogEntry]:
        ...

    async def can(self, user_id: str, permission: str, scope: Scope) -> bool:
        return (await self.check(user_id, permission, scope)).allowed

    async def require(self, user_id: str, permission: str, scope: Scope) -> None:
        """
        Require a permission.

        Raises:
            PermissionDeniedError: If the permission is not held.
        """
        result = await self.check(user_id, permission, scope)
        if not result.allowed:
            log_authorization_failure(user_id, scope, permission, result.reason)
            raise PermissionDeniedError(permission)


# =============================================================================
# In-Memory Policy Engine
# =============================================================================


class InMemoryAuthorizationClient(AuthorizationClient):
    """
    Process-local policy engine.

    Evaluation order for ``check``: an unexpired denial in the exact scope
    wins, then an unexpired grant, then any unexpired role assigned in that
    scope whose permissions include the requested one.
    """

    def __init__(
        self,
        roles: Optional[Mapping[str, FrozenSet[str]]] = None,
        audit_service: Optional[object] = None,
    ):
        """
        Initialize the policy engine.

        Args:
            roles: Role definitions (defaults to ROLE_PERMISSIONS).
            audit_service: Optional AuditService recording every change.
        """
        self.roles: Dict[str, FrozenSet[str]] = dict(roles or ROLE_PERMISSIONS)
        self.audit = audit_service
        self._assignments: Dict[Tuple[str, str, Scope], RoleAssignment] = {}
        self._overrides: Dict[Tuple[str, str, Scope], PermissionOverride] = {}
        self._relations: Set[Tuple[str, str, str, str]] = set()

    async def _audit(
        self,
        action: AuditAction,
        resource_type: ResourceType,
        user_id: str,
        scope: Optional[Scope],
        actor_id: Optional[str],
        new_values: Optional[dict] = None,
    ) -> None:
        if self.audit:
            await self.audit.log(
                action=action,
                resource_type=resource_type,
                user_id=user_id,
                actor_id=actor_id,
                scope=scope,
                new_values=new_values,
            )

    async def assign_role(
        self,
        user_id: str,
        role: str,
        scope: Scope,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        self._assignments[(user_id, role, scope)] = RoleAssignment(
            user_id=user_id,
            role=role,
            scope=scope,
            expires_at=expires_at,
            assigned_by=actor_id,
        )
        await self._audit(
            AuditAction.ROLE_ASSIGN, ResourceType.ROLE, user_id, scope, actor_id,
            {"role": role},
        )

    async def revoke_role(
        self,
        user_id: str,
        role: str,
        scope: Scope,
        actor_id: Optional[str] = None,
    ) -> bool:
        removed = self._assignments.pop((user_id, role, scope), None) is not None
        if removed:
            await self._audit(
                AuditAction.ROLE_REVOKE, ResourceType.ROLE, user_id, scope, actor_id,
                {"role": role},
            )
        return removed

    async def add_relation(
        self, subject_id: str, relation: str, object_type: str, object_id: str
    ) -> None:
        self._relations.add((subject_id, relation, object_type, object_id))

    async def remove_relation(
        self, subject_id: str, relation: str, object_type: str, object_id: str
    ) -> bool:
        key = (subject_id, relation, object_type, object_id)
        if key in self._relations:
            self._relations.discard(key)
            return True
        return False

    async def has_relation(
        self, subject_id: str, relation: str, object_type: str, object_id: str
    ) -> bool:
        return (subject_id, relation, object_type, object_id) in self._relations

    async def _set_override(
        self,
        effect: str,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str],
        expires_at: Optional[datetime],
        actor_id: Optional[str],
    ) -> None:
        self._overrides[(user_id, permission, scope)] = PermissionOverride(
            user_id=user_id,
            permission=permission,
            scope=scope,
            effect=effect,
            reason=reason,
            expires_at=expires_at,
            created_by=actor_id,
        )
        action = AuditAction.PERMISSION_GRANT if effect == "allow" else AuditAction.PERMISSION_DENY
        await self._audit(
            action, ResourceType.PERMISSION, user_id, scope, actor_id,
            {"permission": permission, "reason": reason},
        )

    async def grant_permission(
        self,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        await self._set_override("allow", user_id, permission, scope, reason, expires_at, actor_id)

    async def deny_permission(
        self,
        user_id: str,
        permission: str,
        scope: Scope,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        await self._set_override("deny", user_id, permission, scope, reason, expires_at, actor_id)

    def _active_roles(self, user_id: str, scope: Optional[Scope]) -> List[RoleAssignment]:
        now = utc_now()
        return [
            assignment
            for (uid, _, assignment_scope), assignment in self._assignments.items()
            if uid == user_id
            and (scope is None or assignment_scope == scope)
            and (assignment.expires_at is None or assignment.expires_at > now)
        ]

    async def check(self, user_id: str, permission: str, scope: Scope) -> PermissionCheck:
        override = self._overrides.get((user_id, permission, scope))
        if override is not None and not override.is_expired:
            if override.effect == "deny":
                return PermissionCheck(allowed=False, reason="Explicitly denied")
            return PermissionCheck(allowed=True, reason="Directly granted")

        for assignment in self._active_roles(user_id, scope):
            if has_permission(assignment.role, permission, self.roles):
                return PermissionCheck(allowed=True, reason=f"Granted by role {assignment.role}")

        return PermissionCheck(allowed=False, reason="No role or grant provides this permission")

    async def get_user_roles(
        self, user_id: str, scope: Optional[Scope] = None
    ) -> List[RoleAssignment]:
        return self._active_roles(user_id, scope)

    async def get_user_permissions(self, user_id: str, scope: Scope) -> List[str]:
        permissions: Set[str] = set()
        for assignment in self._active_roles(user_id, scope):
            permissions |= get_role_permissions(assignment.role, self.roles)
        for (uid, permission, override_scope), override in self._overrides.items():
            if uid != user_id or override_scope != scope or override.is_expired:
                continue
            if override.effect == "allow":
                permissions.add(permission)
            else:
                permissions.discard(permission)
        return sorted(permissions)

    async def get_audit_log(self, query: AuditLogQuery) -> List[AuditLogEntry]:
        if not self.audit:
            return []
        entries, _ = await self.audit.query(query)
        return entries


# =============================================================================
# Utility Functions
# =============================================================================


def log_authorization_failure(
    user_id: str,
    scope: Optional[Scope],
    required_permission: str,
    reason: Optional[str] = None,
) -> None:
    """
    Log an authorization failure for security monitoring.

    Args:
        user_id: The user who was denied.
        scope: The scope the permission was checked in.
        required_permission: The permission that was required.
        reason: Why the policy engine denied it.
    """
    logger.warning(
        "Authorization denied",
        extra={
            "denied_user_id": user_id[:8] + "..." if len(user_id) > 8 else user_id,
            "scope_type": scope.type.value if scope else None,
            "scope_id": scope.id if scope else None,
            "required_permission": required_permission,
            "reason": reason,
            "security_event": "authorization_denied",
        },
    )
