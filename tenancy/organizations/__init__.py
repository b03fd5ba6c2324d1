"""
Organization, membership, team and invitation management.

``Tenants`` is the entry point; the lifecycle services behind it can also be
used directly when the orchestrator's gates are not wanted.
"""

from .audit_service import AuditService
from .authorization_sync import AuthorizationSync
from .errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    InvitationExpiredError,
    LimitExceededError,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    TenancyError,
    UnauthorizedForScopeError,
)
from .events import InvitationEvents, MembershipEvents, OrganizationEvents, TeamEvents
from .invitation_service import InvitationService
from .membership_service import MembershipService
from .organization_service import OrganizationService
from .rbac import (
    DEFAULT_PERMISSION_MAP,
    ROLE_PERMISSIONS,
    AuthorizationClient,
    InMemoryAuthorizationClient,
    Permission,
    build_permission_map,
)
from .team_service import TeamMembershipService, TeamService
from .tenants import Tenants, get_tenants, init_tenants

__all__ = [
    # Orchestrator
    "Tenants",
    "get_tenants",
    "init_tenants",
    # Services
    "OrganizationService",
    "MembershipService",
    "TeamService",
    "TeamMembershipService",
    "InvitationService",
    "AuthorizationSync",
    "AuditService",
    # Authorization
    "AuthorizationClient",
    "InMemoryAuthorizationClient",
    "Permission",
    "ROLE_PERMISSIONS",
    "DEFAULT_PERMISSION_MAP",
    "build_permission_map",
    # Events
    "OrganizationEvents",
    "MembershipEvents",
    "TeamEvents",
    "InvitationEvents",
    # Errors
    "TenancyError",
    "NotAuthenticatedError",
    "UnauthorizedForScopeError",
    "NotFoundError",
    "AlreadyExistsError",
    "ForbiddenError",
    "PermissionDeniedError",
    "InvalidStateError",
    "InvitationExpiredError",
    "LimitExceededError",
]
