"""
Type definitions for the tenancy engine.
"""

from .organization import (
    AuditAction,
    AuditLogEntry,
    AuditLogQuery,
    BulkError,
    BulkResult,
    Invitation,
    InvitationCreate,
    InvitationSent,
    InvitationStatus,
    Member,
    MemberInput,
    MemberStatus,
    MemberStatusFilter,
    MemberWithUser,
    Organization,
    OrganizationCreate,
    OrganizationSettings,
    OrganizationStatus,
    OrganizationUpdate,
    OrganizationWithRole,
    Page,
    PermissionCheck,
    PermissionOverride,
    ResourceType,
    RoleAssignment,
    Scope,
    ScopeType,
    SortOrder,
    Team,
    TeamCreate,
    TeamMember,
    TeamTreeNode,
    TeamUpdate,
    UserProfile,
    normalize_identifier,
    utc_now,
)

__all__ = [
    # Enums
    "AuditAction",
    "InvitationStatus",
    "MemberStatus",
    "MemberStatusFilter",
    "OrganizationStatus",
    "ResourceType",
    "ScopeType",
    "SortOrder",
    # Entities
    "Organization",
    "OrganizationCreate",
    "OrganizationSettings",
    "OrganizationUpdate",
    "OrganizationWithRole",
    "Member",
    "MemberInput",
    "MemberWithUser",
    "Team",
    "TeamCreate",
    "TeamMember",
    "TeamTreeNode",
    "TeamUpdate",
    "Invitation",
    "InvitationCreate",
    "InvitationSent",
    # Authorization
    "Scope",
    "PermissionCheck",
    "PermissionOverride",
    "RoleAssignment",
    "AuditLogEntry",
    "AuditLogQuery",
    # Results
    "BulkError",
    "BulkResult",
    "Page",
    "UserProfile",
    # Helpers
    "normalize_identifier",
    "utc_now",
]
