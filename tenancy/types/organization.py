"""
Organization, membership, team and invitation type definitions.

This module defines Pydantic models for:
- Organizations (tenants) and their settings
- Organization memberships with free-form roles
- Nested teams and team memberships
- Invitations with lazy expiry
- Authorization scopes and audit log entries
- Bulk operation and pagination results
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator


T = TypeVar("T")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class OrganizationStatus(str, Enum):
    """
    Organization lifecycle status.

    Only active organizations accept mutations; a suspended or archived
    organization must be reactivated first.
    """
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


class MemberStatus(str, Enum):
    """Status of an organization membership."""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class MemberStatusFilter(str, Enum):
    """Status filter for member listings. Listings default to active."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ALL = "all"


class InvitationStatus(str, Enum):
    """Status of an organization invitation."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ScopeType(str, Enum):
    """Kinds of authorization scope."""
    ORGANIZATION = "organization"
    TEAM = "team"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AuditAction(str, Enum):
    """
    Audit log action types.

    Categorized by resource type for easier filtering.
    """
    # Authorization actions
    ROLE_ASSIGN = "role.assign"
    ROLE_REVOKE = "role.revoke"
    PERMISSION_GRANT = "permission.grant"
    PERMISSION_DENY = "permission.deny"
    RELATION_ADD = "relation.add"
    RELATION_REMOVE = "relation.remove"

    # Organization actions
    ORGANIZATION_CREATE = "organization.create"
    ORGANIZATION_UPDATE = "organization.update"
    ORGANIZATION_DELETE = "organization.delete"
    ORGANIZATION_TRANSFER = "organization.transfer"


class ResourceType(str, Enum):
    """Resource types for audit logging."""
    ORGANIZATION = "organization"
    MEMBER = "member"
    TEAM = "team"
    INVITATION = "invitation"
    ROLE = "role"
    PERMISSION = "permission"
    RELATION = "relation"


# =============================================================================
# Scope
# =============================================================================


class Scope(BaseModel):
    """A (type, id) pair bounding role assignments and permission checks."""

    model_config = ConfigDict(frozen=True)

    type: ScopeType
    id: str

    @classmethod
    def organization(cls, organization_id: str) -> "Scope":
        return cls(type=ScopeType.ORGANIZATION, id=organization_id)

    @classmethod
    def team(cls, team_id: str) -> "Scope":
        return cls(type=ScopeType.TEAM, id=team_id)


# =============================================================================
# User Profile
# =============================================================================


class UserProfile(BaseModel):
    """Display profile returned by the caller-supplied profile resolver."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None


# =============================================================================
# Organization Models
# =============================================================================


class OrganizationSettings(BaseModel):
    """Structured organization settings. Use metadata for custom data."""

    allow_public_signup: bool = False
    require_invitation_to_join: bool = False


def _normalize_domains(domains: Optional[List[str]]) -> Optional[List[str]]:
    if domains is None:
        return None
    normalized = []
    for domain in domains:
        d = domain.strip().lower().lstrip("@")
        if d and d not in normalized:
            normalized.append(d)
    return normalized


class OrganizationCreate(BaseModel):
    """Request model for creating an organization."""

    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(None, max_length=100)
    logo: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    settings: Optional[OrganizationSettings] = None
    allowed_domains: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Organization name cannot be empty")
        return v

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_domains(v)


class OrganizationUpdate(BaseModel):
    """
    Request model for updating an organization.

    Only fields explicitly set are applied, so ``logo=None`` clears the logo
    while an omitted ``logo`` leaves it untouched.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, max_length=100)
    logo: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    settings: Optional[OrganizationSettings] = None
    allowed_domains: Optional[List[str]] = None
    status: Optional[OrganizationStatus] = None

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_domains(v)


class Organization(BaseModel):
    """Full organization model."""

    id: str
    name: str
    slug: str
    logo: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)
    allowed_domains: List[str] = Field(default_factory=list)
    owner_id: str
    status: OrganizationStatus = OrganizationStatus.ACTIVE
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == OrganizationStatus.ACTIVE


class OrganizationWithRole(Organization):
    """Organization as seen by one of its members."""

    role: str


# =============================================================================
# Membership Models
# =============================================================================


class Member(BaseModel):
    """Organization membership row."""

    id: str
    organization_id: str
    user_id: str
    role: str
    status: MemberStatus = MemberStatus.ACTIVE
    suspended_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE


class MemberWithUser(Member):
    """Member enriched with the resolver's display profile."""

    user: Optional[UserProfile] = None


class MemberInput(BaseModel):
    """One entry of a bulk member add."""

    user_id: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)


# =============================================================================
# Team Models
# =============================================================================


class TeamCreate(BaseModel):
    """Request model for creating a team."""

    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None
    parent_team_id: Optional[str] = None


class TeamUpdate(BaseModel):
    """
    Request model for updating a team.

    Only explicitly set fields apply; ``parent_team_id=None`` moves the team
    to the root of the hierarchy.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None
    parent_team_id: Optional[str] = None


class Team(BaseModel):
    """Team within an organization."""

    id: str
    organization_id: str
    name: str
    slug: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    parent_team_id: Optional[str] = None
    created_at: datetime


class TeamTreeNode(BaseModel):
    """A team and its nested children."""

    team: Team
    children: List["TeamTreeNode"] = Field(default_factory=list)


class TeamMember(BaseModel):
    """Team membership row."""

    id: str
    team_id: str
    user_id: str
    role: Optional[str] = None
    created_at: datetime


# =============================================================================
# Invitation Models
# =============================================================================


def normalize_identifier(identifier: str) -> str:
    """Identifiers compare case- and surrounding-whitespace-insensitively."""
    return identifier.strip().lower()


class InvitationCreate(BaseModel):
    """Request model for creating an invitation."""

    identifier: str = Field(..., min_length=1, max_length=320)
    identifier_type: Optional[str] = "email"
    role: str = Field(..., min_length=1)
    team_id: Optional[str] = None
    message: Optional[str] = Field(None, max_length=2000)
    expires_in: Optional[timedelta] = None

    @field_validator("identifier")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = normalize_identifier(v)
        if not v:
            raise ValueError("Identifier cannot be empty")
        return v

    @field_validator("expires_in")
    @classmethod
    def positive_expiry(cls, v: Optional[timedelta]) -> Optional[timedelta]:
        if v is not None and v <= timedelta(0):
            raise ValueError("expires_in must be positive")
        return v


class Invitation(BaseModel):
    """Organization invitation."""

    id: str
    organization_id: str
    identifier: str
    identifier_type: Optional[str] = None
    role: str
    team_id: Optional[str] = None
    inviter_id: str
    inviter_name: Optional[str] = None
    message: Optional[str] = None
    status: InvitationStatus = InvitationStatus.PENDING
    expires_at: datetime
    created_at: datetime

    @property
    def is_expired(self) -> bool:
        """A pending invitation past its expiry. Evaluated lazily."""
        return self.status == InvitationStatus.PENDING and utc_now() > self.expires_at

    @property
    def is_pending(self) -> bool:
        return self.status == InvitationStatus.PENDING and not self.is_expired


class InvitationSent(BaseModel):
    """One successful entry of a bulk invite."""

    invitation_id: str
    identifier: str
    expires_at: datetime


# =============================================================================
# Bulk and Pagination Results
# =============================================================================


class BulkError(BaseModel):
    """Per-item failure of a best-effort batch."""

    id: str
    code: str
    message: str


class BulkResult(BaseModel, Generic[T]):
    """
    Result of a best-effort batch.

    Each element succeeds or fails independently; failures never abort the
    remaining elements.
    """

    success: List[T] = Field(default_factory=list)
    errors: List[BulkError] = Field(default_factory=list)


class Page(BaseModel, Generic[T]):
    """Offset-paginated slice of a listing."""

    items: List[T] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 50

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


# =============================================================================
# Authorization Models
# =============================================================================


class PermissionCheck(BaseModel):
    """Result of an explained permission check."""

    allowed: bool
    reason: str


class RoleAssignment(BaseModel):
    """A role held by a user within a scope."""

    user_id: str
    role: str
    scope: Scope
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None


class PermissionOverride(BaseModel):
    """A direct grant or denial that bypasses role resolution."""

    user_id: str
    permission: str
    scope: Scope
    effect: str  # "allow" or "deny"
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and utc_now() > self.expires_at


# =============================================================================
# Audit Log Models
# =============================================================================


class AuditLogEntry(BaseModel):
    """Audit log entry model."""

    id: str
    action: str
    resource_type: str
    user_id: Optional[str] = None
    actor_id: Optional[str] = None
    scope: Optional[Scope] = None
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    success: bool = True
    error_message: Optional[str] = None
    created_at: datetime


class AuditLogQuery(BaseModel):
    """Query parameters for audit logs."""

    scope: Optional[Scope] = None
    user_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not re.match(r"^[a-z_]+\.[a-z_]+$", v):
            raise ValueError("Invalid action format")
        return v


TeamTreeNode.model_rebuild()
