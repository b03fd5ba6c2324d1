"""
Event payload definitions.

Each lifecycle event carries a fixed payload shape. After-events are
delivered once the mutation has been committed; before-events carry the
intended change and are delivered before anything is written.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from tenancy.types.organization import (
    OrganizationCreate,
    OrganizationUpdate,
    TeamCreate,
    TeamUpdate,
)


# =============================================================================
# Organization Events
# =============================================================================


class OrganizationCreated(BaseModel):
    organization_id: str
    name: str
    slug: str
    owner_id: str


class OrganizationDeleted(BaseModel):
    organization_id: str
    name: str
    deleted_by: str


class BeforeOrganizationCreate(BaseModel):
    user_id: str
    data: OrganizationCreate


class BeforeOrganizationUpdate(BaseModel):
    user_id: str
    organization_id: str
    changes: OrganizationUpdate


class BeforeOrganizationDelete(BaseModel):
    user_id: str
    organization_id: str


# =============================================================================
# Membership Events
# =============================================================================


class MemberAdded(BaseModel):
    organization_id: str
    user_id: str
    role: str
    added_by: str


class MemberRemoved(BaseModel):
    organization_id: str
    user_id: str
    removed_by: str


class MemberRoleChanged(BaseModel):
    organization_id: str
    user_id: str
    old_role: str
    new_role: str
    changed_by: str


class MemberLeft(BaseModel):
    organization_id: str
    user_id: str


class BeforeMemberAdd(BaseModel):
    user_id: str
    organization_id: str
    member_user_id: str
    role: str


class BeforeMemberUpdate(BaseModel):
    user_id: str
    organization_id: str
    member_user_id: str
    changes: Dict[str, Any] = Field(default_factory=dict)


class BeforeMemberRemove(BaseModel):
    user_id: str
    organization_id: str
    member_user_id: str


# =============================================================================
# Team Events
# =============================================================================


class TeamCreated(BaseModel):
    team_id: str
    name: str
    organization_id: str
    created_by: str


class TeamDeleted(BaseModel):
    team_id: str
    name: str
    organization_id: str
    deleted_by: str


class TeamMemberAdded(BaseModel):
    team_id: str
    user_id: str
    added_by: str


class TeamMemberRemoved(BaseModel):
    team_id: str
    user_id: str
    removed_by: str


class BeforeTeamCreate(BaseModel):
    user_id: str
    organization_id: str
    data: TeamCreate


class BeforeTeamUpdate(BaseModel):
    user_id: str
    team_id: str
    changes: TeamUpdate


class BeforeTeamDelete(BaseModel):
    user_id: str
    team_id: str


# =============================================================================
# Invitation Events
# =============================================================================


class InvitationCreated(BaseModel):
    """Sent for new invitations and, with ``resent=True``, for resends."""

    invitation_id: str
    identifier: str
    organization_id: str
    organization_name: str
    role: str
    inviter_name: Optional[str] = None
    expires_at: datetime
    team_id: Optional[str] = None
    message: Optional[str] = None
    resent: bool = False


class InvitationAccepted(BaseModel):
    invitation_id: str
    organization_id: str
    organization_name: str
    user_id: str
    role: str
    identifier: str


class BeforeInvitationCreate(BaseModel):
    user_id: str
    organization_id: str
    identifier: str
    role: str
    team_id: Optional[str] = None


class BeforeInvitationUpdate(BaseModel):
    """Fired before a resend or an acceptance changes an invitation."""

    user_id: str
    invitation_id: str
    action: str


class BeforeInvitationDelete(BaseModel):
    """Fired before an invitation is cancelled."""

    user_id: str
    invitation_id: str
