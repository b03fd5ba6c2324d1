"""
Invitation lifecycle.

This module provides:
- Invitation creation (single and best-effort bulk), optionally team-scoped
- The pending -> accepted / cancelled / expired state machine
- Resending with a strictly increasing expiry
- Cross-organization lookup of pending invitations by identifier

Expiry is evaluated lazily: a pending invitation past ``expires_at`` is only
marked expired when someone tries to use it.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional

from tenancy.config import TenancySettings
from tenancy.organizations.authorization_sync import AuthorizationSync
from tenancy.organizations.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    InvitationExpiredError,
    NotFoundError,
    TenancyError,
)
from tenancy.organizations.helpers import sort_items
from tenancy.storage.repositories import Repositories
from tenancy.types.organization import (
    BulkError,
    BulkResult,
    Invitation,
    InvitationCreate,
    InvitationSent,
    InvitationStatus,
    MemberStatus,
    Scope,
    SortOrder,
    normalize_identifier,
    utc_now,
)

logger = logging.getLogger(__name__)

INVITATION_SORT_FIELDS = ("created_at", "expires_at", "identifier")


class InvitationService:
    """Business logic for organization invitations."""

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

    async def get(self, invitation_id: str) -> Optional[Invitation]:
        return await self.repos.invitations.get(invitation_id)

    async def require(self, invitation_id: str) -> Invitation:
        invitation = await self.repos.invitations.get(invitation_id)
        if invitation is None:
            raise NotFoundError("Invitation not found")
        return invitation

    async def list_invitations(
        self,
        organization_id: str,
        status: Optional[InvitationStatus] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> List[Invitation]:
        invitations = await self.repos.invitations.list_for_organization(organization_id)
        if status is not None:
            status = InvitationStatus(status)
            invitations = [i for i in invitations if i.status == status]
        return sort_items(invitations, sort_by, sort_order, INVITATION_SORT_FIELDS)

    async def count_invitations(
        self,
        organization_id: str,
        status: Optional[InvitationStatus] = None,
    ) -> int:
        if status is None:
            return await self.repos.invitations.count(organization_id=organization_id)
        return await self.repos.invitations.count(
            organization_id=organization_id, status=InvitationStatus(status)
        )

    async def list_pending_for_identifier(self, identifier: str) -> List[Invitation]:
        """Pending, unexpired invitations addressed to ``identifier`` in any organization."""
        invitations = await self.repos.invitations.list_pending_for_identifier(
            normalize_identifier(identifier)
        )
        return [i for i in invitations if i.is_pending]

    async def _find_pending_duplicate(
        self, organization_id: str, identifier: str
    ) -> Optional[Invitation]:
        for invitation in await self.repos.invitations.list_pending_for_identifier(identifier):
            if invitation.organization_id == organization_id and invitation.is_pending:
                return invitation
        return None

    # =========================================================================
    # Create
    # =========================================================================

    def _expiry(self, expires_in: Optional[timedelta] = None) -> datetime:
        return utc_now() + (expires_in or self.settings.invitation_expiration)

    async def create(
        self,
        inviter_id: str,
        organization_id: str,
        data: InvitationCreate,
        inviter_name: Optional[str] = None,
    ) -> Invitation:
        """
        Create a pending invitation.

        Args:
            inviter_id: ID of the user sending the invitation.
            organization_id: The organization being joined.
            data: Invitation details.
            inviter_name: Display-name snapshot of the inviter.

        Returns:
            The stored invitation.

        Raises:
            NotFoundError: If ``data.team_id`` does not exist.
            ForbiddenError: If the team belongs to another organization.
            AlreadyExistsError: If an unexpired pending invitation exists for
                the identifier in this organization.
        """
        if data.team_id:
            team = await self.repos.teams.get(data.team_id)
            if team is None:
                raise NotFoundError("Team not found")
            if team.organization_id != organization_id:
                raise ForbiddenError("Team must belong to the invitation organization")

        if await self._find_pending_duplicate(organization_id, data.identifier):
            raise AlreadyExistsError("A pending invitation already exists for this identifier")

        invitation_id = await self.repos.invitations.insert({
            "organization_id": organization_id,
            "identifier": data.identifier,
            "identifier_type": data.identifier_type,
            "role": data.role,
            "team_id": data.team_id,
            "inviter_id": inviter_id,
            "inviter_name": inviter_name,
            "message": data.message,
            "status": InvitationStatus.PENDING,
            "expires_at": self._expiry(data.expires_in),
            "created_at": utc_now(),
        })

        logger.info(f"Invitation created: {invitation_id} for {data.identifier} in {organization_id}")
        return await self.require(invitation_id)

    async def bulk_create(
        self,
        inviter_id: str,
        organization_id: str,
        invitations: Iterable[InvitationCreate],
        inviter_name: Optional[str] = None,
        before_create: Optional[Callable[[InvitationCreate], Awaitable[None]]] = None,
    ) -> BulkResult[InvitationSent]:
        """
        Best-effort invite of many identifiers; failures are keyed by identifier.

        A ``TenancyError`` raised from ``before_create`` fails only that entry.
        """
        result: BulkResult[InvitationSent] = BulkResult()
        for item in invitations:
            try:
                if before_create is not None:
                    await before_create(item)
                invitation = await self.create(inviter_id, organization_id, item, inviter_name)
                result.success.append(InvitationSent(
                    invitation_id=invitation.id,
                    identifier=invitation.identifier,
                    expires_at=invitation.expires_at,
                ))
            except TenancyError as e:
                result.errors.append(BulkError(id=item.identifier, code=e.code, message=e.message))

        logger.info(
            f"Bulk invite to {organization_id}: "
            f"{len(result.success)} sent, {len(result.errors)} failed"
        )
        return result

    # =========================================================================
    # State Transitions
    # =========================================================================

    def _require_pending_status(self, invitation: Invitation) -> None:
        if invitation.status != InvitationStatus.PENDING:
            raise InvalidStateError(f"Invitation has already been {invitation.status.value}")

    async def _mark_expired(self, invitation: Invitation) -> None:
        await self.repos.invitations.patch(invitation.id, {"status": InvitationStatus.EXPIRED})
        logger.info(f"Invitation expired: {invitation.id}")

    async def accept(
        self,
        invitation: Invitation,
        user_id: str,
        user_identifier: Optional[str],
    ) -> str:
        """
        Accept an invitation on behalf of ``user_id``.

        Membership is created first, then the team relation (for
        team-scoped invitations), then the invitation is marked accepted.

        Args:
            invitation: The invitation being accepted.
            user_id: The accepting user.
            user_identifier: The identifier resolved for the accepting user.

        Returns:
            The new member row ID.

        Raises:
            InvalidStateError: If the invitation is not pending.
            InvitationExpiredError: If the invitation has expired.
            ForbiddenError: If the identifiers do not match.
            AlreadyExistsError: If the user is already a member.
        """
        self._require_pending_status(invitation)
        if invitation.is_expired:
            await self._mark_expired(invitation)
            raise InvitationExpiredError()

        if (
            user_identifier is None
            or normalize_identifier(user_identifier) != normalize_identifier(invitation.identifier)
        ):
            raise ForbiddenError("Invitation identifier does not match authenticated user")

        organization_id = invitation.organization_id
        if await self.repos.members.get_member(organization_id, user_id):
            raise AlreadyExistsError("You are already a member of this organization")

        now = utc_now()
        member_id = await self.repos.members.insert({
            "organization_id": organization_id,
            "user_id": user_id,
            "role": invitation.role,
            "status": MemberStatus.ACTIVE,
            "joined_at": now,
            "created_at": now,
        })
        await self.authz.assign_role(
            user_id, invitation.role, Scope.organization(organization_id), actor_id=invitation.inviter_id
        )

        if invitation.team_id:
            team = await self.repos.teams.get(invitation.team_id)
            if team is not None and not await self.repos.team_members.get_team_member(team.id, user_id):
                await self.repos.team_members.insert({
                    "team_id": team.id,
                    "user_id": user_id,
                    "role": None,
                    "created_at": now,
                })
                await self.authz.add_team_relation(user_id, team.id)

        await self.repos.invitations.patch(invitation.id, {"status": InvitationStatus.ACCEPTED})
        logger.info(f"Invitation accepted: {invitation.id} by {user_id}")
        return member_id

    async def resend(self, invitation: Invitation) -> Invitation:
        """
        Reset the expiry of a pending invitation.

        The new ``expires_at`` is always strictly later than the old one.

        Raises:
            InvalidStateError: If the invitation is not pending.
            InvitationExpiredError: If the invitation has already expired.
        """
        self._require_pending_status(invitation)
        if invitation.is_expired:
            await self._mark_expired(invitation)
            raise InvitationExpiredError("Invitation has expired. Please create a new one.")

        expires_at = self._expiry()
        if expires_at <= invitation.expires_at:
            expires_at = invitation.expires_at + timedelta(milliseconds=1)

        await self.repos.invitations.patch(invitation.id, {"expires_at": expires_at})
        logger.info(f"Invitation resent: {invitation.id}")
        return await self.require(invitation.id)

    async def cancel(self, invitation: Invitation) -> None:
        """
        Cancel a pending invitation. Cancellation is terminal.

        Raises:
            InvalidStateError: If the invitation is not pending.
        """
        self._require_pending_status(invitation)
        await self.repos.invitations.patch(invitation.id, {"status": InvitationStatus.CANCELLED})
        logger.info(f"Invitation cancelled: {invitation.id}")
