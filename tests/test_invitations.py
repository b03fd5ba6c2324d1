"""
Tests for the invitation lifecycle.

Verifies that:
- Identifiers are normalized and matched case-insensitively
- Only the invited identifier can accept
- The pending state is the only one that transitions
- Expiry is detected lazily and recorded
- Team-scoped invitations add the team membership on accept
- Observers receive the inviter name snapshot and resend flag
"""

from datetime import timedelta

import pytest

from conftest import as_user
from tenancy.organizations import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    InvitationEvents,
    InvitationExpiredError,
    UnauthorizedForScopeError,
)
from tenancy.types import (
    InvitationCreate,
    InvitationStatus,
    OrganizationCreate,
    Scope,
    TeamCreate,
    utc_now,
)


def invite(identifier, role="member", **kwargs):
    return InvitationCreate(identifier=identifier, role=role, **kwargs)


class RecordingInvitationEvents(InvitationEvents):
    """Collects delivered invitation events."""

    def __init__(self):
        self.created = []
        self.resent = []
        self.accepted = []

    async def on_created(self, event):
        self.created.append(event)

    async def on_resent(self, event):
        self.resent.append(event)

    async def on_accepted(self, event):
        self.accepted.append(event)


class TestCreateInvitation:
    """Tests for creating invitations."""

    @pytest.mark.asyncio
    async def test_identifier_normalized(self, tenants, acme):
        """Test identifiers are stored trimmed and lowercased."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("  Dave@Test.COM "))

        invitation = await tenants.get_invitation(as_user("alice"), invitation_id)
        assert invitation.identifier == "dave@test.com"
        assert invitation.status == InvitationStatus.PENDING
        assert invitation.inviter_id == "alice"
        assert invitation.inviter_name == "Alice"

    @pytest.mark.asyncio
    async def test_default_expiry(self, tenants, acme):
        """Test invitations expire after the configured window."""
        before = utc_now()
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        invitation = await tenants.get_invitation(as_user("alice"), invitation_id)
        assert before + timedelta(hours=47) < invitation.expires_at <= utc_now() + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_duplicate_pending_rejected(self, tenants, acme):
        """Test only one pending invitation per identifier and organization."""
        await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        with pytest.raises(AlreadyExistsError) as exc_info:
            await tenants.invite_member(as_user("alice"), acme, invite("DAVE@test.com"))

        assert exc_info.value.message == "A pending invitation already exists for this identifier"

    @pytest.mark.asyncio
    async def test_same_identifier_in_other_organization(self, tenants, acme):
        """Test duplicates are checked per organization."""
        other = await tenants.create_organization(as_user("alice"), OrganizationCreate(name="Globex"))
        await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        await tenants.invite_member(as_user("alice"), other, invite("dave@test.com"))

        pending = await tenants.get_pending_invitations(as_user("dave"), "dave@test.com")
        assert {i.organization_id for i in pending} == {acme, other}

    @pytest.mark.asyncio
    async def test_foreign_team_rejected(self, tenants, acme):
        """Test team-scoped invitations must name a team of the organization."""
        other = await tenants.create_organization(as_user("alice"), OrganizationCreate(name="Globex"))
        foreign = await tenants.create_team(as_user("alice"), other, TeamCreate(name="Ops"))

        with pytest.raises(ForbiddenError) as exc_info:
            await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com", team_id=foreign))

        assert exc_info.value.message == "Team must belong to the invitation organization"

    @pytest.mark.asyncio
    async def test_bulk_invite_reports_failures(self, tenants, acme):
        """Test bulk invites are best-effort and keyed by identifier."""
        await tenants.invite_member(as_user("alice"), acme, invite("carol@test.com"))

        result = await tenants.bulk_invite_members(as_user("alice"), acme, [
            invite("dave@test.com"),
            invite("carol@test.com"),
            invite("eve@other.com", team_id="missing"),
        ])

        assert [s.identifier for s in result.success] == ["dave@test.com"]
        assert {(e.id, e.code) for e in result.errors} == {
            ("carol@test.com", "ALREADY_EXISTS"),
            ("eve@other.com", "NOT_FOUND"),
        }
        assert await tenants.count_invitations(as_user("alice"), acme, status="pending") == 2


class TestReadInvitations:
    """Tests for invitation visibility."""

    @pytest.mark.asyncio
    async def test_invitee_can_read_own_invitation(self, tenants, acme):
        """Test the invitee sees the invitation without being a member."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        invitation = await tenants.get_invitation(as_user("dave"), invitation_id)

        assert invitation.id == invitation_id

    @pytest.mark.asyncio
    async def test_outsider_cannot_read(self, tenants, acme):
        """Test unrelated users cannot read an invitation."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        with pytest.raises(UnauthorizedForScopeError):
            await tenants.get_invitation(as_user("eve"), invitation_id)

    @pytest.mark.asyncio
    async def test_pending_for_another_identifier_forbidden(self, tenants, acme):
        """Test callers can only query their own pending invitations."""
        with pytest.raises(ForbiddenError) as exc_info:
            await tenants.get_pending_invitations(as_user("eve"), "dave@test.com")

        assert exc_info.value.message == "Cannot query invitations for another identifier"

    @pytest.mark.asyncio
    async def test_list_by_status(self, tenants, acme):
        """Test listing filters by status."""
        first = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))
        await tenants.invite_member(as_user("alice"), acme, invite("carol@test.com"))
        await tenants.cancel_invitation(as_user("alice"), first)

        pending = await tenants.list_invitations(as_user("alice"), acme, status="pending")
        cancelled = await tenants.list_invitations(as_user("alice"), acme, status="cancelled")

        assert [i.identifier for i in pending] == ["carol@test.com"]
        assert [i.id for i in cancelled] == [first]


class TestAcceptInvitation:
    """Tests for accepting invitations."""

    @pytest.mark.asyncio
    async def test_accept_is_case_insensitive(self, tenants, acme, profiles, authz_client):
        """Test the caller's identifier is compared after normalization."""
        profiles["dave"]["email"] = "DAVE@test.com "
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("Dave@Test.com ", role="admin"))

        await tenants.accept_invitation(as_user("dave"), invitation_id)

        member = await tenants.get_member(as_user("alice"), acme, "dave")
        assert member.role == "admin"
        roles = await authz_client.get_user_roles("dave", Scope.organization(acme))
        assert [r.role for r in roles] == ["admin"]
        assert (await tenants.get_invitation(as_user("alice"), invitation_id)).status == InvitationStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_wrong_user_cannot_accept(self, tenants, acme):
        """Test an invitation for one identifier cannot be accepted by another user."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        with pytest.raises(ForbiddenError) as exc_info:
            await tenants.accept_invitation(as_user("bob"), invitation_id)

        assert exc_info.value.message == "Invitation identifier does not match authenticated user"
        assert await tenants.get_member(as_user("alice"), acme, "bob") is None
        assert (await tenants.get_invitation(as_user("alice"), invitation_id)).status == InvitationStatus.PENDING

    @pytest.mark.asyncio
    async def test_existing_member_cannot_accept(self, tenants, acme_with_bob):
        """Test accepting into an organization the caller already belongs to fails."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme_with_bob, invite("bob@test.com"))

        with pytest.raises(AlreadyExistsError):
            await tenants.accept_invitation(as_user("bob"), invitation_id)

    @pytest.mark.asyncio
    async def test_expired_invitation(self, tenants, acme):
        """Test an expired invitation is marked expired on use."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))
        await tenants.repos.invitations.patch(invitation_id, {"expires_at": utc_now() - timedelta(minutes=1)})

        with pytest.raises(InvitationExpiredError):
            await tenants.accept_invitation(as_user("dave"), invitation_id)

        invitation = await tenants.invitations.get(invitation_id)
        assert invitation.status == InvitationStatus.EXPIRED
        assert await tenants.get_pending_invitations(as_user("dave"), "dave@test.com") == []

    @pytest.mark.asyncio
    async def test_team_scoped_accept(self, tenants, acme, authz_client):
        """Test a team-scoped invitation adds the team membership."""
        team_id = await tenants.create_team(as_user("alice"), acme, TeamCreate(name="Eng"))
        invitation_id = await tenants.invite_member(
            as_user("alice"), acme, invite("dave@test.com", team_id=team_id)
        )

        await tenants.accept_invitation(as_user("dave"), invitation_id)

        assert await tenants.is_team_member(as_user("dave"), team_id, "dave")
        assert await authz_client.has_relation("dave", "member", "team", team_id)

    @pytest.mark.asyncio
    async def test_accept_notifies_observer(self, make_tenants, acme):
        """Test acceptance is delivered to the invitation observer."""
        events = RecordingInvitationEvents()
        tenants = make_tenants(invitation_events=events)
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        await tenants.accept_invitation(as_user("dave"), invitation_id)

        assert len(events.accepted) == 1
        assert events.accepted[0].user_id == "dave"
        assert events.accepted[0].organization_name == "Acme"


class TestInvitationStateMachine:
    """Tests for resend and cancel."""

    @pytest.mark.asyncio
    async def test_resend_then_cancel_then_accept(self, tenants, acme):
        """Test resend extends expiry and cancellation is terminal."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))
        first_expiry = (await tenants.get_invitation(as_user("alice"), invitation_id)).expires_at

        new_expiry = await tenants.resend_invitation(as_user("alice"), invitation_id)
        assert new_expiry > first_expiry

        await tenants.cancel_invitation(as_user("alice"), invitation_id)

        with pytest.raises(InvalidStateError) as exc_info:
            await tenants.accept_invitation(as_user("dave"), invitation_id)
        assert exc_info.value.message == "Invitation has already been cancelled"

        with pytest.raises(InvalidStateError):
            await tenants.cancel_invitation(as_user("alice"), invitation_id)

    @pytest.mark.asyncio
    async def test_resend_expired_rejected(self, tenants, acme):
        """Test expired invitations cannot be resent."""
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))
        await tenants.repos.invitations.patch(invitation_id, {"expires_at": utc_now() - timedelta(minutes=1)})

        with pytest.raises(InvitationExpiredError) as exc_info:
            await tenants.resend_invitation(as_user("alice"), invitation_id)

        assert exc_info.value.message == "Invitation has expired. Please create a new one."

    @pytest.mark.asyncio
    async def test_observer_receives_inviter_name_and_resend_flag(self, make_tenants, acme):
        """Test created and resent events carry the delivery details."""
        events = RecordingInvitationEvents()
        tenants = make_tenants(invitation_events=events)

        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))
        await tenants.resend_invitation(as_user("alice"), invitation_id)

        assert events.created[0].inviter_name == "Alice"
        assert events.created[0].organization_name == "Acme"
        assert events.created[0].resent is False
        assert events.resent[0].resent is True
        assert events.resent[0].invitation_id == invitation_id

    @pytest.mark.asyncio
    async def test_member_cannot_cancel(self, tenants, acme):
        """Test invitations:cancel is required."""
        await tenants.add_member(as_user("alice"), acme, "bob", "member")
        invitation_id = await tenants.invite_member(as_user("alice"), acme, invite("dave@test.com"))

        with pytest.raises(ForbiddenError):
            await tenants.cancel_invitation(as_user("bob"), invitation_id)
