"""
Tenancy orchestrator: the single entry point for organization management.

Every public operation follows the same pipeline:

1. Resolve the caller through the ``auth`` resolver (NotAuthenticated).
2. Require a membership in the target organization (UnauthorizedForScope,
   also used when the organization does not exist).
3. For mutations, require an active membership and an active organization.
4. Check the permission configured for the operation in the permission map.
5. Enforce configured limits.
6. Run ``before_*`` observers; raising from one aborts the operation.
7. Delegate to the lifecycle service (store writes, then policy sync).
8. Deliver ``on_*`` observers; their failures are logged and swallowed.

Usage:
    tenants = Tenants(
        store=InMemoryDocumentStore(),
        authorization=InMemoryAuthorizationClient(),
        auth=resolve_user_id,
        get_profile=load_profile,
    )
    org_id = await tenants.create_organization(ctx, OrganizationCreate(name="Acme"))
"""

import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from tenancy.config import TenancySettings, get_settings
from tenancy.organizations.audit_service import AuditService
from tenancy.organizations.authorization_sync import AuthorizationSync
from tenancy.organizations.errors import (
    ForbiddenError,
    InvalidStateError,
    LimitExceededError,
    NotAuthenticatedError,
    NotFoundError,
    UnauthorizedForScopeError,
)
from tenancy.organizations.events import (
    InvitationEvents,
    MembershipEvents,
    OrganizationEvents,
    TeamEvents,
    dispatch_after,
)
from tenancy.organizations.helpers import email_domain, paginate, sort_items
from tenancy.organizations.invitation_service import InvitationService
from tenancy.organizations.membership_service import MembershipService
from tenancy.organizations.organization_service import OrganizationService
from tenancy.organizations.rbac import (
    AuthorizationClient,
    PermissionRequirement,
    build_permission_map,
)
from tenancy.organizations.team_service import ALL_TEAMS, TeamMembershipService, TeamService
from tenancy.storage.document_store import DocumentStore
from tenancy.storage.repositories import Repositories
from tenancy.types.events import (
    BeforeInvitationCreate,
    BeforeInvitationDelete,
    BeforeInvitationUpdate,
    BeforeMemberAdd,
    BeforeMemberRemove,
    BeforeMemberUpdate,
    BeforeOrganizationCreate,
    BeforeOrganizationDelete,
    BeforeOrganizationUpdate,
    BeforeTeamCreate,
    BeforeTeamDelete,
    BeforeTeamUpdate,
    InvitationAccepted,
    InvitationCreated,
    MemberAdded,
    MemberLeft,
    MemberRemoved,
    MemberRoleChanged,
    OrganizationCreated,
    OrganizationDeleted,
    TeamCreated,
    TeamDeleted,
    TeamMemberAdded,
    TeamMemberRemoved,
)
from tenancy.types.organization import (
    AuditAction,
    AuditLogEntry,
    BulkResult,
    Invitation,
    InvitationCreate,
    InvitationSent,
    InvitationStatus,
    Member,
    MemberInput,
    MemberStatusFilter,
    MemberWithUser,
    Organization,
    OrganizationCreate,
    OrganizationStatus,
    OrganizationUpdate,
    OrganizationWithRole,
    Page,
    PermissionCheck,
    ResourceType,
    RoleAssignment,
    Scope,
    SortOrder,
    Team,
    TeamCreate,
    TeamMember,
    TeamTreeNode,
    TeamUpdate,
    UserProfile,
    normalize_identifier,
)
from tenancy.utils.logging import set_request_context

logger = logging.getLogger(__name__)

ORGANIZATION_SORT_FIELDS = ("name", "created_at", "slug")

AuthResolver = Callable[[Any], Union[Optional[str], Awaitable[Optional[str]]]]
ProfileResolver = Callable[[str], Union[Optional[Any], Awaitable[Optional[Any]]]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Tenants:
    """
    Orchestrator composing the organization, membership, team, invitation
    and authorization components behind one set of gates.
    """

    def __init__(
        self,
        store: DocumentStore,
        authorization: AuthorizationClient,
        auth: AuthResolver,
        get_profile: Optional[ProfileResolver] = None,
        settings: Optional[TenancySettings] = None,
        permission_map: Optional[Mapping[str, PermissionRequirement]] = None,
        audit_service: Optional[AuditService] = None,
        organization_events: Optional[OrganizationEvents] = None,
        membership_events: Optional[MembershipEvents] = None,
        team_events: Optional[TeamEvents] = None,
        invitation_events: Optional[InvitationEvents] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Document store backing every entity table.
            authorization: Policy engine client.
            auth: Resolves the caller's user ID from an opaque context;
                returns None when unauthenticated.
            get_profile: Resolves ``{name, email}`` for a user ID.
            settings: Tenancy settings (defaults to the global settings).
            permission_map: Overrides for the operation permission map.
            audit_service: Optional audit trail for organization changes.
            organization_events: Organization lifecycle observer.
            membership_events: Membership lifecycle observer.
            team_events: Team lifecycle observer.
            invitation_events: Invitation lifecycle observer.

        Raises:
            ValueError: If ``permission_map`` names an unknown operation.
        """
        self.settings = settings or get_settings().tenancy
        self.permission_map = build_permission_map(permission_map)
        self._auth = auth
        self._get_profile = get_profile

        self.repos = Repositories(store)
        self.authz = AuthorizationSync(authorization, self.repos.teams)
        self.organizations = OrganizationService(self.repos, self.authz, self.settings, audit_service)
        self.members = MembershipService(self.repos, self.authz, self.settings)
        self.teams = TeamService(self.repos, self.authz, self.settings)
        self.team_members = TeamMembershipService(self.repos, self.authz)
        self.invitations = InvitationService(self.repos, self.authz, self.settings)
        self.audit = audit_service

        self.organization_events = organization_events or OrganizationEvents()
        self.membership_events = membership_events or MembershipEvents()
        self.team_events = team_events or TeamEvents()
        self.invitation_events = invitation_events or InvitationEvents()

    # =========================================================================
    # Gates
    # =========================================================================

    async def _authenticate(self, ctx: Any) -> str:
        """
        Raises:
            NotAuthenticatedError: If the resolver yields no user.
        """
        user_id = await _resolve(self._auth(ctx))
        if not user_id:
            raise NotAuthenticatedError()
        set_request_context(user_id=user_id)
        return user_id

    async def _profile(self, user_id: str) -> Optional[UserProfile]:
        """Resolve a display profile. Resolver failures yield None."""
        if self._get_profile is None:
            return None
        try:
            profile = await _resolve(self._get_profile(user_id))
        except Exception:
            logger.warning(f"Profile lookup failed for {user_id}", exc_info=True)
            return None
        if profile is None:
            return None
        if isinstance(profile, UserProfile):
            return profile
        return UserProfile.model_validate(profile)

    async def _require_membership(self, user_id: str, organization_id: str) -> Tuple[Organization, Member]:
        """
        Raises:
            UnauthorizedForScopeError: If the organization does not exist or
                the user is not a member of it.
        """
        set_request_context(organization_id=organization_id)
        org = await self.organizations.get(organization_id)
        member = await self.members.get_member(organization_id, user_id) if org else None
        if org is None or member is None:
            raise UnauthorizedForScopeError()
        return org, member

    @staticmethod
    def _require_active_membership(member: Member) -> None:
        if not member.is_active:
            raise InvalidStateError("Your membership is suspended. You cannot perform this action.")

    @staticmethod
    def _require_active_organization(org: Organization) -> None:
        if org.status == OrganizationStatus.SUSPENDED:
            raise ForbiddenError("Organization is suspended")
        if org.status == OrganizationStatus.ARCHIVED:
            raise ForbiddenError("Organization is archived")

    async def _require_operation(self, operation: str, user_id: str, organization_id: str) -> None:
        """Check the permission mapped to ``operation``; ``False`` skips the check."""
        permission = self.permission_map.get(operation, False)
        if permission is False:
            return
        await self.authz.require(user_id, str(permission), Scope.organization(organization_id))

    async def _guard(
        self,
        ctx: Any,
        organization_id: str,
        operation: Optional[str] = None,
        check_organization_status: bool = True,
    ) -> Tuple[str, Organization, Member]:
        """Full mutation gate: auth, active membership, active org, permission."""
        user_id = await self._authenticate(ctx)
        org, member = await self._require_membership(user_id, organization_id)
        self._require_active_membership(member)
        if check_organization_status:
            self._require_active_organization(org)
        if operation:
            await self._require_operation(operation, user_id, organization_id)
        return user_id, org, member

    async def _read_guard(self, ctx: Any, organization_id: str) -> Tuple[str, Organization, Member]:
        user_id = await self._authenticate(ctx)
        org, member = await self._require_membership(user_id, organization_id)
        return user_id, org, member

    async def _enrich(self, members: Iterable[Member]) -> List[MemberWithUser]:
        return [
            MemberWithUser(**member.model_dump(), user=await self._profile(member.user_id))
            for member in members
        ]

    def _page_limit(self, limit: Optional[int]) -> int:
        return limit if limit is not None else self.settings.default_page_size

    # =========================================================================
    # Organizations
    # =========================================================================

    async def create_organization(self, ctx: Any, data: OrganizationCreate) -> str:
        """
        Create an organization owned by the caller.

        No permission check applies; the caller receives the creator role.

        Raises:
            LimitExceededError: If the caller already owns the maximum number
                of organizations.
        """
        user_id = await self._authenticate(ctx)

        limit = self.settings.max_organizations
        if limit is not None and await self.organizations.count_owned_by(user_id) >= limit:
            raise LimitExceededError(f"Maximum number of organizations ({limit}) reached.", limit=limit)

        await self.organization_events.before_create(BeforeOrganizationCreate(user_id=user_id, data=data))
        organization_id = await self.organizations.create(user_id, data)

        org = await self.organizations.get(organization_id)
        await dispatch_after(self.organization_events.on_created, OrganizationCreated(
            organization_id=organization_id,
            name=org.name if org else data.name,
            slug=org.slug if org else "",
            owner_id=user_id,
        ))
        return organization_id

    async def get_organization(self, ctx: Any, organization_id: str) -> OrganizationWithRole:
        _, org, member = await self._read_guard(ctx, organization_id)
        return OrganizationWithRole(**org.model_dump(), role=member.role)

    async def get_organization_by_slug(self, ctx: Any, slug: str) -> OrganizationWithRole:
        """
        Raises:
            UnauthorizedForScopeError: If no organization has the slug or the
                caller is not a member.
        """
        user_id = await self._authenticate(ctx)
        org = await self.organizations.get_by_slug(slug)
        if org is None:
            raise UnauthorizedForScopeError()
        org, member = await self._require_membership(user_id, org.id)
        return OrganizationWithRole(**org.model_dump(), role=member.role)

    async def list_organizations(
        self,
        ctx: Any,
        status: Optional[OrganizationStatus] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> List[OrganizationWithRole]:
        """Organizations the caller belongs to, with the caller's role in each."""
        user_id = await self._authenticate(ctx)
        orgs = await self.organizations.list_for_user(user_id)
        if status is not None:
            orgs = [o for o in orgs if o.status == OrganizationStatus(status)]
        return sort_items(orgs, sort_by, sort_order, ORGANIZATION_SORT_FIELDS)

    async def update_organization(
        self,
        ctx: Any,
        organization_id: str,
        changes: OrganizationUpdate,
    ) -> None:
        """
        Update an organization.

        A patch that sets ``status`` to active bypasses the active
        organization gate so suspended or archived organizations can be
        reactivated.
        """
        reactivating = (
            "status" in changes.model_fields_set and changes.status == OrganizationStatus.ACTIVE
        )
        user_id, _, _ = await self._guard(
            ctx, organization_id, "update_organization", check_organization_status=not reactivating
        )

        await self.organization_events.before_update(BeforeOrganizationUpdate(
            user_id=user_id, organization_id=organization_id, changes=changes,
        ))
        await self.organizations.update(user_id, organization_id, changes)

    async def delete_organization(self, ctx: Any, organization_id: str) -> None:
        user_id, org, _ = await self._guard(ctx, organization_id, "delete_organization")

        await self.organization_events.before_delete(BeforeOrganizationDelete(
            user_id=user_id, organization_id=organization_id,
        ))
        await self.organizations.delete(user_id, organization_id)

        await dispatch_after(self.organization_events.on_deleted, OrganizationDeleted(
            organization_id=organization_id, name=org.name, deleted_by=user_id,
        ))

    async def transfer_ownership(
        self,
        ctx: Any,
        organization_id: str,
        new_owner_id: str,
        previous_owner_role: Optional[str] = None,
    ) -> None:
        """
        Transfer structural ownership to another active member.

        The old owner's creator role is revoked and replaced by the fallback
        role, the new owner receives the creator role, and ``owner_id`` is
        updated last.

        Args:
            previous_owner_role: Role the old owner keeps. Defaults to the
                ``previous_owner_role`` setting.

        Raises:
            ForbiddenError: If the caller lacks the mapped permission or is
                not the structural owner.
            InvalidStateError: If the target is the caller or is suspended.
            NotFoundError: If the target is not a member.
        """
        user_id, org, caller = await self._guard(ctx, organization_id, "transfer_ownership")
        if org.owner_id != user_id:
            raise ForbiddenError("Only the current owner can transfer ownership")
        if new_owner_id == user_id:
            raise InvalidStateError("New owner must be a different user")

        target = await self.members.get_member(organization_id, new_owner_id)
        if target is None:
            raise NotFoundError("New owner must already be a member of the organization")
        if not target.is_active:
            raise InvalidStateError("New owner's membership is suspended")

        creator_role = self.settings.creator_role
        fallback_role = (previous_owner_role or "").strip() or self.settings.previous_owner_role
        scope = Scope.organization(organization_id)

        await self.repos.members.patch(caller.id, {"role": fallback_role})
        await self.authz.revoke_role(user_id, creator_role, scope, actor_id=user_id)
        if caller.role != creator_role:
            await self.authz.revoke_role(user_id, caller.role, scope, actor_id=user_id)
        await self.authz.assign_role(user_id, fallback_role, scope, actor_id=user_id)

        await self.repos.members.patch(target.id, {"role": creator_role})
        if target.role != creator_role:
            await self.authz.revoke_role(new_owner_id, target.role, scope, actor_id=user_id)
        await self.authz.assign_role(new_owner_id, creator_role, scope, actor_id=user_id)

        await self.organizations.set_owner(organization_id, new_owner_id)

        if self.audit:
            await self.audit.log(
                action=AuditAction.ORGANIZATION_TRANSFER,
                resource_type=ResourceType.ORGANIZATION,
                user_id=new_owner_id,
                actor_id=user_id,
                scope=scope,
                resource_id=organization_id,
                old_values={"owner_id": user_id},
                new_values={"owner_id": new_owner_id},
            )
        logger.info(f"Ownership transferred: {organization_id} {user_id} -> {new_owner_id}")

        await dispatch_after(self.membership_events.on_role_changed, MemberRoleChanged(
            organization_id=organization_id, user_id=user_id,
            old_role=caller.role, new_role=fallback_role, changed_by=user_id,
        ))
        await dispatch_after(self.membership_events.on_role_changed, MemberRoleChanged(
            organization_id=organization_id, user_id=new_owner_id,
            old_role=target.role, new_role=creator_role, changed_by=user_id,
        ))

    # =========================================================================
    # Domain Join
    # =========================================================================

    async def list_organizations_joinable_by_domain(self, ctx: Any) -> List[Organization]:
        """Active organizations allowing the caller's email domain, excluding current ones."""
        user_id = await self._authenticate(ctx)
        profile = await self._profile(user_id)
        domain = email_domain(profile.email if profile else None)
        if domain is None:
            return []
        joined = {m.organization_id for m in await self.repos.members.list_for_user(user_id)}
        return [
            org for org in await self.organizations.list_joinable_by_domain(domain)
            if org.id not in joined
        ]

    async def join_by_domain(self, ctx: Any, organization_id: str, role: str = "member") -> str:
        """
        Join an organization through its allowed email domains.

        Raises:
            UnauthorizedForScopeError: If the organization does not exist.
            ForbiddenError: If the caller's email domain is not allowed.
            AlreadyExistsError: If the caller is already a member.
        """
        user_id = await self._authenticate(ctx)
        org = await self.organizations.get(organization_id)
        if org is None:
            raise UnauthorizedForScopeError()
        profile = await self._profile(user_id)

        await self.membership_events.before_add(BeforeMemberAdd(
            user_id=user_id, organization_id=organization_id, member_user_id=user_id, role=role,
        ))
        member_id = await self.members.join_by_domain(org, user_id, profile.email if profile else None, role)

        await dispatch_after(self.membership_events.on_added, MemberAdded(
            organization_id=organization_id, user_id=user_id, role=role, added_by=user_id,
        ))
        return member_id

    # =========================================================================
    # Members
    # =========================================================================

    async def get_member(self, ctx: Any, organization_id: str, user_id: str) -> Optional[MemberWithUser]:
        await self._read_guard(ctx, organization_id)
        member = await self.members.get_member(organization_id, user_id)
        if member is None:
            return None
        return (await self._enrich([member]))[0]

    async def get_current_member(self, ctx: Any, organization_id: str) -> MemberWithUser:
        """The caller's own membership, enriched with their profile."""
        _, _, member = await self._read_guard(ctx, organization_id)
        return (await self._enrich([member]))[0]

    async def list_members(
        self,
        ctx: Any,
        organization_id: str,
        status: MemberStatusFilter = MemberStatusFilter.ACTIVE,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> List[MemberWithUser]:
        await self._read_guard(ctx, organization_id)
        members = await self.members.list_members(organization_id, status, sort_by, sort_order)
        return await self._enrich(members)

    async def list_members_paginated(
        self,
        ctx: Any,
        organization_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
        status: MemberStatusFilter = MemberStatusFilter.ACTIVE,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> Page[MemberWithUser]:
        await self._read_guard(ctx, organization_id)
        members = await self.members.list_members(organization_id, status, sort_by, sort_order)
        page = paginate(members, offset, self._page_limit(limit))
        return Page[MemberWithUser](
            items=await self._enrich(page.items),
            total=page.total,
            offset=page.offset,
            limit=page.limit,
        )

    async def count_members(
        self,
        ctx: Any,
        organization_id: str,
        status: MemberStatusFilter = MemberStatusFilter.ACTIVE,
    ) -> int:
        await self._read_guard(ctx, organization_id)
        return await self.members.count_members(organization_id, status)

    async def add_member(self, ctx: Any, organization_id: str, user_id: str, role: str) -> str:
        """
        Add a user to the organization with ``role``.

        Raises:
            AlreadyExistsError: If the user is already a member.
            LimitExceededError: If the member limit is reached.
        """
        actor_id, _, _ = await self._guard(ctx, organization_id, "add_member")
        await self.members.check_member_limit(organization_id)

        await self.membership_events.before_add(BeforeMemberAdd(
            user_id=actor_id, organization_id=organization_id, member_user_id=user_id, role=role,
        ))
        member_id = await self.members.add(actor_id, organization_id, user_id, role)

        await dispatch_after(self.membership_events.on_added, MemberAdded(
            organization_id=organization_id, user_id=user_id, role=role, added_by=actor_id,
        ))
        return member_id

    async def bulk_add_members(
        self,
        ctx: Any,
        organization_id: str,
        members: Iterable[MemberInput],
    ) -> BulkResult[str]:
        """
        Best-effort add; per-item failures land in ``errors``.

        ``before_add`` runs for each entry; raising from it skips that entry.
        """
        actor_id, _, _ = await self._guard(ctx, organization_id, "bulk_add_members")
        members = list(members)

        async def before_add(item: MemberInput) -> None:
            await self.membership_events.before_add(BeforeMemberAdd(
                user_id=actor_id, organization_id=organization_id,
                member_user_id=item.user_id, role=item.role,
            ))

        result = await self.members.bulk_add(actor_id, organization_id, members, before_add)

        roles = {item.user_id: item.role for item in members}
        for user_id in result.success:
            await dispatch_after(self.membership_events.on_added, MemberAdded(
                organization_id=organization_id, user_id=user_id, role=roles[user_id], added_by=actor_id,
            ))
        return result

    async def remove_member(self, ctx: Any, organization_id: str, user_id: str) -> None:
        actor_id, _, _ = await self._guard(ctx, organization_id, "remove_member")

        await self.membership_events.before_remove(BeforeMemberRemove(
            user_id=actor_id, organization_id=organization_id, member_user_id=user_id,
        ))
        await self.members.remove(actor_id, organization_id, user_id)

        await dispatch_after(self.membership_events.on_removed, MemberRemoved(
            organization_id=organization_id, user_id=user_id, removed_by=actor_id,
        ))

    async def bulk_remove_members(
        self,
        ctx: Any,
        organization_id: str,
        user_ids: Iterable[str],
    ) -> BulkResult[str]:
        actor_id, _, _ = await self._guard(ctx, organization_id, "bulk_remove_members")

        async def before_remove(user_id: str) -> None:
            await self.membership_events.before_remove(BeforeMemberRemove(
                user_id=actor_id, organization_id=organization_id, member_user_id=user_id,
            ))

        result = await self.members.bulk_remove(actor_id, organization_id, user_ids, before_remove)

        for user_id in result.success:
            await dispatch_after(self.membership_events.on_removed, MemberRemoved(
                organization_id=organization_id, user_id=user_id, removed_by=actor_id,
            ))
        return result

    async def update_member_role(self, ctx: Any, organization_id: str, user_id: str, role: str) -> None:
        actor_id, _, _ = await self._guard(ctx, organization_id, "update_member_role")

        await self.membership_events.before_update(BeforeMemberUpdate(
            user_id=actor_id, organization_id=organization_id, member_user_id=user_id,
            changes={"role": role},
        ))
        old_role = await self.members.update_role(actor_id, organization_id, user_id, role)

        await dispatch_after(self.membership_events.on_role_changed, MemberRoleChanged(
            organization_id=organization_id, user_id=user_id,
            old_role=old_role, new_role=role, changed_by=actor_id,
        ))

    async def suspend_member(self, ctx: Any, organization_id: str, user_id: str) -> None:
        """Suspend a member. Their roles stay assigned; their mutations are rejected."""
        actor_id, _, _ = await self._guard(ctx, organization_id, "suspend_member")

        await self.membership_events.before_update(BeforeMemberUpdate(
            user_id=actor_id, organization_id=organization_id, member_user_id=user_id,
            changes={"status": "suspended"},
        ))
        await self.members.suspend(organization_id, user_id)

    async def unsuspend_member(self, ctx: Any, organization_id: str, user_id: str) -> None:
        actor_id, _, _ = await self._guard(ctx, organization_id, "unsuspend_member")

        await self.membership_events.before_update(BeforeMemberUpdate(
            user_id=actor_id, organization_id=organization_id, member_user_id=user_id,
            changes={"status": "active"},
        ))
        await self.members.unsuspend(organization_id, user_id)

    async def leave_organization(self, ctx: Any, organization_id: str) -> None:
        """
        Remove the caller's own membership.

        Raises:
            ForbiddenError: If the caller is the structural owner.
            InvalidStateError: If the caller is the last creator-role holder.
        """
        user_id, _, _ = await self._guard(ctx, organization_id)

        await self.membership_events.before_remove(BeforeMemberRemove(
            user_id=user_id, organization_id=organization_id, member_user_id=user_id,
        ))
        await self.members.leave(user_id, organization_id)

        await dispatch_after(self.membership_events.on_left, MemberLeft(
            organization_id=organization_id, user_id=user_id,
        ))

    # =========================================================================
    # Teams
    # =========================================================================

    async def _team_guard(
        self, ctx: Any, team_id: str, operation: Optional[str] = None
    ) -> Tuple[str, Team]:
        team = await self.teams.require_team(team_id)
        if operation is None:
            user_id, _, _ = await self._read_guard(ctx, team.organization_id)
        else:
            user_id, _, _ = await self._guard(ctx, team.organization_id, operation)
        return user_id, team

    async def create_team(self, ctx: Any, organization_id: str, data: TeamCreate) -> str:
        """
        Raises:
            NotFoundError: If the parent team does not exist.
            ForbiddenError: If the parent team is in another organization.
            LimitExceededError: If the team limit is reached.
        """
        actor_id, _, _ = await self._guard(ctx, organization_id, "create_team")
        await self.teams.check_team_limit(organization_id)

        await self.team_events.before_create(BeforeTeamCreate(
            user_id=actor_id, organization_id=organization_id, data=data,
        ))
        team_id = await self.teams.create(actor_id, organization_id, data)

        await dispatch_after(self.team_events.on_created, TeamCreated(
            team_id=team_id, name=data.name, organization_id=organization_id, created_by=actor_id,
        ))
        return team_id

    async def get_team(self, ctx: Any, team_id: str) -> Optional[Team]:
        team = await self.teams.get_team(team_id)
        if team is None:
            return None
        await self._read_guard(ctx, team.organization_id)
        return team

    async def list_teams(
        self,
        ctx: Any,
        organization_id: str,
        parent_team_id: Any = ALL_TEAMS,
    ) -> List[Team]:
        """Every team by default; ``parent_team_id=None`` for roots, an ID for children."""
        await self._read_guard(ctx, organization_id)
        return await self.teams.list_teams(organization_id, parent_team_id)

    async def list_teams_as_tree(self, ctx: Any, organization_id: str) -> List[TeamTreeNode]:
        await self._read_guard(ctx, organization_id)
        return await self.teams.list_as_tree(organization_id)

    async def list_teams_paginated(
        self,
        ctx: Any,
        organization_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Page[Team]:
        await self._read_guard(ctx, organization_id)
        teams = await self.teams.list_teams(organization_id)
        page = paginate(teams, offset, self._page_limit(limit))
        return Page[Team](items=page.items, total=page.total, offset=page.offset, limit=page.limit)

    async def count_teams(self, ctx: Any, organization_id: str) -> int:
        await self._read_guard(ctx, organization_id)
        return await self.teams.count_teams(organization_id)

    async def update_team(self, ctx: Any, team_id: str, changes: TeamUpdate) -> None:
        actor_id, _ = await self._team_guard(ctx, team_id, "update_team")

        await self.team_events.before_update(BeforeTeamUpdate(
            user_id=actor_id, team_id=team_id, changes=changes,
        ))
        await self.teams.update(actor_id, team_id, changes)

    async def delete_team(self, ctx: Any, team_id: str) -> None:
        """Delete a team; its children move up to the team's parent."""
        actor_id, team = await self._team_guard(ctx, team_id, "delete_team")

        await self.team_events.before_delete(BeforeTeamDelete(user_id=actor_id, team_id=team_id))
        await self.teams.delete(actor_id, team_id)

        await dispatch_after(self.team_events.on_deleted, TeamDeleted(
            team_id=team_id, name=team.name, organization_id=team.organization_id, deleted_by=actor_id,
        ))

    async def add_team_member(
        self,
        ctx: Any,
        team_id: str,
        user_id: str,
        role: Optional[str] = None,
    ) -> str:
        """
        Raises:
            ForbiddenError: If the user is not a member of the team's organization.
            AlreadyExistsError: If the user is already on the team.
        """
        actor_id, team = await self._team_guard(ctx, team_id, "add_team_member")
        team_member_id = await self.team_members.add(actor_id, team, user_id, role)

        await dispatch_after(self.team_events.on_member_added, TeamMemberAdded(
            team_id=team_id, user_id=user_id, added_by=actor_id,
        ))
        return team_member_id

    async def update_team_member_role(
        self,
        ctx: Any,
        team_id: str,
        user_id: str,
        role: Optional[str],
    ) -> None:
        await self._team_guard(ctx, team_id, "update_team_member_role")
        await self.team_members.update_role(team_id, user_id, role)

    async def remove_team_member(self, ctx: Any, team_id: str, user_id: str) -> None:
        actor_id, _ = await self._team_guard(ctx, team_id, "remove_team_member")
        await self.team_members.remove(actor_id, team_id, user_id)

        await dispatch_after(self.team_events.on_member_removed, TeamMemberRemoved(
            team_id=team_id, user_id=user_id, removed_by=actor_id,
        ))

    async def list_team_members(
        self,
        ctx: Any,
        team_id: str,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.ASC,
    ) -> List[TeamMember]:
        await self._team_guard(ctx, team_id)
        return await self.team_members.list_team_members(team_id, sort_by, sort_order)

    async def is_team_member(self, ctx: Any, team_id: str, user_id: str) -> bool:
        await self._team_guard(ctx, team_id)
        return await self.team_members.is_team_member(team_id, user_id)

    # =========================================================================
    # Invitations
    # =========================================================================

    @staticmethod
    def _invitation_event(invitation: Invitation, organization_name: str, resent: bool) -> InvitationCreated:
        return InvitationCreated(
            invitation_id=invitation.id,
            identifier=invitation.identifier,
            organization_id=invitation.organization_id,
            organization_name=organization_name,
            role=invitation.role,
            inviter_name=invitation.inviter_name,
            expires_at=invitation.expires_at,
            team_id=invitation.team_id,
            message=invitation.message,
            resent=resent,
        )

    async def invite_member(self, ctx: Any, organization_id: str, data: InvitationCreate) -> str:
        """
        Invite an identifier to the organization.

        Raises:
            AlreadyExistsError: If a pending invitation exists for the identifier.
            NotFoundError: If ``data.team_id`` does not exist.
            ForbiddenError: If the team belongs to another organization.
        """
        inviter_id, org, _ = await self._guard(ctx, organization_id, "invite_member")

        await self.invitation_events.before_create(BeforeInvitationCreate(
            user_id=inviter_id, organization_id=organization_id,
            identifier=data.identifier, role=data.role, team_id=data.team_id,
        ))
        profile = await self._profile(inviter_id)
        invitation = await self.invitations.create(
            inviter_id, organization_id, data, inviter_name=profile.name if profile else None,
        )

        await dispatch_after(
            self.invitation_events.on_created,
            self._invitation_event(invitation, org.name, resent=False),
        )
        return invitation.id

    async def bulk_invite_members(
        self,
        ctx: Any,
        organization_id: str,
        invitations: Iterable[InvitationCreate],
    ) -> BulkResult[InvitationSent]:
        inviter_id, org, _ = await self._guard(ctx, organization_id, "bulk_invite_members")
        profile = await self._profile(inviter_id)

        async def before_create(data: InvitationCreate) -> None:
            await self.invitation_events.before_create(BeforeInvitationCreate(
                user_id=inviter_id, organization_id=organization_id,
                identifier=data.identifier, role=data.role, team_id=data.team_id,
            ))

        result = await self.invitations.bulk_create(
            inviter_id, organization_id, invitations,
            inviter_name=profile.name if profile else None,
            before_create=before_create,
        )

        for sent in result.success:
            invitation = await self.invitations.get(sent.invitation_id)
            if invitation is not None:
                await dispatch_after(
                    self.invitation_events.on_created,
                    self._invitation_event(invitation, org.name, resent=False),
                )
        return result

    async def get_invitation(self, ctx: Any, invitation_id: str) -> Optional[Invitation]:
        """
        Visible to members of the inviting organization and to the invitee.
        """
        user_id = await self._authenticate(ctx)
        invitation = await self.invitations.get(invitation_id)
        if invitation is None:
            return None
        profile = await self._profile(user_id)
        if profile and profile.email and normalize_identifier(profile.email) == invitation.identifier:
            return invitation
        await self._require_membership(user_id, invitation.organization_id)
        return invitation

    async def list_invitations(
        self,
        ctx: Any,
        organization_id: str,
        status: Optional[InvitationStatus] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> List[Invitation]:
        await self._read_guard(ctx, organization_id)
        return await self.invitations.list_invitations(organization_id, status, sort_by, sort_order)

    async def list_invitations_paginated(
        self,
        ctx: Any,
        organization_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
        status: Optional[InvitationStatus] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
    ) -> Page[Invitation]:
        await self._read_guard(ctx, organization_id)
        invitations = await self.invitations.list_invitations(organization_id, status, sort_by, sort_order)
        page = paginate(invitations, offset, self._page_limit(limit))
        return Page[Invitation](items=page.items, total=page.total, offset=page.offset, limit=page.limit)

    async def count_invitations(
        self,
        ctx: Any,
        organization_id: str,
        status: Optional[InvitationStatus] = None,
    ) -> int:
        await self._read_guard(ctx, organization_id)
        return await self.invitations.count_invitations(organization_id, status)

    async def get_pending_invitations(self, ctx: Any, identifier: str) -> List[Invitation]:
        """
        Pending invitations for ``identifier`` across all organizations.

        Raises:
            ForbiddenError: If ``identifier`` is not the caller's own.
        """
        user_id = await self._authenticate(ctx)
        profile = await self._profile(user_id)
        own = profile.email if profile else None
        if own is None or normalize_identifier(own) != normalize_identifier(identifier):
            raise ForbiddenError("Cannot query invitations for another identifier")
        return await self.invitations.list_pending_for_identifier(identifier)

    async def accept_invitation(self, ctx: Any, invitation_id: str) -> str:
        """
        Accept an invitation as the caller.

        The caller's identifier comes from the profile resolver and must
        match the invited identifier.

        Returns:
            The new member row ID.

        Raises:
            NotFoundError: If the invitation does not exist.
            InvalidStateError: If it is no longer pending.
            InvitationExpiredError: If it has expired.
            ForbiddenError: On identifier mismatch.
        """
        user_id = await self._authenticate(ctx)
        invitation = await self.invitations.require(invitation_id)
        org = await self.organizations.get(invitation.organization_id)
        if org is None:
            raise NotFoundError("Invitation not found")
        self._require_active_organization(org)

        profile = await self._profile(user_id)
        await self.members.check_member_limit(org.id)

        await self.invitation_events.before_update(BeforeInvitationUpdate(
            user_id=user_id, invitation_id=invitation_id, action="accept",
        ))
        member_id = await self.invitations.accept(invitation, user_id, profile.email if profile else None)

        await dispatch_after(self.invitation_events.on_accepted, InvitationAccepted(
            invitation_id=invitation.id,
            organization_id=org.id,
            organization_name=org.name,
            user_id=user_id,
            role=invitation.role,
            identifier=invitation.identifier,
        ))
        return member_id

    async def resend_invitation(self, ctx: Any, invitation_id: str) -> datetime:
        """
        Reset an invitation's expiry and re-deliver it.

        Returns:
            The new ``expires_at``.
        """
        invitation = await self.invitations.require(invitation_id)
        actor_id, org, _ = await self._guard(ctx, invitation.organization_id, "resend_invitation")

        await self.invitation_events.before_update(BeforeInvitationUpdate(
            user_id=actor_id, invitation_id=invitation_id, action="resend",
        ))
        updated = await self.invitations.resend(invitation)

        await dispatch_after(
            self.invitation_events.on_resent,
            self._invitation_event(updated, org.name, resent=True),
        )
        return updated.expires_at

    async def cancel_invitation(self, ctx: Any, invitation_id: str) -> None:
        invitation = await self.invitations.require(invitation_id)
        actor_id, _, _ = await self._guard(ctx, invitation.organization_id, "cancel_invitation")

        await self.invitation_events.before_delete(BeforeInvitationDelete(
            user_id=actor_id, invitation_id=invitation_id,
        ))
        await self.invitations.cancel(invitation)

    # =========================================================================
    # Authorization
    # =========================================================================

    async def check_permission(self, ctx: Any, organization_id: str, permission: str) -> PermissionCheck:
        """Evaluate ``permission`` for the caller and explain the outcome."""
        user_id, _, _ = await self._read_guard(ctx, organization_id)
        return await self.authz.check(user_id, permission, Scope.organization(organization_id))

    async def can(self, ctx: Any, organization_id: str, permission: str) -> bool:
        return (await self.check_permission(ctx, organization_id, permission)).allowed

    async def get_user_permissions(self, ctx: Any, organization_id: str) -> List[str]:
        user_id, _, _ = await self._read_guard(ctx, organization_id)
        return await self.authz.get_user_permissions(user_id, Scope.organization(organization_id))

    async def get_user_roles(self, ctx: Any, organization_id: str) -> List[RoleAssignment]:
        user_id, _, _ = await self._read_guard(ctx, organization_id)
        return await self.authz.get_user_roles(user_id, Scope.organization(organization_id))

    async def grant_permission(
        self,
        ctx: Any,
        organization_id: str,
        user_id: str,
        permission: str,
        scope: Optional[Scope] = None,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """
        Grant ``permission`` directly to ``user_id``.

        Raises:
            ForbiddenError: If ``scope`` lies outside the organization.
        """
        actor_id, _, _ = await self._guard(ctx, organization_id, "grant_permission")
        resolved = await self.authz.resolve_scope(organization_id, scope)
        await self.authz.grant_permission(
            user_id, permission, resolved, reason=reason, expires_at=expires_at, actor_id=actor_id,
        )
        logger.info(f"Permission granted: {permission} to {user_id} in {resolved.type.value}:{resolved.id}")

    async def deny_permission(
        self,
        ctx: Any,
        organization_id: str,
        user_id: str,
        permission: str,
        scope: Optional[Scope] = None,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Deny ``permission`` to ``user_id``; denials override grants and roles."""
        actor_id, _, _ = await self._guard(ctx, organization_id, "deny_permission")
        resolved = await self.authz.resolve_scope(organization_id, scope)
        await self.authz.deny_permission(
            user_id, permission, resolved, reason=reason, expires_at=expires_at, actor_id=actor_id,
        )
        logger.info(f"Permission denied: {permission} to {user_id} in {resolved.type.value}:{resolved.id}")

    async def get_audit_log(
        self,
        ctx: Any,
        organization_id: str,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        """Read-only audit trail of an organization and its teams."""
        await self._read_guard(ctx, organization_id)
        return await self.authz.get_audit_log(organization_id, user_id, action, limit, offset)


# =============================================================================
# Service Singleton
# =============================================================================


_tenants: Optional[Tenants] = None


def get_tenants() -> Tenants:
    """
    Get the orchestrator singleton.

    Raises:
        RuntimeError: If not initialized.
    """
    if _tenants is None:
        raise RuntimeError("Tenants not initialized. Call init_tenants() first.")
    return _tenants


def init_tenants(*args: Any, **kwargs: Any) -> Tenants:
    """
    Initialize the orchestrator singleton.

    Accepts the same arguments as ``Tenants``.
    """
    global _tenants
    _tenants = Tenants(*args, **kwargs)
    logger.info("Tenants initialized")
    return _tenants
