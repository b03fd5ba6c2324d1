"""
Lifecycle event observers.

Subclass one of the observer bases and override the methods you care about;
every method defaults to a no-op.

- ``before_*`` methods run before anything is written. Raising from one
  aborts the operation and the exception reaches the caller unchanged.
- ``on_*`` methods run after the mutation has been committed. Their
  failures are logged and swallowed; they never change the outcome.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

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

logger = logging.getLogger(__name__)


class OrganizationEvents:
    async def before_create(self, event: BeforeOrganizationCreate) -> None:
        pass

    async def before_update(self, event: BeforeOrganizationUpdate) -> None:
        pass

    async def before_delete(self, event: BeforeOrganizationDelete) -> None:
        pass

    async def on_created(self, event: OrganizationCreated) -> None:
        pass

    async def on_deleted(self, event: OrganizationDeleted) -> None:
        pass


class MembershipEvents:
    async def before_add(self, event: BeforeMemberAdd) -> None:
        pass

    async def before_update(self, event: BeforeMemberUpdate) -> None:
        pass

    async def before_remove(self, event: BeforeMemberRemove) -> None:
        pass

    async def on_added(self, event: MemberAdded) -> None:
        pass

    async def on_removed(self, event: MemberRemoved) -> None:
        pass

    async def on_role_changed(self, event: MemberRoleChanged) -> None:
        pass

    async def on_left(self, event: MemberLeft) -> None:
        pass


class TeamEvents:
    async def before_create(self, event: BeforeTeamCreate) -> None:
        pass

    async def before_update(self, event: BeforeTeamUpdate) -> None:
        pass

    async def before_delete(self, event: BeforeTeamDelete) -> None:
        pass

    async def on_created(self, event: TeamCreated) -> None:
        pass

    async def on_deleted(self, event: TeamDeleted) -> None:
        pass

    async def on_member_added(self, event: TeamMemberAdded) -> None:
        pass

    async def on_member_removed(self, event: TeamMemberRemoved) -> None:
        pass


class InvitationEvents:
    async def before_create(self, event: BeforeInvitationCreate) -> None:
        pass

    async def before_update(self, event: BeforeInvitationUpdate) -> None:
        pass

    async def before_delete(self, event: BeforeInvitationDelete) -> None:
        pass

    async def on_created(self, event: InvitationCreated) -> None:
        """Called for new invitations. Notification delivery belongs here."""

    async def on_resent(self, event: InvitationCreated) -> None:
        """Called on resend with ``event.resent`` set."""

    async def on_accepted(self, event: InvitationAccepted) -> None:
        pass


async def dispatch_after(
    hook: Optional[Callable[[Any], Awaitable[None]]],
    event: Any,
) -> None:
    """
    Deliver an after-event, logging and swallowing any failure.

    Args:
        hook: Bound observer method, or None.
        event: The event payload.
    """
    if hook is None:
        return
    try:
        await hook(event)
    except Exception:
        logger.exception(
            f"Event hook {getattr(hook, '__qualname__', hook)} failed",
            extra={"event_type": type(event).__name__},
        )
