"""
Typed entity adapters over the document store.

Each repository is thin CRUD for one table: it serializes model fields into
JSON-compatible documents and maps rows back into Pydantic models. No
repository enforces referential integrity; the lifecycle services do.
"""

import logging
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from tenancy.storage.document_store import DocumentStore
from tenancy.types.organization import (
    AuditLogEntry,
    Invitation,
    InvitationStatus,
    Member,
    Organization,
    Team,
    TeamMember,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Repository(Generic[ModelT]):
    """Base adapter mapping one table to one model."""

    table: str = ""
    model: Type[BaseModel] = BaseModel

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _dump(fields: Dict[str, Any]) -> Dict[str, Any]:
        return to_jsonable_python(fields)

    def _map(self, data: Dict[str, Any]) -> ModelT:
        return self.model.model_validate(data)  # type: ignore[return-value]

    async def insert(self, fields: Dict[str, Any]) -> str:
        return await self.store.insert(self.table, self._dump(fields))

    async def get(self, doc_id: str) -> Optional[ModelT]:
        data = await self.store.get(self.table, doc_id)
        return self._map(data) if data else None

    async def find(self, **criteria: Any) -> List[ModelT]:
        rows = await self.store.find(self.table, **self._dump(criteria))
        return [self._map(row) for row in rows]

    async def find_one(self, **criteria: Any) -> Optional[ModelT]:
        data = await self.store.find_one(self.table, **self._dump(criteria))
        return self._map(data) if data else None

    async def count(self, **criteria: Any) -> int:
        return await self.store.count(self.table, **self._dump(criteria))

    async def patch(self, doc_id: str, fields: Dict[str, Any]) -> None:
        await self.store.patch(self.table, doc_id, self._dump(fields))

    async def delete(self, doc_id: str) -> None:
        await self.store.delete(self.table, doc_id)


class OrganizationRepository(Repository[Organization]):
    table = "organizations"
    model = Organization

    async def get_by_slug(self, slug: str) -> Optional[Organization]:
        return await self.find_one(slug=slug)

    async def list_all(self) -> List[Organization]:
        return await self.find()


class MemberRepository(Repository[Member]):
    table = "members"
    model = Member

    async def get_member(self, organization_id: str, user_id: str) -> Optional[Member]:
        return await self.find_one(organization_id=organization_id, user_id=user_id)

    async def list_for_organization(self, organization_id: str) -> List[Member]:
        return await self.find(organization_id=organization_id)

    async def list_for_user(self, user_id: str) -> List[Member]:
        return await self.find(user_id=user_id)


class TeamRepository(Repository[Team]):
    table = "teams"
    model = Team

    async def list_for_organization(self, organization_id: str) -> List[Team]:
        return await self.find(organization_id=organization_id)

    async def list_children(self, team_id: str) -> List[Team]:
        return await self.find(parent_team_id=team_id)

    async def get_by_slug(self, organization_id: str, slug: str) -> Optional[Team]:
        return await self.find_one(organization_id=organization_id, slug=slug)


class TeamMemberRepository(Repository[TeamMember]):
    table = "team_members"
    model = TeamMember

    async def get_team_member(self, team_id: str, user_id: str) -> Optional[TeamMember]:
        return await self.find_one(team_id=team_id, user_id=user_id)

    async def list_for_team(self, team_id: str) -> List[TeamMember]:
        return await self.find(team_id=team_id)

    async def list_for_user(self, user_id: str) -> List[TeamMember]:
        return await self.find(user_id=user_id)


class InvitationRepository(Repository[Invitation]):
    table = "invitations"
    model = Invitation

    async def list_for_organization(self, organization_id: str) -> List[Invitation]:
        return await self.find(organization_id=organization_id)

    async def list_pending_for_identifier(self, identifier: str) -> List[Invitation]:
        return await self.find(identifier=identifier, status=InvitationStatus.PENDING)


class AuditLogRepository(Repository[AuditLogEntry]):
    """
    Audit trail rows.

    Rows carry a flattened ``scope_key`` (``"{type}:{id}"``) so they can be
    looked up by scope through a single-field index.
    """

    table = "audit_logs"
    model = AuditLogEntry

    @staticmethod
    def scope_key(scope_type: str, scope_id: str) -> str:
        return f"{scope_type}:{scope_id}"

    def _map(self, data: Dict[str, Any]) -> AuditLogEntry:
        data = {k: v for k, v in data.items() if k != "scope_key"}
        return AuditLogEntry.model_validate(data)


class Repositories:
    """All entity adapters sharing one store."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.organizations = OrganizationRepository(store)
        self.members = MemberRepository(store)
        self.teams = TeamRepository(store)
        self.team_members = TeamMemberRepository(store)
        self.invitations = InvitationRepository(store)
        self.audit_logs = AuditLogRepository(store)
