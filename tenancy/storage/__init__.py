"""Document storage and typed entity adapters."""

from .document_store import (
    DocumentNotFoundError,
    DocumentStore,
    InMemoryDocumentStore,
    RedisDocumentStore,
    TABLE_INDEXES,
    create_document_store,
)
from .redis_client import RedisClient
from .repositories import (
    AuditLogRepository,
    InvitationRepository,
    MemberRepository,
    OrganizationRepository,
    Repositories,
    TeamMemberRepository,
    TeamRepository,
)

__all__ = [
    "DocumentStore",
    "DocumentNotFoundError",
    "InMemoryDocumentStore",
    "RedisDocumentStore",
    "TABLE_INDEXES",
    "create_document_store",
    "RedisClient",
    "Repositories",
    "OrganizationRepository",
    "MemberRepository",
    "TeamRepository",
    "TeamMemberRepository",
    "InvitationRepository",
    "AuditLogRepository",
]
