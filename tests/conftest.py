"""
Pytest configuration and shared fixtures for tenancy tests.

This module provides common fixtures used across all test files:
- In-memory document store and policy engine
- Auth and profile resolvers driven by a plain dict context
- A ready ``Tenants`` orchestrator and a factory for customized ones
"""

import os
import sys

import pytest
import pytest_asyncio

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("REDIS_URL", None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tenancy.config import TenancySettings  # noqa: E402
from tenancy.organizations import AuditService, InMemoryAuthorizationClient, Tenants  # noqa: E402
from tenancy.storage import AuditLogRepository, InMemoryDocumentStore  # noqa: E402
from tenancy.types import OrganizationCreate  # noqa: E402


PROFILES = {
    "alice": {"name": "Alice", "email": "alice@test.com"},
    "bob": {"name": "Bob", "email": "bob@test.com"},
    "carol": {"name": "Carol", "email": "carol@test.com"},
    "dave": {"name": "Dave", "email": "dave@test.com"},
    "eve": {"name": "Eve", "email": "eve@other.com"},
}


def as_user(user_id):
    """Caller context understood by the test auth resolver."""
    return {"user_id": user_id}


@pytest.fixture
def store():
    """Fresh in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture
def audit_service(store):
    """Audit service writing to the shared store."""
    return AuditService(AuditLogRepository(store))


@pytest.fixture
def authz_client(audit_service):
    """In-memory policy engine with auditing."""
    return InMemoryAuthorizationClient(audit_service=audit_service)


@pytest.fixture
def tenancy_settings():
    """Default tenancy settings."""
    return TenancySettings()


@pytest.fixture
def profiles():
    """Mutable copy of the profile directory."""
    return {user_id: dict(profile) for user_id, profile in PROFILES.items()}


@pytest.fixture
def make_tenants(store, authz_client, audit_service, tenancy_settings, profiles):
    """Factory building orchestrators over the shared store and policy engine."""

    async def auth(ctx):
        return (ctx or {}).get("user_id")

    async def get_profile(user_id):
        return profiles.get(user_id)

    def factory(**overrides):
        options = {
            "store": store,
            "authorization": authz_client,
            "auth": auth,
            "get_profile": get_profile,
            "settings": tenancy_settings,
            "audit_service": audit_service,
        }
        options.update(overrides)
        return Tenants(**options)

    return factory


@pytest.fixture
def tenants(make_tenants):
    """Orchestrator with default settings and no observers."""
    return make_tenants()


@pytest_asyncio.fixture
async def acme(tenants):
    """Organization "Acme" owned by alice."""
    return await tenants.create_organization(as_user("alice"), OrganizationCreate(name="Acme"))


@pytest_asyncio.fixture
async def acme_with_bob(tenants, acme):
    """Acme with bob as an admin."""
    await tenants.add_member(as_user("alice"), acme, "bob", "admin")
    return acme
