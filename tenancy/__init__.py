"""
Multi-tenant organization management.

Organizations, members, nested teams and invitations kept consistent with an
external authorization model. Start from :class:`tenancy.organizations.Tenants`.
"""

__version__ = "0.1.0"
