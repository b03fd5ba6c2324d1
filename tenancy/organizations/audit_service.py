"""
Audit logging service for authorization and organization activity.

This module provides:
- Audit logging of role, permission and organization changes
- Query capabilities for audit logs
- An append-only audit trail

Security Notes:
- Audit logs are append-only (no update/delete operations)
- Sensitive data is filtered before logging
- All timestamps are in UTC
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from tenancy.storage.repositories import AuditLogRepository
from tenancy.types.organization import (
    AuditAction,
    AuditLogEntry,
    AuditLogQuery,
    ResourceType,
    Scope,
    ScopeType,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================


# Fields that should never be logged (even in metadata)
SENSITIVE_FIELDS = frozenset({
    "password",
    "api_key",
    "secret",
    "token",
    "private_key",
})

# Maximum size for logged values (truncate if larger)
MAX_VALUE_SIZE = 10000


# =============================================================================
# Audit Service
# =============================================================================


class AuditService:
    """
    Service for managing audit logs.

    All operations are designed to be fail-safe: audit logging failures
    never break the main flow.
    """

    def __init__(self, repository: AuditLogRepository):
        """
        Initialize the audit service.

        Args:
            repository: Audit log adapter over the document store.
        """
        self.repository = repository

    async def log(
        self,
        action: Union[AuditAction, str],
        resource_type: Union[ResourceType, str],
        user_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        scope: Optional[Scope] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[str]:
        """
        Log an audit event.

        Exceptions are caught and logged but not raised.

        Args:
            action: The action performed.
            resource_type: Type of resource affected.
            user_id: ID of the user the action applies to.
            actor_id: ID of the user who performed the action.
            scope: Organization or team scope of the action.
            resource_id: ID of the specific resource.
            metadata: Additional contextual data.
            old_values: Previous state (for updates).
            new_values: New state (for creates/updates).
            success: Whether the action succeeded.
            error_message: Error message if action failed.

        Returns:
            The audit log entry ID, or None if logging failed.
        """
        try:
            action_str = action.value if isinstance(action, AuditAction) else str(action)
            resource_type_str = (
                resource_type.value
                if isinstance(resource_type, ResourceType)
                else str(resource_type)
            )

            entry_data = {
                "action": action_str,
                "resource_type": resource_type_str,
                "user_id": user_id,
                "actor_id": actor_id,
                "scope": scope,
                "scope_key": (
                    self.repository.scope_key(scope.type.value, scope.id) if scope else None
                ),
                "resource_id": resource_id,
                "metadata": self._sanitize_data(metadata) if metadata else {},
                "old_values": self._sanitize_data(old_values) if old_values else None,
                "new_values": self._sanitize_data(new_values) if new_values else None,
                "success": success,
                "error_message": error_message[:1000] if error_message else None,
                "created_at": utc_now(),
            }

            entry_id = await self.repository.insert(entry_data)
            logger.debug(f"Audit log created: {action_str} on {resource_type_str}")
            return entry_id

        except Exception as e:
            logger.error(f"Failed to create audit log: {str(e)}", exc_info=True)
            return None

    async def query(self, query: AuditLogQuery) -> Tuple[List[AuditLogEntry], int]:
        """
        Query audit logs with filters, newest first.

        Args:
            query: Query parameters.

        Returns:
            Tuple of (entries, total_count).
        """
        criteria: Dict[str, Any] = {}
        if query.scope:
            criteria["scope_key"] = self.repository.scope_key(query.scope.type.value, query.scope.id)
        if query.user_id:
            criteria["user_id"] = query.user_id
        if query.action:
            criteria["action"] = query.action
        if query.resource_type:
            criteria["resource_type"] = query.resource_type

        entries = await self.repository.find(**criteria)
        if query.start_date:
            entries = [e for e in entries if e.created_at >= query.start_date]
        if query.end_date:
            entries = [e for e in entries if e.created_at <= query.end_date]

        entries.sort(key=lambda e: e.created_at, reverse=True)
        total = len(entries)
        return entries[query.offset:query.offset + query.limit], total

    async def get_organization_activity(
        self,
        organization_id: str,
        days: int = 7,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """
        Get recent activity for an organization.

        Args:
            organization_id: The organization ID.
            days: Number of days to look back.
            limit: Maximum entries to return.

        Returns:
            List of recent audit log entries.
        """
        entries, _ = await self.query(AuditLogQuery(
            scope=Scope(type=ScopeType.ORGANIZATION, id=organization_id),
            start_date=utc_now() - timedelta(days=days),
            limit=limit,
        ))
        return entries

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _sanitize_data(
        self,
        data: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """
        Sanitize data by removing sensitive fields and truncating large values.

        Args:
            data: The data to sanitize.

        Returns:
            Sanitized data dictionary.
        """
        if data is None:
            return None

        sanitized: Dict[str, Any] = {}

        for key, value in data.items():
            key_lower = key.lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                sanitized[key] = "[REDACTED]"
                continue

            if isinstance(value, dict):
                sanitized[key] = self._sanitize_data(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    self._sanitize_data(item) if isinstance(item, dict) else item
                    for item in value[:100]  # Limit list size
                ]
            elif isinstance(value, str) and len(value) > MAX_VALUE_SIZE:
                sanitized[key] = value[:MAX_VALUE_SIZE] + "...[truncated]"
            else:
                sanitized[key] = value

        return sanitized

