"""
Error taxonomy for tenancy operations.

Every error carries a human-readable ``message`` (surfaced verbatim to
callers) and a stable machine ``code`` (used in bulk operation results).
"""

from typing import Optional


class TenancyError(Exception):
    """Base exception for tenancy errors."""

    def __init__(self, message: str, code: str = "TENANCY_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotAuthenticatedError(TenancyError):
    """Raised when no caller identity could be resolved."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, code="NOT_AUTHENTICATED")


class UnauthorizedForScopeError(TenancyError):
    """
    Raised when the caller has no membership in the target organization.

    Also raised when the organization does not exist, so callers cannot
    discover the existence of organizations they do not belong to.
    """

    def __init__(self, message: str = "You are not authorized to access this organization"):
        super().__init__(message, code="UNAUTHORIZED")


class NotFoundError(TenancyError):
    """Raised when a referenced team, member or invitation is unresolvable."""

    def __init__(self, message: str):
        super().__init__(message, code="NOT_FOUND")


class AlreadyExistsError(TenancyError):
    """Raised for duplicate members, team members or pending invitations."""

    def __init__(self, message: str):
        super().__init__(message, code="ALREADY_EXISTS")


class ForbiddenError(TenancyError):
    """Raised for policy denials and cross-organization references."""

    def __init__(self, message: str):
        super().__init__(message, code="FORBIDDEN")


class PermissionDeniedError(ForbiddenError):
    """Raised when the policy engine denies a permission."""

    def __init__(self, required_permission: str, message: Optional[str] = None):
        self.required_permission = required_permission
        super().__init__(message or f"Permission denied: {required_permission} is required")


class InvalidStateError(TenancyError):
    """Raised when an entity's state forbids the requested transition."""

    def __init__(self, message: str, code: str = "INVALID_STATE"):
        super().__init__(message, code=code)


class InvitationExpiredError(InvalidStateError):
    """Raised when accepting or resending an invitation past its expiry."""

    def __init__(self, message: str = "Invitation has expired"):
        super().__init__(message, code="EXPIRED")


class LimitExceededError(TenancyError):
    """Raised when a configured organization, member or team limit is reached."""

    def __init__(self, message: str, limit: int):
        self.limit = limit
        super().__init__(message, code="LIMIT_EXCEEDED")
