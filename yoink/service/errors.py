from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from yoink.logging import get_logger
from yoink.storage.errors import ConstraintViolation, StorageError

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - server_error (500)

    Domain errors below refine the error_code so callers can branch on a
    typed reason while clients still receive a generic message.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# --------------------------------------------------------------------------
# Storage
# --------------------------------------------------------------------------


class StorageUnavailableError(ServerError):
    """A store could not answer. Never reported to callers as an auth failure."""
    error_code = "storage_unavailable"

    def __init__(self, store: str, operation: str) -> None:
        super().__init__(
            "internal server error",
            detail={"store": store, "operation": operation},
        )
        self.store = store
        self.operation = operation


# --------------------------------------------------------------------------
# Sessions
# --------------------------------------------------------------------------


class SessionNotFoundError(AuthenticationError):
    error_code = "session_not_found"

    def __init__(self) -> None:
        super().__init__("Invalid or expired session")


# --------------------------------------------------------------------------
# Users / organizations
# --------------------------------------------------------------------------


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, user_id: str) -> None:
        super().__init__("user not found", detail={"user_id": user_id})
        self.user_id = user_id


class OrganizationNotFoundError(NotFoundError):
    error_code = "organization_not_found"

    def __init__(self, organization_id: str) -> None:
        super().__init__("organization not found", detail={"organization_id": organization_id})
        self.organization_id = organization_id


# --------------------------------------------------------------------------
# Memberships
# --------------------------------------------------------------------------


class NotMemberError(ForbiddenError):
    error_code = "not_a_member"

    def __init__(self, user_id: str, organization_id: str) -> None:
        super().__init__(
            "Not a member of this organization",
            detail={"organization_id": organization_id},
        )
        self.user_id = user_id
        self.organization_id = organization_id


class NoMembershipsError(ConflictError):
    error_code = "no_memberships"

    def __init__(self, user_id: str) -> None:
        super().__init__("user has no organization memberships")
        self.user_id = user_id


class AlreadyMemberError(ConflictError):
    error_code = "already_member"

    def __init__(self, user_id: str, organization_id: str) -> None:
        super().__init__(
            "user is already a member of this organization",
            detail={"organization_id": organization_id},
        )
        self.user_id = user_id
        self.organization_id = organization_id


class CannotLeavePersonalOrgError(ValidationError):
    error_code = "cannot_leave_personal_org"

    def __init__(self, user_id: str, organization_id: str) -> None:
        super().__init__("Cannot leave your personal organization")
        self.user_id = user_id
        self.organization_id = organization_id


class LastAdminError(ValidationError):
    error_code = "last_admin"

    def __init__(self, organization_id: str) -> None:
        super().__init__("Cannot leave as the last admin. Transfer ownership first.")
        self.organization_id = organization_id


class CannotRemoveSelfError(ValidationError):
    error_code = "cannot_remove_self"

    def __init__(self, user_id: str) -> None:
        super().__init__("Use leave to remove yourself from an organization")
        self.user_id = user_id


class CannotChangeOwnerRoleError(ValidationError):
    error_code = "cannot_change_owner_role"

    def __init__(self, membership_id: str) -> None:
        super().__init__("The owner role cannot be changed")
        self.membership_id = membership_id


class InsufficientRoleError(ForbiddenError):
    error_code = "insufficient_role"

    def __init__(self, required_role: str, actual_role: Optional[str]) -> None:
        super().__init__(
            "Insufficient permissions",
            detail={"required_role": required_role},
        )
        self.required_role = required_role
        self.actual_role = actual_role


class MembershipNotFoundError(NotFoundError):
    error_code = "membership_not_found"

    def __init__(self, membership_id: str) -> None:
        super().__init__("membership not found")
        self.membership_id = membership_id


# --------------------------------------------------------------------------
# API tokens
# --------------------------------------------------------------------------


class TokenNotFoundError(NotFoundError):
    error_code = "token_not_found"

    def __init__(self, token_id: str) -> None:
        super().__init__("token not found")
        self.token_id = token_id


class TokenOwnershipError(ForbiddenError):
    error_code = "token_not_owned"

    def __init__(self, token_id: str, user_id: str) -> None:
        super().__init__("token belongs to another user")
        self.token_id = token_id
        self.user_id = user_id


class TokenLimitReachedError(ConflictError):
    error_code = "token_limit_reached"

    def __init__(self, user_id: str, limit: int) -> None:
        super().__init__(
            f"token limit of {limit} reached; revoke an existing token first",
            detail={"limit": limit},
        )
        self.user_id = user_id
        self.limit = limit


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StorageUnavailableError",
    "SessionNotFoundError",
    "UserNotFoundError",
    "OrganizationNotFoundError",
    "NotMemberError",
    "NoMembershipsError",
    "AlreadyMemberError",
    "CannotLeavePersonalOrgError",
    "LastAdminError",
    "CannotRemoveSelfError",
    "CannotChangeOwnerRoleError",
    "InsufficientRoleError",
    "MembershipNotFoundError",
    "TokenNotFoundError",
    "TokenOwnershipError",
    "TokenLimitReachedError",
    "storage_guard",
]


@contextlib.contextmanager
def storage_guard(store: str, operation: str) -> Iterator[None]:
    """Translate store failures into typed service errors.

    Uniqueness/FK violations become ``ConflictError``; anything else the store
    raises as ``StorageError`` becomes ``StorageUnavailableError`` (500).
    """
    try:
        yield
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    except StorageError as exc:
        logger.error(
            "storage_error",
            store=store,
            operation=operation,
            error=exc.message,
            cause=type(exc.cause).__name__ if exc.cause else None,
        )
        raise StorageUnavailableError(store, operation) from exc
