from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Optional, Protocol

from yoink.logging import get_logger
from yoink.service.clock import Clock
from yoink.service.errors import (
    ConflictError,
    ServiceError,
    UserNotFoundError,
    ValidationError,
    storage_guard,
)
from yoink.storage.errors import StorageError
from yoink.storage.models import MembershipRole, Organization, OrganizationMembership, User

if TYPE_CHECKING:
    from yoink.service.membership import MembershipStore, OrganizationStore
    from yoink.service.sessions import SessionService

logger = get_logger(__name__)


class UserStore(Protocol):
    def save(self, user: User) -> None: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def delete(self, user_id: str) -> bool: ...


def personal_organization_name(email: str) -> str:
    return f"{email}'s Workspace"


class UserService:
    """Creates users together with their personal organization."""

    def __init__(
        self,
        users: UserStore,
        organizations: "OrganizationStore",
        memberships: "MembershipStore",
        sessions: "SessionService",
        clock: Clock,
    ) -> None:
        self.users = users
        self.organizations = organizations
        self.memberships = memberships
        self.sessions = sessions
        self.clock = clock

    async def provision_user(
        self, email: str, *, organization_name: Optional[str] = None
    ) -> User:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("a valid email address is required", detail={"field": "email"})
        with storage_guard("users", "find_by_email"):
            if self.users.find_by_email(email) is not None:
                raise ConflictError("email already registered", detail={"field": "email"})

        now = self.clock.now()
        org = Organization(
            id=str(uuid.uuid4()),
            name=organization_name or personal_organization_name(email),
            created_at=now,
        )
        user = User(id=str(uuid.uuid4()), email=email, organization_id=org.id, created_at=now)
        membership = OrganizationMembership(
            id=str(uuid.uuid4()),
            user_id=user.id,
            organization_id=org.id,
            role=MembershipRole.OWNER,
            is_personal_org=True,
            joined_at=now,
        )
        with storage_guard("organizations", "save"):
            self.organizations.save(org)
        try:
            with storage_guard("users", "save"):
                self.users.save(user)
            with storage_guard("memberships", "save"):
                self.memberships.save(membership)
        except ServiceError:
            self._discard_partial_user(user.id, org.id)
            raise
        logger.info("user_provisioned", user_id=user.id, organization_id=org.id)
        return user

    def _discard_partial_user(self, user_id: str, organization_id: str) -> None:
        """Remove rows written by a provisioning attempt that failed midway."""
        try:
            self.users.delete(user_id)
            self.organizations.delete(organization_id)
        except StorageError as exc:
            logger.error(
                "user_provision_cleanup_failed",
                user_id=user_id,
                organization_id=organization_id,
                error=str(exc),
            )

    async def get_user(self, user_id: str) -> User:
        with storage_guard("users", "find_by_id"):
            user = self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        with storage_guard("users", "find_by_email"):
            return self.users.find_by_email(email.strip().lower())

    async def delete_user(self, user_id: str) -> None:
        await self.get_user(user_id)
        await self.sessions.revoke_all_user_sessions(user_id)
        with storage_guard("users", "delete"):
            self.users.delete(user_id)
        logger.info("user_deleted", user_id=user_id)
