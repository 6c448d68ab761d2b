from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Protocol

from yoink.logging import get_logger
from yoink.service.auth import AuthContext
from yoink.service.clock import Clock
from yoink.service.errors import (
    AlreadyMemberError,
    CannotChangeOwnerRoleError,
    CannotLeavePersonalOrgError,
    CannotRemoveSelfError,
    InsufficientRoleError,
    LastAdminError,
    MembershipNotFoundError,
    NotMemberError,
    OrganizationNotFoundError,
    SessionNotFoundError,
    UserNotFoundError,
    storage_guard,
)
from yoink.storage.models import (
    GuardOutcome,
    MembershipRole,
    Organization,
    OrganizationMembership,
)

if TYPE_CHECKING:
    from yoink.service.sessions import SessionService
    from yoink.service.users import UserStore

logger = get_logger(__name__)


class OrganizationStore(Protocol):
    def save(self, organization: Organization) -> None: ...

    def find_by_id(self, organization_id: str) -> Optional[Organization]: ...

    def delete(self, organization_id: str) -> bool: ...


class MembershipStore(Protocol):
    def save(self, membership: OrganizationMembership) -> None: ...

    def find_by_id(self, membership_id: str) -> Optional[OrganizationMembership]: ...

    def find_by_user_and_org(
        self, user_id: str, organization_id: str
    ) -> Optional[OrganizationMembership]: ...

    def find_by_user_id(self, user_id: str) -> List[OrganizationMembership]: ...

    def find_by_organization_id(self, organization_id: str) -> List[OrganizationMembership]: ...

    def count_privileged_members(self, organization_id: str) -> int: ...

    def update_role(self, membership_id: str, role: MembershipRole) -> None: ...

    def delete(self, membership_id: str) -> bool: ...

    def delete_unless_last_privileged(self, membership_id: str) -> GuardOutcome:
        """Delete unless the row is the organization's last owner/admin.

        The check and the delete are atomic. Returns MISSING when the row is
        already gone and REFUSED when it is the last privileged member.
        """
        ...

    def update_role_unless_last_privileged(
        self, membership_id: str, role: MembershipRole
    ) -> GuardOutcome: ...


@dataclass(frozen=True)
class OrganizationSummary:
    organization: Organization
    role: MembershipRole
    is_personal_org: bool


class MembershipService:
    """Organization membership, roles, switching and leaving."""

    def __init__(
        self,
        memberships: MembershipStore,
        organizations: OrganizationStore,
        users: "UserStore",
        sessions: "SessionService",
        clock: Clock,
    ) -> None:
        self.memberships = memberships
        self.organizations = organizations
        self.users = users
        self.sessions = sessions
        self.clock = clock

    async def list_organizations(self, user_id: str) -> List[OrganizationSummary]:
        with storage_guard("memberships", "find_by_user_id"):
            rows = self.memberships.find_by_user_id(user_id)
        summaries: List[OrganizationSummary] = []
        for row in rows:
            with storage_guard("organizations", "find_by_id"):
                org = self.organizations.find_by_id(row.organization_id)
            if org is None:
                logger.error(
                    "membership_organization_missing",
                    membership_id=row.id,
                    organization_id=row.organization_id,
                )
                continue
            summaries.append(
                OrganizationSummary(
                    organization=org, role=row.role, is_personal_org=row.is_personal_org
                )
            )
        return summaries

    async def switch_organization(
        self, session_id: str, user_id: str, organization_id: str
    ) -> AuthContext:
        with storage_guard("memberships", "find_by_user_and_org"):
            membership = self.memberships.find_by_user_and_org(user_id, organization_id)
        if membership is None:
            logger.info("organization_switch_denied", user_id=user_id, organization_id=organization_id)
            raise NotMemberError(user_id, organization_id)
        session = await self.sessions.validate_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        try:
            await self.sessions.update_current_organization(session_id, user_id, organization_id)
        except NotMemberError:
            logger.info(
                "organization_switch_denied",
                user_id=user_id,
                organization_id=organization_id,
                reason="membership_removed",
            )
            raise
        logger.info("organization_switched", user_id=user_id, organization_id=organization_id)
        return AuthContext(
            organization_id=organization_id, user_id=user_id, session_id=session_id
        )

    async def leave_organization(self, user_id: str, organization_id: str) -> None:
        with storage_guard("memberships", "find_by_user_and_org"):
            membership = self.memberships.find_by_user_and_org(user_id, organization_id)
        if membership is None:
            raise NotMemberError(user_id, organization_id)
        await self._delete_membership(membership)
        logger.info("organization_left", user_id=user_id, organization_id=organization_id)

    async def add_member(
        self,
        user_id: str,
        organization_id: str,
        role: MembershipRole = MembershipRole.MEMBER,
        *,
        is_personal_org: bool = False,
    ) -> OrganizationMembership:
        with storage_guard("users", "find_by_id"):
            user = self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        with storage_guard("organizations", "find_by_id"):
            org = self.organizations.find_by_id(organization_id)
        if org is None:
            raise OrganizationNotFoundError(organization_id)
        with storage_guard("memberships", "find_by_user_and_org"):
            existing = self.memberships.find_by_user_and_org(user_id, organization_id)
        if existing is not None:
            raise AlreadyMemberError(user_id, organization_id)

        membership = OrganizationMembership(
            id=str(uuid.uuid4()),
            user_id=user_id,
            organization_id=organization_id,
            role=MembershipRole(role),
            is_personal_org=is_personal_org,
            joined_at=self.clock.now(),
        )
        with storage_guard("memberships", "save"):
            self.memberships.save(membership)
        logger.info(
            "member_added",
            user_id=user_id,
            organization_id=organization_id,
            role=membership.role.value,
        )
        return membership

    async def remove_member(self, actor_id: str, user_id: str, organization_id: str) -> None:
        """Remove another user from an organization on behalf of ``actor_id``.

        The actor must be an owner or admin and rank at least as high as the
        member being removed. Self-removal goes through ``leave_organization``.
        """
        if actor_id == user_id:
            raise CannotRemoveSelfError(actor_id)
        with storage_guard("memberships", "find_by_user_and_org"):
            actor = self.memberships.find_by_user_and_org(actor_id, organization_id)
        if actor is None:
            raise NotMemberError(actor_id, organization_id)
        if not actor.role.is_privileged:
            raise InsufficientRoleError(MembershipRole.ADMIN.value, actor.role.value)
        with storage_guard("memberships", "find_by_user_and_org"):
            target = self.memberships.find_by_user_and_org(user_id, organization_id)
        if target is None:
            raise MembershipNotFoundError(f"{user_id}@{organization_id}")
        if not actor.role.at_least(target.role):
            raise InsufficientRoleError(target.role.value, actor.role.value)
        await self._delete_membership(target)
        logger.info(
            "member_removed",
            actor_id=actor_id,
            user_id=user_id,
            organization_id=organization_id,
        )

    async def change_role(
        self, actor_id: str, membership_id: str, new_role: MembershipRole
    ) -> OrganizationMembership:
        new_role = MembershipRole(new_role)
        with storage_guard("memberships", "find_by_id"):
            membership = self.memberships.find_by_id(membership_id)
        if membership is None:
            raise MembershipNotFoundError(membership_id)
        with storage_guard("memberships", "find_by_user_and_org"):
            actor = self.memberships.find_by_user_and_org(actor_id, membership.organization_id)
        if actor is None:
            raise NotMemberError(actor_id, membership.organization_id)
        if not actor.role.is_privileged or not actor.role.at_least(new_role):
            raise InsufficientRoleError(
                max(MembershipRole.ADMIN, new_role, key=lambda r: r.rank).value,
                actor.role.value,
            )
        if membership.role == MembershipRole.OWNER:
            raise CannotChangeOwnerRoleError(membership_id)
        with storage_guard("memberships", "update_role_unless_last_privileged"):
            outcome = self.memberships.update_role_unless_last_privileged(membership_id, new_role)
        if outcome is GuardOutcome.MISSING:
            raise MembershipNotFoundError(membership_id)
        if outcome is GuardOutcome.REFUSED:
            raise LastAdminError(membership.organization_id)
        membership.role = new_role
        logger.info(
            "member_role_changed",
            actor_id=actor_id,
            membership_id=membership_id,
            role=new_role.value,
        )
        return membership

    async def get_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[OrganizationMembership]:
        with storage_guard("memberships", "find_by_user_and_org"):
            return self.memberships.find_by_user_and_org(user_id, organization_id)

    async def get_organization(self, organization_id: str) -> Organization:
        with storage_guard("organizations", "find_by_id"):
            org = self.organizations.find_by_id(organization_id)
        if org is None:
            raise OrganizationNotFoundError(organization_id)
        return org

    async def list_memberships(
        self, *, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> List[OrganizationMembership]:
        if user_id:
            with storage_guard("memberships", "find_by_user_id"):
                return self.memberships.find_by_user_id(user_id)
        if organization_id:
            with storage_guard("memberships", "find_by_organization_id"):
                return self.memberships.find_by_organization_id(organization_id)
        return []

    async def has_role(
        self, user_id: str, organization_id: str, required_role: MembershipRole
    ) -> bool:
        membership = await self.get_membership(user_id, organization_id)
        if membership is None:
            return False
        return membership.role.at_least(MembershipRole(required_role))

    async def _delete_membership(self, membership: OrganizationMembership) -> None:
        if membership.is_personal_org:
            raise CannotLeavePersonalOrgError(membership.user_id, membership.organization_id)
        with storage_guard("memberships", "delete_unless_last_privileged"):
            outcome = self.memberships.delete_unless_last_privileged(membership.id)
        if outcome is GuardOutcome.MISSING:
            raise MembershipNotFoundError(f"{membership.user_id}@{membership.organization_id}")
        if outcome is GuardOutcome.REFUSED:
            raise LastAdminError(membership.organization_id)
        with storage_guard("users", "find_by_id"):
            user = self.users.find_by_id(membership.user_id)
        if user is not None:
            await self.sessions.repin_sessions(
                membership.user_id, membership.organization_id, user.organization_id
            )
