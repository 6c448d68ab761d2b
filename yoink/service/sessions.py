from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional, Protocol

from yoink.logging import get_logger, redact
from yoink.service.clock import Clock
from yoink.service.errors import (
    NoMembershipsError,
    NotMemberError,
    UserNotFoundError,
    storage_guard,
)
from yoink.storage.models import UserSession

if TYPE_CHECKING:
    from yoink.service.membership import MembershipStore
    from yoink.service.users import UserStore

logger = get_logger(__name__)


class SessionStore(Protocol):
    def save(self, session: UserSession) -> None: ...

    def find_by_id(self, session_id: str) -> Optional[UserSession]: ...

    def find_by_user_id(self, user_id: str) -> List[UserSession]: ...

    def update_last_active(
        self, session_id: str, timestamp: datetime, expires_at: datetime
    ) -> None: ...

    def update_current_organization(
        self, session_id: str, user_id: str, organization_id: str
    ) -> bool: ...

    def repin_sessions(self, user_id: str, from_org_id: str, to_org_id: str) -> int: ...

    def delete(self, session_id: str) -> bool: ...

    def delete_by_user_id(self, user_id: str) -> int: ...

    def delete_expired(self, now: datetime) -> int: ...


class SessionService:
    """Server-side cookie sessions with a sliding expiry.

    A session is usable while ``expires_at > now``. Activity only extends it
    once ``now - last_active_at`` exceeds the refresh threshold, which keeps
    store writes to at most one per threshold window per session.
    """

    def __init__(
        self,
        sessions: SessionStore,
        users: "UserStore",
        memberships: "MembershipStore",
        clock: Clock,
        *,
        ttl: timedelta,
        refresh_threshold: timedelta,
    ) -> None:
        if refresh_threshold >= ttl:
            raise ValueError("refresh threshold must be shorter than the session lifetime")
        self.sessions = sessions
        self.users = users
        self.memberships = memberships
        self.clock = clock
        self.ttl = ttl
        self.refresh_threshold = refresh_threshold

    async def create_session(
        self, user_id: str, organization_id: Optional[str] = None
    ) -> UserSession:
        """Open a session after a successful login.

        Without an explicit organization the personal one is chosen, falling
        back to the earliest membership.
        """
        with storage_guard("users", "find_by_id"):
            user = self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        with storage_guard("memberships", "find_by_user_id"):
            memberships = self.memberships.find_by_user_id(user_id)
        if not memberships:
            raise NoMembershipsError(user_id)

        if organization_id:
            if not any(m.organization_id == organization_id for m in memberships):
                raise NotMemberError(user_id, organization_id)
            target = organization_id
        else:
            personal = next((m for m in memberships if m.is_personal_org), None)
            target = (personal or memberships[0]).organization_id

        session = UserSession.new(user_id, target, now=self.clock.now(), ttl=self.ttl)
        with storage_guard("sessions", "save"):
            self.sessions.save(session)
        logger.info("session_created", user_id=user_id, session_id=redact(session.id))
        return session

    async def validate_session(self, session_id: str) -> Optional[UserSession]:
        if not session_id:
            return None
        with storage_guard("sessions", "find_by_id"):
            session = self.sessions.find_by_id(session_id)
        if session is None:
            logger.info("session_rejected", reason="not_found", session_id=redact(session_id))
            return None
        if session.is_expired(self.clock.now()):
            logger.info("session_rejected", reason="expired", session_id=redact(session_id))
            return None
        return session

    def needs_refresh(self, session: UserSession, now: datetime) -> bool:
        return now - session.last_active_at > self.refresh_threshold

    async def refresh_session(self, session_id: str) -> bool:
        """Extend an active session's expiry. Returns True when a write happened."""
        with storage_guard("sessions", "find_by_id"):
            session = self.sessions.find_by_id(session_id)
        if session is None:
            return False
        now = self.clock.now()
        if session.is_expired(now) or not self.needs_refresh(session, now):
            return False
        with storage_guard("sessions", "update_last_active"):
            self.sessions.update_last_active(session_id, now, now + self.ttl)
        logger.debug("session_refreshed", session_id=redact(session_id))
        return True

    async def update_current_organization(
        self, session_id: str, user_id: str, organization_id: str
    ) -> None:
        """Pin a session to an organization the user currently belongs to.

        Membership is checked in the same store write, so a concurrent leave
        cannot leave the session pointing at the organization it removed.
        """
        with storage_guard("sessions", "update_current_organization"):
            updated = self.sessions.update_current_organization(
                session_id, user_id, organization_id
            )
        if not updated:
            raise NotMemberError(user_id, organization_id)

    async def repin_sessions(self, user_id: str, from_org_id: str, to_org_id: str) -> int:
        with storage_guard("sessions", "repin_sessions"):
            moved = self.sessions.repin_sessions(user_id, from_org_id, to_org_id)
        if moved:
            logger.info(
                "sessions_repinned",
                user_id=user_id,
                from_org_id=from_org_id,
                to_org_id=to_org_id,
                count=moved,
            )
        return moved

    async def list_sessions(self, user_id: str) -> List[UserSession]:
        with storage_guard("sessions", "find_by_user_id"):
            sessions = self.sessions.find_by_user_id(user_id)
        now = self.clock.now()
        return [s for s in sessions if not s.is_expired(now)]

    async def revoke_session(self, session_id: str) -> bool:
        with storage_guard("sessions", "delete"):
            deleted = self.sessions.delete(session_id)
        if deleted:
            logger.info("session_revoked", session_id=redact(session_id))
        return deleted

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        with storage_guard("sessions", "delete_by_user_id"):
            count = self.sessions.delete_by_user_id(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    async def delete_expired(self, now: datetime) -> int:
        with storage_guard("sessions", "delete_expired"):
            return self.sessions.delete_expired(now)

    async def cleanup_expired_sessions(self) -> int:
        removed = await self.delete_expired(self.clock.now())
        if removed:
            logger.info("expired_sessions_deleted", count=removed)
        return removed
