from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from yoink.logging import get_logger
from yoink.storage.errors import ConstraintViolation
from yoink.storage.models import (
    PRIVILEGED_ROLES,
    ApiToken,
    GuardOutcome,
    MembershipRole,
    Organization,
    OrganizationMembership,
    User,
    UserSession,
)


class MemoryState:
    """Tables shared by the in-memory stores.

    A single re-entrant lock guards every table so that multi-table checks
    (foreign keys, the last-privileged-member guard) are atomic.
    """

    def __init__(self) -> None:
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, ApiToken] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.memberships: Dict[str, OrganizationMembership] = {}
        self.lock = threading.RLock()


class MemoryOrganizationStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    def save(self, organization: Organization) -> None:
        with self._state.lock:
            self._state.organizations[organization.id] = replace(organization)

    def find_by_id(self, organization_id: str) -> Optional[Organization]:
        with self._state.lock:
            org = self._state.organizations.get(organization_id)
            return replace(org) if org else None

    def delete(self, organization_id: str) -> bool:
        state = self._state
        with state.lock:
            if any(u.organization_id == organization_id for u in state.users.values()):
                raise ConstraintViolation(
                    "organization still owned by a user",
                    {"organization_id": organization_id},
                    store="organizations",
                )
            if state.organizations.pop(organization_id, None) is None:
                return False
            stale = [
                key
                for key, row in state.memberships.items()
                if row.organization_id == organization_id
            ]
            for key in stale:
                state.memberships.pop(key, None)
            return True


class MemoryUserStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    def save(self, user: User) -> None:
        with self._state.lock:
            for existing in self._state.users.values():
                if existing.email == user.email and existing.id != user.id:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}, store="users"
                    )
            if user.organization_id not in self._state.organizations:
                raise ConstraintViolation(
                    "personal organization missing",
                    {"organization_id": user.organization_id},
                    store="users",
                )
            self._state.users[user.id] = replace(user)

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._state.lock:
            user = self._state.users.get(user_id)
            return replace(user) if user else None

    def find_by_email(self, email: str) -> Optional[User]:
        with self._state.lock:
            for user in self._state.users.values():
                if user.email == email:
                    return replace(user)
            return None

    def delete(self, user_id: str) -> bool:
        """Delete a user and everything that references it."""
        state = self._state
        with state.lock:
            if state.users.pop(user_id, None) is None:
                return False
            for table in (state.tokens, state.sessions, state.memberships):
                stale = [key for key, row in table.items() if row.user_id == user_id]
                for key in stale:
                    table.pop(key, None)
            return True


class MemoryTokenStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    def save(self, token: ApiToken) -> None:
        with self._state.lock:
            if token.user_id not in self._state.users:
                raise ConstraintViolation(
                    "token user missing", {"user_id": token.user_id}, store="tokens"
                )
            self._state.tokens[token.id] = replace(token)

    def find_by_id(self, token_id: str) -> Optional[ApiToken]:
        with self._state.lock:
            token = self._state.tokens.get(token_id)
            return replace(token) if token else None

    def find_by_user_id(self, user_id: str) -> List[ApiToken]:
        with self._state.lock:
            tokens = [replace(t) for t in self._state.tokens.values() if t.user_id == user_id]
        return sorted(tokens, key=lambda t: t.created_at)

    def update_last_used(self, token_id: str, timestamp: datetime) -> None:
        with self._state.lock:
            token = self._state.tokens.get(token_id)
            if not token:
                return
            if token.last_used_at is None or timestamp > token.last_used_at:
                token.last_used_at = timestamp

    def delete(self, token_id: str) -> bool:
        with self._state.lock:
            return self._state.tokens.pop(token_id, None) is not None

    def has_any_tokens(self) -> bool:
        with self._state.lock:
            return bool(self._state.tokens)


class MemorySessionStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    def save(self, session: UserSession) -> None:
        with self._state.lock:
            if session.user_id not in self._state.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}, store="sessions"
                )
            self._state.sessions[session.id] = replace(session)

    def find_by_id(self, session_id: str) -> Optional[UserSession]:
        with self._state.lock:
            sess = self._state.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_by_user_id(self, user_id: str) -> List[UserSession]:
        with self._state.lock:
            return [replace(s) for s in self._state.sessions.values() if s.user_id == user_id]

    def update_last_active(
        self, session_id: str, timestamp: datetime, expires_at: datetime
    ) -> None:
        with self._state.lock:
            sess = self._state.sessions.get(session_id)
            if not sess:
                return
            if timestamp > sess.last_active_at:
                sess.last_active_at = timestamp
            if expires_at > sess.expires_at:
                sess.expires_at = expires_at

    def update_current_organization(
        self, session_id: str, user_id: str, organization_id: str
    ) -> bool:
        """Pin the session to ``organization_id`` only while the user is a member."""
        state = self._state
        with state.lock:
            sess = state.sessions.get(session_id)
            if sess is None or sess.user_id != user_id:
                return False
            if not any(
                m.user_id == user_id and m.organization_id == organization_id
                for m in state.memberships.values()
            ):
                return False
            sess.current_organization_id = organization_id
            return True

    def repin_sessions(self, user_id: str, from_org_id: str, to_org_id: str) -> int:
        with self._state.lock:
            moved = 0
            for sess in self._state.sessions.values():
                if sess.user_id == user_id and sess.current_organization_id == from_org_id:
                    sess.current_organization_id = to_org_id
                    moved += 1
            return moved

    def delete(self, session_id: str) -> bool:
        with self._state.lock:
            return self._state.sessions.pop(session_id, None) is not None

    def delete_by_user_id(self, user_id: str) -> int:
        with self._state.lock:
            stale = [sid for sid, s in self._state.sessions.items() if s.user_id == user_id]
            for sid in stale:
                self._state.sessions.pop(sid, None)
            return len(stale)

    def delete_expired(self, now: datetime) -> int:
        with self._state.lock:
            stale = [sid for sid, s in self._state.sessions.items() if s.expires_at <= now]
            for sid in stale:
                self._state.sessions.pop(sid, None)
            return len(stale)


class MemoryMembershipStore:
    def __init__(self, state: MemoryState) -> None:
        self._state = state

    def save(self, membership: OrganizationMembership) -> None:
        state = self._state
        with state.lock:
            if membership.user_id not in state.users:
                raise ConstraintViolation(
                    "membership user missing", {"user_id": membership.user_id}, store="memberships"
                )
            if membership.organization_id not in state.organizations:
                raise ConstraintViolation(
                    "membership organization missing",
                    {"organization_id": membership.organization_id},
                    store="memberships",
                )
            for existing in state.memberships.values():
                if existing.id == membership.id:
                    continue
                if (
                    existing.user_id == membership.user_id
                    and existing.organization_id == membership.organization_id
                ):
                    raise ConstraintViolation(
                        "membership already exists",
                        {"organization_id": membership.organization_id},
                        store="memberships",
                    )
                if (
                    membership.is_personal_org
                    and existing.is_personal_org
                    and existing.user_id == membership.user_id
                ):
                    raise ConstraintViolation(
                        "personal membership already exists",
                        {"user_id": membership.user_id},
                        store="memberships",
                    )
            state.memberships[membership.id] = replace(membership)

    def find_by_id(self, membership_id: str) -> Optional[OrganizationMembership]:
        with self._state.lock:
            row = self._state.memberships.get(membership_id)
            return replace(row) if row else None

    def find_by_user_and_org(
        self, user_id: str, organization_id: str
    ) -> Optional[OrganizationMembership]:
        with self._state.lock:
            for row in self._state.memberships.values():
                if row.user_id == user_id and row.organization_id == organization_id:
                    return replace(row)
            return None

    def find_by_user_id(self, user_id: str) -> List[OrganizationMembership]:
        with self._state.lock:
            rows = [replace(m) for m in self._state.memberships.values() if m.user_id == user_id]
        return sorted(rows, key=lambda m: m.joined_at)

    def find_by_organization_id(self, organization_id: str) -> List[OrganizationMembership]:
        with self._state.lock:
            rows = [
                replace(m)
                for m in self._state.memberships.values()
                if m.organization_id == organization_id
            ]
        return sorted(rows, key=lambda m: m.joined_at)

    def count_privileged_members(self, organization_id: str) -> int:
        with self._state.lock:
            return self._count_privileged(organization_id)

    def _count_privileged(self, organization_id: str) -> int:
        return sum(
            1
            for m in self._state.memberships.values()
            if m.organization_id == organization_id and m.role in PRIVILEGED_ROLES
        )

    def update_role(self, membership_id: str, role: MembershipRole) -> None:
        with self._state.lock:
            row = self._state.memberships.get(membership_id)
            if row:
                row.role = MembershipRole(role)

    def delete(self, membership_id: str) -> bool:
        with self._state.lock:
            return self._state.memberships.pop(membership_id, None) is not None

    def _is_last_privileged(self, row: OrganizationMembership) -> bool:
        return row.role in PRIVILEGED_ROLES and self._count_privileged(row.organization_id) <= 1

    def delete_unless_last_privileged(self, membership_id: str) -> GuardOutcome:
        with self._state.lock:
            row = self._state.memberships.get(membership_id)
            if row is None:
                return GuardOutcome.MISSING
            if self._is_last_privileged(row):
                return GuardOutcome.REFUSED
            self._state.memberships.pop(membership_id, None)
            return GuardOutcome.APPLIED

    def update_role_unless_last_privileged(
        self, membership_id: str, role: MembershipRole
    ) -> GuardOutcome:
        role = MembershipRole(role)
        with self._state.lock:
            row = self._state.memberships.get(membership_id)
            if row is None:
                return GuardOutcome.MISSING
            if role not in PRIVILEGED_ROLES and self._is_last_privileged(row):
                return GuardOutcome.REFUSED
            row.role = role
            return GuardOutcome.APPLIED


class MemoryStore:
    """In-memory backing for every auth store contract.

    Used for tests and ``USE_MEMORY_STORE`` development runs; nothing survives
    a restart.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.state = MemoryState()
        self.organizations = MemoryOrganizationStore(self.state)
        self.users = MemoryUserStore(self.state)
        self.tokens = MemoryTokenStore(self.state)
        self.sessions = MemorySessionStore(self.state)
        self.memberships = MemoryMembershipStore(self.state)
        self.closed = False

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True
        self.logger.info("memory_store_closed", sessions=len(self.state.sessions))
