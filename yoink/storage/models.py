from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MembershipRole(str, Enum):
    """Roles a user can hold inside an organization.

    Hierarchy: owner > admin > member. Owners and admins are "privileged"
    and can manage the organization.
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    @property
    def is_privileged(self) -> bool:
        return self in PRIVILEGED_ROLES

    def at_least(self, required: "MembershipRole") -> bool:
        return self.rank >= required.rank


_ROLE_RANK = {
    MembershipRole.OWNER: 3,
    MembershipRole.ADMIN: 2,
    MembershipRole.MEMBER: 1,
}

PRIVILEGED_ROLES = frozenset({MembershipRole.OWNER, MembershipRole.ADMIN})


class GuardOutcome(str, Enum):
    """Result of a membership write guarded by the last-privileged check."""

    APPLIED = "applied"
    REFUSED = "refused"
    MISSING = "missing"


@dataclass
class Organization:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    # Personal organization; fixed at signup.
    organization_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ApiToken:
    id: str
    user_id: str
    token_hash: str
    name: str
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    organization_id: Optional[str] = None


@dataclass
class UserSession:
    id: str
    user_id: str
    current_organization_id: str
    created_at: datetime
    expires_at: datetime
    last_active_at: datetime

    @classmethod
    def new(
        cls,
        user_id: str,
        organization_id: str,
        *,
        now: datetime,
        ttl: timedelta,
    ) -> "UserSession":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            current_organization_id=organization_id,
            created_at=now,
            expires_at=now + ttl,
            last_active_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class OrganizationMembership:
    id: str
    user_id: str
    organization_id: str
    role: MembershipRole
    is_personal_org: bool = False
    joined_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.role = MembershipRole(self.role)
