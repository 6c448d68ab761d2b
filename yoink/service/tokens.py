from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Protocol, Tuple, Union

from yoink.logging import get_logger, redact
from yoink.service.clock import Clock
from yoink.service.errors import (
    NotMemberError,
    TokenLimitReachedError,
    TokenNotFoundError,
    TokenOwnershipError,
    UserNotFoundError,
    ValidationError,
    storage_guard,
)
from yoink.service.hashing import SecretHasher
from yoink.storage.errors import StorageError
from yoink.storage.models import ApiToken, Organization, User

if TYPE_CHECKING:
    from yoink.service.membership import MembershipStore, OrganizationStore
    from yoink.service.users import UserStore

logger = get_logger(__name__)

TOKEN_SEPARATOR = ":"
MAX_TOKEN_NAME_LENGTH = 100
# Compared against when the token id is unknown so lookups for missing and
# existing ids cost the same.
_DUMMY_SECRET = "yoink-token-placeholder"


class TokenStore(Protocol):
    def save(self, token: ApiToken) -> None: ...

    def find_by_id(self, token_id: str) -> Optional[ApiToken]: ...

    def find_by_user_id(self, user_id: str) -> List[ApiToken]: ...

    def update_last_used(self, token_id: str, timestamp: datetime) -> None: ...

    def delete(self, token_id: str) -> bool: ...

    def has_any_tokens(self) -> bool: ...


class TokenFailure(str, Enum):
    """Internal reason a bearer token was refused. Never sent to clients."""

    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    INVALID_SECRET = "invalid_secret"
    USER_NOT_FOUND = "user_not_found"
    ORGANIZATION_NOT_FOUND = "organization_not_found"
    NOT_A_MEMBER = "not_a_member"


@dataclass(frozen=True)
class TokenRejection:
    reason: TokenFailure
    message: str = "Invalid token"


@dataclass(frozen=True)
class AuthResult:
    organization: Organization
    user: User
    token: ApiToken


@dataclass(frozen=True)
class IssuedToken:
    """A freshly created token; ``raw_token`` is shown once and never stored."""

    token: ApiToken
    raw_token: str


def parse_token(raw: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split ``<tokenId>:<secret>`` on the first colon.

    Returns None when either half is empty. The secret may itself contain
    colons.
    """
    if not raw:
        return None
    token_id, sep, secret = raw.partition(TOKEN_SEPARATOR)
    if not sep or not token_id or not secret:
        return None
    return token_id, secret


def format_token(token_id: str, secret: str) -> str:
    return f"{token_id}{TOKEN_SEPARATOR}{secret}"


class TokenService:
    """Validates and manages API bearer tokens."""

    def __init__(
        self,
        tokens: TokenStore,
        users: "UserStore",
        organizations: "OrganizationStore",
        memberships: "MembershipStore",
        hasher: SecretHasher,
        clock: Clock,
        *,
        max_tokens_per_user: int = 10,
    ) -> None:
        self.tokens = tokens
        self.users = users
        self.organizations = organizations
        self.memberships = memberships
        self.hasher = hasher
        self.clock = clock
        self.max_tokens_per_user = max_tokens_per_user
        self._dummy_hash: Optional[str] = None

    async def validate_token(self, raw_token: str) -> Union[AuthResult, TokenRejection]:
        parsed = parse_token(raw_token)
        if parsed is None:
            return self._reject(TokenFailure.MALFORMED)
        token_id, secret = parsed

        with storage_guard("tokens", "find_by_id"):
            token = self.tokens.find_by_id(token_id)
        if token is None:
            await self._burn_comparison(secret)
            return self._reject(TokenFailure.NOT_FOUND, token_id)

        if not await asyncio.to_thread(self.hasher.compare, secret, token.token_hash):
            return self._reject(TokenFailure.INVALID_SECRET, token_id)

        with storage_guard("users", "find_by_id"):
            user = self.users.find_by_id(token.user_id)
        if user is None:
            return self._reject(TokenFailure.USER_NOT_FOUND, token_id, integrity=True)

        organization_id = token.organization_id or user.organization_id
        if organization_id != user.organization_id:
            with storage_guard("memberships", "find_by_user_and_org"):
                membership = self.memberships.find_by_user_and_org(user.id, organization_id)
            if membership is None:
                return self._reject(TokenFailure.NOT_A_MEMBER, token_id)

        with storage_guard("organizations", "find_by_id"):
            organization = self.organizations.find_by_id(organization_id)
        if organization is None:
            return self._reject(TokenFailure.ORGANIZATION_NOT_FOUND, token_id, integrity=True)

        now = self.clock.now()
        try:
            self.tokens.update_last_used(token.id, now)
            token.last_used_at = max(token.last_used_at or now, now)
        except StorageError as exc:
            logger.warning(
                "token_last_used_update_failed",
                token_id=redact(token.id),
                error=exc.message,
            )
        return AuthResult(organization=organization, user=user, token=token)

    async def create_token(
        self,
        user_id: str,
        name: str,
        *,
        organization_id: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> IssuedToken:
        """Issue a token for ``user_id``.

        ``organization_id`` scopes the token to a non-personal organization the
        user belongs to. ``secret`` is only supplied by seeding; normal issuance
        generates one.
        """
        name = (name or "").strip()
        if not name or len(name) > MAX_TOKEN_NAME_LENGTH:
            raise ValidationError(
                f"token name must be 1-{MAX_TOKEN_NAME_LENGTH} characters",
                detail={"field": "name"},
            )
        with storage_guard("users", "find_by_id"):
            user = self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if organization_id and organization_id != user.organization_id:
            with storage_guard("memberships", "find_by_user_and_org"):
                membership = self.memberships.find_by_user_and_org(user_id, organization_id)
            if membership is None:
                raise NotMemberError(user_id, organization_id)
        else:
            organization_id = None

        with storage_guard("tokens", "find_by_user_id"):
            existing = self.tokens.find_by_user_id(user_id)
        if len(existing) >= self.max_tokens_per_user:
            raise TokenLimitReachedError(user_id, self.max_tokens_per_user)

        token_id = str(uuid.uuid4())
        secret = secret or secrets.token_urlsafe(32)
        token_hash = await asyncio.to_thread(self.hasher.hash, secret)
        token = ApiToken(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            name=name,
            created_at=self.clock.now(),
            organization_id=organization_id,
        )
        with storage_guard("tokens", "save"):
            self.tokens.save(token)
        logger.info("token_created", user_id=user_id, token_id=redact(token_id))
        return IssuedToken(token=token, raw_token=format_token(token_id, secret))

    async def list_tokens(self, user_id: str) -> List[ApiToken]:
        with storage_guard("tokens", "find_by_user_id"):
            return self.tokens.find_by_user_id(user_id)

    async def revoke_token(self, user_id: str, token_id: str) -> None:
        with storage_guard("tokens", "find_by_id"):
            token = self.tokens.find_by_id(token_id)
        if token is None:
            raise TokenNotFoundError(token_id)
        if token.user_id != user_id:
            raise TokenOwnershipError(token_id, user_id)
        with storage_guard("tokens", "delete"):
            self.tokens.delete(token_id)
        logger.info("token_revoked", user_id=user_id, token_id=redact(token_id))

    async def has_any_tokens(self) -> bool:
        with storage_guard("tokens", "has_any_tokens"):
            return self.tokens.has_any_tokens()

    async def _burn_comparison(self, secret: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(self.hasher.hash, _DUMMY_SECRET)
        await asyncio.to_thread(self.hasher.compare, secret, self._dummy_hash)

    def _reject(
        self,
        reason: TokenFailure,
        token_id: Optional[str] = None,
        *,
        integrity: bool = False,
    ) -> TokenRejection:
        if integrity:
            logger.error("token_integrity_failure", reason=reason.value, token_id=redact(token_id))
        else:
            logger.info("token_rejected", reason=reason.value, token_id=redact(token_id))
        return TokenRejection(reason=reason)
