from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set, Union

from yoink.logging import get_logger, redact
from yoink.service.clock import Clock
from yoink.service.errors import ServiceError
from yoink.service.sessions import SessionService
from yoink.service.tokens import TokenRejection, TokenService

logger = get_logger(__name__)

NOT_AUTHENTICATED = "Not authenticated"
INVALID_SESSION = "Invalid or expired session"
INVALID_TOKEN = "Invalid token"


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved for one request. The only identity downstream code trusts."""

    organization_id: str
    user_id: str
    session_id: Optional[str] = None
    token_id: Optional[str] = None


class CredentialKind(str, Enum):
    SESSION = "session"
    TOKEN = "token"
    NONE = "none"


@dataclass(frozen=True)
class Unauthorized:
    reason: str
    kind: CredentialKind


@dataclass(frozen=True)
class RequestCredentials:
    session_id: Optional[str] = None
    # None when no bearer credential was sent; "" when the header was empty.
    bearer_token: Optional[str] = None

    @classmethod
    def from_request(
        cls, session_cookie: Optional[str], authorization: Optional[str]
    ) -> "RequestCredentials":
        return cls(session_id=session_cookie or None, bearer_token=extract_bearer(authorization))


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip()


class SessionRefresher:
    """Runs session activity refreshes as detached tasks.

    Requests never await the refresh; a failed refresh is logged and the
    session simply stays on its old expiry. Strong references are held until
    each task finishes so the loop cannot garbage-collect them mid-flight.
    """

    def __init__(self, sessions: SessionService) -> None:
        self.sessions = sessions
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, session_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._refresh(session_id), name=f"session-refresh-{redact(session_id)}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight refreshes (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _refresh(self, session_id: str) -> None:
        try:
            await self.sessions.refresh_session(session_id)
        except ServiceError as exc:
            logger.warning(
                "session_refresh_failed",
                session_id=redact(session_id),
                error_code=exc.error_code,
            )
        except Exception as exc:
            logger.error(
                "session_refresh_crashed",
                session_id=redact(session_id),
                error=str(exc),
                exc_info=True,
            )


class AuthResolver:
    """Resolves request credentials into an ``AuthContext``.

    Precedence:
    1. a valid session wins and any bearer token is ignored;
    2. an invalid session with a bearer token falls back to the token;
    3. a bearer token alone is validated on its own;
    4. an invalid session with no token is rejected as such;
    5. no credentials at all is "Not authenticated".

    Storage failures propagate as ``StorageUnavailableError`` and are never
    turned into a 401.
    """

    def __init__(
        self,
        sessions: SessionService,
        tokens: TokenService,
        refresher: SessionRefresher,
        clock: Clock,
    ) -> None:
        self.sessions = sessions
        self.tokens = tokens
        self.refresher = refresher
        self.clock = clock

    async def authenticate(
        self, credentials: RequestCredentials
    ) -> Union[AuthContext, Unauthorized]:
        has_token = credentials.bearer_token is not None

        if credentials.session_id:
            session = await self.sessions.validate_session(credentials.session_id)
            if session is not None:
                if self.sessions.needs_refresh(session, self.clock.now()):
                    self.refresher.schedule(session.id)
                return AuthContext(
                    organization_id=session.current_organization_id,
                    user_id=session.user_id,
                    session_id=session.id,
                )
            if not has_token:
                return Unauthorized(INVALID_SESSION, CredentialKind.SESSION)

        if has_token:
            result = await self.tokens.validate_token(credentials.bearer_token or "")
            if isinstance(result, TokenRejection):
                return Unauthorized(INVALID_TOKEN, CredentialKind.TOKEN)
            return AuthContext(
                organization_id=result.organization.id,
                user_id=result.user.id,
                token_id=result.token.id,
            )

        return Unauthorized(NOT_AUTHENTICATED, CredentialKind.NONE)
