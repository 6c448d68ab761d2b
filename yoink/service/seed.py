from __future__ import annotations

from typing import Optional

from yoink.logging import get_logger
from yoink.service.tokens import IssuedToken, TokenService
from yoink.service.users import UserService

logger = get_logger(__name__)

SEED_ORGANIZATION_NAME = "My Captures"
SEED_USER_EMAIL = "seed@localhost"
SEED_TOKEN_NAME = "seed-token"


async def seed_auth_data(
    seed_secret: Optional[str],
    users: UserService,
    tokens: TokenService,
) -> Optional[IssuedToken]:
    """Create a bootstrap user and API token on an empty deployment.

    Does nothing without a configured seed secret or once any token exists.
    The issued token is ``<tokenId>:<seed_secret>``.
    """
    if not seed_secret:
        return None
    if await tokens.has_any_tokens():
        logger.debug("seed_skipped", reason="tokens_exist")
        return None

    user = await users.find_by_email(SEED_USER_EMAIL)
    if user is None:
        user = await users.provision_user(
            SEED_USER_EMAIL, organization_name=SEED_ORGANIZATION_NAME
        )
    issued = await tokens.create_token(user.id, SEED_TOKEN_NAME, secret=seed_secret)
    logger.info(
        "seed_token_created",
        user_id=user.id,
        organization_id=user.organization_id,
        token_id=issued.token.id,
    )
    return issued
