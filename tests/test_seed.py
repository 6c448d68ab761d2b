"""First-start seeding of the bootstrap user and token."""

import pytest

from yoink.service.seed import (
    SEED_ORGANIZATION_NAME,
    SEED_TOKEN_NAME,
    SEED_USER_EMAIL,
    seed_auth_data,
)
from yoink.service.tokens import AuthResult


@pytest.mark.asyncio
async def test_seed_creates_user_org_and_token(runtime):
    issued = await seed_auth_data("s3cret", runtime.users, runtime.tokens)

    assert issued is not None
    assert issued.raw_token == f"{issued.token.id}:s3cret"
    assert issued.token.name == SEED_TOKEN_NAME

    result = await runtime.tokens.validate_token(issued.raw_token)
    assert isinstance(result, AuthResult)
    assert result.user.email == SEED_USER_EMAIL
    assert result.organization.name == SEED_ORGANIZATION_NAME


@pytest.mark.asyncio
async def test_seed_without_secret_is_noop(runtime):
    assert await seed_auth_data(None, runtime.users, runtime.tokens) is None
    assert await seed_auth_data("", runtime.users, runtime.tokens) is None
    assert await runtime.users.find_by_email(SEED_USER_EMAIL) is None


@pytest.mark.asyncio
async def test_seed_skipped_once_tokens_exist(runtime):
    user = await runtime.users.provision_user("ada@example.com")
    await runtime.tokens.create_token(user.id, "laptop")

    assert await seed_auth_data("s3cret", runtime.users, runtime.tokens) is None
    assert await runtime.users.find_by_email(SEED_USER_EMAIL) is None


@pytest.mark.asyncio
async def test_seed_is_idempotent(runtime):
    first = await seed_auth_data("s3cret", runtime.users, runtime.tokens)
    second = await seed_auth_data("s3cret", runtime.users, runtime.tokens)

    assert first is not None
    assert second is None
    user = await runtime.users.find_by_email(SEED_USER_EMAIL)
    assert len(await runtime.tokens.list_tokens(user.id)) == 1


@pytest.mark.asyncio
async def test_seed_reuses_existing_seed_user(runtime):
    existing = await runtime.users.provision_user(
        SEED_USER_EMAIL, organization_name=SEED_ORGANIZATION_NAME
    )

    issued = await seed_auth_data("s3cret", runtime.users, runtime.tokens)

    assert issued.token.user_id == existing.id
