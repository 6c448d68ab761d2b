"""User provisioning and deletion."""

import pytest

from yoink.service.errors import (
    ConflictError,
    StorageUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from yoink.service.tokens import TokenRejection
from yoink.storage.errors import StorageError
from yoink.storage.models import MembershipRole


class TestProvisionUser:
    @pytest.mark.asyncio
    async def test_creates_personal_org_and_owner_membership(self, runtime):
        user = await runtime.users.provision_user("  Ada@Example.com ")

        assert user.email == "ada@example.com"
        org = await runtime.memberships.get_organization(user.organization_id)
        assert org.name == "ada@example.com's Workspace"
        membership = await runtime.memberships.get_membership(user.id, org.id)
        assert membership.role == MembershipRole.OWNER
        assert membership.is_personal_org is True

    @pytest.mark.asyncio
    async def test_custom_organization_name(self, runtime):
        user = await runtime.users.provision_user("ada@example.com", organization_name="Lab")

        org = await runtime.memberships.get_organization(user.organization_id)
        assert org.name == "Lab"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, runtime):
        await runtime.users.provision_user("ada@example.com")

        with pytest.raises(ConflictError):
            await runtime.users.provision_user("ADA@example.com")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email", ["", "not-an-email"])
    async def test_invalid_email(self, runtime, email):
        with pytest.raises(ValidationError):
            await runtime.users.provision_user(email)

    @pytest.mark.asyncio
    async def test_failed_membership_write_leaves_no_orphans(self, runtime, store, monkeypatch):
        def _broken(_membership):
            raise StorageError("connection reset", store="memberships")

        monkeypatch.setattr(store.memberships, "save", _broken)

        with pytest.raises(StorageUnavailableError):
            await runtime.users.provision_user("ada@example.com")

        assert await runtime.users.find_by_email("ada@example.com") is None
        assert store.state.organizations == {}

    @pytest.mark.asyncio
    async def test_failed_user_write_removes_organization(self, runtime, store, monkeypatch):
        def _broken(_user):
            raise StorageError("connection reset", store="users")

        monkeypatch.setattr(store.users, "save", _broken)

        with pytest.raises(StorageUnavailableError):
            await runtime.users.provision_user("ada@example.com")

        assert store.state.organizations == {}


class TestDeleteUser:
    @pytest.mark.asyncio
    async def test_delete_removes_credentials(self, runtime):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)
        issued = await runtime.tokens.create_token(user.id, "laptop")

        await runtime.users.delete_user(user.id)

        assert await runtime.sessions.validate_session(session.id) is None
        assert isinstance(await runtime.tokens.validate_token(issued.raw_token), TokenRejection)
        assert await runtime.tokens.list_tokens(user.id) == []
        with pytest.raises(UserNotFoundError):
            await runtime.users.get_user(user.id)

    @pytest.mark.asyncio
    async def test_delete_unknown_user(self, runtime):
        with pytest.raises(UserNotFoundError):
            await runtime.users.delete_user("ghost")
