"""Unit tests for cookie sessions: creation, validation, sliding refresh, cleanup."""

from datetime import timedelta

import pytest

from yoink.service.errors import (
    NoMembershipsError,
    NotMemberError,
    StorageUnavailableError,
    UserNotFoundError,
)
from yoink.service.sessions import SessionService
from yoink.storage.errors import StorageError
from yoink.storage.models import MembershipRole, Organization, User


def _assert_timestamps_ordered(session):
    assert session.created_at <= session.last_active_at <= session.expires_at


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_defaults_to_personal_org(self, runtime):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)

        assert session.current_organization_id == user.organization_id
        assert session.expires_at == session.created_at + runtime.settings.session_ttl
        _assert_timestamps_ordered(session)

    @pytest.mark.asyncio
    async def test_explicit_org_requires_membership(self, runtime, store):
        user = await runtime.users.provision_user("ada@example.com")
        store.organizations.save(Organization(id="team-org", name="Team"))

        with pytest.raises(NotMemberError):
            await runtime.sessions.create_session(user.id, "team-org")

        await runtime.memberships.add_member(user.id, "team-org", MembershipRole.MEMBER)
        session = await runtime.sessions.create_session(user.id, "team-org")
        assert session.current_organization_id == "team-org"

    @pytest.mark.asyncio
    async def test_falls_back_to_first_membership(self, runtime, store):
        store.organizations.save(Organization(id="org-a", name="A"))
        store.users.save(User(id="u-1", email="nopersonal@example.com", organization_id="org-a"))
        await runtime.memberships.add_member("u-1", "org-a", MembershipRole.ADMIN)

        session = await runtime.sessions.create_session("u-1")

        assert session.current_organization_id == "org-a"

    @pytest.mark.asyncio
    async def test_requires_user_and_membership(self, runtime, store):
        with pytest.raises(UserNotFoundError):
            await runtime.sessions.create_session("ghost")

        store.organizations.save(Organization(id="org-a", name="A"))
        store.users.save(User(id="u-1", email="lonely@example.com", organization_id="org-a"))
        with pytest.raises(NoMembershipsError):
            await runtime.sessions.create_session("u-1")


class TestValidateSession:
    @pytest.mark.asyncio
    async def test_active_session_is_returned(self, runtime):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)

        found = await runtime.sessions.validate_session(session.id)

        assert found is not None
        assert found.id == session.id

    @pytest.mark.asyncio
    async def test_unknown_and_empty_ids(self, runtime):
        assert await runtime.sessions.validate_session("missing") is None
        assert await runtime.sessions.validate_session("") is None

    @pytest.mark.asyncio
    async def test_expired_session_is_absent_even_before_cleanup(self, runtime, clock, store):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)

        clock.set(session.expires_at)

        assert await runtime.sessions.validate_session(session.id) is None
        # still stored; expiry decides validity, not deletion
        assert store.sessions.find_by_id(session.id) is not None

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_a_miss(self, runtime, store, monkeypatch):
        def _broken(_session_id):
            raise StorageError("connection refused", store="sessions")

        monkeypatch.setattr(store.sessions, "find_by_id", _broken)
        with pytest.raises(StorageUnavailableError):
            await runtime.sessions.validate_session("any")


class TestRefreshSession:
    @pytest.mark.asyncio
    async def test_refresh_within_threshold_is_noop(self, runtime, clock, store):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)
        clock.advance(timedelta(hours=1))

        assert await runtime.sessions.refresh_session(session.id) is False
        assert await runtime.sessions.refresh_session(session.id) is False

        stored = store.sessions.find_by_id(session.id)
        assert stored.last_active_at == session.last_active_at
        assert stored.expires_at == session.expires_at

    @pytest.mark.asyncio
    async def test_refresh_after_threshold_slides_expiry(self, runtime, clock, store):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)
        now = clock.advance(runtime.settings.session_refresh_threshold + timedelta(seconds=1))

        assert await runtime.sessions.refresh_session(session.id) is True

        stored = store.sessions.find_by_id(session.id)
        assert stored.last_active_at == now
        assert stored.expires_at == now + runtime.settings.session_ttl
        _assert_timestamps_ordered(stored)

        # Second refresh in the same window writes nothing.
        assert await runtime.sessions.refresh_session(session.id) is False

    @pytest.mark.asyncio
    async def test_exactly_at_threshold_does_not_refresh(self, runtime, clock):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)
        clock.advance(runtime.settings.session_refresh_threshold)

        assert await runtime.sessions.refresh_session(session.id) is False

    @pytest.mark.asyncio
    async def test_expired_session_is_not_revived(self, runtime, clock, store):
        user = await runtime.users.provision_user("ada@example.com")
        session = await runtime.sessions.create_session(user.id)
        clock.advance(runtime.settings.session_ttl + timedelta(minutes=1))

        assert await runtime.sessions.refresh_session(session.id) is False
        assert await runtime.sessions.validate_session(session.id) is None
        assert store.sessions.find_by_id(session.id).expires_at == session.expires_at

    def test_threshold_must_be_shorter_than_ttl(self, store, clock):
        with pytest.raises(ValueError):
            SessionService(
                store.sessions,
                store.users,
                store.memberships,
                clock,
                ttl=timedelta(hours=1),
                refresh_threshold=timedelta(hours=1),
            )


class TestSessionRemoval:
    @pytest.mark.asyncio
    async def test_delete_expired_counts_removed_sessions(self, runtime, clock, store):
        user = await runtime.users.provision_user("ada@example.com")
        old = await runtime.sessions.create_session(user.id)
        clock.advance(timedelta(days=3))
        fresh = await runtime.sessions.create_session(user.id)
        clock.set(old.expires_at + timedelta(seconds=1))

        removed = await runtime.sessions.cleanup_expired_sessions()

        assert removed == 1
        assert store.sessions.find_by_id(old.id) is None
        assert store.sessions.find_by_id(fresh.id) is not None

    @pytest.mark.asyncio
    async def test_revoke_and_revoke_all(self, runtime):
        user = await runtime.users.provision_user("ada@example.com")
        first = await runtime.sessions.create_session(user.id)
        await runtime.sessions.create_session(user.id)
        await runtime.sessions.create_session(user.id)

        assert await runtime.sessions.revoke_session(first.id) is True
        assert await runtime.sessions.revoke_session(first.id) is False
        assert await runtime.sessions.revoke_all_user_sessions(user.id) == 2
        assert await runtime.sessions.list_sessions(user.id) == []
