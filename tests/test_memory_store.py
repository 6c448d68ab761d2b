"""Tests for the in-memory store: constraints, cascades and atomic guards."""

import threading
from datetime import timedelta

import pytest

from yoink.storage.errors import ConstraintViolation
from yoink.storage.memory import MemoryStore
from yoink.storage.models import (
    ApiToken,
    GuardOutcome,
    MembershipRole,
    Organization,
    OrganizationMembership,
    User,
    UserSession,
    utcnow,
)


def _seed_user(store, user_id="u-1", email="ada@example.com", org_id="org-1"):
    store.organizations.save(Organization(id=org_id, name="Personal"))
    store.users.save(User(id=user_id, email=email, organization_id=org_id))
    store.memberships.save(
        OrganizationMembership(
            id=f"m-{user_id}",
            user_id=user_id,
            organization_id=org_id,
            role=MembershipRole.OWNER,
            is_personal_org=True,
        )
    )


def test_duplicate_email_is_a_constraint_violation():
    store = MemoryStore()
    _seed_user(store)
    store.organizations.save(Organization(id="org-2", name="Other"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.users.save(User(id="u-2", email="ada@example.com", organization_id="org-2"))
    assert excinfo.value.detail == {"field": "email"}


def test_references_must_exist():
    store = MemoryStore()
    now = utcnow()

    with pytest.raises(ConstraintViolation):
        store.users.save(User(id="u-1", email="a@example.com", organization_id="missing"))
    with pytest.raises(ConstraintViolation):
        store.tokens.save(ApiToken(id="t-1", user_id="ghost", token_hash="h", name="n"))
    with pytest.raises(ConstraintViolation):
        store.sessions.save(UserSession.new("ghost", "org", now=now, ttl=timedelta(days=1)))


def test_one_membership_per_user_and_org():
    store = MemoryStore()
    _seed_user(store)

    with pytest.raises(ConstraintViolation):
        store.memberships.save(
            OrganizationMembership(
                id="m-dup", user_id="u-1", organization_id="org-1", role=MembershipRole.MEMBER
            )
        )


def test_single_personal_membership():
    store = MemoryStore()
    _seed_user(store)
    store.organizations.save(Organization(id="org-2", name="Other"))

    with pytest.raises(ConstraintViolation):
        store.memberships.save(
            OrganizationMembership(
                id="m-2",
                user_id="u-1",
                organization_id="org-2",
                role=MembershipRole.OWNER,
                is_personal_org=True,
            )
        )


def test_returned_rows_are_copies():
    store = MemoryStore()
    _seed_user(store)

    user = store.users.find_by_id("u-1")
    user.email = "mutated@example.com"

    assert store.users.find_by_id("u-1").email == "ada@example.com"


def test_last_used_never_moves_backwards():
    store = MemoryStore()
    _seed_user(store)
    store.tokens.save(ApiToken(id="t-1", user_id="u-1", token_hash="h", name="n"))
    later = utcnow()
    earlier = later - timedelta(minutes=5)

    store.tokens.update_last_used("t-1", later)
    store.tokens.update_last_used("t-1", earlier)

    assert store.tokens.find_by_id("t-1").last_used_at == later


def test_last_active_never_moves_backwards():
    store = MemoryStore()
    _seed_user(store)
    now = utcnow()
    session = UserSession.new("u-1", "org-1", now=now, ttl=timedelta(days=7))
    store.sessions.save(session)

    store.sessions.update_last_active(
        session.id, now - timedelta(hours=1), now + timedelta(days=1)
    )

    stored = store.sessions.find_by_id(session.id)
    assert stored.last_active_at == now
    assert stored.expires_at == session.expires_at


def test_delete_user_cascades():
    store = MemoryStore()
    _seed_user(store)
    store.tokens.save(ApiToken(id="t-1", user_id="u-1", token_hash="h", name="n"))
    session = UserSession.new("u-1", "org-1", now=utcnow(), ttl=timedelta(days=1))
    store.sessions.save(session)

    assert store.users.delete("u-1") is True

    assert store.tokens.find_by_id("t-1") is None
    assert store.sessions.find_by_id(session.id) is None
    assert store.memberships.find_by_user_id("u-1") == []
    assert store.users.delete("u-1") is False


def test_switch_requires_current_membership():
    store = MemoryStore()
    _seed_user(store)
    store.organizations.save(Organization(id="team", name="Team"))
    session = UserSession.new("u-1", "org-1", now=utcnow(), ttl=timedelta(days=1))
    store.sessions.save(session)

    assert store.sessions.update_current_organization(session.id, "u-1", "team") is False
    assert store.sessions.find_by_id(session.id).current_organization_id == "org-1"

    store.memberships.save(
        OrganizationMembership(
            id="m-team", user_id="u-1", organization_id="team", role=MembershipRole.MEMBER
        )
    )
    assert store.sessions.update_current_organization(session.id, "u-1", "team") is True
    assert store.sessions.find_by_id(session.id).current_organization_id == "team"
    assert store.sessions.update_current_organization(session.id, "u-2", "team") is False


def test_delete_organization():
    store = MemoryStore()
    _seed_user(store)
    store.organizations.save(Organization(id="orphan", name="Orphan"))

    with pytest.raises(ConstraintViolation):
        store.organizations.delete("org-1")
    assert store.organizations.delete("orphan") is True
    assert store.organizations.delete("orphan") is False


class TestPrivilegedGuards:
    def _two_admins(self):
        store = MemoryStore()
        _seed_user(store, "u-1", "a@example.com", "org-a")
        _seed_user(store, "u-2", "b@example.com", "org-b")
        store.organizations.save(Organization(id="team", name="Team"))
        for user_id in ("u-1", "u-2"):
            store.memberships.save(
                OrganizationMembership(
                    id=f"team-{user_id}",
                    user_id=user_id,
                    organization_id="team",
                    role=MembershipRole.ADMIN,
                )
            )
        return store

    def test_delete_refuses_last_privileged(self):
        store = self._two_admins()

        assert store.memberships.delete_unless_last_privileged("team-u-1") is GuardOutcome.APPLIED
        assert store.memberships.delete_unless_last_privileged("team-u-2") is GuardOutcome.REFUSED
        assert store.memberships.count_privileged_members("team") == 1

    def test_missing_row_is_reported(self):
        store = self._two_admins()

        assert store.memberships.delete_unless_last_privileged("nope") is GuardOutcome.MISSING
        assert (
            store.memberships.update_role_unless_last_privileged("nope", "member")
            is GuardOutcome.MISSING
        )

    def test_demote_refuses_last_privileged(self):
        store = self._two_admins()

        assert (
            store.memberships.update_role_unless_last_privileged("team-u-1", "member")
            is GuardOutcome.APPLIED
        )
        assert (
            store.memberships.update_role_unless_last_privileged(
                "team-u-2", MembershipRole.MEMBER
            )
            is GuardOutcome.REFUSED
        )
        assert store.memberships.find_by_id("team-u-2").role == MembershipRole.ADMIN

    def test_concurrent_deletes_leave_one_privileged_member(self):
        store = self._two_admins()
        barrier = threading.Barrier(2)
        results = {}

        def _leave(membership_id):
            barrier.wait()
            results[membership_id] = store.memberships.delete_unless_last_privileged(
                membership_id
            )

        threads = [
            threading.Thread(target=_leave, args=(mid,)) for mid in ("team-u-1", "team-u-2")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results.values()) == [GuardOutcome.APPLIED, GuardOutcome.REFUSED]
        assert store.memberships.count_privileged_members("team") == 1
