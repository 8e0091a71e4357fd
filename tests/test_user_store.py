"""Unit tests for auth/store.py -- account persistence and its invariants."""

import pytest

from auth.store import UserStore
from core.errors import Conflict
from core.models import Actor, ActorStatus, Role


@pytest.fixture
def users():
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


def _add(users: UserStore, username: str, role: Role, **kwargs) -> int:
    return users.create_user(Actor(username=username, role=role, **kwargs))


class TestCreateUser:
    def test_round_trip(self, users) -> None:
        uid = _add(users, "dana@example.org", Role.SUPPORT_AGENT, name="Dana", branches=frozenset({"HQ", "NYC"}))
        actor = users.get_by_id(uid)
        assert actor.username == "dana@example.org"
        assert actor.name == "Dana"
        assert actor.role == Role.SUPPORT_AGENT
        assert actor.status == ActorStatus.ACTIVE
        assert actor.branches == frozenset({"HQ", "NYC"})
        assert actor.created_at is not None
        assert users.get_by_username("dana@example.org").id == uid

    def test_duplicate_username(self, users) -> None:
        _add(users, "dana@example.org", Role.END_USER)
        with pytest.raises(Conflict):
            _add(users, "dana@example.org", Role.SUPPORT_AGENT)

    def test_second_administrator_refused(self, users) -> None:
        _add(users, "root@example.org", Role.ADMINISTRATOR)
        with pytest.raises(Conflict) as exc_info:
            _add(users, "root2@example.org", Role.ADMINISTRATOR)
        assert "administrator_id" in exc_info.value.context
        assert len(users.list_users()) == 1

    def test_database_refuses_second_administrator_without_precheck(self, users, monkeypatch) -> None:
        # Two writers that both passed the pre-check still cannot both land.
        root_id = _add(users, "root@example.org", Role.ADMINISTRATOR)
        uid = _add(users, "sec@example.org", Role.SECURITY_OFFICER)
        monkeypatch.setattr(users, "_ensure_no_admin", lambda conn, except_id=None: None)

        with pytest.raises(Conflict):
            _add(users, "root2@example.org", Role.ADMINISTRATOR)
        with pytest.raises(Conflict):
            users.update_user(uid, role=Role.ADMINISTRATOR)

        admins = [u.id for u in users.list_users() if u.role == Role.ADMINISTRATOR]
        assert admins == [root_id]

    def test_promotion_to_second_administrator_refused(self, users) -> None:
        _add(users, "root@example.org", Role.ADMINISTRATOR)
        uid = _add(users, "sec@example.org", Role.SECURITY_OFFICER)
        with pytest.raises(Conflict):
            users.update_user(uid, role=Role.ADMINISTRATOR)
        assert users.get_by_id(uid).role == Role.SECURITY_OFFICER

    def test_administrator_may_be_updated_in_place(self, users) -> None:
        uid = _add(users, "root@example.org", Role.ADMINISTRATOR)
        assert users.update_user(uid, role=Role.ADMINISTRATOR, name="Root")
        assert users.get_by_id(uid).name == "Root"


class TestLookups:
    def test_oldest_active_skips_inactive(self, users) -> None:
        first = _add(users, "a1@example.org", Role.SUPPORT_AGENT)
        second = _add(users, "a2@example.org", Role.SUPPORT_AGENT)
        assert users.oldest_active(Role.SUPPORT_AGENT).id == first

        users.update_user(first, status="inactive")
        assert users.oldest_active(Role.SUPPORT_AGENT).id == second
        assert users.oldest_active(Role.SECURITY_OFFICER) is None

    def test_active_ids_by_role(self, users) -> None:
        agent = _add(users, "a@example.org", Role.SUPPORT_AGENT)
        officer = _add(users, "o@example.org", Role.SECURITY_OFFICER)
        _add(users, "u@example.org", Role.END_USER)
        _add(users, "gone@example.org", Role.SECURITY_OFFICER, status=ActorStatus.INACTIVE)
        assert users.active_ids((Role.SUPPORT_AGENT, Role.SECURITY_OFFICER)) == [agent, officer]

    def test_missing_user(self, users) -> None:
        assert users.get_by_id(42) is None
        assert users.get_by_username("nobody@example.org") is None
        assert users.update_user(42, name="x") is False

    def test_has_users_and_last_login(self, users) -> None:
        assert users.has_users() is False
        uid = _add(users, "a@example.org", Role.END_USER)
        assert users.has_users() is True
        users.update_last_login(uid)
        assert users.get_by_id(uid).last_login is not None
