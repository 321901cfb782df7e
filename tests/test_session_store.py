"""Tests for SessionStore and the protected-route guard."""

import pytest

from kintai_auth.service.guard import Access, home_route_for, resolve_route_access
from kintai_auth.service.session import SessionState, SessionStore
from kintai_auth.storage.memory import MemoryBackend
from kintai_auth.storage.models import USER_INFO_CACHE_KEY, Role
from kintai_auth.storage.reconciler import PersistenceReconciler


@pytest.fixture
def cache():
    return MemoryBackend("cross_tab")


@pytest.fixture
def store(cache):
    return SessionStore(PersistenceReconciler([cache]))


class TestSessionStore:
    def test_starts_loading_and_unauthenticated(self, store):
        assert store.state == SessionState(is_authenticated=False, is_loading=True)
        assert store.profile is None

    @pytest.mark.asyncio
    async def test_commit_sets_every_field(self, store, make_profile, cache):
        profile = make_profile("admin")

        state = await store.commit(profile, Role.EMPLOYEE, "E001", "Yamada Taro")

        assert state == SessionState(
            is_authenticated=True,
            role=Role.EMPLOYEE,
            user_id="E001",
            user_name="Yamada Taro",
            is_loading=False,
        )
        assert store.profile is profile
        assert await cache.get(USER_INFO_CACHE_KEY) is not None

    @pytest.mark.asyncio
    async def test_inactive_profile_refused(self, store, make_profile):
        with pytest.raises(ValueError):
            await store.commit(make_profile("admin", is_active=False), Role.ADMIN, "E001")
        assert store.state.is_authenticated is False

    @pytest.mark.asyncio
    async def test_commit_survives_cache_failure(self, make_profile):
        store = SessionStore(PersistenceReconciler([MemoryBackend("x", available=False)]))

        state = await store.commit(make_profile("admin"), Role.ADMIN, "E001")

        assert state.is_authenticated

    @pytest.mark.asyncio
    async def test_reset_is_idempotent(self, store, make_profile, cache):
        await store.commit(make_profile("admin"), Role.ADMIN, "E001")

        first = await store.reset("logout")
        second = await store.reset("logout")

        assert first == second == SessionState(is_loading=False)
        assert store.profile is None
        assert await cache.get(USER_INFO_CACHE_KEY) is None

    @pytest.mark.asyncio
    async def test_listeners_see_changes(self, store, make_profile):
        seen = []
        unsubscribe = store.subscribe(seen.append)

        await store.commit(make_profile("admin"), Role.ADMIN, "E001")
        unsubscribe()
        await store.reset("logout")

        assert len(seen) == 1
        assert seen[0].is_authenticated

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_commit(self, store, make_profile):
        def explode(state):
            raise RuntimeError("listener bug")

        store.subscribe(explode)

        state = await store.commit(make_profile("admin"), Role.ADMIN, "E001")

        assert state.is_authenticated


class TestRouteGuard:
    def test_waits_while_loading(self):
        assert resolve_route_access(SessionState()).access == Access.WAIT

    def test_redirects_anonymous_users(self):
        access = resolve_route_access(SessionState(is_loading=False), Role.ADMIN)

        assert access.access == Access.REDIRECT
        assert access.redirect_to == "/login"

    def test_role_must_match_exactly(self):
        state = SessionState(is_authenticated=True, role=Role.EMPLOYEE, is_loading=False)

        assert resolve_route_access(state, Role.ADMIN).access == Access.REDIRECT
        assert resolve_route_access(state, Role.EMPLOYEE).access == Access.ALLOW
        assert resolve_route_access(state).access == Access.ALLOW

    def test_home_routes(self):
        assert home_route_for(Role.ADMIN) == "/admin/employees"
        assert home_route_for(Role.EMPLOYEE) == "/employee/attendance"
        assert home_route_for(None) == "/employee/attendance"
