from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from kintai_auth.logging import get_logger
from kintai_auth.storage.models import AuthorizationProfile, Role
from kintai_auth.storage.reconciler import PersistenceReconciler

StateListener = Callable[["SessionState"], None]


@dataclass(frozen=True)
class SessionState:
    is_authenticated: bool = False
    role: Optional[Role] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    is_loading: bool = True


class SessionStore:
    """Single in-memory source of truth for the authenticated session.

    Only ``commit`` can make ``is_authenticated`` true. ``reset`` is
    idempotent and always leaves ``is_loading`` false.
    """

    def __init__(self, reconciler: PersistenceReconciler) -> None:
        self.reconciler = reconciler
        self._state = SessionState()
        self._profile: Optional[AuthorizationProfile] = None
        self._listeners: List[StateListener] = []
        self.logger = get_logger(__name__)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def profile(self) -> Optional[AuthorizationProfile]:
        return self._profile

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, state: SessionState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                self.logger.error(
                    "session_listener_failed", error_type=type(exc).__name__, error=str(exc)
                )

    def begin_loading(self) -> None:
        self._set(replace(self._state, is_loading=True))

    def finish_loading(self) -> None:
        self._set(replace(self._state, is_loading=False))

    async def commit(
        self,
        profile: AuthorizationProfile,
        role: Role,
        user_id: str,
        user_name: Optional[str] = None,
    ) -> SessionState:
        if not profile.is_active:
            raise ValueError("inactive profiles cannot be committed")
        try:
            await self.reconciler.save_profile_cache(profile, role, user_id, user_name)
        except Exception as exc:
            # Other screens lose their header source, but the session itself is valid
            self.logger.warning(
                "profile_cache_write_failed", error_type=type(exc).__name__, error=str(exc)
            )
        self._profile = profile
        self._set(
            SessionState(
                is_authenticated=True,
                role=role,
                user_id=user_id,
                user_name=user_name,
                is_loading=False,
            )
        )
        self.logger.info("session_committed", role=role.value, user_id=user_id)
        return self._state

    async def reset(self, reason: str) -> SessionState:
        was_authenticated = self._state.is_authenticated
        await self.reconciler.clear_profile_cache()
        self._profile = None
        self._set(SessionState(is_loading=False))
        if was_authenticated:
            self.logger.info("session_reset", reason=reason)
        else:
            self.logger.debug("session_reset", reason=reason)
        return self._state


__all__ = ["SessionState", "SessionStore", "StateListener"]
