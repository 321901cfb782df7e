from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

from kintai_auth.logging import get_logger
from kintai_auth.storage.common import StorageBackend, dump_json, load_json
from kintai_auth.storage.cookie import CookieJarBackend
from kintai_auth.storage.errors import BackendUnavailable
from kintai_auth.storage.models import (
    AUTH_CACHE_KEY,
    INTENDED_ROLE_KEY,
    OAUTH_IN_PROGRESS_KEY,
    USER_INFO_CACHE_KEY,
    AuthorizationProfile,
    PersistedIntent,
    Role,
)

# Provider-issued authorization code parameter on the redirect callback
CALLBACK_MARKER = "code"

logger = get_logger(__name__)


class PersistenceReconciler:
    """Replicates login-intent keys over redundant stores and reads them back deterministically.

    ``backends`` is the read precedence, highest first (async durable store,
    tab store, window store, cross-tab store). The cookie is consulted after
    every backend and the URL query string last, except that a query value
    accompanying a provider callback marker beats every stored copy: it is
    the role the user selected for this very attempt.

    Writes go to every backend and the cookie. A single failing store is
    logged and ignored; only a write that reaches no store at all raises
    ``BackendUnavailable``.
    """

    def __init__(
        self,
        backends: Sequence[StorageBackend],
        *,
        cookie: Optional[CookieJarBackend] = None,
        profile_backend: Optional[StorageBackend] = None,
        cookie_ttl_seconds: int = 60 * 60,
    ) -> None:
        if not backends:
            raise ValueError("at least one storage backend is required")
        self.backends = list(backends)
        self.cookie = cookie
        self.profile_backend = profile_backend or self.backends[-1]
        self.cookie_ttl_seconds = cookie_ttl_seconds
        self.logger = logger

    def _all_stores(self) -> list[StorageBackend]:
        stores: list[StorageBackend] = list(self.backends)
        if self.cookie is not None:
            stores.append(self.cookie)
        return stores

    async def write(self, key: str, value: str) -> int:
        written = 0
        failures: Dict[str, str] = {}
        for store in self._all_stores():
            ttl = self.cookie_ttl_seconds if store is self.cookie else None
            try:
                await store.set(key, value, ttl_seconds=ttl)
                written += 1
            except Exception as exc:
                failures[store.name] = str(exc)
                self.logger.warning(
                    "intent_backend_write_failed",
                    key=key,
                    backend=store.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if written == 0:
            raise BackendUnavailable(
                f"no storage backend accepted {key}", detail={"failures": failures}
            )
        self.logger.debug("intent_written", key=key, stores=written)
        return written

    async def read(
        self, key: str, query: Optional[Mapping[str, str]] = None
    ) -> Optional[str]:
        query = query or {}
        url_value = query.get(key) or None
        if url_value and query.get(CALLBACK_MARKER):
            self.logger.debug("intent_read", key=key, source="url_callback")
            return url_value

        for store in self._all_stores():
            try:
                value = await store.get(key)
            except Exception as exc:
                self.logger.warning(
                    "intent_backend_read_failed",
                    key=key,
                    backend=store.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if value:
                self.logger.debug("intent_read", key=key, source=store.name)
                return value

        if url_value:
            self.logger.debug("intent_read", key=key, source="url")
        return url_value

    async def clear(self, key: str) -> None:
        for store in self._all_stores():
            try:
                await store.delete(key)
            except Exception as exc:
                self.logger.warning(
                    "intent_backend_clear_failed",
                    key=key,
                    backend=store.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def write_intent(self, intent: PersistedIntent) -> None:
        if intent.intended_role is not None:
            await self.write(INTENDED_ROLE_KEY, intent.intended_role.value)
        if intent.oauth_in_progress:
            await self.write(OAUTH_IN_PROGRESS_KEY, "true")

    async def read_intent(
        self, query: Optional[Mapping[str, str]] = None
    ) -> PersistedIntent:
        role = Role.parse(await self.read(INTENDED_ROLE_KEY, query))
        in_progress = await self.read(OAUTH_IN_PROGRESS_KEY, query)
        return PersistedIntent(
            intended_role=role,
            oauth_in_progress=(in_progress or "").lower() == "true",
        )

    async def clear_intent(self) -> None:
        await self.clear(INTENDED_ROLE_KEY)
        await self.clear(OAUTH_IN_PROGRESS_KEY)

    async def save_profile_cache(
        self,
        profile: AuthorizationProfile,
        role: Role,
        user_id: str,
        user_name: Optional[str],
    ) -> None:
        """Cache the committed profile where other parts of the app read it."""
        await self.profile_backend.set(
            AUTH_CACHE_KEY, dump_json({"role": role.value, "userId": user_id})
        )
        await self.profile_backend.set(
            USER_INFO_CACHE_KEY,
            dump_json(
                {
                    "requestedBy": user_name or profile.display_name or None,
                    "employeeId": profile.employee_id,
                    "role": role.value,
                }
            ),
        )

    async def load_profile_cache(self) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.profile_backend.get(USER_INFO_CACHE_KEY)
        except BackendUnavailable as exc:
            self.logger.warning("profile_cache_read_failed", error=str(exc))
            return None
        data = load_json(raw)
        return data if isinstance(data, dict) else None

    async def clear_profile_cache(self) -> None:
        for key in (AUTH_CACHE_KEY, USER_INFO_CACHE_KEY):
            try:
                await self.profile_backend.delete(key)
            except BackendUnavailable as exc:
                self.logger.warning("profile_cache_clear_failed", key=key, error=str(exc))


__all__ = ["PersistenceReconciler", "CALLBACK_MARKER"]
