from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from kintai_auth.config import Settings, get_settings
from kintai_auth.logging import get_logger
from kintai_auth.service.authorization import AuthorizationClient, describe_device
from kintai_auth.service.backoff import BackoffPolicy
from kintai_auth.service.cognito import CognitoIdentityProvider, Navigator, _noop_navigator
from kintai_auth.service.controller import AuthController
from kintai_auth.service.identity import IdentityProvider
from kintai_auth.service.poller import TokenPoller
from kintai_auth.service.routing import EntryRoutingPolicy
from kintai_auth.service.session import SessionStore
from kintai_auth.storage.common import StorageBackend
from kintai_auth.storage.cookie import CookieJarBackend
from kintai_auth.storage.file import FileBackend
from kintai_auth.storage.memory import MemoryBackend
from kintai_auth.storage.reconciler import PersistenceReconciler
from kintai_auth.storage.redis_cache import RedisBackend

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_durable_backend(settings: Settings) -> StorageBackend:
    """Redis when reachable; an in-memory stand-in only where explicitly allowed."""
    if settings.use_memory_store:
        logger.info("durable_store_initialized", store_type="memory")
        return MemoryBackend("durable")

    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            backend = RedisBackend(settings.redis_url)
            backend.verify_connection()
            logger.info(
                "durable_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return backend
        except Exception as exc:
            redis_error = exc

    if not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for the durable login-intent store; start Redis or set "
            "USE_MEMORY_STORE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        mode="ALLOW_REDIS_FALLBACK_DEV",
    )
    return MemoryBackend("durable")


class Runtime:
    """Holds the storage backends, clients, and controller for one front-end session."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[IdentityProvider] = None,
        resolver: Optional[AuthorizationClient] = None,
        durable: Optional[StorageBackend] = None,
        navigator: Navigator = _noop_navigator,
        user_agent: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        self.durable = durable or build_durable_backend(self.settings)
        self.tab_store = MemoryBackend("tab")
        self.window_store = MemoryBackend("window")
        self.cross_tab_store = FileBackend(self.settings.shared_fs_root)
        self.cookie = CookieJarBackend(
            default_ttl_seconds=self.settings.intent_cookie_ttl_minutes * 60
        )
        self.reconciler = PersistenceReconciler(
            [self.durable, self.tab_store, self.window_store, self.cross_tab_store],
            cookie=self.cookie,
            profile_backend=self.cross_tab_store,
            cookie_ttl_seconds=self.settings.intent_cookie_ttl_minutes * 60,
        )

        self.provider = provider or CognitoIdentityProvider(
            region=self.settings.cognito_region,
            client_id=self.settings.cognito_client_id or "",
            domain=self.settings.cognito_domain or "",
            redirect_uri=self.settings.oauth_redirect_uri,
            logout_uri=self.settings.oauth_logout_uri,
            scopes=self.settings.oauth_scopes,
            endpoint=self.settings.cognito_endpoint,
            timeout=self.settings.http_timeout_seconds,
            navigator=navigator,
        )
        self.resolver = resolver or AuthorizationClient(
            self.settings.api_base_url,
            timeout=self.settings.http_timeout_seconds,
            device_info=describe_device(user_agent),
        )
        self.controller = build_controller(
            self.provider, self.resolver, self.reconciler, self.settings
        )
        logger.info("runtime_init_completed", durable_store=self.durable.name)

    async def aclose(self) -> None:
        self.controller.close()
        for resource in (self.provider, self.resolver):
            closer = getattr(resource, "aclose", None)
            if closer is not None:
                await closer()
        if isinstance(self.durable, RedisBackend):
            await self.durable.close()


def build_controller(
    provider: IdentityProvider,
    resolver: AuthorizationClient,
    reconciler: PersistenceReconciler,
    settings: Optional[Settings] = None,
) -> AuthController:
    settings = settings or get_settings()
    poll_policy = BackoffPolicy(
        max_attempts=settings.token_poll_max_attempts,
        base_delay_ms=settings.token_poll_interval_ms,
        jitter_ms=settings.retry_jitter_ms,
    )
    signout_policy = BackoffPolicy(
        max_attempts=settings.signout_max_attempts,
        base_delay_ms=settings.signout_backoff_ms,
        jitter_ms=settings.retry_jitter_ms,
    )
    return AuthController(
        provider,
        resolver,
        reconciler,
        session=SessionStore(reconciler),
        poller=TokenPoller(poll_policy),
        routing=EntryRoutingPolicy(settings.login_route),
        signout_policy=signout_policy,
        federated_provider=settings.federated_provider,
        already_signed_in_wait_ms=settings.already_signed_in_wait_ms,
        admin_home_route=settings.admin_home_route,
        employee_home_route=settings.employee_home_route,
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = Runtime()
    return _runtime


def reset_runtime() -> None:
    global _runtime
    _runtime = None


__all__ = ["Runtime", "build_controller", "build_durable_backend", "get_runtime", "reset_runtime"]
