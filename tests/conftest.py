import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

# Point settings at throwaway locations before anything reads the environment
_test_tmp_dir = tempfile.mkdtemp(prefix="kintai_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("API_ENDPOINT", "http://api.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kintai_auth.config import reset_settings_cache  # noqa: E402
from kintai_auth.runtime import reset_runtime  # noqa: E402
from kintai_auth.service.backoff import BackoffPolicy  # noqa: E402
from kintai_auth.service.controller import AuthController  # noqa: E402
from kintai_auth.service.errors import NotAuthenticated  # noqa: E402
from kintai_auth.service.identity import EventHub, HubEvent  # noqa: E402
from kintai_auth.service.poller import TokenPoller  # noqa: E402
from kintai_auth.service.routing import EntryRoutingPolicy  # noqa: E402
from kintai_auth.service.session import SessionStore  # noqa: E402
from kintai_auth.storage.cookie import CookieJarBackend  # noqa: E402
from kintai_auth.storage.file import FileBackend  # noqa: E402
from kintai_auth.storage.memory import MemoryBackend  # noqa: E402
from kintai_auth.storage.models import (  # noqa: E402
    AuthorizationProfile,
    AuthSession,
    Identity,
    Role,
    SignInResult,
    TokenPair,
)
from kintai_auth.storage.reconciler import PersistenceReconciler  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    reset_runtime()
    yield
    reset_settings_cache()
    reset_runtime()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class RecordingSleep:
    """Async sleep stand-in that records requested delays (seconds)."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(round(seconds, 3))


class FakeIdentityProvider:
    """In-memory identity provider with scripted failures."""

    def __init__(self):
        self.hub = EventHub()
        self.signed_in = False
        self.tokens = TokenPair(id_token="id-token", access_token="access-token")
        self.session_sequence: List[Any] = []
        self.sign_in_errors: List[Exception] = []
        self.sign_out_errors: List[Exception] = []
        self.redirect_errors: List[Exception] = []
        self.sign_in_result: Optional[SignInResult] = None
        self.dispatch_on_sign_in = False
        self.attributes: Dict[str, str] = {}
        self.redirects: List[str] = []
        self.configured_with: List[str] = []
        self.calls: List[str] = []

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def configure(self, location: str) -> None:
        self.calls.append("configure")
        self.configured_with.append(location)

    async def sign_in(self, username: str, password: str) -> SignInResult:
        self.calls.append("sign_in")
        if self.sign_in_errors:
            raise self.sign_in_errors.pop(0)
        if self.sign_in_result is not None:
            return self.sign_in_result
        self.signed_in = True
        if self.dispatch_on_sign_in:
            self.hub.dispatch(HubEvent.SIGNED_IN, {"source": "password"})
        return SignInResult(is_signed_in=True, next_step="DONE")

    async def sign_in_with_redirect(self, provider_name: str) -> None:
        self.calls.append("sign_in_with_redirect")
        if self.redirect_errors:
            raise self.redirect_errors.pop(0)
        self.redirects.append(provider_name)

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        if self.sign_out_errors:
            raise self.sign_out_errors.pop(0)
        self.signed_in = False

    async def get_current_user(self) -> Identity:
        self.calls.append("get_current_user")
        if not self.signed_in:
            raise NotAuthenticated("no user is signed in")
        return Identity(username="user@example.com", user_id="sub-1")

    async def fetch_auth_session(self) -> AuthSession:
        self.calls.append("fetch_auth_session")
        if self.session_sequence:
            item = self.session_sequence.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.signed_in:
            return AuthSession(tokens=self.tokens)
        return AuthSession()

    async def fetch_user_attributes(self) -> Dict[str, str]:
        self.calls.append("fetch_user_attributes")
        return dict(self.attributes)

    async def sign_up(self, username: str, password: str) -> Dict[str, Any]:
        self.calls.append("sign_up")
        return {"user_confirmed": False, "next_step": "CONFIRM_SIGN_UP"}

    async def confirm_sign_up(self, username: str, code: str) -> Dict[str, Any]:
        self.calls.append("confirm_sign_up")
        return {"is_sign_up_complete": True}

    async def reset_password(self, username: str) -> Dict[str, Any]:
        self.calls.append("reset_password")
        return {"delivery": {"DeliveryMedium": "EMAIL"}}

    async def confirm_reset_password(self, username: str, code: str, new_password: str) -> None:
        self.calls.append("confirm_reset_password")

    def subscribe(self, listener):
        return self.hub.subscribe(listener)


class FakeResolver:
    """Authorization resolver returning a configured profile or error."""

    def __init__(self, profile: Optional[AuthorizationProfile] = None):
        self.profile = profile
        self.refresh_profile: Optional[AuthorizationProfile] = None
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def authorize(self, tokens: TokenPair) -> AuthorizationProfile:
        self.calls.append("authorize")
        if self.error is not None:
            raise self.error
        assert self.profile is not None
        return self.profile

    async def refresh_authorization(self, tokens: TokenPair) -> AuthorizationProfile:
        self.calls.append("refresh_authorization")
        if self.error is not None:
            raise self.error
        return self.refresh_profile or self.profile


def build_profile(role: str = "admin", *, is_active: bool = True, employee_id: str = "E001"):
    return AuthorizationProfile(
        employee_id=employee_id,
        first_name="Yamada",
        last_name="Taro",
        role=Role(role),
        email="taro@example.com",
        is_active=is_active,
    )


@pytest.fixture
def make_profile():
    return build_profile


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def resolver():
    return FakeResolver(build_profile("admin"))


class Harness:
    """Controller wired to fake collaborators and real storage backends."""

    def __init__(self, tmp_path, provider, resolver, sleeps):
        self.provider = provider
        self.resolver = resolver
        self.sleeps = sleeps
        self.durable = MemoryBackend("durable")
        self.tab = MemoryBackend("tab")
        self.window = MemoryBackend("window")
        self.cross_tab = FileBackend(str(tmp_path))
        self.cookie = CookieJarBackend()
        self.reconciler = PersistenceReconciler(
            [self.durable, self.tab, self.window, self.cross_tab],
            cookie=self.cookie,
            profile_backend=self.cross_tab,
        )
        self.session = SessionStore(self.reconciler)
        self.controller = AuthController(
            provider,
            resolver,
            self.reconciler,
            session=self.session,
            poller=TokenPoller(BackoffPolicy(max_attempts=5, base_delay_ms=500, sleep=sleeps)),
            routing=EntryRoutingPolicy("/login"),
            signout_policy=BackoffPolicy(max_attempts=3, base_delay_ms=300, sleep=sleeps),
            already_signed_in_wait_ms=500,
            sleep=sleeps,
        )

    @property
    def stores(self):
        return [self.durable, self.tab, self.window, self.cross_tab, self.cookie]


@pytest.fixture
def harness(tmp_path, provider, resolver, sleeps):
    return Harness(tmp_path, provider, resolver, sleeps)


@pytest.fixture
def harness_for(tmp_path, resolver, sleeps):
    """Build a harness around a specific provider, e.g. a real adapter over a mock transport."""

    def _build(identity_provider):
        return Harness(tmp_path, identity_provider, resolver, sleeps)

    return _build
