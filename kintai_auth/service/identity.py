from __future__ import annotations

import asyncio
import base64
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from kintai_auth.logging import get_logger
from kintai_auth.storage.models import AuthSession, Identity, SignInResult

logger = get_logger(__name__)


class HubEvent(str, Enum):
    """Events emitted asynchronously by the identity provider."""

    SIGNED_IN = "signedIn"
    SIGNED_OUT = "signedOut"
    TOKEN_REFRESH = "tokenRefresh"
    TOKEN_REFRESH_FAILURE = "tokenRefresh_failure"


Listener = Callable[[HubEvent, Dict[str, Any]], Union[None, Awaitable[None]]]


class IdentityProvider(Protocol):
    """Federated identity provider consumed by the session controller.

    ``get_current_user`` raises ``NotAuthenticated`` when no provider session
    exists. ``sign_in`` raises ``InvalidCredentials`` for rejected passwords
    and ``AlreadySignedIn`` when a session is still held. Other failures
    raise ``IdentityProviderError``.
    """

    async def configure(self, location: str) -> None: ...

    async def sign_in(self, username: str, password: str) -> SignInResult: ...

    async def sign_in_with_redirect(self, provider_name: str) -> None: ...

    async def sign_out(self) -> None: ...

    async def get_current_user(self) -> Identity: ...

    async def fetch_auth_session(self) -> AuthSession: ...

    async def fetch_user_attributes(self) -> Dict[str, str]: ...

    async def sign_up(self, username: str, password: str) -> Dict[str, Any]: ...

    async def confirm_sign_up(self, username: str, code: str) -> Dict[str, Any]: ...

    async def reset_password(self, username: str) -> Dict[str, Any]: ...

    async def confirm_reset_password(
        self, username: str, code: str, new_password: str
    ) -> None: ...

    def subscribe(self, listener: Listener) -> Callable[[], None]: ...


class EventHub:
    """Fan-out of provider events to subscribed listeners.

    Coroutine listeners are scheduled as tasks so ``dispatch`` never blocks
    the provider; their exceptions are logged, not propagated.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def dispatch(self, event: HubEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        data = payload or {}
        logger.debug("hub_event_dispatched", hub_event=event.value, listeners=len(self._listeners))
        for listener in list(self._listeners):
            result = listener(event, data)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "hub_listener_failed", error_type=type(exc).__name__, error=str(exc)
            )

    async def drain(self) -> None:
        """Wait for every listener task scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


def decode_token_claims(token: Optional[str]) -> Dict[str, Any]:
    """Best-effort, unverified read of a JWT payload.

    Used only to pick a display name; never for authorization decisions.
    """
    if not token or token.count(".") != 2:
        return {}
    segment = token.split(".")[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def display_name_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    for key in ("name", "email", "cognito:username", "preferred_username"):
        value = claims.get(key)
        if isinstance(value, str) and value:
            return value
    given = claims.get("given_name")
    family = claims.get("family_name")
    joined = " ".join(part for part in (family, given) if isinstance(part, str) and part)
    return joined or None


__all__ = [
    "HubEvent",
    "Listener",
    "IdentityProvider",
    "EventHub",
    "decode_token_claims",
    "display_name_from_claims",
]
