from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from http.cookies import CookieError, SimpleCookie
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from kintai_auth.logging import get_logger

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CookieJarBackend:
    """Bounded-lifetime cookie copy of the login intent.

    The cookie is the one copy that travels with the request after a
    cross-origin redirect, so the jar can be rebuilt from an incoming
    ``Cookie`` header (``load_header``) and the latest mutation of each cookie
    is kept as one ``Set-Cookie`` header (``drain_set_cookie_headers``) for
    the caller to send back.
    """

    def __init__(
        self,
        *,
        default_ttl_seconds: int = 60 * 60,
        path: str = "/",
        same_site: str = "Lax",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.name = "cookie"
        self.default_ttl_seconds = default_ttl_seconds
        self.path = path
        self.same_site = same_site
        self._clock = clock
        self._cookies: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._pending_headers: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _format(self, key: str, value: str, expires_at: datetime) -> str:
        expires = format_datetime(expires_at.astimezone(timezone.utc), usegmt=True)
        return (
            f"{key}={quote(value, safe='')}; expires={expires}; "
            f"path={self.path}; SameSite={self.same_site}"
        )

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._cookies.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                self._cookies.pop(key, None)
                return None
            return value or None

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds or self.default_ttl_seconds)
        with self._lock:
            self._cookies[key] = (value, expires_at)
            self._pending_headers[key] = self._format(key, value, expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._cookies.pop(key, None)
            self._pending_headers[key] = self._format(key, "", _EPOCH)

    def load_header(self, cookie_header: Optional[str]) -> None:
        """Ingest a request ``Cookie`` header, e.g. after returning from the provider."""
        if not cookie_header:
            return
        parsed = SimpleCookie()
        try:
            parsed.load(cookie_header)
        except CookieError as exc:
            self.logger.warning("cookie_header_unparseable", error=str(exc))
            return
        with self._lock:
            for key, morsel in parsed.items():
                # The browser does not echo expiry back; it only sends live cookies
                self._cookies[key] = (unquote(morsel.value), None)

    def cookie_header(self) -> str:
        now = self._clock()
        with self._lock:
            parts = [
                f"{key}={quote(value, safe='')}"
                for key, (value, expires_at) in self._cookies.items()
                if value and (expires_at is None or expires_at > now)
            ]
        return "; ".join(parts)

    def drain_set_cookie_headers(self) -> List[str]:
        with self._lock:
            headers, self._pending_headers = list(self._pending_headers.values()), {}
        return headers

    def wipe(self) -> None:
        with self._lock:
            self._cookies.clear()


__all__ = ["CookieJarBackend"]
