from __future__ import annotations

import base64
import re
import uuid
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from kintai_auth.logging import get_logger
from kintai_auth.service.errors import ConfigurationError, ProviderError
from kintai_auth.storage.models import AuthorizationProfile, TokenPair

AUTHORIZE_PATH = "/api/v1/auth/authorize"
REFRESH_AUTHORIZATION_PATH = "/api/v1/auth/refresh-authorization"
AUTH_ENDPOINTS = (AUTHORIZE_PATH, REFRESH_AUTHORIZATION_PATH)

logger = get_logger(__name__)


class AuthorizationResolver(Protocol):
    async def authorize(self, tokens: TokenPair) -> AuthorizationProfile: ...

    async def refresh_authorization(self, tokens: TokenPair) -> AuthorizationProfile: ...


def describe_device(user_agent: Optional[str]) -> str:
    """Summarize a user agent as ``<device>/<os>/<browser>`` for X-Device-Info."""
    if not user_agent:
        return "Server/Unknown/Unknown"
    ua = user_agent.lower()

    device = "PC"
    if re.search(r"mobile|iphone|ipod|android|blackberry|opera mini|windows ce|palm|smartphone|iemobile", ua):
        device = "Mobile"
    elif re.search(r"tablet|ipad|playbook|silk", ua):
        device = "Tablet"

    os_name = "Unknown"
    if "windows" in ua:
        os_name = "Windows"
    elif re.search(r"iphone|ipad|ipod", ua):
        os_name = "iOS"
    elif "macintosh" in ua or "mac os x" in ua:
        os_name = "macOS"
    elif "android" in ua:
        os_name = "Android"
    elif "linux" in ua:
        os_name = "Linux"

    browser = "Unknown"
    if "edg" in ua:
        browser = "Edge"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "opera" in ua or "opr" in ua:
        browser = "Opera"
    return f"{device}/{os_name}/{browser}"


def encode_header_text(value: str) -> str:
    """Base64 of the UTF-8 bytes, so non-Latin-1 names survive in HTTP headers."""
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def build_request_headers(
    path: str,
    tokens: Optional[TokenPair],
    *,
    user_info: Optional[Mapping[str, Any]] = None,
    current_route: str = "",
    device_info: str = "Server/Unknown/Unknown",
    request_id: Optional[str] = None,
) -> Dict[str, str]:
    """Headers the backend API expects on every request.

    Authorization endpoints get only the bearer token and tracing headers.
    Every other endpoint also carries the employee id and role from the
    cached ``userInfo``; requests issued from employee screens always act
    with the employee role, even for administrators.
    """
    headers: Dict[str, str] = {
        "X-Request-Id": request_id or str(uuid.uuid4()),
        "X-Device-Info": device_info,
    }
    if tokens is not None:
        headers["Authorization"] = f"Bearer {tokens.id_token}"

    info = user_info or {}
    requested_by = info.get("requestedBy")
    if requested_by:
        headers["X-Requested-By"] = encode_header_text(str(requested_by))

    if any(endpoint in path for endpoint in AUTH_ENDPOINTS):
        return headers

    employee_id = info.get("employeeId")
    if employee_id:
        headers["X-Employee-Id"] = str(employee_id)
    else:
        logger.warning("api_header_missing", header="X-Employee-Id", path=path)

    if current_route.startswith("/employee/"):
        headers["X-User-Role"] = "employee"
    elif info.get("role"):
        headers["X-User-Role"] = str(info["role"])
    else:
        logger.warning("api_header_missing", header="X-User-Role", path=path)
    return headers


def extract_api_error(response: httpx.Response) -> Dict[str, Any]:
    """Pull ``{status_code, message, code, details}`` out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return {
            "status_code": response.status_code,
            "message": f"HTTP error! status: {response.status_code}",
            "code": None,
            "details": None,
        }
    body = body if isinstance(body, dict) else {}
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    return {
        "status_code": response.status_code,
        "message": body.get("message") or error.get("message"),
        "code": error.get("code"),
        "details": error.get("details"),
    }


class AuthorizationClient:
    """HTTP client for the authorization resolver endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        device_info: str = "Server/Unknown/Unknown",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.device_info = device_info
        self.logger = logger

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=False)
        return self._client

    async def authorize(self, tokens: TokenPair) -> AuthorizationProfile:
        return await self._request("GET", AUTHORIZE_PATH, tokens)

    async def refresh_authorization(self, tokens: TokenPair) -> AuthorizationProfile:
        return await self._request("POST", REFRESH_AUTHORIZATION_PATH, tokens)

    async def _request(
        self, method: str, path: str, tokens: TokenPair
    ) -> AuthorizationProfile:
        if not self.base_url:
            raise ConfigurationError("API endpoint is not configured; set API_ENDPOINT")
        headers = build_request_headers(path, tokens, device_info=self.device_info)
        url = f"{self.base_url}{path}"
        try:
            response = await self._get_client().request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            self.logger.error(
                "authorization_request_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ProviderError(f"network error calling {path}: {exc}") from exc

        if response.status_code >= 400:
            api_error = extract_api_error(response)
            self.logger.warning(
                "authorization_error_response",
                path=path,
                status_code=response.status_code,
                api_error_code=api_error["code"],
                request_id=headers["X-Request-Id"],
            )
            raise ProviderError(
                api_error["message"] or f"HTTP error! status: {response.status_code}",
                status_code=response.status_code,
                api_code=api_error["code"],
                detail={"details": api_error["details"]} if api_error["details"] else None,
            )

        try:
            body = response.json()
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, dict):
                raise ValueError("response has no data object")
            return AuthorizationProfile.from_api(data)
        except ValueError as exc:
            self.logger.error("authorization_payload_invalid", path=path, error=str(exc))
            raise ProviderError(
                f"invalid authorization payload: {exc}", status_code=response.status_code
            ) from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = [
    "AUTHORIZE_PATH",
    "REFRESH_AUTHORIZATION_PATH",
    "AuthorizationResolver",
    "AuthorizationClient",
    "build_request_headers",
    "describe_device",
    "encode_header_text",
    "extract_api_error",
]
