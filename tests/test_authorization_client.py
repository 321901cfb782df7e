"""Tests for the authorization resolver HTTP client and request headers."""

import base64
import json

import httpx
import pytest

from kintai_auth.service.authorization import (
    AUTHORIZE_PATH,
    REFRESH_AUTHORIZATION_PATH,
    AuthorizationClient,
    build_request_headers,
    describe_device,
    encode_header_text,
)
from kintai_auth.service.errors import ConfigurationError, ProviderError
from kintai_auth.storage.models import Role, TokenPair

TOKENS = TokenPair(id_token="id-token-value", access_token="access-token-value")

PROFILE = {
    "employeeId": "E042",
    "firstName": "Sato",
    "lastName": "Hanako",
    "role": "employee",
    "email": "hanako@example.com",
    "isActive": True,
    "joinDate": "2023-04-01",
    "leaveDate": None,
}


def _client(handler):
    transport = httpx.MockTransport(handler)
    return AuthorizationClient(
        "http://api.test/", client=httpx.AsyncClient(transport=transport)
    )


class TestAuthorizationClient:
    @pytest.mark.asyncio
    async def test_authorize_parses_profile(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            return httpx.Response(200, json={"data": PROFILE})

        profile = await _client(handler).authorize(TOKENS)

        assert seen["method"] == "GET"
        assert seen["url"] == f"http://api.test{AUTHORIZE_PATH}"
        assert seen["headers"]["Authorization"] == "Bearer id-token-value"
        assert "X-Employee-Id" not in seen["headers"]
        assert profile.employee_id == "E042"
        assert profile.role == Role.EMPLOYEE
        assert profile.join_date == "2023-04-01"
        assert profile.display_name == "Sato Hanako"

    @pytest.mark.asyncio
    async def test_refresh_uses_post(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"data": PROFILE})

        await _client(handler).refresh_authorization(TOKENS)

        assert seen == {"method": "POST", "path": REFRESH_AUTHORIZATION_PATH}

    @pytest.mark.asyncio
    async def test_error_response_carries_api_code(self):
        def handler(request):
            return httpx.Response(
                403,
                json={"success": False, "error": {"code": "FORBIDDEN", "message": "nope"}},
            )

        with pytest.raises(ProviderError) as exc_info:
            await _client(handler).authorize(TOKENS)

        assert exc_info.value.status_code == 403
        assert exc_info.value.api_code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_unauthorized_flag(self):
        def handler(request):
            return httpx.Response(401, text="unauthorized")

        with pytest.raises(ProviderError) as exc_info:
            await _client(handler).authorize(TOKENS)

        assert exc_info.value.is_unauthorized

    @pytest.mark.asyncio
    async def test_network_error_becomes_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError) as exc_info:
            await _client(handler).authorize(TOKENS)

        assert exc_info.value.status_code is None
        assert "network error" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_payload(self):
        def handler(request):
            return httpx.Response(200, json={"data": {**PROFILE, "role": "manager"}})

        with pytest.raises(ProviderError):
            await _client(handler).authorize(TOKENS)

    @pytest.mark.asyncio
    async def test_missing_endpoint(self):
        with pytest.raises(ConfigurationError):
            await AuthorizationClient("").authorize(TOKENS)


class TestRequestHeaders:
    def test_auth_endpoints_skip_employee_headers(self):
        headers = build_request_headers(
            AUTHORIZE_PATH,
            TOKENS,
            user_info={"employeeId": "E001", "role": "admin"},
            request_id="req-1",
        )

        assert headers["X-Request-Id"] == "req-1"
        assert "X-Employee-Id" not in headers
        assert "X-User-Role" not in headers

    def test_employee_screens_always_act_as_employee(self):
        headers = build_request_headers(
            "/api/v1/attendance",
            TOKENS,
            user_info={"employeeId": "E001", "role": "admin", "requestedBy": "山田 太郎"},
            current_route="/employee/attendance",
        )

        assert headers["X-Employee-Id"] == "E001"
        assert headers["X-User-Role"] == "employee"
        assert base64.b64decode(headers["X-Requested-By"]).decode("utf-8") == "山田 太郎"

    def test_admin_screens_use_cached_role(self):
        headers = build_request_headers(
            "/api/v1/employees",
            TOKENS,
            user_info={"employeeId": "E001", "role": "admin"},
            current_route="/admin/employees",
        )

        assert headers["X-User-Role"] == "admin"

    def test_encode_header_text_is_ascii(self):
        encoded = encode_header_text("管理者")

        assert encoded.isascii()
        assert json.loads(json.dumps(encoded)) == encoded


class TestDescribeDevice:
    def test_desktop_chrome(self):
        ua = (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
        )
        assert describe_device(ua) == "PC/Windows/Chrome"

    def test_iphone_safari(self):
        ua = (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        )
        assert describe_device(ua) == "Mobile/iOS/Safari"

    def test_missing_user_agent(self):
        assert describe_device(None) == "Server/Unknown/Unknown"
