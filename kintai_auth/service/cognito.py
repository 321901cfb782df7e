from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Type, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx

from kintai_auth.logging import get_logger, mask_identifier
from kintai_auth.service.errors import (
    AlreadySignedIn,
    ConfigurationError,
    IdentityProviderError,
    InvalidCredentials,
    NotAuthenticated,
    ServiceError,
)
from kintai_auth.service.identity import EventHub, HubEvent, Listener, decode_token_claims
from kintai_auth.storage.models import AuthSession, Identity, SignInResult, TokenPair

Navigator = Callable[[str], Union[None, Awaitable[None]]]

_TARGET_PREFIX = "AWSCognitoIdentityProviderService."
_CONTENT_TYPE = "application/x-amz-json-1.1"

# Exceptions that end a password sign-in with a follow-up step instead of an error
_SIGN_IN_NEXT_STEPS = {
    "UserNotConfirmedException": "CONFIRM_SIGN_UP",
    "PasswordResetRequiredException": "RESET_PASSWORD",
}


def _noop_navigator(url: str) -> None:
    return None


class CognitoIdentityProvider:
    """Identity provider backed by the Cognito user-pool JSON API and hosted UI.

    The provider keeps the signed-in session in memory, refreshes it when
    the id token expires, and announces session changes through an
    ``EventHub``. Hosted-UI callbacks are completed by ``configure``: when
    the location carries an authorization ``code`` the token exchange is
    started in the background and ``signedIn`` is dispatched once it lands.
    """

    def __init__(
        self,
        *,
        region: str,
        client_id: str,
        domain: str = "",
        redirect_uri: str = "http://localhost:5173/",
        logout_uri: str = "http://localhost:5173/login",
        scopes: str = "openid email profile",
        endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        navigator: Navigator = _noop_navigator,
        hub: Optional[EventHub] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.region = region
        self.client_id = client_id
        self.domain = domain.rstrip("/")
        self.redirect_uri = redirect_uri
        self.logout_uri = logout_uri
        self.scopes = scopes
        self.endpoint = endpoint or f"https://cognito-idp.{region}.amazonaws.com/"
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.navigator = navigator
        self.hub = hub or EventHub()
        self._clock = clock
        self._session: Optional[AuthSession] = None
        self._exchanged_codes: set[str] = set()
        self._exchange_task: Optional[asyncio.Task] = None
        self.logger = get_logger(__name__)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _require_client_id(self) -> None:
        if not self.client_id:
            raise ConfigurationError(
                "Cognito client id is not configured; set COGNITO_CLIENT_ID"
            )

    def _hosted_ui_base(self) -> str:
        if not self.domain:
            raise ConfigurationError("Cognito domain is not configured; set COGNITO_DOMAIN")
        if self.domain.startswith("http"):
            return self.domain
        return f"https://{self.domain}"

    # Wire helpers -------------------------------------------------------

    async def _call(
        self,
        operation: str,
        payload: Dict[str, Any],
        *,
        unauthorized: Type[ServiceError] = NotAuthenticated,
    ) -> Dict[str, Any]:
        headers = {
            "Content-Type": _CONTENT_TYPE,
            "X-Amz-Target": f"{_TARGET_PREFIX}{operation}",
        }
        try:
            response = await self._get_client().post(
                self.endpoint, json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            self.logger.error(
                "cognito_request_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise IdentityProviderError(
                f"network error calling {operation}: {exc}", provider_code="NetworkError"
            ) from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            code = str(body.get("__type") or "").rsplit("#", 1)[-1] or None
            message = body.get("message") or body.get("Message") or f"{operation} failed"
            self.logger.warning(
                "cognito_error_response",
                operation=operation,
                status_code=response.status_code,
                provider_code=code,
            )
            if code == "NotAuthorizedException":
                raise unauthorized(message, status_code=response.status_code)
            raise IdentityProviderError(
                message, provider_code=code, status_code=response.status_code
            )
        return body

    def _store_result(
        self, result: Dict[str, Any], refresh_token: Optional[str] = None
    ) -> AuthSession:
        id_token = result.get("IdToken") or result.get("id_token")
        access_token = result.get("AccessToken") or result.get("access_token")
        expires_in = result.get("ExpiresIn") or result.get("expires_in") or 3600
        if not id_token or not access_token:
            raise IdentityProviderError(
                "token response is missing tokens", provider_code="InvalidTokenResponse"
            )
        self._session = AuthSession(
            tokens=TokenPair(id_token=id_token, access_token=access_token),
            refresh_token=result.get("RefreshToken")
            or result.get("refresh_token")
            or refresh_token,
            expires_at=self._clock() + float(expires_in),
        )
        return self._session

    # Provider surface ---------------------------------------------------

    async def configure(self, location: str) -> None:
        self._require_client_id()
        query = dict(parse_qsl(urlsplit(location or "/").query))
        if query.get("error"):
            self.logger.warning(
                "hosted_ui_error",
                error=query.get("error"),
                description=query.get("error_description"),
            )
        code = query.get("code")
        if not code or code in self._exchanged_codes:
            return
        self._exchanged_codes.add(code)
        self._exchange_task = asyncio.ensure_future(self._exchange_code(code))

    async def _exchange_code(self, code: str) -> None:
        url = f"{self._hosted_ui_base()}/oauth2/token"
        form = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        try:
            response = await self._get_client().post(
                url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
            self._store_result(response.json())
        except (httpx.HTTPError, ValueError, ServiceError) as exc:
            # The token poller reports the missing session to the caller
            self.logger.error(
                "code_exchange_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return
        self.logger.info("code_exchange_succeeded")
        self.hub.dispatch(HubEvent.SIGNED_IN, {"source": "hosted_ui"})

    async def sign_in(self, username: str, password: str) -> SignInResult:
        self._require_client_id()
        if self._session is not None:
            raise AlreadySignedIn("There is already a signed in user.")
        payload = {
            "AuthFlow": "USER_PASSWORD_AUTH",
            "ClientId": self.client_id,
            "AuthParameters": {"USERNAME": username, "PASSWORD": password},
        }
        try:
            body = await self._call("InitiateAuth", payload, unauthorized=InvalidCredentials)
        except IdentityProviderError as exc:
            next_step = _SIGN_IN_NEXT_STEPS.get(exc.provider_code or "")
            if next_step is None:
                raise
            return SignInResult(is_signed_in=False, next_step=next_step)

        if body.get("ChallengeName"):
            self.logger.info(
                "sign_in_challenge",
                user=mask_identifier(username),
                challenge=body["ChallengeName"],
            )
            return SignInResult(is_signed_in=False, next_step=body["ChallengeName"])

        self._store_result(body.get("AuthenticationResult") or {})
        self.logger.info("sign_in_succeeded", user=mask_identifier(username))
        self.hub.dispatch(HubEvent.SIGNED_IN, {"source": "password"})
        return SignInResult(is_signed_in=True, next_step="DONE")

    async def sign_in_with_redirect(self, provider_name: str) -> None:
        self._require_client_id()
        if self._session is not None:
            raise AlreadySignedIn("There is already a signed in user.")
        params = {
            "identity_provider": provider_name,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "client_id": self.client_id,
            "scope": self.scopes,
        }
        url = f"{self._hosted_ui_base()}/oauth2/authorize?{urlencode(params)}"
        self.logger.info("hosted_ui_redirect", identity_provider=provider_name)
        result = self.navigator(url)
        if inspect.isawaitable(result):
            await result

    async def sign_out(self) -> None:
        """Revoke the tokens remotely and always drop the local session.

        An expired or already revoked access token makes ``GlobalSignOut``
        fail with ``NotAuthenticated``; a network failure raises
        ``IdentityProviderError``. Either way the error is re-raised after
        the local session is gone, so the provider never stays signed in
        behind a rolled-back application session.
        """
        if self._session is None or self._session.tokens is None:
            raise NotAuthenticated("no user is signed in")
        access_token = self._session.tokens.access_token
        try:
            await self._call("GlobalSignOut", {"AccessToken": access_token})
        except ServiceError as exc:
            self.logger.warning(
                "global_sign_out_failed", error_code=exc.error_code, error=exc.message
            )
            raise
        finally:
            self._session = None
            self.hub.dispatch(HubEvent.SIGNED_OUT, {})

    async def get_current_user(self) -> Identity:
        if self._session is None or self._session.tokens is None:
            raise NotAuthenticated("no user is signed in")
        claims = decode_token_claims(self._session.tokens.id_token)
        return Identity(
            username=str(claims.get("cognito:username") or claims.get("email") or ""),
            user_id=str(claims.get("sub") or ""),
            sign_in_details={"auth_time": claims.get("auth_time")},
        )

    async def fetch_auth_session(self) -> AuthSession:
        # A hosted-UI code exchange still in flight decides what the session is
        if self._exchange_task is not None and not self._exchange_task.done():
            await self._exchange_task
        session = self._session
        if session is None:
            return AuthSession()
        if session.expires_at is not None and session.expires_at <= self._clock():
            return await self._refresh(session)
        return session

    async def _refresh(self, session: AuthSession) -> AuthSession:
        if not session.refresh_token:
            self._session = None
            self.hub.dispatch(HubEvent.TOKEN_REFRESH_FAILURE, {"reason": "no_refresh_token"})
            return AuthSession()
        payload = {
            "AuthFlow": "REFRESH_TOKEN_AUTH",
            "ClientId": self.client_id,
            "AuthParameters": {"REFRESH_TOKEN": session.refresh_token},
        }
        try:
            body = await self._call("InitiateAuth", payload)
            refreshed = self._store_result(
                body.get("AuthenticationResult") or {}, refresh_token=session.refresh_token
            )
        except ServiceError as exc:
            self.logger.warning("token_refresh_failed", error=exc.message)
            self._session = None
            self.hub.dispatch(HubEvent.TOKEN_REFRESH_FAILURE, {"error": exc.error_code})
            return AuthSession()
        self.hub.dispatch(HubEvent.TOKEN_REFRESH, {})
        return refreshed

    async def fetch_user_attributes(self) -> Dict[str, str]:
        if self._session is None or self._session.tokens is None:
            raise NotAuthenticated("no user is signed in")
        body = await self._call(
            "GetUser", {"AccessToken": self._session.tokens.access_token}
        )
        return {
            item["Name"]: item.get("Value", "")
            for item in body.get("UserAttributes") or []
            if isinstance(item, dict) and "Name" in item
        }

    async def sign_up(self, username: str, password: str) -> Dict[str, Any]:
        self._require_client_id()
        body = await self._call(
            "SignUp",
            {
                "ClientId": self.client_id,
                "Username": username,
                "Password": password,
                "UserAttributes": [{"Name": "email", "Value": username}],
            },
        )
        return {
            "user_confirmed": bool(body.get("UserConfirmed")),
            "user_sub": body.get("UserSub"),
            "next_step": None if body.get("UserConfirmed") else "CONFIRM_SIGN_UP",
        }

    async def confirm_sign_up(self, username: str, code: str) -> Dict[str, Any]:
        self._require_client_id()
        await self._call(
            "ConfirmSignUp",
            {"ClientId": self.client_id, "Username": username, "ConfirmationCode": code},
        )
        return {"is_sign_up_complete": True}

    async def reset_password(self, username: str) -> Dict[str, Any]:
        self._require_client_id()
        body = await self._call(
            "ForgotPassword", {"ClientId": self.client_id, "Username": username}
        )
        return {"delivery": body.get("CodeDeliveryDetails") or {}}

    async def confirm_reset_password(
        self, username: str, code: str, new_password: str
    ) -> None:
        self._require_client_id()
        await self._call(
            "ConfirmForgotPassword",
            {
                "ClientId": self.client_id,
                "Username": username,
                "ConfirmationCode": code,
                "Password": new_password,
            },
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.hub.subscribe(listener)

    async def aclose(self) -> None:
        if self._exchange_task is not None and not self._exchange_task.done():
            self._exchange_task.cancel()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = ["CognitoIdentityProvider", "Navigator"]
