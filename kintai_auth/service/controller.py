from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from kintai_auth.logging import get_logger, mask_identifier, set_attempt_id
from kintai_auth.service.authorization import AuthorizationResolver
from kintai_auth.service.backoff import BackoffPolicy, retry_async
from kintai_auth.service.errors import (
    AlreadySignedIn,
    AuthorizationRejected,
    IdentityProviderError,
    NotAuthenticated,
    PermissionMismatch,
    ProviderError,
    ServiceError,
)
from kintai_auth.service.guard import home_route_for
from kintai_auth.service.identity import (
    HubEvent,
    IdentityProvider,
    decode_token_claims,
    display_name_from_claims,
)
from kintai_auth.service.messages import banner_for
from kintai_auth.service.poller import TokenPoller
from kintai_auth.service.routing import (
    EntryRoutingPolicy,
    FlowState,
    NavigationContext,
    RouteAction,
)
from kintai_auth.service.session import SessionState, SessionStore
from kintai_auth.storage.errors import BackendUnavailable
from kintai_auth.storage.models import (
    AuthorizationProfile,
    PersistedIntent,
    Role,
    TokenPair,
)
from kintai_auth.storage.reconciler import PersistenceReconciler

Sleep = Callable[[float], Awaitable[None]]

# Provider "next step" values that stop a password sign-in short of a session
_NEXT_STEP_CODES = {
    "CONFIRM_SIGN_UP": "UserNotConfirmedException",
    "RESET_PASSWORD": "PasswordResetRequiredException",
}


@dataclass(frozen=True)
class Banner:
    """Transient user-facing error shown after an explicit attempt or OAuth callback."""

    message: str
    error_code: str


class AuthController:
    """Establishes, restores, and tears down the authenticated session.

    Every trigger (mount, re-check, password login, federated sign-in,
    logout, provider events) runs under one lock, so at most one flow
    touches the session at a time. ``_commit`` and ``_rollback`` are the
    only ways to reach ``COMMITTED`` and ``ROLLED_BACK``.

    Provider events are tagged with the attempt generation current when they
    were dispatched. A flow that reaches a terminal state bumps the
    generation, so events raised while that flow ran are treated as already
    handled by it.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        resolver: AuthorizationResolver,
        reconciler: PersistenceReconciler,
        *,
        session: Optional[SessionStore] = None,
        poller: Optional[TokenPoller] = None,
        routing: Optional[EntryRoutingPolicy] = None,
        signout_policy: Optional[BackoffPolicy] = None,
        federated_provider: str = "Google",
        already_signed_in_wait_ms: int = 500,
        admin_home_route: str = "/admin/employees",
        employee_home_route: str = "/employee/attendance",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.resolver = resolver
        self.reconciler = reconciler
        self.session = session or SessionStore(reconciler)
        self.poller = poller or TokenPoller()
        self.routing = routing or EntryRoutingPolicy()
        self.signout_policy = signout_policy or BackoffPolicy(
            max_attempts=3, base_delay_ms=300, sleep=sleep
        )
        self.federated_provider = federated_provider
        self.already_signed_in_wait_ms = already_signed_in_wait_ms
        self.admin_home_route = admin_home_route
        self.employee_home_route = employee_home_route
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._generation = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.flow_state = FlowState.IDLE
        self.banner: Optional[Banner] = None
        self.logger = get_logger(__name__)

    # Public surface -----------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_authenticated(self) -> bool:
        return self.session.state.is_authenticated

    @property
    def role(self) -> Optional[Role]:
        return self.session.state.role

    @property
    def user_id(self) -> Optional[str]:
        return self.session.state.user_id

    @property
    def user_name(self) -> Optional[str]:
        return self.session.state.user_name

    @property
    def is_loading(self) -> bool:
        return self.session.state.is_loading

    @property
    def home_route(self) -> str:
        return home_route_for(
            self.role,
            admin_home=self.admin_home_route,
            employee_home=self.employee_home_route,
        )

    def dismiss_banner(self) -> None:
        self.banner = None

    async def mount(self, location: str) -> SessionState:
        """Configure the provider, subscribe to its events, and evaluate the entry route."""
        if self._unsubscribe is None:
            self._unsubscribe = self.provider.subscribe(self._on_hub_event)
        await self.provider.configure(location)
        return await self.recheck(location)

    async def recheck(self, location: str) -> SessionState:
        """Re-evaluate the entry routing policy for ``location``."""
        async with self._lock:
            set_attempt_id()
            nav = NavigationContext.from_url(location)
            intent = await self.reconciler.read_intent(nav.query)
            decision = self.routing.decide(nav, intent, self.flow_state)
            if decision.reset_first:
                await self.session.reset("entry_route_revisited")
                self.flow_state = FlowState.IDLE

            if decision.action == RouteAction.SKIP:
                self.flow_state = decision.next_state
                if self.session.state.is_loading:
                    self.session.finish_loading()
                return self.session.state

            self.flow_state = decision.next_state
            await self._authorize(
                intent,
                surface_errors=decision.surface_errors,
                passive=decision.action == RouteAction.RESTORE,
                trigger=decision.reason,
            )
            return self.session.state

    async def login(self, username: str, password: str, role: Optional[str]) -> bool:
        """Password sign-in for the role chosen on the entry screen."""
        if not username or not password:
            self.banner = Banner("Please enter your ID and password.", "validation_error")
            return False
        intended_role = Role.parse(role)

        async with self._lock:
            set_attempt_id()
            self.banner = None
            self.flow_state = FlowState.LOGIN_INITIATED
            self.session.begin_loading()
            self.logger.info(
                "login_started",
                user=mask_identifier(username),
                intended_role=intended_role.value if intended_role else None,
            )
            intent = PersistedIntent(intended_role=intended_role)
            await self._write_intent(intent)
            try:
                result = await self._sign_in_recovering(username, password)
            except ServiceError as exc:
                await self._rollback(exc, surface=True, trigger="explicit_login")
                return False
            if not result.is_signed_in:
                code = _NEXT_STEP_CODES.get(result.next_step or "", result.next_step)
                await self._rollback(
                    IdentityProviderError(
                        f"sign-in requires another step: {result.next_step}",
                        provider_code=code,
                    ),
                    surface=True,
                    trigger="explicit_login",
                )
                return False
            await self._authorize(
                intent, surface_errors=True, passive=False, trigger="explicit_login"
            )
            return self.session.state.is_authenticated

    async def sign_in_with_federated_provider(self, role: Optional[str] = None) -> bool:
        """Record the login intent and hand the browser to the federated provider.

        Returns ``True`` once the redirect was issued; the session itself is
        established by the mount that follows the provider's callback.
        """
        intended_role = Role.parse(role)
        async with self._lock:
            set_attempt_id()
            self.banner = None
            self.flow_state = FlowState.LOGIN_INITIATED
            self.logger.info(
                "federated_sign_in_started",
                provider=self.federated_provider,
                intended_role=intended_role.value if intended_role else None,
            )
            await self._write_intent(
                PersistedIntent(intended_role=intended_role, oauth_in_progress=True)
            )
            try:
                await self._redirect_recovering()
            except ServiceError as exc:
                await self._rollback(exc, surface=True, trigger="federated_sign_in")
                return False
            return True

    async def logout(self) -> SessionState:
        async with self._lock:
            set_attempt_id()
            await self._force_sign_out()
            await self.reconciler.clear_intent()
            await self.session.reset("logout")
            self.flow_state = FlowState.IDLE
            self.banner = None
            self._generation += 1
            return self.session.state

    async def request_password_reset(self, username: str) -> Dict[str, Any]:
        self._require(username, "username")
        self.logger.info("password_reset_requested", user=mask_identifier(username))
        return await self.provider.reset_password(username)

    async def confirm_password_reset(
        self, username: str, code: str, new_password: str
    ) -> None:
        self._require(username, "username")
        self._require(code, "confirmation code")
        self._require(new_password, "new password")
        await self.provider.confirm_reset_password(username, code, new_password)
        self.logger.info("password_reset_confirmed", user=mask_identifier(username))

    async def sign_up(self, username: str, password: str) -> Dict[str, Any]:
        self._require(username, "username")
        self._require(password, "password")
        result = await self.provider.sign_up(username, password)
        self.logger.info("sign_up_submitted", user=mask_identifier(username))
        return result

    async def confirm_sign_up(self, username: str, code: str) -> Dict[str, Any]:
        self._require(username, "username")
        self._require(code, "confirmation code")
        return await self.provider.confirm_sign_up(username, code)

    def close(self) -> None:
        """Stop listening to provider events. Flows already running are not cancelled."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # Authorize flow -----------------------------------------------------

    async def _authorize(
        self,
        intent: PersistedIntent,
        *,
        surface_errors: bool,
        passive: bool,
        trigger: str,
    ) -> None:
        self.session.begin_loading()
        self.flow_state = FlowState.AUTHORIZING
        try:
            if passive:
                try:
                    await self.provider.get_current_user()
                except NotAuthenticated:
                    self.logger.debug("restore_not_authenticated", trigger=trigger)
                    await self.session.reset("not_authenticated")
                    self.flow_state = FlowState.IDLE
                    return
            tokens = await self.poller.poll(self.provider)
            profile = await self.resolver.authorize(tokens)
            role = self._reconcile_role(profile, intent.intended_role)
            user_name = await self._resolve_user_name(profile, tokens)
        except ServiceError as exc:
            await self._rollback(exc, surface=surface_errors, trigger=trigger)
            return
        except Exception as exc:
            self.logger.error(
                "authorize_unexpected_error",
                trigger=trigger,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._rollback(
                ProviderError(f"unexpected error: {exc}"),
                surface=surface_errors,
                trigger=trigger,
            )
            return
        finally:
            self._generation += 1
        await self._commit(profile, role, user_name, trigger=trigger)

    def _reconcile_role(
        self, profile: AuthorizationProfile, intended: Optional[Role]
    ) -> Role:
        if not profile.is_active:
            raise AuthorizationRejected(
                "authorization profile is inactive",
                detail={"employee_id": profile.employee_id},
            )
        if intended is None:
            return profile.role
        if not profile.role.satisfies(intended):
            raise PermissionMismatch(
                f"resolved role {profile.role.value} cannot sign in as {intended.value}",
                detail={"resolved": profile.role.value, "intended": intended.value},
            )
        return intended

    async def _resolve_user_name(
        self, profile: AuthorizationProfile, tokens: TokenPair
    ) -> Optional[str]:
        if profile.display_name:
            return profile.display_name
        name = display_name_from_claims(decode_token_claims(tokens.id_token))
        if name:
            return name
        try:
            attributes = await self.provider.fetch_user_attributes()
        except ServiceError as exc:
            self.logger.warning("user_attributes_unavailable", error=str(exc))
            return None
        return display_name_from_claims(attributes)

    async def _commit(
        self,
        profile: AuthorizationProfile,
        role: Role,
        user_name: Optional[str],
        *,
        trigger: str,
    ) -> None:
        if not profile.is_active:
            # Never reached through _reconcile_role; kept as the commit precondition
            await self._rollback(
                AuthorizationRejected("authorization profile is inactive"),
                surface=False,
                trigger=trigger,
            )
            return
        await self.session.commit(profile, role, profile.employee_id, user_name)
        await self.reconciler.clear_intent()
        self.flow_state = FlowState.COMMITTED
        self.banner = None
        self.logger.info(
            "authorize_committed",
            trigger=trigger,
            role=role.value,
            employee_id=profile.employee_id,
        )

    async def _rollback(
        self, error: ServiceError, *, surface: bool, trigger: str
    ) -> None:
        await self._force_sign_out()
        await self.reconciler.clear_intent()
        await self.session.reset(error.error_code)
        self.flow_state = FlowState.ROLLED_BACK
        show = surface and not isinstance(error, NotAuthenticated)
        if show:
            self.banner = Banner(banner_for(error), error.error_code)
        self.logger.warning(
            "authorize_rolled_back",
            trigger=trigger,
            error_code=error.error_code,
            status_code=error.status_code,
            surfaced=show,
            error=error.message,
        )

    async def _force_sign_out(self) -> None:
        async def _sign_out() -> None:
            try:
                await self.provider.sign_out()
            except NotAuthenticated:
                return

        try:
            await retry_async(_sign_out, self.signout_policy, label="forced_sign_out")
        except Exception as exc:
            # The session is reset regardless; the provider may still hold its own
            self.logger.error(
                "forced_sign_out_failed",
                attempts=self.signout_policy.max_attempts,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _write_intent(self, intent: PersistedIntent) -> None:
        try:
            await self.reconciler.write_intent(intent)
        except BackendUnavailable as exc:
            # The redirect callback marker still triggers authorization; only the role check is lost
            self.logger.error("intent_write_failed", error=exc.message, detail=exc.detail)

    async def _sign_in_recovering(self, username: str, password: str):
        try:
            return await self.provider.sign_in(username, password)
        except AlreadySignedIn:
            self.logger.info("already_signed_in_recovering", flow="password")
            await self._force_sign_out()
            await self._sleep(self.already_signed_in_wait_ms / 1000.0)
            return await self.provider.sign_in(username, password)

    async def _redirect_recovering(self) -> None:
        try:
            await self.provider.sign_in_with_redirect(self.federated_provider)
        except AlreadySignedIn:
            self.logger.info("already_signed_in_recovering", flow="federated")
            await self._force_sign_out()
            await self._sleep(self.already_signed_in_wait_ms / 1000.0)
            await self.provider.sign_in_with_redirect(self.federated_provider)

    @staticmethod
    def _require(value: Optional[str], label: str) -> None:
        if not value or not value.strip():
            raise IdentityProviderError(
                f"{label} is required", provider_code="InvalidParameterException"
            )

    # Event-driven re-entry ----------------------------------------------

    def _on_hub_event(self, event: HubEvent, payload: Dict[str, Any]):
        # Capture the generation synchronously, at dispatch time
        return self._handle_hub_event(event, payload, self._generation)

    async def _handle_hub_event(
        self, event: HubEvent, payload: Dict[str, Any], generation: int
    ) -> None:
        async with self._lock:
            set_attempt_id()
            if generation != self._generation:
                self.logger.debug(
                    "hub_event_superseded", hub_event=event.value, flow_state=self.flow_state.value
                )
                return

            if event == HubEvent.SIGNED_IN:
                if self.session.state.is_authenticated:
                    return
                intent = await self.reconciler.read_intent()
                await self._authorize(
                    intent,
                    surface_errors=intent.oauth_in_progress,
                    passive=not intent.pending,
                    trigger="hub_signed_in",
                )
            elif event == HubEvent.TOKEN_REFRESH:
                if not self.session.state.is_authenticated:
                    return
                await self._refresh_authorization()
            elif event == HubEvent.TOKEN_REFRESH_FAILURE:
                if not self.session.state.is_authenticated:
                    return
                await self._rollback(
                    NotAuthenticated("token refresh failed"),
                    surface=False,
                    trigger="hub_token_refresh_failure",
                )
                self._generation += 1
            elif event == HubEvent.SIGNED_OUT:
                if self.session.state.is_authenticated or self.flow_state != FlowState.IDLE:
                    await self.session.reset("provider_signed_out")
                    self.flow_state = FlowState.IDLE

    async def _refresh_authorization(self) -> None:
        current_role = self.session.state.role
        try:
            tokens = await self.poller.poll(self.provider)
            profile = await self.resolver.refresh_authorization(tokens)
            role = self._reconcile_role(profile, current_role)
            user_name = await self._resolve_user_name(profile, tokens)
        except ServiceError as exc:
            await self._rollback(exc, surface=False, trigger="hub_token_refresh")
            self._generation += 1
            return
        await self._commit(profile, role, user_name, trigger="hub_token_refresh")


__all__ = ["AuthController", "Banner"]
