from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict
from urllib.parse import parse_qsl, urlsplit

from kintai_auth.logging import get_logger
from kintai_auth.storage.models import PersistedIntent
from kintai_auth.storage.reconciler import CALLBACK_MARKER

logger = get_logger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    LOGIN_INITIATED = "login_initiated"
    OAUTH_CALLBACK_DETECTED = "oauth_callback_detected"
    AUTHORIZING = "authorizing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class RouteAction(str, Enum):
    SKIP = "skip"
    RESTORE = "restore"
    AUTHORIZE = "authorize"


@dataclass(frozen=True)
class NavigationContext:
    """Where the user currently is: route path plus query parameters."""

    path: str = "/"
    query: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_url(cls, url: str) -> "NavigationContext":
        parts = urlsplit(url or "/")
        path = parts.path or "/"
        # First occurrence wins, matching URLSearchParams.get
        query: Dict[str, str] = {}
        for key, value in parse_qsl(parts.query, keep_blank_values=False):
            query.setdefault(key, value)
        return cls(path=path, query=query)

    @property
    def has_callback_marker(self) -> bool:
        return bool(self.query.get(CALLBACK_MARKER))

    def is_entry(self, login_route: str) -> bool:
        return self.path.rstrip("/") == login_route.rstrip("/") or (
            # The provider redirects back to the site root
            self.path == "/" and self.has_callback_marker
        )


@dataclass(frozen=True)
class RoutingDecision:
    action: RouteAction
    next_state: FlowState
    reset_first: bool = False
    surface_errors: bool = False
    reason: str = ""


class EntryRoutingPolicy:
    """Decides, per mount or re-check, whether to authorize, restore, or stay idle."""

    def __init__(self, login_route: str = "/login") -> None:
        self.login_route = login_route

    def decide(
        self,
        nav: NavigationContext,
        intent: PersistedIntent,
        state: FlowState,
    ) -> RoutingDecision:
        """Route one mount or re-check.

        An explicit login never reaches this policy while it runs: it holds
        the controller lock and drives its own authorization. A pending
        intent left by such an attempt still routes to ``AUTHORIZING``.
        """
        on_entry = nav.is_entry(self.login_route)
        # A session committed by an earlier mount must not leak into the entry screen
        reset_first = on_entry and state == FlowState.COMMITTED
        callback = nav.has_callback_marker

        if callback or intent.pending:
            if callback:
                next_state, reason = FlowState.OAUTH_CALLBACK_DETECTED, "oauth_callback"
            else:
                next_state, reason = FlowState.AUTHORIZING, "pending_intent"
            decision = RoutingDecision(
                action=RouteAction.AUTHORIZE,
                next_state=next_state,
                reset_first=reset_first,
                surface_errors=callback or intent.oauth_in_progress,
                reason=reason,
            )
        elif on_entry:
            decision = RoutingDecision(
                action=RouteAction.SKIP,
                next_state=FlowState.IDLE,
                reset_first=reset_first,
                reason="entry_without_intent",
            )
        elif state == FlowState.COMMITTED:
            decision = RoutingDecision(
                action=RouteAction.SKIP,
                next_state=FlowState.COMMITTED,
                reason="already_committed",
            )
        else:
            decision = RoutingDecision(
                action=RouteAction.RESTORE,
                next_state=FlowState.AUTHORIZING,
                reason="silent_restore",
            )

        logger.debug(
            "routing_decision",
            path=nav.path,
            action=decision.action.value,
            reason=decision.reason,
            reset_first=decision.reset_first,
            state=state.value,
        )
        return decision


__all__ = [
    "FlowState",
    "RouteAction",
    "NavigationContext",
    "RoutingDecision",
    "EntryRoutingPolicy",
]
