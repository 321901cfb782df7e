from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from kintai_auth.service.session import SessionState
from kintai_auth.storage.models import Role


class Access(str, Enum):
    ALLOW = "allow"
    WAIT = "wait"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class RouteAccess:
    access: Access
    redirect_to: Optional[str] = None


def resolve_route_access(
    state: SessionState,
    required_role: Optional[Role] = None,
    *,
    login_route: str = "/login",
) -> RouteAccess:
    """Gate a protected route on the current session.

    While the session is still being restored nothing is decided, so the
    caller renders nothing instead of bouncing a user who is about to be
    restored.
    """
    if state.is_loading:
        return RouteAccess(Access.WAIT)
    if not state.is_authenticated:
        return RouteAccess(Access.REDIRECT, login_route)
    if required_role is not None and state.role != required_role:
        return RouteAccess(Access.REDIRECT, login_route)
    return RouteAccess(Access.ALLOW)


def home_route_for(
    role: Optional[Role],
    *,
    admin_home: str = "/admin/employees",
    employee_home: str = "/employee/attendance",
) -> str:
    return admin_home if role == Role.ADMIN else employee_home


__all__ = ["Access", "RouteAccess", "resolve_route_access", "home_route_for"]
