from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """Lenient conversion used on values read back from storage or the URL."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    def satisfies(self, required: "Role") -> bool:
        """Admins may act as employees; employees may not act as admins."""
        if self == required:
            return True
        return self == Role.ADMIN and required == Role.EMPLOYEE


# Logical keys persisted across the storage backends
INTENDED_ROLE_KEY = "intendedRole"
OAUTH_IN_PROGRESS_KEY = "oauthInProgress"
AUTH_CACHE_KEY = "auth"
USER_INFO_CACHE_KEY = "userInfo"


@dataclass
class PersistedIntent:
    intended_role: Optional[Role] = None
    oauth_in_progress: bool = False

    @property
    def pending(self) -> bool:
        return self.intended_role is not None or self.oauth_in_progress


@dataclass
class AuthorizationProfile:
    employee_id: str
    first_name: str
    last_name: str
    role: Role
    email: str
    is_active: bool
    join_date: Optional[str] = None
    leave_date: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AuthorizationProfile":
        role = Role.parse(data.get("role"))
        if role is None:
            raise ValueError(f"unknown role in authorization payload: {data.get('role')!r}")
        employee_id = data.get("employeeId")
        if not employee_id:
            raise ValueError("authorization payload is missing employeeId")
        return cls(
            employee_id=str(employee_id),
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            role=role,
            email=data.get("email") or "",
            is_active=bool(data.get("isActive", False)),
            join_date=data.get("joinDate"),
            leave_date=data.get("leaveDate"),
        )

    @property
    def display_name(self) -> str:
        # firstName carries the family name, so it leads
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class TokenPair:
    id_token: str
    access_token: str


@dataclass
class AuthSession:
    tokens: Optional[TokenPair] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None


@dataclass
class Identity:
    username: str
    user_id: str
    sign_in_details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SignInResult:
    is_signed_in: bool
    next_step: Optional[str] = None
