from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session-controller exceptions.

    Each exception class defines a stable ``error_code`` and, where an HTTP
    exchange is involved, the ``status_code`` observed:
    - not_authenticated
    - invalid_credentials
    - token_unavailable
    - authorization_rejected
    - permission_mismatch
    - provider_error
    - already_signed_in
    - identity_provider_error
    - configuration_error
    """

    status_code: Optional[int] = None
    error_code: str = "service_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NotAuthenticated(ServiceError):
    """No provider session exists. Expected during restoration; never surfaced."""
    status_code = 401
    error_code = "not_authenticated"


class InvalidCredentials(ServiceError):
    """Username or password rejected by the identity provider."""
    status_code = 401
    error_code = "invalid_credentials"


class TokenUnavailable(ServiceError):
    """The token poller gave up before both tokens materialized."""
    error_code = "token_unavailable"

    def __init__(self, message: str = "token pair not available", *, attempts: int = 0) -> None:
        super().__init__(message, detail={"attempts": attempts})
        self.attempts = attempts


class AuthorizationRejected(ServiceError):
    """The authorization resolver returned an inactive profile."""
    status_code = 403
    error_code = "authorization_rejected"


class PermissionMismatch(ServiceError):
    """The resolved role does not satisfy the role selected on the entry screen."""
    status_code = 403
    error_code = "permission_mismatch"


class ProviderError(ServiceError):
    """Network failure or error response from the authorization resolver.

    ``api_code`` carries the resolver's machine-readable code
    (``UNAUTHORIZED``, ``INTERNAL_SERVER_ERROR``, ...) when one was returned.
    """
    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        api_code: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, detail=detail)
        self.api_code = api_code

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class AlreadySignedIn(ServiceError):
    """The identity provider still holds a session for a fresh sign-in attempt."""
    error_code = "already_signed_in"


class IdentityProviderError(ServiceError):
    """Any other identity provider failure (sign-up, reset codes, limits, ...).

    ``provider_code`` is the provider's exception name, e.g.
    ``CodeMismatchException``.
    """
    error_code = "identity_provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider_code: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, detail=detail)
        self.provider_code = provider_code


class ConfigurationError(ServiceError):
    """Required settings (endpoint, client id, ...) are missing."""
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "NotAuthenticated",
    "InvalidCredentials",
    "TokenUnavailable",
    "AuthorizationRejected",
    "PermissionMismatch",
    "ProviderError",
    "AlreadySignedIn",
    "IdentityProviderError",
    "ConfigurationError",
]
