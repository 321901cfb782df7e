"""User-facing banner text for identity-provider and resolver failures."""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from kintai_auth.service.errors import (
    AuthorizationRejected,
    IdentityProviderError,
    InvalidCredentials,
    PermissionMismatch,
    ProviderError,
    ServiceError,
    TokenUnavailable,
)

GENERIC_MESSAGE = "An error occurred. Please wait a moment and try again."
INSUFFICIENT_PRIVILEGES = "You do not have sufficient privileges to sign in as an administrator."
INACTIVE_ACCOUNT = "This account is not active. Please contact your administrator."
SESSION_NOT_READY = "Sign-in did not complete. Please try again."

# Identity provider exception names, checked in order
_PROVIDER_MESSAGES = (
    ("LimitExceededException", "Attempt limit exceeded. Please wait and try again later."),
    ("UserNotFoundException", "The specified user was not found. Please check the email address."),
    ("NotAuthorizedException", "The email address or password is incorrect."),
    ("InvalidParameterException", "The email address format is invalid."),
    ("CodeMismatchException", "The verification code is incorrect. Please check it and try again."),
    ("ExpiredCodeException", "The verification code has expired. Please request a new code."),
    ("UsernameExistsException", "This email address is already registered."),
    (
        "InvalidPasswordException",
        "The password does not meet the requirements. Use at least 8 characters "
        "including upper and lower case letters, digits and symbols.",
    ),
    ("UserNotConfirmedException", "The email address has not been confirmed. Please enter the verification code."),
    ("PasswordResetRequiredException", "A password reset is required. Please set a new password."),
)

_API_CODE_MESSAGES = {
    "UNAUTHORIZED": "Authentication failed. Please sign in again.",
    "FORBIDDEN": "You do not have permission to access this resource.",
    "NOT_FOUND": "The requested resource was not found.",
    "VALIDATION_ERROR": "The input contains errors. Please check it.",
    "CONFLICT": "A data conflict occurred. The item may already exist.",
    "BAD_REQUEST": "The request was invalid. Please check the input.",
    "INTERNAL_SERVER_ERROR": "A server error occurred. Please wait a moment and try again.",
    "SERVICE_UNAVAILABLE": "The service is temporarily unavailable. Please wait a moment and try again.",
}

_STATUS_MESSAGES = {
    400: _API_CODE_MESSAGES["BAD_REQUEST"],
    401: _API_CODE_MESSAGES["UNAUTHORIZED"],
    403: _API_CODE_MESSAGES["FORBIDDEN"],
    404: _API_CODE_MESSAGES["NOT_FOUND"],
    409: _API_CODE_MESSAGES["CONFLICT"],
}

NETWORK_MESSAGE = "Could not reach the server. Please check your network connection."

_NETWORK_HINT = re.compile(r"(?i)(connect|network|timed? ?out|dns|CORS)")


def translate_provider_error(code: Optional[str], message: str = "") -> str:
    """Map an identity provider exception name (or message) to banner text."""
    haystack = f"{code or ''} {message or ''}"
    for name, text in _PROVIDER_MESSAGES:
        if name in haystack:
            return text
    return GENERIC_MESSAGE


def translate_api_error(
    status_code: Optional[int],
    api_code: Optional[str] = None,
    *,
    details: Optional[Mapping[str, Any]] = None,
    message: Optional[str] = None,
) -> str:
    """Map a resolver error response to banner text.

    The machine-readable code wins over the status; validation errors show
    their first field message when the response carried one.
    """
    if api_code == "VALIDATION_ERROR" and details:
        first = next(iter(details.values()), None)
        if isinstance(first, (list, tuple)) and first:
            return str(first[0])
        if isinstance(first, str) and first:
            return first
    if api_code in _API_CODE_MESSAGES:
        return _API_CODE_MESSAGES[api_code]
    if status_code in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status_code]
    if status_code is not None and status_code >= 500:
        return _API_CODE_MESSAGES["INTERNAL_SERVER_ERROR"]
    if status_code is None and message and _NETWORK_HINT.search(message):
        return NETWORK_MESSAGE
    return message or GENERIC_MESSAGE


def banner_for(error: ServiceError) -> str:
    if isinstance(error, PermissionMismatch):
        return INSUFFICIENT_PRIVILEGES
    if isinstance(error, AuthorizationRejected):
        return INACTIVE_ACCOUNT
    if isinstance(error, InvalidCredentials):
        return translate_provider_error("NotAuthorizedException")
    if isinstance(error, TokenUnavailable):
        return SESSION_NOT_READY
    if isinstance(error, ProviderError):
        return translate_api_error(
            error.status_code,
            error.api_code,
            details=error.detail.get("details"),
            message=error.message,
        )
    if isinstance(error, IdentityProviderError):
        return translate_provider_error(error.provider_code, error.message)
    return GENERIC_MESSAGE


__all__ = [
    "GENERIC_MESSAGE",
    "INSUFFICIENT_PRIVILEGES",
    "INACTIVE_ACCOUNT",
    "NETWORK_MESSAGE",
    "translate_provider_error",
    "translate_api_error",
    "banner_for",
]
