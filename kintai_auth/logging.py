from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for the login attempt currently being processed
attempt_id_var: ContextVar[Optional[str]] = ContextVar("attempt_id", default=None)


def get_attempt_id() -> Optional[str]:
    """Return the attempt ID bound to the running task, if any."""
    return attempt_id_var.get()


def set_attempt_id(attempt_id: Optional[str] = None) -> str:
    """Bind ``attempt_id`` (or a fresh 12-char hex ID) to the running task."""
    aid = attempt_id or uuid.uuid4().hex[:12]
    attempt_id_var.set(aid)
    return aid


def _add_attempt_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp the active login attempt onto each event."""
    aid = get_attempt_id()
    if aid:
        event_dict["attempt_id"] = aid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask passwords, tokens, emails and OAuth codes, keeping two chars at each end."""
    pii_keys = {"password", "secret", "token", "authorization", "email", "code"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key.endswith("_code") and lower_key != "code":
            # error_code / status_code are diagnostics, not secrets
            continue
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # keep the ends so two log lines can still be matched up
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the shared processor chain.

    Login traces go to stdout as one JSON object per line unless
    ``LOG_JSON`` is off or ``LOG_DEV_MODE`` is on, in which case the
    coloured console renderer is used. Events below ``log_level`` are
    dropped before any processor runs.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_attempt_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Controllers log from the first import, before any Settings object exists
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; events carry ``attempt_id`` once one is set."""
    return structlog.get_logger(name)


def mask_identifier(value: Optional[str]) -> Optional[str]:
    """Shorten a user-supplied identifier for log fields that are not redacted."""
    if not value:
        return value
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]
