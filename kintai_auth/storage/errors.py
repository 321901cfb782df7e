from __future__ import annotations

from typing import Any, Dict, Optional


class BackendUnavailable(Exception):
    """Raised when a storage backend cannot serve a read, write, or delete."""

    def __init__(
        self, message: str, backend: str = "", detail: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.detail = detail or {}


__all__ = ["BackendUnavailable"]
