from __future__ import annotations

import json
from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class StorageBackend(Protocol):
    """String key/value store with its own lifetime and availability guarantees.

    Implementations raise ``BackendUnavailable`` when the underlying store
    cannot be reached; a missing key is ``None``, never an exception.
    """

    name: str

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def load_json(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


__all__ = ["StorageBackend", "dump_json", "load_json"]
