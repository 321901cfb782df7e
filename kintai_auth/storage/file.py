from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from kintai_auth.logging import get_logger
from kintai_auth.storage.errors import BackendUnavailable


class FileBackend:
    """Durable store shared by every process that points at the same file.

    Stands in for cross-tab browser storage: all tabs (processes) read and
    write one JSON document under ``fs_root``. Writes are atomic (temp file
    then rename) and last-writer-wins; there is no cross-process locking.
    """

    def __init__(
        self,
        fs_root: str,
        *,
        filename: str = "login_data.json",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = "file:cross_tab"
        self.fs_root = Path(fs_root)
        self.filename = filename
        self._clock = clock
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendUnavailable(
                f"cannot create {state_dir}", backend=self.name, detail={"error": str(exc)}
            ) from exc
        return state_dir / self.filename

    def _load(self) -> Dict[str, Dict[str, Any]]:
        path = self._state_path()
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            # A torn or hand-edited file is treated as empty
            self.logger.warning("file_backend_corrupt", path=str(path), error=str(exc))
            return {}
        except OSError as exc:
            raise BackendUnavailable(
                f"cannot read {path}", backend=self.name, detail={"error": str(exc)}
            ) from exc
        return raw if isinstance(raw, dict) else {}

    def _persist(self, state: Dict[str, Dict[str, Any]]) -> None:
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".login_data_", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state, handle, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise BackendUnavailable(
                f"cannot write {path}", backend=self.name, detail={"error": str(exc)}
            ) from exc

    def _live(self, entry: Any) -> Optional[str]:
        if not isinstance(entry, dict):
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            return None
        value = entry.get("value")
        return value if isinstance(value, str) else None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(self._load().get(key))

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            state = self._load()
            state[key] = {
                "value": value,
                "expires_at": self._clock() + ttl_seconds if ttl_seconds else None,
            }
            self._persist(state)

    async def delete(self, key: str) -> None:
        with self._lock:
            state = self._load()
            if key in state:
                state.pop(key)
                self._persist(state)

    def wipe(self) -> None:
        with self._lock:
            path = self._state_path()
            if path.exists():
                path.unlink()


__all__ = ["FileBackend"]
