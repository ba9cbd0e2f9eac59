"""
TABPILOT Session Store — the only component that touches persistence.

Every mutation the core performs is load → compute → save, with no caching
across operation boundaries. An operation that saved before a restart resumes
correctly; one interrupted before its save never happened.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

from loguru import logger
from pydantic import ValidationError

from tabpilot.config_loader import DialogueConfig, StoreConfig, TabPilotConfig
from tabpilot.state import SessionState


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class StorageBackend(Protocol):
    def read(self, key: str) -> str | None: ...
    def write(self, key: str, blob: str) -> None: ...
    def delete(self, key: str) -> None: ...
    def keys(self) -> list[str]: ...


class MemoryBackend:
    """Keeps serialised blobs, so two loads never share an object."""

    def __init__(self):
        self._blobs: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self._blobs.get(key)

    def write(self, key: str, blob: str) -> None:
        self._blobs[key] = blob

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._blobs)


class FileBackend:
    """
    One JSON document per session under `state_dir`. Keys are percent-encoded
    into the filename, so distinct ids never share a file and `keys()` gives
    back the ids exactly as stored.
    """

    PREFIX = "session-"

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.state_dir / f"{self.PREFIX}{quote(key, safe='')}.json"

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text()

    def write(self, key: str, blob: str) -> None:
        path = self._path(key)
        # temp file + replace: a crash mid-write leaves the previous state intact
        fd, tmp = tempfile.mkstemp(dir=self.state_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(blob)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return sorted(
            unquote(p.stem[len(self.PREFIX):])
            for p in self.state_dir.glob(f"{self.PREFIX}*.json")
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SessionStore:
    """Durable, keyed-by-session-id storage of one SessionState record."""

    def __init__(
        self,
        backend: StorageBackend | None = None,
        dialogue: DialogueConfig | None = None,
        max_iterations: int = 50,
    ):
        self.backend = backend or MemoryBackend()
        self.dialogue = dialogue
        self.max_iterations = max_iterations

    @classmethod
    def from_config(cls, config: TabPilotConfig, root: Path | None = None) -> "SessionStore":
        return cls(
            backend=_backend_for(config.store, root),
            dialogue=config.dialogue,
            max_iterations=config.limits.max_iterations,
        )

    def default(self, session_id: str) -> SessionState:
        return SessionState.fresh(session_id, self.dialogue, self.max_iterations)

    def load(self, session_id: Any) -> SessionState:
        """Return the stored state, or a fresh default if none exists."""
        key = str(session_id)
        blob = self.backend.read(key)
        if blob is None:
            logger.debug(f"[STORE] No saved state for session {key} — using default")
            return self.default(key)
        try:
            return SessionState.model_validate_json(blob)
        except ValidationError as e:
            logger.error(f"[STORE] Corrupt state for session {key}, using default: {e}")
            return self.default(key)

    def save(self, state: SessionState, session_id: Any) -> SessionState:
        key = str(session_id)
        state.session_id = key
        self.backend.write(key, state.model_dump_json())
        logger.debug(f"[STORE] Saved session {key}: {state.status.value}")
        return state

    def update(self, partial: dict[str, Any], session_id: Any) -> SessionState:
        """Load, shallow-merge `partial`, validate, save and return."""
        state = self.load(session_id)
        merged = {**state.model_dump(), **partial}
        new_state = SessionState.model_validate(merged)
        return self.save(new_state, session_id)

    def reset(self, session_id: Any) -> SessionState:
        return self.save(self.default(str(session_id)), session_id)

    def clear(self, session_id: Any) -> None:
        """Hard delete — used when the owning session is torn down."""
        self.backend.delete(str(session_id))
        logger.debug(f"[STORE] Cleared session {session_id}")

    def sessions(self) -> list[str]:
        return self.backend.keys()


def _backend_for(config: StoreConfig, root: Path | None) -> StorageBackend:
    if config.backend == "memory":
        return MemoryBackend()
    state_dir = Path(config.state_dir)
    if root and not state_dir.is_absolute():
        state_dir = root / state_dir
    return FileBackend(state_dir)
