# Role: File-backed persistence for conversation history and generation settings, one JSON blob per
# session and key. StateManager calls it after every history change when configured.

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import List, Optional, Union

from pydantic import TypeAdapter, ValidationError

import tech_router.config as config
from tech_router.models.message import Message
from tech_router.models.settings import GenerationSettings

_HISTORY_ADAPTER = TypeAdapter(List[Message])
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


class JsonHistoryStore:
    def __init__(self, directory: Union[str, Path], prefix: str = config.STORAGE_PREFIX) -> None:
        self.directory = Path(directory)
        self.prefix = prefix

    def _path(self, session_id: str, key: str) -> Path:
        safe_id = _UNSAFE_CHARS.sub("_", session_id)
        return self.directory / f"{self.prefix}{safe_id}_{key}.json"

    def save_history(self, session_id: str, history: List[Message]) -> None:
        self._write(self._path(session_id, "chat_history"), _HISTORY_ADAPTER.dump_json(history, indent=2))

    def load_history(self, session_id: str) -> List[Message]:
        raw = self._read(self._path(session_id, "chat_history"))
        if raw is None:
            return []
        try:
            return _HISTORY_ADAPTER.validate_json(raw)
        except ValidationError as e:
            print(f"WARNING: discarding unreadable history for {session_id}: {e}", file=sys.stderr)
            return []

    def save_settings(self, session_id: str, settings: GenerationSettings) -> None:
        self._write(self._path(session_id, "settings"), settings.model_dump_json(indent=2).encode("utf-8"))

    def load_settings(self, session_id: str) -> Optional[GenerationSettings]:
        raw = self._read(self._path(session_id, "settings"))
        if raw is None:
            return None
        try:
            return GenerationSettings.model_validate_json(raw)
        except ValidationError as e:
            print(f"WARNING: discarding unreadable settings for {session_id}: {e}", file=sys.stderr)
            return None

    def delete(self, session_id: str) -> None:
        for key in ("chat_history", "settings"):
            self._path(session_id, key).unlink(missing_ok=True)

    def _write(self, path: Path, payload: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)

    def _read(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
