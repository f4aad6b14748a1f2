"""Durable client-side key/value storage.

Holds what a browser client would keep in local storage: placeholder
session records, per-project checkpoint registries, draft inputs and
cached transcripts. Values are JSON-serializable.
"""

import json
import logging
import os
from pathlib import Path

from .config import get_client_state_path

logger = logging.getLogger(__name__)

PLACEHOLDER_SESSIONS_KEY = "placeholderSessions"


def checkpoints_key(project_name: str) -> str:
    return f"checkpoints-{project_name}"


def draft_input_key(project_name: str) -> str:
    return f"draft_input_{project_name}"


def chat_messages_key(project_name: str) -> str:
    return f"chat_messages_{project_name}"


class MemoryClientStore:
    """In-memory store; state is lost when the process exits."""

    def __init__(self, data: dict | None = None):
        self._data: dict = dict(data or {})

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value) -> None:
        self._data[key] = value
        self._persist()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()

    def keys(self) -> list[str]:
        return list(self._data)

    def _persist(self) -> None:
        pass


class ClientStore(MemoryClientStore):
    """JSON file backed store, rewritten atomically on every change."""

    def __init__(self, path: Path | None = None):
        self.path = path or get_client_state_path()
        super().__init__(self._load())

    def _load(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Discarding unreadable client state %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, self.path)
