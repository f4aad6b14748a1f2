"""Workspace checkpoints taken before each prompt.

A checkpoint is a copy of the project's working tree stored under
``<checkpoints root>/<project name>/<prompt id>/files`` with a ``meta.json``
beside it. Restoring copies the saved files back over the working tree.
"""

import json
import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from .config import get_checkpoints_path
from .core import check_project_name
from .errors import CheckpointNotFoundError

logger = logging.getLogger(__name__)

IGNORED_PATTERNS = (".git", ".claude", "node_modules", "dist", "build", "__pycache__", ".venv")
META_FILE = "meta.json"


def _count_files(root: Path) -> int:
    return sum(1 for p in root.rglob("*") if p.is_file())


class CheckpointStore:
    def __init__(
        self,
        root: Path | None = None,
        resolve_path: Callable[[str], str] | None = None,
    ):
        self._root = root
        self.resolve_path = resolve_path

    @property
    def root(self) -> Path:
        return self._root or get_checkpoints_path()

    def _dir(self, project_name: str, prompt_id: str | None = None) -> Path:
        base = self.root / check_project_name(project_name)
        if prompt_id is None:
            return base
        if not prompt_id or Path(prompt_id).name != prompt_id or prompt_id in (".", ".."):
            raise CheckpointNotFoundError(project_name, prompt_id)
        return base / prompt_id

    def create(
        self,
        project_name: str,
        prompt_id: str,
        user_message: str,
        project_path: str | None = None,
    ) -> dict:
        """Snapshot the project's working tree for ``prompt_id``."""
        if project_path is None and self.resolve_path is not None:
            project_path = self.resolve_path(project_name)
        source = Path(project_path) if project_path else None

        target = self._dir(project_name, prompt_id)
        if target.exists():
            shutil.rmtree(target)
        files_dir = target / "files"

        if source is not None and source.is_dir():
            shutil.copytree(source, files_dir, ignore=shutil.ignore_patterns(*IGNORED_PATTERNS), symlinks=True)
        else:
            logger.warning("Project path %s missing, creating empty checkpoint %s", project_path, prompt_id)
            files_dir.mkdir(parents=True)

        meta = {
            "promptId": prompt_id,
            "projectName": project_name,
            "projectPath": str(source) if source else None,
            "userMessage": user_message,
            "timestamp": int(time.time() * 1000),
            "fileCount": _count_files(files_dir),
        }
        (target / META_FILE).write_text(json.dumps(meta, indent=2), encoding="utf-8")
        logger.info("Created checkpoint %s for %s (%d files)", prompt_id, project_name, meta["fileCount"])
        return {"success": True, "checkpoint": meta}

    def restore(self, project_name: str, prompt_id: str) -> dict:
        """Copy a checkpoint's files back over the project working tree."""
        target = self._dir(project_name, prompt_id)
        meta = self._read_meta(target)
        if meta is None:
            raise CheckpointNotFoundError(project_name, prompt_id)

        project_path = meta.get("projectPath")
        if not project_path and self.resolve_path is not None:
            project_path = self.resolve_path(project_name)
        if not project_path:
            raise CheckpointNotFoundError(project_name, prompt_id)

        files_dir = target / "files"
        destination = Path(project_path)
        destination.mkdir(parents=True, exist_ok=True)
        shutil.copytree(files_dir, destination, dirs_exist_ok=True, symlinks=True)

        restored = _count_files(files_dir)
        logger.info("Restored checkpoint %s for %s (%d files)", prompt_id, project_name, restored)
        return {"success": True, "restoredFiles": restored, "promptId": prompt_id}

    def list_checkpoints(self, project_name: str) -> list[dict]:
        base = self._dir(project_name)
        if not base.is_dir():
            return []
        checkpoints = [m for m in (self._read_meta(d) for d in base.iterdir() if d.is_dir()) if m]
        checkpoints.sort(key=lambda m: m.get("timestamp", 0), reverse=True)
        return checkpoints

    def delete(self, project_name: str, prompt_id: str) -> bool:
        try:
            target = self._dir(project_name, prompt_id)
        except CheckpointNotFoundError:
            return False
        if not target.is_dir():
            return False
        shutil.rmtree(target)
        return True

    def clear_project(self, project_name: str) -> int:
        base = self._dir(project_name)
        if not base.is_dir():
            return 0
        count = sum(1 for d in base.iterdir() if d.is_dir())
        shutil.rmtree(base)
        return count

    def _read_meta(self, checkpoint_dir: Path) -> dict | None:
        try:
            return json.loads((checkpoint_dir / META_FILE).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Unreadable checkpoint metadata in %s: %s", checkpoint_dir, e)
            return None
