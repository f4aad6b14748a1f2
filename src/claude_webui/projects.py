"""Project discovery, registration and snapshot computation.

A project is either auto-discovered (a directory the CLI created under the
projects root) or manually added (an entry in project-config.json). Two
projects resolving to the same filesystem path are merged: a manually added
project always wins over an auto-discovered one, otherwise the first one
seen keeps its place and absorbs the other's sessions.
"""

import json
import logging
import shutil
from pathlib import Path

from .config import load_project_config, save_project_config
from .core import Project, Session, check_project_name
from .errors import InvalidProjectPathError, ProjectExistsError
from .provider import SessionLogProvider
from .backends.claude_code import encode_project_path

logger = logging.getLogger(__name__)

SESSION_PAGE_SIZE = 5


def generate_display_name(project_name: str, project_path: str | None = None) -> str:
    """Derive a human-readable project name.

    Prefers the "name" field of package.json in the project directory,
    then the last two path components.
    """
    path = project_path or project_name.replace("-", "/")

    package_json = Path(path) / "package.json"
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
        if isinstance(data, dict) and data.get("name"):
            return data["name"]
    except (OSError, json.JSONDecodeError):
        pass

    if path.startswith("/"):
        parts = [p for p in path.split("/") if p]
        if len(parts) > 3:
            return ".../" + "/".join(parts[-2:])
    return path


def _merge_sessions(*groups: list[Session]) -> list[Session]:
    merged: dict[str, Session] = {}
    for group in groups:
        for session in group:
            merged.setdefault(session.id, session)
    return list(merged.values())


class ProjectRegistry:
    """Builds the project/session snapshot pushed to clients."""

    def __init__(self, provider: SessionLogProvider, checkpoints=None):
        self.provider = provider
        self.checkpoints = checkpoints

    def get_projects(self) -> list[Project]:
        config = load_project_config()
        projects: list[Project] = []
        by_path: dict[str, Project] = {}
        on_disk = set()

        for name in self.provider.list_project_names():
            on_disk.add(name)
            entry = config.get(name) or {}
            path = self.provider.resolve_project_path(name)
            project = self._make_project(name, path, entry)
            self._register(project, by_path, projects)

        self.cleanup_empty_projects(config)

        for name, entry in config.items():
            if name in on_disk or not entry.get("manuallyAdded"):
                continue
            path = entry.get("originalPath") or self.provider.resolve_project_path(name)
            self._register(self._make_project(name, path, entry), by_path, projects)

        # Manually added projects must always be listed, even without sessions.
        listed = {p.name for p in projects}
        for name, entry in config.items():
            if entry.get("manuallyAdded") and name not in listed:
                logger.warning("Adding missing manually added project %s", name)
                path = entry.get("originalPath") or self.provider.resolve_project_path(name)
                projects.append(self._make_project(name, path, entry))

        return projects

    def snapshot(self) -> list[dict]:
        return [p.to_dict() for p in self.get_projects()]

    def _make_project(self, name: str, path: str, entry: dict) -> Project:
        custom = entry.get("displayName")
        return Project(
            name=name,
            path=path,
            display_name=custom or generate_display_name(name, path),
            is_custom_name=bool(custom),
            is_manually_added=bool(entry.get("manuallyAdded")),
        )

    def _load_sessions(self, project: Project) -> Project:
        page = self.provider.list_sessions(project.name, limit=SESSION_PAGE_SIZE)
        project.sessions = page.sessions
        project.total_sessions = page.total
        project.has_more = page.has_more
        return project

    def _register(self, project: Project, by_path: dict[str, Project], projects: list[Project]) -> None:
        existing = by_path.get(project.path)
        if existing is None:
            by_path[project.path] = project
            projects.append(self._load_sessions(project))
            return

        logger.info(
            "Duplicate projects for %s: %s (manual=%s) and %s (manual=%s)",
            project.path, existing.name, existing.is_manually_added,
            project.name, project.is_manually_added,
        )

        if project.is_manually_added and not existing.is_manually_added:
            merged = _merge_sessions(
                self.provider.list_sessions(existing.name, limit=SESSION_PAGE_SIZE).sessions,
                self.provider.list_sessions(project.name, limit=SESSION_PAGE_SIZE).sessions,
            )
            project.sessions = merged
            project.total_sessions = len(merged)
            project.has_more = False
            by_path[project.path] = project
            projects[:] = [p for p in projects if p.name != existing.name]
            projects.append(project)
        elif existing.is_manually_added and not project.is_manually_added:
            return
        else:
            merged = _merge_sessions(
                existing.sessions,
                self.provider.list_sessions(project.name, limit=SESSION_PAGE_SIZE).sessions,
            )
            existing.sessions = merged
            existing.total_sessions = len(merged)
            existing.has_more = False

    def cleanup_empty_projects(self, config: dict | None = None) -> list[str]:
        """Remove empty auto-discovered project directories."""
        config = load_project_config() if config is None else config
        removed = []
        for name in self.provider.list_project_names():
            if not name.startswith("-"):
                continue
            if (config.get(name) or {}).get("manuallyAdded"):
                continue
            if not self.provider.is_project_empty(name):
                continue
            logger.info("Removing empty auto-created project directory %s", name)
            shutil.rmtree(self.provider.get_base_path() / name, ignore_errors=True)
            removed.append(name)
        return removed

    # ── User actions ─────────────────────────────────────────────────

    def add_project_manually(self, project_path: str, display_name: str | None = None) -> Project:
        absolute = Path(project_path).expanduser().resolve()
        if not absolute.exists():
            raise InvalidProjectPathError(str(absolute))

        path = str(absolute)
        name = encode_project_path(path)
        project_dir = self.provider.get_base_path() / name
        if project_dir.exists():
            raise ProjectExistsError(f"Project already exists for path: {path}")

        for project in self.get_projects():
            if project.path != path:
                continue
            if project.is_manually_added:
                raise ProjectExistsError(
                    f'Project already configured for path: {path} (exists as "{project.display_name}")'
                )
            logger.info("Auto-created project exists for %s, manual project takes precedence", path)

        config = load_project_config()
        if name in config:
            if config[name].get("originalPath") == path:
                raise ProjectExistsError(f"Project already configured for path: {path}")
            raise ProjectExistsError(f"Project name conflict for {name}")

        config[name] = {"manuallyAdded": True, "originalPath": path}
        if display_name:
            config[name]["displayName"] = display_name
        save_project_config(config)

        project_dir.mkdir(parents=True, exist_ok=True)
        self.provider.clear_cache()
        logger.info("Added project manually: %s -> %s", name, path)

        return Project(
            name=name,
            path=path,
            display_name=display_name or generate_display_name(name, path),
            is_custom_name=bool(display_name),
            is_manually_added=True,
        )

    def rename_project(self, project_name: str, display_name: str | None) -> None:
        check_project_name(project_name)
        config = load_project_config()
        new_name = (display_name or "").strip()

        if not new_name:
            entry = config.get(project_name)
            if entry is not None:
                entry.pop("displayName", None)
                if not entry:
                    del config[project_name]
        else:
            config.setdefault(project_name, {})["displayName"] = new_name

        save_project_config(config)
        logger.info("Renamed project %s to %r", project_name, new_name)

    def delete_project(self, project_name: str) -> None:
        check_project_name(project_name)
        deleted = self.provider.delete_all_sessions(project_name)
        logger.info("Deleted %d session files for project %s", deleted, project_name)

        if self.checkpoints is not None:
            cleared = self.checkpoints.clear_project(project_name)
            logger.info("Deleted %d checkpoints for project %s", cleared, project_name)

        shutil.rmtree(self.provider.get_base_path() / project_name, ignore_errors=True)

        config = load_project_config()
        if config.pop(project_name, None) is not None:
            save_project_config(config)
        self.provider.clear_cache()
