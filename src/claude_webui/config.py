"""Path resolution and persisted project configuration."""

import json
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Watcher debounce window and polling step (seconds), handed to watchfiles.awatch.
WATCH_DEBOUNCE = 0.15
WATCH_STEP = 0.05
# Delay before the post-exit identity scan, and how recent a log file must be to match.
SESSION_SCAN_DELAY = 1.0
SESSION_SCAN_WINDOW = 30.0
# Grace period between writing the command and closing the subprocess stdin.
STDIN_GRACE_DELAY = 0.1

WATCH_IGNORED_DIRS = frozenset({"node_modules", ".git", "dist", "build"})
WATCH_IGNORED_SUFFIXES = (".tmp", ".swp")
WATCH_IGNORED_NAMES = frozenset({".DS_Store"})


def get_claude_home() -> Path:
    """Return the assistant's home directory (~/.claude)."""
    env = os.environ.get("CLAUDE_WEBUI_CLAUDE_HOME")
    if env:
        return Path(env)
    return Path.home() / ".claude"


def get_projects_path() -> Path:
    """Return the root directory holding per-project session logs."""
    env = os.environ.get("CLAUDE_WEBUI_PROJECTS_PATH")
    if env:
        return Path(env)
    return get_claude_home() / "projects"


def get_project_config_path() -> Path:
    """Return the path of project-config.json (display names, manual projects)."""
    env = os.environ.get("CLAUDE_WEBUI_CONFIG_PATH")
    if env:
        return Path(env)
    return get_claude_home() / "project-config.json"


def get_checkpoints_path() -> Path:
    """Return the directory where workspace checkpoints are stored."""
    env = os.environ.get("CLAUDE_WEBUI_CHECKPOINTS_PATH")
    if env:
        return Path(env)
    return get_claude_home() / "webui-checkpoints"


def get_client_state_path() -> Path:
    """Return the file backing the terminal client's durable storage."""
    env = os.environ.get("CLAUDE_WEBUI_CLIENT_STATE")
    if env:
        return Path(env)
    return Path.home() / ".config" / "claude-webui" / "client-state.json"


def find_claude_executable() -> str | None:
    """Locate the assistant executable, honouring CLAUDE_WEBUI_CLAUDE_BIN."""
    configured = os.environ.get("CLAUDE_WEBUI_CLAUDE_BIN", "claude")
    if os.path.sep in configured:
        return configured if os.access(configured, os.X_OK) else None
    return shutil.which(configured)


def load_project_config() -> dict:
    """Load project-config.json; a missing or unreadable file yields {}."""
    path = get_project_config_path()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read project config %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_project_config(config: dict) -> None:
    path = get_project_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")


def is_watch_enabled() -> bool:
    """Whether the server watches the projects root (CLAUDE_WEBUI_WATCH=0 disables it)."""
    return os.environ.get("CLAUDE_WEBUI_WATCH", "1").lower() not in ("0", "false", "no")
