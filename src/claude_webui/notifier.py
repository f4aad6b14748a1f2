"""Change notifier: watch the session log tree and push project snapshots.

The CLI writes its logs without telling us, so a filesystem watch is the
only signal that a session changed. watchfiles debounces bursts of changes
into one batch, and each batch becomes one ``projects_updated`` push to
every connected client.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

from watchfiles import Change, awatch

from .config import (
    WATCH_DEBOUNCE,
    WATCH_IGNORED_DIRS,
    WATCH_IGNORED_NAMES,
    WATCH_IGNORED_SUFFIXES,
    WATCH_STEP,
)
from .projects import ProjectRegistry

logger = logging.getLogger(__name__)

_CHANGE_TYPES = {
    Change.added: "add",
    Change.modified: "change",
    Change.deleted: "unlink",
}
_PRECEDENCE = ("addDir", "unlink", "add", "change")


def projects_updated_message(
    projects: list[dict],
    change_type: str,
    changed_file: str | None = None,
) -> dict:
    return {
        "type": "projects_updated",
        "projects": projects,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "changeType": change_type,
        "changedFile": changed_file,
    }


def watch_filter(change: Change, path: str) -> bool:
    """Return False for build artifacts, VCS internals and editor temp files."""
    p = Path(path)
    if any(part in WATCH_IGNORED_DIRS for part in p.parts):
        return False
    if p.name in WATCH_IGNORED_NAMES:
        return False
    return not p.name.endswith(WATCH_IGNORED_SUFFIXES)


def classify_change(change: Change, path: str) -> str:
    if change == Change.added and Path(path).is_dir():
        return "addDir"
    return _CHANGE_TYPES.get(change, "change")


def summarize_changes(changes) -> tuple[str, str] | None:
    """Pick the change a batch is reported as.

    The most significant kind wins (``addDir``, ``unlink``, ``add``,
    ``change``); ties go to the first path in sort order.
    """
    classified = [(classify_change(change, path), path) for change, path in changes]
    if not classified:
        return None
    return min(classified, key=lambda item: (_PRECEDENCE.index(item[0]), item[1]))


class ConnectionHub:
    """The set of connected WebSocket clients."""

    def __init__(self):
        self._clients: set = set()

    def __len__(self) -> int:
        return len(self._clients)

    def add(self, client) -> None:
        self._clients.add(client)

    def discard(self, client) -> None:
        self._clients.discard(client)

    async def broadcast(self, message: dict) -> int:
        """Send ``message`` to every client, dropping those that fail."""
        sent = 0
        for client in list(self._clients):
            try:
                await client.send_json(message)
                sent += 1
            except Exception as e:
                logger.warning("Dropping client after failed send: %s", e)
                self._clients.discard(client)
        return sent


class ChangeNotifier:
    """Watches the projects root and broadcasts fresh snapshots."""

    def __init__(
        self,
        root: Path,
        registry: ProjectRegistry,
        hub: ConnectionHub,
        debounce: float = WATCH_DEBOUNCE,
        step: float = WATCH_STEP,
    ):
        self.root = root
        self.registry = registry
        self.hub = hub
        self.debounce_ms = int(debounce * 1000)
        self.step_ms = int(step * 1000)

    async def publish(self, changes: set[tuple[Change, str]]) -> int:
        """Push one snapshot for a batch of changes; returns clients reached."""
        summary = summarize_changes(changes)
        if summary is None:
            return 0
        change_type, path = summary

        self.registry.provider.clear_cache()
        projects = await asyncio.to_thread(self.registry.snapshot)

        try:
            changed_file = str(Path(path).relative_to(self.root))
        except ValueError:
            changed_file = path

        sent = await self.hub.broadcast(projects_updated_message(projects, change_type, changed_file))
        logger.debug("Pushed projects_updated (%s %s) to %d clients", change_type, changed_file, sent)
        return sent

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Watch until cancelled or ``stop_event`` is set.

        awatch reports only changes made after it starts, so the existing
        tree never triggers a push.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Watching %s for session changes", self.root)
        async for changes in awatch(
            self.root,
            watch_filter=watch_filter,
            debounce=self.debounce_ms,
            step=self.step_ms,
            stop_event=stop_event,
        ):
            try:
                await self.publish(changes)
            except Exception as e:
                logger.error("Failed to push project update: %s", e)
