"""Application context owning all server-side state.

One AppContext is created per server in the FastAPI lifespan and reached
through ``app.state.ctx``. It owns the running CLI processes and the
watcher task, and releases both on shutdown.
"""

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field

from .backends import get_log_provider
from .bridge import ProcessBridge, ProcessRegistry
from .checkpoints import CheckpointStore
from .config import is_watch_enabled
from .notifier import ChangeNotifier, ConnectionHub
from .projects import ProjectRegistry
from .provider import SessionLogProvider

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    provider: SessionLogProvider
    projects: ProjectRegistry
    processes: ProcessRegistry
    bridge: ProcessBridge
    hub: ConnectionHub
    checkpoints: CheckpointStore
    notifier: ChangeNotifier | None = None
    watch_task: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    _stop: asyncio.Event | None = None

    @classmethod
    def create(cls, watch: bool | None = None) -> "AppContext":
        provider = get_log_provider()
        checkpoints = CheckpointStore(resolve_path=provider.resolve_project_path)
        projects = ProjectRegistry(provider, checkpoints)
        processes = ProcessRegistry()
        hub = ConnectionHub()

        if watch is None:
            watch = is_watch_enabled()
        notifier = ChangeNotifier(provider.get_base_path(), projects, hub) if watch else None

        return cls(
            provider=provider,
            projects=projects,
            processes=processes,
            bridge=ProcessBridge(processes, snapshot=projects.snapshot),
            hub=hub,
            checkpoints=checkpoints,
            notifier=notifier,
        )

    async def start(self) -> None:
        if self.notifier is None:
            return
        self._stop = asyncio.Event()
        self.watch_task = asyncio.create_task(self.notifier.run(self._stop))

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run ``coro`` as a task owned by this context."""
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def close(self) -> None:
        aborted = self.processes.abort_all()
        if aborted:
            logger.info("Aborted %d running Claude processes", aborted)

        if self._stop is not None:
            self._stop.set()
        pending = list(self.tasks)
        if self.watch_task is not None:
            pending.append(self.watch_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.watch_task = None
