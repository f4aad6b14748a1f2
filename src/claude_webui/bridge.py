"""Process bridge: runs the Claude CLI and streams its output as events.

Each invocation writes the user command to the CLI's stdin and translates
its stdout into WebSocket events:

- ``session-created``   the CLI revealed a real session id (at most once)
- ``claude-response``   one per JSON stdout line
- ``claude-output``     one per non-JSON stdout line
- ``claude-error``      one per stderr chunk
- ``claude-complete``   exactly once, when the process exits
"""

import asyncio
import json
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import (
    SESSION_SCAN_DELAY,
    SESSION_SCAN_WINDOW,
    STDIN_GRACE_DELAY,
    find_claude_executable,
    get_projects_path,
)
from .core import is_placeholder_id
from .errors import ConfigurationError, IdentityResolutionFailure, ParseError, ProcessError
from .notifier import projects_updated_message

logger = logging.getLogger(__name__)

EventSink = Callable[[dict], Awaitable[None]]

# Field names the CLI has used for the session id in stream-json events.
SESSION_ID_ALIASES = ("session_id", "sessionId", "session", "id")
# stream-json lines carry whole tool results; the asyncio default of 64 KiB is too small.
STREAM_LIMIT = 16 * 1024 * 1024
DEFAULT_MODEL = "sonnet"


@dataclass
class ToolsSettings:
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    skip_permissions: bool = False

    @classmethod
    def from_dict(cls, data: dict | None) -> "ToolsSettings":
        data = data or {}
        return cls(
            allowed_tools=list(data.get("allowedTools") or []),
            disallowed_tools=list(data.get("disallowedTools") or []),
            skip_permissions=bool(data.get("skipPermissions")),
        )


@dataclass
class ClaudeOptions:
    """Options of one claude-command request."""

    session_id: str | None = None
    project_name: str | None = None
    cwd: str | None = None
    resume: bool = False
    tools_settings: ToolsSettings = field(default_factory=ToolsSettings)
    conversation_context: dict | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "ClaudeOptions":
        data = data or {}
        return cls(
            session_id=data.get("sessionId") or None,
            project_name=data.get("projectName") or None,
            cwd=data.get("cwd") or data.get("projectPath") or None,
            resume=bool(data.get("resume")),
            tools_settings=ToolsSettings.from_dict(data.get("toolsSettings")),
            conversation_context=data.get("conversationContext"),
        )


def build_args(options: ClaudeOptions) -> list[str]:
    """Translate options into Claude CLI arguments."""
    args = []

    # A placeholder id has no session on disk to resume.
    if options.resume and options.session_id and not is_placeholder_id(options.session_id):
        args.extend(["--resume", options.session_id])

    args.extend(["--output-format", "stream-json", "--verbose"])

    if not options.resume:
        args.extend(["--model", DEFAULT_MODEL])

    settings = options.tools_settings
    if settings.skip_permissions:
        args.append("--dangerously-skip-permissions")
    else:
        for tool in settings.allowed_tools:
            args.extend(["--allowedTools", tool])
        for tool in settings.disallowed_tools:
            args.extend(["--disallowedTools", tool])

    return args


def extract_session_id(event: dict) -> str | None:
    for alias in SESSION_ID_ALIASES:
        value = event.get(alias)
        if value and isinstance(value, str):
            return value
    return None


class ProcessRegistry:
    """Running CLI processes keyed by their current session identity."""

    def __init__(self):
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._processes

    def __len__(self) -> int:
        return len(self._processes)

    def register(self, key: str, process: asyncio.subprocess.Process) -> None:
        self._processes[key] = process

    def rekey(self, old: str, new: str) -> None:
        process = self._processes.pop(old, None)
        if process is not None:
            self._processes[new] = process

    def remove(self, key: str, process: asyncio.subprocess.Process | None = None) -> None:
        if process is None or self._processes.get(key) is process:
            self._processes.pop(key, None)

    def abort(self, session_id: str) -> bool:
        """Send SIGTERM to the process tracked for ``session_id``.

        Returns False when nothing is tracked under that id, including a
        second abort of the same session.
        """
        process = self._processes.pop(session_id, None)
        if process is None:
            return False
        logger.info("Aborting Claude session %s", session_id)
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process for %s already exited", session_id)
        return True

    def abort_all(self) -> int:
        count = 0
        for key in list(self._processes):
            if self.abort(key):
                count += 1
        return count


class _Invocation:
    """Identity bookkeeping for a single spawn."""

    def __init__(self, command: str, options: ClaudeOptions, process_key: str):
        self.command = command
        self.options = options
        self.process_key = process_key
        self.captured_id = options.session_id
        self.created_sent = False

    @property
    def starts_new_session(self) -> bool:
        return not self.options.session_id or is_placeholder_id(self.options.session_id)

    @property
    def has_real_identity(self) -> bool:
        return bool(self.captured_id) and not is_placeholder_id(self.captured_id)

    @property
    def replaces_temporary(self) -> str | None:
        sid = self.options.session_id
        return sid if is_placeholder_id(sid) else None


class ProcessBridge:
    """Spawns Claude CLI invocations and reports their events to a sink."""

    def __init__(
        self,
        registry: ProcessRegistry,
        snapshot: Callable[[], list[dict]] | None = None,
        executable: str | None = None,
        scan_delay: float = SESSION_SCAN_DELAY,
        stdin_grace: float = STDIN_GRACE_DELAY,
    ):
        self.registry = registry
        self.snapshot = snapshot
        self.executable = executable
        self.scan_delay = scan_delay
        self.stdin_grace = stdin_grace

    def resolve_executable(self) -> str:
        executable = self.executable or find_claude_executable()
        if not executable:
            raise ConfigurationError(os.environ.get("CLAUDE_WEBUI_CLAUDE_BIN", "claude"))
        return executable

    async def spawn(self, command: str, options: ClaudeOptions, sink: EventSink) -> int:
        """Run one CLI invocation to completion and return its exit code."""
        try:
            executable = self.resolve_executable()
        except ConfigurationError as e:
            await sink({"type": "claude-error", "error": str(e)})
            raise

        args = build_args(options)
        cwd = options.cwd or os.getcwd()
        logger.info(
            "Spawning %s %s (cwd=%s, session=%s, resume=%s)",
            executable, " ".join(args), cwd, options.session_id, options.resume,
        )

        process_key = options.session_id or str(int(time.time() * 1000))
        run = _Invocation(command, options, process_key)
        is_new_session = not options.session_id and bool(command)

        try:
            process = await asyncio.create_subprocess_exec(
                executable, *args,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to start Claude CLI: %s", e)
            await sink({"type": "claude-error", "error": str(e)})
            await sink({"type": "claude-complete", "exitCode": -1, "isNewSession": is_new_session})
            return -1

        self.registry.register(process_key, process)

        await asyncio.gather(
            self._feed_stdin(process, command),
            self._read_stdout(process, run, sink),
            self._read_stderr(process, sink),
        )
        exit_code = await process.wait()
        if exit_code == 0:
            logger.info("Claude CLI exited with code 0")
        else:
            logger.warning("%s", ProcessError("Claude CLI exited abnormally", exit_code))

        self.registry.remove(run.process_key, process)
        await sink({"type": "claude-complete", "exitCode": exit_code, "isNewSession": is_new_session})

        if exit_code == 0 and command and command.strip() and not run.has_real_identity:
            await self._recover_identity(run, sink)

        return exit_code

    async def _feed_stdin(self, process: asyncio.subprocess.Process, command: str) -> None:
        try:
            if command and command.strip():
                process.stdin.write((command + "\n").encode("utf-8"))
                await process.stdin.drain()
                await asyncio.sleep(self.stdin_grace)
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("CLI stdin closed early: %s", e)

    async def _read_stdout(self, process: asyncio.subprocess.Process, run: _Invocation, sink: EventSink) -> None:
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue

            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("%s", ParseError("claude stdout", line))
                await sink({"type": "claude-output", "data": line})
                continue

            if isinstance(event, dict):
                session_id = extract_session_id(event)
                if session_id:
                    await self._capture(run, session_id, sink)

            await sink({"type": "claude-response", "data": event})

    async def _read_stderr(self, process: asyncio.subprocess.Process, sink: EventSink) -> None:
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            logger.warning("Claude CLI stderr: %s", text.rstrip())
            await sink({"type": "claude-error", "error": text})

    async def _capture(self, run: _Invocation, session_id: str, sink: EventSink) -> None:
        if run.has_real_identity:
            return

        run.captured_id = session_id
        if run.process_key != session_id:
            self.registry.rekey(run.process_key, session_id)
            run.process_key = session_id
        logger.info("Captured session id %s from CLI output", session_id)

        if run.starts_new_session:
            await self._announce(run, sink)

    async def _announce(self, run: _Invocation, sink: EventSink) -> None:
        if run.created_sent:
            logger.debug("session-created already sent for %s", run.captured_id)
            return
        run.created_sent = True

        await sink({
            "type": "session-created",
            "sessionId": run.captured_id,
            "replacesTemporary": run.replaces_temporary,
            "conversationContext": run.options.conversation_context,
        })

        if self.snapshot is None:
            return
        try:
            projects = await asyncio.to_thread(self.snapshot)
        except Exception as e:
            logger.error("Failed to compute projects after session-created: %s", e)
            return
        message = projects_updated_message(projects, "session-created")
        message["sessionId"] = run.captured_id
        await sink(message)

    async def _recover_identity(self, run: _Invocation, sink: EventSink) -> None:
        await asyncio.sleep(self.scan_delay)
        session_id = await asyncio.to_thread(scan_for_session, run.command.strip())
        if session_id is None:
            logger.warning("%s", IdentityResolutionFailure(run.options.session_id))
            return

        logger.info("Recovered session id %s from recent log files", session_id)
        run.captured_id = session_id
        if run.starts_new_session:
            await self._announce(run, sink)


def scan_for_session(command: str, root: Path | None = None, window: float = SESSION_SCAN_WINDOW) -> str | None:
    """Find the session whose recently modified log contains ``command``.

    Returns the log file stem, which the CLI names after the session id.
    """
    root = root or get_projects_path()
    try:
        project_dirs = sorted(d for d in root.iterdir() if d.is_dir())
    except OSError as e:
        logger.warning("Could not scan %s for new sessions: %s", root, e)
        return None

    now = time.time()
    for project_dir in project_dirs:
        try:
            for path in project_dir.glob("*.jsonl"):
                if now - path.stat().st_mtime >= window:
                    continue
                if command in path.read_text(encoding="utf-8", errors="replace"):
                    return path.stem
        except OSError:
            continue
    return None
