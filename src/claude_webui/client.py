"""Client-side chat controller and the terminal chat client.

``ChatController`` holds what a browser tab would: the reconciler, the
transcript in view and durable client storage. It builds outbound
WebSocket frames for user actions and applies inbound frames strictly in
arrival order.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import click
import httpx
import websockets

from .backends.claude_code import encode_project_path
from .config import SESSION_SCAN_DELAY
from .client_store import (
    MemoryClientStore,
    chat_messages_key,
    checkpoints_key,
    draft_input_key,
)
from .core import (
    Checkpoint,
    ChatMessage,
    ErrorMessage,
    Project,
    Session,
    ToolUse,
    UserMessage,
    is_placeholder_id,
)
from .errors import ProjectNotFoundError
from .reconciler import RecentMessageCache, SessionReconciler
from .transcript import Transcript

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("claude-complete", "session-aborted")
TRANSCRIPT_EVENTS = (
    "claude-response",
    "claude-output",
    "claude-interactive-prompt",
    "claude-error",
)

# How long to keep reading after a conversation ends for a recovered session id.
IDENTITY_WAIT = SESSION_SCAN_DELAY + 2.0


def new_prompt_id() -> str:
    return f"prompt-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def checkpoint_project_names(project: Project) -> list[str]:
    """Project names whose checkpoint registries may hold this project's entries.

    A manually added project and the directory the CLI creates for the same
    path can end up with different names.
    """
    names = [project.name]
    path = project.full_path
    if not path:
        return names
    if project.name.startswith("-"):
        bare = path[1:] if path.startswith("/") else path
        names.append(re.sub(r"\s+", "_", bare.replace("/", "-")))
    else:
        names.append(encode_project_path(path))
    return names


class ChatController:
    """Drives one client: selection, identity reconciliation and transcript."""

    def __init__(self, store: MemoryClientStore | None = None):
        self.store = store if store is not None else MemoryClientStore()
        self.reconciler = SessionReconciler(self.store)
        self.transcript = Transcript()
        self.recent = RecentMessageCache()
        self.is_loading = False

    @property
    def project(self) -> Project | None:
        return self.reconciler.selected_project

    @property
    def awaiting_identity(self) -> bool:
        session_id = self.reconciler.active_session_id
        return session_id is None or is_placeholder_id(session_id)

    # ── Views ────────────────────────────────────────────────────

    def load_projects(self, projects: list[dict]) -> None:
        self.reconciler.load_projects([Project.from_dict(p) for p in projects])

    def select_project(self, project_name: str) -> Project:
        self.reconciler.select_project(project_name)
        project = self.project
        if project is None:
            raise ProjectNotFoundError(project_name)
        self.transcript.clear()
        return project

    def start_new_conversation(self, project_name: str) -> Session:
        session = self.reconciler.start_new_conversation(project_name)
        self.transcript.clear()
        return session

    def open_session(self, session: Session, entries: list[dict]) -> None:
        """Show a historical session; ``entries`` are its raw log entries."""
        self.reconciler.select_session(session)
        checkpoints = self.load_checkpoints(self.project) if self.project else {}
        self.transcript.load_history(entries, checkpoints)

    # ── Outbound ─────────────────────────────────────────────────

    def compose_command(
        self,
        text: str,
        tools_settings: dict | None = None,
        checkpoint_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> dict:
        """Record a user message and return the claude-command frame."""
        project = self.project
        if project is None:
            raise ProjectNotFoundError(self.reconciler.selected_project_name or "")

        message = self.transcript.add_user_message(text, self.reconciler.active_session_id, timestamp)
        session_id, resume = self.reconciler.begin_send()

        if checkpoint_id:
            self.record_checkpoint(project.name, text, message, checkpoint_id)

        if session_id and not is_placeholder_id(session_id):
            self.reconciler.update_session_activity(session_id, message.timestamp, text.strip())

        conversation = self.reconciler.selected_conversation
        context = None
        if conversation is not None:
            context = {"conversationId": conversation.id, "conversationTitle": conversation.title}

        self.is_loading = True
        self.store.remove(draft_input_key(project.name))
        self._persist_transcript()

        return {
            "type": "claude-command",
            "command": text,
            "options": {
                "projectName": project.name,
                "projectPath": project.path,
                "cwd": project.full_path,
                "sessionId": session_id,
                "resume": resume,
                "toolsSettings": tools_settings or {
                    "allowedTools": [],
                    "disallowedTools": [],
                    "skipPermissions": False,
                },
                "conversationContext": context,
            },
        }

    def abort_frame(self) -> dict:
        return {"type": "abort-session", "sessionId": self.reconciler.active_session_id}

    def truncate_frame(self, checkpoint_id: str, message_count: int) -> dict:
        return {
            "type": "truncate_messages",
            "data": {
                "checkpointId": checkpoint_id,
                "messageCount": message_count,
                "projectName": self.project.name if self.project else None,
                "sessionId": self.reconciler.active_session_id,
            },
        }

    # ── Inbound ──────────────────────────────────────────────────

    def handle(self, frame: dict) -> list[ChatMessage]:
        """Apply one inbound frame; returns transcript entries it added.

        Frames carrying a timestamp are applied at most once.
        """
        if "timestamp" in frame and not self.recent.check_and_add(frame):
            logger.debug("Skipping already processed %s", frame.get("type"))
            return []

        kind = frame.get("type")
        added: list[ChatMessage] = []

        if kind == "projects_updated":
            projects = [Project.from_dict(p) for p in frame.get("projects") or []]
            self.reconciler.apply_snapshot(projects)
        elif kind == "session-created":
            session_id = frame.get("sessionId")
            if self.reconciler.on_identity_assigned(session_id, frame.get("replacesTemporary")):
                self.transcript.adopt_session_id(session_id)
        elif kind in TRANSCRIPT_EVENTS:
            added = self.transcript.append_live(frame, self.reconciler.active_session_id)
        elif kind in TERMINAL_EVENTS:
            self.is_loading = False
            self.reconciler.on_conversation_terminal()
            if kind == "session-aborted":
                added = self.transcript.append_live(frame, self.reconciler.active_session_id)
        elif kind == "error":
            added = [ErrorMessage(
                content=f"Error: {frame.get('error')}",
                timestamp=datetime.now(timezone.utc),
                session_id=self.reconciler.active_session_id,
            )]
            self.transcript.messages.extend(added)
            self.is_loading = False
        elif kind == "messages-truncated":
            if not frame.get("success"):
                logger.warning("Truncation failed: %s", frame.get("error"))
        else:
            logger.debug("Unhandled frame type %r", kind)

        if added:
            self._persist_transcript()
        return added

    # ── Durable state ────────────────────────────────────────────

    def record_checkpoint(self, project_name: str, content: str, message: UserMessage, checkpoint_id: str) -> Checkpoint:
        checkpoint = Checkpoint(
            checkpoint_id=checkpoint_id,
            content=content,
            timestamp=int(message.timestamp.timestamp() * 1000),
        )
        registry = self.store.get(checkpoints_key(project_name)) or {}
        registry[checkpoint.key()] = checkpoint.to_dict()
        self.store.set(checkpoints_key(project_name), registry)
        self.transcript.set_checkpoint(message, checkpoint_id)
        return checkpoint

    def load_checkpoints(self, project: Project) -> dict[str, Checkpoint]:
        checkpoints = {}
        for name in checkpoint_project_names(project):
            for key, data in (self.store.get(checkpoints_key(name)) or {}).items():
                checkpoints[key] = Checkpoint.from_dict(data)
        return checkpoints

    def save_draft(self, text: str) -> None:
        if self.project is None:
            return
        if text:
            self.store.set(draft_input_key(self.project.name), text)
        else:
            self.store.remove(draft_input_key(self.project.name))

    def load_draft(self) -> str:
        if self.project is None:
            return ""
        return self.store.get(draft_input_key(self.project.name)) or ""

    def _persist_transcript(self) -> None:
        if self.project is None:
            return
        if self.transcript.messages:
            self.store.set(chat_messages_key(self.project.name), self.transcript.to_dicts())
        else:
            self.store.remove(chat_messages_key(self.project.name))


# ── Terminal client ──────────────────────────────────────────────


def format_entry(entry: ChatMessage) -> str:
    if isinstance(entry, ToolUse):
        return f"[tool] {entry.tool_name} {entry.tool_input}"
    return f"[{entry.kind}] {entry.content}"


def http_base_url(ws_url: str) -> str:
    base = re.sub(r"^ws", "http", ws_url)
    return re.sub(r"/ws/?$", "", base)


async def _await_identity(ws, controller: ChatController, echo: Callable[[str], None], timeout: float | None = None) -> None:
    """Keep reading frames until the session has its real id.

    An id recovered from disk after the CLI exits arrives in a
    session-created frame that trails claude-complete.
    """
    timeout = IDENTITY_WAIT if timeout is None else timeout
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while controller.awaiting_identity:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            frame = json.loads(await asyncio.wait_for(ws.recv(), remaining))
        except asyncio.TimeoutError:
            break
        for entry in controller.handle(frame):
            echo(format_entry(entry))

    if controller.awaiting_identity:
        logger.warning("No session id received %.1fs after the conversation ended", timeout)


async def run_chat(
    url: str,
    project_name: str,
    session_id: str | None,
    messages: list[str],
    store: MemoryClientStore,
    echo: Callable[[str], None] = click.echo,
) -> None:
    """Chat with the server over ``url`` from the terminal.

    Sends each of ``messages`` in turn, or reads prompts interactively
    when none are given.
    """
    controller = ChatController(store)
    base = http_base_url(url)

    async with httpx.AsyncClient(base_url=base) as http:
        response = await http.get("/api/projects")
        response.raise_for_status()
        controller.load_projects(response.json())
        project = controller.select_project(project_name)

        if session_id:
            session = next((s for s in project.sessions if s.id == session_id), Session(id=session_id))
            response = await http.get(f"/api/projects/{project.name}/sessions/{session_id}/messages")
            response.raise_for_status()
            controller.open_session(session, response.json().get("messages", []))
            for entry in controller.transcript.messages:
                echo(format_entry(entry))
        else:
            controller.start_new_conversation(project.name)

        async with websockets.connect(url, max_size=None) as ws:
            pending = list(messages)
            while True:
                if pending:
                    text = pending.pop(0)
                elif messages:
                    break
                else:
                    text = await asyncio.to_thread(click.prompt, "you", default="", show_default=False)
                    if not text.strip():
                        break

                checkpoint_id = new_prompt_id()
                created = await http.post("/api/checkpoints/create", json={
                    "projectName": project.name,
                    "promptId": checkpoint_id,
                    "userMessage": text,
                })
                if created.status_code != 200:
                    logger.warning("Checkpoint not created: %s", created.text)
                    checkpoint_id = None

                await ws.send(json.dumps(controller.compose_command(text, checkpoint_id=checkpoint_id)))

                while controller.is_loading:
                    frame = json.loads(await ws.recv())
                    for entry in controller.handle(frame):
                        echo(format_entry(entry))
                await _await_identity(ws, controller, echo)
