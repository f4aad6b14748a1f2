"""Core data models for claude-webui.

Projects and sessions travel to clients as JSON (camelCase keys, ISO
timestamps); ``to_dict``/``from_dict`` are the only place that mapping
lives.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import ClassVar, Optional, Union

from .errors import InvalidProjectNameError

PLACEHOLDER_PREFIX = "temp-"
NEW_SESSION_PREFIX = "new-session-"
CONVERSATION_PREFIX = "conversation-"
DEFAULT_SESSION_SUMMARY = "New Session"
NEW_CONVERSATION_TITLE = "New Conversation"
COMMAND_MARKER = "<command-name>"


def is_placeholder_id(session_id: str | None) -> bool:
    return bool(session_id) and session_id.startswith(PLACEHOLDER_PREFIX)


def check_project_name(project_name: str) -> str:
    """Return ``project_name`` if it names a single entry under a base directory."""
    if not project_name or project_name in (".", "..") or Path(project_name).name != project_name:
        raise InvalidProjectNameError(project_name)
    return project_name


def parse_iso(value) -> datetime | None:
    """Parse an ISO 8601 datetime string (accepts a trailing Z)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def epoch() -> datetime:
    """Return a datetime at epoch for sorting fallback."""
    return datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Session:
    """One conversational thread with the assistant."""

    id: str
    summary: str = DEFAULT_SESSION_SUMMARY
    message_count: int = 0
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cwd: str = ""
    project_name: str = ""
    is_placeholder: bool = False

    @property
    def title(self) -> str:
        return self.summary

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "summary": self.summary,
            "title": self.summary,
            "messageCount": self.message_count,
            "lastActivity": iso(self.last_activity),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "cwd": self.cwd,
            "projectName": self.project_name,
        }
        if self.is_placeholder:
            data["isPlaceholder"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            summary=data.get("summary") or data.get("title") or DEFAULT_SESSION_SUMMARY,
            message_count=data.get("messageCount", 0),
            last_activity=parse_iso(data.get("lastActivity")),
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
            cwd=data.get("cwd", ""),
            project_name=data.get("projectName", ""),
            is_placeholder=bool(data.get("isPlaceholder")),
        )


@dataclass
class SessionPage:
    """A page of sessions as returned by the log reader."""

    sessions: list[Session]
    total: int
    has_more: bool
    offset: int = 0
    limit: int = 5

    def to_dict(self) -> dict:
        return {
            "sessions": [s.to_dict() for s in self.sessions],
            "total": self.total,
            "hasMore": self.has_more,
            "offset": self.offset,
            "limit": self.limit,
        }


@dataclass
class Project:
    """A workspace directory with its sessions."""

    name: str  # encoded path, e.g. "-Users-alice-dev-app"
    path: str
    display_name: str
    is_custom_name: bool = False
    is_manually_added: bool = False
    sessions: list[Session] = field(default_factory=list)
    total_sessions: int = 0
    has_more: bool = False

    @property
    def full_path(self) -> str:
        return self.path

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "fullPath": self.path,
            "displayName": self.display_name,
            "isCustomName": self.is_custom_name,
            "isManuallyAdded": self.is_manually_added,
            "sessions": [s.to_dict() for s in self.sessions],
            "sessionMeta": {"hasMore": self.has_more, "total": self.total_sessions},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        meta = data.get("sessionMeta") or {}
        sessions = [Session.from_dict(s) for s in data.get("sessions") or []]
        return cls(
            name=data["name"],
            path=data.get("fullPath") or data.get("path", ""),
            display_name=data.get("displayName", data["name"]),
            is_custom_name=bool(data.get("isCustomName")),
            is_manually_added=bool(data.get("isManuallyAdded")),
            sessions=sessions,
            total_sessions=meta.get("total", len(sessions)),
            has_more=bool(meta.get("hasMore")),
        )

    def with_sessions(self, sessions: list[Session], total: int | None = None) -> "Project":
        return replace(
            self,
            sessions=sessions,
            total_sessions=self.total_sessions if total is None else total,
        )


@dataclass
class Conversation:
    """Sessions grouped by a shared summary. Derived, never persisted."""

    id: str
    title: str
    sessions: list[Session]
    last_activity: Optional[datetime] = None

    def most_recent_session(self) -> Session:
        return max(
            self.sessions,
            key=lambda s: s.last_activity or s.updated_at or epoch(),
        )


@dataclass
class Checkpoint:
    """Client-side link between an outgoing user message and a server checkpoint."""

    checkpoint_id: str
    content: str
    timestamp: int  # epoch milliseconds

    def key(self) -> str:
        return checkpoint_key(self.content, self.timestamp)

    def to_dict(self) -> dict:
        return {
            "checkpointId": self.checkpoint_id,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            checkpoint_id=data["checkpointId"],
            content=data.get("content", ""),
            timestamp=int(data.get("timestamp", 0)),
        )


def checkpoint_key(content: str, timestamp_ms: int) -> str:
    return f"{content[:50]}-{timestamp_ms}"


# ── Transcript entries ───────────────────────────────────────────


@dataclass
class ToolResult:
    content: object
    is_error: bool = False
    timestamp: Optional[datetime] = None


@dataclass
class _Entry:
    content: str
    timestamp: datetime
    session_id: Optional[str] = None
    is_pending: bool = False
    persisted: bool = True

    kind: ClassVar[str] = ""

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "content": self.content,
            "timestamp": iso(self.timestamp),
            "sessionId": self.session_id,
            "isPending": self.is_pending,
            "persisted": self.persisted,
        }


@dataclass
class UserMessage(_Entry):
    checkpoint_id: Optional[str] = None

    kind: ClassVar[str] = "user"

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.checkpoint_id:
            data["checkpointId"] = self.checkpoint_id
        return data


@dataclass
class AssistantText(_Entry):
    kind: ClassVar[str] = "assistant"


@dataclass
class ToolUse(_Entry):
    tool_name: str = ""
    tool_input: str = ""
    tool_id: str = ""
    tool_result: Optional[ToolResult] = None

    kind: ClassVar[str] = "tool_use"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "toolId": self.tool_id,
            "toolResult": None if self.tool_result is None else {
                "content": self.tool_result.content,
                "isError": self.tool_result.is_error,
                "timestamp": iso(self.tool_result.timestamp),
            },
        })
        return data


@dataclass
class ToolResultMessage(_Entry):
    """A tool result that arrived without a matching tool-use entry."""

    tool_id: str = ""
    is_error: bool = False

    kind: ClassVar[str] = "tool_result"


@dataclass
class InteractivePrompt(_Entry):
    kind: ClassVar[str] = "interactive_prompt"


@dataclass
class SystemNotice(_Entry):
    kind: ClassVar[str] = "system"


@dataclass
class ErrorMessage(_Entry):
    kind: ClassVar[str] = "error"


ChatMessage = Union[
    UserMessage,
    AssistantText,
    ToolUse,
    ToolResultMessage,
    InteractivePrompt,
    SystemNotice,
    ErrorMessage,
]
