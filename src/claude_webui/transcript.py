"""Chat transcript assembly.

Turns raw session log entries and live bridge events into the ordered
``ChatMessage`` list a client displays, and re-links client checkpoints to
historical user messages.
"""

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone

from .core import (
    COMMAND_MARKER,
    DEFAULT_SESSION_SUMMARY,
    NEW_CONVERSATION_TITLE,
    AssistantText,
    ChatMessage,
    Checkpoint,
    Conversation,
    ErrorMessage,
    InteractivePrompt,
    Session,
    SystemNotice,
    ToolResult,
    ToolResultMessage,
    ToolUse,
    UserMessage,
    checkpoint_key,
    epoch,
    parse_iso,
)

logger = logging.getLogger(__name__)

CHECKPOINT_TOLERANCE_MS = 5000
INTERRUPTED_NOTICE = "Session interrupted by user."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _dump_input(value) -> str:
    return json.dumps(value, separators=(",", ":"))


# ── Log conversion ───────────────────────────────────────────────


def index_tool_results(entries: list[dict]) -> dict[str, ToolResult]:
    """Map tool_use_id to its result, from user-role tool_result blocks."""
    results = {}
    for entry in entries:
        message = entry.get("message")
        if not isinstance(message, dict) or message.get("role") != "user":
            continue
        content = message.get("content")
        if not isinstance(content, list):
            continue
        timestamp = parse_iso(entry.get("timestamp")) or _now()
        for part in content:
            if isinstance(part, dict) and part.get("type") == "tool_result":
                results[part.get("tool_use_id")] = ToolResult(
                    content=part.get("content"),
                    is_error=bool(part.get("is_error")),
                    timestamp=timestamp,
                )
    return results


def convert(entries: list[dict]) -> list[ChatMessage]:
    """Convert raw log entries to transcript entries, oldest first.

    Tool results are not emitted on their own; each is attached to the
    tool-use entry that requested it.
    """
    results = index_tool_results(entries)
    converted: list[ChatMessage] = []

    for entry in entries:
        message = entry.get("message")
        if not isinstance(message, dict) or not message.get("content"):
            continue

        timestamp = parse_iso(entry.get("timestamp")) or _now()
        session_id = entry.get("sessionId")
        role = message.get("role")

        if role == "user":
            text = _user_text(message["content"])
            if text and not text.startswith(COMMAND_MARKER):
                converted.append(UserMessage(content=text, timestamp=timestamp, session_id=session_id))
        elif role == "assistant":
            converted.extend(_assistant_entries(message["content"], timestamp, session_id, results))

    return converted


def _user_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def _assistant_entries(content, timestamp, session_id, results) -> list[ChatMessage]:
    if isinstance(content, str):
        return [AssistantText(content=content, timestamp=timestamp, session_id=session_id)]
    if not isinstance(content, list):
        return []

    entries: list[ChatMessage] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        kind = part.get("type")
        if kind == "text":
            entries.append(AssistantText(content=part.get("text", ""), timestamp=timestamp, session_id=session_id))
        elif kind == "tool_use":
            entries.append(ToolUse(
                content="",
                timestamp=timestamp,
                session_id=session_id,
                tool_name=part.get("name", ""),
                tool_input=_dump_input(part.get("input")),
                tool_id=part.get("id", ""),
                tool_result=results.get(part.get("id")),
            ))
    return entries


# ── Checkpoint association ───────────────────────────────────────


def match_checkpoint(
    content: str,
    timestamp: datetime,
    checkpoints: dict[str, Checkpoint],
) -> Checkpoint | None:
    """Find the checkpoint recorded for a user message.

    Tried in order: exact ``content[:50]-<ms>`` key, same content within
    5 seconds, same content at any time. The log stores user input with a
    trailing newline the client never sent, so one is stripped first.
    """
    clean = content[:-1] if content.endswith("\n") else content
    ms = _to_ms(timestamp)

    exact = checkpoints.get(checkpoint_key(clean, ms))
    if exact is not None:
        return exact

    candidates = list(checkpoints.values())
    for checkpoint in candidates:
        if checkpoint.content == clean and abs(checkpoint.timestamp - ms) < CHECKPOINT_TOLERANCE_MS:
            return checkpoint

    for checkpoint in candidates:
        if checkpoint.content == clean:
            return checkpoint

    return None


def attach_checkpoints(messages: list[ChatMessage], checkpoints: dict[str, Checkpoint]) -> list[ChatMessage]:
    if not checkpoints:
        return list(messages)

    attached = []
    for message in messages:
        if isinstance(message, UserMessage):
            checkpoint = match_checkpoint(message.content, message.timestamp, checkpoints)
            if checkpoint is not None:
                message = replace(message, checkpoint_id=checkpoint.checkpoint_id)
            else:
                logger.debug("No checkpoint for message %r", message.content[:30])
        attached.append(message)
    return attached


# ── Conversations ────────────────────────────────────────────────


def group_conversations(sessions: list[Session]) -> list[Conversation]:
    """Group sessions sharing a summary, most recently active first."""
    conversations = []
    seen = set()

    for session in sessions:
        if session.id in seen:
            continue
        seen.add(session.id)

        conversation = Conversation(
            id=f"conversation_{session.id}",
            title=session.summary or "Untitled",
            sessions=[session],
            last_activity=session.last_activity or session.updated_at,
        )

        if session.summary not in (DEFAULT_SESSION_SUMMARY, NEW_CONVERSATION_TITLE):
            for other in sessions:
                if other.id in seen or other.summary != session.summary:
                    continue
                seen.add(other.id)
                conversation.sessions.append(other)
                activity = other.last_activity or other.updated_at
                if activity and (conversation.last_activity is None or activity > conversation.last_activity):
                    conversation.last_activity = activity

        conversations.append(conversation)

    conversations.sort(key=lambda c: c.last_activity or epoch(), reverse=True)
    return conversations


# ── Live transcript ──────────────────────────────────────────────


class Transcript:
    """The ordered transcript of the session in view.

    Live bridge events are appended as they arrive; history is only
    reloaded when the view switches to another session.
    """

    def __init__(self):
        self.messages: list[ChatMessage] = []

    def __len__(self) -> int:
        return len(self.messages)

    def clear(self) -> None:
        self.messages = []

    def load_history(self, entries: list[dict], checkpoints: dict[str, Checkpoint] | None = None) -> None:
        self.messages = attach_checkpoints(convert(entries), checkpoints or {})

    def add_user_message(self, content: str, session_id: str | None, timestamp: datetime | None = None) -> UserMessage:
        message = UserMessage(
            content=content,
            timestamp=timestamp or _now(),
            session_id=session_id,
            is_pending=not session_id,
            persisted=False,
        )
        self.messages.append(message)
        return message

    def append_live(self, event: dict, session_id: str | None) -> list[ChatMessage]:
        """Append the entries carried by one bridge event and return them."""
        kind = event.get("type")
        now = _now()
        added: list[ChatMessage] = []

        if kind == "claude-response":
            added = self._response_entries(event.get("data") or {}, session_id, now)
        elif kind == "claude-output":
            added = [AssistantText(content=str(event.get("data", "")), timestamp=now, session_id=session_id)]
        elif kind == "claude-interactive-prompt":
            added = [InteractivePrompt(content=str(event.get("data", "")), timestamp=now, session_id=session_id)]
        elif kind == "claude-error":
            added = [ErrorMessage(content=f"Error: {event.get('error')}", timestamp=now, session_id=session_id)]
        elif kind == "session-aborted":
            added = [SystemNotice(content=INTERRUPTED_NOTICE, timestamp=now, session_id=session_id)]

        self.messages.extend(added)
        return added

    def _response_entries(self, data, session_id, now) -> list[ChatMessage]:
        if not isinstance(data, dict):
            return []
        message = data.get("message") if isinstance(data.get("message"), dict) else data
        content = message.get("content")
        role = message.get("role")

        if role == "user":
            if isinstance(content, list):
                return self._attach_live_results(content, session_id, now)
            return []

        if isinstance(content, str):
            if content.strip():
                return [AssistantText(content=content, timestamp=now, session_id=session_id)]
            return []
        if not isinstance(content, list):
            return []

        entries: list[ChatMessage] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "tool_use":
                entries.append(ToolUse(
                    content="",
                    timestamp=now,
                    session_id=session_id,
                    tool_name=part.get("name", ""),
                    tool_input=_dump_input(part.get("input")),
                    tool_id=part.get("id", ""),
                ))
            elif part.get("type") == "text" and (part.get("text") or "").strip():
                entries.append(AssistantText(content=part["text"], timestamp=now, session_id=session_id))
        return entries

    def _attach_live_results(self, content: list, session_id, now) -> list[ChatMessage]:
        orphans: list[ChatMessage] = []
        for part in content:
            if not isinstance(part, dict) or part.get("type") != "tool_result":
                continue
            result = ToolResult(content=part.get("content"), is_error=bool(part.get("is_error")), timestamp=now)
            tool_use = self.find_tool_use(part.get("tool_use_id"))
            if tool_use is not None:
                tool_use.tool_result = result
            else:
                orphans.append(ToolResultMessage(
                    content=str(part.get("content", "")),
                    timestamp=now,
                    session_id=session_id,
                    tool_id=part.get("tool_use_id", ""),
                    is_error=result.is_error,
                ))
        return orphans

    def find_tool_use(self, tool_id: str | None) -> ToolUse | None:
        for message in reversed(self.messages):
            if isinstance(message, ToolUse) and message.tool_id == tool_id:
                return message
        return None

    def adopt_session_id(self, session_id: str) -> None:
        """Stamp every entry with the session's real identity."""
        for message in self.messages:
            message.session_id = session_id
            message.is_pending = False
            message.persisted = True

    def set_checkpoint(self, message: UserMessage, checkpoint_id: str) -> None:
        message.checkpoint_id = checkpoint_id

    def revert_to(self, checkpoint_id: str, restored_files: int) -> None:
        """Drop entries after the checkpointed message and note the restore."""
        index = next(
            (i for i, m in enumerate(self.messages)
             if isinstance(m, UserMessage) and m.checkpoint_id == checkpoint_id),
            None,
        )
        if index is None:
            notice = f"Checkpoint restored: {restored_files} files restored"
        else:
            self.messages = self.messages[:index + 1]
            notice = f"Reverted to checkpoint: {restored_files} files restored"
        self.messages.append(SystemNotice(content=notice, timestamp=_now()))

    def to_dicts(self) -> list[dict]:
        return [m.to_dict() for m in self.messages]
