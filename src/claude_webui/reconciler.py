"""Session identity reconciliation.

A new conversation is shown immediately under a client-minted placeholder
id (``temp-...``). The CLI assigns the real session id later, and only
then does the placeholder get swapped for it, in place, everywhere it is
referenced. While a conversation is running its identity sits in the
protection set; background project snapshots that would change the
session in view are dropped until the conversation ends.

Slot states of the session in view::

    none -> placeholder -> pending_conversion -> protected_real -> real
                                       (resumed)  real -> protected_real
"""

import enum
import json
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from .client_store import PLACEHOLDER_SESSIONS_KEY, MemoryClientStore
from .core import (
    CONVERSATION_PREFIX,
    NEW_CONVERSATION_TITLE,
    NEW_SESSION_PREFIX,
    PLACEHOLDER_PREFIX,
    Conversation,
    Project,
    Session,
    iso,
    is_placeholder_id,
    parse_iso,
)
from .errors import ProjectNotFoundError, ReconciliationConflict

logger = logging.getLogger(__name__)

PLACEHOLDER_MAX_AGE_MS = 24 * 60 * 60 * 1000
PENDING_CONVERSION_TIMEOUT_MS = 5 * 60 * 1000
SUMMARY_MAX_CHARS = 50


def now_ms() -> int:
    return int(time.time() * 1000)


def new_placeholder_id(timestamp_ms: int | None = None) -> str:
    return f"{PLACEHOLDER_PREFIX}{timestamp_ms or now_ms()}-{uuid.uuid4().hex[:9]}"


class SlotState(str, enum.Enum):
    NONE = "none"
    PLACEHOLDER = "placeholder"
    PENDING_CONVERSION = "pending_conversion"
    REAL = "real"
    PROTECTED_REAL = "protected_real"


class SnapshotDecision(enum.Enum):
    APPLY = "apply"
    SUPPRESS = "suppress"


class ProtectionSet:
    """Identities shielded from background snapshot overwrites.

    Members are real session ids, placeholders, ``new-session-*`` markers
    for sends without a session, and ``conversation-*`` markers.
    """

    def __init__(self):
        self._ids: set[str] = set()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(set(self._ids))

    def add(self, session_id: str | None) -> None:
        if session_id:
            self._ids.add(session_id)

    def discard(self, session_id: str | None) -> None:
        if session_id:
            self._ids.discard(session_id)

    def replace(self, old: str, new: str) -> None:
        self._ids.discard(old)
        self._ids.add(new)

    def drop_temporary(self) -> None:
        """Remove every ``new-session-*`` marker."""
        self._ids = {i for i in self._ids if not i.startswith(NEW_SESSION_PREFIX)}

    def replace_temporary(self, real_id: str) -> None:
        """Swap every ``new-session-*`` marker for the real id."""
        self.drop_temporary()
        self._ids.add(real_id)

    def has_active_session(self, selected_id: str | None) -> bool:
        if selected_id and selected_id in self._ids:
            return True
        return any(i.startswith(NEW_SESSION_PREFIX) for i in self._ids)


class PlaceholderRegistry:
    """Placeholder session records kept in durable client storage."""

    def __init__(self, store: MemoryClientStore):
        self.store = store

    def records(self) -> dict[str, dict]:
        data = self.store.get(PLACEHOLDER_SESSIONS_KEY) or {}
        return dict(data) if isinstance(data, dict) else {}

    def _save(self, records: dict[str, dict]) -> None:
        self.store.set(PLACEHOLDER_SESSIONS_KEY, records)

    def get(self, session_id: str) -> dict | None:
        return self.records().get(session_id)

    def create(self, project_name: str, timestamp_ms: int | None = None) -> Session:
        timestamp_ms = timestamp_ms or now_ms()
        created = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        session = Session(
            id=new_placeholder_id(timestamp_ms),
            summary=NEW_CONVERSATION_TITLE,
            created_at=created,
            updated_at=created,
            last_activity=created,
            project_name=project_name,
            is_placeholder=True,
        )

        records = self.records()
        records[session.id] = {
            **session.to_dict(),
            "projectName": project_name,
            "createdAt": timestamp_ms,
        }
        self._save(records)
        logger.info("Created placeholder session %s for project %s", session.id, project_name)
        return session

    def mark_pending(self, session_id: str, timestamp_ms: int | None = None) -> bool:
        records = self.records()
        record = records.get(session_id)
        if record is None:
            return False
        record["pendingConversion"] = True
        record["pendingConversionTime"] = timestamp_ms or now_ms()
        self._save(records)
        logger.debug("Placeholder %s pending conversion", session_id)
        return True

    def remove(self, session_id: str) -> bool:
        records = self.records()
        if records.pop(session_id, None) is None:
            return False
        self._save(records)
        return True

    def prune(self, project_names: set[str], timestamp_ms: int | None = None) -> list[str]:
        """Drop records that are too old, orphaned, or stuck pending conversion."""
        now = timestamp_ms or now_ms()
        records = self.records()
        kept = {}
        removed = []

        for session_id, record in records.items():
            if now - record.get("createdAt", 0) >= PLACEHOLDER_MAX_AGE_MS:
                logger.info("Pruning old placeholder session %s", session_id)
            elif record.get("projectName") not in project_names:
                logger.info("Pruning placeholder %s of deleted project %s", session_id, record.get("projectName"))
            elif record.get("pendingConversion") and now - record.get("pendingConversionTime", 0) > PENDING_CONVERSION_TIMEOUT_MS:
                logger.info("Pruning expired pending conversion %s", session_id)
            else:
                kept[session_id] = record
                continue
            removed.append(session_id)

        if removed:
            self._save(kept)
        return removed

    def apply(self, projects: list[Project], timestamp_ms: int | None = None) -> list[Project]:
        """Prepend each project's valid placeholders to its session list.

        Placeholders pending conversion are kept in storage for matching
        but are not shown again.
        """
        self.prune({p.name for p in projects}, timestamp_ms)

        by_project: dict[str, list[Session]] = {}
        for session_id, record in self.records().items():
            if record.get("pendingConversion"):
                continue
            session = Session.from_dict({**record, "id": session_id})
            session.is_placeholder = True
            by_project.setdefault(record.get("projectName"), []).append(session)

        result = []
        for project in projects:
            placeholders = [
                s for s in by_project.get(project.name, [])
                if all(existing.id != s.id for existing in project.sessions)
            ]
            if placeholders:
                project = project.with_sessions(
                    placeholders + project.sessions,
                    total=project.total_sessions + len(placeholders),
                )
            result.append(project)
        return result


class RecentMessageCache:
    """Keys of recently processed inbound messages.

    Trimmed to the newest ``keep`` keys once it grows past ``max_size``.
    """

    def __init__(self, max_size: int = 100, keep: int = 50):
        self.max_size = max_size
        self.keep = keep
        self._keys: dict[str, None] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    @staticmethod
    def key_for(message: dict) -> str:
        return f"{message.get('type')}-{message.get('timestamp')}-{json.dumps(message, default=str)[:100]}"

    def check_and_add(self, message: dict) -> bool:
        """Record ``message``; return False if it was already processed."""
        key = self.key_for(message)
        if key in self._keys:
            return False
        self._keys[key] = None
        if len(self._keys) > self.max_size:
            for old in list(self._keys)[:-self.keep]:
                del self._keys[old]
        return True


def is_update_additive(
    current: list[Project],
    updated: list[Project],
    selected_project_name: str | None,
    selected_session: Session | None,
) -> bool:
    """Whether ``updated`` leaves the selected session exactly as it is."""
    if not selected_project_name or selected_session is None:
        return True

    if selected_session.is_placeholder or is_placeholder_id(selected_session.id):
        return True

    before = _find_session(current, selected_project_name, selected_session.id)
    after = _find_session(updated, selected_project_name, selected_session.id)
    if before is None or after is None:
        return False

    return (
        before.id == after.id
        and before.title == after.title
        and iso(before.created_at) == iso(after.created_at)
        and iso(before.updated_at) == iso(after.updated_at)
    )


def _find_project(projects: list[Project], name: str | None) -> Project | None:
    for project in projects:
        if project.name == name:
            return project
    return None


def _find_session(projects: list[Project], project_name: str, session_id: str) -> Session | None:
    project = _find_project(projects, project_name)
    if project is None:
        return None
    for session in project.sessions:
        if session.id == session_id:
            return session
    return None


def _summarize(text: str) -> str:
    return text[:SUMMARY_MAX_CHARS] + "..." if len(text) > SUMMARY_MAX_CHARS else text


class SessionReconciler:
    """Client-side view state: projects, selection and session identities."""

    def __init__(self, store: MemoryClientStore | None = None):
        self.store = store if store is not None else MemoryClientStore()
        self.placeholders = PlaceholderRegistry(self.store)
        self.protection = ProtectionSet()
        self.projects: list[Project] = []
        self.selected_project_name: str | None = None
        self.selected_session: Session | None = None
        self.selected_conversation: Conversation | None = None
        self.current_session_id: str | None = None
        self.last_sent_session_id: str | None = None
        self.active_marker: str | None = None
        self._assigned: set[str] = set()

    # ── Selection ────────────────────────────────────────────────

    @property
    def selected_project(self) -> Project | None:
        return _find_project(self.projects, self.selected_project_name)

    @property
    def slot_state(self) -> SlotState:
        session = self.selected_session
        if session is None:
            return SlotState.NONE
        if session.is_placeholder or is_placeholder_id(session.id):
            record = self.placeholders.get(session.id)
            if record and record.get("pendingConversion"):
                return SlotState.PENDING_CONVERSION
            return SlotState.PLACEHOLDER
        if session.id in self.protection:
            return SlotState.PROTECTED_REAL
        return SlotState.REAL

    def load_projects(self, projects: list[Project]) -> None:
        """Replace the project list unconditionally (initial fetch, manual refresh)."""
        self.projects = self.placeholders.apply(projects)
        self._refresh_selection()

    def select_project(self, project_name: str | None) -> None:
        self.selected_project_name = project_name
        self.selected_session = None
        self.selected_conversation = None
        self.current_session_id = None
        self.last_sent_session_id = None

    def select_session(self, session: Session | None) -> None:
        self.selected_session = session
        self.selected_conversation = None
        self.current_session_id = session.id if session else None
        self.last_sent_session_id = None
        if session is not None:
            if session.project_name and _find_project(self.projects, session.project_name):
                self.selected_project_name = session.project_name
            if session.is_placeholder:
                self.protection.add(session.id)

    def select_conversation(self, conversation: Conversation, target_session_id: str | None = None) -> None:
        self.selected_conversation = conversation
        self.selected_session = None
        self.current_session_id = target_session_id or conversation.most_recent_session().id
        self.last_sent_session_id = None

    @property
    def active_session_id(self) -> str | None:
        return self.current_session_id

    def has_active_session(self) -> bool:
        selected = self.selected_session.id if self.selected_session else None
        return self.protection.has_active_session(selected)

    # ── Conversation lifecycle ───────────────────────────────────

    def start_new_conversation(self, project_name: str, timestamp_ms: int | None = None) -> Session:
        project = self.selected_project if self.selected_project_name == project_name else None
        project = project or _find_project(self.projects, project_name)
        if project is None:
            raise ProjectNotFoundError(project_name)

        session = self.placeholders.create(project_name, timestamp_ms)
        updated = project.with_sessions([session] + project.sessions, total=project.total_sessions + 1)
        self.projects = [updated if p.name == project_name else p for p in self.projects]

        self.selected_project_name = project_name
        self.select_session(session)
        return session

    def begin_send(self, timestamp_ms: int | None = None) -> tuple[str | None, bool]:
        """Protect the active identity before a command is dispatched.

        Returns the session id to send (None for a brand-new session) and
        whether the bridge should try to resume it.
        """
        session_id = self.active_session_id
        if self.selected_conversation is not None:
            marker = f"{CONVERSATION_PREFIX}{self.selected_conversation.id}"
        else:
            marker = session_id or f"{NEW_SESSION_PREFIX}{timestamp_ms or now_ms()}"

        self.protection.add(marker)
        self.active_marker = marker
        self.last_sent_session_id = session_id

        if is_placeholder_id(session_id):
            self.placeholders.mark_pending(session_id, timestamp_ms)

        return session_id, bool(session_id)

    def on_identity_assigned(self, real_id: str, replaces_temporary: str | None = None) -> bool:
        """Substitute the real session id for the placeholder or marker.

        Returns False if ``real_id`` was already assigned; repeats change
        nothing. An id that arrives after the conversation has ended
        (recovered from disk) is swapped in without being protected.
        """
        if not real_id or real_id in self._assigned:
            return False
        self._assigned.add(real_id)

        in_flight = self.active_marker is not None
        placeholder = replaces_temporary
        if not is_placeholder_id(placeholder):
            placeholder = next(
                (i for i in (self.last_sent_session_id, self.current_session_id) if is_placeholder_id(i)),
                None,
            )

        if placeholder:
            self.placeholders.remove(placeholder)
            if in_flight:
                self.protection.replace(placeholder, real_id)
            else:
                self.protection.discard(placeholder)
            self._replace_session_id(placeholder, real_id)
            logger.info("Replaced placeholder session %s with %s", placeholder, real_id)
        elif in_flight:
            self.protection.replace_temporary(real_id)
        else:
            self.protection.drop_temporary()

        if in_flight and (is_placeholder_id(self.active_marker) or self.active_marker.startswith(NEW_SESSION_PREFIX)):
            self.active_marker = real_id
        if self.current_session_id is None or is_placeholder_id(self.current_session_id):
            self.current_session_id = real_id
        self.last_sent_session_id = None
        return True

    def _replace_session_id(self, old: str, new: str) -> None:
        def swap(sessions: list[Session]) -> list[Session]:
            if any(s.id == new for s in sessions):
                return [s for s in sessions if s.id != old]
            return [replace(s, id=new, is_placeholder=False) if s.id == old else s for s in sessions]

        self.projects = [
            p.with_sessions(swap(p.sessions)) if any(s.id == old for s in p.sessions) else p
            for p in self.projects
        ]
        if self.selected_session is not None and self.selected_session.id == old:
            self.selected_session = replace(self.selected_session, id=new, is_placeholder=False)
        if self.selected_conversation is not None:
            self.selected_conversation.sessions = swap(self.selected_conversation.sessions)

    def on_conversation_terminal(self) -> None:
        """Release protection after claude-complete or session-aborted."""
        if self.selected_conversation is not None:
            self.protection.discard(f"{CONVERSATION_PREFIX}{self.selected_conversation.id}")
        self.protection.discard(self.active_marker)
        self.protection.discard(self.active_session_id)
        self.active_marker = None
        self.last_sent_session_id = None

    # ── Background snapshots ─────────────────────────────────────

    def evaluate_background_snapshot(self, projects: list[Project]) -> SnapshotDecision:
        if not self.has_active_session():
            return SnapshotDecision.APPLY
        if is_update_additive(self.projects, projects, self.selected_project_name, self.selected_session):
            return SnapshotDecision.APPLY
        return SnapshotDecision.SUPPRESS

    def apply_snapshot(self, projects: list[Project], timestamp_ms: int | None = None) -> bool:
        """Apply a pushed snapshot unless it would disturb the protected session."""
        if self.evaluate_background_snapshot(projects) is SnapshotDecision.SUPPRESS:
            logger.debug("Dropping snapshot: %s", ReconciliationConflict(self.selected_session.id))
            return False

        merged = self.placeholders.apply(projects, timestamp_ms)

        # The placeholder in view stays listed until its real id arrives.
        selected = self.selected_session
        if selected is not None and selected.is_placeholder:
            merged = [
                p.with_sessions([selected] + p.sessions, total=p.total_sessions + 1)
                if p.name == self.selected_project_name and all(s.id != selected.id for s in p.sessions)
                else p
                for p in merged
            ]

        self.projects = merged
        self._refresh_selection()
        return True

    def _refresh_selection(self) -> None:
        project = self.selected_project
        session = self.selected_session
        if project is None or session is None:
            return
        fresh = next((s for s in project.sessions if s.id == session.id), None)
        if fresh is None:
            logger.info("Selected session %s no longer exists", session.id)
            self.selected_session = None
            self.current_session_id = None
        else:
            self.selected_session = fresh

    # ── User edits ───────────────────────────────────────────────

    def delete_session(self, session_id: str) -> None:
        self.placeholders.remove(session_id)
        if self.selected_session is not None and self.selected_session.id == session_id:
            self.selected_session = None
            self.current_session_id = None
        self.protection.discard(session_id)
        self.projects = [
            p.with_sessions(
                [s for s in p.sessions if s.id != session_id],
                total=max(0, p.total_sessions - 1),
            ) if any(s.id == session_id for s in p.sessions) else p
            for p in self.projects
        ]

    def delete_project(self, project_name: str) -> None:
        if self.selected_project_name == project_name:
            self.select_project(None)
        self.projects = [p for p in self.projects if p.name != project_name]

    def update_session_activity(
        self,
        session_id: str,
        last_activity: datetime | str | None = None,
        message_content: str | None = None,
        increment: bool = True,
    ) -> None:
        """Reflect a just-sent message in the sidebar without a refetch."""
        project = self.selected_project
        if not session_id or project is None:
            return

        activity = parse_iso(last_activity) or datetime.now(timezone.utc)
        sessions = []
        for session in project.sessions:
            if session.id == session_id:
                session = replace(session, last_activity=activity)
                if increment:
                    session.message_count += 1
                if message_content and (
                    not session.summary
                    or session.summary == NEW_CONVERSATION_TITLE
                    or session.is_placeholder
                ):
                    session.summary = _summarize(message_content)
            sessions.append(session)

        updated = project.with_sessions(sessions)
        self.projects = [updated if p.name == project.name else p for p in self.projects]
