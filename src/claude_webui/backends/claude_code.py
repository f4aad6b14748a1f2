"""Claude Code session log backend.

Reads ~/.claude/projects/<encoded-project>/<session>.jsonl files. The CLI
appends one JSON object per line; a file usually holds one session but may
carry entries of several (resumed sessions write into the newest file).

Entries used here:
- any entry with "sessionId": counted towards that session
- "summary" entries: session title
- entries whose message.role == "user" with string content: fallback title
- "cwd" / "timestamp": working directory and activity tracking
"""

import json
import logging
import os
from collections.abc import Iterator
from pathlib import Path

from ..config import get_projects_path, load_project_config
from ..core import (
    COMMAND_MARKER,
    DEFAULT_SESSION_SUMMARY,
    Session,
    SessionPage,
    check_project_name,
    epoch,
    is_placeholder_id,
    parse_iso,
)
from ..errors import ParseError, SessionNotFoundError
from ..provider import SessionLogProvider

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 50
# A recent cwd wins over the most frequent one if it has this share of the top count.
RECENT_CWD_SHARE = 0.25


def encode_project_path(path: str) -> str:
    """Encode an absolute path the way the CLI names project directories.

    /Users/alice/My App -> -Users-alice-My-App
    """
    name = path[1:] if path.startswith("/") else path
    name = "-".join(name.replace("/", "-").split())
    return "-" + name


def smart_decode_project_name(project_name: str) -> str:
    """Best-effort reconstruction of a path from an encoded project name.

    The encoding is lossy (both "/" and " " become "-"), so this guesses:
    single letters are path segments, a lone capitalised word is a segment,
    two adjacent capitalised words form one "Two Words" directory (with 3+
    only the last two are paired), and runs of lowercase words are joined
    back with hyphens.
    """
    working = project_name[1:] if project_name.startswith("-") else project_name
    segments = working.split("-")
    result = []
    i = 0

    while i < len(segments):
        segment = segments[i]

        if len(segment) == 1:
            result.append(segment)
            i += 1
            continue

        if len(segment) > 1 and "A" <= segment[0] <= "Z":
            group = [segment]
            j = i + 1
            while j < len(segments) and len(segments[j]) > 1 and "A" <= segments[j][0] <= "Z":
                group.append(segments[j])
                j += 1

            if len(group) == 1:
                result.append(group[0])
            elif len(group) == 2:
                result.append(f"{group[0]} {group[1]}")
            else:
                result.extend(group[:-2])
                result.append(f"{group[-2]} {group[-1]}")
            i += len(group)
        else:
            group = [segment]
            while (
                i + 1 < len(segments)
                and len(segments[i + 1]) > 1
                and "a" <= segments[i + 1][0] <= "z"
            ):
                i += 1
                group.append(segments[i])
            result.append("-".join(group))
            i += 1

    return "/" + "/".join(result)


class ClaudeCodeLogReader(SessionLogProvider):
    """Session log reader for the Claude Code CLI."""

    name = "claude_code"

    def __init__(self):
        self._path_cache: dict[str, str] = {}

    def get_base_path(self) -> Path:
        return get_projects_path()

    def project_dir(self, project_name: str) -> Path:
        return self.get_base_path() / check_project_name(project_name)

    def list_project_names(self) -> list[str]:
        base = self.get_base_path()
        if not base.is_dir():
            return []
        return sorted(d.name for d in base.iterdir() if d.is_dir())

    # ── Sessions ─────────────────────────────────────────────────────

    def list_sessions(self, project_name: str, limit: int = 5, offset: int = 0) -> SessionPage:
        files = self._jsonl_files(project_name)
        if not files:
            return SessionPage(sessions=[], total=0, has_more=False, offset=offset, limit=limit)

        # Newest files first: the early exit below relies on mtime tracking activity.
        files.sort(key=_mtime, reverse=True)

        found: dict[str, Session] = {}
        processed = 0
        for path in files:
            for session in self._parse_file_sessions(path, project_name):
                found.setdefault(session.id, session)
            processed += 1
            if len(found) >= (limit + offset) * 2 and processed >= min(3, len(files)):
                break

        ordered = sorted(found.values(), key=lambda s: s.last_activity or epoch(), reverse=True)
        total = len(ordered)
        return SessionPage(
            sessions=ordered[offset:offset + limit],
            total=total,
            has_more=offset + limit < total,
            offset=offset,
            limit=limit,
        )

    def list_messages(self, project_name: str, session_id: str) -> list[dict]:
        if is_placeholder_id(session_id):
            return []

        messages = []
        for path in self._jsonl_files(project_name):
            for entry in _iter_entries(path):
                if entry.get("sessionId") == session_id:
                    messages.append(entry)

        if not messages:
            logger.debug("No messages for session %s in %s", session_id, project_name)

        messages.sort(key=lambda e: parse_iso(e.get("timestamp")) or epoch())
        return messages

    def _parse_file_sessions(self, path: Path, project_name: str) -> list[Session]:
        sessions: dict[str, Session] = {}

        for entry in _iter_entries(path):
            session_id = entry.get("sessionId")
            if not session_id:
                continue

            session = sessions.get(session_id)
            if session is None:
                session = Session(
                    id=session_id,
                    cwd=entry.get("cwd") or "",
                    project_name=project_name,
                )
                sessions[session_id] = session

            if entry.get("type") == "summary" and entry.get("summary"):
                session.summary = entry["summary"]
            elif session.summary == DEFAULT_SESSION_SUMMARY:
                title = _user_title(entry)
                if title:
                    session.summary = title

            session.message_count += 1

            timestamp = parse_iso(entry.get("timestamp"))
            if timestamp:
                if session.created_at is None:
                    session.created_at = timestamp
                session.last_activity = timestamp
                session.updated_at = timestamp

        return list(sessions.values())

    # ── Project path resolution ──────────────────────────────────────

    def resolve_project_path(self, project_name: str) -> str:
        cached = self._path_cache.get(project_name)
        if cached is not None:
            return cached

        config = load_project_config()
        original = (config.get(project_name) or {}).get("originalPath")
        if original:
            resolved = original
        else:
            resolved = self._path_from_cwd(project_name) or smart_decode_project_name(project_name)

        self._path_cache[project_name] = resolved
        return resolved

    def _path_from_cwd(self, project_name: str) -> str | None:
        counts: dict[str, int] = {}
        latest_ts = epoch()
        latest_cwd = None

        for path in self._jsonl_files(project_name):
            for entry in _iter_entries(path):
                cwd = entry.get("cwd")
                if not cwd:
                    continue
                counts[cwd] = counts.get(cwd, 0) + 1
                timestamp = parse_iso(entry.get("timestamp")) or epoch()
                if timestamp > latest_ts or latest_cwd is None:
                    latest_ts = timestamp
                    latest_cwd = cwd

        if not counts:
            return None
        if len(counts) == 1:
            return next(iter(counts))

        max_count = max(counts.values())
        if counts.get(latest_cwd, 0) >= max_count * RECENT_CWD_SHARE:
            return latest_cwd
        return next(cwd for cwd, count in counts.items() if count == max_count)

    def clear_cache(self) -> None:
        self._path_cache.clear()

    # ── Mutations ────────────────────────────────────────────────────

    def delete_session(self, project_name: str, session_id: str) -> bool:
        if is_placeholder_id(session_id):
            # Placeholders only exist client-side.
            return True

        project_dir = self.project_dir(project_name)
        if not project_dir.is_dir():
            raise SessionNotFoundError(project_name, session_id)

        for path in self._jsonl_files(project_name):
            lines = _read_lines(path)
            kept = [line for line in lines if _line_session_id(line) != session_id]
            if len(kept) != len(lines):
                _rewrite_atomically(path, kept)
                logger.info("Deleted session %s from %s", session_id, path)
                return True

        raise SessionNotFoundError(project_name, session_id)

    def delete_all_sessions(self, project_name: str) -> int:
        deleted = 0
        for path in self._jsonl_files(project_name):
            try:
                path.unlink()
                deleted += 1
            except OSError as e:
                logger.warning("Failed to delete session file %s: %s", path, e)
        self.clear_cache()
        return deleted

    def truncate_session(self, project_name: str, session_id: str, target_count: int) -> dict:
        """Keep only the first ``target_count`` entries of a session in each file."""
        if not self.project_dir(project_name).is_dir():
            raise SessionNotFoundError(project_name, session_id)

        truncated = 0
        modified = 0
        for path in self._jsonl_files(project_name):
            lines = _read_lines(path)
            session_indices = [i for i, line in enumerate(lines) if _line_session_id(line) == session_id]
            if len(session_indices) <= target_count:
                continue

            drop = set(session_indices[target_count:])
            _rewrite_atomically(path, [line for i, line in enumerate(lines) if i not in drop])
            truncated += len(drop)
            modified += 1
            logger.info("Truncated %d entries of session %s from %s", len(drop), session_id, path.name)

        return {"truncated": truncated, "files": modified, "remaining_messages": target_count}

    def is_project_empty(self, project_name: str) -> bool:
        for path in self._jsonl_files(project_name):
            if any(line.strip() for line in _read_lines(path)):
                return False
        return True

    # ── Private helpers ──────────────────────────────────────────────

    def _jsonl_files(self, project_name: str) -> list[Path]:
        project_dir = self.project_dir(project_name)
        if not project_dir.is_dir():
            # New and placeholder projects have no directory yet.
            return []
        return list(project_dir.glob("*.jsonl"))


def _iter_entries(path: Path) -> Iterator[dict]:
    """Yield decoded JSON objects from a JSONL file, skipping malformed lines."""
    try:
        with path.open(encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("%s (line %d)", ParseError(str(path), line), line_num)
                    continue
                if isinstance(entry, dict):
                    yield entry
    except OSError as e:
        logger.warning("Failed to read JSONL %s: %s", path, e)


def _read_lines(path: Path) -> list[str]:
    try:
        return [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    except OSError as e:
        logger.warning("Failed to read JSONL %s: %s", path, e)
        return []


def _line_session_id(line: str) -> str | None:
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        # Malformed lines are kept untouched.
        return None
    return entry.get("sessionId") if isinstance(entry, dict) else None


def _rewrite_atomically(path: Path, lines: list[str]) -> None:
    """Replace a log file with filtered content via temp file + rename."""
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    os.replace(tmp, path)


def _user_title(entry: dict) -> str | None:
    message = entry.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return None
    content = message.get("content")
    if not isinstance(content, str) or not content or content.startswith(COMMAND_MARKER):
        return None
    if len(content) > SUMMARY_MAX_CHARS:
        return content[:SUMMARY_MAX_CHARS] + "..."
    return content


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0
