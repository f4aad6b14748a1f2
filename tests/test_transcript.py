"""Tests for transcript assembly."""

from datetime import datetime, timezone

from claude_webui.core import (
    AssistantText,
    Checkpoint,
    ErrorMessage,
    InteractivePrompt,
    Session,
    SystemNotice,
    ToolResultMessage,
    ToolUse,
    UserMessage,
    checkpoint_key,
    parse_iso,
)
from claude_webui.transcript import (
    INTERRUPTED_NOTICE,
    Transcript,
    attach_checkpoints,
    convert,
    group_conversations,
    match_checkpoint,
)

from .conftest import assistant_entry, user_entry

T = "2025-01-20T10:00:00Z"
T_MS = int(parse_iso(T).timestamp() * 1000)


def checkpoints_of(*items):
    return {c.key(): c for c in items}


class TestConvert:

    def test_tool_result_attached_to_tool_use(self):
        entries = [
            user_entry("s1", "read auth", T),
            assistant_entry("s1", [
                {"type": "text", "text": "Reading."},
                {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/a.py"}},
            ], "2025-01-20T10:00:01Z"),
            {
                "sessionId": "s1",
                "timestamp": "2025-01-20T10:00:02Z",
                "message": {"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "x = 1", "is_error": False},
                ]},
            },
        ]

        messages = convert(entries)

        assert [type(m) for m in messages] == [UserMessage, AssistantText, ToolUse]
        tool = messages[2]
        assert tool.tool_name == "Read"
        assert tool.tool_input == '{"file_path":"/a.py"}'
        assert tool.tool_result.content == "x = 1"
        assert tool.tool_result.is_error is False

    def test_text_blocks_joined_and_commands_skipped(self):
        entries = [
            user_entry("s1", "<command-name>/clear</command-name>", T),
            {
                "sessionId": "s1",
                "timestamp": T,
                "message": {"role": "user", "content": [
                    {"type": "text", "text": "line one"},
                    {"type": "text", "text": "line two"},
                ]},
            },
        ]
        [message] = convert(entries)
        assert message.content == "line one\nline two"

    def test_unknown_shapes_skipped(self):
        entries = [
            {"type": "summary", "summary": "x"},
            {"message": {"role": "system", "content": "boot"}},
            {"message": {"role": "assistant", "content": [{"type": "thinking", "thinking": "hmm"}]}},
            {"message": "not a dict"},
        ]
        assert convert(entries) == []

    def test_unmatched_tool_use_has_no_result(self):
        entries = [assistant_entry("s1", [{"type": "tool_use", "id": "t9", "name": "Bash", "input": {}}], T)]
        [tool] = convert(entries)
        assert tool.tool_result is None


class TestCheckpointMatching:

    def test_trailing_newline_tolerated(self):
        checkpoint = Checkpoint("cp-1", "fix bug", T_MS)
        found = match_checkpoint("fix bug\n", parse_iso(T), checkpoints_of(checkpoint))
        assert found is checkpoint

    def test_within_tolerance(self):
        checkpoint = Checkpoint("cp-1", "fix bug", T_MS + 3000)
        assert match_checkpoint("fix bug", parse_iso(T), checkpoints_of(checkpoint)) is checkpoint

    def test_exact_key_preferred(self):
        near = Checkpoint("near", "fix bug", T_MS + 1000)
        exact = Checkpoint("exact", "fix bug", T_MS)
        found = match_checkpoint("fix bug", parse_iso(T), checkpoints_of(near, exact))
        assert found is exact

    def test_content_only_fallback(self):
        checkpoint = Checkpoint("cp-1", "fix bug", T_MS + 60_000)
        assert match_checkpoint("fix bug", parse_iso(T), checkpoints_of(checkpoint)) is checkpoint

    def test_no_match(self):
        checkpoint = Checkpoint("cp-1", "something else", T_MS)
        assert match_checkpoint("fix bug", parse_iso(T), checkpoints_of(checkpoint)) is None

    def test_key_uses_first_fifty_chars(self):
        assert checkpoint_key("a" * 80, 5) == "a" * 50 + "-5"

    def test_attach_sets_checkpoint_id(self):
        messages = convert([user_entry("s1", "fix bug\n", T), assistant_entry("s1", "done", T)])
        attached = attach_checkpoints(messages, checkpoints_of(Checkpoint("cp-1", "fix bug", T_MS)))
        assert attached[0].checkpoint_id == "cp-1"
        assert messages[0].checkpoint_id is None


class TestGroupConversations:

    def _session(self, sid, summary, day):
        ts = datetime(2025, 1, day, tzinfo=timezone.utc)
        return Session(id=sid, summary=summary, last_activity=ts, updated_at=ts)

    def test_same_summary_grouped(self):
        sessions = [
            self._session("a", "Auth work", 1),
            self._session("b", "Docs", 2),
            self._session("c", "Auth work", 3),
        ]
        conversations = group_conversations(sessions)

        assert [c.id for c in conversations] == ["conversation_a", "conversation_b"]
        assert [s.id for s in conversations[0].sessions] == ["a", "c"]
        assert conversations[0].last_activity == datetime(2025, 1, 3, tzinfo=timezone.utc)
        assert conversations[0].most_recent_session().id == "c"

    def test_default_titles_never_grouped(self):
        sessions = [
            self._session("a", "New Session", 1),
            self._session("b", "New Session", 2),
            self._session("c", "New Conversation", 3),
            self._session("d", "New Conversation", 4),
        ]
        assert len(group_conversations(sessions)) == 4


class TestTranscript:

    def test_live_events(self):
        transcript = Transcript()
        transcript.add_user_message("hello", None)

        transcript.append_live({"type": "claude-response", "data": {
            "type": "assistant",
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "Running it."},
                {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
            ]},
        }}, None)
        transcript.append_live({"type": "claude-response", "data": {
            "type": "user",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "a.py"},
            ]},
        }}, None)
        transcript.append_live({"type": "claude-output", "data": "raw line"}, None)
        transcript.append_live({"type": "claude-interactive-prompt", "data": "Continue?"}, None)
        transcript.append_live({"type": "claude-error", "error": "boom"}, None)
        transcript.append_live({"type": "session-aborted"}, None)

        kinds = [type(m) for m in transcript.messages]
        assert kinds == [
            UserMessage, AssistantText, ToolUse, AssistantText, InteractivePrompt, ErrorMessage, SystemNotice,
        ]
        assert transcript.find_tool_use("t1").tool_result.content == "a.py"
        assert transcript.messages[5].content == "Error: boom"
        assert transcript.messages[6].content == INTERRUPTED_NOTICE

    def test_unmatched_live_tool_result(self):
        transcript = Transcript()
        added = transcript.append_live({"type": "claude-response", "data": {
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "nope", "content": "orphan", "is_error": True},
            ]},
        }}, "s1")
        assert len(added) == 1
        assert isinstance(added[0], ToolResultMessage)
        assert added[0].is_error is True

    def test_user_text_not_echoed(self):
        transcript = Transcript()
        added = transcript.append_live({"type": "claude-response", "data": {
            "message": {"role": "user", "content": "hello"},
        }}, "s1")
        assert added == []

    def test_blank_assistant_text_skipped(self):
        transcript = Transcript()
        added = transcript.append_live({"type": "claude-response", "data": {
            "message": {"role": "assistant", "content": [{"type": "text", "text": "  "}]},
        }}, "s1")
        assert added == []

    def test_adopt_session_id(self):
        transcript = Transcript()
        message = transcript.add_user_message("hello", None)
        assert message.is_pending is True

        transcript.adopt_session_id("abc-real")

        assert message.session_id == "abc-real"
        assert message.is_pending is False
        assert message.persisted is True

    def test_load_history_links_checkpoints(self):
        transcript = Transcript()
        transcript.load_history(
            [user_entry("s1", "fix bug\n", T)],
            checkpoints_of(Checkpoint("cp-1", "fix bug", T_MS)),
        )
        assert transcript.messages[0].checkpoint_id == "cp-1"

    def test_revert_to_checkpoint(self):
        transcript = Transcript()
        first = transcript.add_user_message("one", "s1")
        transcript.set_checkpoint(first, "cp-1")
        transcript.append_live({"type": "claude-output", "data": "reply"}, "s1")
        transcript.add_user_message("two", "s1")

        transcript.revert_to("cp-1", 3)

        assert [m.content for m in transcript.messages] == ["one", "Reverted to checkpoint: 3 files restored"]

    def test_to_dicts(self):
        transcript = Transcript()
        message = transcript.add_user_message("hi", "s1")
        transcript.set_checkpoint(message, "cp-1")
        [data] = transcript.to_dicts()
        assert data["type"] == "user"
        assert data["checkpointId"] == "cp-1"
        assert data["sessionId"] == "s1"
