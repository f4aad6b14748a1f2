"""Tests for the chat controller, client storage and terminal client."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from claude_webui import client as client_module
from claude_webui.client import (
    ChatController,
    checkpoint_project_names,
    format_entry,
    http_base_url,
    new_prompt_id,
    run_chat,
)
from claude_webui.client_store import ClientStore, MemoryClientStore
from claude_webui.core import ErrorMessage, Project, Session, ToolUse, UserMessage
from claude_webui.errors import ProjectNotFoundError

from .conftest import PROJECT, PROJECT_PATH, user_entry

SENT_AT = datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc)
SENT_AT_MS = int(SENT_AT.timestamp() * 1000)


def project_dict(sessions=()):
    return Project(
        name=PROJECT,
        path=PROJECT_PATH,
        display_name="myapp",
        sessions=list(sessions),
        total_sessions=len(sessions),
    ).to_dict()


@pytest.fixture
def controller():
    controller = ChatController(MemoryClientStore())
    controller.load_projects([project_dict()])
    controller.select_project(PROJECT)
    return controller


class TestNewConversation:

    def test_command_frame_for_placeholder(self, controller):
        placeholder = controller.start_new_conversation(PROJECT)

        frame = controller.compose_command("hello", checkpoint_id="prompt-1", timestamp=SENT_AT)

        assert frame["type"] == "claude-command"
        assert frame["command"] == "hello"
        options = frame["options"]
        assert options["projectName"] == PROJECT
        assert options["projectPath"] == PROJECT_PATH
        assert options["cwd"] == PROJECT_PATH
        assert options["sessionId"] == placeholder.id
        assert options["toolsSettings"] == {"allowedTools": [], "disallowedTools": [], "skipPermissions": False}
        assert options["conversationContext"] is None
        assert controller.is_loading is True

    def test_checkpoint_registered(self, controller):
        controller.start_new_conversation(PROJECT)
        controller.compose_command("hello", checkpoint_id="prompt-1", timestamp=SENT_AT)

        registry = controller.store.get(f"checkpoints-{PROJECT}")
        assert registry == {
            f"hello-{SENT_AT_MS}": {"checkpointId": "prompt-1", "content": "hello", "timestamp": SENT_AT_MS},
        }
        assert controller.transcript.messages[0].checkpoint_id == "prompt-1"

    def test_identity_replaces_placeholder(self, controller):
        placeholder = controller.start_new_conversation(PROJECT)
        controller.compose_command("hello", timestamp=SENT_AT)

        controller.handle({"type": "session-created", "sessionId": "abc-real", "replacesTemporary": placeholder.id})

        assert controller.reconciler.active_session_id == "abc-real"
        assert controller.reconciler.selected_session.id == "abc-real"
        assert [s.id for s in controller.project.sessions] == ["abc-real"]
        assert controller.transcript.messages[0].session_id == "abc-real"
        assert controller.transcript.messages[0].is_pending is False

    def test_full_exchange(self, controller):
        controller.start_new_conversation(PROJECT)
        controller.compose_command("hello", timestamp=SENT_AT)

        controller.handle({"type": "session-created", "sessionId": "abc-real", "replacesTemporary": None})
        added = controller.handle({"type": "claude-response", "data": {
            "message": {"role": "assistant", "content": "hi there"},
        }})
        controller.handle({"type": "claude-complete", "exitCode": 0, "isNewSession": True})

        assert [m.content for m in added] == ["hi there"]
        assert added[0].session_id == "abc-real"
        assert controller.is_loading is False
        assert "abc-real" not in controller.reconciler.protection

        stored = controller.store.get(f"chat_messages_{PROJECT}")
        assert [m["type"] for m in stored] == ["user", "assistant"]

    def test_identity_after_completion(self, controller):
        placeholder = controller.start_new_conversation(PROJECT)
        controller.compose_command("hello", timestamp=SENT_AT)
        controller.handle({"type": "claude-complete", "exitCode": 0, "isNewSession": True})

        controller.handle({"type": "session-created", "sessionId": "abc-real", "replacesTemporary": placeholder.id})

        assert controller.reconciler.active_session_id == "abc-real"
        assert len(controller.reconciler.protection) == 0
        assert controller.transcript.messages[0].session_id == "abc-real"
        assert controller.awaiting_identity is False

        for title, updated in (("hello", "2025-01-20T10:00:05Z"), ("Renamed", "2025-01-20T10:05:00Z")):
            session = Session(
                id="abc-real",
                summary=title,
                message_count=2,
                created_at=SENT_AT,
                updated_at=datetime.fromisoformat(updated.replace("Z", "+00:00")),
                project_name=PROJECT,
            )
            controller.handle({"type": "projects_updated", "projects": [project_dict([session])]})
            assert controller.project.sessions[0].summary == title
            assert controller.reconciler.selected_session.summary == title

    def test_send_without_session(self, controller):
        frame = controller.compose_command("hello")
        assert frame["options"]["sessionId"] is None
        assert frame["options"]["resume"] is False

        controller.handle({"type": "session-created", "sessionId": "abc-real"})

        assert controller.reconciler.active_session_id == "abc-real"
        assert controller.transcript.messages[0].session_id == "abc-real"

    def test_repeated_identity_is_ignored(self, controller):
        controller.compose_command("hello")
        controller.handle({"type": "session-created", "sessionId": "abc-real"})
        controller.transcript.messages[0].session_id = "edited"

        controller.handle({"type": "session-created", "sessionId": "abc-real"})

        assert controller.transcript.messages[0].session_id == "edited"


class TestInboundFrames:

    def test_duplicate_timestamped_frame_applied_once(self, controller):
        frame = {"type": "claude-output", "data": "once", "timestamp": "2025-01-20T10:00:00Z"}
        assert len(controller.handle(frame)) == 1
        assert controller.handle(dict(frame)) == []
        assert len(controller.transcript) == 1

    def test_error_frame_stops_loading(self, controller):
        controller.compose_command("hello")
        [entry] = controller.handle({"type": "error", "error": "Claude CLI not found"})
        assert isinstance(entry, ErrorMessage)
        assert entry.content == "Error: Claude CLI not found"
        assert controller.is_loading is False

    def test_aborted_adds_notice(self, controller):
        controller.compose_command("hello")
        [entry] = controller.handle({"type": "session-aborted", "sessionId": None, "success": True})
        assert entry.content == "Session interrupted by user."
        assert controller.is_loading is False

    def test_snapshot_applied(self, controller):
        session = Session(id="s1", summary="Refactor auth")
        controller.handle({"type": "projects_updated", "projects": [project_dict([session])]})
        assert [s.id for s in controller.project.sessions] == ["s1"]

    def test_failed_truncation_is_not_fatal(self, controller):
        assert controller.handle({"type": "messages-truncated", "success": False, "error": "nope"}) == []

    def test_unknown_frame(self, controller):
        assert controller.handle({"type": "mystery"}) == []


class TestExistingSession:

    def _open(self, controller, summary="Refactor auth"):
        session = Session(id="s1", summary=summary, message_count=2, project_name=PROJECT)
        controller.load_projects([project_dict([session])])
        controller.open_session(
            controller.project.sessions[0],
            [user_entry("s1", "fix bug\n", SENT_AT.isoformat())],
        )

    def test_history_linked_to_stored_checkpoints(self, controller):
        controller.store.set(f"checkpoints-{PROJECT}", {
            f"fix bug-{SENT_AT_MS}": {"checkpointId": "cp-1", "content": "fix bug", "timestamp": SENT_AT_MS},
        })
        self._open(controller)
        [message] = controller.transcript.messages
        assert isinstance(message, UserMessage)
        assert message.checkpoint_id == "cp-1"

    def test_resume_bumps_activity(self, controller):
        self._open(controller)

        frame = controller.compose_command("and another thing", timestamp=SENT_AT)

        assert frame["options"]["sessionId"] == "s1"
        assert frame["options"]["resume"] is True
        session = controller.project.sessions[0]
        assert session.message_count == 3
        assert session.last_activity == SENT_AT
        assert session.summary == "Refactor auth"

    def test_abort_and_truncate_frames(self, controller):
        self._open(controller)
        assert controller.abort_frame() == {"type": "abort-session", "sessionId": "s1"}
        assert controller.truncate_frame("cp-1", 4) == {
            "type": "truncate_messages",
            "data": {"checkpointId": "cp-1", "messageCount": 4, "projectName": PROJECT, "sessionId": "s1"},
        }


class TestControllerState:

    def test_unknown_project(self):
        controller = ChatController()
        controller.load_projects([project_dict()])
        with pytest.raises(ProjectNotFoundError):
            controller.select_project("-nope")

    def test_compose_without_project(self):
        with pytest.raises(ProjectNotFoundError):
            ChatController().compose_command("hello")

    def test_drafts(self, controller):
        controller.save_draft("half a thought")
        assert controller.load_draft() == "half a thought"

        controller.compose_command("full thought")
        assert controller.load_draft() == ""

    def test_empty_draft_removed(self, controller):
        controller.save_draft("x")
        controller.save_draft("")
        assert f"draft_input_{PROJECT}" not in controller.store.keys()


def test_checkpoint_names_for_encoded_project():
    project = Project(name="-Users-a-my-app", path="/Users/a/my app", display_name="my app")
    assert checkpoint_project_names(project) == ["-Users-a-my-app", "Users-a-my_app"]


def test_checkpoint_names_for_custom_named_project():
    project = Project(name="myapp", path="/Users/a/app", display_name="app")
    assert checkpoint_project_names(project) == ["myapp", "-Users-a-app"]


def test_checkpoints_found_under_alternate_name():
    controller = ChatController()
    project = Project(name="myapp", path="/Users/a/app", display_name="app")
    controller.store.set("checkpoints--Users-a-app", {"k": {"checkpointId": "cp-9", "content": "x", "timestamp": 1}})
    assert [c.checkpoint_id for c in controller.load_checkpoints(project).values()] == ["cp-9"]


@pytest.mark.parametrize("url, expected", [
    ("ws://localhost:8080/ws", "http://localhost:8080"),
    ("wss://example.com/ws/", "https://example.com"),
    ("ws://localhost:8080", "http://localhost:8080"),
])
def test_http_base_url(url, expected):
    assert http_base_url(url) == expected


def test_format_entry():
    now = datetime.now(timezone.utc)
    assert format_entry(UserMessage(content="hi", timestamp=now)) == "[user] hi"
    tool = ToolUse(content="", timestamp=now, tool_name="Bash", tool_input='{"command":"ls"}')
    assert format_entry(tool) == '[tool] Bash {"command":"ls"}'


def test_new_prompt_id():
    prompt_id = new_prompt_id()
    assert prompt_id.startswith("prompt-")
    assert prompt_id != new_prompt_id()


class TestClientStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state" / "client.json"
        store = ClientStore(path)
        store.set("draft_input_x", "hello")

        assert ClientStore(path).get("draft_input_x") == "hello"
        assert not path.with_name("client.json.tmp").exists()

    def test_remove(self, tmp_path):
        path = tmp_path / "client.json"
        store = ClientStore(path)
        store.set("a", 1)
        store.remove("a")
        assert ClientStore(path).get("a") is None

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "client.json"
        path.write_text("{broken")
        assert ClientStore(path).keys() == []

    def test_default_path_from_env(self, claude_home, tmp_path):
        assert ClientStore().path == tmp_path / "client-state.json"


class FakeConnection:
    """Stands in for a websockets client connection."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        if not self.frames:
            # a quiet server: nothing more arrives
            await asyncio.Event().wait()
        return json.dumps(self.frames.pop(0))


@pytest.mark.asyncio
async def test_run_chat(monkeypatch):
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.path == "/api/projects":
            return httpx.Response(200, json=[project_dict()])
        if request.url.path == "/api/checkpoints/create":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        client_module.httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    connection = FakeConnection([
        {"type": "session-created", "sessionId": "abc-real", "replacesTemporary": None},
        {"type": "claude-response", "data": {"message": {"role": "assistant", "content": "hi there"}}},
        {"type": "claude-complete", "exitCode": 0, "isNewSession": True},
    ])
    monkeypatch.setattr(client_module.websockets, "connect", lambda url, **kwargs: connection)

    store = MemoryClientStore()
    lines = []
    await run_chat("ws://localhost:8080/ws", PROJECT, None, ["hello"], store, echo=lines.append)

    assert lines == ["[assistant] hi there"]
    [command] = connection.sent
    assert command["command"] == "hello"
    assert command["options"]["sessionId"].startswith("temp-")

    created = [r for r in requests if r.url.path == "/api/checkpoints/create"]
    assert json.loads(created[0].content)["userMessage"] == "hello"
    assert list(store.get(f"checkpoints-{PROJECT}").values())[0]["checkpointId"].startswith("prompt-")


def mock_http(monkeypatch):
    def handler(request):
        if request.url.path == "/api/projects":
            return httpx.Response(200, json=[project_dict()])
        return httpx.Response(200, json={"success": True})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        client_module.httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )


@pytest.mark.asyncio
async def test_run_chat_reads_identity_after_completion(monkeypatch):
    mock_http(monkeypatch)
    connection = FakeConnection([
        {"type": "claude-response", "data": {"message": {"role": "assistant", "content": "hi there"}}},
        {"type": "claude-complete", "exitCode": 0, "isNewSession": True},
        {"type": "session-created", "sessionId": "abc-real", "replacesTemporary": None},
        {"type": "claude-complete", "exitCode": 0, "isNewSession": False},
    ])
    monkeypatch.setattr(client_module.websockets, "connect", lambda url, **kwargs: connection)

    await run_chat("ws://localhost:8080/ws", PROJECT, None, ["hello", "again"], MemoryClientStore(), echo=lambda line: None)

    first, second = connection.sent
    assert first["options"]["sessionId"].startswith("temp-")
    assert second["options"]["sessionId"] == "abc-real"
    assert second["options"]["resume"] is True
    assert connection.frames == []


@pytest.mark.asyncio
async def test_run_chat_gives_up_waiting_for_identity(monkeypatch, caplog):
    mock_http(monkeypatch)
    monkeypatch.setattr(client_module, "IDENTITY_WAIT", 0.05)
    connection = FakeConnection([{"type": "claude-complete", "exitCode": 0, "isNewSession": True}])
    monkeypatch.setattr(client_module.websockets, "connect", lambda url, **kwargs: connection)

    await run_chat("ws://localhost:8080/ws", PROJECT, None, ["hello"], MemoryClientStore(), echo=lambda line: None)

    assert len(connection.sent) == 1
    assert "No session id received" in caplog.text
