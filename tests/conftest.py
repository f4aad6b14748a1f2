"""Shared test fixtures for claude-webui."""

import json
import os
import stat

import pytest

PROJECT = "-Users-testuser-dev-myapp"
PROJECT_PATH = "/Users/testuser/dev/myapp"


def write_jsonl(path, entries):
    """Write entries as JSONL; str entries are written verbatim (malformed lines)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [e if isinstance(e, str) else json.dumps(e) for e in entries]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def user_entry(session_id, text, timestamp, cwd=PROJECT_PATH):
    return {
        "type": "user",
        "sessionId": session_id,
        "cwd": cwd,
        "timestamp": timestamp,
        "message": {"role": "user", "content": text},
    }


def assistant_entry(session_id, content, timestamp, cwd=PROJECT_PATH):
    return {
        "type": "assistant",
        "sessionId": session_id,
        "cwd": cwd,
        "timestamp": timestamp,
        "message": {"role": "assistant", "content": content},
    }


@pytest.fixture
def claude_home(tmp_path, monkeypatch):
    """Point every path the package resolves at an isolated tmp tree."""
    home = tmp_path / "claude"
    projects = home / "projects"
    projects.mkdir(parents=True)
    monkeypatch.setenv("CLAUDE_WEBUI_CLAUDE_HOME", str(home))
    monkeypatch.setenv("CLAUDE_WEBUI_PROJECTS_PATH", str(projects))
    monkeypatch.setenv("CLAUDE_WEBUI_CONFIG_PATH", str(home / "project-config.json"))
    monkeypatch.setenv("CLAUDE_WEBUI_CHECKPOINTS_PATH", str(home / "checkpoints"))
    monkeypatch.setenv("CLAUDE_WEBUI_CLIENT_STATE", str(tmp_path / "client-state.json"))
    monkeypatch.setenv("CLAUDE_WEBUI_CLAUDE_BIN", str(tmp_path / "missing-claude"))
    monkeypatch.setenv("CLAUDE_WEBUI_WATCH", "0")
    return home


@pytest.fixture
def projects_root(claude_home):
    return claude_home / "projects"


@pytest.fixture
def sample_project(projects_root):
    """A project with two sessions; s1 has entries in two files.

    Includes:
    - a summary entry for s1
    - an assistant tool_use with its tool_result
    - a malformed line
    - a command entry that must not become a title
    """
    project_dir = projects_root / PROJECT
    write_jsonl(project_dir / "s1.jsonl", [
        user_entry("s1", "Help me refactor the auth module", "2025-01-20T10:00:00Z"),
        assistant_entry("s1", [
            {"type": "text", "text": "Let me read the code."},
            {"type": "tool_use", "id": "toolu_001", "name": "Read", "input": {"file_path": "/src/auth.ts"}},
        ], "2025-01-20T10:00:30Z"),
        {
            "type": "user",
            "sessionId": "s1",
            "cwd": PROJECT_PATH,
            "timestamp": "2025-01-20T10:00:31Z",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_001", "content": "export const auth = 1;"},
            ]},
        },
        "{not valid json",
        {"type": "summary", "sessionId": "s1", "summary": "Refactor auth"},
    ])
    write_jsonl(project_dir / "s2.jsonl", [
        user_entry("s2", "<command-name>/clear</command-name>", "2025-01-21T09:00:00Z"),
        user_entry("s2", "Write tests for the API", "2025-01-21T09:00:05Z"),
        assistant_entry("s2", "Sure, here they are.", "2025-01-21T09:01:00Z"),
        user_entry("s1", "One more thing for auth", "2025-01-21T09:30:00Z"),
    ])
    return project_dir


@pytest.fixture
def fake_claude(claude_home, tmp_path, monkeypatch):
    """Install an executable script standing in for the Claude CLI.

    It reads the command, reports session "abc-real" in two stream-json
    events, then prints one non-JSON line and one stderr line.
    """
    script = tmp_path / "fake-claude"
    script.write_text(
        "#!/bin/sh\n"
        "read line\n"
        'echo \'{"type":"system","subtype":"init","session_id":"abc-real"}\'\n'
        'echo \'{"type":"assistant","session_id":"abc-real","message":{"role":"assistant","content":"ok"}}\'\n'
        'echo "plain output"\n'
        'echo "warning on stderr" >&2\n'
        "exit 0\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("CLAUDE_WEBUI_CLAUDE_BIN", str(script))
    return script


@pytest.fixture
def slow_claude(claude_home, tmp_path, monkeypatch):
    """A CLI stand-in that announces a session and then runs until killed."""
    script = tmp_path / "slow-claude"
    script.write_text(
        "#!/bin/sh\n"
        'echo \'{"type":"system","session_id":"slow-real"}\'\n'
        "exec sleep 30\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    monkeypatch.setenv("CLAUDE_WEBUI_CLAUDE_BIN", str(script))
    return script


@pytest.fixture
def workspace(tmp_path):
    """A real project working tree on disk."""
    root = tmp_path / "workspace" / "myapp"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.py").write_text("print('v1')\n", encoding="utf-8")
    (root / "README.md").write_text("# myapp\n", encoding="utf-8")
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "node_modules" / "dep" / "index.js").write_text("x", encoding="utf-8")
    os.makedirs(root / ".git", exist_ok=True)
    (root / ".git" / "HEAD").write_text("ref: main", encoding="utf-8")
    return root
