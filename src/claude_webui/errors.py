"""Exception hierarchy for claude-webui.

Parse errors and reconciliation conflicts are recorded, never raised past
the component that detects them.
"""


class WebUIError(Exception):
    """Base exception for all claude-webui errors."""


class ConfigurationError(WebUIError):
    """The backing assistant executable could not be located."""

    def __init__(self, executable: str):
        self.executable = executable
        super().__init__(
            f"Claude CLI not found ({executable!r}). "
            "Install it or set CLAUDE_WEBUI_CLAUDE_BIN."
        )


class ProcessError(WebUIError):
    """The assistant subprocess failed to start or exited abnormally."""

    def __init__(self, message: str, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message)


class ParseError(WebUIError):
    """A log line or stdout line could not be decoded."""

    def __init__(self, source: str, line: str):
        self.source = source
        self.line = line
        super().__init__(f"Malformed line from {source}: {line[:80]!r}")


class IdentityResolutionFailure(WebUIError):
    """No real session identity could be captured for a dispatched command."""

    def __init__(self, session_id: str | None):
        self.session_id = session_id
        super().__init__(f"No session identity captured for {session_id or 'new session'}")


class ReconciliationConflict(WebUIError):
    """A background snapshot would disturb the protected session in view."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Snapshot would modify protected session {session_id}")


class SessionNotFoundError(WebUIError):
    def __init__(self, project_name: str, session_id: str):
        self.project_name = project_name
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found in project {project_name}")


class ProjectNotFoundError(WebUIError):
    def __init__(self, project_name: str):
        self.project_name = project_name
        super().__init__(f"Project not found: {project_name}")


class ProjectExistsError(WebUIError):
    """A project is already registered for the requested path."""


class InvalidProjectPathError(WebUIError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path does not exist: {path}")


class CheckpointNotFoundError(WebUIError):
    def __init__(self, project_name: str, prompt_id: str):
        self.project_name = project_name
        self.prompt_id = prompt_id
        super().__init__(f"Checkpoint {prompt_id} not found for project {project_name}")


class InvalidProjectNameError(WebUIError):
    """A project name that is not a single directory entry."""

    def __init__(self, project_name: str):
        self.project_name = project_name
        super().__init__(f"Invalid project name: {project_name!r}")
