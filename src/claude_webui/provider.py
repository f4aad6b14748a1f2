"""Abstract base class for session log readers."""

from abc import ABC, abstractmethod
from pathlib import Path

from .core import SessionPage


class SessionLogProvider(ABC):
    """Read/append/filter access to the assistant's on-disk session logs.

    The logs are written by an external process; implementations must
    tolerate partial and malformed lines and never edit a file in place.
    """

    name: str

    @abstractmethod
    def get_base_path(self) -> Path:
        """Return the root directory holding one subdirectory per project."""
        ...

    @abstractmethod
    def list_project_names(self) -> list[str]:
        """Return the encoded names of all project directories."""
        ...

    @abstractmethod
    def list_sessions(self, project_name: str, limit: int = 5, offset: int = 0) -> SessionPage:
        """Return a page of sessions, most recent activity first."""
        ...

    @abstractmethod
    def list_messages(self, project_name: str, session_id: str) -> list[dict]:
        """Return raw log entries for one session, oldest first."""
        ...

    @abstractmethod
    def resolve_project_path(self, project_name: str) -> str:
        """Return the working directory a project's sessions ran in."""
        ...

    @abstractmethod
    def clear_cache(self) -> None:
        """Forget cached path resolutions after the log tree changed."""
        ...

    @abstractmethod
    def delete_session(self, project_name: str, session_id: str) -> bool:
        ...

    @abstractmethod
    def delete_all_sessions(self, project_name: str) -> int:
        ...

    @abstractmethod
    def truncate_session(self, project_name: str, session_id: str, target_count: int) -> dict:
        ...

    @abstractmethod
    def is_project_empty(self, project_name: str) -> bool:
        ...
