from __future__ import annotations

from typing import Optional, Sequence


class ArchonError(Exception):
    """Base class for failures that terminate a run."""


class UnsupportedEventError(ArchonError):
    def __init__(self, event_name: str):
        super().__init__(f"Unsupported event type: {event_name}")
        self.event_name = event_name


class PromptValidationError(ArchonError):
    pass


class AuthorizationError(ArchonError):
    pass


class TokenExchangeError(ArchonError):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AgentUnavailableError(ArchonError):
    pass


class SessionError(ArchonError):
    pass


class ContextOverflowError(SessionError):
    """The prompt (plus attachments) did not fit the model's context window."""


class SessionTimeoutError(SessionError):
    def __init__(self, session_id: str, timeout_seconds: float):
        super().__init__(
            f"Session {session_id} did not complete within {int(timeout_seconds)}s"
        )
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds


class GitCommandError(ArchonError):
    def __init__(
        self,
        args: Sequence[str],
        *,
        stderr: str = "",
        stdout: str = "",
        returncode: Optional[int] = None,
    ):
        self.command = list(args)
        self.stderr = stderr
        self.stdout = stdout
        self.returncode = returncode
        detail = stderr.strip() or stdout.strip() or f"exit {returncode}"
        super().__init__(f"Command failed: {' '.join(self.command)}: {detail}")


class GitHubAPIError(ArchonError):
    def __init__(self, message: str, *, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class PullRequestRaceError(GitHubAPIError):
    """GitHub rejected PR creation because head has no commits over base."""


__all__ = [
    "AgentUnavailableError",
    "ArchonError",
    "AuthorizationError",
    "ContextOverflowError",
    "GitCommandError",
    "GitHubAPIError",
    "PromptValidationError",
    "PullRequestRaceError",
    "SessionError",
    "SessionTimeoutError",
    "TokenExchangeError",
    "UnsupportedEventError",
]
