from __future__ import annotations

import enum
import logging
import secrets
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import GitCommandError
from .integrations.github.events import RepoEvent, TriggerEvent, UserEvent
from .logging_utils import log_event

BRANCH_PREFIX = "archon"
FORK_REMOTE = "fork"


class Topology(str, enum.Enum):
    NEW_ISSUE_BRANCH = "new_issue_branch"
    LOCAL_PR_BRANCH = "local_pr_branch"
    FORK_PR_BRANCH = "fork_pr_branch"
    REPO_EVENT_BRANCH = "repo_event_branch"


@dataclass(frozen=True)
class PullRequestRef:
    """The parts of a pull request that decide how it is checked out."""

    number: int
    head_ref: str
    base_ref: str
    head_repo: str
    base_repo: str
    total_commits: int = 1

    @property
    def is_fork(self) -> bool:
        return self.head_repo.lower() != self.base_repo.lower()


@dataclass
class GitWorkspaceState:
    topology: Topology
    branch: str
    original_head: str
    current_head: Optional[str] = None
    remote: str = "origin"
    remote_branch: Optional[str] = None
    dirty: bool = False
    uncommitted_changes: bool = False
    switched_branch: bool = False


def run_git(
    args: list[str],
    *,
    cwd: Path,
    timeout_seconds: int = 120,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    cmd = ["git", *args]
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitCommandError(cmd, stderr="Missing binary: git") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitCommandError(
            cmd, stderr=f"Command timed out after {timeout_seconds}s"
        ) from exc
    if check and proc.returncode != 0:
        raise GitCommandError(
            cmd,
            stderr=proc.stderr or "",
            stdout=proc.stdout or "",
            returncode=proc.returncode,
        )
    return proc


def select_topology(event: TriggerEvent, pr: Optional[PullRequestRef] = None) -> Topology:
    if isinstance(event, RepoEvent):
        return Topology.REPO_EVENT_BRANCH
    if event.is_pull_request:
        if pr is None:
            raise ValueError("pull request details are required for PR events")
        return Topology.FORK_PR_BRANCH if pr.is_fork else Topology.LOCAL_PR_BRANCH
    return Topology.NEW_ISSUE_BRANCH


def generate_branch_name(
    tag: str,
    issue_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
    token: Optional[str] = None,
) -> str:
    """
    Build ``archon/{tag}{id}-{timestamp}`` for issue/PR runs and
    ``archon/{tag}-{hex}-{timestamp}`` for repo runs, which have no id.
    """
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    if issue_id is not None:
        return f"{BRANCH_PREFIX}/{tag}{issue_id}-{stamp}"
    return f"{BRANCH_PREFIX}/{tag}-{token or secrets.token_hex(3)}-{stamp}"


def co_author_trailer(actor: str) -> str:
    return f"Co-authored-by: {actor} <{actor}@users.noreply.github.com>"


class GitWorkspace:
    def __init__(
        self,
        root: Path,
        *,
        max_fetch_depth: int = 20,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.root = root
        self.max_fetch_depth = max_fetch_depth
        self._logger = logger or logging.getLogger(__name__)

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return run_git(list(args), cwd=self.root, check=check)

    def current_branch(self) -> str:
        proc = self._git("rev-parse", "--abbrev-ref", "HEAD")
        return (proc.stdout or "").strip() or "HEAD"

    def head(self) -> str:
        return (self._git("rev-parse", "HEAD").stdout or "").strip()

    def status_porcelain(self) -> str:
        return (self._git("status", "--porcelain").stdout or "").strip()

    def _fetch_depth(self, pr: PullRequestRef) -> int:
        return max(1, min(pr.total_commits, self.max_fetch_depth))

    def checkout(
        self,
        topology: Topology,
        *,
        event: TriggerEvent,
        pr: Optional[PullRequestRef] = None,
        now: Optional[datetime] = None,
    ) -> GitWorkspaceState:
        """Check out the working branch for ``topology`` and record the starting head."""
        remote = "origin"
        remote_branch: Optional[str] = None
        if topology == Topology.REPO_EVENT_BRANCH:
            assert isinstance(event, RepoEvent)
            tag = "schedule" if event.is_schedule else "dispatch"
            branch = generate_branch_name(tag, now=now)
            self._git("checkout", "-b", branch)
        elif topology == Topology.NEW_ISSUE_BRANCH:
            assert isinstance(event, UserEvent)
            branch = generate_branch_name("issue", event.number, now=now)
            self._git("checkout", "-b", branch)
        elif topology == Topology.LOCAL_PR_BRANCH:
            assert pr is not None
            branch = pr.head_ref
            remote_branch = pr.head_ref
            self._git("fetch", "origin", f"--depth={self._fetch_depth(pr)}", branch)
            self._git("checkout", branch)
        elif topology == Topology.FORK_PR_BRANCH:
            assert pr is not None
            branch = generate_branch_name("pr", pr.number, now=now)
            remote = FORK_REMOTE
            remote_branch = pr.head_ref
            self._git(
                "remote", "add", FORK_REMOTE, f"https://github.com/{pr.head_repo}.git"
            )
            self._git(
                "fetch", FORK_REMOTE, f"--depth={self._fetch_depth(pr)}", pr.head_ref
            )
            self._git("checkout", "-b", branch, f"{FORK_REMOTE}/{pr.head_ref}")
        else:
            raise ValueError(f"Unknown topology: {topology}")
        state = GitWorkspaceState(
            topology=topology,
            branch=branch,
            original_head=self.head(),
            remote=remote,
            remote_branch=remote_branch,
        )
        log_event(
            self._logger,
            logging.INFO,
            "git.checkout",
            topology=topology.value,
            branch=branch,
            head=state.original_head,
        )
        return state

    def detect_dirty(self, state: GitWorkspaceState) -> GitWorkspaceState:
        """Classify what the agent did to the working tree.

        A branch switch wins over every other signal; after it the caller must
        leave pushing and PR handling to the agent.
        """
        state.current_head = self.head()
        if self.current_branch() != state.branch:
            state.switched_branch = True
            state.dirty = True
            state.uncommitted_changes = False
        elif self.status_porcelain():
            state.dirty = True
            state.uncommitted_changes = True
        elif state.current_head != state.original_head:
            state.dirty = True
            state.uncommitted_changes = False
        else:
            state.dirty = False
            state.uncommitted_changes = False
        log_event(
            self._logger,
            logging.INFO,
            "git.dirty.detected",
            branch=state.branch,
            dirty=state.dirty,
            uncommitted=state.uncommitted_changes,
            switched=state.switched_branch,
        )
        return state

    def commit_and_push(
        self,
        state: GitWorkspaceState,
        message: str,
        *,
        co_author: Optional[str] = None,
    ) -> None:
        if state.switched_branch:
            raise ValueError("refusing to push after the agent switched branches")
        if state.uncommitted_changes:
            full_message = message
            if co_author:
                full_message = f"{message}\n\n{co_author_trailer(co_author)}"
            self._git("add", ".")
            self._git("commit", "-m", full_message)
        if state.topology == Topology.FORK_PR_BRANCH:
            self._git("push", FORK_REMOTE, f"HEAD:{state.remote_branch}")
        elif state.topology == Topology.LOCAL_PR_BRANCH:
            self._git("push", "origin", state.branch)
        else:
            self._git("push", "-u", "origin", state.branch)
        state.current_head = self.head()
        log_event(
            self._logger,
            logging.INFO,
            "git.pushed",
            branch=state.branch,
            remote=state.remote,
            head=state.current_head,
        )

    def has_new_commits(self, base: str, head: str) -> bool:
        """Return True when ``head`` has commits that ``base`` lacks.

        Shallow clones may not have ``base`` locally; fetch it once and retry
        against ``origin/{base}``, assuming new commits if that still fails.
        """
        try:
            return self._count(f"{base}..{head}") > 0
        except GitCommandError:
            pass
        try:
            self._git("fetch", "origin", base, "--depth=1")
            return self._count(f"origin/{base}..{head}") > 0
        except GitCommandError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "git.rev_list.failed",
                base=base,
                head=head,
                exc=exc,
            )
            return True

    def _count(self, revision_range: str) -> int:
        proc = self._git("rev-list", "--count", revision_range)
        return int((proc.stdout or "0").strip() or 0)


__all__ = [
    "GitWorkspace",
    "GitWorkspaceState",
    "PullRequestRef",
    "Topology",
    "co_author_trailer",
    "generate_branch_name",
    "run_git",
    "select_topology",
]
