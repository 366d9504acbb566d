import json
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import httpx
import pytest

from archon_agent.agents.opencode.client import OpenCodeClient
from archon_agent.config import ConfigError, load_config
from archon_agent.errors import AuthorizationError, ContextOverflowError
from archon_agent.git_workspace import GitWorkspace
from archon_agent.integrations.github.client import GitHubClient
from archon_agent.integrations.github.credentials import (
    CredentialLease,
    CredentialLifecycle,
)
from archon_agent.integrations.github.events import classify_event
from archon_agent.orchestrator import RunOrchestrator

NOW = datetime(2024, 1, 2, 3, 4, 5)
SESSION_ID = "ses_0123456789abcdef"
BOT = "archon-agent[bot]"
RUN_URL = "https://github.com/o/r/actions/runs/42"


def _git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return proc.stdout.strip()


def _text(text: str) -> dict[str, Any]:
    return {"info": {"role": "assistant"}, "parts": [{"type": "text", "text": text}]}


class FakeAgent:
    """Agent runtime that edits ``edit_path`` on its first prompt."""

    def __init__(
        self,
        edit_path: Optional[Path],
        first_reply: Any = None,
        on_first_prompt: Optional[Callable[[], None]] = None,
    ) -> None:
        self.edit_path = edit_path
        self.first_reply = first_reply or _text("I fixed the bug")
        self.on_first_prompt = on_first_prompt
        self.prompts: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/log":
            return httpx.Response(200, json=True)
        if path == "/event":
            return httpx.Response(200, text="")
        if path == "/session":
            return httpx.Response(200, json={"id": SESSION_ID, "title": "run"})
        if path.endswith("/share"):
            return httpx.Response(200, json={})
        if path.endswith("/message"):
            self.prompts.append(json.loads(request.content))
            if len(self.prompts) == 1:
                if self.edit_path is not None:
                    self.edit_path.write_text("changed by agent\n", encoding="utf-8")
                if self.on_first_prompt is not None:
                    self.on_first_prompt()
                return httpx.Response(200, json=self.first_reply)
            return httpx.Response(200, json=_text("Fix flaky test"))
        return httpx.Response(404)

    def client(self) -> OpenCodeClient:
        return OpenCodeClient("http://runtime", transport=httpx.MockTransport(self.handler))


class FakeGitHub:
    def __init__(
        self,
        *,
        pull_request: Optional[dict] = None,
        permission: str = "write",
        down: Sequence[tuple[str, str]] = (),
    ) -> None:
        self.pull_request = pull_request
        self.permission = permission
        # (method, path suffix) pairs whose requests fail before any response.
        self.down = down
        self.calls: list[tuple[str, str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        method, path = request.method, request.url.path
        self.calls.append((method, path, body))
        if any(method == m and path.endswith(suffix) for m, suffix in self.down):
            raise httpx.ConnectError("network down", request=request)
        if path.endswith("/permission"):
            return httpx.Response(200, json={"permission": self.permission})
        if path == "/repos/o/r":
            return httpx.Response(200, json={"default_branch": "main", "private": False})
        if path == "/graphql":
            if "pullRequest" in body["query"]:
                return httpx.Response(
                    200, json={"data": {"repository": {"pullRequest": self.pull_request}}}
                )
            issue = {
                "title": "Flaky test",
                "body": "It fails sometimes",
                "author": {"login": "alice"},
                "comments": {"nodes": []},
            }
            return httpx.Response(200, json={"data": {"repository": {"issue": issue}}})
        if path.endswith("/reactions"):
            if method == "GET":
                return httpx.Response(200, json=[{"id": 9, "user": {"login": BOT}}])
            return httpx.Response(201, json={"id": 9})
        if method == "DELETE":
            return httpx.Response(204)
        if method == "POST" and path.endswith("/comments"):
            return httpx.Response(201, json={"id": 100})
        if method == "PATCH":
            return httpx.Response(200, json={"id": 100})
        if path == "/repos/o/r/pulls":
            if method == "GET":
                return httpx.Response(200, json=[])
            return httpx.Response(201, json={"number": 7, "html_url": "https://x/7"})
        return httpx.Response(404, json={"message": "Not Found"})

    def factory(self, token: str) -> GitHubClient:
        return GitHubClient(token, transport=httpx.MockTransport(self.handler))

    def bodies(self, method: str) -> list[Any]:
        return [body for m, _, body in self.calls if m == method]


class RecordingLifecycle(CredentialLifecycle):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.leases: list[CredentialLease] = []

    async def acquire(self) -> CredentialLease:
        lease = await super().acquire()
        self.leases.append(lease)
        return lease


def _released_once(credentials: RecordingLifecycle) -> bool:
    return len(credentials.leases) == 1 and credentials.leases[0].released


def _event(number: int = 5, *, pull_request: bool = False):
    issue = {"number": number, "title": "Flaky test"}
    if pull_request:
        issue["pull_request"] = {}
    return classify_event(
        "issue_comment",
        {"issue": issue, "comment": {"id": 11, "body": "/archon fix the flaky test"}},
        owner="o",
        repo="r",
        actor="alice",
        run_id="42",
    )


def _orchestrator(repo: Path, event, agent: FakeAgent, github: FakeGitHub, **env):
    values = {"MODEL": "anthropic/claude", "GITHUB_RUN_ID": "42", "USE_GITHUB_TOKEN": "true"}
    values.update(env)
    config = load_config(repo, env=values)
    credentials = RecordingLifecycle(
        owner="o",
        repo="r",
        workspace_root=repo,
        oidc_base_url=config.oidc_base_url,
        bot_username=BOT,
        use_github_token=True,
        github_token="ghs_direct",
    )
    return RunOrchestrator(
        config,
        event,
        credentials=credentials,
        agent_client=agent.client(),
        workspace=GitWorkspace(repo),
        github_factory=github.factory,
        now=NOW,
    )


@pytest.mark.anyio
async def test_issue_comment_creates_pull_request(workspace_repo: Path, origin: Path) -> None:
    agent = FakeAgent(workspace_repo / "README.md")
    github = FakeGitHub()
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github)

    outcome = await orchestrator.run()

    assert outcome.message == "Created PR #7"
    assert outcome.pull_request is not None and outcome.pull_request.number == 7
    branch = "archon/issue5-20240102030405"
    assert outcome.state is not None and outcome.state.branch == branch
    assert _git(origin, "rev-parse", branch) == outcome.state.current_head
    commit_message = _git(workspace_repo, "log", "-1", "--format=%B")
    assert commit_message.startswith("Fix flaky test")
    assert "Co-authored-by: alice <alice@users.noreply.github.com>" in commit_message

    (created,) = [b for m, p, b in github.calls if m == "POST" and p == "/repos/o/r/pulls"]
    assert created["head"] == branch
    assert created["base"] == "main"
    assert created["title"] == "Fix flaky test"
    assert created["body"].startswith("I fixed the bug\n\nCloses #5")

    first_prompt = agent.prompts[0]["parts"][0]["text"]
    assert first_prompt.startswith("/archon fix the flaky test")
    assert "<issue>" in first_prompt

    final_comment = github.bodies("PATCH")[-1]["body"]
    assert final_comment.startswith("Created PR #7")
    assert f"[github run]({RUN_URL})" in final_comment
    assert "https://archon.ai/s/89abcdef" in final_comment
    assert github.calls[-1][0] == "DELETE"
    assert _released_once(orchestrator.credentials)


@pytest.mark.anyio
async def test_same_repo_pr_pushes_without_new_pr(workspace_repo: Path, origin: Path) -> None:
    _git(workspace_repo, "checkout", "-q", "-b", "feature")
    (workspace_repo / "feature.txt").write_text("v1\n", encoding="utf-8")
    _git(workspace_repo, "add", "feature.txt")
    _git(workspace_repo, "commit", "-q", "-m", "feature")
    _git(workspace_repo, "push", "-q", "origin", "feature")
    _git(workspace_repo, "checkout", "-q", "main")

    pull_request = {
        "title": "Add feature",
        "body": "",
        "author": {"login": "alice"},
        "baseRefName": "main",
        "headRefName": "feature",
        "baseRepository": {"nameWithOwner": "o/r"},
        "headRepository": {"nameWithOwner": "o/r"},
        "commits": {"totalCount": 1, "nodes": []},
        "files": {"nodes": []},
        "comments": {"nodes": []},
        "reviews": {"nodes": []},
    }
    agent = FakeAgent(workspace_repo / "feature.txt")
    github = FakeGitHub(pull_request=pull_request)
    orchestrator = _orchestrator(
        workspace_repo, _event(8, pull_request=True), agent, github
    )

    outcome = await orchestrator.run()

    assert outcome.pull_request is None
    assert outcome.message == "I fixed the bug"
    assert outcome.state is not None and outcome.state.branch == "feature"
    assert _git(origin, "rev-parse", "feature") == outcome.state.current_head
    assert "Co-authored-by: alice <alice@users.noreply.github.com>" in _git(
        workspace_repo, "log", "-1", "--format=%B"
    )
    assert not [c for c in github.calls if c[1] == "/repos/o/r/pulls"]
    assert github.bodies("PATCH")[-1]["body"].startswith("I fixed the bug")


@pytest.mark.anyio
async def test_clean_run_reports_response_only(workspace_repo: Path) -> None:
    agent = FakeAgent(None)
    github = FakeGitHub()
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github, SHARE="false")

    outcome = await orchestrator.run()

    assert outcome.message == "I fixed the bug"
    assert outcome.state is not None and outcome.state.dirty is False
    assert not [c for c in github.calls if c[1] == "/repos/o/r/pulls"]
    final_comment = github.bodies("PATCH")[-1]["body"]
    assert final_comment == f"I fixed the bug\n\n[github run]({RUN_URL})"
    assert len(agent.prompts) == 1


@pytest.mark.anyio
async def test_failure_is_reported_on_the_tracking_comment(workspace_repo: Path) -> None:
    overflow = {"info": {"error": {"name": "ContextOverflowError"}}, "parts": []}
    agent = FakeAgent(None, first_reply=overflow)
    github = FakeGitHub()
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github, SHARE="false")

    with pytest.raises(ContextOverflowError):
        await orchestrator.run()

    final_comment = github.bodies("PATCH")[-1]["body"]
    assert final_comment.startswith("PROMPT_TOO_LARGE")
    assert github.calls[-1][0] == "DELETE"
    assert _released_once(orchestrator.credentials)


@pytest.mark.anyio
async def test_invalid_model_fails_before_any_side_effect(workspace_repo: Path) -> None:
    agent = FakeAgent(None)
    github = FakeGitHub()
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github, MODEL="nomodel")

    with pytest.raises(ConfigError):
        await orchestrator.run()

    assert github.calls == []
    assert agent.prompts == []
    assert orchestrator.credentials.leases == []
    assert _git(workspace_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"


@pytest.mark.anyio
async def test_scheduled_run_opens_pr_without_comments(workspace_repo: Path) -> None:
    agent = FakeAgent(workspace_repo / "README.md")
    github = FakeGitHub()
    event = classify_event("schedule", {}, owner="o", repo="r", actor=None, run_id="42")
    orchestrator = _orchestrator(
        workspace_repo, event, agent, github, PROMPT="Update the changelog"
    )

    outcome = await orchestrator.run()

    assert outcome.message == "Created PR #7"
    assert outcome.state is not None
    assert outcome.state.branch.startswith("archon/schedule-")
    assert outcome.state.branch.endswith("-20240102030405")
    assert agent.prompts[0]["parts"][0]["text"] == "Update the changelog"
    (created,) = [b for m, p, b in github.calls if m == "POST" and p == "/repos/o/r/pulls"]
    assert "Triggered by scheduled workflow" in created["body"]
    assert not [c for c in github.calls if "/comments" in c[1] or "/reactions" in c[1]]
    assert "Co-authored-by" not in _git(workspace_repo, "log", "-1", "--format=%B")


@pytest.mark.anyio
async def test_agent_branch_switch_leaves_push_to_the_agent(
    workspace_repo: Path, origin: Path
) -> None:
    def switch_and_commit() -> None:
        _git(workspace_repo, "checkout", "-q", "-b", "agent-fix")
        (workspace_repo / "fix.txt").write_text("fixed\n", encoding="utf-8")
        _git(workspace_repo, "add", "fix.txt")
        _git(workspace_repo, "commit", "-q", "-m", "agent commit")

    agent = FakeAgent(None, on_first_prompt=switch_and_commit)
    github = FakeGitHub()
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github, SHARE="false")

    outcome = await orchestrator.run()

    assert outcome.state is not None and outcome.state.switched_branch
    assert outcome.pull_request is None
    assert outcome.message == "I fixed the bug"
    assert len(agent.prompts) == 1
    assert not [c for c in github.calls if c[1] == "/repos/o/r/pulls"]
    assert _git(workspace_repo, "log", "-1", "--format=%s") == "agent commit"
    assert _git(origin, "branch", "--list", "archon/*") == ""
    assert github.bodies("PATCH")[-1]["body"].startswith("I fixed the bug")


@pytest.mark.anyio
async def test_unauthorized_actor_is_told_on_a_new_comment(workspace_repo: Path) -> None:
    agent = FakeAgent(workspace_repo / "README.md")
    github = FakeGitHub(permission="read")
    orchestrator = _orchestrator(
        workspace_repo, _event(), agent, github, SHARE="false", USE_GITHUB_TOKEN="false"
    )

    with pytest.raises(AuthorizationError):
        await orchestrator.run()

    (posted,) = [
        b for m, p, b in github.calls if m == "POST" and p == "/repos/o/r/issues/5/comments"
    ]
    assert posted["body"] == (
        f"User alice does not have write permissions\n\n[github run]({RUN_URL})"
    )
    assert not [c for c in github.calls if c[0] == "POST" and c[1].endswith("/reactions")]
    assert agent.prompts == []
    assert _released_once(orchestrator.credentials)


@pytest.mark.anyio
async def test_unreachable_api_does_not_mask_the_run_error(workspace_repo: Path) -> None:
    overflow = {"info": {"error": {"name": "ContextOverflowError"}}, "parts": []}
    agent = FakeAgent(None, first_reply=overflow)
    github = FakeGitHub(down=[("PATCH", "/issues/comments/100")])
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github, SHARE="false")

    with pytest.raises(ContextOverflowError):
        await orchestrator.run()

    assert github.bodies("PATCH")[-1]["body"].startswith("PROMPT_TOO_LARGE")
    assert github.calls[-1][0] == "DELETE"
    assert _released_once(orchestrator.credentials)


@pytest.mark.anyio
async def test_unreachable_reaction_endpoint_is_not_fatal(workspace_repo: Path) -> None:
    agent = FakeAgent(workspace_repo / "README.md")
    github = FakeGitHub(down=[("POST", "/reactions")])
    orchestrator = _orchestrator(workspace_repo, _event(), agent, github, SHARE="false")

    outcome = await orchestrator.run()

    assert outcome.message == "Created PR #7"
    assert github.bodies("PATCH")[-1]["body"].startswith("Created PR #7")


@pytest.mark.anyio
async def test_dispatched_run_follows_the_issue_flow(workspace_repo: Path) -> None:
    event = classify_event(
        "workflow_dispatch",
        {
            "inputs": {
                "issue_number": "5",
                "comment_id": "11",
                "actor": "alice",
                "title": "Flaky test",
                "prompt": "/archon fix the flaky test",
            }
        },
        owner="o",
        repo="r",
        actor="archon-app[bot]",
        run_id="42",
    )
    agent = FakeAgent(workspace_repo / "README.md")
    github = FakeGitHub()
    orchestrator = _orchestrator(workspace_repo, event, agent, github, SHARE="false")

    outcome = await orchestrator.run()

    assert outcome.message == "Created PR #7"
    assert outcome.state is not None
    assert outcome.state.branch == "archon/issue5-20240102030405"
    (created,) = [b for m, p, b in github.calls if m == "POST" and p == "/repos/o/r/pulls"]
    assert "Closes #5" in created["body"]
    assert "Co-authored-by: alice <alice@users.noreply.github.com>" in _git(
        workspace_repo, "log", "-1", "--format=%B"
    )
    assert ("POST", "/repos/o/r/issues/comments/11/reactions") in [
        (m, p) for m, p, _ in github.calls
    ]
    assert agent.prompts[0]["parts"][0]["text"].startswith("/archon fix the flaky test")
