import json
import re
from pathlib import Path

import httpx
import pytest
import yaml

from archon_agent.cli import _event_from_env
from archon_agent.config import load_config
from archon_agent.dispatcher import (
    DISPATCH_INPUT_ENV,
    MANAGED_WORKFLOW,
    DispatchRequest,
    dispatch_agent,
)
from archon_agent.integrations.github.client import GitHubClient
from archon_agent.integrations.github.events import UserEvent, resolve_prompt

_EXPRESSION = re.compile(r"\$\{\{\s*([\w.]+)\s*\}\}")


def _step_env(inputs: dict[str, str]) -> dict[str, str]:
    """Render the managed job's env block the way Actions would for ``inputs``."""
    workflow = yaml.safe_load(MANAGED_WORKFLOW)
    (step,) = [s for s in workflow["jobs"]["archon"]["steps"] if "env" in s]
    context = {f"github.event.inputs.{k}": v for k, v in inputs.items()}
    context["github.token"] = "ghs_workflow"
    return {
        key: _EXPRESSION.sub(lambda m: context.get(m.group(1), ""), str(value))
        for key, value in step["env"].items()
    }


def test_template_declares_every_forwarded_input() -> None:
    workflow = yaml.safe_load(MANAGED_WORKFLOW)
    # PyYAML reads the bare ``on`` key as a boolean.
    declared = workflow[True]["workflow_dispatch"]["inputs"]
    request = DispatchRequest(issue_number=5, comment_id=11)
    assert set(request.inputs("m")) == set(declared)
    env = _step_env(request.inputs("m"))
    assert set(DISPATCH_INPUT_ENV.values()) <= set(env)


def test_dispatched_run_resolves_the_forwarded_comment(tmp_path: Path) -> None:
    request = DispatchRequest(
        issue_number=5,
        comment_id=11,
        actor="alice",
        title="Flaky tests",
        prompt="/archon fix the tests",
    )
    event_path = tmp_path / "event.json"
    event_path.write_text(json.dumps({"inputs": {}}), encoding="utf-8")
    env = {
        **_step_env(request.inputs("anthropic/claude")),
        "GITHUB_EVENT_NAME": "workflow_dispatch",
        "GITHUB_EVENT_PATH": str(event_path),
        "GITHUB_REPOSITORY": "o/r",
        "GITHUB_ACTOR": "archon-app[bot]",
        "GITHUB_RUN_ID": "42",
    }

    config = load_config(tmp_path, env=env)
    event = _event_from_env(env)

    assert config.use_github_token is True
    assert config.model_ref() == {"providerID": "anthropic", "modelID": "claude"}
    assert isinstance(event, UserEvent)
    assert (event.number, event.comment_id, event.actor) == (5, 11, "alice")
    assert not event.is_pull_request
    prompt = resolve_prompt(event, mentions=config.mentions, custom_prompt=config.prompt)
    assert prompt == "/archon fix the tests"


@pytest.mark.anyio
async def test_dispatch_reports_transport_failures_as_false() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"sha": "abc"})
        raise httpx.ConnectError("network down", request=request)

    async with GitHubClient("t", transport=httpx.MockTransport(handler)) as github:
        dispatched = await dispatch_agent(
            github,
            "o",
            "r",
            DispatchRequest(issue_number=5, comment_id=11),
            model="m",
            default_branch="main",
            settle_seconds=0,
        )
    assert dispatched is False
