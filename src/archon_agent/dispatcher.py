"""
Dispatch the managed agent workflow into a repository.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import GitHubAPIError
from .integrations.github.client import GitHubClient
from .logging_utils import log_event

WORKFLOW_DIR = ".github/workflows"
DEFAULT_WORKFLOW_FILE = "archon-managed.yml"

MANAGED_WORKFLOW = """\
name: archon-managed
on:
  workflow_dispatch:
    inputs:
      issue_number:
        description: 'Issue or pull request number'
        required: true
      comment_id:
        description: 'Triggering comment ID'
        required: true
      comment_type:
        description: 'issue or pr_review'
        required: false
        default: 'issue'
      is_pull_request:
        description: 'Whether the thread is a pull request'
        required: false
        default: 'false'
      actor:
        description: 'Login of the commenter'
        required: false
      title:
        description: 'Thread title'
        required: false
      prompt:
        description: 'Triggering comment body'
        required: false
      model:
        description: 'Model'
        required: true

jobs:
  archon:
    runs-on: ubuntu-latest
    permissions:
      contents: write
      pull-requests: write
      issues: write
    steps:
      - uses: actions/checkout@v4
        with:
          fetch-depth: 0
      - name: Run archon agent
        run: pipx run archon-agent run
        env:
          GITHUB_TOKEN: ${{ github.token }}
          USE_GITHUB_TOKEN: 'true'
          MODEL: ${{ github.event.inputs.model }}
          ISSUE_NUMBER: ${{ github.event.inputs.issue_number }}
          COMMENT_ID: ${{ github.event.inputs.comment_id }}
          COMMENT_TYPE: ${{ github.event.inputs.comment_type }}
          IS_PULL_REQUEST: ${{ github.event.inputs.is_pull_request }}
          TRIGGER_ACTOR: ${{ github.event.inputs.actor }}
          TRIGGER_TITLE: ${{ github.event.inputs.title }}
          TRIGGER_PROMPT: ${{ github.event.inputs.prompt }}
"""

# Workflow input name -> environment variable the managed job exports it as.
DISPATCH_INPUT_ENV = {
    "issue_number": "ISSUE_NUMBER",
    "comment_id": "COMMENT_ID",
    "comment_type": "COMMENT_TYPE",
    "is_pull_request": "IS_PULL_REQUEST",
    "actor": "TRIGGER_ACTOR",
    "title": "TRIGGER_TITLE",
    "prompt": "TRIGGER_PROMPT",
}


@dataclass(frozen=True)
class DispatchRequest:
    """The comment command a dispatched run acts on."""

    issue_number: int
    comment_id: int
    comment_type: str = "issue"
    is_pull_request: bool = False
    actor: str = ""
    title: str = ""
    prompt: str = ""

    def inputs(self, model: str) -> dict[str, str]:
        return {
            "issue_number": str(self.issue_number),
            "comment_id": str(self.comment_id),
            "comment_type": self.comment_type,
            "is_pull_request": "true" if self.is_pull_request else "false",
            "actor": self.actor,
            "title": self.title,
            "prompt": self.prompt,
            "model": model,
        }


def workflow_path(workflow_file: str) -> str:
    return f"{WORKFLOW_DIR}/{workflow_file}"


async def ensure_workflow(
    github: GitHubClient,
    owner: str,
    repo: str,
    *,
    workflow_file: str = DEFAULT_WORKFLOW_FILE,
    settle_seconds: float = 2.0,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Create the managed workflow when missing. Returns True if it was created."""
    path = workflow_path(workflow_file)
    if await github.get_contents(owner, repo, path) is not None:
        return False
    content = base64.b64encode(MANAGED_WORKFLOW.encode("utf-8")).decode("ascii")
    await github.put_contents(
        owner,
        repo,
        path,
        message="chore: add archon managed workflow",
        content_b64=content,
    )
    if logger is not None:
        log_event(logger, logging.INFO, "dispatch.workflow.created", repo=f"{owner}/{repo}")
    # GitHub needs a moment before a new workflow accepts dispatches.
    if settle_seconds > 0:
        await asyncio.sleep(settle_seconds)
    return True


async def dispatch_agent(
    github: GitHubClient,
    owner: str,
    repo: str,
    request: DispatchRequest,
    *,
    model: str,
    default_branch: str,
    workflow_file: str = DEFAULT_WORKFLOW_FILE,
    settle_seconds: float = 2.0,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """
    Trigger the managed workflow for one command.

    Returns False (after logging) instead of raising when GitHub rejects
    either the workflow install or the dispatch.
    """
    logger = logger or logging.getLogger(__name__)
    try:
        await ensure_workflow(
            github,
            owner,
            repo,
            workflow_file=workflow_file,
            settle_seconds=settle_seconds,
            logger=logger,
        )
        await github.create_workflow_dispatch(
            owner,
            repo,
            workflow_id=workflow_file,
            ref=default_branch,
            inputs=request.inputs(model),
        )
    except GitHubAPIError as exc:
        log_event(
            logger,
            logging.ERROR,
            "dispatch.failed",
            repo=f"{owner}/{repo}",
            status_code=exc.status_code,
            exc=exc,
        )
        return False
    log_event(
        logger,
        logging.INFO,
        "dispatch.started",
        repo=f"{owner}/{repo}",
        issue_number=request.issue_number,
        model=model,
    )
    return True


__all__ = [
    "DISPATCH_INPUT_ENV",
    "DispatchRequest",
    "MANAGED_WORKFLOW",
    "dispatch_agent",
    "ensure_workflow",
    "workflow_path",
]
