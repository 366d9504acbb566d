from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .agents.opencode.client import OpenCodeClient
from .agents.opencode.session import SessionOrchestrator, probe_runtime
from .config import RunConfig
from .errors import GitHubAPIError
from .git_workspace import (
    GitWorkspace,
    GitWorkspaceState,
    Topology,
    select_topology,
)
from .integrations.github.attachments import DownloadedFile, extract_attachments
from .integrations.github.client import GitHubClient
from .integrations.github.comments import (
    ResponseComposer,
    ShareInfo,
    build_run_url,
    format_footer,
)
from .integrations.github.credentials import CredentialLease, CredentialLifecycle
from .integrations.github.events import RepoEvent, TriggerEvent, UserEvent, resolve_prompt
from .integrations.github.permissions import assert_permissions
from .integrations.github.pr import PRReconciler, PullRequestRecord
from .integrations.github.prompts import (
    build_issue_context,
    build_pull_request_context,
    fetch_issue,
    fetch_pull_request,
    pull_request_ref,
)
from .logging_utils import log_event
from .prompt import ResolvedPrompt, append_context

REPO_EVENT_TITLE_FALLBACK = "Scheduled/Dispatch task changes"

GitHubFactory = Callable[[str], GitHubClient]


@dataclass
class RunContext:
    """Everything one invocation owns; threaded explicitly through each step."""

    config: RunConfig
    event: TriggerEvent
    lease: CredentialLease
    github: GitHubClient
    workspace: GitWorkspace
    session: SessionOrchestrator
    composer: ResponseComposer
    reconciler: PRReconciler
    run_url: str
    default_branch: str = "main"
    private: bool = False
    share: Optional[ShareInfo] = None

    def footer(self, *, image: bool = False) -> str:
        return format_footer(self.run_url, self.share, image=image)


@dataclass(frozen=True)
class RunOutcome:
    response: str
    message: str
    state: Optional[GitWorkspaceState] = None
    pull_request: Optional[PullRequestRecord] = None


class RunOrchestrator:
    def __init__(
        self,
        config: RunConfig,
        event: TriggerEvent,
        *,
        credentials: CredentialLifecycle,
        agent_client: OpenCodeClient,
        workspace: GitWorkspace,
        github_factory: Optional[GitHubFactory] = None,
        now: Optional[datetime] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.event = event
        self.credentials = credentials
        self.agent_client = agent_client
        self.workspace = workspace
        self.github_factory = github_factory or (
            lambda token: GitHubClient(token, base_url=config.github.api_url)
        )
        self._now = now
        self._logger = logger or logging.getLogger(__name__)

    async def run(self) -> RunOutcome:
        event = self.event
        prompt = resolve_prompt(
            event, mentions=self.config.mentions, custom_prompt=self.config.prompt
        )
        run_id = self.config.require_run_id()
        session = SessionOrchestrator(
            self.agent_client,
            model=self.config.model_ref(),
            agent=self.config.agent,
            variant=self.config.variant,
            completion=self.config.opencode.completion,
            timeout_seconds=self.config.opencode.session_timeout_seconds,
            logger=self._logger,
        )
        log_event(
            self._logger,
            logging.INFO,
            "run.started",
            event_name=event.event_name,
            kind=event.kind,
            repo=f"{event.owner}/{event.repo}",
            actor=event.actor,
        )
        probe = probe_runtime(
            self.agent_client,
            attempts=self.config.opencode.probe_attempts,
            logger=self._logger,
        )
        run_url = build_run_url(event.owner, event.repo, run_id)
        async with self.credentials.lease(alongside=probe) as lease:
            async with self.github_factory(lease.token) as github:
                ctx = RunContext(
                    config=self.config,
                    event=event,
                    lease=lease,
                    github=github,
                    workspace=self.workspace,
                    session=session,
                    composer=ResponseComposer(
                        github,
                        event,
                        run_url=run_url,
                        bot_username=self.config.github.bot_username,
                        logger=self._logger,
                    ),
                    reconciler=PRReconciler(
                        github,
                        self.workspace,
                        owner=event.owner,
                        repo=event.repo,
                        retry_delay_seconds=self.config.github.pr_retry_delay_seconds,
                        logger=self._logger,
                    ),
                    run_url=run_url,
                )
                try:
                    return await self._run_with_context(ctx, prompt)
                except Exception as exc:
                    log_event(self._logger, logging.ERROR, "run.failed", exc=exc)
                    if ctx.composer.issue_number is not None:
                        await self._report_failure(ctx, exc)
                    raise
                finally:
                    await session.close()

    async def _run_with_context(self, ctx: RunContext, prompt: str) -> RunOutcome:
        event = ctx.event
        await assert_permissions(
            ctx.github,
            event,
            trusted_token=self.config.use_github_token,
            logger=self._logger,
        )
        await ctx.composer.add_reaction()
        await ctx.composer.start()

        repository = await ctx.github.get_repository(event.owner, event.repo)
        ctx.default_branch = str(repository.get("default_branch") or "main")
        ctx.private = bool(repository.get("private"))

        resolved = await extract_attachments(
            prompt, lambda url: _download(ctx.github, url), logger=self._logger
        )
        created = await ctx.session.create(title=_session_title(event))
        ctx.share = await self._share(ctx)
        log_event(
            self._logger,
            logging.INFO,
            "run.session.ready",
            session_id=created.id,
            shared=ctx.share is not None,
        )

        if isinstance(event, RepoEvent):
            outcome = await self._run_repo_event(ctx, event, resolved)
        elif event.is_pull_request:
            outcome = await self._run_pull_request(ctx, event, resolved)
        else:
            outcome = await self._run_issue(ctx, event, resolved)
        await ctx.composer.remove_reaction()
        log_event(
            self._logger,
            logging.INFO,
            "run.completed",
            dirty=outcome.state.dirty if outcome.state else False,
            pull_request=outcome.pull_request.number if outcome.pull_request else None,
        )
        return outcome

    async def _report_failure(self, ctx: RunContext, exc: BaseException) -> None:
        try:
            await ctx.composer.fail(exc, ctx.footer())
        except GitHubAPIError as report_exc:
            log_event(
                self._logger,
                logging.WARNING,
                "run.failure_comment_failed",
                exc=report_exc,
            )
        await ctx.composer.remove_reaction()

    async def _share(self, ctx: RunContext) -> Optional[ShareInfo]:
        share = self.config.share
        if share is False or (share is None and ctx.private):
            return None
        share_id = await ctx.session.share()
        session = ctx.session.session
        return ShareInfo(
            share_id=share_id,
            base_url=self.config.share_base_url,
            title=session.title if session else "",
            version=session.version if session else "",
            model=self.config.model or "",
        )

    async def _checkout(
        self, ctx: RunContext, topology: Topology, **kwargs: Any
    ) -> GitWorkspaceState:
        return await asyncio.to_thread(
            ctx.workspace.checkout, topology, event=ctx.event, now=self._now, **kwargs
        )

    async def _push(
        self,
        ctx: RunContext,
        state: GitWorkspaceState,
        response: str,
        *,
        fallback_title: str,
        co_author: Optional[str],
    ) -> str:
        summary = await ctx.session.summarize_title(response, fallback=fallback_title)
        await asyncio.to_thread(
            ctx.workspace.commit_and_push, state, summary, co_author=co_author
        )
        return summary

    async def _run_repo_event(
        self, ctx: RunContext, event: RepoEvent, resolved: ResolvedPrompt
    ) -> RunOutcome:
        state = await self._checkout(ctx, Topology.REPO_EVENT_BRANCH)
        response = await ctx.session.run(resolved.text, resolved.attachments)
        await asyncio.to_thread(ctx.workspace.detect_dirty, state)
        pull_request = None
        message = response
        if state.switched_branch:
            log_event(self._logger, logging.INFO, "run.agent_managed_branch", branch=state.branch)
        elif state.dirty:
            summary = await self._push(
                ctx,
                state,
                response,
                fallback_title=REPO_EVENT_TITLE_FALLBACK,
                co_author=None if event.is_schedule else event.actor,
            )
            trigger = "scheduled workflow" if event.is_schedule else "workflow_dispatch"
            pull_request = await ctx.reconciler.reconcile(
                ctx.default_branch,
                state.branch,
                summary,
                f"{response}\n\nTriggered by {trigger}{ctx.footer(image=True)}",
            )
            if pull_request is not None:
                message = f"Created PR #{pull_request.number}"
        await ctx.composer.update(f"{message}{ctx.footer(image=True)}")
        return RunOutcome(response=response, message=message, state=state, pull_request=pull_request)

    async def _run_pull_request(
        self, ctx: RunContext, event: UserEvent, resolved: ResolvedPrompt
    ) -> RunOutcome:
        pr_data = await fetch_pull_request(ctx.github, event.owner, event.repo, event.number)
        ref = pull_request_ref(pr_data, event.number)
        state = await self._checkout(ctx, select_topology(event, ref), pr=ref)
        context = build_pull_request_context(pr_data, event.comment_id)
        response = await ctx.session.run(
            append_context(resolved.text, context), resolved.attachments
        )
        await asyncio.to_thread(ctx.workspace.detect_dirty, state)
        if state.switched_branch:
            log_event(self._logger, logging.INFO, "run.agent_managed_branch", branch=state.branch)
        elif state.dirty:
            await self._push(
                ctx,
                state,
                response,
                fallback_title=f"Fix issue: {event.title}",
                co_author=event.actor,
            )
        already_shared = ctx.share is not None and any(
            ctx.share.url in str(comment.get("body") or "")
            for comment in (pr_data.get("comments") or {}).get("nodes") or []
            if isinstance(comment, dict)
        )
        await ctx.composer.update(f"{response}{ctx.footer(image=not already_shared)}")
        return RunOutcome(response=response, message=response, state=state)

    async def _run_issue(
        self, ctx: RunContext, event: UserEvent, resolved: ResolvedPrompt
    ) -> RunOutcome:
        state = await self._checkout(ctx, Topology.NEW_ISSUE_BRANCH)
        issue = await fetch_issue(ctx.github, event.owner, event.repo, event.number)
        context = build_issue_context(issue, event.comment_id)
        response = await ctx.session.run(
            append_context(resolved.text, context), resolved.attachments
        )
        await asyncio.to_thread(ctx.workspace.detect_dirty, state)
        pull_request = None
        message = response
        if state.dirty and not state.switched_branch:
            summary = await self._push(
                ctx,
                state,
                response,
                fallback_title=f"Fix issue: {event.title}",
                co_author=event.actor,
            )
            pull_request = await ctx.reconciler.reconcile(
                ctx.default_branch,
                state.branch,
                summary,
                f"{response}\n\nCloses #{event.number}{ctx.footer(image=True)}",
            )
            if pull_request is not None:
                message = f"Created PR #{pull_request.number}"
        await ctx.composer.update(f"{message}{ctx.footer(image=True)}")
        return RunOutcome(response=response, message=message, state=state, pull_request=pull_request)


async def _download(github: GitHubClient, url: str) -> DownloadedFile:
    response = await github.download(url)
    return DownloadedFile(
        content=response.content, content_type=response.headers.get("content-type")
    )


def _session_title(event: TriggerEvent) -> str:
    if isinstance(event, UserEvent):
        return f"{event.owner}/{event.repo}#{event.number}"
    return f"{event.owner}/{event.repo} {event.event_name}"


__all__ = ["RunContext", "RunOrchestrator", "RunOutcome"]
