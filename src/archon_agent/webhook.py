"""
Hosted intake service: receives GitHub App webhooks and dispatches the
managed agent workflow into the target repository.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import RunConfig
from .dispatcher import DispatchRequest, dispatch_agent
from .errors import ArchonError
from .integrations.github.client import GitHubClient
from .integrations.github.events import find_mention
from .logging_utils import log_event, setup_rotating_logger
from .quota import (
    InMemoryQuotaStore,
    Plan,
    QuotaStore,
    check_quota,
    get_plan,
    record_usage,
)

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
COMMAND_EVENTS = ("issue_comment", "pull_request_review_comment")
BILLING_URL = "https://archon.ai/billing"
DISPATCH_FAILED_MESSAGE = (
    "Failed to start the agent. Please make sure the Archon App has "
    "'Workflows' permissions enabled in your repo."
)

TokenProvider = Callable[[int], Awaitable[str]]
GitHubFactory = Callable[[str], GitHubClient]
PlanResolver = Callable[[str], Plan]


class Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ResponseModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class WebhookUser(Payload):
    id: int = 0
    login: str = ""


class WebhookComment(Payload):
    id: int
    body: str = ""
    user: WebhookUser = Field(default_factory=WebhookUser)


class WebhookThread(Payload):
    number: int
    title: str = ""
    # Present on issue objects that are really pull requests.
    pull_request: Optional[dict[str, Any]] = None


class WebhookRepository(Payload):
    name: str
    full_name: str = ""
    default_branch: str = "main"
    owner: WebhookUser


class WebhookInstallation(Payload):
    id: int


class CommentEventPayload(Payload):
    comment: WebhookComment
    repository: WebhookRepository
    issue: Optional[WebhookThread] = None
    pull_request: Optional[WebhookThread] = None
    installation: Optional[WebhookInstallation] = None

    @property
    def thread(self) -> Optional[WebhookThread]:
        return self.issue or self.pull_request

    @property
    def is_pull_request(self) -> bool:
        if self.pull_request is not None:
            return True
        return self.issue is not None and self.issue.pull_request is not None

    def dispatch_request(self) -> Optional[DispatchRequest]:
        thread = self.thread
        if thread is None:
            return None
        return DispatchRequest(
            issue_number=thread.number,
            comment_id=self.comment.id,
            comment_type="pr_review" if self.pull_request is not None else "issue",
            is_pull_request=self.is_pull_request,
            actor=self.comment.user.login,
            title=thread.title,
            prompt=self.comment.body,
        )


class WebhookResponse(ResponseModel):
    ok: bool = True
    skipped: Optional[bool] = None
    event: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a ``sha256=<hex>`` webhook signature in constant time."""
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={digest}", signature)


def _skipped(**fields) -> dict:
    return WebhookResponse(skipped=True, **fields).model_dump(exclude_none=True)


async def handle_command(
    payload: CommentEventPayload,
    *,
    config: RunConfig,
    token_provider: TokenProvider,
    quota_store: QuotaStore,
    github_factory: GitHubFactory,
    plan_resolver: PlanResolver,
    logger: logging.Logger,
    settle_seconds: float = 2.0,
) -> None:
    """Quota-check, acknowledge and dispatch one comment command."""
    repository = payload.repository
    owner = repository.owner.login
    repo = repository.name
    thread = payload.thread
    request = payload.dispatch_request()
    if thread is None or request is None or payload.installation is None:
        return
    org_id = str(repository.owner.id)
    comment_id: Optional[int] = None
    try:
        token = await token_provider(payload.installation.id)
    except (ArchonError, httpx.HTTPError) as exc:
        log_event(logger, logging.ERROR, "webhook.token_failed", exc=exc)
        return
    async with github_factory(token) as github:
        try:
            plan = plan_resolver(org_id)
            quota = check_quota(quota_store, org_id, plan)
            if not quota.allowed:
                log_event(
                    logger,
                    logging.INFO,
                    "webhook.quota_exceeded",
                    org_id=org_id,
                    used=quota.used,
                    limit=quota.limit,
                )
                await github.create_issue_comment(
                    owner,
                    repo,
                    thread.number,
                    f"You've used {quota.used}/{quota.limit} requests this month. "
                    f"[Upgrade your plan]({BILLING_URL})",
                )
                return

            created = await github.create_issue_comment(
                owner,
                repo,
                thread.number,
                f"Archon is picking up **{thread.title or 'this request'}**...",
            )
            comment_id = int(created["id"])
            model = config.webhook.model
            dispatched = await dispatch_agent(
                github,
                owner,
                repo,
                request,
                model=model,
                default_branch=repository.default_branch,
                workflow_file=config.webhook.workflow_file,
                settle_seconds=settle_seconds,
                logger=logger,
            )
            if dispatched:
                body = f"Archon is now processing your request using **{model}**."
            else:
                body = DISPATCH_FAILED_MESSAGE
            await github.update_issue_comment(owner, repo, comment_id, body)
            record_usage(
                quota_store,
                org_id=org_id,
                user_id=str(payload.comment.user.id),
                repo=repository.full_name or f"{owner}/{repo}",
                model=model,
            )
        except (ArchonError, httpx.HTTPError) as exc:
            log_event(logger, logging.ERROR, "webhook.command_failed", exc=exc)
            if comment_id is not None:
                await github.update_issue_comment(
                    owner, repo, comment_id, f"Error: {exc}"
                )


def build_webhook_routes() -> APIRouter:
    """Build routes for the GitHub App webhook."""
    router = APIRouter()

    @router.get("/health")
    async def health():
        return {"status": "ok"}

    @router.post("/webhook")
    async def receive_webhook(request: Request, background: BackgroundTasks):
        state = request.app.state
        body = await request.body()
        event = request.headers.get(EVENT_HEADER)
        if not verify_signature(
            body, request.headers.get(SIGNATURE_HEADER), state.config.webhook.secret
        ):
            log_event(state.logger, logging.WARNING, "webhook.signature_invalid", event=event)
            raise HTTPException(status_code=401, detail="Invalid signature")

        if event not in COMMAND_EVENTS:
            return _skipped(event=event)
        try:
            payload = CommentEventPayload.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}")

        if find_mention(payload.comment.body.strip(), state.config.mentions) is None:
            return _skipped(reason="no keyword found")
        if payload.installation is None:
            return _skipped(reason="no installation")

        log_event(
            state.logger,
            logging.INFO,
            "webhook.accepted",
            event=event,
            repo=payload.repository.full_name,
            installation_id=payload.installation.id,
        )
        background.add_task(
            handle_command,
            payload,
            config=state.config,
            token_provider=state.token_provider,
            quota_store=state.quota_store,
            github_factory=state.github_factory,
            plan_resolver=state.plan_resolver,
            logger=state.logger,
            settle_seconds=state.settle_seconds,
        )
        return WebhookResponse(message="Processing started").model_dump(exclude_none=True)

    return router


def create_webhook_app(
    config: RunConfig,
    *,
    token_provider: TokenProvider,
    quota_store: Optional[QuotaStore] = None,
    github_factory: Optional[GitHubFactory] = None,
    plan_resolver: Optional[PlanResolver] = None,
    settle_seconds: float = 2.0,
) -> FastAPI:
    app = FastAPI(redirect_slashes=False)
    app.state.config = config
    app.state.logger = setup_rotating_logger("archon_agent.webhook", config.log)
    app.state.token_provider = token_provider
    app.state.quota_store = quota_store or InMemoryQuotaStore()
    app.state.github_factory = github_factory or (
        lambda token: GitHubClient(token, base_url=config.github.api_url)
    )
    app.state.plan_resolver = plan_resolver or (lambda _org_id: get_plan(config.webhook.plan))
    app.state.settle_seconds = settle_seconds
    app.include_router(build_webhook_routes())
    return app


__all__ = [
    "CommentEventPayload",
    "build_webhook_routes",
    "create_webhook_app",
    "handle_command",
    "verify_signature",
]
