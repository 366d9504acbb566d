from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from ...errors import GitCommandError, GitHubAPIError
from ...logging_utils import log_event
from .client import GitHubClient
from .events import RepoEvent, TriggerEvent, UserEvent

SOCIAL_CARD_BASE = "https://social-cards.sst.dev/opencode-share"
AGENT_REACTION = "eyes"
SEPARATOR = "&nbsp;&nbsp;|&nbsp;&nbsp;"

progress_logger = logging.getLogger("archon_agent.progress")


@dataclass(frozen=True)
class ShareInfo:
    share_id: str
    base_url: str
    title: str = ""
    version: str = ""
    model: str = ""

    @property
    def url(self) -> str:
        return f"{self.base_url}/s/{self.share_id}"


def build_run_url(owner: str, repo: str, run_id: str) -> str:
    return f"https://github.com/{owner}/{repo}/actions/runs/{run_id}"


def format_social_image(share: ShareInfo) -> str:
    title_b64 = base64.b64encode(share.title[:700].encode("utf-8")).decode("ascii")
    alt = quote(share.title[:50], safe="")
    src = (
        f"{SOCIAL_CARD_BASE}/{title_b64}.png"
        f"?model={share.model}&version={share.version}&id={share.share_id}"
    )
    return f'<a href="{share.url}"><img width="200" alt="{alt}" src="{src}" /></a>\n'


def format_footer(
    run_url: str, share: Optional[ShareInfo] = None, *, image: bool = False
) -> str:
    """Trailing links appended to every comment posted for a run."""
    image_tag = format_social_image(share) if share is not None and image else ""
    share_link = f"[archon session]({share.url}){SEPARATOR}" if share is not None else ""
    return f"\n\n{image_tag}{share_link}[github run]({run_url})"


def render_error(exc: BaseException) -> str:
    if isinstance(exc, GitCommandError):
        return exc.stderr.strip() or str(exc)
    return str(exc) or type(exc).__name__


class ResponseComposer:
    """Owns the tracking comment and the acknowledgement reaction for a run."""

    def __init__(
        self,
        github: GitHubClient,
        event: TriggerEvent,
        *,
        run_url: str,
        bot_username: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._github = github
        self.event = event
        self.run_url = run_url
        self.bot_username = bot_username
        self._logger = logger or logging.getLogger(__name__)
        self.comment_id: Optional[int] = None

    @property
    def issue_number(self) -> Optional[int]:
        if isinstance(self.event, UserEvent):
            return self.event.number
        return None

    def _reaction_target(self) -> Optional[tuple[str, int]]:
        event = self.event
        if isinstance(event, RepoEvent):
            return None
        if event.comment_id is not None:
            target = "pr_review_comment" if event.comment_type == "pr_review" else "issue_comment"
            return target, event.comment_id
        return "issue", event.number

    async def start(self) -> None:
        """Post the placeholder comment that later receives the final message."""
        number = self.issue_number
        if number is None:
            return
        created = await self._github.create_issue_comment(
            self.event.owner, self.event.repo, number, f"[Working...]({self.run_url})"
        )
        self.comment_id = int(created["id"])

    async def update(self, body: str) -> None:
        number = self.issue_number
        if number is None:
            progress_logger.info("%s", body)
            return
        if self.comment_id is not None:
            await self._github.update_issue_comment(
                self.event.owner, self.event.repo, self.comment_id, body
            )
            return
        created = await self._github.create_issue_comment(
            self.event.owner, self.event.repo, number, body
        )
        self.comment_id = int(created["id"])

    async def fail(self, exc: BaseException, footer: str) -> None:
        await self.update(f"{render_error(exc)}{footer}")

    async def add_reaction(self) -> None:
        target = self._reaction_target()
        if target is None:
            return
        kind, target_id = target
        try:
            await self._github.create_reaction(
                self.event.owner,
                self.event.repo,
                target=kind,
                target_id=target_id,
                content=AGENT_REACTION,
            )
        except GitHubAPIError as exc:
            log_event(self._logger, logging.WARNING, "github.reaction.add_failed", exc=exc)

    async def remove_reaction(self) -> None:
        target = self._reaction_target()
        if target is None:
            return
        kind, target_id = target
        try:
            reactions = await self._github.list_reactions(
                self.event.owner,
                self.event.repo,
                target=kind,
                target_id=target_id,
                content=AGENT_REACTION,
            )
            ours = next(
                (
                    r
                    for r in reactions
                    if (r.get("user") or {}).get("login") == self.bot_username
                ),
                None,
            )
            if ours is None:
                return
            await self._github.delete_reaction(
                self.event.owner,
                self.event.repo,
                target=kind,
                target_id=target_id,
                reaction_id=int(ours["id"]),
            )
        except GitHubAPIError as exc:
            log_event(
                self._logger, logging.WARNING, "github.reaction.remove_failed", exc=exc
            )


__all__ = [
    "AGENT_REACTION",
    "ResponseComposer",
    "ShareInfo",
    "build_run_url",
    "format_footer",
    "format_social_image",
    "render_error",
]
