from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ...errors import GitHubAPIError, PullRequestRaceError
from ...git_workspace import GitWorkspace
from ...logging_utils import log_event
from .client import GitHubClient

MAX_TITLE_CHARS = 256

T = TypeVar("T")


@dataclass(frozen=True)
class PullRequestRecord:
    number: int
    head: str
    base: str
    existed: bool
    url: Optional[str] = None


def truncate_title(title: str) -> str:
    if len(title) <= MAX_TITLE_CHARS:
        return title
    return title[: MAX_TITLE_CHARS - 3] + "..."


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int = 1,
    delay_seconds: float = 5.0,
    retry_on: tuple[type[BaseException], ...] = (GitHubAPIError,),
    no_retry: tuple[type[BaseException], ...] = (),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Run ``operation`` with a bounded number of retries after a fixed delay."""
    attempt = 0
    while True:
        try:
            return await operation()
        except no_retry:
            raise
        except retry_on as exc:
            if attempt >= retries:
                raise
            attempt += 1
            if logger is not None:
                log_event(
                    logger,
                    logging.WARNING,
                    "github.retry",
                    attempt=attempt,
                    delay_seconds=delay_seconds,
                    exc=exc,
                )
            await asyncio.sleep(delay_seconds)


class PRReconciler:
    """Creates at most one pull request per (head, base) pair."""

    def __init__(
        self,
        github: GitHubClient,
        workspace: GitWorkspace,
        *,
        owner: str,
        repo: str,
        retry_delay_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._github = github
        self._workspace = workspace
        self.owner = owner
        self.repo = repo
        self._retry_delay_seconds = retry_delay_seconds
        self._logger = logger or logging.getLogger(__name__)

    async def find_existing(self, base: str, head: str) -> Optional[PullRequestRecord]:
        pulls = await with_retry(
            lambda: self._github.list_pull_requests(
                self.owner, self.repo, head=f"{self.owner}:{head}", base=base
            ),
            delay_seconds=self._retry_delay_seconds,
            logger=self._logger,
        )
        for pull in pulls:
            if isinstance(pull, dict) and pull.get("number") is not None:
                return _record(pull, head=head, base=base, existed=True)
        return None

    async def reconcile(
        self, base: str, head: str, title: str, body: str
    ) -> Optional[PullRequestRecord]:
        """
        Return the open PR for ``head`` into ``base``, creating it if needed.

        Returns None (a soft skip) when ``head`` has nothing to merge, including
        when GitHub reports that after our own commit check passed.
        """
        existing = await self.find_existing(base, head)
        if existing is not None:
            log_event(
                self._logger,
                logging.INFO,
                "github.pr.exists",
                number=existing.number,
                head=head,
                base=base,
            )
            return existing

        has_commits = await asyncio.to_thread(self._workspace.has_new_commits, base, head)
        if not has_commits:
            log_event(self._logger, logging.INFO, "github.pr.skipped", head=head, base=base)
            return None

        try:
            created = await with_retry(
                lambda: self._github.create_pull_request(
                    self.owner,
                    self.repo,
                    title=truncate_title(title),
                    head=head,
                    base=base,
                    body=body,
                ),
                delay_seconds=self._retry_delay_seconds,
                no_retry=(PullRequestRaceError,),
                logger=self._logger,
            )
        except PullRequestRaceError as exc:
            log_event(
                self._logger,
                logging.INFO,
                "github.pr.skipped",
                head=head,
                base=base,
                reason="no_commits",
                exc=exc,
            )
            return None
        record = _record(created, head=head, base=base, existed=False)
        log_event(
            self._logger,
            logging.INFO,
            "github.pr.created",
            number=record.number,
            head=head,
            base=base,
        )
        return record


def _record(pull: Any, *, head: str, base: str, existed: bool) -> PullRequestRecord:
    return PullRequestRecord(
        number=int(pull["number"]),
        head=head,
        base=base,
        existed=existed,
        url=pull.get("html_url"),
    )


__all__ = ["MAX_TITLE_CHARS", "PRReconciler", "PullRequestRecord", "truncate_title", "with_retry"]
