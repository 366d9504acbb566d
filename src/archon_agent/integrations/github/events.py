from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Sequence, Union

from ...errors import PromptValidationError, UnsupportedEventError

USER_EVENTS = ("issue_comment", "pull_request_review_comment", "issues", "pull_request")
REPO_EVENTS = ("schedule", "workflow_dispatch")
DEFAULT_MENTIONS = ("/archon", "/ac")

SUMMARIZE_THREAD_PROMPT = "Summarize this thread"
REVIEW_PR_PROMPT = "Review this pull request"
DISPATCH_DEFAULT_PROMPT = "Summarize this issue and suggest next steps."


@dataclass(frozen=True)
class ReviewContext:
    file: str
    line: Optional[int]
    diff_hunk: str


@dataclass(frozen=True)
class UserEvent:
    kind: ClassVar[str] = "user"

    event_name: str
    owner: str
    repo: str
    actor: str
    run_id: str
    number: int
    is_pull_request: bool
    body: str
    title: str = ""
    comment_id: Optional[int] = None
    comment_type: Optional[str] = None
    review_context: Optional[ReviewContext] = None
    payload: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_comment_event(self) -> bool:
        return self.comment_id is not None

    @property
    def is_dispatched(self) -> bool:
        return self.event_name == "workflow_dispatch"


@dataclass(frozen=True)
class RepoEvent:
    kind: ClassVar[str] = "repo"

    event_name: str
    owner: str
    repo: str
    actor: Optional[str]
    run_id: str
    payload: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_schedule(self) -> bool:
        return self.event_name == "schedule"


TriggerEvent = Union[UserEvent, RepoEvent]


def _mapping(payload: Any, key: str) -> dict[str, Any]:
    value = payload.get(key) if isinstance(payload, dict) else None
    return value if isinstance(value, dict) else {}


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def classify_event(
    event_name: str,
    payload: dict[str, Any],
    *,
    owner: str,
    repo: str,
    actor: Optional[str],
    run_id: str,
) -> TriggerEvent:
    """Turn a raw webhook/Actions payload into a trigger descriptor."""
    if event_name in REPO_EVENTS:
        inputs = _mapping(payload, "inputs")
        issue_number = _optional_int(inputs.get("issue_number"))
        if event_name == "workflow_dispatch" and issue_number is not None:
            return _dispatched_event(
                inputs, issue_number, owner=owner, repo=repo, actor=actor, run_id=run_id
            )
        return RepoEvent(
            event_name=event_name,
            owner=owner,
            repo=repo,
            actor=None if event_name == "schedule" else actor,
            run_id=run_id,
            payload=payload,
        )
    if event_name not in USER_EVENTS:
        raise UnsupportedEventError(event_name)
    if not actor:
        raise UnsupportedEventError(f"{event_name} (missing actor)")

    comment = _mapping(payload, "comment")
    if event_name in ("issue_comment", "issues"):
        issue = _mapping(payload, "issue")
        is_comment = event_name == "issue_comment"
        return UserEvent(
            event_name=event_name,
            owner=owner,
            repo=repo,
            actor=actor,
            run_id=run_id,
            number=int(issue["number"]),
            is_pull_request="pull_request" in issue,
            body=str((comment if is_comment else issue).get("body") or ""),
            title=str(issue.get("title") or ""),
            comment_id=int(comment["id"]) if is_comment else None,
            comment_type="issue" if is_comment else None,
            payload=payload,
        )

    pull_request = _mapping(payload, "pull_request")
    is_review = event_name == "pull_request_review_comment"
    review_context = None
    if is_review:
        review_context = ReviewContext(
            file=str(comment.get("path") or ""),
            line=_optional_int(comment.get("line") or comment.get("original_line")),
            diff_hunk=str(comment.get("diff_hunk") or ""),
        )
    return UserEvent(
        event_name=event_name,
        owner=owner,
        repo=repo,
        actor=actor,
        run_id=run_id,
        number=int(pull_request["number"]),
        is_pull_request=True,
        body=str((comment if is_review else pull_request).get("body") or ""),
        title=str(pull_request.get("title") or ""),
        comment_id=int(comment["id"]) if is_review else None,
        comment_type="pr_review" if is_review else None,
        review_context=review_context,
        payload=payload,
    )


def _dispatched_event(
    inputs: dict[str, Any],
    issue_number: int,
    *,
    owner: str,
    repo: str,
    actor: Optional[str],
    run_id: str,
) -> UserEvent:
    """A managed-workflow run acting on the comment that the intake service accepted."""
    commenter = str(inputs.get("actor") or actor or "")
    if not commenter:
        raise UnsupportedEventError("workflow_dispatch (missing actor)")
    comment_id = _optional_int(inputs.get("comment_id"))
    comment_type = str(inputs.get("comment_type") or "issue")
    is_pull_request = comment_type == "pr_review" or (
        str(inputs.get("is_pull_request") or "").lower() == "true"
    )
    return UserEvent(
        event_name="workflow_dispatch",
        owner=owner,
        repo=repo,
        actor=commenter,
        run_id=run_id,
        number=issue_number,
        is_pull_request=is_pull_request,
        body=str(inputs.get("prompt") or ""),
        title=str(inputs.get("title") or ""),
        comment_id=comment_id,
        comment_type=comment_type if comment_id is not None else None,
        payload={"inputs": inputs},
    )


def _mention_pattern(token: str) -> re.Pattern[str]:
    # A mention must not be glued to a surrounding word or path segment.
    return re.compile(rf"(?<![\w/@-]){re.escape(token)}(?![\w-])", re.IGNORECASE)


def find_mention(body: str, mentions: Sequence[str] = DEFAULT_MENTIONS) -> Optional[str]:
    """Return the first mention token present in ``body`` as a whole word."""
    for token in mentions:
        if _mention_pattern(token).search(body or ""):
            return token
    return None


def is_exact_mention(body: str, mentions: Sequence[str] = DEFAULT_MENTIONS) -> bool:
    lowered = (body or "").strip().lower()
    return any(lowered == token.lower() for token in mentions)


def _format_mentions(mentions: Sequence[str]) -> str:
    return " or ".join(f"`{token}`" for token in mentions)


def resolve_prompt(
    event: TriggerEvent,
    *,
    mentions: Sequence[str] = DEFAULT_MENTIONS,
    custom_prompt: Optional[str] = None,
) -> str:
    """
    Derive the user prompt for a trigger.

    Repo events have no text to inspect and require ``custom_prompt``. User
    events must mention one of ``mentions``; a configured ``custom_prompt``
    then replaces the derived text. Dispatched runs were already screened by
    the intake service, so their forwarded comment body is used as is.
    """
    if isinstance(event, RepoEvent):
        if not custom_prompt:
            raise PromptValidationError(
                f"PROMPT input is required for {event.event_name} events"
            )
        return custom_prompt

    body = event.body.strip()
    if event.is_dispatched and not find_mention(body, mentions):
        # The intake service matched the mention before dispatching.
        return custom_prompt or body or DISPATCH_DEFAULT_PROMPT
    context = event.review_context
    if is_exact_mention(body, mentions):
        prompt = _canned_prompt(event)
    elif find_mention(body, mentions):
        prompt = body
        if context is not None:
            prompt = (
                f"{body}\n\nContext: You are reviewing a comment on file "
                f'"{context.file}" at line {_line_label(context)}.\n\n'
                f"Diff context:\n{context.diff_hunk}"
            )
    else:
        noun = "Comments" if event.is_comment_event else "Descriptions"
        raise PromptValidationError(
            f"{noun} must mention {_format_mentions(mentions)}"
        )
    return custom_prompt or prompt


def _line_label(context: ReviewContext) -> str:
    return str(context.line) if context.line is not None else "?"


def _canned_prompt(event: UserEvent) -> str:
    context = event.review_context
    if context is not None:
        return (
            "Review this code change and suggest improvements for the commented lines:"
            f"\n\nFile: {context.file}\nLines: {_line_label(context)}\n\n{context.diff_hunk}"
        )
    if event.event_name == "pull_request":
        return REVIEW_PR_PROMPT
    return SUMMARIZE_THREAD_PROMPT


__all__ = [
    "DISPATCH_DEFAULT_PROMPT",
    "DEFAULT_MENTIONS",
    "REPO_EVENTS",
    "RepoEvent",
    "ReviewContext",
    "TriggerEvent",
    "USER_EVENTS",
    "UserEvent",
    "classify_event",
    "find_mention",
    "is_exact_mention",
    "resolve_prompt",
]
