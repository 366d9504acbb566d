from __future__ import annotations

import logging
from typing import Optional

from ...errors import AuthorizationError, GitHubAPIError
from ...logging_utils import log_event
from .client import GitHubClient
from .events import TriggerEvent

ALLOWED_PERMISSIONS = ("admin", "write")


async def assert_permissions(
    github: GitHubClient,
    event: TriggerEvent,
    *,
    trusted_token: bool = False,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Require admin or write access for the triggering actor.

    Scheduled runs have no actor and runs on a caller-supplied token inherit
    trust from its issuer, so both skip the lookup.
    """
    log = logger or logging.getLogger(__name__)
    if event.actor is None or trusted_token:
        return
    try:
        permission = await github.get_collaborator_permission(
            event.owner, event.repo, event.actor
        )
    except GitHubAPIError as exc:
        raise AuthorizationError(
            f"Failed to check permissions for {event.actor}: {exc}"
        ) from exc
    log_event(
        log,
        logging.INFO,
        "github.permission.checked",
        actor=event.actor,
        permission=permission,
    )
    if permission not in ALLOWED_PERMISSIONS:
        raise AuthorizationError(f"User {event.actor} does not have write permissions")


__all__ = ["ALLOWED_PERMISSIONS", "assert_permissions"]
