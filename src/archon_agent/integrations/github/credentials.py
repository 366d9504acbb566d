from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Mapping, Optional

import httpx

from ...errors import GitCommandError, TokenExchangeError
from ...git_workspace import run_git
from ...logging_utils import log_event
from .client import API_BASE, DEFAULT_HEADERS

OIDC_AUDIENCE = "archon-github-action"
EXTRAHEADER_KEY = "http.https://github.com/.extraheader"
PAT_PREFIX = "github_pat_"

SOURCE_OIDC = "oidc"
SOURCE_PAT = "pat"
SOURCE_DIRECT = "direct"


@dataclass
class CredentialLease:
    token: str
    source: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    previous_extraheader: Optional[str] = None
    configured_git: bool = False
    released: bool = False

    @property
    def revocable(self) -> bool:
        return self.source != SOURCE_DIRECT


def basic_auth_header(token: str) -> str:
    encoded = base64.b64encode(f"x-access-token:{token}".encode("utf-8")).decode("ascii")
    return f"AUTHORIZATION: basic {encoded}"


class CredentialLifecycle:
    """Acquires the installation token for a run and guarantees its release.

    Use :meth:`lease` so the prior git credential header is restored and the
    token revoked on every exit path.
    """

    def __init__(
        self,
        *,
        owner: str,
        repo: str,
        workspace_root: Path,
        oidc_base_url: str,
        bot_username: str,
        use_github_token: bool = False,
        github_token: Optional[str] = None,
        pat: Optional[str] = None,
        configure_git: bool = True,
        api_url: str = API_BASE,
        env: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.workspace_root = workspace_root
        self.oidc_base_url = oidc_base_url.rstrip("/")
        self.bot_username = bot_username
        self.use_github_token = use_github_token
        self.github_token = github_token
        self.pat = pat
        self.should_configure_git = configure_git
        self.api_url = api_url.rstrip("/")
        self._env = os.environ if env is None else env
        self._transport = transport
        self._logger = logger or logging.getLogger(__name__)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    async def acquire(self) -> CredentialLease:
        if self.use_github_token:
            if not self.github_token:
                raise TokenExchangeError(
                    'Environment variable "GITHUB_TOKEN" is required when use_github_token is enabled'
                )
            lease = CredentialLease(token=self.github_token, source=SOURCE_DIRECT)
        else:
            identity = self.pat or await self._fetch_oidc_token()
            token = await self._exchange(identity)
            source = SOURCE_PAT if identity.startswith(PAT_PREFIX) else SOURCE_OIDC
            lease = CredentialLease(token=token, source=source)
        log_event(
            self._logger,
            logging.INFO,
            "github.credentials.acquired",
            source=lease.source,
        )
        return lease

    async def _fetch_oidc_token(self) -> str:
        request_url = self._env.get("ACTIONS_ID_TOKEN_REQUEST_URL")
        request_token = self._env.get("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
        if not request_url or not request_token:
            raise TokenExchangeError(
                "Could not fetch an OIDC token. Make sure to add `id-token: write` "
                "to your workflow permissions."
            )
        async with self._http() as client:
            try:
                response = await client.get(
                    request_url,
                    params={"audience": OIDC_AUDIENCE},
                    headers={"Authorization": f"Bearer {request_token}"},
                )
            except httpx.HTTPError as exc:
                raise TokenExchangeError(f"Failed to get OIDC token: {exc}") from exc
        if response.is_error:
            raise TokenExchangeError(
                f"Failed to get OIDC token: {response.status_code}",
                status_code=response.status_code,
            )
        value = response.json().get("value")
        if not isinstance(value, str) or not value:
            raise TokenExchangeError("OIDC token response did not include a value")
        return value

    async def _exchange(self, identity_token: str) -> str:
        if identity_token.startswith(PAT_PREFIX):
            url = f"{self.oidc_base_url}/exchange_github_app_token_with_pat"
            body: Optional[dict[str, str]] = {"owner": self.owner, "repo": self.repo}
        else:
            url = f"{self.oidc_base_url}/exchange_github_app_token"
            body = None
        async with self._http() as client:
            try:
                response = await client.post(
                    url,
                    json=body,
                    headers={"Authorization": f"Bearer {identity_token}"},
                )
            except httpx.HTTPError as exc:
                raise TokenExchangeError(f"App token exchange failed: {exc}") from exc
        if response.is_error:
            try:
                error = response.json().get("error")
            except ValueError:
                error = response.text
            raise TokenExchangeError(
                f"App token exchange failed: {response.status_code} "
                f"{response.reason_phrase} - {error}",
                status_code=response.status_code,
            )
        token = response.json().get("token")
        if not isinstance(token, str) or not token:
            raise TokenExchangeError("App token exchange returned no token")
        return token

    def configure_git(self, lease: CredentialLease) -> None:
        """Install the token as the git credential header and set the bot identity."""
        if lease.source == SOURCE_DIRECT or not self.should_configure_git:
            return
        existing = run_git(
            ["config", "--local", "--get", EXTRAHEADER_KEY],
            cwd=self.workspace_root,
            check=False,
        )
        if existing.returncode == 0:
            lease.previous_extraheader = (existing.stdout or "").strip()
            run_git(
                ["config", "--local", "--unset-all", EXTRAHEADER_KEY],
                cwd=self.workspace_root,
            )
        lease.configured_git = True
        run_git(
            ["config", "--local", EXTRAHEADER_KEY, basic_auth_header(lease.token)],
            cwd=self.workspace_root,
        )
        run_git(["config", "--global", "user.name", self.bot_username], cwd=self.workspace_root)
        run_git(
            [
                "config",
                "--global",
                "user.email",
                f"{self.bot_username}@users.noreply.github.com",
            ],
            cwd=self.workspace_root,
        )

    def _restore_git(self, lease: CredentialLease) -> None:
        if lease.previous_extraheader is None:
            return
        run_git(
            ["config", "--local", EXTRAHEADER_KEY, lease.previous_extraheader],
            cwd=self.workspace_root,
        )

    async def _revoke(self, lease: CredentialLease) -> None:
        async with self._http() as client:
            response = await client.delete(
                f"{self.api_url}/installation/token",
                headers={**DEFAULT_HEADERS, "Authorization": f"Bearer {lease.token}"},
            )
        if response.is_error:
            raise TokenExchangeError(
                f"Token revocation failed: {response.status_code}",
                status_code=response.status_code,
            )

    async def release(self, lease: CredentialLease) -> None:
        """Restore git config and revoke the token. Never raises for revoke failures."""
        if lease.released:
            return
        lease.released = True
        try:
            if lease.configured_git:
                await asyncio.to_thread(self._restore_git, lease)
        except GitCommandError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "github.credentials.restore_failed",
                exc=exc,
            )
        if not lease.revocable:
            return
        try:
            await self._revoke(lease)
        except (httpx.HTTPError, TokenExchangeError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "github.credentials.revoke_failed",
                exc=exc,
            )
            return
        log_event(self._logger, logging.INFO, "github.credentials.revoked")

    @contextlib.asynccontextmanager
    async def lease(
        self, alongside: Optional[Awaitable[Any]] = None
    ) -> AsyncIterator[CredentialLease]:
        """Hold a lease for the duration of the block.

        ``alongside`` runs concurrently with acquisition and both are joined
        before the block is entered; if it fails, the freshly acquired lease is
        still released.
        """
        if alongside is None:
            lease = await self.acquire()
            pending_error: Optional[BaseException] = None
        else:
            acquired, other = await asyncio.gather(
                self.acquire(), alongside, return_exceptions=True
            )
            if isinstance(acquired, BaseException):
                raise acquired
            lease = acquired
            pending_error = other if isinstance(other, BaseException) else None
        try:
            if pending_error is not None:
                raise pending_error
            await asyncio.to_thread(self.configure_git, lease)
            yield lease
        finally:
            await self.release(lease)


__all__ = [
    "CredentialLease",
    "CredentialLifecycle",
    "EXTRAHEADER_KEY",
    "OIDC_AUDIENCE",
    "basic_auth_header",
]
