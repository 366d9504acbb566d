"""GitHub REST/GraphQL client."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from ...errors import GitHubAPIError, PullRequestRaceError

API_BASE = "https://api.github.com"
DEFAULT_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}
NO_COMMITS_MARKER = "No commits between"
# Reported for requests that never got an HTTP response.
TRANSPORT_ERROR_STATUS = 503

# Reaction endpoints differ per target kind.
_REACTION_PATHS = {
    "issue_comment": "/repos/{owner}/{repo}/issues/comments/{id}/reactions",
    "pr_review_comment": "/repos/{owner}/{repo}/pulls/comments/{id}/reactions",
    "issue": "/repos/{owner}/{repo}/issues/{id}/reactions",
}


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    if not isinstance(payload, dict):
        return str(payload)
    message = str(payload.get("message") or "")
    errors = payload.get("errors")
    if isinstance(errors, list):
        details = [
            str(err.get("message") if isinstance(err, dict) else err)
            for err in errors
            if err
        ]
        details = [d for d in details if d and d != "None"]
        if details:
            message = f"{message} ({'; '.join(details)})" if message else "; ".join(details)
    return message


class GitHubClient:
    """Async GitHub API client bound to one installation token."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = API_BASE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            token: Installation (or personal) access token.
            base_url: REST API root; GraphQL is served from ``{base_url}/graphql``.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={**DEFAULT_HEADERS, "Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise GitHubAPIError(
                f"GitHub API {method} {url} failed: {str(exc) or type(exc).__name__}",
                status_code=TRANSPORT_ERROR_STATUS,
            ) from exc

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Make an API request.

        Args:
            method: HTTP method
            path: API path (without base URL)
            **kwargs: Additional arguments for httpx

        Returns:
            Decoded JSON body, or None for empty responses.

        Raises:
            GitHubAPIError: If the request fails.
        """
        response = await self._send(method, path, **kwargs)
        if response.is_error:
            detail = _error_detail(response)
            raise GitHubAPIError(
                f"GitHub API {method} {path} failed: {response.status_code} {detail}".rstrip(),
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    async def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """
        Run a GraphQL query.

        Returns:
            The ``data`` member of the response.

        Raises:
            GitHubAPIError: On transport failures or GraphQL ``errors``.
        """
        payload = await self._request(
            "POST", "/graphql", json={"query": query, "variables": variables}
        )
        if not isinstance(payload, dict):
            raise GitHubAPIError("GraphQL response was empty", status_code=502)
        errors = payload.get("errors")
        if errors:
            messages = [
                str(err.get("message")) for err in errors if isinstance(err, dict)
            ]
            raise GitHubAPIError(
                f"GraphQL query failed: {'; '.join(messages) or errors}",
                status_code=502,
            )
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def get_repository(self, owner: str, repo: str) -> dict[str, Any]:
        return await self._request("GET", f"/repos/{owner}/{repo}")

    async def get_collaborator_permission(
        self, owner: str, repo: str, username: str
    ) -> str:
        """
        Look up a user's permission level on a repository.

        Returns:
            One of ``admin``, ``write``, ``read`` or ``none``.
        """
        data = await self._request(
            "GET", f"/repos/{owner}/{repo}/collaborators/{username}/permission"
        )
        permission = data.get("permission") if isinstance(data, dict) else None
        return str(permission or "none")

    async def create_issue_comment(
        self, owner: str, repo: str, number: int, body: str
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{number}/comments",
            json={"body": body},
        )

    async def update_issue_comment(
        self, owner: str, repo: str, comment_id: int, body: str
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/issues/comments/{comment_id}",
            json={"body": body},
        )

    async def create_reaction(
        self, owner: str, repo: str, *, target: str, target_id: int, content: str
    ) -> dict[str, Any]:
        path = _REACTION_PATHS[target].format(owner=owner, repo=repo, id=target_id)
        return await self._request("POST", path, json={"content": content})

    async def list_reactions(
        self, owner: str, repo: str, *, target: str, target_id: int, content: str
    ) -> list[dict[str, Any]]:
        path = _REACTION_PATHS[target].format(owner=owner, repo=repo, id=target_id)
        data = await self._request("GET", path, params={"content": content})
        return data if isinstance(data, list) else []

    async def delete_reaction(
        self, owner: str, repo: str, *, target: str, target_id: int, reaction_id: int
    ) -> None:
        path = _REACTION_PATHS[target].format(owner=owner, repo=repo, id=target_id)
        await self._request("DELETE", f"{path}/{reaction_id}")

    async def list_pull_requests(
        self, owner: str, repo: str, *, head: str, base: str, state: str = "open"
    ) -> list[dict[str, Any]]:
        """
        List pull requests filtered by head and base.

        Args:
            head: ``owner:branch`` qualified head ref.
            base: Base branch name.
            state: PR state filter.
        """
        data = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": head, "base": base, "state": state},
        )
        return data if isinstance(data, list) else []

    async def create_pull_request(
        self, owner: str, repo: str, *, title: str, head: str, base: str, body: str
    ) -> dict[str, Any]:
        """
        Open a pull request.

        Raises:
            PullRequestRaceError: GitHub reports no commits between base and head.
            GitHubAPIError: Any other failure.
        """
        try:
            return await self._request(
                "POST",
                f"/repos/{owner}/{repo}/pulls",
                json={"title": title, "head": head, "base": base, "body": body},
            )
        except GitHubAPIError as exc:
            if NO_COMMITS_MARKER in str(exc):
                raise PullRequestRaceError(str(exc), status_code=exc.status_code) from exc
            raise

    async def get_contents(
        self, owner: str, repo: str, path: str, *, ref: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Return file metadata, or None when the path does not exist."""
        params = {"ref": ref} if ref else None
        try:
            return await self._request(
                "GET", f"/repos/{owner}/{repo}/contents/{path}", params=params
            )
        except GitHubAPIError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def put_contents(
        self,
        owner: str,
        repo: str,
        path: str,
        *,
        message: str,
        content_b64: str,
        branch: Optional[str] = None,
        sha: Optional[str] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": message, "content": content_b64}
        if branch:
            payload["branch"] = branch
        if sha:
            payload["sha"] = sha
        return await self._request(
            "PUT", f"/repos/{owner}/{repo}/contents/{path}", json=payload
        )

    async def create_workflow_dispatch(
        self,
        owner: str,
        repo: str,
        *,
        workflow_id: str,
        ref: str,
        inputs: dict[str, str],
    ) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/actions/workflows/{workflow_id}/dispatches",
            json={"ref": ref, "inputs": inputs},
        )

    async def download(self, url: str) -> httpx.Response:
        """
        Fetch an attachment URL with the client's token.

        Raises:
            GitHubAPIError: On non-2xx responses or transport failures.
        """
        response = await self._send("GET", url, follow_redirects=True)
        if response.is_error:
            raise GitHubAPIError(
                f"Failed to download {url}: {response.status_code}",
                status_code=response.status_code,
            )
        return response


__all__ = ["API_BASE", "DEFAULT_HEADERS", "GitHubClient"]
