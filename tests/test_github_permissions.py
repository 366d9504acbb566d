import httpx
import pytest

from archon_agent.errors import AuthorizationError
from archon_agent.integrations.github.client import GitHubClient
from archon_agent.integrations.github.events import classify_event
from archon_agent.integrations.github.permissions import assert_permissions


def _event(actor="alice"):
    return classify_event(
        "issue_comment",
        {"issue": {"number": 1}, "comment": {"id": 2, "body": "/archon"}},
        owner="o",
        repo="r",
        actor=actor,
        run_id="1",
    )


def _github(permission: str, status: int = 200) -> GitHubClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/o/r/collaborators/alice/permission"
        return httpx.Response(status, json={"permission": permission})

    return GitHubClient("t", transport=httpx.MockTransport(handler))


@pytest.mark.anyio
@pytest.mark.parametrize("permission", ["admin", "write"])
async def test_writers_are_allowed(permission) -> None:
    async with _github(permission) as github:
        await assert_permissions(github, _event())


@pytest.mark.anyio
async def test_readers_are_rejected() -> None:
    async with _github("read") as github:
        with pytest.raises(AuthorizationError, match="does not have write permissions"):
            await assert_permissions(github, _event())


@pytest.mark.anyio
async def test_lookup_failure_is_authorization_error() -> None:
    async with _github("", status=404) as github:
        with pytest.raises(AuthorizationError, match="Failed to check permissions"):
            await assert_permissions(github, _event())


@pytest.mark.anyio
async def test_trusted_token_skips_lookup() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("permission lookup not expected")

    async with GitHubClient("t", transport=httpx.MockTransport(handler)) as github:
        await assert_permissions(github, _event(), trusted_token=True)


@pytest.mark.anyio
async def test_scheduled_runs_skip_lookup() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("permission lookup not expected")

    event = classify_event("schedule", {}, owner="o", repo="r", actor="alice", run_id="1")
    async with GitHubClient("t", transport=httpx.MockTransport(handler)) as github:
        await assert_permissions(github, event)


@pytest.mark.anyio
async def test_unreachable_lookup_is_authorization_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network down", request=request)

    async with GitHubClient("t", transport=httpx.MockTransport(handler)) as github:
        with pytest.raises(AuthorizationError, match="Failed to check permissions"):
            await assert_permissions(github, _event())
