import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import httpx
import typer
import uvicorn

from .agents.opencode.client import OpenCodeClient
from .agents.opencode.server import OpenCodeServer
from .config import ConfigError, RunConfig, load_config
from .dispatcher import DISPATCH_INPUT_ENV
from .errors import ArchonError, TokenExchangeError
from .git_workspace import GitWorkspace
from .integrations.github.credentials import CredentialLifecycle
from .integrations.github.events import TriggerEvent, classify_event
from .logging_utils import configure_console, setup_rotating_logger
from .orchestrator import RunOrchestrator, RunOutcome
from .webhook import create_webhook_app

MOCK_SHARE_BASE_URL = "https://dev.archon.ai"

app = typer.Typer(add_completion=False)


def _fail(message: str) -> None:
    # GitHub Actions workflow command; renders as an annotation on the run.
    typer.echo(f"::error::{message}", err=True)
    raise typer.Exit(code=1)


def _load(repo: Optional[Path]) -> RunConfig:
    try:
        return load_config(repo or Path.cwd())
    except ConfigError as exc:
        _fail(str(exc))
        raise


def _event_from_env(env: Mapping[str, str]) -> TriggerEvent:
    event_name = env.get("GITHUB_EVENT_NAME")
    event_path = env.get("GITHUB_EVENT_PATH")
    repository = env.get("GITHUB_REPOSITORY", "")
    if not event_name or not event_path or "/" not in repository:
        raise ConfigError(
            "GITHUB_EVENT_NAME, GITHUB_EVENT_PATH and GITHUB_REPOSITORY are required"
        )
    payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
    owner, repo = repository.split("/", 1)
    if event_name == "workflow_dispatch":
        # Inputs forwarded by the managed workflow arrive as environment.
        inputs = dict(payload.get("inputs") or {})
        for name, variable in DISPATCH_INPUT_ENV.items():
            if not inputs.get(name) and env.get(variable):
                inputs[name] = env[variable]
        payload = {**payload, "inputs": inputs}
    return classify_event(
        event_name,
        payload,
        owner=owner,
        repo=repo,
        actor=env.get("GITHUB_ACTOR"),
        run_id=env.get("GITHUB_RUN_ID", ""),
    )


def _event_from_mock(raw: str) -> TriggerEvent:
    """Parse a mock context: ``{"eventName", "payload", "repo": {"owner", "repo"}}``."""
    data: Dict[str, Any] = json.loads(raw)
    repo = data.get("repo") or {}
    if not isinstance(repo, dict) or not repo.get("owner") or not repo.get("repo"):
        raise ConfigError("Mock event must include repo.owner and repo.repo")
    return classify_event(
        str(data.get("eventName") or ""),
        data.get("payload") or {},
        owner=str(repo["owner"]),
        repo=str(repo["repo"]),
        actor=data.get("actor"),
        run_id=str(data.get("runId") or "mock"),
    )


async def _run_once(
    config: RunConfig,
    event: TriggerEvent,
    *,
    pat: Optional[str],
    mock: bool,
) -> RunOutcome:
    logger = setup_rotating_logger("archon_agent.run", config.log)
    credentials = CredentialLifecycle(
        owner=event.owner,
        repo=event.repo,
        workspace_root=config.root,
        oidc_base_url=config.oidc_base_url,
        bot_username=config.github.bot_username,
        use_github_token=config.use_github_token,
        github_token=os.environ.get("GITHUB_TOKEN") or os.environ.get("TOKEN"),
        pat=pat,
        configure_git=not mock,
        api_url=config.github.api_url,
        logger=logger,
    )
    workspace = GitWorkspace(
        config.root, max_fetch_depth=config.github.max_fetch_depth, logger=logger
    )

    async def _execute(base_url: str) -> RunOutcome:
        client = OpenCodeClient(base_url, timeout=config.opencode.request_timeout)
        try:
            orchestrator = RunOrchestrator(
                config,
                event,
                credentials=credentials,
                agent_client=client,
                workspace=workspace,
                logger=logger,
            )
            return await orchestrator.run()
        finally:
            await client.close()

    if config.opencode.command:
        async with OpenCodeServer(
            config.opencode.command, cwd=config.root, logger=logger
        ) as server:
            return await _execute(server.base_url or config.opencode.base_url)
    return await _execute(config.opencode.base_url)


@app.command()
def run(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path; defaults to CWD"),
    event: Optional[str] = typer.Option(
        None, "--event", envvar="MOCK_EVENT", help="Mock event context as JSON"
    ),
    token: Optional[str] = typer.Option(
        None, "--token", envvar="MOCK_TOKEN", help="Personal access token for mock runs"
    ),
):
    """Run the agent once for the current GitHub event."""
    configure_console()
    config = _load(repo)
    mock = bool(event or token)
    if mock:
        config.share_base_url = MOCK_SHARE_BASE_URL
        if not config.run_id:
            config.run_id = "mock"
    try:
        trigger = _event_from_mock(event) if event else _event_from_env(os.environ)
        outcome = asyncio.run(_run_once(config, trigger, pat=token, mock=mock))
    except (ArchonError, ConfigError, ValueError, httpx.HTTPError) as exc:
        _fail(str(exc))
        return
    typer.echo(outcome.message)


@app.command()
def serve(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Config root; defaults to CWD"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to bind"),
):
    """Serve the GitHub App webhook intake."""
    configure_console()
    config = _load(repo)
    if not config.webhook.secret:
        _fail("ARCHON_WEBHOOK_SECRET (or webhook.secret) is required to serve")

    async def token_provider(installation_id: int) -> str:
        token = os.environ.get("GITHUB_APP_INSTALLATION_TOKEN")
        if not token:
            raise TokenExchangeError(
                f"No installation token available for installation {installation_id}"
            )
        return token

    bind_host = host or config.webhook.host
    bind_port = port or config.webhook.port
    typer.echo(f"Serving webhook intake on http://{bind_host}:{bind_port}")
    uvicorn.run(
        create_webhook_app(config, token_provider=token_provider),
        host=bind_host,
        port=bind_port,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
