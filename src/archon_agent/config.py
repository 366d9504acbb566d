import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = ".archon/config.yml"
CONFIG_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "model": None,
    "agent": None,
    "variant": None,
    "prompt": None,
    "mentions": ["/archon", "/ac"],
    "share": None,
    "use_github_token": False,
    "oidc_base_url": "https://api.archon.ai",
    "share_base_url": "https://archon.ai",
    "opencode": {
        "base_url": "http://127.0.0.1:4096",
        "command": None,
        "completion": "blocking",
        "request_timeout": None,
        "session_timeout_seconds": 600,
        "probe_attempts": 30,
    },
    "github": {
        "api_url": "https://api.github.com",
        "bot_username": "archon-agent[bot]",
        "pr_retry_delay_seconds": 5,
        "max_fetch_depth": 20,
    },
    "webhook": {
        "secret": None,
        "host": "127.0.0.1",
        "port": 8787,
        "plan": "free",
        "model": "anthropic/claude-sonnet-4-20250514",
        "workflow_file": "archon-managed.yml",
    },
    "log": {
        "path": ".archon/archon-agent.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

# Action inputs arrive as environment variables; they win over the file.
_ENV_OVERRIDES: Dict[str, tuple[str, ...]] = {
    "MODEL": ("model",),
    "AGENT": ("agent",),
    "VARIANT": ("variant",),
    "PROMPT": ("prompt",),
    "MENTIONS": ("mentions",),
    "SHARE": ("share",),
    "USE_GITHUB_TOKEN": ("use_github_token",),
    "OIDC_BASE_URL": ("oidc_base_url",),
    "OPENCODE_BASE_URL": ("opencode", "base_url"),
    "ARCHON_COMPLETION": ("opencode", "completion"),
    "GITHUB_API_URL": ("github", "api_url"),
    "ARCHON_WEBHOOK_SECRET": ("webhook", "secret"),
}

COMPLETION_MODES = ("blocking", "poll")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class AgentConfig:
    base_url: str
    command: Optional[List[str]]
    completion: str
    request_timeout: Optional[float]
    session_timeout_seconds: float
    probe_attempts: int


@dataclasses.dataclass
class GitHubConfig:
    api_url: str
    bot_username: str
    pr_retry_delay_seconds: float
    max_fetch_depth: int


@dataclasses.dataclass
class WebhookConfig:
    secret: Optional[str]
    host: str
    port: int
    plan: str
    model: str
    workflow_file: str


@dataclasses.dataclass
class RunConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    model: Optional[str]
    agent: Optional[str]
    variant: Optional[str]
    prompt: Optional[str]
    mentions: List[str]
    share: Optional[bool]
    use_github_token: bool
    oidc_base_url: str
    share_base_url: str
    run_id: Optional[str]
    opencode: AgentConfig
    github: GitHubConfig
    webhook: WebhookConfig
    log: LogConfig

    def model_ref(self) -> Dict[str, str]:
        """Return the model as the ``{providerID, modelID}`` pair the runtime expects."""
        if not self.model:
            raise ConfigError('Environment variable "MODEL" is not set')
        provider_id, _, model_id = self.model.partition("/")
        if not provider_id.strip() or not model_id.strip():
            raise ConfigError(
                f'Invalid model {self.model}. Model must be in the format "provider/model".'
            )
        return {"providerID": provider_id.strip(), "modelID": model_id.strip()}

    def require_run_id(self) -> str:
        if not self.run_id:
            raise ConfigError('Environment variable "GITHUB_RUN_ID" is not set')
        return self.run_id


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest .archon/config.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_root(root: Path) -> None:
    # Repo-local .env wins over inherited process env to avoid stale keys.
    for candidate in (root / ".env", root / ".archon" / ".env"):
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=True)


def _parse_bool(name: str, value: str) -> bool:
    if value == "true":
        return True
    if value == "false":
        return False
    raise ConfigError(f"Invalid {name.lower()} value: {value}. Must be a boolean.")


def _parse_mentions(value: Any) -> List[str]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise ConfigError("mentions must be a list or comma separated string")
    mentions = [item.strip().lower() for item in items if item.strip()]
    if not mentions:
        raise ConfigError("mentions must contain at least one token")
    return mentions


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    for name, path in _ENV_OVERRIDES.items():
        value = env.get(name)
        if not value:
            continue
        parsed: Any = value
        if name in ("SHARE", "USE_GITHUB_TOKEN"):
            parsed = _parse_bool(name, value)
        target = cfg
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = parsed


def load_config(start: Path, *, env: Optional[Mapping[str, str]] = None) -> RunConfig:
    """
    Load the nearest config walking upward from ``start`` and apply
    environment overrides.

    A missing config file is not an error: Action runs are usually configured
    entirely through inputs, so defaults rooted at ``start`` are used instead.
    """
    config_path = find_nearest_config_path(start)
    if config_path is not None:
        root = config_path.parent.parent.resolve()
    else:
        root = (start if start.is_dir() else start.parent).resolve()
    _load_dotenv_for_root(root)
    data: Dict[str, Any] = {}
    if config_path is not None:
        with config_path.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        data = loaded
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    environ = os.environ if env is None else env
    _apply_env_overrides(merged, environ)
    _validate_config(merged)
    return _build_config(root, merged, run_id=environ.get("GITHUB_RUN_ID") or None)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _build_config(root: Path, cfg: Dict[str, Any], *, run_id: Optional[str]) -> RunConfig:
    opencode_cfg = cfg["opencode"]
    github_cfg = cfg["github"]
    webhook_cfg = cfg["webhook"]
    log_cfg = cfg["log"]
    command = opencode_cfg.get("command")
    if isinstance(command, str):
        command = command.split()
    return RunConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        model=cfg.get("model") or None,
        agent=cfg.get("agent") or None,
        variant=cfg.get("variant") or None,
        prompt=cfg.get("prompt") or None,
        mentions=_parse_mentions(cfg["mentions"]),
        share=cfg.get("share"),
        use_github_token=bool(cfg.get("use_github_token")),
        oidc_base_url=str(cfg["oidc_base_url"]).rstrip("/"),
        share_base_url=str(cfg["share_base_url"]).rstrip("/"),
        run_id=run_id,
        opencode=AgentConfig(
            base_url=str(opencode_cfg["base_url"]),
            command=[str(arg) for arg in command] if command else None,
            completion=str(opencode_cfg["completion"]),
            request_timeout=_optional_float(opencode_cfg.get("request_timeout")),
            session_timeout_seconds=float(opencode_cfg["session_timeout_seconds"]),
            probe_attempts=int(opencode_cfg["probe_attempts"]),
        ),
        github=GitHubConfig(
            api_url=str(github_cfg["api_url"]).rstrip("/"),
            bot_username=str(github_cfg["bot_username"]),
            pr_retry_delay_seconds=float(github_cfg["pr_retry_delay_seconds"]),
            max_fetch_depth=int(github_cfg["max_fetch_depth"]),
        ),
        webhook=WebhookConfig(
            secret=webhook_cfg.get("secret") or None,
            host=str(webhook_cfg["host"]),
            port=int(webhook_cfg["port"]),
            plan=str(webhook_cfg["plan"]),
            model=str(webhook_cfg["model"]),
            workflow_file=str(webhook_cfg["workflow_file"]),
        ),
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    for key in ("model", "agent", "variant", "prompt"):
        value = cfg.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{key} must be a string if provided")
    share = cfg.get("share")
    if share is not None and not isinstance(share, bool):
        raise ConfigError("share must be a boolean or null")
    if not isinstance(cfg.get("use_github_token"), bool):
        raise ConfigError("use_github_token must be a boolean")
    _parse_mentions(cfg.get("mentions"))
    opencode = cfg.get("opencode")
    if not isinstance(opencode, dict):
        raise ConfigError("opencode section must be a mapping")
    if not opencode.get("base_url") and not opencode.get("command"):
        raise ConfigError("opencode.base_url or opencode.command is required")
    if opencode.get("completion") not in COMPLETION_MODES:
        raise ConfigError(
            f"opencode.completion must be one of: {', '.join(COMPLETION_MODES)}"
        )
    command = opencode.get("command")
    if command is not None and not isinstance(command, (list, str)):
        raise ConfigError("opencode.command must be a list or string if provided")
    for key in ("session_timeout_seconds", "probe_attempts"):
        value = opencode.get(key)
        if not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"opencode.{key} must be a positive number")
    github = cfg.get("github")
    if not isinstance(github, dict):
        raise ConfigError("github section must be a mapping")
    if not isinstance(github.get("max_fetch_depth"), int) or github["max_fetch_depth"] < 1:
        raise ConfigError("github.max_fetch_depth must be a positive integer")
    if not isinstance(github.get("pr_retry_delay_seconds"), (int, float)):
        raise ConfigError("github.pr_retry_delay_seconds must be a number")
    webhook = cfg.get("webhook")
    if not isinstance(webhook, dict):
        raise ConfigError("webhook section must be a mapping")
    if not isinstance(webhook.get("port"), int):
        raise ConfigError("webhook.port must be an integer")
    log = cfg.get("log")
    if not isinstance(log, dict) or not isinstance(log.get("path"), str):
        raise ConfigError("log.path must be a string path")
