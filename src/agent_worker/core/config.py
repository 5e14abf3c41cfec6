"""Configuration loading and validation."""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "agent-worker.yaml"


class Provider(str, Enum):
    """AI CLI driving task execution."""
    CLAUDE = "claude"
    CODEX = "codex"


def resolve_provider(value: Optional[str]) -> Provider:
    """Map a provider flag to a Provider, falling back to Claude on unknown input."""
    if not value:
        return Provider.CLAUDE
    try:
        return Provider(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown provider '{value}', falling back to {Provider.CLAUDE.value}")
        return Provider.CLAUDE


class SandboxSettings(BaseModel):
    """Sandbox lifecycle configuration."""
    mode: Literal["ephemeral", "persistent", "user_managed"] = "ephemeral"
    # Required for user_managed: the sandbox created out-of-band with `agent-worker-admin sandbox create`
    name: Optional[str] = None


class WorkerSettings(BaseSettings):
    """Tunables shared by every worker process, from env (AGENT_*) and YAML."""
    model_config = SettingsConfigDict(env_prefix="AGENT_", env_file=".env", extra="ignore")

    heartbeat_interval: float = 60.0
    max_tasks: int = 50
    dispatch_max_attempts: int = 10
    dispatch_retry_delay: float = 30.0
    post_cleanup_delay: float = 5.0
    request_timeout: float = 30.0

    branch_prefix: str = "locus"
    base_branch: Optional[str] = None
    worktree_root: Optional[Path] = None

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)

    github_token: Optional[str] = None
    log_level: str = "INFO"
    log_to_file: bool = True

    @field_validator("max_tasks", "dispatch_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a standard logging level, got '{v}'")
        return level


class WorkerConfig(BaseModel):
    """Immutable per-process configuration, built once at start-up."""
    model_config = ConfigDict(frozen=True)

    agent_id: str
    workspace_id: str
    api_url: str
    api_key: str
    project_path: Path
    sprint_id: Optional[str] = None
    provider: Provider = Provider.CLAUDE
    model: Optional[str] = None
    use_worktrees: bool = False
    use_sandbox: bool = False
    auto_push: bool = False
    settings: WorkerSettings = Field(default_factory=WorkerSettings)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"api_url must start with http:// or https://, got '{v}'")
        return v.rstrip("/")

    @property
    def worktree_root(self) -> Path:
        return self.settings.worktree_root or (self.project_path / ".locus-worktrees")


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_settings_from_file(config_path: Path) -> WorkerSettings:
    """Internal loader for worker settings (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping at the top level: {config_path}")
    data = _expand_env_vars(data)
    return WorkerSettings(**data.get("worker", data))


def load_settings(config_path: Optional[Path] = None, project_path: Optional[Path] = None) -> WorkerSettings:
    """Load worker settings from YAML, falling back to env/defaults.

    Lookup order: explicit ``config_path``, then ``agent-worker.yaml`` in the
    project directory. Uses mtime-based caching.
    """
    if config_path is None:
        config_path = (project_path or Path(".")) / DEFAULT_CONFIG_FILENAME
        if not config_path.exists():
            return WorkerSettings()
    elif not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    result = _get_cached_or_load(config_path.resolve(), _load_settings_from_file)
    return result if result is not None else WorkerSettings()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` values in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "sandbox.name")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
