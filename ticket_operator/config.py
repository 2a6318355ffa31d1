"""
Configuration loading and validation for the ticket operator.

This module handles:
- Loading config.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Default values for optional sections
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_POLICY_PATH = Path(__file__).parent / "data" / "matrix_policies.yaml"
DEFAULT_ROUTES_PATH = Path(__file__).parent / "data" / "signal_routes.yaml"


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class CliToolConfig:
    """Settings for one command-line AI backend."""
    binary: str = "codex"                      # Path to the CLI binary
    model: Optional[str] = None                # Model override passed to the CLI
    timeout_seconds: int = 3600                # Hard timeout for one invocation


@dataclass
class ToolsConfig:
    """Command-line backends driven by the strategy adapters."""
    codex: CliToolConfig = field(default_factory=lambda: CliToolConfig(binary="codex"))
    teddy: CliToolConfig = field(default_factory=lambda: CliToolConfig(binary="teddy"))
    heartbeat_interval_seconds: float = 10.0   # Liveness ping while a CLI runs


@dataclass
class OrchestratorConfig:
    """Ticket lifecycle knobs."""
    smoke_check_name: str = "smoke"            # CI check that gates handoff
    max_smoke_attempts: int = 2                # Smoke/QA failures before blocking
    smoke_poll_interval_seconds: int = 60      # Delay between check polls
    transition_log_limit: int = 80             # Ring buffer size for transitions
    teardown_linger_hours: int = 24            # Safety valve for sandbox teardown
    frontend_score_threshold: int = 3          # Heuristic cutoff for front-end work


@dataclass
class RouteCacheConfig:
    """Route table cache settings."""
    ttl_seconds: float = 30.0
    routes_path: Optional[str] = None          # Defaults to the packaged route table


@dataclass
class OperatorConfig:
    """Root configuration object."""
    repo_root: str = "."
    state_dir: str = ".operator"
    policy_path: Optional[str] = None
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    route_cache: RouteCacheConfig = field(default_factory=RouteCacheConfig)

    @property
    def repo_path(self) -> Path:
        return Path(self.repo_root).resolve()

    @property
    def state_path(self) -> Path:
        return self.repo_path / self.state_dir

    @property
    def runs_path(self) -> Path:
        return self.state_path / "runs"

    @property
    def logs_path(self) -> Path:
        return self.state_path / "logs"

    @property
    def ledger_path(self) -> Path:
        return self.state_path / "ledger"

    @property
    def locks_path(self) -> Path:
        return self.state_path / "locks"

    @property
    def learning_path(self) -> Path:
        return self.state_path / "learning" / "registry.json"

    @property
    def worktrees_path(self) -> Path:
        return self.state_path / "worktrees"

    @property
    def tool_logs_path(self) -> Path:
        return self.state_path / "tool-runs"

    @property
    def issues_path(self) -> Path:
        return self.state_path / "issues"

    @property
    def resolved_policy_path(self) -> Path:
        """Policy file path, falling back to the packaged defaults."""
        if self.policy_path:
            path = Path(self.policy_path)
            return path if path.is_absolute() else self.repo_path / path
        return DEFAULT_POLICY_PATH

    @property
    def resolved_routes_path(self) -> Path:
        """Route table path, falling back to the packaged defaults."""
        if self.route_cache.routes_path:
            path = Path(self.route_cache.routes_path)
            return path if path.is_absolute() else self.repo_path / path
        return DEFAULT_ROUTES_PATH


# Module-level cache
_config_cache: Optional[OperatorConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax. Non-string scalars are returned unchanged.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_cli_tool_config(data: dict[str, Any], default_binary: str) -> CliToolConfig:
    return CliToolConfig(
        binary=data.get("binary", default_binary),
        model=data.get("model"),
        timeout_seconds=int(data.get("timeout_seconds", 3600)),
    )


def _parse_tools_config(data: dict[str, Any]) -> ToolsConfig:
    """Parse the tools section."""
    return ToolsConfig(
        codex=_parse_cli_tool_config(data.get("codex") or {}, "codex"),
        teddy=_parse_cli_tool_config(data.get("teddy") or {}, "teddy"),
        heartbeat_interval_seconds=float(data.get("heartbeat_interval_seconds", 10.0)),
    )


def _parse_orchestrator_config(data: dict[str, Any]) -> OrchestratorConfig:
    """Parse the orchestrator section."""
    config = OrchestratorConfig(
        smoke_check_name=data.get("smoke_check_name", "smoke"),
        max_smoke_attempts=int(data.get("max_smoke_attempts", 2)),
        smoke_poll_interval_seconds=int(data.get("smoke_poll_interval_seconds", 60)),
        transition_log_limit=int(data.get("transition_log_limit", 80)),
        teardown_linger_hours=int(data.get("teardown_linger_hours", 24)),
        frontend_score_threshold=int(data.get("frontend_score_threshold", 3)),
    )
    if config.max_smoke_attempts < 1:
        raise ConfigError("orchestrator.max_smoke_attempts must be at least 1")
    if config.transition_log_limit < 1:
        raise ConfigError("orchestrator.transition_log_limit must be at least 1")
    return config


def _parse_route_cache_config(data: dict[str, Any]) -> RouteCacheConfig:
    return RouteCacheConfig(
        ttl_seconds=float(data.get("ttl_seconds", 30.0)),
        routes_path=data.get("routes_path"),
    )


def load_config(config_path: Optional[str] = None) -> OperatorConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        OperatorConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    return OperatorConfig(
        repo_root=data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".operator"),
        policy_path=data.get("policy_path"),
        tools=_parse_tools_config(data.get("tools") or {}),
        orchestrator=_parse_orchestrator_config(data.get("orchestrator") or {}),
        route_cache=_parse_route_cache_config(data.get("route_cache") or {}),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> OperatorConfig:
    """
    Get the cached configuration, loading it if necessary.

    Falls back to defaults when no config file exists and no explicit
    path was requested.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        if config_path is None and not Path("config.yaml").exists():
            _config_cache = OperatorConfig()
        else:
            _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
