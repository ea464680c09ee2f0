"""Runtime configuration registry.

Provides centralized configuration for storage, capability directories,
the capability invoker and execution policies. Environment variables take
precedence over YAML config.

Usage:
    from phaseflow.config.runtime_config import load_settings

    settings = load_settings()
    settings.skills_dir          # Path to installed skills
    settings.invoker_command     # ["claude", "--print", ...]

Environment overrides:
    PHASEFLOW_DB_PATH            DuckDB file (":memory:" for in-memory)
    PHASEFLOW_AGENTS_DIR         Agent install directory
    PHASEFLOW_SKILLS_DIR         Skill install directory
    PHASEFLOW_EXTERNAL_TOOLS     Comma-separated live external tools
    PHASEFLOW_CLI_COMMAND        Invoker command line (shell-quoted)
    PHASEFLOW_TIMEOUT_SECONDS    Invocation timeout
    PHASEFLOW_MAX_PROCESSES      Concurrent capability processes
    PHASEFLOW_STRICT_SKILLS      "true"/"false"
    PHASEFLOW_EVENT_RETENTION_SECONDS  Seconds a finished instance's events stay replayable
    PHASEFLOW_LOG_LEVEL          Logging level for the CLI
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

# Bounds for invoker settings
MIN_TIMEOUT_SECONDS = 1
MIN_MAX_PROCESSES = 1


@dataclass
class RuntimeSettings:
    """Resolved runtime settings."""

    db_path: Optional[Path] = None
    agents_dir: Path = field(default_factory=lambda: Path.home() / ".phaseflow" / "agents")
    skills_dir: Path = field(default_factory=lambda: Path.home() / ".claude" / "skills")
    external_tools: List[str] = field(default_factory=list)
    invoker_command: List[str] = field(
        default_factory=lambda: ["claude", "--print", "--output-format", "json"]
    )
    timeout_seconds: float = 1800
    max_processes: int = 4
    session_retention: int = 100
    strict_skills: bool = True
    loop_max_iterations: int = 1000
    event_retention_seconds: float = 60
    reject_locked_reimport: bool = True

    def with_overrides(self, **overrides: Any) -> "RuntimeSettings":
        """Return a copy with the given fields replaced (None values ignored)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH, encoding="utf-8") as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "storage": {"db_path": "~/.phaseflow/phaseflow.duckdb"},
        "capabilities": {
            "agents_dir": "~/.phaseflow/agents",
            "skills_dir": "~/.claude/skills",
            "external_tools": [],
        },
        "invoker": {
            "command": ["claude", "--print", "--output-format", "json", "--skill", "{capability}"],
            "timeout_seconds": 1800,
            "max_processes": 4,
            "session_retention": 100,
        },
        "execution": {
            "strict_skills": True,
            "loop_max_iterations": 1000,
            "event_retention_seconds": 60,
        },
        "imports": {"reject_locked_reimport": True},
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: float, minimum: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        number = float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, value)
        return default
    if number < minimum:
        logger.warning("%s=%s is below minimum %s. Clamping.", name, value, minimum)
        return minimum
    return number


def _expand(path_value: Optional[str]) -> Optional[Path]:
    if not path_value or path_value == ":memory:":
        return None
    return Path(os.path.expandvars(path_value)).expanduser()


def load_settings() -> RuntimeSettings:
    """Resolve settings from runtime.yaml and environment variables."""
    config = _load_config()
    storage = config.get("storage") or {}
    capabilities = config.get("capabilities") or {}
    invoker = config.get("invoker") or {}
    execution = config.get("execution") or {}
    imports = config.get("imports") or {}

    db_path = _expand(os.environ.get("PHASEFLOW_DB_PATH", storage.get("db_path")))
    agents_dir = _expand(os.environ.get("PHASEFLOW_AGENTS_DIR", capabilities.get("agents_dir")))
    skills_dir = _expand(os.environ.get("PHASEFLOW_SKILLS_DIR", capabilities.get("skills_dir")))

    tools_env = os.environ.get("PHASEFLOW_EXTERNAL_TOOLS")
    if tools_env is not None:
        external_tools = [t.strip() for t in tools_env.split(",") if t.strip()]
    else:
        external_tools = list(capabilities.get("external_tools") or [])

    command_env = os.environ.get("PHASEFLOW_CLI_COMMAND")
    command = shlex.split(command_env) if command_env else list(invoker.get("command") or [])

    defaults = RuntimeSettings()
    timeout = max(
        float(invoker.get("timeout_seconds", defaults.timeout_seconds)), MIN_TIMEOUT_SECONDS
    )
    max_processes = max(int(invoker.get("max_processes", defaults.max_processes)), MIN_MAX_PROCESSES)

    return RuntimeSettings(
        db_path=db_path,
        agents_dir=agents_dir or defaults.agents_dir,
        skills_dir=skills_dir or defaults.skills_dir,
        external_tools=external_tools,
        invoker_command=command or defaults.invoker_command,
        timeout_seconds=_env_number("PHASEFLOW_TIMEOUT_SECONDS", timeout, MIN_TIMEOUT_SECONDS),
        max_processes=int(
            _env_number("PHASEFLOW_MAX_PROCESSES", max_processes, MIN_MAX_PROCESSES)
        ),
        session_retention=int(invoker.get("session_retention", defaults.session_retention)),
        strict_skills=_env_bool(
            "PHASEFLOW_STRICT_SKILLS", bool(execution.get("strict_skills", True))
        ),
        loop_max_iterations=int(
            execution.get("loop_max_iterations", defaults.loop_max_iterations)
        ),
        event_retention_seconds=_env_number(
            "PHASEFLOW_EVENT_RETENTION_SECONDS",
            float(execution.get("event_retention_seconds", defaults.event_retention_seconds)),
            0,
        ),
        reject_locked_reimport=bool(imports.get("reject_locked_reimport", True)),
    )


def get_log_level(default: str = "INFO") -> str:
    """Logging level name from PHASEFLOW_LOG_LEVEL."""
    return os.environ.get("PHASEFLOW_LOG_LEVEL", default).upper()
