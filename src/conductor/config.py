"""YAML configuration loading and validation."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ConductorConfig",
    "ConfigError",
    "ConfigStore",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "write_default_config",
]

DEFAULT_CONFIG_NAME = "conductor.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "tasks_dir": "tasks",
    },
    "backend": {
        "command": "codex",
        "model": None,
        "reasoning_effort": "medium",
        "sandbox": "workspace-write",
        "allow_all_tools": False,
    },
    "iteration": {
        "max_implementer_attempts": 4,
        "max_fix_iterations": 5,
        "max_backend_attempts": 3,
        "inactivity_timeout_seconds": 600,
        "initial_inactivity_timeout_seconds": 60,
    },
    "classifier": {
        "model": "gpt-5-mini",
        "enabled": True,
    },
    "paths": {
        "logs": ".conductor/logs",
        "lock": ".conductor/workspace.lock",
    },
}


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be read or validated."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectSettings(_Section):
    name: str = ""
    tasks_dir: str = "tasks"


class BackendSettings(_Section):
    command: str | list[str] = "codex"
    model: Optional[str] = None
    reasoning_effort: str = "medium"
    sandbox: str = "workspace-write"
    allow_all_tools: bool = False
    extra_args: list[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class IterationSettings(_Section):
    max_implementer_attempts: int = Field(default=4, ge=1)
    max_fix_iterations: int = Field(default=5, ge=0)
    max_backend_attempts: int = Field(default=3, ge=1)
    inactivity_timeout_seconds: float = Field(default=600, gt=0)
    initial_inactivity_timeout_seconds: float = Field(default=60, gt=0)


class ClassifierSettings(_Section):
    model: str = "gpt-5-mini"
    enabled: bool = True


class PathSettings(_Section):
    logs: str = ".conductor/logs"
    lock: str = ".conductor/workspace.lock"


class ConductorConfig(_Section):
    """Validated configuration; unknown keys are rejected."""

    project: ProjectSettings = Field(default_factory=ProjectSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    iteration: IterationSettings = Field(default_factory=IterationSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    paths: PathSettings = Field(default_factory=PathSettings)

    @field_validator("project", "backend", "iteration", "classifier", "paths", mode="before")
    @classmethod
    def _empty_section(cls, value: Any) -> Any:
        return {} if value is None else value

    def as_mapping(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    raw_attempts = (env.get("CONDUCTOR_MAX_BACKEND_ATTEMPTS") or "").strip()
    if raw_attempts:
        try:
            attempts = int(raw_attempts)
        except ValueError:
            LOGGER.warning("Ignoring invalid CONDUCTOR_MAX_BACKEND_ATTEMPTS=%r", raw_attempts)
        else:
            if attempts > 0:
                data.setdefault("iteration", {})["max_backend_attempts"] = attempts
    return data


class ConfigStore:
    """Holds the resolved configuration for one working tree.

    The store caches nothing across instances; call :meth:`clear` to force the
    next access to re-read the file.
    """

    def __init__(self, path: Path | str, *, env: Optional[Mapping[str, str]] = None) -> None:
        self.path = Path(path)
        self._env = env
        self._config: Optional[ConductorConfig] = None

    @classmethod
    def for_root(cls, root: Path | str, **kwargs: Any) -> "ConfigStore":
        return cls(Path(root) / DEFAULT_CONFIG_NAME, **kwargs)

    @property
    def root(self) -> Path:
        return self.path.parent

    def clear(self) -> None:
        self._config = None

    def load(self) -> ConductorConfig:
        """Read, validate and cache the configuration file.

        A missing file yields the defaults so commands work in a fresh tree.
        """
        data: Dict[str, Any] = {}
        if self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as handle:
                    loaded = yaml.safe_load(handle) or {}
            except yaml.YAMLError as error:
                raise ConfigError(f"Failed to parse config {self.path}: {error}") from error
            if not isinstance(loaded, dict):
                raise ConfigError(f"Configuration must be a mapping at the top level: {self.path}")
            data = copy.deepcopy(loaded)
        else:
            LOGGER.debug("No configuration at %s; using defaults", self.path)

        data = _apply_env_overrides(data, os.environ if self._env is None else self._env)
        try:
            self._config = ConductorConfig.model_validate(data)
        except ValidationError as error:
            raise ConfigError(f"Invalid configuration in {self.path}: {error}") from error
        return self._config

    @property
    def config(self) -> ConductorConfig:
        if self._config is None:
            return self.load()
        return self._config

    def mapping(self) -> Dict[str, Any]:
        return self.config.as_mapping()

    def resolve_path(self, value: str | Path) -> Path:
        """Interpret ``value`` relative to the configuration file's directory."""
        candidate = Path(value)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate


def write_default_config(path: Path, *, project_name: str = "") -> Path:
    """Persist the default template to ``path`` with stable formatting."""
    data = copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)
    data["project"]["name"] = project_name
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
    return path
