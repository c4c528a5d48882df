"""Load runner configuration from `configuration.yaml`."""

from __future__ import annotations

import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_ARGS,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_BEADS_DIR,
    DEFAULT_COBBLER_DIR,
    DEFAULT_GENERATION_PREFIX,
    DEFAULT_HISTORY_DIR,
    DEFAULT_MAX_MEASURE_ISSUES,
    DEFAULT_MAX_STITCH_ISSUES_PER_CYCLE,
)
from .errors import ConfigError
from .io_utils import _atomic_write_yaml, _load_yaml_with_error


@dataclass
class GenerationConfig:
    prefix: str = DEFAULT_GENERATION_PREFIX
    # 0 means run cycles until no work remains
    cycles: int = 0
    branch: str = ""
    base_branch: str = ""
    worktree_base: str = ""


@dataclass
class CobblerConfig:
    dir: str = DEFAULT_COBBLER_DIR
    beads_dir: str = DEFAULT_BEADS_DIR
    max_stitch_issues: int = 0
    max_stitch_issues_per_cycle: int = DEFAULT_MAX_STITCH_ISSUES_PER_CYCLE
    max_measure_issues: int = DEFAULT_MAX_MEASURE_ISSUES
    history_dir: str = DEFAULT_HISTORY_DIR
    user_prompt: str = ""
    stitch_prompt: str = ""
    measure_prompt: str = ""


@dataclass
class AgentConfig:
    command: str = DEFAULT_AGENT_COMMAND
    args: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_ARGS))
    max_time_sec: int = DEFAULT_AGENT_TIMEOUT_SECONDS
    silence: bool = True
    podman_image: str = ""


@dataclass
class ProjectConfig:
    source_extensions: list[str] = field(default_factory=lambda: [".py"])
    source_dirs: list[str] = field(default_factory=lambda: ["src", "tests"])
    test_patterns: list[str] = field(default_factory=lambda: ["test_*.py", "*_test.py"])
    seed_files: dict[str, str] = field(default_factory=dict)
    bootstrap_commands: list[str] = field(default_factory=list)
    cleanup_dirs: list[str] = field(default_factory=list)
    context_files: list[str] = field(default_factory=list)
    version_file: str = ""


@dataclass
class Config:
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    cobbler: CobblerConfig = field(default_factory=CobblerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def cobbler_dir(self, project_dir: Path) -> Path:
        return project_dir / self.cobbler.dir

    def beads_dir(self, project_dir: Path) -> Path:
        return project_dir / self.cobbler.beads_dir

    def history_dir(self, project_dir: Path) -> Optional[Path]:
        """Return the history directory, or None when history is disabled."""
        if not self.cobbler.history_dir:
            return None
        return self.cobbler_dir(project_dir) / self.cobbler.history_dir

    def worktree_base(self, project_dir: Path) -> Path:
        if self.generation.worktree_base:
            return Path(self.generation.worktree_base)
        return Path(tempfile.gettempdir()) / f"{project_dir.resolve().name}-worktrees"


_SECTIONS: dict[str, type] = {
    "generation": GenerationConfig,
    "cobbler": CobblerConfig,
    "agent": AgentConfig,
    "project": ProjectConfig,
}


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    where = f"{section}.{key}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{where}: expected a boolean, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where}: expected an integer, got {value!r}")
        if value < 0:
            raise ConfigError(f"{where}: must not be negative, got {value}")
        return value
    if isinstance(default, str):
        if value is None:
            return ""
        if not isinstance(value, (str, int, float)):
            raise ConfigError(f"{where}: expected a string, got {value!r}")
        return str(value)
    if isinstance(default, list):
        if value is None:
            return []
        if not isinstance(value, list):
            raise ConfigError(f"{where}: expected a list, got {value!r}")
        return [str(item) for item in value]
    if isinstance(default, dict):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigError(f"{where}: expected a mapping, got {value!r}")
        return {str(k): str(v) for k, v in value.items()}
    return value


def config_from_dict(data: dict[str, Any]) -> Config:
    """Build a `Config` from a parsed mapping, filling in defaults."""
    config = Config()
    for section, raw in data.items():
        if section not in _SECTIONS:
            raise ConfigError(f"Unknown configuration section '{section}'")
        if raw is None:
            continue
        if not isinstance(raw, dict):
            raise ConfigError(f"{section}: expected a mapping, got {type(raw).__name__}")
        target = getattr(config, section)
        for key, value in raw.items():
            if not hasattr(target, key):
                raise ConfigError(f"Unknown configuration key '{section}.{key}'")
            setattr(target, key, _coerce(section, key, value, getattr(target, key)))
    return config


def load_config(project_dir: Path, path: Optional[Path] = None) -> Config:
    """Load the runner configuration.

    Args:
        project_dir: Repository root directory.
        path: Explicit config file; defaults to `<project_dir>/configuration.yaml`.

    Returns:
        The parsed configuration. A missing file yields the defaults.

    Raises:
        ConfigError: The file cannot be parsed or holds a wrongly typed value.
    """
    path = path or (project_dir / CONFIG_FILE)
    data, err = _load_yaml_with_error(path, {})
    if err:
        raise ConfigError(err)
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name}: expected a mapping, got {type(data).__name__}")
    return config_from_dict(data)


def write_default_config(path: Path) -> None:
    if path.exists():
        raise ConfigError(f"{path} already exists; remove it first to regenerate defaults")
    _atomic_write_yaml(path, Config().to_dict())
