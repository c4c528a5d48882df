"""Per-operation context threaded through lifecycle and engine calls."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from loguru import logger

from .config import Config


@dataclass(frozen=True)
class RunContext:
    """Explicit operation context.

    Carries the project directory, the loaded configuration, and the active
    generation and phase names used to tag log records.
    """

    project_dir: Path
    config: Config = field(default_factory=Config)
    generation: str = "-"
    phase: str = "-"

    @property
    def log(self) -> Any:
        return logger.bind(generation=self.generation, phase=self.phase)

    def with_generation(self, name: str) -> "RunContext":
        return replace(self, generation=name or "-")

    def with_phase(self, phase: str) -> "RunContext":
        return replace(self, phase=phase or "-")

    @property
    def cobbler_dir(self) -> Path:
        return self.config.cobbler_dir(self.project_dir)

    @property
    def worktree_base(self) -> Path:
        return self.config.worktree_base(self.project_dir)
