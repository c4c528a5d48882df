"""Error types raised by the generation runner."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from loguru import logger


class RunnerError(RuntimeError):
    """Base class for fatal runner errors surfaced to the caller."""


class ConfigError(RunnerError):
    pass


class GitError(RunnerError):
    """A git command that the caller cannot proceed without failed."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"git {' '.join(self.git_args)} exited {returncode}{detail}")


class TrackerError(RunnerError):
    pass


class BranchResolutionError(RunnerError):
    pass


class DirtyWorktreeError(RunnerError):
    pass


class WorktreeError(RunnerError):
    pass


class GenerationError(RunnerError):
    pass


class PlanningError(RunnerError):
    pass


@dataclass(frozen=True)
class Advisory:
    """A best-effort step that degraded without aborting its caller."""

    operation: str
    message: str

    def __str__(self) -> str:
        return f"{self.operation}: {self.message}"


def best_effort(operation: str, func: Callable[..., Any], *args: Any, log: Any = None, **kwargs: Any) -> Optional[Advisory]:
    """Run a bookkeeping step, downgrading runner errors to an `Advisory`."""
    try:
        func(*args, **kwargs)
    except (RunnerError, OSError) as exc:
        (log or logger).warning("{} failed (continuing): {}", operation, exc)
        return Advisory(operation, str(exc))
    return None
