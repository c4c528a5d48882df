"""Persist per-invocation prompts, transcripts, stats and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .agent import AgentUsage
from .errors import Advisory
from .git_utils import DiffStat, FileChange
from .io_utils import _atomic_write_text, _dump_yaml
from .stats import LocSnapshot
from .utils import format_duration

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class InvocationStats:
    caller: str
    started_at: str
    duration_s: int
    status: str = STATUS_SUCCESS
    task_id: str = ""
    task_title: str = ""
    error: str = ""
    usage: AgentUsage = field(default_factory=AgentUsage)
    loc_before: LocSnapshot = field(default_factory=LocSnapshot)
    loc_after: LocSnapshot = field(default_factory=LocSnapshot)
    diff: DiffStat = field(default_factory=DiffStat)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"caller": self.caller}
        if self.task_id:
            data["task_id"] = self.task_id
        if self.task_title:
            data["task_title"] = self.task_title
        data["status"] = self.status
        if self.error:
            data["error"] = self.error
        data.update(
            {
                "started_at": self.started_at,
                "duration": format_duration(self.duration_s),
                "duration_s": self.duration_s,
                "tokens": self.usage.to_dict(),
                "cost_usd": self.usage.cost_usd,
                "loc_before": self.loc_before.to_dict(),
                "loc_after": self.loc_after.to_dict(),
                "diff": self.diff.to_dict(),
            }
        )
        return data


@dataclass(frozen=True)
class TaskReport:
    task_id: str
    task_title: str
    status: str
    branch: str
    diff: DiffStat
    files: list[FileChange]
    loc_before: LocSnapshot
    loc_after: LocSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "status": self.status,
            "branch": self.branch,
            "diff": self.diff.to_dict(),
            "files": [change.to_dict() for change in self.files],
            "loc_before": self.loc_before.to_dict(),
            "loc_after": self.loc_after.to_dict(),
        }


class HistorySink:
    """Write history artifacts named `<stamp>-<phase>-<kind>`.

    A sink without a directory accepts every call and writes nothing.
    """

    def __init__(self, directory: Optional[Path]) -> None:
        self.directory = directory

    @property
    def enabled(self) -> bool:
        return self.directory is not None

    def _write(self, name: str, text: str) -> Optional[Advisory]:
        if self.directory is None:
            return None
        path = self.directory / name
        try:
            _atomic_write_text(path, text)
        except OSError as exc:
            logger.warning("Unable to write history file {}: {}", path, exc)
            return Advisory("history", f"{path}: {exc}")
        logger.debug("Saved history file {}", path)
        return None

    def save_prompt(self, stamp: str, phase: str, prompt: str) -> Optional[Advisory]:
        return self._write(f"{stamp}-{phase}-prompt.yaml", prompt)

    def save_log(self, stamp: str, phase: str, raw_output: str) -> Optional[Advisory]:
        return self._write(f"{stamp}-{phase}-log.log", raw_output)

    def save_stats(self, stamp: str, phase: str, stats: InvocationStats) -> Optional[Advisory]:
        return self._write(f"{stamp}-{phase}-stats.yaml", _dump_yaml(stats.to_dict()))

    def save_report(self, stamp: str, report: TaskReport) -> Optional[Advisory]:
        return self._write(f"{stamp}-stitch-report.yaml", _dump_yaml(report.to_dict()))
