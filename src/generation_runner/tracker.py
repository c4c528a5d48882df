"""Issue tracker client: the `IssueTracker` protocol and the beads CLI backend."""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger

from .constants import BEADS_BIN, STATUS_IN_PROGRESS, TASK_TYPE
from .errors import Advisory, TrackerError, best_effort
from .git_utils import _git_commit, _git_stage_paths


@dataclass
class Issue:
    id: str
    title: str = ""
    description: str = ""
    status: str = ""
    issue_type: str = TASK_TYPE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=str(data.get("status") or ""),
            issue_type=str(data.get("issue_type") or data.get("type") or TASK_TYPE),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "issue_type": self.issue_type,
        }


class IssueTracker(Protocol):
    def init(self, prefix: str) -> None:
        ...

    def reset(self) -> None:
        ...

    def create(self, title: str, description: str) -> Issue:
        ...

    def next_ready(self) -> Optional[Issue]:
        ...

    def list_ready(self) -> list[Issue]:
        ...

    def list_in_progress(self) -> list[Issue]:
        ...

    def list_all(self) -> list[Issue]:
        ...

    def show(self, issue_id: str) -> Optional[Issue]:
        ...

    def update_status(self, issue_id: str, status: str) -> None:
        ...

    def close(self, issue_id: str) -> None:
        ...

    def add_comment(self, issue_id: str, text: str) -> None:
        ...

    def add_dependency(self, child_id: str, parent_id: str) -> None:
        ...

    def sync(self) -> None:
        ...


def _parse_issue_list(raw: str) -> list[Issue]:
    raw = (raw or "").strip()
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TrackerError(f"Unable to parse tracker JSON: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise TrackerError(f"Unexpected tracker JSON: {type(data).__name__}")
    return [Issue.from_dict(item) for item in data if isinstance(item, dict) and item.get("id")]


class BeadsTracker:
    """Drive the `bd` command line tool from the project root."""

    def __init__(self, project_dir: Path, beads_dir: Path, binary: str = BEADS_BIN) -> None:
        self.project_dir = project_dir
        self.beads_dir = beads_dir
        self.binary = binary

    def _run(self, *args: str) -> str:
        logger.debug("{} {}", self.binary, " ".join(args))
        try:
            result = subprocess.run(
                [self.binary, *args],
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TrackerError(f"{self.binary} not found on PATH; install beads to continue") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise TrackerError(f"{self.binary} {' '.join(args)} exited {result.returncode}: {detail}")
        return result.stdout

    def init(self, prefix: str) -> None:
        self._run("init", "--prefix", prefix, "--force")

    def reset(self) -> None:
        """Destroy the tracker database, stopping its daemon first."""
        if not self.beads_dir.exists():
            return
        try:
            self._run("daemon", "stop", ".")
        except TrackerError as exc:
            logger.debug("bd daemon stop: {}", exc)
        try:
            self._run("admin", "reset", "--force")
        except TrackerError as exc:
            logger.warning("bd admin reset failed, removing {} directly: {}", self.beads_dir, exc)
        if self.beads_dir.exists():
            shutil.rmtree(self.beads_dir)

    def create(self, title: str, description: str) -> Issue:
        out = self._run("create", "--type", TASK_TYPE, "--json", title, "--description", description)
        issues = _parse_issue_list(out)
        if not issues:
            raise TrackerError(f"bd create returned no issue for '{title}'")
        return issues[0]

    def next_ready(self) -> Optional[Issue]:
        try:
            issues = _parse_issue_list(self._run("ready", "-n", "1", "--json", "--type", TASK_TYPE))
        except TrackerError as exc:
            logger.warning("bd ready failed, treating as no ready work: {}", exc)
            return None
        return issues[0] if issues else None

    def list_ready(self) -> list[Issue]:
        return _parse_issue_list(self._run("ready", "--json", "--type", TASK_TYPE))

    def list_in_progress(self) -> list[Issue]:
        return _parse_issue_list(
            self._run("list", "--json", "--status", STATUS_IN_PROGRESS, "--type", TASK_TYPE)
        )

    def list_all(self) -> list[Issue]:
        return _parse_issue_list(self._run("list", "--json"))

    def show(self, issue_id: str) -> Optional[Issue]:
        issues = _parse_issue_list(self._run("show", "--json", issue_id))
        return issues[0] if issues else None

    def update_status(self, issue_id: str, status: str) -> None:
        self._run("update", issue_id, "--status", status)

    def close(self, issue_id: str) -> None:
        self._run("close", issue_id)

    def add_comment(self, issue_id: str, text: str) -> None:
        self._run("comments", "add", issue_id, text)

    def add_dependency(self, child_id: str, parent_id: str) -> None:
        self._run("dep", "add", child_id, parent_id)

    def sync(self) -> None:
        self._run("sync")


def commit_tracker_state(
    project_dir: Path,
    tracker: IssueTracker,
    beads_dir: Path,
    message: str,
    log: Any = None,
    trailers: Optional[list[tuple[str, str]]] = None,
) -> list[Advisory]:
    """Sync the tracker and commit its directory; every step is best-effort."""
    log = log or logger
    log.info("Committing tracker state: {}", message)
    advisories: list[Advisory] = []
    for advisory in (
        best_effort("tracker sync", tracker.sync, log=log),
        best_effort("stage tracker state", _stage_beads_dir, project_dir, beads_dir, log=log),
        best_effort("commit tracker state", _git_commit, project_dir, message, allow_empty=True, trailers=trailers, log=log),
    ):
        if advisory is not None:
            advisories.append(advisory)
    return advisories


def _stage_beads_dir(project_dir: Path, beads_dir: Path) -> None:
    if beads_dir.exists():
        _git_stage_paths(project_dir, [str(beads_dir)])
