"""Shared fixtures: throwaway git repositories and an in-memory issue tracker."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from generation_runner.config import Config  # noqa: E402
from generation_runner.constants import STATUS_CLOSED, STATUS_IN_PROGRESS, STATUS_OPEN  # noqa: E402
from generation_runner.context import RunContext  # noqa: E402
from generation_runner.errors import TrackerError  # noqa: E402
from generation_runner.tracker import Issue  # noqa: E402


def git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _git_init(path: Path) -> None:
    """Initialize a git repo on `main` with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test")
    git(path, "config", "commit.gpgsign", "false")
    git(path, "config", "tag.gpgsign", "false")
    (path / "README.md").write_text("# init\n")
    git(path, "add", "-A")
    git(path, "commit", "-m", "initial")


def commit_count(path: Path, ref: str = "HEAD") -> int:
    return int(git(path, "rev-list", "--count", ref))


def make_ctx(repo: Path, worktrees: Path, **sections: dict) -> RunContext:
    config = Config()
    config.generation.worktree_base = str(worktrees)
    for section, values in sections.items():
        target = getattr(config, section)
        for key, value in values.items():
            setattr(target, key, value)
    return RunContext(project_dir=repo, config=config)


class FakeTracker:
    """In-memory tracker honoring dependencies; `failing` names methods that raise."""

    def __init__(self) -> None:
        self.issues: dict[str, Issue] = {}
        self.deps: dict[str, set[str]] = {}
        self.comments: dict[str, list[str]] = {}
        self.failing: set[str] = set()
        self.prefix = "t"
        self.calls: list[str] = []
        self._counter = 0

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise TrackerError(f"{name} failed")

    def add(self, title: str, status: str = STATUS_OPEN, description: str = "") -> Issue:
        self._counter += 1
        issue = Issue(id=f"{self.prefix}-{self._counter}", title=title, description=description, status=status)
        self.issues[issue.id] = issue
        return issue

    def _ready(self) -> list[Issue]:
        ready = []
        for issue in self.issues.values():
            if issue.status != STATUS_OPEN:
                continue
            if all(self.issues[dep].status == STATUS_CLOSED for dep in self.deps.get(issue.id, set())):
                ready.append(issue)
        return ready

    def init(self, prefix: str) -> None:
        self._check("init")
        self.prefix = prefix

    def reset(self) -> None:
        self._check("reset")
        self.issues.clear()
        self.deps.clear()
        self.comments.clear()

    def create(self, title: str, description: str) -> Issue:
        self._check("create")
        return self.add(title, description=description)

    def next_ready(self) -> Optional[Issue]:
        self._check("next_ready")
        ready = self._ready()
        return ready[0] if ready else None

    def list_ready(self) -> list[Issue]:
        self._check("list_ready")
        return self._ready()

    def list_in_progress(self) -> list[Issue]:
        self._check("list_in_progress")
        return [issue for issue in self.issues.values() if issue.status == STATUS_IN_PROGRESS]

    def list_all(self) -> list[Issue]:
        self._check("list_all")
        return list(self.issues.values())

    def show(self, issue_id: str) -> Optional[Issue]:
        self._check("show")
        return self.issues.get(issue_id)

    def update_status(self, issue_id: str, status: str) -> None:
        self._check("update_status")
        if issue_id not in self.issues:
            raise TrackerError(f"no issue {issue_id}")
        self.issues[issue_id].status = status

    def close(self, issue_id: str) -> None:
        self._check("close")
        self.issues[issue_id].status = STATUS_CLOSED

    def add_comment(self, issue_id: str, text: str) -> None:
        self._check("add_comment")
        self.comments.setdefault(issue_id, []).append(text)

    def add_dependency(self, child_id: str, parent_id: str) -> None:
        self._check("add_dependency")
        self.deps.setdefault(child_id, set()).add(parent_id)

    def sync(self) -> None:
        self._check("sync")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    _git_init(repo)
    return repo


@pytest.fixture
def worktrees(tmp_path: Path) -> Path:
    return tmp_path / "worktrees"


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()
