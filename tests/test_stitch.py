"""Tests for the task execution engine."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

from conftest import FakeTracker, git, make_ctx
from generation_runner.agent import AgentRunResult, AgentUsage
from generation_runner.config import AgentConfig
from generation_runner.constants import STATUS_CLOSED, STATUS_OPEN
from generation_runner.errors import ConfigError, RunnerError, WorktreeError
from generation_runner.git_utils import _git_branch_exists, _git_current_branch
from generation_runner.stitch import (
    STOP_LIMIT,
    STOP_NO_READY_WORK,
    STOP_REPEATED_FAILURE,
    StitchEngine,
    TaskAttempt,
    TaskPhase,
)
from generation_runner.tracker import Issue


def _writing_agent(name: str = "feature.py", text: str = "x = 1\n"):
    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        target = workdir / "src" / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)
        return AgentRunResult(
            command=["fake"],
            start_time="2026-01-01T00:00:00+00:00",
            duration_s=1,
            exit_code=0,
            timed_out=False,
            raw_output='{"type": "result"}\n',
            usage=AgentUsage(input_tokens=10, output_tokens=5, cost_usd=0.25),
        )

    return runner


def _failing_agent(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
    return AgentRunResult(
        command=["fake"],
        start_time="2026-01-01T00:00:00+00:00",
        duration_s=0,
        exit_code=2,
        timed_out=False,
        raw_output="partial transcript\n",
    )


def _stats_files(repo: Path) -> list[dict]:
    history = repo / ".cobbler" / "history"
    return [yaml.safe_load(path.read_text()) for path in sorted(history.glob("*-stitch-stats.yaml"))]


def test_successful_task_is_merged_and_closed(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A successful task merges into the base branch and leaves no branch or worktree."""
    issue = tracker.add("Add feature")
    ctx = make_ctx(git_repo, worktrees)

    report = StitchEngine(ctx, tracker, agent_runner=_writing_agent()).run()

    assert report.closed == [issue.id]
    assert report.stop_reason == STOP_NO_READY_WORK
    assert tracker.issues[issue.id].status == STATUS_CLOSED
    assert (git_repo / "src" / "feature.py").read_text() == "x = 1\n"
    assert _git_current_branch(git_repo) == "main"
    assert not _git_branch_exists(git_repo, f"task/main-{issue.id}")
    assert not (worktrees / issue.id).exists()

    message = git(git_repo, "log", "-1", "--format=%B")
    assert message.startswith(f"Close {issue.id}")
    assert f"Task-Id: {issue.id}" in message
    comment = json.loads(tracker.comments[issue.id][0])
    assert comment["tokens_input"] == 10
    assert comment["files_changed"] == 1

    stats = _stats_files(git_repo)
    assert stats[-1]["status"] == "success"
    assert list((git_repo / ".cobbler" / "history").glob("*-stitch-report.yaml"))


def test_agent_failure_resets_task(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A failed agent leaves the task open with no branch or worktree."""
    issue = tracker.add("Doomed")
    ctx = make_ctx(git_repo, worktrees)

    report = StitchEngine(ctx, tracker, agent_runner=_failing_agent).run()

    assert report.reset == [issue.id]
    assert report.stop_reason == STOP_REPEATED_FAILURE
    assert tracker.issues[issue.id].status == STATUS_OPEN
    assert not _git_branch_exists(git_repo, f"task/main-{issue.id}")
    assert not (worktrees / issue.id).exists()
    assert git(git_repo, "log", "-1", "--format=%s") == f"Reset {issue.id} after agent failure"

    logs = list((git_repo / ".cobbler" / "history").glob("*-stitch-log.log"))
    assert logs and logs[0].read_text() == "partial transcript\n"


def test_agent_timeout_records_failed_stats(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """An agent exceeding its time limit is killed and the task reopened."""
    issue = tracker.add("Slow")
    ctx = make_ctx(
        git_repo,
        worktrees,
        agent={"command": sys.executable, "args": ["-c", "import time; time.sleep(30)"], "max_time_sec": 1},
    )

    report = StitchEngine(ctx, tracker).run()

    assert report.reset == [issue.id]
    assert tracker.issues[issue.id].status == STATUS_OPEN
    assert not _git_branch_exists(git_repo, f"task/main-{issue.id}")
    stats = _stats_files(git_repo)
    assert stats[-1]["status"] == "failed"
    assert "max time" in stats[-1]["error"]


def test_failed_task_does_not_block_other_ready_tasks(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A task reset earlier in the run is skipped and the next ready task runs."""
    first = tracker.add("First")
    second = tracker.add("Second")
    ctx = make_ctx(git_repo, worktrees)
    calls: list[str] = []
    succeed = _writing_agent()

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        calls.append(workdir.name)
        if workdir.name == first.id:
            return _failing_agent(prompt, workdir, config)
        return succeed(prompt, workdir, config)

    report = StitchEngine(ctx, tracker, agent_runner=runner).run()

    assert calls == [first.id, second.id]
    assert report.reset == [first.id]
    assert report.closed == [second.id]
    assert tracker.issues[first.id].status == STATUS_OPEN
    assert tracker.issues[second.id].status == STATUS_CLOSED
    assert report.stop_reason == STOP_REPEATED_FAILURE


def test_limit_stops_after_attempts(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """The run stops once the attempt limit is reached."""
    tracker.add("One")
    tracker.add("Two")
    ctx = make_ctx(git_repo, worktrees)
    counter = iter(range(10))

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        return _writing_agent(f"mod{next(counter)}.py")(prompt, workdir, config)

    report = StitchEngine(ctx, tracker, agent_runner=runner).run(limit=1)

    assert report.attempted == 1
    assert report.stop_reason == STOP_LIMIT
    assert len(tracker.list_ready()) == 1


def test_claim_failure_still_attempts_task(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A failed claim is logged and the task is executed anyway."""
    issue = tracker.add("Claim flake")
    tracker.failing.add("update_status")
    ctx = make_ctx(git_repo, worktrees)

    report = StitchEngine(ctx, tracker, agent_runner=_writing_agent()).run()

    assert report.closed == [issue.id]
    assert any(a.operation.startswith("claim") for a in report.advisories)


def test_no_changes_is_not_an_error(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """An agent that changes nothing still closes its task."""
    issue = tracker.add("Noop")
    ctx = make_ctx(git_repo, worktrees)

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        return AgentRunResult(command=["fake"], start_time="", duration_s=0, exit_code=0, timed_out=False)

    report = StitchEngine(ctx, tracker, agent_runner=runner).run()

    assert report.closed == [issue.id]


def test_worktree_failure_propagates(git_repo: Path, tmp_path: Path, tracker: FakeTracker) -> None:
    """A worktree that cannot be created aborts the run."""
    issue = tracker.add("Blocked")
    blocker = tmp_path / "worktrees"
    blocker.mkdir()
    (blocker / issue.id).mkdir()
    (blocker / issue.id / "occupied").write_text("x")
    ctx = make_ctx(git_repo, blocker)

    with pytest.raises(WorktreeError, match="git worktree prune"):
        StitchEngine(ctx, tracker, agent_runner=_writing_agent()).run()


def test_task_attempt_rejects_illegal_transition() -> None:
    """Skipping states in the task state machine is an error."""
    attempt = TaskAttempt(issue=Issue(id="t-1"), branch="task/main-t-1", worktree_dir=Path("/tmp/none"))
    attempt.advance(TaskPhase.CLAIMED)
    with pytest.raises(RunnerError):
        attempt.advance(TaskPhase.MERGED)


def test_prompt_failure_leaves_task_unclaimed(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A missing prompt template aborts before the task is claimed."""
    issue = tracker.add("Templated")
    ctx = make_ctx(git_repo, worktrees, cobbler={"stitch_prompt": "missing.tmpl"})

    with pytest.raises(ConfigError, match="missing.tmpl"):
        StitchEngine(ctx, tracker, agent_runner=_writing_agent()).run()

    assert tracker.issues[issue.id].status == STATUS_OPEN
    assert not _git_branch_exists(git_repo, f"task/main-{issue.id}")
    assert not (worktrees / issue.id).exists()


def test_merge_conflict_resets_task(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A conflicting change on the base branch aborts the merge and reopens the task."""
    issue = tracker.add("Conflicting")
    ctx = make_ctx(git_repo, worktrees)
    write = _writing_agent(text="x = 1\n")

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        (git_repo / "src").mkdir(exist_ok=True)
        (git_repo / "src" / "feature.py").write_text("x = 2\n")
        git(git_repo, "add", "src/feature.py")
        git(git_repo, "commit", "-m", "concurrent change")
        return write(prompt, workdir, config)

    report = StitchEngine(ctx, tracker, agent_runner=runner).run()

    assert report.reset == [issue.id]
    assert "merge failure" in report.outcomes[0].reason
    assert tracker.issues[issue.id].status == STATUS_OPEN
    assert not _git_branch_exists(git_repo, f"task/main-{issue.id}")
    assert not (worktrees / issue.id).exists()
    assert not (git_repo / ".git" / "MERGE_HEAD").exists()
    assert (git_repo / "src" / "feature.py").read_text() == "x = 2\n"
    assert git(git_repo, "log", "-1", "--format=%s") == f"Reset {issue.id} after merge failure"


def test_commit_failure_resets_task(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """Changes that cannot be staged reopen the task and remove its worktree."""
    issue = tracker.add("Unstageable")
    ctx = make_ctx(git_repo, worktrees)

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        # an embedded repository without commits cannot be added
        git(workdir, "init", "-q", "vendored")
        return _writing_agent()(prompt, workdir, config)

    report = StitchEngine(ctx, tracker, agent_runner=runner).run()

    assert report.reset == [issue.id]
    assert "commit failure" in report.outcomes[0].reason
    assert tracker.issues[issue.id].status == STATUS_OPEN
    assert not _git_branch_exists(git_repo, f"task/main-{issue.id}")
    assert not (worktrees / issue.id).exists()
    assert not (git_repo / "src" / "feature.py").exists()
    assert git(git_repo, "log", "-1", "--format=%s") == f"Reset {issue.id} after commit failure"
