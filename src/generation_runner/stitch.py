"""Task execution engine: run ready tasks one at a time in isolated worktrees."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .agent import AgentRunner, AgentRunResult, run_agent
from .constants import STATUS_IN_PROGRESS, STATUS_OPEN
from .context import RunContext
from .errors import Advisory, GitError, RunnerError, TrackerError, WorktreeError, best_effort
from .git_utils import (
    DiffStat,
    FileChange,
    _git_branch_exists,
    _git_checkout,
    _git_commit_staged,
    _git_create_branch,
    _git_current_branch,
    _git_delete_branch,
    _git_diff_files,
    _git_diff_shortstat,
    _git_head_sha,
    _git_merge,
    _git_merge_abort,
    _git_stage_all,
    _git_worktree_add,
    _git_worktree_remove,
)
from .history import STATUS_FAILED, STATUS_SUCCESS, HistorySink, InvocationStats, TaskReport
from .naming import task_branch_name, task_worktree_dir
from .outcomes import OutcomeRecord
from .prompts import build_stitch_prompt
from .recovery import RecoveryReport, recover_stale_tasks
from .stats import LocSnapshot, capture_loc
from .tracker import Issue, IssueTracker, commit_tracker_state
from .utils import _now_iso, history_stamp


STOP_NO_READY_WORK = "no_ready_work"
STOP_LIMIT = "limit_reached"
STOP_REPEATED_FAILURE = "repeated_failure"


class TaskPhase(str, Enum):
    """Position of a task inside one execution attempt."""

    READY = "ready"
    CLAIMED = "claimed"
    WORKTREE_READY = "worktree_ready"
    AGENT_INVOKED = "agent_invoked"
    COMMITTED = "committed"
    MERGED = "merged"
    CLOSED = "closed"
    RESET = "reset"


_RESETTABLE = {
    TaskPhase.CLAIMED,
    TaskPhase.WORKTREE_READY,
    TaskPhase.AGENT_INVOKED,
    TaskPhase.COMMITTED,
    TaskPhase.MERGED,
}

_TRANSITIONS: dict[TaskPhase, set[TaskPhase]] = {
    TaskPhase.READY: {TaskPhase.CLAIMED},
    TaskPhase.CLAIMED: {TaskPhase.WORKTREE_READY},
    TaskPhase.WORKTREE_READY: {TaskPhase.AGENT_INVOKED},
    TaskPhase.AGENT_INVOKED: {TaskPhase.COMMITTED},
    TaskPhase.COMMITTED: {TaskPhase.MERGED},
    TaskPhase.MERGED: {TaskPhase.CLOSED},
    TaskPhase.CLOSED: set(),
    TaskPhase.RESET: set(),
}


@dataclass
class TaskAttempt:
    issue: Issue
    branch: str
    worktree_dir: Path
    phase: TaskPhase = TaskPhase.READY
    phases: list[TaskPhase] = field(default_factory=lambda: [TaskPhase.READY])

    def advance(self, phase: TaskPhase) -> None:
        allowed = _TRANSITIONS[self.phase] | ({TaskPhase.RESET} if self.phase in _RESETTABLE else set())
        if phase not in allowed:
            raise RunnerError(f"Task {self.issue.id}: illegal transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.phases.append(phase)


@dataclass(frozen=True)
class TaskOutcome:
    task_id: str
    phase: TaskPhase
    reason: str = ""
    record: Optional[OutcomeRecord] = None

    @property
    def closed(self) -> bool:
        return self.phase == TaskPhase.CLOSED


@dataclass
class StitchReport:
    base_branch: str
    recovery: RecoveryReport = field(default_factory=RecoveryReport)
    outcomes: list[TaskOutcome] = field(default_factory=list)
    advisories: list[Advisory] = field(default_factory=list)
    stop_reason: str = STOP_NO_READY_WORK

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    @property
    def closed(self) -> list[str]:
        return [o.task_id for o in self.outcomes if o.closed]

    @property
    def reset(self) -> list[str]:
        return [o.task_id for o in self.outcomes if o.phase == TaskPhase.RESET]


class StitchEngine:
    """Claim, execute, merge and close ready tasks sequentially.

    Every run starts with recovery. A task that cannot be completed is reset
    and the loop continues; infrastructure failures (worktree creation,
    unknown current branch) propagate.
    """

    def __init__(
        self,
        ctx: RunContext,
        tracker: IssueTracker,
        *,
        agent_runner: AgentRunner = run_agent,
        history: Optional[HistorySink] = None,
    ) -> None:
        self.ctx = ctx.with_phase("stitch")
        self.tracker = tracker
        self.agent_runner = agent_runner
        self.history = history or HistorySink(ctx.config.history_dir(ctx.project_dir))
        self._advisories: list[Advisory] = []

    @property
    def project_dir(self) -> Path:
        return self.ctx.project_dir

    def _note(self, advisory: Optional[Advisory]) -> None:
        if advisory is not None:
            self._advisories.append(advisory)

    def _bookkeeping_commit(self, message: str, trailers: Optional[list[tuple[str, str]]] = None) -> None:
        self._advisories.extend(
            commit_tracker_state(
                self.project_dir,
                self.tracker,
                self.ctx.config.beads_dir(self.project_dir),
                message,
                log=self.ctx.log,
                trailers=trailers,
            )
        )

    def run(self, limit: int = 0) -> StitchReport:
        """Execute ready tasks until none remain or `limit` attempts were made.

        `limit <= 0` means no limit.
        """
        log = self.ctx.log
        base_branch = _git_current_branch(self.project_dir)
        if not base_branch or base_branch == "HEAD":
            raise RunnerError(f"Unable to determine the current branch in {self.project_dir}")
        log.info("Stitching on {} (limit={})", base_branch, limit or "none")

        self._advisories = []
        report = StitchReport(base_branch=base_branch)
        report.recovery = recover_stale_tasks(self.ctx, self.tracker, base_branch)

        failed: set[str] = set()
        while True:
            if limit > 0 and report.attempted >= limit:
                log.info("Reached the limit of {} task(s)", limit)
                report.stop_reason = STOP_LIMIT
                break
            issue, pending = self._next_task(failed)
            if issue is None:
                if pending:
                    log.warning("Every ready task already failed in this run; stopping")
                    report.stop_reason = STOP_REPEATED_FAILURE
                else:
                    log.info("No more ready tasks")
                    report.stop_reason = STOP_NO_READY_WORK
                break
            outcome = self.execute(issue, base_branch)
            report.outcomes.append(outcome)
            if not outcome.closed:
                failed.add(issue.id)

        report.advisories = list(self._advisories)
        log.info(
            "Stitch finished: {} closed, {} reset ({})",
            len(report.closed),
            len(report.reset),
            report.stop_reason,
        )
        return report

    def _next_task(self, failed: set[str]) -> tuple[Optional[Issue], bool]:
        """Return the first ready task not reset in this run, and whether any task was ready."""
        if not failed:
            issue = self.tracker.next_ready()
            return issue, issue is not None
        try:
            ready = self.tracker.list_ready()
        except TrackerError as exc:
            self.ctx.log.warning("Unable to list ready tasks, treating as no ready work: {}", exc)
            return None, False
        for issue in ready:
            if issue.id not in failed:
                return issue, True
        return None, bool(ready)

    def execute(self, issue: Issue, base_branch: str) -> TaskOutcome:
        """Run one task through claim, worktree, agent, commit, merge and close."""
        log = self.ctx.log
        attempt = TaskAttempt(
            issue=issue,
            branch=task_branch_name(base_branch, issue.id),
            worktree_dir=task_worktree_dir(self.ctx.worktree_base, issue.id),
        )
        started = time.monotonic()
        log.info("Task {}: {}", issue.id, issue.title)

        # Nothing is claimed or created until the prompt is built.
        prompt = build_stitch_prompt(
            issue,
            self.project_dir,
            template_path=self.ctx.config.cobbler.stitch_prompt,
            context_files=self.ctx.config.project.context_files,
        )
        loc_before = capture_loc(self.project_dir, self.ctx.config.project)

        attempt.advance(TaskPhase.CLAIMED)
        self._note(
            best_effort(f"claim {issue.id}", self.tracker.update_status, issue.id, STATUS_IN_PROGRESS, log=log)
        )

        self._create_worktree(attempt)
        attempt.advance(TaskPhase.WORKTREE_READY)

        stamp = history_stamp()
        self._note(self.history.save_prompt(stamp, "stitch", prompt))
        result = self.agent_runner(prompt, attempt.worktree_dir, self.ctx.config.agent)
        attempt.advance(TaskPhase.AGENT_INVOKED)
        self._note(self.history.save_log(stamp, "stitch", result.raw_output))

        def failed(reason: str, detail: str) -> TaskOutcome:
            self._save_stats(stamp, attempt, result, started, loc_before, STATUS_FAILED, detail)
            return self._reset(attempt, reason, detail)

        if not result.ok:
            return failed("agent failure", result.error or "agent failed")

        try:
            _git_stage_all(attempt.worktree_dir)
            committed = _git_commit_staged(attempt.worktree_dir, f"{issue.id}: {issue.title}")
        except GitError as exc:
            return failed("commit failure", str(exc))
        if not committed:
            log.info("Task {} produced no changes", issue.id)
        attempt.advance(TaskPhase.COMMITTED)

        pre_merge = _git_head_sha(self.project_dir)
        try:
            self._merge(attempt, base_branch)
        except GitError as exc:
            return failed("merge failure", str(exc))
        attempt.advance(TaskPhase.MERGED)

        diff, files = self._diff_since(pre_merge)
        loc_after = capture_loc(self.project_dir, self.ctx.config.project)
        self._cleanup(attempt)

        record = OutcomeRecord(
            task_id=issue.id,
            task_branch=attempt.branch,
            tokens_input=result.usage.input_tokens,
            tokens_output=result.usage.output_tokens,
            tokens_cache_creation=result.usage.cache_creation_tokens,
            tokens_cache_read=result.usage.cache_read_tokens,
            cost_usd=result.usage.cost_usd,
            loc_prod_before=loc_before.production,
            loc_prod_after=loc_after.production,
            loc_test_before=loc_before.test,
            loc_test_after=loc_after.test,
            duration_s=int(time.monotonic() - started),
            files_changed=diff.files,
            insertions=diff.insertions,
            deletions=diff.deletions,
        )
        self._note(best_effort(f"record outcome for {issue.id}", self.tracker.add_comment, issue.id, record.to_json(), log=log))
        self._note(best_effort(f"close {issue.id}", self.tracker.close, issue.id, log=log))
        self._bookkeeping_commit(f"Close {issue.id}", trailers=record.trailers())
        attempt.advance(TaskPhase.CLOSED)

        self._save_stats(stamp, attempt, result, started, loc_before, STATUS_SUCCESS, "", loc_after, diff)
        self._note(
            self.history.save_report(
                stamp,
                TaskReport(
                    task_id=issue.id,
                    task_title=issue.title,
                    status=STATUS_SUCCESS,
                    branch=attempt.branch,
                    diff=diff,
                    files=files,
                    loc_before=loc_before,
                    loc_after=loc_after,
                ),
            )
        )
        log.info("Task {} closed in {}s", issue.id, record.duration_s)
        return TaskOutcome(task_id=issue.id, phase=TaskPhase.CLOSED, record=record)

    def _create_worktree(self, attempt: TaskAttempt) -> None:
        attempt.worktree_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            if not _git_branch_exists(self.project_dir, attempt.branch):
                _git_create_branch(self.project_dir, attempt.branch)
            _git_worktree_add(self.project_dir, attempt.worktree_dir, attempt.branch)
        except GitError as exc:
            raise WorktreeError(
                f"Unable to create worktree {attempt.worktree_dir} for branch {attempt.branch}: {exc}. "
                "Run `git worktree prune` and retry."
            ) from exc
        self.ctx.log.debug("Worktree ready at {} on {}", attempt.worktree_dir, attempt.branch)

    def _merge(self, attempt: TaskAttempt, base_branch: str) -> None:
        _git_checkout(self.project_dir, base_branch)
        try:
            _git_merge(self.project_dir, attempt.branch)
        except GitError:
            self._note(best_effort("abort merge", _git_merge_abort, self.project_dir, log=self.ctx.log))
            raise

    def _diff_since(self, ref: Optional[str]) -> tuple[DiffStat, list[FileChange]]:
        if not ref:
            return DiffStat(), []
        try:
            return _git_diff_shortstat(self.project_dir, ref), _git_diff_files(self.project_dir, ref)
        except GitError as exc:
            self.ctx.log.warning("Unable to compute diff since {}: {}", ref, exc)
            self._note(Advisory("diff", str(exc)))
            return DiffStat(), []

    def _cleanup(self, attempt: TaskAttempt) -> None:
        log = self.ctx.log
        if attempt.worktree_dir.exists():
            self._note(
                best_effort(
                    f"remove worktree {attempt.worktree_dir}",
                    _git_worktree_remove,
                    self.project_dir,
                    attempt.worktree_dir,
                    log=log,
                )
            )
        if _git_branch_exists(self.project_dir, attempt.branch):
            self._note(
                best_effort(
                    f"delete branch {attempt.branch}",
                    _git_delete_branch,
                    self.project_dir,
                    attempt.branch,
                    force=True,
                    log=log,
                )
            )

    def _reset(self, attempt: TaskAttempt, reason: str, detail: str) -> TaskOutcome:
        issue = attempt.issue
        self.ctx.log.warning("Resetting task {} after {}: {}", issue.id, reason, detail)
        attempt.advance(TaskPhase.RESET)
        self._note(
            best_effort(f"reset {issue.id} to {STATUS_OPEN}", self.tracker.update_status, issue.id, STATUS_OPEN, log=self.ctx.log)
        )
        self._cleanup(attempt)
        self._bookkeeping_commit(f"Reset {issue.id} after {reason}")
        return TaskOutcome(task_id=issue.id, phase=TaskPhase.RESET, reason=f"{reason}: {detail}")

    def _save_stats(
        self,
        stamp: str,
        attempt: TaskAttempt,
        result: AgentRunResult,
        started: float,
        loc_before: LocSnapshot,
        status: str,
        error: str,
        loc_after: Optional[LocSnapshot] = None,
        diff: Optional[DiffStat] = None,
    ) -> None:
        stats = InvocationStats(
            caller="stitch",
            started_at=result.start_time or _now_iso(),
            duration_s=int(time.monotonic() - started),
            status=status,
            task_id=attempt.issue.id,
            task_title=attempt.issue.title,
            error=error,
            usage=result.usage,
            loc_before=loc_before,
            loc_after=loc_after or loc_before,
            diff=diff or DiffStat(),
        )
        self._note(self.history.save_stats(stamp, "stitch", stats))
