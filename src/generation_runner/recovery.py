"""Repair task branches, worktrees and tracker state left by an interrupted run."""

from __future__ import annotations

from dataclasses import dataclass, field

from .constants import STATUS_OPEN
from .context import RunContext
from .errors import Advisory, TrackerError, best_effort
from .git_utils import (
    _git_branch_exists,
    _git_delete_branch,
    _git_list_branches,
    _git_worktree_prune,
    _git_worktree_remove,
)
from .naming import task_branch_name, task_branch_pattern, task_id_from_branch, task_worktree_dir
from .tracker import IssueTracker, commit_tracker_state

RECOVERY_COMMIT_MESSAGE = "Recover stale tasks from interrupted run"


@dataclass
class RecoveryReport:
    stale_branches: list[str] = field(default_factory=list)
    orphaned_tasks: list[str] = field(default_factory=list)
    committed: bool = False
    advisories: list[Advisory] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.stale_branches or self.orphaned_tasks)

    def note(self, advisory: Advisory | None) -> None:
        if advisory is not None:
            self.advisories.append(advisory)


def sweep_stale_branches(ctx: RunContext, tracker: IssueTracker, base_branch: str, report: RecoveryReport) -> None:
    log = ctx.log
    branches = _git_list_branches(ctx.project_dir, task_branch_pattern(base_branch))
    if not branches:
        log.debug("No stale task branches for {}", base_branch)
        return
    log.info("Found {} stale task branch(es): {}", len(branches), ", ".join(branches))
    for branch in branches:
        task_id = task_id_from_branch(base_branch, branch)
        worktree_dir = task_worktree_dir(ctx.worktree_base, task_id)
        if task_id and worktree_dir.exists():
            report.note(
                best_effort(f"remove worktree {worktree_dir}", _git_worktree_remove, ctx.project_dir, worktree_dir, log=log)
            )
        report.note(
            best_effort(f"delete branch {branch}", _git_delete_branch, ctx.project_dir, branch, force=True, log=log)
        )
        if task_id:
            report.note(
                best_effort(f"reset {task_id} to {STATUS_OPEN}", tracker.update_status, task_id, STATUS_OPEN, log=log)
            )
        report.stale_branches.append(branch)


def sweep_orphaned_tasks(ctx: RunContext, tracker: IssueTracker, base_branch: str, report: RecoveryReport) -> None:
    """Reopen in-progress tasks whose task branch does not exist."""
    log = ctx.log
    try:
        in_progress = tracker.list_in_progress()
    except TrackerError as exc:
        log.warning("Unable to list in-progress tasks: {}", exc)
        report.note(Advisory("list in-progress tasks", str(exc)))
        return
    for issue in in_progress:
        branch = task_branch_name(base_branch, issue.id)
        if _git_branch_exists(ctx.project_dir, branch):
            log.debug("Task {} still has branch {}", issue.id, branch)
            continue
        log.info("Orphaned task {} has no branch {}; resetting to {}", issue.id, branch, STATUS_OPEN)
        report.note(
            best_effort(f"reset {issue.id} to {STATUS_OPEN}", tracker.update_status, issue.id, STATUS_OPEN, log=log)
        )
        report.orphaned_tasks.append(issue.id)


def recover_stale_tasks(ctx: RunContext, tracker: IssueTracker, base_branch: str) -> RecoveryReport:
    """Return every task of `base_branch` to a workable state.

    Leftover task branches are removed together with their worktrees and
    their tasks reopened; in-progress tasks without a branch are reopened.
    A single recovery commit is made only when something was repaired, so
    running this twice in a row commits at most once.
    """
    ctx = ctx.with_phase("recover")
    log = ctx.log
    report = RecoveryReport()

    report.note(best_effort("prune worktrees", _git_worktree_prune, ctx.project_dir, log=log))
    sweep_stale_branches(ctx, tracker, base_branch, report)
    sweep_orphaned_tasks(ctx, tracker, base_branch, report)
    report.note(best_effort("prune worktrees", _git_worktree_prune, ctx.project_dir, log=log))

    if not report.found:
        log.info("No stale task state found")
        return report

    log.info(
        "Recovered {} stale branch(es) and {} orphaned task(s)",
        len(report.stale_branches),
        len(report.orphaned_tasks),
    )
    advisories = commit_tracker_state(
        ctx.project_dir,
        tracker,
        ctx.config.beads_dir(ctx.project_dir),
        RECOVERY_COMMIT_MESSAGE,
        log=log,
    )
    report.advisories.extend(advisories)
    report.committed = not any(a.operation == "commit tracker state" for a in advisories)
    return report
