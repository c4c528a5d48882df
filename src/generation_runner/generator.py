"""Generation lifecycle: start, run, resume, stop, reset, list and switch.

A generation is a git branch named `<prefix><YYYY-MM-DD-HH-MM-SS>`. Its
lifecycle is persisted only as git tags on that name:

    <name>-start      commit the generation branched from
    <name>-finished   last commit on the generation branch
    <name>-merged     merge of the generation into its base branch
    <name>-abandoned  generation discarded by reset

plus the human-facing `v1.<YYYYMMDD>.<rev>` tags written at stop. The base
branch a generation forked from is recorded in `.cobbler/base-branch`,
committed on the generation branch.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from rich.console import Console
from rich.table import Table

from .agent import AgentRunner, run_agent
from .constants import BASE_BRANCH_FILE, DEFAULT_BASE_BRANCH, TAG_ABANDONED, TAG_FINISHED, TAG_MERGED
from .context import RunContext
from .cycles import CycleReport, run_cycles
from .errors import (
    Advisory,
    BranchResolutionError,
    DirtyWorktreeError,
    GenerationError,
    GitError,
    RunnerError,
    best_effort,
)
from .git_utils import (
    _git_branch_exists,
    _git_checkout,
    _git_checkout_new_branch,
    _git_commit,
    _git_commit_staged,
    _git_create_tag,
    _git_current_branch,
    _git_delete_branch,
    _git_delete_tag,
    _git_has_changes,
    _git_head_sha,
    _git_list_branches,
    _git_list_tags,
    _git_ls_tree,
    _git_merge,
    _git_merge_abort,
    _git_rename_tag,
    _git_reset_soft,
    _git_show_file,
    _git_stage_all,
    _git_stage_paths,
    _git_stash,
    _git_tag_exists,
    _git_unstage_all,
    _git_worktree_prune,
)
from .io_utils import _atomic_write_text
from .naming import (
    abandoned_tag,
    finished_tag,
    generation_date,
    generation_name,
    generation_revision,
    merged_tag,
    new_generation_name,
    requirements_tag,
    start_tag,
    version_tag,
)
from .recovery import RecoveryReport, recover_stale_tasks, sweep_stale_branches
from .scaffold import cleanup_dirs, reset_sources, run_bootstrap_commands, seed_files, write_version_file
from .stitch import StitchEngine
from .tracker import IssueTracker
from .utils import _now


class GenerationState(str, Enum):
    ACTIVE = "active"
    STARTED = "started"
    FINISHED = "finished"
    MERGED = "merged"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class GenerationStatus:
    name: str
    state: GenerationState
    branch_exists: bool
    tags: tuple[str, ...] = ()
    current: bool = False


def resolve_generation_state(name: str, tags: Iterable[str], branch_exists: bool) -> GenerationState:
    """Resolve one generation's lifecycle state from its tags and branch.

    Precedence: abandoned > merged > finished > active > started. A
    generation whose branch exists and has no `-finished` tag is active.
    """
    present = set(tags)
    if name + TAG_ABANDONED in present:
        return GenerationState.ABANDONED
    if name + TAG_MERGED in present:
        return GenerationState.MERGED
    if name + TAG_FINISHED in present:
        return GenerationState.FINISHED
    if branch_exists:
        return GenerationState.ACTIVE
    return GenerationState.STARTED


@dataclass
class StopReport:
    generation: str
    base_branch: str
    version_tag: str = ""
    restored: list[str] = field(default_factory=list)
    advisories: list[Advisory] = field(default_factory=list)

    def note(self, advisory: Optional[Advisory]) -> None:
        if advisory is not None:
            self.advisories.append(advisory)


# ---------------------------------------------------------------------------
# Base branch marker
# ---------------------------------------------------------------------------


def base_branch_file(ctx: RunContext) -> Path:
    return ctx.cobbler_dir / BASE_BRANCH_FILE


def write_base_branch(ctx: RunContext, base_branch: str) -> None:
    _atomic_write_text(base_branch_file(ctx), base_branch + "\n")


def read_base_branch(ctx: RunContext) -> str:
    """Return the configured base branch, else the recorded one, else `main`."""
    if ctx.config.generation.base_branch:
        return ctx.config.generation.base_branch
    path = base_branch_file(ctx)
    try:
        recorded = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        ctx.log.info("No {} marker; assuming base branch {}", BASE_BRANCH_FILE, DEFAULT_BASE_BRANCH)
        return DEFAULT_BASE_BRANCH
    return recorded or DEFAULT_BASE_BRANCH


# ---------------------------------------------------------------------------
# Branch helpers
# ---------------------------------------------------------------------------


def list_generation_branches(ctx: RunContext) -> list[str]:
    return sorted(_git_list_branches(ctx.project_dir, ctx.config.generation.prefix + "*"))


def resolve_branch(ctx: RunContext, explicit: str = "") -> str:
    """Pick the generation branch to operate on.

    An explicit branch must exist. Otherwise, with no generation branches the
    current branch is used, with one that branch is used, and with more the
    choice is ambiguous.

    Raises:
        BranchResolutionError: The branch is missing or the choice is ambiguous.
    """
    if explicit:
        if not _git_branch_exists(ctx.project_dir, explicit):
            raise BranchResolutionError(f"branch {explicit} does not exist")
        return explicit

    branches = list_generation_branches(ctx)
    if len(branches) == 1:
        return branches[0]
    if len(branches) > 1:
        raise BranchResolutionError(
            f"multiple generation branches exist ({', '.join(branches)}); "
            "set generation.branch in configuration.yaml"
        )
    current = _git_current_branch(ctx.project_dir)
    if not current:
        raise BranchResolutionError(f"unable to determine the current branch in {ctx.project_dir}")
    return current


def ensure_on_branch(ctx: RunContext, branch: str) -> None:
    if _git_current_branch(ctx.project_dir) == branch:
        return
    ctx.log.info("Switching to {}", branch)
    _git_checkout(ctx.project_dir, branch)


def save_and_switch_branch(ctx: RunContext, target: str) -> None:
    """Commit or stash pending changes on the current branch, then check out `target`."""
    project_dir = ctx.project_dir
    log = ctx.log
    current = _git_current_branch(project_dir)
    if current == target:
        return

    if _git_has_changes(project_dir):
        log.info("Saving uncommitted changes on {}", current)
        try:
            _git_stage_all(project_dir)
            _git_commit_staged(project_dir, f"WIP: save state before switching to {target}")
        except GitError as exc:
            log.warning("WIP commit failed, stashing instead: {}", exc)
            best_effort("unstage", _git_unstage_all, project_dir, log=log)
            if _git_has_changes(project_dir):
                best_effort("stash", _git_stash, project_dir, f"before switching to {target}", log=log)

    log.info("Switching from {} to {}", current, target)
    _git_checkout(project_dir, target)


def _remove_worktree_base(ctx: RunContext) -> None:
    base = ctx.worktree_base
    if base.exists():
        ctx.log.info("Removing worktree directory {}", base)
        shutil.rmtree(base, ignore_errors=True)


def clear_cobbler_scratch(ctx: RunContext) -> None:
    """Remove planning scratch files; the base branch marker and history stay."""
    cobbler_dir = ctx.cobbler_dir
    if not cobbler_dir.is_dir():
        return
    for path in cobbler_dir.glob("measure-*.yaml"):
        path.unlink()


# ---------------------------------------------------------------------------
# Lifecycle operations
# ---------------------------------------------------------------------------


def start_generation(ctx: RunContext, tracker: IssueTracker, now: Optional[datetime] = None) -> str:
    """Branch a new generation off the current branch and return its name.

    Raises:
        DirtyWorktreeError: The current branch has uncommitted changes; no tag
            or branch is created.
    """
    project_dir = ctx.project_dir
    base_branch = _git_current_branch(project_dir)
    if not base_branch:
        raise GenerationError(f"unable to determine the current branch in {project_dir}")
    if _git_has_changes(project_dir):
        raise DirtyWorktreeError(
            f"worktree has uncommitted changes on {base_branch}; commit or stash before starting a generation"
        )

    name = new_generation_name(ctx.config.generation.prefix, now or _now())
    ctx = ctx.with_generation(name).with_phase("start")
    log = ctx.log
    log.info("Starting generation {} from {}", name, base_branch)

    _git_create_tag(project_dir, start_tag(name))
    _git_checkout_new_branch(project_dir, name)
    branch_sha = _git_head_sha(project_dir)
    if not branch_sha:
        raise GenerationError(f"unable to resolve HEAD after creating branch {name}")

    write_base_branch(ctx, base_branch)
    tracker.reset()
    tracker.init(name)
    reset_sources(project_dir, ctx.config.project, version=name, generation=name)

    # tracker init may commit on its own; fold everything into one commit
    _git_reset_soft(project_dir, branch_sha)
    _git_stage_all(project_dir)
    _git_commit(
        project_dir,
        f"Start generation: {name}\n\n"
        f"Base branch: {base_branch}. Deleted generated source and reseeded placeholders. "
        f"Tagged previous state as {start_tag(name)}.",
        allow_empty=True,
    )
    log.info("Generation {} started", name)
    return name


def run_generation(
    ctx: RunContext,
    tracker: IssueTracker,
    *,
    agent_runner: AgentRunner = run_agent,
) -> CycleReport:
    """Run cycles on the current branch until work runs out."""
    current = _git_current_branch(ctx.project_dir)
    if not current:
        raise GenerationError(f"unable to determine the current branch in {ctx.project_dir}")
    ctx = ctx.with_generation(current)
    ctx.log.info("Running generation on {}", current)
    return run_cycles(ctx, tracker, label="run", agent_runner=agent_runner)


def resume_generation(
    ctx: RunContext,
    tracker: IssueTracker,
    *,
    agent_runner: AgentRunner = run_agent,
) -> CycleReport:
    """Pick up an interrupted generation.

    Saves pending work on the current branch, switches to the generation,
    repairs task state, drains ready tasks once, then continues cycling.
    """
    prefix = ctx.config.generation.prefix
    branch = resolve_branch(ctx, ctx.config.generation.branch)
    if not branch.startswith(prefix):
        raise BranchResolutionError(
            f"branch {branch} is not a generation branch (prefix {prefix}); "
            "set generation.branch in configuration.yaml"
        )
    ctx = ctx.with_generation(branch).with_phase("resume")
    log = ctx.log
    log.info("Resuming generation {}", branch)

    save_and_switch_branch(ctx, branch)
    best_effort("prune worktrees", _git_worktree_prune, ctx.project_dir, log=log)
    _remove_worktree_base(ctx)
    recovery = recover_stale_tasks(ctx, tracker, branch)
    for advisory in recovery.advisories:
        log.warning("Recovery degraded: {}", advisory)
    clear_cobbler_scratch(ctx)

    engine = StitchEngine(ctx, tracker, agent_runner=agent_runner)
    try:
        drained = engine.run(0)
        log.info("Drained {} ready task(s) before resuming cycles", drained.attempted)
    except RunnerError as exc:
        log.warning("Initial stitch failed, continuing with cycles: {}", exc)

    return run_cycles(ctx, tracker, label="resume", agent_runner=agent_runner)


def generation_revision_for(ctx: RunContext, name: str) -> int:
    """Return `name`'s ordinal among generations started on the same date."""
    prefix = ctx.config.generation.prefix
    date = generation_date(prefix, name)
    pattern = f"{prefix}{date}-*"
    names = {generation_name(tag) for tag in _git_list_tags(ctx.project_dir, pattern)}
    names.update(_git_list_branches(ctx.project_dir, pattern))
    return generation_revision(name, names)


def _is_source_path(rel_path: str, ctx: RunContext) -> bool:
    project = ctx.config.project
    path = Path(rel_path)
    if path.suffix not in set(project.source_extensions):
        return False
    return bool(path.parts) and path.parts[0] in set(project.source_dirs)


def restore_from_start_tag(ctx: RunContext, name: str) -> list[str]:
    """Restore source files present at `<name>-start` but missing now.

    Returns the restored paths; they are committed when any exist.
    """
    project_dir = ctx.project_dir
    tag = start_tag(name)
    if not _git_tag_exists(project_dir, tag):
        ctx.log.info("No {} tag; nothing to restore", tag)
        return []

    restored: list[str] = []
    for rel_path in _git_ls_tree(project_dir, tag):
        if not _is_source_path(rel_path, ctx):
            continue
        target = project_dir / rel_path
        if target.exists():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(_git_show_file(project_dir, tag, rel_path))
        restored.append(rel_path)

    if restored:
        ctx.log.info("Restored {} file(s) from {}", len(restored), tag)
        _git_stage_all(project_dir)
        _git_commit(
            project_dir,
            f"Restore {len(restored)} file(s) from earlier generations\n\n"
            f"Files present at {tag} but missing after the merge of {name}.",
        )
    return restored


def stop_generation(ctx: RunContext) -> StopReport:
    """Finish a generation and merge it into its base branch.

    Afterwards the base branch holds only specifications and seed files;
    the merged code lives on under `<name>-merged` and `v1.<date>.<rev>`.

    Raises:
        BranchResolutionError: No single generation branch could be chosen.
        GenerationError: The base branch is missing or the merge failed.
    """
    project_dir = ctx.project_dir
    prefix = ctx.config.generation.prefix
    configured = ctx.config.generation.branch
    current = _git_current_branch(project_dir) or ""
    if configured:
        branch = resolve_branch(ctx, configured)
    elif current.startswith(prefix):
        branch = current
    else:
        branch = resolve_branch(ctx)
    if not branch.startswith(prefix):
        raise BranchResolutionError(
            f"branch {branch} is not a generation branch (prefix {prefix}); "
            "set generation.branch in configuration.yaml"
        )

    ctx = ctx.with_generation(branch).with_phase("stop")
    log = ctx.log
    ensure_on_branch(ctx, branch)
    base_branch = read_base_branch(ctx)
    report = StopReport(generation=branch, base_branch=base_branch)
    log.info("Stopping generation {} into {}", branch, base_branch)

    if not _git_branch_exists(project_dir, base_branch):
        raise GenerationError(
            f"base branch {base_branch} of {branch} does not exist; "
            "set generation.base_branch in configuration.yaml"
        )
    _git_create_tag(project_dir, finished_tag(branch))
    _git_checkout(project_dir, base_branch)

    _merge_generation(ctx, branch, base_branch, report)
    cleanup_dirs(project_dir, ctx.config.project)
    log.info("Generation {} stopped ({})", branch, report.version_tag or merged_tag(branch))
    return report


def _merge_generation(ctx: RunContext, branch: str, base_branch: str, report: StopReport) -> None:
    project_dir = ctx.project_dir
    project = ctx.config.project
    log = ctx.log

    report.note(
        best_effort(
            "delete generated source",
            reset_sources,
            project_dir,
            project,
            version=branch,
            generation=branch,
            log=log,
        )
    )
    _git_stage_all(project_dir)
    _git_commit(
        project_dir,
        f"Prepare {base_branch} for generation merge: delete generated code\n\n"
        f"Generated source is replaced by the contents of {branch}.",
        allow_empty=True,
    )

    try:
        _git_merge(project_dir, branch)
    except GitError as exc:
        best_effort("abort merge", _git_merge_abort, project_dir, log=log)
        raise GenerationError(
            f"merging {branch} into {base_branch} failed: {exc}. "
            f"Resolve the conflict manually with `git merge {branch}`."
        ) from exc

    try:
        report.restored = restore_from_start_tag(ctx, branch)
    except (RunnerError, OSError) as exc:
        log.warning("Unable to restore files from {}: {}", start_tag(branch), exc)
        report.note(Advisory("restore from start tag", str(exc)))

    _git_create_tag(project_dir, merged_tag(branch))

    date = generation_date(ctx.config.generation.prefix, branch)
    if date:
        revision = generation_revision_for(ctx, branch)
        version = version_tag(date, revision)
        report.note(_record_version(ctx, version))
        advisory = best_effort(f"tag {version}", _git_create_tag, project_dir, version, log=log)
        report.note(advisory)
        if advisory is None:
            report.version_tag = version
        requirements = requirements_tag(date, revision)
        report.note(
            best_effort(
                f"tag {requirements}", _git_create_tag, project_dir, requirements, start_tag(branch), log=log
            )
        )

    report.note(_reset_to_specs_only(ctx, base_branch, branch))
    report.note(best_effort(f"delete branch {branch}", _git_delete_branch, project_dir, branch, force=True, log=log))


def _record_version(ctx: RunContext, version: str) -> Optional[Advisory]:
    version_file = ctx.config.project.version_file
    if not version_file:
        return None
    project_dir = ctx.project_dir
    ctx.log.info("Writing version {} to {}", version, version_file)
    try:
        write_version_file(project_dir / version_file, version)
        _git_stage_paths(project_dir, [version_file])
        _git_commit_staged(project_dir, f"Set version to {version}")
    except (RunnerError, OSError) as exc:
        ctx.log.warning("Unable to record version {} in {}: {}", version, version_file, exc)
        return Advisory("set version", str(exc))
    return None


def _reset_to_specs_only(ctx: RunContext, base_branch: str, branch: str) -> Optional[Advisory]:
    project_dir = ctx.project_dir
    try:
        reset_sources(project_dir, ctx.config.project, version=branch, generation=branch)
        history_dir = ctx.config.history_dir(project_dir)
        if history_dir is not None and history_dir.exists():
            shutil.rmtree(history_dir)
        base_branch_file(ctx).unlink(missing_ok=True)
        _git_stage_all(project_dir)
        _git_commit_staged(
            project_dir,
            f"Reset {base_branch} to specs-only after v1 tag\n\n"
            f"Generated code of {branch} is preserved under its version tag.",
        )
    except (RunnerError, OSError) as exc:
        ctx.log.warning("Unable to reset {} to specs-only: {}", base_branch, exc)
        return Advisory("reset to specs-only", str(exc))
    return None


def cleanup_unmerged_tags(ctx: RunContext) -> list[str]:
    """Collapse the tags of never-merged generations into one `-abandoned` tag.

    Returns the names of the generations that were marked abandoned.
    """
    project_dir = ctx.project_dir
    log = ctx.log
    tags = sorted(_git_list_tags(project_dir, ctx.config.generation.prefix + "*"))
    merged = {generation_name(tag) for tag in tags if tag.endswith(TAG_MERGED)}

    marked: list[str] = []
    for tag in tags:
        name = generation_name(tag)
        if name in merged:
            continue
        target = abandoned_tag(name)
        if name not in marked:
            marked.append(name)
            if tag != target:
                log.info("Marking {} abandoned ({} -> {})", name, tag, target)
                best_effort(f"rename tag {tag}", _git_rename_tag, project_dir, tag, target, log=log)
            continue
        if tag != target:
            best_effort(f"delete tag {tag}", _git_delete_tag, project_dir, tag, log=log)
    return marked


def reset_generations(ctx: RunContext, tracker: IssueTracker) -> None:
    """Discard every generation branch and return the base branch to a seeded state."""
    project_dir = ctx.project_dir
    ctx = ctx.with_phase("reset")
    log = ctx.log
    base_branch = read_base_branch(ctx)
    log.warning("Resetting all generations; returning to {}", base_branch)
    ensure_on_branch(ctx, base_branch)

    branches = list_generation_branches(ctx)
    sweep = RecoveryReport()
    for branch in branches:
        sweep_stale_branches(ctx, tracker, branch, sweep)
    for advisory in sweep.advisories:
        log.warning("Reset degraded: {}", advisory)
    best_effort("prune worktrees", _git_worktree_prune, project_dir, log=log)
    _remove_worktree_base(ctx)

    for branch in branches:
        log.info("Deleting generation branch {}", branch)
        best_effort(f"delete branch {branch}", _git_delete_branch, project_dir, branch, force=True, log=log)
    cleanup_unmerged_tags(ctx)

    project = ctx.config.project
    for name in project.source_dirs:
        target = project_dir / name
        if target.is_dir():
            shutil.rmtree(target)
    cleanup_dirs(project_dir, project)
    seed_files(project_dir, project, version=base_branch)
    run_bootstrap_commands(project_dir, project)

    try:
        _git_stage_all(project_dir)
        _git_commit(project_dir, "Generator reset: return to clean state", allow_empty=True)
    except GitError as exc:
        log.warning("Unable to commit reset: {}", exc)
    log.info("Reset complete")


def list_generations(ctx: RunContext) -> list[GenerationStatus]:
    project_dir = ctx.project_dir
    prefix = ctx.config.generation.prefix
    current = _git_current_branch(project_dir)
    branches = set(_git_list_branches(project_dir, prefix + "*"))
    tags = _git_list_tags(project_dir, prefix + "*")

    by_name: dict[str, list[str]] = {name: [] for name in branches}
    for tag in tags:
        by_name.setdefault(generation_name(tag), []).append(tag)

    return [
        GenerationStatus(
            name=name,
            state=resolve_generation_state(name, by_name[name], name in branches),
            branch_exists=name in branches,
            tags=tuple(sorted(by_name[name])),
            current=name == current,
        )
        for name in sorted(by_name)
    ]


def render_generations(statuses: list[GenerationStatus], console: Optional[Console] = None) -> None:
    console = console or Console()
    if not statuses:
        console.print("no generations found")
        return
    table = Table(title="Generations")
    table.add_column("")
    table.add_column("Generation")
    table.add_column("State")
    table.add_column("Branch")
    table.add_column("Tags")
    for status in statuses:
        table.add_row(
            "*" if status.current else "",
            status.name,
            status.state.value,
            "yes" if status.branch_exists else "",
            ", ".join(status.tags),
        )
    console.print(table)


def switch_generation(ctx: RunContext, target: str = "") -> str:
    """Save pending work and check out a generation branch or the base branch.

    Raises:
        BranchResolutionError: No target was given, or it is not a
            generation or base branch, or it does not exist.
    """
    target = target or ctx.config.generation.branch
    prefix = ctx.config.generation.prefix
    if not target:
        available = list_generation_branches(ctx)
        listing = ", ".join(available) if available else "none"
        raise BranchResolutionError(
            f"no target branch given; set generation.branch in configuration.yaml "
            f"(generation branches: {listing})"
        )
    base_branch = ctx.config.generation.base_branch or DEFAULT_BASE_BRANCH
    if target != base_branch and not target.startswith(prefix):
        raise BranchResolutionError(f"{target} is neither {base_branch} nor a generation branch (prefix {prefix})")
    if not _git_branch_exists(ctx.project_dir, target):
        raise BranchResolutionError(f"branch {target} does not exist")

    save_and_switch_branch(ctx, target)
    return target
