"""Provide git helpers used by the lifecycle manager and the task engine."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .constants import GIT_BIN
from .errors import GitError


@dataclass(frozen=True)
class DiffStat:
    files: int = 0
    insertions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"files": self.files, "insertions": self.insertions, "deletions": self.deletions}


@dataclass(frozen=True)
class FileChange:
    path: str
    status: str
    insertions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "path": self.path,
            "status": self.status,
            "insertions": self.insertions,
            "deletions": self.deletions,
        }


def _run_git(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    logger.debug("git {} (cwd={})", " ".join(args), cwd)
    return subprocess.run(
        [GIT_BIN, *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def _git(cwd: Path, *args: str) -> str:
    """Run git and return stdout, raising `GitError` on a non-zero exit."""
    result = _run_git(cwd, *args)
    if result.returncode != 0:
        raise GitError(args, result.returncode, result.stderr or result.stdout)
    return result.stdout


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_rev_parse(project_dir: Path, ref: str = "HEAD") -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", ref)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_head_sha(project_dir: Path) -> Optional[str]:
    return _git_rev_parse(project_dir, "HEAD")


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
    return result.returncode == 0


def _git_tag_exists(project_dir: Path, tag: str) -> bool:
    result = _run_git(project_dir, "show-ref", "--verify", "--quiet", f"refs/tags/{tag}")
    return result.returncode == 0


def _git_has_changes(project_dir: Path) -> bool:
    """Return True when the worktree has staged, unstaged, or untracked changes."""
    result = _run_git(project_dir, "status", "--porcelain")
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_has_staged_changes(project_dir: Path) -> bool:
    result = _run_git(project_dir, "diff", "--cached", "--quiet")
    return result.returncode != 0


def parse_branch_list(output: str) -> list[str]:
    """Parse `git branch --list` output into bare branch names."""
    branches: list[str] = []
    for line in output.splitlines():
        name = line.strip()
        if name.startswith("* ") or name.startswith("+ "):
            name = name[2:].strip()
        if not name or name.startswith("("):
            continue
        branches.append(name)
    return branches


def _git_list_branches(project_dir: Path, pattern: str) -> list[str]:
    result = _run_git(project_dir, "branch", "--list", pattern)
    if result.returncode != 0:
        return []
    return parse_branch_list(result.stdout)


def _git_list_tags(project_dir: Path, pattern: str = "*") -> list[str]:
    result = _run_git(project_dir, "tag", "--list", pattern)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_ls_tree(project_dir: Path, ref: str) -> list[str]:
    out = _git(project_dir, "ls-tree", "-r", "--name-only", ref)
    return [line for line in out.splitlines() if line]


def _git_show_file(project_dir: Path, ref: str, path: str) -> bytes:
    result = subprocess.run(
        [GIT_BIN, "show", f"{ref}:{path}"],
        cwd=project_dir,
        capture_output=True,
        check=False,
    )
    if result.returncode != 0:
        raise GitError(["show", f"{ref}:{path}"], result.returncode, result.stderr.decode(errors="replace"))
    return result.stdout


# ---------------------------------------------------------------------------
# Branches, tags and worktrees
# ---------------------------------------------------------------------------


def _git_checkout(project_dir: Path, branch: str) -> None:
    _git(project_dir, "checkout", branch)


def _git_checkout_new_branch(project_dir: Path, branch: str) -> None:
    _git(project_dir, "checkout", "-b", branch)


def _git_create_branch(project_dir: Path, branch: str, start_point: Optional[str] = None) -> None:
    args = ["branch", branch]
    if start_point:
        args.append(start_point)
    _git(project_dir, *args)


def _git_delete_branch(project_dir: Path, branch: str, force: bool = False) -> None:
    _git(project_dir, "branch", "-D" if force else "-d", branch)


def _git_create_tag(project_dir: Path, tag: str, ref: Optional[str] = None) -> None:
    args = ["tag", tag]
    if ref:
        args.append(ref)
    _git(project_dir, *args)


def _git_delete_tag(project_dir: Path, tag: str) -> None:
    _git(project_dir, "tag", "-d", tag)


def _git_rename_tag(project_dir: Path, old: str, new: str) -> None:
    _git(project_dir, "tag", new, old)
    _git(project_dir, "tag", "-d", old)


def _git_worktree_add(project_dir: Path, worktree_dir: Path, branch: str) -> None:
    _git(project_dir, "worktree", "add", str(worktree_dir), branch)


def _git_worktree_remove(project_dir: Path, worktree_dir: Path) -> None:
    _git(project_dir, "worktree", "remove", "--force", str(worktree_dir))


def _git_worktree_prune(project_dir: Path) -> None:
    _git(project_dir, "worktree", "prune")


# ---------------------------------------------------------------------------
# Staging, committing and merging
# ---------------------------------------------------------------------------


def _git_stage_all(project_dir: Path) -> None:
    _git(project_dir, "add", "-A")


def _git_stage_paths(project_dir: Path, paths: Sequence[str]) -> None:
    _git(project_dir, "add", "--", *paths)


def _format_trailers(trailers: Optional[Sequence[tuple[str, str]]]) -> str:
    if not trailers:
        return ""
    return "\n\n" + "\n".join(f"{key}: {value}" for key, value in trailers)


def _git_commit(
    project_dir: Path,
    message: str,
    *,
    allow_empty: bool = False,
    trailers: Optional[Sequence[tuple[str, str]]] = None,
) -> None:
    args = ["commit", "--no-verify", "-m", message + _format_trailers(trailers)]
    if allow_empty:
        args.append("--allow-empty")
    _git(project_dir, *args)


def _git_commit_staged(project_dir: Path, message: str) -> bool:
    """Commit whatever is staged; return False when nothing was staged."""
    if not _git_has_staged_changes(project_dir):
        return False
    _git_commit(project_dir, message)
    return True


def _git_unstage_all(project_dir: Path) -> None:
    _git(project_dir, "reset", "HEAD")


def _git_reset_soft(project_dir: Path, ref: str) -> None:
    _git(project_dir, "reset", "--soft", ref)


def _git_stash(project_dir: Path, message: str) -> None:
    _git(project_dir, "stash", "push", "--include-untracked", "-m", message)


def _git_merge(project_dir: Path, branch: str) -> None:
    _git(project_dir, "merge", branch, "--no-edit")


def _git_merge_abort(project_dir: Path) -> None:
    _git(project_dir, "merge", "--abort")


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------

_SHORTSTAT_RE = {
    "files": re.compile(r"(\d+) files? changed"),
    "insertions": re.compile(r"(\d+) insertions?\(\+\)"),
    "deletions": re.compile(r"(\d+) deletions?\(-\)"),
}


def parse_shortstat(output: str) -> DiffStat:
    """Parse `git diff --shortstat` output, e.g. `3 files changed, 10 insertions(+)`."""
    values: dict[str, int] = {}
    for key, regex in _SHORTSTAT_RE.items():
        match = regex.search(output or "")
        values[key] = int(match.group(1)) if match else 0
    return DiffStat(**values)


def parse_name_status(output: str) -> list[tuple[str, str]]:
    """Parse `git diff --name-status` into `(status, path)` pairs.

    Renames and copies report the destination path.
    """
    entries: list[tuple[str, str]] = []
    for line in (output or "").splitlines():
        parts = line.split("\t")
        if len(parts) < 2 or not parts[0]:
            continue
        status = parts[0][0]
        path = parts[2] if status in {"R", "C"} and len(parts) >= 3 else parts[1]
        entries.append((status, path))
    return entries


def parse_numstat(output: str) -> dict[str, tuple[int, int]]:
    """Parse `git diff --numstat`; binary files (`-`) count as zero lines."""
    counts: dict[str, tuple[int, int]] = {}
    for line in (output or "").splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added = int(parts[0]) if parts[0].isdigit() else 0
        removed = int(parts[1]) if parts[1].isdigit() else 0
        path = parts[-1]
        # rename entries look like "old => new" or "dir/{old => new}/file"
        if " => " in path:
            path = _rename_destination(path)
        counts[path] = (added, removed)
    return counts


def _rename_destination(path: str) -> str:
    brace = re.match(r"^(.*)\{(.*) => (.*)\}(.*)$", path)
    if brace:
        prefix, _old, new, suffix = brace.groups()
        return (prefix + new + suffix).replace("//", "/")
    return path.split(" => ", 1)[1]


def merge_file_changes(name_status: str, numstat: str) -> list[FileChange]:
    counts = parse_numstat(numstat)
    changes: list[FileChange] = []
    for status, path in parse_name_status(name_status):
        added, removed = counts.get(path, (0, 0))
        changes.append(FileChange(path=path, status=status, insertions=added, deletions=removed))
    return changes


def _git_diff_shortstat(project_dir: Path, ref: str, target: str = "HEAD") -> DiffStat:
    return parse_shortstat(_git(project_dir, "diff", "--shortstat", ref, target))


def _git_diff_files(project_dir: Path, ref: str, target: str = "HEAD") -> list[FileChange]:
    name_status = _git(project_dir, "diff", "--name-status", ref, target)
    numstat = _git(project_dir, "diff", "--numstat", ref, target)
    return merge_file_changes(name_status, numstat)


def _git_log(project_dir: Path, *args: str) -> str:
    return _git(project_dir, "log", *args)
