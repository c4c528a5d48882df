"""Derive branch, tag and version names for generations and tasks."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable

from .constants import (
    GENERATION_TIME_FORMAT,
    TAG_ABANDONED,
    TAG_FINISHED,
    TAG_MERGED,
    TAG_START,
    TAG_SUFFIXES,
    TASK_BRANCH_PREFIX,
    VERSION_MAJOR,
)


def task_branch_name(base_branch: str, task_id: str) -> str:
    # "task/<base>-<id>" rather than "<base>/task/<id>" so a base named
    # "main" cannot collide with a "main/..." ref
    return f"{TASK_BRANCH_PREFIX}{base_branch}-{task_id}"


def task_branch_pattern(base_branch: str) -> str:
    return f"{TASK_BRANCH_PREFIX}{base_branch}-*"


def task_id_from_branch(base_branch: str, branch: str) -> str:
    prefix = f"{TASK_BRANCH_PREFIX}{base_branch}-"
    if not branch.startswith(prefix):
        return ""
    return branch[len(prefix):]


def task_worktree_dir(worktree_base: Path, task_id: str) -> Path:
    return worktree_base / task_id


def new_generation_name(prefix: str, moment: datetime) -> str:
    return prefix + moment.strftime(GENERATION_TIME_FORMAT)


def generation_name(tag: str) -> str:
    """Strip a lifecycle suffix from a tag to recover the generation name."""
    for suffix in TAG_SUFFIXES:
        if tag.endswith(suffix):
            return tag[: -len(suffix)]
    return tag


def start_tag(name: str) -> str:
    return name + TAG_START


def finished_tag(name: str) -> str:
    return name + TAG_FINISHED


def merged_tag(name: str) -> str:
    return name + TAG_MERGED


def abandoned_tag(name: str) -> str:
    return name + TAG_ABANDONED


def generation_date(prefix: str, name: str) -> str:
    """Return the `YYYY-MM-DD` part of a generation name, or "" if absent."""
    if not name.startswith(prefix):
        return ""
    rest = name[len(prefix):]
    if len(rest) < 10:
        return ""
    return rest[:10]


def generation_revision(name: str, date_names: Iterable[str]) -> int:
    """Return the 0-based index of `name` among same-date generation names.

    `date_names` may repeat names and need not be ordered; the result only
    depends on the set of names.
    """
    names = sorted(set(date_names) | {name})
    return names.index(name)


def version_tag(date: str, revision: int) -> str:
    return f"v{VERSION_MAJOR}.{date.replace('-', '')}.{revision}"


def requirements_tag(date: str, revision: int) -> str:
    return version_tag(date, revision) + "-requirements"
