"""Build the prompts passed to the execution and planning agents."""

from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Optional, Sequence

from .errors import ConfigError
from .tracker import Issue


def _load_template(path: str, project_dir: Path) -> Optional[Template]:
    if not path:
        return None
    template_path = Path(path)
    if not template_path.is_absolute():
        template_path = project_dir / template_path
    try:
        return Template(template_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Unable to read prompt template {template_path}: {exc}") from exc


def _context_block(context_files: Sequence[str]) -> str:
    if not context_files:
        return ""
    listed = "\n".join(f"- {name}" for name in context_files)
    return f"\nProject documents to read before working:\n{listed}\n"


def build_stitch_prompt(
    task: Issue,
    project_dir: Path,
    *,
    template_path: str = "",
    context_files: Sequence[str] = (),
) -> str:
    """Build the execution prompt for one task.

    A custom template may reference `$id`, `$title`, `$issue_type`,
    `$description` and `$context_files`.
    """
    context = _context_block(context_files)
    template = _load_template(template_path, project_dir)
    if template is not None:
        return template.safe_substitute(
            id=task.id,
            title=task.title,
            issue_type=task.issue_type,
            description=task.description,
            context_files=context,
        )
    return f"""You are implementing a single {task.issue_type} in an isolated git worktree.
{context}
Task {task.id}: {task.title}

Description:
{task.description}

Rules:
- Work only inside the current directory.
- Do not run any git commands; your changes are committed and merged for you.
- Satisfy every acceptance criterion in the description, including its tests.
- Keep changes limited to the files the description names unless a change elsewhere is required.
"""


def build_measure_prompt(
    project_dir: Path,
    *,
    existing_issues: Sequence[Issue],
    limit: int,
    output_path: Path,
    user_prompt: str = "",
    template_path: str = "",
    context_files: Sequence[str] = (),
) -> str:
    """Build the planning prompt asking for at most `limit` new tasks."""
    existing = "\n".join(f"- {issue.id} [{issue.status}] {issue.title}" for issue in existing_issues) or "- (none)"
    context = _context_block(context_files)
    template = _load_template(template_path, project_dir)
    if template is not None:
        return template.safe_substitute(
            limit=str(limit),
            existing_issues=existing,
            output_path=str(output_path),
            user_prompt=user_prompt,
            context_files=context,
        )
    user_block = f"\nSpecial instructions:\n{user_prompt}\n" if user_prompt else ""
    return f"""You are planning the next units of work for this project.
{context}
Existing issues:
{existing}
{user_block}
Propose at most {limit} new task(s) that move the implementation toward the project documents.
Do not repeat existing issues.

Write a YAML list to {output_path}. Each item has:
  index: 0-based position in your list
  title: short imperative title
  description: |
    deliverable_type, required_reading, files, requirements, acceptance_criteria
  dependency: index of an earlier item this one depends on, or -1

Do not modify any other file.
"""
