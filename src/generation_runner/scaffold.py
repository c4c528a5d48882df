"""Delete generated source and reseed the minimal placeholder tree."""

from __future__ import annotations

import re
import shlex
import shutil
import subprocess
from pathlib import Path
from string import Template

from loguru import logger

from .config import ProjectConfig
from .errors import GenerationError
from .io_utils import _atomic_write_text
from .stats import iter_source_files

_VERSION_ASSIGNMENT = re.compile(r"""^(\s*(?:__version__|VERSION|Version|version)\s*=\s*)(["']).*?\2""", re.MULTILINE)


def delete_source_files(project_dir: Path, project: ProjectConfig) -> int:
    removed = 0
    for path in list(iter_source_files(project_dir, project)):
        path.unlink()
        removed += 1
    return removed


def remove_empty_dirs(root: Path) -> None:
    if not root.is_dir():
        return
    dirs = sorted((p for p in root.rglob("*") if p.is_dir()), key=lambda p: len(p.parts), reverse=True)
    for directory in dirs:
        if not any(directory.iterdir()):
            directory.rmdir()


def seed_files(project_dir: Path, project: ProjectConfig, *, version: str, generation: str = "") -> list[Path]:
    """Write the configured seed files, substituting `$version` and `$generation`."""
    written: list[Path] = []
    for rel_path in sorted(project.seed_files):
        target = project_dir / rel_path
        try:
            text = Template(project.seed_files[rel_path]).substitute(version=version, generation=generation)
        except (KeyError, ValueError) as exc:
            raise GenerationError(f"Seed template for {rel_path} is invalid: {exc}") from exc
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        written.append(target)
    return written


def run_bootstrap_commands(project_dir: Path, project: ProjectConfig) -> None:
    for command in project.bootstrap_commands:
        logger.info("Bootstrap: {}", command)
        result = subprocess.run(
            shlex.split(command),
            cwd=project_dir,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise GenerationError(f"Bootstrap command `{command}` exited {result.returncode}: {detail}")


def reset_sources(project_dir: Path, project: ProjectConfig, *, version: str, generation: str = "") -> None:
    """Return the source tree to its seeded state.

    Generated files under the source directories are deleted, emptied
    directories removed, then seed files written and bootstrap commands run.
    """
    removed = delete_source_files(project_dir, project)
    for name in project.source_dirs:
        remove_empty_dirs(project_dir / name)
    logger.info("Removed {} generated source file(s)", removed)
    seed_files(project_dir, project, version=version, generation=generation)
    run_bootstrap_commands(project_dir, project)


def cleanup_dirs(project_dir: Path, project: ProjectConfig) -> None:
    for name in project.cleanup_dirs:
        target = project_dir / name
        if target.exists():
            logger.info("Removing {}", target)
            shutil.rmtree(target)


def write_version_file(path: Path, version: str) -> None:
    """Set the version assignment in `path` to `version`.

    A file without a recognizable assignment is replaced by the bare version.
    """
    text = path.read_text(encoding="utf-8") if path.exists() else ""
    updated, count = _VERSION_ASSIGNMENT.subn(
        lambda match: f"{match.group(1)}{match.group(2)}{version}{match.group(2)}", text, count=1
    )
    if not count:
        updated = version + "\n"
    _atomic_write_text(path, updated)
