"""Count production and test lines of code under the source directories."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from loguru import logger

from .config import ProjectConfig


@dataclass(frozen=True)
class LocSnapshot:
    production: int = 0
    test: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"production": self.production, "test": self.test}


def iter_source_files(root: Path, project: ProjectConfig) -> Iterator[Path]:
    """Yield generated source files under the configured source directories."""
    extensions = set(project.source_extensions)
    for name in project.source_dirs:
        base = root / name
        if not base.is_dir():
            continue
        for path in sorted(base.rglob("*")):
            if path.is_file() and path.suffix in extensions:
                yield path


def is_test_file(path: Path, project: ProjectConfig) -> bool:
    return any(fnmatch.fnmatch(path.name, pattern) for pattern in project.test_patterns)


def _count_lines(path: Path) -> int:
    try:
        with open(path, "rb") as handle:
            return sum(1 for _ in handle)
    except OSError as exc:
        logger.debug("Unable to count lines in {}: {}", path, exc)
        return 0


def capture_loc(root: Path, project: ProjectConfig) -> LocSnapshot:
    production = 0
    test = 0
    for path in iter_source_files(root, project):
        if is_test_file(path, project):
            test += _count_lines(path)
        else:
            production += _count_lines(path)
    return LocSnapshot(production=production, test=test)
