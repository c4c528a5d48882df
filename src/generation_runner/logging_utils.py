"""Configure loguru sinks for the runner."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

_STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[generation]}</magenta>:<magenta>{extra[phase]}</magenta> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[generation]}:{extra[phase]} | {module}:{line} | {message}"
)


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru with a stderr sink and an optional file sink."""
    logger.remove()
    logger.configure(extra={"generation": "-", "phase": "-"})
    logger.add(sys.stderr, level=level.upper(), format=_STDERR_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level="DEBUG",
            format=_FILE_FORMAT,
            rotation="10 MB",
            encoding="utf-8",
        )
