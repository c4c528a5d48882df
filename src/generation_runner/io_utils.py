from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


def _load_yaml_with_error(path: Path, default: Any) -> tuple[Any, str | None]:
    """
    Load a YAML document and return (data, error_message).

    A missing file is not an error. Callers decide whether an unexpected
    document shape is fatal.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    return data, None


def _dump_yaml(data: Any) -> str:
    return yaml.safe_dump(
        data,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def _atomic_write_yaml(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(_dump_yaml(data))
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _append_yaml_list(path: Path, items: list[Any]) -> None:
    """Extend the YAML list stored at `path`, creating it when absent."""
    current, err = _load_yaml_with_error(path, [])
    if err or not isinstance(current, list):
        current = []
    current.extend(items)
    _atomic_write_yaml(path, current)
