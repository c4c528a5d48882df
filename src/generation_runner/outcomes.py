"""Outcome records: immutable cost and diff annotations on closed tasks."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .git_utils import _git_log
from .utils import format_duration

OUTCOME_SEPARATOR = "==OUTCOME=="

# commit trailer key -> record field
_TRAILER_FIELDS: tuple[tuple[str, str], ...] = (
    ("Task-Id", "task_id"),
    ("Task-Branch", "task_branch"),
    ("Tokens-Input", "tokens_input"),
    ("Tokens-Output", "tokens_output"),
    ("Tokens-Cache-Creation", "tokens_cache_creation"),
    ("Tokens-Cache-Read", "tokens_cache_read"),
    ("Tokens-Cost-USD", "cost_usd"),
    ("Loc-Prod-Before", "loc_prod_before"),
    ("Loc-Prod-After", "loc_prod_after"),
    ("Loc-Test-Before", "loc_test_before"),
    ("Loc-Test-After", "loc_test_after"),
    ("Duration-Seconds", "duration_s"),
)


@dataclass(frozen=True)
class OutcomeRecord:
    task_id: str
    task_branch: str = ""
    tokens_input: int = 0
    tokens_output: int = 0
    tokens_cache_creation: int = 0
    tokens_cache_read: int = 0
    cost_usd: float = 0.0
    loc_prod_before: int = 0
    loc_prod_after: int = 0
    loc_test_before: int = 0
    loc_test_after: int = 0
    duration_s: int = 0
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def loc_prod_delta(self) -> int:
        return self.loc_prod_after - self.loc_prod_before

    @property
    def loc_test_delta(self) -> int:
        return self.loc_test_after - self.loc_test_before

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    def trailers(self) -> list[tuple[str, str]]:
        values = asdict(self)
        out: list[tuple[str, str]] = []
        for key, name in _TRAILER_FIELDS:
            value = values[name]
            out.append((key, f"{value:.4f}" if isinstance(value, float) else str(value)))
        return out


def _parse_outcome_block(block: str) -> Optional[OutcomeRecord]:
    values: dict[str, Any] = {}
    lookup = dict(_TRAILER_FIELDS)
    for line in block.splitlines():
        key, sep, raw = line.partition(": ")
        if not sep or key not in lookup:
            continue
        name = lookup[key]
        raw = raw.strip()
        try:
            if name in {"task_id", "task_branch"}:
                values[name] = raw
            elif name == "cost_usd":
                values[name] = float(raw)
            else:
                values[name] = int(raw)
        except ValueError:
            continue
    if "task_id" not in values or "tokens_input" not in values:
        return None
    return OutcomeRecord(**values)


def parse_outcome_log(output: str) -> list[OutcomeRecord]:
    """Parse `git log` output whose blocks start with the outcome separator."""
    records: list[OutcomeRecord] = []
    for block in output.split(OUTCOME_SEPARATOR + "\n"):
        if not block.strip():
            continue
        record = _parse_outcome_block(block)
        if record is not None:
            records.append(record)
    return records


def collect_outcomes(project_dir: Path) -> list[OutcomeRecord]:
    output = _git_log(project_dir, "--all", f"--format={OUTCOME_SEPARATOR}%n%(trailers:only)")
    return parse_outcome_log(output)


def render_outcomes(records: list[OutcomeRecord], console: Optional[Console] = None) -> None:
    console = console or Console()
    if not records:
        console.print("no outcome records found")
        return
    table = Table(title="Task outcomes")
    for column in ("Task", "Branch", "Tokens-In", "Tokens-Out", "Cost-USD", "LOC-Prod-Δ", "LOC-Test-Δ", "Duration"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.task_id,
            record.task_branch,
            str(record.tokens_input),
            str(record.tokens_output),
            f"${record.cost_usd:.4f}",
            f"{record.loc_prod_delta:+d}",
            f"{record.loc_test_delta:+d}",
            format_duration(record.duration_s),
        )
    console.print(table)
