"""Tests for the cycle scheduler."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeTracker, make_ctx
from generation_runner.cycles import STOP_BUDGET, STOP_MAX_CYCLES, STOP_NO_WORK, cycle_limit, run_cycles
from generation_runner.errors import PlanningError, RunnerError


def _ctx(tmp_path: Path, **cobbler):
    return make_ctx(tmp_path, tmp_path / "worktrees", cobbler=cobbler)


def test_cycle_limit_respects_total_budget() -> None:
    """The per-cycle limit shrinks to the remaining lifetime budget."""
    assert cycle_limit(10, 0, 50) == 10
    assert cycle_limit(10, 25, 20) == 5
    assert cycle_limit(0, 25, 20) == 5
    assert cycle_limit(3, 25, 0) == 3
    assert cycle_limit(10, 25, 25) is None


def test_stops_when_no_work_remains(tmp_path: Path, tracker: FakeTracker) -> None:
    """Cycling ends normally once nothing is ready or in progress."""
    issue = tracker.add("only")
    limits: list[int] = []

    def stitch(limit: int) -> int:
        limits.append(limit)
        tracker.issues[issue.id].status = "closed"
        return 1

    report = run_cycles(_ctx(tmp_path), tracker, stitch=stitch, measure=lambda: None)

    assert report.stop_reason == STOP_NO_WORK
    assert report.cycles == 1
    assert report.stitched == 1
    assert limits == [10]


def test_stops_at_max_cycles(tmp_path: Path, tracker: FakeTracker) -> None:
    """A configured cycle count caps the loop even with work left."""
    tracker.add("never done")
    ctx = _ctx(tmp_path)
    ctx.config.generation.cycles = 2
    measured: list[int] = []

    report = run_cycles(ctx, tracker, stitch=lambda limit: 0, measure=lambda: measured.append(1))

    assert report.stop_reason == STOP_MAX_CYCLES
    assert report.cycles == 2
    assert len(measured) == 2


def test_stops_when_budget_is_exhausted(tmp_path: Path, tracker: FakeTracker) -> None:
    """The lifetime execution budget is split across cycles and then ends the loop."""
    tracker.add("endless")
    ctx = _ctx(tmp_path, max_stitch_issues=5, max_stitch_issues_per_cycle=2)
    limits: list[int] = []

    def stitch(limit: int) -> int:
        limits.append(limit)
        return limit

    report = run_cycles(ctx, tracker, stitch=stitch, measure=lambda: None)

    assert report.stop_reason == STOP_BUDGET
    assert limits == [2, 2, 1]
    assert report.stitched == 5


def test_planning_failure_propagates(tmp_path: Path, tracker: FakeTracker) -> None:
    """A failed planning pass aborts the cycles."""

    def measure() -> None:
        raise PlanningError("agent exited with code 1")

    with pytest.raises(RunnerError, match="cycle 1 measure"):
        run_cycles(_ctx(tmp_path), tracker, stitch=lambda limit: 0, measure=measure)


def test_tracker_errors_end_cycles(tmp_path: Path, tracker: FakeTracker) -> None:
    """An unreachable tracker is treated as having no remaining work."""
    tracker.failing.add("list_ready")

    report = run_cycles(_ctx(tmp_path), tracker, stitch=lambda limit: 0, measure=lambda: None)

    assert report.stop_reason == STOP_NO_WORK
