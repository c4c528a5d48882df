"""Cycle scheduler: alternate bounded execution with planning until work runs out."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .agent import AgentRunner, run_agent
from .context import RunContext
from .errors import RunnerError, TrackerError
from .measure import run_measure
from .stitch import StitchEngine
from .tracker import IssueTracker

STOP_NO_WORK = "no_work"
STOP_MAX_CYCLES = "max_cycles"
STOP_BUDGET = "budget_exhausted"


@dataclass
class CycleReport:
    cycles: int = 0
    stitched: int = 0
    stop_reason: str = STOP_NO_WORK


def cycle_limit(per_cycle: int, total_budget: int, stitched: int) -> Optional[int]:
    """Return this cycle's execution limit, or None when the budget is spent.

    A limit of 0 means unbounded.
    """
    if total_budget <= 0:
        return per_cycle
    remaining = total_budget - stitched
    if remaining <= 0:
        return None
    if per_cycle == 0 or remaining < per_cycle:
        return remaining
    return per_cycle


def has_pending_work(tracker: IssueTracker, log) -> bool:
    try:
        return bool(tracker.list_ready()) or bool(tracker.list_in_progress())
    except TrackerError as exc:
        log.warning("Unable to query pending work, treating as none: {}", exc)
        return False


def run_cycles(
    ctx: RunContext,
    tracker: IssueTracker,
    *,
    label: str = "run",
    agent_runner: AgentRunner = run_agent,
    stitch: Optional[Callable[[int], int]] = None,
    measure: Optional[Callable[[], object]] = None,
) -> CycleReport:
    """Run stitch then measure cycles.

    Stops when no ready or in-progress work remains, when
    `generation.cycles` cycles have run, or when the lifetime
    `cobbler.max_stitch_issues` budget is spent. All three are normal exits;
    stitch and measure errors propagate.
    """
    ctx = ctx.with_phase(label)
    log = ctx.log
    cobbler = ctx.config.cobbler
    max_cycles = ctx.config.generation.cycles

    if stitch is None:
        engine = StitchEngine(ctx, tracker, agent_runner=agent_runner)

        def stitch(limit: int) -> int:
            return engine.run(limit).attempted

    if measure is None:

        def measure() -> object:
            return run_measure(ctx, tracker, agent_runner=agent_runner)

    log.info(
        "Starting cycles (stitch total={} per cycle={} measure={} max cycles={})",
        cobbler.max_stitch_issues,
        cobbler.max_stitch_issues_per_cycle,
        cobbler.max_measure_issues,
        max_cycles,
    )
    report = CycleReport()
    cycle = 0
    while True:
        cycle += 1
        if max_cycles > 0 and cycle > max_cycles:
            log.info("Reached the maximum of {} cycle(s)", max_cycles)
            report.stop_reason = STOP_MAX_CYCLES
            break
        limit = cycle_limit(cobbler.max_stitch_issues_per_cycle, cobbler.max_stitch_issues, report.stitched)
        if limit is None:
            log.info("Stitch budget of {} task(s) exhausted", cobbler.max_stitch_issues)
            report.stop_reason = STOP_BUDGET
            break

        log.info("Cycle {}: stitch (limit={}, stitched so far={})", cycle, limit, report.stitched)
        try:
            report.stitched += stitch(limit)
        except RunnerError as exc:
            raise RunnerError(f"cycle {cycle} stitch: {exc}") from exc
        log.info("Cycle {}: measure", cycle)
        try:
            measure()
        except RunnerError as exc:
            raise RunnerError(f"cycle {cycle} measure: {exc}") from exc
        report.cycles = cycle

        if not has_pending_work(tracker, log):
            log.info("No open work remains after {} cycle(s)", cycle)
            report.stop_reason = STOP_NO_WORK
            break

    log.info("Cycles complete: {} cycle(s), {} task(s) stitched", report.cycles, report.stitched)
    return report
