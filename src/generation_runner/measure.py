"""Planning pass: ask the agent for new tasks and import them into the tracker."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .agent import AgentRunner, extract_text, run_agent
from .constants import MEASURE_LOG_FILE
from .context import RunContext
from .errors import Advisory, PlanningError, TrackerError, best_effort
from .history import STATUS_FAILED, STATUS_SUCCESS, HistorySink, InvocationStats
from .io_utils import _append_yaml_list
from .prompts import build_measure_prompt
from .stats import capture_loc
from .tracker import IssueTracker, commit_tracker_state
from .utils import history_stamp

MEASURE_COMMIT_MESSAGE = "Add issues from measure"
_YAML_FENCES = ("```yaml\n", "```yml\n", "```yaml\r\n", "```yml\r\n")


@dataclass(frozen=True)
class ProposedIssue:
    index: int
    title: str
    description: str = ""
    dependency: int = -1

    @classmethod
    def from_dict(cls, data: dict[str, Any], position: int) -> "ProposedIssue":
        index = data.get("index")
        dependency = data.get("dependency")
        return cls(
            index=index if isinstance(index, int) else position,
            title=str(data.get("title") or "").strip(),
            description=str(data.get("description") or ""),
            dependency=dependency if isinstance(dependency, int) else -1,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "title": self.title,
            "description": self.description,
            "dependency": self.dependency,
        }


@dataclass
class MeasureReport:
    proposed: list[ProposedIssue] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    advisories: list[Advisory] = field(default_factory=list)


def extract_yaml_block(text: str) -> str:
    """Return the body of the first ```yaml fenced block in `text`."""
    start = -1
    marker_len = 0
    for marker in _YAML_FENCES:
        idx = text.find(marker)
        if idx >= 0 and (start < 0 or idx < start):
            start = idx
            marker_len = len(marker)
    if start < 0:
        raise PlanningError("No ```yaml fenced block found in agent output")
    body = text[start + marker_len:]
    end = body.find("\n```")
    if end < 0:
        end = body.find("```")
    if end < 0:
        raise PlanningError("Unclosed ```yaml fenced block in agent output")
    return body[:end].strip()


def parse_proposed_issues(text: str) -> list[ProposedIssue]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PlanningError(f"Unable to parse proposed issues: {exc}") from exc
    if data is None:
        return []
    if not isinstance(data, list):
        raise PlanningError(f"Proposed issues must be a YAML list, got {type(data).__name__}")
    proposed = [ProposedIssue.from_dict(item, pos) for pos, item in enumerate(data) if isinstance(item, dict)]
    return [issue for issue in proposed if issue.title]


def import_issues(
    tracker: IssueTracker,
    proposed: list[ProposedIssue],
    log: Any,
) -> tuple[list[str], list[Advisory]]:
    """Create the proposed issues, then link dependencies by list index.

    Creation failures skip that issue; dependency edges whose ends were not
    created are skipped.
    """
    advisories: list[Advisory] = []
    index_to_id: dict[int, str] = {}
    for issue in proposed:
        try:
            created = tracker.create(issue.title, issue.description)
        except TrackerError as exc:
            log.warning("Unable to create task '{}': {}", issue.title, exc)
            advisories.append(Advisory(f"create '{issue.title}'", str(exc)))
            continue
        index_to_id[issue.index] = created.id
        log.info("Created task {} -> {}", issue.index, created.id)

    for issue in proposed:
        if issue.dependency < 0:
            continue
        child = index_to_id.get(issue.index)
        parent = index_to_id.get(issue.dependency)
        if not child or not parent:
            log.warning("Skipping dependency {} -> {}", issue.index, issue.dependency)
            continue
        advisory = best_effort(f"link {child} -> {parent}", tracker.add_dependency, child, parent, log=log)
        if advisory is not None:
            advisories.append(advisory)

    return [index_to_id[i.index] for i in proposed if i.index in index_to_id], advisories


def _clear_scratch(cobbler_dir: Path) -> None:
    for path in cobbler_dir.glob("measure-*.yaml"):
        path.unlink()


def run_measure(
    ctx: RunContext,
    tracker: IssueTracker,
    limit: Optional[int] = None,
    *,
    agent_runner: AgentRunner = run_agent,
    history: Optional[HistorySink] = None,
) -> MeasureReport:
    """Ask the planning agent for up to `limit` new tasks and import them.

    Raises:
        PlanningError: The agent failed or its proposal could not be read.
    """
    ctx = ctx.with_phase("measure")
    log = ctx.log
    config = ctx.config
    limit = config.cobbler.max_measure_issues if limit is None else limit
    history = history or HistorySink(config.history_dir(ctx.project_dir))
    report = MeasureReport()

    cobbler_dir = ctx.cobbler_dir
    cobbler_dir.mkdir(parents=True, exist_ok=True)
    _clear_scratch(cobbler_dir)
    stamp = history_stamp()
    output_path = cobbler_dir / f"measure-{stamp}.yaml"

    try:
        existing = tracker.list_all()
    except TrackerError as exc:
        log.warning("Unable to list existing issues: {}", exc)
        report.advisories.append(Advisory("list issues", str(exc)))
        existing = []

    loc_before = capture_loc(ctx.project_dir, config.project)
    prompt = build_measure_prompt(
        ctx.project_dir,
        existing_issues=existing,
        limit=limit,
        output_path=output_path,
        user_prompt=config.cobbler.user_prompt,
        template_path=config.cobbler.measure_prompt,
        context_files=config.project.context_files,
    )
    _note(report, history.save_prompt(stamp, "measure", prompt))
    log.info("Planning up to {} task(s) with {} existing issue(s)", limit, len(existing))
    started = time.monotonic()
    result = agent_runner(prompt, ctx.project_dir, config.agent)
    _note(report, history.save_log(stamp, "measure", result.raw_output))

    def save_stats(status: str, error: str = "") -> None:
        stats = InvocationStats(
            caller="measure",
            started_at=result.start_time,
            duration_s=int(time.monotonic() - started),
            status=status,
            error=error,
            usage=result.usage,
            loc_before=loc_before,
            loc_after=capture_loc(ctx.project_dir, config.project),
        )
        _note(report, history.save_stats(stamp, "measure", stats))

    if not result.ok:
        save_stats(STATUS_FAILED, result.error or "")
        raise PlanningError(f"Planning agent failed: {result.error}")

    try:
        if output_path.exists():
            proposed = parse_proposed_issues(output_path.read_text(encoding="utf-8"))
        else:
            log.warning("Agent did not write {}; looking for a YAML block in its output", output_path)
            proposed = parse_proposed_issues(extract_yaml_block(extract_text(result.raw_output)))
    except PlanningError as exc:
        save_stats(STATUS_FAILED, str(exc))
        raise

    if limit > 0 and len(proposed) > limit:
        log.warning("Agent proposed {} task(s); keeping the first {}", len(proposed), limit)
        proposed = proposed[:limit]
    report.proposed = proposed

    created, advisories = import_issues(tracker, proposed, log)
    report.created = created
    report.advisories.extend(advisories)
    if created:
        report.advisories.extend(
            commit_tracker_state(
                ctx.project_dir,
                tracker,
                config.beads_dir(ctx.project_dir),
                MEASURE_COMMIT_MESSAGE,
                log=log,
            )
        )
    try:
        _append_yaml_list(cobbler_dir / MEASURE_LOG_FILE, [issue.to_dict() for issue in proposed])
    except OSError as exc:
        log.warning("Unable to update {}: {}", MEASURE_LOG_FILE, exc)
        report.advisories.append(Advisory("measure log", str(exc)))

    save_stats(STATUS_SUCCESS)
    log.info("Imported {} of {} proposed task(s)", len(created), len(proposed))
    return report


def _note(report: MeasureReport, advisory: Optional[Advisory]) -> None:
    if advisory is not None:
        report.advisories.append(advisory)
