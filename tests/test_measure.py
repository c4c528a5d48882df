"""Tests for the planning pass."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from loguru import logger

from conftest import FakeTracker, git, make_ctx
from generation_runner.agent import AgentRunResult
from generation_runner.config import AgentConfig
from generation_runner.errors import PlanningError
from generation_runner.measure import (
    MEASURE_COMMIT_MESSAGE,
    ProposedIssue,
    extract_yaml_block,
    import_issues,
    parse_proposed_issues,
    run_measure,
)

_PROPOSAL = [
    {"index": 0, "title": "Add lexer", "description": "tokens", "dependency": -1},
    {"index": 1, "title": "Add parser", "description": "ast", "dependency": 0},
    {"index": 2, "title": "Add printer", "description": "output", "dependency": 1},
]


def _file_writing_agent(proposal: list[dict]):
    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        scratch = sorted((workdir / ".cobbler").glob("measure-*.yaml"))
        assert scratch == []
        output = prompt.split("Write a YAML list to ", 1)[1].split(". Each item has:", 1)[0]
        Path(output).write_text(yaml.safe_dump(proposal))
        return AgentRunResult(command=["fake"], start_time="", duration_s=0, exit_code=0, timed_out=False)

    return runner


def test_extract_yaml_block() -> None:
    """The first fenced YAML block is returned without its fences."""
    text = "Here you go:\n```yaml\n- title: a\n```\nand ```yaml\n- title: b\n```"
    assert extract_yaml_block(text) == "- title: a"
    with pytest.raises(PlanningError):
        extract_yaml_block("no block here")


def test_parse_proposed_issues_defaults() -> None:
    """Missing indexes fall back to position and untitled items are dropped."""
    issues = parse_proposed_issues("- title: first\n- title: ''\n- index: 7\n  title: third\n  dependency: 0\n")
    assert issues == [ProposedIssue(index=0, title="first"), ProposedIssue(index=7, title="third", dependency=0)]
    assert parse_proposed_issues("") == []
    with pytest.raises(PlanningError, match="YAML list"):
        parse_proposed_issues("title: not a list\n")


def test_import_issues_links_dependencies(tracker: FakeTracker) -> None:
    """Issues are created first, then linked by list index."""
    proposed = [ProposedIssue.from_dict(item, pos) for pos, item in enumerate(_PROPOSAL)]
    ids, advisories = import_issues(tracker, proposed, logger)

    assert ids == ["t-1", "t-2", "t-3"]
    assert advisories == []
    assert tracker.deps == {"t-2": {"t-1"}, "t-3": {"t-2"}}
    assert [issue.id for issue in tracker.list_ready()] == ["t-1"]


def test_run_measure_imports_and_commits(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """Proposed tasks are imported, committed and appended to the measure log."""
    ctx = make_ctx(git_repo, worktrees, cobbler={"max_measure_issues": 2})
    stale = git_repo / ".cobbler" / "measure-old.yaml"
    stale.parent.mkdir(parents=True)
    stale.write_text("[]\n")

    report = run_measure(ctx, tracker, agent_runner=_file_writing_agent(_PROPOSAL))

    assert [p.title for p in report.proposed] == ["Add lexer", "Add parser"]
    assert report.created == ["t-1", "t-2"]
    assert git(git_repo, "log", "-1", "--format=%s") == MEASURE_COMMIT_MESSAGE
    log = yaml.safe_load((git_repo / ".cobbler" / "measure.yaml").read_text())
    assert [item["title"] for item in log] == ["Add lexer", "Add parser"]
    stats = list((git_repo / ".cobbler" / "history").glob("*-measure-stats.yaml"))
    assert yaml.safe_load(stats[0].read_text())["status"] == "success"


def test_run_measure_falls_back_to_transcript(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """Without an output file the YAML block in the transcript is used."""
    ctx = make_ctx(git_repo, worktrees)
    text = "```yaml\n- title: From transcript\n```"
    raw = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        return AgentRunResult(command=["fake"], start_time="", duration_s=0, exit_code=0, timed_out=False, raw_output=raw)

    report = run_measure(ctx, tracker, agent_runner=runner)

    assert report.created == ["t-1"]
    assert tracker.issues["t-1"].title == "From transcript"


def test_run_measure_with_nothing_proposed_commits_nothing(
    git_repo: Path, worktrees: Path, tracker: FakeTracker
) -> None:
    """An empty proposal creates no issues and no commit."""
    ctx = make_ctx(git_repo, worktrees)

    report = run_measure(ctx, tracker, agent_runner=_file_writing_agent([]))

    assert report.created == []
    assert git(git_repo, "log", "-1", "--format=%s") == "initial"


def test_run_measure_agent_failure_is_fatal(git_repo: Path, worktrees: Path, tracker: FakeTracker) -> None:
    """A failed planning agent raises PlanningError and records failed stats."""
    ctx = make_ctx(git_repo, worktrees)

    def runner(prompt: str, workdir: Path, config: AgentConfig) -> AgentRunResult:
        return AgentRunResult(command=["fake"], start_time="", duration_s=0, exit_code=1, timed_out=False)

    with pytest.raises(PlanningError, match="exited with code 1"):
        run_measure(ctx, tracker, agent_runner=runner)

    stats = list((git_repo / ".cobbler" / "history").glob("*-measure-stats.yaml"))
    assert yaml.safe_load(stats[0].read_text())["status"] == "failed"
    assert tracker.issues == {}
