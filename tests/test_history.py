"""Tests for the history sink and line counting."""

from __future__ import annotations

from pathlib import Path

import yaml

from generation_runner.agent import AgentUsage
from generation_runner.config import ProjectConfig
from generation_runner.git_utils import DiffStat
from generation_runner.history import STATUS_FAILED, HistorySink, InvocationStats
from generation_runner.stats import LocSnapshot, capture_loc, is_test_file


class TestHistorySink:
    """Test HistorySink writes."""

    def test_writes_named_files(self, tmp_path: Path):
        """Prompt, log and stats land in timestamp-phase named files."""
        sink = HistorySink(tmp_path / "history")
        stats = InvocationStats(
            caller="stitch",
            started_at="2026-01-01T00:00:00+00:00",
            duration_s=187,
            status=STATUS_FAILED,
            task_id="t-1",
            error="agent max time exceeded (300s)",
            usage=AgentUsage(input_tokens=5, output_tokens=2, cost_usd=0.01),
            loc_before=LocSnapshot(10, 2),
            diff=DiffStat(1, 3, 0),
        )

        assert sink.save_prompt("2026-01-01-00-00-00", "stitch", "do it") is None
        assert sink.save_log("2026-01-01-00-00-00", "stitch", "{}\n") is None
        assert sink.save_stats("2026-01-01-00-00-00", "stitch", stats) is None

        names = sorted(p.name for p in (tmp_path / "history").iterdir())
        assert names == [
            "2026-01-01-00-00-00-stitch-log.log",
            "2026-01-01-00-00-00-stitch-prompt.yaml",
            "2026-01-01-00-00-00-stitch-stats.yaml",
        ]
        data = yaml.safe_load((tmp_path / "history" / "2026-01-01-00-00-00-stitch-stats.yaml").read_text())
        assert data["status"] == "failed"
        assert data["duration"] == "3m7s"
        assert data["tokens"]["input"] == 5
        assert data["loc_before"] == {"production": 10, "test": 2}
        assert data["diff"]["insertions"] == 3

    def test_disabled_sink_is_silent(self, tmp_path: Path):
        """A sink without a directory writes nothing and reports nothing."""
        sink = HistorySink(None)
        assert not sink.enabled
        assert sink.save_log("stamp", "measure", "output") is None
        assert list(tmp_path.iterdir()) == []

    def test_write_failure_is_advisory(self, tmp_path: Path):
        """An unwritable directory degrades to an advisory."""
        blocker = tmp_path / "history"
        blocker.write_text("a file, not a directory")
        advisory = HistorySink(blocker).save_prompt("stamp", "stitch", "prompt")
        assert advisory is not None
        assert advisory.operation == "history"


def test_capture_loc_splits_tests_from_production(tmp_path: Path) -> None:
    """Lines under source dirs are counted by file role."""
    project = ProjectConfig()
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "src" / "pkg" / "core.py").write_text("a = 1\nb = 2\n")
    (tmp_path / "src" / "pkg" / "notes.md").write_text("ignored\n")
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "test_core.py").write_text("def test():\n    pass\n    pass\n")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "conf.py").write_text("x = 1\n")

    assert capture_loc(tmp_path, project) == LocSnapshot(production=2, test=3)
    assert is_test_file(Path("core_test.py"), project)
    assert not is_test_file(Path("core.py"), project)
