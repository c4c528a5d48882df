from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console

from .config import load_config, write_default_config
from .constants import CONFIG_FILE
from .context import RunContext
from .errors import RunnerError
from .generator import (
    list_generations,
    render_generations,
    reset_generations,
    resume_generation,
    run_generation,
    start_generation,
    stop_generation,
    switch_generation,
)
from .git_utils import _git_current_branch
from .logging_utils import configure_logging
from .measure import run_measure
from .outcomes import collect_outcomes, render_outcomes
from .recovery import recover_stale_tasks
from .stitch import StitchEngine
from .tracker import BeadsTracker


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> tuple[RunContext, BeadsTracker]:
    project_dir = _resolve_project_dir(args.project_dir)
    config_path = Path(args.config).expanduser() if args.config else None
    config = load_config(project_dir, config_path)
    ctx = RunContext(project_dir=project_dir, config=config)
    tracker = BeadsTracker(project_dir, config.beads_dir(project_dir))
    return ctx, tracker


def _generator_start(args: argparse.Namespace) -> int:
    ctx, tracker = _ctx(args)
    name = start_generation(ctx, tracker)
    Console().print(f"started generation [bold]{name}[/bold]")
    return 0


def _generator_run(args: argparse.Namespace) -> int:
    ctx, tracker = _ctx(args)
    report = run_generation(ctx, tracker)
    Console().print(f"{report.cycles} cycle(s), {report.stitched} task(s) stitched ({report.stop_reason})")
    return 0


def _generator_resume(args: argparse.Namespace) -> int:
    ctx, tracker = _ctx(args)
    report = resume_generation(ctx, tracker)
    Console().print(f"{report.cycles} cycle(s), {report.stitched} task(s) stitched ({report.stop_reason})")
    return 0


def _generator_stop(args: argparse.Namespace) -> int:
    ctx, _ = _ctx(args)
    report = stop_generation(ctx)
    console = Console()
    console.print(f"merged [bold]{report.generation}[/bold] into {report.base_branch}")
    if report.version_tag:
        console.print(f"tagged {report.version_tag}")
    for advisory in report.advisories:
        console.print(f"[yellow]warning[/yellow] {advisory}")
    return 0


def _generator_reset(args: argparse.Namespace) -> int:
    if not args.yes:
        sys.stderr.write("generator reset deletes every generation branch; pass --yes to confirm\n")
        return 1
    ctx, tracker = _ctx(args)
    reset_generations(ctx, tracker)
    return 0


def _generator_list(args: argparse.Namespace) -> int:
    ctx, _ = _ctx(args)
    render_generations(list_generations(ctx))
    return 0


def _generator_switch(args: argparse.Namespace) -> int:
    ctx, _ = _ctx(args)
    target = switch_generation(ctx, args.branch or "")
    Console().print(f"on {target}")
    return 0


def _stitch(args: argparse.Namespace) -> int:
    ctx, tracker = _ctx(args)
    limit = args.limit if args.limit is not None else ctx.config.cobbler.max_stitch_issues_per_cycle
    generation = _git_current_branch(ctx.project_dir) or "-"
    report = StitchEngine(ctx.with_generation(generation), tracker).run(limit)
    Console().print(
        f"{len(report.closed)} closed, {len(report.reset)} reset ({report.stop_reason})"
    )
    return 0


def _measure(args: argparse.Namespace) -> int:
    ctx, tracker = _ctx(args)
    generation = _git_current_branch(ctx.project_dir) or "-"
    report = run_measure(ctx.with_generation(generation), tracker, args.limit)
    Console().print(f"created {len(report.created)} of {len(report.proposed)} proposed task(s)")
    return 0


def _recover(args: argparse.Namespace) -> int:
    ctx, tracker = _ctx(args)
    base_branch = _git_current_branch(ctx.project_dir)
    if not base_branch:
        raise RunnerError(f"Unable to determine the current branch in {ctx.project_dir}")
    report = recover_stale_tasks(ctx.with_generation(base_branch), tracker, base_branch)
    Console().print(
        f"{len(report.stale_branches)} stale branch(es), {len(report.orphaned_tasks)} orphaned task(s) recovered"
    )
    return 0


def _outcomes(args: argparse.Namespace) -> int:
    render_outcomes(collect_outcomes(_resolve_project_dir(args.project_dir)))
    return 0


def _init(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    path = Path(args.config).expanduser() if args.config else project_dir / CONFIG_FILE
    write_default_config(path)
    Console().print(f"wrote {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent-driven code generation runner")
    parser.add_argument("--project-dir", default=None, help="Target repository (default: current working directory)")
    parser.add_argument("--config", default=None, help=f"Configuration file (default: <project-dir>/{CONFIG_FILE})")
    parser.add_argument("--log-level", default="INFO", help="stderr log level (default: INFO)")
    parser.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file")
    subparsers = parser.add_subparsers(dest="command")

    generator = subparsers.add_parser("generator", help="Manage generations")
    gen_sub = generator.add_subparsers(dest="generator_command")
    gstart = gen_sub.add_parser("start", help="Branch a new generation off the current branch")
    gstart.set_defaults(func=_generator_start)
    grun = gen_sub.add_parser("run", help="Run cycles on the current generation")
    grun.set_defaults(func=_generator_run)
    gresume = gen_sub.add_parser("resume", help="Recover and continue an interrupted generation")
    gresume.set_defaults(func=_generator_resume)
    gstop = gen_sub.add_parser("stop", help="Finish a generation and merge it into its base branch")
    gstop.set_defaults(func=_generator_stop)
    greset = gen_sub.add_parser("reset", help="Discard all generations and reseed the base branch")
    greset.add_argument("--yes", action="store_true", help="Confirm the destructive reset")
    greset.set_defaults(func=_generator_reset)
    glist = gen_sub.add_parser("list", help="List generations and their states")
    glist.set_defaults(func=_generator_list)
    gswitch = gen_sub.add_parser("switch", help="Switch to a generation or the base branch")
    gswitch.add_argument("branch", nargs="?", default=None)
    gswitch.set_defaults(func=_generator_switch)

    stitch = subparsers.add_parser("stitch", help="Execute ready tasks on the current branch")
    stitch.add_argument("--limit", type=int, default=None, help="Maximum tasks to attempt (0 = no limit)")
    stitch.set_defaults(func=_stitch)

    measure = subparsers.add_parser("measure", help="Ask the planning agent for new tasks")
    measure.add_argument("--limit", type=int, default=None, help="Maximum tasks to import")
    measure.set_defaults(func=_measure)

    recover = subparsers.add_parser("recover", help="Repair task state left by an interrupted run")
    recover.set_defaults(func=_recover)

    outcomes = subparsers.add_parser("outcomes", help="Show outcome records of closed tasks")
    outcomes.set_defaults(func=_outcomes)

    init = subparsers.add_parser("init", help=f"Write a default {CONFIG_FILE}")
    init.set_defaults(func=_init)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    configure_logging(args.log_level, Path(args.log_file) if args.log_file else None)
    try:
        return int(handler(args) or 0)
    except RunnerError as exc:
        logger.error("{}", exc)
        return 1
