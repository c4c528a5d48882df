"""Invoke the coding agent as a subprocess with a wall-clock timeout."""

from __future__ import annotations

import json
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from .config import AgentConfig
from .constants import AGENT_KILL_GRACE_SECONDS, AGENT_TIMEOUT_EXIT_CODE, PODMAN_BIN
from .utils import _now_iso


@dataclass(frozen=True)
class AgentUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "cache_creation": self.cache_creation_tokens,
            "cache_read": self.cache_read_tokens,
        }


@dataclass(frozen=True)
class AgentRunResult:
    command: list[str]
    start_time: str
    duration_s: int
    exit_code: int
    timed_out: bool
    raw_output: str = ""
    stderr: str = ""
    usage: AgentUsage = field(default_factory=AgentUsage)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def error(self) -> Optional[str]:
        if self.timed_out:
            return f"agent max time exceeded ({self.duration_s}s)"
        if self.exit_code != 0:
            return f"agent exited with code {self.exit_code}"
        return None


AgentRunner = Callable[[str, Path, AgentConfig], AgentRunResult]


def parse_agent_usage(raw_output: str) -> AgentUsage:
    """Extract token usage from stream-json output.

    Scans backwards for the last `{"type": "result"}` event. Total input
    tokens include cache creation and cache reads.
    """
    for line in reversed((raw_output or "").strip().splitlines()):
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict) or event.get("type") != "result":
            continue
        usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
        base = int(usage.get("input_tokens") or 0)
        cache_creation = int(usage.get("cache_creation_input_tokens") or 0)
        cache_read = int(usage.get("cache_read_input_tokens") or 0)
        return AgentUsage(
            input_tokens=base + cache_creation + cache_read,
            output_tokens=int(usage.get("output_tokens") or 0),
            cache_creation_tokens=cache_creation,
            cache_read_tokens=cache_read,
            cost_usd=float(event.get("total_cost_usd") or 0.0),
        )
    return AgentUsage()


def extract_text(raw_output: str) -> str:
    """Concatenate the text blocks of assistant messages in stream-json output."""
    parts: list[str] = []
    for line in (raw_output or "").splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict) or event.get("type") != "assistant":
            continue
        message = event.get("message") if isinstance(event.get("message"), dict) else {}
        for block in message.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
    return "".join(parts)


def build_agent_command(config: AgentConfig, workdir: Path, extra_args: Sequence[str] = ()) -> list[str]:
    agent = [*shlex.split(config.command), *config.args, *extra_args]
    if not config.podman_image:
        return agent
    mount = str(workdir)
    return [PODMAN_BIN, "run", "--rm", "-i", "-v", f"{mount}:{mount}", "-w", mount, config.podman_image, *agent]


def _collect(pipe: Any, sink: list[str], echo: bool) -> None:
    for line in iter(pipe.readline, ""):
        sink.append(line)
        if echo:
            sys.stderr.write(line)
            sys.stderr.flush()
    pipe.close()


def run_agent(
    prompt: str,
    workdir: Path,
    config: AgentConfig,
    extra_args: Sequence[str] = (),
) -> AgentRunResult:
    """Run the agent with `prompt` on stdin inside `workdir`.

    The child is terminated once `config.max_time_sec` elapses; output
    captured until then is returned so callers can persist it.
    """
    command = build_agent_command(config, workdir, extra_args)
    logger.info("Running agent in {} (timeout {}s)", workdir, config.max_time_sec)
    start_iso = _now_iso()
    start = time.monotonic()
    try:
        process = subprocess.Popen(
            command,
            cwd=workdir,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
    except OSError as exc:
        logger.error("Unable to start agent {}: {}", command[0], exc)
        return AgentRunResult(
            command=command,
            start_time=start_iso,
            duration_s=0,
            exit_code=127,
            timed_out=False,
            stderr=str(exc),
        )

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    readers = [
        threading.Thread(target=_collect, args=(process.stdout, stdout_lines, not config.silence), daemon=True),
        threading.Thread(target=_collect, args=(process.stderr, stderr_lines, not config.silence), daemon=True),
    ]
    for reader in readers:
        reader.start()

    if process.stdin:
        try:
            process.stdin.write(prompt)
            process.stdin.close()
        except BrokenPipeError:
            pass

    timed_out = False
    timeout = config.max_time_sec if config.max_time_sec > 0 else None
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("Agent exceeded {}s; terminating", config.max_time_sec)
        process.terminate()
        try:
            process.wait(timeout=AGENT_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    for reader in readers:
        reader.join(timeout=5)

    exit_code = AGENT_TIMEOUT_EXIT_CODE if timed_out else process.returncode
    raw_output = "".join(stdout_lines)
    usage = parse_agent_usage(raw_output)
    duration_s = int(time.monotonic() - start)
    logger.info(
        "Agent finished in {}s exit={} in={} out={} cost=${:.4f}",
        duration_s,
        exit_code,
        usage.input_tokens,
        usage.output_tokens,
        usage.cost_usd,
    )
    return AgentRunResult(
        command=command,
        start_time=start_iso,
        duration_s=duration_s,
        exit_code=exit_code,
        timed_out=timed_out,
        raw_output=raw_output,
        stderr="".join(stderr_lines),
        usage=usage,
    )
