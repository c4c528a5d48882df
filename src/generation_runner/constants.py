"""Define constants shared by the generation runner."""

from __future__ import annotations

CONFIG_FILE = "configuration.yaml"

GIT_BIN = "git"
BEADS_BIN = "bd"
PODMAN_BIN = "podman"

DEFAULT_GENERATION_PREFIX = "generation-"
DEFAULT_COBBLER_DIR = ".cobbler/"
DEFAULT_BEADS_DIR = ".beads/"
DEFAULT_HISTORY_DIR = "history"
DEFAULT_MAX_STITCH_ISSUES_PER_CYCLE = 10
DEFAULT_MAX_MEASURE_ISSUES = 1
DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_AGENT_ARGS = (
    "--dangerously-skip-permissions",
    "-p",
    "--verbose",
    "--output-format",
    "stream-json",
)
DEFAULT_AGENT_TIMEOUT_SECONDS = 300
DEFAULT_BASE_BRANCH = "main"

BASE_BRANCH_FILE = "base-branch"
MEASURE_LOG_FILE = "measure.yaml"

TAG_START = "-start"
TAG_FINISHED = "-finished"
TAG_MERGED = "-merged"
TAG_ABANDONED = "-abandoned"
TAG_SUFFIXES = (TAG_START, TAG_FINISHED, TAG_MERGED, TAG_ABANDONED)

# strftime layouts for generation names and version tags
GENERATION_TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"
HISTORY_TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"
VERSION_MAJOR = 1

TASK_BRANCH_PREFIX = "task/"

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_CLOSED = "closed"
TASK_TYPE = "task"

AGENT_KILL_GRACE_SECONDS = 5
AGENT_TIMEOUT_EXIT_CODE = 124
