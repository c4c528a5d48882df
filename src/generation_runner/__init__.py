"""Generation runner: agent-driven generation lifecycle and task execution."""

__version__ = "0.1.0"
