"""Agent task-queue and work-session runtime."""

__version__ = "0.1.0"
