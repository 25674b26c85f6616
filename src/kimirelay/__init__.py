"""Relay GitHub issue, CI-failure and review tasks to a local coding agent."""

__version__ = "0.1.0"
