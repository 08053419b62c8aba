"""
Error types for the iteration runner.

Component failures are normally converted into typed results at their own
boundary. These exceptions cover the cases that must reach the caller.
"""

from dataclasses import dataclass


class ConfigError(Exception):
    """Missing or invalid project configuration (prd.json, loop.env)."""


@dataclass
class SpawnError(Exception):
    """The agent process could not be started."""
    command: str
    message: str

    def __str__(self):
        return f"Spawn error: {self.message} ({self.command})"
