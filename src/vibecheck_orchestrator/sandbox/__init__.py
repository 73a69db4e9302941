"""Isolated, time-bounded execution of candidate artifacts."""

from vibecheck_orchestrator.sandbox.harness import (
    ConsoleMessage,
    SandboxHarness,
    SandboxRunner,
    parse_console_message,
)
from vibecheck_orchestrator.sandbox.scaffolds import SCAFFOLDS, Scaffold, scaffold_for

__all__ = [
    "ConsoleMessage",
    "SCAFFOLDS",
    "SandboxHarness",
    "SandboxRunner",
    "Scaffold",
    "parse_console_message",
    "scaffold_for",
]
