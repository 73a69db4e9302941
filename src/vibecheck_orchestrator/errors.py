"""Error taxonomy shared by gateway, sandbox, resolution, and orchestrator."""

from __future__ import annotations


class VibecheckError(Exception):
    """Base class for orchestration errors."""


class TransportError(VibecheckError):
    """Model call failed: network, HTTP status, timeout, or unusable response."""


class ConfigurationError(VibecheckError):
    """A task could not be configured (missing mode, model mismatch, bad API JSON)."""


class SandboxSetupError(VibecheckError):
    """The sandbox could not build or launch an execution context."""
