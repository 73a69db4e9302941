"""Shared session state for rounds, outputs and chat."""

from vibecheck_orchestrator.session.models import (
    ChatMessage,
    ChatResponse,
    ChatUpdate,
    HistoryEntry,
    Output,
    OutputPatch,
    Round,
    Variant,
)
from vibecheck_orchestrator.session.store import PatchQueue, SessionStore

__all__ = [
    "ChatMessage",
    "ChatResponse",
    "ChatUpdate",
    "HistoryEntry",
    "Output",
    "OutputPatch",
    "PatchQueue",
    "Round",
    "SessionStore",
    "Variant",
]
