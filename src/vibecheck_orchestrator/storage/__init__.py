"""Key-value persistence backends for profiles, settings, and history."""

from vibecheck_orchestrator.storage.base import KeyValueStore
from vibecheck_orchestrator.storage.files import JsonFileKeyValueStore
from vibecheck_orchestrator.storage.memory import InMemoryKeyValueStore

__all__ = [
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
]
