"""Storage interface for user-defined profiles and session history."""

from __future__ import annotations

from typing import Any, Protocol


class KeyValueStore(Protocol):
    def load(self, key: str, default: Any = None) -> Any: ...

    def save(self, key: str, value: Any) -> None: ...
