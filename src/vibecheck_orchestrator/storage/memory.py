"""In-memory key-value backend for tests only."""

from __future__ import annotations

import copy
from typing import Any


class InMemoryKeyValueStore:
    """Simple in-memory implementation for unit tests."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = copy.deepcopy(initial or {})

    def load(self, key: str, default: Any = None) -> Any:
        if key not in self._values:
            return default
        return copy.deepcopy(self._values[key])

    def save(self, key: str, value: Any) -> None:
        self._values[key] = copy.deepcopy(value)
