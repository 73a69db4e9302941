"""JSON-file key-value backend: one file per key under a directory."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileKeyValueStore:
    """Persist values as pretty-printed JSON files.

    Load failures are logged and fall back to the caller's default; the store
    never raises on a corrupt or missing file.
    """

    def __init__(self, root: str | Path, *, prefix: str = "vibecheck_") -> None:
        self.root = Path(root)
        self.prefix = prefix
        self._lock = threading.Lock()

    def load(self, key: str, default: Any = None) -> Any:
        path = self._path_for(key)
        if not path.exists():
            return default
        try:
            with self._lock:
                raw = path.read_text(encoding="utf-8")
            return json.loads(raw)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("kv_store event=load_failed key=%s path=%s reason=%s", key, path, exc)
            return default

    def save(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        payload = json.dumps(value, ensure_ascii=False, indent=2, default=str)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)

    def _path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / f"{self.prefix}{key}.json"
