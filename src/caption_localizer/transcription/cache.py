from __future__ import annotations

import copy
import hashlib
import json
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable


def make_key(namespace: str, parts: dict[str, Any]) -> str:
    blob = json.dumps(
        {"ns": namespace, "parts": parts}, sort_keys=True, separators=(",", ":")
    ).encode("utf-8")
    return f"{namespace}:{hashlib.sha256(blob).hexdigest()}"


def file_fingerprint(path: Path) -> dict[str, Any]:
    """
    Content fingerprint from size + modification signature (no full read).
    """
    st = Path(path).stat()
    return {"name": Path(path).name, "size": int(st.st_size), "mtime_ns": int(st.st_mtime_ns)}


@dataclass(slots=True)
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0

    def to_dict(self, total_keys: int) -> dict[str, Any]:
        d = asdict(self)
        lookups = self.hits + self.misses
        d["hit_rate"] = (self.hits / lookups) if lookups else 0.0
        d["total_keys"] = int(total_keys)
        return d


class TTLCache:
    """
    Process-local TTL cache for transcription payloads.

    Values are stored and returned as deep copies, so a cached record can never be
    mutated by a caller.
    """

    def __init__(self, *, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, tuple[float, dict[str, Any]]] = {}
        self._metrics = CacheMetrics()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                self._metrics.misses += 1
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._items[key]
                self._metrics.evictions += 1
                self._metrics.misses += 1
                return None
            self._metrics.hits += 1
            return copy.deepcopy(value)

    def put(self, key: str, value: dict[str, Any], *, ttl_s: float | None = None) -> None:
        ttl = self.ttl_s if ttl_s is None else float(ttl_s)
        with self._lock:
            self._items[key] = (self._clock() + ttl, copy.deepcopy(value))
            self._metrics.sets += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            if self._items.pop(key, None) is None:
                return False
            self._metrics.deletes += 1
            return True

    def clear(self, prefix: str | None = None) -> int:
        with self._lock:
            keys = [k for k in self._items if prefix is None or k.startswith(prefix)]
            for k in keys:
                del self._items[k]
            self._metrics.deletes += len(keys)
            return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            dead = [k for k, (exp, _) in self._items.items() if now >= exp]
            for k in dead:
                del self._items[k]
            self._metrics.evictions += len(dead)
            return len(dead)

    def metrics(self) -> dict[str, Any]:
        with self._lock:
            return self._metrics.to_dict(len(self._items))
