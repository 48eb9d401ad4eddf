"""
In-memory snapshot cache for fitted calibration contexts.

Fitting is a pure function of (history, entity profiles, config), so the
HTTP layer memoizes fitted snapshots under a content fingerprint of those
inputs.  Editing the history changes the fingerprint; an explicit
:meth:`SnapshotCache.invalidate` drops everything and bumps the revision.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import asdict
from typing import Any, Callable, Optional, Sequence, TypeVar

from combo_edge.core.engine_config import EngineConfig
from combo_edge.schemas import EntityProfile, HistoricalBet

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Snapshots kept before the least recently used one is evicted.
DEFAULT_MAX_ENTRIES = 32


def fingerprint(
    kind: str,
    history: Sequence[HistoricalBet],
    entity_profiles: Sequence[EntityProfile] = (),
    config: Optional[EngineConfig] = None,
    extra: Any = None,
) -> str:
    """Stable content hash of a snapshot's inputs."""
    payload = {
        "kind": kind,
        "history": [bet.model_dump(mode="json") for bet in history],
        "profiles": [p.model_dump(mode="json") for p in entity_profiles],
        "config": asdict(config) if config is not None else None,
        "extra": extra,
    }
    blob = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return f"{kind}:{hashlib.sha1(blob).hexdigest()}"


class SnapshotCache:
    """Thread-safe LRU of fitted snapshots with a revision counter."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max(1, int(max_entries))
        self.revision = 0
        self.hits = 0
        self.misses = 0
        self._entries: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get_or_build(self, key: str, builder: Callable[[], T]) -> T:
        """Cached value for ``key``, building and storing it on a miss.

        Builder exceptions propagate and nothing is stored.
        """
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                self.hits += 1
                return self._entries[key]
        value = builder()
        with self._lock:
            self.misses += 1
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Snapshot cache evicted %s", evicted)
        return value

    def invalidate(self) -> int:
        """Drop every snapshot; returns the new revision."""
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self.revision += 1
            revision = self.revision
        logger.info("Snapshot cache invalidated: %d entries dropped, revision %d", dropped, revision)
        return revision

    def stats(self) -> dict:
        return {
            "revision": self.revision,
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
        }
