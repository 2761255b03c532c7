"""Thread-safe, byte-bounded LRU archive of ended calls.

When a call ends its final ``ConversationState`` is moved out of the
live checkpointer and kept here, read-only, for support lookups
("what did the agent book on call X?").  Old calls are evicted
least-recently-used first once the byte ceiling is reached.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** via the JSON byte length of each snapshot.
• **threading.Lock**: calls end from concurrent FastAPI worker threads.
• Purely ephemeral; the archive is lost on process restart.

>>> archive = CallArchive(max_bytes=5 * 1024 * 1024)
>>> archive.put("call-123", state.model_dump(mode="json"))
>>> archive.get("call-123")["current_stage"]
'BOOKING_CONFIRMED'
"""

from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)

# Default ceiling: 5 MB
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class CallArchive:
    """Least-recently-used store of ended-call snapshots, bounded by size."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        # call_id → (snapshot, estimated_size_bytes)
        self._store: OrderedDict[str, tuple[dict[str, Any], int]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _estimate_bytes(snapshot: dict[str, Any]) -> int:
        return len(json.dumps(snapshot, default=str).encode("utf-8"))

    # ── Core operations ──────────────────────────────────────────────

    def get(self, call_id: str) -> dict[str, Any] | None:
        """Return the archived snapshot (promoting it to MRU) or ``None``."""
        with self._lock:
            if call_id not in self._store:
                return None
            self._store.move_to_end(call_id)
            snapshot, _ = self._store[call_id]
            return dict(snapshot)

    def put(self, call_id: str, snapshot: dict[str, Any]) -> bool:
        """Archive *snapshot* under *call_id*.  Evicts LRU calls if needed.

        Returns ``False`` when the snapshot alone exceeds the ceiling.
        """
        size = self._estimate_bytes(snapshot)

        if size > self._max_bytes:
            logger.warning(
                "Archive: snapshot for call %s too large (%d > %d bytes), not archived",
                call_id, size, self._max_bytes,
            )
            return False

        with self._lock:
            if call_id in self._store:
                _, old_size = self._store.pop(call_id)
                self._current_bytes -= old_size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_id, (_, evicted_size) = self._store.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.debug("Archive: evicted call %s (%d bytes)", evicted_id, evicted_size)

            self._store[call_id] = (dict(snapshot), size)
            self._current_bytes += size
        return True

    def remove(self, call_id: str) -> bool:
        """Drop one call.  Returns ``True`` if it was archived."""
        with self._lock:
            if call_id in self._store:
                _, size = self._store.pop(call_id)
                self._current_bytes -= size
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def has(self, call_id: str) -> bool:
        """Check if a call is archived *without* promoting it."""
        return call_id in self._store
