"""Conversation State Store.

Live call state is kept by LangGraph's ``MemorySaver`` checkpointer,
one thread per call id (see ``orchestrator.py``).  This module adds
what the checkpointer does not provide:

* a lock per call id, so one call's read-modify-write cycle is never
  interleaved with another tool call for the *same* call (different
  calls never share a lock);
* last-activity tracking, so calls whose front end never reports the
  end of the call can be swept out of live storage;
* the read-only archive of ended calls.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from langgraph.checkpoint.memory import MemorySaver

from voice_booking.services.cache import CallArchive

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(
        self,
        archive: CallArchive | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.checkpointer = MemorySaver()
        self._archive = archive or CallArchive()
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._last_seen: dict[str, float] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, call_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(call_id)
            if lock is None:
                lock = self._locks[call_id] = threading.Lock()
            return lock

    @contextmanager
    def locked(self, call_id: str) -> Iterator[None]:
        """Serialize tool calls for *call_id*."""
        while True:
            lock = self._lock_for(call_id)
            lock.acquire()
            with self._locks_guard:
                current = self._locks.get(call_id) is lock
            if current:
                break
            # The call was released while we waited; take the fresh lock.
            lock.release()
        try:
            yield
        finally:
            lock.release()

    @staticmethod
    def thread_config(call_id: str) -> dict[str, Any]:
        return {"configurable": {"thread_id": call_id}}

    # ── Activity ─────────────────────────────────────────────────────

    def touch(self, call_id: str) -> None:
        """Record activity on a live call."""
        with self._locks_guard:
            self._last_seen[call_id] = self._clock()

    def is_idle(self, call_id: str, max_idle_seconds: float) -> bool:
        """True when *call_id* has seen no activity for *max_idle_seconds*.

        A call with a lock but no recorded activity never completed a
        tool call and counts as idle.
        """
        with self._locks_guard:
            last = self._last_seen.get(call_id)
        return last is None or self._clock() - last >= max_idle_seconds

    def idle_calls(self, max_idle_seconds: float) -> list[str]:
        with self._locks_guard:
            tracked = set(self._locks) | set(self._last_seen)
        return sorted(c for c in tracked if self.is_idle(c, max_idle_seconds))

    @property
    def tracked_calls(self) -> set[str]:
        """Call ids holding a lock or an activity entry."""
        with self._locks_guard:
            return set(self._locks) | set(self._last_seen)

    # ── Release ──────────────────────────────────────────────────────

    def forget(self, call_id: str) -> None:
        """Drop every live trace of *call_id*.  Must hold its lock."""
        self.checkpointer.delete_thread(call_id)
        with self._locks_guard:
            self._locks.pop(call_id, None)
            self._last_seen.pop(call_id, None)

    def archive(
        self,
        call_id: str,
        snapshot: dict[str, Any],
        *,
        keep_live_on_failure: bool = True,
    ) -> bool:
        """Move an ended call out of live storage into the archive.

        Returns ``False`` if the archive refused the snapshot.  The live
        thread is then kept, unless *keep_live_on_failure* is off.
        """
        archived = self._archive.put(call_id, snapshot)
        if not archived and keep_live_on_failure:
            logger.error("Call %s could not be archived; keeping it live", call_id)
            return False
        self.forget(call_id)
        logger.info("Call %s %s", call_id, "archived" if archived else "dropped")
        return archived

    def archived(self, call_id: str) -> dict[str, Any] | None:
        return self._archive.get(call_id)
