"""Tests for the ended-call archive and the conversation store."""

from __future__ import annotations

import threading

from voice_booking.services.cache import CallArchive
from voice_booking.services.store import ConversationStore

# ── Core operations ──────────────────────────────────────────────────


class TestCallArchiveBasics:
    def test_put_and_get(self):
        archive = CallArchive()
        archive.put("call-1", {"current_stage": "BOOKING_CONFIRMED"})
        assert archive.get("call-1") == {"current_stage": "BOOKING_CONFIRMED"}

    def test_get_returns_none_for_unknown_call(self):
        assert CallArchive().get("nope") is None

    def test_get_returns_a_copy(self):
        archive = CallArchive()
        archive.put("call-1", {"current_stage": "INITIAL"})
        archive.get("call-1")["current_stage"] = "BOOKING_CONFIRMED"
        assert archive.get("call-1")["current_stage"] == "INITIAL"

    def test_put_overwrites_existing_call(self):
        archive = CallArchive()
        archive.put("call-1", {"v": "old"})
        archive.put("call-1", {"v": "new"})
        assert archive.get("call-1") == {"v": "new"}
        assert archive.entry_count == 1

    def test_remove(self):
        archive = CallArchive()
        archive.put("call-1", {"v": 1})
        assert archive.remove("call-1") is True
        assert archive.remove("call-1") is False
        assert archive.current_bytes == 0

    def test_clear(self):
        archive = CallArchive()
        archive.put("a", {"v": 1})
        archive.put("b", {"v": 2})
        archive.clear()
        assert archive.entry_count == 0
        assert archive.current_bytes == 0

    def test_has_does_not_promote(self):
        archive = CallArchive(max_bytes=20)
        archive.put("a", {"v": 1})  # '{"v": 1}' → 8 bytes
        archive.put("b", {"v": 2})  # total 16
        assert archive.has("a") is True
        archive.put("c", {"v": 3})  # evicts "a", still LRU
        assert archive.has("a") is False
        assert archive.has("c") is True


# ── LRU eviction ────────────────────────────────────────────────────


class TestCallArchiveEviction:
    def test_evicts_least_recently_used(self):
        archive = CallArchive(max_bytes=20)
        archive.put("a", {"v": 1})
        archive.put("b", {"v": 2})
        archive.get("a")
        archive.put("c", {"v": 3})
        assert archive.get("a") == {"v": 1}
        assert archive.get("b") is None

    def test_skips_snapshot_larger_than_max(self):
        archive = CallArchive(max_bytes=10)
        assert archive.put("huge", {"notes": "x" * 100}) is False
        assert archive.get("huge") is None
        assert archive.entry_count == 0

    def test_overwrite_adjusts_size(self):
        archive = CallArchive()
        archive.put("k", {"v": "short"})
        size_short = archive.current_bytes
        archive.put("k", {"v": "a much longer value string"})
        assert archive.current_bytes > size_short
        assert archive.entry_count == 1


# ── Conversation store ──────────────────────────────────────────────


class TestConversationStore:
    def test_thread_config_is_per_call(self):
        assert ConversationStore.thread_config("call-7") == {"configurable": {"thread_id": "call-7"}}

    def test_archive_then_lookup(self):
        store = ConversationStore()
        store.archive("call-1", {"call_id": "call-1", "current_stage": "BOOKING_CONFIRMED"})
        assert store.archived("call-1")["current_stage"] == "BOOKING_CONFIRMED"
        assert store.archived("call-2") is None

    def test_uses_given_archive(self):
        archive = CallArchive()
        store = ConversationStore(archive)
        store.archive("call-1", {"call_id": "call-1"})
        assert archive.has("call-1")

    def test_same_call_is_serialized(self):
        store = ConversationStore()
        inside = threading.Event()
        release = threading.Event()
        order: list[str] = []

        def first():
            with store.locked("call-1"):
                inside.set()
                release.wait(timeout=5)
                order.append("first")

        def second():
            with store.locked("call-1"):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        inside.wait(timeout=5)
        t2 = threading.Thread(target=second)
        t2.start()
        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)
        assert order == ["first", "second"]

    def test_different_calls_do_not_block(self):
        store = ConversationStore()
        with store.locked("call-1"):
            acquired = threading.Event()

            def other():
                with store.locked("call-2"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=5)
            t.join(timeout=5)

    def test_archive_releases_live_traces(self):
        store = ConversationStore()
        with store.locked("call-1"):
            store.touch("call-1")
        assert store.tracked_calls == {"call-1"}
        assert store.archive("call-1", {"call_id": "call-1"}) is True
        assert store.tracked_calls == set()

    def test_refused_snapshot_keeps_call_live(self):
        store = ConversationStore(CallArchive(max_bytes=10))
        with store.locked("call-1"):
            store.touch("call-1")
            assert store.archive("call-1", {"notes": "x" * 100}) is False
        assert store.tracked_calls == {"call-1"}
        assert store.archived("call-1") is None

    def test_refused_snapshot_can_still_be_dropped(self):
        store = ConversationStore(CallArchive(max_bytes=10))
        store.touch("call-1")
        assert store.archive("call-1", {"notes": "x" * 100}, keep_live_on_failure=False) is False
        assert store.tracked_calls == set()


class TestIdleTracking:
    def test_idle_after_timeout(self):
        now = [100.0]
        store = ConversationStore(clock=lambda: now[0])
        store.touch("call-1")
        assert not store.is_idle("call-1", 60)
        now[0] = 160.0
        assert store.is_idle("call-1", 60)
        assert store.idle_calls(60) == ["call-1"]

    def test_lock_without_activity_counts_as_idle(self):
        store = ConversationStore(clock=lambda: 0.0)
        with store.locked("call-1"):
            pass
        assert store.idle_calls(60) == ["call-1"]

    def test_lock_replaced_after_forget(self):
        store = ConversationStore()
        with store.locked("call-1"):
            store.forget("call-1")
        with store.locked("call-1"):
            assert store.tracked_calls == {"call-1"}
