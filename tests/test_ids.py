"""Tests for id sequences."""

from __future__ import annotations

import threading

import pytest

from conductor.ids import IdSequence


class TestIdSequence:
    def test_prefixes_are_independent(self, ids):
        assert ids.next("checkpoint") == "checkpoint-1"
        assert ids.next("checkpoint") == "checkpoint-2"
        assert ids.next("task") == "task-1"
        assert ids.peek("checkpoint") == 2

    def test_custom_start(self):
        ids = IdSequence(start=0)
        assert ids.peek("x") == -1
        assert ids.next_int("x") == 0

    def test_negative_start(self):
        with pytest.raises(ValueError):
            IdSequence(start=-1)

    def test_reset(self, ids):
        ids.next("a")
        ids.next("b")
        ids.reset("a")
        assert ids.next("a") == "a-1"
        assert ids.next("b") == "b-2"
        ids.reset()
        assert ids.next("b") == "b-1"

    def test_sequences_do_not_leak_between_instances(self):
        first, second = IdSequence(), IdSequence()
        first.next("checkpoint")
        assert second.next("checkpoint") == "checkpoint-1"

    def test_thread_safety(self, ids):
        seen: list[int] = []
        lock = threading.Lock()

        def worker():
            for _ in range(200):
                value = ids.next_int("n")
                with lock:
                    seen.append(value)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(seen) == list(range(1, 801))
