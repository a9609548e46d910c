"""Tests for the pypdu building blocks: pool, queue, tracker, store, sinks."""

import threading
import time

import pytest
from pypdu import (
    AggregationStore,
    CompletionTracker,
    DirectoryHandle,
    EntryInfo,
    ErrorSink,
    Filesystem,
    LocalOverflow,
    Sink,
    Task,
    TaskPool,
    WorkQueue,
)


class TestTaskPool:
    """Test TaskPool."""

    def test_try_acquire_until_exhausted(self):
        pool = TaskPool(2)
        first = pool.try_acquire()
        second = pool.try_acquire()
        assert first is not None and second is not None
        assert first is not second
        assert pool.try_acquire() is None
        assert pool.in_use == 2

    def test_release_makes_slot_available(self):
        pool = TaskPool(1)
        slot = pool.acquire()
        slot.assign("x", 3, False)
        pool.release(slot)
        again = pool.try_acquire()
        assert again is slot
        assert again.path == ""
        assert again.size == 0

    def test_slots_are_pooled(self):
        pool = TaskPool(3)
        assert all(pool.acquire().pooled for _ in range(3))

    def test_release_foreign_task(self):
        pool = TaskPool(1)
        with pytest.raises(ValueError):
            pool.release(Task("x", 1, False))

    def test_over_release(self):
        pool = TaskPool(1)
        slot = pool.acquire()
        pool.release(slot)
        with pytest.raises(ValueError):
            pool.release(slot)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            TaskPool(0)

    def test_acquire_blocks_until_release(self):
        pool = TaskPool(1)
        slot = pool.acquire()
        acquired = threading.Event()

        def take():
            pool.acquire()
            acquired.set()

        thread = threading.Thread(target=take, daemon=True)
        thread.start()
        assert not acquired.wait(0.05)
        pool.release(slot)
        assert acquired.wait(5)
        thread.join(5)
        assert pool.peak_in_use == 1


class TestWorkQueue:
    """Test WorkQueue."""

    def test_fifo(self):
        work = WorkQueue(3)
        tasks = [Task(str(i)) for i in range(3)]
        for task in tasks:
            work.put(task)
        assert [work.get() for _ in range(3)] == tasks

    def test_close_wakes_all_consumers(self):
        work = WorkQueue(1)
        results = []
        lock = threading.Lock()

        def consume():
            item = work.get()
            with lock:
                results.append(item)

        threads = [threading.Thread(target=consume, daemon=True) for _ in range(4)]
        for thread in threads:
            thread.start()
        work.close()
        for thread in threads:
            thread.join(5)
        assert results == [None] * 4

    def test_put_after_close(self):
        work = WorkQueue(1)
        work.close()
        with pytest.raises(RuntimeError):
            work.put(Task("x"))


class TestCompletionTracker:
    """Test CompletionTracker."""

    def test_wait_on_zero_returns_immediately(self):
        assert CompletionTracker().wait(timeout=0)

    def test_wait_until_done(self):
        tracker = CompletionTracker()
        tracker.add(2)
        assert not tracker.wait(timeout=0.01)
        tracker.done()
        assert tracker.count == 1
        threading.Timer(0.02, tracker.done).start()
        assert tracker.wait(timeout=5)
        assert tracker.count == 0

    def test_never_negative(self):
        tracker = CompletionTracker()
        with pytest.raises(ValueError):
            tracker.done()
        assert tracker.count == 0


class TestAggregationStore:
    """Test AggregationStore."""

    def test_file_adds_to_every_ancestor(self):
        store = AggregationStore()
        store.add_along_ancestor_chain("a/b/f", 7, is_directory=False)
        assert dict(store.snapshot()) == {"a/b/f": 7, "a/b": 7, "a": 7, ".": 7}
        assert store.is_file("a/b/f")
        assert not store.is_file("a/b")

    def test_directory_counts_itself(self):
        store = AggregationStore()
        store.add_along_ancestor_chain("a", 4096)
        store.add_along_ancestor_chain("a/f", 10, is_directory=False)
        assert store.get("a") == 4106
        assert store.files() == frozenset({"a/f"})

    def test_snapshot_is_read_only(self):
        store = AggregationStore()
        store.add_along_ancestor_chain("x", 1)
        snapshot = store.snapshot()
        with pytest.raises(TypeError):
            snapshot["x"] = 5
        store.add_along_ancestor_chain("x", 1)
        assert snapshot["x"] == 1
        assert store.get("x") == 2

    def test_concurrent_updates(self):
        store = AggregationStore()

        def add_many(name):
            for _ in range(500):
                store.add_along_ancestor_chain(f"root/{name}/f", 1, is_directory=False)

        threads = [threading.Thread(target=add_many, args=(str(i),)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert store.get("root") == 8 * 500
        assert store.get("root/3") == 500
        assert "root/3/f" in store
        assert len(store) == 1 + 1 + 8 + 8


class TestSinks:
    """Test Sink and ErrorSink."""

    def test_items_emitted_in_order(self):
        seen = []
        sink = Sink("messages", seen.append, buffer_size=4).start()
        for i in range(50):
            sink.send(f"line {i}")
        sink.close()
        assert seen == [f"line {i}" for i in range(50)]

    def test_empty_message_does_not_stop_consumer(self):
        seen = []
        sink = Sink("messages", seen.append).start()
        sink.send("")
        sink.send("after")
        sink.close()
        assert seen == ["", "after"]

    def test_zero_buffer(self):
        seen = []
        sink = Sink("messages", seen.append, buffer_size=0).start()
        sink.send("a")
        sink.send("b")
        sink.close()
        assert seen == ["a", "b"]

    def test_send_after_close(self):
        sink = Sink("messages", lambda item: None).start()
        sink.close()
        with pytest.raises(RuntimeError):
            sink.send("late")

    def test_close_twice(self):
        sink = Sink("messages", lambda item: None).start()
        sink.close()
        sink.close()

    def test_error_sink_counts(self):
        seen = []
        errors = ErrorSink("errors", seen.append).start()
        errors.report("a", PermissionError(13, "Permission denied"))
        errors.send("b: broken")
        errors.close()
        assert errors.count == 2
        assert seen == ["a: Permission denied", "b: broken"]

    def test_concurrent_producers_do_not_interleave(self):
        seen = []
        sink = Sink("messages", seen.append, buffer_size=8).start()

        def produce(name):
            for i in range(100):
                sink.send(f"{name}-{i}")

        threads = [threading.Thread(target=produce, args=(n,)) for n in "abcd"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        sink.close()
        assert len(seen) == 400
        for name in "abcd":
            own = [item for item in seen if item.startswith(f"{name}-")]
            assert own == [f"{name}-{i}" for i in range(100)]

    def test_emit_failure_is_logged_and_draining_continues(self, caplog):
        seen = []

        def emit(item):
            if item == "bad":
                raise RuntimeError("cannot write")
            seen.append(item)

        sink = Sink("messages", emit).start()
        sink.send("bad")
        sink.send("good")
        sink.close()
        assert seen == ["good"]
        assert "failed to emit" in caplog.text


class TestLocalOverflow:
    """Test LocalOverflow against a saturated pool."""

    def test_saturated_pool_spills_without_blocking(self):
        pool = TaskPool(1)
        work = WorkQueue(1)
        held = pool.acquire()
        overflow = LocalOverflow(pool, work)

        start = time.monotonic()
        for i in range(100):
            assert overflow.schedule(f"e{i}", i, False) is False
        assert time.monotonic() - start < 1
        assert len(overflow) == 100
        assert overflow.spilled == 100
        assert work.qsize() == 0

        task = overflow.next_task()
        assert task.path == "e99"
        assert not task.pooled
        assert len(overflow) == 99
        pool.release(held)

    def test_schedule_uses_free_slot(self):
        pool = TaskPool(2)
        work = WorkQueue(2)
        overflow = LocalOverflow(pool, work)
        assert overflow.schedule("a", 1, True)
        queued = work.get()
        assert queued.pooled
        assert (queued.path, queued.size, queued.is_directory) == ("a", 1, True)
        assert len(overflow) == 0

    def test_next_task_promotes_while_slots_free(self):
        pool = TaskPool(2)
        work = WorkQueue(2)
        overflow = LocalOverflow(pool, work)
        held = [pool.acquire(), pool.acquire()]
        for name in ("a", "b", "c"):
            overflow.schedule(name, 1, False)
        for slot in held:
            pool.release(slot)

        task = overflow.next_task()
        # c and b were promoted, a could not get a slot.
        assert task.path == "a"
        assert overflow.promoted == 2
        assert [work.get().path, work.get().path] == ["c", "b"]
        assert overflow.next_task() is None

    def test_empty_backlog(self):
        overflow = LocalOverflow(TaskPool(1), WorkQueue(1))
        assert overflow.next_task() is None


class _ListFilesystem(Filesystem):
    def lstat(self, path):
        raise FileNotFoundError(2, "No such file or directory", path)

    def open_directory(self, path):
        return DirectoryHandle(path, iter(()))


def _entries(count, fail_after=None):
    for i in range(count):
        if fail_after is not None and i == fail_after:
            raise OSError(5, "Input/output error")
        yield EntryInfo(f"e{i}", i, False)


class TestReadEntries:
    """Test batched directory reads."""

    def test_batches_then_end_of_stream(self):
        fs = _ListFilesystem()
        handle = DirectoryHandle("d", _entries(5))
        assert [e.name for e in fs.read_entries(handle, 2)] == ["e0", "e1"]
        assert [e.name for e in fs.read_entries(handle, 2)] == ["e2", "e3"]
        assert [e.name for e in fs.read_entries(handle, 2)] == ["e4"]
        assert fs.read_entries(handle, 2) == []

    def test_error_after_partial_batch_is_deferred(self):
        fs = _ListFilesystem()
        handle = DirectoryHandle("d", _entries(5, fail_after=3))
        assert len(fs.read_entries(handle, 10)) == 3
        with pytest.raises(OSError):
            fs.read_entries(handle, 10)

    def test_error_on_empty_batch_raises(self):
        fs = _ListFilesystem()
        handle = DirectoryHandle("d", _entries(5, fail_after=0))
        with pytest.raises(OSError):
            fs.read_entries(handle, 10)

    def test_close_runs_callback_once(self):
        calls = []
        handle = DirectoryHandle("d", iter(()), on_close=lambda: calls.append(1))
        fs = _ListFilesystem()
        fs.close_directory(handle)
        fs.close_directory(handle)
        assert calls == [1]
        assert handle.closed

    def test_filesystem_requires_lstat_and_open(self):
        class Partial(Filesystem):
            def lstat(self, path):
                return EntryInfo(path, 0, False)

        with pytest.raises(TypeError):
            Filesystem()
        with pytest.raises(TypeError):
            Partial()
