#!/usr/bin/env python3
"""
pypdu - Parallel Disk Usage Estimator.

Walks one or more directory trees with a fixed pool of worker threads and
reports the cumulative apparent size of every directory, in the manner of
'du'. At most --x-parallel-tasks entries are in flight at once; when a
directory is wider than that, the extra entries are parked in the
discovering worker's private backlog instead of blocking it.
"""

import argparse
import itertools
import logging
import os
import queue
import stat
import sys
import threading
import types
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 100
DEFAULT_READ_BATCH_SIZE = 1000
DEFAULT_BUFFER_SIZE = 1000
DEFAULT_BLOCK_SIZE = 1024

# Marks the end of a queue's stream. Never a valid payload.
_END_OF_STREAM = object()


class ColorFormatter(logging.Formatter):
    """
    Custom logging formatter that adds ANSI color codes to log messages.

    This formatter applies color coding based on log levels for better
    readability in terminal output.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record with colors.

        Args:
            record (logging.LogRecord):
                The log record to format.

        Returns:
            str:
                The formatted log message with ANSI color codes.

        """
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            message = f"{color}{message}{self.RESET}"
        return message


@dataclass(frozen=True)
class Config:
    """Settings for one traversal, fixed before it starts.

    Attributes:
        concurrency_limit (int):
            Maximum number of tasks scheduled at once; also the number of
            worker threads and the capacity of the work queue.
        read_batch_size (int):
            Number of directory entries read per call while listing.
        message_buffer_size (int):
            Capacity of the informational message sink (0 means a single slot).
        error_buffer_size (int):
            Capacity of the error sink (0 means a single slot).
        verbosity (int):
            Values above 0 report every entry as it is examined.
        block_size (int):
            Unit used when printing totals.

    """

    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT
    read_batch_size: int = DEFAULT_READ_BATCH_SIZE
    message_buffer_size: int = DEFAULT_BUFFER_SIZE
    error_buffer_size: int = DEFAULT_BUFFER_SIZE
    verbosity: int = 0
    block_size: int = DEFAULT_BLOCK_SIZE

    def __post_init__(self) -> None:
        minimums = {
            "concurrency_limit": 1,
            "read_batch_size": 1,
            "message_buffer_size": 0,
            "error_buffer_size": 0,
            "verbosity": 0,
            "block_size": 1,
        }
        for name, minimum in minimums.items():
            value = getattr(self, name)
            if value < minimum:
                raise ValueError(f"{name} must be at least {minimum}, got {value}")


@dataclass(frozen=True)
class EntryInfo:
    """Metadata of a single filesystem entry, as returned by lstat."""

    name: str
    size: int
    is_directory: bool


@dataclass(eq=False)
class Task:
    """One filesystem entry waiting to be examined.

    Tasks are mutable and reused: the slots handed out by a TaskPool are
    refilled with a new entry every time they are scheduled. A task is owned
    by exactly one of the pool, the work queue, a worker's backlog or a
    worker's hand at any time.

    Attributes:
        path (str):
            Path of the entry, joined onto the root it was found under.
        size (int):
            Apparent size in bytes.
        is_directory (bool):
            Whether the entry must be listed.
        pooled (bool):
            True for the TaskPool's own slots, False for backlog records.

    """

    path: str = ""
    size: int = 0
    is_directory: bool = False
    pooled: bool = False

    def assign(self, path: str, size: int, is_directory: bool) -> "Task":
        """Refill the task with a new entry and return it."""
        self.path = path
        self.size = size
        self.is_directory = is_directory
        return self


def join_path(parent: str, name: str) -> str:
    """Join a directory entry name onto its parent path."""
    return os.path.normpath(os.path.join(parent, name))


def parent_of(path: str) -> str:
    """
    Return the parent of a path without touching the filesystem.

    Args:
        path (str):
            A normalised path.

    Returns:
        str:
            The parent directory. A bare relative name has '.' as parent and
            the filesystem root is its own parent.

    Examples:
        >>> parent_of("a/b")
        'a'
        >>> parent_of("a")
        '.'

    """
    return os.path.dirname(path) or os.curdir


def ancestor_chain(path: str) -> Iterator[str]:
    """Yield path itself, then each ancestor up to '.' or the filesystem root."""
    current = path
    while True:
        yield current
        parent = parent_of(current)
        if current == os.curdir or parent == current:
            return
        current = parent


def format_error(path: str, exc: BaseException) -> str:
    """
    Render an error as a single '<path>: <reason>' line.

    Args:
        path (str):
            Path the error relates to (may be empty).
        exc (BaseException):
            The error raised while handling the path.

    Returns:
        str:
            The formatted line. 'unknown error' stands in for an empty reason.

    """
    reason = ""
    if isinstance(exc, OSError) and exc.strerror:
        reason = exc.strerror
    else:
        reason = str(exc)
    if not reason:
        reason = "unknown error"
    if path:
        return f"{path}: {reason}"
    return reason


def write_line(line: str, stream=None) -> None:
    """
    Write one line to stdout (or stream), keeping undecodable path bytes.

    Names that are not valid in the filesystem encoding come back from
    os.scandir with surrogate escapes; they are written as the original
    bytes when the stream exposes a binary buffer, and backslash-escaped
    otherwise.

    Args:
        line (str):
            The line, without a trailing newline.
        stream (TextIO | None):
            Destination; sys.stdout when None.

    """
    if stream is None:
        stream = sys.stdout
    buffer = getattr(stream, "buffer", None)
    if buffer is not None:
        stream.flush()
        buffer.write(os.fsencode(line) + b"\n")
        buffer.flush()
        return
    safe = line.encode("utf-8", "surrogateescape").decode("utf-8", "backslashreplace")
    stream.write(safe + "\n")


class DirectoryHandle:
    """An open directory whose entries are read in batches.

    Attributes:
        path (str):
            The directory being listed.
        entries (Iterator[EntryInfo]):
            Remaining entries; may raise OSError part way through.
        pending_error (OSError | None):
            An error hit after part of a batch was read, raised by the next read.

    """

    def __init__(
        self,
        path: str,
        entries: Iterator[EntryInfo],
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.path = path
        self.entries = entries
        self.pending_error: OSError | None = None
        self.closed = False
        self._on_close = on_close

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close()


class Filesystem(ABC):
    """
    The filesystem primitives the traversal relies on.

    Subclasses provide lstat() and open_directory(); batching, error
    deferral and closing are shared. Any OSError raised by these methods is
    reported against the path and the traversal carries on.
    """

    @abstractmethod
    def lstat(self, path: str) -> EntryInfo:
        """Return metadata for path without following symlinks."""

    @abstractmethod
    def open_directory(self, path: str) -> DirectoryHandle:
        """Open a directory for batched reads."""

    def read_entries(self, handle: DirectoryHandle, batch_size: int) -> list[EntryInfo]:
        """
        Read up to batch_size entries from an open directory.

        Args:
            handle (DirectoryHandle):
                Handle returned by open_directory().
            batch_size (int):
                Maximum number of entries to return.

        Returns:
            list[EntryInfo]:
                The next entries; an empty list once the listing is exhausted.

        Raises:
            OSError: If the listing failed before any entry of this batch was
                read. A failure after some entries were read is raised on the
                following call instead, so those entries are not lost.

        """
        if handle.pending_error is not None:
            error, handle.pending_error = handle.pending_error, None
            raise error
        batch: list[EntryInfo] = []
        try:
            for info in itertools.islice(handle.entries, batch_size):
                batch.append(info)
        except OSError as exc:
            if not batch:
                raise
            handle.pending_error = exc
        return batch

    def close_directory(self, handle: DirectoryHandle) -> None:
        handle.close()


class LocalFilesystem(Filesystem):
    """Filesystem backed by os.lstat and os.scandir. Symlinks are never followed."""

    def lstat(self, path: str) -> EntryInfo:
        st = os.lstat(path)
        name = os.path.basename(path) or path
        return EntryInfo(name, st.st_size, stat.S_ISDIR(st.st_mode))

    def open_directory(self, path: str) -> DirectoryHandle:
        iterator = os.scandir(path)
        return DirectoryHandle(path, self._entries(path, iterator), iterator.close)

    def _entries(self, path: str, iterator) -> Iterator[EntryInfo]:
        for entry in iterator:
            try:
                st = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                # Removed between listing and stat.
                logger.debug(f"Entry vanished while listing {path}: {entry.name}")
                continue
            yield EntryInfo(entry.name, st.st_size, stat.S_ISDIR(st.st_mode))


class TaskPool:
    """
    A fixed set of reusable task slots.

    A task may only be put on the shared work queue while it holds one of
    these slots, which bounds the amount of globally scheduled work. Free
    slots are kept on a stack.

    Args:
        capacity (int):
            Number of slots; never grows.

    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"pool capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._free: queue.LifoQueue[Task] = queue.LifoQueue(maxsize=capacity)
        for _ in range(capacity):
            self._free.put_nowait(Task(pooled=True))
        self._lock = threading.Lock()
        self._in_use = 0
        self._peak_in_use = 0

    @property
    def in_use(self) -> int:
        """Number of slots currently borrowed."""
        with self._lock:
            return self._in_use

    @property
    def peak_in_use(self) -> int:
        """Largest number of slots borrowed at the same time."""
        with self._lock:
            return self._peak_in_use

    def acquire(self) -> Task:
        """Take a slot, waiting for one to be released if none is free."""
        task = self._free.get()
        self._borrowed()
        return task

    def try_acquire(self) -> Task | None:
        """Take a slot if one is free right now, otherwise return None."""
        try:
            task = self._free.get_nowait()
        except queue.Empty:
            return None
        self._borrowed()
        return task

    def release(self, task: Task) -> None:
        """
        Give a slot back to the pool.

        Args:
            task (Task):
                A slot previously returned by acquire() or try_acquire().

        Raises:
            ValueError: If the task is not a pool slot or nothing is borrowed.

        """
        if not task.pooled:
            raise ValueError(f"task {task.path!r} does not belong to the pool")
        with self._lock:
            if self._in_use == 0:
                raise ValueError("released more tasks than were acquired")
            self._in_use -= 1
        task.assign("", 0, False)
        self._free.put_nowait(task)

    def _borrowed(self) -> None:
        with self._lock:
            self._in_use += 1
            self._peak_in_use = max(self._peak_in_use, self._in_use)


class WorkQueue:
    """
    Bounded FIFO handing scheduled tasks to idle workers.

    Only tasks holding a pool slot are put here, so with a capacity equal to
    the pool's a put() never has to wait.
    """

    def __init__(self, capacity: int) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    def put(self, task: Task) -> None:
        """Hand a task over; the caller must not touch it afterwards."""
        if self.closed:
            raise RuntimeError("work queue is closed")
        self._queue.put(task)

    def get(self) -> Task | None:
        """Wait for the next task. Returns None once the queue is closed."""
        item = self._queue.get()
        if item is _END_OF_STREAM:
            # Leave the marker for the next waiting consumer.
            self._queue.put(item)
            return None
        return item

    def close(self) -> None:
        """Wake every consumer with end of stream. Call once all work is done."""
        if self.closed:
            return
        self._closed.set()
        self._queue.put(_END_OF_STREAM)


class CompletionTracker:
    """
    Counts tasks that were created but not yet fully processed.

    A task is added before any worker can see it and marked done after its
    last step, so the count returns to zero exactly when the whole reachable
    tree has been examined.
    """

    def __init__(self) -> None:
        self._count = 0
        self._condition = threading.Condition()

    @property
    def count(self) -> int:
        with self._condition:
            return self._count

    def add(self, delta: int = 1) -> None:
        """
        Adjust the count by delta.

        Raises:
            ValueError: If the count would go negative.

        """
        with self._condition:
            if self._count + delta < 0:
                raise ValueError("completion count went negative")
            self._count += delta
            if self._count == 0:
                self._condition.notify_all()

    def done(self) -> None:
        self.add(-1)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the count is zero. Returns False if timeout expired first."""
        with self._condition:
            return self._condition.wait_for(lambda: self._count == 0, timeout=timeout)


class AggregationStore:
    """
    Shared map from path to cumulative apparent size.

    Every entry's size is added to its own path and to each ancestor up to
    '.' or '/', so a directory's total covers its whole subtree, itself
    included. One chain is updated under one lock, so concurrent updates
    never interleave part way. The store only grows and should be read once
    the traversal has finished.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals: dict[str, int] = {}
        self._files: set[str] = set()

    def add_along_ancestor_chain(self, path: str, size: int, is_directory: bool = True) -> None:
        """
        Add size to path and to every ancestor of path.

        Args:
            path (str):
                Normalised path of the entry.
            size (int):
                Apparent size of the entry in bytes.
            is_directory (bool):
                False records the path as a file total.

        """
        with self._lock:
            if not is_directory:
                self._files.add(path)
            for item in ancestor_chain(path):
                self._totals[item] = self._totals.get(item, 0) + size

    def snapshot(self) -> types.MappingProxyType:
        """Return a read-only copy of the totals."""
        with self._lock:
            return types.MappingProxyType(dict(self._totals))

    def files(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._files)

    def is_file(self, path: str) -> bool:
        with self._lock:
            return path in self._files

    def get(self, path: str, default: int = 0) -> int:
        with self._lock:
            return self._totals.get(path, default)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._totals

    def __len__(self) -> int:
        with self._lock:
            return len(self._totals)


class Sink:
    """
    A bounded channel drained by a single consumer thread.

    Producers on any thread call send(); the consumer emits items one at a
    time in arrival order, so lines from concurrent workers never interleave.

    Args:
        name (str):
            Used for the consumer thread's name and in errors.
        emit (Callable[[str], None]):
            Called with each item on the consumer thread.
        buffer_size (int):
            Queue capacity. 0 gives a single slot.

    """

    def __init__(self, name: str, emit: Callable[[str], None], buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.name = name
        self._emit = emit
        self._queue: queue.Queue = queue.Queue(maxsize=max(buffer_size, 1))
        self._closed = False
        self._lock = threading.Lock()
        self._consumer = threading.Thread(target=self._consume, name=f"pypdu-{name}", daemon=True)

    def start(self) -> "Sink":
        self._consumer.start()
        return self

    def send(self, item: str) -> None:
        if self._closed:
            raise RuntimeError(f"{self.name} sink is closed")
        self._queue.put(item)

    def close(self) -> None:
        """Flush everything sent so far and stop the consumer."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(_END_OF_STREAM)
        if self._consumer.is_alive():
            self._consumer.join()

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            if item is _END_OF_STREAM:
                return
            try:
                self._handle(item)
            except Exception:
                logger.exception(f"The {self.name} sink failed to emit an item")

    def _handle(self, item: str) -> None:
        self._emit(item)


class ErrorSink(Sink):
    """A Sink that also counts the errors it emits."""

    def __init__(self, name: str, emit: Callable[[str], None], buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        super().__init__(name, emit, buffer_size)
        self._count = 0
        self._count_lock = threading.Lock()

    @property
    def count(self) -> int:
        """Errors emitted so far; final once the sink is closed."""
        with self._count_lock:
            return self._count

    def report(self, path: str, exc: BaseException) -> None:
        self.send(format_error(path, exc))

    def _handle(self, item: str) -> None:
        with self._count_lock:
            self._count += 1
        super()._handle(item)


class LocalOverflow:
    """
    A worker's private backlog of tasks that found no free pool slot.

    Nothing here blocks: scheduling falls back to the backlog when the pool
    is exhausted, and taking work from the backlog first tries to promote
    the entry to the shared queue so idle workers can pick it up. Entries
    are taken newest first, which keeps the walk depth-first.

    Args:
        pool (TaskPool):
            Source of slots for sharing work.
        work_queue (WorkQueue):
            Where promoted tasks go.

    """

    def __init__(self, pool: TaskPool, work_queue: WorkQueue) -> None:
        self._pool = pool
        self._queue = work_queue
        self._stack: list[Task] = []
        self.spilled = 0
        self.promoted = 0

    def __len__(self) -> int:
        return len(self._stack)

    def schedule(self, path: str, size: int, is_directory: bool) -> bool:
        """
        Make an entry available for processing.

        Returns:
            bool:
                True if it went to the shared queue, False if it was kept
                in the backlog.

        """
        slot = self._pool.try_acquire()
        if slot is not None:
            self._queue.put(slot.assign(path, size, is_directory))
            return True
        self._stack.append(Task(path, size, is_directory))
        self.spilled += 1
        return False

    def next_task(self) -> Task | None:
        """
        Return a backlog task for this worker to process itself.

        Entries are promoted to the shared queue while slots are free; the
        first one that cannot be promoted is returned. None means the
        backlog is empty.
        """
        while self._stack:
            task = self._stack.pop()
            slot = self._pool.try_acquire()
            if slot is None:
                return task
            self._queue.put(slot.assign(task.path, task.size, task.is_directory))
            self.promoted += 1
        return None


class Worker(threading.Thread):
    """
    Examines tasks until the work queue is closed.

    Each task's size is added to the store; directories are listed and
    every entry found becomes a new task, registered with the tracker before
    it is scheduled.
    """

    def __init__(
        self,
        index: int,
        config: Config,
        filesystem: Filesystem,
        pool: TaskPool,
        work_queue: WorkQueue,
        store: AggregationStore,
        tracker: CompletionTracker,
        messages: Sink,
        errors: ErrorSink,
    ) -> None:
        super().__init__(name=f"pypdu-worker-{index}", daemon=True)
        self.config = config
        self.filesystem = filesystem
        self.pool = pool
        self.work_queue = work_queue
        self.store = store
        self.tracker = tracker
        self.messages = messages
        self.errors = errors
        self.overflow = LocalOverflow(pool, work_queue)

    def run(self) -> None:
        while True:
            task = self.overflow.next_task()
            if task is None:
                task = self.work_queue.get()
                if task is None:
                    return
            self._handle(task)

    def _handle(self, task: Task) -> None:
        try:
            self.process(task)
        except Exception as exc:
            logger.debug(f"Unexpected failure while processing {task.path}", exc_info=True)
            self.errors.report(task.path, exc)
        finally:
            if task.pooled:
                self.pool.release(task)
            self.tracker.done()

    def process(self, task: Task) -> None:
        """Account for one entry and, for a directory, schedule its children."""
        if self.config.verbosity > 0:
            self.messages.send(f"Statting {task.path}")
        self.store.add_along_ancestor_chain(task.path, task.size, task.is_directory)
        if task.is_directory:
            self._expand(task.path)

    def _expand(self, path: str) -> None:
        try:
            handle = self.filesystem.open_directory(path)
        except OSError as exc:
            self.errors.report(path, exc)
            return
        try:
            while True:
                try:
                    batch = self.filesystem.read_entries(handle, self.config.read_batch_size)
                except OSError as exc:
                    self.errors.report(path, exc)
                    return
                if not batch:
                    return
                for info in batch:
                    self.tracker.add()
                    self.overflow.schedule(join_path(path, info.name), info.size, info.is_directory)
        finally:
            self.filesystem.close_directory(handle)


@dataclass(frozen=True)
class TraversalResult:
    """Outcome of a traversal.

    Attributes:
        store (AggregationStore):
            Totals gathered, complete or partial.
        error_count (int):
            Number of errors reported while walking.

    """

    store: AggregationStore
    error_count: int

    @property
    def ok(self) -> bool:
        return self.error_count == 0

    @property
    def totals(self) -> types.MappingProxyType:
        return self.store.snapshot()


class Traversal:
    """
    Wires the pool, queue, store, sinks, tracker and workers for one run.

    Args:
        config (Config | None):
            Settings; defaults apply when None.
        filesystem (Filesystem | None):
            Filesystem to walk; the local one when None.
        message_emit (Callable[[str], None] | None):
            Receives informational lines; written to stdout when None.
        error_emit (Callable[[str], None] | None):
            Receives error lines; logs at ERROR when None.

    """

    def __init__(
        self,
        config: Config | None = None,
        filesystem: Filesystem | None = None,
        message_emit: Callable[[str], None] | None = None,
        error_emit: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config or Config()
        self.filesystem = filesystem or LocalFilesystem()
        self.pool = TaskPool(self.config.concurrency_limit)
        self.work_queue = WorkQueue(self.config.concurrency_limit)
        self.store = AggregationStore()
        self.tracker = CompletionTracker()
        self.messages = Sink("messages", message_emit or write_line, self.config.message_buffer_size)
        self.errors = ErrorSink("errors", error_emit or logger.error, self.config.error_buffer_size)
        self.workers = [
            Worker(
                index=i,
                config=self.config,
                filesystem=self.filesystem,
                pool=self.pool,
                work_queue=self.work_queue,
                store=self.store,
                tracker=self.tracker,
                messages=self.messages,
                errors=self.errors,
            )
            for i in range(self.config.concurrency_limit)
        ]
        self._started = False

    def run(self, root_paths: Iterable[str] = ()) -> TraversalResult:
        """
        Walk every root to completion.

        Args:
            root_paths (Iterable[str]):
                Paths to examine; the current directory when empty.

        Returns:
            TraversalResult:
                The totals and the number of errors reported.

        Raises:
            RuntimeError: If this traversal was already run.

        """
        if self._started:
            raise RuntimeError("a traversal can only be run once")
        self._started = True

        self.messages.start()
        self.errors.start()
        for worker in self.workers:
            worker.start()

        self._seed(list(root_paths) or [os.curdir])
        self.tracker.wait()

        self.work_queue.close()
        for worker in self.workers:
            worker.join()
        self.messages.close()
        self.errors.close()

        logger.debug(
            f"Traversal finished: {len(self.store)} totals, peak of "
            f"{self.pool.peak_in_use}/{self.pool.capacity} slots in use"
        )
        return TraversalResult(store=self.store, error_count=self.errors.count)

    def _seed(self, roots: list[str]) -> None:
        for root in roots:
            path = os.path.normpath(root)
            try:
                info = self.filesystem.lstat(path)
            except OSError as exc:
                self.errors.report(root, exc)
                continue
            logger.debug(f"Seeding {path}")
            self.tracker.add()
            slot = self.pool.acquire()
            self.work_queue.put(slot.assign(path, info.size, info.is_directory))


def run(
    root_paths: Iterable[str] = (),
    config: Config | None = None,
    filesystem: Filesystem | None = None,
) -> TraversalResult:
    """
    Compute cumulative sizes for the given roots.

    Informational lines go to stdout and errors are logged while the walk runs.

    Args:
        root_paths (Iterable[str]):
            Paths to examine; the current directory when empty.
        config (Config | None):
            Settings; defaults apply when None.
        filesystem (Filesystem | None):
            Filesystem to walk; the local one when None.

    Returns:
        TraversalResult:
            Totals plus the error count; result.ok is False if any error was
            reported.

    """
    return Traversal(config, filesystem).run(root_paths)


def parse_size(size_str: str) -> int:
    """
    Parse a block size such as '512', '4K', '1MB' or '1G' into bytes.

    Args:
        size_str (str):
            Size string to parse.

    Returns:
        int:
            Size in bytes, at least 1.

    Raises:
        ValueError: If the size string format is invalid

    Examples:
        >>> parse_size('1K')
        1024
        >>> parse_size('0')
        1

    """
    text = size_str.strip().upper()

    # Handle plain numbers as bytes
    try:
        return max(int(text), 1)
    except ValueError:
        pass

    units = {
        "TB": 1024**4,
        "GB": 1024**3,
        "MB": 1024**2,
        "KB": 1024,
        "T": 1024**4,
        "G": 1024**3,
        "M": 1024**2,
        "K": 1024,
        "B": 1,
    }

    for unit, multiplier in sorted(units.items(), key=lambda x: len(x[0]), reverse=True):
        if text.endswith(unit):
            value_str = text[: -len(unit)].strip() or "1"
            try:
                value = int(value_str)
            except ValueError:
                continue
            return max(value * multiplier, 1)

    raise ValueError(f"could not parse number {size_str!r}")


def block_size_arg(value: str) -> int:
    """argparse type for block sizes."""
    try:
        return parse_size(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def clamped_int(value: str) -> int:
    """argparse type for counts: integers, with anything below 1 raised to 1."""
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"could not parse number {value!r}") from exc
    return max(number, 1)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    A lone '-' ends option parsing: everything after it is taken as a path.

    Args:
        argv (list[str] | None):
            Arguments without the program name; sys.argv[1:] when None.

    Returns:
        argparse.Namespace:
            Parsed arguments with paths, block_size, verbose, parallel_tasks
            and apparent_size.

    """
    if argv is None:
        argv = sys.argv[1:]
    argv = [arg for arg in argv if arg != ""]
    trailing: list[str] = []
    if "-" in argv:
        split = argv.index("-")
        argv, trailing = argv[:split], argv[split + 1 :]

    parser = argparse.ArgumentParser(
        prog="pypdu",
        description="Estimate disk space usage with parallelism; tries to be GNU du compatible.",
        conflict_handler="resolve",
        add_help=False,
    )
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        help="Show this help message and exit",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="PATH",
        help="Files or directories to examine (default: current directory)",
    )
    parser.add_argument(
        "--apparent-size",
        action="store_true",
        help="Print apparent sizes (always the case; accepted for compatibility)",
    )
    parser.add_argument(
        "-b",
        "--bytes",
        dest="block_size",
        action="store_const",
        const=1,
        help="Equivalent to '--apparent-size --block-size=1'",
    )
    parser.add_argument(
        "-k",
        dest="block_size",
        action="store_const",
        const=1024,
        help="Like --block-size=1K",
    )
    parser.add_argument(
        "-m",
        dest="block_size",
        action="store_const",
        const=1024**2,
        help="Like --block-size=1M",
    )
    parser.add_argument(
        "-B",
        "--block-size",
        dest="block_size",
        type=block_size_arg,
        metavar="SIZE",
        help="Scale sizes by SIZE before printing them (e.g., '512', '4K', '1M')",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Report every entry as it is examined; twice also shows debug output",
    )
    parser.add_argument(
        "--x-parallel-tasks",
        dest="parallel_tasks",
        type=clamped_int,
        default=DEFAULT_CONCURRENCY_LIMIT,
        metavar="N",
        help=f"Examine up to N files and directories concurrently (default: {DEFAULT_CONCURRENCY_LIMIT})",
    )
    parser.set_defaults(block_size=DEFAULT_BLOCK_SIZE)

    args = parser.parse_intermixed_args(argv)
    args.paths = list(args.paths) + trailing
    if args.block_size == 1:
        args.apparent_size = True
    return args


def build_config(args: argparse.Namespace) -> Config:
    """Map parsed arguments onto a Config."""
    return Config(
        concurrency_limit=args.parallel_tasks,
        verbosity=args.verbose,
        block_size=args.block_size,
    )


def blocks(size: int, block_size: int) -> int:
    """Number of block_size units needed to hold size bytes, rounded up."""
    return (size + block_size - 1) // block_size


def is_within(path: str, root: str) -> bool:
    """Whether path lies strictly beneath root, judged on the strings alone."""
    if path == root:
        return False
    if root == os.curdir:
        return not (
            os.path.isabs(path)
            or path == os.pardir
            or path.startswith(os.pardir + os.sep)
        )
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


def format_report(result: TraversalResult, roots: list[str], block_size: int) -> list[str]:
    """
    Render totals as '<blocks>\\t<path>' lines.

    Args:
        result (TraversalResult):
            A finished traversal.
        roots (list[str]):
            The paths the user asked for, possibly empty.
        block_size (int):
            Unit for the printed sizes.

    Returns:
        list[str]:
            With no roots, every directory total in reverse path order. With
            roots, for each directory root the directories beneath it in
            reverse path order followed by the root itself, and for each
            file root its own total. Roots that could not be examined are
            left out.

    """
    store = result.store
    totals = store.snapshot()
    files = store.files()
    directories = [path for path in totals if path not in files]

    def line(path: str) -> str:
        return f"{blocks(totals[path], block_size)}\t{path}"

    if not roots:
        return [line(path) for path in sorted(directories, reverse=True)]

    lines = []
    for root in roots:
        path = os.path.normpath(root)
        if path not in totals:
            continue
        if path in files:
            lines.append(line(path))
            continue
        beneath = sorted((d for d in directories if is_within(d, path)), reverse=True)
        lines.extend(line(d) for d in beneath)
        lines.append(line(path))
    return lines


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the pypdu disk usage estimator.

    Parses command-line arguments, walks the requested paths and prints one
    line per directory. Returns 1 if any error was reported, 0 otherwise.
    """
    args = parse_args(argv)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ColorFormatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if args.verbose > 1 else logging.INFO)

    config = build_config(args)
    logger.debug(f"Configuration: {config}")
    logger.debug(f"Paths: {args.paths}")

    result = run(args.paths, config)

    for report_line in format_report(result, args.paths, config.block_size):
        write_line(report_line)

    if not result.ok:
        logger.error(f"There were {result.error_count} errors")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
