"""
Ordered command queue between the HTTP handlers and the relay worker.

Many producers (request handlers), one consumer (the relay). Each batch
is enqueued contiguously so lines from one request keep their order.
"""

import queue
import threading
from typing import Iterable, List, Optional

from .errors import QueueFullError

# Queued by interrupt() to wake a blocked consumer
_WAKE = object()


class QueueInterrupted(Exception):
    """get() was woken by interrupt() instead of a command."""


class CommandQueue:
    """FIFO of command strings, unbounded unless max_depth is set."""

    def __init__(self, max_depth: int = 0):
        """
        Initialize command queue.

        Args:
            max_depth: Maximum number of queued commands, 0 for unbounded
        """
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._max_depth = max(0, int(max_depth or 0))
        self._lock = threading.Lock()
        self._total_enqueued = 0
        self._wakes = 0

    @property
    def max_depth(self) -> int:
        return self._max_depth

    @property
    def depth(self) -> int:
        """Commands currently waiting."""
        return max(0, self._queue.qsize() - self._wakes)

    @property
    def total_enqueued(self) -> int:
        """Commands accepted since startup."""
        return self._total_enqueued

    def __len__(self) -> int:
        return self.depth

    def put(self, command: str) -> None:
        """Enqueue a single command."""
        self.put_batch([command])

    def put_batch(self, commands: Iterable[str]) -> int:
        """
        Enqueue a batch of commands in order, all or nothing.

        Returns:
            Number of commands enqueued.

        Raises:
            QueueFullError: the batch would exceed max_depth.
        """
        batch: List[str] = list(commands)
        if not batch:
            return 0

        with self._lock:
            if self._max_depth:
                depth = self.depth
                if depth + len(batch) > self._max_depth:
                    raise QueueFullError(depth, len(batch), self._max_depth)

            for command in batch:
                self._queue.put(command)
            self._total_enqueued += len(batch)

        return len(batch)

    def get(self, timeout: Optional[float] = None) -> str:
        """
        Block until a command is available.

        Raises:
            queue.Empty: timeout expired with nothing queued.
            QueueInterrupted: interrupt() was called.
        """
        item = self._queue.get(timeout=timeout)
        if item is _WAKE:
            with self._lock:
                self._wakes -= 1
            self._queue.task_done()
            raise QueueInterrupted()
        return item

    def interrupt(self) -> None:
        """Wake a consumer blocked in get()."""
        with self._lock:
            self._wakes += 1
            self._queue.put(_WAKE)

    def task_done(self) -> None:
        self._queue.task_done()

    def drain(self) -> List[str]:
        """Remove and return everything currently queued."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return items
            if item is _WAKE:
                with self._lock:
                    self._wakes -= 1
            else:
                items.append(item)
