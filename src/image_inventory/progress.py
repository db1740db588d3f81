"""Progress reporting for concurrent analyses.

Every running analysis sends ``ProgressMessage`` items into one bounded
queue; a single consumer task hands them to a sink. Two ordering contracts
are available:

* ``INTERLEAVED``: messages are delivered as produced. Messages of one image
  keep their production order; messages of different images interleave.
* ``ORDERED``: all messages of image *k* are delivered after every message
  of images ``0..k-1``. Messages of an image that is not yet at the head are
  buffered and flushed when the images before it finish.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from .config import ProgressOrdering

logger = logging.getLogger(__name__)
progress_logger = logging.getLogger("image_inventory.progress")

DEFAULT_QUEUE_SIZE = 100

ProgressCallback = Callable[[str], None]


@dataclass(frozen=True)
class ProgressMessage:
    """One progress line attributed to the image at ``index``."""

    index: int
    total: int
    image: str
    text: str
    done: bool = False

    def format(self) -> str:
        prefix = f"[{self.index + 1}/{self.total}] " if self.total > 1 else ""
        return f"{prefix}[{self.image}] {self.text}"


Sink = Callable[[ProgressMessage], None]


def log_sink(message: ProgressMessage) -> None:
    progress_logger.info(message.format())


def null_progress(text: str) -> None:
    pass


class TaskProgress:
    """Per-image handle used by the resolver, extractor and parsers.

    ``await send(text)`` is for coroutines on the event loop. Calling the
    handle directly is for code running in worker threads; it blocks the
    calling thread while the queue is full.
    """

    def __init__(self, reporter: "ProgressReporter", index: int, image: str, total: int) -> None:
        self._reporter = reporter
        self.index = index
        self.image = image
        self.total = total

    def _message(self, text: str) -> ProgressMessage:
        return ProgressMessage(self.index, self.total, self.image, text)

    async def send(self, text: str) -> None:
        await self._reporter.put(self._message(text))

    async def finish(self) -> None:
        await self._reporter.finish(self.index)

    def __call__(self, text: str) -> None:
        self._reporter.put_threadsafe(self._message(text))


class ProgressReporter:
    """Single consumer of progress messages from all analysis tasks."""

    def __init__(
        self,
        sink: Optional[Sink] = None,
        ordering: ProgressOrdering = ProgressOrdering.INTERLEAVED,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.sink = sink or log_sink
        self.ordering = ordering
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._next_index = 0
        self._finished: set[int] = set()
        self._buffers: dict[int, list[ProgressMessage]] = defaultdict(list)

    async def __aenter__(self) -> "ProgressReporter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._next_index = 0
        self._finished.clear()
        self._buffers.clear()
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._consumer = asyncio.create_task(self._consume())

    async def close(self) -> None:
        """Drain the queue, flush anything still buffered and stop."""
        if self._consumer is None:
            return
        await self._queue.put(None)
        await self._consumer
        self._consumer = None
        for index in sorted(self._buffers):
            for message in self._buffers[index]:
                self._deliver(message)
        self._buffers.clear()

    def task(self, index: int, image: str, total: int) -> TaskProgress:
        return TaskProgress(self, index, image, total)

    async def finish(self, index: int) -> None:
        """Mark the image at ``index`` as done."""
        await self._queue.put(ProgressMessage(index, 0, "", "", done=True))

    async def put(self, message: ProgressMessage) -> None:
        await self._queue.put(message)

    def put_threadsafe(self, message: ProgressMessage) -> None:
        if threading.get_ident() == self._loop_thread:
            raise RuntimeError("Use 'await progress.send()' from the event loop thread")
        future = asyncio.run_coroutine_threadsafe(self._queue.put(message), self._loop)
        future.result()

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            self._dispatch(message)

    def _dispatch(self, message: ProgressMessage) -> None:
        if self.ordering is ProgressOrdering.INTERLEAVED:
            if not message.done:
                self._deliver(message)
            return

        if message.done:
            self._finished.add(message.index)
        elif message.index == self._next_index:
            self._deliver(message)
        else:
            self._buffers[message.index].append(message)

        while self._next_index in self._finished:
            self._next_index += 1
            for buffered in self._buffers.pop(self._next_index, []):
                self._deliver(buffered)

    def _deliver(self, message: ProgressMessage) -> None:
        try:
            self.sink(message)
        except Exception:
            logger.exception("Progress sink failed")
