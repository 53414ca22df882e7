"""
Chunked streaming buffer with backpressure.

Sits between the inbound call-leg audio and the transcoder/transcriber.
Chunks are delivered to an async sink strictly in arrival order, split into
pieces of at most `chunk_size` bytes. Only one drain runs at a time; a push
that takes the buffer past `max_buffer_size` waits for the queue to drain.
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 1024
DEFAULT_MAX_BUFFER_SIZE = 16384

Sink = Callable[[bytes], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]


class StreamingBuffer:
    """
    FIFO byte buffer drained into an async sink.

    Args:
        on_data: Async callable receiving each piece
        chunk_size: Maximum piece size handed to the sink
        max_buffer_size: Queued bytes above which `push` blocks until drained
        on_error: Called with any exception the sink raises; draining continues
        name: Label used in log events
    """

    def __init__(
        self,
        on_data: Sink,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        on_error: Optional[ErrorHandler] = None,
        name: str = "",
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if max_buffer_size < chunk_size:
            raise ValueError("max_buffer_size must be at least chunk_size")

        self.chunk_size = chunk_size
        self.max_buffer_size = max_buffer_size
        self.name = name
        self._on_data = on_data
        self._on_error = on_error or self._log_error

        self._queue: Deque[bytes] = deque()
        self._size = 0
        self._epoch = 0
        self._draining = False
        self._drainer: Optional[asyncio.Task] = None
        self._background: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def size(self) -> int:
        """Bytes accepted but not yet handed to the sink."""
        return self._size

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def push(self, chunk: bytes) -> None:
        """
        Queue a chunk for delivery.

        Blocks until the buffer has drained when the queued size exceeds
        `max_buffer_size`; otherwise schedules a background drain.
        """
        if not chunk:
            return

        self._queue.append(bytes(chunk))
        self._size += len(chunk)

        if self._size > self.max_buffer_size:
            logger.debug(
                "Streaming buffer over limit, draining",
                buffer=self.name,
                size=self._size,
                max_buffer_size=self.max_buffer_size,
            )
            await self.flush()
        elif not self._draining:
            self._begin_drain()
            self._background = asyncio.create_task(self._drain())

    async def flush(self) -> None:
        """Deliver everything queued, in order, before returning."""
        current = asyncio.current_task()
        while self._queue or self._draining:
            if self._draining:
                if self._drainer is current:
                    # Re-entrant push from inside the sink; the running drain picks it up.
                    return
                await self._idle.wait()
                continue
            self._begin_drain()
            await self._drain()

    def clear(self) -> None:
        """Discard queued data, including the unsent rest of an in-flight chunk."""
        dropped = self._size
        self._epoch += 1
        self._queue.clear()
        self._size = 0
        if dropped:
            logger.debug("Streaming buffer cleared", buffer=self.name, dropped_bytes=dropped)

    async def close(self) -> None:
        """Clear the buffer and stop any background drain."""
        self.clear()
        task = self._background
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _begin_drain(self) -> None:
        self._draining = True
        self._idle.clear()

    async def _drain(self) -> None:
        self._drainer = asyncio.current_task()
        try:
            while self._queue:
                chunk = self._queue.popleft()
                epoch = self._epoch
                for offset in range(0, len(chunk), self.chunk_size):
                    piece = chunk[offset:offset + self.chunk_size]
                    try:
                        await self._on_data(piece)
                    except Exception as e:
                        self._on_error(e)
                    if epoch != self._epoch:
                        break
                    self._size -= len(piece)
        finally:
            self._drainer = None
            self._draining = False
            self._idle.set()

    def _log_error(self, error: Exception) -> None:
        logger.error("Streaming buffer sink failed", buffer=self.name, error=str(error))
