"""
Progress streaming.

Long-running operations write ``ProgressMessage`` objects into a
``ProgressChannel``; the caller drains it with ``async for``. The queue is
bounded, so a slow consumer applies backpressure to the producer. A consumer
that walks away calls ``detach()`` and the producer keeps running without
blocking on the queue.
"""
import asyncio
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

from kbengine.schemas.progress import ProgressMessage, ProgressStatus, TaskType

T = TypeVar("T")

_CLOSED = object()


class ProgressChannel:
    """Bounded single-consumer queue of progress messages."""

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._detached = False

    async def send(self, message: ProgressMessage) -> None:
        if self._closed or self._detached:
            return
        await self._queue.put(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # A full queue gets no marker; the reader stops once it runs dry
        if not self._detached and not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        """Stop consuming. Pending and future messages are discarded."""
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[ProgressMessage]:
        return self

    async def __anext__(self) -> ProgressMessage:
        if self._detached or (self._closed and self._queue.empty()):
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ProgressScope:
    """
    Maps a sub-operation's 0..1 completion fraction into an absolute percent.

    ``percent = base + fraction * span``. A scope without a channel is a no-op,
    so operations can always report progress whether or not anyone listens.
    """

    def __init__(
        self,
        channel: Optional[ProgressChannel],
        base: float = 0.0,
        span: float = 100.0,
        task_type: TaskType = TaskType.KNOWLEDGE_BASE_BUILD,
        source: Optional[str] = None,
    ):
        self.channel = channel
        self.base = base
        self.span = span
        self.task_type = task_type
        self.source = source

    def percent_at(self, fraction: float) -> float:
        fraction = min(1.0, max(0.0, fraction))
        return self.base + fraction * self.span

    def sub(
        self,
        start: float,
        end: float,
        task_type: Optional[TaskType] = None,
        source: Optional[str] = None,
    ) -> "ProgressScope":
        """A child scope covering ``[start, end]`` of this scope's range."""
        return ProgressScope(
            self.channel,
            base=self.percent_at(start),
            span=self.percent_at(end) - self.percent_at(start),
            task_type=task_type or self.task_type,
            source=source or self.source,
        )

    async def report(
        self,
        fraction: float,
        message: str,
        status: ProgressStatus = ProgressStatus.PROCESSING,
        task_type: Optional[TaskType] = None,
        current: Optional[int] = None,
        total: Optional[int] = None,
    ) -> None:
        if self.channel is None:
            return
        await self.channel.send(ProgressMessage(
            status=status,
            percent=self.percent_at(fraction),
            message=message,
            task_type=task_type or self.task_type,
            source=self.source,
            current=current,
            total=total,
        ))


class ProgressStream(Generic[T]):
    """
    Runs ``operation(channel)`` as a task and exposes its progress.

        stream = ProgressStream(lambda ch: kb.rebuild(RebuildMode.FULL, progress=ch))
        async for message in stream:
            ...
        snapshot = await stream.result()

    Abandoning the stream (``aclose``) does not cancel the operation.
    """

    def __init__(self, operation: Callable[[ProgressChannel], Awaitable[T]], maxsize: int = 256):
        self.channel = ProgressChannel(maxsize=maxsize)
        self._task: asyncio.Task = asyncio.ensure_future(self._run(operation))

    async def _run(self, operation: Callable[[ProgressChannel], Awaitable[T]]) -> T:
        try:
            return await operation(self.channel)
        finally:
            await self.channel.close()

    def __aiter__(self) -> AsyncIterator[ProgressMessage]:
        return self.channel.__aiter__()

    async def result(self) -> T:
        """Wait for the operation. Messages not yet read are discarded."""
        self.channel.detach()
        return await self._task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def aclose(self) -> None:
        self.channel.detach()
