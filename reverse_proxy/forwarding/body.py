"""
Request body plumbing.

The same incoming body may have to reach two upstreams (the mirror and the primary
target). ``BodyFanOut`` reads the source once and hands every chunk to each attached
consumer through a bounded queue: when a consumer falls behind, its queue fills up
and the reader waits, which in turn stops reading from the client (backpressure).
A consumer that is done (its request finished or failed) must be detached, after
which it no longer holds the others back.
"""

import asyncio
from typing import AsyncIterable, AsyncIterator, Iterable, List, Optional, Union

BodySource = Union[bytes, bytearray, Iterable[bytes], AsyncIterable[bytes]]

QUEUE_SIZE = 16
_END = object()


async def iterate_body(source: Optional[BodySource]) -> AsyncIterator[bytes]:
    """Yield the chunks of a bytes object, a sync iterable or an async iterable."""
    if source is None:
        return
    if isinstance(source, (bytes, bytearray)):
        if source:
            yield bytes(source)
        return
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield chunk
        return
    for chunk in source:
        if chunk:
            yield chunk


class _Failure:
    def __init__(self, exc: BaseException):
        self.exc = exc


class BodyFanOut:
    def __init__(self, source: AsyncIterable[bytes], consumers: int):
        self._source = source
        self._queues: List[Optional[asyncio.Queue]] = [
            asyncio.Queue(maxsize=QUEUE_SIZE) for _ in range(consumers)
        ]
        self._pump_task: Optional[asyncio.Task] = None

    def _start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.ensure_future(self._pump())

    async def _put_all(self, item) -> None:
        for queue in self._queues:
            if queue is not None:
                await queue.put(item)

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                if not any(q is not None for q in self._queues):
                    return
                await self._put_all(chunk)
        except Exception as exc:
            await self._put_all(_Failure(exc))
            return
        await self._put_all(_END)

    def detach(self, index: int) -> None:
        queue = self._queues[index]
        self._queues[index] = None
        if queue is not None:
            # Unblock a pump waiting on this consumer's full queue
            while not queue.empty():
                queue.get_nowait()
        if self._pump_task is not None and not any(q is not None for q in self._queues):
            self._pump_task.cancel()

    async def consume(self, index: int) -> AsyncIterator[bytes]:
        """Chunks for consumer ``index``; re-raises a failure of the source."""
        self._start()
        queue = self._queues[index]
        try:
            while queue is not None:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, _Failure):
                    raise item.exc
                yield item
        finally:
            self.detach(index)
