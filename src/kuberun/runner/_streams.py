"""Log stream tasks: copy one container's following log into the shared sink.

Each StreamTask owns a child CancelToken of the run's global token. A task
finishes when the log reaches end-of-stream (the container exited) or when
its token fires, in which case the stream is closed to unblock the pending
read. Copy errors never fail the run: benign closure errors go to debug,
anything else is a warning.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from kuberun.cancel import CancelToken
from kuberun.logger import logger
from kuberun.runner._gateway import (
    ClusterGateway,
    GatewayError,
    LogStream,
    is_stream_closed_error,
)
from kuberun.runner._sink import OutputSink
from kuberun.types import PodSummary

DEFAULT_CHUNK_SIZE = 8192


@dataclass
class StreamTask:
    pod: str
    container: str
    cancel: CancelToken
    bytes_copied: int = 0
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.pod, self.container)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def stop(self) -> None:
        """Request the copy to stop; the stream is closed to unblock it."""
        self.cancel.cancel()

    async def wait(self) -> None:
        await self._done.wait()


class LogStreamManager:
    """Starts log copies and tracks every task it has started."""

    def __init__(
        self,
        gateway: ClusterGateway,
        sink: OutputSink,
        cancel: CancelToken,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._gateway = gateway
        self._sink = sink
        self._cancel = cancel
        self._chunk_size = chunk_size
        self.tasks: list[StreamTask] = []

    def start_stream(self, pod: PodSummary, container: str) -> StreamTask:
        """Launch a concurrent copy of *container*'s log in *pod*."""
        stream_task = StreamTask(
            pod=pod.name,
            container=container,
            cancel=self._cancel.child(f"stream {pod.name}/{container}"),
        )
        stream_task._task = asyncio.ensure_future(self._run(pod, stream_task))
        self.tasks.append(stream_task)
        logger.info("Streaming container logs", pod=pod.name, container=container)
        return stream_task

    async def abort_all(self) -> None:
        """Stop every task and wait for them to release their streams."""
        for stream_task in self.tasks:
            stream_task.stop()
        running = [t._task for t in self.tasks if t._task is not None and not t._task.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    async def _run(self, pod: PodSummary, stream_task: StreamTask) -> None:
        start = time.monotonic()
        try:
            try:
                stream = await self._gateway.open_log_stream(pod, stream_task.container)
            except GatewayError as exc:
                logger.warning(
                    "Failed to open log stream",
                    pod=stream_task.pod,
                    container=stream_task.container,
                    error=str(exc),
                )
                return

            copy = asyncio.ensure_future(self._copy(stream, stream_task))
            stop = asyncio.ensure_future(stream_task.cancel.wait())
            try:
                await asyncio.wait({copy, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()
                # Close before cancelling the copy so a blocked read sees the
                # closure rather than being abandoned mid-chunk.
                stream_task.cancel.cancel()
                await stream.close()
                if not copy.done():
                    copy.cancel()
                await asyncio.gather(copy, return_exceptions=True)
        finally:
            stream_task._done.set()
            logger.debug(
                "Log stream finished",
                pod=stream_task.pod,
                container=stream_task.container,
                bytes=stream_task.bytes_copied,
                duration_ms=round((time.monotonic() - start) * 1000),
            )

    async def _copy(self, stream: LogStream, stream_task: StreamTask) -> None:
        try:
            while True:
                chunk = await stream.read(self._chunk_size)
                if not chunk:
                    return
                # Sink writes can block on a slow reader; keep them off the loop
                await asyncio.to_thread(self._sink.write, chunk)
                stream_task.bytes_copied += len(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if stream_task.cancel.cancelled or is_stream_closed_error(exc):
                logger.debug(
                    "Log stream closed",
                    pod=stream_task.pod,
                    container=stream_task.container,
                    error=str(exc),
                )
                return
            logger.warning(
                "Failed to complete log copy",
                pod=stream_task.pod,
                container=stream_task.container,
                error_type=type(exc).__name__,
                error=str(exc),
            )


async def drain_all(tasks: Iterable[StreamTask], cancel: CancelToken) -> bool:
    """Wait for every task to finish on its own.

    Returns False without waiting further as soon as *cancel* fires.
    """
    pending = [t for t in tasks if not t.done]
    if not pending:
        return True
    if cancel.cancelled:
        return False

    everything = asyncio.ensure_future(asyncio.gather(*(t.wait() for t in pending)))
    stop = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({everything, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not everything.done():
            everything.cancel()
    return everything.done() and not everything.cancelled()
