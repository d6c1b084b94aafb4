"""Cluster gateway contract: the only surface the runner talks to.

``KubernetesGateway`` (in ``_kube``) implements it against a real API server;
tests supply an in-memory fake. Every method is async; implementations that
wrap blocking clients push the I/O into worker threads.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from kuberun.cancel import CancelToken
from kuberun.types import PodSummary, WorkloadHandle, WorkloadSpec, WorkloadStatus


class GatewayError(Exception):
    """Base class for cluster gateway failures."""


class WorkloadCreateError(GatewayError):
    """The cluster rejected or failed to create the workload."""


class WatchOpenError(GatewayError):
    """A watch could not be opened at all (as opposed to dropping later)."""


class LogStreamClosedError(GatewayError):
    """Read attempted on a log stream that has been closed."""


@dataclass(frozen=True)
class WatchEvent:
    type: str  # ADDED / MODIFIED / DELETED / BOOKMARK / ERROR
    name: str = ""


@runtime_checkable
class WatchSubscription(Protocol):
    """An open watch. Iteration ends when the server closes the channel."""

    def __aiter__(self) -> AsyncIterator[WatchEvent]: ...
    async def close(self) -> None: ...


@runtime_checkable
class LogStream(Protocol):
    """A following container log stream."""

    async def read(self, size: int) -> bytes:
        """Return up to *size* bytes, or b"" at end of stream."""
        ...

    async def close(self) -> None:
        """Close the stream; unblocks a pending ``read``. Idempotent."""
        ...


@runtime_checkable
class ClusterGateway(Protocol):
    async def create_workload(self, spec: WorkloadSpec) -> WorkloadHandle: ...
    async def get_workload(self, handle: WorkloadHandle) -> WorkloadStatus: ...
    async def watch_workload(self, handle: WorkloadHandle) -> WatchSubscription: ...
    async def list_pods(self, namespace: str, selector: dict[str, str]) -> list[PodSummary]: ...
    async def watch_pods(self, namespace: str, selector: dict[str, str]) -> WatchSubscription: ...
    async def open_log_stream(self, pod: PodSummary, container: str) -> LogStream: ...


_CLOSED_MESSAGES = ("I/O operation on closed file",)
_CLOSED_SUFFIXES = ("response body closed",)


def is_stream_closed_error(exc: BaseException | None) -> bool:
    """True when *exc* is an artifact of a stream ending or being closed.

    Closing a follow stream from another thread surfaces differently depending
    on where the read was blocked, so match on message as well as type.
    """
    if exc is None:
        return False
    if isinstance(exc, EOFError | LogStreamClosedError):
        return True
    message = str(exc)
    return message in _CLOSED_MESSAGES or message.endswith(_CLOSED_SUFFIXES)


async def _next_event(iterator: AsyncIterator[WatchEvent]) -> WatchEvent | None:
    return await anext(iterator, None)


async def watch_events(
    watch: WatchSubscription, cancel: CancelToken
) -> AsyncIterator[WatchEvent]:
    """Yield events from *watch* until the channel closes or *cancel* fires."""
    iterator = aiter(watch)
    stop = asyncio.ensure_future(cancel.wait())
    try:
        while not cancel.cancelled:
            nxt = asyncio.ensure_future(_next_event(iterator))
            await asyncio.wait({nxt, stop}, return_when=asyncio.FIRST_COMPLETED)
            if not nxt.done():
                nxt.cancel()
                await asyncio.gather(nxt, return_exceptions=True)
                return
            event = nxt.result()
            if event is None:
                return
            yield event
    finally:
        stop.cancel()


def format_selector(selector: dict[str, str]) -> str:
    """Render a match-labels dict as a label selector query string."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))
