"""Shared test fixtures for kuberun."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator

import pytest

from kuberun.runner._gateway import (
    GatewayError,
    LogStreamClosedError,
    WatchEvent,
    WatchOpenError,
    WorkloadCreateError,
)
from kuberun.types import (
    KIND_JOB,
    ContainerState,
    ContainerStatus,
    ContainerTemplate,
    OwnerReference,
    PodSummary,
    WorkloadHandle,
    WorkloadSpec,
    WorkloadStatus,
)

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object with fast retries for testing.

    Usage::

        s = make_settings()
        s = make_settings(streams=StreamsConfig(chunk_size=4))
    """
    from kuberun.config import LoggingConfig, RetryConfig, Settings, StreamsConfig

    defaults = {
        "retry": RetryConfig(
            initial_interval_s=0.01, multiplier=1.0, max_interval_s=0.01, jitter=0.0
        ),
        "streams": StreamsConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def fast_intervals():
    return itertools.repeat(0.01)


def make_handle(name: str = "build-42", uid: str = "uid-1") -> WorkloadHandle:
    return WorkloadHandle(namespace="default", name=name, uid=uid, kind=KIND_JOB)


def make_spec(name: str = "build-42", completions: int | None = None) -> WorkloadSpec:
    return WorkloadSpec(
        name=name,
        completions=completions,
        containers=[ContainerTemplate(name="main", image="alpine:3.20")],
    )


def status(name: str, state: ContainerState, exit_code: int | None = None) -> ContainerStatus:
    return ContainerStatus(name=name, state=state, exit_code=exit_code)


def make_pod(
    name: str,
    *containers: ContainerStatus,
    owner_uid: str = "uid-1",
    owner_kind: str = KIND_JOB,
) -> PodSummary:
    return PodSummary(
        name=name,
        namespace="default",
        owner_references=(OwnerReference(kind=owner_kind, uid=owner_uid, name="build-42"),),
        containers=tuple(containers),
    )


async def settle(rounds: int = 5, delay: float = 0.01) -> None:
    """Let background tasks run until the scripted cluster has been observed."""
    for _ in range(rounds):
        await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# In-memory cluster
# ---------------------------------------------------------------------------


class FakeWatch:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self.closed = False

    def emit(self, event_type: str = "MODIFIED") -> None:
        self.queue.put_nowait(WatchEvent(type=event_type))

    def drop(self) -> None:
        """Simulate the server closing the channel."""
        self.queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[WatchEvent]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)


class FakeLogStream:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.closed = False
        self._pending = b""
        self._error = "stream broken"

    def feed(self, data: bytes) -> None:
        self.queue.put_nowait(data)

    def end(self) -> None:
        self.queue.put_nowait(b"")

    def fail(self, message: str) -> None:
        self._error = message
        self.queue.put_nowait(None)

    async def read(self, size: int) -> bytes:
        if self.closed:
            raise LogStreamClosedError("log stream closed")
        if self._pending:
            data, self._pending = self._pending[:size], self._pending[size:]
            return data
        data = await self.queue.get()
        if data is None:
            if self.closed:
                raise LogStreamClosedError("http: read on closed response body closed")
            raise GatewayError(self._error)
        data, self._pending = data[:size], data[size:]
        return data

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(None)


class FakeGateway:
    """Scripted cluster: tests mutate ``pods`` / ``status`` and emit watch events."""

    def __init__(self) -> None:
        self.pods: list[PodSummary] = []
        self.status = WorkloadStatus()
        self.created: list[WorkloadSpec] = []
        self.create_error: Exception | None = None
        self.pod_watch_error: Exception | None = None
        self.job_watch_error: Exception | None = None
        self.list_error: Exception | None = None
        self.get_error: Exception | None = None
        self.log_open_error: Exception | None = None
        self.pod_watches: list[FakeWatch] = []
        self.job_watches: list[FakeWatch] = []
        self.streams: dict[tuple[str, str], FakeLogStream] = {}
        self.opened: list[tuple[str, str]] = []
        self.list_calls: list[tuple[str, dict[str, str]]] = []

    # --- scripting helpers ---

    def set_pods(self, *pods: PodSummary) -> None:
        self.pods = list(pods)

    def pod_event(self) -> None:
        for watch in self.pod_watches:
            if not watch.closed:
                watch.emit()

    def job_event(self) -> None:
        for watch in self.job_watches:
            if not watch.closed:
                watch.emit()

    def stream(self, pod: str, container: str) -> FakeLogStream:
        return self.streams.setdefault((pod, container), FakeLogStream())

    # --- ClusterGateway ---

    async def create_workload(self, spec: WorkloadSpec) -> WorkloadHandle:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(spec)
        self.status = WorkloadStatus(
            succeeded=self.status.succeeded,
            active=self.status.active,
            failed=self.status.failed,
            completions=spec.completions,
            failed_reason=self.status.failed_reason,
        )
        return make_handle(spec.name)

    async def get_workload(self, handle: WorkloadHandle) -> WorkloadStatus:
        if self.get_error is not None:
            raise self.get_error
        return self.status

    async def watch_workload(self, handle: WorkloadHandle) -> FakeWatch:
        if self.job_watch_error is not None:
            raise self.job_watch_error
        watch = FakeWatch()
        self.job_watches.append(watch)
        return watch

    async def list_pods(self, namespace: str, selector: dict[str, str]) -> list[PodSummary]:
        self.list_calls.append((namespace, selector))
        if self.list_error is not None:
            raise self.list_error
        return list(self.pods)

    async def watch_pods(self, namespace: str, selector: dict[str, str]) -> FakeWatch:
        if self.pod_watch_error is not None:
            raise self.pod_watch_error
        watch = FakeWatch()
        self.pod_watches.append(watch)
        return watch

    async def open_log_stream(self, pod: PodSummary, container: str) -> FakeLogStream:
        if self.log_open_error is not None:
            raise self.log_open_error
        self.opened.append((pod.name, container))
        return self.stream(pod.name, container)


class MemorySink:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    def close(self) -> None:
        self.closed = True

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


__all__ = [
    "FakeGateway",
    "FakeLogStream",
    "FakeWatch",
    "GatewayError",
    "MemorySink",
    "WatchOpenError",
    "WorkloadCreateError",
    "fast_intervals",
    "make_handle",
    "make_pod",
    "make_settings",
    "make_spec",
    "settle",
    "status",
]
