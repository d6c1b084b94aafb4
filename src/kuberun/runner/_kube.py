"""ClusterGateway backed by the official ``kubernetes`` client.

The client is synchronous, so every call runs through ``asyncio.to_thread``.
Watches and log follows are raw streaming responses (``_preload_content=False``):
watch lines are pumped from a daemon thread into an ``asyncio.Queue``, log
chunks are pulled one at a time in a worker thread. Closing either shuts the
underlying connection down, which unblocks the thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.watch.watch import iter_resp_lines

from kuberun.config import KubeConfig
from kuberun.logger import logger
from kuberun.runner._gateway import (
    GatewayError,
    LogStreamClosedError,
    WatchEvent,
    WatchOpenError,
    WorkloadCreateError,
    format_selector,
)
from kuberun.runner._manifest import build_job_manifest
from kuberun.types import (
    KIND_JOB,
    ContainerState,
    ContainerStatus,
    OwnerReference,
    PodSummary,
    WorkloadHandle,
    WorkloadSpec,
    WorkloadStatus,
)

# Errors the client raises for API rejections and for transport failures
_CLIENT_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, ApiException):
        return f"{exc.status} {exc.reason}"
    return f"{type(exc).__name__}: {exc}"


def load_api_client(cfg: KubeConfig) -> client.ApiClient:
    """Build an ApiClient from explicit settings without touching global config."""
    configuration = client.Configuration()
    match cfg.mode:
        case "in_cluster":
            config.load_incluster_config(client_configuration=configuration)
        case "kubeconfig":
            config.load_kube_config(
                config_file=cfg.config_file,
                context=cfg.context,
                client_configuration=configuration,
            )
        case _:
            try:
                config.load_incluster_config(client_configuration=configuration)
                logger.debug("Using in-cluster Kubernetes credentials")
            except config.ConfigException:
                config.load_kube_config(
                    config_file=cfg.config_file,
                    context=cfg.context,
                    client_configuration=configuration,
                )
                logger.debug("Using kubeconfig credentials", context=cfg.context)
    return client.ApiClient(configuration)


# ---------------------------------------------------------------------------
# Object conversion
# ---------------------------------------------------------------------------


def _container_status(raw: Any) -> ContainerStatus:
    state = raw.state
    if state is not None and state.running is not None:
        return ContainerStatus(name=raw.name, state=ContainerState.RUNNING)
    if state is not None and state.terminated is not None:
        return ContainerStatus(
            name=raw.name,
            state=ContainerState.TERMINATED,
            exit_code=state.terminated.exit_code,
            reason=state.terminated.reason,
        )
    reason = state.waiting.reason if state is not None and state.waiting is not None else None
    return ContainerStatus(name=raw.name, state=ContainerState.WAITING, reason=reason)


def pod_summary(pod: Any) -> PodSummary:
    """Convert a ``V1Pod`` into the runner's PodSummary."""
    meta = pod.metadata
    statuses = (pod.status.container_statuses if pod.status is not None else None) or []
    return PodSummary(
        name=meta.name,
        namespace=meta.namespace,
        owner_references=tuple(
            OwnerReference(kind=ref.kind, uid=ref.uid, name=ref.name)
            for ref in meta.owner_references or []
        ),
        containers=tuple(_container_status(s) for s in statuses),
    )


def _failed_reason(status: Any) -> str | None:
    for cond in (status.conditions if status is not None else None) or []:
        if cond.type == "Failed" and cond.status == "True":
            return cond.message or cond.reason or "job failed"
    return None


def workload_status(job: Any) -> WorkloadStatus:
    status = job.status
    return WorkloadStatus(
        succeeded=(status.succeeded if status is not None else None) or 0,
        active=(status.active if status is not None else None) or 0,
        failed=(status.failed if status is not None else None) or 0,
        completions=job.spec.completions if job.spec is not None else None,
        failed_reason=_failed_reason(status),
    )


def _shutdown_response(response: Any) -> None:
    # urllib3 >= 2.3 can interrupt a read blocked in another thread
    shutdown = getattr(response, "shutdown", None)
    if shutdown is not None:
        with contextlib.suppress(Exception):
            shutdown()
    with contextlib.suppress(Exception):
        response.close()
    with contextlib.suppress(Exception):
        response.release_conn()


# ---------------------------------------------------------------------------
# Streaming wrappers
# ---------------------------------------------------------------------------


class ThreadedWatch:
    """WatchSubscription over a streaming watch response."""

    def __init__(self, response: Any, description: str) -> None:
        self._response = response
        self._description = description
        self._queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._closed = False
        self._thread = threading.Thread(
            target=self._pump, name=f"watch-{description}", daemon=True
        )
        self._thread.start()

    def _deliver(self, event: WatchEvent | None) -> None:
        with contextlib.suppress(RuntimeError):  # loop already closed
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _pump(self) -> None:
        try:
            for line in iter_resp_lines(self._response):
                self._deliver(_parse_watch_line(line))
        except Exception as exc:
            if not self._closed:
                logger.debug("Watch stream ended with error", watch=self._description, err=str(exc))
        finally:
            self._deliver(None)

    async def __aiter__(self) -> AsyncIterator[WatchEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(_shutdown_response, self._response)


def _parse_watch_line(line: str) -> WatchEvent:
    try:
        data = json.loads(line)
    except ValueError:
        return WatchEvent(type="UNKNOWN")
    obj = data.get("object") or {}
    name = (obj.get("metadata") or {}).get("name", "") if isinstance(obj, dict) else ""
    return WatchEvent(type=str(data.get("type", "UNKNOWN")), name=name)


class HTTPLogStream:
    """LogStream over a following ``read_namespaced_pod_log`` response."""

    def __init__(self, response: Any) -> None:
        self._response = response
        self._chunks: Iterator[bytes] | None = None
        self._closed = False

    async def read(self, size: int) -> bytes:
        if self._closed:
            raise LogStreamClosedError("log stream closed")
        if self._chunks is None:
            # Log follows are chunked, so stream() yields as data arrives
            self._chunks = self._response.stream(size, decode_content=False)
        return await asyncio.to_thread(next, self._chunks, b"")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(_shutdown_response, self._response)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class KubernetesGateway:
    """ClusterGateway implementation for a real API server."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._batch = client.BatchV1Api(api_client)

    @classmethod
    def from_config(cls, cfg: KubeConfig) -> KubernetesGateway:
        try:
            return cls(load_api_client(cfg))
        except (config.ConfigException, OSError) as exc:
            raise GatewayError(f"failed to load cluster credentials: {exc}") from exc

    async def create_workload(self, spec: WorkloadSpec) -> WorkloadHandle:
        body = build_job_manifest(spec)
        try:
            job = await asyncio.to_thread(self._batch.create_namespaced_job, spec.namespace, body)
        except _CLIENT_ERRORS as exc:
            raise WorkloadCreateError(
                f"failed to create job {spec.namespace}/{spec.name}: {_describe(exc)}"
            ) from exc
        selector = {}
        if job.spec is not None and job.spec.selector is not None:
            selector = dict(job.spec.selector.match_labels or {})
        return WorkloadHandle(
            namespace=job.metadata.namespace or spec.namespace,
            name=job.metadata.name,
            uid=job.metadata.uid,
            kind=KIND_JOB,
            selector=selector,
        )

    async def get_workload(self, handle: WorkloadHandle) -> WorkloadStatus:
        try:
            job = await asyncio.to_thread(
                self._batch.read_namespaced_job, handle.name, handle.namespace
            )
        except _CLIENT_ERRORS as exc:
            raise GatewayError(
                f"failed to read job {handle.namespace}/{handle.name}: {_describe(exc)}"
            ) from exc
        return workload_status(job)

    async def watch_workload(self, handle: WorkloadHandle) -> ThreadedWatch:
        return await self._open_watch(
            self._batch.list_namespaced_job,
            handle.namespace,
            f"job/{handle.name}",
            field_selector=f"metadata.name={handle.name}",
        )

    async def list_pods(self, namespace: str, selector: dict[str, str]) -> list[PodSummary]:
        try:
            pods = await asyncio.to_thread(
                self._core.list_namespaced_pod,
                namespace,
                label_selector=format_selector(selector),
            )
        except _CLIENT_ERRORS as exc:
            raise GatewayError(f"failed to list pods in {namespace}: {_describe(exc)}") from exc
        return [pod_summary(p) for p in pods.items]

    async def watch_pods(self, namespace: str, selector: dict[str, str]) -> ThreadedWatch:
        label_selector = format_selector(selector)
        return await self._open_watch(
            self._core.list_namespaced_pod,
            namespace,
            f"pods/{label_selector}",
            label_selector=label_selector,
        )

    async def open_log_stream(self, pod: PodSummary, container: str) -> HTTPLogStream:
        try:
            response = await asyncio.to_thread(
                self._core.read_namespaced_pod_log,
                pod.name,
                pod.namespace,
                container=container,
                follow=True,
                _preload_content=False,
            )
        except _CLIENT_ERRORS as exc:
            raise GatewayError(
                f"failed to open logs for {pod.name}/{container}: {_describe(exc)}"
            ) from exc
        return HTTPLogStream(response)

    async def _open_watch(
        self,
        list_fn: Callable[..., Any],
        namespace: str,
        description: str,
        **selectors: str,
    ) -> ThreadedWatch:
        try:
            response = await asyncio.to_thread(
                list_fn,
                namespace,
                watch=True,
                _preload_content=False,
                **selectors,
            )
        except _CLIENT_ERRORS as exc:
            raise WatchOpenError(f"failed to watch {description}: {_describe(exc)}") from exc
        return ThreadedWatch(response, description)
