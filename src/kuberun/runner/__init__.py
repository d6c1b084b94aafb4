"""Job runner: submits a Kubernetes Job, multiplexes its container logs, waits for completion.

This package is split into focused submodules:
  _diff          pod snapshot diffing (pure)
  _gateway       ClusterGateway contract, watch/log stream protocols, error types
  _kube          ClusterGateway implementation over the ``kubernetes`` client
  _manifest      WorkloadSpec -> V1Job request body
  _sink          output sinks shared by concurrent log copies
  _streams       log stream tasks and draining
  _reconciler    pod reconciliation (which containers to stream)
  _completion    completion predicate and the Job watcher
  _orchestrator  RunOrchestrator tying it all together
"""

from __future__ import annotations

from kuberun.cancel import CancelToken
from kuberun.config import Settings, get_settings
from kuberun.runner._completion import CompletionWatcher, WorkloadFailedError, is_complete
from kuberun.runner._diff import diff_pod_sets
from kuberun.runner._gateway import (
    ClusterGateway,
    GatewayError,
    LogStream,
    WatchEvent,
    WatchOpenError,
    WatchSubscription,
    WorkloadCreateError,
    is_stream_closed_error,
)
from kuberun.runner._kube import KubernetesGateway
from kuberun.runner._orchestrator import RunOrchestrator
from kuberun.runner._reconciler import PodReconciler
from kuberun.runner._sink import LoggerSink, OutputSink, StreamSink
from kuberun.runner._streams import LogStreamManager, StreamTask, drain_all
from kuberun.types import RunOutcome, WorkloadSpec


async def run_workload(
    spec: WorkloadSpec,
    *,
    cancel: CancelToken | None = None,
    sink: OutputSink | None = None,
    settings: Settings | None = None,
    gateway: ClusterGateway | None = None,
) -> RunOutcome:
    """Convenience wrapper: build a gateway from settings and run *spec*."""
    settings = settings if settings is not None else get_settings()
    if gateway is None:
        gateway = KubernetesGateway.from_config(settings.kube)
    return await RunOrchestrator(gateway, settings, sink=sink).run(spec, cancel)


__all__ = [
    "ClusterGateway",
    "CompletionWatcher",
    "GatewayError",
    "KubernetesGateway",
    "LogStream",
    "LogStreamManager",
    "LoggerSink",
    "OutputSink",
    "PodReconciler",
    "RunOrchestrator",
    "StreamSink",
    "StreamTask",
    "WatchEvent",
    "WatchOpenError",
    "WatchSubscription",
    "WorkloadCreateError",
    "WorkloadFailedError",
    "diff_pod_sets",
    "drain_all",
    "is_complete",
    "is_stream_closed_error",
    "run_workload",
]
