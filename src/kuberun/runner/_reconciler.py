"""Pod reconciliation: turn pod snapshots into log stream starts.

Called once on entry and again for every pod watch event, never
concurrently, so the retained snapshot needs no locking.

Stream policy: a container qualifies when its new status is Running, or,
while no stream has been started yet, when it is already Terminated (so a
short job whose pods appear only after an empty first listing still gets
its logs). Once a stream exists, a container that goes from Waiting to
Terminated between two passes is never streamed.
"""

from __future__ import annotations

from kuberun.logger import logger
from kuberun.retry import Attempt, Retryable
from kuberun.runner._completion import check_completion
from kuberun.runner._diff import diff_pod_sets
from kuberun.runner._gateway import ClusterGateway, GatewayError
from kuberun.runner._streams import LogStreamManager, StreamTask
from kuberun.types import ContainerState, ContainerStatus, PodSnapshot, WorkloadHandle


class PodReconciler:
    def __init__(
        self,
        gateway: ClusterGateway,
        handle: WorkloadHandle,
        streams: LogStreamManager,
    ) -> None:
        self._gateway = gateway
        self._handle = handle
        self._streams = streams
        self._snapshot: PodSnapshot = {}
        self._streamed: set[tuple[str, str]] = set()

    @property
    def snapshot(self) -> PodSnapshot:
        return dict(self._snapshot)

    async def reconcile(self, tasks: list[StreamTask]) -> tuple[list[StreamTask], Attempt]:
        """Start streams for newly qualifying containers.

        Returns the extended task list and the job's completion check
        (None = complete).
        """
        try:
            current = await self._collect_pods()
        except GatewayError as exc:
            logger.warning("Failed to list job pods", job=self._handle.name, error=str(exc))
            return tasks, Retryable(str(exc))
        first_pass = not self._streamed

        tasks = list(tasks)
        for delta in diff_pod_sets(self._snapshot, current):
            for change in delta.containers:
                if not _qualifies(change.current, first_pass):
                    continue
                key = (delta.pod.name, change.current.name)
                if key in self._streamed:
                    continue
                self._streamed.add(key)
                tasks.append(self._streams.start_stream(delta.pod, change.current.name))
        # Merge rather than replace: a pod that vanishes from one listing and
        # comes back must not look new again.
        self._snapshot.update(current)

        return tasks, await check_completion(self._gateway, self._handle)

    async def _collect_pods(self) -> PodSnapshot:
        pods = await self._gateway.list_pods(self._handle.namespace, self._handle.pod_selector())
        # Label selectors can match pods of an unrelated job with the same
        # labels; the owner reference is authoritative.
        return {pod.name: pod for pod in pods if pod.is_owned_by(self._handle)}


def _qualifies(status: ContainerStatus, first_pass: bool) -> bool:
    if status.state is ContainerState.RUNNING:
        return True
    return first_pass and status.state is ContainerState.TERMINATED
