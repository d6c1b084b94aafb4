"""Pod set diffing: what changed between two snapshots of a workload's pods."""

from __future__ import annotations

from kuberun.types import ContainerDelta, Diff, PodDelta, PodSnapshot


def diff_pod_sets(previous: PodSnapshot, current: PodSnapshot) -> Diff:
    """Return per-pod container status changes from *previous* to *current*.

    A pod missing from *previous* reports every container as new. Pods that
    disappeared are not reported. Output follows the iteration order of
    *current*, which is discovery order.
    """
    diffs: Diff = []
    for name, pod in current.items():
        old = previous.get(name)
        old_statuses = {c.name: c for c in old.containers} if old is not None else {}
        changed = tuple(
            ContainerDelta(previous=old_statuses.get(status.name), current=status)
            for status in pod.containers
            if old_statuses.get(status.name) != status
        )
        if changed:
            diffs.append(PodDelta(pod=pod, containers=changed))
    return diffs
