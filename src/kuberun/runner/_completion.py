"""Completion tracking: watch the Job object until it has finished.

The watcher re-evaluates the completion predicate on entry and on every
watch event. "Not complete yet" keeps it watching; a dropped watch channel
is retried with backoff forever. Only a watch that cannot be opened at all,
or a job the cluster has marked Failed, ends it with an error.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import aclosing
from enum import StrEnum

from kuberun.cancel import CancelToken
from kuberun.logger import logger
from kuberun.retry import Attempt, Fatal, Retryable, retry_with_interval
from kuberun.runner._gateway import (
    ClusterGateway,
    GatewayError,
    WatchOpenError,
    WatchSubscription,
    watch_events,
)
from kuberun.types import WorkloadHandle, WorkloadStatus


class WorkloadFailedError(Exception):
    """The cluster reports the job as failed (e.g. backoff limit exceeded)."""


def is_complete(status: WorkloadStatus) -> bool:
    """Completion predicate for a Job.

    Without an explicit completion count the job is done when some pod has
    succeeded and nothing is still running. With a count, only the number of
    successes matters.
    """
    if status.completions is None:
        return status.succeeded > 0 and status.active == 0
    return status.succeeded >= status.completions


async def check_completion(gateway: ClusterGateway, handle: WorkloadHandle) -> Attempt:
    """Fetch the job and classify it: None (complete), Retryable or Fatal."""
    try:
        status = await gateway.get_workload(handle)
    except GatewayError as exc:
        return Retryable(str(exc))
    if is_complete(status):
        return None
    if status.failed_reason is not None:
        return Fatal(WorkloadFailedError(f"job {handle.name} failed: {status.failed_reason}"))
    return Retryable(
        f"job {handle.namespace}/{handle.name} not yet complete "
        f"(succeeded: {status.succeeded}, active: {status.active})"
    )


class WatcherState(StrEnum):
    WATCHING = "watching"
    EVALUATING = "evaluating"
    COMPLETE = "complete"
    FATAL = "fatal"


class CompletionWatcher:
    """Blocks in ``run()`` until the job completes, fails, or *cancel* fires."""

    def __init__(
        self,
        gateway: ClusterGateway,
        handle: WorkloadHandle,
        cancel: CancelToken,
        intervals: Iterator[float],
    ) -> None:
        self._gateway = gateway
        self._handle = handle
        self._cancel = cancel
        self._intervals = intervals
        self.state = WatcherState.WATCHING

    async def run(self) -> None:
        """Return once complete.

        Raises WatchOpenError / WorkloadFailedError on fatal conditions and
        OperationCancelled when the token fires.
        """
        await retry_with_interval(
            self._attempt,
            self._intervals,
            self._cancel,
            operation=f"wait for job {self._handle.name}",
        )

    async def _attempt(self) -> Attempt:
        self.state = WatcherState.WATCHING
        try:
            watch = await self._gateway.watch_workload(self._handle)
        except WatchOpenError as exc:
            self.state = WatcherState.FATAL
            return Fatal(exc)
        try:
            return await self._watch(watch)
        finally:
            await watch.close()

    async def _watch(self, watch: WatchSubscription) -> Attempt:
        result = await self._evaluate()
        if not isinstance(result, Retryable):
            return result
        async with aclosing(watch_events(watch, self._cancel)) as events:
            async for _event in events:
                result = await self._evaluate()
                if not isinstance(result, Retryable):
                    return result
        if self._cancel.cancelled:
            return Retryable("cancelled")
        logger.warning("Job watch channel closed, re-opening", job=self._handle.name)
        return Retryable("job watch channel closed")

    async def _evaluate(self) -> Attempt:
        self.state = WatcherState.EVALUATING
        result = await check_completion(self._gateway, self._handle)
        match result:
            case None:
                self.state = WatcherState.COMPLETE
            case Fatal():
                self.state = WatcherState.FATAL
            case Retryable(reason=reason):
                logger.debug("Job not complete", job=self._handle.name, reason=reason)
                self.state = WatcherState.WATCHING
        return result
