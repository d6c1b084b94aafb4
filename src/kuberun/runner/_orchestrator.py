"""Main entry point: submit a Job, stream its logs, wait for completion.

Two tiers of cancellation:
  caller token        abort everything now, skip any drain, return CANCELLED
  job-finished token  child of the caller token, fired when the completion
                      watcher exits; the log loop stops taking pod events and
                      waits for in-flight streams to reach end-of-stream

The completion watcher runs as a background task. The foreground loop
reconciles pods on entry and on every pod watch event, resubscribing with
backoff whenever the watch channel drops.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterator
from contextlib import aclosing

from kuberun.cancel import CancelToken, OperationCancelled
from kuberun.config import Settings
from kuberun.logger import logger
from kuberun.retry import Attempt, Fatal, Retryable, intervals_from_config, retry_with_interval
from kuberun.runner._completion import CompletionWatcher, WorkloadFailedError
from kuberun.runner._gateway import (
    ClusterGateway,
    GatewayError,
    WatchOpenError,
    WatchSubscription,
    watch_events,
)
from kuberun.runner._reconciler import PodReconciler
from kuberun.runner._sink import OutputSink, StreamSink
from kuberun.runner._streams import LogStreamManager, StreamTask, drain_all
from kuberun.types import RunOutcome, WorkloadHandle, WorkloadSpec, WorkloadSpecError

IntervalFactory = Callable[[], Iterator[float]]


class RunOrchestrator:
    """Runs one workload to completion. Not reusable across runs sharing a sink."""

    def __init__(
        self,
        gateway: ClusterGateway,
        settings: Settings,
        sink: OutputSink | None = None,
        intervals: IntervalFactory | None = None,
    ) -> None:
        self._gateway = gateway
        self._settings = settings
        self._sink = sink if sink is not None else StreamSink()
        # Each retry loop gets its own backoff clock
        self._intervals = intervals or (lambda: intervals_from_config(settings.retry))

    async def run(self, spec: WorkloadSpec, cancel: CancelToken | None = None) -> RunOutcome:
        """Run *spec* and return its outcome. The sink is closed on every path."""
        cancel = cancel if cancel is not None else CancelToken("caller")
        start = time.monotonic()
        try:
            outcome = await self._run(spec, cancel)
        finally:
            self._sink.close()
        logger.info(
            "Run finished",
            job=spec.name,
            outcome=outcome.status.value,
            reason=outcome.reason,
            duration_ms=round((time.monotonic() - start) * 1000),
        )
        return outcome

    async def _run(self, spec: WorkloadSpec, cancel: CancelToken) -> RunOutcome:
        try:
            spec.check_and_set_defaults()
        except WorkloadSpecError as exc:
            logger.error("Invalid workload spec", job=spec.name, error=str(exc))
            return RunOutcome.failed(str(exc))
        if cancel.cancelled:
            return RunOutcome.cancelled()

        try:
            handle = await self._gateway.create_workload(spec)
        except GatewayError as exc:
            logger.error("Failed to create job", job=spec.name, error=str(exc))
            return RunOutcome.failed(str(exc))
        logger.info("Created job", job=handle.name, namespace=handle.namespace, uid=handle.uid)

        job_finished = cancel.child("job finished")
        watcher = CompletionWatcher(self._gateway, handle, cancel, self._intervals())
        wait_task = asyncio.ensure_future(self._wait(watcher, handle, job_finished))
        streams = LogStreamManager(
            self._gateway, self._sink, cancel, chunk_size=self._settings.streams.chunk_size
        )
        reconciler = PodReconciler(self._gateway, handle, streams)

        try:
            try:
                await self._stream_logs(handle, reconciler, cancel, job_finished)
            except OperationCancelled:
                pass
            except GatewayError as exc:
                # Report, but the job's own status decides the outcome
                logger.warning("Streaming logs has failed", job=handle.name, error=str(exc))
            return await self._join(wait_task, cancel)
        except asyncio.CancelledError:
            await streams.abort_all()
            raise
        finally:
            if not wait_task.done():
                wait_task.cancel()

    async def _wait(
        self, watcher: CompletionWatcher, handle: WorkloadHandle, job_finished: CancelToken
    ) -> RunOutcome:
        try:
            await watcher.run()
        except OperationCancelled:
            return RunOutcome.cancelled()
        except (WatchOpenError, WorkloadFailedError) as exc:
            logger.error("Job did not complete", job=handle.name, error=str(exc))
            return RunOutcome.failed(str(exc))
        else:
            logger.info("Job completed", job=handle.name)
            return RunOutcome.success()
        finally:
            job_finished.cancel()

    async def _join(self, wait_task: asyncio.Future[RunOutcome], cancel: CancelToken) -> RunOutcome:
        """Whichever comes first: the watcher's result or caller cancellation."""
        if not wait_task.done():
            stop = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({wait_task, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()
        if wait_task.done():
            return wait_task.result()
        return RunOutcome.cancelled()

    async def _stream_logs(
        self,
        handle: WorkloadHandle,
        reconciler: PodReconciler,
        cancel: CancelToken,
        job_finished: CancelToken,
    ) -> None:
        tasks: list[StreamTask] = []

        async def attempt() -> Attempt:
            nonlocal tasks
            try:
                watch = await self._gateway.watch_pods(handle.namespace, handle.pod_selector())
            except WatchOpenError as exc:
                return Fatal(exc)
            try:
                tasks, result = await self._monitor_pods(
                    handle, watch, reconciler, tasks, cancel, job_finished
                )
                return result
            finally:
                await watch.close()

        # Backoff sleeps on job_finished so a job completing between
        # resubscribes goes straight to the drain.
        try:
            await retry_with_interval(
                attempt,
                self._intervals(),
                job_finished,
                operation=f"stream logs for {handle.name}",
            )
        except OperationCancelled:
            if cancel.cancelled:
                raise
            await self._drain(handle, tasks, cancel)

    async def _monitor_pods(
        self,
        handle: WorkloadHandle,
        watch: WatchSubscription,
        reconciler: PodReconciler,
        tasks: list[StreamTask],
        cancel: CancelToken,
        job_finished: CancelToken,
    ) -> tuple[list[StreamTask], Attempt]:
        tasks, status = await reconciler.reconcile(tasks)
        if status is not None:
            async with aclosing(watch_events(watch, job_finished)) as events:
                async for _event in events:
                    tasks, status = await reconciler.reconcile(tasks)
                    if status is None:
                        break
                    if isinstance(status, Fatal):
                        logger.warning(
                            "Job has failed", job=handle.name, error=str(status.error)
                        )
                else:
                    if not job_finished.cancelled:
                        logger.warning("Pod watch channel closed, resubscribing", job=handle.name)
                        return tasks, Retryable("pod watch channel closed")

        await self._drain(handle, tasks, cancel)
        return tasks, None

    async def _drain(
        self, handle: WorkloadHandle, tasks: list[StreamTask], cancel: CancelToken
    ) -> None:
        if cancel.cancelled:
            return
        pending = sum(1 for t in tasks if not t.done)
        if pending:
            logger.info("Waiting for log streams to finish", job=handle.name, streams=pending)
        if not await drain_all(tasks, cancel):
            logger.info("Cancelled while draining log streams", job=handle.name)
