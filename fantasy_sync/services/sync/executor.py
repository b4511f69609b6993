"""
Executors: claim queued tasks, run their handlers, report outcomes and
trigger cascades on completion.

Per task:
1. claim (exclusive, via the queue's compare-and-set)
2. run the handler with the correlation id set to the task's dedup key
3. success -> complete(); only if that call performed the transition,
   expand the cascade
4. failure -> fail(), which schedules a retry with backoff or marks the task
   terminally failed

No error from a handler, a cascade branch or the queue escapes a worker loop.
"""
import asyncio
import inspect
import logging
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fantasy_sync.core import metrics
from fantasy_sync.core.logging import correlation_scope
from fantasy_sync.services.sync.cascade import CascadeEngine, CascadeResult
from fantasy_sync.services.sync.errors import HandlerError, HandlerRegistryError, QueueError
from fantasy_sync.services.sync.handlers import HandlerRegistry
from fantasy_sync.services.sync.task_queue import ClaimedTask, FailureReport, TaskQueue
from fantasy_sync.services.sync.task_types import Outcome

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """What happened to one claimed attempt."""
    task: ClaimedTask
    outcome: Outcome
    completed: bool = False
    failure: Optional[FailureReport] = None
    cascade: Optional[CascadeResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task.id,
            "task_type": self.task.task_type.value,
            "dedup_key": self.task.dedup_key,
            "attempt": self.task.attempt,
            "status": self.outcome.status,
            "error": self.outcome.error,
            "duration_ms": self.outcome.duration_ms,
            "completed": self.completed,
            "will_retry": self.failure.will_retry if self.failure else False,
            "cascade": self.cascade.to_dict() if self.cascade else None,
        }


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}:{index}"


class TaskExecutor:
    """A single worker: one task at a time."""

    def __init__(
        self,
        queue: TaskQueue,
        registry: HandlerRegistry,
        cascade_engine: CascadeEngine,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.cascade_engine = cascade_engine
        self.worker_id = worker_id or default_worker_id()

    async def process_next(self) -> Optional[ExecutionReport]:
        """
        Claim and execute the next due task.

        Returns:
            ExecutionReport, or None when nothing was due (or the queue was unreachable)
        """
        try:
            task = self.queue.claim_next(self.worker_id)
        except QueueError as e:
            logger.error(f"Worker {self.worker_id} could not claim: {e.message}")
            return None

        if task is None:
            return None
        return await self.execute(task)

    async def execute(self, task: ClaimedTask) -> ExecutionReport:
        with correlation_scope(task.dedup_key):
            logger.info(
                f"Running {task.task_type.value} (attempt {task.attempt}/{task.max_attempts})",
                extra={"task_id": task.id, "subject_ref": task.subject_ref, "source": task.source.value},
            )
            start_time = time.perf_counter()
            outcome = await self._run_handler(task)
            duration_ms = int((time.perf_counter() - start_time) * 1000)
            outcome = Outcome(outcome.status, outcome.error, duration_ms, outcome.detail)

            metrics.task_executions_total.labels(
                task_type=task.task_type.value, status=outcome.status
            ).inc()
            metrics.task_duration_seconds.labels(task_type=task.task_type.value).observe(
                duration_ms / 1000
            )

            report = ExecutionReport(task=task, outcome=outcome)
            if outcome.succeeded:
                await self._report_success(report)
            else:
                self._report_failure(report)
            return report

    async def _run_handler(self, task: ClaimedTask) -> Outcome:
        try:
            handler = self.registry.get(task.task_type)
        except HandlerRegistryError as e:
            logger.error(e.message, extra={"task_id": task.id})
            return Outcome.failure(e.message)

        try:
            result = handler(task.invocation())
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            error = HandlerError(
                f"{task.task_type.value} handler raised {e.__class__.__name__}: {e}",
                task_id=task.id,
                attempt=task.attempt,
            )
            logger.error(error.message, exc_info=True)
            return Outcome.failure(error.message)

        if result is None:
            return Outcome.success()
        if isinstance(result, Outcome):
            if not result.succeeded:
                logger.warning(
                    f"{task.task_type.value} handler reported failure: {result.error}",
                    extra={"task_id": task.id, "attempt": task.attempt},
                )
            return result
        return Outcome.success(result=result)

    async def _report_success(self, report: ExecutionReport) -> None:
        task = report.task
        try:
            report.completed = self.queue.complete(
                task.id, report.outcome.duration_ms, worker_id=task.worker_id, attempt=task.attempt
            )
        except QueueError as e:
            # Task stays active; stall recovery will re-run it
            logger.error(f"Could not record completion of {task.id}: {e.message}")
            return

        if not report.completed:
            return

        skipped = report.outcome.detail.get("skipped")
        logger.info(
            f"✅ {task.task_type.value} completed ({report.outcome.duration_ms}ms)"
            + (f", skipped: {report.outcome.detail.get('reason')}" if skipped else ""),
            extra={"task_id": task.id, "attempt": task.attempt},
        )

        try:
            report.cascade = await self.cascade_engine.expand(task)
        except Exception as e:
            logger.error(f"Cascade expansion from {task.dedup_key} aborted: {e}", exc_info=True)

    def _report_failure(self, report: ExecutionReport) -> None:
        task = report.task
        try:
            report.failure = self.queue.fail(
                task.id,
                report.outcome.error or "unknown error",
                report.outcome.duration_ms,
                worker_id=task.worker_id,
                attempt=task.attempt,
            )
        except QueueError as e:
            logger.error(f"Could not record failure of {task.id}: {e.message}")
            return

        if report.failure is None:
            return
        if report.failure.will_retry:
            logger.warning(
                f"⚠️ {task.task_type.value} failed, retry at {report.failure.retry_at.isoformat()}",
                extra={"task_id": task.id, "attempt": task.attempt, "error": report.outcome.error},
            )
        else:
            logger.error(
                f"❌ {task.task_type.value} failed permanently after {report.failure.attempts_made} attempts",
                extra={"task_id": task.id, "error": report.outcome.error},
            )


class ExecutorPool:
    """
    N independent worker loops over the shared queue plus a maintenance loop
    (stall recovery and pruning of finished tasks).
    """

    def __init__(
        self,
        queue: TaskQueue,
        registry: HandlerRegistry,
        cascade_engine: CascadeEngine,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        stall_timeout_seconds: int = 900,
        maintenance_interval: float = 60.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stall_timeout_seconds = stall_timeout_seconds
        self.maintenance_interval = maintenance_interval
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.executors = [
            TaskExecutor(queue, registry, cascade_engine, worker_id=default_worker_id(i))
            for i in range(concurrency)
        ]
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self.running = False

    @classmethod
    def from_settings(
        cls,
        queue: TaskQueue,
        registry: HandlerRegistry,
        cascade_engine: CascadeEngine,
        settings: Any = None,
    ) -> "ExecutorPool":
        if settings is None:
            from fantasy_sync.core.config import settings
        return cls(
            queue,
            registry,
            cascade_engine,
            concurrency=settings.EXECUTOR_CONCURRENCY,
            poll_interval=settings.EXECUTOR_POLL_INTERVAL_SECONDS,
            stall_timeout_seconds=settings.STALL_TIMEOUT_SECONDS,
            keep_completed=settings.KEEP_COMPLETED_TASKS,
            keep_failed=settings.KEEP_FAILED_TASKS,
        )

    async def start(self) -> None:
        if self.running:
            logger.warning("Executor pool already running")
            return
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker_loop(executor), name=f"executor-{i}")
            for i, executor in enumerate(self.executors)
        ]
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="executor-maintenance"))
        self.running = True
        logger.info(f"✅ Executor pool started with {self.concurrency} workers")

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop claiming new work and wait for in-flight handlers to finish."""
        if not self.running:
            return
        logger.info("Stopping executor pool...")
        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} workers still running after {timeout}s")
        self._tasks = []
        self.running = False
        logger.info("✅ Executor pool stopped")

    async def drain(self, max_tasks: Optional[int] = None) -> List[ExecutionReport]:
        """Run due tasks on the first worker until none are left (CLI and tests)."""
        reports: List[ExecutionReport] = []
        executor = self.executors[0]
        while max_tasks is None or len(reports) < max_tasks:
            report = await executor.process_next()
            if report is None:
                break
            reports.append(report)
        return reports

    async def _worker_loop(self, executor: TaskExecutor) -> None:
        while not self._stopping.is_set():
            try:
                report = await executor.process_next()
            except Exception as e:
                logger.error(f"Worker {executor.worker_id} crashed on a task: {e}", exc_info=True)
                report = None
            if report is None:
                await self._sleep(self.poll_interval)

    async def _maintenance_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.queue.recover_stalled(self.stall_timeout_seconds)
                self.queue.prune_finished(self.keep_completed, self.keep_failed)
                self.queue.get_task_counts()
            except QueueError as e:
                logger.error(f"Queue maintenance failed: {e.message}")
            await self._sleep(self.maintenance_interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
