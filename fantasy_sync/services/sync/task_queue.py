"""Durable, deduplicating task queue backed by the relational store.

Identity rules:
- Every task has a dedup key ``<task_type>:<subject|global>[:<time bucket>]``.
- While a task is waiting or active its key is also stored in ``active_key``,
  which carries a UNIQUE index. A second enqueue for the same key is a no-op
  that returns the existing handle; concurrent inserts lose on the index and
  fall back to the same path.
- Terminal tasks (completed / failed) release the key, so the next period's
  work can be enqueued again.

State transitions are compare-and-set UPDATEs guarded on the current status,
so exactly one worker can claim a task and exactly one completion report can
move it to Completed. Reports are also guarded on the claim (worker and
attempt number), so a handler that outlived stall recovery cannot finish or
re-queue the attempt that replaced it.
"""
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fantasy_sync.core import metrics
from fantasy_sync.models.models import SyncTask, SyncTaskAttempt
from fantasy_sync.services.sync.conditions import UTC
from fantasy_sync.services.sync.errors import EnqueueError, QueueError, SyncError
from fantasy_sync.services.sync.task_types import (
    TaskInvocation,
    TaskSource,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger(__name__)

GLOBAL_SUBJECT = "global"
CLAIM_BATCH_SIZE = 10

_BUCKET_FORMATS = {
    "minute": "%Y%m%dT%H%M",
    "hour": "%Y%m%dT%H",
    "day": "%Y%m%d",
}


def build_dedup_key(
    task_type: TaskType,
    subject_ref: Optional[str] = None,
    time_bucket: Optional[str] = None,
) -> str:
    """Deterministic task identity from type, subject and optional time bucket."""
    task_type = TaskType.parse(task_type)
    parts = [task_type.value, GLOBAL_SUBJECT if subject_ref in (None, "") else str(subject_ref)]
    if time_bucket:
        parts.append(time_bucket)
    return ":".join(parts)


def time_bucket_for(now: datetime, granularity: Optional[str]) -> Optional[str]:
    """
    Bucket label for ``now`` at the given granularity (minute, hour, day).

    Examples:
        >>> time_bucket_for(datetime(2025, 9, 13, 14, 7), "hour")
        '20250913T14'
        >>> time_bucket_for(datetime(2025, 9, 13, 14, 7), None) is None
        True
    """
    if granularity is None:
        return None
    try:
        fmt = _BUCKET_FORMATS[granularity]
    except KeyError:
        raise ValueError(f"Unknown time bucket granularity '{granularity}'")
    if now.tzinfo is not None:
        now = now.astimezone(UTC)
    return now.strftime(fmt)


def compute_backoff(base_seconds: int, attempts_made: int) -> int:
    """Exponential backoff: base after the first failure, doubling afterwards."""
    return int(base_seconds * (2 ** max(attempts_made - 1, 0)))


@dataclass
class EnqueueOptions:
    delay_seconds: float = 0
    priority: Optional[int] = None
    attempts: Optional[int] = None
    backoff_seconds: Optional[int] = None
    time_bucket: Optional[str] = None
    dedup_key: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def validate(self) -> None:
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.backoff_seconds is not None and self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")


@dataclass
class EnqueueRequest:
    task_type: TaskType
    subject_ref: Optional[str] = None
    source: TaskSource = TaskSource.CRON
    options: EnqueueOptions = field(default_factory=EnqueueOptions)


@dataclass(frozen=True)
class TaskHandle:
    """Reference to a queued task returned by every enqueue."""
    task_id: str
    task_type: TaskType
    subject_ref: Optional[str]
    dedup_key: str
    status: TaskStatus
    source: TaskSource
    available_at: datetime
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_type": self.task_type.value,
            "subject_ref": self.subject_ref,
            "dedup_key": self.dedup_key,
            "status": self.status.value,
            "source": self.source.value,
            "available_at": self.available_at.isoformat(),
            "created": self.created,
        }


@dataclass
class BulkEnqueueResult:
    handles: List[TaskHandle] = field(default_factory=list)
    errors: List[Tuple[EnqueueRequest, Exception]] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for h in self.handles if h.created)

    @property
    def deduplicated(self) -> int:
        return sum(1 for h in self.handles if not h.created)

    @property
    def failed(self) -> int:
        return len(self.errors)


@dataclass(frozen=True)
class ClaimedTask:
    """A task exclusively held by one worker for one attempt."""
    id: str
    task_type: TaskType
    subject_ref: Optional[str]
    source: TaskSource
    dedup_key: str
    attempt: int
    max_attempts: int
    payload: Dict[str, Any]
    worker_id: str

    def invocation(self) -> TaskInvocation:
        return TaskInvocation(
            task_id=self.id,
            task_type=self.task_type,
            subject_ref=self.subject_ref,
            source=self.source,
            attempt=self.attempt,
            payload=dict(self.payload),
        )


@dataclass(frozen=True)
class FailureReport:
    status: TaskStatus  # WAITING (will retry) or FAILED (terminal)
    attempts_made: int
    max_attempts: int
    retry_at: Optional[datetime] = None

    @property
    def will_retry(self) -> bool:
        return self.status is TaskStatus.WAITING


class TaskQueue:
    """
    Queue adapter over the ``sync_tasks`` table.

    Producers (scheduler, cascade engine, manual triggers) call ``enqueue`` /
    ``enqueue_bulk``; executors call ``claim_next``, ``complete`` and ``fail``.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        default_attempts: int = 3,
        backoff_base_seconds: int = 60,
        default_priority: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory
        self.default_attempts = default_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.default_priority = default_priority
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(cls, session_factory: Optional[sessionmaker] = None, settings: Any = None) -> "TaskQueue":
        if settings is None:
            from fantasy_sync.core.config import settings
        if session_factory is None:
            from fantasy_sync.core.database import get_session_factory
            session_factory = get_session_factory()
        return cls(
            session_factory,
            default_attempts=settings.TASK_DEFAULT_ATTEMPTS,
            backoff_base_seconds=settings.TASK_BACKOFF_BASE_SECONDS,
            default_priority=settings.TASK_DEFAULT_PRIORITY,
        )

    def now(self) -> datetime:
        """Current time as naive UTC, the representation stored in the table."""
        now = self._clock()
        if now.tzinfo is not None:
            now = now.astimezone(UTC).replace(tzinfo=None)
        return now

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Queue operation '{operation}' failed: {e}")
            raise QueueError(f"Queue operation '{operation}' failed: {e}", operation=operation) from e
        finally:
            session.close()

    # =========================================================================
    # PRODUCERS
    # =========================================================================

    def enqueue(
        self,
        task_type: TaskType,
        subject_ref: Optional[Any] = None,
        source: TaskSource = TaskSource.CRON,
        options: Optional[EnqueueOptions] = None,
    ) -> TaskHandle:
        """
        Enqueue a task unless one with the same identity is already in flight.

        Returns:
            Handle of the new task (``created=True``) or of the in-flight task
            that absorbed this request (``created=False``)

        Raises:
            EnqueueError: the queue transport failed
        """
        task_type = TaskType.parse(task_type)
        source = TaskSource.parse(source)
        options = options or EnqueueOptions()
        options.validate()

        subject = None if subject_ref is None else str(subject_ref)
        dedup_key = options.dedup_key or build_dedup_key(task_type, subject, options.time_bucket)
        now = self.now()

        session = self._session_factory()
        try:
            existing = self._find_in_flight(session, dedup_key)
            if existing is not None:
                return self._deduplicated(existing, source)

            task = SyncTask(
                id=str(uuid.uuid4()),
                task_type=task_type.value,
                subject_ref=subject,
                source=source.value,
                dedup_key=dedup_key,
                active_key=dedup_key,
                status=TaskStatus.WAITING.value,
                priority=self.default_priority if options.priority is None else options.priority,
                attempts_made=0,
                max_attempts=options.attempts or self.default_attempts,
                backoff_seconds=(
                    self.backoff_base_seconds if options.backoff_seconds is None else options.backoff_seconds
                ),
                payload=options.payload or {},
                enqueued_at=now,
                available_at=now + timedelta(seconds=options.delay_seconds),
            )
            session.add(task)
            try:
                session.commit()
            except IntegrityError:
                # Lost the race on the unique active_key to a concurrent enqueue
                session.rollback()
                existing = self._find_in_flight(session, dedup_key)
                if existing is None:
                    raise EnqueueError(
                        f"Could not enqueue {dedup_key}: identity conflict with no in-flight task",
                        task_type=task_type.value,
                        dedup_key=dedup_key,
                    )
                return self._deduplicated(existing, source)

            handle = self._handle(task, created=True)
            metrics.tasks_enqueued_total.labels(task_type=task_type.value, source=source.value).inc()
            logger.info(
                f"Task enqueued: {dedup_key}",
                extra={"task_id": handle.task_id, "source": source.value, "delay_s": options.delay_seconds},
            )
            return handle
        except EnqueueError:
            metrics.enqueue_failures_total.labels(task_type=task_type.value).inc()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            metrics.enqueue_failures_total.labels(task_type=task_type.value).inc()
            raise EnqueueError(
                f"Could not enqueue {dedup_key}: {e}",
                task_type=task_type.value,
                dedup_key=dedup_key,
            ) from e
        finally:
            session.close()

    def enqueue_bulk(self, requests: Iterable[EnqueueRequest]) -> BulkEnqueueResult:
        """
        Fan out many independent tasks.

        Each request gets its own dedup key and its own transaction, so one
        subject's failure never blocks its siblings.
        """
        result = BulkEnqueueResult()
        for request in requests:
            try:
                handle = self.enqueue(
                    request.task_type,
                    request.subject_ref,
                    request.source,
                    request.options,
                )
                result.handles.append(handle)
            except (SyncError, ValueError) as e:
                logger.error(
                    f"Bulk enqueue failed for {request.task_type}: {e}",
                    extra={"subject_ref": request.subject_ref},
                )
                result.errors.append((request, e))

        logger.info(
            f"Bulk enqueue complete: {result.created} created, "
            f"{result.deduplicated} deduplicated, {result.failed} failed"
        )
        return result

    # =========================================================================
    # CONSUMERS
    # =========================================================================

    def claim_next(self, worker_id: str) -> Optional[ClaimedTask]:
        """
        Atomically move the next due waiting task to active.

        Order: priority (lower first), then due time, then enqueue time.

        Raises:
            QueueError: the queue transport failed
        """
        now = self.now()
        with self._session("claim") as session:
            candidates = (
                session.query(SyncTask.id)
                .filter(
                    SyncTask.status == TaskStatus.WAITING.value,
                    SyncTask.available_at <= now,
                )
                .order_by(SyncTask.priority.asc(), SyncTask.available_at.asc(), SyncTask.enqueued_at.asc())
                .limit(CLAIM_BATCH_SIZE)
                .all()
            )

            for (task_id,) in candidates:
                claimed = (
                    session.query(SyncTask)
                    .filter(SyncTask.id == task_id, SyncTask.status == TaskStatus.WAITING.value)
                    .update(
                        {
                            SyncTask.status: TaskStatus.ACTIVE.value,
                            SyncTask.attempts_made: SyncTask.attempts_made + 1,
                            SyncTask.started_at: now,
                            SyncTask.worker_id: worker_id,
                        },
                        synchronize_session=False,
                    )
                )
                if claimed != 1:
                    # Another worker won this one
                    continue

                session.commit()
                task = session.get(SyncTask, task_id)
                return ClaimedTask(
                    id=task.id,
                    task_type=TaskType(task.task_type),
                    subject_ref=task.subject_ref,
                    source=TaskSource(task.source),
                    dedup_key=task.dedup_key,
                    attempt=task.attempts_made,
                    max_attempts=task.max_attempts,
                    payload=dict(task.payload or {}),
                    worker_id=worker_id,
                )

        return None

    def complete(
        self,
        task_id: str,
        duration_ms: int = 0,
        worker_id: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        """
        Record a successful attempt.

        Args:
            worker_id, attempt: the claim being reported. When given, a report
                from an earlier claim (e.g. a handler that outlived stall
                recovery) is ignored instead of completing the current one.

        Returns:
            True if this call moved the task to Completed; False for duplicate
            or stale reports, which must not cascade.
        """
        now = self.now()
        with self._session("complete") as session:
            task = session.get(SyncTask, task_id)
            if task is None:
                logger.warning(f"Completion report for unknown task {task_id} ignored")
                return False

            attempt_number, started_at = task.attempts_made, task.started_at
            worker_id = worker_id if worker_id is not None else task.worker_id
            attempt = attempt if attempt is not None else attempt_number
            updated = (
                session.query(SyncTask)
                .filter(*_active_claim(task_id, worker_id, attempt))
                .update(
                    {
                        SyncTask.status: TaskStatus.COMPLETED.value,
                        SyncTask.active_key: None,
                        SyncTask.finished_at: now,
                        SyncTask.duration_ms: duration_ms,
                        SyncTask.last_error: None,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                session.rollback()
                logger.warning(
                    f"Duplicate or stale completion report ignored for task {task_id}",
                    extra={"status": task.status, "worker_id": worker_id, "attempt": attempt},
                )
                return False

            session.add(SyncTaskAttempt(
                task_id=task_id,
                attempt_number=attempt_number,
                status="success",
                duration_ms=duration_ms,
                worker_id=worker_id,
                started_at=started_at,
                finished_at=now,
            ))
            session.commit()
            return True

    def fail(
        self,
        task_id: str,
        error: str,
        duration_ms: int = 0,
        worker_id: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Optional[FailureReport]:
        """
        Record a failed attempt: schedule a retry with exponential backoff, or
        mark the task terminally failed once attempts are exhausted.

        ``worker_id`` and ``attempt`` identify the claim, as in complete().

        Returns:
            FailureReport, or None if the task was not active or is now held
            by a different claim (stale report)
        """
        now = self.now()
        with self._session("fail") as session:
            task = session.get(SyncTask, task_id)
            if task is None or task.status != TaskStatus.ACTIVE.value:
                logger.warning(f"Failure report for non-active task {task_id} ignored")
                return None

            attempt_number, started_at = task.attempts_made, task.started_at
            worker_id = worker_id if worker_id is not None else task.worker_id
            attempt = attempt if attempt is not None else attempt_number
            if (worker_id, attempt) != (task.worker_id, attempt_number):
                logger.warning(
                    f"Stale failure report for task {task_id} ignored",
                    extra={"worker_id": worker_id, "attempt": attempt},
                )
                return None

            if attempt_number < task.max_attempts:
                retry_at = now + timedelta(seconds=compute_backoff(task.backoff_seconds, attempt_number))
                report = FailureReport(TaskStatus.WAITING, attempt_number, task.max_attempts, retry_at)
                # Keeps active_key: duplicates stay absorbed during backoff
                values = {
                    SyncTask.status: TaskStatus.WAITING.value,
                    SyncTask.available_at: retry_at,
                    SyncTask.started_at: None,
                    SyncTask.worker_id: None,
                    SyncTask.last_error: error,
                    SyncTask.duration_ms: duration_ms,
                }
            else:
                report = FailureReport(TaskStatus.FAILED, attempt_number, task.max_attempts)
                values = {
                    SyncTask.status: TaskStatus.FAILED.value,
                    SyncTask.active_key: None,
                    SyncTask.finished_at: now,
                    SyncTask.last_error: error,
                    SyncTask.duration_ms: duration_ms,
                }

            updated = (
                session.query(SyncTask)
                .filter(*_active_claim(task_id, worker_id, attempt))
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                session.rollback()
                return None

            session.add(SyncTaskAttempt(
                task_id=task_id,
                attempt_number=attempt_number,
                status="failure",
                error=error,
                duration_ms=duration_ms,
                worker_id=worker_id,
                started_at=started_at,
                finished_at=now,
            ))
            session.commit()
            return report

    def recover_stalled(self, stall_timeout_seconds: int) -> int:
        """
        Promote tasks active for longer than the timeout to Failed-Retryable
        (or Failed-Terminal when they were on their last attempt).

        Returns:
            Number of tasks recovered
        """
        cutoff = self.now() - timedelta(seconds=stall_timeout_seconds)
        with self._session("recover_stalled") as session:
            stalled = (
                session.query(
                    SyncTask.id, SyncTask.task_type, SyncTask.started_at,
                    SyncTask.worker_id, SyncTask.attempts_made,
                )
                .filter(SyncTask.status == TaskStatus.ACTIVE.value, SyncTask.started_at < cutoff)
                .all()
            )

        recovered = 0
        for task_id, task_type, started_at, worker_id, attempt in stalled:
            elapsed_ms = int((self.now() - started_at).total_seconds() * 1000)
            report = self.fail(
                task_id,
                f"Stalled: no outcome reported within {stall_timeout_seconds}s",
                elapsed_ms,
                worker_id=worker_id,
                attempt=attempt,
            )
            if report is not None:
                recovered += 1
                metrics.tasks_stalled_total.labels(task_type=task_type).inc()
                logger.warning(
                    f"Recovered stalled task {task_id} ({task_type})",
                    extra={"will_retry": report.will_retry},
                )
        return recovered

    # =========================================================================
    # QUERIES & MAINTENANCE
    # =========================================================================

    def get_task_counts(self) -> Dict[str, int]:
        """Counts per state: waiting (due), delayed (not yet due), active, completed, failed."""
        now = self.now()
        with self._session("counts") as session:
            rows = (
                session.query(SyncTask.status, func.count(SyncTask.id))
                .group_by(SyncTask.status)
                .all()
            )
            delayed = (
                session.query(func.count(SyncTask.id))
                .filter(SyncTask.status == TaskStatus.WAITING.value, SyncTask.available_at > now)
                .scalar()
            ) or 0

        by_status = {status: count for status, count in rows}
        counts = {
            "waiting": by_status.get(TaskStatus.WAITING.value, 0) - delayed,
            "active": by_status.get(TaskStatus.ACTIVE.value, 0),
            "completed": by_status.get(TaskStatus.COMPLETED.value, 0),
            "failed": by_status.get(TaskStatus.FAILED.value, 0),
            "delayed": delayed,
        }
        metrics.update_queue_metrics(counts)
        return counts

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._session("get_task") as session:
            task = session.get(SyncTask, task_id)
            return task_to_dict(task, include_attempts=True) if task else None

    def find_in_flight(self, dedup_key: str) -> Optional[Dict[str, Any]]:
        with self._session("find_in_flight") as session:
            task = self._find_in_flight(session, dedup_key)
            return task_to_dict(task) if task else None

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
        subject_ref: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        with self._session("list_tasks") as session:
            query = session.query(SyncTask)
            if status is not None:
                query = query.filter(SyncTask.status == TaskStatus(status).value)
            if task_type is not None:
                query = query.filter(SyncTask.task_type == TaskType.parse(task_type).value)
            if subject_ref is not None:
                query = query.filter(SyncTask.subject_ref == str(subject_ref))
            tasks = query.order_by(SyncTask.enqueued_at.desc()).limit(limit).all()
            return [task_to_dict(t) for t in tasks]

    def prune_finished(self, keep_completed: int = 100, keep_failed: int = 50) -> int:
        """Delete the oldest terminal tasks beyond the retention counts."""
        removed = 0
        with self._session("prune") as session:
            for status, keep in ((TaskStatus.COMPLETED, keep_completed), (TaskStatus.FAILED, keep_failed)):
                stale_ids = [
                    row[0]
                    for row in session.query(SyncTask.id)
                    .filter(SyncTask.status == status.value)
                    .order_by(SyncTask.finished_at.desc())
                    .offset(keep)
                    .all()
                ]
                if not stale_ids:
                    continue
                session.query(SyncTaskAttempt).filter(
                    SyncTaskAttempt.task_id.in_(stale_ids)
                ).delete(synchronize_session=False)
                removed += session.query(SyncTask).filter(
                    SyncTask.id.in_(stale_ids)
                ).delete(synchronize_session=False)
            session.commit()

        if removed:
            logger.info(f"Pruned {removed} finished tasks")
        return removed

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _find_in_flight(session: Session, dedup_key: str) -> Optional[SyncTask]:
        return session.query(SyncTask).filter(SyncTask.active_key == dedup_key).first()

    def _deduplicated(self, existing: SyncTask, source: TaskSource) -> TaskHandle:
        metrics.tasks_deduplicated_total.labels(task_type=existing.task_type, source=source.value).inc()
        logger.info(
            f"Enqueue deduplicated: {existing.dedup_key} already {existing.status}",
            extra={"task_id": existing.id, "source": source.value},
        )
        return self._handle(existing, created=False)

    @staticmethod
    def _handle(task: SyncTask, created: bool) -> TaskHandle:
        return TaskHandle(
            task_id=task.id,
            task_type=TaskType(task.task_type),
            subject_ref=task.subject_ref,
            dedup_key=task.dedup_key,
            status=TaskStatus(task.status),
            source=TaskSource(task.source),
            available_at=task.available_at,
            created=created,
        )


def _active_claim(task_id: str, worker_id: Optional[str], attempt: int) -> Tuple[Any, ...]:
    # Compare-and-set guard: the task is still held by this exact claim
    return (
        SyncTask.id == task_id,
        SyncTask.status == TaskStatus.ACTIVE.value,
        SyncTask.worker_id == worker_id,
        SyncTask.attempts_made == attempt,
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def task_to_dict(task: SyncTask, include_attempts: bool = False) -> Dict[str, Any]:
    data = {
        "task_id": task.id,
        "task_type": task.task_type,
        "subject_ref": task.subject_ref,
        "source": task.source,
        "dedup_key": task.dedup_key,
        "status": task.status,
        "priority": task.priority,
        "attempts_made": task.attempts_made,
        "max_attempts": task.max_attempts,
        "payload": task.payload or {},
        "enqueued_at": _iso(task.enqueued_at),
        "available_at": _iso(task.available_at),
        "started_at": _iso(task.started_at),
        "finished_at": _iso(task.finished_at),
        "last_error": task.last_error,
        "duration_ms": task.duration_ms,
    }
    if include_attempts:
        data["attempts"] = [
            {
                "attempt_number": a.attempt_number,
                "status": a.status,
                "error": a.error,
                "duration_ms": a.duration_ms,
                "finished_at": _iso(a.finished_at),
            }
            for a in task.attempts
        ]
    return data
