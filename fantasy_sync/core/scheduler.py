"""
Trigger scheduler for the sync orchestrator.

Every trigger in the trigger table becomes one APScheduler job. A tick:
1. loads the minimal condition context its gate needs
2. evaluates the gate (false -> quiet skip)
3. enqueues the task with source=cron

Ticks never do the work themselves and never raise: every outcome is reduced
to a TriggerResult so one bad trigger cannot take the scheduler down.

Scheduler: APScheduler (AsyncIOScheduler, FastAPI-compatible)
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fantasy_sync.core import metrics
from fantasy_sync.services.sync.conditions import WindowPolicy, check_gate
from fantasy_sync.services.sync.context import RoundReader, load_condition_context, utcnow
from fantasy_sync.services.sync.errors import ConditionEvaluationError, EnqueueError, error_payload
from fantasy_sync.services.sync.task_queue import EnqueueOptions, TaskHandle, TaskQueue, time_bucket_for
from fantasy_sync.services.sync.task_types import TaskSource
from fantasy_sync.services.sync.triggers import (
    DEFAULT_TRIGGERS,
    SubjectScope,
    TriggerDefinition,
    triggers_by_name,
)

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    trigger: str
    task_type: str
    status: str  # enqueued | deduplicated | skipped | error
    reason: Optional[str] = None
    task: Optional[TaskHandle] = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "task_type": self.task_type,
            "status": self.status,
            "reason": self.reason,
            "task": self.task.to_dict() if self.task else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


class TriggerScheduler:
    """
    Runs the trigger table on an AsyncIOScheduler.

    Jobs coalesce missed runs and allow one instance per trigger; overlapping
    ticks across processes are still safe because enqueue is dedup-checked.
    """

    def __init__(
        self,
        queue: TaskQueue,
        round_reader: RoundReader,
        triggers: Optional[Iterable[TriggerDefinition]] = None,
        policy: Optional[WindowPolicy] = None,
        timezone: str = "Europe/London",
        misfire_grace_seconds: int = 300,
    ):
        self.queue = queue
        self.round_reader = round_reader
        self.triggers = triggers_by_name(DEFAULT_TRIGGERS if triggers is None else triggers)
        self.timezone = timezone
        self.policy = policy or WindowPolicy(timezone_name=timezone)
        self.misfire_grace_seconds = misfire_grace_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    @classmethod
    def from_settings(
        cls,
        queue: TaskQueue,
        round_reader: RoundReader,
        triggers: Optional[Iterable[TriggerDefinition]] = None,
        settings: Any = None,
    ) -> "TriggerScheduler":
        if settings is None:
            from fantasy_sync.core.config import settings
        return cls(
            queue,
            round_reader,
            triggers=triggers,
            policy=WindowPolicy.from_settings(settings),
            timezone=settings.SCHEDULER_TIMEZONE,
            misfire_grace_seconds=settings.SCHEDULER_MISFIRE_GRACE_SECONDS,
        )

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting trigger scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job
                'misfire_grace_time': self.misfire_grace_seconds
            }
        )

        for definition in self.triggers.values():
            self.scheduler.add_job(
                self._tick,
                trigger=definition.build_trigger(self.timezone),
                args=[definition.name],
                id=definition.name,
                name=definition.description or definition.name,
                replace_existing=True,
            )

        self.scheduler.start()
        self.running = True
        metrics.scheduler_running.set(1)
        metrics.scheduler_jobs_total.set(len(self.triggers))

        logger.info("✅ Scheduler started with %d triggers", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=False)
        self.running = False
        metrics.scheduler_running.set(0)
        logger.info("✅ Scheduler stopped")

    async def _tick(self, name: str) -> None:
        await self.run_trigger(self.triggers[name])

    async def run_trigger(self, trigger: TriggerDefinition, now: Optional[datetime] = None) -> TriggerResult:
        """Evaluate one trigger and enqueue its task if the gate is open."""
        now = now or utcnow()
        start_time = time.perf_counter()
        result = await self._evaluate_and_enqueue(trigger, now)
        result.duration_ms = int((time.perf_counter() - start_time) * 1000)
        metrics.trigger_ticks_total.labels(trigger=trigger.name, result=result.status).inc()
        return result

    async def _evaluate_and_enqueue(self, trigger: TriggerDefinition, now: datetime) -> TriggerResult:
        base = {"trigger": trigger.name, "task_type": trigger.task_type.value}
        try:
            context = await load_condition_context(
                self.round_reader,
                trigger.gate,
                now=now,
                with_round=trigger.subject is SubjectScope.CURRENT_ROUND,
            )
            if not check_gate(trigger.gate, context, self.policy):
                logger.debug(f"Trigger {trigger.name}: {trigger.gate.value} window closed, skipping")
                return TriggerResult(status="skipped", reason=f"{trigger.gate.value} window closed", **base)

            subject = None
            if trigger.subject is SubjectScope.CURRENT_ROUND:
                if context.current_round is None or not context.current_round.is_current:
                    logger.debug(f"Trigger {trigger.name}: no current round, skipping")
                    return TriggerResult(status="skipped", reason="no current round", **base)
                subject = str(context.current_round.id)

            options = EnqueueOptions(
                time_bucket=time_bucket_for(now, trigger.time_bucket),
                priority=trigger.priority,
            )
            handle = self.queue.enqueue(trigger.task_type, subject, TaskSource.CRON, options)
            return TriggerResult(
                status="enqueued" if handle.created else "deduplicated",
                task=handle,
                **base,
            )

        except ConditionEvaluationError as e:
            logger.warning(f"Trigger {trigger.name}: condition evaluation failed, skipping: {e.message}")
            return TriggerResult(status="skipped", reason=e.message, error=e.to_dict(), **base)
        except EnqueueError as e:
            logger.error(f"❌ Trigger {trigger.name} could not enqueue: {e.message}")
            return TriggerResult(status="error", error=e.to_dict(), **base)
        except Exception as e:
            logger.error(f"❌ Trigger {trigger.name} failed: {e}", exc_info=True)
            return TriggerResult(status="error", error=error_payload(e), **base)

    async def run_trigger_now(self, name: str) -> TriggerResult:
        """Manually tick a trigger by name. Raises KeyError for unknown names."""
        if name not in self.triggers:
            raise KeyError(name)
        logger.info(f"Manual tick of trigger {name}")
        return await self.run_trigger(self.triggers[name])

    def list_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for definition in self.triggers.values():
            if self.scheduler and self.running:
                job = self.scheduler.get_job(definition.name)
                next_run = job.next_run_time if job else None
            else:
                now = datetime.now(ZoneInfo(self.timezone))
                next_run = definition.build_trigger(self.timezone).get_next_fire_time(None, now)
            jobs.append({
                **definition.to_dict(),
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return jobs

    def _log_scheduled_jobs(self):
        """Log all scheduled triggers for visibility."""
        logger.info("=" * 60)
        logger.info("SCHEDULED SYNC TRIGGERS")
        logger.info("=" * 60)

        for job in self.list_jobs():
            logger.info(f"  • {job['name']} -> {job['task_type']} [{job['gate']}]")
            logger.info(f"    Schedule: {job['schedule']}")
            logger.info(f"    Next run: {job['next_run_time'] or 'Pending'}")

        logger.info("=" * 60)
        logger.info(f"Total triggers scheduled: {len(self.triggers)}")
        logger.info("=" * 60)


# Global scheduler instance
_scheduler: Optional[TriggerScheduler] = None


async def start_scheduler(scheduler: TriggerScheduler) -> TriggerScheduler:
    """Start a scheduler and register it as the global instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = scheduler
        await _scheduler.start()
    return _scheduler


async def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[TriggerScheduler]:
    """Get the global scheduler instance."""
    return _scheduler
