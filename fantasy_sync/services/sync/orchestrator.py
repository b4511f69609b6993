"""Sync orchestrator facade for manual enqueues and status queries.

This is the entry point used by the HTTP routes and the CLI:
- Manual / API enqueue with a structured result (never raises)
- Queue counts and task lookups
- Task type, cascade and trigger descriptions
- Current temporal window snapshot
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from fantasy_sync.services.sync.cascade import CASCADES, CascadeDefinition, describe_cascades
from fantasy_sync.services.sync.conditions import DEFAULT_POLICY, Gate, WindowPolicy, window_snapshot
from fantasy_sync.services.sync.context import RoundReader, load_condition_context
from fantasy_sync.services.sync.errors import ConditionEvaluationError, SyncError, error_payload
from fantasy_sync.services.sync.task_queue import EnqueueOptions, TaskQueue
from fantasy_sync.services.sync.task_types import TASK_DESCRIPTIONS, TaskSource, TaskStatus, TaskType
from fantasy_sync.services.sync.triggers import DEFAULT_TRIGGERS, TriggerDefinition

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """
    Coordinates manual sync requests and status reporting.

    All manual enqueues should go through this orchestrator.
    """

    def __init__(
        self,
        queue: TaskQueue,
        round_reader: Optional[RoundReader] = None,
        triggers: Optional[Iterable[TriggerDefinition]] = None,
        cascades: Optional[Mapping[TaskType, CascadeDefinition]] = None,
        policy: WindowPolicy = DEFAULT_POLICY,
    ):
        self.queue = queue
        self.round_reader = round_reader
        self.triggers = list(DEFAULT_TRIGGERS if triggers is None else triggers)
        self.cascades = dict(CASCADES if cascades is None else cascades)
        self.policy = policy

    def request_enqueue(
        self,
        task_type: str,
        subject_ref: Optional[Any] = None,
        source: str = "manual",
        delay_seconds: float = 0,
        priority: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Enqueue a task on request.

        Returns:
            {"success": True, "task": {...}} or
            {"success": False, "error": {"code": ..., "message": ...}}
        """
        try:
            parsed_type = TaskType.parse(task_type)
            parsed_source = TaskSource.parse(source)
            handle = self.queue.enqueue(
                parsed_type,
                subject_ref,
                parsed_source,
                EnqueueOptions(delay_seconds=delay_seconds, priority=priority),
            )
        except SyncError as e:
            logger.warning(f"Manual enqueue of '{task_type}' rejected: {e.message}", extra={"code": e.code})
            return {"success": False, "error": e.to_dict()}
        except ValueError as e:
            return {"success": False, "error": error_payload(e, code="invalid_options")}

        logger.info(
            f"Manual enqueue of {handle.dedup_key}: {'created' if handle.created else 'deduplicated'}",
            extra={"source": parsed_source.value},
        )
        return {"success": True, "task": handle.to_dict()}

    def get_task_counts(self) -> Dict[str, int]:
        return self.queue.get_task_counts()

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self.queue.get_task(task_id)

    def list_tasks(
        self,
        status: Optional[str] = None,
        task_type: Optional[str] = None,
        subject_ref: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        return self.queue.list_tasks(
            status=TaskStatus(status) if status else None,
            task_type=TaskType.parse(task_type) if task_type else None,
            subject_ref=subject_ref,
            limit=limit,
        )

    def describe_task_types(self) -> List[Dict[str, Any]]:
        """Each task type with its description, triggers and cascade role."""
        parents: Dict[TaskType, List[str]] = {}
        for root, definition in self.cascades.items():
            for edge in definition.edges:
                parents.setdefault(edge.task_type, []).append(root.value)

        described = []
        for task_type in TaskType:
            definition = self.cascades.get(task_type)
            described.append({
                "task_type": task_type.value,
                "description": TASK_DESCRIPTIONS.get(task_type, ""),
                "triggers": [t.name for t in self.triggers if t.task_type is task_type],
                "cascade_root": definition is not None,
                "dependents": [t.value for t in definition.dependent_types] if definition else [],
                "cascaded_from": parents.get(task_type, []),
            })
        return described

    def describe_cascades(self) -> List[Dict[str, Any]]:
        return describe_cascades(self.cascades)

    async def get_condition_snapshot(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """All temporal window flags for the current round."""
        if self.round_reader is None:
            return {"error": {"code": "no_round_reader", "message": "No round reader configured"}}
        try:
            context = await load_condition_context(self.round_reader, Gate.MATCH, now=now)
        except ConditionEvaluationError as e:
            logger.warning(f"Condition snapshot unavailable: {e.message}")
            return {"error": e.to_dict()}
        return window_snapshot(context, self.policy)

    def get_sync_status(self) -> Dict[str, Any]:
        """Queue depth plus trigger table summary."""
        from fantasy_sync.core.scheduler import get_scheduler

        scheduler = get_scheduler()
        return {
            "queue": self.get_task_counts(),
            "scheduler_running": bool(scheduler and scheduler.running),
            "triggers": len(self.triggers),
            "cascade_roots": [t.value for t in self.cascades],
        }
