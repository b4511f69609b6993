"""Sync API routes for task queue management and manual triggers.

Provides endpoints for:
- Queue counts and task lookups
- Manual task enqueue (source=api)
- Task type, cascade and temporal window descriptions
- Scheduler job listing and manual trigger ticks
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from fantasy_sync.services.sync.errors import QueueError, SyncError
from fantasy_sync.services.sync.orchestrator import SyncOrchestrator
from fantasy_sync.services.sync.runtime import SyncRuntime
from fantasy_sync.services.sync.task_types import TaskStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

# error code -> HTTP status for rejected enqueues
_ENQUEUE_ERROR_STATUS = {
    "unknown_task_type": 404,
    "invalid_source": 400,
    "invalid_options": 400,
    "enqueue_failed": 503,
}


class TriggerRequest(BaseModel):
    subject_ref: Optional[str] = Field(None, description="Round, tournament or entry id")
    delay_seconds: float = Field(0, ge=0)
    priority: Optional[int] = Field(None, description="Lower runs first")


def get_runtime(request: Request) -> SyncRuntime:
    """Dependency to get the application's sync runtime."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Sync runtime not initialized")
    return runtime


def get_orchestrator(runtime: SyncRuntime = Depends(get_runtime)) -> SyncOrchestrator:
    """Dependency to get sync orchestrator instance."""
    return runtime.orchestrator


@router.get("/tasks/counts")
async def get_task_counts(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """Number of tasks per state: waiting, delayed, active, completed, failed."""
    try:
        return orchestrator.get_task_counts()
    except QueueError as e:
        raise HTTPException(status_code=503, detail=e.to_dict())


@router.get("/tasks")
async def list_tasks(
    status: Optional[TaskStatus] = Query(None, description="Filter by state"),
    task_type: Optional[str] = Query(None, description="Filter by task type"),
    subject_ref: Optional[str] = Query(None, description="Filter by subject"),
    limit: int = Query(50, ge=1, le=500),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """Most recently enqueued tasks, newest first."""
    try:
        tasks = orchestrator.list_tasks(
            status=status.value if status else None,
            task_type=task_type,
            subject_ref=subject_ref,
            limit=limit,
        )
    except QueueError as e:
        raise HTTPException(status_code=503, detail=e.to_dict())
    except SyncError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    return {
        'count': len(tasks),
        'tasks': tasks
    }


@router.get("/tasks/{task_id}")
async def get_task(
    task_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """One task with its attempt history."""
    try:
        task = orchestrator.get_task(task_id)
    except QueueError as e:
        raise HTTPException(status_code=503, detail=e.to_dict())

    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@router.post("/tasks/{task_type}/trigger")
async def trigger_task(
    task_type: str,
    body: Optional[TriggerRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """
    Manually enqueue a task (source=api).

    Returns the task handle; ``created`` is false when an identical task was
    already waiting or running and absorbed this request.
    """
    body = body or TriggerRequest()
    result = orchestrator.request_enqueue(
        task_type,
        subject_ref=body.subject_ref,
        source="api",
        delay_seconds=body.delay_seconds,
        priority=body.priority,
    )
    if not result["success"]:
        status_code = _ENQUEUE_ERROR_STATUS.get(result["error"]["code"], 500)
        raise HTTPException(status_code=status_code, detail=result["error"])
    return result


@router.get("/task-types")
async def get_task_types(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> List[Dict]:
    return orchestrator.describe_task_types()


@router.get("/cascades")
async def get_cascades(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> List[Dict]:
    return orchestrator.describe_cascades()


@router.get("/conditions")
async def get_conditions(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """Season, selection, match and post-match window flags right now."""
    return await orchestrator.get_condition_snapshot()


@router.get("/scheduler/jobs")
async def get_scheduler_jobs(runtime: SyncRuntime = Depends(get_runtime)) -> Dict:
    """Registered triggers and their next run times."""
    return {
        'running': runtime.scheduler.running,
        'jobs': runtime.scheduler.list_jobs()
    }


@router.post("/scheduler/triggers/{name}/run")
async def run_trigger(name: str, runtime: SyncRuntime = Depends(get_runtime)) -> Dict:
    """Tick one trigger now: evaluate its gate and enqueue if open."""
    try:
        result = await runtime.scheduler.run_trigger_now(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Trigger '{name}' not found")
    return result.to_dict()
