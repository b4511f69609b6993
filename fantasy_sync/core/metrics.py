"""
Prometheus metrics for the sync orchestrator.

Metrics exposed:
- Task enqueue counters (created vs deduplicated) and enqueue failures
- Task execution counters and duration histogram
- Cascade enqueue counters
- Trigger tick outcome counters
- Queue depth and scheduler status gauges
"""
from typing import Dict

from prometheus_client import Counter, Gauge, Histogram

# Queue Metrics
tasks_enqueued_total = Counter(
    "sync_tasks_enqueued_total",
    "Tasks inserted into the queue",
    ["task_type", "source"]
)

tasks_deduplicated_total = Counter(
    "sync_tasks_deduplicated_total",
    "Enqueue requests absorbed by an in-flight task with the same dedup key",
    ["task_type", "source"]
)

enqueue_failures_total = Counter(
    "sync_enqueue_failures_total",
    "Enqueue requests that failed at the queue transport",
    ["task_type"]
)

queue_depth = Gauge(
    "sync_queue_depth",
    "Number of tasks per queue state",
    ["state"]
)

# Execution Metrics
task_executions_total = Counter(
    "sync_task_executions_total",
    "Executed task attempts by outcome",
    ["task_type", "status"]
)

task_duration_seconds = Histogram(
    "sync_task_duration_seconds",
    "Handler execution time in seconds",
    ["task_type"],
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600)
)

tasks_stalled_total = Counter(
    "sync_tasks_stalled_total",
    "Active tasks promoted to retry by stall detection",
    ["task_type"]
)

# Cascade Metrics
cascade_enqueues_total = Counter(
    "sync_cascade_enqueues_total",
    "Dependent enqueues requested by the cascade engine",
    ["root_task_type", "result"]
)

# Scheduler Metrics
trigger_ticks_total = Counter(
    "sync_trigger_ticks_total",
    "Trigger ticks by result",
    ["trigger", "result"]
)

scheduler_running = Gauge(
    "sync_scheduler_running",
    "Whether the trigger scheduler is running (1=running, 0=stopped)"
)

scheduler_jobs_total = Gauge(
    "sync_scheduler_jobs_total",
    "Total number of registered triggers"
)


def update_queue_metrics(counts: Dict[str, int]) -> None:
    """Publish the result of TaskQueue.get_task_counts()."""
    for state, value in counts.items():
        queue_depth.labels(state=state).set(value)


def update_scheduler_metrics() -> None:
    """Update scheduler status from the global trigger scheduler."""
    from fantasy_sync.core.scheduler import get_scheduler

    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        scheduler_running.set(1)
        scheduler_jobs_total.set(len(scheduler.triggers))
    else:
        scheduler_running.set(0)
        scheduler_jobs_total.set(0)
