#!/usr/bin/env python3
"""
Background runner for the fantasy sync orchestrator.

Runs the trigger scheduler and the executor pool as a standalone service
(systemd, supervisor, or directly), and offers one-shot maintenance commands.

Usage:
    python run_scheduler.py                              # Run in foreground
    python run_scheduler.py --status                     # Queue counts
    python run_scheduler.py --trigger standings --subject 20
    python run_scheduler.py --run-trigger live-scores-db # Tick one trigger now
    python run_scheduler.py --list-jobs                  # Triggers and next run times
    python run_scheduler.py --check-cascades             # Validate wiring
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from fantasy_sync.core.config import settings
from fantasy_sync.core.database import init_db
from fantasy_sync.core.logging import configure_logging
from fantasy_sync.services.sync.errors import SyncError
from fantasy_sync.services.sync.orchestrator import SyncOrchestrator
from fantasy_sync.services.sync.runtime import SyncRuntime, build_runtime
from fantasy_sync.services.sync.task_queue import TaskQueue

logger = logging.getLogger(__name__)


class SchedulerRunner:
    """Runner for the trigger scheduler and executors."""

    def __init__(self, runtime: Optional[SyncRuntime] = None):
        self.runtime = runtime
        self.shutdown: Optional[asyncio.Event] = None

    async def start(self):
        """Start the runtime and run until a shutdown signal."""
        logger.info("🚀 Starting scheduler runner...")
        self.shutdown = asyncio.Event()

        if self.runtime is None:
            init_db()
            self.runtime = build_runtime()
        await self.runtime.start(with_scheduler=settings.SCHEDULER_ENABLED)

        logger.info("✅ Scheduler and executors are now running")
        logger.info("Press Ctrl+C to stop")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._set_shutdown)

        await self.shutdown.wait()

        await self.runtime.stop()
        logger.info("✅ Scheduler runner stopped")

    def _set_shutdown(self):
        logger.info("⏹️  Shutdown signal received")
        self.shutdown.set()


def run_status_check() -> bool:
    """Print queue counts."""
    init_db()
    counts = TaskQueue.from_settings().get_task_counts()

    print("=" * 60)
    print("SYNC TASK QUEUE")
    print("=" * 60)
    for state in ("waiting", "delayed", "active", "completed", "failed"):
        print(f"   {state:<10} {counts.get(state, 0)}")
    print("=" * 60)
    return True


def run_manual_enqueue(task_type: str, subject_ref: Optional[str]) -> bool:
    """Enqueue one task with source=manual."""
    init_db()
    orchestrator = SyncOrchestrator(TaskQueue.from_settings())
    result = orchestrator.request_enqueue(task_type, subject_ref=subject_ref, source="manual")

    if not result["success"]:
        error = result["error"]
        print(f"❌ {error['code']}: {error['message']}")
        return False

    task = result["task"]
    if task["created"]:
        print(f"✅ Enqueued {task['dedup_key']} (task {task['task_id']})")
    else:
        print(f"ℹ️  {task['dedup_key']} already {task['status']} (task {task['task_id']})")
    return True


async def run_trigger_now(name: str) -> bool:
    """Tick one trigger: evaluate its gate and enqueue if open."""
    init_db()
    runtime = build_runtime(validate=False)
    try:
        result = await runtime.scheduler.run_trigger_now(name)
    except KeyError:
        print(f"❌ Trigger '{name}' not found")
        return False

    print(f"🔄 Trigger {name}: {result.status}" + (f" ({result.reason})" if result.reason else ""))
    if result.task:
        print(f"   Task: {result.task.dedup_key} ({result.task.task_id})")
    return result.status != "error"


def list_jobs() -> None:
    """List triggers with their schedule and next run time."""
    runtime = build_runtime(validate=False)
    jobs = runtime.scheduler.list_jobs()

    print("=" * 60)
    print("SCHEDULED SYNC TRIGGERS")
    print("=" * 60)
    print()
    print(f"Total triggers: {len(jobs)}")
    print()

    for job in jobs:
        print(f"📋 {job['name']} -> {job['task_type']}")
        print(f"   Gate: {job['gate']}")
        print(f"   Schedule: {job['schedule']}")
        print(f"   Next run: {job['next_run_time'] or 'Pending'}")
        print()

    print("=" * 60)


def check_cascades() -> bool:
    """Validate handler coverage and the cascade graph against the trigger table."""
    runtime = build_runtime(validate=False)
    report = runtime.check()
    print(json.dumps(report, indent=2))
    return not report["cascade_problems"] and not report["missing_handlers"]


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Run the fantasy sync trigger scheduler and executors'
    )

    parser.add_argument(
        '--status',
        action='store_true',
        help='Print task queue counts and exit'
    )

    parser.add_argument(
        '--trigger',
        type=str,
        metavar='TASK_TYPE',
        help='Manually enqueue a task by type'
    )

    parser.add_argument(
        '--subject',
        type=str,
        metavar='REF',
        help='Subject (round/tournament/entry id) for --trigger'
    )

    parser.add_argument(
        '--run-trigger',
        type=str,
        metavar='NAME',
        help='Tick one trigger now (gate evaluated as usual)'
    )

    parser.add_argument(
        '--list-jobs',
        action='store_true',
        help='List all triggers and exit'
    )

    parser.add_argument(
        '--check-cascades',
        action='store_true',
        help='Validate handlers and cascade graph and exit'
    )

    args = parser.parse_args()

    configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    try:
        if args.status:
            return 0 if run_status_check() else 1

        if args.trigger:
            return 0 if run_manual_enqueue(args.trigger, args.subject) else 1

        if args.run_trigger:
            return 0 if asyncio.run(run_trigger_now(args.run_trigger)) else 1

        if args.list_jobs:
            list_jobs()
            return 0

        if args.check_cascades:
            return 0 if check_cascades() else 1
    except SyncError as e:
        print(f"❌ {e.code}: {e.message}")
        return 1

    runner = SchedulerRunner()

    try:
        asyncio.run(runner.start())
    except KeyboardInterrupt:
        logger.info("🛑 Received interrupt, shutting down...")
        return 0
    except SyncError as e:
        logger.error(f"❌ Scheduler error: {e.message}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
