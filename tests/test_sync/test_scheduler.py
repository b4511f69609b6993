"""Tests for the trigger scheduler.

Each test follows the pattern:
- Given: a trigger, a moment and the round state
- When: the trigger ticks
- Then: the task is enqueued, deduplicated or skipped, and nothing raises
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import FakeRoundReader, MATCHDAY

from fantasy_sync.core import scheduler as scheduler_module
from fantasy_sync.core.scheduler import TriggerScheduler
from fantasy_sync.services.sync.errors import EnqueueError
from fantasy_sync.services.sync.task_queue import TaskQueue
from fantasy_sync.services.sync.task_types import TaskSource, TaskType
from fantasy_sync.services.sync.triggers import (
    DEFAULT_TRIGGERS,
    SubjectScope,
    TriggerDefinition,
    triggers_by_name,
)

UTC = timezone.utc
TRIGGERS = triggers_by_name(DEFAULT_TRIGGERS)


class TestRunTrigger:

    # Gate evaluation
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_match_trigger_enqueues_current_round(self, queue: TaskQueue, round_reader: FakeRoundReader):
        """
        Given: 13:00 on matchday, first fixture kicked off at 12:30
        When: the live-scores-db trigger ticks
        Then: a cron task for round 15 is enqueued
        """
        scheduler = TriggerScheduler(queue, round_reader)

        result = await scheduler.run_trigger(TRIGGERS["live-scores-db"], now=MATCHDAY.replace(hour=13))

        assert result.status == "enqueued"
        assert result.task.dedup_key == "live-scores-db:15"
        assert result.task.source is TaskSource.CRON
        assert result.task.subject_ref == "15"

    @pytest.mark.asyncio
    async def test_repeated_tick_is_deduplicated(self, queue: TaskQueue, round_reader: FakeRoundReader):
        scheduler = TriggerScheduler(queue, round_reader)
        now = MATCHDAY.replace(hour=13)

        first = await scheduler.run_trigger(TRIGGERS["live-scores-db"], now=now)
        second = await scheduler.run_trigger(TRIGGERS["live-scores-db"], now=now)

        assert first.status == "enqueued"
        assert second.status == "deduplicated"
        assert second.task.task_id == first.task.task_id
        assert len(queue.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_closed_window_skips_quietly(self, queue: TaskQueue, round_reader: FakeRoundReader):
        scheduler = TriggerScheduler(queue, round_reader)

        result = await scheduler.run_trigger(TRIGGERS["round-picks-selection"], now=MATCHDAY.replace(hour=13))

        assert result.status == "skipped"
        assert result.reason == "selection window closed"
        assert queue.list_tasks() == []

    @pytest.mark.asyncio
    async def test_season_trigger_skips_off_season(self, queue: TaskQueue, round_reader: FakeRoundReader):
        scheduler = TriggerScheduler(queue, round_reader)

        result = await scheduler.run_trigger(TRIGGERS["teams-sync-daily"], now=datetime(2025, 7, 10, 6, 40, tzinfo=UTC))

        assert result.status == "skipped"
        assert round_reader.round_calls == 0

    @pytest.mark.asyncio
    async def test_season_trigger_enqueues_global_task(self, queue: TaskQueue, round_reader: FakeRoundReader):
        scheduler = TriggerScheduler(queue, round_reader)

        result = await scheduler.run_trigger(TRIGGERS["events-sync-daily"], now=MATCHDAY.replace(hour=6, minute=35))

        assert result.status == "enqueued"
        assert result.task.dedup_key == "events-sync:global"

    @pytest.mark.asyncio
    async def test_no_current_round_skips(self, queue: TaskQueue):
        scheduler = TriggerScheduler(queue, FakeRoundReader(current_round=None))

        result = await scheduler.run_trigger(TRIGGERS["live-scores-cache"], now=MATCHDAY.replace(hour=13))

        assert result.status == "skipped"
        assert queue.list_tasks() == []

    @pytest.mark.asyncio
    async def test_time_bucket_and_priority_applied(self, queue: TaskQueue, round_reader: FakeRoundReader):
        trigger = TriggerDefinition(
            "hourly-standings", TaskType.STANDINGS, interval_seconds=3600,
            subject=SubjectScope.CURRENT_ROUND, time_bucket="hour", priority=2,
        )
        scheduler = TriggerScheduler(queue, round_reader, triggers=[trigger])

        result = await scheduler.run_trigger(trigger, now=MATCHDAY.replace(hour=13, minute=5))

        assert result.task.dedup_key == "standings:15:20251129T13"
        assert queue.get_task(result.task.task_id)["priority"] == 2

    # Failure containment
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_reader_failure_is_a_skip(self, queue: TaskQueue):
        scheduler = TriggerScheduler(queue, FakeRoundReader(error=ConnectionError("db down")))

        result = await scheduler.run_trigger(TRIGGERS["live-scores-db"], now=MATCHDAY.replace(hour=13))

        assert result.status == "skipped"
        assert result.error["code"] == "condition_evaluation_failed"

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_reported(self, round_reader: FakeRoundReader):
        queue = MagicMock()
        queue.enqueue.side_effect = EnqueueError("database is locked")
        scheduler = TriggerScheduler(queue, round_reader)

        result = await scheduler.run_trigger(TRIGGERS["live-scores-db"], now=MATCHDAY.replace(hour=13))

        assert result.status == "error"
        assert result.error["code"] == "enqueue_failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, round_reader: FakeRoundReader):
        queue = MagicMock()
        queue.enqueue.side_effect = RuntimeError("boom")
        scheduler = TriggerScheduler(queue, round_reader)

        result = await scheduler.run_trigger(TRIGGERS["live-scores-db"], now=MATCHDAY.replace(hour=13))

        assert result.status == "error"
        assert result.error == {"code": "internal_error", "message": "boom"}

    @pytest.mark.asyncio
    async def test_run_trigger_now_unknown_name(self, queue: TaskQueue, round_reader: FakeRoundReader):
        with pytest.raises(KeyError):
            await TriggerScheduler(queue, round_reader).run_trigger_now("nightly-everything")


class TestSchedulerLifecycle:

    def test_trigger_needs_exactly_one_timer(self):
        with pytest.raises(ValueError):
            TriggerDefinition("broken", TaskType.STANDINGS)
        with pytest.raises(ValueError):
            TriggerDefinition("broken", TaskType.STANDINGS, cron={"hour": 12}, interval_seconds=60)

    def test_duplicate_trigger_names_rejected(self):
        with pytest.raises(ValueError):
            triggers_by_name([DEFAULT_TRIGGERS[0], DEFAULT_TRIGGERS[0]])

    def test_list_jobs_before_start(self, queue: TaskQueue, round_reader: FakeRoundReader):
        jobs = TriggerScheduler(queue, round_reader).list_jobs()

        assert len(jobs) == len(DEFAULT_TRIGGERS)
        assert all(job["next_run_time"] for job in jobs)
        standings = next(job for job in jobs if job["name"] == "standings-daily")
        assert standings["gate"] == "post_match"

    @pytest.mark.asyncio
    async def test_start_registers_every_trigger(self, queue: TaskQueue, round_reader: FakeRoundReader):
        scheduler = TriggerScheduler(queue, round_reader)

        await scheduler.start()
        try:
            assert scheduler.running is True
            assert {job.id for job in scheduler.scheduler.get_jobs()} == set(TRIGGERS)
            assert all(job["next_run_time"] for job in scheduler.list_jobs())
        finally:
            await scheduler.stop()

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_global_scheduler(self, queue: TaskQueue, round_reader: FakeRoundReader, monkeypatch):
        monkeypatch.setattr(scheduler_module, "_scheduler", None)
        scheduler = TriggerScheduler(queue, round_reader)

        started = await scheduler_module.start_scheduler(scheduler)
        assert started is scheduler
        assert scheduler_module.get_scheduler() is scheduler

        await scheduler_module.stop_scheduler()
        assert scheduler_module.get_scheduler() is None
        assert scheduler.running is False
