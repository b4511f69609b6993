"""Tests for the cascade engine and cascade graph validation."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from fantasy_sync.services.sync.cascade import (
    CASCADES,
    CascadeDefinition,
    CascadeEdge,
    CascadeEngine,
    CascadeRoot,
    CascadeShape,
    cascade_graph_problems,
    dual_path_task_types,
    validate_cascade_graph,
)
from fantasy_sync.services.sync.errors import CascadeGraphError, EnqueueError
from fantasy_sync.services.sync.task_queue import TaskQueue
from fantasy_sync.services.sync.task_types import TaskSource, TaskType
from fantasy_sync.services.sync.triggers import DEFAULT_TRIGGERS, triggered_task_types

ROUND_RESULTS_DEPENDENTS = {
    TaskType.POINTS_RACE,
    TaskType.BATTLE_RACE,
    TaskType.KNOCKOUT,
    TaskType.POST_TRANSFERS,
    TaskType.CUP_RESULTS,
}


def root(task_type: TaskType, subject: str = "20") -> CascadeRoot:
    return CascadeRoot(
        task_id="root-1",
        task_type=task_type,
        subject_ref=subject,
        dedup_key=f"{task_type.value}:{subject}",
    )


class TestCascadeExpansion:

    # expand() Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_round_results_fans_out_to_five_dependents(self, queue: TaskQueue):
        """
        Given: round-results for round 20 completed
        When: the cascade expands
        Then: exactly the 5 declared dependents, subject 20, distinct dedup keys
        """
        engine = CascadeEngine(queue)

        result = await engine.expand(root(TaskType.ROUND_RESULTS))

        assert {h.task_type for h in result.enqueued} == ROUND_RESULTS_DEPENDENTS
        assert len(result.enqueued) == 5
        assert {h.subject_ref for h in result.enqueued} == {"20"}
        assert len({h.dedup_key for h in result.enqueued}) == 5
        assert {h.source for h in result.enqueued} == {TaskSource.CASCADE}
        assert result.failed == []

    @pytest.mark.asyncio
    async def test_repeated_expansion_is_absorbed_by_dedup(self, queue: TaskQueue):
        engine = CascadeEngine(queue)
        await engine.expand(root(TaskType.ROUND_RESULTS))

        again = await engine.expand(root(TaskType.ROUND_RESULTS))

        assert again.enqueued == []
        assert len(again.deduplicated) == 5
        assert len(queue.list_tasks()) == 5

    @pytest.mark.asyncio
    async def test_dependents_carry_parent_in_payload(self, queue: TaskQueue):
        engine = CascadeEngine(queue)
        result = await engine.expand(root(TaskType.LIVE_SCORES_DB, "15"))

        task = queue.get_task(result.enqueued[0].task_id)
        assert task["payload"]["parent_task_id"] == "root-1"
        assert task["payload"]["parent_dedup_key"] == "live-scores-db:15"

    @pytest.mark.asyncio
    async def test_no_cascade_for_leaf_types(self, queue: TaskQueue):
        assert await CascadeEngine(queue).expand(root(TaskType.STANDINGS)) is None

    @pytest.mark.asyncio
    async def test_single_follow_on(self, queue: TaskQueue):
        result = await CascadeEngine(queue).expand(
            CascadeRoot("root-2", TaskType.EVENTS_SYNC, None, "events-sync:global")
        )
        assert [h.dedup_key for h in result.enqueued] == ["fixtures-sync:global"]

    @pytest.mark.asyncio
    async def test_per_collection_fan_out(self, queue: TaskQueue):
        resolver = AsyncMock(return_value=[101, 102, 103])
        engine = CascadeEngine(queue, collection_resolvers={"round_entries": resolver})

        result = await engine.expand(root(TaskType.ROUND_PICKS, "15"))

        resolver.assert_awaited_once_with("15")
        assert [h.dedup_key for h in result.enqueued] == [
            "entry-picks:15:101",
            "entry-picks:15:102",
            "entry-picks:15:103",
        ]
        assert [h.subject_ref for h in result.enqueued] == ["101", "102", "103"]
        task = queue.get_task(result.enqueued[0].task_id)
        assert task["payload"]["round_id"] == "15"

    @pytest.mark.asyncio
    async def test_missing_resolver_is_recorded_not_raised(self, queue: TaskQueue):
        result = await CascadeEngine(queue).expand(root(TaskType.ROUND_PICKS, "15"))
        assert result.enqueued == []
        assert result.failed[0].code == "cascade_enqueue_failed"

    @pytest.mark.asyncio
    async def test_resolver_failure_is_recorded_not_raised(self, queue: TaskQueue):
        resolver = AsyncMock(side_effect=TimeoutError("entries endpoint timed out"))
        engine = CascadeEngine(queue, collection_resolvers={"round_entries": resolver})

        result = await engine.expand(root(TaskType.ROUND_PICKS, "15"))

        assert len(result.failed) == 1
        assert "timed out" in result.failed[0].message

    @pytest.mark.asyncio
    async def test_one_failing_dependent_does_not_block_siblings(self, queue: TaskQueue):
        real_enqueue = queue.enqueue

        def flaky_enqueue(task_type, *args, **kwargs):
            if task_type is TaskType.KNOCKOUT:
                raise EnqueueError("database is locked")
            return real_enqueue(task_type, *args, **kwargs)

        queue.enqueue = MagicMock(side_effect=flaky_enqueue)
        result = await CascadeEngine(queue).expand(root(TaskType.ROUND_RESULTS))

        assert {h.task_type for h in result.enqueued} == ROUND_RESULTS_DEPENDENTS - {TaskType.KNOCKOUT}
        assert len(result.failed) == 1
        assert result.failed[0].context["dependent"] == "knockout"


class TestCascadeGraph:

    def test_default_graph_is_valid(self):
        triggered = triggered_task_types(DEFAULT_TRIGGERS)
        assert cascade_graph_problems(CASCADES, triggered, resolver_names=["round_entries"]) == []

    def test_fixtures_sync_is_the_dual_path_type(self):
        triggered = triggered_task_types(DEFAULT_TRIGGERS)
        assert dual_path_task_types(CASCADES, triggered) == [TaskType.FIXTURES_SYNC]

    def test_cycle_detected(self):
        cascades = dict(CASCADES)
        cascades[TaskType.POINTS_RACE] = CascadeDefinition(
            CascadeShape.SINGLE, (CascadeEdge(TaskType.ROUND_RESULTS),)
        )
        with pytest.raises(CascadeGraphError, match="cycle"):
            validate_cascade_graph(cascades, triggered_task_types(DEFAULT_TRIGGERS), resolver_names=["round_entries"])

    def test_unreachable_type_detected(self):
        triggers = [t for t in DEFAULT_TRIGGERS if t.task_type is not TaskType.STANDINGS]
        problems = cascade_graph_problems(CASCADES, triggered_task_types(triggers), resolver_names=["round_entries"])
        assert any(p.startswith("standings") for p in problems)

    def test_manual_only_type_is_reachable(self):
        triggers = [t for t in DEFAULT_TRIGGERS if t.task_type is not TaskType.STANDINGS]
        problems = cascade_graph_problems(
            CASCADES, triggered_task_types(triggers), [TaskType.STANDINGS], ["round_entries"]
        )
        assert problems == []

    def test_unknown_resolver_detected(self):
        problems = cascade_graph_problems(CASCADES, triggered_task_types(DEFAULT_TRIGGERS), resolver_names=[])
        assert any("round_entries" in p for p in problems)
