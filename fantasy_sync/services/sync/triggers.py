"""
Declarative trigger table.

Each trigger is a timer plus a temporal gate. A tick only *enqueues* (with
``source=cron``); the work itself is done by executors. Ticks may overlap or
fire more often than needed: correctness relies on queue dedup, not on the
timer.

Times are in SCHEDULER_TIMEZONE (Europe/London by default).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from fantasy_sync.services.sync.conditions import Gate
from fantasy_sync.services.sync.task_types import TaskType


class SubjectScope(str, Enum):
    """What the enqueued task's subject is."""
    NONE = "none"
    CURRENT_ROUND = "current_round"


@dataclass(frozen=True)
class TriggerDefinition:
    name: str
    task_type: TaskType
    gate: Gate = Gate.SEASON
    cron: Optional[Dict[str, Any]] = None
    interval_seconds: Optional[int] = None
    subject: SubjectScope = SubjectScope.NONE
    time_bucket: Optional[str] = None
    priority: Optional[int] = None
    description: str = ""

    def __post_init__(self):
        if (self.cron is None) == (self.interval_seconds is None):
            raise ValueError(f"Trigger '{self.name}' needs exactly one of cron or interval_seconds")

    def build_trigger(self, timezone: str) -> Union[CronTrigger, IntervalTrigger]:
        if self.cron is not None:
            return CronTrigger(timezone=timezone, **self.cron)
        return IntervalTrigger(seconds=self.interval_seconds, timezone=timezone)

    @property
    def schedule(self) -> str:
        if self.cron is not None:
            return " ".join(f"{k}={v}" for k, v in self.cron.items())
        return f"every {self.interval_seconds}s"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "task_type": self.task_type.value,
            "gate": self.gate.value,
            "schedule": self.schedule,
            "subject": self.subject.value,
            "time_bucket": self.time_bucket,
            "description": self.description,
        }


DEFAULT_TRIGGERS: List[TriggerDefinition] = [
    # Reference data, daily
    TriggerDefinition(
        "events-sync-daily", TaskType.EVENTS_SYNC, cron={"hour": 6, "minute": 35},
        description="Daily rounds sync (cascades to fixtures)",
    ),
    TriggerDefinition(
        "fixtures-sync-daily", TaskType.FIXTURES_SYNC, cron={"hour": 6, "minute": 37},
        description="Daily fixtures sync",
    ),
    TriggerDefinition(
        "teams-sync-daily", TaskType.TEAMS_SYNC, cron={"hour": 6, "minute": 40},
        description="Daily teams sync",
    ),
    TriggerDefinition(
        "players-sync-daily", TaskType.PLAYERS_SYNC, cron={"hour": 6, "minute": 43},
        description="Daily players sync",
    ),
    TriggerDefinition(
        "phases-sync-daily", TaskType.PHASES_SYNC, cron={"hour": 6, "minute": 45},
        description="Daily phases sync",
    ),
    TriggerDefinition(
        "player-values-window", TaskType.PLAYER_VALUES_SYNC, cron={"hour": 9, "minute": "25-35/5"},
        description="Price change window, every 5 minutes 09:25-09:35",
    ),
    TriggerDefinition(
        "player-stats-daily", TaskType.PLAYER_STATS_SYNC, cron={"hour": 9, "minute": 40},
        description="Daily season player stats sync",
    ),
    TriggerDefinition(
        "tournament-info-daily", TaskType.TOURNAMENT_INFO, cron={"hour": 10, "minute": 45},
        description="Daily tournament info refresh",
    ),
    # Selection window
    TriggerDefinition(
        "round-picks-selection", TaskType.ROUND_PICKS, gate=Gate.SELECTION,
        cron={"minute": "*/5"}, subject=SubjectScope.CURRENT_ROUND,
        description="Tournament picks every 5 minutes before the first kickoff",
    ),
    TriggerDefinition(
        "pre-transfers-selection", TaskType.PRE_TRANSFERS, gate=Gate.SELECTION,
        cron={"minute": "*/5"}, subject=SubjectScope.CURRENT_ROUND,
        description="Transfer tracking every 5 minutes before the first kickoff",
    ),
    # Match window
    TriggerDefinition(
        "live-scores-cache", TaskType.LIVE_SCORES_CACHE, gate=Gate.MATCH,
        cron={"minute": "*"}, subject=SubjectScope.CURRENT_ROUND, priority=1,
        description="Live scores cache refresh every minute during matches",
    ),
    TriggerDefinition(
        "live-scores-db", TaskType.LIVE_SCORES_DB, gate=Gate.MATCH,
        cron={"minute": "*/10"}, subject=SubjectScope.CURRENT_ROUND,
        description="Live scores persisted every 10 minutes (cascade root)",
    ),
    # Post-match
    TriggerDefinition(
        "round-results-post-match", TaskType.ROUND_RESULTS, gate=Gate.POST_MATCH,
        cron={"minute": "*/10"}, subject=SubjectScope.CURRENT_ROUND,
        description="Tournament settlement every 10 minutes after the round finishes (cascade root)",
    ),
    TriggerDefinition(
        "standings-daily", TaskType.STANDINGS, gate=Gate.POST_MATCH,
        cron={"hour": 12, "minute": 0}, subject=SubjectScope.CURRENT_ROUND,
        description="League table after the matchday",
    ),
]

# Reachable only through manual/API enqueue
MANUAL_ONLY_TASK_TYPES: frozenset = frozenset()


def triggers_by_name(triggers: Iterable[TriggerDefinition]) -> Dict[str, TriggerDefinition]:
    by_name: Dict[str, TriggerDefinition] = {}
    for trigger in triggers:
        if trigger.name in by_name:
            raise ValueError(f"Duplicate trigger name '{trigger.name}'")
        by_name[trigger.name] = trigger
    return by_name


def triggered_task_types(triggers: Iterable[TriggerDefinition]) -> List[TaskType]:
    return sorted({t.task_type for t in triggers}, key=lambda t: t.value)
