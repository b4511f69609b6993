"""Task vocabulary: the closed set of sync task types, sources, statuses and outcomes."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TaskType(str, Enum):
    """Every kind of sync work the orchestrator knows how to schedule."""

    # Reference data (global, daily)
    EVENTS_SYNC = "events-sync"
    FIXTURES_SYNC = "fixtures-sync"
    TEAMS_SYNC = "teams-sync"
    PLAYERS_SYNC = "players-sync"
    PLAYER_STATS_SYNC = "player-stats-sync"
    PLAYER_VALUES_SYNC = "player-values-sync"
    PHASES_SYNC = "phases-sync"
    TOURNAMENT_INFO = "tournament-info"

    # Match window (subject: round id)
    LIVE_SCORES_CACHE = "live-scores-cache"
    LIVE_SCORES_DB = "live-scores-db"
    LIVE_SUMMARY = "live-summary"
    LIVE_EXPLAIN = "live-explain"
    OVERALL_RESULTS = "overall-results"

    # Selection window (subject: round id, or entry id for per-entry work)
    ROUND_PICKS = "round-picks"
    ENTRY_PICKS = "entry-picks"
    PRE_TRANSFERS = "pre-transfers"

    # Post-match settlement (subject: round id)
    ROUND_RESULTS = "round-results"
    POINTS_RACE = "points-race"
    BATTLE_RACE = "battle-race"
    KNOCKOUT = "knockout"
    POST_TRANSFERS = "post-transfers"
    CUP_RESULTS = "cup-results"
    STANDINGS = "standings"

    @classmethod
    def parse(cls, value: "str | TaskType") -> "TaskType":
        """Resolve a runtime identifier; raises UnknownTaskTypeError."""
        if isinstance(value, TaskType):
            return value
        try:
            return cls(value)
        except ValueError:
            from fantasy_sync.services.sync.errors import UnknownTaskTypeError
            raise UnknownTaskTypeError(f"Unknown task type '{value}'", task_type=value)


TASK_DESCRIPTIONS: Dict[TaskType, str] = {
    TaskType.EVENTS_SYNC: "Sync rounds (events) from the provider",
    TaskType.FIXTURES_SYNC: "Sync fixtures for all rounds",
    TaskType.TEAMS_SYNC: "Sync teams",
    TaskType.PLAYERS_SYNC: "Sync players",
    TaskType.PLAYER_STATS_SYNC: "Sync season player stats",
    TaskType.PLAYER_VALUES_SYNC: "Sync daily player price changes",
    TaskType.PHASES_SYNC: "Sync competition phases",
    TaskType.TOURNAMENT_INFO: "Refresh tournament names and settings",
    TaskType.LIVE_SCORES_CACHE: "Cache-only refresh of live round scores",
    TaskType.LIVE_SCORES_DB: "Persist live round scores (cascade root)",
    TaskType.LIVE_SUMMARY: "Aggregate season totals from live scores",
    TaskType.LIVE_EXPLAIN: "Sync per-player live points breakdown",
    TaskType.OVERALL_RESULTS: "Sync overall round results",
    TaskType.ROUND_PICKS: "Sync tournament picks for the round (fans out per entry)",
    TaskType.ENTRY_PICKS: "Sync one entry's picks for the round",
    TaskType.PRE_TRANSFERS: "Track transfers before the selection deadline",
    TaskType.ROUND_RESULTS: "Settle tournament results for the round (cascade root)",
    TaskType.POINTS_RACE: "Recompute points-race standings",
    TaskType.BATTLE_RACE: "Recompute battle-race standings",
    TaskType.KNOCKOUT: "Advance knockout brackets",
    TaskType.POST_TRANSFERS: "Finalize transfers made for the round",
    TaskType.CUP_RESULTS: "Settle cup results",
    TaskType.STANDINGS: "Sync league table after the matchday",
}


class TaskSource(str, Enum):
    CRON = "cron"
    MANUAL = "manual"
    API = "api"
    CASCADE = "cascade"

    @classmethod
    def parse(cls, value: "str | TaskSource") -> "TaskSource":
        if isinstance(value, TaskSource):
            return value
        try:
            return cls(value)
        except ValueError:
            from fantasy_sync.services.sync.errors import InvalidSourceError
            raise InvalidSourceError(f"Unknown task source '{value}'", source=value)


class TaskStatus(str, Enum):
    """Persisted lifecycle state. Created is transient (inside enqueue)."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    """Result reported by a domain handler."""

    status: str  # success | failure
    error: Optional[str] = None
    duration_ms: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)

    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def succeeded(self) -> bool:
        return self.status == self.SUCCESS

    @classmethod
    def success(cls, **detail: Any) -> "Outcome":
        return cls(status=cls.SUCCESS, detail=detail)

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        """Business-rule no-op; counts as success so retries are not wasted."""
        return cls(status=cls.SUCCESS, detail={"skipped": True, "reason": reason})

    @classmethod
    def failure(cls, error: str, **detail: Any) -> "Outcome":
        return cls(status=cls.FAILURE, error=error, detail=detail)


@dataclass(frozen=True)
class TaskInvocation:
    """What a handler receives when its task runs."""

    task_id: str
    task_type: TaskType
    subject_ref: Optional[str]
    source: TaskSource
    attempt: int
    payload: Dict[str, Any] = field(default_factory=dict)
