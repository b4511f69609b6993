"""
Temporal conditions that gate scheduled sync work.

All predicates are pure: given the same (now, current round, fixtures) they
return the same answer and never touch the network or the database. The
windows, relative to one round:

    season start ... [selection] ... first kickoff [match ........ last end + buffer]
                                                         ... all finished -> [post-match]

Rules shared by every round predicate:
- No current round (None, or a round flagged not current) means False.
- Fixtures without a kickoff time (postponed, not yet rescheduled) are ignored.
- Naive datetimes are treated as UTC, matching how the store persists them.

Empty fixture list:
- Selection window falls back to a fixed local clock range
  (SELECTION_FALLBACK_START_HOUR <= hour < SELECTION_FALLBACK_END_HOUR in the
  scheduler timezone), still only in season.
- Match and post-match windows are False: there is nothing to poll or settle.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from fantasy_sync.services.sync.errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

UTC = timezone.utc


@dataclass(frozen=True)
class RoundInfo:
    """The provider's current round (gameweek)."""
    id: int
    deadline: Optional[datetime] = None
    is_current: bool = True


@dataclass(frozen=True)
class FixtureInfo:
    kickoff: Optional[datetime]
    finished: bool = False


@dataclass(frozen=True)
class ConditionContext:
    """Minimal temporal snapshot needed to decide whether a trigger should fire."""
    now: datetime
    current_round: Optional[RoundInfo] = None
    fixtures: Sequence[FixtureInfo] = field(default_factory=tuple)

    @property
    def round_id(self) -> Optional[int]:
        return self.current_round.id if self.current_round else None


@dataclass(frozen=True)
class WindowPolicy:
    """Tunable boundaries of the temporal windows."""
    season_start_month: int = 8
    season_end_month: int = 5
    match_duration: timedelta = timedelta(minutes=115)
    match_buffer: timedelta = timedelta(minutes=30)
    fallback_start_hour: int = 9
    fallback_end_hour: int = 19
    timezone_name: str = "Europe/London"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    @classmethod
    def from_settings(cls, settings: Any) -> "WindowPolicy":
        return cls(
            season_start_month=settings.SEASON_START_MONTH,
            season_end_month=settings.SEASON_END_MONTH,
            match_duration=timedelta(minutes=settings.MATCH_DURATION_MINUTES),
            match_buffer=timedelta(minutes=settings.MATCH_WINDOW_BUFFER_MINUTES),
            fallback_start_hour=settings.SELECTION_FALLBACK_START_HOUR,
            fallback_end_hour=settings.SELECTION_FALLBACK_END_HOUR,
            timezone_name=settings.SCHEDULER_TIMEZONE,
        )


DEFAULT_POLICY = WindowPolicy()


class Gate(str, Enum):
    """Which window a trigger requires before it enqueues."""
    ALWAYS = "always"
    SEASON = "season"
    SELECTION = "selection"
    MATCH = "match"
    POST_MATCH = "post_match"

    @property
    def needs_round(self) -> bool:
        return self in (Gate.SELECTION, Gate.MATCH, Gate.POST_MATCH)

    @property
    def needs_fixtures(self) -> bool:
        return self.needs_round


# =============================================================================
# HELPERS
# =============================================================================

def as_utc(value: Any, label: str = "datetime") -> datetime:
    """Normalize to an aware UTC datetime or raise ConditionEvaluationError."""
    if not isinstance(value, datetime):
        raise ConditionEvaluationError(
            f"{label} must be a datetime, got {type(value).__name__}", field=label
        )
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _is_current(current_round: Optional[RoundInfo]) -> bool:
    return current_round is not None and bool(current_round.is_current)


def _scheduled_fixtures(fixtures: Sequence[FixtureInfo]) -> List[tuple]:
    """(kickoff_utc, finished) pairs for fixtures with a kickoff, sorted by kickoff."""
    if fixtures is None:
        return []
    scheduled = []
    for index, fixture in enumerate(fixtures):
        if fixture.kickoff is None:
            continue
        scheduled.append((as_utc(fixture.kickoff, f"fixtures[{index}].kickoff"), bool(fixture.finished)))
    scheduled.sort(key=lambda pair: pair[0])
    return scheduled


# =============================================================================
# PREDICATES
# =============================================================================

def in_season_window(now: datetime, policy: WindowPolicy = DEFAULT_POLICY) -> bool:
    """
    Check whether ``now`` falls inside the competition season.

    The season is a calendar-month range that may span two years
    (default August through May).

    Examples:
        >>> in_season_window(datetime(2025, 1, 15))   # January
        True
        >>> in_season_window(datetime(2025, 7, 1))    # July, off-season
        False
    """
    month = as_utc(now, "now").astimezone(policy.tz).month
    start, end = policy.season_start_month, policy.season_end_month

    if start <= end:
        return start <= month <= end
    # Season spans the calendar year end
    return month >= start or month <= end


def in_selection_window(
    now: datetime,
    current_round: Optional[RoundInfo],
    fixtures: Sequence[FixtureInfo],
    policy: WindowPolicy = DEFAULT_POLICY,
) -> bool:
    """True from season start until the earliest kickoff of the round."""
    if not _is_current(current_round):
        return False

    now_utc = as_utc(now, "now")
    if not in_season_window(now_utc, policy):
        return False

    scheduled = _scheduled_fixtures(fixtures)
    if not scheduled:
        local_hour = now_utc.astimezone(policy.tz).hour
        return policy.fallback_start_hour <= local_hour < policy.fallback_end_hour

    return now_utc < scheduled[0][0]


def is_match_window(
    now: datetime,
    current_round: Optional[RoundInfo],
    fixtures: Sequence[FixtureInfo],
    policy: WindowPolicy = DEFAULT_POLICY,
) -> bool:
    """
    True between the first kickoff and a buffer after the last fixture ends.

    A fixture's end is estimated as kickoff + match duration. Any fixture that
    has kicked off but is not yet finished also keeps the window open, so
    delayed or overrunning matches keep high-frequency polling alive.
    """
    if not _is_current(current_round):
        return False

    scheduled = _scheduled_fixtures(fixtures)
    if not scheduled:
        return False

    now_utc = as_utc(now, "now")
    first_kickoff = scheduled[0][0]
    if now_utc < first_kickoff:
        return False

    window_end = scheduled[-1][0] + policy.match_duration + policy.match_buffer
    if now_utc <= window_end:
        return True

    return any(kickoff <= now_utc and not finished for kickoff, finished in scheduled)


def is_post_match_window(
    now: datetime,
    current_round: Optional[RoundInfo],
    fixtures: Sequence[FixtureInfo],
    policy: WindowPolicy = DEFAULT_POLICY,
) -> bool:
    """True once every scheduled fixture of the round is finished."""
    if not _is_current(current_round):
        return False

    as_utc(now, "now")
    scheduled = _scheduled_fixtures(fixtures)
    if not scheduled:
        return False

    return all(finished for _, finished in scheduled)


# =============================================================================
# GATES
# =============================================================================

def check_gate(gate: Gate, context: ConditionContext, policy: WindowPolicy = DEFAULT_POLICY) -> bool:
    """Evaluate a gate; raises ConditionEvaluationError on invalid context."""
    if gate is Gate.ALWAYS:
        return True
    if gate is Gate.SEASON:
        return in_season_window(context.now, policy)
    if gate is Gate.SELECTION:
        return in_selection_window(context.now, context.current_round, context.fixtures, policy)
    if gate is Gate.MATCH:
        # Live polling is only meaningful in season, unlike settlement
        return in_season_window(context.now, policy) and is_match_window(
            context.now, context.current_round, context.fixtures, policy
        )
    if gate is Gate.POST_MATCH:
        return is_post_match_window(context.now, context.current_round, context.fixtures, policy)
    raise ConditionEvaluationError(f"Unknown gate '{gate}'", gate=str(gate))


def evaluate_gate(gate: Gate, context: ConditionContext, policy: WindowPolicy = DEFAULT_POLICY) -> bool:
    """Evaluate a gate, reducing invalid context to "skip" (False)."""
    try:
        return check_gate(gate, context, policy)
    except ConditionEvaluationError as e:
        logger.warning(
            f"Condition evaluation failed, skipping: {e.message}",
            extra={"gate": gate.value, "round_id": context.round_id},
        )
        return False


def window_snapshot(context: ConditionContext, policy: WindowPolicy = DEFAULT_POLICY) -> Dict[str, Any]:
    """All window flags for one context, for status endpoints and the CLI."""
    snapshot: Dict[str, Any] = {
        "now": as_utc(context.now, "now").isoformat(),
        "round_id": context.round_id,
        "fixture_count": len(context.fixtures or ()),
    }
    for gate in (Gate.SEASON, Gate.SELECTION, Gate.MATCH, Gate.POST_MATCH):
        snapshot[gate.value] = evaluate_gate(gate, context, policy)
    return snapshot
