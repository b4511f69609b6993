"""Loading a minimal ConditionContext from the round/fixture read API."""
import logging
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from fantasy_sync.services.sync.conditions import (
    UTC,
    ConditionContext,
    FixtureInfo,
    Gate,
    RoundInfo,
)
from fantasy_sync.services.sync.errors import ConditionEvaluationError

logger = logging.getLogger(__name__)


@runtime_checkable
class RoundReader(Protocol):
    """Read side of the repository layer, provided by the sync plugin."""

    async def get_current_round(self) -> Optional[RoundInfo]:
        ...

    async def get_fixtures_for_round(self, round_id: int) -> List[FixtureInfo]:
        ...


def utcnow() -> datetime:
    return datetime.now(UTC)


async def load_condition_context(
    reader: RoundReader,
    gate: Gate = Gate.ALWAYS,
    now: Optional[datetime] = None,
    with_round: bool = False,
) -> ConditionContext:
    """
    Build the context a gate needs and nothing more.

    Season-only gates never hit the round reader unless ``with_round`` asks
    for the current round (e.g. to use it as the task subject). Round gates
    load the current round and, when there is one, its fixtures.

    Raises:
        ConditionEvaluationError: the reader failed or returned malformed data
    """
    now = now or utcnow()
    if not (gate.needs_round or with_round):
        return ConditionContext(now=now)

    try:
        current_round = await reader.get_current_round()
    except Exception as e:
        raise ConditionEvaluationError(f"Could not load current round: {e}") from e

    if current_round is None:
        return ConditionContext(now=now)
    if not isinstance(current_round, RoundInfo):
        raise ConditionEvaluationError(
            f"Round reader returned {type(current_round).__name__}, expected RoundInfo"
        )

    fixtures: List[FixtureInfo] = []
    if gate.needs_fixtures:
        try:
            fixtures = list(await reader.get_fixtures_for_round(current_round.id) or [])
        except Exception as e:
            raise ConditionEvaluationError(
                f"Could not load fixtures for round {current_round.id}: {e}",
                round_id=current_round.id,
            ) from e

    return ConditionContext(now=now, current_round=current_round, fixtures=tuple(fixtures))
