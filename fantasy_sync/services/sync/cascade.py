"""
Cascade engine: declarative follow-on work after a task completes.

The graph is data (``CASCADES``), keyed by the root task type. Three shapes:

- SINGLE: one follow-on task with the root's subject
- PARALLEL: several independent follow-ons with the root's subject
- PER_COLLECTION: one follow-on per member of a collection resolved at
  runtime (e.g. every entry of a round), subject = member id

Expansion runs only after the queue confirms the Completed transition, and
each dependent is enqueued independently: one failure is recorded and logged
without touching its siblings or the root's terminal status.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from fantasy_sync.core import metrics
from fantasy_sync.services.sync.errors import CascadeEnqueueError, CascadeGraphError, EnqueueError
from fantasy_sync.services.sync.task_queue import EnqueueOptions, TaskHandle, TaskQueue
from fantasy_sync.services.sync.task_types import TaskSource, TaskType

logger = logging.getLogger(__name__)

# name -> async (subject_ref) -> member ids
CollectionResolver = Callable[[Optional[str]], Awaitable[Iterable[Any]]]


class CascadeShape(str, Enum):
    SINGLE = "single"
    PARALLEL = "parallel"
    PER_COLLECTION = "per_collection"


@dataclass(frozen=True)
class CascadeEdge:
    """
    One dependent of a cascade root.

    ``key_template`` is formatted with ``task_type``, ``subject`` (the root's
    subject) and, for per-collection edges, ``member``. Without a template the
    standard ``<type>:<subject>`` key is used.
    """
    task_type: TaskType
    key_template: Optional[str] = None
    collection: Optional[str] = None
    owner_payload_key: Optional[str] = None
    priority: Optional[int] = None

    def dedup_key(self, subject: Optional[str], member: Any = None) -> Optional[str]:
        if not self.key_template:
            return None
        return self.key_template.format(
            task_type=self.task_type.value,
            subject=subject if subject is not None else "global",
            member=member,
        )


@dataclass(frozen=True)
class CascadeDefinition:
    shape: CascadeShape
    edges: Tuple[CascadeEdge, ...]

    @property
    def dependent_types(self) -> List[TaskType]:
        return [edge.task_type for edge in self.edges]


CASCADES: Dict[TaskType, CascadeDefinition] = {
    TaskType.ROUND_RESULTS: CascadeDefinition(
        CascadeShape.PARALLEL,
        (
            CascadeEdge(TaskType.POINTS_RACE),
            CascadeEdge(TaskType.BATTLE_RACE),
            CascadeEdge(TaskType.KNOCKOUT),
            CascadeEdge(TaskType.POST_TRANSFERS),
            CascadeEdge(TaskType.CUP_RESULTS),
        ),
    ),
    TaskType.LIVE_SCORES_DB: CascadeDefinition(
        CascadeShape.PARALLEL,
        (
            CascadeEdge(TaskType.LIVE_SUMMARY),
            CascadeEdge(TaskType.LIVE_EXPLAIN),
            CascadeEdge(TaskType.OVERALL_RESULTS),
        ),
    ),
    TaskType.ROUND_PICKS: CascadeDefinition(
        CascadeShape.PER_COLLECTION,
        (
            CascadeEdge(
                TaskType.ENTRY_PICKS,
                key_template="{task_type}:{subject}:{member}",
                collection="round_entries",
                owner_payload_key="round_id",
            ),
        ),
    ),
    TaskType.EVENTS_SYNC: CascadeDefinition(
        CascadeShape.SINGLE,
        (CascadeEdge(TaskType.FIXTURES_SYNC),),
    ),
}


@dataclass(frozen=True)
class CascadeRoot:
    """The completed task a cascade expands from."""
    task_id: str
    task_type: TaskType
    subject_ref: Optional[str]
    dedup_key: str


@dataclass
class CascadeResult:
    root: CascadeRoot
    enqueued: List[TaskHandle] = field(default_factory=list)
    deduplicated: List[TaskHandle] = field(default_factory=list)
    failed: List[CascadeEnqueueError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root_task_id": self.root.task_id,
            "root_task_type": self.root.task_type.value,
            "subject_ref": self.root.subject_ref,
            "enqueued": [h.dedup_key for h in self.enqueued],
            "deduplicated": [h.dedup_key for h in self.deduplicated],
            "failed": [e.to_dict() for e in self.failed],
        }


class CascadeEngine:
    """Expands completed roots into dependent enqueues."""

    def __init__(
        self,
        queue: TaskQueue,
        cascades: Optional[Mapping[TaskType, CascadeDefinition]] = None,
        collection_resolvers: Optional[Mapping[str, CollectionResolver]] = None,
    ):
        self.queue = queue
        self.cascades = dict(CASCADES if cascades is None else cascades)
        self.collection_resolvers = dict(collection_resolvers or {})

    async def expand(self, root: Any) -> Optional[CascadeResult]:
        """
        Enqueue every dependent of a completed root.

        Args:
            root: anything with ``id``/``task_id``, ``task_type``, ``subject_ref``
                and ``dedup_key`` (a ClaimedTask, a TaskHandle or a CascadeRoot)

        Returns:
            CascadeResult, or None if the task type has no cascade
        """
        root = _as_root(root)
        definition = self.cascades.get(root.task_type)
        if definition is None:
            return None

        result = CascadeResult(root=root)
        for edge in definition.edges:
            if definition.shape is CascadeShape.PER_COLLECTION:
                await self._expand_collection(edge, result)
            else:
                self._enqueue_dependent(
                    edge,
                    result,
                    subject_ref=root.subject_ref,
                    dedup_key=edge.dedup_key(root.subject_ref),
                    payload=self._payload(root),
                )

        logger.info(
            f"Cascade from {root.dedup_key}: {len(result.enqueued)} enqueued, "
            f"{len(result.deduplicated)} deduplicated, {len(result.failed)} failed",
            extra={"root_task_id": root.task_id, "shape": definition.shape.value},
        )
        return result

    async def _expand_collection(self, edge: CascadeEdge, result: CascadeResult) -> None:
        root = result.root
        resolver = self.collection_resolvers.get(edge.collection)
        if resolver is None:
            self._record_failure(
                result,
                edge,
                CascadeEnqueueError(
                    f"No collection resolver '{edge.collection}' for {edge.task_type.value}",
                    collection=edge.collection,
                    root_dedup_key=root.dedup_key,
                ),
            )
            return

        try:
            members = list(await resolver(root.subject_ref) or [])
        except Exception as e:
            self._record_failure(
                result,
                edge,
                CascadeEnqueueError(
                    f"Collection '{edge.collection}' could not be resolved for {root.dedup_key}: {e}",
                    collection=edge.collection,
                    root_dedup_key=root.dedup_key,
                ),
            )
            return

        logger.info(
            f"Fanning out {edge.task_type.value} over {len(members)} members of '{edge.collection}'",
            extra={"root_task_id": root.task_id},
        )
        for member in members:
            payload = self._payload(root)
            if edge.owner_payload_key:
                payload[edge.owner_payload_key] = root.subject_ref
            self._enqueue_dependent(
                edge,
                result,
                subject_ref=str(member),
                dedup_key=edge.dedup_key(root.subject_ref, member),
                payload=payload,
            )

    def _enqueue_dependent(
        self,
        edge: CascadeEdge,
        result: CascadeResult,
        subject_ref: Optional[str],
        dedup_key: Optional[str],
        payload: Dict[str, Any],
    ) -> None:
        options = EnqueueOptions(dedup_key=dedup_key, priority=edge.priority, payload=payload)
        try:
            handle = self.queue.enqueue(edge.task_type, subject_ref, TaskSource.CASCADE, options)
        except EnqueueError as e:
            self._record_failure(
                result,
                edge,
                CascadeEnqueueError(
                    f"Cascade enqueue of {edge.task_type.value} failed: {e.message}",
                    dependent=edge.task_type.value,
                    subject_ref=subject_ref,
                    root_dedup_key=result.root.dedup_key,
                ),
            )
            return

        if handle.created:
            result.enqueued.append(handle)
            outcome = "enqueued"
        else:
            result.deduplicated.append(handle)
            outcome = "deduplicated"
        metrics.cascade_enqueues_total.labels(
            root_task_type=result.root.task_type.value, result=outcome
        ).inc()

    @staticmethod
    def _record_failure(result: CascadeResult, edge: CascadeEdge, error: CascadeEnqueueError) -> None:
        logger.error(error.message, extra={"dependent": edge.task_type.value})
        result.failed.append(error)
        metrics.cascade_enqueues_total.labels(
            root_task_type=result.root.task_type.value, result="failed"
        ).inc()

    @staticmethod
    def _payload(root: CascadeRoot) -> Dict[str, Any]:
        return {
            "parent_task_id": root.task_id,
            "parent_task_type": root.task_type.value,
            "parent_dedup_key": root.dedup_key,
        }


def _as_root(task: Any) -> CascadeRoot:
    if isinstance(task, CascadeRoot):
        return task
    task_id = getattr(task, "task_id", None) or getattr(task, "id")
    return CascadeRoot(
        task_id=task_id,
        task_type=TaskType.parse(task.task_type),
        subject_ref=task.subject_ref,
        dedup_key=task.dedup_key,
    )


# =============================================================================
# GRAPH VALIDATION
# =============================================================================

def cascade_graph_problems(
    cascades: Mapping[TaskType, CascadeDefinition],
    triggered_types: Iterable[TaskType],
    manual_only: Iterable[TaskType] = (),
    resolver_names: Optional[Iterable[str]] = None,
) -> List[str]:
    """List everything wrong with a cascade graph (empty when valid)."""
    problems: List[str] = []
    triggered = set(triggered_types)
    manual = set(manual_only)

    for root, definition in cascades.items():
        if not definition.edges:
            problems.append(f"{root.value}: cascade declares no dependents")
        if definition.shape is CascadeShape.SINGLE and len(definition.edges) > 1:
            problems.append(f"{root.value}: single cascade declares {len(definition.edges)} dependents")
        for edge in definition.edges:
            if definition.shape is CascadeShape.PER_COLLECTION:
                if not edge.collection:
                    problems.append(f"{root.value} -> {edge.task_type.value}: per-collection edge without a collection")
                elif resolver_names is not None and edge.collection not in set(resolver_names):
                    problems.append(
                        f"{root.value} -> {edge.task_type.value}: unknown collection resolver '{edge.collection}'"
                    )

    cycle = _find_cycle(cascades)
    if cycle:
        problems.append("cycle: " + " -> ".join(t.value for t in cycle))

    reachable = triggered | _cascade_children(cascades) | manual
    for task_type in TaskType:
        if task_type not in reachable:
            problems.append(f"{task_type.value}: not reachable from any trigger or cascade and not manual-only")

    return problems


def validate_cascade_graph(
    cascades: Mapping[TaskType, CascadeDefinition],
    triggered_types: Iterable[TaskType],
    manual_only: Iterable[TaskType] = (),
    resolver_names: Optional[Iterable[str]] = None,
) -> None:
    """Raise CascadeGraphError when the graph has cycles, dangling edges or orphan types."""
    problems = cascade_graph_problems(cascades, triggered_types, manual_only, resolver_names)
    if problems:
        raise CascadeGraphError(
            f"Invalid cascade graph: {'; '.join(problems)}",
            problems=problems,
        )


def dual_path_task_types(
    cascades: Mapping[TaskType, CascadeDefinition],
    triggered_types: Iterable[TaskType],
) -> List[TaskType]:
    """Task types enqueued both by their own trigger and as a cascade dependent."""
    both = _cascade_children(cascades) & set(triggered_types)
    return sorted(both, key=lambda t: t.value)


def describe_cascades(cascades: Mapping[TaskType, CascadeDefinition]) -> List[Dict[str, Any]]:
    return [
        {
            "root": root.value,
            "shape": definition.shape.value,
            "dependents": [
                {
                    "task_type": edge.task_type.value,
                    "collection": edge.collection,
                    "key_template": edge.key_template,
                }
                for edge in definition.edges
            ],
        }
        for root, definition in cascades.items()
    ]


def _cascade_children(cascades: Mapping[TaskType, CascadeDefinition]) -> Set[TaskType]:
    return {edge.task_type for definition in cascades.values() for edge in definition.edges}


def _find_cycle(cascades: Mapping[TaskType, CascadeDefinition]) -> Optional[List[TaskType]]:
    visiting: Set[TaskType] = set()
    done: Set[TaskType] = set()
    path: List[TaskType] = []

    def visit(node: TaskType) -> Optional[List[TaskType]]:
        if node in done:
            return None
        if node in visiting:
            return path[path.index(node):] + [node]
        visiting.add(node)
        path.append(node)
        definition = cascades.get(node)
        for child in definition.dependent_types if definition else ():
            cycle = visit(child)
            if cycle:
                return cycle
        path.pop()
        visiting.discard(node)
        done.add(node)
        return None

    for root in cascades:
        cycle = visit(root)
        if cycle:
            return cycle
    return None
