"""Wiring: build the queue, handlers, cascade engine, executors and scheduler from a plugin."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from fantasy_sync.core.scheduler import TriggerScheduler, get_scheduler, start_scheduler, stop_scheduler
from fantasy_sync.services.sync.cascade import (
    CASCADES,
    CascadeEngine,
    cascade_graph_problems,
    dual_path_task_types,
    validate_cascade_graph,
)
from fantasy_sync.services.sync.conditions import WindowPolicy
from fantasy_sync.services.sync.executor import ExecutorPool
from fantasy_sync.services.sync.handlers import HandlerRegistry
from fantasy_sync.services.sync.orchestrator import SyncOrchestrator
from fantasy_sync.services.sync.plugins import SyncPlugin, load_plugin
from fantasy_sync.services.sync.task_queue import TaskQueue
from fantasy_sync.services.sync.triggers import (
    DEFAULT_TRIGGERS,
    MANUAL_ONLY_TASK_TYPES,
    triggered_task_types,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    plugin: SyncPlugin
    queue: TaskQueue
    registry: HandlerRegistry
    cascade_engine: CascadeEngine
    scheduler: TriggerScheduler
    executor_pool: ExecutorPool
    orchestrator: SyncOrchestrator
    started: bool = False

    async def start(self, with_scheduler: bool = True, with_executors: bool = True) -> None:
        if with_scheduler:
            active = await start_scheduler(self.scheduler)
            if active is not self.scheduler:
                logger.warning("Another scheduler is already running; this runtime will not schedule triggers")
        if with_executors:
            await self.executor_pool.start()
        self.started = True

    async def stop(self) -> None:
        # Only stop the global scheduler if this runtime registered it
        if get_scheduler() is self.scheduler:
            await stop_scheduler()
        await self.executor_pool.stop()
        self.started = False

    def check(self) -> Dict[str, Any]:
        """Static health of the wiring (used by the CLI --check-cascades)."""
        triggered = triggered_task_types(self.scheduler.triggers.values())
        return {
            "cascade_problems": cascade_graph_problems(
                self.cascade_engine.cascades,
                triggered,
                MANUAL_ONLY_TASK_TYPES,
                self.cascade_engine.collection_resolvers.keys(),
            ),
            "missing_handlers": [t.value for t in self.registry.missing()],
            "dual_path_task_types": [
                t.value for t in dual_path_task_types(self.cascade_engine.cascades, triggered)
            ],
        }


def build_runtime(
    plugin: Optional[SyncPlugin] = None,
    session_factory: Optional[sessionmaker] = None,
    settings: Any = None,
    validate: bool = True,
) -> SyncRuntime:
    """
    Assemble a runtime.

    Args:
        plugin: handlers and round reader; loaded from SYNC_PLUGIN when omitted
        session_factory: queue database sessions; the application engine when omitted
        validate: assert handler exhaustiveness and cascade graph validity

    Raises:
        PluginLoadError, HandlerRegistryError, CascadeGraphError
    """
    if settings is None:
        from fantasy_sync.core.config import settings
    if plugin is None:
        plugin = load_plugin(settings.SYNC_PLUGIN)

    triggers = list(DEFAULT_TRIGGERS if plugin.triggers is None else plugin.triggers)
    registry = plugin.registry()
    queue = TaskQueue.from_settings(session_factory, settings)
    cascade_engine = CascadeEngine(queue, CASCADES, plugin.collection_resolvers)

    if validate:
        registry.validate()
        triggered = triggered_task_types(triggers)
        validate_cascade_graph(
            cascade_engine.cascades,
            triggered,
            MANUAL_ONLY_TASK_TYPES,
            cascade_engine.collection_resolvers.keys(),
        )
        dual = dual_path_task_types(cascade_engine.cascades, triggered)
        if dual:
            logger.info(
                "Task types with both a trigger and a cascade path (dedup absorbs overlaps): "
                + ", ".join(t.value for t in dual)
            )

    scheduler = TriggerScheduler.from_settings(queue, plugin.round_reader, triggers, settings)
    executor_pool = ExecutorPool.from_settings(queue, registry, cascade_engine, settings)
    orchestrator = SyncOrchestrator(
        queue,
        round_reader=plugin.round_reader,
        triggers=triggers,
        cascades=cascade_engine.cascades,
        policy=WindowPolicy.from_settings(settings),
    )
    return SyncRuntime(
        plugin=plugin,
        queue=queue,
        registry=registry,
        cascade_engine=cascade_engine,
        scheduler=scheduler,
        executor_pool=executor_pool,
        orchestrator=orchestrator,
    )
