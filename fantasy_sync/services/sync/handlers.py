"""Dispatch table from TaskType to the domain handler that performs the work."""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from fantasy_sync.services.sync.errors import HandlerRegistryError
from fantasy_sync.services.sync.task_types import Outcome, TaskInvocation, TaskType

logger = logging.getLogger(__name__)

Handler = Callable[[TaskInvocation], Awaitable[Optional[Outcome]]]


class HandlerRegistry:
    """
    One handler per task type.

    Handlers are ``async def handler(invocation) -> Outcome | None`` and must be
    idempotent: the queue guarantees at-most-one in-flight task per identity,
    not exactly-once execution.

    Usage:
        registry = HandlerRegistry()

        @registry.register(TaskType.STANDINGS)
        async def sync_standings(invocation):
            ...

        registry.validate()  # at startup
    """

    def __init__(self, handlers: Optional[Mapping[Union[TaskType, str], Handler]] = None):
        self._handlers: Dict[TaskType, Handler] = {}
        for task_type, handler in (handlers or {}).items():
            self.register(task_type, handler)

    def register(self, task_type: Union[TaskType, str], handler: Optional[Handler] = None) -> Any:
        task_type = TaskType.parse(task_type)

        if handler is None:
            def decorator(func: Handler) -> Handler:
                self.register(task_type, func)
                return func
            return decorator

        if not callable(handler):
            raise HandlerRegistryError(
                f"Handler for {task_type.value} is not callable", task_type=task_type.value
            )
        if task_type in self._handlers:
            raise HandlerRegistryError(
                f"Handler for {task_type.value} already registered", task_type=task_type.value
            )
        self._handlers[task_type] = handler
        return handler

    def get(self, task_type: Union[TaskType, str]) -> Handler:
        task_type = TaskType.parse(task_type)
        try:
            return self._handlers[task_type]
        except KeyError:
            raise HandlerRegistryError(
                f"No handler registered for {task_type.value}", task_type=task_type.value
            )

    def missing(self, required: Optional[Iterable[TaskType]] = None) -> List[TaskType]:
        required = list(TaskType) if required is None else [TaskType.parse(t) for t in required]
        return [t for t in required if t not in self._handlers]

    def validate(self, required: Optional[Iterable[TaskType]] = None) -> None:
        """Startup assertion: every task type has a handler."""
        missing = self.missing(required)
        if missing:
            names = ", ".join(t.value for t in missing)
            raise HandlerRegistryError(f"Missing handlers for: {names}", missing=[t.value for t in missing])
        logger.info(f"Handler registry complete: {len(self._handlers)} task types")

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
