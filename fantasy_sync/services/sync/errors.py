"""Exception taxonomy for the sync orchestration layer.

Every error carries a machine-readable ``code`` so API and CLI callers can be
given a structured payload instead of a raw exception.
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for orchestration errors."""

    code = "sync_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = {k: v for k, v in self.context.items() if v is not None}
        return payload


class ConditionEvaluationError(SyncError):
    """Temporal context is missing or invalid. Treated as "skip"."""

    code = "condition_evaluation_failed"


class QueueError(SyncError):
    """The queue transport (database) is unavailable or rejected an operation."""

    code = "queue_unavailable"


class EnqueueError(QueueError):
    """The queue transport rejected or could not record an enqueue."""

    code = "enqueue_failed"


class HandlerError(SyncError):
    """A domain handler raised or reported a failure outcome."""

    code = "handler_failed"


class CascadeEnqueueError(SyncError):
    """One dependent of a cascade could not be enqueued."""

    code = "cascade_enqueue_failed"


class UnknownTaskTypeError(SyncError):
    code = "unknown_task_type"


class InvalidSourceError(SyncError):
    code = "invalid_source"


class HandlerRegistryError(SyncError):
    """The handler registry is incomplete or inconsistent."""

    code = "handler_registry_invalid"


class CascadeGraphError(SyncError):
    """The declared cascade graph has cycles, dangling edges or unreachable types."""

    code = "cascade_graph_invalid"


class PluginLoadError(SyncError):
    code = "plugin_load_failed"


def error_payload(error: Exception, code: Optional[str] = None) -> Dict[str, Any]:
    """Reduce any exception to the structured error shape used by the API."""
    if isinstance(error, SyncError):
        payload = error.to_dict()
        if code:
            payload["code"] = code
        return payload
    return {"code": code or "internal_error", "message": str(error) or error.__class__.__name__}
