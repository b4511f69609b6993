"""
External collaborators.

The orchestrator ships no domain logic. A deployment points SYNC_PLUGIN at
``"package.module:attribute"`` where the attribute is a SyncPlugin (or a
zero-argument callable returning one) providing:

- handlers: TaskType -> async handler
- round_reader: the current round / fixtures read API
- collection_resolvers: name -> async (subject_ref) -> member ids
"""
import importlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

from fantasy_sync.services.sync.cascade import CollectionResolver
from fantasy_sync.services.sync.context import RoundReader
from fantasy_sync.services.sync.errors import PluginLoadError
from fantasy_sync.services.sync.handlers import Handler, HandlerRegistry
from fantasy_sync.services.sync.task_types import TaskType
from fantasy_sync.services.sync.triggers import TriggerDefinition

logger = logging.getLogger(__name__)


@dataclass
class SyncPlugin:
    handlers: Union[HandlerRegistry, Mapping[Union[TaskType, str], Handler]]
    round_reader: RoundReader
    collection_resolvers: Dict[str, CollectionResolver] = field(default_factory=dict)
    triggers: Optional[List[TriggerDefinition]] = None  # None -> default trigger table

    def registry(self) -> HandlerRegistry:
        if isinstance(self.handlers, HandlerRegistry):
            return self.handlers
        return HandlerRegistry(self.handlers)


def load_plugin(path: str) -> SyncPlugin:
    """
    Import and validate a plugin from ``"package.module:attribute"``.

    Raises:
        PluginLoadError: bad path, import failure, or wrong object type
    """
    module_name, _, attribute = (path or "").partition(":")
    if not module_name or not attribute:
        raise PluginLoadError(f"Plugin path must look like 'package.module:attribute', got '{path}'", path=path)

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise PluginLoadError(f"Could not import plugin module '{module_name}': {e}", path=path) from e

    try:
        plugin = getattr(module, attribute)
    except AttributeError as e:
        raise PluginLoadError(f"Plugin module '{module_name}' has no attribute '{attribute}'", path=path) from e

    if callable(plugin) and not isinstance(plugin, SyncPlugin):
        try:
            plugin = plugin()
        except Exception as e:
            raise PluginLoadError(f"Plugin factory '{path}' raised: {e}", path=path) from e

    if not isinstance(plugin, SyncPlugin):
        raise PluginLoadError(
            f"Plugin '{path}' is a {type(plugin).__name__}, expected SyncPlugin", path=path
        )
    if not isinstance(plugin.round_reader, RoundReader):
        raise PluginLoadError(f"Plugin '{path}' round_reader does not implement RoundReader", path=path)

    logger.info(f"Loaded sync plugin {path}")
    return plugin
