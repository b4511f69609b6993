"""Tests for handler registration, plugin loading and runtime wiring."""
import sys
import types
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeRoundReader, RecordingHandlers

from fantasy_sync.core import scheduler as scheduler_module
from fantasy_sync.services.sync.errors import HandlerRegistryError, PluginLoadError, UnknownTaskTypeError
from fantasy_sync.services.sync.handlers import HandlerRegistry
from fantasy_sync.services.sync.plugins import SyncPlugin, load_plugin
from fantasy_sync.services.sync.runtime import build_runtime
from fantasy_sync.services.sync.task_types import TaskType

PLUGIN_MODULE = "fantasy_sync_test_plugin"


@pytest.fixture
def plugin_module(monkeypatch, round_reader: FakeRoundReader, handlers: RecordingHandlers):
    """A throwaway importable module exposing plugins in several shapes."""
    module = types.ModuleType(PLUGIN_MODULE)
    module.plugin = SyncPlugin(handlers=handlers.registry(), round_reader=round_reader)
    module.make_plugin = lambda: module.plugin
    module.broken_factory = lambda: 1 / 0
    module.not_a_plugin = {"handlers": {}}
    module.bad_reader = SyncPlugin(handlers={}, round_reader=object())
    monkeypatch.setitem(sys.modules, PLUGIN_MODULE, module)
    return module


class TestHandlerRegistry:

    def test_decorator_registration(self):
        registry = HandlerRegistry()

        @registry.register(TaskType.STANDINGS)
        async def sync_standings(invocation):
            return None

        assert registry.get("standings") is sync_standings
        assert TaskType.STANDINGS in registry
        assert len(registry) == 1

    def test_duplicate_registration_rejected(self, handlers: RecordingHandlers):
        registry = HandlerRegistry({TaskType.STANDINGS: handlers.handler()})
        with pytest.raises(HandlerRegistryError, match="already registered"):
            registry.register(TaskType.STANDINGS, handlers.handler())

    def test_unknown_task_type_rejected(self, handlers: RecordingHandlers):
        with pytest.raises(UnknownTaskTypeError):
            HandlerRegistry({"nightly-everything": handlers.handler()})

    def test_validate_lists_missing_types(self, handlers: RecordingHandlers):
        registry = HandlerRegistry({TaskType.STANDINGS: handlers.handler()})

        with pytest.raises(HandlerRegistryError) as exc_info:
            registry.validate()

        assert "round-results" in exc_info.value.context["missing"]
        assert len(registry.missing()) == 22

    def test_complete_registry_validates(self, handlers: RecordingHandlers):
        handlers.registry().validate()


class TestLoadPlugin:

    def test_load_instance(self, plugin_module):
        assert load_plugin(f"{PLUGIN_MODULE}:plugin") is plugin_module.plugin

    def test_load_factory(self, plugin_module):
        assert load_plugin(f"{PLUGIN_MODULE}:make_plugin") is plugin_module.plugin

    @pytest.mark.parametrize("path", [
        None,
        "no_colon_here",
        "fantasy_sync_missing_module:plugin",
        f"{PLUGIN_MODULE}:absent",
        f"{PLUGIN_MODULE}:broken_factory",
        f"{PLUGIN_MODULE}:not_a_plugin",
        f"{PLUGIN_MODULE}:bad_reader",
    ])
    def test_bad_plugins_rejected(self, plugin_module, path):
        with pytest.raises(PluginLoadError):
            load_plugin(path)


class TestBuildRuntime:

    def test_build_and_check(self, session_factory, round_reader: FakeRoundReader, handlers: RecordingHandlers):
        plugin = SyncPlugin(
            handlers=handlers.registry(),
            round_reader=round_reader,
            collection_resolvers={"round_entries": AsyncMock(return_value=[])},
        )

        runtime = build_runtime(plugin, session_factory=session_factory)

        assert runtime.check() == {
            "cascade_problems": [],
            "missing_handlers": [],
            "dual_path_task_types": ["fixtures-sync"],
        }
        assert len(runtime.scheduler.triggers) == 14

    def test_incomplete_handlers_fail_fast(self, session_factory, round_reader: FakeRoundReader, handlers: RecordingHandlers):
        plugin = SyncPlugin(handlers={TaskType.STANDINGS: handlers.handler()}, round_reader=round_reader)
        with pytest.raises(HandlerRegistryError):
            build_runtime(plugin, session_factory=session_factory)

    def test_validation_can_be_skipped(self, session_factory, round_reader: FakeRoundReader):
        plugin = SyncPlugin(handlers={}, round_reader=round_reader)
        runtime = build_runtime(plugin, session_factory=session_factory, validate=False)
        assert len(runtime.check()["missing_handlers"]) == 23

    def test_missing_resolver_reported_by_check(self, session_factory, round_reader: FakeRoundReader, handlers: RecordingHandlers):
        plugin = SyncPlugin(handlers=handlers.registry(), round_reader=round_reader)
        runtime = build_runtime(plugin, session_factory=session_factory, validate=False)
        assert any("round_entries" in p for p in runtime.check()["cascade_problems"])

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, round_reader: FakeRoundReader, handlers: RecordingHandlers, monkeypatch):
        monkeypatch.setattr(scheduler_module, "_scheduler", None)
        plugin = SyncPlugin(
            handlers=handlers.registry(),
            round_reader=round_reader,
            collection_resolvers={"round_entries": AsyncMock(return_value=[])},
        )
        runtime = build_runtime(plugin, session_factory=session_factory)

        await runtime.start()
        assert runtime.scheduler.running is True
        assert runtime.executor_pool.running is True

        await runtime.stop()
        assert runtime.scheduler.running is False
        assert runtime.executor_pool.running is False
        assert runtime.started is False

    @pytest.mark.asyncio
    async def test_stop_leaves_foreign_scheduler_running(
        self, session_factory, round_reader: FakeRoundReader, handlers: RecordingHandlers, monkeypatch
    ):
        other = MagicMock()
        other.stop = AsyncMock()
        monkeypatch.setattr(scheduler_module, "_scheduler", other)
        plugin = SyncPlugin(
            handlers=handlers.registry(),
            round_reader=round_reader,
            collection_resolvers={"round_entries": AsyncMock(return_value=[])},
        )
        runtime = build_runtime(plugin, session_factory=session_factory)

        await runtime.start(with_executors=False)
        assert runtime.scheduler.running is False

        await runtime.stop()
        other.stop.assert_not_awaited()
        assert scheduler_module.get_scheduler() is other
