import pytest

from fakes import FakeRemoteRegistry, sample_graph
from services.botbuilder.app.domain.bundled_scripts import BUNDLED_SCRIPTS
from services.botbuilder.app.domain.dependencies import ScriptDependencyResolver
from services.botbuilder.app.domain.errors import AdapterError, StartupCheckError
from services.botbuilder.app.domain.script_registry import BundledScriptRegistry
from services.botbuilder.app.domain.types import ScriptDescriptor


def test_bundled_registry_self_check_passes_for_shipped_scripts():
    registry = BundledScriptRegistry()

    registry.self_check()

    assert {script.name for script in registry.critical()} == {"HandleBotError", "UserPlatformRouting", "GenAIFallback"}
    assert "ValidateRegex" in registry
    assert len(registry) == len(BUNDLED_SCRIPTS)


def test_bundled_registry_self_check_fails_on_empty_critical_script():
    registry = BundledScriptRegistry([ScriptDescriptor("HandleBotError", "pass", is_critical=True)])

    with pytest.raises(StartupCheckError):
        registry.self_check()


@pytest.mark.asyncio
async def test_fail_soft_resolution_reports_missing_names():
    graph = sample_graph()
    graph.find_node(10).behavior_name = "CheckInventory"
    graph.find_node(330).behavior_name = "FetchWeather"
    graph.find_node(300).behavior_name = None
    remote = FakeRemoteRegistry(found={"CheckInventory": "def execute(p):\n    return {}\n"})
    registry = BundledScriptRegistry([s for s in BUNDLED_SCRIPTS if s.name in {"HandleBotError"}])

    resolution = await ScriptDependencyResolver(registry, remote).resolve(graph)

    assert sorted(s.name for s in resolution.scripts) == ["CheckInventory", "HandleBotError"]
    assert resolution.unresolved == ["FetchWeather"]
    assert remote.requested == [["CheckInventory", "FetchWeather"]]


@pytest.mark.asyncio
async def test_bundled_generated_and_remote_sources_with_one_missing():
    graph = sample_graph()
    graph.find_node(330).behavior_name = "NotifySlack"
    remote = FakeRemoteRegistry(found={})
    provided = [ScriptDescriptor("OrderLookup", "def execute(p):\n    return {}\n", source="generated")]

    resolution = await ScriptDependencyResolver(BundledScriptRegistry(), remote).resolve(graph, provided)

    sources = {s.name: s.source for s in resolution.scripts}
    assert sources == {"HandleBotError": "bundled", "OrderLookup": "generated", "UserPlatformRouting": "bundled"}
    assert resolution.unresolved == ["NotifySlack"]
    assert resolution.resolved_count == 3
    assert next(s for s in resolution.scripts if s.name == "OrderLookup").used_by_node_ids == [300]


@pytest.mark.asyncio
async def test_remote_failure_leaves_names_unresolved_without_raising():
    graph = sample_graph()
    remote = FakeRemoteRegistry(error=AdapterError("script_registry.fetch", "boom"))

    resolution = await ScriptDependencyResolver(BundledScriptRegistry(), remote).resolve(graph)

    assert resolution.unresolved == ["OrderLookup"]
    assert resolution.remote_error == "script_registry.fetch: boom"
    assert resolution.resolved_count == 3


@pytest.mark.asyncio
async def test_system_behaviors_are_never_looked_up():
    remote = FakeRemoteRegistry()
    provided = [ScriptDescriptor("OrderLookup", "def execute(p):\n    return {}\n")]

    resolution = await ScriptDependencyResolver(BundledScriptRegistry(), remote).resolve(sample_graph(), provided)

    assert resolution.unresolved == []
    assert remote.requested == []
    assert "SysShowMetadata" not in {s.name for s in resolution.scripts}
