"""In-memory collaborators and sample graphs for the build pipeline tests."""
from __future__ import annotations

from typing import Sequence

from services.botbuilder.app.config import PipelineTuning
from services.botbuilder.app.domain.dependencies import ScriptDependencyResolver
from services.botbuilder.app.domain.errors import PublishFailure
from services.botbuilder.app.domain.exporter import ExportReceipt
from services.botbuilder.app.domain.flow_graph import FlowGraph, Node, NodeKind, RichPresentation
from services.botbuilder.app.domain.oracle import GenerationResult
from services.botbuilder.app.domain.orchestrator import BuildRequest, DeploymentOrchestrator
from services.botbuilder.app.domain.preview import PreviewChannel
from services.botbuilder.app.domain.publisher import PublishReceipt, extract_failed_rows
from services.botbuilder.app.domain.script_registry import BundledScriptRegistry, RemoteLookup
from services.botbuilder.app.domain.types import Credentials, ProjectConfig, ScriptDescriptor, ValidationDefect
from services.botbuilder.app.domain.validator import Verdict

ORDER_LOOKUP_SCRIPT = "def execute(params):\n    return {'found': 'true'}\n"


def action(node_id: int, name: str, command: str, routing: str) -> Node:
    return Node(id=node_id, kind=NodeKind.action, display_name=name, behavior_name=command, routing=routing)


def decision(node_id: int, name: str, message: str = "", next_nodes: str = "", buttons: str | None = None) -> Node:
    return Node(
        id=node_id,
        kind=NodeKind.decision,
        display_name=name,
        content=message,
        next_nodes=next_nodes,
        rich_presentation=RichPresentation("button", buttons) if buttons else None,
    )


def sample_graph() -> FlowGraph:
    """Closed twelve-node order-tracking flow with every system node present."""
    return FlowGraph(
        [
            action(-500, "HandleBotError", "HandleBotError", "bot_error~99990|other~99990"),
            action(1, "SysShowMetadata", "SysShowMetadata", "true~10|error~99990"),
            action(10, "UserPlatformRouting", "UserPlatformRouting", "ios~200|other~200|error~99990"),
            decision(
                200,
                "Main Menu",
                "How can I help?",
                next_nodes="300,330,999",
                buttons="Track Order~300|Ask a Question~330|Talk to Agent~999",
            ),
            action(300, "Lookup Order", "OrderLookup", "true~310|false~400|error~99990"),
            decision(310, "Order Found", "Your order is on the way.", next_nodes="400"),
            action(330, "GenAI Answer", "GenAIFallback", "true~400|error~99990"),
            decision(400, "Anything Else", "Anything else?", next_nodes="200,666", buttons="Yes~200|No~666"),
            decision(666, "EndChat", "Goodbye!"),
            decision(999, "Agent Transfer"),
            decision(1800, "OutOfScope", "I'm not sure I understood that.", buttons="Start Over~1|Talk to Agent~999"),
            decision(99990, "Error Message", "Something went wrong.", buttons="Start Over~1|Talk to Agent~999"),
        ]
    )


def dangling_graph() -> FlowGraph:
    graph = sample_graph()
    node = graph.find_node(310)
    node.next_nodes = "450"
    return graph


def sample_project() -> ProjectConfig:
    return ProjectConfig(client_name="acme corp", project_name="order bot", description="Tracks orders")


def sample_request(**overrides) -> BuildRequest:
    values = dict(
        instruction="Build a bot that tracks orders and answers questions",
        project=sample_project(),
        owner_id="owner-1",
        credentials=Credentials("token-123"),
    )
    values.update(overrides)
    return BuildRequest(**values)


def defect(node_id: int | None = 300, field: str = "What Next?", message: str = "Reference to node 450 does not exist"):
    return ValidationDefect(node_id, field, message)


class FakeOracle:
    def __init__(
        self,
        graphs: Sequence[FlowGraph] | None = None,
        scripts: Sequence[ScriptDescriptor] = (),
        error=None,
        failures: Sequence[Exception | None] = (),
    ):
        self._graphs = list(graphs or [sample_graph()])
        self._scripts = list(scripts)
        self._error = error
        self._failures = list(failures)
        self.calls: list[dict] = []

    async def generate(self, instruction, project, *, prior_defects=None, graph=None, known_issues=None, session_id=None):
        self.calls.append(
            {
                "instruction": instruction,
                "prior_defects": prior_defects,
                "graph": graph,
                "known_issues": known_issues,
                "session_id": session_id,
            }
        )
        if self._error is not None:
            raise self._error
        failure = self._failures[len(self.calls) - 1] if len(self.calls) <= len(self._failures) else None
        if failure is not None:
            raise failure
        produced = self._graphs[min(len(self.calls) - 1, len(self._graphs) - 1)].copy()
        return GenerationResult(graph=produced, node_count=produced.node_count, custom_scripts=list(self._scripts))

    @property
    def repair_calls(self) -> list[dict]:
        return [call for call in self.calls if call["prior_defects"] is not None]


class FakeValidator:
    def __init__(self, verdicts: Sequence[Verdict | Exception] | None = None):
        self._verdicts = list(verdicts or [Verdict.accept("v-validated")])
        self.graphs: list[FlowGraph] = []

    async def validate(self, graph, target_id, credentials):
        self.graphs.append(graph.copy())
        verdict = self._verdicts[min(len(self.graphs) - 1, len(self._verdicts) - 1)]
        if isinstance(verdict, Exception):
            raise verdict
        return verdict

    @property
    def calls(self) -> int:
        return len(self.graphs)


class FakeRemoteRegistry:
    def __init__(self, found: dict[str, str] | None = None, error: Exception | None = None):
        self._found = dict(found or {})
        self._error = error
        self.requested: list[list[str]] = []

    async def fetch(self, names):
        self.requested.append(list(names))
        if self._error is not None:
            raise self._error
        found = {name: self._found[name] for name in names if name in self._found}
        return RemoteLookup(found=found, missing=[name for name in names if name not in found])


class FakePublisher:
    def __init__(self, error: Exception | None = None, version_id: str = "v-42"):
        self._error = error
        self._version_id = version_id
        self.published: list[tuple[FlowGraph, list[ScriptDescriptor]]] = []

    async def publish(self, graph, scripts, target_id, environment, credentials):
        self.published.append((graph.copy(), list(scripts)))
        if self._error is not None:
            raise self._error
        return PublishReceipt(version_id=self._version_id)


class FakePreview:
    def __init__(self, error: Exception | None = None):
        self._error = error
        self.calls = 0

    async def provision(self, target_id, environment, credentials, branding=None):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return PreviewChannel(preview_url=f"https://preview.test/{target_id}", preview_id="pv-1")


class FakeExporter:
    def __init__(self, error: Exception | None = None):
        self._error = error
        self.calls = 0

    async def export(self, graph, title, owner_id):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return ExportReceipt(document_url="https://sheets.test/doc-1", document_id="doc-1")


def make_orchestrator(
    *,
    oracle: FakeOracle | None = None,
    validator: FakeValidator | None = None,
    remote: FakeRemoteRegistry | None = None,
    publisher: FakePublisher | None = None,
    preview: FakePreview | None = None,
    exporter: FakeExporter | None = None,
    **tuning,
) -> DeploymentOrchestrator:
    oracle = oracle or FakeOracle(scripts=[ScriptDescriptor("OrderLookup", ORDER_LOOKUP_SCRIPT, source="generated")])
    return DeploymentOrchestrator(
        oracle,
        validator or FakeValidator(),
        ScriptDependencyResolver(BundledScriptRegistry(), remote or FakeRemoteRegistry()),
        publisher or FakePublisher(),
        preview or FakePreview(),
        exporter or FakeExporter(),
        tuning=PipelineTuning(**tuning),
    )


def publish_rejection() -> PublishFailure:
    graph = sample_graph()
    rows = extract_failed_rows([defect(300, "Command", "Action OrderLookup not found")], graph)
    return PublishFailure("Deployment failed", rows)
