"""Read-only catalog of the system nodes every deployable graph carries.

Terminal nodes live at reserved ids (negative or >= 90000, plus the
conventional 666/999/1800 terminals); the bootstrap sequence starts at node 1 and
hands over to the generated main menu at node 200.
"""
from __future__ import annotations

import copy

import structlog

from .flow_graph import FlowGraph, Node, NodeKind, RichPresentation
from .routing import failure_target, rewrite_targets
from .types import ValidationDefect

logger = structlog.get_logger(__name__)

RESERVED_HIGH_ID = 90000
ERROR_HANDLER_ID = -500
ENTRY_NODE_ID = 1
END_CHAT_ID = 666
AGENT_TRANSFER_ID = 999
OUT_OF_SCOPE_ID = 1800
ERROR_MESSAGE_ID = 99990

REQUIRED_NODE_IDS: tuple[int, ...] = (
    ERROR_HANDLER_ID,
    ENTRY_NODE_ID,
    END_CHAT_ID,
    AGENT_TRANSFER_ID,
    OUT_OF_SCOPE_ID,
    ERROR_MESSAGE_ID,
)


def is_system_id(node_id: int) -> bool:
    return node_id < 0 or node_id >= RESERVED_HIGH_ID


def _action(node_id: int, name: str, command: str, routing: str, **columns: str) -> Node:
    return Node(
        id=node_id,
        kind=NodeKind.action,
        display_name=name,
        behavior_name=command,
        routing=routing,
        columns=dict(columns),
    )


TERMINAL_NODES: tuple[Node, ...] = (
    _action(
        ERROR_HANDLER_ID,
        "HandleBotError",
        "HandleBotError",
        "bot_error~99990|bot_timeout~99990|other~99990",
        **{
            "Description": "Catches exceptions",
            "Output": "error_type",
            "Parameter Input": '{"save_error_to":"PLATFORM_ERROR"}',
            "Decision Variable": "error_type",
            "Variable": "PLATFORM_ERROR",
        },
    ),
    Node(id=END_CHAT_ID, kind=NodeKind.decision, display_name="EndChat", content="Thank you for using our service. Goodbye!"),
    Node(
        id=AGENT_TRANSFER_ID,
        kind=NodeKind.decision,
        display_name="Agent Transfer",
        columns={"Behaviors": "xfer_to_agent"},
    ),
    Node(
        id=OUT_OF_SCOPE_ID,
        kind=NodeKind.decision,
        display_name="OutOfScope",
        content="I'm not sure I understood that.",
        rich_presentation=RichPresentation("button", "Start Over~1|Talk to Agent~999"),
        columns={"Intent": "out_of_scope", "Answer Required?": "1", "Behaviors": "disable_input"},
    ),
    Node(
        id=ERROR_MESSAGE_ID,
        kind=NodeKind.decision,
        display_name="Error Message",
        content="Oops! Something went wrong. Let me help you get back on track.",
        rich_presentation=RichPresentation("button", "Start Over~1|Talk to Agent~999"),
        columns={"Answer Required?": "1", "Behaviors": "disable_input"},
    ),
)

BOOTSTRAP_NODES: tuple[Node, ...] = (
    _action(
        ENTRY_NODE_ID,
        "SysShowMetadata",
        "SysShowMetadata",
        "true~10|error~99990",
        **{
            "Description": "Gets session info",
            "Output": "success",
            "Parameter Input": '{"passthrough_mapping":{},"assign_metadata_vars":{"chat_id":"CHATID","session_id":"SESSION_ID"}}',
            "Decision Variable": "success",
            "Variable": "CHATID",
        },
    ),
    _action(
        10,
        "UserPlatformRouting",
        "UserPlatformRouting",
        "ios~100|android~101|mac~102|windows~102|other~102|error~103",
        **{"Description": "Detects device type", "Output": "success", "Decision Variable": "success"},
    ),
    _action(
        100,
        "SetVar iOS",
        "SysAssignVariable",
        "true~104|error~99990",
        **{
            "Output": "success",
            "Parameter Input": '{"set":{"USER_PLATFORM":"iOS"}}',
            "Decision Variable": "success",
            "Variable": "USER_PLATFORM",
        },
    ),
    _action(
        101,
        "SetVar Android",
        "SysAssignVariable",
        "true~104|error~99990",
        **{
            "Output": "success",
            "Parameter Input": '{"set":{"USER_PLATFORM":"Android"}}',
            "Decision Variable": "success",
            "Variable": "USER_PLATFORM",
        },
    ),
    _action(
        102,
        "SetVar Desktop",
        "SysAssignVariable",
        "true~104|error~99990",
        **{
            "Output": "success",
            "Parameter Input": '{"set":{"USER_PLATFORM":"Desktop"}}',
            "Decision Variable": "success",
            "Variable": "USER_PLATFORM",
        },
    ),
    Node(id=103, kind=NodeKind.decision, display_name="Platform Fallback", next_nodes="104"),
    _action(
        104,
        "SysSetEnv",
        "SysSetEnv",
        "true~105|error~99990",
        **{
            "Output": "success",
            "Parameter Input": '{"set_env_as":"ENV"}',
            "Decision Variable": "success",
            "Variable": "ENV",
        },
    ),
    _action(
        105,
        "InitContext",
        "SysAssignVariable",
        "true~200|error~99990",
        **{
            "Description": "Initialize conversation context",
            "Output": "success",
            "Parameter Input": '{"set":{"LAST_TOPIC":"","LAST_ENTITY":"","CONVERSATION_CONTEXT":""}}',
            "Decision Variable": "success",
            "Variable": "LAST_TOPIC",
        },
    ),
)


def missing_system_nodes(graph: FlowGraph) -> list[int]:
    present = graph.node_ids()
    return [node_id for node_id in REQUIRED_NODE_IDS if node_id not in present]


def structural_check(graph: FlowGraph) -> list[ValidationDefect]:
    """Structural defects plus user action nodes that have no ``error`` route."""
    defects = graph.structural_defects(REQUIRED_NODE_IDS)
    for node in graph:
        if node.is_action and not is_system_id(node.id) and failure_target(node.edges) is None:
            defects.append(ValidationDefect(node.id, "What Next?", "Action node has no error route"))
    return defects


def ensure_system_nodes(graph: FlowGraph) -> list[str]:
    """Insert missing catalog nodes; the whole bootstrap chain when node 1 is absent."""
    fixes: list[str] = []
    present = graph.node_ids()
    candidates = list(TERMINAL_NODES)
    if ENTRY_NODE_ID not in present:
        candidates.extend(BOOTSTRAP_NODES)
    for template in candidates:
        if template.id in present:
            continue
        graph.insert_node(copy.deepcopy(template))
        present.add(template.id)
        fixes.append(f"Injected system node {template.id} ({template.display_name})")
    if fixes:
        logger.info("system_nodes.injected", count=len(fixes))
    return fixes


def rewrite_dangling_targets(graph: FlowGraph, fallback: int = ERROR_MESSAGE_ID) -> list[str]:
    """Point routing edges at missing nodes to the generic error message node."""
    fixes: list[str] = []
    known = graph.node_ids()
    if fallback not in known:
        return fixes
    for node in graph.nodes:
        mapping = {edge.target: fallback for edge in node.edges if edge.target not in known}
        if not mapping:
            continue
        updated = copy.deepcopy(node)
        updated.routing = rewrite_targets(node.routing, mapping)
        graph.replace_node(updated)
        fixes.append(f"Node {node.id}: rerouted {sorted(mapping)} to {fallback}")
    return fixes


__all__ = [
    "BOOTSTRAP_NODES",
    "OUT_OF_SCOPE_ID",
    "REQUIRED_NODE_IDS",
    "TERMINAL_NODES",
    "ensure_system_nodes",
    "is_system_id",
    "missing_system_nodes",
    "rewrite_dangling_targets",
    "structural_check",
]
