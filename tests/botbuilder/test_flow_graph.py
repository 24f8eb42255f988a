import pytest

from fakes import dangling_graph, decision, sample_graph
from services.botbuilder.app.domain.errors import DuplicateNodeError, FlowGraphParseError
from services.botbuilder.app.domain.flow_graph import COLUMNS, FlowGraph, NodeKind, RichPresentation
from services.botbuilder.app.domain.system_nodes import (
    REQUIRED_NODE_IDS,
    ensure_system_nodes,
    is_system_id,
    missing_system_nodes,
    rewrite_dangling_targets,
    structural_check,
)


def test_serialize_parse_round_trip_is_stable():
    graph = sample_graph()
    graph.find_node(200).columns["Intent"] = "order, tracking"
    graph.find_node(200).content = 'Say "hi"\nthen pick'

    text = graph.serialize()
    reparsed = FlowGraph.parse(text)

    assert reparsed.serialize() == text
    assert [node.id for node in reparsed] == [node.id for node in graph]
    assert reparsed.find_node(200).columns["Intent"] == "order, tracking"
    assert reparsed.find_node(300).kind is NodeKind.action


def test_header_has_the_26_columns_in_order():
    header = sample_graph().serialize().splitlines()[0]

    assert len(COLUMNS) == 26
    assert header.split(",")[0] == "Node Number"
    assert header.split(",")[-1] == "CSS Classname"


def test_parse_strips_bom_and_skips_blank_rows():
    text = "\ufeff" + sample_graph().serialize() + ",,,\n\n"

    graph = FlowGraph.parse(text)

    assert graph.node_count == 12


def test_parse_records_unreadable_rows_instead_of_failing():
    text = sample_graph().serialize() + "abc,D,Broken" + "," * 23 + "\n"

    graph = FlowGraph.parse(text)

    assert graph.node_count == 12
    assert graph.metadata["skipped_rows"][0]["nodeNumber"] == "abc"


def test_parse_rejects_missing_columns():
    with pytest.raises(FlowGraphParseError):
        FlowGraph.parse("Node Number,Node Type\n1,D\n")
    with pytest.raises(FlowGraphParseError):
        FlowGraph.parse("")


def test_outgoing_targets_follow_routing_then_successor_list():
    graph = sample_graph()

    assert graph.outgoing_targets(graph.find_node(1)) == [10, 99990]
    assert graph.outgoing_targets(graph.find_node(400)) == [200, 666]


def test_behavior_usage_skips_system_behaviors_and_decision_nodes():
    usage = sample_graph().behavior_usage()

    assert usage == {
        "HandleBotError": [-500],
        "UserPlatformRouting": [10],
        "OrderLookup": [300],
        "GenAIFallback": [330],
    }


def test_dangling_reference_is_flagged_before_validation():
    graph = dangling_graph()

    assert graph.dangling_references() == [(310, "Next Nodes", 450)]
    defects = structural_check(graph)
    assert [(d.node_id, d.field) for d in defects] == [(310, "Next Nodes")]
    assert "450" in defects[0].message


def test_complete_graph_has_no_structural_defects():
    graph = sample_graph()

    assert structural_check(graph) == []
    assert missing_system_nodes(graph) == []


def test_structural_check_reports_duplicates_and_missing_system_nodes():
    graph = FlowGraph([decision(200, "Menu"), decision(200, "Menu again")])

    messages = [d.message for d in structural_check(graph)]

    assert "Duplicate node number 200" in messages
    assert sum("Required system node" in m for m in messages) == len(REQUIRED_NODE_IDS)


def test_insert_node_refuses_duplicates():
    graph = sample_graph()

    with pytest.raises(DuplicateNodeError):
        graph.insert_node(decision(200, "Again"))


def test_ensure_system_nodes_injects_terminals_and_bootstrap():
    graph = FlowGraph([decision(200, "Main Menu", next_nodes="666")])

    fixes = ensure_system_nodes(graph)

    assert missing_system_nodes(graph) == []
    assert {1, 10, 105, 1800}.issubset(graph.node_ids())
    assert graph.find_node(1800).display_name == "OutOfScope"
    assert graph.find_node(105).routing == "true~200|error~99990"
    assert all(is_system_id(node_id) for node_id in (-500, 99990))
    assert not is_system_id(666)
    assert len(fixes) == len(graph) - 1
    assert structural_check(graph) == []


def test_rewrite_dangling_targets_points_at_error_message():
    graph = sample_graph()
    graph.find_node(300).routing = "true~310|false~777|error~99990"

    fixes = rewrite_dangling_targets(graph)

    assert graph.find_node(300).routing == "true~310|false~99990|error~99990"
    assert fixes == ["Node 300: rerouted [777] to 99990"]


def test_button_targets_are_checked_for_dangling_references():
    graph = sample_graph()
    graph.find_node(200).rich_presentation = RichPresentation("button", "Track Order~300|Billing~4242")

    assert graph.dangling_references() == [(200, "Rich Asset Content", 4242)]
    [found] = structural_check(graph)
    assert (found.node_id, found.field) == (200, "Rich Asset Content")
    assert "4242" in found.message


def test_button_targets_read_pipe_lists_and_json_options():
    pipe = RichPresentation("button", "Visit~https://acme.test|Back~200")
    options = RichPresentation(
        "quick_reply",
        '{"type": "quick_reply", "options": [{"label": "Yes", "dest": "400"}, '
        '{"label": "Site", "dest": "https://acme.test"}, {"label": "No", "dest": 777}]}',
    )

    assert pipe.button_targets() == [200]
    assert options.button_targets() == [400, 777]
    assert RichPresentation("image", "https://cdn.acme.test/logo.png").button_targets() == []
    assert RichPresentation("quick_reply", "{not json").button_targets() == []


def test_action_node_without_error_route_is_flagged():
    graph = sample_graph()
    graph.find_node(300).routing = "true~310|false~400"

    [found] = structural_check(graph)

    assert (found.node_id, found.field) == (300, "What Next?")
    assert found.message == "Action node has no error route"


def test_system_error_handler_needs_no_error_route():
    graph = sample_graph()

    assert graph.find_node(-500).routing == "bot_error~99990|other~99990"
    assert structural_check(graph) == []
