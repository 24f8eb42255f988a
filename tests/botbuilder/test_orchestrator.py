import pytest

from fakes import (
    ORDER_LOOKUP_SCRIPT,
    FakeExporter,
    FakeOracle,
    FakePreview,
    FakePublisher,
    FakeRemoteRegistry,
    FakeValidator,
    defect,
    make_orchestrator,
    publish_rejection,
    sample_graph,
    sample_request,
)
from services.botbuilder.app.domain.errors import (
    AdapterError,
    CheckpointConsumedError,
    CheckpointMismatchError,
)
from services.botbuilder.app.domain.orchestrator import (
    BuildCheckpoint,
    CancellationToken,
    generate_bot_id,
    validate_bot_id,
)
from services.botbuilder.app.domain.types import BuildStep, ScriptDescriptor
from services.botbuilder.app.domain.validator import Verdict


def test_generate_bot_id_cleans_and_capitalises():
    assert generate_bot_id("acme corp", "order bot!") == "Acmecorp.Orderbot"
    validate_bot_id("Acmecorp.Orderbot")


@pytest.mark.parametrize("bot_id", ["", "NoDot", "Acme.orderbot", "Ac-me.Bot", "A.B.C"])
def test_validate_bot_id_rejects_bad_formats(bot_id):
    with pytest.raises(ValueError):
        validate_bot_id(bot_id)


@pytest.mark.asyncio
async def test_end_to_end_twelve_node_build_succeeds_without_warnings():
    preview, exporter = FakePreview(), FakeExporter()
    orchestrator = make_orchestrator(preview=preview, exporter=exporter)
    updates = []

    result = await orchestrator.run(sample_request(), progress=updates.append)

    assert result.success
    assert result.warnings == []
    assert result.node_count == 12
    assert result.dependency_count == 4
    assert result.unresolved_scripts == []
    assert result.version_id == "v-42"
    assert result.preview_url == "https://preview.test/Acmecorp.Orderbot"
    assert result.export_url == "https://sheets.test/doc-1"
    assert result.checkpoint is None
    assert {"generate", "refine", "resolve_dependencies", "publish", "provision_preview", "export"} <= set(
        result.timings_ms
    )
    assert updates[0].step is BuildStep.generate
    assert updates[-1].step is BuildStep.done
    assert updates[-1].progress == 100


@pytest.mark.asyncio
async def test_failed_preview_is_a_warning_not_a_failure():
    orchestrator = make_orchestrator(preview=FakePreview(AdapterError("preview.provision", "widget service down")))

    result = await orchestrator.run(sample_request())

    assert result.success
    assert result.preview_url is None
    assert result.export_url == "https://sheets.test/doc-1"
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith("Preview provisioning failed")


@pytest.mark.asyncio
async def test_failed_export_is_reported_independently():
    orchestrator = make_orchestrator(exporter=FakeExporter(AdapterError("exporter.export", "quota")))

    result = await orchestrator.run(sample_request())

    assert result.success
    assert result.preview_url is not None
    assert result.warnings == ["Export failed: exporter.export: quota"]


@pytest.mark.asyncio
async def test_unresolved_scripts_do_not_block_publish():
    publisher = FakePublisher()
    orchestrator = make_orchestrator(oracle=FakeOracle(), publisher=publisher)

    result = await orchestrator.run(sample_request())

    assert result.success
    assert result.unresolved_scripts == ["OrderLookup"]
    assert result.warnings == ["Unresolved script dependencies: OrderLookup"]
    assert "OrderLookup" not in {s.name for s in publisher.published[0][1]}


@pytest.mark.asyncio
async def test_remote_scripts_are_fetched_for_unknown_behaviors():
    remote = FakeRemoteRegistry(found={"OrderLookup": "def execute(p):\n    return {}\n"})
    orchestrator = make_orchestrator(oracle=FakeOracle(), remote=remote)

    result = await orchestrator.run(sample_request())

    assert result.warnings == []
    assert result.dependency_count == 4
    assert remote.requested == [["OrderLookup"]]


@pytest.mark.asyncio
async def test_generation_failure_is_fatal_without_checkpoint():
    publisher = FakePublisher()
    orchestrator = make_orchestrator(oracle=FakeOracle(error=AdapterError("oracle.generate", "HTTP 500")), publisher=publisher)

    result = await orchestrator.run(sample_request())

    assert not result.success
    assert result.error == "oracle.generate: HTTP 500"
    assert result.checkpoint is None
    assert publisher.published == []


@pytest.mark.asyncio
async def test_residual_defects_are_published_with_a_warning():
    validator = FakeValidator([Verdict.reject([defect()])])
    orchestrator = make_orchestrator(validator=validator, max_refinement_iterations=2)

    result = await orchestrator.run(sample_request())

    assert result.success
    assert validator.calls == 2
    assert result.iterations == 2
    assert result.residual_defects == [defect()]
    assert len(result.warnings) == 1
    assert "residual defects" in result.warnings[0]


@pytest.mark.asyncio
async def test_residual_defects_can_be_made_fatal():
    publisher = FakePublisher()
    validator = FakeValidator([Verdict.reject([defect()])])
    orchestrator = make_orchestrator(
        validator=validator, publisher=publisher, max_refinement_iterations=2, publish_with_residual_defects=False
    )

    result = await orchestrator.run(sample_request())

    assert not result.success
    assert publisher.published == []
    assert result.checkpoint is not None
    assert result.checkpoint.refined is False


@pytest.mark.asyncio
async def test_publish_failure_returns_rows_and_refined_checkpoint():
    orchestrator = make_orchestrator(publisher=FakePublisher(publish_rejection()))

    result = await orchestrator.run(sample_request())

    assert not result.success
    assert result.error == "Deployment failed"
    [row] = result.failed_rows
    assert (row.node_id, row.node_name, row.node_kind) == (300, "Lookup Order", "A")
    assert row.fields == ["Command"]
    assert row.raw_row.startswith("300,A,Lookup Order")
    assert result.checkpoint.refined is True
    assert result.checkpoint.bot_id == "Acmecorp.Orderbot"
    assert result.checkpoint.graph.serialize() == sample_graph().serialize()


@pytest.mark.asyncio
async def test_resume_from_refined_checkpoint_skips_oracle_and_validator():
    failing = make_orchestrator(publisher=FakePublisher(publish_rejection()))
    first = await failing.run(sample_request())

    oracle, validator, publisher = FakeOracle(), FakeValidator(), FakePublisher()
    orchestrator = make_orchestrator(oracle=oracle, validator=validator, publisher=publisher)
    result = await orchestrator.run(sample_request(), checkpoint=first.checkpoint)

    assert result.success
    assert oracle.calls == []
    assert validator.calls == 0
    assert publisher.published[0][0].serialize() == first.checkpoint.graph.serialize()
    assert result.session_id == first.session_id
    assert result.dependency_count == 4


@pytest.mark.asyncio
async def test_resume_from_unrefined_checkpoint_skips_only_generation():
    checkpoint = BuildCheckpoint(
        session_id="s-1",
        bot_id="Acmecorp.Orderbot",
        graph=sample_graph(),
        project=sample_request().project,
        instruction="Build an order bot",
        refined=False,
    )
    oracle, validator = FakeOracle(), FakeValidator()

    result = await make_orchestrator(oracle=oracle, validator=validator).run(sample_request(), checkpoint=checkpoint)

    assert result.success
    assert oracle.calls == []
    assert validator.calls == 1


@pytest.mark.asyncio
async def test_checkpoint_is_single_use_and_scoped_to_its_bot():
    first = await make_orchestrator(publisher=FakePublisher(publish_rejection())).run(sample_request())
    checkpoint = first.checkpoint

    with pytest.raises(CheckpointMismatchError):
        await make_orchestrator().run(sample_request(bot_id="Other.Bot"), checkpoint=checkpoint)

    await make_orchestrator().run(sample_request(), checkpoint=checkpoint)
    with pytest.raises(CheckpointConsumedError):
        await make_orchestrator().run(sample_request(), checkpoint=checkpoint)


def test_checkpoint_payload_round_trip():
    checkpoint = BuildCheckpoint(
        session_id="s-1",
        bot_id="Acmecorp.Orderbot",
        graph=sample_graph(),
        project=sample_request().project,
        instruction="Build an order bot",
        refined=True,
    )

    restored = BuildCheckpoint.from_payload(checkpoint.to_payload())

    assert restored.refined is True
    assert restored.graph.serialize() == checkpoint.graph.serialize()
    assert restored.project == checkpoint.project
    assert restored.created_at == checkpoint.created_at


@pytest.mark.asyncio
async def test_cancellation_before_publish_returns_checkpoint():
    token = CancellationToken()
    publisher = FakePublisher()

    def cancel_on_refine(update):
        if update.step is BuildStep.refine:
            token.cancel("user closed the page")

    result = await make_orchestrator(publisher=publisher).run(sample_request(), progress=cancel_on_refine, cancel=token)

    assert result.cancelled
    assert not result.success
    assert publisher.published == []
    assert result.error == "user closed the page"
    assert result.checkpoint is not None
    assert result.checkpoint.refined is True


@pytest.mark.asyncio
async def test_cancellation_before_generation_has_no_checkpoint():
    token = CancellationToken()
    token.cancel()
    oracle = FakeOracle()

    result = await make_orchestrator(oracle=oracle).run(sample_request(), cancel=token)

    assert result.cancelled
    assert result.checkpoint is None
    assert oracle.calls == []


@pytest.mark.asyncio
async def test_cancellation_after_publish_is_success_with_warning():
    token = CancellationToken()
    preview, exporter = FakePreview(), FakeExporter()

    def cancel_on_publish(update):
        if update.step is BuildStep.publish:
            token.cancel()

    result = await make_orchestrator(preview=preview, exporter=exporter).run(
        sample_request(), progress=cancel_on_publish, cancel=token
    )

    assert result.success
    assert result.cancelled
    assert preview.calls == 0 and exporter.calls == 0
    assert result.warnings == ["Build cancelled after publish; preview and export were skipped"]


@pytest.mark.asyncio
async def test_progress_callback_failures_are_ignored():
    def explode(update):
        raise RuntimeError("socket closed")

    result = await make_orchestrator().run(sample_request(), progress=explode)

    assert result.success


def graph_with_two_dangling_targets():
    graph = sample_graph()
    graph.find_node(310).next_nodes = "450"
    graph.find_node(330).routing = "true~460|error~99990"
    return graph


def support_flow_collaborators():
    oracle = FakeOracle(
        [graph_with_two_dangling_targets(), sample_graph()],
        scripts=[ScriptDescriptor("OrderLookup", ORDER_LOOKUP_SCRIPT, source="generated")],
    )
    validator = FakeValidator(
        [
            Verdict.reject(
                [
                    defect(310, "Next Nodes", "Node 450 does not exist"),
                    defect(330, "What Next?", "Node 460 does not exist"),
                ]
            ),
            Verdict.accept("v-validated"),
        ]
    )
    return oracle, validator


@pytest.mark.asyncio
async def test_support_flow_with_dangling_targets_is_repaired_once_and_published():
    oracle, validator = support_flow_collaborators()
    publisher = FakePublisher()

    result = await make_orchestrator(oracle=oracle, validator=validator, publisher=publisher).run(sample_request())

    assert result.success
    assert result.node_count == 12
    assert result.warnings == []
    assert result.iterations == 2
    assert len(oracle.calls) == 2
    [repair] = oracle.repair_calls
    assert {(d.node_id, d.field) for d in repair["prior_defects"]} == {(310, "Next Nodes"), (330, "What Next?")}
    assert validator.calls == 2
    assert len(validator.graphs[0].dangling_references()) == 2
    assert validator.graphs[1].dangling_references() == []
    assert publisher.published[0][0].serialize() == sample_graph().serialize()


@pytest.mark.asyncio
async def test_support_flow_with_failed_preview_is_partial_success():
    oracle, validator = support_flow_collaborators()
    preview = FakePreview(AdapterError("preview.provision", "widget service down"))

    result = await make_orchestrator(oracle=oracle, validator=validator, preview=preview).run(sample_request())

    assert result.success
    assert len(oracle.calls) == 2
    assert validator.calls == 2
    assert result.preview_url is None
    assert result.export_url == "https://sheets.test/doc-1"
    assert result.warnings == ["Preview provisioning failed: preview.provision: widget service down"]


@pytest.mark.asyncio
async def test_flaky_repair_still_produces_a_published_build():
    oracle = FakeOracle(
        scripts=[ScriptDescriptor("OrderLookup", ORDER_LOOKUP_SCRIPT, source="generated")],
        failures=[None, AdapterError("oracle.repair", "timed out after 180s")],
    )
    validator = FakeValidator([Verdict.reject([defect()]), Verdict.accept("v-validated")])

    result = await make_orchestrator(oracle=oracle, validator=validator).run(sample_request())

    assert result.success
    assert result.error is None
    assert result.iterations == 2
    assert len(oracle.repair_calls) == 1
    assert result.version_id == "v-42"


@pytest.mark.asyncio
async def test_unexpected_preview_and_export_crashes_become_warnings():
    preview = FakePreview(RuntimeError("widget client bug"))
    exporter = FakeExporter(RuntimeError("sheet client bug"))

    result = await make_orchestrator(preview=preview, exporter=exporter).run(sample_request())

    assert result.success
    assert result.version_id == "v-42"
    assert sorted(result.warnings) == ["Export failed: sheet client bug", "Preview provisioning failed: widget client bug"]


@pytest.mark.asyncio
async def test_unexpected_resolver_crash_marks_every_behavior_unresolved():
    remote = FakeRemoteRegistry(error=RuntimeError("registry client bug"))

    result = await make_orchestrator(oracle=FakeOracle(), remote=remote).run(sample_request())

    assert result.success
    assert result.dependency_count == 0
    assert result.unresolved_scripts == ["GenAIFallback", "HandleBotError", "OrderLookup", "UserPlatformRouting"]
    assert result.warnings == [
        "Unresolved script dependencies: GenAIFallback, HandleBotError, OrderLookup, UserPlatformRouting"
    ]
