"""
Tests for the sequential execution runner.

Executors are swapped for local fakes so the runner's ordering, status
reporting and failure propagation can be observed without any provider.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from genflow.exceptions import EmptyGraphError
from genflow.models.graph import Edge, Node, NodeFailure, NodeOutput, NodeSuccess
from genflow.services.flow_runner import UPSTREAM_FAILED, ExecutionRunner, NodeExecutionContext
from genflow.services.plan_compiler import build_plan


# ---------------------------------------------------------------------------
# Fake executors
# ---------------------------------------------------------------------------

calls: list[str] = []


async def _exec_source(ctx: NodeExecutionContext):
    calls.append(ctx.node_id)
    return NodeSuccess(output=NodeOutput(text=ctx.node_data.text))


async def _exec_upper(ctx: NodeExecutionContext):
    calls.append(ctx.node_id)
    merged = "\n\n".join(i.text for i in ctx.inputs if i.text)
    return NodeSuccess(output=NodeOutput(text=merged.upper()))


async def _exec_fail(ctx: NodeExecutionContext):
    calls.append(ctx.node_id)
    return NodeFailure(error="boom")


async def _exec_raise(ctx: NodeExecutionContext):
    calls.append(ctx.node_id)
    raise RuntimeError("provider exploded")


async def _exec_persona(ctx: NodeExecutionContext):
    calls.append(ctx.node_id)
    return NodeSuccess(output=NodeOutput(
        persona_name=ctx.node_data.character_name,
        persona_description=ctx.node_data.character_description,
    ))


async def _exec_collect(ctx: NodeExecutionContext):
    calls.append(ctx.node_id)
    names = [a.persona_name for a in ctx.adapter_inputs]
    return NodeSuccess(output=NodeOutput(text=",".join(names), duration_ms=7))


async def _exec_bad_return(ctx: NodeExecutionContext):
    return {"text": "not a result"}


REGISTRY = {
    "initialPrompt": _exec_source,
    "promptEnhancer": _exec_upper,
    "grammarFix": _exec_fail,
    "translator": _exec_raise,
    "consistentCharacter": _exec_persona,
    "personasReplacer": _exec_collect,
    "compressor": _exec_bad_return,
}


@pytest.fixture(autouse=True)
def reset_calls():
    calls.clear()
    yield
    calls.clear()


def node(node_id: str, node_type: str, **data) -> Node:
    return Node(id=node_id, type=node_type, data=data)


def edge(source: str, target: str, handle: str = "text-in") -> Edge:
    return Edge(id=f"{source}-{target}", source=source, target=target, target_handle=handle)


class Recorder:
    """Collects (node_id, status) transitions and the final output per node."""

    def __init__(self):
        self.events: list[tuple[str, str]] = []
        self.outputs: dict[str, NodeOutput] = {}

    def __call__(self, node_id, status, output):
        self.events.append((node_id, status))
        if output is not None:
            self.outputs[node_id] = output

    def statuses_for(self, node_id: str) -> list[str]:
        return [s for nid, s in self.events if nid == node_id]


async def run_graph(nodes, edges, cached=None, provider_id="mistral"):
    recorder = Recorder()
    runner = ExecutionRunner(REGISTRY)
    outputs = await runner.run(build_plan(nodes, edges), nodes, provider_id, recorder, cached)
    return recorder, outputs


# ---------------------------------------------------------------------------
# Ordering and statuses
# ---------------------------------------------------------------------------


class TestRunOrdering:
    @pytest.mark.asyncio
    async def test_chain_runs_in_order_and_threads_text(self):
        """A -> B -> C, each executor sees its predecessor's output."""
        nodes = [node("A", "initialPrompt", text="hello"), node("B", "promptEnhancer"), node("C", "promptEnhancer")]
        recorder, outputs = await run_graph(nodes, [edge("A", "B"), edge("B", "C")])

        assert calls == ["A", "B", "C"]
        assert outputs["C"].text == "HELLO"
        assert recorder.events == [
            ("A", "pending"), ("B", "pending"), ("C", "pending"),
            ("A", "running"), ("A", "complete"),
            ("B", "running"), ("B", "complete"),
            ("C", "running"), ("C", "complete"),
        ]

    @pytest.mark.asyncio
    async def test_all_pending_before_any_running(self):
        nodes = [node("A", "initialPrompt", text="x"), node("B", "promptEnhancer")]
        recorder, _ = await run_graph(nodes, [edge("A", "B")])

        assert recorder.events == [
            ("A", "pending"),
            ("B", "pending"),
            ("A", "running"),
            ("A", "complete"),
            ("B", "running"),
            ("B", "complete"),
        ]

    @pytest.mark.asyncio
    async def test_fan_in_merges_inputs_in_edge_order(self):
        nodes = [
            node("A", "initialPrompt", text="one"),
            node("B", "initialPrompt", text="two"),
            node("C", "promptEnhancer"),
        ]
        _, outputs = await run_graph(nodes, [edge("B", "C"), edge("A", "C")])
        assert outputs["C"].text == "TWO\n\nONE"

    @pytest.mark.asyncio
    async def test_adapter_inputs_delivered_separately(self):
        nodes = [
            node("P1", "consistentCharacter", characterName="Ada", characterDescription="tall"),
            node("P2", "consistentCharacter", characterName="Bo"),
            node("R", "personasReplacer"),
        ]
        edges = [edge("P1", "R", "adapter-persona"), edge("P2", "R", "adapter-persona")]
        _, outputs = await run_graph(nodes, edges)

        assert outputs["R"].text == "Ada,Bo"
        assert outputs["P1"].persona_description == "tall"

    @pytest.mark.asyncio
    async def test_executor_duration_kept_and_missing_duration_filled(self):
        nodes = [node("P", "consistentCharacter", characterName="Ada"), node("R", "personasReplacer")]
        _, outputs = await run_graph(nodes, [edge("P", "R", "adapter-x")])

        assert outputs["R"].duration_ms == 7
        assert outputs["P"].duration_ms is not None

    @pytest.mark.asyncio
    async def test_empty_plan_raises(self):
        runner = ExecutionRunner(REGISTRY)
        with pytest.raises(EmptyGraphError):
            await runner.run([], [], "mistral", Recorder())


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailurePropagation:
    @pytest.mark.asyncio
    async def test_failure_propagates_without_executing_downstream(self):
        """A -> B(fails) -> C: C is never invoked and reports an upstream failure."""
        nodes = [node("A", "initialPrompt", text="x"), node("B", "grammarFix"), node("C", "promptEnhancer")]
        recorder, outputs = await run_graph(nodes, [edge("A", "B"), edge("B", "C")])

        assert calls == ["A", "B"]
        assert outputs["B"].error == "boom"
        assert outputs["C"].error == UPSTREAM_FAILED
        assert recorder.statuses_for("C") == ["pending", "error"]

    @pytest.mark.asyncio
    async def test_failed_adapter_predecessor_blocks_consumer(self):
        nodes = [node("P", "grammarFix"), node("R", "personasReplacer")]
        _, outputs = await run_graph(nodes, [edge("P", "R", "adapter-persona")])

        assert calls == ["P"]
        assert outputs["R"].error == UPSTREAM_FAILED

    @pytest.mark.asyncio
    async def test_siblings_of_failed_node_still_run(self):
        nodes = [
            node("A", "initialPrompt", text="ok"),
            node("F", "grammarFix"),
            node("B", "promptEnhancer"),
        ]
        _, outputs = await run_graph(nodes, [edge("A", "B")])

        assert outputs["F"].failed
        assert outputs["B"].text == "OK"

    @pytest.mark.asyncio
    async def test_raised_exception_becomes_error_output(self):
        nodes = [node("A", "initialPrompt", text="x"), node("T", "translator"), node("C", "promptEnhancer")]
        recorder, outputs = await run_graph(nodes, [edge("A", "T"), edge("T", "C")])

        assert outputs["T"].error == "provider exploded"
        assert recorder.statuses_for("T") == ["pending", "running", "error"]
        assert outputs["C"].error == UPSTREAM_FAILED

    @pytest.mark.asyncio
    async def test_non_result_return_is_an_error(self):
        _, outputs = await run_graph([node("X", "compressor")], [])
        assert "expected NodeSuccess or NodeFailure" in outputs["X"].error

    @pytest.mark.asyncio
    async def test_unknown_type_skipped(self):
        nodes = [node("A", "initialPrompt", text="x"), node("N", "stickyNote"), node("B", "promptEnhancer")]
        recorder, outputs = await run_graph(nodes, [edge("A", "N"), edge("N", "B")])

        assert recorder.statuses_for("N") == ["pending", "skipped"]
        assert "N" not in outputs
        # A skipped predecessor contributes nothing but does not block
        assert outputs["B"].text == ""


# ---------------------------------------------------------------------------
# Cached outputs (partial runs)
# ---------------------------------------------------------------------------


class TestCachedOutputs:
    @pytest.mark.asyncio
    async def test_cached_predecessor_feeds_subset(self):
        all_nodes = [node("A", "initialPrompt", text="live"), node("B", "promptEnhancer")]
        edges = [edge("A", "B")]
        runner = ExecutionRunner(REGISTRY)
        recorder = Recorder()

        outputs = await runner.run(
            build_plan([all_nodes[1]], edges),
            all_nodes,
            "mistral",
            recorder,
            {"A": NodeOutput(text="cached")},
        )

        assert calls == ["B"]
        assert outputs["B"].text == "CACHED"
        assert outputs["A"].text == "cached"
        assert [nid for nid, _ in recorder.events] == ["B", "B", "B"]

    @pytest.mark.asyncio
    async def test_cached_failure_blocks_subset(self):
        all_nodes = [node("A", "initialPrompt"), node("B", "promptEnhancer")]
        runner = ExecutionRunner(REGISTRY)

        outputs = await runner.run(
            build_plan([all_nodes[1]], [edge("A", "B")]),
            all_nodes,
            "mistral",
            Recorder(),
            {"A": NodeOutput(error="earlier failure")},
        )

        assert calls == []
        assert outputs["B"].error == UPSTREAM_FAILED

    @pytest.mark.asyncio
    async def test_caller_cache_not_mutated(self):
        cache = {"A": NodeOutput(text="cached")}
        all_nodes = [node("A", "initialPrompt"), node("B", "promptEnhancer")]
        runner = ExecutionRunner(REGISTRY)

        await runner.run(build_plan([all_nodes[1]], [edge("A", "B")]), all_nodes, "mistral", Recorder(), cache)
        assert list(cache) == ["A"]
