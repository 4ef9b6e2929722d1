"""
Flow orchestrator: owner of every open flow's graph, execution state and undo
history.

Each open flow lives in a FlowContext, constructed when the flow is created or
loaded and disposed when it is closed. The orchestrator is the only writer of
a flow's ExecutionState: the runner reports transitions through a callback and
the orchestrator merges them in.

Partial runs ("run from node") re-execute only the nodes selected by
``select_execution_set``; every other node keeps its status and output.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Mapping, Optional

from genflow import config
from genflow.exceptions import (
    DuplicateNodeError,
    EdgeNotFoundError,
    FlowBusyError,
    FlowEngineError,
    FlowNotFoundError,
    NodeNotFoundError,
)
from genflow.models.graph import (
    Edge,
    ExecutionState,
    FlowSnapshot,
    Node,
    NodeExecutionStatus,
    NodeOutput,
    Position,
    Snapshot,
)
from genflow.services.flow_runner import ExecutionRunner, NodeExecutor, StatusCallback
from genflow.services.plan_compiler import build_plan, get_downstream_nodes, get_upstream_nodes
from genflow.services.undo_manager import UndoManager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run selection
# ---------------------------------------------------------------------------


def select_execution_set(
    trigger_node_id: str,
    nodes: list[Node],
    edges: list[Edge],
    existing_outputs: Mapping[str, NodeOutput],
) -> set[str]:
    """
    Pick the nodes that must (re-)run for a "run from node" request.

    1. The trigger and everything downstream of it.
    2. Upstream ancestors without a usable cached output (an output carrying
       an error is not usable).
    3. Adapter sources of anything selected, to a fixed point: injected side
       data must be fresh whenever its consumer runs. A source pulled in this
       way brings its own uncached ancestors along, so it never runs on
       missing inputs.
    """
    selected = get_downstream_nodes(trigger_node_id, nodes, edges)
    _add_uncached_ancestors(trigger_node_id, nodes, edges, existing_outputs, selected)

    node_ids = {n.id for n in nodes}
    changed = True
    while changed:
        changed = False
        for edge in edges:
            if (
                edge.is_adapter
                and edge.target in selected
                and edge.source in node_ids
                and edge.source not in selected
            ):
                selected.add(edge.source)
                _add_uncached_ancestors(edge.source, nodes, edges, existing_outputs, selected)
                changed = True

    return selected


def _add_uncached_ancestors(
    node_id: str,
    nodes: list[Node],
    edges: list[Edge],
    existing_outputs: Mapping[str, NodeOutput],
    selected: set[str],
) -> None:
    for ancestor_id in get_upstream_nodes(node_id, nodes, edges):
        cached = existing_outputs.get(ancestor_id)
        if cached is None or cached.failed:
            selected.add(ancestor_id)


# ---------------------------------------------------------------------------
# Per-flow context
# ---------------------------------------------------------------------------


def sort_nodes(nodes: list[Node]) -> list[Node]:
    """Ensure parent (group) nodes appear before their children."""
    parents = [n for n in nodes if n.is_group]
    top_level = [n for n in nodes if not n.is_group and not n.parent_id]
    children = [n for n in nodes if not n.is_group and n.parent_id]
    return [*parents, *top_level, *children]


def default_nodes() -> list[Node]:
    return [
        Node(
            id="initial-prompt-1",
            type="initialPrompt",
            position=Position(x=300, y=200),
            data={"label": "Initial Prompt", "text": ""},
        )
    ]


class FlowContext:
    """Graph, execution state and undo history of one open flow."""

    def __init__(
        self,
        flow_id: str,
        name: str,
        nodes: list[Node],
        edges: list[Edge],
        provider_id: str,
        history: UndoManager,
    ):
        self.id = flow_id
        self.name = name
        self.nodes = sort_nodes(list(nodes))
        self.edges = list(edges)
        self.execution = ExecutionState(provider_id=provider_id)
        self.history = history
        self.is_dirty = False
        self.last_saved_at: float | None = None

    def snapshot(self) -> Snapshot:
        return Snapshot.capture(self.nodes, self.edges)

    def restore(self, snapshot: Snapshot) -> None:
        restored = Snapshot.capture(snapshot.nodes, snapshot.edges)
        self.nodes = restored.nodes
        self.edges = restored.edges

    def find_node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise NodeNotFoundError(node_id)

    def replace_node(self, updated: Node) -> None:
        self.nodes = [updated if n.id == updated.id else n for n in self.nodes]

    def dispose(self) -> None:
        self.history.dispose()
        self.nodes = []
        self.edges = []


UndoFactory = Callable[[Snapshot], UndoManager]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class FlowOrchestrator:
    def __init__(
        self,
        registry: Mapping[str, NodeExecutor] | None = None,
        undo_factory: UndoFactory | None = None,
    ):
        if registry is None:
            from genflow.services.node_executors import get_registry
            registry = get_registry()
        self.runner = ExecutionRunner(registry)
        self._undo_factory: UndoFactory = undo_factory or UndoManager
        self._flows: dict[str, FlowContext] = {}

    # ------------------------------------------------------------------
    # Flow lifecycle
    # ------------------------------------------------------------------

    def create_flow(self, name: str, flow_id: str | None = None) -> FlowContext:
        return self._open(
            flow_id or str(uuid.uuid4()),
            name,
            default_nodes(),
            [],
            config.DEFAULT_PROVIDER_ID,
        )

    def load_flow(self, snapshot: FlowSnapshot) -> FlowContext:
        if snapshot.id in self._flows:
            self.close_flow(snapshot.id)
        ctx = self._open(
            snapshot.id,
            snapshot.name,
            snapshot.nodes,
            snapshot.edges,
            snapshot.provider_id or config.DEFAULT_PROVIDER_ID,
        )
        ctx.last_saved_at = time.time()
        return ctx

    def _open(
        self,
        flow_id: str,
        name: str,
        nodes: list[Node],
        edges: list[Edge],
        provider_id: str,
    ) -> FlowContext:
        initial = Snapshot.capture(sort_nodes(list(nodes)), edges)
        ctx = FlowContext(flow_id, name, nodes, edges, provider_id, self._undo_factory(initial))
        self._flows[flow_id] = ctx
        logger.info("Opened flow %s (%s) with %d nodes", flow_id, name, len(ctx.nodes))
        return ctx

    def close_flow(self, flow_id: str) -> None:
        ctx = self._flows.pop(flow_id, None)
        if ctx is None:
            raise FlowNotFoundError(flow_id)
        ctx.dispose()
        logger.info("Closed flow %s", flow_id)

    def get_flow(self, flow_id: str) -> FlowContext:
        ctx = self._flows.get(flow_id)
        if ctx is None:
            raise FlowNotFoundError(flow_id)
        return ctx

    def list_flows(self) -> list[FlowContext]:
        return list(self._flows.values())

    def rename_flow(self, flow_id: str, name: str) -> FlowContext:
        ctx = self.get_flow(flow_id)
        ctx.name = name
        self._mark_dirty(ctx)
        return ctx

    def set_provider_id(self, flow_id: str, provider_id: str) -> FlowContext:
        ctx = self.get_flow(flow_id)
        ctx.execution.provider_id = provider_id
        self._mark_dirty(ctx)
        return ctx

    def to_snapshot(self, flow_id: str) -> FlowSnapshot:
        ctx = self.get_flow(flow_id)
        return FlowSnapshot(
            id=ctx.id,
            name=ctx.name,
            nodes=[n.model_copy(deep=True) for n in ctx.nodes],
            edges=[e.model_copy(deep=True) for e in ctx.edges],
            provider_id=ctx.execution.provider_id,
        )

    def mark_clean(self, flow_id: str) -> None:
        ctx = self.get_flow(flow_id)
        ctx.is_dirty = False
        ctx.last_saved_at = time.time()

    @staticmethod
    def _mark_dirty(ctx: FlowContext) -> None:
        ctx.is_dirty = True

    # ------------------------------------------------------------------
    # Graph mutations (each records the "before" snapshot first)
    # ------------------------------------------------------------------

    def _record(self, ctx: FlowContext, debounce: bool = False) -> None:
        ctx.history.push_snapshot(ctx.snapshot(), debounce=debounce)

    def add_node(self, flow_id: str, node: Node) -> Node:
        ctx = self.get_flow(flow_id)
        if any(n.id == node.id for n in ctx.nodes):
            raise DuplicateNodeError(node.id)
        self._record(ctx)
        ctx.nodes = sort_nodes([*ctx.nodes, node])
        self._mark_dirty(ctx)
        return node

    def remove_node(self, flow_id: str, node_id: str) -> None:
        """Remove a node and its edges as one undoable action."""
        ctx = self.get_flow(flow_id)
        node = ctx.find_node(node_id)
        self._record(ctx)

        remaining: list[Node] = []
        for other in ctx.nodes:
            if other.id == node_id:
                continue
            if node.is_group and other.parent_id == node_id:
                # Children outlive their container; keep them where they were drawn
                other = other.model_copy(update={
                    "parent_id": None,
                    "position": _absolute_position(other, node),
                })
            remaining.append(other)

        ctx.nodes = sort_nodes(remaining)
        ctx.edges = [e for e in ctx.edges if e.source != node_id and e.target != node_id]
        ctx.execution.node_status.pop(node_id, None)
        ctx.execution.node_outputs.pop(node_id, None)
        self._mark_dirty(ctx)

    def add_edge(self, flow_id: str, edge: Edge) -> Edge:
        ctx = self.get_flow(flow_id)
        ctx.find_node(edge.source)
        ctx.find_node(edge.target)

        for existing in ctx.edges:
            if (
                existing.source == edge.source
                and existing.target == edge.target
                and existing.source_handle == edge.source_handle
                and existing.target_handle == edge.target_handle
            ):
                return existing

        self._record(ctx)
        ctx.edges = [*ctx.edges, edge]
        self._mark_dirty(ctx)
        return edge

    def remove_edge(self, flow_id: str, edge_id: str) -> None:
        ctx = self.get_flow(flow_id)
        if not any(e.id == edge_id for e in ctx.edges):
            raise EdgeNotFoundError(edge_id)
        self._record(ctx)
        ctx.edges = [e for e in ctx.edges if e.id != edge_id]
        self._mark_dirty(ctx)

    def update_node_data(self, flow_id: str, node_id: str, data: dict[str, Any]) -> Node:
        """Shallow-merge ``data`` into the node's data bag (debounced history)."""
        ctx = self.get_flow(flow_id)
        node = ctx.find_node(node_id)
        self._record(ctx, debounce=True)
        updated = node.model_copy(update={"data": {**node.data, **data}})
        ctx.replace_node(updated)
        self._mark_dirty(ctx)
        return updated

    def move_node(self, flow_id: str, node_id: str, x: float, y: float) -> Node:
        ctx = self.get_flow(flow_id)
        node = ctx.find_node(node_id)
        self._record(ctx, debounce=True)
        updated = node.model_copy(update={"position": Position(x=x, y=y)})
        ctx.replace_node(updated)
        self._mark_dirty(ctx)
        return updated

    def set_node_parent(self, flow_id: str, node_id: str, parent_id: str) -> Node:
        ctx = self.get_flow(flow_id)
        child = ctx.find_node(node_id)
        parent = ctx.find_node(parent_id)
        self._record(ctx)

        relative = Position(
            x=child.position.x - parent.position.x,
            y=child.position.y - parent.position.y,
        )
        updated = child.model_copy(update={"parent_id": parent_id, "position": relative})
        ctx.replace_node(updated)
        ctx.nodes = sort_nodes(ctx.nodes)
        self._mark_dirty(ctx)
        return updated

    def remove_node_from_group(self, flow_id: str, node_id: str) -> Node:
        ctx = self.get_flow(flow_id)
        child = ctx.find_node(node_id)
        if not child.parent_id:
            return child

        parent = next((n for n in ctx.nodes if n.id == child.parent_id), None)
        self._record(ctx)
        position = _absolute_position(child, parent) if parent else child.position
        updated = child.model_copy(update={"parent_id": None, "position": position})
        ctx.replace_node(updated)
        ctx.nodes = sort_nodes(ctx.nodes)
        self._mark_dirty(ctx)
        return updated

    # ------------------------------------------------------------------
    # Undo / redo
    # ------------------------------------------------------------------

    def undo(self, flow_id: str) -> bool:
        ctx = self.get_flow(flow_id)
        restored = ctx.history.undo(ctx.snapshot())
        if restored is None:
            return False
        ctx.restore(restored)
        self._mark_dirty(ctx)
        return True

    def redo(self, flow_id: str) -> bool:
        ctx = self.get_flow(flow_id)
        restored = ctx.history.redo(ctx.snapshot())
        if restored is None:
            return False
        ctx.restore(restored)
        self._mark_dirty(ctx)
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def reset_execution(self, flow_id: str) -> ExecutionState:
        ctx = self.get_flow(flow_id)
        self._ensure_idle(ctx)
        ctx.execution = ExecutionState(provider_id=ctx.execution.provider_id)
        return ctx.execution

    async def run_pipeline(
        self,
        flow_id: str,
        on_status: Optional[StatusCallback] = None,
    ) -> ExecutionState:
        """Run the whole graph, discarding every previous status and output."""
        ctx = self.get_flow(flow_id)
        self._ensure_idle(ctx)

        ctx.execution = ExecutionState(is_running=True, provider_id=ctx.execution.provider_id)
        nodes = list(ctx.nodes)
        edges = list(ctx.edges)

        logger.info("Running flow %s (%d nodes)", flow_id, len(nodes))
        await self._run(ctx, nodes, edges, on_status)
        return ctx.execution

    async def run_from_node(
        self,
        flow_id: str,
        node_id: str,
        on_status: Optional[StatusCallback] = None,
    ) -> ExecutionState:
        """Re-run ``node_id``, its downstream closure and any uncached prerequisites."""
        ctx = self.get_flow(flow_id)
        self._ensure_idle(ctx)
        ctx.find_node(node_id)

        selected = select_execution_set(node_id, ctx.nodes, ctx.edges, ctx.execution.node_outputs)
        for nid in selected:
            ctx.execution.node_status.pop(nid, None)
            ctx.execution.node_outputs.pop(nid, None)
        ctx.execution.is_running = True
        ctx.execution.global_error = None

        nodes = [n for n in ctx.nodes if n.id in selected]
        edges = list(ctx.edges)

        logger.info("Running flow %s from node %s (%d of %d nodes)", flow_id, node_id, len(nodes), len(ctx.nodes))
        await self._run(ctx, nodes, edges, on_status, cached_outputs=dict(ctx.execution.node_outputs))
        return ctx.execution

    async def _run(
        self,
        ctx: FlowContext,
        nodes: list[Node],
        edges: list[Edge],
        listener: Optional[StatusCallback],
        cached_outputs: Mapping[str, NodeOutput] | None = None,
    ) -> None:
        try:
            steps = build_plan(nodes, edges)
            await self.runner.run(
                steps,
                nodes,
                ctx.execution.provider_id,
                self._status_handler(ctx, listener),
                cached_outputs=cached_outputs,
            )
        except FlowEngineError as e:
            logger.warning("Flow %s failed: %s", ctx.id, e)
            ctx.execution.global_error = str(e)
        finally:
            ctx.execution.is_running = False

    def _status_handler(self, ctx: FlowContext, listener: Optional[StatusCallback]) -> StatusCallback:
        def on_status(node_id: str, status: NodeExecutionStatus, output: NodeOutput | None = None) -> None:
            ctx.execution.node_status[node_id] = status
            if output is not None:
                ctx.execution.node_outputs[node_id] = output
                if status in ("complete", "error"):
                    self._write_text_output(ctx, node_id, output)
            if listener is not None:
                listener(node_id, status, output)
        return on_status

    def _write_text_output(self, ctx: FlowContext, node_id: str, output: NodeOutput) -> None:
        """Push a finished textOutput node's text into its data so the canvas renders it."""
        if not output.text:
            return
        node = next((n for n in ctx.nodes if n.id == node_id), None)
        if node is None or node.type != "textOutput":
            return
        # Run results are not user edits: no history entry
        ctx.replace_node(node.model_copy(update={"data": {**node.data, "text": output.text}}))
        self._mark_dirty(ctx)

    @staticmethod
    def _ensure_idle(ctx: FlowContext) -> None:
        if ctx.execution.is_running:
            raise FlowBusyError(ctx.id)


def _absolute_position(child: Node, parent: Node) -> Position:
    return Position(
        x=child.position.x + parent.position.x,
        y=child.position.y + parent.position.y,
    )
