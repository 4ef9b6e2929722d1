"""
Flow execution runner.

Takes a compiled plan, walks it strictly in order, gathers each node's text
and adapter inputs from upstream outputs, dispatches to the registered
executor for the node type, and reports every status transition.

Key behaviours:
- Sequential: each executor is awaited before the next step starts.
- Unknown node types are skipped, not failed (annotation nodes have no executor).
- A failing node never aborts the run. Its error output is recorded and every
  node downstream of it fails with "Upstream node failed" without executing.
- Only structural problems (an empty plan) raise out of ``run``.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, Field

from genflow.exceptions import EmptyGraphError
from genflow.models.graph import (
    ExecutionStep,
    Node,
    NodeExecutionResult,
    NodeExecutionStatus,
    NodeFailure,
    NodeOutput,
    NodeSuccess,
)
from genflow.models.node_registry import NodeConfig, parse_node_config, resolve_model_for_node

logger = logging.getLogger(__name__)

UPSTREAM_FAILED = "Upstream node failed"


class NodeExecutionContext(BaseModel):
    node_id: str
    node_data: NodeConfig
    inputs: list[NodeOutput] = Field(default_factory=list)
    adapter_inputs: list[NodeOutput] = Field(default_factory=list)
    provider_id: str
    model: str | None = None


NodeExecutor = Callable[[NodeExecutionContext], Awaitable[NodeExecutionResult]]
StatusCallback = Callable[[str, NodeExecutionStatus, Optional[NodeOutput]], None]


class ExecutionRunner:
    """Drives node executors over a plan. Holds no state between runs."""

    def __init__(self, registry: Mapping[str, NodeExecutor]):
        self.registry = registry

    async def run(
        self,
        steps: list[ExecutionStep],
        nodes: list[Node],
        provider_id: str,
        on_status: StatusCallback,
        cached_outputs: Mapping[str, NodeOutput] | None = None,
    ) -> dict[str, NodeOutput]:
        """
        Execute ``steps`` in order and return every known output, including
        the seeded ``cached_outputs`` of nodes that were not re-run.
        """
        if not steps:
            raise EmptyGraphError()

        outputs: dict[str, NodeOutput] = dict(cached_outputs or {})
        node_map: dict[str, Node] = {}
        for node in nodes:
            node_map.setdefault(node.id, node)

        # Mark the whole path pending up front
        for step in steps:
            on_status(step.node_id, "pending", None)

        counts = {"complete": 0, "error": 0, "skipped": 0}
        run_start = time.perf_counter()

        for step in steps:
            node_id = step.node_id

            exec_fn = self.registry.get(step.node_type)
            if exec_fn is None:
                logger.debug("No executor for node type '%s', skipping %s", step.node_type, node_id)
                counts["skipped"] += 1
                on_status(node_id, "skipped", None)
                continue

            if self._has_failed_predecessor(step, outputs):
                output = NodeOutput(error=UPSTREAM_FAILED)
                outputs[node_id] = output
                counts["error"] += 1
                on_status(node_id, "error", output)
                continue

            node = node_map.get(node_id)
            if node is None:
                counts["skipped"] += 1
                on_status(node_id, "skipped", None)
                continue

            on_status(node_id, "running", None)
            status, output = await self._execute_step(step, node, exec_fn, outputs, provider_id)
            outputs[node_id] = output
            counts[status] += 1
            on_status(node_id, status, output)

        logger.info(
            "Run finished in %d ms: %d complete, %d error, %d skipped",
            int((time.perf_counter() - run_start) * 1000),
            counts["complete"],
            counts["error"],
            counts["skipped"],
        )
        return outputs

    @staticmethod
    def _has_failed_predecessor(step: ExecutionStep, outputs: Mapping[str, NodeOutput]) -> bool:
        for pred_id in (*step.input_node_ids, *step.adapter_node_ids):
            upstream = outputs.get(pred_id)
            if upstream is not None and upstream.failed:
                return True
        return False

    async def _execute_step(
        self,
        step: ExecutionStep,
        node: Node,
        exec_fn: NodeExecutor,
        outputs: Mapping[str, NodeOutput],
        provider_id: str,
    ) -> tuple[NodeExecutionStatus, NodeOutput]:
        node_start = time.perf_counter()
        try:
            config = parse_node_config(step.node_type, node.data)
            effective_provider, model = resolve_model_for_node(step.node_type, config, provider_id)
            ctx = NodeExecutionContext(
                node_id=step.node_id,
                node_data=config,
                inputs=[outputs[i] for i in step.input_node_ids if i in outputs],
                adapter_inputs=[outputs[i] for i in step.adapter_node_ids if i in outputs],
                provider_id=effective_provider,
                model=model,
            )
            logger.debug(
                "Executing %s (%s) via %s/%s with %d inputs, %d adapters",
                step.node_id,
                step.node_type,
                effective_provider,
                model,
                len(ctx.inputs),
                len(ctx.adapter_inputs),
            )

            result = await exec_fn(ctx)

            if isinstance(result, NodeFailure):
                status: NodeExecutionStatus = "error"
            elif isinstance(result, NodeSuccess):
                status = "complete"
            else:
                raise TypeError(
                    f"Executor for '{step.node_type}' returned {type(result).__name__}, "
                    "expected NodeSuccess or NodeFailure"
                )
            output = result.output

        except Exception as e:
            logger.exception("Node %s failed: %s", step.node_id, e)
            status = "error"
            output = NodeOutput(error=str(e) or type(e).__name__)

        if output.duration_ms is None:
            elapsed_ms = int((time.perf_counter() - node_start) * 1000)
            output = output.model_copy(update={"duration_ms": elapsed_ms})
        return status, output
