"""
Graph and execution models shared by the compiler, runner, orchestrator and
undo history.

The canvas speaks camelCase JSON (``parentId``, ``targetHandle``,
``personaDescription``); every model accepts both the alias and the snake_case
field name, and ``model_dump(by_alias=True)`` round-trips to the canvas shape.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# Target handles with this prefix mark side-channel (fan-in) adapter edges
ADAPTER_HANDLE_PREFIX = "adapter-"

# Container node type; never executed
GROUP_NODE_TYPE = "group"

NodeExecutionStatus = Literal["idle", "pending", "running", "complete", "error", "skipped"]


class CanvasModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class Position(CanvasModel):
    x: float = 0.0
    y: float = 0.0


class Node(CanvasModel):
    # Canvas-only fields (width, extent, selected, ...) are carried through untouched
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    type: str = "unknown"
    data: dict[str, Any] = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)
    parent_id: str | None = None

    @property
    def is_group(self) -> bool:
        return self.type == GROUP_NODE_TYPE


class Edge(CanvasModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None

    @property
    def is_adapter(self) -> bool:
        """Adapter edges feed auxiliary inputs; everything else is a text edge."""
        return (self.target_handle or "").startswith(ADAPTER_HANDLE_PREFIX)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionStep(CanvasModel):
    node_id: str
    node_type: str
    input_node_ids: list[str] = Field(default_factory=list)
    adapter_node_ids: list[str] = Field(default_factory=list)


class NodeOutput(CanvasModel):
    text: str | None = None
    image: str | None = None
    error: str | None = None
    persona_description: str | None = None
    persona_name: str | None = None
    replace_prompt: str | None = None
    injected_prompt: str | None = None
    duration_ms: int | None = None

    @property
    def failed(self) -> bool:
        return bool(self.error)


class NodeSuccess(BaseModel):
    status: Literal["complete"] = "complete"
    output: NodeOutput = Field(default_factory=NodeOutput)


class NodeFailure(BaseModel):
    """
    A failed node result. ``output`` may carry partial fields for diagnostics;
    its ``error`` is always populated from ``error``.
    """

    status: Literal["error"] = "error"
    error: str
    output: NodeOutput = Field(default_factory=NodeOutput)

    @model_validator(mode="after")
    def _stamp_error(self) -> "NodeFailure":
        if not self.output.error:
            self.output = self.output.model_copy(update={"error": self.error})
        return self


NodeExecutionResult = Union[NodeSuccess, NodeFailure]


class ExecutionState(CanvasModel):
    is_running: bool = False
    node_status: dict[str, NodeExecutionStatus] = Field(default_factory=dict)
    node_outputs: dict[str, NodeOutput] = Field(default_factory=dict)
    global_error: str | None = None
    provider_id: str


# ---------------------------------------------------------------------------
# History / persistence
# ---------------------------------------------------------------------------


class Snapshot(CanvasModel):
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @classmethod
    def capture(cls, nodes: list[Node], edges: list[Edge]) -> "Snapshot":
        """Structural copy; later graph mutations never leak into the snapshot."""
        return cls(
            nodes=[n.model_copy(deep=True) for n in nodes],
            edges=[e.model_copy(deep=True) for e in edges],
        )


class FlowSnapshot(CanvasModel):
    """Serializable flow shape exchanged with the persistence layer."""

    id: str
    name: str
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    provider_id: str | None = None
