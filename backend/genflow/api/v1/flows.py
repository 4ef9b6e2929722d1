"""
Flow editing and execution API endpoints.

The canvas sends graph mutations here; the orchestrator records undo history,
updates the graph and runs it. Flow state lives in memory only; persistence
pulls and pushes FlowSnapshot payloads through the load/snapshot endpoints.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from genflow.exceptions import (
    DuplicateNodeError,
    EdgeNotFoundError,
    FlowBusyError,
    FlowEngineError,
    FlowNotFoundError,
    NodeNotFoundError,
)
from genflow.models.graph import (
    CanvasModel,
    Edge,
    ExecutionState,
    FlowSnapshot,
    Node,
    NodeExecutionStatus,
    NodeOutput,
)
from genflow.services.flow_orchestrator import FlowContext, FlowOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flows", tags=["flows"])

_orchestrator: Optional[FlowOrchestrator] = None


def get_orchestrator() -> FlowOrchestrator:
    """Get the process-wide orchestrator (overridden in tests)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = FlowOrchestrator()
    return _orchestrator


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class CreateFlowRequest(BaseModel):
    name: str = Field("Untitled", min_length=1)


class RenameFlowRequest(BaseModel):
    name: str = Field(..., min_length=1)


class ProviderRequest(CanvasModel):
    provider_id: str = Field(..., min_length=1)


class NodeDataRequest(BaseModel):
    data: Dict[str, Any]


class MoveNodeRequest(BaseModel):
    x: float
    y: float


class SetParentRequest(CanvasModel):
    parent_id: str


class AddEdgeRequest(CanvasModel):
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class FlowSummary(BaseModel):
    id: str
    name: str
    is_running: bool
    is_dirty: bool


class FlowResponse(CanvasModel):
    id: str
    name: str
    nodes: List[Node]
    edges: List[Edge]
    provider_id: str
    execution: ExecutionState
    is_dirty: bool
    can_undo: bool
    can_redo: bool


class HistoryResponse(BaseModel):
    applied: bool
    flow: FlowResponse


def _flow_response(ctx: FlowContext) -> FlowResponse:
    return FlowResponse(
        id=ctx.id,
        name=ctx.name,
        nodes=ctx.nodes,
        edges=ctx.edges,
        provider_id=ctx.execution.provider_id,
        execution=ctx.execution,
        is_dirty=ctx.is_dirty,
        can_undo=ctx.history.can_undo(),
        can_redo=ctx.history.can_redo(),
    )


def _to_http(e: FlowEngineError) -> HTTPException:
    if isinstance(e, (FlowNotFoundError, NodeNotFoundError, EdgeNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (FlowBusyError, DuplicateNodeError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Flow lifecycle
# ---------------------------------------------------------------------------


@router.get("", response_model=List[FlowSummary])
async def list_flows(orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    return [
        FlowSummary(id=ctx.id, name=ctx.name, is_running=ctx.execution.is_running, is_dirty=ctx.is_dirty)
        for ctx in orchestrator.list_flows()
    ]


@router.post("", response_model=FlowResponse, status_code=201)
async def create_flow(
    request: CreateFlowRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    ctx = orchestrator.create_flow(request.name)
    return _flow_response(ctx)


@router.post("/load", response_model=FlowResponse, status_code=201)
async def load_flow(
    snapshot: FlowSnapshot,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    """Open a persisted flow. Loaded flows start idle with no outputs."""
    ctx = orchestrator.load_flow(snapshot)
    return _flow_response(ctx)


@router.get("/{flow_id}", response_model=FlowResponse)
async def get_flow(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    try:
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.get("/{flow_id}/snapshot", response_model=FlowSnapshot)
async def get_flow_snapshot(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    """Serializable flow for the persistence layer (no runtime state)."""
    try:
        return orchestrator.to_snapshot(flow_id)
    except FlowEngineError as e:
        raise _to_http(e)


@router.post("/{flow_id}/saved", status_code=204)
async def mark_flow_saved(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.mark_clean(flow_id)
    except FlowEngineError as e:
        raise _to_http(e)


@router.delete("/{flow_id}", status_code=204)
async def close_flow(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.close_flow(flow_id)
    except FlowEngineError as e:
        raise _to_http(e)


@router.patch("/{flow_id}", response_model=FlowResponse)
async def rename_flow(
    flow_id: str,
    request: RenameFlowRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        return _flow_response(orchestrator.rename_flow(flow_id, request.name))
    except FlowEngineError as e:
        raise _to_http(e)


@router.put("/{flow_id}/provider", response_model=FlowResponse)
async def set_provider(
    flow_id: str,
    request: ProviderRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        return _flow_response(orchestrator.set_provider_id(flow_id, request.provider_id))
    except FlowEngineError as e:
        raise _to_http(e)


# ---------------------------------------------------------------------------
# Graph mutations
# ---------------------------------------------------------------------------


@router.post("/{flow_id}/nodes", response_model=FlowResponse, status_code=201)
async def add_node(
    flow_id: str,
    node: Node,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.add_node(flow_id, node)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.patch("/{flow_id}/nodes/{node_id}/data", response_model=FlowResponse)
async def update_node_data(
    flow_id: str,
    node_id: str,
    request: NodeDataRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.update_node_data(flow_id, node_id, request.data)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.patch("/{flow_id}/nodes/{node_id}/position", response_model=FlowResponse)
async def move_node(
    flow_id: str,
    node_id: str,
    request: MoveNodeRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.move_node(flow_id, node_id, request.x, request.y)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.delete("/{flow_id}/nodes/{node_id}", response_model=FlowResponse)
async def remove_node(
    flow_id: str,
    node_id: str,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.remove_node(flow_id, node_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.put("/{flow_id}/nodes/{node_id}/parent", response_model=FlowResponse)
async def set_node_parent(
    flow_id: str,
    node_id: str,
    request: SetParentRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.set_node_parent(flow_id, node_id, request.parent_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.delete("/{flow_id}/nodes/{node_id}/parent", response_model=FlowResponse)
async def remove_node_from_group(
    flow_id: str,
    node_id: str,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.remove_node_from_group(flow_id, node_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.post("/{flow_id}/edges", response_model=FlowResponse, status_code=201)
async def add_edge(
    flow_id: str,
    request: AddEdgeRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    edge_id = request.id or (
        f"xy-edge__{request.source}{request.source_handle or ''}"
        f"-{request.target}{request.target_handle or ''}"
    )
    edge = Edge(
        id=edge_id,
        source=request.source,
        target=request.target,
        source_handle=request.source_handle,
        target_handle=request.target_handle,
    )
    try:
        orchestrator.add_edge(flow_id, edge)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.delete("/{flow_id}/edges/{edge_id}", response_model=FlowResponse)
async def remove_edge(
    flow_id: str,
    edge_id: str,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.remove_edge(flow_id, edge_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


# ---------------------------------------------------------------------------
# Undo / redo
# ---------------------------------------------------------------------------


@router.post("/{flow_id}/undo", response_model=HistoryResponse)
async def undo(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    try:
        applied = orchestrator.undo(flow_id)
        return HistoryResponse(applied=applied, flow=_flow_response(orchestrator.get_flow(flow_id)))
    except FlowEngineError as e:
        raise _to_http(e)


@router.post("/{flow_id}/redo", response_model=HistoryResponse)
async def redo(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    try:
        applied = orchestrator.redo(flow_id)
        return HistoryResponse(applied=applied, flow=_flow_response(orchestrator.get_flow(flow_id)))
    except FlowEngineError as e:
        raise _to_http(e)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@router.post("/{flow_id}/run", response_model=FlowResponse)
async def run_flow(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    """
    Run the whole graph and return the final state.

    Node failures are reported per node in ``execution``; a cycle or an empty
    graph is reported in ``execution.globalError``.
    """
    try:
        await orchestrator.run_pipeline(flow_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.post("/{flow_id}/nodes/{node_id}/run", response_model=FlowResponse)
async def run_from_node(
    flow_id: str,
    node_id: str,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    """Re-run a node and everything downstream of it, reusing cached upstream outputs."""
    try:
        await orchestrator.run_from_node(flow_id, node_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.post("/{flow_id}/reset", response_model=FlowResponse)
async def reset_execution(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.reset_execution(flow_id)
        return _flow_response(orchestrator.get_flow(flow_id))
    except FlowEngineError as e:
        raise _to_http(e)


@router.post("/{flow_id}/run/stream")
async def run_flow_stream(flow_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    """
    Run the whole graph with Server-Sent Events (SSE) streaming.

    Events:
    - {"event": "node_status", "node_id": "...", "status": "...", "output": {...}}
    - {"event": "flow_complete", "execution": {...}}
    - {"event": "flow_error", "error": "...", "execution": {...}}
    """
    try:
        ctx = orchestrator.get_flow(flow_id)
    except FlowEngineError as e:
        raise _to_http(e)
    if ctx.execution.is_running:
        raise _to_http(FlowBusyError(flow_id))

    async def event_generator():
        # Decouples the runner's synchronous callbacks from the response stream
        event_queue: asyncio.Queue = asyncio.Queue()

        def listener(node_id: str, status: NodeExecutionStatus, output: Optional[NodeOutput] = None) -> None:
            event_queue.put_nowait({
                "event": "node_status",
                "node_id": node_id,
                "status": status,
                "output": output.model_dump(by_alias=True, exclude_none=True) if output else None,
            })

        async def run():
            try:
                state = await orchestrator.run_pipeline(flow_id, on_status=listener)
                execution = state.model_dump(by_alias=True, exclude_none=True)
                if state.global_error:
                    event_queue.put_nowait({"event": "flow_error", "error": state.global_error, "execution": execution})
                else:
                    event_queue.put_nowait({"event": "flow_complete", "execution": execution})
            except FlowEngineError as e:
                event_queue.put_nowait({"event": "flow_error", "error": str(e)})
            except Exception as e:
                logger.exception("Streaming run of flow %s failed", flow_id)
                event_queue.put_nowait({"event": "flow_error", "error": f"{type(e).__name__}: {e}"})
            finally:
                event_queue.put_nowait(None)

        task = asyncio.create_task(run())
        while True:
            event = await event_queue.get()
            if event is None:
                break
            yield f"data: {json.dumps(event)}\n\n"
        await task

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
