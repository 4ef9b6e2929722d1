"""
Exception hierarchy for the flow engine.

Structural failures (cycles, empty graphs) abort a run and surface as the
flow-level ``global_error``. Per-node failures never raise out of the runner;
they are recorded as node outputs instead.
"""


class FlowEngineError(Exception):
    """Base class for engine errors."""


class CycleError(FlowEngineError):
    """Raised when the text/adapter edges of a graph form a cycle."""

    def __init__(self, message: str = "Graph contains a cycle. Please remove circular connections."):
        super().__init__(message)


class EmptyGraphError(FlowEngineError):
    """Raised when a plan has no executable steps."""

    def __init__(self, message: str = "No executable nodes found. Connect your nodes and try again."):
        super().__init__(message)


class FlowBusyError(FlowEngineError):
    """Raised when a run is requested while another run of the flow is active."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' is already running")


class FlowNotFoundError(FlowEngineError, KeyError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class NodeNotFoundError(FlowEngineError, KeyError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class EdgeNotFoundError(FlowEngineError, KeyError):
    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge '{edge_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateNodeError(FlowEngineError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' already exists")
