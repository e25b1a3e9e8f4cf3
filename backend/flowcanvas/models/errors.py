"""
Error taxonomy for graph editing and workflow execution.

Validation errors are raised to the caller. Run errors (missing credential,
failed service call) are recorded on the failing node by the execution
engine and never escape it.
"""

from __future__ import annotations


class FlowCanvasError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InputRequiredError(FlowCanvasError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__("Please enter a prompt before sending")


class NoDownstreamError(FlowCanvasError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} has no outgoing connections")


class DuplicateConnectionError(FlowCanvasError):
    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__("A connection already exists between these nodes")


class SelfConnectionError(FlowCanvasError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} cannot be connected to itself")


class NodeNotFoundError(FlowCanvasError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} not found")


class UnknownNodeTypeError(FlowCanvasError):
    def __init__(self, type_tag: str):
        self.type_tag = type_tag
        super().__init__(f"Unknown node type '{type_tag}'")


class MissingCredentialError(FlowCanvasError):
    def __init__(self, credential_label: str):
        self.credential_label = credential_label
        super().__init__(f"{credential_label} required")


class ServiceCallError(FlowCanvasError):
    """Raised when a generative service call fails (transport, status or body)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StorageOverflowError(FlowCanvasError):
    def __init__(self, key: str, payload_bytes: int, limit_bytes: int):
        self.key = key
        self.payload_bytes = payload_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Snapshot for {key} is too large to store "
            f"({payload_bytes} bytes exceeds limit of {limit_bytes} bytes)"
        )
