"""
Workflow graph model.

A single ``Graph`` owns every node and edge by id (arena + index). Nothing
inside a node points back at the graph; engine code always works with
``(graph, node_id)``.

Structural rules enforced here:
- no self-loops, no duplicate (source, target) edges
- every edge references existing nodes; deleting a node removes its edges
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    SerializeAsAny,
    model_validator,
)

from flowcanvas.models.errors import (
    DuplicateConnectionError,
    NodeNotFoundError,
    SelfConnectionError,
)
from flowcanvas.models.node_config import NodeConfig
from flowcanvas.models.node_registry import build_config, resolve_node_spec
from flowcanvas.models.payload import Blob, PayloadType, ResponseType

logger = logging.getLogger(__name__)


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class NodeRuntimeState(BaseModel):
    """Fields written only by the execution engine (through the state store)."""

    model_config = ConfigDict(validate_assignment=True)

    input: str | Blob | None = None
    input_type: PayloadType | None = None
    response: str | Blob | None = None
    response_type: ResponseType | None = None
    processing: bool = False
    executed: bool = False
    error: str | None = None
    context: list[dict[str, Any]] | str | None = None


RUNTIME_FIELDS = frozenset(NodeRuntimeState.model_fields)


class Node(BaseModel):
    id: str
    type_tag: str
    label: str = ""
    position: Position = Field(default_factory=Position)
    config: SerializeAsAny[NodeConfig] = Field(default_factory=NodeConfig)
    runtime: NodeRuntimeState = Field(default_factory=NodeRuntimeState)

    @model_validator(mode="before")
    @classmethod
    def _typed_config(cls, data: Any) -> Any:
        # Pick the config variant for this node type (also on deserialisation)
        if not isinstance(data, dict):
            return data
        type_tag = data.get("type_tag")
        if not type_tag:
            return data
        data = dict(data)
        config = data.get("config")
        if config is None or isinstance(config, dict):
            data["config"] = build_config(type_tag, config)
        if not data.get("label"):
            data["label"] = resolve_node_spec(type_tag).label
        return data


class Edge(BaseModel):
    id: str
    source: str
    target: str
    animated: bool = True


def _edge_id(source: str, target: str) -> str:
    return f"e-{source}-{target}-{uuid4().hex[:8]}"


class Graph(BaseModel):
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    _index: dict[str, Node] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _check_structure(self) -> "Graph":
        index: dict[str, Node] = {}
        for node in self.nodes:
            if node.id in index:
                raise ValueError(f"Duplicate node ID '{node.id}'")
            index[node.id] = node
        self._index = index

        valid_edges: list[Edge] = []
        seen_pairs: set[tuple[str, str]] = set()
        for edge in self.edges:
            pair = (edge.source, edge.target)
            if edge.source not in index or edge.target not in index:
                logger.warning("Dropping dangling edge %s (%s -> %s)", edge.id, *pair)
                continue
            if edge.source == edge.target or pair in seen_pairs:
                logger.warning("Dropping invalid edge %s (%s -> %s)", edge.id, *pair)
                continue
            seen_pairs.add(pair)
            valid_edges.append(edge)
        self.edges = valid_edges
        return self

    # ------------------------------------------------------------------
    # Construction / snapshots
    # ------------------------------------------------------------------

    @classmethod
    def default(cls) -> "Graph":
        """The two permanent nodes a fresh editor starts with."""
        return cls(
            nodes=[
                Node(
                    id="input-1",
                    type_tag="input",
                    label="User Input",
                    position=Position(x=100, y=200),
                ),
                Node(
                    id="output-1",
                    type_tag="output",
                    label="Response",
                    position=Position(x=600, y=200),
                ),
            ]
        )

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> "Graph":
        return cls.model_validate(snapshot)

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def get_node(self, node_id: str) -> Node:
        node = self._index.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_node(
        self,
        type_tag: str,
        *,
        node_id: str | None = None,
        label: str | None = None,
        position: Position | dict[str, float] | None = None,
        config: dict[str, Any] | None = None,
    ) -> Node:
        node_id = node_id or f"{type_tag}-{uuid4().hex[:8]}"
        if node_id in self._index:
            raise ValueError(f"Duplicate node ID '{node_id}'")
        node = Node(
            id=node_id,
            type_tag=type_tag,
            label=label or "",
            position=position or Position(),
            config=config or {},
        )
        self.nodes.append(node)
        self._index[node.id] = node
        return node

    def add_edge(self, source: str, target: str, *, edge_id: str | None = None) -> Edge:
        if source == target:
            raise SelfConnectionError(source)
        self.get_node(source)
        self.get_node(target)
        if any(e.source == source and e.target == target for e in self.edges):
            raise DuplicateConnectionError(source, target)
        edge = Edge(id=edge_id or _edge_id(source, target), source=source, target=target)
        self.edges.append(edge)
        return edge

    def remove_edge(self, edge_id: str) -> bool:
        remaining = [e for e in self.edges if e.id != edge_id]
        removed = len(remaining) != len(self.edges)
        self.edges = remaining
        return removed

    def delete_nodes(self, predicate: Callable[[Node], bool]) -> list[str]:
        """
        Remove matching nodes and every edge that references them.

        Returns the ids of the removed nodes.
        """
        removed = [n.id for n in self.nodes if predicate(n)]
        if not removed:
            return []
        doomed = set(removed)
        self.nodes = [n for n in self.nodes if n.id not in doomed]
        for node_id in removed:
            self._index.pop(node_id, None)
        self.edges = [
            e for e in self.edges if e.source not in doomed and e.target not in doomed
        ]
        return removed

    def delete_node_ids(self, node_ids: Iterable[str]) -> list[str]:
        wanted = set(node_ids)
        return self.delete_nodes(lambda n: n.id in wanted)
