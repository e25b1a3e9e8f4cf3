"""
State store: single source of truth for node state.

Every write goes through ``apply`` (directly, or via ``update_node`` for
editor edits). A write merges the patch into the node, keeping every field
the patch does not mention, and then notifies listeners and subscribers.

All writes are synchronous, so on the asyncio event loop a merge always
completes before the next queued callback runs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from flowcanvas.models.errors import NodeNotFoundError
from flowcanvas.models.events import NodeEvent
from flowcanvas.models.graph import RUNTIME_FIELDS, Graph, Node, NodeRuntimeState, Position
from flowcanvas.models.node_registry import build_config

logger = logging.getLogger(__name__)

NodeListener = Callable[[NodeEvent, Node], None]

_EDITABLE_FIELDS = frozenset({"label", "position", "config"})


class StateStore:
    def __init__(self, graph: Graph | None = None):
        self._graph = graph if graph is not None else Graph.default()
        self._listeners: list[NodeListener] = []
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def graph(self) -> Graph:
        return self._graph

    def get_node(self, node_id: str) -> Node:
        return self._graph.get_node(node_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_node(self, node_id: str, fields: dict[str, Any]) -> Node:
        """Merge ``fields`` into a node (editor-side edits and tests)."""
        return self.apply(NodeEvent(event="updated", node_id=node_id, patch=fields))

    def apply(self, event: NodeEvent) -> Node:
        """
        Merge an event's patch into its node and publish the event.

        Raises NodeNotFoundError if the node no longer exists and ValueError
        for keys that are not node fields.
        """
        node = self._graph.get_node(event.node_id)
        unknown = set(event.patch) - RUNTIME_FIELDS - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown node fields: {sorted(unknown)}")

        for key, value in event.patch.items():
            if key in RUNTIME_FIELDS:
                setattr(node.runtime, key, value)
            elif key == "label":
                node.label = str(value)
            elif key == "position":
                node.position = Position.model_validate(value)
            elif key == "config":
                # normalise aliases (apiKey -> api_key) before merging
                incoming = type(node.config).model_validate(value or {})
                merged = {
                    **node.config.model_dump(),
                    **incoming.model_dump(exclude_unset=True),
                }
                node.config = build_config(node.type_tag, merged)

        self._publish(event, node)
        return node

    def reset_runtime(self, node_id: str) -> Node:
        node = self._graph.get_node(node_id)
        node.runtime = NodeRuntimeState()
        self._publish(
            NodeEvent(event="updated", node_id=node_id, patch=node.runtime.model_dump()),
            node,
        )
        return node

    def try_apply(self, event: NodeEvent) -> Node | None:
        """``apply`` for late writers: events for deleted nodes are dropped."""
        try:
            return self.apply(event)
        except NodeNotFoundError:
            logger.warning(
                "Dropping %s event for deleted node %s", event.event, event.node_id
            )
            return None

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def add_listener(self, listener: NodeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: NodeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        """Queue that receives every event applied from now on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, event: NodeEvent, node: Node) -> None:
        logger.debug("Node %s <- %s %s", node.id, event.event, sorted(event.patch))
        for listener in list(self._listeners):
            try:
                listener(event, node)
            except Exception:
                logger.exception("Node listener failed for %s event on %s", event.event, node.id)
        for queue in list(self._subscribers):
            queue.put_nowait(event)
