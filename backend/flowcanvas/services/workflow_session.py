"""
Workflow sessions: one live graph per workflow key.

A session binds a graph's state store, its execution engine and the
persistence adapter. Structural edits (nodes, edges) and every node event
schedule a debounced save of the full graph snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from pydantic import ValidationError

from flowcanvas.models.events import NodeEvent
from flowcanvas.models.graph import Edge, Graph, Node, Position
from flowcanvas.models.node_registry import require_node_spec
from flowcanvas.models.payload import Payload
from flowcanvas.services.generative_clients import GenerativeClient
from flowcanvas.services.persistence import PersistenceAdapter, SaveResult, build_persistence_adapter
from flowcanvas.services.state_store import StateStore
from flowcanvas.services.workflow_executor import _UNSET, ExecutionEngine

logger = logging.getLogger(__name__)


class WorkflowSession:
    def __init__(
        self,
        key: str,
        store: StateStore,
        engine: ExecutionEngine,
        persistence: PersistenceAdapter | None = None,
    ):
        self.key = key
        self.store = store
        self.engine = engine
        self.persistence = persistence
        self.store.add_listener(self._on_node_event)

    @classmethod
    def open(
        cls,
        key: str,
        *,
        persistence: PersistenceAdapter | None = None,
        clients: Mapping[str, GenerativeClient] | None = None,
        mock_mode: bool | None = None,
        simulated_latency: float | None = None,
    ) -> "WorkflowSession":
        """Restore ``key`` from persistence, or start from the default graph."""
        graph = _load_graph(key, persistence)
        store = StateStore(graph)
        engine = ExecutionEngine(
            store,
            clients=clients,
            mock_mode=mock_mode,
            simulated_latency=simulated_latency,
        )
        return cls(key, store, engine, persistence)

    @property
    def graph(self) -> Graph:
        return self.store.graph

    @property
    def last_save(self) -> SaveResult | None:
        if self.persistence is None:
            return None
        return self.persistence.last_results.get(self.key)

    # ------------------------------------------------------------------
    # Editing
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
        require_node_spec(type_tag)
        node = self.graph.add_node(
            type_tag, node_id=node_id, label=label, position=position, config=config
        )
        logger.info("Added %s node %s to %s", type_tag, node.id, self.key)
        self.save()
        return node

    def configure_node(self, node_id: str, fields: dict[str, Any]) -> Node:
        """Patch label, position and/or config; saved through the node listener."""
        return self.store.update_node(node_id, fields)

    def delete_nodes(self, node_ids: list[str]) -> list[str]:
        removed = self.graph.delete_node_ids(node_ids)
        if removed:
            logger.info("Deleted nodes %s from %s", ", ".join(removed), self.key)
            self.save()
        return removed

    def add_edge(self, source: str, target: str) -> Edge:
        edge = self.graph.add_edge(source, target)
        self.save()
        return edge

    def remove_edge(self, edge_id: str) -> bool:
        removed = self.graph.remove_edge(edge_id)
        if removed:
            self.save()
        return removed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def trigger(self, node_id: str, raw_input: Payload | None = _UNSET) -> list[asyncio.Task]:
        return await self.engine.trigger(node_id, raw_input)

    def snapshot(self) -> dict[str, Any]:
        return self.graph.snapshot()

    def save(self) -> None:
        if self.persistence is not None:
            self.persistence.save(self.key, self.snapshot())

    async def detach(self) -> None:
        """Stop autosaving and cancel in-flight runs."""
        self.store.remove_listener(self._on_node_event)
        await self.engine.cancel_all()

    async def close(self) -> None:
        """Cancel in-flight runs and write the final snapshot."""
        await self.detach()
        if self.persistence is not None:
            self.persistence.save(self.key, self.snapshot())
            await self.persistence.flush()

    def _on_node_event(self, event: NodeEvent, node: Node) -> None:
        self.save()


def _load_graph(key: str, persistence: PersistenceAdapter | None) -> Graph:
    snapshot = persistence.load(key) if persistence is not None else None
    if not snapshot:
        return Graph.default()
    try:
        graph = Graph.from_snapshot(snapshot)
    except ValidationError as e:
        logger.warning("Stored snapshot for %s is invalid, starting fresh: %s", key, e)
        return Graph.default()
    # Runs do not survive a restart
    for node in graph.nodes:
        node.runtime.processing = False
    logger.info("Restored %s (%d nodes, %d edges)", key, len(graph.nodes), len(graph.edges))
    return graph


class WorkflowSessionManager:
    """Holds the open sessions of this process, keyed by workflow key."""

    def __init__(
        self,
        persistence: PersistenceAdapter | None = None,
        *,
        clients: Mapping[str, GenerativeClient] | None = None,
        mock_mode: bool | None = None,
        simulated_latency: float | None = None,
    ):
        self.persistence = persistence
        self.clients = clients
        self.mock_mode = mock_mode
        self.simulated_latency = simulated_latency
        self._sessions: dict[str, WorkflowSession] = {}

    def get(self, key: str) -> WorkflowSession:
        session = self._sessions.get(key)
        if session is None:
            session = WorkflowSession.open(
                key,
                persistence=self.persistence,
                clients=self.clients,
                mock_mode=self.mock_mode,
                simulated_latency=self.simulated_latency,
            )
            self._sessions[key] = session
        return session

    async def drop(self, key: str) -> None:
        """Close the session and clear everything persisted for ``key``."""
        session = self._sessions.pop(key, None)
        if session is not None:
            await session.detach()
        if self.persistence is not None:
            await self.persistence.flush()
            self.persistence.clear(key)

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()


_manager: WorkflowSessionManager | None = None


def get_session_manager() -> WorkflowSessionManager:
    """Process-wide manager, configured from the environment on first use."""
    global _manager
    if _manager is None:
        _manager = WorkflowSessionManager(build_persistence_adapter())
    return _manager


async def shutdown_session_manager() -> None:
    global _manager
    if _manager is not None:
        await _manager.shutdown()
        _manager = None
