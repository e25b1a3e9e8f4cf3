"""
Workflow execution engine.

Starts at a triggered node (normally an ``input`` node), runs each
downstream node with the processing strategy its type selects, records
results through the state store and propagates every successful response
along the node's outgoing edges.

Key concepts:
- Every ``run_node`` is its own asyncio task. Fan-out branches interleave
  and have no completion order; along one chain a node only starts after
  its upstream node completed and propagated.
- Errors stay local: a failing node records its error, is marked executed
  and simply does not propagate. Sibling branches are unaffected.
- Generative and pass-through nodes auto-run when a payload reaches them.
  ``input`` nodes reached mid-graph only store the payload and wait for a
  manual trigger.
- ``output`` nodes are terminal and never propagate.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from flowcanvas.config import mock_mode_enabled, simulated_latency_seconds
from flowcanvas.models.errors import (
    FlowCanvasError,
    InputRequiredError,
    MissingCredentialError,
    NoDownstreamError,
    ServiceCallError,
)
from flowcanvas.models.events import NodeEvent
from flowcanvas.models.graph import Node
from flowcanvas.models.node_registry import NodeTypeSpec, StrategyKind, resolve_node_spec
from flowcanvas.models.payload import (
    Payload,
    PayloadType,
    infer_type,
    is_empty_payload,
    payload_text,
)
from flowcanvas.services.generative_clients import (
    GenerationRequest,
    GenerativeClient,
    default_clients,
)
from flowcanvas.services.state_store import StateStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Strategy registry
# ---------------------------------------------------------------------------

# Maps a strategy kind to its async processing function.
# Each strategy receives (engine, node, spec, payload, input_type) and is
# responsible for the node's state writes and for calling propagate.
StrategyFn = Callable[
    ["ExecutionEngine", Node, NodeTypeSpec, Payload, PayloadType], Awaitable[None]
]
_strategies: dict[str, StrategyFn] = {}


def strategy(kind: StrategyKind):
    """
    Decorator that registers a processing strategy.

    Usage:
        @strategy("passthrough")
        async def _run_passthrough(engine, node, spec, payload, input_type):
            ...
    """
    def decorator(fn: StrategyFn) -> StrategyFn:
        _strategies[kind] = fn
        return fn
    return decorator


_UNSET: Any = object()


class ExecutionEngine:
    def __init__(
        self,
        store: StateStore,
        *,
        clients: Mapping[str, GenerativeClient] | None = None,
        mock_mode: bool | None = None,
        simulated_latency: float | None = None,
    ):
        self.store = store
        self.clients: dict[str, GenerativeClient] = {**default_clients(), **(clients or {})}
        self.mock_mode = mock_mode_enabled() if mock_mode is None else mock_mode
        self.simulated_latency = (
            simulated_latency_seconds() if simulated_latency is None else simulated_latency
        )
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def trigger(self, node_id: str, raw_input: Payload | None = _UNSET) -> list[asyncio.Task]:
        """
        Start execution at ``node_id`` with ``raw_input``.

        When ``raw_input`` is omitted the node's stored input is sent, which
        is how a paused mid-graph input node is continued. Returns the tasks
        dispatched to the node's direct successors without awaiting them.
        """
        node = self.store.get_node(node_id)
        payload = node.runtime.input if raw_input is _UNSET else raw_input
        if is_empty_payload(payload):
            raise InputRequiredError(node_id)
        edges = self.store.graph.outgoing_edges(node_id)
        if not edges:
            raise NoDownstreamError(node_id)

        input_type = infer_type(payload)
        logger.info(
            "Triggering %s (%s input) -> %s",
            node_id,
            input_type,
            ", ".join(e.target for e in edges),
        )
        self.emit(NodeEvent.started(node_id, input=payload, input_type=input_type))
        tasks = [self.run_node(edge.target, payload, input_type) for edge in edges]
        self.emit(NodeEvent(event="dispatched", node_id=node_id, patch={"processing": False}))
        return tasks

    def run_node(self, node_id: str, payload: Payload, input_type: PayloadType) -> asyncio.Task:
        """Schedule one node run as an independent task."""
        task = asyncio.create_task(
            self._execute_node(node_id, payload, input_type), name=f"run-node:{node_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def propagate(self, source_id: str, response: Payload) -> list[asyncio.Task]:
        """
        Forward ``response`` along every outgoing edge of ``source_id``.

        Dispatch depends on the target's type. Two sources feeding one
        target each write its input; the last write wins and each arrival
        triggers its own run.
        """
        payload_type = infer_type(response)
        tasks: list[asyncio.Task] = []
        for edge in self.store.graph.outgoing_edges(source_id):
            if not self.store.graph.has_node(edge.target):
                logger.warning("Edge %s points at missing node %s", edge.id, edge.target)
                continue
            target = self.store.get_node(edge.target)
            kind = self._strategy_kind(resolve_node_spec(target.type_tag))
            logger.debug(
                "Propagating %s payload %s -> %s (%s)", payload_type, source_id, target.id, kind
            )

            if kind == "output":
                tasks.append(self.run_node(target.id, response, payload_type))
            elif kind == "input":
                self.store_pending_input(target, response, payload_type)
            else:
                self.emit(
                    NodeEvent(
                        event="received",
                        node_id=target.id,
                        patch={"input": response, "input_type": payload_type, "executed": False},
                    )
                )
                tasks.append(self.run_node(target.id, response, payload_type))
        return tasks

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until no node run is in flight, including runs started meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every in-flight run; each cancelled node records a terminal error."""
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def client_for(self, service: str | None) -> GenerativeClient:
        client = self.clients.get(service or "")
        if client is None:
            raise ServiceCallError(f"No client configured for service '{service}'")
        return client

    def _strategy_kind(self, spec: NodeTypeSpec) -> StrategyKind:
        if spec.strategy == "generative" and self.mock_mode:
            return "passthrough"
        return spec.strategy

    def emit(self, event: NodeEvent) -> None:
        self.store.try_apply(event)

    def store_pending_input(self, node: Node, payload: Payload, input_type: PayloadType) -> None:
        self.emit(
            NodeEvent(
                event="pending_input",
                node_id=node.id,
                patch={
                    "input": payload,
                    "input_type": input_type,
                    "context": payload if isinstance(payload, str) else None,
                    "processing": False,
                    "executed": False,
                },
                message="Waiting for manual continue",
            )
        )

    async def _execute_node(self, node_id: str, payload: Payload, input_type: PayloadType) -> None:
        if not self.store.graph.has_node(node_id):
            logger.warning("Skipping run of missing node %s", node_id)
            return
        node = self.store.get_node(node_id)
        spec = resolve_node_spec(node.type_tag)
        kind = self._strategy_kind(spec)
        run = _strategies[kind]

        try:
            await run(self, node, spec, payload, input_type)
        except asyncio.CancelledError:
            self.emit(NodeEvent.failed(node_id, "Execution cancelled"))
            raise
        except FlowCanvasError as e:
            logger.info("Node %s failed: %s", node_id, e.message)
            self.emit(NodeEvent.failed(node_id, e.message))
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.exception("Node %s failed: %s", node_id, error_msg)
            self.emit(NodeEvent.failed(node_id, error_msg))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@strategy("input")
async def _run_input(engine: ExecutionEngine, node: Node, spec: NodeTypeSpec, payload: Payload, input_type: PayloadType) -> None:
    """Input nodes reached as a target pause until a human continues them."""
    engine.store_pending_input(node, payload, input_type)


@strategy("output")
async def _run_output(engine: ExecutionEngine, node: Node, spec: NodeTypeSpec, payload: Payload, input_type: PayloadType) -> None:
    # Terminal: record and stop, even if the node has outgoing edges
    engine.emit(
        NodeEvent.completed(
            node.id,
            input=payload,
            input_type=input_type,
            response=payload,
            response_type=infer_type(payload),
        )
    )


@strategy("passthrough")
async def _run_passthrough(engine: ExecutionEngine, node: Node, spec: NodeTypeSpec, payload: Payload, input_type: PayloadType) -> None:
    """Simulated processing: derive a text response after a fixed delay."""
    engine.emit(
        NodeEvent(
            event="started",
            node_id=node.id,
            patch={"input": payload, "input_type": input_type, "processing": True, "error": None},
        )
    )
    await asyncio.sleep(engine.simulated_latency)
    response = f"Processed by {node.label}: {payload_text(payload)}"
    engine.emit(NodeEvent.completed(node.id, response=response, response_type="text"))
    engine.propagate(node.id, response)


@strategy("generative")
async def _run_generative(engine: ExecutionEngine, node: Node, spec: NodeTypeSpec, payload: Payload, input_type: PayloadType) -> None:
    credential = node.config.credential()
    if credential is None:
        raise MissingCredentialError(spec.credential_label)

    if not spec.accepts_type(input_type):
        engine.emit(
            NodeEvent.failed(
                node.id,
                f"{node.label} cannot accept {input_type} input",
                input=payload,
                input_type=input_type,
            )
        )
        return

    engine.emit(NodeEvent.started(node.id, input=payload, input_type=input_type))
    client = engine.client_for(spec.service)
    engine.emit(NodeEvent(event="progress", node_id=node.id, message=f"Calling {client.service}"))
    result = await client.generate(
        GenerationRequest(
            credential=credential,
            model=node.config.model_name(),
            prompt=payload,
            parameters=node.config.service_parameters(),
        )
    )

    fields: dict[str, Any] = {
        "response": result.payload,
        "response_type": infer_type(result.payload),
    }
    if spec.category == "language-models" and isinstance(payload, str) and isinstance(result.payload, str):
        # Only the latest exchange is kept as context
        fields["context"] = [
            {"role": "user", "content": payload},
            {"role": "assistant", "content": result.payload},
        ]
    engine.emit(NodeEvent.completed(node.id, **fields))
    logger.info("Node %s (%s) completed", node.id, node.type_tag)
    engine.propagate(node.id, result.payload)
