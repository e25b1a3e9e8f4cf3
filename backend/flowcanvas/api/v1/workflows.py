"""
Workflow editor API endpoints.

The editor UI builds a graph (nodes, edges, node configuration), triggers
execution at a node and follows node state through a server-sent event
stream. Each workflow key maps to one live session held in memory; every
change is autosaved through the persistence adapter.

NOTE: Credentials (``config.api_key``) are accepted on node updates but are
never returned by these endpoints and never persisted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from flowcanvas.models.errors import (
    DuplicateConnectionError,
    FlowCanvasError,
    InputRequiredError,
    NoDownstreamError,
    NodeNotFoundError,
    SelfConnectionError,
    UnknownNodeTypeError,
)
from flowcanvas.models.graph import Node, Position
from flowcanvas.models.node_registry import list_node_types
from flowcanvas.models.payload import Blob
from flowcanvas.services.persistence import strip_credentials
from flowcanvas.services.workflow_session import (
    WorkflowSession,
    WorkflowSessionManager,
    get_session_manager,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])

# Seconds without events before a keep-alive comment is sent
KEEPALIVE_SECONDS = 15.0

_ERROR_STATUS: list[tuple[type[FlowCanvasError], int]] = [
    (InputRequiredError, 400),
    (SelfConnectionError, 400),
    (NodeNotFoundError, 404),
    (DuplicateConnectionError, 409),
    (NoDownstreamError, 409),
    (UnknownNodeTypeError, 422),
]


def _http_error(e: FlowCanvasError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=e.message)
    return HTTPException(status_code=500, detail=e.message)


class NodeCreateRequest(BaseModel):
    type: str = Field(..., min_length=1)
    id: Optional[str] = None
    label: Optional[str] = None
    position: Optional[Position] = None
    config: Optional[Dict[str, Any]] = None


class NodeUpdateRequest(BaseModel):
    label: Optional[str] = None
    position: Optional[Position] = None
    config: Optional[Dict[str, Any]] = None


class NodeDeleteRequest(BaseModel):
    node_ids: List[str] = Field(..., min_length=1)


class NodeDeleteResponse(BaseModel):
    deleted: List[str]


class EdgeCreateRequest(BaseModel):
    source: str
    target: str


class TriggerRequest(BaseModel):
    # Omitted input re-sends the node's stored input (continue a paused node)
    input: Optional[str] = None


class TriggerResponse(BaseModel):
    node_id: str
    dispatched: List[str]
    completed: bool = False


def _public_node(node: Node) -> Dict[str, Any]:
    return strip_credentials({"nodes": [node.model_dump(mode="json")]})["nodes"][0]


def _public_workflow(session: WorkflowSession) -> Dict[str, Any]:
    data = strip_credentials(session.snapshot())
    last_save = session.last_save
    data["key"] = session.key
    data["persistence_warning"] = last_save.warning if last_save else None
    return data


async def _run_trigger(
    session: WorkflowSession, node_id: str, raw_input: Any, wait: bool
) -> TriggerResponse:
    try:
        if raw_input is None:
            tasks = await session.trigger(node_id)
        else:
            tasks = await session.trigger(node_id, raw_input)
    except FlowCanvasError as e:
        raise _http_error(e)
    dispatched = [edge.target for edge in session.graph.outgoing_edges(node_id)]
    if wait:
        await session.engine.wait_idle()
    return TriggerResponse(node_id=node_id, dispatched=dispatched, completed=wait and bool(tasks))


@router.get("/node-types")
async def get_node_types():
    """Registry metadata for the editor palette."""
    return {"node_types": list_node_types()}


@router.get("/workflows/{key}")
async def get_workflow(
    key: str,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """Current graph of a workflow (restored from storage, else the default graph)."""
    return _public_workflow(manager.get(key))


@router.delete("/workflows/{key}", status_code=204)
async def delete_workflow(
    key: str,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """Drop the live session and clear persisted data."""
    await manager.drop(key)
    return Response(status_code=204)


@router.post("/workflows/{key}/nodes", status_code=201)
async def create_node(
    key: str,
    request: NodeCreateRequest,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    session = manager.get(key)
    try:
        node = session.add_node(
            request.type,
            node_id=request.id,
            label=request.label,
            position=request.position,
            config=request.config,
        )
    except FlowCanvasError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _public_node(node)


@router.patch("/workflows/{key}/nodes/{node_id}")
async def update_node(
    key: str,
    node_id: str,
    request: NodeUpdateRequest,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """Update a node's label, position and/or configuration (merged key-wise)."""
    fields = request.model_dump(exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    session = manager.get(key)
    try:
        node = session.configure_node(node_id, fields)
    except FlowCanvasError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _public_node(node)


@router.post("/workflows/{key}/nodes/delete", response_model=NodeDeleteResponse)
async def delete_nodes(
    key: str,
    request: NodeDeleteRequest,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """Delete nodes by id; their edges are removed with them."""
    deleted = manager.get(key).delete_nodes(request.node_ids)
    return NodeDeleteResponse(deleted=deleted)


@router.post("/workflows/{key}/edges", status_code=201)
async def create_edge(
    key: str,
    request: EdgeCreateRequest,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    session = manager.get(key)
    try:
        edge = session.add_edge(request.source, request.target)
    except FlowCanvasError as e:
        raise _http_error(e)
    return edge.model_dump(mode="json")


@router.delete("/workflows/{key}/edges/{edge_id}", status_code=204)
async def delete_edge(
    key: str,
    edge_id: str,
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    if not manager.get(key).remove_edge(edge_id):
        raise HTTPException(status_code=404, detail="Edge not found")
    return Response(status_code=204)


@router.post(
    "/workflows/{key}/nodes/{node_id}/trigger",
    response_model=TriggerResponse,
    status_code=202,
)
async def trigger_node(
    key: str,
    node_id: str,
    request: Optional[TriggerRequest] = None,
    wait: bool = Query(False, description="Return only after every dispatched run finished"),
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """Start execution at a node with a text prompt."""
    return await _run_trigger(
        manager.get(key), node_id, request.input if request else None, wait
    )


@router.post(
    "/workflows/{key}/nodes/{node_id}/trigger/file",
    response_model=TriggerResponse,
    status_code=202,
)
async def trigger_node_with_file(
    key: str,
    node_id: str,
    file: UploadFile = File(...),
    wait: bool = Query(False, description="Return only after every dispatched run finished"),
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """Start execution at a node with an uploaded file."""
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    mime_type = file.content_type
    if not mime_type or mime_type == "application/octet-stream":
        mime_type = mimetypes.guess_type(file.filename or "")[0] or "application/octet-stream"
    blob = Blob(data=data, mime_type=mime_type, filename=file.filename)
    logger.info("File trigger for %s/%s: %s", key, node_id, blob.describe())
    return await _run_trigger(manager.get(key), node_id, blob, wait)


@router.get("/workflows/{key}/events")
async def stream_events(
    key: str,
    max_events: Optional[int] = Query(None, ge=1, description="Close the stream after this many events"),
    manager: WorkflowSessionManager = Depends(get_session_manager),
):
    """
    Server-sent events for a workflow.

    The first event is a ``snapshot`` of the whole graph; every node event
    after that is sent as it is applied.
    """
    session = manager.get(key)
    queue = session.store.subscribe()

    async def event_generator():
        sent = 0
        try:
            snapshot = {"event": "snapshot", "workflow": _public_workflow(session)}
            yield f"data: {json.dumps(snapshot)}\n\n"
            sent += 1
            while max_events is None or sent < max_events:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_wire())}\n\n"
                sent += 1
        finally:
            session.store.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
