"""
Node events: the only way node state changes.

The execution engine never writes node fields directly; it emits a
``NodeEvent`` whose ``patch`` the state store merges into the node and then
fans out to subscribers (event streams, autosave).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from flowcanvas.models.payload import Blob, summarize_payload


NodeEventKind = Literal[
    "updated",
    "received",
    "started",
    "progress",
    "dispatched",
    "pending_input",
    "completed",
    "failed",
]


class NodeEvent(BaseModel):
    event: NodeEventKind
    node_id: str
    patch: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def started(cls, node_id: str, **fields: Any) -> "NodeEvent":
        return cls(
            event="started",
            node_id=node_id,
            patch={"processing": True, "executed": True, "error": None, **fields},
        )

    @classmethod
    def completed(cls, node_id: str, **fields: Any) -> "NodeEvent":
        return cls(
            event="completed",
            node_id=node_id,
            patch={"processing": False, "executed": True, "error": None, **fields},
        )

    @classmethod
    def failed(cls, node_id: str, error: str, **fields: Any) -> "NodeEvent":
        return cls(
            event="failed",
            node_id=node_id,
            patch={"processing": False, "executed": True, "error": error, **fields},
            message=error,
        )

    def to_wire(self) -> dict[str, Any]:
        """JSON-friendly form; binary payloads are summarised, not inlined."""
        patch: dict[str, Any] = {}
        for key, value in self.patch.items():
            if isinstance(value, Blob) or (key in ("input", "response") and isinstance(value, str)):
                patch[key] = summarize_payload(value)
            elif key == "config" and isinstance(value, dict):
                patch[key] = {k: v for k, v in value.items() if k not in ("api_key", "apiKey")}
            else:
                patch[key] = value
        return {
            "event": self.event,
            "node_id": self.node_id,
            "patch": patch,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
