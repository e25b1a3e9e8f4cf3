"""
Payload shapes that flow along edges.

A payload is either plain text (``str``) or a binary ``Blob`` that carries
its MIME type. Everything that needs to know the "shape" of a payload goes
through ``infer_type`` so text/file/blob handling stays in one place.
"""

from __future__ import annotations

import base64
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, field_validator


PayloadType = Literal["text", "audio", "image", "video", "file"]
ResponseType = Literal["text", "code", "image", "audio", "video", "file"]


class Blob(BaseModel):
    """Binary payload (uploaded file or generated media)."""

    model_config = ConfigDict(ser_json_bytes="base64")

    data: bytes
    mime_type: str = "application/octet-stream"
    filename: str | None = None

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value: Any) -> Any:
        # Snapshots carry bytes as base64 text (standard or URL-safe alphabet)
        if isinstance(value, str):
            normalized = value.replace("-", "+").replace("_", "/")
            return base64.b64decode(normalized + "=" * (-len(normalized) % 4))
        return value

    @property
    def size(self) -> int:
        return len(self.data)

    def describe(self) -> str:
        name = self.filename or self.mime_type
        return f"[{name}, {self.size} bytes]"


Payload = Union[str, Blob]


def infer_type(payload: Payload) -> PayloadType:
    """
    Map a payload to its shape tag.

    Strings are text; blobs are classified by the prefix of their declared
    MIME type, anything unrecognised is a generic file.
    """
    if isinstance(payload, str):
        return "text"
    mime = (payload.mime_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    return "file"


def is_empty_payload(payload: Payload | None) -> bool:
    if payload is None:
        return True
    if isinstance(payload, str):
        return not payload.strip()
    return False


def payload_text(payload: Payload) -> str:
    """Text rendition of a payload, used for derived pass-through responses."""
    if isinstance(payload, str):
        return payload
    return payload.describe()


def summarize_payload(payload: Payload | None, limit: int = 200) -> str | dict | None:
    """Compact, JSON-friendly view of a payload for event streams."""
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload if len(payload) <= limit else payload[:limit] + "..."
    return {
        "mime_type": payload.mime_type,
        "filename": payload.filename,
        "size": payload.size,
    }
