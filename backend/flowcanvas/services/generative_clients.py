"""
Generative-service clients.

Each client implements one call contract:

    GenerationRequest(credential, model, prompt, parameters)
        -> GenerationResult(payload, mime_type)

and raises ``ServiceCallError`` (message + HTTP status when known) on
transport failures, non-2xx responses and malformed bodies. The engine has
no timeout of its own; the HTTP client timeout is the only one.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from pydantic import BaseModel, Field

from flowcanvas.config import http_timeout_seconds
from flowcanvas.models.errors import ServiceCallError
from flowcanvas.models.payload import Blob, Payload

logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    credential: str = Field(repr=False)
    model: str | None = None
    prompt: str | Blob
    parameters: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    payload: str | Blob
    mime_type: str = "text/plain"


class GenerativeClient(ABC):
    service: str = "generic"

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult: ...


def _require_text(service: str, prompt: Payload) -> str:
    if not isinstance(prompt, str):
        raise ServiceCallError(
            f"{service} requires a text prompt, got {prompt.mime_type}"
        )
    return prompt


def _error_message(service: str, response: httpx.Response) -> str:
    """Best-effort extraction of the provider's error message."""
    detail: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            detail = error.get("message")
        elif isinstance(error, str):
            detail = error
        if not detail:
            detail = body.get("message") or body.get("detail")
        if isinstance(detail, dict):
            detail = detail.get("message") or str(detail)
    if not detail:
        detail = f"API request failed with status {response.status_code}"
    return f"{service}: {detail}"


class HttpGenerativeClient(GenerativeClient):
    """Shared httpx plumbing for JSON/multipart generative APIs."""

    base_url: str = ""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or self.base_url
        self.timeout = timeout if timeout is not None else http_timeout_seconds()
        self._transport = transport

    async def _post(self, path: str, *, headers: dict[str, str], **kwargs: Any) -> httpx.Response:
        timeout = httpx.Timeout(self.timeout, connect=20.0)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=timeout, transport=self._transport
            ) as client:
                response = await client.post(path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ServiceCallError(f"{self.service} request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ServiceCallError(
                _error_message(self.service, response), status_code=response.status_code
            )
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceCallError(
                f"{self.service} returned a malformed response body",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise ServiceCallError(
                f"{self.service} returned a malformed response body",
                status_code=response.status_code,
            )
        return body


# ---------------------------------------------------------------------------
# Language models
# ---------------------------------------------------------------------------


class OpenAIChatClient(HttpGenerativeClient):
    service = "openai-chat"
    base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt = _require_text(self.service, request.prompt)
        params = request.parameters
        messages = [
            {"role": "system", "content": params.get("system_prompt") or "You are a helpful assistant."},
            {"role": "user", "content": prompt},
        ]
        response = await self._post(
            "/chat/completions",
            headers={"Authorization": f"Bearer {request.credential}"},
            json={
                "model": request.model or self.default_model,
                "messages": messages,
                "temperature": params.get("temperature", 0.7),
                "max_tokens": params.get("max_tokens", 1000),
            },
        )
        body = self._json(response)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ServiceCallError(
                f"{self.service} response is missing choices", status_code=response.status_code
            ) from exc
        return GenerationResult(payload=content or "No response from OpenAI", mime_type="text/plain")


class PerplexityChatClient(OpenAIChatClient):
    service = "perplexity-chat"
    base_url = "https://api.perplexity.ai"
    default_model = "sonar"


class AnthropicMessagesClient(HttpGenerativeClient):
    service = "anthropic-messages"
    base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt = _require_text(self.service, request.prompt)
        params = request.parameters
        payload: dict[str, Any] = {
            "model": request.model or "claude-3-5-sonnet-latest",
            "max_tokens": params.get("max_tokens", 1000),
            "temperature": params.get("temperature", 0.7),
            "messages": [{"role": "user", "content": prompt}],
        }
        if params.get("system_prompt"):
            payload["system"] = params["system_prompt"]
        response = await self._post(
            "/messages",
            headers={
                "x-api-key": request.credential,
                "anthropic-version": self.api_version,
            },
            json=payload,
        )
        body = self._json(response)
        blocks = body.get("content")
        if not isinstance(blocks, list):
            raise ServiceCallError(
                f"{self.service} response is missing content", status_code=response.status_code
            )
        text = "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return GenerationResult(payload=text, mime_type="text/plain")


class GeminiClient(GenerativeClient):
    """Gemini through the google-genai SDK (one SDK client per credential)."""

    service = "gemini"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt = _require_text(self.service, request.prompt)
        params = request.parameters
        client = genai.Client(api_key=request.credential)
        try:
            response = await client.aio.models.generate_content(
                model=request.model or "gemini-2.5-flash",
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    temperature=params.get("temperature"),
                    max_output_tokens=params.get("max_tokens"),
                    system_instruction=params.get("system_prompt"),
                ),
            )
        except genai_errors.APIError as exc:
            raise ServiceCallError(
                f"{self.service}: {exc.message or exc}", status_code=exc.code
            ) from exc
        except httpx.HTTPError as exc:
            raise ServiceCallError(f"{self.service} request failed: {exc}") from exc
        text = response.text
        if text is None:
            raise ServiceCallError(f"{self.service} returned no text")
        return GenerationResult(payload=text, mime_type="text/plain")


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class OpenAIImageClient(HttpGenerativeClient):
    service = "openai-images"
    base_url = "https://api.openai.com/v1"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt = _require_text(self.service, request.prompt)
        params = request.parameters
        payload: dict[str, Any] = {
            "model": request.model or "dall-e-3",
            "prompt": prompt,
            "n": 1,
            "size": params.get("size", "1024x1024"),
            "response_format": "b64_json",
        }
        for key in ("style", "quality"):
            if params.get(key):
                payload[key] = params[key]
        response = await self._post(
            "/images/generations",
            headers={"Authorization": f"Bearer {request.credential}"},
            json=payload,
        )
        body = self._json(response)
        try:
            encoded = body["data"][0]["b64_json"]
            image_bytes = base64.b64decode(encoded)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ServiceCallError(
                f"{self.service} response is missing image data", status_code=response.status_code
            ) from exc
        return GenerationResult(
            payload=Blob(data=image_bytes, mime_type="image/png", filename="image.png"),
            mime_type="image/png",
        )


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


class OpenAITranscriptionClient(HttpGenerativeClient):
    service = "openai-transcription"
    base_url = "https://api.openai.com/v1"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        audio = request.prompt
        if not isinstance(audio, Blob):
            raise ServiceCallError(f"{self.service} requires an audio file")
        data: dict[str, Any] = {"model": request.model or "whisper-1"}
        if request.parameters.get("language"):
            data["language"] = request.parameters["language"]
        response = await self._post(
            "/audio/transcriptions",
            headers={"Authorization": f"Bearer {request.credential}"},
            data=data,
            files={"file": (audio.filename or "audio", audio.data, audio.mime_type)},
        )
        body = self._json(response)
        text = body.get("text")
        if not isinstance(text, str):
            raise ServiceCallError(
                f"{self.service} response is missing text", status_code=response.status_code
            )
        return GenerationResult(payload=text, mime_type="text/plain")


# Named ElevenLabs premade voices; anything else is treated as a voice id.
ELEVENLABS_VOICES = {
    "rachel": "21m00Tcm4TlvDq8ikWAM",
    "domi": "AZnzlk1XvdvUeBnXmlld",
    "bella": "EXAVITQu4vr4xnSDxMaL",
    "antoni": "ErXwobaYiN019PkySvjV",
    "josh": "TxGEqnHWrfWFTfGW9XjX",
    "arnold": "VR6AewLTigWG4xSOukaG",
    "adam": "pNInz6obpgDQGcFmaJgB",
    "sam": "yoZ06aMxZJJ28mfd3POQ",
}


class ElevenLabsSpeechClient(HttpGenerativeClient):
    service = "elevenlabs-tts"
    base_url = "https://api.elevenlabs.io/v1"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        text = _require_text(self.service, request.prompt).strip()
        if not text:
            raise ServiceCallError("No text provided for TTS.")
        voice = str(request.parameters.get("voice") or "Rachel").strip()
        voice_id = ELEVENLABS_VOICES.get(voice.lower(), voice)
        response = await self._post(
            f"/text-to-speech/{voice_id}",
            headers={"xi-api-key": request.credential, "Accept": "audio/mpeg"},
            json={"text": text, "model_id": request.model or "eleven_multilingual_v2"},
        )
        media_type = response.headers.get("content-type") or "audio/mpeg"
        if not media_type.startswith("audio/"):
            raise ServiceCallError(
                f"{self.service} returned {media_type} instead of audio",
                status_code=response.status_code,
            )
        return GenerationResult(
            payload=Blob(data=response.content, mime_type=media_type, filename="speech.mp3"),
            mime_type=media_type,
        )


def default_clients() -> dict[str, GenerativeClient]:
    """One client per service key referenced by the node registry."""
    clients: list[GenerativeClient] = [
        OpenAIChatClient(),
        PerplexityChatClient(),
        AnthropicMessagesClient(),
        GeminiClient(),
        OpenAIImageClient(),
        OpenAITranscriptionClient(),
        ElevenLabsSpeechClient(),
    ]
    return {client.service: client for client in clients}
