"""
Typed per-node-type configuration.

Every node type maps to one of these models through the node registry.
All of them accept extra keys so editor-specific fields survive a round
trip, but the fields the execution engine reads are declared and typed.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class NodeConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_key: str | None = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("api_key", "apiKey"),
    )

    def credential(self) -> str | None:
        if self.api_key is None:
            return None
        key = self.api_key.strip()
        return key or None

    def model_name(self) -> str | None:
        return None

    def service_parameters(self) -> dict[str, Any]:
        """Parameters forwarded to the generative service (never the credential)."""
        return {}


class GenericConfig(NodeConfig):
    pass


class LanguageModelConfig(NodeConfig):
    model: str = "gpt-4o"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(
        default=1000,
        gt=0,
        validation_alias=AliasChoices("max_tokens", "maxTokens"),
    )
    system_prompt: str = "You are a helpful assistant."

    def model_name(self) -> str | None:
        return self.model

    def service_parameters(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "system_prompt": self.system_prompt,
        }


class ImageModelConfig(NodeConfig):
    model: str | None = None
    size: str = "1024x1024"
    style: str | None = "vivid"
    quality: str | None = None

    def model_name(self) -> str | None:
        return self.model

    def service_parameters(self) -> dict[str, Any]:
        params: dict[str, Any] = {"size": self.size}
        if self.style:
            params["style"] = self.style
        if self.quality:
            params["quality"] = self.quality
        return params


class SpeechSynthesisConfig(NodeConfig):
    voice: str = "Rachel"
    model: str = "eleven_multilingual_v2"

    def model_name(self) -> str | None:
        return self.model

    def service_parameters(self) -> dict[str, Any]:
        return {"voice": self.voice}


class TranscriptionConfig(NodeConfig):
    model: str = "whisper-1"
    language: str | None = None

    def model_name(self) -> str | None:
        return self.model

    def service_parameters(self) -> dict[str, Any]:
        return {"language": self.language} if self.language else {}


class VideoModelConfig(NodeConfig):
    model: str | None = None
    duration: str | None = None
    resolution: str | None = None
    frames: str | None = None

    def model_name(self) -> str | None:
        return self.model
