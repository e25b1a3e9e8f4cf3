"""
Node type registry: source of truth for what each node type is and does.

Maps editor node type tags to display metadata (colour, icon, description),
the processing strategy the execution engine uses, the payload types the
node accepts, and its typed default configuration.

Adding a node type means adding one entry to ``NODE_REGISTRY``; the
execution engine never switches on concrete tags.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from flowcanvas.models.errors import UnknownNodeTypeError
from flowcanvas.models.node_config import (
    GenericConfig,
    ImageModelConfig,
    LanguageModelConfig,
    NodeConfig,
    SpeechSynthesisConfig,
    TranscriptionConfig,
    VideoModelConfig,
)
from flowcanvas.models.payload import PayloadType, ResponseType


StrategyKind = Literal["input", "output", "generative", "passthrough"]

DEFAULT_COLOR = "#6d28d9"
DEFAULT_ICON = "brain"
DEFAULT_DESCRIPTION = "Configure this node"


class NodeTypeSpec(BaseModel):
    label: str
    category: str
    color: str = DEFAULT_COLOR
    icon: str = DEFAULT_ICON
    description: str = DEFAULT_DESCRIPTION
    strategy: StrategyKind = "passthrough"
    service: str | None = None
    credential_label: str = "API Key"
    # None means the node accepts any payload type
    accepts: list[PayloadType] | None = None
    produces: ResponseType = "text"
    config_model: type[NodeConfig] = GenericConfig
    default_config: dict[str, Any] = Field(default_factory=dict)

    def accepts_type(self, payload_type: PayloadType) -> bool:
        return self.accepts is None or payload_type in self.accepts


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
# Keys match the `type` values used by the editor. Colours and descriptions
# follow the editor's node palette.

_LANGUAGE_DEFAULTS = {"model": "gpt-4o", "temperature": 0.7, "max_tokens": 1000}

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    # ---- Core nodes ----
    "input": NodeTypeSpec(
        label="User Input",
        category="core",
        color="#4338ca",
        icon="chat-text",
        description="Start workflow with user input",
        strategy="input",
    ),
    "output": NodeTypeSpec(
        label="Response",
        category="core",
        color="#4338ca",
        icon="send",
        description="Display results to user",
        strategy="output",
    ),
    "webhook": NodeTypeSpec(
        label="Webhook",
        category="core",
        color="#4338ca",
        icon="webhook",
        description="Trigger from external source",
    ),

    # ---- Language models ----
    "openai": NodeTypeSpec(
        label="OpenAI",
        category="language-models",
        icon="brain",
        description="Generate text with OpenAI models",
        strategy="generative",
        service="openai-chat",
        credential_label="OpenAI API Key",
        accepts=["text"],
        config_model=LanguageModelConfig,
        default_config=dict(_LANGUAGE_DEFAULTS),
    ),
    "llm": NodeTypeSpec(
        label="Language Model",
        category="language-models",
        icon="brain",
        description="Generate text with a language model",
        strategy="generative",
        service="openai-chat",
        credential_label="OpenAI API Key",
        accepts=["text"],
        config_model=LanguageModelConfig,
        default_config=dict(_LANGUAGE_DEFAULTS),
    ),
    "anthropic": NodeTypeSpec(
        label="Claude",
        category="language-models",
        icon="brain",
        description="Process with Claude for analysis",
        strategy="generative",
        service="anthropic-messages",
        credential_label="Anthropic API Key",
        accepts=["text"],
        config_model=LanguageModelConfig,
        default_config={**_LANGUAGE_DEFAULTS, "model": "claude-3-5-sonnet-latest"},
    ),
    "gemini": NodeTypeSpec(
        label="Gemini",
        category="language-models",
        icon="brain",
        description="Generate text with Gemini models",
        strategy="generative",
        service="gemini",
        credential_label="Gemini API Key",
        accepts=["text"],
        config_model=LanguageModelConfig,
        default_config={**_LANGUAGE_DEFAULTS, "model": "gemini-2.5-flash"},
    ),
    "perplexity": NodeTypeSpec(
        label="Perplexity",
        category="language-models",
        icon="brain",
        description="Research and web search",
        strategy="generative",
        service="perplexity-chat",
        credential_label="Perplexity API Key",
        accepts=["text"],
        config_model=LanguageModelConfig,
        default_config={**_LANGUAGE_DEFAULTS, "model": "sonar"},
    ),

    # ---- Voice & audio ----
    "elevenlabs": NodeTypeSpec(
        label="ElevenLabs",
        category="voice-audio",
        color="#2563eb",
        icon="volume",
        description="Convert text to realistic speech",
        strategy="generative",
        service="elevenlabs-tts",
        credential_label="ElevenLabs API Key",
        accepts=["text"],
        produces="audio",
        config_model=SpeechSynthesisConfig,
        default_config={"voice": "Rachel", "model": "eleven_multilingual_v2"},
    ),
    "whisper": NodeTypeSpec(
        label="Whisper",
        category="voice-audio",
        color="#2563eb",
        icon="volume",
        description="Transcribe audio to text",
        strategy="generative",
        service="openai-transcription",
        credential_label="OpenAI API Key",
        accepts=["audio", "video"],
        config_model=TranscriptionConfig,
        default_config={"model": "whisper-1"},
    ),

    # ---- Image generation ----
    "dalle": NodeTypeSpec(
        label="DALL-E",
        category="image-generation",
        color="#be123c",
        icon="image",
        description="Generate images from text",
        strategy="generative",
        service="openai-images",
        credential_label="OpenAI API Key",
        accepts=["text"],
        produces="image",
        config_model=ImageModelConfig,
        default_config={"model": "dall-e-3", "size": "1024x1024", "style": "vivid"},
    ),
    "stability": NodeTypeSpec(
        label="Stability AI",
        category="image-generation",
        color="#be123c",
        icon="image",
        description="Create detailed AI images",
        credential_label="Stability API Key",
        config_model=ImageModelConfig,
        default_config={"size": "1024x1024", "style": None},
    ),
    "midjourney": NodeTypeSpec(
        label="Midjourney",
        category="image-generation",
        color="#be123c",
        icon="image",
        description="Create artistic images",
        config_model=ImageModelConfig,
        default_config={"size": "1024x1024", "style": None},
    ),

    # ---- Video generation ----
    "sora": NodeTypeSpec(
        label="Sora",
        category="video-generation",
        color="#d97706",
        icon="film",
        description="Generate realistic videos from text",
        config_model=VideoModelConfig,
        default_config={"duration": "5s", "resolution": "1080p"},
    ),
    "runway": NodeTypeSpec(
        label="Runway",
        category="video-generation",
        color="#d97706",
        icon="film",
        description="Create AI videos with Gen-2",
        config_model=VideoModelConfig,
        default_config={"duration": "4s", "resolution": "720p"},
    ),
    "pika": NodeTypeSpec(
        label="Pika",
        category="video-generation",
        color="#d97706",
        icon="film",
        description="Convert text or images to video",
        config_model=VideoModelConfig,
        default_config={"duration": "3s", "frames": "24"},
    ),

    # ---- Content ----
    "blog": NodeTypeSpec(
        label="Blog Writer",
        category="content",
        color="#0891b2",
        icon="file-text",
        description="Generate blog post content",
    ),
    "social": NodeTypeSpec(
        label="Social Post",
        category="content",
        color="#0891b2",
        icon="file-text",
        description="Create social media posts",
    ),

    # ---- Data ----
    "vector-db": NodeTypeSpec(
        label="Vector Store",
        category="data",
        color="#16a34a",
        icon="database",
        description="Store and query vectors",
    ),
    "memory": NodeTypeSpec(
        label="Memory",
        category="data",
        color="#16a34a",
        icon="database",
        description="Store context for conversation",
    ),

    # ---- Development ----
    "code": NodeTypeSpec(
        label="Code",
        category="development",
        color="#334155",
        icon="terminal",
        description="Run a code transform",
        produces="code",
    ),
}

_FALLBACK_SPEC = NodeTypeSpec(label="Node", category="other")


def get_node_spec(type_tag: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(type_tag)


def resolve_node_spec(type_tag: str) -> NodeTypeSpec:
    """Like ``get_node_spec`` but unknown tags resolve to the generic fallback."""
    return NODE_REGISTRY.get(type_tag, _FALLBACK_SPEC)


def require_node_spec(type_tag: str) -> NodeTypeSpec:
    spec = NODE_REGISTRY.get(type_tag)
    if spec is None:
        raise UnknownNodeTypeError(type_tag)
    return spec


def register_node_type(type_tag: str, spec: NodeTypeSpec) -> None:
    NODE_REGISTRY[type_tag] = spec


def color_of(type_tag: str) -> str:
    return resolve_node_spec(type_tag).color


def icon_of(type_tag: str) -> str:
    return resolve_node_spec(type_tag).icon


def description_of(type_tag: str) -> str:
    return resolve_node_spec(type_tag).description


def default_config_of(type_tag: str) -> dict[str, Any]:
    """Type-appropriate default parameters; empty for unrecognised tags."""
    spec = get_node_spec(type_tag)
    if spec is None:
        return {}
    return dict(spec.default_config)


def build_config(type_tag: str, values: dict[str, Any] | None = None) -> NodeConfig:
    """
    Construct the typed configuration variant for a node type.

    Registry defaults are applied first, then ``values`` on top. Unknown
    tags get a ``GenericConfig`` that keeps whatever keys were given.
    """
    spec = resolve_node_spec(type_tag)
    merged = {**default_config_of(type_tag), **(values or {})}
    return spec.config_model.model_validate(merged)


def list_node_types() -> list[dict[str, Any]]:
    """Registry metadata in a JSON-friendly form for the editor palette."""
    return [
        {
            "type": type_tag,
            "label": spec.label,
            "category": spec.category,
            "color": spec.color,
            "icon": spec.icon,
            "description": spec.description,
            "strategy": spec.strategy,
            "requires_credential": spec.strategy == "generative",
            "credential_label": spec.credential_label,
            "accepts": spec.accepts,
            "produces": spec.produces,
            "default_config": spec.default_config,
        }
        for type_tag, spec in NODE_REGISTRY.items()
    ]
