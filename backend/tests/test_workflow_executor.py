"""
Tests for the workflow execution engine.

External services are replaced by fake generative clients; the pass-through
latency is set to zero so simulated nodes complete immediately.
"""

import asyncio
import pytest
from typing import Any, Callable

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from flowcanvas.models.errors import InputRequiredError, NoDownstreamError, ServiceCallError
from flowcanvas.models.graph import Graph
from flowcanvas.models.payload import Blob
from flowcanvas.services.generative_clients import (
    GenerationRequest,
    GenerationResult,
    GenerativeClient,
)
from flowcanvas.services.state_store import StateStore
from flowcanvas.services.workflow_executor import ExecutionEngine


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClient(GenerativeClient):
    """Generative client that answers from memory and records its requests."""

    def __init__(
        self,
        service: str,
        reply: Any = "Generated reply",
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.service = service
        self.reply = reply
        self.delay = delay
        self.error = error
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        payload = self.reply(request) if callable(self.reply) else self.reply
        mime_type = payload.mime_type if isinstance(payload, Blob) else "text/plain"
        return GenerationResult(payload=payload, mime_type=mime_type)


class RecordingEngine(ExecutionEngine):
    """Engine that logs every run_node / propagate call in order."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: list[tuple[str, str]] = []

    def run_node(self, node_id, payload, input_type):
        self.calls.append(("run_node", node_id))
        return super().run_node(node_id, payload, input_type)

    def propagate(self, source_id, response):
        self.calls.append(("propagate", source_id))
        return super().propagate(source_id, response)


def make_engine(
    graph: Graph,
    clients: dict[str, GenerativeClient] | None = None,
    engine_cls: Callable[..., ExecutionEngine] = ExecutionEngine,
    mock_mode: bool = False,
) -> ExecutionEngine:
    store = StateStore(graph)
    return engine_cls(store, clients=clients or {}, mock_mode=mock_mode, simulated_latency=0)


def llm_chain(api_key: str | None = "sk-test") -> Graph:
    """input-1 -> llm-1 -> output-1"""
    graph = Graph.default()
    config = {"api_key": api_key} if api_key else {}
    graph.add_node("openai", node_id="llm-1", config=config)
    graph.add_edge("input-1", "llm-1")
    graph.add_edge("llm-1", "output-1")
    return graph


# ---------------------------------------------------------------------------
# Trigger preconditions
# ---------------------------------------------------------------------------


class TestTrigger:
    """Validation at the entry point."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw_input", ["", "   ", None])
    async def test_empty_input_rejected(self, raw_input):
        engine = make_engine(llm_chain())
        with pytest.raises(InputRequiredError) as exc_info:
            await engine.trigger("input-1", raw_input)
        assert exc_info.value.message == "Please enter a prompt before sending"
        node = engine.store.get_node("input-1")
        assert node.runtime.processing is False
        assert node.runtime.executed is False
        assert engine.in_flight == 0

    @pytest.mark.asyncio
    async def test_no_downstream_rejected(self):
        engine = make_engine(Graph.default())
        with pytest.raises(NoDownstreamError):
            await engine.trigger("input-1", "Hello")
        assert engine.store.get_node("input-1").runtime.executed is False

    @pytest.mark.asyncio
    async def test_trigger_node_state(self):
        """The trigger node ends executed, not processing, holding what it sent."""
        engine = make_engine(llm_chain(), {"openai-chat": FakeClient("openai-chat")})
        seen: list[tuple[str, bool]] = []
        engine.store.add_listener(
            lambda event, node: seen.append((event.event, node.runtime.processing))
            if node.id == "input-1" else None
        )

        tasks = await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        assert len(tasks) == 1
        assert seen == [("started", True), ("dispatched", False)]
        node = engine.store.get_node("input-1")
        assert node.runtime.executed is True
        assert node.runtime.input == "Hello"
        assert node.runtime.input_type == "text"

    @pytest.mark.asyncio
    async def test_stored_input_used_when_omitted(self):
        client = FakeClient("openai-chat")
        engine = make_engine(llm_chain(), {"openai-chat": client})
        engine.store.update_node("input-1", {"input": "stored prompt"})

        await engine.trigger("input-1")
        await engine.wait_idle()

        assert client.requests[0].prompt == "stored prompt"


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    @pytest.mark.asyncio
    async def test_llm_chain_success(self):
        """input -> llm -> output: the output shows the model's response."""
        client = FakeClient("openai-chat", reply=lambda r: f"Echo: {r.prompt}")
        engine = make_engine(llm_chain(), {"openai-chat": client})
        llm_processing: list[bool] = []
        engine.store.add_listener(
            lambda event, node: llm_processing.append(node.runtime.processing)
            if node.id == "llm-1" else None
        )

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        llm = engine.store.get_node("llm-1")
        output = engine.store.get_node("output-1")
        assert True in llm_processing
        assert llm_processing[-1] is False
        assert llm.runtime.response == "Echo: Hello"
        assert llm.runtime.response_type == "text"
        assert llm.runtime.error is None
        assert output.runtime.response == llm.runtime.response
        assert output.runtime.executed is True

        request = client.requests[0]
        assert request.credential == "sk-test"
        assert request.model == "gpt-4o"
        assert request.parameters["temperature"] == 0.7
        assert request.parameters["max_tokens"] == 1000

    @pytest.mark.asyncio
    async def test_llm_keeps_last_exchange_as_context(self):
        engine = make_engine(llm_chain(), {"openai-chat": FakeClient("openai-chat", reply="Hi!")})
        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()
        assert engine.store.get_node("llm-1").runtime.context == [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi!"},
        ]

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        """No credential: error on the node, nothing reaches the output."""
        client = FakeClient("openai-chat")
        engine = make_engine(llm_chain(api_key=None), {"openai-chat": client})

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        llm = engine.store.get_node("llm-1")
        output = engine.store.get_node("output-1")
        assert llm.runtime.error == "OpenAI API Key required"
        assert llm.runtime.executed is True
        assert llm.runtime.processing is False
        assert output.runtime.response is None
        assert output.runtime.input is None
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_fan_out_branches_are_independent(self):
        """Both branches finish; the slower one does not hold back the faster."""
        graph = Graph.default()
        graph.add_node("openai", node_id="A", config={"api_key": "sk-a"})
        graph.add_node("anthropic", node_id="B", config={"api_key": "sk-b"})
        graph.add_edge("input-1", "A")
        graph.add_edge("input-1", "B")
        clients = {
            "openai-chat": FakeClient("openai-chat", reply="from A", delay=0.05),
            "anthropic-messages": FakeClient("anthropic-messages", reply="from B", delay=0.0),
        }
        engine = make_engine(graph, clients)
        completed: list[str] = []
        engine.store.add_listener(
            lambda event, node: completed.append(node.id) if event.event == "completed" else None
        )

        tasks = await engine.trigger("input-1", "Hello")
        assert len(tasks) == 2
        await engine.wait_idle()

        assert engine.store.get_node("A").runtime.executed is True
        assert engine.store.get_node("B").runtime.executed is True
        assert completed == ["B", "A"]

    @pytest.mark.asyncio
    async def test_fan_out_failure_stays_local(self):
        graph = Graph.default()
        graph.add_node("openai", node_id="A", config={"api_key": "sk-a"})
        graph.add_node("anthropic", node_id="B", config={"api_key": "sk-b"})
        graph.add_edge("input-1", "A")
        graph.add_edge("input-1", "B")
        graph.add_edge("B", "output-1")
        clients = {
            "openai-chat": FakeClient("openai-chat", error=ServiceCallError("rate limited", 429)),
            "anthropic-messages": FakeClient("anthropic-messages", reply="from B"),
        }
        engine = make_engine(graph, clients)

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        assert engine.store.get_node("A").runtime.error == "rate limited"
        assert engine.store.get_node("B").runtime.error is None
        assert engine.store.get_node("output-1").runtime.response == "from B"

    @pytest.mark.asyncio
    async def test_mid_chain_input_pauses(self):
        """A mid-chain input node stores the payload and waits for a manual continue."""
        graph = Graph.default()
        graph.add_node("openai", node_id="llm-1", config={"api_key": "sk-test"})
        graph.add_node("input", node_id="input-2", label="Review")
        graph.add_edge("input-1", "llm-1")
        graph.add_edge("llm-1", "input-2")
        graph.add_edge("input-2", "output-1")
        engine = make_engine(graph, {"openai-chat": FakeClient("openai-chat", reply="draft")})

        await engine.trigger("input-1", "Write a draft")
        await engine.wait_idle()

        paused = engine.store.get_node("input-2")
        assert paused.runtime.input == "draft"
        assert paused.runtime.context == "draft"
        assert paused.runtime.executed is False
        assert paused.runtime.processing is False
        assert engine.store.get_node("output-1").runtime.response is None

        # Continue with the stored input
        await engine.trigger("input-2")
        await engine.wait_idle()
        assert engine.store.get_node("output-1").runtime.response == "draft"
        assert engine.store.get_node("input-2").runtime.executed is True


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestCredentialGate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("type_tag", ["openai", "anthropic", "gemini", "perplexity", "dalle", "elevenlabs"])
    async def test_missing_credential_blocks_propagation(self, type_tag):
        """Every generative type without a credential errors and propagates nothing."""
        graph = Graph.default()
        graph.add_node(type_tag, node_id="gen-1")
        graph.add_edge("input-1", "gen-1")
        graph.add_edge("gen-1", "output-1")
        engine = make_engine(graph, engine_cls=RecordingEngine)

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        node = engine.store.get_node("gen-1")
        assert node.runtime.error.endswith("required")
        assert node.runtime.executed is True
        assert ("propagate", "gen-1") not in engine.calls
        assert engine.store.get_node("output-1").runtime.input is None


class TestTypeInference:
    @pytest.mark.asyncio
    async def test_image_payload_sets_image_input_type(self):
        graph = Graph.default()
        graph.add_node("dalle", node_id="img-1", config={"api_key": "sk-test"})
        graph.add_node("stability", node_id="next-1")
        graph.add_edge("input-1", "img-1")
        graph.add_edge("img-1", "next-1")
        image = Blob(data=b"\x89PNG\r\n", mime_type="image/png", filename="image.png")
        engine = make_engine(graph, {"openai-images": FakeClient("openai-images", reply=image)})

        await engine.trigger("input-1", "A red fox")
        await engine.wait_idle()

        assert engine.store.get_node("img-1").runtime.response_type == "image"
        successor = engine.store.get_node("next-1")
        assert successor.runtime.input_type == "image"
        assert successor.runtime.input == image

    @pytest.mark.asyncio
    async def test_text_payload_sets_text_input_type(self):
        graph = Graph.default()
        graph.add_node("blog", node_id="blog-1")
        graph.add_edge("input-1", "blog-1")
        engine = make_engine(graph)

        await engine.trigger("input-1", "Topic")
        await engine.wait_idle()

        assert engine.store.get_node("blog-1").runtime.input_type == "text"

    @pytest.mark.asyncio
    async def test_incompatible_payload_not_run(self):
        """A text payload reaching a transcription node is recorded but not sent."""
        graph = Graph.default()
        graph.add_node("whisper", node_id="stt-1", config={"api_key": "sk-test"})
        graph.add_edge("input-1", "stt-1")
        graph.add_edge("stt-1", "output-1")
        client = FakeClient("openai-transcription")
        engine = make_engine(graph, {"openai-transcription": client})

        await engine.trigger("input-1", "not audio")
        await engine.wait_idle()

        node = engine.store.get_node("stt-1")
        assert node.runtime.error == "Whisper cannot accept text input"
        assert node.runtime.input == "not audio"
        assert client.requests == []
        assert engine.store.get_node("output-1").runtime.response is None

    @pytest.mark.asyncio
    async def test_audio_file_trigger(self):
        graph = Graph.default()
        graph.add_node("whisper", node_id="stt-1", config={"api_key": "sk-test"})
        graph.add_edge("input-1", "stt-1")
        graph.add_edge("stt-1", "output-1")
        client = FakeClient("openai-transcription", reply="transcribed words")
        engine = make_engine(graph, {"openai-transcription": client})
        audio = Blob(data=b"ID3audio", mime_type="audio/mpeg", filename="memo.mp3")

        await engine.trigger("input-1", audio)
        await engine.wait_idle()

        assert engine.store.get_node("input-1").runtime.input_type == "audio"
        assert client.requests[0].prompt == audio
        assert engine.store.get_node("output-1").runtime.response == "transcribed words"


class TestTerminalOutput:
    @pytest.mark.asyncio
    async def test_output_never_propagates(self):
        graph = Graph.default()
        graph.add_node("blog", node_id="after-output")
        graph.add_edge("input-1", "output-1")
        graph.add_edge("output-1", "after-output")
        engine = make_engine(graph, engine_cls=RecordingEngine)

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        output = engine.store.get_node("output-1")
        assert output.runtime.response == "Hello"
        assert output.runtime.response_type == "text"
        assert output.runtime.executed is True
        assert ("propagate", "output-1") not in engine.calls
        assert engine.store.get_node("after-output").runtime.input is None

    @pytest.mark.asyncio
    async def test_output_binary_response_type(self):
        graph = Graph.default()
        graph.add_edge("input-1", "output-1")
        engine = make_engine(graph)
        video = Blob(data=b"\x00\x00", mime_type="video/mp4")

        await engine.trigger("input-1", video)
        await engine.wait_idle()

        assert engine.store.get_node("output-1").runtime.response_type == "video"


class TestChainOrdering:
    def _chain(self) -> Graph:
        graph = Graph.default()
        graph.add_node("openai", node_id="A", config={"api_key": "sk-a"})
        graph.add_node("openai", node_id="B", config={"api_key": "sk-b"})
        graph.add_edge("input-1", "A")
        graph.add_edge("A", "B")
        graph.add_edge("B", "output-1")
        return graph

    @pytest.mark.asyncio
    async def test_downstream_runs_after_upstream_propagates(self):
        client = FakeClient("openai-chat", reply=lambda r: f"{r.prompt}+")
        engine = make_engine(self._chain(), {"openai-chat": client}, engine_cls=RecordingEngine)

        await engine.trigger("input-1", "x")
        await engine.wait_idle()

        calls = engine.calls
        assert calls.index(("propagate", "A")) < calls.index(("run_node", "B"))
        assert calls.index(("propagate", "B")) < calls.index(("run_node", "output-1"))
        assert engine.store.get_node("output-1").runtime.response == "x++"

    @pytest.mark.asyncio
    async def test_failed_upstream_stops_chain(self):
        client = FakeClient("openai-chat", error=ServiceCallError("upstream down", 503))
        engine = make_engine(self._chain(), {"openai-chat": client}, engine_cls=RecordingEngine)

        await engine.trigger("input-1", "x")
        await engine.wait_idle()

        assert ("run_node", "B") not in engine.calls
        assert len(client.requests) == 1
        assert engine.store.get_node("A").runtime.error == "upstream down"
        assert engine.store.get_node("B").runtime.executed is False


# ---------------------------------------------------------------------------
# Strategies and failure handling
# ---------------------------------------------------------------------------


class TestPassthrough:
    @pytest.mark.asyncio
    async def test_derived_response(self):
        graph = Graph.default()
        graph.add_node("webhook", node_id="hook-1", label="Notify")
        graph.add_edge("input-1", "hook-1")
        graph.add_edge("hook-1", "output-1")
        engine = make_engine(graph)

        await engine.trigger("input-1", "ping")
        await engine.wait_idle()

        hook = engine.store.get_node("hook-1")
        assert hook.runtime.response == "Processed by Notify: ping"
        assert hook.runtime.response_type == "text"
        assert hook.runtime.executed is True
        assert engine.store.get_node("output-1").runtime.response == "Processed by Notify: ping"

    @pytest.mark.asyncio
    async def test_mock_mode_simulates_generative_nodes(self):
        """In mock mode a generative node needs no credential and calls no service."""
        client = FakeClient("openai-chat")
        engine = make_engine(llm_chain(api_key=None), {"openai-chat": client}, mock_mode=True)

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        assert client.requests == []
        assert engine.store.get_node("llm-1").runtime.error is None
        assert engine.store.get_node("output-1").runtime.response == "Processed by OpenAI: Hello"

    @pytest.mark.asyncio
    async def test_fan_in_last_write_wins(self):
        graph = Graph.default()
        graph.add_node("blog", node_id="left", label="Left")
        graph.add_node("social", node_id="right", label="Right")
        graph.add_edge("input-1", "left")
        graph.add_edge("input-1", "right")
        graph.add_edge("left", "output-1")
        graph.add_edge("right", "output-1")
        engine = make_engine(graph, engine_cls=RecordingEngine)

        await engine.trigger("input-1", "hi")
        await engine.wait_idle()

        assert engine.calls.count(("run_node", "output-1")) == 2
        assert engine.store.get_node("output-1").runtime.response in (
            "Processed by Left: hi",
            "Processed by Right: hi",
        )


class TestFailures:
    @pytest.mark.asyncio
    async def test_service_error_recorded(self):
        client = FakeClient("openai-chat", error=ServiceCallError("openai-chat: Invalid API key", 401))
        engine = make_engine(llm_chain(), {"openai-chat": client})

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        llm = engine.store.get_node("llm-1")
        assert llm.runtime.error == "openai-chat: Invalid API key"
        assert llm.runtime.processing is False
        assert llm.runtime.executed is True
        assert engine.store.get_node("output-1").runtime.response is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_recorded(self):
        client = FakeClient("openai-chat", error=RuntimeError("kaput"))
        engine = make_engine(llm_chain(), {"openai-chat": client})

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        assert engine.store.get_node("llm-1").runtime.error == "RuntimeError: kaput"

    @pytest.mark.asyncio
    async def test_missing_client_recorded(self):
        graph = llm_chain()
        engine = make_engine(graph)
        engine.clients.pop("openai-chat")

        await engine.trigger("input-1", "Hello")
        await engine.wait_idle()

        assert "No client configured" in engine.store.get_node("llm-1").runtime.error

    @pytest.mark.asyncio
    async def test_cancel_all_writes_terminal_state(self):
        client = FakeClient("openai-chat", delay=10)
        engine = make_engine(llm_chain(), {"openai-chat": client})

        await engine.trigger("input-1", "Hello")
        await asyncio.sleep(0.01)
        assert engine.store.get_node("llm-1").runtime.processing is True

        await engine.cancel_all()

        llm = engine.store.get_node("llm-1")
        assert llm.runtime.processing is False
        assert llm.runtime.executed is True
        assert llm.runtime.error == "Execution cancelled"
        assert engine.in_flight == 0

    @pytest.mark.asyncio
    async def test_node_deleted_mid_run(self):
        """A run whose node disappears finishes quietly."""
        client = FakeClient("openai-chat", delay=0.02)
        engine = make_engine(llm_chain(), {"openai-chat": client})

        await engine.trigger("input-1", "Hello")
        await asyncio.sleep(0)
        engine.store.graph.delete_node_ids(["llm-1"])
        await engine.wait_idle()

        assert not engine.store.graph.has_node("llm-1")
        assert engine.store.get_node("output-1").runtime.response is None
