import json

import httpx
import pytest

from switchback.config import LMStudioConfig, OllamaConfig
from switchback.exceptions import BackendAPIError
from switchback.llm import ChatOptions, Message, ToolCall
from switchback.llm.backends import LMStudioBackend, OllamaBackend


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def _sse(*texts: str) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': t}}]})}\n\n" for t in texts]
    return ("".join(lines) + "data: [DONE]\n\n").encode()


def _ndjson(*chunks: dict) -> bytes:
    return "".join(json.dumps(chunk) + "\n" for chunk in chunks).encode()


# LM Studio


@pytest.mark.asyncio
async def test_lmstudio_probe_reports_not_running():
    backend = LMStudioBackend(LMStudioConfig(), client=_client(_refuse))

    status = await backend.probe()

    assert status.available is False
    assert status.reason == "LM Studio is not running"


@pytest.mark.asyncio
async def test_lmstudio_probe_requires_a_loaded_model():
    backend = LMStudioBackend(
        LMStudioConfig(),
        client=_client(lambda request: httpx.Response(200, json={"data": []})),
    )

    status = await backend.probe()

    assert status.available is False
    assert status.reason == "No models loaded in LM Studio"


@pytest.mark.asyncio
async def test_lmstudio_probe_prefers_configured_model_when_loaded():
    models = {"data": [{"id": "qwen2.5-7b"}, {"id": "gpt-oss-20b"}]}
    client = _client(lambda request: httpx.Response(200, json=models))

    configured = await LMStudioBackend(LMStudioConfig(model="gpt-oss-20b"), client=client).probe()
    fallback = await LMStudioBackend(LMStudioConfig(model="missing"), client=client).probe()

    assert configured.model == "gpt-oss-20b"
    assert fallback.model == "qwen2.5-7b"


@pytest.mark.asyncio
async def test_lmstudio_streams_only_final_channel_text():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            assert str(request.url) == "http://127.0.0.1:1234/v1/models"
            return httpx.Response(200, json={"data": [{"id": "gpt-oss-20b"}]})
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=_sse(
                "<|channel|>analysis<|message|>The user wants",
                " a greeting.<|end|><|start|>assistant<|channel|>final<|message|>Hi ",
                "there!",
            ),
        )

    backend = LMStudioBackend(LMStudioConfig(), client=_client(handler))
    await backend.initialize()
    deltas: list[str] = []

    response = await backend.chat([Message.user("hello")], ChatOptions(on_delta=deltas.append))

    assert "".join(deltas) == "Hi there!"
    assert response.message.content == "Hi there!"
    assert bodies[0]["model"] == "gpt-oss-20b"


@pytest.mark.asyncio
async def test_lmstudio_recovers_inline_tool_calls():
    raw = '<|channel|>commentary to=functions.get_weather <|constrain|>json<|message|>{"city": "Oslo"}<|call|>'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(raw))

    backend = LMStudioBackend(LMStudioConfig(model="gpt-oss-20b"), client=_client(handler))
    deltas: list[str] = []

    response = await backend.chat([Message.user("weather?")], ChatOptions(on_delta=deltas.append))

    assert deltas == []
    assert response.message.content is None
    assert [(c.name, c.arguments) for c in response.message.tool_calls] == [("get_weather", '{"city": "Oslo"}')]


@pytest.mark.asyncio
async def test_lmstudio_embeddings_use_the_compatible_endpoint():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "http://127.0.0.1:1234/v1/embeddings"
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.5, 0.5]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    backend = LMStudioBackend(
        LMStudioConfig(model="qwen2.5-7b", embedding_model="nomic-embed-text-v1.5"),
        client=_client(handler),
    )

    assert backend.info.capabilities.embeddings is True
    assert await backend.embed(["first", "second"]) == [[1.0, 0.0], [0.5, 0.5]]
    assert bodies == [{"model": "nomic-embed-text-v1.5", "input": ["first", "second"]}]


@pytest.mark.asyncio
async def test_lmstudio_embeddings_fall_back_to_chat_model():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1]}]})

    backend = LMStudioBackend(LMStudioConfig(model="qwen2.5-7b"), client=_client(handler))

    assert await backend.embed(["x"]) == [[0.1]]
    assert bodies[0]["model"] == "qwen2.5-7b"
    assert await backend.embed([]) == []
    assert len(bodies) == 1


# Ollama


@pytest.mark.asyncio
async def test_ollama_probe_reports_not_running():
    status = await OllamaBackend(OllamaConfig(), client=_client(_refuse)).probe()

    assert status.available is False
    assert status.reason == "Ollama is not running"


@pytest.mark.asyncio
async def test_ollama_probe_checks_the_model_is_pulled():
    tags = {"models": [{"name": "llama3.2:latest"}, {"name": "qwen2.5:7b"}]}
    client = _client(lambda request: httpx.Response(200, json=tags))

    pulled = await OllamaBackend(OllamaConfig(model="llama3.2"), client=client).probe()
    missing = await OllamaBackend(OllamaConfig(model="mistral"), client=client).probe()

    assert pulled.available is True
    assert pulled.model == "llama3.2"
    assert missing.available is False
    assert missing.reason == "Model 'mistral' is not pulled in Ollama"


@pytest.mark.asyncio
async def test_ollama_streams_ndjson_and_collects_tool_calls():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=_ndjson(
                {"message": {"role": "assistant", "content": "Checking"}, "done": False},
                {"message": {"role": "assistant", "content": " now"}, "done": False},
                {
                    "message": {
                        "role": "assistant",
                        "content": "",
                        "tool_calls": [{"function": {"name": "get_weather", "arguments": {"city": "Oslo"}}}],
                    },
                    "done": True,
                },
            ),
        )

    backend = OllamaBackend(OllamaConfig(num_ctx=4096), client=_client(handler))
    call = ToolCall(id="call_1", name="get_weather", arguments='{"city": "Bergen"}')
    deltas: list[str] = []

    response = await backend.chat(
        [
            Message.user("weather?"),
            Message.assistant(None, [call]),
            Message.tool("call_1", "get_weather", "rain"),
        ],
        ChatOptions(on_delta=deltas.append, temperature=0.2),
    )

    assert deltas == ["Checking", " now"]
    assert response.message.content == "Checking now"
    assert response.message.tool_calls[0].name == "get_weather"
    assert json.loads(response.message.tool_calls[0].arguments) == {"city": "Oslo"}

    body = bodies[0]
    assert body["options"] == {"num_ctx": 4096, "temperature": 0.2}
    assert body["messages"][1]["tool_calls"] == [
        {"function": {"name": "get_weather", "arguments": {"city": "Bergen"}}}
    ]
    assert body["messages"][2]["tool_name"] == "get_weather"


@pytest.mark.asyncio
async def test_ollama_http_error_raises_backend_error():
    backend = OllamaBackend(
        OllamaConfig(),
        client=_client(lambda request: httpx.Response(500, text="model crashed")),
    )

    with pytest.raises(BackendAPIError, match="500"):
        await backend.chat([Message.user("hi")])
