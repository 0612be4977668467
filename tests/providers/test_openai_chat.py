"""Tests for providers/openai_chat.py -- chat-completions over the openai SDK.

The SDK talks to an httpx.MockTransport; streamed responses are served as
server-sent events.

Run with: python -m pytest tests/providers/test_openai_chat.py -v
"""

import json

import httpx
import pytest
from openai import AsyncOpenAI

from agent.errors import MalformedResponseError, ProviderTransportError
from agent.settings import Settings
from providers.base import Finish, GenerateParams, StreamStart, TextDelta
from providers.openai_chat import OpenAIChatBackend
from providers.registry import ModelEntry

TOOLS = [{"type": "function", "function": {"name": "search", "parameters": {"type": "object"}}}]


def _completion(content="Hi there", finish="stop", tool_calls=None, choices=True):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o",
        "choices": [{"index": 0, "message": message, "finish_reason": finish}] if choices else [],
        "usage": {"prompt_tokens": 10, "completion_tokens": 4, "total_tokens": 14},
    }


def _chunk(delta=None, finish=None, usage=None):
    body = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-4o",
        "choices": [] if delta is None else [{"index": 0, "delta": delta, "finish_reason": finish}],
    }
    if usage:
        body["usage"] = usage
    return body


def _sse(*chunks):
    lines = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
    return httpx.Response(200, headers={"content-type": "text/event-stream"},
                          content=lines.encode())


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.responses.pop(0)

    def body(self, i=0):
        return json.loads(self.requests[i].content)


def _backend(recorder, supports_tools=True, provider_id="openai"):
    client = AsyncOpenAI(
        api_key="sk-test",
        base_url="https://llm.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
    )
    return OpenAIChatBackend("gpt-4o", client, provider_id=provider_id, supports_tools=supports_tools)


class TestGenerate:
    @pytest.mark.asyncio
    async def test_text_reply(self):
        rec = Recorder(httpx.Response(200, json=_completion()))
        result = await _backend(rec).generate([{"role": "user", "content": "hi"}],
                                              GenerateParams(temperature=0.1))
        assert result.content == "Hi there"
        assert result.finish_reason == "stop"
        assert result.usage.total_tokens == 14
        body = rec.body()
        assert body["model"] == "gpt-4o"
        assert body["temperature"] == 0.1
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_tool_calls_parsed(self):
        calls = [{"id": "call_1", "type": "function",
                  "function": {"name": "search", "arguments": "{\"q\": 1}"}}]
        rec = Recorder(httpx.Response(200, json=_completion(content=None, finish="tool_calls",
                                                            tool_calls=calls)))
        result = await _backend(rec).generate([], GenerateParams(tools=TOOLS, tool_choice="required"))
        assert result.finish_reason == "tool-calls"
        assert result.tool_calls[0].name == "search"
        assert result.tool_calls[0].arguments == "{\"q\": 1}"
        assert result.content == ""
        assert rec.body()["tool_choice"] == "required"

    @pytest.mark.asyncio
    async def test_tools_dropped_for_non_tool_model(self):
        rec = Recorder(httpx.Response(200, json=_completion()))
        result = await _backend(rec, supports_tools=False).generate([], GenerateParams(tools=TOOLS))
        assert "tools" not in rec.body()
        assert any("tools are not supported" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_tool_messages_forwarded(self):
        rec = Recorder(httpx.Response(200, json=_completion()))
        prompt = [
            {"role": "assistant", "content": "", "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "search", "arguments": "{}"}},
            ]},
            {"role": "tool", "tool_call_id": "c1", "content": "3 matches"},
        ]
        await _backend(rec).generate(prompt)
        sent = rec.body()["messages"]
        assert sent[0]["tool_calls"][0]["id"] == "c1"
        assert sent[1] == {"role": "tool", "tool_call_id": "c1", "content": "3 matches"}

    @pytest.mark.asyncio
    async def test_status_error_is_transport_error(self):
        rec = Recorder(httpx.Response(503, json={"error": {"message": "overloaded"}}))
        with pytest.raises(ProviderTransportError) as exc:
            await _backend(rec).generate([])
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_no_choices_is_malformed(self):
        rec = Recorder(httpx.Response(200, json=_completion(choices=False)))
        with pytest.raises(MalformedResponseError):
            await _backend(rec).generate([])


class TestStream:
    @pytest.mark.asyncio
    async def test_text_stream(self):
        rec = Recorder(_sse(
            _chunk({"role": "assistant", "content": "Hel"}),
            _chunk({"content": "lo"}),
            _chunk({}, finish="stop"),
            _chunk(usage={"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}),
        ))
        events = [e async for e in _backend(rec).stream([{"role": "user", "content": "hi"}])]

        assert isinstance(events[0], StreamStart)
        deltas = [e for e in events if isinstance(e, TextDelta)]
        assert "".join(d.text for d in deltas) == "Hello"
        assert len({d.id for d in deltas}) == 1
        assert isinstance(events[-1], Finish)
        assert events[-1].reason == "stop"
        assert events[-1].usage.total_tokens == 7
        body = rec.body()
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_tool_call_fragments_reassembled(self):
        rec = Recorder(_sse(
            _chunk({"tool_calls": [{"index": 0, "id": "call_1", "type": "function",
                                    "function": {"name": "search", "arguments": "{\"q\""}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": ": \"parser\"}"}}]}),
            _chunk({"tool_calls": [{"index": 1, "id": "call_2", "type": "function",
                                    "function": {"name": "list_files", "arguments": "{}"}}]}),
            _chunk({}, finish="tool_calls"),
        ))
        events = [e async for e in _backend(rec).stream([], GenerateParams(tools=TOOLS))]
        finish = events[-1]
        assert finish.reason == "tool-calls"
        assert [(c.id, c.name, c.arguments) for c in finish.tool_calls] == [
            ("call_1", "search", "{\"q\": \"parser\"}"),
            ("call_2", "list_files", "{}"),
        ]

    @pytest.mark.asyncio
    async def test_stream_status_error(self):
        rec = Recorder(httpx.Response(401, json={"error": {"message": "bad key"}}))
        with pytest.raises(ProviderTransportError) as exc:
            async for _ in _backend(rec).stream([]):
                pass
        assert exc.value.status_code == 401


class TestFactories:
    def test_google_uses_compat_endpoint(self):
        backend = OpenAIChatBackend.for_google(
            "gemini-2.0-flash", ModelEntry("gemini-2.0-flash", tool_calling=False),
            Settings(google_api_key="g"))
        assert backend.provider_id == "google"
        assert str(backend.client.base_url).startswith(
            "https://generativelanguage.googleapis.com/v1beta/openai")
        assert backend.supports_tools is False
