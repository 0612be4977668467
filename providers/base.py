"""Backend contract shared by every model provider.

A backend exposes two calls over the same prompt shape (a list of
``{"role", "content"}`` dicts, plus OpenAI-style ``tool_calls`` / ``tool``
messages once the tool loop is running):

    await backend.generate(prompt, params) -> GenerateResult
    async for event in backend.stream(prompt, params): ...

``stream`` always yields exactly one ``StreamStart``, then zero or more
``TextDelta``, then exactly one ``Finish``. Backends whose transport has no
server-sent deltas are wrapped in ``StreamingEmulation`` so callers never
need to know which kind they hold.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

# Closed finish-reason vocabulary exposed to callers.
FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_CONTENT_FILTER = "content-filter"
FINISH_TOOL_CALLS = "tool-calls"
FINISH_OTHER = "other"

_FINISH_REASON_MAP = {
    "stop": FINISH_STOP,
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "length": FINISH_LENGTH,
    "max_tokens": FINISH_LENGTH,
    "content_filter": FINISH_CONTENT_FILTER,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "tool_use": FINISH_TOOL_CALLS,
}


def map_finish_reason(raw: Optional[str]) -> str:
    """Translate a provider stop reason into the closed vocabulary."""
    if not raw:
        return FINISH_OTHER
    return _FINISH_REASON_MAP.get(raw, FINISH_OTHER)


@dataclass(frozen=True)
class Usage:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    @classmethod
    def of(cls, input_tokens: Optional[int], output_tokens: Optional[int],
           total_tokens: Optional[int] = None) -> "Usage":
        if total_tokens is None and input_tokens is not None and output_tokens is not None:
            total_tokens = input_tokens + output_tokens
        return cls(input_tokens, output_tokens, total_tokens)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def as_message_part(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class GenerateParams:
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[str] = None  # "auto" | "required"
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None


@dataclass
class GenerateResult:
    content: str
    finish_reason: str
    usage: Usage = field(default_factory=Usage)
    warnings: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class StreamStart:
    warnings: Sequence[str] = ()


@dataclass(frozen=True)
class TextDelta:
    id: str
    text: str


@dataclass(frozen=True)
class Finish:
    reason: str
    usage: Usage = field(default_factory=Usage)
    tool_calls: Sequence[ToolCall] = ()


StreamEvent = Union[StreamStart, TextDelta, Finish]


def new_delta_id() -> str:
    return uuid.uuid4().hex[:12]


def text_content(content: Any, warnings: List[str], role: str) -> str:
    """Flatten message content to text, recording a warning for dropped parts.

    Accepts a plain string or a list of ``{"type": ..., "text": ...}`` parts.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    texts = []
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                texts.append(str(part.get("text", "")))
            else:
                kind = part.get("type") if isinstance(part, dict) else type(part).__name__
                warnings.append(f"unsupported content part '{kind}' in {role} message dropped")
        return "".join(texts)
    warnings.append(f"unsupported content in {role} message dropped")
    return ""


class Backend(ABC):
    """One (provider, model) pair, ready to call."""

    provider_id: str = ""

    def __init__(self, model_id: str, supports_tools: bool = False):
        self.model_id = model_id
        self.supports_tools = supports_tools

    @property
    def specifier(self) -> str:
        return f"{self.provider_id}:{self.model_id}"

    @abstractmethod
    async def generate(self, prompt: List[Dict[str, Any]],
                       params: Optional[GenerateParams] = None) -> GenerateResult:
        ...

    def stream(self, prompt: List[Dict[str, Any]],
               params: Optional[GenerateParams] = None) -> AsyncIterator[StreamEvent]:
        """Native streaming. Request/response-only backends leave this alone
        and are wrapped in ``StreamingEmulation`` by the registry."""
        raise NotImplementedError(f"{type(self).__name__} has no native streaming")

    async def aclose(self) -> None:
        return None


class StreamingEmulation(Backend):
    """Gives a request/response-only backend a ``stream`` method.

    The inner backend's ``generate`` result is replayed as
    ``StreamStart -> TextDelta(full text) -> Finish``.
    """

    def __init__(self, inner: Backend):
        super().__init__(inner.model_id, inner.supports_tools)
        self.inner = inner
        self.provider_id = inner.provider_id

    async def generate(self, prompt, params=None) -> GenerateResult:
        return await self.inner.generate(prompt, params)

    async def stream(self, prompt, params=None) -> AsyncIterator[StreamEvent]:
        result = await self.inner.generate(prompt, params)
        yield StreamStart(warnings=tuple(result.warnings))
        yield TextDelta(id=new_delta_id(), text=result.content)
        yield Finish(reason=result.finish_reason, usage=result.usage,
                     tool_calls=tuple(result.tool_calls))

    async def aclose(self) -> None:
        await self.inner.aclose()
