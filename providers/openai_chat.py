"""Chat-completions backend (OpenAI, and Gemini via its OpenAI-compatible API).

Both providers speak the same wire protocol, so one adapter built on the
``openai`` SDK covers them; only the base URL, key and tool support differ.
Streaming is native (SSE). Tool calls arrive as indexed fragments across
chunks and are reassembled before the ``Finish`` event.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIResponseValidationError,
    APIStatusError,
    AsyncOpenAI,
)

from agent.errors import MalformedResponseError, ProviderTransportError
from providers.base import (
    FINISH_OTHER,
    FINISH_TOOL_CALLS,
    Backend,
    Finish,
    GenerateParams,
    GenerateResult,
    StreamEvent,
    StreamStart,
    TextDelta,
    ToolCall,
    Usage,
    map_finish_reason,
    new_delta_id,
    text_content,
)
from threadloom_constants import GOOGLE_OPENAI_COMPAT_BASE_URL
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)


def _usage_from(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage.of(
        getattr(raw, "prompt_tokens", None),
        getattr(raw, "completion_tokens", None),
        getattr(raw, "total_tokens", None),
    )


class OpenAIChatBackend(Backend):

    def __init__(self, model_id: str, client: AsyncOpenAI, *, provider_id: str = "openai",
                 supports_tools: bool = True):
        super().__init__(model_id, supports_tools)
        self.provider_id = provider_id
        self.client = client

    @classmethod
    def for_openai(cls, model_id, entry, settings, http_client: Optional[httpx.AsyncClient] = None):
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.http_timeout,
            max_retries=0,
            http_client=http_client,
        )
        return cls(model_id, client, provider_id="openai", supports_tools=entry.tool_calling)

    @classmethod
    def for_google(cls, model_id, entry, settings, http_client: Optional[httpx.AsyncClient] = None):
        client = AsyncOpenAI(
            api_key=settings.google_api_key,
            base_url=GOOGLE_OPENAI_COMPAT_BASE_URL,
            timeout=settings.http_timeout,
            max_retries=0,
            http_client=http_client,
        )
        return cls(model_id, client, provider_id="google", supports_tools=entry.tool_calling)

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def _chat_messages(self, prompt: List[Dict[str, Any]], warnings: List[str]) -> List[Dict[str, Any]]:
        messages = []
        for msg in prompt:
            role = msg.get("role")
            if role == "tool":
                messages.append({
                    "role": "tool",
                    "tool_call_id": msg.get("tool_call_id", ""),
                    "content": text_content(msg.get("content"), warnings, role),
                })
            elif role in ("system", "user", "assistant"):
                out: Dict[str, Any] = {
                    "role": role,
                    "content": text_content(msg.get("content"), warnings, role),
                }
                if role == "assistant" and msg.get("tool_calls"):
                    out["tool_calls"] = msg["tool_calls"]
                messages.append(out)
            else:
                warnings.append(f"unsupported message role '{role}' dropped")
        return messages

    def _request_kwargs(self, prompt, params: Optional[GenerateParams],
                        warnings: List[str]) -> Dict[str, Any]:
        params = params or GenerateParams()
        kwargs: Dict[str, Any] = {
            "model": self.model_id,
            "messages": self._chat_messages(prompt, warnings),
        }
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        if params.max_output_tokens is not None:
            kwargs["max_tokens"] = params.max_output_tokens
        if params.tools:
            if self.supports_tools:
                kwargs["tools"] = params.tools
                if params.tool_choice:
                    kwargs["tool_choice"] = params.tool_choice
            else:
                warnings.append(f"tools are not supported by {self.specifier}; ignored")
        return kwargs

    def _transport_error(self, e: APIError) -> ProviderTransportError:
        status = getattr(e, "status_code", None)
        return ProviderTransportError(
            f"{self.provider_id} request failed: {sanitize_error(str(e))}",
            status_code=status,
            provider=self.provider_id,
            model=self.model_id,
        )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def generate(self, prompt, params=None) -> GenerateResult:
        warnings: List[str] = []
        kwargs = self._request_kwargs(prompt, params, warnings)
        try:
            response = await self.client.chat.completions.create(**kwargs)
        except APIResponseValidationError as e:
            raise MalformedResponseError(f"{self.provider_id} response did not validate: {e}") from e
        except (APIStatusError, APIConnectionError) as e:
            raise self._transport_error(e) from e

        if not getattr(response, "choices", None):
            raise MalformedResponseError(f"{self.provider_id} response has no choices")
        choice = response.choices[0]
        message = choice.message
        if message is None:
            raise MalformedResponseError(f"{self.provider_id} choice has no message")

        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (message.tool_calls or [])
        ]
        reason = map_finish_reason(choice.finish_reason)
        if tool_calls and reason == FINISH_OTHER:
            reason = FINISH_TOOL_CALLS
        return GenerateResult(
            content=message.content or "",
            finish_reason=reason,
            usage=_usage_from(response.usage),
            warnings=warnings,
            tool_calls=tool_calls,
        )

    async def stream(self, prompt, params=None) -> AsyncIterator[StreamEvent]:
        warnings: List[str] = []
        kwargs = self._request_kwargs(prompt, params, warnings)
        try:
            sse = await self.client.chat.completions.create(
                **kwargs, stream=True, stream_options={"include_usage": True},
            )
        except (APIStatusError, APIConnectionError) as e:
            raise self._transport_error(e) from e

        yield StreamStart(warnings=tuple(warnings))

        delta_id = new_delta_id()
        finish_raw: Optional[str] = None
        usage = Usage()
        fragments: Dict[int, Dict[str, Any]] = {}
        try:
            async for chunk in sse:
                if getattr(chunk, "usage", None):
                    usage = _usage_from(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    if delta.content:
                        yield TextDelta(id=delta_id, text=delta.content)
                    for tc in delta.tool_calls or []:
                        slot = fragments.setdefault(tc.index, {"id": "", "name": "", "args": []})
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function is not None:
                            if tc.function.name:
                                slot["name"] = tc.function.name
                            if tc.function.arguments:
                                slot["args"].append(tc.function.arguments)
                if choice.finish_reason:
                    finish_raw = choice.finish_reason
        except (APIStatusError, APIConnectionError) as e:
            raise self._transport_error(e) from e
        except httpx.HTTPError as e:
            raise ProviderTransportError(
                f"{self.provider_id} stream interrupted: {sanitize_error(str(e))}",
                provider=self.provider_id,
            ) from e
        finally:
            await sse.close()

        tool_calls = tuple(
            ToolCall(id=slot["id"] or f"call_{idx}", name=slot["name"],
                     arguments="".join(slot["args"]) or "{}")
            for idx, slot in sorted(fragments.items())
            if slot["name"]
        )
        reason = map_finish_reason(finish_raw)
        if tool_calls and reason == FINISH_OTHER:
            reason = FINISH_TOOL_CALLS
        yield Finish(reason=reason, usage=usage, tool_calls=tool_calls)

    async def aclose(self) -> None:
        await self.client.close()
