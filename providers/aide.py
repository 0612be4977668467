"""AIDE enterprise LLM gateway backend.

The gateway fronts both AWS Bedrock (Anthropic models) and Azure OpenAI
behind one ``POST {base_url}/generate`` endpoint. The request body carries
gateway controls (guardrail, input scrubbing, log metadata) plus exactly one
provider envelope:

    aws.bedrock.invoke               Claude model ids
    azure.openai.chatCompletions     ``gpt-`` model ids

The gateway is request/response only; the registry wraps this backend in
``StreamingEmulation``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from agent.errors import MalformedResponseError, ProviderTransportError
from providers.base import (
    Backend,
    GenerateParams,
    GenerateResult,
    Usage,
    map_finish_reason,
    text_content,
)
from providers.token_cache import EntraTokenSource, TokenCache, shared_token_cache
from threadloom_constants import AIDE_ANTHROPIC_VERSION, AIDE_AZURE_API_VERSION
from tools.mcp_client import sanitize_error

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
SCRUBBING_TIMEOUT_SECONDS = 8

AWS_PROMPT_PATH = "aws.bedrock.invoke.body.messages[*].content[*].text"
AZURE_PROMPT_PATH = "azure.openai.chatCompletions.create.messages[*].content"


@dataclass(frozen=True)
class AideOptions:
    apply_guardrail: bool = True
    scrub_input: bool = True
    fail_on_scrub: bool = False
    model_provider: Optional[str] = None  # "aws" | "azure"; inferred from the model id


def is_azure_model(model_id: str) -> bool:
    return "gpt-" in model_id


class AideBackend(Backend):
    provider_id = "aide"

    def __init__(
        self,
        model_id: str,
        *,
        base_url: str,
        use_case_id: str,
        solma_id: str,
        token_cache: TokenCache,
        options: Optional[AideOptions] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        super().__init__(model_id, supports_tools=False)
        self.base_url = base_url.rstrip("/")
        self.use_case_id = use_case_id
        self.solma_id = solma_id
        self.token_cache = token_cache
        self.options = options or AideOptions()
        self._http_client = http_client
        self._timeout = timeout

    @classmethod
    def from_settings(cls, model_id, entry, settings, http_client=None) -> "AideBackend":
        fetch = None
        if settings.entra_configured:
            fetch = EntraTokenSource(
                settings.aide_entra_tenant_id,
                settings.aide_entra_client_id,
                settings.aide_entra_client_secret,
                settings.aide_entra_scope,
            )
        key = ("aide", settings.aide_api_key, settings.aide_entra_tenant_id,
               settings.aide_entra_client_id, settings.aide_entra_scope)
        cache = shared_token_cache(
            key, lambda: TokenCache(fetch, static_token=settings.aide_api_key),
        )
        return cls(
            model_id,
            base_url=settings.aide_base_url,
            use_case_id=settings.aide_use_case_id,
            solma_id=settings.aide_solma_id,
            token_cache=cache,
            http_client=http_client,
            timeout=settings.http_timeout,
        )

    @property
    def envelope(self) -> str:
        if self.options.model_provider:
            return self.options.model_provider
        return "azure" if is_azure_model(self.model_id) else "aws"

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def _convert_messages(self, prompt, warnings: List[str]) -> Tuple[List[str], List[Dict[str, Any]]]:
        """Split into system texts and user/assistant text messages."""
        system: List[str] = []
        messages: List[Dict[str, Any]] = []
        for msg in prompt:
            role = msg.get("role")
            if role not in ("system", "user", "assistant"):
                warnings.append(f"unsupported message role '{role}' dropped")
                continue
            if role == "assistant" and msg.get("tool_calls"):
                warnings.append("assistant tool calls are not supported by AIDE; dropped")
            text = text_content(msg.get("content"), warnings, role)
            if role == "system":
                system.append(text)
            else:
                messages.append({"role": role, "text": text})
        return system, messages

    def build_body(self, prompt, params: Optional[GenerateParams], warnings: List[str]) -> Dict[str, Any]:
        params = params or GenerateParams()
        if params.tools:
            warnings.append(f"tools are not supported by {self.specifier}; ignored")
        system, messages = self._convert_messages(prompt, warnings)
        azure = self.envelope == "azure"

        body: Dict[str, Any] = {
            "aide": {
                "apply_guardrail": self.options.apply_guardrail,
                "scrub_input": self.options.scrub_input,
                "fail_on_scrub": self.options.fail_on_scrub,
            },
            "gaas": {
                "guardrailsEnabled": False,
                "scrubInput": False,
                "scrubbingTimeoutSeconds": SCRUBBING_TIMEOUT_SECONDS,
                "pathToPrompt": AZURE_PROMPT_PATH if azure else AWS_PROMPT_PATH,
                "logMetadata": {"solmaId": self.solma_id},
            },
        }

        if azure:
            create: Dict[str, Any] = {
                "model": self.model_id,
                "messages": (
                    [{"role": "system", "content": text} for text in system]
                    + [{"role": m["role"], "content": m["text"]} for m in messages]
                ),
            }
            if params.temperature is not None:
                create["temperature"] = params.temperature
            if params.max_output_tokens is not None:
                create["max_tokens"] = params.max_output_tokens
            body["azure"] = {
                "openai": {
                    "apiVersion": AIDE_AZURE_API_VERSION,
                    "chatCompletions": {"create": create},
                },
            }
        else:
            invoke_body: Dict[str, Any] = {
                "anthropic_version": AIDE_ANTHROPIC_VERSION,
                "max_tokens": params.max_output_tokens or DEFAULT_MAX_TOKENS,
                "messages": [
                    {"role": m["role"], "content": [{"type": "text", "text": m["text"]}]}
                    for m in messages
                ],
            }
            if system:
                invoke_body["system"] = "\n\n".join(system)
            if params.temperature is not None:
                invoke_body["temperature"] = params.temperature
            body["aws"] = {"bedrock": {"invoke": {"modelId": self.model_id, "body": invoke_body}}}
        return body

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def parse_response(self, data: Any, warnings: List[str]) -> GenerateResult:
        if not isinstance(data, dict):
            raise MalformedResponseError("AIDE response is not a JSON object")
        try:
            if data.get("aws"):
                aws = data["aws"]
                texts = [c["text"] for c in aws["content"] if c.get("type") == "text"]
                usage = aws.get("usage") or {}
                return GenerateResult(
                    content="".join(texts),
                    finish_reason=map_finish_reason(aws.get("stop_reason")),
                    usage=Usage.of(usage.get("input_tokens"), usage.get("output_tokens")),
                    warnings=warnings,
                )
            if data.get("azure"):
                azure = data["azure"]
                choice = azure["choices"][0]
                usage = azure.get("usage") or {}
                return GenerateResult(
                    content=choice["message"].get("content") or "",
                    finish_reason=map_finish_reason(choice.get("finish_reason")),
                    usage=Usage.of(usage.get("prompt_tokens"), usage.get("completion_tokens"),
                                   usage.get("total_tokens")),
                    warnings=warnings,
                )
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"AIDE response missing expected field: {e}") from e
        raise MalformedResponseError("No valid response from AIDE API")

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def _post(self, client: httpx.AsyncClient, body: Dict[str, Any], token: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "UseCaseID": self.use_case_id,
        }
        try:
            return await client.post(f"{self.base_url}/generate", json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderTransportError(
                f"AIDE API call failed: {sanitize_error(str(e))}", provider="aide",
            ) from e

    async def generate(self, prompt, params=None) -> GenerateResult:
        warnings: List[str] = []
        body = self.build_body(prompt, params, warnings)
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            token = await self.token_cache.get()
            resp = await self._post(client, body, token)
            if resp.status_code == 401 and self.token_cache.can_refresh:
                logger.info("[AI] AIDE rejected bearer token; refreshing once")
                token = await self.token_cache.get(force=True)
                resp = await self._post(client, body, token)
        finally:
            if self._http_client is None:
                await client.aclose()

        if resp.status_code >= 400:
            raise ProviderTransportError(
                f"AIDE API call failed: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                provider="aide",
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError("AIDE response is not valid JSON") from e
        return self.parse_response(data, warnings)
