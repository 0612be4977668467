"""Orchestration facade: one call per user turn.

``ChatOrchestrator.stream_reply`` turns a stored thread into a streamed
assistant reply:

    load thread + history
    -> validate model specifier (ConfigurationError, before any network I/O)
    -> assemble budgeted context
    -> detect repository reference in the latest user message
    -> if the model may call tools: discover tools, canonicalize project, prefetch
    -> guardrail + tool hint + summary hint + prefetch + context
    -> tool loop over the provider stream, relaying text as it arrives
    -> persist reply, bump counters, maybe summarize

A reply is persisted only when the stream completes. Cancelling the task,
closing the generator, or setting ``cancel_event`` persists nothing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional

from agent.context_assembler import AssembledContext, build_context_messages
from agent.errors import GenerationAborted, ThreadNotFoundError
from agent.model_metadata import estimate_tokens
from agent.prefetcher import (
    PrefetchResult,
    build_prefetch_messages,
    prefetch,
    resolve_project_path,
)
from agent.prompts import (
    MARKDOWN_GUARDRAIL_PROMPT,
    SUMMARY_HINT_PROMPT,
    TICKETS_PROMPT,
    TICKETS_RESEARCH_PROMPT,
    build_tool_hint,
    system,
)
from agent.reference_detector import (
    RepoReference,
    contains_repo_url,
    detect_reference,
    is_summary_query,
)
from agent.settings import Settings, load_settings
from agent.storage import Message, Storage, Thread
from agent.summarizer import Summary, SummaryInput, should_summarize, summarize_thread
from agent.tickets import parse_tickets_from_text
from agent.tool_steps import StepHook, ToolStepPolicy, run_tool_loop
from providers import registry
from providers.base import Backend, TextDelta
from tools.tool_gateway import ToolDescriptor, ToolGateway

logger = logging.getLogger(__name__)

MODE_ASSISTANT = "assistant"
MODE_TICKET = "ticket"

BackendFactory = Callable[[str, Settings], Backend]


def _latest_user_text(history: List[Message]) -> Optional[str]:
    for msg in reversed(history):
        if msg.role == "user":
            return msg.content
    return None


class ChatOrchestrator:
    """Composes context, tools and providers for a single reply.

    Args:
        storage: Storage implementation (threads + messages).
        settings: Runtime settings; loaded from the environment when omitted.
        gateway: Repository tool gateway, or None for no tools.
        backend_factory: ``(specifier, settings) -> Backend``; the specifier
            is always validated against the registry first.
        on_step_finish: Optional telemetry hook for tool-loop steps.
    """

    def __init__(
        self,
        storage: Storage,
        settings: Optional[Settings] = None,
        gateway: Optional[ToolGateway] = None,
        backend_factory: Optional[BackendFactory] = None,
        on_step_finish: Optional[StepHook] = None,
    ):
        self.storage = storage
        self.settings = settings or load_settings()
        self.gateway = gateway
        self._backend_factory = backend_factory or registry.resolve
        self._on_step_finish = on_step_finish

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, thread_id: str):
        thread = await self.storage.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFoundError(f"Thread not found: {thread_id}", thread_id=thread_id)
        history = await self.storage.list_messages(thread_id)
        return thread, history

    def _specifier(self, thread: Thread, model: Optional[str]) -> str:
        return model or thread.default_model or registry.default_specifier(self.settings)

    def _backend(self, spec: str) -> Backend:
        registry.validate(spec, self.settings)
        return self._backend_factory(spec, self.settings)

    async def _discover_tools(self, spec: str) -> List[ToolDescriptor]:
        if self.gateway is None or not registry.tool_calling_enabled(spec):
            return []
        return await self.gateway.list_tools()

    async def _repository_context(self, reference: RepoReference, tools: List[ToolDescriptor],
                                  allow_prefetch: bool):
        project = reference.project_path
        if not (allow_prefetch and project and tools):
            return project, PrefetchResult()
        project = await resolve_project_path(project, self.gateway)
        result = await prefetch(project, reference.ref, reference, self.gateway)
        return project, result

    async def _record_reply(self, thread: Thread, spec: str, content: str,
                            context: AssembledContext, tickets_json=None) -> tuple:
        message = await self.storage.create_message(
            thread_id=thread.id,
            role="assistant",
            content=content,
            model=spec,
            tickets_json=tickets_json,
        )
        estimate = context.estimated_prompt_tokens + estimate_tokens(content)
        await self.storage.patch_thread(
            thread.id, turn_count=thread.turn_count + 1, token_estimate=estimate,
        )
        return message, estimate

    async def _maybe_summarize(self, thread: Thread, spec: str, backend: Backend,
                               history: List[Message], reply: Message, estimate: int) -> None:
        message_count = len(history) + 1
        if not should_summarize(estimate, message_count,
                                self.settings.summarize_token_threshold,
                                self.settings.summarize_message_threshold):
            return
        logger.info("[summary] thread %s over threshold (tokens=%d, messages=%d)",
                    thread.id, estimate, message_count)
        try:
            summary = await summarize_thread(
                thread.title,
                [SummaryInput(m.id, m.role, m.content, m.pinned) for m in history + [reply]],
                backend,
            )
            await self._store_summary(thread.id, spec, summary)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[summary] auto-summarization failed for %s: %s", thread.id, e)

    async def _store_summary(self, thread_id: str, spec: str, summary: Summary) -> None:
        await self.storage.patch_thread(
            thread_id,
            summary_text=summary.narrative,
            summary_model=spec,
            summary_updated_at=datetime.now(tz=timezone.utc),
            summary_json=summary.model_dump(),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream_reply(
        self,
        thread_id: str,
        model: Optional[str] = None,
        mode: str = MODE_ASSISTANT,
        allow_prefetch: bool = True,
        enforce_first_tool_call: Optional[bool] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        """Yield the assistant reply as text fragments (one fragment in ticket mode).

        Raises:
            ThreadNotFoundError: unknown thread.
            ConfigurationError: bad specifier or missing credentials.
            ProviderTransportError / MalformedResponseError: provider failure.
            GenerationAborted: ``cancel_event`` was set before completion.
        """
        if mode not in (MODE_ASSISTANT, MODE_TICKET):
            raise ValueError(f"Unknown mode: {mode}")

        thread, history = await self._load(thread_id)
        spec = self._specifier(thread, model)
        backend = self._backend(spec)
        try:
            context = build_context_messages(
                history,
                thread.summary_text,
                token_budget=self.settings.token_budget,
                headroom=self.settings.headroom,
            )

            raw_text = _latest_user_text(history)
            reference = detect_reference(raw_text) if contains_repo_url(raw_text) else RepoReference()

            tools = await self._discover_tools(spec)
            project, prefetched = await self._repository_context(reference, tools, allow_prefetch)

            prompt = [system(MARKDOWN_GUARDRAIL_PROMPT)]
            tool_hint = build_tool_hint([t.catalog_entry() for t in tools], project, reference.ref)
            if tool_hint:
                prompt.append(system(tool_hint))
            if is_summary_query(raw_text):
                prompt.append(system(SUMMARY_HINT_PROMPT))
            prompt.extend(build_prefetch_messages(prefetched))
            prompt.extend(context.prompt)

            enforce = bool(enforce_first_tool_call)
            if mode == MODE_TICKET:
                head = [system(TICKETS_PROMPT)]
                if reference.found and tools:
                    head.append(system(TICKETS_RESEARCH_PROMPT))
                    if enforce_first_tool_call is None:
                        enforce = True
                prompt = head + prompt

            logger.info(
                "[MCP] strategy: %s activeTools=%d%s%s%s",
                "forced first tool call" if enforce else "auto",
                len(tools),
                f" project={project}" if project else "",
                " (prefetched overview)" if prefetched.overview else "",
                " (prefetched listing)" if prefetched.listing else "",
            )

            events = run_tool_loop(
                backend, prompt, tools, self.gateway,
                ToolStepPolicy(enforce_first_tool_call=enforce,
                               max_steps=self.settings.max_tool_steps),
                on_step_finish=self._on_step_finish,
            )
            parts: List[str] = []
            try:
                async for event in events:
                    if cancel_event is not None and cancel_event.is_set():
                        raise GenerationAborted("Generation aborted by caller", thread_id=thread_id)
                    if isinstance(event, TextDelta) and event.text:
                        parts.append(event.text)
                        if mode == MODE_ASSISTANT:
                            yield event.text
            finally:
                await events.aclose()
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationAborted("Generation aborted by caller", thread_id=thread_id)

            full_text = "".join(parts)
            if mode == MODE_TICKET:
                payload, summary_text = parse_tickets_from_text(full_text)
                await self._record_reply(
                    thread, spec, summary_text, context,
                    tickets_json=payload.model_dump() if payload else None,
                )
                yield summary_text
                return

            reply, estimate = await self._record_reply(thread, spec, full_text, context)
            await self._maybe_summarize(thread, spec, backend, history, reply, estimate)
        finally:
            await backend.aclose()

    async def summarize_now(self, thread_id: str, model: Optional[str] = None) -> Summary:
        """Summarize a thread on demand and store the result. Errors propagate."""
        thread, history = await self._load(thread_id)
        spec = self._specifier(thread, model)
        backend = self._backend(spec)
        try:
            summary = await summarize_thread(
                thread.title,
                [SummaryInput(m.id, m.role, m.content, m.pinned) for m in history],
                backend,
            )
        finally:
            await backend.aclose()
        await self._store_summary(thread.id, spec, summary)
        return summary

    async def set_pinned(self, message_id: str, pinned: bool) -> Message:
        return await self.storage.set_pinned(message_id, pinned)
