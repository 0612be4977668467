"""Multi-step model <-> tool loop as an explicit state machine.

    IDLE -> STEPPING(n) -> TOOL_REQUIRED(n) | MODEL_TURN(n) -> STEPPING(n+1) | FINISHED

One step is one model call plus the execution of any tool calls it asked
for. The loop continues while the model keeps calling tools, up to a hard
ceiling of ``MAX_TOOL_STEPS`` steps.

With ``enforce_first_tool_call`` the model is made to research before it
answers: step 0 always requires a tool call, and steps 1-4 keep requiring
one until at least five tool calls have been made in total.

Hooks:
    on_step_finish(StepReport)  telemetry only; exceptions are logged and ignored
    on_error(exc)               called once before a step failure propagates
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from agent.errors import MalformedResponseError
from providers.base import (
    Backend,
    Finish,
    GenerateParams,
    StreamEvent,
    StreamStart,
    TextDelta,
    ToolCall,
    Usage,
)
from threadloom_constants import (
    FORCED_RESEARCH_LAST_STEP,
    FORCED_RESEARCH_MIN_TOOL_CALLS,
    MAX_TOOL_STEPS,
)
from tools.tool_gateway import ToolDescriptor, ToolGateway, ToolResult

logger = logging.getLogger(__name__)

TOOL_CHOICE_REQUIRED = "required"
TOOL_CHOICE_AUTO = "auto"


class StepState(Enum):
    IDLE = "idle"
    STEPPING = "stepping"
    TOOL_REQUIRED = "tool_required"
    MODEL_TURN = "model_turn"
    FINISHED = "finished"


@dataclass(frozen=True)
class ToolStepPolicy:
    enforce_first_tool_call: bool = False
    max_steps: int = MAX_TOOL_STEPS


@dataclass
class StepReport:
    step: int
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)
    finish_reason: Optional[str] = None


StepHook = Callable[[StepReport], Any]
ErrorHook = Callable[[BaseException], Any]


def log_step_report(report: StepReport) -> None:
    logger.info(
        "[AI] step %d finished toolCalls=%d toolResults=%d finish=%s",
        report.step, len(report.tool_calls), len(report.tool_results), report.finish_reason,
    )
    for i, call in enumerate(report.tool_calls, 1):
        logger.debug("[AI] tool call %d: %s %s", i, call.name, call.arguments[:200])
    for i, result in enumerate(report.tool_results, 1):
        text = result.as_text()
        logger.debug("[AI] tool result %d: ok=%s (%d chars) %s", i, result.ok, len(text), text[:200])


class ToolStepOrchestrator:
    """Owns step counting, tool-choice forcing and hook dispatch."""

    def __init__(self, policy: Optional[ToolStepPolicy] = None,
                 on_step_finish: Optional[StepHook] = None,
                 on_error: Optional[ErrorHook] = None):
        self.policy = policy or ToolStepPolicy()
        self.on_step_finish = on_step_finish or log_step_report
        self.max_steps = max(1, min(self.policy.max_steps, MAX_TOOL_STEPS))
        self.on_error = on_error
        self.state = StepState.IDLE
        self.step = 0
        self.total_tool_calls = 0

    def begin(self) -> None:
        if self.state is not StepState.IDLE:
            raise RuntimeError(f"cannot begin from {self.state.value}")
        self.state = StepState.STEPPING
        self.step = 0

    def requires_tool_call(self) -> bool:
        if not self.policy.enforce_first_tool_call:
            return False
        if self.step == 0:
            return True
        return (self.step <= FORCED_RESEARCH_LAST_STEP
                and self.total_tool_calls < FORCED_RESEARCH_MIN_TOOL_CALLS)

    def prepare_step(self) -> Optional[str]:
        """Enter TOOL_REQUIRED or MODEL_TURN; return the tool choice to send."""
        if self.state is not StepState.STEPPING:
            raise RuntimeError(f"cannot prepare a step from {self.state.value}")
        if self.requires_tool_call():
            self.state = StepState.TOOL_REQUIRED
            return TOOL_CHOICE_REQUIRED
        self.state = StepState.MODEL_TURN
        return None

    def finish_step(self, report: StepReport) -> bool:
        """Record a completed step. Returns True when another step should run."""
        self.total_tool_calls += len(report.tool_calls)
        try:
            self.on_step_finish(report)
        except Exception as e:
            logger.warning("[AI] step telemetry hook failed: %s", e)

        if report.tool_calls and self.step + 1 < self.max_steps:
            self.step += 1
            self.state = StepState.STEPPING
            return True
        if report.tool_calls:
            logger.info("[AI] step ceiling (%d) reached; finishing", self.max_steps)
        self.state = StepState.FINISHED
        return False

    def fail(self, error: BaseException) -> None:
        self.state = StepState.FINISHED
        if self.on_error is None:
            logger.error("[AI] stream error: %s", error)
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.warning("[AI] error hook failed: %s", e)


def _add_usage(total: Usage, step: Usage) -> Usage:
    def add(a, b):
        if a is None:
            return b
        if b is None:
            return a
        return a + b
    return Usage(
        add(total.input_tokens, step.input_tokens),
        add(total.output_tokens, step.output_tokens),
        add(total.total_tokens, step.total_tokens),
    )


async def _invoke(gateway: ToolGateway, call: ToolCall) -> ToolResult:
    try:
        args = json.loads(call.arguments or "{}")
    except ValueError:
        return ToolResult.failure(f"Invalid JSON arguments for {call.name}")
    if not isinstance(args, dict):
        return ToolResult.failure(f"Arguments for {call.name} must be an object")
    return await gateway.invoke(call.name, args)


async def run_tool_loop(
    backend: Backend,
    prompt: List[Dict[str, Any]],
    tools: Optional[Sequence[ToolDescriptor]] = None,
    gateway: Optional[ToolGateway] = None,
    policy: Optional[ToolStepPolicy] = None,
    *,
    params: Optional[GenerateParams] = None,
    on_step_finish: Optional[StepHook] = None,
    on_error: Optional[ErrorHook] = None,
) -> AsyncIterator[StreamEvent]:
    """Drive the model/tool loop and yield one merged event stream.

    Yields a single ``StreamStart``, every ``TextDelta`` from every step, and
    a single ``Finish`` carrying the last step's reason and summed usage.
    Tools are attached only when the backend supports them and a gateway
    with a non-empty catalog is given.
    """
    orchestrator = ToolStepOrchestrator(policy, on_step_finish, on_error)
    base = params or GenerateParams()
    attach = bool(tools) and gateway is not None and backend.supports_tools
    schemas = [t.openai_schema() for t in tools] if attach else None
    messages = list(prompt)
    usage = Usage()
    started = False
    finish: Optional[Finish] = None

    orchestrator.begin()
    try:
        while True:
            forced = orchestrator.prepare_step()
            step_params = GenerateParams(
                tools=schemas,
                tool_choice=(forced or TOOL_CHOICE_AUTO) if attach else None,
                temperature=base.temperature,
                max_output_tokens=base.max_output_tokens,
            )
            text_parts: List[str] = []
            finish = None
            async for event in backend.stream(messages, step_params):
                if isinstance(event, StreamStart):
                    if not started:
                        started = True
                        yield event
                    elif event.warnings:
                        logger.info("[AI] step %d warnings: %s", orchestrator.step, list(event.warnings))
                elif isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    yield event
                elif isinstance(event, Finish):
                    finish = event
            if finish is None:
                raise MalformedResponseError(f"{backend.specifier} stream ended without a finish event")
            usage = _add_usage(usage, finish.usage)

            calls = list(finish.tool_calls) if attach else []
            results: List[ToolResult] = []
            if calls:
                messages.append({
                    "role": "assistant",
                    "content": "".join(text_parts),
                    "tool_calls": [c.as_message_part() for c in calls],
                })
                results = list(await asyncio.gather(*(_invoke(gateway, c) for c in calls)))
                for call, result in zip(calls, results):
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": result.as_text(),
                    })

            report = StepReport(orchestrator.step, calls, results, finish.reason)
            if not orchestrator.finish_step(report):
                break
    except Exception as e:
        orchestrator.fail(e)
        raise

    yield Finish(reason=finish.reason, usage=usage)
