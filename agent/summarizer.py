"""Structured thread summarization.

The summary is produced by a single non-streaming model call over the whole
thread (no truncation here; the facade only calls this once a thread is
large enough to need it) and validated into ``Summary``.
"""

import json
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, ValidationError

from agent.errors import MalformedResponseError
from agent.tickets import extract_json_text
from providers.base import Backend, GenerateParams
from threadloom_constants import SUMMARIZE_MESSAGE_THRESHOLD, SUMMARIZE_TOKEN_THRESHOLD

logger = logging.getLogger(__name__)


class Summary(BaseModel):
    narrative: str
    highlights: List[str]
    facts: List[str]
    todos: List[str]
    citations: List[str]


@dataclass(frozen=True)
class SummaryInput:
    id: str
    role: str
    content: str
    pinned: bool = False


def build_summary_prompt(thread_title: str, messages: Sequence[SummaryInput]) -> str:
    lines = [
        f"- [{m.id}]({m.role}{', pinned' if m.pinned else ''}): {m.content}"
        for m in messages
    ]
    return (
        f'Summarize the following chat thread titled "{thread_title}".\n'
        "Return only a JSON object with exactly these keys: "
        '{"narrative": string, "highlights": [string], "facts": [string], '
        '"todos": [string], "citations": [string]}.\n'
        "Always include all pinned messages in your reasoning. "
        "Citations must be the message ids referenced.\n\n"
        "Messages:\n" + "\n".join(lines)
    )


def parse_summary(text: str) -> Summary:
    try:
        raw = json.loads(extract_json_text(text))
    except ValueError as e:
        raise MalformedResponseError("summary response is not JSON") from e
    try:
        return Summary.model_validate(raw)
    except ValidationError as e:
        raise MalformedResponseError(f"summary response has the wrong shape: {e}") from e


async def summarize_thread(
    thread_title: str,
    messages: Sequence[SummaryInput],
    backend: Backend,
) -> Summary:
    prompt = [{"role": "user", "content": build_summary_prompt(thread_title, messages)}]
    result = await backend.generate(prompt, GenerateParams())
    summary = parse_summary(result.content)
    bad = invalid_citations(summary, (m.id for m in messages))
    if bad:
        logger.info("[summary] %d citation(s) reference unknown messages: %s", len(bad), bad)
    return summary


def should_summarize(
    token_estimate: int,
    message_count: int,
    token_threshold: Optional[int] = None,
    message_threshold: Optional[int] = None,
) -> bool:
    token_threshold = SUMMARIZE_TOKEN_THRESHOLD if token_threshold is None else token_threshold
    message_threshold = SUMMARIZE_MESSAGE_THRESHOLD if message_threshold is None else message_threshold
    return token_estimate > token_threshold or message_count > message_threshold


def invalid_citations(summary: Summary, message_ids: Iterable[str]) -> List[str]:
    known = set(message_ids)
    return [c for c in summary.citations if c not in known]
