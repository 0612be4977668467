"""Budget-bounded prompt assembly from thread history.

Turns an unbounded message history into the ordered ``{role, content}``
list handed to a provider. Only the non-pinned tail is ever trimmed:

    system messages  ->  summary (synthetic system)  ->  pinned  ->  tail

The tail is filled newest-first while it fits in what the budget leaves
after the summary, the pinned messages and the response headroom, then
re-emitted in chronological order. If pinned + summary already exceed the
budget the tail is simply empty; system and pinned are never dropped.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from agent.model_metadata import estimate_tokens
from agent.storage import Message
from threadloom_constants import DEFAULT_HEADROOM, DEFAULT_TOKEN_BUDGET

SUMMARY_PREFIX = "Thread summary (do not reveal directly):\n"


@dataclass
class AssembledContext:
    prompt: List[Dict[str, str]] = field(default_factory=list)
    estimated_prompt_tokens: int = 0
    dropped_message_ids: List[str] = field(default_factory=list)


def summary_message(summary_text: str) -> Dict[str, str]:
    return {"role": "system", "content": f"{SUMMARY_PREFIX}{summary_text}"}


def build_context_messages(
    messages: Sequence[Message],
    summary_text: Optional[str] = None,
    *,
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    headroom: int = DEFAULT_HEADROOM,
) -> AssembledContext:
    """Assemble the prompt for one model call.

    Args:
        messages: Full thread history in insertion order.
        summary_text: Stored thread summary, if any.
        token_budget: Advisory token budget for the whole prompt.
        headroom: Tokens reserved for the eventual response.

    Returns:
        AssembledContext with the prompt, its estimated size, and the ids of
        history messages that did not fit.
    """
    system = [m for m in messages if m.role == "system"]
    pinned = [m for m in messages if m.pinned and m.role != "system"]
    non_pinned = [m for m in messages if not m.pinned and m.role != "system"]

    summary = summary_text or None
    pinned_tokens = sum(estimate_tokens(m.content) for m in pinned)
    remaining = max(0, token_budget - estimate_tokens(summary or "") - pinned_tokens - headroom)

    tail: List[Message] = []
    used = 0
    cut = 0
    for idx in range(len(non_pinned) - 1, -1, -1):
        cost = estimate_tokens(non_pinned[idx].content)
        if used + cost > remaining:
            cut = idx + 1
            break
        used += cost
    tail = non_pinned[cut:]

    prompt: List[Dict[str, str]] = [{"role": "system", "content": m.content} for m in system]
    if summary:
        prompt.append(summary_message(summary))
    for m in pinned + tail:
        prompt.append({"role": m.role, "content": m.content})

    return AssembledContext(
        prompt=prompt,
        estimated_prompt_tokens=sum(estimate_tokens(p["content"]) for p in prompt),
        dropped_message_ids=[m.id for m in non_pinned[:cut]],
    )
