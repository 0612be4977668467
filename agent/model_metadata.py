"""Token estimation utilities.

Pure functions with no orchestrator dependency. Used by the context
assembler for budgeting and by the facade for thread statistics. The
estimate is length-based (~4 chars/token), not a real tokenizer: it only
gates an advisory budget, never billing.
"""

import math
from typing import Any, Iterable, Mapping

from threadloom_constants import CHARS_PER_TOKEN


def estimate_tokens(text: str) -> int:
    """Rough token estimate (ceil of chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: Iterable[Mapping[str, Any]]) -> int:
    """Sum of estimate_tokens over message contents (non-string content counts as 0)."""
    total = 0
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, str):
            total += estimate_tokens(content)
    return total
