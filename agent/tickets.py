"""Ticket-mode payload: schema, JSON extraction and the human summary line."""

import json
import logging
import re
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")

PARSE_ISSUE_TEXT = (
    "Created tickets, but there was an issue parsing the details. "
    "Please check the ticket modal."
)
INVALID_JSON_TEXT = (
    "Created tickets based on your requirements, but couldn't parse the JSON format. "
    "Please try again."
)
DEFAULT_REASONING = "Breaking down requirements into actionable tickets"


class ChecklistItem(BaseModel):
    id: str
    description: str
    completed: bool


class GitLabAssignment(BaseModel):
    projectId: int
    projectName: str
    milestoneId: Optional[int] = None
    milestoneName: Optional[str] = None


class Ticket(BaseModel):
    id: str
    title: str
    description: str
    acceptanceCriteria: List[ChecklistItem]
    tasks: List[ChecklistItem]
    labels: List[str]
    priority: Literal["low", "medium", "high", "critical"]
    type: Literal["feature", "bug", "task", "improvement"]
    gitlabAssignment: Optional[GitLabAssignment] = None


class TicketsPayload(BaseModel):
    type: Literal["tickets"]
    tickets: List[Ticket]
    reasoning: str
    needsClarification: bool
    clarificationQuestions: List[str] = Field(default_factory=list)
    globalGitlabAssignment: Optional[GitLabAssignment] = None
    gitlabMode: Optional[Literal["same", "multiple"]] = None


def extract_json_text(text: str) -> str:
    """Best-effort isolation of a JSON object inside model output.

    Tries a fenced block, then the whole text, then the span from the first
    ``{`` to the last ``}``.
    """
    working = (text or "").strip()
    m = _FENCED_JSON_RE.search(working)
    if m:
        return m.group(1)
    if working.startswith("{") and working.endswith("}"):
        return working
    start, end = working.find("{"), working.rfind("}")
    if start != -1 and end > start:
        return working[start:end + 1]
    return working


def parse_tickets_from_text(text: str) -> Tuple[Optional[TicketsPayload], str]:
    """Returns (payload or None, summary text for the user)."""
    try:
        raw = json.loads(extract_json_text(text))
    except ValueError:
        logger.info("[tickets] model output is not JSON")
        return None, INVALID_JSON_TEXT
    try:
        payload = TicketsPayload.model_validate(raw)
    except ValidationError as e:
        logger.info("[tickets] payload failed validation: %s", e.error_count())
        return None, PARSE_ISSUE_TEXT

    count = len(payload.tickets)
    reasoning = payload.reasoning or DEFAULT_REASONING
    return payload, f"Created {count} ticket{'' if count == 1 else 's'}.\n\nReasoning: {reasoning}"
