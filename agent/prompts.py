"""Fixed system prompts and the builders that place them in a request.

Prompt text lives here so the facade only decides *which* blocks apply.
"""

import json
from typing import Any, Dict, List, Optional

from threadloom_constants import MAX_TOOL_STEPS

MARKDOWN_GUARDRAIL_PROMPT = (
    "You are a helpful assistant that answers in concise, clean GitHub-Flavored "
    "Markdown. Do NOT wrap the entire response in triple backticks. Only use fenced "
    "code blocks for code, with a language tag (e.g., ```ts). Use headings, lists, "
    "tables, and links as needed."
)

SUMMARY_HINT_PROMPT = (
    "When tool results or prefetched context include JSON, do not paste the raw JSON "
    "in your reply.\nInstead, write a concise natural-language summary using the data. "
    "Prefer short sections and bullet points (Overview, Languages, Key Files, Notable "
    "Findings). Avoid code fences for plain JSON. Include links only if helpful."
)

TICKETS_PROMPT = """
You are an expert software development assistant who turns requirements into
well-structured GitLab issues.

Break the user's requirement down into actionable tickets and answer ONLY with
JSON in exactly the shape below. Do not add keys or change the structure.

Rules:
* Prefer existing company technology or widely used open-source libraries.
  Phrase recommendations as "something like X", never "must use X".
* Keep tickets clear, concise and directly actionable.
* Use at most two labels per ticket.
* Always explain how you split the work in "reasoning".
* If the requirement is unclear, set "needsClarification" to true and list
  "clarificationQuestions".

{
  "type": "tickets",
  "tickets": [
    {
      "id": "string",
      "title": "string",
      "description": "string",
      "acceptanceCriteria": [{"id": "string", "description": "string", "completed": false}],
      "tasks": [{"id": "string", "description": "string", "completed": false}],
      "labels": ["string"],
      "priority": "low" | "medium" | "high" | "critical",
      "type": "feature" | "bug" | "task" | "improvement"
    }
  ],
  "reasoning": "string",
  "needsClarification": false,
  "clarificationQuestions": ["string"]
}
""".strip()

TICKETS_RESEARCH_PROMPT = """
Before writing tickets, research the repository the user linked.

1. Get the repository overview (structure, languages, key files).
2. List the directory tree with list_files and recursive=true.
3. Search for functionality related to the request.
4. Read the relevant implementation files.
5. Read the dependency and configuration files to pin down the tech stack.

Make several tool calls, in parallel where possible, until you know the
primary language(s), the relevant modules and the project's conventions.
Tickets must reference concrete files, modules and patterns from the
repository. Never suggest libraries that do not fit the project's stack, and
check that a file does not already exist before proposing to create it.
Use tools only while researching; the final message is the tickets JSON alone.
""".strip()


def system(content: str) -> Dict[str, str]:
    return {"role": "system", "content": content}


def build_tool_hint(
    catalog: List[Dict[str, Any]],
    project_hint: Optional[str] = None,
    ref_hint: Optional[str] = None,
) -> Optional[str]:
    """Render the optional-tools catalog block, or None when there are no tools.

    ``catalog`` entries are ``{"name", "parameters", "schema"}`` dicts.
    """
    if not catalog:
        return None
    payload: Dict[str, Any] = {
        "scope": "optional-tools",
        "description": (
            "These tools are available if relevant (e.g., repository analysis). "
            "Use them only when they help answer the user's request."
        ),
        "tools": [
            {k: v for k, v in entry.items() if v is not None} for entry in catalog
        ],
        "note": (
            "Call any tools needed to gather context. "
            f"You may chain up to {MAX_TOOL_STEPS} tool calls."
        ),
    }
    if project_hint:
        defaults = {"projectIdOrPath": project_hint}
        if ref_hint:
            defaults["ref"] = ref_hint
        payload["defaultParams"] = defaults
    return "MCP Tools Catalog (JSON)\n" + json.dumps(payload, indent=2)
