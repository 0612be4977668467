"""Repository context prefetch.

Two steps run before the model sees the request:

1. ``resolve_project_path`` turns a URL-derived slug into the canonical
   project path by probing ``get_project`` with successively shorter
   prefixes. Lookups are sequential and stop at the first hit.
2. ``prefetch`` fetches the repository overview and, when the URL pointed
   into a sub-directory, a recursive listing of it. Both run concurrently
   and each is optional: one failing never cancels the other.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from agent.reference_detector import RepoReference
from threadloom_constants import (
    PREFETCH_LISTING_MAX_PAGES,
    PREFETCH_MAX_CANDIDATE_SEGMENTS,
    PREFETCH_MIN_CANDIDATE_SEGMENTS,
)
from tools.tool_gateway import ToolGateway, text_of

logger = logging.getLogger(__name__)

OVERVIEW_TOOL = "gather_repo_overview"
LISTING_TOOL = "list_files"
PROJECT_TOOL = "get_project"


@dataclass
class PrefetchResult:
    overview: Optional[str] = None
    listing: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not (self.overview or self.listing)


def candidate_paths(initial: str) -> List[str]:
    """Clean slug first, then prefixes from longest (capped) to shortest."""
    clean = initial.split("/-/")[0]
    parts = [p for p in clean.split("/") if p]
    candidates = [
        "/".join(parts[:n])
        for n in range(min(len(parts), PREFETCH_MAX_CANDIDATE_SEGMENTS),
                       PREFETCH_MIN_CANDIDATE_SEGMENTS - 1, -1)
    ]
    if clean not in candidates:
        candidates.insert(0, clean)
    return candidates


async def resolve_project_path(initial: str, gateway: Optional[ToolGateway]) -> str:
    """Canonical ``namespace/project`` for *initial*, or the cleaned slug."""
    clean = initial.split("/-/")[0]
    if gateway is None or PROJECT_TOOL not in gateway.tool_names():
        return initial

    for cand in candidate_paths(initial):
        result = await gateway.invoke(PROJECT_TOOL, {"projectIdOrPath": cand})
        text = text_of(result)
        if not text:
            continue
        try:
            parsed = json.loads(text)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        if isinstance(parsed.get("path_with_namespace"), str):
            return parsed["path_with_namespace"]
        if isinstance(parsed.get("id"), int) and not isinstance(parsed.get("id"), bool):
            return cand
    return clean


async def _fetch_text(gateway: ToolGateway, tool: str, args: Dict) -> Optional[str]:
    result = await gateway.invoke(tool, args)
    if not result.ok:
        logger.info("[prefetch] %s failed: %s", tool, result.error)
        return None
    return text_of(result)


async def prefetch(
    project: Optional[str],
    ref: Optional[str],
    reference: RepoReference,
    gateway: Optional[ToolGateway],
) -> PrefetchResult:
    if not project or gateway is None:
        return PrefetchResult()

    names = gateway.tool_names()
    slots = []
    if OVERVIEW_TOOL in names:
        slots.append(("overview", _fetch_text(
            gateway, OVERVIEW_TOOL, {"projectIdOrPath": project, "ref": ref},
        )))
    if LISTING_TOOL in names and reference.sub_path:
        slots.append(("listing", _fetch_text(gateway, LISTING_TOOL, {
            "projectIdOrPath": project,
            "ref": ref,
            "path": reference.sub_path,
            "recursive": True,
            "maxPages": PREFETCH_LISTING_MAX_PAGES,
        })))
    if not slots:
        return PrefetchResult()

    outcomes = await asyncio.gather(*(coro for _, coro in slots), return_exceptions=True)
    result = PrefetchResult()
    for (slot, _), outcome in zip(slots, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            logger.warning("[prefetch] %s slot raised: %s", slot, outcome)
            continue
        if outcome:
            setattr(result, slot, outcome)
    return result


def build_prefetch_messages(result: PrefetchResult) -> List[Dict[str, str]]:
    messages = []
    if result.overview:
        messages.append({
            "role": "system",
            "content": f"GitLab repository overview (prefetched):\n\n{result.overview}",
        })
    if result.listing:
        messages.append({
            "role": "system",
            "content": f"GitLab subpath listing (prefetched):\n\n{result.listing}",
        })
    return messages
