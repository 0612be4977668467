"""Repository reference detection in user messages.

Finds an embedded GitLab URL and splits it into a project slug, an
optional ref and an optional sub-path:

    https://gitlab.com/acme/widgets/-/tree/main/src
        -> RepoReference(project_path="acme/widgets", ref="main", sub_path="src")

Detection is advisory: no match yields an empty RepoReference, never an error.
"""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

_REPO_URL_RE = re.compile(r"https?://[^\s]*gitlab\.com/([^\s#?]+)", re.IGNORECASE)
_REPO_URL_PRESENT_RE = re.compile(r"https?://[^\s]*gitlab\.com/", re.IGNORECASE)
_TRAILING_PUNCT_RE = re.compile(r"[)\].,>]+$")
_SUMMARY_QUERY_RE = re.compile(
    r"\b(summary|summarize|overview|tell me about|describe|details)\b", re.IGNORECASE
)

_REF_KINDS = ("tree", "blob", "raw")


@dataclass(frozen=True)
class RepoReference:
    project_path: Optional[str] = None
    ref: Optional[str] = None
    sub_path: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.project_path)


def _decode_segment(segment: str) -> str:
    try:
        return unquote(segment, errors="strict")
    except UnicodeDecodeError:
        return segment


def detect_reference(text: Optional[str]) -> RepoReference:
    """Extract the first repository reference from *text*."""
    if not text:
        return RepoReference()
    m = _REPO_URL_RE.search(text)
    if not m:
        return RepoReference()

    path = _TRAILING_PUNCT_RE.sub("", m.group(1))

    project_path, sep, after = path.partition("/-/")
    ref = None
    sub_path = None
    if sep and after:
        segs = after.split("/")
        if segs[0] in _REF_KINDS and len(segs) > 1:
            ref = segs[1] or None
            sub_path = "/".join(segs[2:]) or None

    project_path = "/".join(_decode_segment(s) for s in project_path.split("/"))
    return RepoReference(project_path=project_path or None, ref=ref, sub_path=sub_path)


def contains_repo_url(text: Optional[str]) -> bool:
    return bool(text) and bool(_REPO_URL_PRESENT_RE.search(text))


def is_summary_query(text: Optional[str]) -> bool:
    """True when the user is asking for an overview/summary-style answer."""
    if not text:
        return False
    return bool(_SUMMARY_QUERY_RE.search(text))
