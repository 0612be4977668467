"""Tests for agent/prefetcher.py -- project canonicalization and prefetch.

Uses an in-process stand-in for ToolGateway that records calls.

Run with: python -m pytest tests/agent/test_prefetcher.py -v
"""

import asyncio
import json

import pytest

from agent.prefetcher import (
    PrefetchResult,
    build_prefetch_messages,
    candidate_paths,
    prefetch,
    resolve_project_path,
)
from agent.reference_detector import RepoReference
from tools.tool_gateway import ToolResult


def _text_result(text):
    return ToolResult.success({"content": [{"type": "text", "text": text}]})


class RecordingGateway:
    """Minimal gateway: canned handlers per tool, every call recorded."""

    def __init__(self, handlers):
        self.handlers = handlers
        self.calls = []

    def tool_names(self):
        return list(self.handlers)

    async def invoke(self, name, args=None):
        self.calls.append((name, dict(args or {})))
        return await self.handlers[name](args or {})


def _projects(known):
    async def get_project(args):
        found = known.get(args["projectIdOrPath"])
        if found is None:
            return ToolResult.failure("404 Project Not Found")
        return _text_result(json.dumps(found))
    return get_project


class TestCandidatePaths:
    def test_longest_first(self):
        assert candidate_paths("a/b/c/d") == ["a/b/c/d", "a/b/c", "a/b"]

    def test_capped_at_six_segments(self):
        cands = candidate_paths("a/b/c/d/e/f/g/h")
        assert cands[0] == "a/b/c/d/e/f/g/h"
        assert cands[1] == "a/b/c/d/e/f"
        assert cands[-1] == "a/b"

    def test_strips_route_suffix(self):
        assert candidate_paths("acme/widgets/-/tree/main")[0] == "acme/widgets"

    def test_two_segments(self):
        assert candidate_paths("acme/widgets") == ["acme/widgets"]


class TestResolveProjectPath:
    @pytest.mark.asyncio
    async def test_canonical_path_from_server(self):
        gateway = RecordingGateway({"get_project": _projects({
            "acme/widgets": {"id": 1, "path_with_namespace": "Acme/Widgets"},
        })})
        assert await resolve_project_path("acme/widgets/docs/api", gateway) == "Acme/Widgets"
        tried = [args["projectIdOrPath"] for _, args in gateway.calls]
        assert tried == ["acme/widgets/docs/api", "acme/widgets/docs", "acme/widgets"]

    @pytest.mark.asyncio
    async def test_numeric_id_accepts_candidate(self):
        gateway = RecordingGateway({"get_project": _projects({"acme/platform/api": {"id": 7}})})
        assert await resolve_project_path("acme/platform/api/src", gateway) == "acme/platform/api"

    @pytest.mark.asyncio
    async def test_boolean_id_is_not_a_hit(self):
        gateway = RecordingGateway({"get_project": _projects({"acme/widgets": {"id": True}})})
        assert await resolve_project_path("acme/widgets", gateway) == "acme/widgets"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_stops_at_first_hit(self):
        gateway = RecordingGateway({"get_project": _projects({
            "a/b/c": {"id": 3}, "a/b": {"id": 2},
        })})
        assert await resolve_project_path("a/b/c", gateway) == "a/b/c"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_clean_slug(self):
        async def garbage(args):
            return _text_result("not json")
        gateway = RecordingGateway({"get_project": garbage})
        assert await resolve_project_path("x/y/z/-/tree/main", gateway) == "x/y/z"

    @pytest.mark.asyncio
    async def test_idempotent(self):
        gateway = RecordingGateway({"get_project": _projects({
            "acme/widgets": {"id": 1, "path_with_namespace": "acme/widgets"},
        })})
        once = await resolve_project_path("acme/widgets/sub", gateway)
        twice = await resolve_project_path(once, gateway)
        assert once == twice == "acme/widgets"

    @pytest.mark.asyncio
    async def test_no_gateway_or_tool_returns_input(self):
        assert await resolve_project_path("a/b/-/tree/x", None) == "a/b/-/tree/x"
        gateway = RecordingGateway({"list_files": None})
        assert await resolve_project_path("a/b", gateway) == "a/b"
        assert gateway.calls == []


class TestPrefetch:
    @pytest.mark.asyncio
    async def test_overview_and_listing(self):
        async def overview(args):
            return _text_result(f"overview of {args['projectIdOrPath']}@{args['ref']}")

        async def listing(args):
            return _text_result("src/a.py\nsrc/b.py")

        gateway = RecordingGateway({"gather_repo_overview": overview, "list_files": listing})
        ref = RepoReference("acme/widgets", "main", "src")
        result = await prefetch("acme/widgets", "main", ref, gateway)

        assert result == PrefetchResult(overview="overview of acme/widgets@main",
                                        listing="src/a.py\nsrc/b.py")
        listing_args = dict(gateway.calls)["list_files"]
        assert listing_args == {
            "projectIdOrPath": "acme/widgets", "ref": "main", "path": "src",
            "recursive": True, "maxPages": 5,
        }

    @pytest.mark.asyncio
    async def test_no_listing_without_sub_path(self):
        async def overview(args):
            return _text_result("overview")

        async def listing(args):
            raise AssertionError("should not be called")

        gateway = RecordingGateway({"gather_repo_overview": overview, "list_files": listing})
        result = await prefetch("acme/widgets", None, RepoReference("acme/widgets"), gateway)
        assert result.overview == "overview"
        assert result.listing is None

    @pytest.mark.asyncio
    async def test_one_slot_failing_keeps_the_other(self):
        async def overview(args):
            raise RuntimeError("server went away")

        async def listing(args):
            await asyncio.sleep(0.01)
            return _text_result("src/a.py")

        gateway = RecordingGateway({"gather_repo_overview": overview, "list_files": listing})
        ref = RepoReference("acme/widgets", "main", "src")
        result = await prefetch("acme/widgets", "main", ref, gateway)
        assert result.overview is None
        assert result.listing == "src/a.py"

    @pytest.mark.asyncio
    async def test_failure_result_is_skipped(self):
        async def overview(args):
            return ToolResult.failure("timeout")

        gateway = RecordingGateway({"gather_repo_overview": overview})
        result = await prefetch("acme/widgets", None, RepoReference("acme/widgets"), gateway)
        assert result.empty

    @pytest.mark.asyncio
    async def test_nothing_to_do(self):
        assert (await prefetch(None, None, RepoReference(), RecordingGateway({}))).empty
        assert (await prefetch("a/b", None, RepoReference("a/b"), None)).empty


class TestPrefetchMessages:
    def test_messages(self):
        msgs = build_prefetch_messages(PrefetchResult(overview="O", listing="L"))
        assert msgs == [
            {"role": "system", "content": "GitLab repository overview (prefetched):\n\nO"},
            {"role": "system", "content": "GitLab subpath listing (prefetched):\n\nL"},
        ]

    def test_empty(self):
        assert build_prefetch_messages(PrefetchResult()) == []
