"""Fake repository MCP server for integration testing.

A real child process speaking newline-delimited JSON-RPC 2.0 on
stdin/stdout, mimicking the repository tool server surface used by
threadloom:

- ``get_project``           -- canonical project lookup (404 for unknown paths)
- ``gather_repo_overview``  -- repository overview text
- ``list_files``            -- directory listing for a sub-path
- ``broken_tool``           -- always reports ``isError``
- ``explode``               -- always answers with a JSON-RPC error

Usage::

    config = ToolServerConfig(command=sys.executable, args=[FAKE_SERVER_PATH], enabled=True)
    gateway = ToolGateway(config)
    tools = await gateway.list_tools()

Misbehaving modes, chosen with extra command line arguments:

- ``--null-tools``       -- ``tools/list`` answers ``{"tools": null}``
- ``--bad-tools``        -- ``tools/list`` answers ``{"tools": "oops"}``
- ``--bad-call-result``  -- ``tools/call`` answers with a JSON array
- ``--string-ids``       -- replies echo the request id as a string

It also writes one non-JSON log line to stdout on startup, the way chatty
servers do, so the client's tolerance for stray output is exercised.
"""

import json
import os
import sys

FAKE_SERVER_PATH = os.path.abspath(__file__)

PROJECTS = {
    "acme/widgets": {"id": 42, "path_with_namespace": "acme/widgets", "name": "widgets"},
    "acme/platform/api": {"id": 7, "name": "api"},
}

TOOLS = [
    {
        "name": "get_project",
        "description": "Look up a project by id or path",
        "inputSchema": {
            "type": "object",
            "properties": {"projectIdOrPath": {"type": "string"}},
            "required": ["projectIdOrPath"],
        },
    },
    {
        "name": "gather_repo_overview",
        "description": "Structure, languages and key files of a project",
        "inputSchema": {
            "type": "object",
            "properties": {
                "projectIdOrPath": {"type": "string"},
                "ref": {"type": "string"},
            },
        },
    },
    {
        "name": "list_files",
        "description": "List files under a path",
        "inputSchema": {
            "type": "object",
            "properties": {
                "projectIdOrPath": {"type": "string"},
                "ref": {"type": "string"},
                "path": {"type": "string"},
                "recursive": {"type": "boolean"},
                "maxPages": {"type": "integer"},
            },
        },
    },
    {"name": "broken_tool", "description": "Always fails", "inputSchema": {"type": "object"}},
    {"name": "explode", "description": "Protocol error", "inputSchema": {}},
]


def _text(text, is_error=False):
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def _call(name, args):
    path = args.get("projectIdOrPath")
    if name == "get_project":
        project = PROJECTS.get(path)
        if project is None:
            return _text("404 Project Not Found", is_error=True)
        return _text(json.dumps(project))
    if name == "gather_repo_overview":
        return _text(f"Overview of {path}@{args.get('ref') or 'HEAD'}: Python 80%, Shell 20%")
    if name == "list_files":
        return _text(f"{args.get('path')}/main.py\n{args.get('path')}/util.py")
    if name == "broken_tool":
        return _text("upstream token=abc123 rejected", is_error=True)
    return None


def handle(msg, modes=()):
    method = msg.get("method")
    if method == "initialize":
        return {
            "protocolVersion": msg["params"]["protocolVersion"],
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake-repo", "version": "0.0.1"},
        }
    if method == "tools/list":
        if "--null-tools" in modes:
            return {"tools": None}
        if "--bad-tools" in modes:
            return {"tools": "oops"}
        return {"tools": TOOLS}
    if method == "tools/call":
        if "--bad-call-result" in modes:
            return ["not", "a", "dict"]
        params = msg.get("params") or {}
        return _call(params.get("name"), params.get("arguments") or {})
    return None


def main():
    modes = set(sys.argv[1:])
    sys.stdout.write("fake-repo server starting\n")
    sys.stdout.flush()
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        if "id" not in msg:
            continue
        result = handle(msg, modes)
        reply_id = str(msg["id"]) if "--string-ids" in modes else msg["id"]
        if result is None:
            reply = {"jsonrpc": "2.0", "id": reply_id,
                     "error": {"code": -32601, "message": "Method not found"}}
        else:
            reply = {"jsonrpc": "2.0", "id": reply_id, "result": result}
        sys.stdout.write(json.dumps(reply) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":
    main()
