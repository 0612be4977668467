"""
Tool Gateway -- the async face of the repository MCP server.

Wraps one ``MCPClient`` (stdio subprocess) and exposes:

    await gateway.list_tools()            -> [ToolDescriptor, ...]
    await gateway.invoke(name, args)      -> ToolResult

Nothing here raises for tool-side trouble. A server that is disabled,
missing, or crashes yields an empty catalog; a failing call yields
``ToolResult.failure(...)``. The model loop and the prefetcher decide
what a failure means for them.

Configuration (environment, typically loaded from .env):

    MCP_REPO_ENABLED   "true"/"false" (default: enabled when MCP_REPO_CMD is set)
    MCP_REPO_CMD       executable, e.g. "node"
    MCP_REPO_ARGS      shell-style argument string
    MCP_REPO_CWD       working directory for the subprocess
    MCP_REPO_ENV_*     forwarded to the subprocess with the prefix stripped
"""

import asyncio
import copy
import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from tools.mcp_client import (
    MCPClient,
    MCPProtocolError,
    MCPTransportError,
    StdioTransport,
    sanitize_error,
)

logger = logging.getLogger(__name__)

_ENV_PREFIX = "MCP_REPO_"
_PASSTHROUGH_PREFIX = "MCP_REPO_ENV_"


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    parameter_names: List[str] = field(default_factory=list)
    schema: Optional[Dict[str, Any]] = None
    description: str = ""

    def catalog_entry(self) -> Dict[str, Any]:
        return {"name": self.name, "parameters": list(self.parameter_names), "schema": self.schema}

    def openai_schema(self) -> Dict[str, Any]:
        """Function-tool definition for chat-completions style APIs."""
        params = copy.deepcopy(self.schema) if self.schema else {}
        if not params.get("type"):
            params["type"] = "object"
        params.setdefault("properties", {})
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or self.name,
                "parameters": params,
            },
        }


@dataclass(frozen=True)
class ToolResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "ToolResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "ToolResult":
        return cls(ok=False, error=error)

    def as_text(self) -> str:
        """Text handed back to the model as the tool message content."""
        if not self.ok:
            return f"Error: {self.error}"
        texts = []
        for block in (self.value or {}).get("content", []) or []:
            if isinstance(block, dict) and block.get("type") == "text":
                texts.append(block.get("text", ""))
        return "\n".join(texts)


def text_of(result: ToolResult) -> Optional[str]:
    """First text content block of a successful result, if any."""
    if not result.ok or not isinstance(result.value, dict):
        return None
    for block in result.value.get("content", []) or []:
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
            return block["text"]
    return None


def _descriptor_from_mcp(tool: Mapping[str, Any]) -> ToolDescriptor:
    schema = tool.get("inputSchema")
    if not isinstance(schema, dict):
        schema = None
    props = (schema or {}).get("properties") or {}
    return ToolDescriptor(
        name=str(tool["name"]),
        parameter_names=list(props.keys()) if isinstance(props, dict) else [],
        schema=schema,
        description=str(tool.get("description") or ""),
    )


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolServerConfig:
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    enabled: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ToolServerConfig":
        environ = os.environ if environ is None else environ
        command = (environ.get(f"{_ENV_PREFIX}CMD") or "").strip() or None
        raw_enabled = environ.get(f"{_ENV_PREFIX}ENABLED")
        if raw_enabled is None:
            enabled = command is not None
        else:
            enabled = raw_enabled.strip().lower() in ("1", "true", "yes", "on")
        try:
            args = shlex.split(environ.get(f"{_ENV_PREFIX}ARGS", ""))
        except ValueError as e:
            logger.warning("[MCP] could not parse MCP_REPO_ARGS (%s); ignoring", e)
            args = []
        env = {
            key[len(_PASSTHROUGH_PREFIX):]: value
            for key, value in environ.items()
            if key.startswith(_PASSTHROUGH_PREFIX) and len(key) > len(_PASSTHROUGH_PREFIX)
        }
        return cls(
            command=command,
            args=args,
            cwd=environ.get(f"{_ENV_PREFIX}CWD") or None,
            env=env,
            enabled=enabled,
        )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ToolGateway:
    """Lazily connects to the tool server and caches its catalog."""

    def __init__(self, config: Optional[ToolServerConfig] = None):
        self.config = config or ToolServerConfig.from_env()
        self._enabled = self.config.enabled
        self._client: Optional[MCPClient] = None
        self._tools: Optional[List[ToolDescriptor]] = None
        self._connect_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.config.command)

    def set_enabled(self, enabled: bool) -> None:
        """Runtime toggle. Disabling drops the live connection and catalog."""
        if enabled == self._enabled:
            return
        self._enabled = enabled
        logger.info("[MCP] repository tools %s", "enabled" if enabled else "disabled")
        if not enabled:
            self._drop_connection()

    def _drop_connection(self) -> None:
        client, self._client = self._client, None
        self._tools = None
        if client is not None:
            client.disconnect()

    def _connect_sync(self) -> MCPClient:
        transport = StdioTransport(
            command=self.config.command,
            args=list(self.config.args),
            env=dict(self.config.env),
            cwd=self.config.cwd,
        )
        client = MCPClient(transport)
        try:
            client.connect()
        except (MCPTransportError, MCPProtocolError):
            client.disconnect()
            raise
        return client

    async def _ensure_client(self) -> Optional[MCPClient]:
        if not self.enabled:
            return None
        async with self._connect_lock:
            if self._client is not None and self._client.is_connected:
                return self._client
            if self._client is not None:
                logger.info("[MCP] server connection lost, reconnecting")
                self._drop_connection()
            self._client = await asyncio.to_thread(self._connect_sync)
            return self._client

    async def list_tools(self) -> List[ToolDescriptor]:
        """Discover tools. Never raises; an unavailable server means no tools."""
        if self._tools is not None and self._client is not None and self._client.is_connected:
            return list(self._tools)
        try:
            client = await self._ensure_client()
            if client is None:
                logger.info("[MCP] no tools attached (disabled or not configured)")
                return []
            raw = await asyncio.to_thread(client.list_tools)
        except (MCPTransportError, MCPProtocolError, OSError) as e:
            logger.warning("[MCP] tool discovery failed: %s", sanitize_error(str(e)))
            self._drop_connection()
            return []

        tools = []
        for entry in raw:
            if isinstance(entry, dict) and entry.get("name"):
                tools.append(_descriptor_from_mcp(entry))
        self._tools = tools
        logger.info("[MCP] discovered %d tool(s): %s", len(tools), [t.name for t in tools])
        return list(tools)

    def tool_names(self) -> List[str]:
        """Names from the last successful discovery (empty before one)."""
        return [t.name for t in self._tools or []]

    async def invoke(self, name: str, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        if self._tools is not None and name not in self.tool_names():
            return ToolResult.failure(f"Unknown tool: {name}")
        try:
            client = await self._ensure_client()
            if client is None:
                return ToolResult.failure("Repository tools are not available")
            result = await asyncio.to_thread(client.call_tool, name, args or None)
        except MCPProtocolError as e:
            return ToolResult.failure(f"MCP tool error: {sanitize_error(e.error_message)}")
        except (MCPTransportError, OSError) as e:
            self._drop_connection()
            return ToolResult.failure(f"MCP transport error: {sanitize_error(str(e))}")

        if result.get("isError"):
            detail = ToolResult.success(result).as_text() or "tool reported an error"
            return ToolResult.failure(sanitize_error(detail))
        return ToolResult.success(result)

    async def close(self) -> None:
        await asyncio.to_thread(self._drop_connection)
