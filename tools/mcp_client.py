"""
MCP (Model Context Protocol) Client -- JSON-RPC 2.0 over a subprocess.

The repository tool server is a long-lived child process spoken to over
stdin/stdout, one JSON-RPC message per line. This module only knows the
protocol; which tools exist and what they do is the server's business.

Protocol lifecycle:
  1. Client sends ``initialize`` with protocolVersion + capabilities
  2. Server responds with its capabilities + serverInfo
  3. Client sends ``notifications/initialized``
  4. Client calls ``tools/list`` to discover available tools
  5. Client calls ``tools/call`` to invoke a tool

Security:
  - Subprocess environment is isolated (only safe env vars + configured ones)
  - Responses are size-limited
  - Error messages are sanitized to prevent credential leakage

Usage:
    transport = StdioTransport(command="node", args=["dist/gitlab-mcp.js"])
    client = MCPClient(transport)
    client.connect()
    tools = client.list_tools()
    result = client.call_tool("get_project", {"projectIdOrPath": "acme/widgets"})
    client.disconnect()

The client is blocking; ``tools.tool_gateway`` runs it off the event loop.
"""

import json
import logging
import os
import re
import subprocess
import sys
import threading
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"

CONNECT_TIMEOUT = 30
REQUEST_TIMEOUT = 60

MAX_RESPONSE_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_CONSECUTIVE_PARSE_ERRORS = 10

# JSON-RPC "Invalid Request", reused for replies whose shape is wrong
MALFORMED_RESPONSE_CODE = -32600

_SAFE_ENV_VARS: Set[str] = {
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM",
    "LANG", "LC_ALL", "LC_CTYPE", "TZ",
    "TMPDIR", "TEMP", "TMP",
    "SYSTEMROOT", "COMSPEC",
    "NODE_PATH", "NODE_ENV",
    "PYTHONPATH",
}


class MCPTransportError(Exception):
    """Raised when transport-level communication fails."""


class MCPProtocolError(Exception):
    """Raised when the MCP server returns a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.error_message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_stale(response: Any, msg_id: int) -> bool:
    """True for a reply to an earlier request id. Only integer ids are ordered."""
    if not isinstance(response, dict):
        return False
    rid = response.get("id")
    return isinstance(rid, int) and not isinstance(rid, bool) and rid < msg_id


def build_subprocess_env(custom_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Minimal environment for the tool server: safe system vars + *custom_env*.

    Provider API keys and database credentials in the parent environment
    are never forwarded unless listed explicitly in the server config.
    """
    env = {var: os.environ[var] for var in _SAFE_ENV_VARS if os.environ.get(var)}
    if custom_env:
        env.update(custom_env)
    return env


def sanitize_error(msg: str) -> str:
    """Remove credentials and tokens from error messages."""
    msg = re.sub(r'(https?://)([^:/\s]+):([^@\s]+)@', r'\1***:***@', msg)
    msg = re.sub(r'Bearer\s+[A-Za-z0-9_\-\.]{8,}', 'Bearer [redacted]', msg, flags=re.IGNORECASE)
    msg = re.sub(
        r'(api[_-]?key|token|password|secret|authorization)["\s:=]+\S+',
        r'\1=[redacted]', msg, flags=re.IGNORECASE,
    )
    return msg


# ---------------------------------------------------------------------------
# StdioTransport
# ---------------------------------------------------------------------------

class StdioTransport:
    """Newline-delimited JSON-RPC over a child process's stdin/stdout.

    A daemon reader thread moves stdout lines into a queue. Server
    notifications (no ``id``) are logged and dropped.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        self.command = command
        self.args = args or []
        self.env = env
        self.cwd = cwd
        self._process: Optional[subprocess.Popen] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._responses: Queue = Queue()
        self._running = False
        self._parse_errors = 0

    @property
    def is_connected(self) -> bool:
        return self._running and self._process is not None and self._process.poll() is None

    def start(self) -> None:
        if self._running:
            return
        kwargs: Dict[str, Any] = dict(
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            env=build_subprocess_env(self.env),
            bufsize=0,
        )
        if self.cwd:
            kwargs["cwd"] = self.cwd
        if sys.platform != "win32":
            kwargs["start_new_session"] = True

        try:
            self._process = subprocess.Popen([self.command] + self.args, **kwargs)
        except FileNotFoundError:
            raise MCPTransportError(
                f"Command not found: {self.command}. Make sure the MCP server is installed."
            )
        except OSError as e:
            raise MCPTransportError(f"Failed to start MCP server: {sanitize_error(str(e))}")

        self._running = True
        self._parse_errors = 0
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name=f"mcp-stdio-reader-{os.path.basename(self.command)}",
        )
        self._reader_thread.start()

    def stop(self) -> None:
        self._running = False
        proc, self._process = self._process, None
        if proc is None:
            return
        try:
            if proc.stdin and not proc.stdin.closed:
                proc.stdin.close()
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=2)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("MCP process cleanup error: %s", e)
        finally:
            if proc.stdout and not proc.stdout.closed:
                proc.stdout.close()
        if self._reader_thread and self._reader_thread.is_alive():
            self._reader_thread.join(timeout=2.0)

    def send(self, message: dict) -> None:
        if not self.is_connected:
            raise MCPTransportError("Transport not connected")
        try:
            self._process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            self._process.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            self._running = False
            raise MCPTransportError(f"Failed to send message: {sanitize_error(str(e))}")

    def receive(self, timeout: float = REQUEST_TIMEOUT) -> dict:
        try:
            data = self._responses.get(timeout=timeout)
        except Empty:
            raise MCPTransportError(f"Timeout waiting for MCP server response ({timeout}s)")
        if isinstance(data, Exception):
            raise data
        return data

    def _reader_loop(self) -> None:
        proc = self._process
        try:
            while self._running and proc.poll() is None:
                raw = proc.stdout.readline()
                if not raw:
                    break
                if len(raw) > MAX_RESPONSE_SIZE:
                    self._responses.put(MCPTransportError(f"Response too large: {len(raw)} bytes"))
                    continue
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    self._parse_errors += 1
                    logger.debug("[MCP] non-JSON line on stdout: %s", line[:200])
                    if self._parse_errors >= MAX_CONSECUTIVE_PARSE_ERRORS:
                        self._responses.put(MCPTransportError(
                            "Too many consecutive JSON parse errors; "
                            "server may be writing logs to stdout."
                        ))
                        break
                    continue
                self._parse_errors = 0
                if "id" in msg:
                    self._responses.put(msg)
                else:
                    logger.debug("[MCP] notification: %s", msg.get("method"))
        except (OSError, ValueError) as e:
            if self._running:
                self._responses.put(MCPTransportError(f"Reader error: {sanitize_error(str(e))}"))
        finally:
            if self._running:
                self._responses.put(MCPTransportError("MCP server closed its output"))
            self._running = False


# ---------------------------------------------------------------------------
# MCPClient
# ---------------------------------------------------------------------------

class MCPClient:
    """High-level MCP client: connect -> list_tools -> call_tool -> disconnect.

    Requests are serialized with a lock so concurrent callers sharing one
    stdio pipe never read each other's responses.
    """

    def __init__(self, transport, client_name: str = "threadloom"):
        self.transport = transport
        self.client_name = client_name
        self._request_id = 0
        self._server_info: Optional[dict] = None
        self._server_capabilities: Optional[dict] = None
        self._connected = False
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected and self.transport.is_connected

    @property
    def server_name(self) -> str:
        if self._server_info:
            return self._server_info.get("name", "unknown")
        return "unknown"

    def _send_request(self, method: str, params: Optional[dict] = None,
                      timeout: Optional[float] = None) -> dict:
        with self._lock:
            self._request_id += 1
            msg_id = self._request_id
            msg: Dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id, "method": method}
            if params is not None:
                msg["params"] = params

            self.transport.send(msg)
            response = self.transport.receive(timeout=timeout or REQUEST_TIMEOUT)
            # Skip stale responses left behind by an earlier timed-out request.
            while _is_stale(response, msg_id):
                logger.debug("[MCP] discarding stale response id=%s", response.get("id"))
                response = self.transport.receive(timeout=timeout or REQUEST_TIMEOUT)

        if not isinstance(response, dict):
            raise MCPProtocolError(MALFORMED_RESPONSE_CODE,
                                   f"{method} reply is not a JSON object")
        if "error" in response:
            err = response["error"]
            if not isinstance(err, dict):
                err = {"message": str(err)} if err else {}
            raise MCPProtocolError(
                code=err.get("code", -1),
                message=err.get("message", "Unknown error"),
                data=err.get("data"),
            )
        result = response.get("result")
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise MCPProtocolError(MALFORMED_RESPONSE_CODE,
                                   f"{method} result is {type(result).__name__}, expected object")
        return result

    def _send_notification(self, method: str, params: Optional[dict] = None) -> None:
        msg: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        self.transport.send(msg)

    def connect(self, timeout: float = CONNECT_TIMEOUT) -> dict:
        """Start the transport and run the initialize handshake."""
        self.transport.start()
        result = self._send_request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "clientInfo": {"name": self.client_name, "version": "1.0.0"},
        }, timeout=timeout)

        info = result.get("serverInfo")
        caps = result.get("capabilities")
        self._server_info = info if isinstance(info, dict) else {}
        self._server_capabilities = caps if isinstance(caps, dict) else {}
        self._send_notification("notifications/initialized")
        self._connected = True
        logger.info(
            "[MCP] connected to %s (version %s)",
            self._server_info.get("name", "unknown"),
            self._server_info.get("version", "?"),
        )
        return {"serverInfo": self._server_info, "capabilities": self._server_capabilities}

    def list_tools(self) -> List[dict]:
        """Tool definitions: ``name``, ``description``, ``inputSchema``."""
        if not self.is_connected:
            raise MCPTransportError("Not connected")
        tools = self._send_request("tools/list", {}).get("tools")
        if tools is None:
            return []
        if not isinstance(tools, list):
            raise MCPProtocolError(MALFORMED_RESPONSE_CODE,
                                   f"tools/list returned {type(tools).__name__}, expected list")
        return tools

    def call_tool(self, name: str, arguments: Optional[dict] = None,
                  timeout: Optional[float] = None) -> dict:
        """Returns a dict with ``content`` (list of blocks) and ``isError``."""
        if not self.is_connected:
            raise MCPTransportError("Not connected")
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return self._send_request("tools/call", params, timeout=timeout)

    def disconnect(self) -> None:
        self._connected = False
        try:
            self.transport.stop()
        except MCPTransportError as e:
            logger.debug("MCP disconnect error: %s", e)
