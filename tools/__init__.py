"""
Tools Package

Client side of the repository tool server:

- mcp_client: JSON-RPC 2.0 MCP client over a stdio subprocess
- tool_gateway: async ToolGateway returning ToolResult values
"""
