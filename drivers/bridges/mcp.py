"""Bridge that forwards operations to an MCP server session."""
from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from mcp.client.session import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client

from ..bridge import BridgeEndpoint, BridgeOperation

logger = logging.getLogger(__name__)


class MCPBridge:
    """Wrapper around a live MCP client session.

    ``invoke`` returns the server's ``CallToolResult`` untouched; error
    results (``isError``) are the caller's to interpret.
    """

    requires_serial = False

    def __init__(self, session: ClientSession, stack: Optional[AsyncExitStack] = None, *, transport: str = "mcp") -> None:
        self.session = session
        self._stack = stack
        self.transport = transport

    async def invoke(self, operation: BridgeOperation) -> Any:
        arguments: Dict[str, Any] = dict(operation.arguments)
        if operation.args:
            arguments.setdefault("args", list(operation.args))
        return await self.session.call_tool(operation.name, arguments)

    async def list_tools(self) -> Any:
        return await self.session.list_tools()

    async def is_healthy(self) -> bool:
        """Return whether the underlying MCP session responds to a ping."""
        try:
            await asyncio.wait_for(self.session.send_ping(), timeout=5)
        except Exception as exc:
            logger.debug("MCP ping failed: %s", exc)
            return False
        return True

    async def aclose(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None


async def connect_sse_bridge(endpoint: BridgeEndpoint, *, path: str = "/sse", timeout: float = 5.0) -> MCPBridge:
    """Connect to an autostarted MCP server over SSE."""
    headers: Dict[str, Any] = {}
    if endpoint.token:
        headers["Authorization"] = f"Bearer {endpoint.token}"
    url = endpoint.url.rstrip("/") + (path if path.startswith("/") else "/" + path)

    stack = AsyncExitStack()
    try:
        read_stream, write_stream = await stack.enter_async_context(sse_client(url, headers=headers, timeout=timeout))
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
    except BaseException:
        await stack.aclose()
        raise
    return MCPBridge(session, stack, transport="mcp-sse")


async def connect_stdio_bridge(
    command: str,
    args: Sequence[str] = (),
    *,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> MCPBridge:
    """Launch an MCP server over stdio and return a bridge bound to it."""
    parameters = StdioServerParameters(
        command=command,
        args=list(args),
        env=dict(env) if env else None,
        cwd=str(cwd) if cwd else None,
    )

    stack = AsyncExitStack()
    try:
        read_stream, write_stream = await stack.enter_async_context(stdio_client(parameters))
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
    except BaseException:
        await stack.aclose()
        raise
    return MCPBridge(session, stack, transport="mcp-stdio")


__all__ = ["MCPBridge", "connect_sse_bridge", "connect_stdio_bridge"]
