"""Bridge implementations."""
from .function import FunctionBridge
from .http import HTTPBridge, Route, http_bridge_factory
from .mcp import MCPBridge, connect_sse_bridge, connect_stdio_bridge

__all__ = [
    "FunctionBridge",
    "HTTPBridge",
    "MCPBridge",
    "Route",
    "connect_sse_bridge",
    "connect_stdio_bridge",
    "http_bridge_factory",
]
