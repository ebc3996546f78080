"""Driver registry, spec providers, bridges and the call dispatcher."""

from .bridge import Bridge, BridgeEndpoint, BridgeFactory, BridgeOperation
from .bridges import FunctionBridge, HTTPBridge, MCPBridge, connect_sse_bridge, connect_stdio_bridge
from .capabilities import (
    CACHE,
    HEALTHCHECK,
    RECOGNIZED_CAPABILITIES,
    STATUS,
    STREAM,
    CapabilitySet,
    builtin_bindings,
)
from .discovery import MCPSpecDiscovery, sanitize_json_schema
from .dispatcher import Dispatcher
from .driver import Driver, DriverHandle, default_translator
from .meta import WILDCARD_LLM, DriverMeta
from .parallel import DispatchBatch, DispatchOutcome
from .payload import FunctionCall, extract_call_payload, extract_call_payloads, parse_function_call
from .registry import DriverRegistry
from .spec import CachingSpecProvider, FileSpecProvider, SpecArtifact, SpecProvider, StaticSpecProvider
from errors import (
    BridgeUnavailableError,
    CapabilityUnsupportedError,
    DriverError,
    MalformedCallError,
    NoCallFound,
    UnknownTargetError,
)

__all__ = [
    "Bridge",
    "BridgeEndpoint",
    "BridgeFactory",
    "BridgeOperation",
    "BridgeUnavailableError",
    "CACHE",
    "CachingSpecProvider",
    "CapabilitySet",
    "CapabilityUnsupportedError",
    "DispatchBatch",
    "DispatchOutcome",
    "Dispatcher",
    "Driver",
    "DriverError",
    "DriverHandle",
    "DriverMeta",
    "DriverRegistry",
    "FileSpecProvider",
    "FunctionBridge",
    "FunctionCall",
    "HEALTHCHECK",
    "HTTPBridge",
    "MCPBridge",
    "MCPSpecDiscovery",
    "MalformedCallError",
    "NoCallFound",
    "RECOGNIZED_CAPABILITIES",
    "STATUS",
    "STREAM",
    "SpecArtifact",
    "SpecProvider",
    "StaticSpecProvider",
    "UnknownTargetError",
    "WILDCARD_LLM",
    "builtin_bindings",
    "connect_sse_bridge",
    "connect_stdio_bridge",
    "default_translator",
    "extract_call_payload",
    "extract_call_payloads",
    "parse_function_call",
    "sanitize_json_schema",
]
