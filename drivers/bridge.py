"""Bridge contract: the transport-specific executor a driver calls through."""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BridgeEndpoint:
    """Resolved connection info for a bridge."""

    address: str
    port: Optional[int] = None
    token: Optional[str] = None
    scheme: str = "http"
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def url(self) -> str:
        if self.port is None:
            return f"{self.scheme}://{self.address}"
        return f"{self.scheme}://{self.address}:{self.port}"

    def redacted(self) -> Dict[str, Any]:
        """Return a loggable view without the auth token."""
        return {
            "address": self.address,
            "port": self.port,
            "scheme": self.scheme,
            "token": "***" if self.token else None,
        }


@dataclass(frozen=True)
class BridgeOperation:
    """A call translated into the bridge's vocabulary."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    args: Tuple[Any, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


class Bridge(Protocol):
    """Protocol describing bridge implementations."""

    @property
    def transport(self) -> str:
        ...

    @property
    def requires_serial(self) -> bool:
        ...

    async def invoke(self, operation: BridgeOperation) -> Any:
        ...

    async def aclose(self) -> None:
        ...


BridgeFactory = Callable[[BridgeEndpoint], Any]


async def bridge_is_healthy(bridge: Any) -> bool:
    """Ask *bridge* for its health, treating a missing probe as healthy."""
    attr = getattr(bridge, "is_healthy", None)
    if attr is None:
        return True
    result = attr() if callable(attr) else attr
    if inspect.isawaitable(result):
        try:
            result = await result
        except Exception as exc:
            logger.debug("Bridge health probe failed: %s", exc)
            return False
    return bool(result)


async def close_bridge(bridge: Any) -> None:
    """Close *bridge* through whichever close method it offers."""
    for name in ("aclose", "close", "shutdown"):
        fn = getattr(bridge, name, None)
        if fn is None or not callable(fn):
            continue
        result = fn()
        if inspect.isawaitable(result):
            await result
        return


async def build_bridge(factory: BridgeFactory, endpoint: BridgeEndpoint) -> Any:
    """Call *factory* for *endpoint*, awaiting it when it is a coroutine function."""
    bridge = factory(endpoint)
    if inspect.isawaitable(bridge):
        bridge = await bridge
    return bridge


__all__ = [
    "Bridge",
    "BridgeEndpoint",
    "BridgeFactory",
    "BridgeOperation",
    "bridge_is_healthy",
    "build_bridge",
    "close_bridge",
]
