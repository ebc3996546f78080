"""Runtime driver object binding metadata, a spec provider and a bridge."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from errors import BridgeUnavailableError, SpecUnavailableError

from .bridge import BridgeEndpoint, BridgeFactory, BridgeOperation, close_bridge
from .capabilities import CapabilitySet
from .meta import DriverMeta
from .payload import FunctionCall
from .spec import SpecArtifact, SpecProvider

logger = logging.getLogger(__name__)

Translator = Callable[[FunctionCall], Any]


def default_translator(driver_id: str) -> Translator:
    def _translate(call: FunctionCall) -> BridgeOperation:
        return BridgeOperation(
            name=call.function,
            arguments=dict(call.arguments),
            args=tuple(call.args),
            metadata={"driver_id": driver_id, "call_id": call.call_id},
        )

    return _translate


class Driver:
    """The bound unit exposing description and execution for one backend."""

    def __init__(
        self,
        meta: DriverMeta,
        spec_provider: SpecProvider,
        bridge: Any = None,
        *,
        capabilities: Optional[CapabilitySet] = None,
        translator: Optional[Translator] = None,
        bridge_factory: Optional[BridgeFactory] = None,
        deployment: Any = None,
        endpoint: Optional[BridgeEndpoint] = None,
    ) -> None:
        self._meta = meta
        self._spec_provider = spec_provider
        self._capabilities = capabilities or CapabilitySet(meta.capabilities)
        self._translator = translator or default_translator(meta.id)
        self.bridge_factory = bridge_factory
        self.deployment = deployment
        self._binding: Tuple[Any, Optional[BridgeEndpoint]] = (bridge, endpoint if bridge is not None else None)
        self._serial_lock = asyncio.Lock()
        self._status_source: Optional[Callable[[], Optional[Dict[str, Any]]]] = None

    @property
    def id(self) -> str:
        return self._meta.id

    @property
    def prefix(self) -> Optional[str]:
        return self._meta.prefix

    @property
    def meta(self) -> DriverMeta:
        return self._meta

    @property
    def spec_provider(self) -> SpecProvider:
        return self._spec_provider

    @property
    def capabilities(self) -> CapabilitySet:
        return self._capabilities

    @property
    def bridge(self) -> Any:
        return self._binding[0]

    @property
    def endpoint(self) -> Optional[BridgeEndpoint]:
        return self._binding[1]

    @property
    def is_bound(self) -> bool:
        return self._binding[0] is not None

    def describe(self, model_hint: Optional[str] = None) -> SpecArtifact:
        try:
            return self._spec_provider.describe(model_hint)
        except SpecUnavailableError as exc:
            if exc.driver_id is None:
                exc.driver_id = self.id
            raise

    def system_message(self, model_hint: Optional[str] = None) -> str:
        return self._spec_provider.system_message(model_hint)

    def bind(self, bridge: Any, endpoint: Optional[BridgeEndpoint] = None) -> Any:
        """Attach *bridge*, returning the previously bound bridge (if any)."""
        previous = self._binding[0]
        self._binding = (bridge, endpoint)
        logger.info("Driver %s bound to %s bridge", self.id, getattr(bridge, "transport", type(bridge).__name__))
        return previous

    def unbind(self) -> Any:
        previous = self._binding[0]
        self._binding = (None, None)
        if previous is not None:
            logger.info("Driver %s unbound", self.id)
        return previous

    def translate(self, call: FunctionCall) -> BridgeOperation:
        operation = self._translator(call)
        if not isinstance(operation, BridgeOperation):
            raise TypeError(f"translator for driver '{self.id}' returned {type(operation).__name__}")
        return operation

    async def execute(self, call: FunctionCall) -> Any:
        """Translate *call* into a bridge operation and invoke it; the result is returned as-is."""
        bridge = self.bridge
        if bridge is None:
            raise BridgeUnavailableError(
                f"driver '{self.id}' has no bound bridge",
                driver_id=self.id,
                state="unbound",
            )
        operation = self.translate(call)
        if getattr(bridge, "requires_serial", False):
            async with self._serial_lock:
                return await _invoke(bridge, operation)
        return await _invoke(bridge, operation)

    def attach_status_source(self, source: Callable[[], Optional[Dict[str, Any]]]) -> None:
        self._status_source = source

    def status(self) -> Dict[str, Any]:
        endpoint = self.endpoint
        data: Dict[str, Any] = {
            "id": self.id,
            "prefix": self.prefix,
            "version": self._meta.version,
            "bound": self.is_bound,
            "transport": self._meta.transport,
            "endpoint": endpoint.redacted() if endpoint is not None else None,
            "capabilities": sorted(self._capabilities.recognized()),
        }
        if self._status_source is not None:
            data["supervisor"] = self._status_source()
        return data

    async def aclose(self) -> None:
        bridge = self.unbind()
        if bridge is not None:
            await close_bridge(bridge)

    def __repr__(self) -> str:
        return f"Driver(id={self.id!r}, prefix={self.prefix!r}, bound={self.is_bound})"


async def _invoke(bridge: Any, operation: BridgeOperation) -> Any:
    result = bridge.invoke(operation)
    if inspect.isawaitable(result):
        result = await result
    return result


DriverHandle = Driver


__all__ = ["Driver", "DriverHandle", "Translator", "default_translator"]
