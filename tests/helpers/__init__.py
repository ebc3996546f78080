"""Stub bridges, launchers and MCP clients shared by the test suite."""
from __future__ import annotations

import asyncio
import itertools
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from autostart.descriptor import LaunchDescriptor
from drivers.bridge import BridgeOperation
from drivers.meta import DriverMeta
from drivers.spec import StaticSpecProvider


def make_meta(driver_id: str = "weather-1", **fields: Any) -> DriverMeta:
    fields.setdefault("protocol", "REST")
    fields.setdefault("transport", "HTTP")
    return DriverMeta.create(driver_id, **fields)


def make_provider(document: Any = "get_forecast(city: str) -> forecast", **kwargs: Any) -> StaticSpecProvider:
    return StaticSpecProvider(document, **kwargs)


class RecordingBridge:
    """Bridge that records every operation and returns a canned response."""

    def __init__(
        self,
        response: Any = "ok",
        *,
        transport: str = "stub",
        requires_serial: bool = False,
        delay: float = 0.0,
        healthy: bool = True,
    ) -> None:
        self._response = response
        self.transport = transport
        self.requires_serial = requires_serial
        self.delay = delay
        self.healthy = healthy
        self.operations: List[BridgeOperation] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.operations)

    async def invoke(self, operation: BridgeOperation) -> Any:
        self.operations.append(operation)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if callable(self._response):
                return self._response(operation)
            return self._response
        finally:
            self.active -= 1

    async def is_healthy(self) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        self.closed = True


class StubHandle:
    """Process handle whose exit is controlled by the test."""

    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.id = f"stub:{next(self._ids)}"
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode if self.returncode is not None else 0


class StubLauncher:
    """Launcher that creates ``StubHandle``s and counts launches."""

    def __init__(self, *, delay: float = 0.0, fail_with: Optional[BaseException] = None) -> None:
        self.delay = delay
        self.fail_with = fail_with
        self.launched: List[Tuple[LaunchDescriptor, StubHandle]] = []
        self.stopped: List[StubHandle] = []

    @property
    def launches(self) -> int:
        return len(self.launched)

    @property
    def last_handle(self) -> StubHandle:
        return self.launched[-1][1]

    async def launch(self, descriptor: LaunchDescriptor) -> StubHandle:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        handle = StubHandle()
        self.launched.append((descriptor, handle))
        return handle

    async def stop(self, handle: StubHandle, grace_seconds: float) -> None:
        self.stopped.append(handle)
        if handle.returncode is None:
            handle.exit(-15)


def probe_factory(results: Callable[[], bool]) -> Callable[..., Any]:
    """Build a probe factory whose probes return ``results()``."""

    def _factory(descriptor: LaunchDescriptor, handle: Any, policy: Any):
        async def _probe() -> bool:
            return results()

        return _probe

    return _factory


def process_deployment(**overrides: Any) -> Dict[str, Any]:
    deployment: Dict[str, Any] = {"kind": "process", "command": "sh", "args": ["-c", "sleep 60"]}
    deployment.update(overrides)
    return deployment


class StubMCPSession:
    """Just enough of ``ClientSession`` for bridge and discovery tests."""

    def __init__(self, tools: Iterable[Dict[str, Any]] = (), *, ping_ok: bool = True) -> None:
        self._tools = list(tools)
        self.ping_ok = ping_ok
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        self.calls.append((name, dict(arguments)))
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=f"{name} done")], isError=False)

    async def list_tools(self) -> Any:
        return SimpleNamespace(
            tools=[
                SimpleNamespace(
                    name=tool["name"],
                    description=tool.get("description", ""),
                    inputSchema=tool.get("schema", {"type": "object", "properties": {}}),
                )
                for tool in self._tools
            ]
        )

    async def send_ping(self) -> Any:
        if not self.ping_ok:
            raise ConnectionError("ping failed")
        return SimpleNamespace()


def get_forecast(city: str, days: int = 1) -> Dict[str, Any]:
    """Importable function used by config-driven function bridges."""
    return {"city": city, "days": days, "forecast": "sunny"}


__all__ = [
    "RecordingBridge",
    "StubHandle",
    "StubLauncher",
    "StubMCPSession",
    "get_forecast",
    "make_meta",
    "make_provider",
    "probe_factory",
    "process_deployment",
]
