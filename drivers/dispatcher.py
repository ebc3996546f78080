"""Route model-emitted calls to registered drivers."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from errors import (
    BridgeUnavailableError,
    CapabilityUnsupportedError,
    DispatchTimeoutError,
    DriverError,
    MalformedCallError,
    NoCallFound,
)

from .bridge import build_bridge, close_bridge
from .capabilities import capability_request, invoke_capability
from .driver import Driver
from .parallel import DispatchBatch, DispatchOutcome
from .payload import FunctionCall, extract_call_payload, extract_call_payloads, parse_function_call
from .registry import DriverRegistry
from .summary import summarize_call

logger = logging.getLogger(__name__)

_UNBIND_STATES = frozenset({"crashed", "stopped"})


class Dispatcher:
    """Validate, resolve and execute structured calls.

    The dispatcher holds no global lock: concurrent dispatches to different
    drivers proceed independently and only bridges that ask for it are
    serialized. Bridge results are returned unmodified and are never retried.
    """

    def __init__(
        self,
        registry: DriverRegistry,
        *,
        autostarter: Any = None,
        telemetry: Any = None,
        default_timeout: Optional[float] = None,
        launch_timeout: Optional[float] = None,
        max_concurrency: int = 8,
    ) -> None:
        self._registry = registry
        self._autostarter = autostarter
        self._telemetry = telemetry
        self.default_timeout = default_timeout
        self.launch_timeout = launch_timeout
        self.max_concurrency = max_concurrency
        self._bind_locks: Dict[str, asyncio.Lock] = {}
        self._autostarted: Set[str] = set()
        if autostarter is not None:
            autostarter.add_listener(self._on_state_change)

    @property
    def registry(self) -> DriverRegistry:
        return self._registry

    @property
    def autostarter(self) -> Any:
        return self._autostarter

    @property
    def telemetry(self) -> Any:
        return self._telemetry

    async def dispatch(
        self,
        raw: str,
        registry: Optional[DriverRegistry] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Extract the first call from *raw* model output and execute it.

        Raises ``NoCallFound`` when the text carries no call; that is the
        "no action requested" signal rather than a failure.
        """
        started = time.perf_counter()
        try:
            call = parse_function_call(extract_call_payload(raw), raw=raw)
        except (NoCallFound, MalformedCallError) as exc:
            self._record(None, exc, started)
            if isinstance(exc, NoCallFound):
                logger.debug("No call found in model output")
            else:
                logger.warning("Malformed call: %s", exc)
            raise
        return await self.dispatch_call(call, registry, timeout=timeout)

    async def dispatch_call(
        self,
        call: FunctionCall,
        registry: Optional[DriverRegistry] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Execute an already parsed call."""
        started = time.perf_counter()
        registry = registry or self._registry
        effective = timeout if timeout is not None else self.default_timeout
        driver: Optional[Driver] = None
        try:
            driver = registry.lookup(call.target)
            if effective is None:
                result = await self._run(driver, call)
            else:
                try:
                    result = await asyncio.wait_for(self._run(driver, call), timeout=effective)
                except asyncio.TimeoutError as exc:
                    raise DispatchTimeoutError(
                        f"call {call.reference} did not complete within {effective}s; outcome unknown",
                        driver_id=driver.id,
                        raw_input=call.raw,
                    ) from exc
        except DriverError as exc:
            if exc.raw_input is None:
                exc.raw_input = call.raw
            if exc.driver_id is None and driver is not None:
                exc.driver_id = driver.id
            self._record(call, exc, started, driver)
            logger.warning("Dispatch %s failed: %s", call.reference, exc)
            raise
        except Exception as exc:
            self._record(call, exc, started, driver)
            logger.error("Dispatch %s raised %s: %s", call.reference, type(exc).__name__, exc)
            raise

        self._record(call, None, started, driver)
        logger.info(
            "Dispatched %s in %.3fs",
            summarize_call(driver.id, call.function, call.args or call.arguments),
            time.perf_counter() - started,
        )
        return result

    async def dispatch_all(
        self,
        raw: str,
        registry: Optional[DriverRegistry] = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[DispatchOutcome]:
        """Execute every call in *raw* concurrently; outcomes keep text order."""
        payloads = extract_call_payloads(raw)
        if not payloads:
            self._record(None, NoCallFound(raw), time.perf_counter())
            raise NoCallFound(raw)
        batch = DispatchBatch(self, registry=registry, timeout=timeout, max_concurrency=self.max_concurrency)
        return await batch.run(payloads, raw=raw)

    async def _run(self, driver: Driver, call: FunctionCall) -> Any:
        capability, explicit = capability_request(call.function)
        if capability is not None and (explicit or capability in driver.capabilities.declared):
            handler = driver.capabilities.handler(capability)
            if handler is None:
                raise CapabilityUnsupportedError(capability, driver_id=driver.id, raw_input=call.raw)
            if not driver.is_bound and self._can_autostart(driver):
                await self._ensure_bridge(driver)
            return await invoke_capability(handler, driver, dict(call.arguments))

        if not driver.is_bound:
            await self._ensure_bridge(driver)
        return await driver.execute(call)

    def _can_autostart(self, driver: Driver) -> bool:
        return self._autostarter is not None and driver.bridge_factory is not None

    async def _ensure_bridge(self, driver: Driver) -> None:
        if not self._can_autostart(driver):
            raise BridgeUnavailableError(
                f"driver '{driver.id}' has no bound bridge and cannot be autostarted",
                driver_id=driver.id,
                state="unbound",
            )
        lock = self._bind_locks.setdefault(driver.id, asyncio.Lock())
        async with lock:
            if driver.is_bound:
                return
            endpoint = await self._autostarter.ensure_running(
                driver.meta,
                deployment=driver.deployment,
                timeout=self.launch_timeout,
            )
            try:
                bridge = await build_bridge(driver.bridge_factory, endpoint)
            except DriverError:
                raise
            except Exception as exc:
                raise BridgeUnavailableError(
                    f"could not connect a bridge to driver '{driver.id}': {exc}",
                    driver_id=driver.id,
                    state="ready",
                ) from exc
            driver.bind(bridge, endpoint)
            self._autostarted.add(driver.id)

    def _on_state_change(self, driver_id: str, previous: Any, current: Any) -> None:
        state = getattr(current, "value", current)
        if state not in _UNBIND_STATES:
            return
        if driver_id not in self._autostarted:
            return
        self._autostarted.discard(driver_id)
        driver = self._registry.get(driver_id)
        if driver is None:
            return
        bridge = driver.unbind()
        if bridge is None:
            return
        logger.info("Unbinding driver %s after transition to %s", driver_id, state)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(close_bridge(bridge), name=f"close-bridge:{driver_id}")

    def _record(
        self,
        call: Optional[FunctionCall],
        error: Optional[BaseException],
        started: float,
        driver: Optional[Driver] = None,
    ) -> None:
        if self._telemetry is None:
            return
        error_type = error.error_type.value if isinstance(error, DriverError) else (
            type(error).__name__ if error is not None else None
        )
        self._telemetry.record_dispatch(
            driver_id=driver.id if driver is not None else None,
            function=call.function if call is not None else None,
            call_id=call.call_id if call is not None else None,
            duration=time.perf_counter() - started,
            success=error is None,
            error=str(error) if error is not None else None,
            error_type=error_type,
            request_summary=summarize_call(call.target, call.function, call.args or call.arguments) if call else None,
        )


__all__ = ["Dispatcher"]
