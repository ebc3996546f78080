"""Bridge that calls local Python callables."""
from __future__ import annotations

import asyncio
import functools
import inspect
from typing import Any, Callable, Dict, Mapping, Optional, Union

from errors import MalformedCallError

from ..bridge import BridgeOperation


class FunctionBridge:
    """Adapter that exposes in-process callables as a bridge.

    Synchronous callables run in the default executor so a slow function
    never blocks the event loop. Named arguments become keyword arguments and
    positional arguments are passed through in order.
    """

    transport = "function"

    def __init__(
        self,
        functions: Union[Mapping[str, Callable[..., Any]], Callable[..., Any]],
        *,
        requires_serial: bool = False,
        driver_id: Optional[str] = None,
    ) -> None:
        if callable(functions) and not isinstance(functions, Mapping):
            name = getattr(functions, "__name__", "call")
            functions = {name: functions}
        self._functions: Dict[str, Callable[..., Any]] = dict(functions)
        self.requires_serial = requires_serial
        self._driver_id = driver_id
        self.closed = False

    @property
    def functions(self) -> Dict[str, Callable[..., Any]]:
        return dict(self._functions)

    async def invoke(self, operation: BridgeOperation) -> Any:
        driver_id = self._driver_id or operation.metadata.get("driver_id")
        fn = self._functions.get(operation.name)
        if fn is None:
            raise MalformedCallError(
                f"function '{operation.name}' is not exposed by this driver",
                driver_id=driver_id,
            )
        _check_arguments(fn, operation, driver_id)
        call = functools.partial(fn, *operation.args, **operation.arguments)
        if inspect.iscoroutinefunction(fn):
            return await call()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, call)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def is_healthy(self) -> bool:
        return not self.closed

    async def aclose(self) -> None:
        self.closed = True


def _check_arguments(fn: Callable[..., Any], operation: BridgeOperation, driver_id: Optional[str]) -> None:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return  # no introspectable signature; let the call decide
    try:
        signature.bind(*operation.args, **operation.arguments)
    except TypeError as exc:
        raise MalformedCallError(
            f"arguments do not match function '{operation.name}': {exc}",
            driver_id=driver_id,
        ) from exc


__all__ = ["FunctionBridge"]
