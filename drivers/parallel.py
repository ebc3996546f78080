"""Concurrent execution of several calls extracted from one model output."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from errors import DriverError

from .payload import FunctionCall, parse_function_call

if TYPE_CHECKING:  # pragma: no cover
    from .dispatcher import Dispatcher
    from .registry import DriverRegistry


@dataclass
class DispatchOutcome:
    """Result or typed error for one call in a batch."""

    index: int
    payload: str
    call: Optional[FunctionCall] = None
    result: Any = None
    error: Optional[DriverError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"index": self.index, "ok": self.ok}
        if self.call is not None:
            data["target"] = self.call.target
            data["function"] = self.call.function
            data["call_id"] = self.call.call_id
        if self.error is not None:
            data["error"] = self.error.to_dict()
        else:
            data["result"] = self.result
        return data


class DispatchBatch:
    """Run call payloads concurrently, bounded by a semaphore.

    Driver errors are captured per call so one failing call does not cancel
    its siblings. Any other exception propagates.
    """

    def __init__(
        self,
        dispatcher: "Dispatcher",
        *,
        registry: Optional["DriverRegistry"] = None,
        timeout: Optional[float] = None,
        max_concurrency: int = 8,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._dispatcher = dispatcher
        self._registry = registry
        self._timeout = timeout
        self._max_concurrency = max_concurrency

    async def run(self, payloads: Sequence[str], *, raw: Optional[str] = None) -> List[DispatchOutcome]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(index: int, payload: str) -> DispatchOutcome:
            outcome = DispatchOutcome(index=index, payload=payload)
            async with semaphore:
                try:
                    outcome.call = parse_function_call(payload, raw=raw if raw is not None else payload)
                    outcome.result = await self._dispatcher.dispatch_call(
                        outcome.call,
                        self._registry,
                        timeout=self._timeout,
                    )
                except DriverError as exc:
                    outcome.error = exc
            return outcome

        return list(await asyncio.gather(*(_one(i, p) for i, p in enumerate(payloads))))


__all__ = ["DispatchBatch", "DispatchOutcome"]
