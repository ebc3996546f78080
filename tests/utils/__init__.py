"""Shared testing utilities."""
from .async_helpers import (
    assert_parallel_execution,
    assert_serial_execution,
    measure_duration,
    wait_for_condition,
)

__all__ = [
    "assert_parallel_execution",
    "assert_serial_execution",
    "measure_duration",
    "wait_for_condition",
]
