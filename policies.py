"""Sandbox, health-check and restart policies for supervised drivers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Sequence, Tuple


class SandboxPolicy(Enum):
    """Isolation levels for autostarted drivers."""

    NONE = "none"
    RESTRICTED = "restricted"
    STRICT = "strict"


@dataclass(frozen=True)
class LaunchContext:
    """Decides whether a resolved launch command may be started."""

    sandbox_policy: SandboxPolicy = SandboxPolicy.RESTRICTED
    allowed_commands: Optional[Tuple[str, ...]] = None
    blocked_commands: Optional[Tuple[str, ...]] = None

    def can_launch(self, command: Sequence[str], *, container: bool) -> tuple[bool, Optional[str]]:
        """Return whether *command* is permitted under the sandbox rules."""

        if not command or not str(command[0]).strip():
            return False, "Launch command must not be empty"

        text = " ".join(str(part) for part in command)
        if self.blocked_commands:
            for blocked in self.blocked_commands:
                if blocked and blocked in text:
                    return False, f"Command contains blocked pattern: {blocked}"

        if self.sandbox_policy == SandboxPolicy.STRICT and not container:
            return False, "Only container launches are allowed in strict mode"

        if self.sandbox_policy != SandboxPolicy.NONE and self.allowed_commands:
            executable = os.path.basename(str(command[0]))
            if executable not in self.allowed_commands and str(command[0]) not in self.allowed_commands:
                return False, f"Executable '{executable}' is not in the allowed list"

        return True, None


@dataclass(frozen=True)
class HealthCheckPolicy:
    """Bounded exponential backoff for health polling."""

    base_delay: float = 0.2
    max_delay: float = 5.0
    max_attempts: int = 8
    probe_timeout: float = 2.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``max_attempts - 1`` values)."""

        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            yield delay
            delay = min(delay * 2, self.max_delay)


@dataclass(frozen=True)
class RestartPolicy:
    """Maximum restarts allowed inside a sliding time window."""

    max_restarts: int = 3
    window_seconds: float = 300.0
    restart_on_exit: bool = True

    def __post_init__(self) -> None:
        if self.max_restarts < 0:
            raise ValueError("max_restarts must not be negative")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


__all__ = ["HealthCheckPolicy", "LaunchContext", "RestartPolicy", "SandboxPolicy"]
