"""Structured error types for registration, dispatch and autostart."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(Enum):
    """Classification of driver errors."""

    FATAL = "fatal"
    RECOVERABLE = "recoverable"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    INFRASTRUCTURE = "infrastructure"
    NO_ACTION = "no_action"


class DriverError(Exception):
    """Base class for every error raised by the driver core.

    Carries the originating driver id, the raw offending input (when the error
    was caused by caller input) and the last known supervisor state (when the
    error came from the autostart path).
    """

    error_type: ErrorType = ErrorType.RECOVERABLE

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        *,
        driver_id: Optional[str] = None,
        raw_input: Optional[str] = None,
        state: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        self.driver_id = driver_id
        self.raw_input = raw_input
        self.state = state

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "error": type(self).__name__,
            "error_type": self.error_type.value,
            "message": self.message,
        }
        if self.driver_id is not None:
            data["driver_id"] = self.driver_id
        if self.raw_input is not None:
            data["raw_input"] = self.raw_input
        if self.state is not None:
            data["state"] = self.state
        return data


class DuplicateIdError(DriverError):
    """A driver with the same id is already registered."""

    error_type = ErrorType.CONFIGURATION

    def __init__(self, driver_id: str, *, existing_id: Optional[str] = None) -> None:
        if existing_id is None:
            message = f"driver id '{driver_id}' is already registered"
        else:
            message = f"driver id '{driver_id}' is already the prefix of driver '{existing_id}'"
        super().__init__(message, driver_id=driver_id)
        self.existing_id = existing_id


class DuplicatePrefixError(DriverError):
    """Another registered driver already owns the prefix."""

    error_type = ErrorType.CONFIGURATION

    def __init__(self, prefix: str, *, driver_id: str, existing_id: str) -> None:
        super().__init__(
            f"prefix '{prefix}' is already used by driver '{existing_id}'",
            driver_id=driver_id,
        )
        self.prefix = prefix
        self.existing_id = existing_id


class DriverConfigError(DriverError):
    """Invalid driver configuration detected at registration or load time."""

    error_type = ErrorType.CONFIGURATION


class SpecUnavailableError(DriverError):
    """No spec artifact could be produced for a driver."""

    error_type = ErrorType.RECOVERABLE


class NoCallFound(DriverError):
    """The model output contained no call payload.

    Not a failure of the conversation: it signals that no action was requested.
    """

    error_type = ErrorType.NO_ACTION

    def __init__(self, raw_input: str) -> None:
        super().__init__("no call payload found in model output", raw_input=raw_input)


class MalformedCallError(DriverError):
    """The call payload was found but could not be parsed."""

    error_type = ErrorType.VALIDATION


class UnknownTargetError(DriverError):
    """The call references a driver id or prefix that is not registered."""

    error_type = ErrorType.VALIDATION

    def __init__(self, target: str, *, raw_input: Optional[str] = None) -> None:
        super().__init__(f"unknown driver target '{target}'", raw_input=raw_input)
        self.target = target


class CapabilityUnsupportedError(DriverError):
    """The invoked optional capability is not declared or not bound."""

    error_type = ErrorType.VALIDATION

    def __init__(self, capability: str, *, driver_id: str, raw_input: Optional[str] = None) -> None:
        super().__init__(
            f"driver '{driver_id}' does not support capability '{capability}'",
            driver_id=driver_id,
            raw_input=raw_input,
        )
        self.capability = capability


class BridgeUnavailableError(DriverError):
    """No bridge could be bound for the driver."""

    error_type = ErrorType.INFRASTRUCTURE


class ResolutionError(BridgeUnavailableError):
    """No runnable image or executable could be derived from driver metadata."""


class HealthCheckTimeoutError(BridgeUnavailableError):
    """A launched driver never reported healthy within the attempt ceiling."""


class DriverUnavailableError(BridgeUnavailableError):
    """The driver exhausted its restart budget and stays stopped until reset."""


class LaunchPolicyError(BridgeUnavailableError):
    """The sandbox policy refused to launch the driver."""

    error_type = ErrorType.FATAL


class LaunchError(BridgeUnavailableError):
    """The launcher could not start the driver process or container."""


class LaunchTimeoutError(BridgeUnavailableError):
    """The caller stopped waiting for the driver to become ready."""


class BridgeCallError(DriverError):
    """The bridge reached its backend but the operation failed."""

    error_type = ErrorType.INFRASTRUCTURE

    def __init__(
        self,
        message: str,
        *,
        driver_id: Optional[str] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message, driver_id=driver_id)
        self.status = status
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class DispatchTimeoutError(DriverError):
    """The call did not finish in time; its outcome is unknown."""

    error_type = ErrorType.RECOVERABLE


__all__ = [
    "BridgeCallError",
    "BridgeUnavailable",
    "BridgeUnavailableError",
    "CapabilityUnsupported",
    "CapabilityUnsupportedError",
    "DispatchTimeoutError",
    "DriverConfigError",
    "DriverError",
    "DriverUnavailable",
    "DriverUnavailableError",
    "DuplicateId",
    "DuplicateIdError",
    "DuplicatePrefix",
    "DuplicatePrefixError",
    "ErrorType",
    "HealthCheckTimeout",
    "HealthCheckTimeoutError",
    "LaunchError",
    "LaunchPolicyError",
    "LaunchTimeoutError",
    "MalformedCall",
    "MalformedCallError",
    "NoCallFound",
    "ResolutionError",
    "SpecUnavailable",
    "SpecUnavailableError",
    "UnknownTarget",
    "UnknownTargetError",
]

# Aliases matching the error taxonomy naming.
DuplicateId = DuplicateIdError
DuplicatePrefix = DuplicatePrefixError
SpecUnavailable = SpecUnavailableError
MalformedCall = MalformedCallError
UnknownTarget = UnknownTargetError
CapabilityUnsupported = CapabilityUnsupportedError
BridgeUnavailable = BridgeUnavailableError
HealthCheckTimeout = HealthCheckTimeoutError
DriverUnavailable = DriverUnavailableError
