"""Driver identity and configuration records."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from errors import DriverConfigError

from .schemas import DriverMetaInput, parse_input

WILDCARD_LLM = "*"


@dataclass(frozen=True, slots=True)
class DriverMeta:
    """Immutable identity record of a driver."""

    id: str
    prefix: Optional[str] = None
    protocol: str = "custom"
    transport: str = "custom"
    spec_format: str = "text"
    target_llms: Tuple[str, ...] = (WILDCARD_LLM,)
    capabilities: FrozenSet[str] = field(default_factory=frozenset)
    version: str = "0.1.0"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "DriverMeta":
        """Validate *raw* once and build the frozen record."""
        try:
            data = parse_input(DriverMetaInput, raw)
        except ValueError as exc:
            raise DriverConfigError(
                f"invalid driver metadata: {exc}",
                driver_id=str(raw.get("id")) if raw.get("id") else None,
            ) from exc
        return cls(
            id=data.id,
            prefix=data.prefix,
            protocol=data.protocol,
            transport=data.transport,
            spec_format=data.spec_format,
            target_llms=tuple(data.target_llms),
            capabilities=frozenset(data.capabilities),
            version=data.version,
        )

    @classmethod
    def create(cls, id: str, **fields: Any) -> "DriverMeta":
        return cls.from_mapping({"id": id, **fields})

    def supports_model(self, model_hint: Optional[str]) -> bool:
        if model_hint is None or WILDCARD_LLM in self.target_llms:
            return True
        return model_hint in self.target_llms

    @property
    def references(self) -> Tuple[str, ...]:
        """Names under which the driver can be looked up."""
        if self.prefix:
            return (self.id, self.prefix)
        return (self.id,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prefix": self.prefix,
            "protocol": self.protocol,
            "transport": self.transport,
            "spec_format": self.spec_format,
            "target_llms": list(self.target_llms),
            "capabilities": sorted(self.capabilities),
            "version": self.version,
        }


__all__ = ["DriverMeta", "WILDCARD_LLM"]
