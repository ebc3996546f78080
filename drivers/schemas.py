"""Pydantic schemas for validated driver metadata, call payloads and deployments."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

_SEMVER_PATTERN = (
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class DriverSchema(BaseModel):
    """Base class for all schemas with strict validation."""

    model_config = {
        "extra": "forbid",
        "validate_assignment": True,
    }

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class DriverMetaInput(DriverSchema):
    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")
    prefix: Optional[str] = Field(None, pattern=r"^[A-Za-z][A-Za-z0-9_-]*$")
    protocol: str = Field("custom", min_length=1)
    transport: str = Field("custom", min_length=1)
    spec_format: str = Field("text", min_length=1)
    target_llms: List[str] = Field(default_factory=lambda: ["*"])
    capabilities: List[str] = Field(default_factory=list)
    version: str = Field("0.1.0", pattern=_SEMVER_PATTERN)

    @field_validator("prefix", mode="before")
    @classmethod
    def blank_prefix_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("target_llms", mode="before")
    @classmethod
    def normalize_targets(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if value is None:
            return ["*"]
        seen: List[str] = []
        for item in value:
            text = str(item).strip()
            if text and text not in seen:
                seen.append(text)
        return seen or ["*"]

    @field_validator("capabilities", mode="before")
    @classmethod
    def normalize_capabilities(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if value is None:
            return []
        return [str(item).strip().lower() for item in value if str(item).strip()]


class FunctionCallInput(BaseModel):
    """A structured call as emitted by the model.

    ``name`` is accepted as an alias of ``function`` and ``target`` may carry
    the function in ``"target/function"`` form when ``function`` is omitted.
    """

    model_config = {"extra": "ignore"}

    target: str = Field(..., min_length=1)
    function: str = Field(..., min_length=1)
    arguments: Union[Dict[str, Any], List[Any]] = Field(default_factory=dict)
    id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def split_combined_target(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "function" not in data and "name" in data:
            data["function"] = data.pop("name")
        if "arguments" not in data:
            for alias in ("args", "parameters", "input"):
                if alias in data:
                    data["arguments"] = data.pop(alias)
                    break
        target = data.get("target")
        if "function" not in data and isinstance(target, str) and "/" in target:
            head, tail = target.split("/", 1)
            data["target"] = head
            data["function"] = tail
        if data.get("arguments") is None:
            data["arguments"] = {}
        return data

    @field_validator("target", "function")
    @classmethod
    def strip_reference(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be blank")
        return text


class DeploymentInput(DriverSchema):
    """Deployment metadata used by the autostarter to launch a driver."""

    kind: Literal["process", "container"] = "process"
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    host: str = "127.0.0.1"
    port: Optional[int] = Field(None, ge=1, le=65535)
    container_port: Optional[int] = Field(None, ge=1, le=65535)
    scheme: str = "http"
    health: Optional[Literal["http", "tcp", "process"]] = None
    health_path: Optional[str] = None
    auth_token_env: Optional[str] = None

    @model_validator(mode="after")
    def check_runnable(self) -> "DeploymentInput":
        if self.kind == "process" and not (self.command or "").strip():
            raise ValueError("process deployments require a command")
        if self.kind == "container" and not (self.image or "").strip():
            raise ValueError("container deployments require an image")
        if self.health in ("http", "tcp") and self.port is None:
            raise ValueError(f"{self.health} health checks require a port")
        return self

    def health_kind(self) -> str:
        if self.health is not None:
            return self.health
        if self.health_path and self.port is not None:
            return "http"
        if self.port is not None:
            return "tcp"
        return "process"


def format_validation_error(exc: ValidationError) -> str:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "input"
        messages.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(messages)


def parse_input(schema: Type[SchemaT], raw_input: Mapping[str, Any]) -> SchemaT:
    """Validate *raw_input* against *schema*, raising ``ValueError`` on failure."""
    try:
        return schema(**raw_input)
    except ValidationError as exc:
        raise ValueError(format_validation_error(exc)) from exc


__all__ = [
    "DeploymentInput",
    "DriverMetaInput",
    "DriverSchema",
    "FunctionCallInput",
    "format_validation_error",
    "parse_input",
]
