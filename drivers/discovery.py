"""Build spec artifacts from the tools an MCP server advertises."""
from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from errors import SpecUnavailableError

from .spec import StaticSpecProvider

logger = logging.getLogger(__name__)


class MCPSpecDiscovery:
    """Lists tools from a live MCP client and converts them to a function document."""

    def __init__(self, driver_id: str) -> None:
        self.driver_id = driver_id

    async def discover(self, client: Any) -> Dict[str, Any]:
        """Return ``{"functions": [...]}`` for every tool *client* lists."""
        try:
            response = await client.list_tools()
        except Exception as exc:
            raise SpecUnavailableError(
                f"could not list tools for driver '{self.driver_id}': {exc}",
                driver_id=self.driver_id,
            ) from exc

        functions: List[Dict[str, Any]] = []
        for tool in getattr(response, "tools", []) or []:
            schema = getattr(tool, "inputSchema", None) or getattr(tool, "input_schema", None) or {}
            functions.append(
                {
                    "name": tool.name,
                    "description": getattr(tool, "description", "") or "",
                    "parameters": sanitize_json_schema(copy.deepcopy(dict(schema))),
                }
            )
        if not functions:
            raise SpecUnavailableError(
                f"MCP server for driver '{self.driver_id}' advertises no tools",
                driver_id=self.driver_id,
            )
        logger.debug("Discovered %d MCP tool(s) for %s", len(functions), self.driver_id)
        return {"functions": sorted(functions, key=lambda item: item["name"])}

    async def build_provider(self, client: Any, **kwargs: Any) -> StaticSpecProvider:
        document = await self.discover(client)
        kwargs.setdefault("spec_format", "json-schema")
        kwargs.setdefault("driver_id", self.driver_id)
        return StaticSpecProvider(document, **kwargs)


def sanitize_json_schema(schema: Any) -> Any:
    """Fill in missing ``type`` keys so every node is self-describing."""
    if not isinstance(schema, dict):
        return schema

    schema_type = schema.get("type")
    if schema_type is None:
        if "properties" in schema or "additionalProperties" in schema:
            schema_type = "object"
        elif "items" in schema:
            schema_type = "array"
        elif any(key in schema for key in ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum")):
            schema_type = "number"
        else:
            schema_type = "string"
        schema["type"] = schema_type

    if schema_type == "object":
        schema.setdefault("properties", {})
        for key, value in list(schema["properties"].items()):
            schema["properties"][key] = sanitize_json_schema(value)
        additional = schema.get("additionalProperties")
        if isinstance(additional, dict):
            schema["additionalProperties"] = sanitize_json_schema(additional)

    if schema_type == "array":
        schema.setdefault("items", {"type": "string"})

    if "items" in schema:
        schema["items"] = sanitize_json_schema(schema["items"])

    return schema


__all__ = ["MCPSpecDiscovery", "sanitize_json_schema"]
