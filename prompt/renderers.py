"""Deterministic renderers for spec artifacts and system messages."""
from __future__ import annotations

import json
from typing import Iterable, List, Optional

_FORMAT_LANGS = {
    "json": "json",
    "json-schema": "json",
    "jsonschema": "json",
    "openapi": "json",
    "openapi-json": "json",
    "openai-functions": "json",
    "mcp": "json",
    "yaml": "yaml",
    "openapi-yaml": "yaml",
    "wsdl": "xml",
    "xml": "xml",
    "graphql": "graphql",
}


def fence_language(spec_format: str) -> str:
    return _FORMAT_LANGS.get((spec_format or "").strip().lower(), "")


def render_code_block(title: str, content: str, *, lang: str = "") -> str:
    fence = f"```{lang}".rstrip()
    if title:
        return f"{title}\n{fence}\n{content}\n```"
    return f"{fence}\n{content}\n```"


def render_call_example(target: str, function: str = "<function name>") -> str:
    example = {"target": target, "function": function, "arguments": {"<parameter>": "<value>"}}
    return render_code_block("", json.dumps(example, ensure_ascii=False), lang="json")


def render_system_message(
    *,
    driver_id: str,
    target: str,
    protocol: str,
    transport: str,
    spec_format: str,
    content: str,
) -> str:
    """Wrap a spec artifact with generic call-format guidance."""
    lines: List[str] = [
        f'You can call functions of the "{driver_id}" driver ({protocol} over {transport}).',
        f"The available functions are described below ({spec_format}).",
        "",
        render_code_block("", content, lang=fence_language(spec_format)),
        "",
        "To call a function, reply with exactly one fenced JSON block of this shape:",
        "",
        render_call_example(target),
        "",
        "Use named arguments that match the description. Reply without a JSON block when no call is needed.",
    ]
    return "\n".join(lines)


def render_table(headers: Iterable[str], rows: Iterable[Iterable[str]]) -> str:
    header_items = list(headers)
    header_row = " | ".join(header_items)
    divider = " | ".join(["---"] * len(header_items))
    body = [" | ".join(list(row)) for row in rows]
    table_lines: List[str] = [header_row, divider, *body]
    return "\n".join(table_lines)


def render_template(template: str, *, content: str, driver_id: str, target: str, model_hint: Optional[str]) -> str:
    """Fill a model-specific template; unknown placeholders are left untouched."""
    values = {
        "{spec}": content,
        "{driver_id}": driver_id,
        "{target}": target,
        "{model}": model_hint or "",
    }
    text = template
    for placeholder, value in values.items():
        text = text.replace(placeholder, value)
    return text


__all__ = [
    "fence_language",
    "render_call_example",
    "render_code_block",
    "render_system_message",
    "render_table",
    "render_template",
]
