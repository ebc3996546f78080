"""Helpers to summarize calls for logs and telemetry."""
from __future__ import annotations

from typing import Any, List, Optional

_SUMMARY_KEYS: tuple[str, ...] = (
    "id",
    "name",
    "city",
    "query",
    "path",
    "url",
    "topic",
    "key",
)


def truncate_text(value: Any, *, limit: int = 60) -> str:
    text = str(value)
    if len(text) <= limit:
        return text
    if limit < 4:
        return text[:limit]
    return text[: limit - 3] + "..."


def summarize_arguments(arguments: Any, *, limit: int = 60) -> str:
    if isinstance(arguments, dict):
        for key in _SUMMARY_KEYS:
            val = arguments.get(key)
            if isinstance(val, (str, int, float)):
                return truncate_text(val, limit=limit)
        for val in arguments.values():
            if isinstance(val, (str, int, float, bool)):
                return truncate_text(val, limit=limit)
        return ""
    if isinstance(arguments, (list, tuple)):
        simple: List[str] = []
        for item in arguments:
            if isinstance(item, (str, int, float, bool)):
                simple.append(truncate_text(item, limit=limit))
            if len(simple) >= 2:
                break
        return ", ".join(simple)
    return ""


def summarize_call(target: Optional[str], function: Optional[str], arguments: Any, *, limit: int = 60) -> str:
    base = f"{target or '?'}/{function or '?'}"
    summary = summarize_arguments(arguments, limit=limit)
    return f"{base}({summary})" if summary else base


__all__ = ["summarize_arguments", "summarize_call", "truncate_text"]
