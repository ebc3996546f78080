"""Extraction and parsing of structured calls from free-form model output.

Extraction grammar, in order of precedence:

1. Fenced code blocks tagged ``json``, ``call`` or untagged whose body starts
   with ``{``. A fenced block is an explicit call, so a body that fails to
   parse is reported as malformed rather than ignored.
2. Otherwise, the first balanced ``{...}`` span in the text that decodes to a
   JSON object naming a ``target`` (or ``function``/``name``). Spans that look
   like a call (mention ``target``) but do not decode are malformed.

The payload itself is a JSON object ``{"target", "function", "arguments"}``.
A ``function`` of the form ``capability:<flag>`` addresses a driver capability;
a bare flag name (``status``, ``cache``, ``healthcheck``, ``stream``) does so
only when the target driver declares that flag.
"""
from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from errors import MalformedCallError, NoCallFound

from .schemas import FunctionCallInput, format_validation_error

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)
_CALL_FENCE_TAGS = {"", "json", "call", "tool", "tool_call", "jsonc"}
_CALL_KEYS = ("target", "function", "name")


@dataclass(frozen=True)
class FunctionCall:
    """Parsed representation of one model-emitted call."""

    target: str
    function: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    args: Tuple[Any, ...] = ()
    call_id: str = ""
    raw: str = ""

    @property
    def reference(self) -> str:
        return f"{self.target}/{self.function}"


def extract_call_payloads(text: str) -> List[str]:
    """Return every call payload candidate in *text*, in order of appearance."""
    if not text:
        return []

    fenced: List[str] = []
    for match in _FENCE_RE.finditer(text):
        tag = match.group(1).strip().lower()
        body = match.group(2).strip()
        if tag in _CALL_FENCE_TAGS and body.startswith("{"):
            fenced.append(body)
    if fenced:
        return fenced

    candidates: List[str] = []
    index = 0
    while True:
        start = text.find("{", index)
        if start < 0:
            break
        end = _balanced_end(text, start)
        if end is None:
            index = start + 1
            continue
        span = text[start:end]
        if _looks_like_call(span):
            candidates.append(span)
            index = end
        else:
            index = start + 1
    return candidates


def extract_call_payload(text: str) -> str:
    """Return the first call payload in *text* or raise ``NoCallFound``."""
    payloads = extract_call_payloads(text)
    if not payloads:
        raise NoCallFound(text)
    return payloads[0]


def parse_function_call(payload: str, *, raw: Optional[str] = None) -> FunctionCall:
    """Parse a JSON call payload into a ``FunctionCall``."""
    source = raw if raw is not None else payload
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise MalformedCallError(f"call payload is not valid JSON: {exc.msg}", raw_input=source) from exc
    if not isinstance(data, dict):
        raise MalformedCallError("call payload must be a JSON object", raw_input=source)

    try:
        parsed = FunctionCallInput(**data)
    except ValidationError as exc:
        raise MalformedCallError(
            f"invalid call payload: {format_validation_error(exc)}",
            raw_input=source,
        ) from exc
    except TypeError as exc:
        raise MalformedCallError(f"invalid call payload: {exc}", raw_input=source) from exc

    if isinstance(parsed.arguments, dict):
        arguments: Dict[str, Any] = dict(parsed.arguments)
        args: Tuple[Any, ...] = ()
    else:
        arguments = {}
        args = tuple(parsed.arguments)

    return FunctionCall(
        target=parsed.target,
        function=parsed.function,
        arguments=arguments,
        args=args,
        call_id=parsed.id or f"call-{uuid.uuid4().hex[:12]}",
        raw=source,
    )


def parse_model_output(text: str) -> FunctionCall:
    """Extract and parse the first call in *text*."""
    return parse_function_call(extract_call_payload(text), raw=text)


def _looks_like_call(span: str) -> bool:
    try:
        data = json.loads(span)
    except json.JSONDecodeError:
        return "target" in span
    return isinstance(data, dict) and any(key in data for key in _CALL_KEYS)


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Return the index just past the brace closing the one at *start*."""
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        char = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return pos + 1
    return None


__all__ = [
    "FunctionCall",
    "extract_call_payload",
    "extract_call_payloads",
    "parse_function_call",
    "parse_model_output",
]
