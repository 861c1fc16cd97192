"""Lenient JSON decoding for generative model output."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def decode_first_payload(raw: str) -> Any:
    """
    Return the first well-formed JSON object/array found in `raw`.

    Strict parsing is tried first; then the first balanced block is cut out
    of any surrounding commentary and repaired in small steps. Raises
    `json.JSONDecodeError` when nothing can be recovered.
    """
    if raw is None:
        raise json.JSONDecodeError("Empty model response", "", 0)

    text = raw.strip()
    last_error: Optional[json.JSONDecodeError] = None

    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        last_error = exc

    candidate = _extract_json_block(text)
    if candidate is None:
        raise last_error

    for repair in (_identity, _strip_trailing_commas, _quote_unquoted_keys, _insert_missing_commas):
        candidate = repair(candidate)
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc

    raise last_error


def _identity(raw: str) -> str:
    return raw


def _extract_json_block(raw: str) -> Optional[str]:
    """Locate the first balanced JSON object/array, honoring string escapes."""
    start_index: Optional[int] = None
    depth = 0
    in_string = False
    escape = False

    for index, char in enumerate(raw):
        if start_index is None:
            if char in "{[":
                start_index = index
                depth = 1
            continue

        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return raw[start_index : index + 1]

    return None


def _strip_trailing_commas(raw: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", raw)


def _quote_unquoted_keys(raw: str) -> str:
    """Wrap bare object keys in quotes (JS-style output)."""
    output = []
    in_string = False
    escape = False
    expecting_key = False
    index = 0

    while index < len(raw):
        char = raw[index]

        if in_string:
            output.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            index += 1
            continue

        if char == '"':
            in_string = True
            output.append(char)
            index += 1
            continue

        if char in "{,":
            expecting_key = True
        elif char in "}:":
            expecting_key = False

        if expecting_key and (char.isalpha() or char == "_"):
            start = index
            index += 1
            while index < len(raw) and (raw[index].isalnum() or raw[index] in "_-"):
                index += 1
            key = raw[start:index]
            lookahead = index
            while lookahead < len(raw) and raw[lookahead].isspace():
                lookahead += 1
            if lookahead < len(raw) and raw[lookahead] == ":":
                output.append(f'"{key}"')
                output.append(raw[index:lookahead])
                output.append(":")
                expecting_key = False
                index = lookahead + 1
                continue
            output.append(key)
            continue

        output.append(char)
        index += 1

    return "".join(output)


def _insert_missing_commas(raw: str) -> str:
    """Insert commas between values that run together inside containers."""
    output = []
    in_string = False
    escape = False
    value_ended = False
    stack = []
    index = 0

    while index < len(raw):
        char = raw[index]

        if in_string:
            output.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
                value_ended = True
            index += 1
            continue

        if char.isspace():
            output.append(char)
            index += 1
            continue

        if value_ended and stack and _is_value_start(char):
            output.append(",")
        value_ended = False

        if char == '"':
            in_string = True
            output.append(char)
        elif char in "{[":
            stack.append(char)
            output.append(char)
        elif char in "}]":
            if stack:
                stack.pop()
            output.append(char)
            value_ended = True
        elif char == ":":
            output.append(char)
        elif char == ",":
            output.append(char)
        elif _is_value_start(char):
            start = index
            while index + 1 < len(raw) and raw[index + 1] not in " \t\r\n,]}:":
                index += 1
            output.append(raw[start : index + 1])
            value_ended = True
        else:
            output.append(char)
        index += 1

    return "".join(output)


def _is_value_start(char: str) -> bool:
    if char in '"{[':
        return True
    if char.isdigit() or char == "-":
        return True
    return char in {"t", "f", "n"}
