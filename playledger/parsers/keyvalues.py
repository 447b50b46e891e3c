"""Tokenizer and parser for the platform's textual KeyValues documents (.vdf / .acf)."""
from __future__ import annotations

from typing import Any, Iterator

from playledger.errors import ParseError

_ESCAPES = {"\\": "\\", '"': '"', "n": "\n", "t": "\t"}
_BARE_STOP = set('{}"')


def _tokenize(text: str) -> Iterator[tuple[str, str, int]]:
    """Yield ``(kind, value, line)`` with kind in {"open", "close", "string"}."""
    i = 0
    n = len(text)
    line = 1
    while i < n:
        ch = text[i]
        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue
        if ch == "/" and text.startswith("//", i):
            newline = text.find("\n", i)
            i = n if newline < 0 else newline
            continue
        if ch == "{":
            yield "open", ch, line
            i += 1
            continue
        if ch == "}":
            yield "close", ch, line
            i += 1
            continue
        if ch == "[":
            # Platform conditionals such as [$WIN32] carry no data for us.
            close = text.find("]", i)
            if close < 0:
                raise ParseError("Unterminated conditional", line)
            i = close + 1
            continue
        if ch == '"':
            start_line = line
            i += 1
            chars: list[str] = []
            while True:
                if i >= n:
                    raise ParseError("Unterminated quoted string", start_line)
                c = text[i]
                if c == "\\" and i + 1 < n:
                    nxt = text[i + 1]
                    chars.append(_ESCAPES.get(nxt, "\\" + nxt))
                    i += 2
                    continue
                if c == '"':
                    i += 1
                    break
                if c == "\n":
                    line += 1
                chars.append(c)
                i += 1
            yield "string", "".join(chars), start_line
            continue

        start = i
        while i < n and not text[i].isspace() and text[i] not in _BARE_STOP:
            i += 1
        yield "string", text[start:i], line


def parse_keyvalues(text: str) -> dict[str, Any]:
    """Parse a KeyValues document into nested dicts of strings.

    Duplicate keys keep the last value. Structural problems raise ParseError.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    root: dict[str, Any] = {}
    stack: list[dict[str, Any]] = [root]
    pending_key: str | None = None
    key_line = 0
    line = 1
    for kind, value, line in _tokenize(text):
        if kind == "string":
            if pending_key is None:
                pending_key = value
                key_line = line
            else:
                stack[-1][pending_key] = value
                pending_key = None
        elif kind == "open":
            if pending_key is None:
                raise ParseError("Object has no key", line)
            child: dict[str, Any] = {}
            stack[-1][pending_key] = child
            stack.append(child)
            pending_key = None
        else:
            if pending_key is not None:
                raise ParseError(f"Key {pending_key!r} has no value", key_line)
            if len(stack) == 1:
                raise ParseError("Unbalanced closing brace", line)
            stack.pop()

    if pending_key is not None:
        raise ParseError(f"Key {pending_key!r} has no value", key_line)
    if len(stack) > 1:
        raise ParseError(f"{len(stack) - 1} object(s) left unclosed", line)
    return root


def find_key(mapping: Any, name: str) -> Any:
    """Case-insensitive dict lookup; None when absent or not a dict."""
    if not isinstance(mapping, dict):
        return None
    if name in mapping:
        return mapping[name]
    lowered = name.lower()
    for key, value in mapping.items():
        if key.lower() == lowered:
            return value
    return None
