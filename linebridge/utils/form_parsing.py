"""
Bracket-nested form decoding.

The CRM posts events PHP-style:
    event=ONIMCONNECTORMESSAGEADD&data[MESSAGES][0][message][text]=hi&auth[domain]=x.bitrix24.com
which decodes to
    {"event": "...", "data": {"MESSAGES": [{"message": {"text": "hi"}}]}, "auth": {"domain": "..."}}

A numeric next segment creates a list; later values for the same path win.
Indexed segments are collected sparsely and ordered by index at the end, so
the cost of a body never depends on the size of the indexes it names.
"""
import re
from typing import Any
from urllib.parse import parse_qsl

_SEGMENT_RE = re.compile(r"[^\[\]]+")
_NUMERIC_RE = re.compile(r"^\d+$")


class _IndexedItems(dict):
    """Sparse stand-in for a list while the form is being decoded."""


def _child(container: Any, key: str, next_key: str) -> Any:
    """Return the child container at key, creating a list or dict as needed."""
    wants_list = bool(_NUMERIC_RE.match(next_key))
    if isinstance(container, _IndexedItems):
        key = int(key)

    existing = container.get(key)
    if not isinstance(existing, dict):
        existing = _IndexedItems() if wants_list else {}
        container[key] = existing
    return existing


def _assign(container: Any, key: str, value: Any) -> None:
    if isinstance(container, _IndexedItems):
        if _NUMERIC_RE.match(key):
            container[int(key)] = value
        # Non-numeric key under a list segment: no sane place for it
        return
    container[key] = value


def _finalize(container: Any) -> Any:
    """Turn indexed containers into plain lists ordered by index."""
    if isinstance(container, _IndexedItems):
        return [_finalize(container[index]) for index in sorted(container)]
    if isinstance(container, dict):
        return {k: _finalize(v) for k, v in container.items()}
    return container


def parse_bracket_form(body: str) -> dict[str, Any]:
    """Decode a urlencoded body with bracket-nested keys into a nested map."""
    result: dict[str, Any] = {}
    for raw_key, value in parse_qsl(body, keep_blank_values=True):
        segments = _SEGMENT_RE.findall(raw_key)
        if not segments:
            continue

        current: Any = result
        for i, segment in enumerate(segments[:-1]):
            if isinstance(current, _IndexedItems) and not _NUMERIC_RE.match(segment):
                break
            current = _child(current, segment, segments[i + 1])
        else:
            _assign(current, segments[-1], value)

    return _finalize(result)
