"""Decoding of bracket-style query strings.

``filter[status]=open&filter[or][0][]=name&with=author`` becomes::

    {"filter": {"status": "open", "or": [["name"]]}, "with": "author"}

Mappings whose keys are all consecutive integers starting at zero become
lists; ``[]`` appends.
"""

import re
from urllib.parse import parse_qsl

import typing as t

_SEGMENT = re.compile(r"\[([^\[\]]*)\]")


def split_key(key: str) -> list[str]:
    """Split ``a[b][]`` into ``["a", "b", ""]``."""
    head, bracket, _ = key.partition("[")
    if not bracket:
        return [key]
    rest = key[len(head) :]
    segments = _SEGMENT.findall(rest)
    if "".join(f"[{s}]" for s in segments) != rest:
        return [key]
    return [head, *segments]


def _assign(target: dict[str, t.Any], path: list[str], value: str) -> None:
    node = target
    for position, segment in enumerate(path):
        last = position == len(path) - 1
        if segment == "":
            segment = str(sum(1 for k in node if k.isdigit()))
        if last:
            node[segment] = value
            return
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child


def _listify(value: t.Any) -> t.Any:
    if not isinstance(value, dict):
        return value
    converted = {key: _listify(item) for key, item in value.items()}
    keys = list(converted)
    if keys and all(k.isdigit() for k in keys):
        indexes = sorted(int(k) for k in keys)
        if indexes == list(range(len(indexes))):
            return [converted[str(i)] for i in indexes]
    return converted


def decode(query: str) -> dict[str, t.Any]:
    """Decode a query string into nested mappings and lists.

    Repeated flat keys keep the last value.
    """
    result: dict[str, t.Any] = {}
    for key, value in parse_qsl(query.lstrip("?"), keep_blank_values=True):
        path = split_key(key)
        if not path[0]:
            continue
        _assign(result, path, value)
    return {key: _listify(value) for key, value in result.items()}
