"""Expansion and compression of Slurm hostlist expressions such as ``node[01-04,7]``."""

from __future__ import annotations

import itertools
import re

_BRACKET_RE = re.compile(r"(\[[^\]]*\])")
_NUMERIC_SUFFIX_RE = re.compile(r"(.*?)([0-9]+)\Z")


def _split_top_level(hostlist: str) -> list[str]:
    """Split on commas that are not inside brackets, validating bracket balance."""
    items: list[str] = []
    current: list[str] = []
    depth = 0
    for char in hostlist:
        if char == "[":
            if depth:
                raise ValueError(f"nested brackets in hostlist {hostlist!r}")
            depth = 1
        elif char == "]":
            if not depth:
                raise ValueError(f"unbalanced ']' in hostlist {hostlist!r}")
            depth = 0
        elif char == "," and not depth:
            items.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth:
        raise ValueError(f"unbalanced '[' in hostlist {hostlist!r}")
    items.append("".join(current))
    return [item.strip() for item in items if item.strip()]


def _expand_ranges(content: str) -> list[str]:
    """Expand the body of one bracket group, e.g. ``01-03,7``."""
    if not content.strip():
        raise ValueError("empty range in hostlist")
    values: list[str] = []
    for spec in content.split(","):
        spec = spec.strip()
        if "-" in spec:
            low, high = spec.split("-", 1)
            if not (low.isdigit() and high.isdigit()):
                raise ValueError(f"invalid range {spec!r} in hostlist")
            start, stop = int(low), int(high)
            if start > stop:
                raise ValueError(f"descending range {spec!r} in hostlist")
            width = len(low)
            values.extend(str(number).zfill(width) for number in range(start, stop + 1))
        elif spec.isdigit():
            values.append(spec)
        else:
            raise ValueError(f"invalid range element {spec!r} in hostlist")
    return values


def _expand_item(item: str) -> list[str]:
    pieces: list[list[str]] = []
    for part in _BRACKET_RE.split(item):
        if not part:
            continue
        if part.startswith("["):
            pieces.append(_expand_ranges(part[1:-1]))
        else:
            pieces.append([part])
    return ["".join(combination) for combination in itertools.product(*pieces)]


def expand(hostlist: str) -> list[str]:
    """Return every host name described by a hostlist expression, in order."""
    names: list[str] = []
    for item in _split_top_level(hostlist):
        names.extend(_expand_item(item))
    return names


def _format_ranges(numbers: list[int], width: int) -> str:
    parts: list[str] = []
    for _, run in itertools.groupby(enumerate(numbers), key=lambda pair: pair[1] - pair[0]):
        block = [number for _, number in run]
        first, last = str(block[0]).zfill(width), str(block[-1]).zfill(width)
        parts.append(first if block[0] == block[-1] else f"{first}-{last}")
    return ",".join(parts)


def compress(names) -> str:
    """Return a compact hostlist expression naming the given hosts."""
    groups: dict[tuple, set[int]] = {}
    for name in names:
        if any(char in name for char in "[],"):
            raise ValueError(f"invalid host name {name!r}")
        if not name:
            continue
        match = _NUMERIC_SUFFIX_RE.match(name)
        if match is None:
            groups.setdefault(("plain", name), set())
            continue
        prefix, digits = match.group(1), match.group(2)
        width = len(digits) if len(digits) > 1 and digits.startswith("0") else 0
        groups.setdefault(("numbered", prefix, width), set()).add(int(digits))

    parts: list[str] = []
    for key, numbers in groups.items():
        if key[0] == "plain":
            parts.append(key[1])
            continue
        _, prefix, width = key
        ordered = sorted(numbers)
        if len(ordered) == 1:
            parts.append(f"{prefix}{str(ordered[0]).zfill(width)}")
        else:
            parts.append(f"{prefix}[{_format_ranges(ordered, width)}]")
    return ",".join(parts)