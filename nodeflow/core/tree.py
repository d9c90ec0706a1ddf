"""Total walks over JSON-like config trees.

Node configs are arbitrary nested dict/list/str/number/bool/None values. These
helpers never mutate their input and never raise on unexpected leaf types:
anything that is not a dict, list/tuple or str is treated as an opaque leaf.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator

JsonValue = Any


def map_strings(value: JsonValue, fn: Callable[[str], Any]) -> JsonValue:
    """Return a copy of ``value`` with every string leaf replaced by ``fn(leaf)``.

    Dict keys are left untouched. Tuples come back as lists.
    """
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, dict):
        return {key: map_strings(item, fn) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_strings(item, fn) for item in value]
    return value


def iter_strings(value: JsonValue, context: str = "") -> Iterator[tuple[str, str]]:
    """Yield ``(context, string_leaf)`` pairs.

    ``context`` is the top-level key under which the leaf was found; nested
    keys do not override it. A bare string at the root yields ``context`` as
    passed in.
    """
    if isinstance(value, str):
        yield context, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_strings(item, context or str(key))
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_strings(item, context)
