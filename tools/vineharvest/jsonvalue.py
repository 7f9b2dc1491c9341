"""Generic traversal over decoded JSON values.

A JSON value is one of ``None``, ``bool``, ``int``, ``float``, ``str``,
``list`` or ``dict``.  Archive records have no fixed schema, so both the
URL rewriter and the post-id scanner work through the two visitors here
instead of walking specific fields.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator, Union

JSONScalar = Union[None, bool, int, float, str]
JSONValue = Union[JSONScalar, list[Any], dict[str, Any]]


def transform(value: JSONValue, leaf: Callable[[JSONScalar], JSONScalar]) -> JSONValue:
    """Return a copy of *value* with *leaf* applied to every scalar.

    Containers are rebuilt with the same shape and key order; the input is
    never mutated.
    """
    if isinstance(value, dict):
        return {k: transform(v, leaf) for k, v in value.items()}
    if isinstance(value, list):
        return [transform(v, leaf) for v in value]
    return leaf(value)


def walk(value: JSONValue) -> Iterator[tuple[str | None, JSONValue]]:
    """Depth-first, pre-order iteration over every nested value.

    Yields ``(key, child)`` pairs.  ``key`` is the object key for object
    members and ``None`` for array items.  A member is yielded before its
    own children, and its children before the next sibling.
    """
    if isinstance(value, dict):
        for k, v in value.items():
            yield k, v
            yield from walk(v)
    elif isinstance(value, list):
        for v in value:
            yield None, v
            yield from walk(v)


def iter_strings(value: JSONValue) -> Iterator[str]:
    """Every string leaf in *value*, in depth-first order."""
    if isinstance(value, str):
        yield value
        return
    for _, child in walk(value):
        if isinstance(child, str):
            yield child
