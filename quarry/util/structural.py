"""
Structural Sharing Helpers
==========================

When a fetch returns data that is structurally equal to what is already
cached, the cache keeps the *old* objects. Consumers can then detect "nothing
changed" with a cheap identity check, which is what the observers use to
decide whether a result changed at all.
"""

import dataclasses
from typing import Any, Callable, Union

_SCALARS = (str, int, float, bool, bytes, type(None))


def same_value(a: Any, b: Any) -> bool:
    """Identity comparison, with value equality for scalars of the same type."""
    if a is b:
        return True
    return type(a) is type(b) and isinstance(a, _SCALARS) and a == b


def replace_equal_deep(a: Any, b: Any) -> Any:
    """
    Return ``b``, reusing every part of ``a`` that is deeply equal to it.

    Lists, tuples, dicts and dataclass instances are compared recursively. If
    ``b`` is entirely equal to ``a``, ``a`` itself is returned.
    """
    if same_value(a, b):
        return a

    if isinstance(a, list) and isinstance(b, list):
        copy = [
            replace_equal_deep(a[i], item) if i < len(a) else item
            for i, item in enumerate(b)
        ]
        if len(a) == len(b) and all(x is y for x, y in zip(a, copy)):
            return a
        return copy

    if type(a) is tuple and type(b) is tuple:
        copy = tuple(
            replace_equal_deep(a[i], item) if i < len(a) else item
            for i, item in enumerate(b)
        )
        if len(a) == len(b) and all(x is y for x, y in zip(a, copy)):
            return a
        return copy

    if isinstance(a, dict) and isinstance(b, dict):
        copy = {
            key: replace_equal_deep(a[key], value) if key in a else value
            for key, value in b.items()
        }
        if a.keys() == copy.keys() and all(a[key] is copy[key] for key in copy):
            return a
        return copy

    if (
        dataclasses.is_dataclass(a)
        and not isinstance(a, type)
        and type(a) is type(b)
    ):
        changes = {}
        for field in dataclasses.fields(a):
            old = getattr(a, field.name)
            new = replace_equal_deep(old, getattr(b, field.name))
            if new is not old:
                changes[field.name] = new
        if not changes:
            return a
        return dataclasses.replace(a, **changes)

    return b


def shallow_equal_objects(a: Any, b: Any) -> bool:
    """Compare two dataclass instances field by field with ``same_value``."""
    if a is None or b is None:
        return a is b
    if type(a) is not type(b):
        return False
    for field in dataclasses.fields(a):
        if not field.compare:
            continue
        if not same_value(getattr(a, field.name), getattr(b, field.name)):
            return False
    return True


def functional_update(updater: Union[Callable[[Any], Any], Any], value: Any) -> Any:
    """Apply ``updater`` to ``value`` if it is callable, else return it as is."""
    return updater(value) if callable(updater) else updater


def replace_data(prev_data: Any, data: Any, options: Any) -> Any:
    """Merge freshly fetched ``data`` into ``prev_data`` per ``structural_sharing``."""
    structural_sharing = getattr(options, "structural_sharing", None)
    if callable(structural_sharing):
        return structural_sharing(prev_data, data)
    if structural_sharing is not False:
        return replace_equal_deep(prev_data, data)
    return data
