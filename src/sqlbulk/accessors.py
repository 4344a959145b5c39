"""
Cached field accessors for row objects.

Rows may be mappings, dataclasses, named tuples, slotted classes or plain
objects. Accessor tables are built once per (row type, fields) pair and
reused for every row of that type, so materialization never inspects a
row's class per value.
"""

import dataclasses
import functools
import inspect
import logging
import operator
import typing
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)

Getter = Callable[[Any], Any]
Setter = Callable[[Any, Any], None]


@dataclass(frozen=True)
class FieldAccessor:
    """Read accessor for a field plus an optional write accessor."""

    source: str
    getter: Getter
    setter: Setter | None

    @property
    def writable(self) -> bool:
        return self.setter is not None


def _mapping_getter(source: str) -> Getter:
    keys = source.split(".")
    if len(keys) == 1:
        return operator.itemgetter(source)

    def get_nested(row):
        value = row
        for key in keys:
            if value is None:
                return None
            value = value[key]
        return value

    return get_nested


def _object_getter(source: str) -> Getter:
    if "." not in source:
        return operator.attrgetter(source)

    names = source.split(".")

    def get_nested(row):
        value = row
        for name in names:
            if value is None:
                return None
            value = getattr(value, name)
        return value

    return get_nested


def _slot_names(row_type: type) -> set[str] | None:
    """Slot names when every class in the MRO is slotted, else None."""
    names: set[str] = set()
    for klass in row_type.__mro__:
        if klass is object:
            continue
        if "__slots__" not in vars(klass):
            return None
        slots = vars(klass)["__slots__"]
        names.update([slots] if isinstance(slots, str) else slots)
    return names


def _resolve_setter(row_type: type, source: str) -> Setter | None:
    if "." in source:
        return None

    if issubclass(row_type, tuple):
        return None
    if dataclasses.is_dataclass(row_type) and row_type.__dataclass_params__.frozen:
        return None

    attr = inspect.getattr_static(row_type, source, None)
    if isinstance(attr, property):
        if attr.fset is None:
            return None
        return functools.partial(_set_attribute, source)

    slots = _slot_names(row_type)
    if slots is not None and source not in slots:
        return None

    return functools.partial(_set_attribute, source)


def _set_attribute(name: str, row: Any, value: Any) -> None:
    setattr(row, name, value)


@functools.lru_cache(maxsize=256)
def accessor_table(row_type: type, sources: tuple[str, ...]) -> Mapping[str, FieldAccessor]:
    """
    Build the accessor table for a row type.

    Args:
        row_type: Class of the rows being materialized
        sources: Field names (dotted paths reach into nested objects)

    Returns:
        Read-only mapping of source field to FieldAccessor
    """
    is_mapping = issubclass(row_type, Mapping)
    table = {}
    for source in sources:
        if source in table:
            continue
        if is_mapping:
            getter = _mapping_getter(source)
            writable = issubclass(row_type, MutableMapping) and "." not in source
            setter = functools.partial(_set_item, source) if writable else None
        else:
            getter = _object_getter(source)
            setter = _resolve_setter(row_type, source)
        table[source] = FieldAccessor(source=source, getter=getter, setter=setter)

    logger.debug(f"Built accessor table for {row_type.__name__}: {', '.join(sources)}")
    return MappingProxyType(table)


def _set_item(key: str, row: Any, value: Any) -> None:
    row[key] = value


def discover_fields(row: Any) -> list[str]:
    """List the fields of a row for all-columns mode."""
    if dataclasses.is_dataclass(row) and not isinstance(row, type):
        return [field.name for field in dataclasses.fields(row)]
    if isinstance(row, tuple) and hasattr(row, "_fields"):
        return list(row._fields)
    if isinstance(row, Mapping):
        return [str(key) for key in row.keys()]

    slots = _slot_names(type(row))
    if slots is not None:
        return sorted(name for name in slots if not name.startswith("_"))

    return [name for name in vars(row) if not name.startswith("_")]


@functools.lru_cache(maxsize=256)
def field_type_hints(row_type: type) -> Mapping[str, Any]:
    """Resolved type hints for annotated row types; empty when unavailable."""
    if issubclass(row_type, Mapping):
        return MappingProxyType({})
    try:
        hints = typing.get_type_hints(row_type)
    except (NameError, TypeError) as e:
        logger.debug(f"Type hints unavailable for {row_type.__name__}: {e}")
        return MappingProxyType({})
    return MappingProxyType(hints)
