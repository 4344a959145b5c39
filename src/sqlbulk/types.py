"""
Type mapping between Python values and SQL Server types.

Three static tables drive the mapping:

- ``PARAMETER_TYPES`` maps a Python type to the tag used for binding it as
  a statement parameter.
- ``DECLARED_TYPES`` maps a tag to the column type SQL Server declares for it.
- ``WIDENING`` lists the wider tags a column inferred from its values may
  move to, so ``[10, 10.5]`` and ``[10.5, 10]`` both stage as ``float``.

All are read-only and injected into a :class:`TypeMapper`, so tests and
callers can supply their own tables without touching module state.
"""

import array
import datetime
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType, NoneType, UnionType
from typing import Any, Union, get_args, get_origin

from .exceptions import TypeMappingError

BIGINT_MIN = -(2 ** 63)
BIGINT_MAX = 2 ** 63 - 1


@dataclass(frozen=True)
class Geometry:
    """Planar spatial value given as well-known text."""

    wkt: str
    srid: int = 0


@dataclass(frozen=True)
class Geography:
    """Geodetic spatial value given as well-known text."""

    wkt: str
    srid: int = 4326


@dataclass(frozen=True)
class Xml:
    """XML document or fragment."""

    value: str


@dataclass(frozen=True)
class HierarchyId:
    """Hierarchy path such as ``/1/3/``."""

    path: str


class SqlTypeTag(str, Enum):
    """Internal type tags assigned to staged columns."""

    BIT = "bit"
    BIGINT = "bigint"
    FLOAT = "float"
    DECIMAL = "decimal"
    NVARCHAR = "nvarchar"
    CHAR_ARRAY = "char_array"
    VARBINARY = "varbinary"
    UNIQUEIDENTIFIER = "uniqueidentifier"
    DATETIME2 = "datetime2"
    DATE = "date"
    TIME = "time"
    GEOMETRY = "geometry"
    GEOGRAPHY = "geography"
    XML = "xml"
    HIERARCHYID = "hierarchyid"


PARAMETER_TYPES: Mapping[type, SqlTypeTag] = MappingProxyType({
    bool: SqlTypeTag.BIT,
    int: SqlTypeTag.BIGINT,
    float: SqlTypeTag.FLOAT,
    Decimal: SqlTypeTag.DECIMAL,
    str: SqlTypeTag.NVARCHAR,
    array.array: SqlTypeTag.CHAR_ARRAY,
    bytes: SqlTypeTag.VARBINARY,
    bytearray: SqlTypeTag.VARBINARY,
    memoryview: SqlTypeTag.VARBINARY,
    uuid.UUID: SqlTypeTag.UNIQUEIDENTIFIER,
    datetime.datetime: SqlTypeTag.DATETIME2,
    datetime.date: SqlTypeTag.DATE,
    datetime.time: SqlTypeTag.TIME,
    Geometry: SqlTypeTag.GEOMETRY,
    Geography: SqlTypeTag.GEOGRAPHY,
    Xml: SqlTypeTag.XML,
    HierarchyId: SqlTypeTag.HIERARCHYID,
})

DECLARED_TYPES: Mapping[SqlTypeTag, str] = MappingProxyType({
    SqlTypeTag.BIT: "bit",
    SqlTypeTag.BIGINT: "bigint",
    SqlTypeTag.FLOAT: "float",
    SqlTypeTag.DECIMAL: "decimal(38, 10)",
    SqlTypeTag.NVARCHAR: "nvarchar(max)",
    SqlTypeTag.CHAR_ARRAY: "nvarchar(max)",
    SqlTypeTag.VARBINARY: "varbinary(max)",
    SqlTypeTag.UNIQUEIDENTIFIER: "uniqueidentifier",
    SqlTypeTag.DATETIME2: "datetime2(7)",
    SqlTypeTag.DATE: "date",
    SqlTypeTag.TIME: "time(7)",
    SqlTypeTag.GEOMETRY: "geometry",
    SqlTypeTag.GEOGRAPHY: "geography",
    SqlTypeTag.XML: "xml",
    SqlTypeTag.HIERARCHYID: "hierarchyid",
})

# Wider tags a column may move to when a later value needs them
WIDENING: Mapping[SqlTypeTag, tuple[SqlTypeTag, ...]] = MappingProxyType({
    SqlTypeTag.BIGINT: (SqlTypeTag.DECIMAL, SqlTypeTag.FLOAT),
    SqlTypeTag.DECIMAL: (SqlTypeTag.FLOAT,),
    SqlTypeTag.DATE: (SqlTypeTag.DATETIME2,),
})

_SUPPORTED_DESCRIPTION = (
    "Only numeric, str, bytes, bytearray, char array ('u'), uuid, date/time, "
    "Geometry, Geography, Xml and HierarchyId types can be used"
)


class TypeMapper:
    """
    Resolves Python types to type tags and renders parameter placeholders.

    Args:
        parameter_types: Python type to tag table
        declared_types: Tag to SQL Server declared type table
        widening: Tag to the wider tags an inferred column may move to
    """

    def __init__(
        self,
        parameter_types: Mapping[type, SqlTypeTag] = PARAMETER_TYPES,
        declared_types: Mapping[SqlTypeTag, str] = DECLARED_TYPES,
        widening: Mapping[SqlTypeTag, tuple[SqlTypeTag, ...]] = WIDENING,
    ):
        self.parameter_types = MappingProxyType(dict(parameter_types))
        self.declared_types = MappingProxyType(dict(declared_types))
        self.widening = MappingProxyType(dict(widening))

    def tag_for(self, python_type: type, column: str | None = None) -> SqlTypeTag:
        """
        Resolve the tag for a Python type.

        Exact matches win; otherwise the MRO is walked so subclasses such as
        ``IntEnum`` resolve through their base type.

        Raises:
            TypeMappingError: If no entry in the parameter table matches
        """
        tag = self.parameter_types.get(python_type)
        if tag is not None:
            return tag

        for base in getattr(python_type, "__mro__", ())[1:]:
            tag = self.parameter_types.get(base)
            if tag is not None:
                return tag

        raise TypeMappingError(
            f"Column {column!r} has unsupported type {python_type.__name__}. "
            f"{_SUPPORTED_DESCRIPTION}.",
            column=column,
            python_type=python_type,
        )

    def tag_for_annotation(self, hint: Any, column: str | None = None) -> SqlTypeTag:
        """Resolve the tag for a type hint, unwrapping ``Optional[X]``."""
        origin = get_origin(hint)
        if origin is Union or origin is UnionType:
            members = [arg for arg in get_args(hint) if arg is not NoneType]
            if len(members) != 1:
                raise TypeMappingError(
                    f"Column {column!r} has ambiguous union type {hint!r}",
                    column=column,
                )
            hint = members[0]
        if not isinstance(hint, type):
            raise TypeMappingError(
                f"Column {column!r} has unsupported type hint {hint!r}. "
                f"{_SUPPORTED_DESCRIPTION}.",
                column=column,
            )
        return self.tag_for(hint, column)

    def _mixed(self, tag: SqlTypeTag, actual: SqlTypeTag, value: Any, column: str | None) -> TypeMappingError:
        return TypeMappingError(
            f"Column {column!r} mixes {tag.value} and {actual.value} values",
            column=column,
            python_type=type(value),
        )

    def check_value(self, tag: SqlTypeTag, value: Any, column: str | None = None) -> SqlTypeTag:
        """
        Check a non-null value against the tag its column was assigned.

        Values of a narrower compatible tag (an ``int`` in a ``FLOAT``
        column, a ``date`` in a ``DATETIME2`` column) are accepted.

        Returns:
            The value's own tag

        Raises:
            TypeMappingError: If the value does not belong to the tag or is
                outside the range SQL Server can store
        """
        actual = self.tag_for(type(value), column)
        if actual is not tag and tag not in self.widening.get(actual, ()):
            raise self._mixed(tag, actual, value, column)

        if tag is SqlTypeTag.CHAR_ARRAY and value.typecode != "u":
            raise TypeMappingError(
                f"Column {column!r} holds array.array of typecode "
                f"{value.typecode!r}; only character arrays ('u') are supported",
                column=column,
                python_type=type(value),
            )

        if actual is SqlTypeTag.BIGINT and not isinstance(value, bool):
            if not BIGINT_MIN <= value <= BIGINT_MAX:
                raise TypeMappingError(
                    f"Column {column!r} value {value} does not fit in bigint",
                    column=column,
                    python_type=type(value),
                )
        return actual

    def widen(self, tag: SqlTypeTag, value: Any, column: str | None = None) -> SqlTypeTag:
        """
        Tag for a column inferred as ``tag`` that now also holds ``value``.

        Raises:
            TypeMappingError: If neither tag widens to the other
        """
        actual = self.tag_for(type(value), column)
        if actual in self.widening.get(tag, ()):
            return actual
        if actual is tag or tag in self.widening.get(actual, ()):
            return tag
        raise self._mixed(tag, actual, value, column)

    def coerce(self, tag: SqlTypeTag, value: Any) -> Any:
        """Convert a value of a narrower compatible tag to ``tag``'s Python type."""
        if value is None:
            return None
        if tag is SqlTypeTag.FLOAT and not isinstance(value, float):
            return float(value)
        if tag is SqlTypeTag.DECIMAL and not isinstance(value, Decimal):
            return Decimal(value)
        if tag is SqlTypeTag.DATETIME2 and not isinstance(value, datetime.datetime):
            return datetime.datetime.combine(value, datetime.time())
        return value

    def declared_type(self, tag: SqlTypeTag) -> str:
        return self.declared_types[tag]

    def placeholder(self, tag: SqlTypeTag | None) -> str:
        """Parameter placeholder expression for one value of ``tag``."""
        if tag in (SqlTypeTag.GEOMETRY, SqlTypeTag.GEOGRAPHY):
            return f"{self.declared_types[tag]}::STGeomFromText(?, ?)"
        if tag is SqlTypeTag.HIERARCHYID:
            return f"{self.declared_types[tag]}::Parse(?)"
        if tag is SqlTypeTag.XML:
            return f"CAST(? AS {self.declared_types[tag]})"
        return "?"

    def to_parameters(self, tag: SqlTypeTag | None, value: Any) -> tuple:
        """Convert one value to the parameters consumed by its placeholder."""
        if tag in (SqlTypeTag.GEOMETRY, SqlTypeTag.GEOGRAPHY):
            if value is None:
                return (None, None)
            return (value.wkt, value.srid)
        if value is None:
            return (None,)
        if tag is SqlTypeTag.HIERARCHYID:
            return (value.path,)
        if tag is SqlTypeTag.XML:
            return (value.value,)
        if tag is SqlTypeTag.CHAR_ARRAY:
            return (value.tounicode(),)
        if tag is SqlTypeTag.VARBINARY and not isinstance(value, bytes):
            return (bytes(value),)
        return (value,)


DEFAULT_TYPE_MAPPER = TypeMapper()
