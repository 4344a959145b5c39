"""
Predicate expressions for conditional update and delete.

Predicates are written against row field names with :func:`col`::

    col("warehouse_id") == 1
    (col("price") > 10) & col("description").is_null()

and compiled into parameterized SQL fragments that reference the
destination row alias. Every literal is bound as a ``?`` parameter; shapes
that cannot be compiled raise ConfigurationError when the operation is
built, before any I/O.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import ConfigurationError, TypeMappingError
from .types import DEFAULT_TYPE_MAPPER, SqlTypeTag, TypeMapper
from .utils.sql_safety import quote_identifier

_COMPARISON_OPERATORS = {
    "==": "=",
    "!=": "<>",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}

# Tags whose values cannot be bound with a plain placeholder
_NON_COMPARABLE_TAGS = {
    SqlTypeTag.GEOMETRY,
    SqlTypeTag.GEOGRAPHY,
    SqlTypeTag.XML,
    SqlTypeTag.HIERARCHYID,
}


class PredicateTag(str, Enum):
    """Which reconciliation branch a predicate gates."""

    UPDATE_WHEN = "update_when"
    DELETE_WHEN = "delete_when"


@dataclass(frozen=True)
class PredicateFragment:
    """Compiled SQL condition with its bound parameters."""

    sql: str
    params: tuple
    tag: PredicateTag


class Expression:
    """Base class for predicate expression nodes."""

    def __and__(self, other: "Expression") -> "Expression":
        return BooleanExpression("AND", (self, _require_expression(other)))

    def __or__(self, other: "Expression") -> "Expression":
        return BooleanExpression("OR", (self, _require_expression(other)))

    def __invert__(self) -> "Expression":
        return Not(self)

    def __bool__(self) -> bool:
        raise ConfigurationError(
            "Predicate expressions cannot be evaluated as booleans; "
            "combine them with '&', '|' and '~' instead of 'and', 'or' and 'not'"
        )


def _require_expression(value: Any) -> Expression:
    if not isinstance(value, Expression) or isinstance(value, ColumnRef):
        raise ConfigurationError(
            f"Unsupported predicate operand {value!r}; expected a comparison"
        )
    return value


class ColumnRef:
    """Reference to a row field inside a predicate."""

    __hash__ = None

    def __init__(self, field: str):
        if not isinstance(field, str) or not field:
            raise ConfigurationError(f"Invalid predicate field {field!r}")
        self.field = field

    def __repr__(self) -> str:
        return f"col({self.field!r})"

    def _compare(self, op: str, value: Any) -> "Comparison":
        return Comparison(self, op, value)

    def __eq__(self, value):  # type: ignore[override]
        return self._compare("==", value)

    def __ne__(self, value):  # type: ignore[override]
        return self._compare("!=", value)

    def __lt__(self, value):
        return self._compare("<", value)

    def __le__(self, value):
        return self._compare("<=", value)

    def __gt__(self, value):
        return self._compare(">", value)

    def __ge__(self, value):
        return self._compare(">=", value)

    def is_null(self) -> "NullCheck":
        return NullCheck(self, negated=False)

    def is_not_null(self) -> "NullCheck":
        return NullCheck(self, negated=True)

    def in_(self, values: Iterable[Any]) -> "InList":
        return InList(self, tuple(values))

    def between(self, low: Any, high: Any) -> "Expression":
        return (self >= low) & (self <= high)

    def __bool__(self) -> bool:
        raise ConfigurationError(
            f"{self!r} is not a predicate; compare it with a value first"
        )


def col(field: str) -> ColumnRef:
    """Reference a row field in a predicate."""
    return ColumnRef(field)


class Comparison(Expression):
    def __init__(self, column: ColumnRef, op: str, value: Any):
        self.column = column
        self.op = op
        self.value = value

    def __repr__(self) -> str:
        return f"({self.column!r} {self.op} {self.value!r})"


class NullCheck(Expression):
    def __init__(self, column: ColumnRef, negated: bool):
        self.column = column
        self.negated = negated

    def __repr__(self) -> str:
        return f"{self.column!r}.{'is_not_null' if self.negated else 'is_null'}()"


class InList(Expression):
    def __init__(self, column: ColumnRef, values: tuple):
        self.column = column
        self.values = values

    def __repr__(self) -> str:
        return f"{self.column!r}.in_({list(self.values)!r})"


class BooleanExpression(Expression):
    def __init__(self, op: str, operands: Sequence[Expression]):
        self.op = op
        self.operands = tuple(operands)

    def __repr__(self) -> str:
        return f" {self.op} ".join(repr(operand) for operand in self.operands)


class Not(Expression):
    def __init__(self, operand: Expression):
        self.operand = operand

    def __repr__(self) -> str:
        return f"~{self.operand!r}"


class _Compiler:
    def __init__(self, alias: str, column_map: Mapping[str, str], type_mapper: TypeMapper):
        self.alias = alias
        self.column_map = column_map
        self.type_mapper = type_mapper
        self.params: list[Any] = []

    def column(self, ref: ColumnRef) -> str:
        name = self.column_map.get(ref.field, ref.field)
        try:
            return f"{self.alias}.{quote_identifier(name)}"
        except ValueError as e:
            raise ConfigurationError(f"Invalid predicate column {ref.field!r}: {e}") from e

    def bind(self, ref: ColumnRef, value: Any) -> str:
        try:
            tag = self.type_mapper.tag_for(type(value), ref.field)
        except TypeMappingError as e:
            raise ConfigurationError(
                f"Unsupported literal {value!r} compared with {ref!r}"
            ) from e
        if tag in _NON_COMPARABLE_TAGS:
            raise ConfigurationError(
                f"Values of type {type(value).__name__} cannot be compared in a predicate"
            )
        self.params.extend(self.type_mapper.to_parameters(tag, value))
        return "?"

    def compile(self, expr: Any) -> str:
        if isinstance(expr, Comparison):
            return self._comparison(expr)
        if isinstance(expr, NullCheck):
            keyword = "IS NOT NULL" if expr.negated else "IS NULL"
            return f"{self.column(expr.column)} {keyword}"
        if isinstance(expr, InList):
            if not expr.values:
                raise ConfigurationError(f"{expr!r} needs at least one value")
            if any(value is None for value in expr.values):
                raise ConfigurationError(
                    f"{expr!r} cannot contain None; use is_null() instead"
                )
            placeholders = ", ".join(self.bind(expr.column, value) for value in expr.values)
            return f"{self.column(expr.column)} IN ({placeholders})"
        if isinstance(expr, BooleanExpression):
            parts = [self.compile(operand) for operand in expr.operands]
            return "(" + f" {expr.op} ".join(parts) + ")"
        if isinstance(expr, Not):
            return f"NOT ({self.compile(expr.operand)})"

        raise ConfigurationError(
            f"Unsupported predicate {expr!r}; build predicates with col(...)"
        )

    def _comparison(self, expr: Comparison) -> str:
        if isinstance(expr.value, (ColumnRef, Expression)):
            raise ConfigurationError(
                f"Unsupported predicate {expr!r}; a field can only be compared "
                "with a literal value"
            )
        if expr.op not in _COMPARISON_OPERATORS:
            raise ConfigurationError(f"Unsupported operator {expr.op!r} in {expr!r}")

        column = self.column(expr.column)
        if expr.value is None:
            if expr.op == "==":
                return f"{column} IS NULL"
            if expr.op == "!=":
                return f"{column} IS NOT NULL"
            raise ConfigurationError(f"Cannot order-compare with None in {expr!r}")

        return f"{column} {_COMPARISON_OPERATORS[expr.op]} {self.bind(expr.column, expr.value)}"


def compile_predicate(
    expr: Any,
    tag: PredicateTag,
    alias: str = "[Target]",
    column_map: Mapping[str, str] | None = None,
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> PredicateFragment:
    """
    Compile a predicate expression into a parameterized SQL fragment.

    Args:
        expr: Expression built with :func:`col`
        tag: Branch the predicate gates
        alias: Row alias the fragment references
        column_map: Field name to destination column name
        type_mapper: Resolves and converts literal values

    Returns:
        PredicateFragment with ``?`` placeholders in text order

    Raises:
        ConfigurationError: If the expression shape is unsupported
    """
    compiler = _Compiler(alias, column_map or {}, type_mapper)
    sql = compiler.compile(expr)
    return PredicateFragment(sql=sql, params=tuple(compiler.params), tag=tag)


def combine(fragments: Sequence[PredicateFragment]) -> PredicateFragment | None:
    """AND fragments of one tag together; None when there are none."""
    if not fragments:
        return None

    tags = {fragment.tag for fragment in fragments}
    if len(tags) != 1:
        raise ConfigurationError("Cannot combine update-when and delete-when predicates")

    if len(fragments) == 1:
        return fragments[0]

    sql = " AND ".join(f"({fragment.sql})" for fragment in fragments)
    params = tuple(param for fragment in fragments for param in fragment.params)
    return PredicateFragment(sql=sql, params=params, tag=fragments[0].tag)
