"""Composable query specifications.

A specification is built from explicit ``(field, comparator, value)`` triples and
can be rendered as a SQLAlchemy clause for a model or evaluated against an
in-memory object, so the same predicate drives database queries and slot checks.
"""

import operator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Tuple

from sqlalchemy import and_, not_, or_


class Comparator(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"


_BINARY_OPERATORS = {
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
    Comparator.LT: operator.lt,
    Comparator.LE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GE: operator.ge,
}


class Specification:
    def to_clause(self, model):
        raise NotImplementedError

    def is_satisfied_by(self, obj) -> bool:
        raise NotImplementedError

    def __and__(self, other: "Specification") -> "Specification":
        return AllOf(self, other)

    def __or__(self, other: "Specification") -> "Specification":
        return AnyOf(self, other)

    def __invert__(self) -> "Specification":
        return Not(self)


@dataclass(frozen=True)
class FieldPredicate(Specification):
    field: str
    comparator: Comparator
    value: Any = None

    def to_clause(self, model):
        column = getattr(model, self.field)
        if self.comparator == Comparator.IN:
            return column.in_(list(self.value))
        if self.comparator == Comparator.NOT_IN:
            return column.not_in(list(self.value))
        if self.comparator == Comparator.IS_NULL:
            return column.is_(None) if self.value in (None, True) else column.is_not(None)
        return _BINARY_OPERATORS[self.comparator](column, self.value)

    def is_satisfied_by(self, obj) -> bool:
        actual = getattr(obj, self.field)
        if self.comparator == Comparator.IN:
            return actual in self.value
        if self.comparator == Comparator.NOT_IN:
            return actual not in self.value
        if self.comparator == Comparator.IS_NULL:
            return (actual is None) == (self.value in (None, True))
        if actual is None:
            return False
        return bool(_BINARY_OPERATORS[self.comparator](actual, self.value))


class AllOf(Specification):
    def __init__(self, *specs: Specification):
        self.specs: Tuple[Specification, ...] = specs

    def to_clause(self, model):
        return and_(*(spec.to_clause(model) for spec in self.specs))

    def is_satisfied_by(self, obj) -> bool:
        return all(spec.is_satisfied_by(obj) for spec in self.specs)


class AnyOf(Specification):
    def __init__(self, *specs: Specification):
        self.specs: Tuple[Specification, ...] = specs

    def to_clause(self, model):
        return or_(*(spec.to_clause(model) for spec in self.specs))

    def is_satisfied_by(self, obj) -> bool:
        return any(spec.is_satisfied_by(obj) for spec in self.specs)


class Not(Specification):
    def __init__(self, spec: Specification):
        self.spec = spec

    def to_clause(self, model):
        return not_(self.spec.to_clause(model))

    def is_satisfied_by(self, obj) -> bool:
        return not self.spec.is_satisfied_by(obj)


def overlapping(start, end, start_field: str = "start_datetime", end_field: str = "end_datetime") -> Specification:
    """Records whose ``[start_field, end_field)`` overlaps ``[start, end)``."""
    return AnyOf(
        AllOf(
            FieldPredicate(start_field, Comparator.LE, start),
            FieldPredicate(end_field, Comparator.GT, start),
        ),
        AllOf(
            FieldPredicate(start_field, Comparator.LT, end),
            FieldPredicate(end_field, Comparator.GE, end),
        ),
        AllOf(
            FieldPredicate(start_field, Comparator.GE, start),
            FieldPredicate(end_field, Comparator.LE, end),
        ),
    )
