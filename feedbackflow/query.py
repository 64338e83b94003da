"""Serializable query specification for ``find``/``filter``.

A ``Query`` is a conjunction of ``Condition`` triples (field, operator, value).
The in-process and document backends evaluate it against materialized
entities; the relational backend translates it into a SQL ``WHERE`` clause.
"""
import operator
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from pydantic import BaseModel, Field

from .errors import ValidationError


class Operator(str, Enum):
    """Comparison operators supported by every backend."""
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    CONTAINS = "contains"


def coerce_value(value: Any, target_type: type) -> Any:
    """Convert ISO strings to dates when the field holds dates."""
    if isinstance(value, (list, tuple, set)):
        return [coerce_value(item, target_type) for item in value]
    if isinstance(value, str) and target_type is datetime:
        return datetime.fromisoformat(value)
    if isinstance(value, str) and target_type is date:
        return date.fromisoformat(value)
    return value


def _contains(left: Any, right: Any) -> bool:
    if left is None:
        return False
    if isinstance(left, str):
        return str(right) in left
    return right in left


def _in(left: Any, right: Any) -> bool:
    return left in right


_EVALUATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: operator.eq,
    Operator.NE: operator.ne,
    Operator.LT: operator.lt,
    Operator.LE: operator.le,
    Operator.GT: operator.gt,
    Operator.GE: operator.ge,
    Operator.IN: _in,
    Operator.CONTAINS: _contains,
}


class Condition(BaseModel):
    """A single ``field <op> value`` test."""
    field: str
    op: Operator = Operator.EQ
    value: Any = None

    def check_operand(self) -> None:
        """Raise ``ValidationError`` if the value cannot be used with the operator."""
        if self.op == Operator.IN and not isinstance(self.value, (list, tuple, set)):
            raise ValidationError(
                f"Operator 'in' on '{self.field}' needs a list of values", fields=[self.field]
            )
        if self.op == Operator.CONTAINS and self.value is None:
            raise ValidationError(
                f"Operator 'contains' on '{self.field}' needs a value", fields=[self.field]
            )

    def evaluate(self, entity: BaseModel) -> bool:
        if self.field not in type(entity).model_fields:
            raise ValidationError(
                f"Unknown field '{self.field}' for {type(entity).__name__}",
                fields=[self.field],
            )
        self.check_operand()
        left = getattr(entity, self.field)
        right = self.value
        if isinstance(left, (date, datetime)):
            right = coerce_value(right, type(left))
        try:
            return _EVALUATORS[self.op](left, right)
        except TypeError:
            # Ordering against None or mismatched types never matches
            return False


class Query(BaseModel):
    """Conjunction of conditions. An empty query matches everything."""
    conditions: List[Condition] = Field(default_factory=list)

    @classmethod
    def where(cls, **equals: Any) -> "Query":
        """Build a query of equality conditions, e.g. ``Query.where(purchase=pid)``."""
        return cls(conditions=[Condition(field=k, value=v) for k, v in equals.items()])

    @classmethod
    def all(cls) -> "Query":
        return cls()

    def and_where(self, field: str, op: Operator, value: Any) -> "Query":
        """Return a new query with one more condition."""
        return Query(
            conditions=[*self.conditions, Condition(field=field, op=Operator(op), value=value)]
        )

    def matches(self, entity: BaseModel) -> bool:
        return all(condition.evaluate(entity) for condition in self.conditions)

    def validate_fields(self, model: type) -> None:
        """Raise ``ValidationError`` on unknown fields or unusable operands."""
        unknown = [c.field for c in self.conditions if c.field not in model.model_fields]
        if unknown:
            raise ValidationError(
                f"Unknown fields for {model.__name__}: {', '.join(unknown)}",
                fields=unknown,
            )
        for condition in self.conditions:
            condition.check_operand()
