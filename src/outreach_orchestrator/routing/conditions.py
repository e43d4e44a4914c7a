"""Typed routing predicates.

Rule conditions are a conjunction of closed predicate variants. They are
parsed once when a rule is loaded; evaluation never re-interprets raw JSON.

Legacy condition maps are still accepted on input::

    {"department": "new", "intent_score": {"min": 70}, "source": {"in": ["web", "sms"]}}

and are converted by :func:`parse_conditions`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

if TYPE_CHECKING:
    from outreach_orchestrator.core.models import RoutingContext


Scalar = Union[str, int, float, bool]

# Older rule payloads used the source system's field names
FIELD_ALIASES: dict[str, str] = {
    "intent_score": "signal_score",
    "intentScore": "signal_score",
    "vehicle_of_interest": "category",
    "vehicleOfInterest": "category",
    "vehicle_type": "category",
    "lead_value": "lead_value",
    "leadValue": "lead_value",
    "store_id": "location_id",
    "storeId": "location_id",
}


def canonical_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


def _scalar_equal(a: Any, b: Any) -> bool:
    # True == 1 in Python; keep booleans and numbers apart
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    return a == b


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Predicate variants
# ---------------------------------------------------------------------------


class Equals(BaseModel):
    op: Literal["eq"] = "eq"
    field: str
    value: Scalar

    def matches(self, context: RoutingContext) -> bool:
        present, actual = context.lookup(self.field)
        return present and _scalar_equal(actual, self.value)


class Range(BaseModel):
    """Numeric range, inclusive; either bound may be omitted."""

    op: Literal["range"] = "range"
    field: str
    min: float | None = None
    max: float | None = None

    def matches(self, context: RoutingContext) -> bool:
        present, actual = context.lookup(self.field)
        number = _as_number(actual) if present else None
        if number is None:
            return False
        if self.min is not None and number < self.min:
            return False
        if self.max is not None and number > self.max:
            return False
        return True


class OneOf(BaseModel):
    op: Literal["in"] = "in"
    field: str
    values: list[Scalar]

    def matches(self, context: RoutingContext) -> bool:
        present, actual = context.lookup(self.field)
        if not present:
            return False
        return any(_scalar_equal(actual, v) for v in self.values)


class Exists(BaseModel):
    """Field presence (``present=True``) or absence, regardless of value."""

    op: Literal["exists"] = "exists"
    field: str
    present: bool = True

    def matches(self, context: RoutingContext) -> bool:
        present, _ = context.lookup(self.field)
        return present is self.present


Condition = Annotated[Union[Equals, Range, OneOf, Exists], Field(discriminator="op")]

_condition_list = TypeAdapter(list[Condition])


def _parse_legacy_entry(key: str, value: Any) -> Condition:
    field = canonical_field(key)
    if isinstance(value, dict):
        if "min" in value or "max" in value:
            return Range(field=field, min=value.get("min"), max=value.get("max"))
        if "in" in value:
            values = value["in"]
            if not isinstance(values, list):
                raise ValueError(f"Condition {key!r}: 'in' expects a list")
            return OneOf(field=field, values=values)
        if "exists" in value:
            return Exists(field=field, present=bool(value["exists"]))
        raise ValueError(f"Condition {key!r}: unsupported operator {sorted(value)}")
    if isinstance(value, list):
        return OneOf(field=field, values=value)
    if value is None:
        return Exists(field=field, present=False)
    return Equals(field=field, value=value)


def parse_conditions(raw: Any) -> list[Condition]:
    """Parse stored or operator-supplied conditions into predicate objects.

    Accepts ``None`` (catch-all), a list of tagged predicate dicts, or a
    legacy ``{field: value}`` map.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [_parse_legacy_entry(k, v) for k, v in sorted(raw.items())]
    if isinstance(raw, list):
        parsed = _condition_list.validate_python(raw)
        for cond in parsed:
            cond.field = canonical_field(cond.field)
        return parsed
    raise ValueError(f"Unsupported conditions payload: {type(raw).__name__}")


def conditions_match(conditions: list[Condition], context: RoutingContext) -> bool:
    """Conjunction of all predicates. An empty list is a catch-all."""
    return all(cond.matches(context) for cond in conditions)
