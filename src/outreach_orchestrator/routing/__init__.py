"""Routing predicates and the rule engine."""

from outreach_orchestrator.routing.conditions import (
    Condition,
    Equals,
    Exists,
    OneOf,
    Range,
    conditions_match,
    parse_conditions,
)

__all__ = [
    "Condition",
    "Equals",
    "Exists",
    "OneOf",
    "Range",
    "conditions_match",
    "parse_conditions",
]
