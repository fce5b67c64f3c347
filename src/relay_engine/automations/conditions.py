"""Step guard conditions, evaluated fail-closed."""

import logging
from typing import Any, Mapping

import pydantic

from relay_engine.automations.schemas import ConditionConfigV1, ConditionRule

logger = logging.getLogger(__name__)

_MISSING = object()


class UnresolvableCondition(Exception):
    """A rule that cannot be decided against the given context."""


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; exact keys win over nested traversal."""
    if path in context:
        return context[path]
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


class ConditionEvaluator:
    """Evaluates versioned condition configs against trigger + step context.

    Anything that cannot be parsed or resolved evaluates to False so that a
    malformed guard never lets a side-effecting call through.
    """

    def parse(self, condition_config: Any) -> ConditionConfigV1:
        return ConditionConfigV1.model_validate(condition_config)

    def evaluate(self, condition_config: Any, context: Mapping[str, Any]) -> bool:
        try:
            config = self.parse(condition_config)
        except pydantic.ValidationError as e:
            logger.warning("Malformed condition config, skipping step: %s", e.errors()[:1])
            return False

        try:
            results = (self._evaluate_rule(rule, context) for rule in config.rules)
            if config.match == "any":
                return any(results)
            return all(results)
        except UnresolvableCondition as e:
            logger.info("Condition unresolvable, skipping step: %s", e)
            return False
        except Exception:
            logger.exception("Condition evaluation failed, skipping step")
            return False

    def _evaluate_rule(self, rule: ConditionRule, context: Mapping[str, Any]) -> bool:
        actual = lookup(context, rule.field)

        if rule.operator == "exists":
            return actual is not _MISSING and actual is not None
        if rule.operator == "not_exists":
            return actual is _MISSING or actual is None

        if actual is _MISSING:
            raise UnresolvableCondition(f"field {rule.field!r} is not present")

        expected = rule.value
        try:
            if rule.operator == "equals":
                return _loose_equals(actual, expected)
            if rule.operator == "not_equals":
                return not _loose_equals(actual, expected)
            if rule.operator == "contains":
                if isinstance(actual, str):
                    return str(expected) in actual
                if isinstance(actual, (list, tuple, set, dict)):
                    return expected in actual
                raise UnresolvableCondition(f"field {rule.field!r} is not a container")
            if rule.operator == "in":
                if not isinstance(expected, (list, tuple, str)):
                    raise UnresolvableCondition("'in' needs a list or string value")
                return actual in expected
            if rule.operator in ("gt", "gte", "lt", "lte"):
                return _compare(rule.operator, _as_number(actual), _as_number(expected))
        except TypeError as e:
            raise UnresolvableCondition(str(e)) from e

        raise UnresolvableCondition(f"unknown operator {rule.operator!r}")


def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    # Form submissions deliver strings; compare scalars by text as well.
    if isinstance(actual, (str, int, float, bool)) and isinstance(expected, (str, int, float, bool)):
        return _text(actual) == _text(expected)
    return False


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise UnresolvableCondition("booleans are not ordered")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as e:
            raise UnresolvableCondition(f"{value!r} is not a number") from e
    raise UnresolvableCondition(f"{value!r} is not a number")


def _compare(operator: str, left: float, right: float) -> bool:
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    return left <= right
