"""
Segment matching.

A segment is a list of {attribute, operator, value} conditions, all of
which must hold for a context to be a member.
"""

import re
from typing import Any, Callable

import structlog
from packaging.version import InvalidVersion, Version

from .exceptions import SegmentEvaluationError
from .interfaces import UserSegment
from .schemas import EvaluationContext

_MISSING = object()


# =============================================================================
# Comparison helpers
# =============================================================================

def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _to_version(value: Any) -> Version | None:
    text = _to_str(value).strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version(text)
    except InvalidVersion:
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        a, b = _to_float(actual), _to_float(expected)
        if a is None or b is None:
            return False
        return compare(a, b)
    return op


def _versioned(compare: Callable[[Version, Version], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        a, b = _to_version(actual), _to_version(expected)
        if a is None or b is None:
            return False
        return compare(a, b)
    return op


def _is_in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return any(actual == item for item in expected)


def _contains(actual: Any, expected: Any) -> bool:
    a, b = _to_str(actual), _to_str(expected)
    if not a or not b:
        return False
    return b in a


def _starts_with(actual: Any, expected: Any) -> bool:
    a, b = _to_str(actual), _to_str(expected)
    if not a or not b:
        return False
    return a.startswith(b)


def _ends_with(actual: Any, expected: Any) -> bool:
    a, b = _to_str(actual), _to_str(expected)
    if not a or not b:
        return False
    return a.endswith(b)


def _regex(actual: Any, expected: Any) -> bool:
    try:
        pattern = re.compile(_to_str(expected))
    except re.error as e:
        raise SegmentEvaluationError(f"Invalid regex {expected!r}: {e}") from e
    return pattern.search(_to_str(actual)) is not None


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, b: a == b,
    "eq": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "ne": lambda a, b: a != b,
    "in": _is_in,
    "not_in": lambda a, b: not _is_in(a, b),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "regex": _regex,
    "exists": lambda a, b: True,
    "not_exists": lambda a, b: False,
    "greater_than": _numeric(lambda a, b: a > b),
    "gt": _numeric(lambda a, b: a > b),
    "greater_than_or_equal": _numeric(lambda a, b: a >= b),
    "gte": _numeric(lambda a, b: a >= b),
    "less_than": _numeric(lambda a, b: a < b),
    "lt": _numeric(lambda a, b: a < b),
    "less_than_or_equal": _numeric(lambda a, b: a <= b),
    "lte": _numeric(lambda a, b: a <= b),
    "version_greater_than": _versioned(lambda a, b: a > b),
    "version_greater_than_or_equal": _versioned(lambda a, b: a >= b),
    "version_less_than": _versioned(lambda a, b: a < b),
    "version_less_than_or_equal": _versioned(lambda a, b: a <= b),
    "version_equals": _versioned(lambda a, b: a == b),
}


# =============================================================================
# Evaluator
# =============================================================================

class SegmentEvaluator:
    """
    Matches an evaluation context against user segments.

    Attributes are resolved in order: built-ins (`user_id`, `environment`),
    then `user_attributes`, then `custom`. A condition on an attribute that
    cannot be resolved fails, except for `exists`/`not_exists`.

    Example:
        segment = UserSegment(
            key="pro_na",
            conditions=[
                {"attribute": "plan", "operator": "equals", "value": "pro"},
                {"attribute": "region", "operator": "in", "value": ["US", "CA"]},
            ],
        )
        SegmentEvaluator().evaluate_segment(segment, context)
    """

    def __init__(self, logger: Any | None = None):
        self.logger = logger or structlog.get_logger(__name__)

    def evaluate_segment(self, segment: UserSegment, context: EvaluationContext) -> bool:
        """
        Return True when every condition matches.

        Raises SegmentEvaluationError for malformed conditions, unknown
        operators and invalid regular expressions.
        """
        for condition in segment.conditions:
            if not self._evaluate_condition(condition, context):
                return False
        return True

    def evaluate_user_in_segments(
        self,
        segments: list[UserSegment],
        context: EvaluationContext,
    ) -> list[str]:
        """Return keys of the segments the context belongs to, skipping broken ones."""
        matching = []
        for segment in segments:
            try:
                if self.evaluate_segment(segment, context):
                    matching.append(segment.key)
            except SegmentEvaluationError as e:
                self.logger.warning(
                    "segment_evaluation_failed",
                    segment_key=segment.key,
                    error=str(e),
                )
        return matching

    def _evaluate_condition(self, condition: Any, context: EvaluationContext) -> bool:
        if not isinstance(condition, dict):
            raise SegmentEvaluationError(f"Condition must be an object, got {type(condition).__name__}")

        attribute = condition.get("attribute")
        if not isinstance(attribute, str):
            raise SegmentEvaluationError("Condition missing attribute field")

        operator = condition.get("operator")
        if not isinstance(operator, str):
            raise SegmentEvaluationError("Condition missing operator field")

        compare = OPERATORS.get(operator)
        if compare is None:
            raise SegmentEvaluationError(f"Unsupported operator: {operator}")

        actual = self._resolve_attribute(attribute, context)
        if actual is _MISSING:
            return operator == "not_exists"

        return compare(actual, condition.get("value"))

    def _resolve_attribute(self, attribute: str, context: EvaluationContext) -> Any:
        if attribute == "user_id":
            return context.user_id if context.user_id is not None else _MISSING
        if attribute == "environment":
            return context.environment
        if attribute in context.user_attributes and context.user_attributes[attribute] is not None:
            return context.user_attributes[attribute]
        if attribute in context.custom and context.custom[attribute] is not None:
            return context.custom[attribute]
        return _MISSING
