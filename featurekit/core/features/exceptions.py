"""
Feature engine exceptions.

Repository lookups signal "not found" by returning None; exceptions are
reserved for faults.
"""


class FeatureError(Exception):
    """Base class for feature engine errors."""
    pass


class RepositoryError(FeatureError):
    """The backing store failed (connection lost, timeout, bad query)."""
    pass


class AssignmentExistsError(RepositoryError):
    """A sticky assignment already exists for this user and subject."""
    pass


class EvaluationError(FeatureError):
    """Flag, rule or segment data could not be evaluated."""
    pass


class SegmentEvaluationError(EvaluationError):
    """A segment condition is malformed or uses an unknown operator."""
    pass


class TargetingRuleError(EvaluationError):
    """A targeting rules document has the wrong shape."""
    pass
