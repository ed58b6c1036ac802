"""
Evaluation input/output schemas.

These are the JSON shapes exchanged with callers and stored in the cache.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .interfaces import utcnow


class Reason:
    """Machine-readable reason codes carried by every evaluation."""

    # Flags
    DEFAULT = "default"
    TARGETING_RULE = "targeting_rule"
    STICKY_ASSIGNMENT = "sticky_assignment"
    ROLLOUT_INCLUDED = "rollout_included"
    ROLLOUT_EXCLUDED = "rollout_excluded"
    VARIANT_ASSIGNMENT = "variant_assignment"
    FLAG_NOT_FOUND = "flag_not_found"
    FLAG_ARCHIVED = "flag_archived"
    FLAG_DISABLED = "flag_disabled"
    NO_CONFIG = "no_config"
    UNSUPPORTED_FLAG_TYPE = "unsupported_flag_type"

    # Experiments
    EXPERIMENT_NOT_FOUND = "experiment_not_found"
    EXPERIMENT_NOT_RUNNING = "experiment_not_running"
    EXPERIMENT_NOT_STARTED = "experiment_not_started"
    EXPERIMENT_ENDED = "experiment_ended"
    NO_VARIANTS = "no_variants"
    NO_USER_ID = "no_user_id"
    TRAFFIC_EXCLUDED = "traffic_excluded"
    NO_VARIANT_WEIGHTS = "no_variant_weights"
    NO_VARIANT_SELECTED = "no_variant_selected"

    # Shared
    ENVIRONMENT_NOT_FOUND = "environment_not_found"
    EVALUATION_ERROR = "evaluation_error"
    REPOSITORY_ERROR = "repository_error"


class EvaluationContext(BaseModel):
    """Who is asking, and where."""

    user_id: str | None = None
    environment: str = Field(..., min_length=1)
    user_attributes: dict[str, Any] = Field(default_factory=dict)
    custom: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v: Any) -> Any:
        # UUIDs and integer ids are bucketed by their string form
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @property
    def subject(self) -> str:
        """User id used in cache keys."""
        return self.user_id or "anonymous"


class FeatureEvaluation(BaseModel):
    """
    Result of evaluating a feature flag.

    `error` is set only on fail-closed defaults produced because
    something went wrong; such results are never cached.
    """

    key: str
    enabled: bool
    value: Any = None
    variant: str | None = None
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)
    error: str | None = None

    @classmethod
    def disabled(cls, key: str, reason: str, error: str | None = None) -> "FeatureEvaluation":
        return cls(key=key, enabled=False, value=False, reason=reason, error=error)


class ExperimentEvaluation(BaseModel):
    """Result of evaluating an experiment."""

    key: str
    variant_id: UUID | None = None
    variant: str | None = None
    payload: dict[str, Any] | None = None
    in_experiment: bool = False
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)
    error: str | None = None

    @classmethod
    def excluded(cls, key: str, reason: str, error: str | None = None) -> "ExperimentEvaluation":
        return cls(key=key, in_experiment=False, reason=reason, error=error)
