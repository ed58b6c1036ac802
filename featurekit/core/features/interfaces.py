"""
Feature Flag Interfaces - Core abstractions.

These define the records the engine evaluates and the contracts for the
repository that stores them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TYPE_CHECKING
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .schemas import EvaluationContext, FeatureEvaluation, ExperimentEvaluation


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlagType(str, Enum):
    BOOLEAN = "boolean"
    PERCENTAGE = "percentage"
    VARIANT = "variant"
    EXPERIMENT = "experiment"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


@dataclass
class FeatureFlag:
    """
    Feature flag definition.

    Attributes:
        key: Unique, stable identifier (e.g., "dark_mode")
        type: Decision logic used when the flag is evaluated. Unknown
            stored types are kept as the raw string and never enable.
        enabled: Global on/off switch
        archived: Archived flags are permanently disabled
    """
    key: str
    name: str = ""
    type: FlagType | str = FlagType.BOOLEAN
    enabled: bool = True
    archived: bool = False
    description: str | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class FeatureEnvironment:
    """Named deployment tier (e.g., "production")."""
    name: str
    description: str | None = None
    sort_order: int = 0
    id: UUID = field(default_factory=uuid4)


@dataclass
class FlagVariant:
    """Weighted arm of a variant flag."""
    key: str
    weight: int = 1


@dataclass
class FeatureFlagConfig:
    """
    Per-environment configuration of a flag.

    targeting_rules example:
        {
            "segments": ["beta_testers"],
            "user_ids": ["user-1", "user-2"],
            "attributes": {"plan": "enterprise"},
        }

    variants is only used by variant flags; declaration order matters.
    """
    feature_flag_id: UUID
    environment_id: UUID
    enabled: bool = False
    rollout_percentage: int | None = None
    targeting_rules: dict[str, Any] = field(default_factory=dict)
    variants: list[FlagVariant] = field(default_factory=list)
    id: UUID = field(default_factory=uuid4)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Experiment:
    """A/B/n experiment definition."""
    key: str
    name: str = ""
    status: ExperimentStatus | str = ExperimentStatus.DRAFT
    traffic_allocation: int = 100
    start_date: datetime | None = None
    end_date: datetime | None = None
    feature_flag_id: UUID | None = None
    description: str | None = None
    id: UUID = field(default_factory=uuid4)


@dataclass
class ExperimentVariant:
    """
    Weighted arm of an experiment.

    Weights are relative and need not sum to 100. The order variants are
    declared in must never change once the experiment runs: reordering
    reassigns users whose sticky record has not been written yet.
    """
    experiment_id: UUID
    key: str
    weight: int = 0
    is_control: bool = False
    payload: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    id: UUID = field(default_factory=uuid4)


@dataclass
class UserSegment:
    """Named set of AND-combined {attribute, operator, value} conditions."""
    key: str
    conditions: list[dict[str, Any]] = field(default_factory=list)
    name: str = ""
    id: UUID = field(default_factory=uuid4)


@dataclass
class UserAssignment:
    """
    Sticky record pinning a user to a flag outcome or experiment variant.

    Unique per (user_id, environment_id, subject_key); subject_key is the
    flag or experiment key.
    """
    user_id: str
    environment_id: UUID
    subject_key: str
    feature_flag_id: UUID | None = None
    experiment_id: UUID | None = None
    variant_id: UUID | None = None
    enabled: bool | None = None
    sticky: bool = True
    context: dict[str, Any] = field(default_factory=dict)
    assigned_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)


@dataclass
class FeatureEvent:
    """Append-only analytics record of an evaluation (or a client event)."""
    event_type: str
    user_id: str | None = None
    feature_flag_id: UUID | None = None
    experiment_id: UUID | None = None
    variant_id: UUID | None = None
    environment_id: UUID | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)


class FeatureRepository(ABC):
    """
    Read-mostly storage port used by the evaluation engine.

    Lookups return None (or an empty list) when the record does not exist
    and raise RepositoryError when the store itself fails.

    Implementations:
    - MemoryFeatureRepository: In-memory (dev/testing)
    - DatabaseFeatureRepository: SQLAlchemy (PostgreSQL, SQLite)
    """

    @abstractmethod
    async def get_feature_flag(self, key: str) -> FeatureFlag | None:
        """Get a feature flag by key."""
        pass

    @abstractmethod
    async def get_feature_flags(self, archived: bool = False) -> list[FeatureFlag]:
        """List flags with the given archived state."""
        pass

    @abstractmethod
    async def get_environment(self, name: str) -> FeatureEnvironment | None:
        """Get an environment by name."""
        pass

    @abstractmethod
    async def get_feature_flag_config(
        self,
        flag_id: UUID,
        environment_id: UUID,
    ) -> FeatureFlagConfig | None:
        """Get the configuration of a flag in an environment."""
        pass

    @abstractmethod
    async def get_experiment(self, key: str) -> Experiment | None:
        """Get an experiment by key."""
        pass

    @abstractmethod
    async def get_experiment_variants(self, experiment_id: UUID) -> list[ExperimentVariant]:
        """Get an experiment's variants in declaration order."""
        pass

    @abstractmethod
    async def get_user_segment(self, key: str) -> UserSegment | None:
        """Get a user segment by key."""
        pass

    @abstractmethod
    async def get_user_assignment(
        self,
        user_id: str,
        environment_id: UUID,
        subject_key: str,
    ) -> UserAssignment | None:
        """Get the sticky assignment of a user for a flag or experiment."""
        pass

    @abstractmethod
    async def create_user_assignment(self, assignment: UserAssignment) -> UserAssignment:
        """
        Persist a sticky assignment.

        Raises AssignmentExistsError if one already exists for the same
        (user_id, environment_id, subject_key).
        """
        pass

    @abstractmethod
    async def create_feature_event(self, event: FeatureEvent) -> None:
        """Append an analytics event."""
        pass


class FeatureManagerBase(ABC):
    """
    Abstract feature manager.

    This is the main entry point for flag and experiment checks.
    """

    @abstractmethod
    async def evaluate_flag(
        self,
        key: str,
        context: "EvaluationContext",
    ) -> "FeatureEvaluation":
        """Evaluate a feature flag. Never raises; fails closed."""
        pass

    @abstractmethod
    async def evaluate_experiment(
        self,
        key: str,
        context: "EvaluationContext",
    ) -> "ExperimentEvaluation":
        """Evaluate an experiment. Never raises; fails closed."""
        pass

    @abstractmethod
    async def evaluate_flags(
        self,
        keys: list[str],
        context: "EvaluationContext",
    ) -> dict[str, "FeatureEvaluation"]:
        """Evaluate several flags; the result has an entry for every key."""
        pass

    @abstractmethod
    async def get_all_flags(self, context: "EvaluationContext") -> dict[str, "FeatureEvaluation"]:
        """
        Evaluate every non-archived flag.

        Useful for bootstrapping a client SDK.
        """
        pass

    @abstractmethod
    async def track_event(self, event: FeatureEvent) -> None:
        """Record an analytics event."""
        pass

    @abstractmethod
    async def invalidate_cache(self, *keys: str) -> int:
        """Drop cached results whose cache key contains any of the keys."""
        pass
