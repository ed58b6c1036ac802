"""
Feature Flag Models - SQLAlchemy models for flags and experiments.

Tables:
- feature_flags: Flag definitions
- feature_environments: Deployment tiers
- feature_flag_configs: Per-environment flag configuration and targeting
- experiments / experiment_variants: A/B/n tests and their weighted arms
- user_segments: Reusable attribute conditions
- user_assignments: Sticky decisions, one per (user, environment, subject)
- feature_events: Append-only analytics
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from featurekit.models.base import Base, JSONType, StandardMixin, UUIDMixin, utcnow


class FeatureFlagModel(Base, StandardMixin):
    """Feature flag definition."""

    __tablename__ = "feature_flags"

    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # boolean, percentage, variant, experiment
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="boolean")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    def __repr__(self) -> str:
        status = "ON" if self.enabled else "OFF"
        return f"<FeatureFlag {self.key} [{status}]>"


class FeatureEnvironmentModel(Base, UUIDMixin):
    """Deployment tier (development, staging, production, ...)."""

    __tablename__ = "feature_environments"

    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class FeatureFlagConfigModel(Base, UUIDMixin):
    """
    Flag configuration for one environment.

    targeting_rules example:
        {"segments": ["beta_testers"], "user_ids": ["u-1"], "attributes": {"plan": "pro"}}

    variants example (variant flags only, order is significant):
        [{"key": "blue", "weight": 1}, {"key": "green", "weight": 3}]
    """

    __tablename__ = "feature_flag_configs"
    __table_args__ = (
        UniqueConstraint("feature_flag_id", "environment_id", name="uq_flag_config_environment"),
    )

    feature_flag_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("feature_flags.id", ondelete="CASCADE"),
        nullable=False,
    )
    environment_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("feature_environments.id", ondelete="CASCADE"),
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rollout_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    targeting_rules: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    variants: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class ExperimentModel(Base, StandardMixin):
    """A/B/n experiment."""

    __tablename__ = "experiments"

    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # draft, running, paused, completed, archived
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    traffic_allocation: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    feature_flag_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("feature_flags.id", ondelete="SET NULL"),
        nullable=True,
    )


class ExperimentVariantModel(Base, UUIDMixin):
    """
    Weighted arm of an experiment.

    `position` records declaration order, which drives cumulative
    weight selection and must not change while the experiment runs.
    """

    __tablename__ = "experiment_variants"
    __table_args__ = (
        UniqueConstraint("experiment_id", "key", name="uq_experiment_variant_key"),
    )

    experiment_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("experiments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    weight: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_control: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class UserSegmentModel(Base, StandardMixin):
    """Named list of AND-combined attribute conditions."""

    __tablename__ = "user_segments"

    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    conditions: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)


class UserAssignmentModel(Base, UUIDMixin):
    """
    Sticky assignment.

    The unique constraint makes concurrent creation race-safe: the loser
    gets an IntegrityError and the winner's record stands.
    """

    __tablename__ = "user_assignments"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "environment_id",
            "subject_key",
            name="uq_user_assignment_subject",
        ),
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    environment_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("feature_environments.id", ondelete="CASCADE"),
        nullable=False,
    )
    subject_key: Mapped[str] = mapped_column(String(100), nullable=False)
    feature_flag_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    experiment_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    variant_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    sticky: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


class FeatureEventModel(Base, UUIDMixin):
    """Analytics event. Written by the engine, read by reporting only."""

    __tablename__ = "feature_events"
    __table_args__ = (
        Index("idx_feature_events_type_time", "event_type", "timestamp"),
    )

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    feature_flag_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    experiment_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    variant_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    environment_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    properties: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
