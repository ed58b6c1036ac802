"""
Database repository for feature flags and experiments.

Uses SQLAlchemy async sessions (PostgreSQL in production, SQLite for tests).
"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import AssignmentExistsError, RepositoryError
from ..interfaces import (
    Experiment,
    ExperimentStatus,
    ExperimentVariant,
    FeatureEnvironment,
    FeatureEvent,
    FeatureFlag,
    FeatureFlagConfig,
    FeatureRepository,
    FlagType,
    FlagVariant,
    UserAssignment,
    UserSegment,
)
from ..models import (
    ExperimentModel,
    ExperimentVariantModel,
    FeatureEnvironmentModel,
    FeatureEventModel,
    FeatureFlagConfigModel,
    FeatureFlagModel,
    UserAssignmentModel,
    UserSegmentModel,
)

E = TypeVar("E", bound=Enum)


def _enum_or_raw(enum: type[E], value: str) -> E | str:
    # Rows written by newer releases may carry values this one does not know
    try:
        return enum(value)
    except ValueError:
        return value


class DatabaseFeatureRepository(FeatureRepository):
    """
    SQL-backed feature storage.

    Every call opens its own session, so one repository instance is safe
    to share between concurrent evaluations and background writers.
    Driver and SQL failures surface as RepositoryError.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(str(e)) from e

    # ============================================================
    # FLAG OPERATIONS
    # ============================================================

    async def get_feature_flag(self, key: str) -> FeatureFlag | None:
        async with self._session() as session:
            result = await session.execute(
                select(FeatureFlagModel).where(FeatureFlagModel.key == key)
            )
            model = result.scalar_one_or_none()
            return self._model_to_flag(model) if model else None

    async def get_feature_flags(self, archived: bool = False) -> list[FeatureFlag]:
        async with self._session() as session:
            result = await session.execute(
                select(FeatureFlagModel)
                .where(FeatureFlagModel.archived == archived)
                .order_by(FeatureFlagModel.key)
            )
            return [self._model_to_flag(m) for m in result.scalars().all()]

    async def get_environment(self, name: str) -> FeatureEnvironment | None:
        async with self._session() as session:
            result = await session.execute(
                select(FeatureEnvironmentModel).where(FeatureEnvironmentModel.name == name)
            )
            model = result.scalar_one_or_none()
            if not model:
                return None
            return FeatureEnvironment(
                id=model.id,
                name=model.name,
                description=model.description,
                sort_order=model.sort_order,
            )

    async def get_feature_flag_config(
        self,
        flag_id: UUID,
        environment_id: UUID,
    ) -> FeatureFlagConfig | None:
        async with self._session() as session:
            result = await session.execute(
                select(FeatureFlagConfigModel).where(
                    FeatureFlagConfigModel.feature_flag_id == flag_id,
                    FeatureFlagConfigModel.environment_id == environment_id,
                )
            )
            model = result.scalar_one_or_none()
            if not model:
                return None
            return FeatureFlagConfig(
                id=model.id,
                feature_flag_id=model.feature_flag_id,
                environment_id=model.environment_id,
                enabled=model.enabled,
                rollout_percentage=model.rollout_percentage,
                targeting_rules=model.targeting_rules or {},
                variants=self._parse_variants(model.variants),
                updated_at=model.updated_at,
            )

    # ============================================================
    # EXPERIMENT OPERATIONS
    # ============================================================

    async def get_experiment(self, key: str) -> Experiment | None:
        async with self._session() as session:
            result = await session.execute(
                select(ExperimentModel).where(ExperimentModel.key == key)
            )
            model = result.scalar_one_or_none()
            if not model:
                return None
            return Experiment(
                id=model.id,
                key=model.key,
                name=model.name,
                description=model.description,
                status=_enum_or_raw(ExperimentStatus, model.status),
                traffic_allocation=model.traffic_allocation,
                start_date=model.start_date,
                end_date=model.end_date,
                feature_flag_id=model.feature_flag_id,
            )

    async def get_experiment_variants(self, experiment_id: UUID) -> list[ExperimentVariant]:
        async with self._session() as session:
            result = await session.execute(
                select(ExperimentVariantModel)
                .where(ExperimentVariantModel.experiment_id == experiment_id)
                .order_by(ExperimentVariantModel.position, ExperimentVariantModel.key)
            )
            return [
                ExperimentVariant(
                    id=m.id,
                    experiment_id=m.experiment_id,
                    key=m.key,
                    name=m.name,
                    weight=m.weight,
                    is_control=m.is_control,
                    payload=m.payload or {},
                )
                for m in result.scalars().all()
            ]

    async def get_user_segment(self, key: str) -> UserSegment | None:
        async with self._session() as session:
            result = await session.execute(
                select(UserSegmentModel).where(UserSegmentModel.key == key)
            )
            model = result.scalar_one_or_none()
            if not model:
                return None
            return UserSegment(
                id=model.id,
                key=model.key,
                name=model.name,
                conditions=list(model.conditions or []),
            )

    # ============================================================
    # ASSIGNMENTS & EVENTS
    # ============================================================

    async def get_user_assignment(
        self,
        user_id: str,
        environment_id: UUID,
        subject_key: str,
    ) -> UserAssignment | None:
        async with self._session() as session:
            result = await session.execute(
                select(UserAssignmentModel).where(
                    UserAssignmentModel.user_id == user_id,
                    UserAssignmentModel.environment_id == environment_id,
                    UserAssignmentModel.subject_key == subject_key,
                )
            )
            model = result.scalar_one_or_none()
            if not model:
                return None
            return UserAssignment(
                id=model.id,
                user_id=model.user_id,
                environment_id=model.environment_id,
                subject_key=model.subject_key,
                feature_flag_id=model.feature_flag_id,
                experiment_id=model.experiment_id,
                variant_id=model.variant_id,
                enabled=model.enabled,
                sticky=model.sticky,
                context=model.context or {},
                assigned_at=model.assigned_at,
            )

    async def create_user_assignment(self, assignment: UserAssignment) -> UserAssignment:
        try:
            async with self._session() as session:
                session.add(
                    UserAssignmentModel(
                        id=assignment.id,
                        user_id=assignment.user_id,
                        environment_id=assignment.environment_id,
                        subject_key=assignment.subject_key,
                        feature_flag_id=assignment.feature_flag_id,
                        experiment_id=assignment.experiment_id,
                        variant_id=assignment.variant_id,
                        enabled=assignment.enabled,
                        sticky=assignment.sticky,
                        context=assignment.context,
                        assigned_at=assignment.assigned_at,
                    )
                )
                await session.commit()
        except IntegrityError as e:
            raise AssignmentExistsError(
                f"Assignment exists for user {assignment.user_id} on {assignment.subject_key}"
            ) from e
        return assignment

    async def create_feature_event(self, event: FeatureEvent) -> None:
        async with self._session() as session:
            session.add(
                FeatureEventModel(
                    id=event.id,
                    event_type=event.event_type,
                    user_id=event.user_id,
                    feature_flag_id=event.feature_flag_id,
                    experiment_id=event.experiment_id,
                    variant_id=event.variant_id,
                    environment_id=event.environment_id,
                    properties=event.properties,
                    timestamp=event.timestamp,
                )
            )
            await session.commit()

    # ============================================================
    # HELPERS
    # ============================================================

    def _model_to_flag(self, model: FeatureFlagModel) -> FeatureFlag:
        return FeatureFlag(
            id=model.id,
            key=model.key,
            name=model.name,
            description=model.description,
            type=_enum_or_raw(FlagType, model.type),
            enabled=model.enabled,
            archived=model.archived,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _parse_variants(self, raw: Any) -> list[FlagVariant]:
        if not isinstance(raw, list):
            return []
        variants = []
        for item in raw:
            if not isinstance(item, dict) or "key" not in item:
                continue
            try:
                weight = int(item.get("weight", 1))
            except (TypeError, ValueError) as e:
                raise RepositoryError(f"Malformed weight for variant {item['key']!r}: {e}") from e
            variants.append(FlagVariant(key=str(item["key"]), weight=weight))
        return variants
