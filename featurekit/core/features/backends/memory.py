"""
In-memory repository for feature flags and experiments.

For development and testing. Data is lost on restart.
"""

from uuid import UUID

from ..exceptions import AssignmentExistsError
from ..interfaces import (
    Experiment,
    ExperimentVariant,
    FeatureEnvironment,
    FeatureEvent,
    FeatureFlag,
    FeatureFlagConfig,
    FeatureRepository,
    UserAssignment,
    UserSegment,
)


class MemoryFeatureRepository(FeatureRepository):
    """
    In-memory feature storage.

    Useful for:
    - Development without database
    - Unit testing
    - Quick prototyping

    Usage:
        repo = MemoryFeatureRepository()
        env = repo.add_environment(FeatureEnvironment(name="production"))
        flag = repo.add_flag(FeatureFlag(key="dark_mode"))
        repo.add_config(FeatureFlagConfig(flag.id, env.id, enabled=True))
    """

    def __init__(self):
        self._flags: dict[str, FeatureFlag] = {}
        self._environments: dict[str, FeatureEnvironment] = {}
        self._configs: dict[tuple[UUID, UUID], FeatureFlagConfig] = {}
        self._experiments: dict[str, Experiment] = {}
        self._variants: dict[UUID, list[ExperimentVariant]] = {}
        self._segments: dict[str, UserSegment] = {}
        self._assignments: dict[tuple[str, UUID, str], UserAssignment] = {}
        self.events: list[FeatureEvent] = []

    # ============================================================
    # SEEDING
    # ============================================================

    def add_flag(self, flag: FeatureFlag) -> FeatureFlag:
        self._flags[flag.key] = flag
        return flag

    def add_environment(self, environment: FeatureEnvironment) -> FeatureEnvironment:
        self._environments[environment.name] = environment
        return environment

    def add_config(self, config: FeatureFlagConfig) -> FeatureFlagConfig:
        self._configs[(config.feature_flag_id, config.environment_id)] = config
        return config

    def add_experiment(
        self,
        experiment: Experiment,
        variants: list[ExperimentVariant] | None = None,
    ) -> Experiment:
        self._experiments[experiment.key] = experiment
        if variants is not None:
            self.add_variants(experiment.id, variants)
        return experiment

    def add_variants(self, experiment_id: UUID, variants: list[ExperimentVariant]) -> None:
        """Set an experiment's variants; list order is declaration order."""
        self._variants[experiment_id] = list(variants)

    def add_segment(self, segment: UserSegment) -> UserSegment:
        self._segments[segment.key] = segment
        return segment

    def clear(self) -> None:
        """Drop everything (for tests)."""
        self._flags.clear()
        self._environments.clear()
        self._configs.clear()
        self._experiments.clear()
        self._variants.clear()
        self._segments.clear()
        self._assignments.clear()
        self.events.clear()

    @property
    def assignments(self) -> list[UserAssignment]:
        return list(self._assignments.values())

    # ============================================================
    # FLAG OPERATIONS
    # ============================================================

    async def get_feature_flag(self, key: str) -> FeatureFlag | None:
        return self._flags.get(key)

    async def get_feature_flags(self, archived: bool = False) -> list[FeatureFlag]:
        return sorted(
            (f for f in self._flags.values() if f.archived == archived),
            key=lambda f: f.key,
        )

    async def get_environment(self, name: str) -> FeatureEnvironment | None:
        return self._environments.get(name)

    async def get_feature_flag_config(
        self,
        flag_id: UUID,
        environment_id: UUID,
    ) -> FeatureFlagConfig | None:
        return self._configs.get((flag_id, environment_id))

    # ============================================================
    # EXPERIMENT OPERATIONS
    # ============================================================

    async def get_experiment(self, key: str) -> Experiment | None:
        return self._experiments.get(key)

    async def get_experiment_variants(self, experiment_id: UUID) -> list[ExperimentVariant]:
        return list(self._variants.get(experiment_id, []))

    async def get_user_segment(self, key: str) -> UserSegment | None:
        return self._segments.get(key)

    # ============================================================
    # ASSIGNMENTS & EVENTS
    # ============================================================

    async def get_user_assignment(
        self,
        user_id: str,
        environment_id: UUID,
        subject_key: str,
    ) -> UserAssignment | None:
        return self._assignments.get((user_id, environment_id, subject_key))

    async def create_user_assignment(self, assignment: UserAssignment) -> UserAssignment:
        key = (assignment.user_id, assignment.environment_id, assignment.subject_key)
        if key in self._assignments:
            raise AssignmentExistsError(
                f"Assignment exists for user {assignment.user_id} on {assignment.subject_key}"
            )
        self._assignments[key] = assignment
        return assignment

    async def create_feature_event(self, event: FeatureEvent) -> None:
        self.events.append(event)
