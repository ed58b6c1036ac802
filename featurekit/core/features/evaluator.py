"""
Flag and experiment decision logic.

The evaluators are stateless apart from their collaborators; every
decision is a function of the records passed in, the context, and any
sticky assignment already stored for the user.
"""

from typing import Any, Protocol, Sequence, TypeVar

import structlog

from featurekit.core.interfaces.queue import QueueBackend

from .exceptions import RepositoryError, SegmentEvaluationError, TargetingRuleError
from .hasher import AssignmentHasher
from .interfaces import (
    Experiment,
    ExperimentVariant,
    FeatureEnvironment,
    FeatureFlag,
    FeatureFlagConfig,
    FeatureRepository,
    FlagVariant,
    UserAssignment,
)
from .schemas import EvaluationContext, ExperimentEvaluation, FeatureEvaluation, Reason
from .segments import SegmentEvaluator
from .tasks import ASSIGNMENT_TASK

DEFAULT_FLAG_VARIANTS = (FlagVariant("variant_a", 1), FlagVariant("variant_b", 1))


class Weighted(Protocol):
    weight: int


W = TypeVar("W", bound=Weighted)


def total_weight(variants: Sequence[Weighted]) -> int:
    return sum(max(v.weight, 0) for v in variants)


def select_weighted_variant(variants: Sequence[W], hash_value: int) -> W | None:
    """
    Pick a variant by cumulative weight.

    `hash_value % total_weight` is walked through the variants in their
    declared order; the first variant whose running total exceeds it wins.
    Returns None when the weights sum to zero.
    """
    total = total_weight(variants)
    if total <= 0:
        return None

    point = hash_value % total
    cumulative = 0
    for variant in variants:
        cumulative += max(variant.weight, 0)
        if point < cumulative:
            return variant
    return None


class _AssignmentWriter:
    """Shared plumbing for the evaluators: enqueue sticky writes."""

    queue: QueueBackend
    logger: Any

    async def _enqueue_assignment(self, assignment: UserAssignment) -> None:
        try:
            await self.queue.enqueue(ASSIGNMENT_TASK, kwargs={"assignment": assignment})
        except Exception as e:
            self.logger.warning(
                "assignment_enqueue_failed",
                user_id=assignment.user_id,
                subject_key=assignment.subject_key,
                error=str(e),
            )


# =============================================================================
# Feature flags
# =============================================================================

class FeatureEvaluator(_AssignmentWriter):
    """
    Per-type flag evaluation.

    Targeting rules are checked first for every type; a match always
    enables the flag. Faults (bad rules, failed sticky reads) raise and
    are converted to safe defaults by the manager.
    """

    def __init__(
        self,
        hasher: AssignmentHasher,
        segment_evaluator: SegmentEvaluator,
        repository: FeatureRepository,
        queue: QueueBackend,
        logger: Any | None = None,
    ):
        self.hasher = hasher
        self.segment_evaluator = segment_evaluator
        self.repository = repository
        self.queue = queue
        self.logger = logger or structlog.get_logger(__name__)

    async def evaluate_boolean(
        self,
        flag: FeatureFlag,
        config: FeatureFlagConfig,
        context: EvaluationContext,
        environment: FeatureEnvironment,
    ) -> FeatureEvaluation:
        if await self._evaluate_targeting_rules(config.targeting_rules, context):
            return FeatureEvaluation(
                key=flag.key,
                enabled=True,
                value=True,
                reason=Reason.TARGETING_RULE,
            )

        return FeatureEvaluation(
            key=flag.key,
            enabled=config.enabled,
            value=config.enabled,
            reason=Reason.DEFAULT,
        )

    async def evaluate_percentage(
        self,
        flag: FeatureFlag,
        config: FeatureFlagConfig,
        context: EvaluationContext,
        environment: FeatureEnvironment,
    ) -> FeatureEvaluation:
        if await self._evaluate_targeting_rules(config.targeting_rules, context):
            return FeatureEvaluation(
                key=flag.key,
                enabled=True,
                value=True,
                reason=Reason.TARGETING_RULE,
            )

        user_id = context.user_id
        if user_id:
            assignment = await self.repository.get_user_assignment(
                user_id, environment.id, flag.key
            )
            if assignment is not None:
                if assignment.enabled is not None:
                    enabled = assignment.enabled
                else:
                    # Records written without an outcome mark inclusion by flag id
                    enabled = assignment.feature_flag_id is not None
                return FeatureEvaluation(
                    key=flag.key,
                    enabled=enabled,
                    value=enabled,
                    reason=Reason.STICKY_ASSIGNMENT,
                )

        rollout = config.rollout_percentage or 0
        if not user_id or rollout <= 0:
            return FeatureEvaluation(
                key=flag.key,
                enabled=False,
                value=False,
                reason=Reason.ROLLOUT_EXCLUDED,
            )

        bucket = self.hasher.hash_to_percentage(user_id, flag.key, str(flag.id))
        enabled = bucket <= rollout

        await self._enqueue_assignment(
            UserAssignment(
                user_id=user_id,
                environment_id=environment.id,
                subject_key=flag.key,
                feature_flag_id=flag.id,
                enabled=enabled,
                context={"assigned_by": "evaluator", "flag_key": flag.key},
            )
        )

        return FeatureEvaluation(
            key=flag.key,
            enabled=enabled,
            value=enabled,
            reason=Reason.ROLLOUT_INCLUDED if enabled else Reason.ROLLOUT_EXCLUDED,
        )

    async def evaluate_variant(
        self,
        flag: FeatureFlag,
        config: FeatureFlagConfig,
        context: EvaluationContext,
        environment: FeatureEnvironment,
    ) -> FeatureEvaluation:
        if await self._evaluate_targeting_rules(config.targeting_rules, context):
            return FeatureEvaluation(
                key=flag.key,
                enabled=True,
                value="treatment",
                variant="treatment",
                reason=Reason.TARGETING_RULE,
            )

        user_id = context.user_id
        rollout = config.rollout_percentage or 0
        salt = str(flag.id)

        if user_id and rollout > 0:
            if self.hasher.hash_to_percentage(user_id, flag.key, salt) <= rollout:
                variants = config.variants or list(DEFAULT_FLAG_VARIANTS)
                selected = select_weighted_variant(
                    variants, self.hasher.hash(user_id, flag.key, salt)
                )
                if selected is not None:
                    return FeatureEvaluation(
                        key=flag.key,
                        enabled=True,
                        value=selected.key,
                        variant=selected.key,
                        reason=Reason.VARIANT_ASSIGNMENT,
                    )

        return FeatureEvaluation(
            key=flag.key,
            enabled=False,
            value="control",
            variant="control",
            reason=Reason.ROLLOUT_EXCLUDED,
        )

    async def _evaluate_targeting_rules(
        self,
        rules: Any,
        context: EvaluationContext,
    ) -> bool:
        """
        Check segment, user id and attribute targeting, in that order.

        Raises TargetingRuleError when the rules document is malformed.
        """
        if not rules:
            return False
        if not isinstance(rules, dict):
            raise TargetingRuleError(f"targeting_rules must be an object, got {type(rules).__name__}")

        segments = rules.get("segments") or []
        user_ids = rules.get("user_ids") or []
        attributes = rules.get("attributes") or {}

        if not isinstance(segments, list):
            raise TargetingRuleError("targeting_rules.segments must be a list")
        if not isinstance(user_ids, list):
            raise TargetingRuleError("targeting_rules.user_ids must be a list")
        if not isinstance(attributes, dict):
            raise TargetingRuleError("targeting_rules.attributes must be an object")

        for segment_key in segments:
            if not isinstance(segment_key, str):
                continue
            if await self._in_segment(segment_key, context):
                return True

        if context.user_id and context.user_id in {str(u) for u in user_ids}:
            return True

        for name, expected in attributes.items():
            if name in context.user_attributes and context.user_attributes[name] == expected:
                return True

        return False

    async def _in_segment(self, segment_key: str, context: EvaluationContext) -> bool:
        try:
            segment = await self.repository.get_user_segment(segment_key)
        except RepositoryError as e:
            self.logger.warning("segment_fetch_failed", segment_key=segment_key, error=str(e))
            return False

        if segment is None:
            return False

        try:
            return self.segment_evaluator.evaluate_segment(segment, context)
        except SegmentEvaluationError as e:
            self.logger.warning("segment_evaluation_failed", segment_key=segment_key, error=str(e))
            return False


# =============================================================================
# Experiments
# =============================================================================

class ExperimentEvaluator(_AssignmentWriter):
    """
    A/B/n assignment.

    Traffic allocation decides whether a user is in the experiment at
    all; variant weights then decide which arm. Both hashes use the
    experiment id as salt, so they are stable per user and experiment.
    """

    def __init__(
        self,
        hasher: AssignmentHasher,
        repository: FeatureRepository,
        queue: QueueBackend,
        logger: Any | None = None,
    ):
        self.hasher = hasher
        self.repository = repository
        self.queue = queue
        self.logger = logger or structlog.get_logger(__name__)

    async def evaluate_experiment(
        self,
        experiment: Experiment,
        variants: list[ExperimentVariant],
        context: EvaluationContext,
        environment: FeatureEnvironment,
    ) -> ExperimentEvaluation:
        user_id = context.user_id
        if not user_id:
            return ExperimentEvaluation.excluded(experiment.key, Reason.NO_USER_ID)

        assignment = await self.repository.get_user_assignment(
            user_id, environment.id, experiment.key
        )
        if assignment is not None and assignment.variant_id is not None:
            sticky = next((v for v in variants if v.id == assignment.variant_id), None)
            if sticky is not None:
                return self._assigned(experiment, sticky, Reason.STICKY_ASSIGNMENT)

        salt = str(experiment.id)
        traffic = self.hasher.hash_to_percentage(user_id, experiment.key, salt)
        # Bucket 0 would otherwise pass a zero allocation
        if experiment.traffic_allocation <= 0 or traffic > experiment.traffic_allocation:
            return ExperimentEvaluation.excluded(experiment.key, Reason.TRAFFIC_EXCLUDED)

        if total_weight(variants) == 0:
            return ExperimentEvaluation.excluded(experiment.key, Reason.NO_VARIANT_WEIGHTS)

        selected = select_weighted_variant(
            variants, self.hasher.hash(user_id, experiment.key, salt)
        )
        if selected is None:
            return ExperimentEvaluation.excluded(experiment.key, Reason.NO_VARIANT_SELECTED)

        await self._enqueue_assignment(
            UserAssignment(
                user_id=user_id,
                environment_id=environment.id,
                subject_key=experiment.key,
                experiment_id=experiment.id,
                variant_id=selected.id,
                context={
                    "assigned_by": "evaluator",
                    "experiment_key": experiment.key,
                    "variant_key": selected.key,
                },
            )
        )

        return self._assigned(experiment, selected, Reason.VARIANT_ASSIGNMENT)

    @staticmethod
    def _assigned(
        experiment: Experiment,
        variant: ExperimentVariant,
        reason: str,
    ) -> ExperimentEvaluation:
        return ExperimentEvaluation(
            key=experiment.key,
            variant_id=variant.id,
            variant=variant.key,
            payload=variant.payload,
            in_experiment=True,
            reason=reason,
        )
