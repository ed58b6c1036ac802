"""
Feature Flag & Experiment Engine.

Deterministic flag and experiment evaluation with:
- Boolean, percentage and variant flags
- Targeting rules (segments, user id allow-lists, attributes)
- A/B/n experiments with traffic allocation and weighted variants
- Sticky assignments so decisions survive configuration edits
- Cache-aside results and background analytics

Usage Levels:

Level 1 - Simple check:
    from featurekit.core.features import EvaluationContext
    from featurekit.core.features.dependencies import Features

    @router.get("/dashboard")
    async def dashboard(features: Features):
        context = EvaluationContext(environment="production")
        if await features.is_enabled("new_dashboard", context):
            return new_data()
        return old_data()

Level 2 - Percentage rollout (per user, sticky):
    context = EvaluationContext(user_id=str(user.id), environment="production")
    result = await features.evaluate_flag("new_checkout", context)
    # result.reason: rollout_included / rollout_excluded / sticky_assignment

Level 3 - Targeting:
    # Flag config targeting_rules:
    # {
    #     "segments": ["beta_testers"],
    #     "user_ids": ["user-123"],
    #     "attributes": {"plan": "enterprise"}
    # }

Level 4 - Experiments:
    result = await features.evaluate_experiment("pricing_page", context)
    if result.in_experiment:
        render(result.variant, result.payload)
"""

from .exceptions import (
    FeatureError,
    RepositoryError,
    AssignmentExistsError,
    EvaluationError,
    SegmentEvaluationError,
    TargetingRuleError,
)

from .interfaces import (
    FlagType,
    ExperimentStatus,
    FeatureFlag,
    FeatureEnvironment,
    FlagVariant,
    FeatureFlagConfig,
    Experiment,
    ExperimentVariant,
    UserSegment,
    UserAssignment,
    FeatureEvent,
    FeatureRepository,
    FeatureManagerBase,
)

from .schemas import (
    Reason,
    EvaluationContext,
    FeatureEvaluation,
    ExperimentEvaluation,
)

from .hasher import AssignmentHasher
from .segments import SegmentEvaluator
from .evaluator import FeatureEvaluator, ExperimentEvaluator, select_weighted_variant
from .manager import FeatureManager

from .backends import (
    DatabaseFeatureRepository,
    MemoryFeatureRepository,
)

__all__ = [
    # Exceptions
    "FeatureError",
    "RepositoryError",
    "AssignmentExistsError",
    "EvaluationError",
    "SegmentEvaluationError",
    "TargetingRuleError",
    # Interfaces
    "FlagType",
    "ExperimentStatus",
    "FeatureFlag",
    "FeatureEnvironment",
    "FlagVariant",
    "FeatureFlagConfig",
    "Experiment",
    "ExperimentVariant",
    "UserSegment",
    "UserAssignment",
    "FeatureEvent",
    "FeatureRepository",
    "FeatureManagerBase",
    # Schemas
    "Reason",
    "EvaluationContext",
    "FeatureEvaluation",
    "ExperimentEvaluation",
    # Engine
    "AssignmentHasher",
    "SegmentEvaluator",
    "FeatureEvaluator",
    "ExperimentEvaluator",
    "select_weighted_variant",
    "FeatureManager",
    # Backends
    "DatabaseFeatureRepository",
    "MemoryFeatureRepository",
]
