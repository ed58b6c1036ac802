"""
Feature evaluation API routes.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from featurekit.core.features import (
    EvaluationContext,
    ExperimentEvaluation,
    FeatureEvaluation,
    FeatureEvent,
    RepositoryError,
)
from featurekit.core.features.dependencies import FeatureConfig, Features

router = APIRouter()


# ============================================================
# SCHEMAS
# ============================================================

class BatchEvaluationRequest(BaseModel):
    """Evaluate several flags for one context."""
    flag_keys: list[str] = Field(..., max_length=500)
    context: EvaluationContext


class FlagsResponse(BaseModel):
    """Flag key -> evaluation."""
    flags: dict[str, FeatureEvaluation]


class TrackEventRequest(BaseModel):
    """Client-reported analytics event (exposure, conversion, ...)."""
    event_type: str = Field(..., min_length=1, max_length=50)
    user_id: str | None = None
    environment: str | None = None
    flag_key: str | None = None
    experiment_key: str | None = None
    variant_key: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class InvalidateCacheRequest(BaseModel):
    """Substrings of cache keys to drop (usually flag or experiment keys)."""
    keys: list[str] = Field(..., min_length=1)


# ============================================================
# EVALUATION ENDPOINTS
# ============================================================

@router.post("/flags/evaluate")
async def evaluate_flags(
    data: BatchEvaluationRequest,
    features: Features,
) -> FlagsResponse:
    """Evaluate a list of flags. Every requested key is present in the result."""
    flags = await features.evaluate_flags(data.flag_keys, data.context)
    return FlagsResponse(flags=flags)


@router.post("/flags/{key}/evaluate")
async def evaluate_flag(
    key: str,
    context: EvaluationContext,
    features: Features,
) -> FeatureEvaluation:
    """Evaluate a single flag."""
    return await features.evaluate_flag(key, context)


@router.post("/flags")
async def get_all_flags(
    context: EvaluationContext,
    features: Features,
) -> FlagsResponse:
    """
    Evaluate every non-archived flag.

    Useful for bootstrapping a frontend.
    """
    try:
        flags = await features.get_all_flags(context)
    except RepositoryError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Feature store unavailable",
        )
    return FlagsResponse(flags=flags)


@router.post("/experiments/{key}/evaluate")
async def evaluate_experiment(
    key: str,
    context: EvaluationContext,
    features: Features,
) -> ExperimentEvaluation:
    """Evaluate an experiment."""
    return await features.evaluate_experiment(key, context)


# ============================================================
# EVENTS & CACHE
# ============================================================

@router.post("/events")
async def track_event(
    data: TrackEventRequest,
    features: Features,
    config: FeatureConfig,
) -> dict[str, bool]:
    """
    Record a client-side event.

    Keys are resolved to ids where they exist; unknown keys are kept
    in the event properties. Events without an environment are filed
    under FEATURE_DEFAULT_ENVIRONMENT.
    """
    repository = features.repository
    properties = dict(data.properties)
    event = FeatureEvent(event_type=data.event_type, user_id=data.user_id)

    try:
        environment = await repository.get_environment(data.environment or config.default_environment)
        if environment:
            event.environment_id = environment.id

        if data.flag_key:
            properties["flag_key"] = data.flag_key
            flag = await repository.get_feature_flag(data.flag_key)
            if flag:
                event.feature_flag_id = flag.id

        if data.experiment_key:
            properties["experiment_key"] = data.experiment_key
            experiment = await repository.get_experiment(data.experiment_key)
            if experiment:
                event.experiment_id = experiment.id
                if data.variant_key:
                    variants = await repository.get_experiment_variants(experiment.id)
                    variant = next((v for v in variants if v.key == data.variant_key), None)
                    if variant:
                        event.variant_id = variant.id

        if data.variant_key:
            properties["variant_key"] = data.variant_key

        event.properties = properties
        await features.track_event(event)
    except RepositoryError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Feature store unavailable",
        )

    return {"success": True}


@router.post("/cache/invalidate")
async def invalidate_cache(
    data: InvalidateCacheRequest,
    features: Features,
) -> dict[str, Any]:
    """Drop cached evaluations whose cache key contains any of the keys."""
    deleted = await features.invalidate_cache(*data.keys)
    return {"success": True, "deleted": deleted}
