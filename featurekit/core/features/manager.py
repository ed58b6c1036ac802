"""
Feature Manager - cache-aside orchestration of flag and experiment checks.

Evaluation order for flags:
1. Cached result (per environment, key and user)
2. Flag lookup (missing / archived)
3. Environment and per-environment config (missing / disabled)
4. Type-specific evaluation (boolean, percentage, variant)

Evaluate operations never raise: faults become disabled results with
`error` set, and those are never cached.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from featurekit.core.interfaces.cache import CacheBackend, CacheError, escape_pattern
from featurekit.core.interfaces.queue import QueueBackend

from .evaluator import ExperimentEvaluator, FeatureEvaluator
from .exceptions import RepositoryError
from .hasher import AssignmentHasher
from .interfaces import (
    Experiment,
    ExperimentStatus,
    FeatureEnvironment,
    FeatureEvent,
    FeatureFlag,
    FeatureManagerBase,
    FeatureRepository,
    FlagType,
    utcnow,
)
from .schemas import EvaluationContext, ExperimentEvaluation, FeatureEvaluation, Reason
from .segments import SegmentEvaluator
from .tasks import EVENT_TASK, register_feature_tasks

M = TypeVar("M", bound=BaseModel)


def _as_aware(value: datetime) -> datetime:
    # Naive datetimes coming back from the store are UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FeatureManager(FeatureManagerBase):
    """
    Main entry point for feature checks.

    Usage:
        manager = FeatureManager(repository, cache, queue)
        await manager.start()

        context = EvaluationContext(user_id="user-123", environment="production")
        result = await manager.evaluate_flag("new_checkout", context)
        if result.enabled:
            ...

        await manager.shutdown(timeout=10)
    """

    def __init__(
        self,
        repository: FeatureRepository,
        cache: CacheBackend,
        queue: QueueBackend,
        hasher: AssignmentHasher | None = None,
        segment_evaluator: SegmentEvaluator | None = None,
        cache_ttl: int | timedelta = 300,
        cache_prefix: str = "features",
        batch_concurrency: int = 16,
        logger: Any | None = None,
    ):
        self.repository = repository
        self.cache = cache
        self.queue = queue
        self.cache_ttl = cache_ttl
        self.cache_prefix = cache_prefix
        self.batch_concurrency = batch_concurrency
        self.logger = logger or structlog.get_logger(__name__)

        hasher = hasher or AssignmentHasher()
        segment_evaluator = segment_evaluator or SegmentEvaluator(logger=self.logger)

        self.feature_evaluator = FeatureEvaluator(
            hasher=hasher,
            segment_evaluator=segment_evaluator,
            repository=repository,
            queue=queue,
            logger=self.logger,
        )
        self.experiment_evaluator = ExperimentEvaluator(
            hasher=hasher,
            repository=repository,
            queue=queue,
            logger=self.logger,
        )

        register_feature_tasks(queue, repository, logger=self.logger)

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self) -> None:
        """Start the background writers."""
        await self.queue.start()

    async def shutdown(self, timeout: float | None = None) -> int:
        """Drain background writes. Returns the number abandoned."""
        return await self.queue.shutdown(timeout=timeout)

    # ============================================================
    # FLAGS
    # ============================================================

    async def is_enabled(self, key: str, context: EvaluationContext) -> bool:
        """Shortcut for `(await evaluate_flag(key, context)).enabled`."""
        result = await self.evaluate_flag(key, context)
        return result.enabled

    async def evaluate_flag(
        self,
        key: str,
        context: EvaluationContext,
    ) -> FeatureEvaluation:
        cache_key = self._cache_key("flag", key, context)

        cached = await self._read_cache(cache_key, FeatureEvaluation)
        if cached is not None:
            self.logger.debug("cache_hit", flag_key=key, cache_key=cache_key)
            return cached

        try:
            result = await self._evaluate_flag(key, context)
        except RepositoryError as e:
            self.logger.error("flag_repository_error", flag_key=key, error=str(e))
            return FeatureEvaluation.disabled(key, Reason.REPOSITORY_ERROR, error=str(e))
        except Exception as e:
            self.logger.error("flag_evaluation_failed", flag_key=key, error=str(e), exc_info=True)
            return FeatureEvaluation.disabled(key, Reason.EVALUATION_ERROR, error=str(e))

        if result.error is None:
            await self._write_cache(cache_key, result)

        return result

    async def _evaluate_flag(
        self,
        key: str,
        context: EvaluationContext,
    ) -> FeatureEvaluation:
        flag = await self.repository.get_feature_flag(key)
        if flag is None:
            return FeatureEvaluation.disabled(
                key, Reason.FLAG_NOT_FOUND, error=f"Feature flag '{key}' not found"
            )

        if flag.archived:
            return FeatureEvaluation.disabled(key, Reason.FLAG_ARCHIVED)

        environment = await self.repository.get_environment(context.environment)
        if environment is None:
            return FeatureEvaluation.disabled(
                key,
                Reason.ENVIRONMENT_NOT_FOUND,
                error=f"Environment '{context.environment}' not found",
            )

        config = await self.repository.get_feature_flag_config(flag.id, environment.id)
        if config is None:
            return FeatureEvaluation.disabled(key, Reason.NO_CONFIG)

        if not config.enabled:
            return FeatureEvaluation.disabled(key, Reason.FLAG_DISABLED)

        try:
            if flag.type == FlagType.BOOLEAN:
                result = await self.feature_evaluator.evaluate_boolean(flag, config, context, environment)
            elif flag.type == FlagType.PERCENTAGE:
                result = await self.feature_evaluator.evaluate_percentage(flag, config, context, environment)
            elif flag.type == FlagType.VARIANT:
                result = await self.feature_evaluator.evaluate_variant(flag, config, context, environment)
            else:
                result = FeatureEvaluation.disabled(key, Reason.UNSUPPORTED_FLAG_TYPE)
        except RepositoryError:
            raise
        except Exception as e:
            self.logger.error(
                "flag_evaluation_failed",
                flag_key=key,
                flag_type=flag.type,
                error=str(e),
                exc_info=True,
            )
            result = FeatureEvaluation.disabled(key, Reason.EVALUATION_ERROR, error=str(e))

        await self._track_flag_evaluation(flag, environment, context, result)
        return result

    async def evaluate_flags(
        self,
        keys: list[str],
        context: EvaluationContext,
    ) -> dict[str, FeatureEvaluation]:
        """
        Evaluate many flags concurrently.

        At most `batch_concurrency` evaluations are in flight at once. A
        failing key yields its own error result and never aborts the batch.
        """
        unique_keys = list(dict.fromkeys(keys))
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def run(key: str) -> FeatureEvaluation:
            async with semaphore:
                try:
                    return await self.evaluate_flag(key, context)
                except Exception as e:
                    self.logger.error("flag_evaluation_failed", flag_key=key, error=str(e), exc_info=True)
                    return FeatureEvaluation.disabled(key, Reason.EVALUATION_ERROR, error=str(e))

        results = await asyncio.gather(*(run(key) for key in unique_keys))
        return dict(zip(unique_keys, results))

    async def get_all_flags(self, context: EvaluationContext) -> dict[str, FeatureEvaluation]:
        """
        Evaluate every non-archived flag.

        Raises RepositoryError if the flags cannot be listed.
        """
        flags = await self.repository.get_feature_flags(archived=False)
        return await self.evaluate_flags([flag.key for flag in flags], context)

    # ============================================================
    # EXPERIMENTS
    # ============================================================

    async def evaluate_experiment(
        self,
        key: str,
        context: EvaluationContext,
    ) -> ExperimentEvaluation:
        cache_key = self._cache_key("experiment", key, context)

        cached = await self._read_cache(cache_key, ExperimentEvaluation)
        if cached is not None:
            self.logger.debug("cache_hit", experiment_key=key, cache_key=cache_key)
            return cached

        try:
            result = await self._evaluate_experiment(key, context)
        except RepositoryError as e:
            self.logger.error("experiment_repository_error", experiment_key=key, error=str(e))
            return ExperimentEvaluation.excluded(key, Reason.REPOSITORY_ERROR, error=str(e))
        except Exception as e:
            self.logger.error(
                "experiment_evaluation_failed", experiment_key=key, error=str(e), exc_info=True
            )
            return ExperimentEvaluation.excluded(key, Reason.EVALUATION_ERROR, error=str(e))

        if result.error is None:
            await self._write_cache(cache_key, result)

        return result

    async def _evaluate_experiment(
        self,
        key: str,
        context: EvaluationContext,
    ) -> ExperimentEvaluation:
        experiment = await self.repository.get_experiment(key)
        if experiment is None:
            return ExperimentEvaluation.excluded(
                key, Reason.EXPERIMENT_NOT_FOUND, error=f"Experiment '{key}' not found"
            )

        if experiment.status != ExperimentStatus.RUNNING:
            return ExperimentEvaluation.excluded(key, Reason.EXPERIMENT_NOT_RUNNING)

        now = utcnow()
        if experiment.start_date is not None and now < _as_aware(experiment.start_date):
            return ExperimentEvaluation.excluded(key, Reason.EXPERIMENT_NOT_STARTED)
        if experiment.end_date is not None and now > _as_aware(experiment.end_date):
            return ExperimentEvaluation.excluded(key, Reason.EXPERIMENT_ENDED)

        variants = await self.repository.get_experiment_variants(experiment.id)
        if not variants:
            return ExperimentEvaluation.excluded(key, Reason.NO_VARIANTS)

        environment = await self.repository.get_environment(context.environment)
        if environment is None:
            return ExperimentEvaluation.excluded(
                key,
                Reason.ENVIRONMENT_NOT_FOUND,
                error=f"Environment '{context.environment}' not found",
            )

        try:
            result = await self.experiment_evaluator.evaluate_experiment(
                experiment, variants, context, environment
            )
        except RepositoryError:
            raise
        except Exception as e:
            self.logger.error(
                "experiment_evaluation_failed",
                experiment_key=key,
                error=str(e),
                exc_info=True,
            )
            result = ExperimentEvaluation.excluded(key, Reason.EVALUATION_ERROR, error=str(e))

        await self._track_experiment_evaluation(experiment, environment, context, result)
        return result

    # ============================================================
    # EVENTS & CACHE
    # ============================================================

    async def track_event(self, event: FeatureEvent) -> None:
        await self.repository.create_feature_event(event)

    async def invalidate_cache(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            try:
                deleted += await self.cache.delete_pattern(f"*{escape_pattern(key)}*")
            except CacheError as e:
                self.logger.warning("cache_invalidate_failed", key=key, error=str(e))
        self.logger.info("cache_invalidated", keys=list(keys), deleted=deleted)
        return deleted

    def _cache_key(self, kind: str, key: str, context: EvaluationContext) -> str:
        return f"{self.cache_prefix}:{kind}:{context.environment}:{key}:{context.subject}"

    async def _read_cache(self, cache_key: str, model: type[M]) -> M | None:
        try:
            payload = await self.cache.get(cache_key)
        except CacheError as e:
            self.logger.warning("cache_read_failed", cache_key=cache_key, error=str(e))
            return None

        if payload is None:
            return None

        try:
            return model.model_validate_json(payload)
        except ValidationError as e:
            self.logger.warning("cache_payload_invalid", cache_key=cache_key, error=str(e))
            return None

    async def _write_cache(self, cache_key: str, result: BaseModel) -> None:
        try:
            await self.cache.set(cache_key, result.model_dump_json(), ttl=self.cache_ttl)
        except CacheError as e:
            self.logger.warning("cache_write_failed", cache_key=cache_key, error=str(e))

    # ============================================================
    # ANALYTICS
    # ============================================================

    async def _track_flag_evaluation(
        self,
        flag: FeatureFlag,
        environment: FeatureEnvironment,
        context: EvaluationContext,
        result: FeatureEvaluation,
    ) -> None:
        await self._enqueue_event(
            FeatureEvent(
                event_type="flag_evaluated",
                user_id=context.user_id,
                feature_flag_id=flag.id,
                environment_id=environment.id,
                properties={
                    "flag_key": flag.key,
                    "enabled": result.enabled,
                    "variant": result.variant,
                    "reason": result.reason,
                },
            )
        )

    async def _track_experiment_evaluation(
        self,
        experiment: Experiment,
        environment: FeatureEnvironment,
        context: EvaluationContext,
        result: ExperimentEvaluation,
    ) -> None:
        await self._enqueue_event(
            FeatureEvent(
                event_type="experiment_evaluated",
                user_id=context.user_id,
                experiment_id=experiment.id,
                variant_id=result.variant_id,
                environment_id=environment.id,
                properties={
                    "experiment_key": experiment.key,
                    "in_experiment": result.in_experiment,
                    "variant": result.variant,
                    "reason": result.reason,
                },
            )
        )

    async def _enqueue_event(self, event: FeatureEvent) -> None:
        try:
            await self.queue.enqueue(EVENT_TASK, kwargs={"event": event})
        except Exception as e:
            self.logger.warning("event_enqueue_failed", event_type=event.event_type, error=str(e))
