"""
Tests for flag and experiment decision logic.
"""

from collections import Counter

import pytest

from featurekit.core.features import (
    AssignmentHasher,
    EvaluationContext,
    ExperimentEvaluator,
    FeatureEnvironment,
    FeatureEvaluator,
    FeatureFlag,
    FeatureFlagConfig,
    FlagType,
    FlagVariant,
    SegmentEvaluator,
    TargetingRuleError,
    UserAssignment,
    select_weighted_variant,
)
from featurekit.core.features.tasks import ASSIGNMENT_TASK, register_feature_tasks


def ctx(user_id: str | None = "user-1", **attributes) -> EvaluationContext:
    return EvaluationContext(user_id=user_id, environment="production", user_attributes=attributes)


@pytest.fixture
def hasher() -> AssignmentHasher:
    return AssignmentHasher()


@pytest.fixture
def feature_evaluator(hasher, repository, queue) -> FeatureEvaluator:
    # The queue is never started: enqueued writes stay pending for inspection
    return FeatureEvaluator(hasher, SegmentEvaluator(), repository, queue)


@pytest.fixture
def experiment_evaluator(hasher, repository, queue) -> ExperimentEvaluator:
    return ExperimentEvaluator(hasher, repository, queue)


# ============ Weighted selection ============


def test_select_weighted_variant_walks_cumulative_weights():
    variants = [FlagVariant("a", 2), FlagVariant("b", 3)]

    assert select_weighted_variant(variants, 0).key == "a"
    assert select_weighted_variant(variants, 1).key == "a"
    assert select_weighted_variant(variants, 2).key == "b"
    assert select_weighted_variant(variants, 4).key == "b"
    assert select_weighted_variant(variants, 5).key == "a"  # 5 % 5 == 0


def test_select_weighted_variant_skips_zero_weights():
    variants = [FlagVariant("off", 0), FlagVariant("on", 1)]
    assert all(select_weighted_variant(variants, h).key == "on" for h in range(20))


def test_select_weighted_variant_without_weight_returns_none():
    assert select_weighted_variant([FlagVariant("a", 0), FlagVariant("b", 0)], 7) is None
    assert select_weighted_variant([], 7) is None


# ============ Boolean ============


@pytest.mark.asyncio
async def test_boolean_default(feature_evaluator, flag_factory, production):
    flag = flag_factory.create("dark_mode")
    result = await feature_evaluator.evaluate_boolean(
        flag, flag_factory.configs["dark_mode"], ctx(), production
    )

    assert result.enabled is True
    assert result.value is True
    assert result.reason == "default"


@pytest.mark.asyncio
async def test_boolean_targeting_by_user_id(feature_evaluator, flag_factory, production):
    flag = flag_factory.create("admin_tools", targeting_rules={"user_ids": ["user-1"]})
    config = flag_factory.configs["admin_tools"]
    config.enabled = False  # targeting wins even over the config default

    hit = await feature_evaluator.evaluate_boolean(flag, config, ctx("user-1"), production)
    miss = await feature_evaluator.evaluate_boolean(flag, config, ctx("user-2"), production)

    assert (hit.enabled, hit.reason) == (True, "targeting_rule")
    assert (miss.enabled, miss.reason) == (False, "default")


@pytest.mark.asyncio
async def test_targeting_by_attribute(feature_evaluator, flag_factory, production):
    flag = flag_factory.create(
        "enterprise_reports",
        targeting_rules={"attributes": {"plan": "enterprise", "internal": True}},
    )
    config = flag_factory.configs["enterprise_reports"]
    config.enabled = False

    by_plan = await feature_evaluator.evaluate_boolean(flag, config, ctx(plan="enterprise"), production)
    by_flag = await feature_evaluator.evaluate_boolean(flag, config, ctx(plan="free", internal=True), production)
    neither = await feature_evaluator.evaluate_boolean(flag, config, ctx(plan="free"), production)

    assert by_plan.reason == "targeting_rule"
    assert by_flag.reason == "targeting_rule"
    assert neither.reason == "default"


@pytest.mark.asyncio
async def test_targeting_by_segment(feature_evaluator, flag_factory, production, beta_segment):
    flag = flag_factory.create(
        "beta_dashboard",
        targeting_rules={"segments": ["missing_segment", "beta_testers"]},
    )
    config = flag_factory.configs["beta_dashboard"]
    config.enabled = False

    tester = await feature_evaluator.evaluate_boolean(flag, config, ctx(beta=True), production)
    other = await feature_evaluator.evaluate_boolean(flag, config, ctx(beta=False), production)

    assert tester.reason == "targeting_rule"
    assert other.reason == "default"


@pytest.mark.asyncio
async def test_segment_fetch_failure_skips_segment(hasher, queue, flaky_repository):
    env = flaky_repository.add_environment(FeatureEnvironment(name="production"))
    flag = flaky_repository.add_flag(FeatureFlag(key="beta"))
    config = FeatureFlagConfig(
        feature_flag_id=flag.id,
        environment_id=env.id,
        enabled=False,
        targeting_rules={"segments": ["beta_testers"], "user_ids": ["user-1"]},
    )
    flaky_repository.failing.add("get_user_segment")
    evaluator = FeatureEvaluator(hasher, SegmentEvaluator(), flaky_repository, queue)

    result = await evaluator.evaluate_boolean(flag, config, ctx("user-1"), env)

    # The segment is skipped; the user id rule still matches
    assert result.reason == "targeting_rule"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rules",
    [
        ["beta_testers"],
        {"segments": "beta_testers"},
        {"user_ids": "user-1"},
        {"attributes": ["plan"]},
    ],
)
async def test_malformed_targeting_rules_raise(feature_evaluator, flag_factory, production, rules):
    flag = flag_factory.create("broken", targeting_rules=rules)

    with pytest.raises(TargetingRuleError):
        await feature_evaluator.evaluate_boolean(flag, flag_factory.configs["broken"], ctx(), production)


# ============ Percentage ============


@pytest.mark.asyncio
async def test_rollout_zero_enables_nobody(feature_evaluator, flag_factory, production, queue):
    flag = flag_factory.create("zero", type=FlagType.PERCENTAGE, rollout=0)
    config = flag_factory.configs["zero"]

    for i in range(200):
        result = await feature_evaluator.evaluate_percentage(flag, config, ctx(f"user-{i}"), production)
        assert result.enabled is False
        assert result.reason == "rollout_excluded"

    # Nothing is persisted for a zero rollout
    assert await queue.queue_length() == 0


@pytest.mark.asyncio
async def test_rollout_hundred_enables_everybody(feature_evaluator, flag_factory, production):
    for n in range(3):
        flag = flag_factory.create(f"full_{n}", type=FlagType.PERCENTAGE, rollout=100)
        config = flag_factory.configs[f"full_{n}"]

        for i in range(200):
            result = await feature_evaluator.evaluate_percentage(flag, config, ctx(f"user-{i}"), production)
            assert result.enabled is True
            assert result.reason == "rollout_included"


@pytest.mark.asyncio
async def test_rollout_matches_hash(feature_evaluator, flag_factory, production, hasher, queue):
    flag = flag_factory.create("beta", type=FlagType.PERCENTAGE, rollout=50)
    config = flag_factory.configs["beta"]

    result = await feature_evaluator.evaluate_percentage(flag, config, ctx("userA"), production)

    expected = hasher.hash_to_percentage("userA", "beta", str(flag.id)) <= 50
    assert result.enabled is expected
    assert result.reason == ("rollout_included" if expected else "rollout_excluded")
    assert await queue.queue_length() == 1


@pytest.mark.asyncio
async def test_rollout_roughly_matches_percentage(feature_evaluator, flag_factory, production):
    flag = flag_factory.create("quarter", type=FlagType.PERCENTAGE, rollout=25)
    config = flag_factory.configs["quarter"]

    enabled = 0
    for i in range(1000):
        result = await feature_evaluator.evaluate_percentage(flag, config, ctx(f"user-{i}"), production)
        enabled += result.enabled

    # Buckets 0..25 out of 0..100
    assert 180 <= enabled <= 330


@pytest.mark.asyncio
async def test_anonymous_user_is_excluded(feature_evaluator, flag_factory, production, queue):
    flag = flag_factory.create("beta", type=FlagType.PERCENTAGE, rollout=100)

    result = await feature_evaluator.evaluate_percentage(
        flag, flag_factory.configs["beta"], ctx(user_id=None), production
    )

    assert (result.enabled, result.reason) == (False, "rollout_excluded")
    assert await queue.queue_length() == 0


@pytest.mark.asyncio
async def test_sticky_assignment_overrides_rollout(feature_evaluator, flag_factory, production, repository, queue):
    flag = flag_factory.create("beta", type=FlagType.PERCENTAGE, rollout=0)
    await repository.create_user_assignment(
        UserAssignment(
            user_id="user-1",
            environment_id=production.id,
            subject_key="beta",
            feature_flag_id=flag.id,
            enabled=True,
        )
    )

    result = await feature_evaluator.evaluate_percentage(
        flag, flag_factory.configs["beta"], ctx("user-1"), production
    )

    assert (result.enabled, result.reason) == (True, "sticky_assignment")
    assert await queue.queue_length() == 0


@pytest.mark.asyncio
async def test_sticky_assignment_without_outcome_uses_flag_id(feature_evaluator, flag_factory, production, repository):
    flag = flag_factory.create("beta", type=FlagType.PERCENTAGE, rollout=100)
    await repository.create_user_assignment(
        UserAssignment(user_id="user-1", environment_id=production.id, subject_key="beta")
    )

    result = await feature_evaluator.evaluate_percentage(
        flag, flag_factory.configs["beta"], ctx("user-1"), production
    )

    assert (result.enabled, result.reason) == (False, "sticky_assignment")


@pytest.mark.asyncio
async def test_rollout_enqueues_assignment(feature_evaluator, flag_factory, production, repository, queue):
    flag = flag_factory.create("beta", type=FlagType.PERCENTAGE, rollout=100)

    register_feature_tasks(queue, repository)
    await queue.start()
    await feature_evaluator.evaluate_percentage(flag, flag_factory.configs["beta"], ctx("user-1"), production)
    await queue.join()

    assignment = await repository.get_user_assignment("user-1", production.id, "beta")
    assert assignment is not None
    assert assignment.enabled is True
    assert assignment.feature_flag_id == flag.id
    assert assignment.context["assigned_by"] == "evaluator"


# ============ Variant ============


@pytest.mark.asyncio
async def test_variant_flag_default_variants(feature_evaluator, flag_factory, production):
    flag = flag_factory.create("button_color", type=FlagType.VARIANT, rollout=100)
    config = flag_factory.configs["button_color"]

    seen = Counter()
    for i in range(400):
        result = await feature_evaluator.evaluate_variant(flag, config, ctx(f"user-{i}"), production)
        assert result.enabled is True
        assert result.reason == "variant_assignment"
        assert result.value == result.variant
        seen[result.variant] += 1

    assert set(seen) == {"variant_a", "variant_b"}


@pytest.mark.asyncio
async def test_variant_flag_configured_weights(feature_evaluator, flag_factory, production):
    flag = flag_factory.create(
        "button_color",
        type=FlagType.VARIANT,
        rollout=100,
        variants=[FlagVariant("red", 0), FlagVariant("blue", 5)],
    )
    config = flag_factory.configs["button_color"]

    for i in range(50):
        result = await feature_evaluator.evaluate_variant(flag, config, ctx(f"user-{i}"), production)
        assert result.variant == "blue"


@pytest.mark.asyncio
async def test_variant_flag_is_stable_per_user(feature_evaluator, flag_factory, production):
    flag = flag_factory.create("button_color", type=FlagType.VARIANT, rollout=100)
    config = flag_factory.configs["button_color"]

    first = await feature_evaluator.evaluate_variant(flag, config, ctx("user-7"), production)
    second = await feature_evaluator.evaluate_variant(flag, config, ctx("user-7"), production)

    assert first.variant == second.variant


@pytest.mark.asyncio
async def test_variant_flag_outside_rollout_is_control(feature_evaluator, flag_factory, production):
    flag = flag_factory.create("button_color", type=FlagType.VARIANT, rollout=0)

    result = await feature_evaluator.evaluate_variant(
        flag, flag_factory.configs["button_color"], ctx(), production
    )

    assert result.enabled is False
    assert result.variant == "control"
    assert result.value == "control"
    assert result.reason == "rollout_excluded"


@pytest.mark.asyncio
async def test_variant_flag_targeting_gives_treatment(feature_evaluator, flag_factory, production):
    flag = flag_factory.create(
        "button_color", type=FlagType.VARIANT, rollout=0, targeting_rules={"user_ids": ["user-1"]}
    )

    result = await feature_evaluator.evaluate_variant(
        flag, flag_factory.configs["button_color"], ctx("user-1"), production
    )

    assert (result.enabled, result.variant, result.reason) == (True, "treatment", "targeting_rule")


# ============ Experiments ============


@pytest.mark.asyncio
async def test_experiment_requires_user(experiment_evaluator, experiment_factory, production):
    experiment, variants = experiment_factory.create("pricing")

    result = await experiment_evaluator.evaluate_experiment(experiment, variants, ctx(None), production)

    assert result.in_experiment is False
    assert result.reason == "no_user_id"


@pytest.mark.asyncio
async def test_zero_traffic_excludes_everyone(experiment_evaluator, experiment_factory, production, queue):
    experiment, variants = experiment_factory.create("pricing", traffic=0)

    for i in range(300):
        result = await experiment_evaluator.evaluate_experiment(
            experiment, variants, ctx(f"user-{i}"), production
        )
        assert result.in_experiment is False
        assert result.reason == "traffic_excluded"
        assert result.variant is None

    assert await queue.queue_length() == 0


@pytest.mark.asyncio
async def test_full_traffic_assigns_everyone(experiment_evaluator, experiment_factory, production):
    experiment, variants = experiment_factory.create("pricing", traffic=100)

    for i in range(300):
        result = await experiment_evaluator.evaluate_experiment(
            experiment, variants, ctx(f"user-{i}"), production
        )
        assert result.in_experiment is True
        assert result.reason == "variant_assignment"
        assert result.variant in {"control", "treatment"}
        assert result.payload == {"variant": result.variant}


@pytest.mark.asyncio
async def test_fifty_fifty_split(experiment_evaluator, experiment_factory, production):
    experiment, variants = experiment_factory.create("pricing", weights=(50, 50))

    counts = Counter()
    for i in range(1000):
        result = await experiment_evaluator.evaluate_experiment(
            experiment, variants, ctx(f"user-{i}"), production
        )
        counts[result.variant] += 1

    assert 450 <= counts["control"] <= 550
    assert 450 <= counts["treatment"] <= 550


@pytest.mark.asyncio
async def test_zero_weights(experiment_evaluator, experiment_factory, production):
    experiment, variants = experiment_factory.create("pricing", weights=(0, 0))

    result = await experiment_evaluator.evaluate_experiment(experiment, variants, ctx(), production)

    assert result.reason == "no_variant_weights"
    assert result.in_experiment is False


@pytest.mark.asyncio
async def test_experiment_sticky_assignment(experiment_evaluator, experiment_factory, production, repository, queue):
    experiment, variants = experiment_factory.create("pricing", weights=(100, 0))
    treatment = variants[1]
    await repository.create_user_assignment(
        UserAssignment(
            user_id="user-1",
            environment_id=production.id,
            subject_key="pricing",
            experiment_id=experiment.id,
            variant_id=treatment.id,
        )
    )

    result = await experiment_evaluator.evaluate_experiment(experiment, variants, ctx("user-1"), production)

    assert result.reason == "sticky_assignment"
    assert result.variant == "treatment"
    assert result.variant_id == treatment.id
    assert await queue.queue_length() == 0


@pytest.mark.asyncio
async def test_experiment_enqueues_assignment(experiment_evaluator, experiment_factory, production, queue):
    experiment, variants = experiment_factory.create("pricing")

    await experiment_evaluator.evaluate_experiment(experiment, variants, ctx("user-1"), production)

    assert await queue.queue_length() == 1
    task = queue._queue.get_nowait()
    assert task.task_name == ASSIGNMENT_TASK
    assignment = task.kwargs["assignment"]
    assert assignment.subject_key == "pricing"
    assert assignment.experiment_id == experiment.id
