"""Unit tests for the Monitoring Scheduler using mocked services."""

import asyncio
import uuid
from unittest.mock import AsyncMock

import numpy as np
import pytest

from aumos_drift_patcher.core.domain import (
    DriftResult,
    DriftType,
    FeatureClipping,
    Model,
    Patch,
    PatchStatus,
    SampleBatch,
    ValidationMetrics,
    ValidationResult,
)
from aumos_drift_patcher.core.scheduler import MonitoringScheduler
from aumos_drift_patcher.errors import ConcurrencyError, NotFoundError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_model(name: str = "churn") -> Model:
    return Model(name=name, version="1", input_features=["a", "b"], output_labels=["stay", "leave"])


def make_result(model: Model, score: float) -> DriftResult:
    return DriftResult(
        model_id=model.id,
        drift_score=score,
        drift_type=DriftType.COVARIATE if score >= 0.2 else DriftType.NO_DRIFT,
        is_drift_detected=score >= 0.2,
        severity="high" if score >= 0.5 else "low",
        feature_drifts=[],
    )


def make_patch(model: Model, safety: float, reduction: float, status: PatchStatus = PatchStatus.VALIDATED) -> Patch:
    metrics = ValidationMetrics(
        accuracy=0.9,
        precision=0.9,
        recall=0.9,
        f1_score=0.9,
        drift_score_before_patch=0.6,
        drift_score_after_patch=0.6 * (1 - reduction),
        drift_reduction=reduction,
        performance_delta=0.0,
        safety_score=safety,
        confidence_interval_lower=0.8,
        confidence_interval_upper=0.95,
    )
    return Patch(
        model_id=model.id,
        drift_result_id=uuid.uuid4(),
        configuration=FeatureClipping((0,), (float("-inf"),), (float("inf"),), (-1.0,), (1.0,)),
        status=status,
        validation_result=ValidationResult(is_valid=status is PatchStatus.VALIDATED, metrics=metrics),
    )


def make_scheduler(**services) -> MonitoringScheduler:
    batch = SampleBatch(features=np.zeros((10, 2)))
    log_source = AsyncMock()
    log_source.fetch_reference.return_value = batch
    log_source.fetch_current.return_value = batch
    defaults = {
        "models": AsyncMock(),
        "log_source": log_source,
        "analysis": AsyncMock(),
        "synthesis": AsyncMock(),
        "lifecycle": AsyncMock(),
    }
    defaults.update(services)
    defaults["analysis"].purge_older_than.return_value = 0
    return MonitoringScheduler(
        **defaults,
        interval_seconds=3600.0,
        auto_evaluate_threshold=0.3,
        auto_apply_safety_threshold=0.7,
        auto_apply_drift_reduction_threshold=0.1,
    )


@pytest.fixture
def model() -> Model:
    return make_model()


# ---------------------------------------------------------------------------
# Model checks
# ---------------------------------------------------------------------------


class TestModelCheck:
    """Decisions taken for one model in one cycle."""

    async def test_zero_drift_never_synthesizes(self, model: Model) -> None:
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [model]
        scheduler._analysis.analyze.return_value = make_result(model, 0.0)

        (check,) = await scheduler.run_cycle()

        scheduler._synthesis.synthesize.assert_not_awaited()
        scheduler._lifecycle.apply.assert_not_awaited()
        assert check.patches == []
        assert scheduler.stats.checks_performed == 1
        assert scheduler.stats.drifts_detected == 0

    async def test_score_at_evaluate_threshold_does_not_synthesize(self, model: Model) -> None:
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [model]
        scheduler._analysis.analyze.return_value = make_result(model, 0.3)
        await scheduler.run_cycle()
        scheduler._synthesis.synthesize.assert_not_awaited()

    async def test_only_the_first_eligible_patch_is_applied(self, model: Model) -> None:
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [model]
        scheduler._analysis.analyze.return_value = make_result(model, 0.6)
        unsafe = make_patch(model, safety=0.6, reduction=0.5)
        best = make_patch(model, safety=0.9, reduction=0.4)
        runner_up = make_patch(model, safety=0.85, reduction=0.3)
        scheduler._synthesis.synthesize.return_value = [unsafe, best, runner_up]
        scheduler._lifecycle.apply.return_value = best

        (check,) = await scheduler.run_cycle()

        scheduler._lifecycle.apply.assert_awaited_once_with(best.id)
        assert check.applied_patch_id == best.id
        assert scheduler.stats.patches_synthesized == 3
        assert scheduler.stats.patches_auto_applied == 1
        assert scheduler._synthesis.synthesize.await_args.kwargs["source"] == "scheduler"

    async def test_ineligible_patches_stay_for_review(self, model: Model) -> None:
        """Failed, unsafe or ineffective patches are never auto-applied."""
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [model]
        scheduler._analysis.analyze.return_value = make_result(model, 0.8)
        scheduler._synthesis.synthesize.return_value = [
            make_patch(model, safety=0.95, reduction=0.5, status=PatchStatus.FAILED),
            make_patch(model, safety=0.7, reduction=0.5),
            make_patch(model, safety=0.95, reduction=0.1),
        ]
        (check,) = await scheduler.run_cycle()
        scheduler._lifecycle.apply.assert_not_awaited()
        assert check.applied_patch_id is None

    async def test_apply_conflict_is_recorded_not_raised(self, model: Model) -> None:
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [model]
        scheduler._analysis.analyze.return_value = make_result(model, 0.8)
        scheduler._synthesis.synthesize.return_value = [make_patch(model, safety=0.9, reduction=0.5)]
        scheduler._lifecycle.apply.side_effect = ConcurrencyError("busy")

        (check,) = await scheduler.run_cycle()

        assert check.error == "busy"
        assert check.applied_patch_id is None
        assert scheduler.stats.patches_auto_applied == 0

    async def test_failing_model_does_not_stop_the_cycle(self) -> None:
        broken, healthy = make_model("broken"), make_model("healthy")
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [broken, healthy]
        scheduler._log_source.fetch_reference.side_effect = [
            NotFoundError("no reference"),
            SampleBatch(features=np.zeros((10, 2))),
        ]
        scheduler._analysis.analyze.return_value = make_result(healthy, 0.1)

        checks = await scheduler.run_cycle()

        assert [c.model_id for c in checks] == [broken.id, healthy.id]
        assert checks[0].error == "no reference"
        assert checks[1].error is None
        assert scheduler.stats.check_failures == 1
        assert scheduler.stats.cycles_completed == 1
        scheduler._analysis.purge_older_than.assert_awaited_once()

    async def test_check_model_now(self, model: Model) -> None:
        scheduler = make_scheduler()
        scheduler._models.get_model.return_value = model
        scheduler._analysis.analyze.return_value = make_result(model, 0.25)
        check = await scheduler.check_model_now(model.id)
        assert check.drift_result.drift_score == 0.25
        assert check.to_dict()["is_drift_detected"] is True
        assert scheduler.stats.drifts_detected == 1


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    """Start/stop behaviour and overlapping cycles."""

    async def test_overlapping_cycle_is_skipped(self) -> None:
        release = asyncio.Event()

        async def slow_list(active_only: bool = False) -> list[Model]:
            await release.wait()
            return []

        scheduler = make_scheduler()
        scheduler._models.list_models.side_effect = slow_list
        first = asyncio.create_task(scheduler.run_cycle())
        while scheduler._models.list_models.await_count == 0:
            await asyncio.sleep(0)

        assert await scheduler.run_cycle() == []
        assert scheduler.stats.ticks_skipped == 1

        release.set()
        assert await first == []
        assert scheduler.stats.cycles_completed == 1

    async def test_start_and_stop_are_idempotent(self) -> None:
        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = []
        await scheduler.start()
        await scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
        await scheduler.stop()
        assert not scheduler.is_running

    async def test_stop_waits_for_in_flight_apply(self, model: Model) -> None:
        """Cancelling the cycle must not interrupt a patch application."""
        apply_started = asyncio.Event()
        release = asyncio.Event()
        finished = []
        patch = make_patch(model, safety=0.9, reduction=0.5)

        async def slow_apply(patch_id: uuid.UUID) -> Patch:
            apply_started.set()
            await release.wait()
            finished.append(patch_id)
            return patch

        scheduler = make_scheduler()
        scheduler._models.list_models.return_value = [model]
        scheduler._analysis.analyze.return_value = make_result(model, 0.8)
        scheduler._synthesis.synthesize.return_value = [patch]
        scheduler._lifecycle.apply.side_effect = slow_apply

        await scheduler.start()
        await asyncio.wait_for(apply_started.wait(), timeout=5)
        stopping = asyncio.create_task(scheduler.stop())
        for _ in range(5):
            await asyncio.sleep(0)
        assert not stopping.done()

        release.set()
        await asyncio.wait_for(stopping, timeout=5)
        assert finished == [patch.id]
        assert not scheduler.is_running

    async def test_unexpected_cycle_error_does_not_escape_the_tick(self) -> None:
        """A crash outside the per-model checks is logged and the next tick can run."""
        scheduler = make_scheduler()
        scheduler._models.list_models.side_effect = [RuntimeError("connection pool exhausted"), []]

        await scheduler.start()
        while scheduler._models.list_models.await_count == 0:
            await asyncio.sleep(0)
        cycle = scheduler._cycle_task
        await asyncio.wait_for(asyncio.gather(cycle), timeout=5)
        await scheduler.stop()

        assert cycle.exception() is None
        assert scheduler.stats.cycles_completed == 0
        assert await scheduler.run_cycle() == []
        assert scheduler.stats.cycles_completed == 1

    def test_stats_serialise(self) -> None:
        scheduler = make_scheduler()
        stats = scheduler.stats.to_dict()
        assert stats["checks_performed"] == 0
        assert stats["last_check_time"] is None
