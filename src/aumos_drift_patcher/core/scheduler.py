"""Monitoring Scheduler.

A background asyncio task that, every ``interval_seconds``, checks each
active model for drift and reacts autonomously:

    fetch batches → analyse drift → (score > auto-evaluate threshold)
    → synthesize + validate patches → auto-apply the best eligible patch

A patch is eligible for auto-apply when it is VALIDATED with
safety > ``auto_apply_safety_threshold`` and drift reduction >
``auto_apply_drift_reduction_threshold``; at most one patch is applied per
model per cycle and the rest stay VALIDATED for manual review.

Only one cycle runs at a time; a tick that fires while the previous cycle is
still running is skipped and counted. Apply calls are shielded, so stopping
the scheduler cancels the cycle but waits for an in-flight apply to finish.
"""

import asyncio
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from aumos_drift_patcher.core.domain import DriftResult, Model, Patch, PatchStatus, utcnow
from aumos_drift_patcher.core.interfaces import IInferenceLogSource
from aumos_drift_patcher.core.services import (
    DriftAnalysisService,
    ModelRegistryService,
    PatchLifecycleService,
    PatchSynthesisService,
)
from aumos_drift_patcher.errors import DriftPatcherError
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class MonitoringStats:
    """Counters accumulated since the scheduler was created."""

    models_monitored: int = 0
    checks_performed: int = 0
    drifts_detected: int = 0
    patches_synthesized: int = 0
    patches_auto_applied: int = 0
    check_failures: int = 0
    ticks_skipped: int = 0
    cycles_completed: int = 0
    last_check_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "models_monitored": self.models_monitored,
            "checks_performed": self.checks_performed,
            "drifts_detected": self.drifts_detected,
            "patches_synthesized": self.patches_synthesized,
            "patches_auto_applied": self.patches_auto_applied,
            "check_failures": self.check_failures,
            "ticks_skipped": self.ticks_skipped,
            "cycles_completed": self.cycles_completed,
            "last_check_time": self.last_check_time.isoformat() if self.last_check_time else None,
        }


@dataclass
class ModelCheck:
    """Outcome of checking one model."""

    model_id: uuid.UUID
    drift_result: DriftResult | None = None
    patches: list[Patch] = field(default_factory=list)
    applied_patch_id: uuid.UUID | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": str(self.model_id),
            "drift_result_id": str(self.drift_result.id) if self.drift_result else None,
            "drift_score": self.drift_result.drift_score if self.drift_result else None,
            "is_drift_detected": self.drift_result.is_drift_detected if self.drift_result else False,
            "patch_ids": [str(p.id) for p in self.patches],
            "applied_patch_id": str(self.applied_patch_id) if self.applied_patch_id else None,
            "error": self.error,
        }


class MonitoringScheduler:
    """Periodic drift check and autonomous patching of active models.

    Args:
        models: Model registry (source of active models).
        log_source: Supplies reference and current batches per model.
        analysis: Drift analysis service.
        synthesis: Patch synthesis service.
        lifecycle: Patch lifecycle service (apply).
        interval_seconds: Delay between ticks.
        auto_evaluate_threshold: Drift score above which patches are synthesized.
        auto_apply_safety_threshold: Minimum (exclusive) safety score for auto-apply.
        auto_apply_drift_reduction_threshold: Minimum (exclusive) drift reduction for auto-apply.
        retention_days: Drift results older than this are purged each cycle.
    """

    def __init__(
        self,
        models: ModelRegistryService,
        log_source: IInferenceLogSource,
        analysis: DriftAnalysisService,
        synthesis: PatchSynthesisService,
        lifecycle: PatchLifecycleService,
        interval_seconds: float = 30.0,
        auto_evaluate_threshold: float = 0.3,
        auto_apply_safety_threshold: float = 0.7,
        auto_apply_drift_reduction_threshold: float = 0.1,
        retention_days: int = 30,
    ) -> None:
        self._models = models
        self._log_source = log_source
        self._analysis = analysis
        self._synthesis = synthesis
        self._lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self.auto_evaluate_threshold = auto_evaluate_threshold
        self.auto_apply_safety_threshold = auto_apply_safety_threshold
        self.auto_apply_drift_reduction_threshold = auto_apply_drift_reduction_threshold
        self.retention_days = retention_days

        self.stats = MonitoringStats()
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()
        self._mutations: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start ticking. Calling start on a running scheduler does nothing."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop(), name="drift-monitoring-loop")
        logger.info("Monitoring scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop ticking and wait for any in-flight apply to complete. Idempotent."""
        if not self._running:
            return
        self._running = False
        for task in (self._loop_task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._loop_task = None
        self._cycle_task = None
        if self._mutations:
            await asyncio.gather(*list(self._mutations), return_exceptions=True)
        logger.info("Monitoring scheduler stopped", **self.stats.to_dict())

    async def _loop(self) -> None:
        while self._running:
            if self._cycle_task is not None and not self._cycle_task.done():
                self.stats.ticks_skipped += 1
                logger.warning("Monitoring tick skipped, previous cycle still running")
            else:
                self._cycle_task = asyncio.create_task(self._tick(), name="drift-monitoring-cycle")
            await asyncio.sleep(self.interval_seconds)

    async def _tick(self) -> None:
        try:
            await self.run_cycle()
        except DriftPatcherError as exc:
            logger.error("Monitoring cycle failed", error=str(exc), error_code=exc.error_code.value)
        except Exception:
            # The cycle task is never awaited, so this is the only place the failure surfaces
            logger.exception("Monitoring cycle crashed")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_cycle(self) -> list[ModelCheck]:
        """Check every active model once.

        Returns:
            One ModelCheck per active model; empty when another cycle was
            already running (the call is then counted as a skipped tick).
        """
        if self._cycle_lock.locked():
            self.stats.ticks_skipped += 1
            logger.warning("Monitoring cycle already running, skipping")
            return []

        async with self._cycle_lock:
            models = await self._models.list_models(active_only=True)
            self.stats.models_monitored = len(models)
            checks = []
            for model in models:
                try:
                    checks.append(await self._check_model(model))
                except Exception as exc:
                    self.stats.check_failures += 1
                    logger.exception("Model check failed", model_id=str(model.id))
                    checks.append(ModelCheck(model_id=model.id, error=str(exc)))
            await self._purge_expired()
            self.stats.cycles_completed += 1

        logger.info(
            "Monitoring cycle completed",
            models=len(checks),
            drifted=sum(1 for c in checks if c.drift_result and c.drift_result.is_drift_detected),
            auto_applied=sum(1 for c in checks if c.applied_patch_id),
        )
        return checks

    async def check_model_now(self, model_id: uuid.UUID) -> ModelCheck:
        """Run the full check for one model immediately, outside the tick schedule.

        Raises:
            NotFoundError: If the model does not exist.
        """
        model = await self._models.get_model(model_id)
        return await self._check_model(model)

    async def _check_model(self, model: Model) -> ModelCheck:
        reference = await self._log_source.fetch_reference(model)
        current = await self._log_source.fetch_current(model)
        result = await self._analysis.analyze(model, reference, current)

        self.stats.checks_performed += 1
        self.stats.last_check_time = utcnow()
        if result.is_drift_detected:
            self.stats.drifts_detected += 1

        check = ModelCheck(model_id=model.id, drift_result=result)
        if result.drift_score <= self.auto_evaluate_threshold:
            return check

        patches = await self._synthesis.synthesize(model, result, reference, current, source="scheduler")
        self.stats.patches_synthesized += len(patches)
        check.patches = patches

        for patch in patches:
            if not self._eligible(patch):
                continue
            try:
                await self._shielded(self._lifecycle.apply(patch.id))
            except DriftPatcherError as exc:
                logger.warning("Auto-apply failed", patch_id=str(patch.id), error=str(exc))
                check.error = str(exc)
            else:
                self.stats.patches_auto_applied += 1
                check.applied_patch_id = patch.id
                logger.info(
                    "Patch auto-applied",
                    model_id=str(model.id),
                    patch_id=str(patch.id),
                    patch_type=patch.patch_type.value,
                )
            break
        return check

    def _eligible(self, patch: Patch) -> bool:
        if patch.status is not PatchStatus.VALIDATED or patch.validation_result is None:
            return False
        metrics = patch.validation_result.metrics
        return (
            metrics.safety_score > self.auto_apply_safety_threshold
            and metrics.drift_reduction > self.auto_apply_drift_reduction_threshold
        )

    async def _shielded(self, operation: Awaitable[T]) -> T:
        task = asyncio.ensure_future(operation)
        self._mutations.add(task)
        task.add_done_callback(self._mutations.discard)
        return await asyncio.shield(task)

    async def _purge_expired(self) -> None:
        cutoff = utcnow() - timedelta(days=self.retention_days)
        try:
            await self._analysis.purge_older_than(cutoff)
        except DriftPatcherError as exc:
            logger.warning("Drift result purge failed", error=str(exc))
