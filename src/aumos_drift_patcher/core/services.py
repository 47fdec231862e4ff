"""Business logic services for the AumOS Drift Patcher.

All services depend on repository, store and notification interfaces (not
concrete implementations) and receive dependencies via constructor
injection. Heavy numeric work is offloaded to worker threads with
``asyncio.to_thread``; the event loop only awaits store and sink I/O.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from aumos_drift_patcher.core.aggregator import DriftAggregator
from aumos_drift_patcher.core.candidates import PatchCandidateGenerator
from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    DriftResult,
    Model,
    Patch,
    PatchCandidate,
    PatchConfiguration,
    PatchSnapshot,
    PatchStatus,
    PatchType,
    SampleBatch,
    ValidationResult,
    utcnow,
)
from aumos_drift_patcher.core.interfaces import (
    IDriftResultRepository,
    IModelRepository,
    INotificationSink,
    IPatchStore,
    IPredictor,
)
from aumos_drift_patcher.core.pipeline import PreprocessingState, apply_configuration
from aumos_drift_patcher.core.validator import PatchValidator
from aumos_drift_patcher.errors import (
    ConcurrencyError,
    DriftPatcherError,
    InputError,
    InvalidStateError,
    NotFoundError,
    StoreError,
)
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Share of the current batch held out for patch validation
_HOLDOUT_FRACTION = 0.3
_MIN_HOLDOUT = 5


# ---------------------------------------------------------------------------
# Store retry
# ---------------------------------------------------------------------------


class StoreRetry:
    """Retries store operations that fail with StoreError.

    Deterministic failures (input, state, not-found) are raised immediately;
    StoreError is retried with exponential backoff and re-raised once the
    attempts are exhausted.

    Args:
        attempts: Total attempts including the first call.
        min_wait_seconds: First backoff delay.
        max_wait_seconds: Upper bound for any single delay.
    """

    def __init__(
        self,
        attempts: int = 3,
        min_wait_seconds: float = 0.1,
        max_wait_seconds: float = 2.0,
    ) -> None:
        self.attempts = max(attempts, 1)
        self.min_wait_seconds = min_wait_seconds
        self.max_wait_seconds = max_wait_seconds

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "Store operation failed, retrying",
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome is not None else None,
        )

    async def __call__(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(
                multiplier=self.min_wait_seconds,
                min=self.min_wait_seconds,
                max=self.max_wait_seconds,
            ),
            retry=retry_if_exception_type(StoreError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                result = await operation(*args)
        return result


def split_holdout(current: SampleBatch) -> tuple[SampleBatch, SampleBatch]:
    """Split the current batch into (fitting part, held-out validation part).

    The last 30% of rows (at least five) are held out. Batches too small to
    split are used whole for both parts.
    """
    size = len(current)
    holdout = max(_MIN_HOLDOUT, int(round(size * _HOLDOUT_FRACTION)))
    if size - holdout < _MIN_HOLDOUT:
        return current, current
    return current.take(slice(0, size - holdout)), current.take(slice(size - holdout, size))


def check_compatibility(model: Model, batch: SampleBatch, label: str = "Dataset") -> None:
    """Validate that ``batch`` matches the model's input and output schema.

    Raises:
        InputError: On a feature-count mismatch or out-of-range class labels.
    """
    if batch.num_features != model.num_features:
        raise InputError(
            f"{label} has {batch.num_features} features but model '{model.name}' "
            f"expects {model.num_features}"
        )
    if len(batch) == 0:
        raise InputError(f"{label} is empty")
    if batch.has_labels and len(batch.labels) > 0:
        if batch.labels.min() < 0 or batch.labels.max() >= model.num_classes:
            raise InputError(f"{label} labels must lie in [0, {model.num_classes})")


def _next_state(pre_state: bytes, configuration: PatchConfiguration) -> bytes:
    return apply_configuration(PreprocessingState.from_bytes(pre_state), configuration).to_bytes()


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelRegistryService:
    """Registration and activation of monitored models."""

    def __init__(self, model_repo: IModelRepository, retry: StoreRetry | None = None) -> None:
        """Initialise with injected model repository.

        Args:
            model_repo: Model persistence repository.
            retry: Store retry policy.
        """
        self._models = model_repo
        self._retry = retry or StoreRetry()

    async def register(
        self,
        name: str,
        version: str,
        input_features: list[str],
        output_labels: list[str],
        metadata: dict | None = None,
    ) -> Model:
        """Register a model for monitoring.

        Args:
            name: Model name.
            version: Model version string.
            input_features: Ordered input feature names.
            output_labels: Output class names.
            metadata: Optional declarations (``ensemble_components``,
                ``probabilistic_output``).

        Returns:
            The registered model.

        Raises:
            InputError: If features are missing or duplicated, or ensemble
                components reference unknown features.
        """
        if not input_features:
            raise InputError("A model needs at least one input feature")
        if len(set(input_features)) != len(input_features):
            raise InputError("Input feature names must be unique")
        model = Model(
            name=name,
            version=version,
            input_features=list(input_features),
            output_labels=list(output_labels),
            metadata=dict(metadata or {}),
        )
        model.ensemble_components()
        model = await self._retry(self._models.create, model)
        logger.info("Model registered", model_id=str(model.id), name=name, version=version)
        return model

    async def get_model(self, model_id: uuid.UUID) -> Model:
        """Fetch a model.

        Raises:
            NotFoundError: If the model does not exist.
        """
        model = await self._retry(self._models.get, model_id)
        if model is None:
            raise NotFoundError(f"Model {model_id} not found.")
        return model

    async def list_models(self, active_only: bool = False) -> list[Model]:
        return await self._retry(self._models.list_all, active_only)

    async def set_active(self, model_id: uuid.UUID, is_active: bool) -> Model:
        """Enable or disable scheduled monitoring for a model.

        Raises:
            NotFoundError: If the model does not exist.
        """
        model = await self._retry(self._models.set_active, model_id, is_active)
        if model is None:
            raise NotFoundError(f"Model {model_id} not found.")
        logger.info("Model activation changed", model_id=str(model_id), is_active=is_active)
        return model


# ---------------------------------------------------------------------------
# Drift analysis
# ---------------------------------------------------------------------------


class DriftAnalysisService:
    """Runs Comparator + Aggregator for a model and records the result.

    Args:
        comparator: Per-feature drift measurement.
        aggregator: Aggregate scoring and drift-type classification.
        drift_repo: DriftResult persistence.
        patch_store: Holds each model's preprocessing state.
        notifier: Receives ``drift_detected`` for positive results.
        retry: Store retry policy.
    """

    def __init__(
        self,
        comparator: DistributionComparator,
        aggregator: DriftAggregator,
        drift_repo: IDriftResultRepository,
        patch_store: IPatchStore,
        notifier: INotificationSink,
        retry: StoreRetry | None = None,
    ) -> None:
        self._comparator = comparator
        self._aggregator = aggregator
        self._results = drift_repo
        self._store = patch_store
        self._notifier = notifier
        self._retry = retry or StoreRetry()

    def diagnose(self, model: Model, reference: SampleBatch, current: SampleBatch) -> DriftResult:
        """Pure, synchronous drift diagnosis (no persistence).

        Args:
            model: Model metadata.
            reference: Reference batch.
            current: Current batch.

        Returns:
            Unsaved DriftResult.

        Raises:
            InputError: If either batch does not match the model schema.
        """
        check_compatibility(model, reference, "Reference batch")
        check_compatibility(model, current, "Current batch")
        feature_drifts = self._comparator.compare(reference.features, current.features, model.input_features)
        labelled = reference.has_labels and current.has_labels
        return self._aggregator.aggregate(
            model_id=model.id,
            feature_drifts=feature_drifts,
            num_classes=model.num_classes,
            reference_features=reference.features,
            current_features=current.features,
            reference_labels=reference.labels if labelled else None,
            current_labels=current.labels if labelled else None,
        )

    async def analyze(self, model: Model, reference: SampleBatch, current: SampleBatch) -> DriftResult:
        """Diagnose drift, persist the result and publish positive detections.

        Also initialises the model's preprocessing state from the reference
        batch the first time a model is analysed.

        Returns:
            The persisted DriftResult.

        Raises:
            InputError: If the batches do not match the model.
            StoreError: If persistence keeps failing after retries.
        """
        result = await asyncio.to_thread(self.diagnose, model, reference, current)
        result = await self._retry(self._results.save, result)
        await self.ensure_state(model, reference)

        logger.info(
            "Drift analysis completed",
            model_id=str(model.id),
            drift_result_id=str(result.id),
            drift_score=round(result.drift_score, 4),
            drift_type=result.drift_type.value,
            severity=result.severity,
            is_drift_detected=result.is_drift_detected,
        )
        if result.is_drift_detected:
            await self._notifier.drift_detected(result)
        return result

    async def ensure_state(self, model: Model, reference: SampleBatch) -> PreprocessingState:
        """Return the model's preprocessing state, creating it from ``reference`` if absent."""
        blob = await self._retry(self._store.get_state, model.id)
        if blob is not None:
            return PreprocessingState.from_bytes(blob)
        state = PreprocessingState.from_reference(
            reference.features, model.num_classes, len(model.ensemble_components())
        )
        await self._retry(self._store.save_state, model.id, state.to_bytes())
        logger.info("Preprocessing state initialised", model_id=str(model.id))
        return state

    async def get_result(self, result_id: uuid.UUID) -> DriftResult:
        """Fetch a drift result.

        Raises:
            NotFoundError: If the result does not exist.
        """
        result = await self._retry(self._results.get, result_id)
        if result is None:
            raise NotFoundError(f"Drift result {result_id} not found.")
        return result

    async def list_results(self, model_id: uuid.UUID, limit: int = 50) -> list[DriftResult]:
        return await self._retry(self._results.list_by_model, model_id, limit)

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete drift results recorded before ``cutoff``; patches are kept."""
        deleted = await self._retry(self._results.purge_older_than, cutoff)
        if deleted:
            logger.info("Drift results purged", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted


# ---------------------------------------------------------------------------
# Patch lifecycle (store & snapshot manager)
# ---------------------------------------------------------------------------


class PatchLifecycleService:
    """Creates, validates, applies and rolls back patches.

    Apply and rollback are serialised per model: a second request while one
    is in flight fails fast with ConcurrencyError. Each apply stores a
    snapshot of the serialized preprocessing state before and after the
    change; rollback restores the pre-apply bytes exactly and is only
    allowed in reverse order of application.

    Args:
        patch_store: Patch, snapshot and state persistence.
        notifier: Receives patch lifecycle events.
        retry: Store retry policy.
    """

    def __init__(
        self,
        patch_store: IPatchStore,
        notifier: INotificationSink,
        retry: StoreRetry | None = None,
    ) -> None:
        self._store = patch_store
        self._notifier = notifier
        self._retry = retry or StoreRetry()
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def is_busy(self, model_id: uuid.UUID) -> bool:
        """True while an apply or rollback is in flight for the model."""
        lock = self._locks.get(model_id)
        return lock is not None and lock.locked()

    def _lock_for(self, model_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.setdefault(model_id, asyncio.Lock())
        if lock.locked():
            raise ConcurrencyError(f"Another apply or rollback is in progress for model {model_id}")
        return lock

    async def get_patch(self, patch_id: uuid.UUID) -> Patch:
        """Fetch a patch.

        Raises:
            NotFoundError: If the patch does not exist.
        """
        patch = await self._retry(self._store.get_patch, patch_id)
        if patch is None:
            raise NotFoundError(f"Patch {patch_id} not found.")
        return patch

    async def list_patches(self, model_id: uuid.UUID, status: PatchStatus | None = None) -> list[Patch]:
        return await self._retry(self._store.list_patches, model_id, status)

    async def current_state(self, model_id: uuid.UUID) -> PreprocessingState:
        """The model's current preprocessing state.

        Raises:
            NotFoundError: If the model has never been analysed.
        """
        blob = await self._retry(self._store.get_state, model_id)
        if blob is None:
            raise NotFoundError(f"Model {model_id} has no preprocessing state; run a drift analysis first.")
        return PreprocessingState.from_bytes(blob)

    async def export_document(self, patch_id: uuid.UUID) -> dict:
        """Export document of a patch (configuration, status, validation)."""
        return (await self.get_patch(patch_id)).to_dict()

    async def create_patches(
        self,
        drift_result: DriftResult,
        candidates: list[PatchCandidate],
        source: str = "api",
    ) -> list[Patch]:
        """Persist candidates as CREATED patches.

        Args:
            drift_result: Diagnosis the candidates address.
            candidates: Ranked candidates.
            source: Who requested them (``scheduler``, ``api``, ``interactive``).

        Returns:
            The created patches, in candidate order.
        """
        if not candidates:
            return []
        patches = [
            Patch(
                model_id=drift_result.model_id,
                drift_result_id=drift_result.id,
                configuration=candidate.configuration,
                metadata={
                    "title": candidate.title,
                    "description": candidate.description,
                    "candidateScore": candidate.score,
                    "predictedDriftReduction": candidate.predicted_drift_reduction,
                    "isRecommended": candidate.is_recommended,
                    "source": source,
                },
            )
            for candidate in candidates
        ]
        patches = await self._retry(self._store.add_patches, patches)
        for patch in patches:
            await self._notifier.patch_synthesized(patch)
        logger.info(
            "Patches created",
            model_id=str(drift_result.model_id),
            drift_result_id=str(drift_result.id),
            count=len(patches),
        )
        return patches

    async def record_validation(self, patch_id: uuid.UUID, result: ValidationResult) -> Patch:
        """Attach a validation result: CREATED → VALIDATED, or FAILED when invalid.

        Raises:
            NotFoundError: If the patch does not exist.
            InvalidStateError: If the patch is not CREATED.
        """
        patch = await self.get_patch(patch_id)
        if patch.status is not PatchStatus.CREATED:
            raise InvalidStateError(
                f"Patch {patch_id} is {patch.status.value}; only CREATED patches can be validated"
            )
        patch.validation_result = result
        patch.transition(PatchStatus.VALIDATED if result.is_valid else PatchStatus.FAILED)
        patch = await self._retry(self._store.update_patch, patch)
        logger.info(
            "Patch validation recorded",
            patch_id=str(patch_id),
            status=patch.status.value,
            safety_score=round(result.metrics.safety_score, 4),
        )
        return patch

    async def apply(self, patch_id: uuid.UUID) -> Patch:
        """Apply a VALIDATED patch to its model's preprocessing state.

        Snapshot, new state and APPLIED status are committed atomically. A
        failure after the model lock is taken marks the patch FAILED and
        leaves the persisted state untouched.

        Returns:
            The APPLIED patch.

        Raises:
            NotFoundError: If the patch does not exist.
            InvalidStateError: If the patch is not VALIDATED.
            ConcurrencyError: If an apply or rollback is in flight for the model.
        """
        patch = await self.get_patch(patch_id)
        if patch.status is not PatchStatus.VALIDATED:
            raise InvalidStateError(
                f"Patch {patch_id} is {patch.status.value}; only VALIDATED patches can be applied"
            )

        async with self._lock_for(patch.model_id):
            patch = await self.get_patch(patch_id)
            if patch.status is not PatchStatus.VALIDATED:
                raise InvalidStateError(
                    f"Patch {patch_id} is {patch.status.value}; only VALIDATED patches can be applied"
                )
            try:
                pre_state = await self._retry(self._store.get_state, patch.model_id)
                if pre_state is None:
                    raise InvalidStateError(f"Model {patch.model_id} has no preprocessing state")
                post_state = await asyncio.to_thread(_next_state, pre_state, patch.configuration)
                snapshot = PatchSnapshot(
                    patch_id=patch.id,
                    model_id=patch.model_id,
                    pre_apply_state=pre_state,
                    post_apply_state=post_state,
                )
                patch.transition(PatchStatus.APPLIED)
                patch.applied_at = snapshot.timestamp
                await self._retry(self._store.commit_application, patch, snapshot)
            except (DriftPatcherError, ValueError) as exc:
                await self._mark_failed(patch_id, str(exc))
                raise

        logger.info(
            "Patch applied",
            patch_id=str(patch.id),
            model_id=str(patch.model_id),
            patch_type=patch.patch_type.value,
        )
        await self._notifier.patch_applied(patch)
        return patch

    async def _mark_failed(self, patch_id: uuid.UUID, reason: str) -> None:
        try:
            patch = await self.get_patch(patch_id)
            patch.transition(PatchStatus.FAILED)
            patch.metadata["failureReason"] = reason
            await self._retry(self._store.update_patch, patch)
        except DriftPatcherError as exc:
            logger.error("Could not mark patch as failed", patch_id=str(patch_id), error=str(exc))
            return
        logger.warning("Patch application failed", patch_id=str(patch_id), reason=reason)

    async def rollback(self, patch_id: uuid.UUID) -> Patch:
        """Restore the preprocessing state recorded before ``patch_id`` was applied.

        Only the most recently applied patch of a model can be rolled back.
        A failed rollback leaves the patch APPLIED.

        Returns:
            The ROLLED_BACK patch.

        Raises:
            NotFoundError: If the patch does not exist.
            InvalidStateError: If the patch is not APPLIED, its snapshot is
                missing, or later patches are still applied.
            ConcurrencyError: If an apply or rollback is in flight for the model.
        """
        patch = await self.get_patch(patch_id)
        if patch.status is not PatchStatus.APPLIED:
            raise InvalidStateError(
                f"Patch {patch_id} is {patch.status.value}; only APPLIED patches can be rolled back"
            )

        async with self._lock_for(patch.model_id):
            patch = await self.get_patch(patch_id)
            if patch.status is not PatchStatus.APPLIED:
                raise InvalidStateError(
                    f"Patch {patch_id} is {patch.status.value}; only APPLIED patches can be rolled back"
                )
            snapshot = await self._retry(self._store.get_snapshot, patch_id)
            if snapshot is None:
                raise InvalidStateError(f"Patch {patch_id} has no snapshot to restore")
            current = await self._retry(self._store.get_state, patch.model_id)
            if current != snapshot.post_apply_state:
                later = await self._later_applied(patch)
                if not later:
                    raise InvalidStateError(
                        f"Preprocessing state of model {patch.model_id} no longer matches "
                        f"the state recorded after patch {patch_id}"
                    )
                raise InvalidStateError(
                    f"Patch {patch_id} is not the latest applied patch; roll back first: "
                    + ", ".join(str(p.id) for p in later)
                )
            patch.transition(PatchStatus.ROLLED_BACK)
            patch.rolled_back_at = utcnow()
            await self._retry(self._store.commit_rollback, patch, snapshot)

        logger.info(
            "Patch rolled back",
            patch_id=str(patch.id),
            model_id=str(patch.model_id),
            patch_type=patch.patch_type.value,
        )
        await self._notifier.patch_rolled_back(patch)
        return patch

    async def _later_applied(self, patch: Patch) -> list[Patch]:
        """APPLIED patches of the same model applied after ``patch``, newest first."""
        applied = await self._retry(self._store.list_patches, patch.model_id, PatchStatus.APPLIED)
        later = [
            p
            for p in applied
            if p.id != patch.id and p.applied_at is not None and patch.applied_at is not None
            and p.applied_at >= patch.applied_at
        ]
        return sorted(later, key=lambda p: p.applied_at, reverse=True)


# ---------------------------------------------------------------------------
# Patch synthesis
# ---------------------------------------------------------------------------


class PatchSynthesisService:
    """Candidate generation plus validation for one drift result.

    Args:
        generator: Patch candidate generator.
        validator: Patch validator.
        lifecycle: Patch lifecycle service (persistence of patches).
        predictor_provider: Optional callable returning an IPredictor for a
            model; when absent or returning None the validator uses its
            reference-centroid surrogate.
    """

    def __init__(
        self,
        generator: PatchCandidateGenerator,
        validator: PatchValidator,
        lifecycle: PatchLifecycleService,
        predictor_provider: Callable[[Model], IPredictor | None] | None = None,
    ) -> None:
        self._generator = generator
        self._validator = validator
        self._lifecycle = lifecycle
        self._predictor_provider = predictor_provider

    async def propose(
        self,
        model: Model,
        drift_result: DriftResult,
        reference: SampleBatch,
        current: SampleBatch,
        state: PreprocessingState | None = None,
    ) -> list[PatchCandidate]:
        """Ranked candidates for ``drift_result`` without persisting anything."""
        if state is None:
            state = await self._lifecycle.current_state(model.id)
        return await asyncio.to_thread(
            self._generator.generate,
            drift_result,
            reference.features,
            current.features,
            model,
            state,
        )

    async def synthesize(
        self,
        model: Model,
        drift_result: DriftResult,
        reference: SampleBatch,
        current: SampleBatch,
        candidates: list[PatchCandidate] | None = None,
        patch_types: set[PatchType] | None = None,
        source: str = "api",
    ) -> list[Patch]:
        """Generate (or take) candidates, persist them and validate each.

        The last 30% of ``current`` is held out: candidates are generated on
        the rest and validated on the held-out rows.

        Args:
            model: Model metadata.
            drift_result: Diagnosis to address.
            reference: Reference batch.
            current: Current batch.
            candidates: Pre-computed candidates; generated when None.
            patch_types: Keep only these patch types.
            source: Recorded in patch metadata.

        Returns:
            Patches in candidate order, each VALIDATED or FAILED.
        """
        state = await self._lifecycle.current_state(model.id)
        fitting, holdout = split_holdout(current)
        if candidates is None:
            candidates = await self.propose(model, drift_result, reference, fitting, state)
        if patch_types:
            candidates = [c for c in candidates if c.patch_type in patch_types]

        patches = await self._lifecycle.create_patches(drift_result, candidates, source=source)
        predictor = self._predictor_provider(model) if self._predictor_provider is not None else None

        validated = []
        for patch in patches:
            result = await asyncio.to_thread(
                self._validator.validate,
                patch.configuration,
                model,
                state,
                reference,
                holdout,
                predictor,
            )
            validated.append(await self._lifecycle.record_validation(patch.id, result))

        logger.info(
            "Patch synthesis completed",
            model_id=str(model.id),
            drift_result_id=str(drift_result.id),
            created=len(validated),
            validated=sum(1 for p in validated if p.status is PatchStatus.VALIDATED),
        )
        return validated
