"""Protocol (interface) definitions for the Drift Patcher service.

Defines the contracts between the service layer and adapters, enabling
dependency injection and test doubles without coupling to concrete
implementations.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

import numpy as np

from aumos_drift_patcher.core.domain import (
    DriftResult,
    Model,
    Patch,
    PatchSnapshot,
    PatchStatus,
    SampleBatch,
)


@runtime_checkable
class IModelRepository(Protocol):
    """Contract for Model persistence operations."""

    async def create(self, model: Model) -> Model:
        """Persist a new model.

        Args:
            model: Model to register.

        Returns:
            The persisted model.
        """
        ...

    async def get(self, model_id: uuid.UUID) -> Model | None:
        """Fetch a model by id.

        Args:
            model_id: Model UUID.

        Returns:
            Model or None if not found.
        """
        ...

    async def list_all(self, active_only: bool = False) -> list[Model]:
        """Return registered models ordered by creation time.

        Args:
            active_only: Only models with ``is_active`` set.

        Returns:
            List of models.
        """
        ...

    async def set_active(self, model_id: uuid.UUID, is_active: bool) -> Model | None:
        """Enable or disable monitoring for a model.

        Args:
            model_id: Model UUID.
            is_active: New activation flag.

        Returns:
            Updated model or None if not found.
        """
        ...


@runtime_checkable
class IDriftResultRepository(Protocol):
    """Contract for DriftResult persistence operations."""

    async def save(self, result: DriftResult) -> DriftResult:
        """Persist a drift result.

        Args:
            result: DriftResult produced by the aggregator.

        Returns:
            The persisted result.
        """
        ...

    async def get(self, result_id: uuid.UUID) -> DriftResult | None:
        """Fetch a drift result by id.

        Args:
            result_id: DriftResult UUID.

        Returns:
            DriftResult or None if not found.
        """
        ...

    async def list_by_model(self, model_id: uuid.UUID, limit: int = 50) -> list[DriftResult]:
        """Return the most recent drift results for a model, newest first.

        Args:
            model_id: Model UUID.
            limit: Maximum results to return.

        Returns:
            List of drift results.
        """
        ...

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete drift results recorded before ``cutoff``.

        Args:
            cutoff: Timezone-aware timestamp.

        Returns:
            Number of deleted results.
        """
        ...


@runtime_checkable
class IPatchStore(Protocol):
    """Contract for patch, snapshot and preprocessing-state persistence.

    ``commit_application`` and ``commit_rollback`` must be atomic: either
    every write happens or none does.
    """

    async def add_patches(self, patches: list[Patch]) -> list[Patch]:
        """Persist newly created patches.

        Args:
            patches: Patches in CREATED status.

        Returns:
            The persisted patches.
        """
        ...

    async def get_patch(self, patch_id: uuid.UUID) -> Patch | None:
        """Fetch a patch by id.

        Args:
            patch_id: Patch UUID.

        Returns:
            Patch or None if not found.
        """
        ...

    async def update_patch(self, patch: Patch) -> Patch:
        """Persist status, timestamps, validation result and metadata of a patch.

        Args:
            patch: Patch with updated fields.

        Returns:
            The persisted patch.
        """
        ...

    async def list_patches(
        self, model_id: uuid.UUID, status: PatchStatus | None = None
    ) -> list[Patch]:
        """Return a model's patches ordered by creation time.

        Args:
            model_id: Model UUID.
            status: Optional status filter.

        Returns:
            List of patches.
        """
        ...

    async def get_snapshot(self, patch_id: uuid.UUID) -> PatchSnapshot | None:
        """Fetch the snapshot recorded when a patch was applied.

        Args:
            patch_id: Patch UUID.

        Returns:
            PatchSnapshot or None if the patch was never applied.
        """
        ...

    async def get_state(self, model_id: uuid.UUID) -> bytes | None:
        """Return the serialized preprocessing state of a model.

        Args:
            model_id: Model UUID.

        Returns:
            State bytes or None if the model has no state yet.
        """
        ...

    async def save_state(self, model_id: uuid.UUID, state: bytes) -> None:
        """Store the initial preprocessing state of a model.

        Args:
            model_id: Model UUID.
            state: Serialized PreprocessingState.
        """
        ...

    async def commit_application(self, patch: Patch, snapshot: PatchSnapshot) -> None:
        """Atomically store the snapshot, set the state to its post-apply bytes and save the patch.

        Args:
            patch: Patch already moved to APPLIED.
            snapshot: Pre/post state snapshot.
        """
        ...

    async def commit_rollback(self, patch: Patch, snapshot: PatchSnapshot) -> None:
        """Atomically restore the snapshot's pre-apply bytes and save the patch.

        Args:
            patch: Patch already moved to ROLLED_BACK.
            snapshot: Snapshot recorded when the patch was applied.
        """
        ...


@runtime_checkable
class INotificationSink(Protocol):
    """Contract for publishing drift and patch lifecycle events."""

    async def drift_detected(self, result: DriftResult) -> None:
        """Announce a detected drift.

        Args:
            result: DriftResult with ``is_drift_detected`` set.
        """
        ...

    async def patch_synthesized(self, patch: Patch) -> None:
        """Announce a newly created patch.

        Args:
            patch: Patch in CREATED status.
        """
        ...

    async def patch_applied(self, patch: Patch) -> None:
        """Announce an applied patch.

        Args:
            patch: Patch in APPLIED status.
        """
        ...

    async def patch_rolled_back(self, patch: Patch) -> None:
        """Announce a rolled back patch.

        Args:
            patch: Patch in ROLLED_BACK status.
        """
        ...


@runtime_checkable
class IInferenceLogSource(Protocol):
    """Contract for fetching reference and recent inference batches."""

    async def fetch_reference(self, model: Model) -> SampleBatch:
        """Return the reference (training-time) batch for a model.

        Args:
            model: Model to fetch for.

        Returns:
            SampleBatch with one column per input feature.
        """
        ...

    async def fetch_current(self, model: Model) -> SampleBatch:
        """Return the most recent inference batch for a model.

        Args:
            model: Model to fetch for.

        Returns:
            SampleBatch with one column per input feature.
        """
        ...


@runtime_checkable
class IExportWriter(Protocol):
    """Contract for writing patch documents and patched artifacts."""

    def write_patch_document(self, patch: Patch) -> Path:
        """Write the JSON export document of a patch.

        Args:
            patch: Patch to export.

        Returns:
            Path of the written file.
        """
        ...

    def write_patch_report(self, patch: Patch) -> Path:
        """Write a human-readable text summary of a patch.

        Args:
            patch: Patch to summarise.

        Returns:
            Path of the written file.
        """
        ...

    def write_patched_dataset(
        self,
        source_name: str,
        feature_names: list[str],
        features: np.ndarray,
        labels: np.ndarray | None,
        label_names: list[str] | None = None,
    ) -> Path:
        """Write a patched dataset as CSV next to other exports.

        Args:
            source_name: Original dataset file name (``_patched`` is appended).
            feature_names: Column names.
            features: Patched feature matrix.
            labels: Optional class indices.
            label_names: Optional class names written instead of indices.

        Returns:
            Path of the written file.
        """
        ...

    def write_patched_model(self, model: Model, source_path: Path | None, state: bytes) -> Path:
        """Write the patched model artifact: a copy of the source plus its preprocessing state.

        Args:
            model: Model metadata.
            source_path: Original model artifact, copied with a ``_patched`` suffix when given.
            state: Serialized preprocessing state to ship alongside the model.

        Returns:
            Path of the written artifact.
        """
        ...


@runtime_checkable
class IPredictor(Protocol):
    """Contract for scoring transformed feature vectors with a model."""

    def predict_scores(self, features: np.ndarray) -> np.ndarray:
        """Class scores for each row.

        Args:
            features: Transformed feature matrix (samples x features).

        Returns:
            Non-negative scores (samples x classes).
        """
        ...

    def predict_component_scores(self, features: np.ndarray) -> np.ndarray | None:
        """Per-component class scores for ensemble models.

        Args:
            features: Transformed feature matrix.

        Returns:
            Array (components x samples x classes), or None for single models.
        """
        ...
