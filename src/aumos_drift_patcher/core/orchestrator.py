"""Interactive Fix Orchestrator.

Drives the one-shot "upload a model and a dataset, fix the drift" flow:

    IDLE ──provide model + dataset──▶ ANALYZING ──▶ ANALYSIS_COMPLETE
      ▲                                                   │ apply_selected
      │                                                   ▼
    reset ◀── PATCHES_APPLIED ◀── (exports written) ◀── APPLYING_PATCHES

Any failure moves to ERROR with a human-readable message. The dataset is
split in file order: the first 70% is treated as the reference window and
the rest as the current window.
"""

import asyncio
from enum import Enum
from pathlib import Path

import numpy as np

from aumos_drift_patcher.adapters.artifacts import DatasetArtifact, ModelArtifact
from aumos_drift_patcher.core.domain import (
    DriftResult,
    Model,
    Patch,
    PatchCandidate,
    PatchStatus,
    SampleBatch,
)
from aumos_drift_patcher.core.interfaces import IExportWriter
from aumos_drift_patcher.core.services import (
    DriftAnalysisService,
    ModelRegistryService,
    PatchLifecycleService,
    PatchSynthesisService,
    check_compatibility,
)
from aumos_drift_patcher.errors import DriftPatcherError, InputError, InvalidStateError, StoreError
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

_MIN_WINDOW = 2


class FixState(str, Enum):
    """Orchestrator states."""

    IDLE = "IDLE"
    ANALYZING = "ANALYZING"
    ANALYSIS_COMPLETE = "ANALYSIS_COMPLETE"
    APPLYING_PATCHES = "APPLYING_PATCHES"
    PATCHES_APPLIED = "PATCHES_APPLIED"
    ERROR = "ERROR"


_FIX_TRANSITIONS: dict[FixState, tuple[FixState, ...]] = {
    FixState.IDLE: (FixState.ANALYZING,),
    FixState.ANALYZING: (FixState.ANALYSIS_COMPLETE, FixState.ERROR),
    FixState.ANALYSIS_COMPLETE: (FixState.APPLYING_PATCHES, FixState.ERROR),
    FixState.APPLYING_PATCHES: (FixState.PATCHES_APPLIED, FixState.ERROR),
    FixState.PATCHES_APPLIED: (),
    FixState.ERROR: (),
}


class InteractiveFixOrchestrator:
    """State machine around the analysis, synthesis and lifecycle services.

    One orchestrator instance serves one interactive session; it is not
    shared between users.

    Args:
        models: Model registry; the uploaded model is registered on analysis.
        analysis: Drift analysis service.
        synthesis: Patch synthesis service.
        lifecycle: Patch lifecycle service.
        export_writer: Writes patch documents and patched artifacts.
        reference_fraction: Leading share of the dataset used as reference.
    """

    def __init__(
        self,
        models: ModelRegistryService,
        analysis: DriftAnalysisService,
        synthesis: PatchSynthesisService,
        lifecycle: PatchLifecycleService,
        export_writer: IExportWriter,
        reference_fraction: float = 0.7,
    ) -> None:
        if not 0.0 < reference_fraction < 1.0:
            raise InputError("reference_fraction must lie strictly between 0 and 1")
        self._models = models
        self._analysis = analysis
        self._synthesis = synthesis
        self._lifecycle = lifecycle
        self._export_writer = export_writer
        self.reference_fraction = reference_fraction
        self._clear()

    def _clear(self) -> None:
        self.state = FixState.IDLE
        self.error_message: str | None = None
        self.model_artifact: ModelArtifact | None = None
        self.dataset_artifact: DatasetArtifact | None = None
        self.model: Model | None = None
        self.reference: SampleBatch | None = None
        self.current: SampleBatch | None = None
        self.drift_result: DriftResult | None = None
        self.candidates: list[PatchCandidate] = []
        self.applied_patches: list[Patch] = []
        self.exported_paths: list[Path] = []

    def _move(self, new_state: FixState) -> None:
        if new_state not in _FIX_TRANSITIONS[self.state]:
            raise InvalidStateError(f"Cannot move from {self.state.value} to {new_state.value}")
        logger.debug("Fix state changed", old=self.state.value, new=new_state.value)
        self.state = new_state

    def _fail(self, message: str) -> None:
        self.error_message = message
        self.state = FixState.ERROR
        logger.warning("Interactive fix failed", message=message)

    def _require(self, *allowed: FixState) -> None:
        if self.state not in allowed:
            raise InvalidStateError(
                f"Operation not allowed in state {self.state.value}; expected "
                + " or ".join(s.value for s in allowed)
            )

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def provide_model(self, artifact: ModelArtifact) -> FixState:
        """Store the model artifact; starts analysis when a dataset is already present.

        Raises:
            InvalidStateError: Outside IDLE.
        """
        self._require(FixState.IDLE)
        self.model_artifact = artifact
        return await self._maybe_analyze()

    async def provide_dataset(self, artifact: DatasetArtifact) -> FixState:
        """Store the dataset artifact; starts analysis when a model is already present.

        Raises:
            InvalidStateError: Outside IDLE.
        """
        self._require(FixState.IDLE)
        self.dataset_artifact = artifact
        return await self._maybe_analyze()

    async def _maybe_analyze(self) -> FixState:
        if self.model_artifact is None or self.dataset_artifact is None:
            return self.state
        self._move(FixState.ANALYZING)
        try:
            await self._analyze(self.model_artifact, self.dataset_artifact)
        except (DriftPatcherError, ValueError) as exc:
            self._fail(f"Analysis failed: {exc}")
            raise
        self._move(FixState.ANALYSIS_COMPLETE)
        return self.state

    def split_dataset(self, batch: SampleBatch) -> tuple[SampleBatch, SampleBatch]:
        """Split a batch in file order into (reference, current).

        Raises:
            InputError: If either window would hold fewer than two rows.
        """
        size = len(batch)
        cut = int(size * self.reference_fraction)
        if cut < _MIN_WINDOW or size - cut < _MIN_WINDOW:
            raise InputError(f"Dataset has {size} rows; too few to split into reference and current windows")
        return batch.take(slice(0, cut)), batch.take(slice(cut, size))

    async def _analyze(self, model_artifact: ModelArtifact, dataset: DatasetArtifact) -> None:
        candidate_model = model_artifact.to_model()
        batch = dataset.to_batch(candidate_model)
        check_compatibility(candidate_model, batch, f"Dataset '{dataset.name}'")
        reference, current = self.split_dataset(batch)

        model = await self._models.register(
            name=model_artifact.name,
            version=model_artifact.version,
            input_features=model_artifact.input_features,
            output_labels=model_artifact.output_labels,
            metadata=model_artifact.metadata,
        )
        result = await self._analysis.analyze(model, reference, current)
        candidates = await self._synthesis.propose(model, result, reference, current)

        self.model = model
        self.reference = reference
        self.current = current
        self.drift_result = result
        self.candidates = candidates
        logger.info(
            "Interactive analysis completed",
            model_id=str(model.id),
            drift_score=round(result.drift_score, 4),
            drift_type=result.drift_type.value,
            candidates=len(candidates),
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply_selected(self, candidate_ids: list[str]) -> list[Patch]:
        """Create, validate and apply the selected candidates, then export.

        Patches are applied in candidate-rank order. If any apply or the
        export fails, the patches applied so far are rolled back newest first.

        Args:
            candidate_ids: ``PatchCandidate.candidate_id`` values.

        Returns:
            The APPLIED patches.

        Raises:
            InvalidStateError: Outside ANALYSIS_COMPLETE.
            InputError: If no ids are given or an id is unknown (state unchanged).
            StoreError: If the patched artifacts cannot be written (state ERROR).
        """
        self._require(FixState.ANALYSIS_COMPLETE)
        if not candidate_ids:
            raise InputError("Select at least one patch candidate")
        known = {c.candidate_id for c in self.candidates}
        unknown = sorted(set(candidate_ids) - known)
        if unknown:
            raise InputError(f"Unknown patch candidates: {', '.join(unknown)}")

        selected = [c for c in self.candidates if c.candidate_id in set(candidate_ids)]
        self._move(FixState.APPLYING_PATCHES)
        try:
            patches = await self._synthesis.synthesize(
                self.model,
                self.drift_result,
                self.reference,
                self.current,
                candidates=selected,
                source="interactive",
            )
            rejected = [p for p in patches if p.status is not PatchStatus.VALIDATED]
            if rejected:
                reasons = "; ".join(
                    f"{p.patch_type.value}: {', '.join(p.validation_result.errors) if p.validation_result else 'not validated'}"
                    for p in rejected
                )
                raise InputError(f"Patch validation rejected {len(rejected)} patch(es): {reasons}")
            await self._apply_all(patches)
            try:
                self.exported_paths = await self._export()
            except DriftPatcherError:
                await self._undo(self.applied_patches)
                self.applied_patches = []
                raise
        except (DriftPatcherError, ValueError) as exc:
            self._fail(f"Applying patches failed: {exc}")
            raise

        self._move(FixState.PATCHES_APPLIED)
        logger.info(
            "Interactive patches applied",
            model_id=str(self.model.id),
            patches=[p.patch_type.value for p in self.applied_patches],
            exported=len(self.exported_paths),
        )
        return list(self.applied_patches)

    async def _apply_all(self, patches: list[Patch]) -> None:
        applied: list[Patch] = []
        try:
            for patch in patches:
                applied.append(await self._lifecycle.apply(patch.id))
        except DriftPatcherError:
            await self._undo(applied)
            raise
        self.applied_patches = applied

    async def _undo(self, applied: list[Patch]) -> None:
        for patch in reversed(applied):
            try:
                await self._lifecycle.rollback(patch.id)
            except DriftPatcherError:
                logger.exception("Rollback after failed apply did not complete", patch_id=str(patch.id))

    async def _export(self) -> list[Path]:
        state = await self._lifecycle.current_state(self.model.id)
        dataset = self.dataset_artifact
        batch = dataset.to_batch(self.model)
        clipped = np.clip(batch.features, np.asarray(state.clip_min), np.asarray(state.clip_max))
        model_artifact = self.model_artifact
        writer = self._export_writer

        def write() -> list[Path]:
            paths = []
            for patch in self.applied_patches:
                paths.append(writer.write_patch_document(patch))
                paths.append(writer.write_patch_report(patch))
            paths.append(
                writer.write_patched_dataset(
                    dataset.name,
                    list(self.model.input_features),
                    clipped,
                    batch.labels,
                    self.model.output_labels,
                )
            )
            paths.append(writer.write_patched_model(self.model, model_artifact.artifact_path, state.to_bytes()))
            return paths

        try:
            return await asyncio.to_thread(write)
        except OSError as exc:
            raise StoreError(f"Writing patched artifacts failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Abandon the session before any patch is applied.

        Raises:
            InvalidStateError: Outside IDLE and ANALYSIS_COMPLETE.
        """
        self._require(FixState.IDLE, FixState.ANALYSIS_COMPLETE)
        logger.info("Interactive fix cancelled", state=self.state.value)
        self._clear()

    def reset(self) -> None:
        """Return to IDLE from any state. Applied patches stay applied."""
        self._clear()

    def summary(self) -> dict:
        """Current session view."""
        return {
            "state": self.state.value,
            "errorMessage": self.error_message,
            "modelId": str(self.model.id) if self.model else None,
            "driftResult": self.drift_result.to_dict() if self.drift_result else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "appliedPatchIds": [str(p.id) for p in self.applied_patches],
            "exportedPaths": [str(p) for p in self.exported_paths],
        }

