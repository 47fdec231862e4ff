"""Domain entities for the Drift Patcher.

Plain dataclasses shared by every layer. ORM rows in core/models.py and the
Pydantic schemas in api/schemas.py are mapped to and from these types; the
pure computations (comparator, aggregator, candidate generator, validator)
never see persistence or HTTP types.

Patch configurations are frozen dataclasses whose numeric arrays are tuples
of floats, so two configurations compare equal exactly when their values do.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

import numpy as np

from aumos_drift_patcher.errors import InputError, InvalidStateError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


def _floats(values: Any) -> tuple[float, ...]:
    return tuple(float(v) for v in values)


def _ints(values: Any) -> tuple[int, ...]:
    return tuple(int(v) for v in values)


def bounds_out(values: tuple[float, ...]) -> list[float | None]:
    # Unbounded clip limits are written as null so documents stay valid JSON
    return [v if math.isfinite(v) else None for v in values]


def bounds_in(values: Any, unbounded: float) -> tuple[float, ...]:
    return tuple(unbounded if v is None else float(v) for v in values)


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DriftType(str, Enum):
    """Diagnosed kind of drift."""

    COVARIATE = "COVARIATE_DRIFT"
    PRIOR = "PRIOR_DRIFT"
    CONCEPT = "CONCEPT_DRIFT"
    NO_DRIFT = "NO_DRIFT"


class PatchType(str, Enum):
    """Kinds of corrective patch the generator can propose."""

    FEATURE_CLIPPING = "FEATURE_CLIPPING"
    FEATURE_REWEIGHTING = "FEATURE_REWEIGHTING"
    THRESHOLD_TUNING = "THRESHOLD_TUNING"
    NORMALIZATION_UPDATE = "NORMALIZATION_UPDATE"
    ENSEMBLE_REWEIGHT = "ENSEMBLE_REWEIGHT"
    CALIBRATION_ADJUST = "CALIBRATION_ADJUST"

    @property
    def modifies_features(self) -> bool:
        """True for patches acting on the input side of the pipeline."""
        return self in (
            PatchType.FEATURE_CLIPPING,
            PatchType.FEATURE_REWEIGHTING,
            PatchType.NORMALIZATION_UPDATE,
        )


class PatchStatus(str, Enum):
    """Patch lifecycle status."""

    CREATED = "CREATED"
    VALIDATED = "VALIDATED"
    APPLIED = "APPLIED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


_VALID_STATUS_TRANSITIONS: dict[PatchStatus, tuple[PatchStatus, ...]] = {
    PatchStatus.CREATED: (PatchStatus.VALIDATED, PatchStatus.FAILED),
    PatchStatus.VALIDATED: (PatchStatus.APPLIED, PatchStatus.FAILED),
    PatchStatus.APPLIED: (PatchStatus.ROLLED_BACK, PatchStatus.FAILED),
    PatchStatus.ROLLED_BACK: (),
    PatchStatus.FAILED: (),
}


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass
class Model:
    """A deployed model under monitoring.

    ``metadata`` may declare ``ensemble_components`` (a list of
    ``{"name": str, "features": [feature names]}`` entries) and
    ``probabilistic_output`` (bool), which unlock the ensemble and
    calibration patch types.
    """

    name: str
    version: str
    input_features: list[str]
    output_labels: list[str]
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def num_features(self) -> int:
        return len(self.input_features)

    @property
    def num_classes(self) -> int:
        return max(len(self.output_labels), 2)

    @property
    def is_probabilistic(self) -> bool:
        return bool(self.metadata.get("probabilistic_output", False))

    def ensemble_components(self) -> list[tuple[str, tuple[int, ...]]]:
        """Resolve declared ensemble components to feature index tuples.

        Returns:
            List of (component name, feature indices); empty when the model
            does not declare an ensemble.

        Raises:
            InputError: If a component references an unknown feature.
        """
        raw = self.metadata.get("ensemble_components") or []
        components: list[tuple[str, tuple[int, ...]]] = []
        for position, entry in enumerate(raw):
            if isinstance(entry, dict):
                name = str(entry.get("name", f"component_{position}"))
                features = entry.get("features", [])
            else:
                name = f"component_{position}"
                features = entry
            indices = []
            for feature in features:
                if feature not in self.input_features:
                    raise InputError(
                        f"Ensemble component '{name}' references unknown feature '{feature}'"
                    )
                indices.append(self.input_features.index(feature))
            components.append((name, tuple(indices)))
        return components

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "version": self.version,
            "input_features": list(self.input_features),
            "output_labels": list(self.output_labels),
            "created_at": self.created_at.isoformat(),
            "is_active": self.is_active,
            "metadata": dict(self.metadata),
        }


@dataclass
class SampleBatch:
    """A batch of feature vectors with optional ground-truth class indices."""

    features: np.ndarray
    labels: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.features = np.asarray(self.features, dtype=float)
        if self.features.ndim == 1:
            self.features = self.features.reshape(-1, 1)
        if self.features.ndim != 2:
            raise InputError("Feature batch must be a 2-D array (samples x features)")
        if self.labels is not None:
            self.labels = np.asarray(self.labels, dtype=int)
            if self.labels.shape[0] != self.features.shape[0]:
                raise InputError(
                    f"Label count {self.labels.shape[0]} does not match "
                    f"sample count {self.features.shape[0]}"
                )

    def __len__(self) -> int:
        return int(self.features.shape[0])

    @property
    def num_features(self) -> int:
        return int(self.features.shape[1])

    @property
    def has_labels(self) -> bool:
        return self.labels is not None

    def take(self, indices: np.ndarray | slice) -> "SampleBatch":
        """Return the sub-batch selected by ``indices``."""
        return SampleBatch(
            features=self.features[indices],
            labels=None if self.labels is None else self.labels[indices],
        )


# ---------------------------------------------------------------------------
# Drift results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DistributionShift:
    """Summary of how a feature's marginal distribution moved."""

    mean_shift: float
    std_shift: float
    min_shift: float
    max_shift: float
    quantile_shifts: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "mean_shift": self.mean_shift,
            "std_shift": self.std_shift,
            "min_shift": self.min_shift,
            "max_shift": self.max_shift,
            "quantile_shifts": dict(self.quantile_shifts),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DistributionShift":
        return cls(
            mean_shift=float(data["mean_shift"]),
            std_shift=float(data["std_shift"]),
            min_shift=float(data["min_shift"]),
            max_shift=float(data["max_shift"]),
            quantile_shifts={k: float(v) for k, v in data.get("quantile_shifts", {}).items()},
        )


@dataclass(frozen=True)
class FeatureDrift:
    """Per-feature drift measurement.

    Attributes:
        feature_name: Name of the feature.
        feature_index: Column index of the feature in the model input.
        drift_score: Per-feature drift score (the PSI value).
        psi_value: Population Stability Index.
        ks_statistic: Two-sample Kolmogorov-Smirnov statistic in [0, 1].
        ks_p_value: Asymptotic p-value of the KS statistic.
        is_drifted: PSI above the moderate threshold or KS p-value below alpha.
        attribution_weight: Share of total PSI carried by this feature.
        distribution_shift: Moment and quantile shifts.
        low_confidence: PSI was computed with the degenerate-reference fallback.
    """

    feature_name: str
    feature_index: int
    drift_score: float
    psi_value: float
    ks_statistic: float
    ks_p_value: float
    is_drifted: bool
    attribution_weight: float
    distribution_shift: DistributionShift
    low_confidence: bool = False

    def to_dict(self) -> dict:
        return {
            "feature_name": self.feature_name,
            "feature_index": self.feature_index,
            "drift_score": self.drift_score,
            "psi_value": self.psi_value,
            "ks_statistic": self.ks_statistic,
            "ks_p_value": self.ks_p_value,
            "is_drifted": self.is_drifted,
            "attribution_weight": self.attribution_weight,
            "distribution_shift": self.distribution_shift.to_dict(),
            "low_confidence": self.low_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureDrift":
        return cls(
            feature_name=data["feature_name"],
            feature_index=int(data["feature_index"]),
            drift_score=float(data["drift_score"]),
            psi_value=float(data["psi_value"]),
            ks_statistic=float(data["ks_statistic"]),
            ks_p_value=float(data["ks_p_value"]),
            is_drifted=bool(data["is_drifted"]),
            attribution_weight=float(data["attribution_weight"]),
            distribution_shift=DistributionShift.from_dict(data["distribution_shift"]),
            low_confidence=bool(data.get("low_confidence", False)),
        )


@dataclass(frozen=True)
class StatisticalTest:
    """Outcome of one hypothesis test; ``passed`` means no drift signalled."""

    name: str
    statistic: float
    p_value: float
    threshold: float
    passed: bool

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "statistic": self.statistic,
            "p_value": self.p_value,
            "threshold": self.threshold,
            "passed": self.passed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StatisticalTest":
        return cls(
            name=data["name"],
            statistic=float(data["statistic"]),
            p_value=float(data["p_value"]),
            threshold=float(data["threshold"]),
            passed=bool(data["passed"]),
        )


@dataclass
class DriftResult:
    """Aggregated drift diagnosis for one model at one point in time."""

    model_id: uuid.UUID
    drift_score: float
    drift_type: DriftType
    is_drift_detected: bool
    severity: str
    feature_drifts: list[FeatureDrift]
    statistical_tests: list[StatisticalTest] = field(default_factory=list)
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def drifted_features(self) -> list[FeatureDrift]:
        return [fd for fd in self.feature_drifts if fd.is_drifted]

    def label_distributions(self) -> tuple[np.ndarray, np.ndarray] | None:
        """Reference and current class distributions, when labels were available."""
        ref = self.metadata.get("reference_label_distribution")
        cur = self.metadata.get("current_label_distribution")
        if ref is None or cur is None:
            return None
        return np.asarray(ref, dtype=float), np.asarray(cur, dtype=float)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "model_id": str(self.model_id),
            "timestamp": self.timestamp.isoformat(),
            "drift_score": self.drift_score,
            "drift_type": self.drift_type.value,
            "is_drift_detected": self.is_drift_detected,
            "severity": self.severity,
            "feature_drifts": [fd.to_dict() for fd in self.feature_drifts],
            "statistical_tests": [t.to_dict() for t in self.statistical_tests],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DriftResult":
        return cls(
            id=uuid.UUID(data["id"]),
            model_id=uuid.UUID(data["model_id"]),
            timestamp=_parse_datetime(data["timestamp"]) or utcnow(),
            drift_score=float(data["drift_score"]),
            drift_type=DriftType(data["drift_type"]),
            is_drift_detected=bool(data["is_drift_detected"]),
            severity=data["severity"],
            feature_drifts=[FeatureDrift.from_dict(fd) for fd in data["feature_drifts"]],
            statistical_tests=[StatisticalTest.from_dict(t) for t in data["statistical_tests"]],
            metadata=dict(data.get("metadata", {})),
        )


# ---------------------------------------------------------------------------
# Patch configurations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatchConfiguration:
    """Base class for the per-type patch parameter sets."""

    patch_type: ClassVar[PatchType]

    def to_dict(self) -> dict:
        raise NotImplementedError


@dataclass(frozen=True)
class FeatureClipping(PatchConfiguration):
    """Clip selected features into reference-derived bounds."""

    patch_type: ClassVar[PatchType] = PatchType.FEATURE_CLIPPING

    feature_indices: tuple[int, ...]
    original_min_values: tuple[float, ...]
    original_max_values: tuple[float, ...]
    min_values: tuple[float, ...]
    max_values: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "type": self.patch_type.value,
            "featureIndices": list(self.feature_indices),
            "originalMinValues": bounds_out(self.original_min_values),
            "originalMaxValues": bounds_out(self.original_max_values),
            "minValues": list(self.min_values),
            "maxValues": list(self.max_values),
        }


@dataclass(frozen=True)
class FeatureReweighting(PatchConfiguration):
    """Down-weight features that carry most of the drift."""

    patch_type: ClassVar[PatchType] = PatchType.FEATURE_REWEIGHTING

    feature_indices: tuple[int, ...]
    original_weights: tuple[float, ...]
    new_weights: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "type": self.patch_type.value,
            "featureIndices": list(self.feature_indices),
            "originalWeights": list(self.original_weights),
            "newWeights": list(self.new_weights),
        }


@dataclass(frozen=True)
class ThresholdTuning(PatchConfiguration):
    """Move the decision threshold of one class."""

    patch_type: ClassVar[PatchType] = PatchType.THRESHOLD_TUNING

    class_index: int
    original_threshold: float
    new_threshold: float

    def to_dict(self) -> dict:
        return {
            "type": self.patch_type.value,
            "classIndex": self.class_index,
            "originalThreshold": self.original_threshold,
            "newThreshold": self.new_threshold,
        }


@dataclass(frozen=True)
class NormalizationUpdate(PatchConfiguration):
    """Re-center and re-scale features using current statistics."""

    patch_type: ClassVar[PatchType] = PatchType.NORMALIZATION_UPDATE

    feature_indices: tuple[int, ...]
    original_means: tuple[float, ...]
    original_stds: tuple[float, ...]
    new_means: tuple[float, ...]
    new_stds: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "type": self.patch_type.value,
            "featureIndices": list(self.feature_indices),
            "originalMeans": list(self.original_means),
            "originalStds": list(self.original_stds),
            "newMeans": list(self.new_means),
            "newStds": list(self.new_stds),
        }


@dataclass(frozen=True)
class EnsembleReweight(PatchConfiguration):
    """Shift combination weight away from components fed by drifted features."""

    patch_type: ClassVar[PatchType] = PatchType.ENSEMBLE_REWEIGHT

    component_indices: tuple[int, ...]
    original_weights: tuple[float, ...]
    new_weights: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "type": self.patch_type.value,
            "componentIndices": list(self.component_indices),
            "originalWeights": list(self.original_weights),
            "newWeights": list(self.new_weights),
        }


@dataclass(frozen=True)
class CalibrationAdjust(PatchConfiguration):
    """Per-class log-prior bias plus temperature scaling of model scores."""

    patch_type: ClassVar[PatchType] = PatchType.CALIBRATION_ADJUST

    class_indices: tuple[int, ...]
    original_biases: tuple[float, ...]
    new_biases: tuple[float, ...]
    original_temperature: float
    new_temperature: float

    def to_dict(self) -> dict:
        return {
            "type": self.patch_type.value,
            "classIndices": list(self.class_indices),
            "originalBiases": list(self.original_biases),
            "newBiases": list(self.new_biases),
            "originalTemperature": self.original_temperature,
            "newTemperature": self.new_temperature,
        }


def configuration_from_dict(data: dict) -> PatchConfiguration:
    """Rebuild a PatchConfiguration from its ``to_dict`` form.

    Raises:
        InputError: If the ``type`` discriminator is missing or unknown.
    """
    try:
        patch_type = PatchType(data["type"])
    except (KeyError, ValueError) as exc:
        raise InputError(f"Unknown patch configuration type: {data.get('type')!r}") from exc

    if patch_type is PatchType.FEATURE_CLIPPING:
        return FeatureClipping(
            feature_indices=_ints(data["featureIndices"]),
            original_min_values=bounds_in(data["originalMinValues"], float("-inf")),
            original_max_values=bounds_in(data["originalMaxValues"], float("inf")),
            min_values=_floats(data["minValues"]),
            max_values=_floats(data["maxValues"]),
        )
    if patch_type is PatchType.FEATURE_REWEIGHTING:
        return FeatureReweighting(
            feature_indices=_ints(data["featureIndices"]),
            original_weights=_floats(data["originalWeights"]),
            new_weights=_floats(data["newWeights"]),
        )
    if patch_type is PatchType.THRESHOLD_TUNING:
        return ThresholdTuning(
            class_index=int(data["classIndex"]),
            original_threshold=float(data["originalThreshold"]),
            new_threshold=float(data["newThreshold"]),
        )
    if patch_type is PatchType.NORMALIZATION_UPDATE:
        return NormalizationUpdate(
            feature_indices=_ints(data["featureIndices"]),
            original_means=_floats(data["originalMeans"]),
            original_stds=_floats(data["originalStds"]),
            new_means=_floats(data["newMeans"]),
            new_stds=_floats(data["newStds"]),
        )
    if patch_type is PatchType.ENSEMBLE_REWEIGHT:
        return EnsembleReweight(
            component_indices=_ints(data["componentIndices"]),
            original_weights=_floats(data["originalWeights"]),
            new_weights=_floats(data["newWeights"]),
        )
    return CalibrationAdjust(
        class_indices=_ints(data["classIndices"]),
        original_biases=_floats(data["originalBiases"]),
        new_biases=_floats(data["newBiases"]),
        original_temperature=float(data["originalTemperature"]),
        new_temperature=float(data["newTemperature"]),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationMetrics:
    """Post-patch quality and safety metrics."""

    accuracy: float
    precision: float
    recall: float
    f1_score: float
    drift_score_before_patch: float
    drift_score_after_patch: float
    drift_reduction: float
    performance_delta: float
    safety_score: float
    confidence_interval_lower: float
    confidence_interval_upper: float

    def to_dict(self) -> dict:
        return {
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1Score": self.f1_score,
            "driftScoreBeforePatch": self.drift_score_before_patch,
            "driftScoreAfterPatch": self.drift_score_after_patch,
            "driftReduction": self.drift_reduction,
            "performanceDelta": self.performance_delta,
            "safetyScore": self.safety_score,
            "confidenceIntervalLower": self.confidence_interval_lower,
            "confidenceIntervalUpper": self.confidence_interval_upper,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationMetrics":
        return cls(
            accuracy=float(data["accuracy"]),
            precision=float(data["precision"]),
            recall=float(data["recall"]),
            f1_score=float(data["f1Score"]),
            drift_score_before_patch=float(data["driftScoreBeforePatch"]),
            drift_score_after_patch=float(data["driftScoreAfterPatch"]),
            drift_reduction=float(data["driftReduction"]),
            performance_delta=float(data["performanceDelta"]),
            safety_score=float(data["safetyScore"]),
            confidence_interval_lower=float(data["confidenceIntervalLower"]),
            confidence_interval_upper=float(data["confidenceIntervalUpper"]),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of validating one patch on a held-out set."""

    is_valid: bool
    metrics: ValidationMetrics
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    validated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "validatedAt": self.validated_at.isoformat(),
            "metrics": self.metrics.to_dict(),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationResult":
        return cls(
            is_valid=bool(data["isValid"]),
            validated_at=_parse_datetime(data.get("validatedAt")) or utcnow(),
            metrics=ValidationMetrics.from_dict(data["metrics"]),
            errors=tuple(data.get("errors", ())),
            warnings=tuple(data.get("warnings", ())),
        )


# ---------------------------------------------------------------------------
# Patches and snapshots
# ---------------------------------------------------------------------------


@dataclass
class Patch:
    """A proposed or applied modification of a model's pre/post-processing."""

    model_id: uuid.UUID
    drift_result_id: uuid.UUID
    configuration: PatchConfiguration
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: PatchStatus = PatchStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    applied_at: datetime | None = None
    rolled_back_at: datetime | None = None
    validation_result: ValidationResult | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def patch_type(self) -> PatchType:
        return self.configuration.patch_type

    def transition(self, new_status: PatchStatus) -> None:
        """Move to ``new_status`` if the lifecycle allows it.

        Raises:
            InvalidStateError: If the transition is not permitted.
        """
        if new_status not in _VALID_STATUS_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Patch {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def to_dict(self) -> dict:
        """Export document for this patch."""
        document: dict[str, Any] = {
            "id": str(self.id),
            "modelId": str(self.model_id),
            "driftResultId": str(self.drift_result_id),
            "patchType": self.patch_type.value,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "configuration": self.configuration.to_dict(),
        }
        if self.applied_at is not None:
            document["appliedAt"] = self.applied_at.isoformat()
        if self.rolled_back_at is not None:
            document["rolledBackAt"] = self.rolled_back_at.isoformat()
        if self.validation_result is not None:
            document["validationResult"] = self.validation_result.to_dict()
        if self.metadata:
            document["metadata"] = dict(self.metadata)
        return document

    @classmethod
    def from_dict(cls, data: dict) -> "Patch":
        validation = data.get("validationResult")
        return cls(
            id=uuid.UUID(data["id"]),
            model_id=uuid.UUID(data["modelId"]),
            drift_result_id=uuid.UUID(data["driftResultId"]),
            configuration=configuration_from_dict(data["configuration"]),
            status=PatchStatus(data["status"]),
            created_at=_parse_datetime(data["createdAt"]) or utcnow(),
            applied_at=_parse_datetime(data.get("appliedAt")),
            rolled_back_at=_parse_datetime(data.get("rolledBackAt")),
            validation_result=ValidationResult.from_dict(validation) if validation else None,
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class PatchSnapshot:
    """Serialized preprocessing state before and after one patch application."""

    patch_id: uuid.UUID
    model_id: uuid.UUID
    pre_apply_state: bytes
    post_apply_state: bytes
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PatchCandidate:
    """A ranked, not-yet-persisted patch proposal."""

    configuration: PatchConfiguration
    predicted_drift_reduction: float
    type_fit: float
    score: float
    is_recommended: bool
    title: str
    description: str

    @property
    def patch_type(self) -> PatchType:
        return self.configuration.patch_type

    @property
    def candidate_id(self) -> str:
        """Stable identifier; the generator emits at most one candidate per type."""
        return self.patch_type.value

    def to_dict(self) -> dict:
        return {
            "candidateId": self.candidate_id,
            "patchType": self.patch_type.value,
            "title": self.title,
            "description": self.description,
            "predictedDriftReduction": self.predicted_drift_reduction,
            "typeFit": self.type_fit,
            "score": self.score,
            "isRecommended": self.is_recommended,
            "configuration": self.configuration.to_dict(),
        }
