"""Per-model preprocessing pipeline that patches modify.

The service never runs or changes model weights. It owns the parameters
around the model instead:

    input side:   x -> clip(x, clip_min, clip_max) -> (x - mean) / std -> x * weight
    output side:  scores -> ensemble combination -> log(p) + class_bias -> / temperature
                  -> softmax -> decision (binary threshold or argmax)

``PreprocessingState`` holds those parameters. Its JSON byte encoding is
deterministic, and those bytes are what snapshots store and what rollback
restores. ``apply_configuration`` is pure: the candidate generator and the
validator use it to simulate a patch, and the lifecycle service uses the
same function to produce the state it persists.
"""

import dataclasses
import json
from dataclasses import dataclass

import numpy as np

from aumos_drift_patcher.core.aggregator import aggregate_score
from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    CalibrationAdjust,
    EnsembleReweight,
    FeatureClipping,
    FeatureReweighting,
    NormalizationUpdate,
    PatchConfiguration,
    ThresholdTuning,
    bounds_in,
    bounds_out,
)
from aumos_drift_patcher.errors import InputError

_MIN_PROBABILITY = 1e-12


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - logits.max(axis=1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=1, keepdims=True)


def _safe_stds(stds: np.ndarray) -> np.ndarray:
    return np.where(stds > 0, stds, 1.0)


@dataclass(frozen=True)
class PreprocessingState:
    """Parameters of one model's pre/post-processing.

    Attributes:
        clip_min: Lower clip bound per feature (-inf when unclipped).
        clip_max: Upper clip bound per feature (+inf when unclipped).
        means: Centering value per feature.
        stds: Scaling value per feature.
        weights: Multiplicative input weight per feature.
        class_biases: Additive log-space bias per class.
        temperature: Score temperature; 1.0 leaves scores unchanged.
        decision_class_index: Class the binary decision threshold applies to.
        decision_threshold: Binary decision threshold on that class's probability.
        ensemble_weights: Combination weight per ensemble component (empty without an ensemble).
        version: Incremented on every applied patch.
    """

    clip_min: tuple[float, ...]
    clip_max: tuple[float, ...]
    means: tuple[float, ...]
    stds: tuple[float, ...]
    weights: tuple[float, ...]
    class_biases: tuple[float, ...]
    temperature: float = 1.0
    decision_class_index: int = 1
    decision_threshold: float = 0.5
    ensemble_weights: tuple[float, ...] = ()
    version: int = 0

    @classmethod
    def from_reference(
        cls,
        reference: np.ndarray,
        num_classes: int,
        num_components: int = 0,
    ) -> "PreprocessingState":
        """Initial state: standardise with reference statistics, identity elsewhere.

        Raises:
            InputError: If the reference batch is empty.
        """
        reference = np.asarray(reference, dtype=float)
        if reference.ndim != 2 or reference.shape[0] == 0:
            raise InputError("Reference batch must be a non-empty 2-D array")
        num_features = reference.shape[1]
        means = np.nanmean(reference, axis=0)
        stds = _safe_stds(np.nan_to_num(np.nanstd(reference, axis=0)))
        return cls(
            clip_min=tuple(float("-inf") for _ in range(num_features)),
            clip_max=tuple(float("inf") for _ in range(num_features)),
            means=tuple(float(m) for m in np.nan_to_num(means)),
            stds=tuple(float(s) for s in stds),
            weights=tuple(1.0 for _ in range(num_features)),
            class_biases=tuple(0.0 for _ in range(num_classes)),
            ensemble_weights=tuple(1.0 / num_components for _ in range(num_components)),
        )

    @property
    def num_features(self) -> int:
        return len(self.means)

    @property
    def num_classes(self) -> int:
        return len(self.class_biases)

    # ------------------------------------------------------------------
    # Transformations
    # ------------------------------------------------------------------

    def standardize(self, features: np.ndarray) -> np.ndarray:
        """Clip and standardise (no weighting)."""
        features = np.asarray(features, dtype=float)
        if features.ndim != 2 or features.shape[1] != self.num_features:
            raise InputError(
                f"Expected {self.num_features} features, got array of shape {features.shape}"
            )
        clipped = np.clip(features, np.asarray(self.clip_min), np.asarray(self.clip_max))
        return (clipped - np.asarray(self.means)) / _safe_stds(np.asarray(self.stds))

    def transform_features(self, features: np.ndarray) -> np.ndarray:
        """Full input-side transformation fed to the model."""
        return self.standardize(features) * np.asarray(self.weights)

    def combine_components(self, component_scores: np.ndarray) -> np.ndarray:
        """Weighted average of per-component class scores (components x samples x classes)."""
        weights = np.asarray(self.ensemble_weights, dtype=float)
        total = weights.sum()
        if total <= 0:
            weights = np.full_like(weights, 1.0 / weights.size)
        else:
            weights = weights / total
        return np.tensordot(weights, component_scores, axes=1)

    def transform_scores(self, scores: np.ndarray) -> np.ndarray:
        """Apply class biases and temperature; returns row-normalised probabilities."""
        scores = np.asarray(scores, dtype=float)
        logits = np.log(np.clip(scores, _MIN_PROBABILITY, None))
        logits = (logits + np.asarray(self.class_biases)) / self.temperature
        return _softmax(logits)

    def decide(self, probabilities: np.ndarray) -> np.ndarray:
        """Class decision: threshold rule for binary models, argmax otherwise."""
        probabilities = np.asarray(probabilities, dtype=float)
        if probabilities.shape[1] == 2:
            k = self.decision_class_index
            return np.where(probabilities[:, k] >= self.decision_threshold, k, 1 - k)
        return np.argmax(probabilities, axis=1)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "clip_min": bounds_out(self.clip_min),
            "clip_max": bounds_out(self.clip_max),
            "means": list(self.means),
            "stds": list(self.stds),
            "weights": list(self.weights),
            "class_biases": list(self.class_biases),
            "temperature": self.temperature,
            "decision_class_index": self.decision_class_index,
            "decision_threshold": self.decision_threshold,
            "ensemble_weights": list(self.ensemble_weights),
            "version": self.version,
        }

    def to_bytes(self) -> bytes:
        """Deterministic strict JSON encoding (sorted keys, unclipped bounds as null)."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), allow_nan=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict) -> "PreprocessingState":
        return cls(
            clip_min=bounds_in(data["clip_min"], float("-inf")),
            clip_max=bounds_in(data["clip_max"], float("inf")),
            means=tuple(float(v) for v in data["means"]),
            stds=tuple(float(v) for v in data["stds"]),
            weights=tuple(float(v) for v in data["weights"]),
            class_biases=tuple(float(v) for v in data["class_biases"]),
            temperature=float(data["temperature"]),
            decision_class_index=int(data["decision_class_index"]),
            decision_threshold=float(data["decision_threshold"]),
            ensemble_weights=tuple(float(v) for v in data["ensemble_weights"]),
            version=int(data["version"]),
        )

    @classmethod
    def from_bytes(cls, blob: bytes) -> "PreprocessingState":
        try:
            return cls.from_dict(json.loads(blob.decode("utf-8")))
        except (ValueError, KeyError, TypeError) as exc:
            raise InputError(f"Corrupt preprocessing state: {exc}") from exc


# ---------------------------------------------------------------------------
# Applying configurations
# ---------------------------------------------------------------------------


def _replace_at(values: tuple[float, ...], indices: tuple[int, ...], new: tuple[float, ...], label: str) -> tuple[float, ...]:
    if len(indices) != len(new):
        raise InputError(f"{label}: {len(indices)} indices but {len(new)} values")
    updated = list(values)
    for index, value in zip(indices, new):
        if not 0 <= index < len(updated):
            raise InputError(f"{label}: index {index} out of range [0, {len(updated)})")
        updated[index] = float(value)
    return tuple(updated)


def apply_configuration(state: PreprocessingState, configuration: PatchConfiguration) -> PreprocessingState:
    """Return the state produced by applying ``configuration`` to ``state``.

    Args:
        state: Current preprocessing state (not modified).
        configuration: Patch parameters.

    Returns:
        New PreprocessingState with ``version`` incremented.

    Raises:
        InputError: If indices are out of range or values are invalid.
    """
    if isinstance(configuration, FeatureClipping):
        if any(lo > hi for lo, hi in zip(configuration.min_values, configuration.max_values)):
            raise InputError("Clipping lower bound exceeds upper bound")
        new_state = dataclasses.replace(
            state,
            clip_min=_replace_at(state.clip_min, configuration.feature_indices, configuration.min_values, "clip_min"),
            clip_max=_replace_at(state.clip_max, configuration.feature_indices, configuration.max_values, "clip_max"),
        )
    elif isinstance(configuration, FeatureReweighting):
        if any(w < 0 for w in configuration.new_weights):
            raise InputError("Feature weights must be non-negative")
        new_state = dataclasses.replace(
            state,
            weights=_replace_at(state.weights, configuration.feature_indices, configuration.new_weights, "weights"),
        )
    elif isinstance(configuration, NormalizationUpdate):
        if any(s <= 0 for s in configuration.new_stds):
            raise InputError("Normalization stds must be positive")
        new_state = dataclasses.replace(
            state,
            means=_replace_at(state.means, configuration.feature_indices, configuration.new_means, "means"),
            stds=_replace_at(state.stds, configuration.feature_indices, configuration.new_stds, "stds"),
        )
    elif isinstance(configuration, ThresholdTuning):
        if not 0.0 < configuration.new_threshold < 1.0:
            raise InputError("Decision threshold must lie in (0, 1)")
        if not 0 <= configuration.class_index < state.num_classes:
            raise InputError(f"Class index {configuration.class_index} out of range")
        new_state = dataclasses.replace(
            state,
            decision_class_index=configuration.class_index,
            decision_threshold=configuration.new_threshold,
        )
    elif isinstance(configuration, EnsembleReweight):
        if not state.ensemble_weights:
            raise InputError("Model has no ensemble weights to rebalance")
        new_state = dataclasses.replace(
            state,
            ensemble_weights=_replace_at(
                state.ensemble_weights, configuration.component_indices, configuration.new_weights, "ensemble_weights"
            ),
        )
    elif isinstance(configuration, CalibrationAdjust):
        if configuration.new_temperature <= 0:
            raise InputError("Calibration temperature must be positive")
        new_state = dataclasses.replace(
            state,
            class_biases=_replace_at(
                state.class_biases, configuration.class_indices, configuration.new_biases, "class_biases"
            ),
            temperature=configuration.new_temperature,
        )
    else:
        raise InputError(f"Unsupported patch configuration: {type(configuration).__name__}")

    return dataclasses.replace(new_state, version=state.version + 1)


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------


class ReferenceCentroidPredictor:
    """Deterministic nearest-centroid surrogate for a model that cannot be run here.

    Fitted on the reference batch after it passed through the model's
    current preprocessing, it stands in for the deployed model when the
    validator has no real predictor. Scores are a softmax over negative
    half squared distances to the class centroids. When the model declares
    ensemble components, each component scores only its own feature subset.
    """

    def __init__(self, centroids: np.ndarray, components: list[tuple[int, ...]] | None = None) -> None:
        self._centroids = centroids
        self._components = components or []

    @classmethod
    def fit(
        cls,
        features: np.ndarray,
        labels: np.ndarray,
        num_classes: int,
        components: list[tuple[int, ...]] | None = None,
    ) -> "ReferenceCentroidPredictor":
        features = np.asarray(features, dtype=float)
        labels = np.asarray(labels, dtype=int)
        centroids = np.full((num_classes, features.shape[1]), np.nan)
        for cls_index in range(num_classes):
            mask = labels == cls_index
            if np.any(mask):
                centroids[cls_index] = np.nanmean(features[mask], axis=0)
        return cls(centroids, components)

    def _scores(self, features: np.ndarray, columns: tuple[int, ...] | None = None) -> np.ndarray:
        centroids = self._centroids if columns is None else self._centroids[:, list(columns)]
        data = features if columns is None else features[:, list(columns)]
        distances = np.sum((data[:, None, :] - centroids[None, :, :]) ** 2, axis=2)
        # Classes unseen in the reference get zero probability
        distances = np.where(np.isfinite(distances), distances, np.inf)
        logits = -0.5 * distances
        logits = np.where(np.isfinite(logits), logits, -1e12)
        return _softmax(logits)

    def predict_scores(self, features: np.ndarray) -> np.ndarray:
        component_scores = self.predict_component_scores(features)
        if component_scores is not None:
            return component_scores.mean(axis=0)
        return self._scores(np.asarray(features, dtype=float))

    def predict_component_scores(self, features: np.ndarray) -> np.ndarray | None:
        if not self._components:
            return None
        features = np.asarray(features, dtype=float)
        return np.stack([self._scores(features, columns) for columns in self._components])


def predict(predictor, features: np.ndarray, state: PreprocessingState) -> tuple[np.ndarray, np.ndarray]:
    """Run raw features through the pipeline and the predictor.

    Args:
        predictor: Object implementing ``IPredictor``.
        features: Raw feature matrix.
        state: Preprocessing state to apply.

    Returns:
        Tuple of (class probabilities, class decisions).
    """
    transformed = state.transform_features(features)
    scores = None
    if state.ensemble_weights:
        component_fn = getattr(predictor, "predict_component_scores", None)
        component_scores = component_fn(transformed) if component_fn is not None else None
        if component_scores is not None and len(component_scores) == len(state.ensemble_weights):
            scores = state.combine_components(np.asarray(component_scores, dtype=float))
    if scores is None:
        scores = np.asarray(predictor.predict_scores(transformed), dtype=float)
    probabilities = state.transform_scores(scores)
    return probabilities, state.decide(probabilities)


def to_base_coordinates(
    features: np.ndarray,
    base_state: PreprocessingState,
    patched_state: PreprocessingState,
) -> np.ndarray:
    """Express what ``patched_state`` feeds the model in ``base_state``'s raw units.

    Features are clipped with the patched bounds. Where the patched
    normalization differs from the base one, values are standardised with the
    patched statistics and mapped back through the base statistics, so a
    re-centred feature lines up with the reference.
    """
    features = np.asarray(features, dtype=float)
    clipped = np.clip(features, np.asarray(patched_state.clip_min), np.asarray(patched_state.clip_max))
    base_means, base_stds = np.asarray(base_state.means), _safe_stds(np.asarray(base_state.stds))
    new_means, new_stds = np.asarray(patched_state.means), _safe_stds(np.asarray(patched_state.stds))
    unchanged = (base_means == new_means) & (base_stds == new_stds)
    rescaled = (clipped - new_means) / new_stds * base_stds + base_means
    return np.where(unchanged, clipped, rescaled)


def simulate_feature_drift(
    comparator: DistributionComparator,
    reference: np.ndarray,
    current: np.ndarray,
    base_state: PreprocessingState,
    patched_state: PreprocessingState,
    feature_names: list[str] | None = None,
) -> float:
    """Aggregate drift the model would see after an input-side patch.

    The reference passes through ``base_state``'s clipping and the current
    batch through ``patched_state`` (see ``to_base_coordinates``). Each
    feature's PSI is then scaled by the ratio of patched to base input weight,
    since a down-weighted feature passes proportionally less of its drift to
    the model. With ``patched_state == base_state`` and no clipping this is
    exactly the raw aggregate drift score.
    """
    reference = np.asarray(reference, dtype=float)
    reference_view = np.clip(reference, np.asarray(base_state.clip_min), np.asarray(base_state.clip_max))
    current_view = to_base_coordinates(current, base_state, patched_state)
    drifts = comparator.compare(reference_view, current_view, feature_names)
    base_weights = np.asarray(base_state.weights)
    patched_weights = np.asarray(patched_state.weights)
    factors = np.where(base_weights > 0, patched_weights / np.where(base_weights > 0, base_weights, 1.0), 0.0)
    return aggregate_score([fd.psi_value * factors[fd.feature_index] for fd in drifts])
