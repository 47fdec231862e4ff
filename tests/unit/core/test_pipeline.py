"""Unit tests for the preprocessing pipeline that patches modify."""

import json
import math

import numpy as np
import pytest

from aumos_drift_patcher.core.aggregator import aggregate_score
from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    CalibrationAdjust,
    EnsembleReweight,
    FeatureClipping,
    FeatureReweighting,
    NormalizationUpdate,
    ThresholdTuning,
)
from aumos_drift_patcher.core.pipeline import (
    PreprocessingState,
    ReferenceCentroidPredictor,
    apply_configuration,
    predict,
    simulate_feature_drift,
)
from aumos_drift_patcher.errors import InputError


@pytest.fixture
def reference() -> np.ndarray:
    rng = np.random.default_rng(seed=30)
    return np.column_stack([rng.normal(10, 2, 400), rng.normal(-5, 0.5, 400)])


@pytest.fixture
def state(reference: np.ndarray) -> PreprocessingState:
    return PreprocessingState.from_reference(reference, num_classes=2)


class TestPreprocessingState:
    """Initial state, transformations and serialisation."""

    def test_from_reference_standardises_with_reference_statistics(
        self, reference: np.ndarray, state: PreprocessingState
    ) -> None:
        """The initial state centres and scales the reference to mean 0, std 1."""
        transformed = state.transform_features(reference)
        assert transformed.mean(axis=0) == pytest.approx([0.0, 0.0], abs=1e-9)
        assert transformed.std(axis=0) == pytest.approx([1.0, 1.0])
        assert state.clip_min == (-math.inf, -math.inf)
        assert state.clip_max == (math.inf, math.inf)
        assert state.weights == (1.0, 1.0)
        assert state.version == 0

    def test_constant_feature_gets_unit_std(self) -> None:
        state = PreprocessingState.from_reference(np.ones((10, 1)), num_classes=2)
        assert state.stds == (1.0,)

    def test_ensemble_weights_start_uniform(self, reference: np.ndarray) -> None:
        state = PreprocessingState.from_reference(reference, num_classes=3, num_components=4)
        assert state.ensemble_weights == (0.25, 0.25, 0.25, 0.25)
        assert state.num_classes == 3

    def test_width_mismatch_raises(self, state: PreprocessingState) -> None:
        with pytest.raises(InputError, match="Expected 2 features"):
            state.transform_features(np.zeros((3, 5)))

    def test_identity_output_side_keeps_probabilities(self, state: PreprocessingState) -> None:
        """Zero biases and temperature 1 return the input probabilities."""
        scores = np.array([[0.2, 0.8], [0.6, 0.4]])
        assert state.transform_scores(scores) == pytest.approx(scores)

    def test_binary_decision_uses_threshold(self, state: PreprocessingState) -> None:
        probabilities = np.array([[0.45, 0.55], [0.7, 0.3]])
        assert state.decide(probabilities).tolist() == [1, 0]
        strict = apply_configuration(state, ThresholdTuning(class_index=1, original_threshold=0.5, new_threshold=0.6))
        assert strict.decide(probabilities).tolist() == [0, 0]

    def test_multiclass_decision_is_argmax(self, reference: np.ndarray) -> None:
        state = PreprocessingState.from_reference(reference, num_classes=3)
        assert state.decide(np.array([[0.2, 0.3, 0.5], [0.6, 0.3, 0.1]])).tolist() == [2, 0]

    def test_bytes_are_deterministic_and_restore_the_state(self, state: PreprocessingState) -> None:
        """Encoding is stable, and decoding gives an equal state (infinite bounds included)."""
        blob = state.to_bytes()
        assert blob == PreprocessingState.from_dict(state.to_dict()).to_bytes()
        assert PreprocessingState.from_bytes(blob) == state

    def test_corrupt_bytes_raise_input_error(self) -> None:
        with pytest.raises(InputError, match="Corrupt"):
            PreprocessingState.from_bytes(b"{not json")

    def test_unclipped_bounds_encode_as_strict_json(self, state: PreprocessingState) -> None:
        """Infinite clip bounds are written as null, never as Infinity tokens."""

        def reject(token: str) -> None:
            raise ValueError(f"non-standard JSON constant {token}")

        document = json.loads(state.to_bytes(), parse_constant=reject)
        assert document["clip_min"] == [None, None]
        assert document["clip_max"] == [None, None]

        clipped = apply_configuration(
            state, FeatureClipping((0,), (-math.inf,), (math.inf,), (4.0,), (16.0,))
        )
        document = json.loads(clipped.to_bytes(), parse_constant=reject)
        assert document["clip_min"] == [4.0, None]
        assert document["clip_max"] == [16.0, None]


class TestApplyConfiguration:
    """Pure state transitions for each patch type."""

    def test_clipping_sets_bounds_on_selected_features(self, state: PreprocessingState) -> None:
        config = FeatureClipping(
            feature_indices=(1,),
            original_min_values=(-math.inf,),
            original_max_values=(math.inf,),
            min_values=(-6.0,),
            max_values=(-4.0,),
        )
        patched = apply_configuration(state, config)
        assert patched.clip_min == (-math.inf, -6.0)
        assert patched.clip_max == (math.inf, -4.0)
        assert patched.version == 1
        assert state.version == 0

    def test_clipping_with_inverted_bounds_raises(self, state: PreprocessingState) -> None:
        config = FeatureClipping((0,), (-math.inf,), (math.inf,), (5.0,), (1.0,))
        with pytest.raises(InputError, match="exceeds"):
            apply_configuration(state, config)

    def test_out_of_range_index_raises(self, state: PreprocessingState) -> None:
        with pytest.raises(InputError, match="out of range"):
            apply_configuration(state, FeatureReweighting((7,), (1.0,), (0.5,)))

    def test_normalization_update_replaces_statistics(self, state: PreprocessingState) -> None:
        patched = apply_configuration(
            state, NormalizationUpdate((0,), (state.means[0],), (state.stds[0],), (12.0,), (3.0,))
        )
        assert patched.means[0] == 12.0
        assert patched.stds[0] == 3.0
        assert patched.means[1] == state.means[1]

    def test_non_positive_std_raises(self, state: PreprocessingState) -> None:
        with pytest.raises(InputError, match="positive"):
            apply_configuration(state, NormalizationUpdate((0,), (0.0,), (1.0,), (0.0,), (0.0,)))

    def test_threshold_outside_unit_interval_raises(self, state: PreprocessingState) -> None:
        with pytest.raises(InputError, match="threshold"):
            apply_configuration(state, ThresholdTuning(1, 0.5, 1.0))

    def test_ensemble_reweight_requires_ensemble(self, state: PreprocessingState) -> None:
        with pytest.raises(InputError, match="ensemble"):
            apply_configuration(state, EnsembleReweight((0,), (1.0,), (0.5,)))

    def test_calibration_bias_moves_probability_mass(self, state: PreprocessingState) -> None:
        """A log(2) bias on class 1 doubles its odds."""
        patched = apply_configuration(state, CalibrationAdjust((1,), (0.0,), (math.log(2.0),), 1.0, 1.0))
        probabilities = patched.transform_scores(np.array([[0.5, 0.5]]))
        assert probabilities[0, 1] == pytest.approx(2.0 / 3.0)

    def test_applying_twice_increments_version_each_time(self, state: PreprocessingState) -> None:
        config = FeatureReweighting((0,), (1.0,), (0.5,))
        assert apply_configuration(apply_configuration(state, config), config).version == 2


class TestPrediction:
    """Surrogate predictor and drift simulation."""

    def test_centroid_predictor_separates_clusters(self) -> None:
        rng = np.random.default_rng(seed=31)
        features = np.vstack([rng.normal(-3, 0.5, (100, 2)), rng.normal(3, 0.5, (100, 2))])
        labels = np.array([0] * 100 + [1] * 100)
        state = PreprocessingState.from_reference(features, num_classes=2)
        predictor = ReferenceCentroidPredictor.fit(state.transform_features(features), labels, num_classes=2)
        probabilities, decisions = predict(predictor, features, state)
        assert probabilities.shape == (200, 2)
        assert probabilities.sum(axis=1) == pytest.approx(np.ones(200))
        assert np.mean(decisions == labels) > 0.98

    def test_component_scores_follow_declared_features(self) -> None:
        rng = np.random.default_rng(seed=32)
        features = rng.normal(0, 1, (50, 3))
        labels = (features[:, 0] > 0).astype(int)
        predictor = ReferenceCentroidPredictor.fit(features, labels, num_classes=2, components=[(0,), (1, 2)])
        assert predictor.predict_component_scores(features).shape == (2, 50, 2)

    def test_simulated_drift_without_patch_equals_raw_score(self, state: PreprocessingState, reference: np.ndarray) -> None:
        """With an unchanged state the simulation reproduces the raw aggregate score."""
        comparator = DistributionComparator()
        current = reference + np.array([1.0, 0.0])
        expected = aggregate_score([fd.psi_value for fd in comparator.compare(reference, current)])
        assert simulate_feature_drift(comparator, reference, current, state, state) == pytest.approx(expected)

    def test_zero_weight_removes_feature_drift(self, state: PreprocessingState, reference: np.ndarray) -> None:
        comparator = DistributionComparator()
        current = reference + np.array([3.0, 0.0])
        muted = apply_configuration(state, FeatureReweighting((0,), (1.0,), (0.0,)))
        assert simulate_feature_drift(comparator, reference, current, state, muted) == pytest.approx(0.0, abs=1e-9)
