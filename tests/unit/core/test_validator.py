"""Unit tests for the Patch Validator and its metric helpers."""

import numpy as np
import pytest

from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    FeatureClipping,
    FeatureReweighting,
    Model,
    SampleBatch,
    ThresholdTuning,
)
from aumos_drift_patcher.core.pipeline import PreprocessingState
from aumos_drift_patcher.core.validator import (
    PatchValidator,
    bootstrap_accuracy_interval,
    classification_metrics,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_clusters(seed: int, size: int = 400) -> SampleBatch:
    """Two well separated classes centred at (-3, -3) and (3, 3)."""
    rng = np.random.default_rng(seed)
    labels = np.repeat([0, 1], size // 2)
    centres = np.where(labels[:, None] == 1, 3.0, -3.0)
    return SampleBatch(features=centres + rng.normal(0.0, 1.0, size=(size, 2)), labels=labels)


@pytest.fixture
def model() -> Model:
    return Model(name="clusters", version="1", input_features=["x", "y"], output_labels=["neg", "pos"])


@pytest.fixture
def reference() -> SampleBatch:
    return make_clusters(seed=31)


@pytest.fixture
def state(reference: SampleBatch) -> PreprocessingState:
    return PreprocessingState.from_reference(reference.features, 2)


@pytest.fixture
def validator() -> PatchValidator:
    return PatchValidator(DistributionComparator(), regression_floor=0.05, min_validation_samples=30)


@pytest.fixture
def outlier_validation() -> SampleBatch:
    """Same clusters with 15% of the first feature pushed far out of range."""
    batch = make_clusters(seed=32)
    features = batch.features.copy()
    features[::7, 0] = 40.0
    return SampleBatch(features=features, labels=batch.labels)


def clipping_for(reference: SampleBatch, state: PreprocessingState) -> FeatureClipping:
    p1, p99 = np.percentile(reference.features[:, 0], [1, 99])
    return FeatureClipping(
        feature_indices=(0,),
        original_min_values=(state.clip_min[0],),
        original_max_values=(state.clip_max[0],),
        min_values=(float(p1),),
        max_values=(float(p99),),
    )


# ---------------------------------------------------------------------------
# Metric helpers
# ---------------------------------------------------------------------------


class TestClassificationMetrics:
    """Accuracy and macro-averaged precision / recall / F1."""

    def test_perfect_predictions(self) -> None:
        truth = np.array([0, 1, 1, 0, 2])
        assert classification_metrics(truth, truth, 3) == (1.0, 1.0, 1.0, 1.0)

    def test_known_confusion(self) -> None:
        """One false positive for class 1 out of four samples."""
        truth = np.array([0, 0, 1, 1])
        predicted = np.array([0, 1, 1, 1])
        accuracy, precision, recall, f1 = classification_metrics(truth, predicted, 2)
        assert accuracy == pytest.approx(0.75)
        # class 0: p=1, r=0.5; class 1: p=2/3, r=1
        assert precision == pytest.approx((1.0 + 2 / 3) / 2)
        assert recall == pytest.approx((0.5 + 1.0) / 2)
        assert f1 == pytest.approx((2 / 3 + 0.8) / 2)

    def test_empty_input_gives_zeros(self) -> None:
        assert classification_metrics(np.array([]), np.array([]), 2) == (0.0, 0.0, 0.0, 0.0)


class TestBootstrapInterval:
    """Percentile bootstrap of accuracy."""

    def test_all_correct_is_degenerate(self) -> None:
        assert bootstrap_accuracy_interval(np.ones(50), iterations=100, seed=1) == (1.0, 1.0)

    def test_interval_brackets_the_mean(self) -> None:
        correct = (np.arange(200) % 4 != 0).astype(float)
        lower, upper = bootstrap_accuracy_interval(correct, iterations=300, seed=3)
        assert lower <= correct.mean() <= upper
        assert lower < upper

    def test_same_seed_same_interval(self) -> None:
        correct = (np.arange(100) % 3 != 0).astype(float)
        first = bootstrap_accuracy_interval(correct, iterations=100, seed=9)
        assert bootstrap_accuracy_interval(correct, iterations=100, seed=9) == first

    def test_empty_vector(self) -> None:
        assert bootstrap_accuracy_interval(np.array([]), iterations=100, seed=1) == (0.0, 0.0)


# ---------------------------------------------------------------------------
# PatchValidator
# ---------------------------------------------------------------------------


class TestPatchValidator:
    """Validation verdicts and warnings."""

    def test_clipping_outliers_is_valid_and_reduces_drift(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
        outlier_validation: SampleBatch,
    ) -> None:
        result = validator.validate(clipping_for(reference, state), model, state, reference, outlier_validation)
        assert result.is_valid
        assert result.errors == ()
        metrics = result.metrics
        assert metrics.drift_score_after_patch < metrics.drift_score_before_patch
        assert 0.0 < metrics.drift_reduction <= 1.0
        assert metrics.performance_delta >= -0.05
        assert 0.0 <= metrics.safety_score <= 1.0
        assert metrics.confidence_interval_lower <= metrics.accuracy <= metrics.confidence_interval_upper

    def test_state_is_not_modified(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
        outlier_validation: SampleBatch,
    ) -> None:
        before = state.to_bytes()
        validator.validate(clipping_for(reference, state), model, state, reference, outlier_validation)
        assert state.to_bytes() == before

    def test_validation_is_deterministic(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
        outlier_validation: SampleBatch,
    ) -> None:
        configuration = clipping_for(reference, state)
        first = validator.validate(configuration, model, state, reference, outlier_validation)
        second = validator.validate(configuration, model, state, reference, outlier_validation)
        assert first.metrics == second.metrics

    def test_accuracy_regression_is_rejected(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
    ) -> None:
        """Zeroing every input weight collapses predictions to one class."""
        configuration = FeatureReweighting(
            feature_indices=(0, 1),
            original_weights=(1.0, 1.0),
            new_weights=(0.0, 0.0),
        )
        result = validator.validate(configuration, model, state, reference, make_clusters(seed=33))
        assert not result.is_valid
        assert result.metrics.performance_delta < -0.05
        assert any("regression" in error for error in result.errors)

    def test_invalid_configuration_is_reported_not_raised(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
    ) -> None:
        configuration = FeatureClipping(
            feature_indices=(5,),
            original_min_values=(float("-inf"),),
            original_max_values=(float("inf"),),
            min_values=(0.0,),
            max_values=(1.0,),
        )
        result = validator.validate(configuration, model, state, reference, make_clusters(seed=34))
        assert not result.is_valid
        assert result.errors[0].startswith("Validation error")
        assert result.metrics.safety_score == 0.0

    def test_small_validation_set_warns(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
    ) -> None:
        small = make_clusters(seed=35, size=10)
        result = validator.validate(clipping_for(reference, state), model, state, reference, small)
        assert any("Small validation set" in warning for warning in result.warnings)

    def test_missing_labels_measure_agreement(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
    ) -> None:
        """Without ground truth the unpatched predictions are the baseline."""
        unlabeled = SampleBatch(features=make_clusters(seed=36).features)
        result = validator.validate(clipping_for(reference, state), model, state, reference, unlabeled)
        assert any("No ground-truth labels" in warning for warning in result.warnings)
        assert result.metrics.performance_delta <= 0.0

    def test_unlabeled_reference_without_predictor_is_invalid(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
    ) -> None:
        unlabeled_reference = SampleBatch(features=reference.features)
        result = validator.validate(
            clipping_for(reference, state), model, state, unlabeled_reference, make_clusters(seed=37)
        )
        assert not result.is_valid

    def test_output_patch_drift_is_measured_on_predictions(
        self,
        validator: PatchValidator,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
    ) -> None:
        """A threshold patch is scored by the shift of predicted classes against reference labels."""
        configuration = ThresholdTuning(class_index=1, original_threshold=0.5, new_threshold=0.4)
        result = validator.validate(configuration, model, state, reference, make_clusters(seed=38))
        assert result.is_valid
        assert 0.0 <= result.metrics.drift_score_before_patch <= 1.0
        assert 0.0 <= result.metrics.drift_score_after_patch <= 1.0
