"""Unit tests for the Patch Candidate Generator.

Diagnoses are either produced by the real comparator and aggregator on
seeded data, or built directly when a test targets one builder's
preconditions.
"""

import uuid

import numpy as np
import pytest

from aumos_drift_patcher.core.aggregator import DriftAggregator
from aumos_drift_patcher.core.candidates import PatchCandidateGenerator
from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    CalibrationAdjust,
    DistributionShift,
    DriftResult,
    DriftType,
    EnsembleReweight,
    FeatureDrift,
    Model,
    PatchType,
    ThresholdTuning,
)
from aumos_drift_patcher.core.pipeline import (
    PreprocessingState,
    apply_configuration,
    simulate_feature_drift,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_model(num_features: int = 2, labels: list[str] | None = None, **metadata) -> Model:
    return Model(
        name="credit-risk",
        version="1",
        input_features=[f"f{i}" for i in range(num_features)],
        output_labels=labels if labels is not None else ["reject", "approve"],
        metadata=metadata,
    )


def make_feature_drift(
    index: int,
    psi: float,
    is_drifted: bool,
    attribution: float = 0.0,
) -> FeatureDrift:
    return FeatureDrift(
        feature_name=f"f{index}",
        feature_index=index,
        drift_score=psi,
        psi_value=psi,
        ks_statistic=0.0,
        ks_p_value=1.0,
        is_drifted=is_drifted,
        attribution_weight=attribution,
        distribution_shift=DistributionShift(0.0, 0.0, 0.0, 0.0),
    )


def make_result(
    drift_type: DriftType,
    feature_drifts: list[FeatureDrift],
    score: float = 0.5,
    label_distributions: tuple[list[float], list[float]] | None = None,
) -> DriftResult:
    metadata = {}
    if label_distributions is not None:
        metadata["reference_label_distribution"] = label_distributions[0]
        metadata["current_label_distribution"] = label_distributions[1]
    return DriftResult(
        model_id=uuid.uuid4(),
        drift_score=score,
        drift_type=drift_type,
        is_drift_detected=score >= 0.2,
        severity="high",
        feature_drifts=feature_drifts,
        metadata=metadata,
    )


def initial_state(reference: np.ndarray, model: Model) -> PreprocessingState:
    return PreprocessingState.from_reference(reference, model.num_classes, len(model.ensemble_components()))


@pytest.fixture
def comparator() -> DistributionComparator:
    return DistributionComparator()


@pytest.fixture
def generator(comparator: DistributionComparator) -> PatchCandidateGenerator:
    return PatchCandidateGenerator(comparator)


@pytest.fixture
def outlier_data() -> tuple[np.ndarray, np.ndarray]:
    """Stable bulk on both features, 20% of feature 0 replaced by extreme values."""
    rng = np.random.default_rng(seed=21)
    reference = rng.normal(0.0, 1.0, size=(1000, 2))
    current = reference.copy()
    current[:200, 0] = 8.0
    return reference, current


def diagnose(
    comparator: DistributionComparator,
    model: Model,
    reference: np.ndarray,
    current: np.ndarray,
) -> DriftResult:
    drifts = comparator.compare(reference, current, model.input_features)
    return DriftAggregator(comparator).aggregate(model.id, drifts, model.num_classes, reference, current)


# ---------------------------------------------------------------------------
# generate()
# ---------------------------------------------------------------------------


class TestGenerate:
    """End-to-end candidate generation on a real diagnosis."""

    def test_clipping_lowers_simulated_drift(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
        outlier_data: tuple[np.ndarray, np.ndarray],
    ) -> None:
        """Clipping outliers back into the reference range reduces the drift the model sees."""
        reference, current = outlier_data
        model = make_model()
        state = initial_state(reference, model)
        result = diagnose(comparator, model, reference, current)
        assert result.drift_type is DriftType.COVARIATE

        candidates = generator.generate(result, reference, current, model, state)
        clipping = next(c for c in candidates if c.patch_type is PatchType.FEATURE_CLIPPING)
        assert clipping.configuration.feature_indices == (0,)

        before = simulate_feature_drift(comparator, reference, current, state, state, model.input_features)
        after = simulate_feature_drift(
            comparator,
            reference,
            current,
            state,
            apply_configuration(state, clipping.configuration),
            model.input_features,
        )
        assert after < before
        assert clipping.predicted_drift_reduction > 0.0

    def test_clip_bounds_are_reference_percentiles(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
        outlier_data: tuple[np.ndarray, np.ndarray],
    ) -> None:
        reference, current = outlier_data
        model = make_model()
        result = diagnose(comparator, model, reference, current)
        clipping = generator.feature_clipping(result, reference, current, initial_state(reference, model))
        p1, p99 = np.percentile(reference[:, 0], [1, 99])
        assert clipping is not None
        assert clipping.configuration.min_values[0] == pytest.approx(p1)
        assert clipping.configuration.max_values[0] == pytest.approx(p99)
        assert clipping.configuration.original_min_values[0] == float("-inf")

    def test_generation_is_deterministic(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
        outlier_data: tuple[np.ndarray, np.ndarray],
    ) -> None:
        """Identical inputs yield identical candidates in identical order."""
        reference, current = outlier_data
        model = make_model(probabilistic_output=True)
        state = initial_state(reference, model)
        result = diagnose(comparator, model, reference, current)
        first = generator.generate(result, reference, current, model, state)
        second = generator.generate(result, reference, current, model, state)
        assert [c.to_dict() for c in first] == [c.to_dict() for c in second]

    def test_candidates_are_ranked_and_recommended(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
        outlier_data: tuple[np.ndarray, np.ndarray],
    ) -> None:
        """Scores descend; the best is always recommended, others only at 0.5 or more."""
        reference, current = outlier_data
        model = make_model(probabilistic_output=True)
        result = diagnose(comparator, model, reference, current)
        candidates = generator.generate(result, reference, current, model, initial_state(reference, model))

        assert len(candidates) >= 2
        scores = [c.score for c in candidates]
        assert scores == sorted(scores, reverse=True)
        assert candidates[0].is_recommended
        for candidate in candidates[1:]:
            assert candidate.is_recommended == (candidate.score >= 0.5)
        for candidate in candidates:
            expected = 0.6 * candidate.predicted_drift_reduction + 0.4 * candidate.type_fit
            assert candidate.score == pytest.approx(expected)
            assert 0.0 <= candidate.predicted_drift_reduction <= 1.0

    def test_candidate_ids_are_unique_patch_types(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
        outlier_data: tuple[np.ndarray, np.ndarray],
    ) -> None:
        reference, current = outlier_data
        model = make_model(probabilistic_output=True)
        result = diagnose(comparator, model, reference, current)
        candidates = generator.generate(result, reference, current, model, initial_state(reference, model))
        ids = [c.candidate_id for c in candidates]
        assert len(ids) == len(set(ids))
        assert all(c.candidate_id == c.patch_type.value for c in candidates)

    def test_no_drift_yields_no_candidates(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
    ) -> None:
        """Identical batches are not drifted, so nothing is proposed for any model kind."""
        reference = np.random.default_rng(seed=4).normal(0.0, 1.0, size=(500, 2))
        model = make_model(
            probabilistic_output=True,
            ensemble_components=[{"name": "a", "features": ["f0"]}, {"name": "b", "features": ["f1"]}],
        )
        result = diagnose(comparator, model, reference, reference.copy())
        assert result.drift_type is DriftType.NO_DRIFT
        assert generator.generate(result, reference, reference.copy(), model, initial_state(reference, model)) == []

    def test_prior_drift_proposes_threshold_first(
        self,
        comparator: DistributionComparator,
        generator: PatchCandidateGenerator,
    ) -> None:
        """With stable inputs and shifted class balance the threshold patch ranks best."""
        reference = np.random.default_rng(seed=5).normal(0.0, 1.0, size=(400, 2))
        model = make_model()
        result = make_result(
            DriftType.PRIOR,
            [make_feature_drift(0, 0.0, False), make_feature_drift(1, 0.0, False)],
            score=0.0,
            label_distributions=([0.5, 0.5], [0.2, 0.8]),
        )
        candidates = generator.generate(result, reference, reference.copy(), model, initial_state(reference, model))
        assert [c.patch_type for c in candidates] == [PatchType.THRESHOLD_TUNING]
        assert candidates[0].score == pytest.approx(0.6 * 0.30 + 0.4 * 1.0)
        assert candidates[0].is_recommended


# ---------------------------------------------------------------------------
# Per-type applicability
# ---------------------------------------------------------------------------


class TestThresholdTuning:
    """Threshold tuning applies to prior drift of binary models only."""

    def test_threshold_moves_against_prevalence_change(self, generator: PatchCandidateGenerator) -> None:
        model = make_model()
        state = initial_state(np.zeros((3, 2)) + np.arange(3)[:, None], model)
        result = make_result(DriftType.PRIOR, [], label_distributions=([0.5, 0.5], [0.2, 0.8]))
        draft = generator.threshold_tuning(result, model, state)
        assert draft is not None
        assert isinstance(draft.configuration, ThresholdTuning)
        assert draft.configuration.class_index == 1
        assert draft.configuration.original_threshold == 0.5
        assert draft.configuration.new_threshold == pytest.approx(0.2)
        assert draft.type_fit == 1.0

    def test_threshold_is_clamped(self, generator: PatchCandidateGenerator) -> None:
        model = make_model()
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.PRIOR, [], label_distributions=([0.9, 0.1], [0.0, 1.0]))
        draft = generator.threshold_tuning(result, model, state)
        assert draft is not None
        assert draft.configuration.new_threshold == pytest.approx(0.05)

    def test_without_label_balance_threshold_rises_with_score(self, generator: PatchCandidateGenerator) -> None:
        model = make_model()
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.PRIOR, [], score=0.6)
        draft = generator.threshold_tuning(result, model, state)
        assert draft is not None
        assert draft.configuration.new_threshold == pytest.approx(0.56)
        assert draft.type_fit == 0.6

    def test_covariate_drift_gets_no_threshold_patch(self, generator: PatchCandidateGenerator) -> None:
        model = make_model()
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.COVARIATE, [], label_distributions=([0.5, 0.5], [0.2, 0.8]))
        assert generator.threshold_tuning(result, model, state) is None

    def test_multiclass_model_gets_no_threshold_patch(self, generator: PatchCandidateGenerator) -> None:
        model = make_model(labels=["a", "b", "c"])
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.PRIOR, [], label_distributions=([0.3, 0.3, 0.4], [0.1, 0.1, 0.8]))
        assert generator.threshold_tuning(result, model, state) is None


class TestNormalizationUpdate:
    """Normalization updates for location or scale shifts under covariate drift."""

    def test_shifted_feature_is_renormalised(self, generator: PatchCandidateGenerator) -> None:
        rng = np.random.default_rng(seed=8)
        reference = rng.normal(0.0, 1.0, size=(1000, 2))
        current = reference.copy()
        current[:, 0] += 1.5
        model = make_model()
        result = make_result(
            DriftType.COVARIATE, [make_feature_drift(0, 1.2, True), make_feature_drift(1, 0.0, False)]
        )
        draft = generator.normalization_update(result, reference, current, initial_state(reference, model))
        assert draft is not None
        assert draft.configuration.feature_indices == (0,)
        assert draft.configuration.new_means[0] == pytest.approx(float(np.mean(current[:, 0])))
        assert draft.configuration.new_stds[0] == pytest.approx(float(np.std(current[:, 0])))
        assert draft.type_fit == 0.9

    def test_outlier_driven_feature_is_left_to_clipping(self, generator: PatchCandidateGenerator) -> None:
        """A few extreme values with a stable bulk call for clipping, not re-normalisation."""
        rng = np.random.default_rng(seed=9)
        reference = rng.normal(0.0, 1.0, size=(2000, 1))
        current = reference.copy()
        current[:100, 0] = 10.0
        model = make_model(num_features=1)
        state = initial_state(reference, model)
        result = make_result(DriftType.COVARIATE, [make_feature_drift(0, 0.3, True)])
        assert generator.normalization_update(result, reference, current, state) is None
        assert generator.feature_clipping(result, reference, current, state) is not None

    def test_prior_drift_gets_no_normalization_patch(self, generator: PatchCandidateGenerator) -> None:
        reference = np.random.default_rng(seed=10).normal(0.0, 1.0, size=(200, 1))
        model = make_model(num_features=1)
        result = make_result(DriftType.PRIOR, [make_feature_drift(0, 1.0, True)])
        draft = generator.normalization_update(result, reference, reference + 3.0, initial_state(reference, model))
        assert draft is None


class TestFeatureReweighting:
    """Reweighting only when drift attribution is concentrated."""

    def test_dominant_feature_is_down_weighted(self, generator: PatchCandidateGenerator) -> None:
        drifts = [make_feature_drift(0, 0.8, True, attribution=0.9)] + [
            make_feature_drift(i, 0.02, False, attribution=0.025) for i in range(1, 5)
        ]
        model = make_model(num_features=5)
        state = initial_state(np.arange(15, dtype=float).reshape(3, 5), model)
        draft = generator.feature_reweighting(make_result(DriftType.COVARIATE, drifts), state)
        assert draft is not None
        assert draft.configuration.feature_indices == (0,)
        assert draft.configuration.new_weights[0] == pytest.approx(1.0 / 1.8)
        assert draft.configuration.original_weights == (1.0,)
        assert draft.type_fit == pytest.approx(0.9)

    def test_evenly_spread_drift_gets_no_reweighting(self, generator: PatchCandidateGenerator) -> None:
        drifts = [make_feature_drift(i, 0.4, True, attribution=0.2) for i in range(5)]
        model = make_model(num_features=5)
        state = initial_state(np.arange(15, dtype=float).reshape(3, 5), model)
        assert generator.feature_reweighting(make_result(DriftType.COVARIATE, drifts), state) is None


class TestEnsembleReweight:
    """Ensemble reweighting requires declared components."""

    def test_drifted_component_loses_weight(self, generator: PatchCandidateGenerator) -> None:
        model = make_model(
            ensemble_components=[{"name": "a", "features": ["f0"]}, {"name": "b", "features": ["f1"]}]
        )
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(
            DriftType.COVARIATE, [make_feature_drift(0, 0.9, True), make_feature_drift(1, 0.01, False)]
        )
        draft = generator.ensemble_reweight(result, model, state)
        assert draft is not None
        assert isinstance(draft.configuration, EnsembleReweight)
        assert draft.configuration.original_weights == (0.5, 0.5)
        assert draft.configuration.new_weights == pytest.approx((1 / 3, 2 / 3))
        assert sum(draft.configuration.new_weights) == pytest.approx(1.0)
        assert draft.type_fit == 0.7

    def test_model_without_ensemble_gets_nothing(self, generator: PatchCandidateGenerator) -> None:
        model = make_model()
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.COVARIATE, [make_feature_drift(0, 0.9, True)])
        assert generator.ensemble_reweight(result, model, state) is None

    def test_all_components_drifted_gets_nothing(self, generator: PatchCandidateGenerator) -> None:
        model = make_model(
            ensemble_components=[{"name": "a", "features": ["f0"]}, {"name": "b", "features": ["f1"]}]
        )
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(
            DriftType.COVARIATE, [make_feature_drift(0, 0.9, True), make_feature_drift(1, 0.9, True)]
        )
        assert generator.ensemble_reweight(result, model, state) is None


class TestCalibrationAdjust:
    """Calibration only for models with probabilistic outputs."""

    def test_prior_drift_sets_log_prior_biases(self, generator: PatchCandidateGenerator) -> None:
        model = make_model(probabilistic_output=True)
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.PRIOR, [], score=0.4, label_distributions=([0.5, 0.5], [0.25, 0.75]))
        draft = generator.calibration_adjust(result, model, state)
        assert draft is not None
        assert isinstance(draft.configuration, CalibrationAdjust)
        assert draft.configuration.new_biases == pytest.approx((np.log(0.5), np.log(1.5)))
        assert draft.configuration.new_temperature == pytest.approx(1.2)
        assert draft.type_fit == 0.9

    def test_covariate_drift_keeps_biases_and_scales_temperature(self, generator: PatchCandidateGenerator) -> None:
        model = make_model(probabilistic_output=True)
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.COVARIATE, [make_feature_drift(0, 0.9, True)], score=0.6)
        draft = generator.calibration_adjust(result, model, state)
        assert draft is not None
        assert draft.configuration.new_biases == (0.0, 0.0)
        assert draft.configuration.new_temperature == pytest.approx(1.3)
        assert draft.type_fit == 0.4

    def test_non_probabilistic_model_gets_nothing(self, generator: PatchCandidateGenerator) -> None:
        model = make_model()
        state = initial_state(np.arange(6, dtype=float).reshape(3, 2), model)
        result = make_result(DriftType.PRIOR, [], label_distributions=([0.5, 0.5], [0.2, 0.8]))
        assert generator.calibration_adjust(result, model, state) is None
