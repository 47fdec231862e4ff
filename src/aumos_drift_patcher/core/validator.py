"""Patch Validator.

Simulates a candidate patch on a held-out validation batch, entirely in
memory, and scores whether applying it is safe:

    drift_reduction    = clamp((drift_before - drift_after) / drift_before, 0, 1)
    performance_delta  = accuracy_after - accuracy_before
    safety_score       = clamp(0.6 * min(1, accuracy_after / accuracy_before)
                               + 0.4 * drift_reduction, 0, 1)

A patch is invalid when accuracy drops by more than the regression floor or
when the simulation itself fails. Small validation sets, missing labels and
precision/recall imbalance only produce warnings. The bootstrap confidence
interval of post-patch accuracy is informational.
"""

import numpy as np

from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    Model,
    PatchConfiguration,
    SampleBatch,
    ValidationMetrics,
    ValidationResult,
)
from aumos_drift_patcher.core.pipeline import (
    PreprocessingState,
    ReferenceCentroidPredictor,
    apply_configuration,
    predict,
    simulate_feature_drift,
)
from aumos_drift_patcher.errors import DriftPatcherError
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

_RETENTION_WEIGHT = 0.6
_REDUCTION_WEIGHT = 0.4
_IMBALANCE_GAP = 0.3
_MODERATE_SAFETY = 0.5


def classification_metrics(truth: np.ndarray, predicted: np.ndarray, num_classes: int) -> tuple[float, float, float, float]:
    """Accuracy and macro-averaged precision, recall and F1.

    Classes that never occur in either array are left out of the macro
    average.

    Returns:
        Tuple of (accuracy, precision, recall, f1).
    """
    truth = np.asarray(truth, dtype=int)
    predicted = np.asarray(predicted, dtype=int)
    if truth.size == 0:
        return 0.0, 0.0, 0.0, 0.0
    accuracy = float(np.mean(truth == predicted))
    precisions, recalls, f1s = [], [], []
    for c in range(num_classes):
        tp = float(np.sum((predicted == c) & (truth == c)))
        fp = float(np.sum((predicted == c) & (truth != c)))
        fn = float(np.sum((predicted != c) & (truth == c)))
        if tp + fp + fn == 0:
            continue
        precision = tp / (tp + fp) if tp + fp > 0 else 0.0
        recall = tp / (tp + fn) if tp + fn > 0 else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
        precisions.append(precision)
        recalls.append(recall)
        f1s.append(f1)
    if not precisions:
        return accuracy, 0.0, 0.0, 0.0
    return accuracy, float(np.mean(precisions)), float(np.mean(recalls)), float(np.mean(f1s))


def bootstrap_accuracy_interval(
    correct: np.ndarray,
    iterations: int,
    seed: int,
    confidence: float = 0.95,
) -> tuple[float, float]:
    """Percentile bootstrap interval of the mean of a 0/1 correctness vector."""
    correct = np.asarray(correct, dtype=float)
    if correct.size == 0 or iterations <= 0:
        return 0.0, 0.0
    rng = np.random.default_rng(seed)
    samples = rng.integers(0, correct.size, size=(iterations, correct.size))
    means = correct[samples].mean(axis=1)
    tail = (1.0 - confidence) / 2.0 * 100.0
    lower, upper = np.percentile(means, [tail, 100.0 - tail])
    return float(lower), float(upper)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(min(max(value, low), high))


class PatchValidator:
    """Validates patch configurations against a held-out batch.

    Args:
        comparator: Comparator used to recompute drift after the patch.
        regression_floor: Largest tolerated accuracy drop.
        min_validation_samples: Validation sets below this size get a warning.
        bootstrap_iterations: Resamples for the accuracy confidence interval.
        bootstrap_seed: Seed making the interval reproducible.
    """

    def __init__(
        self,
        comparator: DistributionComparator,
        regression_floor: float = 0.05,
        min_validation_samples: int = 30,
        bootstrap_iterations: int = 200,
        bootstrap_seed: int = 7,
    ) -> None:
        self._comparator = comparator
        self.regression_floor = regression_floor
        self.min_validation_samples = min_validation_samples
        self.bootstrap_iterations = bootstrap_iterations
        self.bootstrap_seed = bootstrap_seed

    def validate(
        self,
        configuration: PatchConfiguration,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
        validation: SampleBatch,
        predictor=None,
    ) -> ValidationResult:
        """Simulate ``configuration`` on ``validation`` and score it.

        Args:
            configuration: Patch parameters to evaluate.
            model: Model metadata.
            state: Current preprocessing state; never modified.
            reference: Reference batch (labels used to fit the surrogate predictor).
            validation: Held-out current batch.
            predictor: Optional ``IPredictor``; defaults to a nearest-centroid
                surrogate fitted on the reference batch.

        Returns:
            ValidationResult; ``is_valid`` is False on regression or internal error.
        """
        try:
            return self._validate(configuration, model, state, reference, validation, predictor)
        except (DriftPatcherError, ValueError, ArithmeticError) as exc:
            logger.warning(
                "Patch validation failed",
                model_id=str(model.id),
                patch_type=configuration.patch_type.value,
                error=str(exc),
            )
            return ValidationResult(
                is_valid=False,
                metrics=ValidationMetrics(
                    accuracy=0.0,
                    precision=0.0,
                    recall=0.0,
                    f1_score=0.0,
                    drift_score_before_patch=0.0,
                    drift_score_after_patch=0.0,
                    drift_reduction=0.0,
                    performance_delta=0.0,
                    safety_score=0.0,
                    confidence_interval_lower=0.0,
                    confidence_interval_upper=0.0,
                ),
                errors=(f"Validation error: {exc}",),
            )

    def _validate(
        self,
        configuration: PatchConfiguration,
        model: Model,
        state: PreprocessingState,
        reference: SampleBatch,
        validation: SampleBatch,
        predictor,
    ) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        num_classes = state.num_classes

        if len(validation) == 0:
            raise ValueError("Validation batch is empty")
        if len(validation) < self.min_validation_samples:
            warnings.append(
                f"Small validation set: {len(validation)} samples "
                f"(recommended at least {self.min_validation_samples})"
            )

        patched_state = apply_configuration(state, configuration)

        if predictor is None:
            if not reference.has_labels:
                raise ValueError("Reference labels are required to fit the surrogate predictor")
            predictor = ReferenceCentroidPredictor.fit(
                state.transform_features(reference.features),
                reference.labels,
                num_classes,
                [columns for _, columns in model.ensemble_components()],
            )

        _, predictions_before = predict(predictor, validation.features, state)
        _, predictions_after = predict(predictor, validation.features, patched_state)

        if validation.has_labels:
            truth = validation.labels
        else:
            truth = predictions_before
            warnings.append(
                "No ground-truth labels: metrics measure agreement with unpatched predictions"
            )

        accuracy_before, _, _, _ = classification_metrics(truth, predictions_before, num_classes)
        accuracy_after, precision, recall, f1 = classification_metrics(truth, predictions_after, num_classes)

        if configuration.patch_type.modifies_features:
            drift_before = simulate_feature_drift(
                self._comparator, reference.features, validation.features, state, state, model.input_features
            )
            drift_after = simulate_feature_drift(
                self._comparator, reference.features, validation.features, state, patched_state, model.input_features
            )
        else:
            if reference.has_labels:
                reference_classes = reference.labels
            else:
                _, reference_classes = predict(predictor, reference.features, state)
            drift_before = min(
                self._comparator.label_psi(reference_classes, predictions_before, num_classes), 1.0
            )
            drift_after = min(
                self._comparator.label_psi(reference_classes, predictions_after, num_classes), 1.0
            )

        drift_reduction = _clamp((drift_before - drift_after) / drift_before) if drift_before > 0 else 0.0
        performance_delta = accuracy_after - accuracy_before
        retention = min(1.0, accuracy_after / accuracy_before) if accuracy_before > 0 else 1.0
        safety_score = _clamp(_RETENTION_WEIGHT * retention + _REDUCTION_WEIGHT * drift_reduction)

        if performance_delta < -self.regression_floor:
            errors.append(
                f"Accuracy regression {performance_delta:+.3f} exceeds floor -{self.regression_floor:.3f}"
            )
        if abs(precision - recall) > _IMBALANCE_GAP:
            warnings.append(
                f"Precision/recall imbalance: precision {precision:.3f}, recall {recall:.3f}"
            )
        if safety_score < _MODERATE_SAFETY:
            warnings.append(f"Low safety score {safety_score:.3f}")

        ci_lower, ci_upper = bootstrap_accuracy_interval(
            (truth == predictions_after).astype(float),
            self.bootstrap_iterations,
            self.bootstrap_seed,
        )

        result = ValidationResult(
            is_valid=not errors,
            metrics=ValidationMetrics(
                accuracy=accuracy_after,
                precision=precision,
                recall=recall,
                f1_score=f1,
                drift_score_before_patch=float(drift_before),
                drift_score_after_patch=float(drift_after),
                drift_reduction=drift_reduction,
                performance_delta=performance_delta,
                safety_score=safety_score,
                confidence_interval_lower=ci_lower,
                confidence_interval_upper=ci_upper,
            ),
            errors=tuple(errors),
            warnings=tuple(warnings),
        )
        logger.info(
            "Patch validated",
            model_id=str(model.id),
            patch_type=configuration.patch_type.value,
            is_valid=result.is_valid,
            safety_score=round(safety_score, 4),
            drift_reduction=round(drift_reduction, 4),
        )
        return result
