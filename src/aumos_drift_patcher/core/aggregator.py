"""Drift Aggregator: overall score, severity band and drift-type diagnosis."""

import uuid

import numpy as np

from aumos_drift_patcher.adapters.statistical_tests.chi_squared import ChiSquaredTest
from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import DriftResult, DriftType, FeatureDrift, StatisticalTest


def aggregate_score(psi_values: list[float] | np.ndarray) -> float:
    """Attribution-weighted mean PSI, clamped to [0, 1].

    With attribution a_i = psi_i / sum(psi) the weighted mean is
    sum(psi_i^2) / sum(psi), which lies between the mean and the max PSI and
    is dominated by the worst features.

    Example:
        >>> aggregate_score([0.0, 0.0])
        0.0
        >>> round(aggregate_score([0.1, 0.3]), 3)
        0.25
    """
    values = np.clip(np.asarray(psi_values, dtype=float), 0.0, None)
    total = float(values.sum())
    if total <= 0.0:
        return 0.0
    return float(min(max(float(np.sum(values**2)) / total, 0.0), 1.0))


def severity_for(score: float) -> str:
    """Severity band for an aggregate drift score.

    > 0.7 critical, 0.5 to 0.7 high, 0.2 to 0.5 moderate, below 0.2 low.
    """
    if score > 0.7:
        return "critical"
    if score >= 0.5:
        return "high"
    if score >= 0.2:
        return "moderate"
    return "low"


def _label_feature_correlations(features: np.ndarray, labels: np.ndarray) -> np.ndarray:
    """Pearson correlation of each feature column with the class index (0 when undefined)."""
    y = labels.astype(float)
    y_centered = y - y.mean()
    y_norm = float(np.sqrt(np.sum(y_centered**2)))
    x_centered = features - features.mean(axis=0)
    x_norm = np.sqrt(np.sum(x_centered**2, axis=0))
    denominator = x_norm * y_norm
    numerator = x_centered.T @ y_centered
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = np.where(denominator > 0, numerator / np.where(denominator > 0, denominator, 1.0), 0.0)
    return np.nan_to_num(corr)


class DriftAggregator:
    """Combines per-feature drift into a DriftResult.

    Args:
        comparator: Comparator used for the label distribution test.
        detection_threshold: Score at or above which drift is reported as detected.
        relationship_shift_threshold: Absolute change in feature/label
            correlation that signals a changed input/output relationship.
    """

    def __init__(
        self,
        comparator: DistributionComparator,
        detection_threshold: float = 0.2,
        relationship_shift_threshold: float = 0.2,
    ) -> None:
        self._comparator = comparator
        self.detection_threshold = detection_threshold
        self.relationship_shift_threshold = relationship_shift_threshold

    def aggregate(
        self,
        model_id: uuid.UUID,
        feature_drifts: list[FeatureDrift],
        num_classes: int,
        reference_features: np.ndarray | None = None,
        current_features: np.ndarray | None = None,
        reference_labels: np.ndarray | None = None,
        current_labels: np.ndarray | None = None,
    ) -> DriftResult:
        """Build the aggregate DriftResult.

        Label-based checks (prior shift, relationship shift) run only when
        both label samples are present.

        Args:
            model_id: Model the drift belongs to.
            feature_drifts: Output of ``DistributionComparator.compare``.
            num_classes: Number of output classes of the model.
            reference_features: Reference matrix, for the relationship check.
            current_features: Current matrix, for the relationship check.
            reference_labels: Reference class indices, optional.
            current_labels: Current class indices, optional.

        Returns:
            DriftResult with score, severity, type and statistical tests.
        """
        score = aggregate_score([fd.psi_value for fd in feature_drifts])
        tests = [
            StatisticalTest(
                name=f"ks:{fd.feature_name}",
                statistic=fd.ks_statistic,
                p_value=fd.ks_p_value,
                threshold=self._comparator.ks_alpha,
                passed=fd.ks_p_value >= self._comparator.ks_alpha,
            )
            for fd in feature_drifts
        ]
        metadata: dict = {}

        input_shift = any(fd.is_drifted for fd in feature_drifts)
        label_shift = False
        relationship_shift = False

        if reference_labels is not None and current_labels is not None:
            chi2 = self._comparator.compare_labels(reference_labels, current_labels, num_classes)
            label_shift = chi2.is_drifted
            tests.append(
                StatisticalTest(
                    name="chi_squared:labels",
                    statistic=chi2.statistic,
                    p_value=chi2.p_value,
                    threshold=chi2.threshold,
                    passed=not chi2.is_drifted,
                )
            )
            metadata["reference_label_distribution"] = ChiSquaredTest.class_distribution(
                reference_labels, num_classes
            ).tolist()
            metadata["current_label_distribution"] = ChiSquaredTest.class_distribution(
                current_labels, num_classes
            ).tolist()

            if reference_features is not None and current_features is not None:
                ref_corr = _label_feature_correlations(
                    np.asarray(reference_features, dtype=float), np.asarray(reference_labels)
                )
                cur_corr = _label_feature_correlations(
                    np.asarray(current_features, dtype=float), np.asarray(current_labels)
                )
                max_change = float(np.max(np.abs(cur_corr - ref_corr))) if ref_corr.size else 0.0
                metadata["relationship_shift"] = max_change
                relationship_shift = max_change > self.relationship_shift_threshold

        if relationship_shift:
            drift_type = DriftType.CONCEPT
        elif label_shift:
            drift_type = DriftType.PRIOR
        elif input_shift:
            drift_type = DriftType.COVARIATE
        else:
            drift_type = DriftType.NO_DRIFT

        metadata.update(
            input_shift=input_shift,
            label_shift=label_shift,
            relationship_shift_detected=relationship_shift,
        )

        return DriftResult(
            model_id=model_id,
            drift_score=score,
            drift_type=drift_type,
            is_drift_detected=score >= self.detection_threshold,
            severity=severity_for(score),
            feature_drifts=list(feature_drifts),
            statistical_tests=tests,
            metadata=metadata,
        )
