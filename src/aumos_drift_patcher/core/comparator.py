"""Distribution Comparator: per-feature drift measurement.

Runs PSI and the two-sample KS test on every input feature, summarises how
each marginal distribution moved, and attributes the total PSI across
features. Also compares class-label samples for the prior-drift check.
"""

import numpy as np

from aumos_drift_patcher.adapters.statistical_tests.chi_squared import (
    ChiSquaredResult,
    ChiSquaredTest,
)
from aumos_drift_patcher.adapters.statistical_tests.ks_test import KolmogorovSmirnovTest
from aumos_drift_patcher.adapters.statistical_tests.psi import PopulationStabilityIndex
from aumos_drift_patcher.core.domain import DistributionShift, FeatureDrift
from aumos_drift_patcher.errors import InputError
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

_QUANTILES = (0.25, 0.5, 0.75)


def _as_matrix(values: np.ndarray, label: str) -> np.ndarray:
    matrix = np.asarray(values, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix.reshape(-1, 1)
    if matrix.ndim != 2:
        raise InputError(f"{label} features must be a 2-D array")
    if matrix.shape[0] == 0:
        raise InputError(f"{label} sample is empty")
    return matrix


def distribution_shift(reference: np.ndarray, current: np.ndarray) -> DistributionShift:
    """Moment, range and quartile shifts from reference to current (finite values only)."""
    ref = reference[np.isfinite(reference)]
    cur = current[np.isfinite(current)]
    ref_q = np.quantile(ref, _QUANTILES)
    cur_q = np.quantile(cur, _QUANTILES)
    return DistributionShift(
        mean_shift=float(cur.mean() - ref.mean()),
        std_shift=float(cur.std() - ref.std()),
        min_shift=float(cur.min() - ref.min()),
        max_shift=float(cur.max() - ref.max()),
        quantile_shifts={
            f"{q:.2f}": float(c - r) for q, r, c in zip(_QUANTILES, ref_q, cur_q)
        },
    )


def attribution_weights(psi_values: list[float]) -> list[float]:
    """Each feature's share of the total PSI; all zeros when the total is zero."""
    total = float(sum(psi_values))
    if total <= 0.0:
        return [0.0 for _ in psi_values]
    return [float(p) / total for p in psi_values]


class DistributionComparator:
    """Measures per-feature drift between a reference and a current batch.

    Args:
        psi_threshold: PSI above which a feature is drifted.
        ks_alpha: KS p-value below which a feature is drifted.
        num_bins: Quantile bins used for PSI.
    """

    def __init__(
        self,
        psi_threshold: float = 0.2,
        ks_alpha: float = 0.05,
        num_bins: int = 10,
    ) -> None:
        self.psi_threshold = psi_threshold
        self.ks_alpha = ks_alpha
        self.num_bins = num_bins

    def compare_feature(
        self,
        reference: np.ndarray,
        current: np.ndarray,
        feature_name: str = "unknown",
        feature_index: int = 0,
    ) -> FeatureDrift:
        """Measure drift on a single feature.

        The returned FeatureDrift carries a zero attribution weight; use
        ``compare`` to get attribution across features.

        Raises:
            InputError: If either sample is empty or has no finite values.
        """
        psi = PopulationStabilityIndex.run(
            reference,
            current,
            threshold=self.psi_threshold,
            num_bins=self.num_bins,
            feature_name=feature_name,
        )
        ks = KolmogorovSmirnovTest.run(
            reference, current, threshold=self.ks_alpha, feature_name=feature_name
        )
        if psi.low_confidence:
            logger.debug(
                "PSI computed with degenerate reference fallback",
                feature=feature_name,
            )
        return FeatureDrift(
            feature_name=feature_name,
            feature_index=feature_index,
            drift_score=psi.psi,
            psi_value=psi.psi,
            ks_statistic=ks.statistic,
            ks_p_value=ks.p_value,
            is_drifted=bool(psi.psi > self.psi_threshold or ks.p_value < self.ks_alpha),
            attribution_weight=0.0,
            distribution_shift=distribution_shift(
                np.asarray(reference, dtype=float), np.asarray(current, dtype=float)
            ),
            low_confidence=psi.low_confidence,
        )

    def compare(
        self,
        reference: np.ndarray,
        current: np.ndarray,
        feature_names: list[str] | None = None,
    ) -> list[FeatureDrift]:
        """Measure drift on every feature column and attribute total PSI.

        Args:
            reference: Reference matrix (samples x features).
            current: Current matrix (samples x features).
            feature_names: Names per column; defaults to ``feature_<i>``.

        Returns:
            One FeatureDrift per column, in column order.

        Raises:
            InputError: On empty samples, NaN-only columns or a column-count mismatch.
        """
        reference = _as_matrix(reference, "Reference")
        current = _as_matrix(current, "Current")
        if reference.shape[1] != current.shape[1]:
            raise InputError(
                f"Feature count mismatch: reference has {reference.shape[1]}, "
                f"current has {current.shape[1]}"
            )
        num_features = reference.shape[1]
        names = feature_names or [f"feature_{i}" for i in range(num_features)]
        if len(names) != num_features:
            raise InputError(
                f"Expected {len(names)} features, batch has {num_features}"
            )

        drifts = [
            self.compare_feature(reference[:, i], current[:, i], names[i], i)
            for i in range(num_features)
        ]
        weights = attribution_weights([fd.psi_value for fd in drifts])
        return [
            FeatureDrift(
                feature_name=fd.feature_name,
                feature_index=fd.feature_index,
                drift_score=fd.drift_score,
                psi_value=fd.psi_value,
                ks_statistic=fd.ks_statistic,
                ks_p_value=fd.ks_p_value,
                is_drifted=fd.is_drifted,
                attribution_weight=weight,
                distribution_shift=fd.distribution_shift,
                low_confidence=fd.low_confidence,
            )
            for fd, weight in zip(drifts, weights)
        ]

    def compare_labels(
        self,
        reference_labels: np.ndarray,
        current_labels: np.ndarray,
        num_classes: int,
    ) -> ChiSquaredResult:
        """Chi-squared test of current class frequencies against reference proportions."""
        return ChiSquaredTest.run(
            reference_labels, current_labels, num_classes=num_classes, threshold=self.ks_alpha
        )

    def label_psi(
        self,
        reference_labels: np.ndarray,
        current_labels: np.ndarray,
        num_classes: int,
    ) -> float:
        """PSI between two class-index samples."""
        return PopulationStabilityIndex.run_categorical(
            reference_labels,
            current_labels,
            num_classes=num_classes,
            threshold=self.psi_threshold,
        ).psi
