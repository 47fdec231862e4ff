"""Population Stability Index (PSI) drift test.

PSI measures how much a feature's distribution has shifted between a
reference population and the current one.

PSI is computed by:
1. Cutting the reference's central range [p1, p99] at its deciles, and adding
   two open tail bins for values strictly below p1 and strictly above p99
2. Counting the fraction of each sample that falls into each bin
3. Adding a small epsilon to every fraction so empty bins stay finite
4. PSI = sum_i((cur_frac_i - ref_frac_i) * ln(cur_frac_i / ref_frac_i))

The tail bins make PSI sensitive to outliers beyond the reference range, and
a value clipped to p1 or p99 lands back in the central bins.

Interpretation:
    PSI < 0.2        → stable or minor drift
    0.2 ≤ PSI < 0.5  → moderate drift
    PSI ≥ 0.5        → high drift

A reference sample with zero variance has no deciles; binning then reduces to
below / equal to / above the constant and the result is flagged as low
confidence instead of failing.

Reference:
    Siddiqi, N. (2006). Credit Risk Scorecards: Developing and Implementing
    Intelligent Credit Scoring. Wiley.

Example:
    >>> import numpy as np
    >>> ref = np.random.default_rng(0).uniform(0, 10, 100)
    >>> cur = np.random.default_rng(1).uniform(5, 15, 100)
    >>> PopulationStabilityIndex.run(ref, cur).psi > 0.5
    True
"""

from dataclasses import dataclass

import numpy as np

from aumos_drift_patcher.errors import InputError


@dataclass(frozen=True)
class PsiResult:
    """Result of a Population Stability Index calculation.

    Attributes:
        psi: PSI score (non-negative). Higher = more drift.
        threshold: PSI threshold for declaring drift.
        is_drifted: True if psi > threshold.
        num_bins: Number of bins used (central bins plus the two tail bins).
        bin_edges: Bin boundaries: p1, the central deciles, p99 of the reference.
        reference_fractions: Smoothed reference fraction per bin.
        current_fractions: Smoothed current fraction per bin.
        per_bin_psi: Contribution to total PSI from each bin.
        feature_name: Name of the feature tested.
        reference_size: Number of finite reference samples.
        current_size: Number of finite current samples.
        low_confidence: True when the degenerate-reference fallback was used.
    """

    psi: float
    threshold: float
    is_drifted: bool
    num_bins: int
    bin_edges: list[float]
    reference_fractions: list[float]
    current_fractions: list[float]
    per_bin_psi: list[float]
    feature_name: str = "unknown"
    reference_size: int = 0
    current_size: int = 0
    low_confidence: bool = False

    def to_dict(self) -> dict:
        """Serialise to a plain dict for JSON storage.

        Returns:
            Dict representation of this result.
        """
        return {
            "test": "psi",
            "feature": self.feature_name,
            "psi": self.psi,
            "threshold": self.threshold,
            "is_drifted": self.is_drifted,
            "num_bins": self.num_bins,
            "bin_edges": self.bin_edges,
            "reference_fractions": self.reference_fractions,
            "current_fractions": self.current_fractions,
            "per_bin_psi": self.per_bin_psi,
            "reference_size": self.reference_size,
            "current_size": self.current_size,
            "low_confidence": self.low_confidence,
        }


# Added to every bin fraction to keep log terms finite
_EPSILON = 1e-4


def _finite(values: np.ndarray, label: str) -> np.ndarray:
    values = np.asarray(values, dtype=float).ravel()
    if values.size == 0:
        raise InputError(f"{label} sample is empty")
    values = values[np.isfinite(values)]
    if values.size == 0:
        raise InputError(f"{label} sample is empty after removing NaN/inf")
    return values


def _bin_counts(values: np.ndarray, tail_low: float, tail_high: float, central: np.ndarray) -> np.ndarray:
    """Counts per bin: [< tail_low], central bins split at ``central``, [> tail_high]."""
    # Inside [tail_low, tail_high] a value equal to an edge belongs to the upper bin
    index = 1 + np.searchsorted(central, values, side="right")
    index = np.where(values < tail_low, 0, index)
    index = np.where(values > tail_high, central.size + 2, index)
    return np.bincount(index, minlength=central.size + 3).astype(float)


def psi_from_fractions(reference_fractions: np.ndarray, current_fractions: np.ndarray) -> np.ndarray:
    """Per-bin PSI terms for two fraction vectors, epsilon-smoothed."""
    ref = np.asarray(reference_fractions, dtype=float) + _EPSILON
    cur = np.asarray(current_fractions, dtype=float) + _EPSILON
    return (cur - ref) * np.log(cur / ref)


class PopulationStabilityIndex:
    """Population Stability Index for detecting distribution shift.

    Stateless class: use the `run` class method directly.
    """

    @classmethod
    def run(
        cls,
        reference: np.ndarray,
        current: np.ndarray,
        threshold: float = 0.2,
        num_bins: int = 10,
        feature_name: str = "unknown",
    ) -> PsiResult:
        """Compute the PSI between reference and current distributions.

        Central edges are the reference deciles that fall strictly inside
        [p1, p99]. Duplicate edges (ties in the reference) are collapsed, so
        heavily discretised features end up with fewer, wider bins.

        Args:
            reference: 1-D array of reference feature values.
            current: 1-D array of current feature values.
            threshold: PSI threshold for declaring drift (default 0.2).
            num_bins: Number of quantile steps for the central range (default 10).
            feature_name: Optional label for the feature being tested.

        Returns:
            PsiResult with PSI score, per-bin breakdown, and drift verdict.

        Raises:
            InputError: If either sample is empty or contains no finite values.
        """
        reference = _finite(reference, "Reference")
        current = _finite(current, "Current")

        tail_low, tail_high = (float(v) for v in np.percentile(reference, [1, 99]))
        deciles = np.unique(np.percentile(reference, np.linspace(0, 100, num_bins + 1)[1:-1]))
        central = deciles[(deciles > tail_low) & (deciles < tail_high)]

        ref_counts = _bin_counts(reference, tail_low, tail_high, central)
        cur_counts = _bin_counts(current, tail_low, tail_high, central)
        edges = [tail_low, *(float(e) for e in central), tail_high]
        low_confidence = bool(np.ptp(reference) == 0.0)

        ref_fractions = ref_counts / reference.size
        cur_fractions = cur_counts / current.size
        per_bin_psi = psi_from_fractions(ref_fractions, cur_fractions)
        psi_total = max(float(np.sum(per_bin_psi)), 0.0)

        return PsiResult(
            psi=psi_total,
            threshold=threshold,
            is_drifted=bool(psi_total > threshold),
            num_bins=int(ref_counts.size),
            bin_edges=edges,
            reference_fractions=(ref_fractions + _EPSILON).tolist(),
            current_fractions=(cur_fractions + _EPSILON).tolist(),
            per_bin_psi=per_bin_psi.tolist(),
            feature_name=feature_name,
            reference_size=int(reference.size),
            current_size=int(current.size),
            low_confidence=low_confidence,
        )

    @classmethod
    def run_categorical(
        cls,
        reference_labels: np.ndarray,
        current_labels: np.ndarray,
        num_classes: int,
        threshold: float = 0.2,
        feature_name: str = "label",
    ) -> PsiResult:
        """PSI between two class-index samples, one bin per class.

        Used to compare predicted-class distributions with the reference
        label distribution for patches that act on model outputs.

        Args:
            reference_labels: 1-D array of integer class indices.
            current_labels: 1-D array of integer class indices.
            num_classes: Number of classes (bins).
            threshold: PSI threshold for declaring drift.
            feature_name: Optional label for the tested quantity.

        Returns:
            PsiResult with one bin per class.

        Raises:
            InputError: If a sample is empty or holds an out-of-range class.
        """
        reference_labels = np.asarray(reference_labels, dtype=int).ravel()
        current_labels = np.asarray(current_labels, dtype=int).ravel()
        if reference_labels.size == 0 or current_labels.size == 0:
            raise InputError("Label samples must not be empty")
        for labels in (reference_labels, current_labels):
            if labels.min() < 0 or labels.max() >= num_classes:
                raise InputError(f"Class index outside [0, {num_classes})")

        ref_fractions = np.bincount(reference_labels, minlength=num_classes) / reference_labels.size
        cur_fractions = np.bincount(current_labels, minlength=num_classes) / current_labels.size
        per_bin_psi = psi_from_fractions(ref_fractions, cur_fractions)
        psi_total = max(float(np.sum(per_bin_psi)), 0.0)

        return PsiResult(
            psi=psi_total,
            threshold=threshold,
            is_drifted=bool(psi_total > threshold),
            num_bins=num_classes,
            bin_edges=[float(c) + 0.5 for c in range(num_classes - 1)],
            reference_fractions=(ref_fractions + _EPSILON).tolist(),
            current_fractions=(cur_fractions + _EPSILON).tolist(),
            per_bin_psi=per_bin_psi.tolist(),
            feature_name=feature_name,
            reference_size=int(reference_labels.size),
            current_size=int(current_labels.size),
        )
