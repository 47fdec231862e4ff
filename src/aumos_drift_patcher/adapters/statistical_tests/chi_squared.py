"""Chi-squared test for class-label distribution drift.

Compares the observed class counts of the current labels against the counts
expected from the reference class proportions. A small p-value indicates
that the label distribution (the class prior) has shifted.

Both count vectors receive a pseudo-count of 0.5 per class, so a class that
never occurs in the reference still yields a finite statistic.

Reference:
    scipy.stats.chisquare:
    https://docs.scipy.org/doc/scipy/reference/generated/scipy.stats.chisquare.html
"""

from dataclasses import dataclass

import numpy as np
from scipy import stats

from aumos_drift_patcher.errors import InputError

_PSEUDO_COUNT = 0.5


@dataclass(frozen=True)
class ChiSquaredResult:
    """Result of a chi-squared label drift test.

    Attributes:
        statistic: Chi-squared test statistic (non-negative).
        p_value: p-value from the chi-squared distribution.
        threshold: Significance level used to determine drift.
        is_drifted: True if p_value < threshold.
        degrees_of_freedom: Number of classes minus 1.
        reference_counts: Observed counts per class in the reference.
        current_counts: Observed counts per class in the current sample.
        expected_counts: Expected (smoothed) current counts from reference proportions.
    """

    statistic: float
    p_value: float
    threshold: float
    is_drifted: bool
    degrees_of_freedom: int
    reference_counts: list[int]
    current_counts: list[int]
    expected_counts: list[float]

    def to_dict(self) -> dict:
        return {
            "test": "chi_squared",
            "statistic": self.statistic,
            "p_value": self.p_value,
            "threshold": self.threshold,
            "is_drifted": self.is_drifted,
            "degrees_of_freedom": self.degrees_of_freedom,
            "reference_counts": self.reference_counts,
            "current_counts": self.current_counts,
            "expected_counts": self.expected_counts,
        }


class ChiSquaredTest:
    """Chi-squared goodness-of-fit test on class-index samples.

    Stateless class: use the `run` class method directly.
    """

    @classmethod
    def run(
        cls,
        reference_labels: np.ndarray,
        current_labels: np.ndarray,
        num_classes: int,
        threshold: float = 0.05,
    ) -> ChiSquaredResult:
        """Test whether current class frequencies match reference proportions.

        Args:
            reference_labels: 1-D array of integer class indices.
            current_labels: 1-D array of integer class indices.
            num_classes: Number of classes.
            threshold: Significance level (default 0.05). Drift if p_value < threshold.

        Returns:
            ChiSquaredResult with test statistic, p-value, and drift verdict.

        Raises:
            InputError: If either sample is empty or num_classes < 2.

        Example:
            >>> ref = np.array([0] * 500 + [1] * 500)
            >>> cur = np.array([0] * 100 + [1] * 900)
            >>> ChiSquaredTest.run(ref, cur, num_classes=2).is_drifted
            True
        """
        reference_labels = np.asarray(reference_labels, dtype=int).ravel()
        current_labels = np.asarray(current_labels, dtype=int).ravel()
        if reference_labels.size == 0:
            raise InputError("Reference labels must not be empty")
        if current_labels.size == 0:
            raise InputError("Current labels must not be empty")
        if num_classes < 2:
            raise InputError("Chi-squared label test needs at least two classes")

        ref_counts = np.bincount(reference_labels, minlength=num_classes)[:num_classes]
        cur_counts = np.bincount(current_labels, minlength=num_classes)[:num_classes]

        observed = cur_counts.astype(float) + _PSEUDO_COUNT
        ref_smoothed = ref_counts.astype(float) + _PSEUDO_COUNT
        # Expected current counts = reference proportion * current total
        expected = ref_smoothed / ref_smoothed.sum() * observed.sum()

        chi2_result = stats.chisquare(f_obs=observed, f_exp=expected)

        return ChiSquaredResult(
            statistic=float(chi2_result.statistic),
            p_value=float(chi2_result.pvalue),
            threshold=threshold,
            is_drifted=bool(chi2_result.pvalue < threshold),
            degrees_of_freedom=num_classes - 1,
            reference_counts=[int(c) for c in ref_counts],
            current_counts=[int(c) for c in cur_counts],
            expected_counts=expected.tolist(),
        )

    @classmethod
    def class_distribution(cls, labels: np.ndarray, num_classes: int) -> np.ndarray:
        """Fraction of samples per class.

        Example:
            >>> ChiSquaredTest.class_distribution(np.array([0, 1, 1, 1]), 2).tolist()
            [0.25, 0.75]
        """
        labels = np.asarray(labels, dtype=int).ravel()
        if labels.size == 0:
            return np.zeros(num_classes)
        counts = np.bincount(labels, minlength=num_classes)[:num_classes]
        return counts / labels.size
