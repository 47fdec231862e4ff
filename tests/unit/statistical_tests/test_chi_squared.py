"""Unit tests for the chi-squared label drift test."""

import numpy as np
import pytest

from aumos_drift_patcher.adapters.statistical_tests.chi_squared import ChiSquaredTest
from aumos_drift_patcher.errors import InputError


def labels_from_counts(*counts: int) -> np.ndarray:
    """Class-index array with ``counts[i]`` samples of class i."""
    return np.repeat(np.arange(len(counts)), counts)


class TestChiSquaredTest:
    """Tests for ChiSquaredTest.run() with known class distributions."""

    def test_identical_distribution_no_drift(self) -> None:
        """Identical class frequencies must not be flagged as drift."""
        labels = labels_from_counts(500, 300, 200)
        result = ChiSquaredTest.run(labels, labels.copy(), num_classes=3, threshold=0.05)
        assert not result.is_drifted
        assert result.statistic == pytest.approx(0.0, abs=1e-6)

    def test_inverted_class_balance_detects_drift(self) -> None:
        """A large shift in class proportions must be detected."""
        result = ChiSquaredTest.run(labels_from_counts(900, 100), labels_from_counts(100, 900), num_classes=2)
        assert result.is_drifted
        assert result.p_value < 0.05

    def test_stable_distribution_within_noise(self) -> None:
        """Small variation around the reference proportions is not drift."""
        result = ChiSquaredTest.run(labels_from_counts(600, 400), labels_from_counts(610, 390), num_classes=2)
        assert not result.is_drifted

    def test_class_absent_from_reference_stays_finite(self) -> None:
        """The pseudo-count keeps a never-seen reference class finite and drifted."""
        result = ChiSquaredTest.run(labels_from_counts(500, 500, 0), labels_from_counts(400, 400, 200), num_classes=3)
        assert np.isfinite(result.statistic)
        assert result.is_drifted

    def test_degrees_of_freedom_and_counts(self) -> None:
        """Degrees of freedom equal classes minus one; raw counts are reported."""
        result = ChiSquaredTest.run(labels_from_counts(10, 20, 30), labels_from_counts(5, 5, 5), num_classes=3)
        assert result.degrees_of_freedom == 2
        assert result.reference_counts == [10, 20, 30]
        assert result.current_counts == [5, 5, 5]

    def test_single_class_raises(self) -> None:
        """At least two classes are required."""
        with pytest.raises(InputError, match="two classes"):
            ChiSquaredTest.run(np.zeros(10, dtype=int), np.zeros(10, dtype=int), num_classes=1)

    def test_empty_labels_raise(self) -> None:
        """Empty label samples must raise InputError."""
        with pytest.raises(InputError, match="empty"):
            ChiSquaredTest.run(np.array([], dtype=int), np.array([0, 1]), num_classes=2)

    def test_class_distribution(self) -> None:
        """Class fractions sum to one and follow the counts."""
        fractions = ChiSquaredTest.class_distribution(labels_from_counts(1, 3), 2)
        assert fractions.tolist() == [0.25, 0.75]
        assert ChiSquaredTest.class_distribution(np.array([], dtype=int), 3).tolist() == [0.0, 0.0, 0.0]
