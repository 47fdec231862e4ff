"""Patch Candidate Generator.

Turns a drift diagnosis into ranked patch proposals. One builder per patch
type checks its applicability preconditions and computes the replacement
parameters from the reference and current batches. Everything here is pure
and deterministic: identical inputs always yield identical candidates in the
same order.

Ranking:
    score = 0.6 * predicted drift reduction + 0.4 * fit to the diagnosed drift type

Predicted drift reduction for input-side patches is measured by re-running
the comparator on the current batch as the patched pipeline would present
it. Output-side patches cannot move input distributions, so they use fixed
expected-impact estimates instead.
"""

import math
from dataclasses import dataclass

import numpy as np

from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.domain import (
    CalibrationAdjust,
    DriftResult,
    DriftType,
    EnsembleReweight,
    FeatureClipping,
    FeatureReweighting,
    Model,
    NormalizationUpdate,
    PatchCandidate,
    PatchConfiguration,
    PatchType,
    ThresholdTuning,
)
from aumos_drift_patcher.core.pipeline import (
    PreprocessingState,
    apply_configuration,
    simulate_feature_drift,
)
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)

# Expected drift reduction for patches acting on model outputs
_OUTPUT_PATCH_REDUCTION: dict[PatchType, float] = {
    PatchType.THRESHOLD_TUNING: 0.30,
    PatchType.CALIBRATION_ADJUST: 0.35,
    PatchType.ENSEMBLE_REWEIGHT: 0.40,
}

_REDUCTION_WEIGHT = 0.6
_FIT_WEIGHT = 0.4
_RECOMMEND_THRESHOLD = 0.5

# Fraction of current values outside the reference [p1, p99] that makes clipping applicable
_OUTLIER_FRACTION = 0.01

# Attribution skew: the top 20% of features carrying at least 60% of the drift
_SKEW_TOP_SHARE = 0.2
_SKEW_MIN_ATTRIBUTION = 0.6

# Normalization: mean moved by more than a quarter std, or std ratio outside the band
_MEAN_SHIFT_STDS = 0.25
_STD_RATIO_BAND = (0.8, 1.25)

_THRESHOLD_BOUNDS = (0.05, 0.95)
_NEUTRAL_THRESHOLD = 0.5
_BLIND_THRESHOLD_STEP = 0.1

# Ensemble component multipliers before renormalisation
_DRIFTED_COMPONENT_FACTOR = 0.6
_STABLE_COMPONENT_FACTOR = 1.2

_PRIOR_FLOOR = 1e-3

_TYPE_ORDER = list(PatchType)


@dataclass(frozen=True)
class _Draft:
    configuration: PatchConfiguration
    type_fit: float
    title: str
    description: str


def _finite_column(matrix: np.ndarray, index: int) -> np.ndarray:
    column = matrix[:, index]
    return column[np.isfinite(column)]


def _is_outlier_driven(reference: np.ndarray, current: np.ndarray) -> bool:
    """True when the bulk of the distribution is stable and only the tails moved."""
    p1, p99 = np.percentile(reference, [1, 99])
    outside = float(np.mean((current < p1) | (current > p99)))
    if outside <= _OUTLIER_FRACTION:
        return False
    ref_q1, ref_median, ref_q3 = np.percentile(reference, [25, 50, 75])
    cur_q1, cur_median, cur_q3 = np.percentile(current, [25, 50, 75])
    ref_std = float(np.std(reference)) or 1.0
    ref_iqr = float(ref_q3 - ref_q1)
    iqr_ratio = float(cur_q3 - cur_q1) / ref_iqr if ref_iqr > 0 else 1.0
    return (
        abs(float(cur_median - ref_median)) < _MEAN_SHIFT_STDS * ref_std
        and _STD_RATIO_BAND[0] <= iqr_ratio <= _STD_RATIO_BAND[1]
    )


class PatchCandidateGenerator:
    """Proposes patch configurations matched to a drift diagnosis.

    Args:
        comparator: Comparator used to measure predicted drift reduction.
    """

    def __init__(self, comparator: DistributionComparator) -> None:
        self._comparator = comparator

    def generate(
        self,
        drift_result: DriftResult,
        reference: np.ndarray,
        current: np.ndarray,
        model: Model,
        state: PreprocessingState,
    ) -> list[PatchCandidate]:
        """Build, score and rank every applicable candidate.

        Args:
            drift_result: Diagnosis produced by the aggregator.
            reference: Raw reference feature matrix.
            current: Raw current feature matrix.
            model: Model metadata (ensemble and probabilistic declarations).
            state: The model's current preprocessing state.

        Returns:
            Candidates sorted by descending score. The best candidate is
            always recommended; others when their score reaches 0.5.
        """
        reference = np.asarray(reference, dtype=float)
        current = np.asarray(current, dtype=float)

        drafts = [
            draft
            for draft in (
                self.feature_clipping(drift_result, reference, current, state),
                self.feature_reweighting(drift_result, state),
                self.threshold_tuning(drift_result, model, state),
                self.normalization_update(drift_result, reference, current, state),
                self.ensemble_reweight(drift_result, model, state),
                self.calibration_adjust(drift_result, model, state),
            )
            if draft is not None
        ]
        if not drafts:
            logger.info(
                "No applicable patch candidates",
                model_id=str(drift_result.model_id),
                drift_type=drift_result.drift_type.value,
            )
            return []

        baseline = simulate_feature_drift(
            self._comparator, reference, current, state, state, model.input_features
        )
        scored = []
        for draft in drafts:
            reduction = self._predicted_reduction(draft, reference, current, model, state, baseline)
            score = _REDUCTION_WEIGHT * reduction + _FIT_WEIGHT * draft.type_fit
            scored.append((draft, reduction, score))

        scored.sort(key=lambda item: (-item[2], _TYPE_ORDER.index(item[0].configuration.patch_type)))
        candidates = [
            PatchCandidate(
                configuration=draft.configuration,
                predicted_drift_reduction=reduction,
                type_fit=draft.type_fit,
                score=score,
                is_recommended=position == 0 or score >= _RECOMMEND_THRESHOLD,
                title=draft.title,
                description=draft.description,
            )
            for position, (draft, reduction, score) in enumerate(scored)
        ]
        logger.info(
            "Patch candidates generated",
            model_id=str(drift_result.model_id),
            count=len(candidates),
            best=candidates[0].patch_type.value,
        )
        return candidates

    def _predicted_reduction(
        self,
        draft: _Draft,
        reference: np.ndarray,
        current: np.ndarray,
        model: Model,
        state: PreprocessingState,
        baseline: float,
    ) -> float:
        patch_type = draft.configuration.patch_type
        if not patch_type.modifies_features:
            return _OUTPUT_PATCH_REDUCTION[patch_type]
        if baseline <= 0.0:
            return 0.0
        patched = apply_configuration(state, draft.configuration)
        after = simulate_feature_drift(
            self._comparator, reference, current, state, patched, model.input_features
        )
        return float(min(max((baseline - after) / baseline, 0.0), 1.0))

    # ------------------------------------------------------------------
    # Per-type builders
    # ------------------------------------------------------------------

    def feature_clipping(
        self,
        drift_result: DriftResult,
        reference: np.ndarray,
        current: np.ndarray,
        state: PreprocessingState,
    ) -> _Draft | None:
        """Clip drifted features with more than 1% of current values outside reference [p1, p99]."""
        indices, mins, maxs, fractions = [], [], [], []
        for fd in drift_result.drifted_features():
            i = fd.feature_index
            ref_col = _finite_column(reference, i)
            cur_col = _finite_column(current, i)
            if ref_col.size == 0 or cur_col.size == 0:
                continue
            p1, p99 = (float(v) for v in np.percentile(ref_col, [1, 99]))
            if p1 >= p99:
                continue
            outside = float(np.mean((cur_col < p1) | (cur_col > p99)))
            if outside <= _OUTLIER_FRACTION:
                continue
            if state.clip_min[i] == p1 and state.clip_max[i] == p99:
                continue
            indices.append(i)
            mins.append(p1)
            maxs.append(p99)
            fractions.append(outside)
        if not indices:
            return None
        mean_outside = float(np.mean(fractions))
        return _Draft(
            configuration=FeatureClipping(
                feature_indices=tuple(indices),
                original_min_values=tuple(state.clip_min[i] for i in indices),
                original_max_values=tuple(state.clip_max[i] for i in indices),
                min_values=tuple(mins),
                max_values=tuple(maxs),
            ),
            type_fit=0.5 + 0.5 * min(1.0, mean_outside / 0.2),
            title="Clip out-of-range feature values",
            description=(
                f"Clip {len(indices)} drifted feature(s) to the reference 1st-99th percentile "
                f"range; {mean_outside:.1%} of current values fall outside it on average."
            ),
        )

    def feature_reweighting(
        self,
        drift_result: DriftResult,
        state: PreprocessingState,
    ) -> _Draft | None:
        """Down-weight drifted features when a few features carry most of the drift."""
        drifts = drift_result.feature_drifts
        if len(drifts) < 2:
            return None
        ranked = sorted(drifts, key=lambda fd: (-fd.attribution_weight, fd.feature_index))
        top_count = max(1, math.ceil(_SKEW_TOP_SHARE * len(drifts)))
        top_share = float(sum(fd.attribution_weight for fd in ranked[:top_count]))
        if top_share < _SKEW_MIN_ATTRIBUTION:
            return None
        drifted = sorted(drift_result.drifted_features(), key=lambda fd: fd.feature_index)
        if not drifted:
            return None
        indices = tuple(fd.feature_index for fd in drifted)
        new_weights = tuple(1.0 / (1.0 + fd.psi_value) for fd in drifted)
        if all(abs(new - state.weights[i]) < 1e-9 for i, new in zip(indices, new_weights)):
            return None
        return _Draft(
            configuration=FeatureReweighting(
                feature_indices=indices,
                original_weights=tuple(state.weights[i] for i in indices),
                new_weights=new_weights,
            ),
            type_fit=min(1.0, top_share),
            title="Reduce influence of dominant drifting features",
            description=(
                f"The top {top_count} feature(s) carry {top_share:.0%} of total drift; "
                f"scale {len(indices)} drifted feature(s) by 1/(1+PSI)."
            ),
        )

    def threshold_tuning(
        self,
        drift_result: DriftResult,
        model: Model,
        state: PreprocessingState,
    ) -> _Draft | None:
        """Move the binary decision threshold by the change in class prevalence (prior drift only)."""
        if drift_result.drift_type is not DriftType.PRIOR or model.num_classes != 2:
            return None
        class_index = state.decision_class_index
        distributions = drift_result.label_distributions()
        if distributions is None:
            # No class balance to measure: raise the threshold in proportion to the drift score
            target = state.decision_threshold + _BLIND_THRESHOLD_STEP * drift_result.drift_score
            type_fit = 0.6
            reason = f"Class balance unknown; drift score {drift_result.drift_score:.2f}"
        else:
            reference_prior, current_prior = distributions
            shift = float(current_prior[class_index] - reference_prior[class_index])
            target = _NEUTRAL_THRESHOLD - shift
            type_fit = 1.0
            reason = f"Prevalence of class {class_index} changed by {shift:+.1%}"
        new_threshold = min(max(target, _THRESHOLD_BOUNDS[0]), _THRESHOLD_BOUNDS[1])
        if abs(new_threshold - state.decision_threshold) < 1e-6:
            return None
        return _Draft(
            configuration=ThresholdTuning(
                class_index=class_index,
                original_threshold=state.decision_threshold,
                new_threshold=new_threshold,
            ),
            type_fit=type_fit,
            title="Adjust decision threshold for new class balance",
            description=(
                f"{reason}; move the threshold from "
                f"{state.decision_threshold:.3f} to {new_threshold:.3f}."
            ),
        )

    def normalization_update(
        self,
        drift_result: DriftResult,
        reference: np.ndarray,
        current: np.ndarray,
        state: PreprocessingState,
    ) -> _Draft | None:
        """Re-normalise drifted features whose location or scale moved (covariate drift only)."""
        if drift_result.drift_type is not DriftType.COVARIATE:
            return None
        indices, means, stds = [], [], []
        for fd in drift_result.drifted_features():
            i = fd.feature_index
            ref_col = _finite_column(reference, i)
            cur_col = _finite_column(current, i)
            if ref_col.size == 0 or cur_col.size < 2:
                continue
            if _is_outlier_driven(ref_col, cur_col):
                continue
            cur_mean = float(np.mean(cur_col))
            cur_std = float(np.std(cur_col))
            state_std = state.stds[i] if state.stds[i] > 0 else 1.0
            if cur_std <= 0:
                continue
            mean_moved = abs(cur_mean - state.means[i]) > _MEAN_SHIFT_STDS * state_std
            ratio = cur_std / state_std
            scale_moved = not _STD_RATIO_BAND[0] <= ratio <= _STD_RATIO_BAND[1]
            if not (mean_moved or scale_moved):
                continue
            indices.append(i)
            means.append(cur_mean)
            stds.append(cur_std)
        if not indices:
            return None
        return _Draft(
            configuration=NormalizationUpdate(
                feature_indices=tuple(indices),
                original_means=tuple(state.means[i] for i in indices),
                original_stds=tuple(state.stds[i] for i in indices),
                new_means=tuple(means),
                new_stds=tuple(stds),
            ),
            type_fit=0.9,
            title="Update feature normalization statistics",
            description=(
                f"Re-centre and re-scale {len(indices)} feature(s) with current "
                f"mean and standard deviation."
            ),
        )

    def ensemble_reweight(
        self,
        drift_result: DriftResult,
        model: Model,
        state: PreprocessingState,
    ) -> _Draft | None:
        """Shift weight from components fed by drifted features (declared ensembles only)."""
        components = model.ensemble_components()
        if not components or len(state.ensemble_weights) != len(components):
            return None
        drifted = {fd.feature_index for fd in drift_result.drifted_features()}
        affected = [bool(drifted.intersection(columns)) for _, columns in components]
        if not any(affected) or all(affected):
            return None
        raw = np.array(
            [
                w * (_DRIFTED_COMPONENT_FACTOR if hit else _STABLE_COMPONENT_FACTOR)
                for w, hit in zip(state.ensemble_weights, affected)
            ]
        )
        new_weights = raw / raw.sum()
        fit = 0.7 if drift_result.drift_type in (DriftType.COVARIATE, DriftType.CONCEPT) else 0.5
        return _Draft(
            configuration=EnsembleReweight(
                component_indices=tuple(range(len(components))),
                original_weights=tuple(state.ensemble_weights),
                new_weights=tuple(float(w) for w in new_weights),
            ),
            type_fit=fit,
            title="Rebalance ensemble toward stable components",
            description=(
                f"{sum(affected)} of {len(components)} component(s) consume drifted features; "
                "lower their combination weight."
            ),
        )

    def calibration_adjust(
        self,
        drift_result: DriftResult,
        model: Model,
        state: PreprocessingState,
    ) -> _Draft | None:
        """Log-prior bias and temperature scaling (probabilistic models only)."""
        if not model.is_probabilistic or drift_result.drift_type is DriftType.NO_DRIFT:
            return None
        class_indices = tuple(range(state.num_classes))
        distributions = drift_result.label_distributions()
        if distributions is not None:
            reference_prior, current_prior = distributions
            ratio = np.maximum(current_prior, _PRIOR_FLOOR) / np.maximum(reference_prior, _PRIOR_FLOOR)
            new_biases = tuple(float(np.log(ratio[c])) for c in class_indices)
        else:
            new_biases = tuple(state.class_biases)
        new_temperature = 1.0 + 0.5 * drift_result.drift_score
        if new_biases == tuple(state.class_biases) and abs(new_temperature - state.temperature) < 1e-9:
            return None
        fit = {
            DriftType.PRIOR: 0.9,
            DriftType.CONCEPT: 0.7,
            DriftType.COVARIATE: 0.4,
        }[drift_result.drift_type]
        return _Draft(
            configuration=CalibrationAdjust(
                class_indices=class_indices,
                original_biases=tuple(state.class_biases),
                new_biases=new_biases,
                original_temperature=state.temperature,
                new_temperature=new_temperature,
            ),
            type_fit=fit,
            title="Recalibrate output probabilities",
            description=(
                f"Apply per-class log-prior corrections and temperature {new_temperature:.2f} "
                "to the model's output scores."
            ),
        )
