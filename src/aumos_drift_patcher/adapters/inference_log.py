"""Inference log sources feeding the monitoring scheduler.

``InMemoryInferenceLog`` is the production injection point: the serving
layer registers each model's reference batch once and appends inference
batches as they arrive (``/models/{id}/inference/*`` routes); the scheduler
reads a sliding window of the most recent rows.

``SyntheticInferenceLog`` generates seeded demonstration data with a
configurable mean shift, so the scheduler can be exercised without a live
model.
"""

from collections import deque

import numpy as np

from aumos_drift_patcher.core.domain import Model, SampleBatch
from aumos_drift_patcher.errors import InputError, NotFoundError


class InMemoryInferenceLog:
    """Registry of reference batches and a bounded window of recent inferences.

    Args:
        window_size: Maximum number of recent rows returned by fetch_current.
    """

    def __init__(self, window_size: int = 1000) -> None:
        self.window_size = window_size
        self._references: dict = {}
        self._recent: dict = {}

    def register_reference(self, model: Model, batch: SampleBatch) -> None:
        """Set the reference batch for a model.

        Raises:
            InputError: If the batch width does not match the model.
        """
        if batch.num_features != model.num_features:
            raise InputError(
                f"Reference batch has {batch.num_features} features, model expects {model.num_features}"
            )
        self._references[model.id] = batch

    def record(self, model: Model, batch: SampleBatch) -> None:
        """Append inference rows (and labels, once known) for a model."""
        if batch.num_features != model.num_features:
            raise InputError(f"Batch has {batch.num_features} features, model expects {model.num_features}")
        window = self._recent.setdefault(model.id, deque(maxlen=self.window_size))
        labels = batch.labels if batch.has_labels else [None] * len(batch)
        for row, label in zip(batch.features, labels):
            window.append((row, label))

    def summary(self, model: Model) -> dict:
        """Row counts currently held for a model."""
        reference = self._references.get(model.id)
        return {
            "model_id": model.id,
            "reference_rows": len(reference) if reference is not None else 0,
            "recent_rows": len(self._recent.get(model.id, ())),
            "window_size": self.window_size,
        }

    async def fetch_reference(self, model: Model) -> SampleBatch:
        batch = self._references.get(model.id)
        if batch is None:
            raise NotFoundError(f"No reference batch registered for model {model.id}")
        return batch

    async def fetch_current(self, model: Model) -> SampleBatch:
        window = self._recent.get(model.id)
        if not window:
            raise NotFoundError(f"No inference rows recorded for model {model.id}")
        features = np.stack([row for row, _ in window])
        labels = [label for _, label in window]
        if any(label is None for label in labels):
            return SampleBatch(features=features)
        return SampleBatch(features=features, labels=np.asarray(labels, dtype=int))


class SyntheticInferenceLog:
    """Seeded Gaussian data per model, optionally mean-shifted in the current window.

    Labels come from a linear rule on the features, cut into equally likely
    classes on the reference. The reference batch is identical on every fetch;
    each current fetch draws a fresh sample, so repeated cycles see sampling
    noise but no drift unless ``drift_magnitude`` is set.

    Args:
        seed: Base seed.
        reference_size: Rows per reference batch.
        current_size: Rows per current batch.
        drift_magnitude: Mean shift (in standard deviations) added to the
            first half of the features in current batches.
    """

    def __init__(
        self,
        seed: int = 0,
        reference_size: int = 500,
        current_size: int = 300,
        drift_magnitude: float = 0.0,
    ) -> None:
        self.seed = seed
        self.reference_size = reference_size
        self.current_size = current_size
        self.drift_magnitude = drift_magnitude
        self._draws: dict = {}

    def _rng(self, model: Model, stream: int) -> np.random.Generator:
        # The reference stream always replays its first draw
        draw = self._draws.get((model.id, stream), 0) if stream else 0
        self._draws[(model.id, stream)] = draw + 1
        return np.random.default_rng([self.seed, model.id.int % (2**32), stream, draw])

    def _cuts(self, model: Model) -> np.ndarray:
        # Class boundaries fixed by the reference distribution of the linear score
        rng = np.random.default_rng([self.seed, model.id.int % (2**32), 99])
        scores = rng.normal(0.0, 1.0, (5000, model.num_features)).sum(axis=1)
        return np.quantile(scores, np.linspace(0, 1, model.num_classes + 1)[1:-1])

    def _batch(self, model: Model, size: int, shift: float, stream: int) -> SampleBatch:
        rng = self._rng(model, stream)
        features = rng.normal(0.0, 1.0, (size, model.num_features))
        if shift:
            features[:, : max(1, model.num_features // 2)] += shift
        labels = np.searchsorted(self._cuts(model), features.sum(axis=1))
        return SampleBatch(features=features, labels=labels)

    async def fetch_reference(self, model: Model) -> SampleBatch:
        return self._batch(model, self.reference_size, 0.0, stream=0)

    async def fetch_current(self, model: Model) -> SampleBatch:
        return self._batch(model, self.current_size, self.drift_magnitude, stream=1)
