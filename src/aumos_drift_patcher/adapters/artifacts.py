"""Loaders for user-provided model and dataset artifacts.

Model artifacts are JSON metadata documents:

    {
      "name": "churn",
      "version": "3",
      "input_features": ["tenure", "spend"],
      "output_labels": ["stay", "leave"],
      "metadata": {"probabilistic_output": true}
    }

A model binary may sit next to the metadata (``artifact_path``); it is
never executed, only copied when patched artifacts are exported.

Datasets are CSV files with a header row. Every column except the optional
label column is a numeric feature. Labels may be class names or class
indices and are resolved against a model with ``DatasetArtifact.to_batch``.
"""

import json
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from aumos_drift_patcher.core.domain import Model, SampleBatch
from aumos_drift_patcher.errors import InputError

DEFAULT_LABEL_COLUMN = "label"
_MISSING_TOKENS = ("", "nan", "NaN", "NA", "null")


@dataclass
class ModelArtifact:
    """Model metadata plus the location of its binary, if any."""

    name: str
    version: str
    input_features: list[str]
    output_labels: list[str]
    metadata: dict
    artifact_path: Path | None = None

    def to_model(self) -> Model:
        return Model(
            name=self.name,
            version=self.version,
            input_features=list(self.input_features),
            output_labels=list(self.output_labels),
            metadata=dict(self.metadata),
        )


@dataclass
class DatasetArtifact:
    """A tabular dataset with feature columns and optional raw labels."""

    name: str
    feature_names: list[str]
    features: np.ndarray
    raw_labels: list[str] | None = None

    def __len__(self) -> int:
        return int(self.features.shape[0])

    def to_batch(self, model: Model) -> SampleBatch:
        """Reorder columns to the model's feature order and resolve labels to indices.

        Raises:
            InputError: If a model feature is missing from the dataset or a
                label matches neither a class name nor a class index.
        """
        missing = [name for name in model.input_features if name not in self.feature_names]
        if missing and len(self.feature_names) != model.num_features:
            raise InputError(
                f"Dataset '{self.name}' has {len(self.feature_names)} features but model "
                f"'{model.name}' expects {model.num_features}"
            )
        if missing:
            # Same width but different names: keep positional order
            features = self.features
        else:
            order = [self.feature_names.index(name) for name in model.input_features]
            features = self.features[:, order]

        labels = None
        if self.raw_labels is not None:
            labels = np.array([self._resolve_label(raw, model) for raw in self.raw_labels], dtype=int)
        return SampleBatch(features=features, labels=labels)

    @staticmethod
    def _resolve_label(raw: str, model: Model) -> int:
        if raw in model.output_labels:
            return model.output_labels.index(raw)
        try:
            index = int(float(raw))
        except ValueError as exc:
            raise InputError(f"Unknown class label '{raw}'") from exc
        if not 0 <= index < model.num_classes:
            raise InputError(f"Class index {index} outside [0, {model.num_classes})")
        return index


def load_model_artifact(path: str | Path, artifact_path: str | Path | None = None) -> ModelArtifact:
    """Read model metadata JSON.

    Args:
        path: Metadata document.
        artifact_path: Optional model binary copied on export.

    Returns:
        ModelArtifact.

    Raises:
        InputError: If the file is unreadable or lacks required keys.
    """
    path = Path(path)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InputError(f"Cannot read model metadata {path}: {exc}") from exc

    features = document.get("input_features")
    if not features or not isinstance(features, list):
        raise InputError(f"Model metadata {path} must list input_features")
    return ModelArtifact(
        name=str(document.get("name", path.stem)),
        version=str(document.get("version", "1")),
        input_features=[str(f) for f in features],
        output_labels=[str(label) for label in document.get("output_labels", [])],
        metadata=dict(document.get("metadata", {})),
        artifact_path=Path(artifact_path) if artifact_path is not None else None,
    )


def load_dataset_csv(path: str | Path, label_column: str | None = DEFAULT_LABEL_COLUMN) -> DatasetArtifact:
    """Read a CSV dataset with pandas.

    Args:
        path: CSV file with a header row.
        label_column: Name of the label column; ignored when absent from the header.

    Returns:
        DatasetArtifact with a float feature matrix. Empty or NaN cells become NaN.

    Raises:
        InputError: If the file is unreadable, empty, ragged, or holds non-numeric features.
    """
    path = Path(path)
    try:
        # Cells are read as text so empty features, short rows and labels stay distinguishable
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True, index_col=False)
    except pd.errors.EmptyDataError as exc:
        raise InputError(f"Dataset {path} has no data rows") from exc
    except pd.errors.ParserError as exc:
        raise InputError(f"Dataset {path} is not valid CSV: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise InputError(f"Cannot read dataset {path}: {exc}") from exc
    if frame.empty:
        raise InputError(f"Dataset {path} has no data rows")
    frame.columns = [str(column).strip() for column in frame.columns]

    # Short rows are padded with NaN by the parser
    short = frame.isna().any(axis=1).to_numpy()
    if short.any():
        row = int(np.flatnonzero(short)[0])
        cells = int(frame.iloc[row].notna().sum())
        raise InputError(f"Dataset {path} row {row + 2} has {cells} cells, expected {len(frame.columns)}")

    has_labels = bool(label_column) and label_column in frame.columns
    feature_names = [column for column in frame.columns if not (has_labels and column == label_column)]
    cells = frame[feature_names].apply(lambda column: column.str.strip())
    missing = cells.isin(_MISSING_TOKENS)
    values = cells.mask(missing).apply(pd.to_numeric, errors="coerce")
    invalid = (values.isna() & ~missing).to_numpy()
    if invalid.any():
        row, position = np.argwhere(invalid)[0]
        raise InputError(
            f"Dataset {path} row {row + 2}: non-numeric value '{cells.iat[row, position]}' "
            f"in '{feature_names[position]}'"
        )

    return DatasetArtifact(
        name=path.name,
        feature_names=feature_names,
        features=values.to_numpy(dtype=float),
        raw_labels=frame[label_column].str.strip().tolist() if has_labels else None,
    )
