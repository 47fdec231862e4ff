"""File-system export of patch documents and patched artifacts.

Files written under the export directory:

- ``patch_<type>_<id8>_<timestamp>.json``: the patch export document
- ``patch_<type>_<id8>_<timestamp>.txt``: a human-readable summary
- ``<dataset stem>_patched.csv``: the dataset as the patched pipeline clips it
- ``<model stem>_patched<suffix>`` plus ``<model stem>_patched.preprocessing.json``:
  a copy of the model binary (or its metadata) and the preprocessing state
  that must accompany it
"""

import json
import shutil
from pathlib import Path

import numpy as np
import pandas as pd

from aumos_drift_patcher.core.domain import Model, Patch, utcnow
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)


class FileExportWriter:
    """IExportWriter writing to a local directory.

    Args:
        export_dir: Target directory; created on first write.
    """

    def __init__(self, export_dir: str | Path) -> None:
        self.export_dir = Path(export_dir)

    def _target(self, file_name: str) -> Path:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        return self.export_dir / file_name

    @staticmethod
    def _patch_stem(patch: Patch) -> str:
        stamp = utcnow().strftime("%Y%m%dT%H%M%S")
        return f"patch_{patch.patch_type.value.lower()}_{str(patch.id)[:8]}_{stamp}"

    def write_patch_document(self, patch: Patch) -> Path:
        target = self._target(f"{self._patch_stem(patch)}.json")
        target.write_text(json.dumps(patch.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        logger.info("Patch document exported", patch_id=str(patch.id), path=str(target))
        return target

    def write_patch_report(self, patch: Patch) -> Path:
        lines = [
            f"Patch {patch.id}",
            f"Type:         {patch.patch_type.value}",
            f"Status:       {patch.status.value}",
            f"Model:        {patch.model_id}",
            f"Drift result: {patch.drift_result_id}",
            f"Created:      {patch.created_at.isoformat()}",
        ]
        if patch.applied_at is not None:
            lines.append(f"Applied:      {patch.applied_at.isoformat()}")
        if patch.rolled_back_at is not None:
            lines.append(f"Rolled back:  {patch.rolled_back_at.isoformat()}")
        if patch.metadata.get("title"):
            lines += ["", str(patch.metadata["title"]), str(patch.metadata.get("description", ""))]

        lines += ["", "Configuration:"]
        for key, value in patch.configuration.to_dict().items():
            if key != "type":
                lines.append(f"  {key}: {value}")

        result = patch.validation_result
        if result is not None:
            metrics = result.metrics
            lines += [
                "",
                f"Validation:   {'passed' if result.is_valid else 'rejected'}",
                f"  accuracy           {metrics.accuracy:.4f} ({metrics.performance_delta:+.4f})",
                f"  drift before/after {metrics.drift_score_before_patch:.4f} / {metrics.drift_score_after_patch:.4f}",
                f"  drift reduction    {metrics.drift_reduction:.1%}",
                f"  safety score       {metrics.safety_score:.3f}",
                f"  accuracy 95% CI    [{metrics.confidence_interval_lower:.4f}, {metrics.confidence_interval_upper:.4f}]",
            ]
            lines += [f"  error: {e}" for e in result.errors]
            lines += [f"  warning: {w}" for w in result.warnings]

        target = self._target(f"{self._patch_stem(patch)}.txt")
        target.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return target

    def write_patched_dataset(
        self,
        source_name: str,
        feature_names: list[str],
        features: np.ndarray,
        labels: np.ndarray | None,
        label_names: list[str] | None = None,
    ) -> Path:
        target = self._target(f"{Path(source_name).stem}_patched.csv")
        frame = pd.DataFrame(np.asarray(features, dtype=float), columns=list(feature_names))
        if labels is not None:
            frame["label"] = [
                label_names[i] if label_names and i < len(label_names) else str(i)
                for i in (int(label) for label in labels)
            ]
        # NaN cells are written empty
        frame.to_csv(target, index=False)
        logger.info("Patched dataset exported", path=str(target), rows=len(frame))
        return target

    def write_patched_model(self, model: Model, source_path: Path | None, state: bytes) -> Path:
        if source_path is not None:
            source_path = Path(source_path)
            stem = f"{source_path.stem}_patched"
            target = self._target(f"{stem}{source_path.suffix}")
            shutil.copyfile(source_path, target)
        else:
            stem = f"{model.name}_patched"
            target = self._target(f"{stem}.model.json")
            target.write_text(json.dumps(model.to_dict(), indent=2, sort_keys=True), encoding="utf-8")

        sidecar = self._target(f"{stem}.preprocessing.json")
        sidecar.write_bytes(state)
        logger.info("Patched model exported", model_id=str(model.id), path=str(target), sidecar=str(sidecar))
        return target
