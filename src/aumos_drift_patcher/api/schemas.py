"""Pydantic request and response schemas for the Drift Patcher API.

Input schemas validate request bodies; response schemas serialise domain
objects for API consumers.
"""

import uuid
from datetime import datetime
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from aumos_drift_patcher.core.domain import (
    DriftType,
    Patch,
    PatchStatus,
    PatchType,
    SampleBatch,
)


# ---------------------------------------------------------------------------
# Model schemas
# ---------------------------------------------------------------------------


class ModelRegisterRequest(BaseModel):
    """Request body for registering a model for monitoring."""

    model_config = ConfigDict(str_strip_whitespace=True, protected_namespaces=())

    name: str = Field(min_length=1, max_length=255, description="Model name")
    version: str = Field(default="1", min_length=1, max_length=64, description="Model version")
    input_features: list[str] = Field(min_length=1, description="Ordered input feature names")
    output_labels: list[str] = Field(
        default_factory=list,
        description="Output class names; empty means a binary model",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Declarations such as ensemble_components and probabilistic_output",
    )

    @field_validator("input_features")
    @classmethod
    def validate_input_features(cls, value: list[str]) -> list[str]:
        """Reject blank feature names.

        Raises:
            ValueError: If any feature name is blank.
        """
        if any(not name.strip() for name in value):
            raise ValueError("Feature names must not be blank")
        return value


class ModelActivationRequest(BaseModel):
    """Request body for enabling or disabling scheduled monitoring."""

    is_active: bool


class ModelResponse(BaseModel):
    """Registered model."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    version: str
    input_features: list[str]
    output_labels: list[str]
    is_active: bool
    metadata: dict[str, Any]
    created_at: datetime


class ModelListResponse(BaseModel):
    items: list[ModelResponse]
    total: int


# ---------------------------------------------------------------------------
# Drift schemas
# ---------------------------------------------------------------------------


class SampleBatchPayload(BaseModel):
    """Feature rows and optional ground-truth class indices."""

    features: list[list[float]] = Field(min_length=1, description="Row-major feature matrix")
    labels: list[int] | None = Field(default=None, description="Class index per row")

    @model_validator(mode="after")
    def check_shape(self) -> "SampleBatchPayload":
        widths = {len(row) for row in self.features}
        if len(widths) != 1 or 0 in widths:
            raise ValueError("All feature rows must have the same, non-zero length")
        if self.labels is not None and len(self.labels) != len(self.features):
            raise ValueError("labels must have one entry per feature row")
        return self

    def to_batch(self) -> SampleBatch:
        labels = np.asarray(self.labels, dtype=int) if self.labels is not None else None
        return SampleBatch(features=np.asarray(self.features, dtype=float), labels=labels)


class DriftAnalysisRequest(BaseModel):
    """Request body for an on-demand drift analysis."""

    reference: SampleBatchPayload
    current: SampleBatchPayload


class FeatureDriftResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    feature_name: str
    feature_index: int
    drift_score: float
    psi_value: float
    ks_statistic: float
    ks_p_value: float
    is_drifted: bool
    attribution_weight: float
    low_confidence: bool


class StatisticalTestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    statistic: float
    p_value: float
    threshold: float
    passed: bool


class DriftResultResponse(BaseModel):
    """Drift diagnosis for one model."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: uuid.UUID
    model_id: uuid.UUID
    timestamp: datetime
    drift_score: float
    drift_type: DriftType
    is_drift_detected: bool
    severity: str
    feature_drifts: list[FeatureDriftResponse]
    statistical_tests: list[StatisticalTestResponse]


class DriftResultListResponse(BaseModel):
    items: list[DriftResultResponse]
    total: int


# ---------------------------------------------------------------------------
# Patch schemas
# ---------------------------------------------------------------------------


class PatchSynthesisRequest(BaseModel):
    """Request body for synthesizing patches for a drift result."""

    reference: SampleBatchPayload
    current: SampleBatchPayload
    patch_types: list[PatchType] | None = Field(
        default=None,
        description="Restrict synthesis to these patch types; all applicable types when omitted",
    )


class PatchResponse(BaseModel):
    """Patch with its configuration and validation outcome."""

    model_config = ConfigDict(protected_namespaces=())

    id: uuid.UUID
    model_id: uuid.UUID
    drift_result_id: uuid.UUID
    patch_type: PatchType
    status: PatchStatus
    created_at: datetime
    applied_at: datetime | None = None
    rolled_back_at: datetime | None = None
    configuration: dict[str, Any]
    validation_result: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_patch(cls, patch: Patch) -> "PatchResponse":
        return cls(
            id=patch.id,
            model_id=patch.model_id,
            drift_result_id=patch.drift_result_id,
            patch_type=patch.patch_type,
            status=patch.status,
            created_at=patch.created_at,
            applied_at=patch.applied_at,
            rolled_back_at=patch.rolled_back_at,
            configuration=patch.configuration.to_dict(),
            validation_result=patch.validation_result.to_dict() if patch.validation_result else None,
            metadata=dict(patch.metadata),
        )


class PatchListResponse(BaseModel):
    items: list[PatchResponse]
    total: int


# ---------------------------------------------------------------------------
# Monitoring schemas
# ---------------------------------------------------------------------------


class ModelCheckResponse(BaseModel):
    """Outcome of one model check."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: uuid.UUID
    drift_result_id: uuid.UUID | None = None
    drift_score: float | None = None
    is_drift_detected: bool = False
    patch_ids: list[uuid.UUID] = Field(default_factory=list)
    applied_patch_id: uuid.UUID | None = None
    error: str | None = None


class InferenceLogResponse(BaseModel):
    """Rows the inference log holds for one model."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: uuid.UUID
    reference_rows: int
    recent_rows: int
    window_size: int


class MonitoringCycleResponse(BaseModel):
    checks: list[ModelCheckResponse]


class MonitoringStatsResponse(BaseModel):
    """Scheduler counters and run state."""

    is_running: bool
    interval_seconds: float
    models_monitored: int
    checks_performed: int
    drifts_detected: int
    patches_synthesized: int
    patches_auto_applied: int
    check_failures: int
    ticks_skipped: int
    cycles_completed: int
    last_check_time: datetime | None = None


class ErrorResponse(BaseModel):
    error_code: str
    message: str
