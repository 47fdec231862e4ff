"""SQLAlchemy ORM models for the AumOS Drift Patcher.

All tables use the `dpt_` prefix. JSON columns are JSONB on PostgreSQL and
plain JSON elsewhere (SQLite in tests). Preprocessing states and snapshot
blobs are stored as raw bytes so rollback restores them byte-for-byte.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, LargeBinary, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all Drift Patcher tables."""


class ModelRecord(Base):
    """A deployed model registered for drift monitoring.

    Table: dpt_models
    """

    __tablename__ = "dpt_models"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(100), nullable=False)

    # Ordered input feature names; column order of every SampleBatch
    input_features: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)
    output_labels: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)

    # Only active models are visited by the monitoring scheduler
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    # ensemble_components / probabilistic_output declarations
    model_metadata: Mapped[dict] = mapped_column(
        "metadata",
        _JSON,
        nullable=False,
        default=dict,
        comment="Declared ensemble components and output kind",
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DriftResultRecord(Base):
    """One aggregated drift diagnosis.

    Table: dpt_drift_results
    """

    __tablename__ = "dpt_drift_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Stored as a plain UUID; models may live in an external registry
    model_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    drift_score: Mapped[float] = mapped_column(Float, nullable=False)
    drift_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="COVARIATE_DRIFT | PRIOR_DRIFT | CONCEPT_DRIFT | NO_DRIFT",
    )
    is_drift_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)

    feature_drifts: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)
    statistical_tests: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)
    details: Mapped[dict] = mapped_column(
        "metadata",
        _JSON,
        nullable=False,
        default=dict,
        comment="Label distributions and drift-type evidence",
    )


class PatchRecord(Base):
    """A patch and its lifecycle status. Patches are never deleted.

    Table: dpt_patches
    """

    __tablename__ = "dpt_patches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    model_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # No foreign key: drift results are purged after the retention window
    drift_result_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    patch_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="CREATED | VALIDATED | APPLIED | ROLLED_BACK | FAILED",
    )
    configuration: Mapped[dict] = mapped_column(_JSON, nullable=False)
    validation_result: Mapped[dict | None] = mapped_column(_JSON, nullable=True)
    patch_metadata: Mapped[dict] = mapped_column("metadata", _JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PatchSnapshotRecord(Base):
    """Preprocessing state bytes before and after a patch was applied.

    Table: dpt_patch_snapshots
    """

    __tablename__ = "dpt_patch_snapshots"

    patch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("dpt_patches.id", ondelete="CASCADE"),
        primary_key=True,
    )
    model_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    pre_apply_state: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    post_apply_state: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PreprocessingStateRecord(Base):
    """Current serialized preprocessing state of a model.

    Table: dpt_preprocessing_states
    """

    __tablename__ = "dpt_preprocessing_states"

    model_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    state: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
