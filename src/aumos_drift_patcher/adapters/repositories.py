"""SQLAlchemy async repository implementations for the Drift Patcher.

Concrete implementations of the repository and store interfaces defined in
core/interfaces.py. Each operation runs in its own session and transaction
taken from an ``async_sessionmaker``, so the monitoring scheduler and the API
can share one repository instance. Database failures are raised as
StoreError, which the services retry.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from aumos_drift_patcher.core.domain import (
    DriftResult,
    DriftType,
    FeatureDrift,
    Model,
    Patch,
    PatchSnapshot,
    PatchStatus,
    StatisticalTest,
    ValidationResult,
    configuration_from_dict,
    utcnow,
)
from aumos_drift_patcher.core.models import (
    Base,
    DriftResultRecord,
    ModelRecord,
    PatchRecord,
    PatchSnapshotRecord,
    PreprocessingStateRecord,
)
from aumos_drift_patcher.errors import NotFoundError, StoreError
from aumos_drift_patcher.observability import get_logger

logger = get_logger(__name__)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all dpt_ tables that do not exist yet."""
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


def _utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Record <-> domain mapping
# ---------------------------------------------------------------------------


def _model_from_record(record: ModelRecord) -> Model:
    return Model(
        id=record.id,
        name=record.name,
        version=record.version,
        input_features=list(record.input_features),
        output_labels=list(record.output_labels),
        created_at=_utc(record.created_at),
        is_active=record.is_active,
        metadata=dict(record.model_metadata or {}),
    )


def _result_from_record(record: DriftResultRecord) -> DriftResult:
    return DriftResult(
        id=record.id,
        model_id=record.model_id,
        timestamp=_utc(record.timestamp),
        drift_score=record.drift_score,
        drift_type=DriftType(record.drift_type),
        is_drift_detected=record.is_drift_detected,
        severity=record.severity,
        feature_drifts=[FeatureDrift.from_dict(fd) for fd in record.feature_drifts],
        statistical_tests=[StatisticalTest.from_dict(t) for t in record.statistical_tests],
        metadata=dict(record.details or {}),
    )


def _patch_from_record(record: PatchRecord) -> Patch:
    return Patch(
        id=record.id,
        model_id=record.model_id,
        drift_result_id=record.drift_result_id,
        configuration=configuration_from_dict(record.configuration),
        status=PatchStatus(record.status),
        created_at=_utc(record.created_at),
        applied_at=_utc(record.applied_at),
        rolled_back_at=_utc(record.rolled_back_at),
        validation_result=(
            ValidationResult.from_dict(record.validation_result) if record.validation_result else None
        ),
        metadata=dict(record.patch_metadata or {}),
    )


def _patch_values(patch: Patch) -> dict:
    """Mutable columns of a patch row."""
    return {
        "status": patch.status.value,
        "applied_at": patch.applied_at,
        "rolled_back_at": patch.rolled_back_at,
        "validation_result": patch.validation_result.to_dict() if patch.validation_result else None,
        "patch_metadata": dict(patch.metadata),
    }


class _SessionRepository:
    """Shared transaction handling: one session and transaction per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialise with an async session factory.

        Args:
            session_factory: Factory producing AsyncSession instances.
        """
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Database operation failed", error=str(exc))
            raise StoreError(f"Database operation failed: {exc}") from exc


class SqlModelRepository(_SessionRepository):
    """SQLAlchemy async implementation of IModelRepository."""

    async def create(self, model: Model) -> Model:
        """Insert a model row.

        Args:
            model: Model to persist.

        Returns:
            The persisted model.
        """
        async with self._transaction() as session:
            session.add(
                ModelRecord(
                    id=model.id,
                    name=model.name,
                    version=model.version,
                    input_features=list(model.input_features),
                    output_labels=list(model.output_labels),
                    is_active=model.is_active,
                    model_metadata=dict(model.metadata),
                    created_at=model.created_at,
                )
            )
        logger.debug("Model row created", model_id=str(model.id))
        return model

    async def get(self, model_id: uuid.UUID) -> Model | None:
        async with self._transaction() as session:
            record = await session.get(ModelRecord, model_id)
            return _model_from_record(record) if record is not None else None

    async def list_all(self, active_only: bool = False) -> list[Model]:
        """Return models ordered by creation time.

        Args:
            active_only: Only models with is_active set.

        Returns:
            List of models.
        """
        query = select(ModelRecord).order_by(ModelRecord.created_at)
        if active_only:
            query = query.where(ModelRecord.is_active.is_(True))
        async with self._transaction() as session:
            result = await session.execute(query)
            return [_model_from_record(record) for record in result.scalars().all()]

    async def set_active(self, model_id: uuid.UUID, is_active: bool) -> Model | None:
        async with self._transaction() as session:
            record = await session.get(ModelRecord, model_id)
            if record is None:
                return None
            record.is_active = is_active
            await session.flush()
            return _model_from_record(record)


class SqlDriftResultRepository(_SessionRepository):
    """SQLAlchemy async implementation of IDriftResultRepository."""

    async def save(self, result: DriftResult) -> DriftResult:
        """Insert a drift result row.

        Args:
            result: DriftResult to persist.

        Returns:
            The persisted result.
        """
        async with self._transaction() as session:
            session.add(
                DriftResultRecord(
                    id=result.id,
                    model_id=result.model_id,
                    timestamp=result.timestamp,
                    drift_score=result.drift_score,
                    drift_type=result.drift_type.value,
                    is_drift_detected=result.is_drift_detected,
                    severity=result.severity,
                    feature_drifts=[fd.to_dict() for fd in result.feature_drifts],
                    statistical_tests=[t.to_dict() for t in result.statistical_tests],
                    details=dict(result.metadata),
                )
            )
        return result

    async def get(self, result_id: uuid.UUID) -> DriftResult | None:
        async with self._transaction() as session:
            record = await session.get(DriftResultRecord, result_id)
            return _result_from_record(record) if record is not None else None

    async def list_by_model(self, model_id: uuid.UUID, limit: int = 50) -> list[DriftResult]:
        """Return a model's most recent drift results, newest first.

        Args:
            model_id: Model UUID.
            limit: Maximum rows returned.

        Returns:
            List of drift results.
        """
        query = (
            select(DriftResultRecord)
            .where(DriftResultRecord.model_id == model_id)
            .order_by(DriftResultRecord.timestamp.desc())
            .limit(limit)
        )
        async with self._transaction() as session:
            result = await session.execute(query)
            return [_result_from_record(record) for record in result.scalars().all()]

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete results recorded before ``cutoff``.

        Args:
            cutoff: Timezone-aware timestamp.

        Returns:
            Number of deleted rows.
        """
        async with self._transaction() as session:
            result = await session.execute(
                delete(DriftResultRecord).where(DriftResultRecord.timestamp < cutoff)
            )
            return int(result.rowcount or 0)


class SqlPatchStore(_SessionRepository):
    """SQLAlchemy async implementation of IPatchStore.

    ``commit_application`` and ``commit_rollback`` write the snapshot, the
    preprocessing state and the patch row inside a single transaction.
    """

    async def add_patches(self, patches: list[Patch]) -> list[Patch]:
        async with self._transaction() as session:
            session.add_all(
                [
                    PatchRecord(
                        id=patch.id,
                        model_id=patch.model_id,
                        drift_result_id=patch.drift_result_id,
                        patch_type=patch.patch_type.value,
                        configuration=patch.configuration.to_dict(),
                        created_at=patch.created_at,
                        **_patch_values(patch),
                    )
                    for patch in patches
                ]
            )
        logger.debug("Patch rows created", count=len(patches))
        return patches

    async def get_patch(self, patch_id: uuid.UUID) -> Patch | None:
        async with self._transaction() as session:
            record = await session.get(PatchRecord, patch_id)
            return _patch_from_record(record) if record is not None else None

    async def _update_patch(self, session: AsyncSession, patch: Patch) -> None:
        result = await session.execute(
            update(PatchRecord).where(PatchRecord.id == patch.id).values(**_patch_values(patch))
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Patch {patch.id} not found.")

    async def update_patch(self, patch: Patch) -> Patch:
        """Persist the mutable fields of a patch.

        Raises:
            NotFoundError: If the patch row does not exist.
        """
        async with self._transaction() as session:
            await self._update_patch(session, patch)
        return patch

    async def list_patches(self, model_id: uuid.UUID, status: PatchStatus | None = None) -> list[Patch]:
        """Return a model's patches, oldest first.

        Args:
            model_id: Model UUID.
            status: Optional status filter.

        Returns:
            List of patches.
        """
        query = select(PatchRecord).where(PatchRecord.model_id == model_id)
        if status is not None:
            query = query.where(PatchRecord.status == status.value)
        query = query.order_by(PatchRecord.created_at)
        async with self._transaction() as session:
            result = await session.execute(query)
            return [_patch_from_record(record) for record in result.scalars().all()]

    async def get_snapshot(self, patch_id: uuid.UUID) -> PatchSnapshot | None:
        async with self._transaction() as session:
            record = await session.get(PatchSnapshotRecord, patch_id)
            if record is None:
                return None
            return PatchSnapshot(
                patch_id=record.patch_id,
                model_id=record.model_id,
                pre_apply_state=bytes(record.pre_apply_state),
                post_apply_state=bytes(record.post_apply_state),
                timestamp=_utc(record.timestamp),
            )

    async def get_state(self, model_id: uuid.UUID) -> bytes | None:
        async with self._transaction() as session:
            record = await session.get(PreprocessingStateRecord, model_id)
            return bytes(record.state) if record is not None else None

    @staticmethod
    async def _put_state(session: AsyncSession, model_id: uuid.UUID, state: bytes) -> None:
        record = await session.get(PreprocessingStateRecord, model_id)
        if record is None:
            session.add(PreprocessingStateRecord(model_id=model_id, state=state, updated_at=utcnow()))
        else:
            record.state = state
            record.updated_at = utcnow()

    async def save_state(self, model_id: uuid.UUID, state: bytes) -> None:
        async with self._transaction() as session:
            await self._put_state(session, model_id, state)

    async def commit_application(self, patch: Patch, snapshot: PatchSnapshot) -> None:
        """Store snapshot, post-apply state and APPLIED patch in one transaction."""
        async with self._transaction() as session:
            await session.merge(
                PatchSnapshotRecord(
                    patch_id=snapshot.patch_id,
                    model_id=snapshot.model_id,
                    pre_apply_state=snapshot.pre_apply_state,
                    post_apply_state=snapshot.post_apply_state,
                    timestamp=snapshot.timestamp,
                )
            )
            await self._put_state(session, patch.model_id, snapshot.post_apply_state)
            await self._update_patch(session, patch)

    async def commit_rollback(self, patch: Patch, snapshot: PatchSnapshot) -> None:
        """Restore pre-apply state and store the ROLLED_BACK patch in one transaction."""
        async with self._transaction() as session:
            await self._put_state(session, patch.model_id, snapshot.pre_apply_state)
            await self._update_patch(session, patch)
