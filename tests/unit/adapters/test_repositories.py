"""Unit tests for the SQLAlchemy repositories, run against SQLite via aiosqlite."""

import uuid
from collections.abc import AsyncIterator
from datetime import timedelta
from pathlib import Path

import numpy as np
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from aumos_drift_patcher.adapters.repositories import (
    SqlDriftResultRepository,
    SqlModelRepository,
    SqlPatchStore,
    create_schema,
)
from aumos_drift_patcher.core.domain import (
    DistributionShift,
    DriftResult,
    DriftType,
    FeatureClipping,
    FeatureDrift,
    Model,
    Patch,
    PatchSnapshot,
    PatchStatus,
    StatisticalTest,
    ValidationMetrics,
    ValidationResult,
    utcnow,
)
from aumos_drift_patcher.core.events import EventChannel
from aumos_drift_patcher.core.pipeline import PreprocessingState
from aumos_drift_patcher.core.services import PatchLifecycleService, StoreRetry
from aumos_drift_patcher.errors import NotFoundError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'patcher.db'}")
    await create_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


def make_model(name: str = "churn", is_active: bool = True) -> Model:
    return Model(
        name=name,
        version="2",
        input_features=["tenure", "spend"],
        output_labels=["stay", "leave"],
        is_active=is_active,
        metadata={"probabilistic_output": True},
    )


def make_result(model_id: uuid.UUID, age_days: float = 0.0) -> DriftResult:
    shift = DistributionShift(0.4, 0.1, -0.2, 3.5, {"p50": 0.3})
    return DriftResult(
        model_id=model_id,
        drift_score=0.42,
        drift_type=DriftType.COVARIATE,
        is_drift_detected=True,
        severity="moderate",
        feature_drifts=[FeatureDrift("tenure", 0, 0.42, 0.42, 0.3, 0.001, True, 1.0, shift)],
        statistical_tests=[StatisticalTest("ks_test:tenure", 0.3, 0.001, 0.05, False)],
        timestamp=utcnow() - timedelta(days=age_days),
        metadata={"reference_label_distribution": [0.5, 0.5]},
    )


def make_patch(model_id: uuid.UUID) -> Patch:
    return Patch(
        model_id=model_id,
        drift_result_id=uuid.uuid4(),
        configuration=FeatureClipping((0,), (float("-inf"),), (float("inf"),), (-2.5,), (2.5,)),
        metadata={"source": "api", "title": "Clip tenure"},
    )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestSqlModelRepository:
    """Model rows."""

    async def test_create_and_get(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        repo = SqlModelRepository(session_factory)
        model = make_model()
        await repo.create(model)

        loaded = await repo.get(model.id)

        assert loaded.name == "churn"
        assert loaded.input_features == ["tenure", "spend"]
        assert loaded.metadata == {"probabilistic_output": True}
        assert loaded.created_at.tzinfo is not None

    async def test_get_unknown_returns_none(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        assert await SqlModelRepository(session_factory).get(uuid.uuid4()) is None

    async def test_list_and_activation(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        repo = SqlModelRepository(session_factory)
        active, inactive = make_model("a"), make_model("b", is_active=False)
        await repo.create(active)
        await repo.create(inactive)

        assert {m.name for m in await repo.list_all()} == {"a", "b"}
        assert [m.name for m in await repo.list_all(active_only=True)] == ["a"]

        updated = await repo.set_active(inactive.id, True)
        assert updated.is_active
        assert len(await repo.list_all(active_only=True)) == 2
        assert await repo.set_active(uuid.uuid4(), True) is None


# ---------------------------------------------------------------------------
# Drift results
# ---------------------------------------------------------------------------


class TestSqlDriftResultRepository:
    """Drift result rows and retention."""

    async def test_round_trip_keeps_nested_fields(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        repo = SqlDriftResultRepository(session_factory)
        result = make_result(uuid.uuid4())
        await repo.save(result)

        loaded = await repo.get(result.id)

        assert loaded.drift_type is DriftType.COVARIATE
        assert loaded.feature_drifts[0].distribution_shift.quantile_shifts == {"p50": 0.3}
        assert loaded.statistical_tests[0].name == "ks_test:tenure"
        assert loaded.metadata["reference_label_distribution"] == [0.5, 0.5]

    async def test_list_by_model_newest_first(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        repo = SqlDriftResultRepository(session_factory)
        model_id = uuid.uuid4()
        old, new = make_result(model_id, age_days=2), make_result(model_id)
        await repo.save(old)
        await repo.save(new)
        await repo.save(make_result(uuid.uuid4()))

        assert [r.id for r in await repo.list_by_model(model_id)] == [new.id, old.id]
        assert [r.id for r in await repo.list_by_model(model_id, limit=1)] == [new.id]

    async def test_purge_older_than(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        repo = SqlDriftResultRepository(session_factory)
        model_id = uuid.uuid4()
        stale, fresh = make_result(model_id, age_days=40), make_result(model_id)
        await repo.save(stale)
        await repo.save(fresh)

        deleted = await repo.purge_older_than(utcnow() - timedelta(days=30))

        assert deleted == 1
        assert await repo.get(stale.id) is None
        assert await repo.get(fresh.id) is not None


# ---------------------------------------------------------------------------
# Patch store
# ---------------------------------------------------------------------------


class TestSqlPatchStore:
    """Patch rows, snapshots and preprocessing state."""

    async def test_patch_round_trip(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = SqlPatchStore(session_factory)
        patch = make_patch(uuid.uuid4())
        await store.add_patches([patch])

        loaded = await store.get_patch(patch.id)

        assert loaded.status is PatchStatus.CREATED
        assert loaded.configuration == patch.configuration
        assert loaded.metadata["title"] == "Clip tenure"

    async def test_update_and_filter_by_status(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = SqlPatchStore(session_factory)
        model_id = uuid.uuid4()
        first, second = make_patch(model_id), make_patch(model_id)
        await store.add_patches([first, second])

        metrics = ValidationMetrics(0.9, 0.9, 0.9, 0.9, 0.5, 0.2, 0.6, 0.0, 0.85, 0.86, 0.94)
        first.validation_result = ValidationResult(
            is_valid=True, metrics=metrics, warnings=("Small validation set",)
        )
        first.transition(PatchStatus.VALIDATED)
        await store.update_patch(first)

        validated = await store.list_patches(model_id, PatchStatus.VALIDATED)
        assert [p.id for p in validated] == [first.id]
        assert validated[0].validation_result.metrics.safety_score == pytest.approx(0.85)
        assert validated[0].validation_result.warnings == ("Small validation set",)
        assert len(await store.list_patches(model_id)) == 2

    async def test_update_unknown_patch_raises(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        with pytest.raises(NotFoundError):
            await SqlPatchStore(session_factory).update_patch(make_patch(uuid.uuid4()))

    async def test_state_upsert(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = SqlPatchStore(session_factory)
        model_id = uuid.uuid4()
        assert await store.get_state(model_id) is None
        await store.save_state(model_id, b"first")
        await store.save_state(model_id, b"second")
        assert await store.get_state(model_id) == b"second"

    async def test_commit_application_and_rollback(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = SqlPatchStore(session_factory)
        patch = make_patch(uuid.uuid4())
        await store.add_patches([patch])
        await store.save_state(patch.model_id, b"before")
        snapshot = PatchSnapshot(patch.id, patch.model_id, b"before", b"after")

        patch.status = PatchStatus.APPLIED
        patch.applied_at = utcnow()
        await store.commit_application(patch, snapshot)

        assert await store.get_state(patch.model_id) == b"after"
        stored = await store.get_snapshot(patch.id)
        assert (stored.pre_apply_state, stored.post_apply_state) == (b"before", b"after")
        assert (await store.get_patch(patch.id)).status is PatchStatus.APPLIED

        patch.status = PatchStatus.ROLLED_BACK
        patch.rolled_back_at = utcnow()
        await store.commit_rollback(patch, snapshot)

        assert await store.get_state(patch.model_id) == b"before"
        assert (await store.get_patch(patch.id)).rolled_back_at is not None


class TestLifecycleOverSql:
    """The lifecycle service restores state byte-for-byte on a SQL store."""

    async def test_apply_then_rollback(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        store = SqlPatchStore(session_factory)
        retry = StoreRetry(attempts=1, min_wait_seconds=0, max_wait_seconds=0)
        lifecycle = PatchLifecycleService(store, EventChannel(), retry)
        model_id = uuid.uuid4()
        reference = np.random.default_rng(seed=90).normal(size=(50, 2))
        original = PreprocessingState.from_reference(reference, 2).to_bytes()
        await store.save_state(model_id, original)

        metrics = ValidationMetrics(0.9, 0.9, 0.9, 0.9, 0.5, 0.2, 0.6, 0.0, 0.85, 0.86, 0.94)
        patch = make_patch(model_id)
        patch.status = PatchStatus.VALIDATED
        patch.validation_result = ValidationResult(is_valid=True, metrics=metrics)
        await store.add_patches([patch])

        applied = await lifecycle.apply(patch.id)
        assert applied.status is PatchStatus.APPLIED
        assert (await lifecycle.current_state(model_id)).clip_max[0] == 2.5

        rolled_back = await lifecycle.rollback(patch.id)
        assert rolled_back.status is PatchStatus.ROLLED_BACK
        assert await store.get_state(model_id) == original
