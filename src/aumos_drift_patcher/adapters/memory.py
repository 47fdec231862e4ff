"""In-process implementations of the repository and store interfaces.

Used for local runs (``store_backend="memory"``), the interactive
orchestrator and tests. Objects are deep-copied on the way in and out so
callers never share mutable state with the store, which matches the
behaviour of the SQL repositories.
"""

import copy
import uuid
from datetime import datetime

from aumos_drift_patcher.core.domain import (
    DriftResult,
    Model,
    Patch,
    PatchSnapshot,
    PatchStatus,
)
from aumos_drift_patcher.errors import NotFoundError


class InMemoryModelRepository:
    """Dict-backed IModelRepository."""

    def __init__(self) -> None:
        self._models: dict[uuid.UUID, Model] = {}

    async def create(self, model: Model) -> Model:
        self._models[model.id] = copy.deepcopy(model)
        return copy.deepcopy(model)

    async def get(self, model_id: uuid.UUID) -> Model | None:
        model = self._models.get(model_id)
        return copy.deepcopy(model) if model is not None else None

    async def list_all(self, active_only: bool = False) -> list[Model]:
        models = sorted(self._models.values(), key=lambda m: m.created_at)
        return [copy.deepcopy(m) for m in models if m.is_active or not active_only]

    async def set_active(self, model_id: uuid.UUID, is_active: bool) -> Model | None:
        model = self._models.get(model_id)
        if model is None:
            return None
        model.is_active = is_active
        return copy.deepcopy(model)


class InMemoryDriftResultRepository:
    """Dict-backed IDriftResultRepository."""

    def __init__(self) -> None:
        self._results: dict[uuid.UUID, DriftResult] = {}

    async def save(self, result: DriftResult) -> DriftResult:
        self._results[result.id] = copy.deepcopy(result)
        return copy.deepcopy(result)

    async def get(self, result_id: uuid.UUID) -> DriftResult | None:
        result = self._results.get(result_id)
        return copy.deepcopy(result) if result is not None else None

    async def list_by_model(self, model_id: uuid.UUID, limit: int = 50) -> list[DriftResult]:
        results = [r for r in self._results.values() if r.model_id == model_id]
        results.sort(key=lambda r: r.timestamp, reverse=True)
        return [copy.deepcopy(r) for r in results[:limit]]

    async def purge_older_than(self, cutoff: datetime) -> int:
        expired = [result_id for result_id, r in self._results.items() if r.timestamp < cutoff]
        for result_id in expired:
            del self._results[result_id]
        return len(expired)


class InMemoryPatchStore:
    """Dict-backed IPatchStore.

    The commit methods only touch plain dicts without awaiting in between,
    so they are atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._patches: dict[uuid.UUID, Patch] = {}
        self._snapshots: dict[uuid.UUID, PatchSnapshot] = {}
        self._states: dict[uuid.UUID, bytes] = {}

    async def add_patches(self, patches: list[Patch]) -> list[Patch]:
        for patch in patches:
            self._patches[patch.id] = copy.deepcopy(patch)
        return [copy.deepcopy(p) for p in patches]

    async def get_patch(self, patch_id: uuid.UUID) -> Patch | None:
        patch = self._patches.get(patch_id)
        return copy.deepcopy(patch) if patch is not None else None

    def _require(self, patch: Patch) -> None:
        if patch.id not in self._patches:
            raise NotFoundError(f"Patch {patch.id} not found.")

    async def update_patch(self, patch: Patch) -> Patch:
        self._require(patch)
        self._patches[patch.id] = copy.deepcopy(patch)
        return copy.deepcopy(patch)

    async def list_patches(self, model_id: uuid.UUID, status: PatchStatus | None = None) -> list[Patch]:
        return [
            copy.deepcopy(p)
            for p in self._patches.values()
            if p.model_id == model_id and (status is None or p.status is status)
        ]

    async def get_snapshot(self, patch_id: uuid.UUID) -> PatchSnapshot | None:
        return self._snapshots.get(patch_id)

    async def get_state(self, model_id: uuid.UUID) -> bytes | None:
        return self._states.get(model_id)

    async def save_state(self, model_id: uuid.UUID, state: bytes) -> None:
        self._states[model_id] = bytes(state)

    async def commit_application(self, patch: Patch, snapshot: PatchSnapshot) -> None:
        self._require(patch)
        self._snapshots[snapshot.patch_id] = snapshot
        self._states[patch.model_id] = snapshot.post_apply_state
        self._patches[patch.id] = copy.deepcopy(patch)

    async def commit_rollback(self, patch: Patch, snapshot: PatchSnapshot) -> None:
        self._require(patch)
        self._states[patch.model_id] = snapshot.pre_apply_state
        self._patches[patch.id] = copy.deepcopy(patch)
