"""FastAPI router for the AumOS Drift Patcher API.

All routes are thin: validate inputs via Pydantic schemas, delegate
business logic to service classes, and return Pydantic response schemas.
No domain logic lives in this module.
"""

import uuid

from fastapi import APIRouter, Depends, Request, status

from aumos_drift_patcher.adapters.inference_log import InMemoryInferenceLog
from aumos_drift_patcher.api.schemas import (
    DriftAnalysisRequest,
    DriftResultListResponse,
    DriftResultResponse,
    InferenceLogResponse,
    ModelActivationRequest,
    ModelCheckResponse,
    ModelListResponse,
    ModelRegisterRequest,
    ModelResponse,
    MonitoringCycleResponse,
    MonitoringStatsResponse,
    PatchListResponse,
    PatchResponse,
    PatchSynthesisRequest,
    SampleBatchPayload,
)
from aumos_drift_patcher.container import ServiceContainer
from aumos_drift_patcher.core.domain import PatchStatus
from aumos_drift_patcher.core.scheduler import MonitoringScheduler
from aumos_drift_patcher.core.services import (
    DriftAnalysisService,
    ModelRegistryService,
    PatchLifecycleService,
    PatchSynthesisService,
)
from aumos_drift_patcher.errors import InvalidStateError

router = APIRouter(tags=["Drift Patcher"])


# ---------------------------------------------------------------------------
# Dependency helpers
# ---------------------------------------------------------------------------


def _container(request: Request) -> ServiceContainer:
    """Service container built at application creation.

    Args:
        request: FastAPI request (provides app.state).

    Returns:
        The application's ServiceContainer.
    """
    return request.app.state.container


def _model_service(container: ServiceContainer = Depends(_container)) -> ModelRegistryService:
    return container.models


def _analysis_service(container: ServiceContainer = Depends(_container)) -> DriftAnalysisService:
    return container.analysis


def _synthesis_service(container: ServiceContainer = Depends(_container)) -> PatchSynthesisService:
    return container.synthesis


def _lifecycle_service(container: ServiceContainer = Depends(_container)) -> PatchLifecycleService:
    return container.lifecycle


def _scheduler(container: ServiceContainer = Depends(_container)) -> MonitoringScheduler:
    return container.scheduler


def _inference_log(container: ServiceContainer = Depends(_container)) -> InMemoryInferenceLog:
    """The ingesting inference log.

    Raises:
        InvalidStateError: When the service reads a source that cannot be fed
            (for example the synthetic demonstration log).
    """
    if not isinstance(container.log_source, InMemoryInferenceLog):
        raise InvalidStateError("The configured inference log source does not accept ingested batches")
    return container.log_source


def _stats_response(scheduler: MonitoringScheduler) -> MonitoringStatsResponse:
    return MonitoringStatsResponse(
        is_running=scheduler.is_running,
        interval_seconds=scheduler.interval_seconds,
        **scheduler.stats.to_dict(),
    )


# ---------------------------------------------------------------------------
# Model endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/models",
    response_model=ModelResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a model",
)
async def register_model(
    body: ModelRegisterRequest,
    service: ModelRegistryService = Depends(_model_service),
) -> ModelResponse:
    """Register a model for drift monitoring and patching.

    Args:
        body: Model registration payload.
        service: Injected ModelRegistryService.

    Returns:
        The registered model.
    """
    model = await service.register(
        name=body.name,
        version=body.version,
        input_features=body.input_features,
        output_labels=body.output_labels,
        metadata=body.metadata,
    )
    return ModelResponse.model_validate(model)


@router.get(
    "/models",
    response_model=ModelListResponse,
    summary="List registered models",
)
async def list_models(
    active_only: bool = False,
    service: ModelRegistryService = Depends(_model_service),
) -> ModelListResponse:
    models = await service.list_models(active_only=active_only)
    return ModelListResponse(items=[ModelResponse.model_validate(m) for m in models], total=len(models))


@router.get(
    "/models/{model_id}",
    response_model=ModelResponse,
    summary="Get model details",
)
async def get_model(
    model_id: uuid.UUID,
    service: ModelRegistryService = Depends(_model_service),
) -> ModelResponse:
    return ModelResponse.model_validate(await service.get_model(model_id))


@router.patch(
    "/models/{model_id}/activation",
    response_model=ModelResponse,
    summary="Enable or disable scheduled monitoring",
)
async def set_model_activation(
    model_id: uuid.UUID,
    body: ModelActivationRequest,
    service: ModelRegistryService = Depends(_model_service),
) -> ModelResponse:
    """Toggle whether the monitoring scheduler checks this model.

    Args:
        model_id: Model UUID path parameter.
        body: Activation flag.
        service: Injected ModelRegistryService.

    Returns:
        The updated model.
    """
    model = await service.set_active(model_id, body.is_active)
    return ModelResponse.model_validate(model)


# ---------------------------------------------------------------------------
# Drift endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/models/{model_id}/drift/analyze",
    response_model=DriftResultResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Analyse drift between a reference and a current batch",
)
async def analyze_drift(
    model_id: uuid.UUID,
    body: DriftAnalysisRequest,
    models: ModelRegistryService = Depends(_model_service),
    analysis: DriftAnalysisService = Depends(_analysis_service),
) -> DriftResultResponse:
    """Run the Comparator and Aggregator and persist the DriftResult.

    Args:
        model_id: Model UUID path parameter.
        body: Reference and current batches.
        models: Injected ModelRegistryService.
        analysis: Injected DriftAnalysisService.

    Returns:
        The persisted drift result.
    """
    model = await models.get_model(model_id)
    result = await analysis.analyze(model, body.reference.to_batch(), body.current.to_batch())
    return DriftResultResponse.model_validate(result)


@router.get(
    "/models/{model_id}/drift-results",
    response_model=DriftResultListResponse,
    summary="List recent drift results of a model",
)
async def list_drift_results(
    model_id: uuid.UUID,
    limit: int = 50,
    analysis: DriftAnalysisService = Depends(_analysis_service),
) -> DriftResultListResponse:
    results = await analysis.list_results(model_id, limit=min(max(limit, 1), 500))
    return DriftResultListResponse(
        items=[DriftResultResponse.model_validate(r) for r in results],
        total=len(results),
    )


@router.get(
    "/drift-results/{result_id}",
    response_model=DriftResultResponse,
    summary="Get a drift result",
)
async def get_drift_result(
    result_id: uuid.UUID,
    analysis: DriftAnalysisService = Depends(_analysis_service),
) -> DriftResultResponse:
    return DriftResultResponse.model_validate(await analysis.get_result(result_id))


@router.post(
    "/drift-results/{result_id}/patches",
    response_model=PatchListResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Synthesize and validate patches for a drift result",
)
async def synthesize_patches(
    result_id: uuid.UUID,
    body: PatchSynthesisRequest,
    models: ModelRegistryService = Depends(_model_service),
    analysis: DriftAnalysisService = Depends(_analysis_service),
    synthesis: PatchSynthesisService = Depends(_synthesis_service),
) -> PatchListResponse:
    """Generate candidates for the diagnosis, persist them and validate each.

    Args:
        result_id: Drift result UUID path parameter.
        body: Batches the diagnosis was made on, plus an optional type filter.
        models: Injected ModelRegistryService.
        analysis: Injected DriftAnalysisService.
        synthesis: Injected PatchSynthesisService.

    Returns:
        The created patches, each VALIDATED or FAILED.
    """
    result = await analysis.get_result(result_id)
    model = await models.get_model(result.model_id)
    reference = body.reference.to_batch()
    await analysis.ensure_state(model, reference)
    patches = await synthesis.synthesize(
        model,
        result,
        reference,
        body.current.to_batch(),
        patch_types=set(body.patch_types) if body.patch_types else None,
        source="api",
    )
    return PatchListResponse(items=[PatchResponse.from_patch(p) for p in patches], total=len(patches))


# ---------------------------------------------------------------------------
# Patch endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/models/{model_id}/patches",
    response_model=PatchListResponse,
    summary="List patches of a model",
)
async def list_patches(
    model_id: uuid.UUID,
    status_filter: PatchStatus | None = None,
    lifecycle: PatchLifecycleService = Depends(_lifecycle_service),
) -> PatchListResponse:
    patches = await lifecycle.list_patches(model_id, status_filter)
    return PatchListResponse(items=[PatchResponse.from_patch(p) for p in patches], total=len(patches))


@router.get(
    "/patches/{patch_id}",
    response_model=PatchResponse,
    summary="Get a patch",
)
async def get_patch(
    patch_id: uuid.UUID,
    lifecycle: PatchLifecycleService = Depends(_lifecycle_service),
) -> PatchResponse:
    return PatchResponse.from_patch(await lifecycle.get_patch(patch_id))


@router.post(
    "/patches/{patch_id}/apply",
    response_model=PatchResponse,
    summary="Apply a validated patch",
)
async def apply_patch(
    patch_id: uuid.UUID,
    lifecycle: PatchLifecycleService = Depends(_lifecycle_service),
) -> PatchResponse:
    """Apply a VALIDATED patch, snapshotting the preprocessing state.

    Returns 409 when another apply or rollback is in flight for the model
    or the patch is not VALIDATED.

    Args:
        patch_id: Patch UUID path parameter.
        lifecycle: Injected PatchLifecycleService.

    Returns:
        The APPLIED patch.
    """
    return PatchResponse.from_patch(await lifecycle.apply(patch_id))


@router.post(
    "/patches/{patch_id}/rollback",
    response_model=PatchResponse,
    summary="Roll back an applied patch",
)
async def rollback_patch(
    patch_id: uuid.UUID,
    lifecycle: PatchLifecycleService = Depends(_lifecycle_service),
) -> PatchResponse:
    """Restore the preprocessing state recorded before the patch was applied.

    Args:
        patch_id: Patch UUID path parameter.
        lifecycle: Injected PatchLifecycleService.

    Returns:
        The ROLLED_BACK patch.
    """
    return PatchResponse.from_patch(await lifecycle.rollback(patch_id))


@router.get(
    "/patches/{patch_id}/export",
    summary="Export document of a patch",
)
async def export_patch(
    patch_id: uuid.UUID,
    lifecycle: PatchLifecycleService = Depends(_lifecycle_service),
) -> dict:
    return await lifecycle.export_document(patch_id)


# ---------------------------------------------------------------------------
# Monitoring endpoints
# ---------------------------------------------------------------------------


@router.put(
    "/models/{model_id}/inference/reference",
    response_model=InferenceLogResponse,
    summary="Register the reference batch the scheduler compares against",
)
async def register_reference_batch(
    model_id: uuid.UUID,
    body: SampleBatchPayload,
    models: ModelRegistryService = Depends(_model_service),
    log: InMemoryInferenceLog = Depends(_inference_log),
) -> InferenceLogResponse:
    """Replace the model's reference batch in the inference log.

    Args:
        model_id: Model UUID path parameter.
        body: Reference feature rows and optional labels.
        models: Injected ModelRegistryService.
        log: Injected inference log.

    Returns:
        Row counts held for the model.
    """
    model = await models.get_model(model_id)
    log.register_reference(model, body.to_batch())
    return InferenceLogResponse.model_validate(log.summary(model))


@router.post(
    "/models/{model_id}/inference/records",
    response_model=InferenceLogResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Append served inference rows to the monitoring window",
)
async def record_inferences(
    model_id: uuid.UUID,
    body: SampleBatchPayload,
    models: ModelRegistryService = Depends(_model_service),
    log: InMemoryInferenceLog = Depends(_inference_log),
) -> InferenceLogResponse:
    model = await models.get_model(model_id)
    log.record(model, body.to_batch())
    return InferenceLogResponse.model_validate(log.summary(model))


@router.post(
    "/monitoring/run",
    response_model=MonitoringCycleResponse,
    summary="Run one monitoring cycle now",
)
async def run_monitoring_cycle(
    scheduler: MonitoringScheduler = Depends(_scheduler),
) -> MonitoringCycleResponse:
    checks = await scheduler.run_cycle()
    return MonitoringCycleResponse(checks=[ModelCheckResponse.model_validate(c.to_dict()) for c in checks])


@router.post(
    "/models/{model_id}/check",
    response_model=ModelCheckResponse,
    summary="Check one model for drift now",
)
async def check_model(
    model_id: uuid.UUID,
    scheduler: MonitoringScheduler = Depends(_scheduler),
) -> ModelCheckResponse:
    check = await scheduler.check_model_now(model_id)
    return ModelCheckResponse.model_validate(check.to_dict())


@router.get(
    "/monitoring/stats",
    response_model=MonitoringStatsResponse,
    summary="Monitoring scheduler statistics",
)
async def monitoring_stats(
    scheduler: MonitoringScheduler = Depends(_scheduler),
) -> MonitoringStatsResponse:
    return _stats_response(scheduler)


@router.post(
    "/monitoring/start",
    response_model=MonitoringStatsResponse,
    summary="Start the monitoring scheduler",
)
async def start_monitoring(
    scheduler: MonitoringScheduler = Depends(_scheduler),
) -> MonitoringStatsResponse:
    await scheduler.start()
    return _stats_response(scheduler)


@router.post(
    "/monitoring/stop",
    response_model=MonitoringStatsResponse,
    summary="Stop the monitoring scheduler",
)
async def stop_monitoring(
    scheduler: MonitoringScheduler = Depends(_scheduler),
) -> MonitoringStatsResponse:
    await scheduler.stop()
    return _stats_response(scheduler)
