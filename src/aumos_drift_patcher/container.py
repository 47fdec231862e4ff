"""Wiring of repositories, services, scheduler and collaborators.

``build_container`` assembles everything from Settings without touching
the network; ``startup`` and ``shutdown`` open and close the database
schema, the Kafka producer and the scheduler, and are driven by the
application lifespan.
"""

from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from aumos_drift_patcher.adapters.export_writer import FileExportWriter
from aumos_drift_patcher.adapters.inference_log import InMemoryInferenceLog, SyntheticInferenceLog
from aumos_drift_patcher.adapters.kafka import KafkaNotificationSink
from aumos_drift_patcher.adapters.memory import (
    InMemoryDriftResultRepository,
    InMemoryModelRepository,
    InMemoryPatchStore,
)
from aumos_drift_patcher.adapters.repositories import (
    SqlDriftResultRepository,
    SqlModelRepository,
    SqlPatchStore,
    create_schema,
)
from aumos_drift_patcher.core.aggregator import DriftAggregator
from aumos_drift_patcher.core.candidates import PatchCandidateGenerator
from aumos_drift_patcher.core.comparator import DistributionComparator
from aumos_drift_patcher.core.events import EventChannel
from aumos_drift_patcher.core.interfaces import IInferenceLogSource
from aumos_drift_patcher.core.orchestrator import InteractiveFixOrchestrator
from aumos_drift_patcher.core.scheduler import MonitoringScheduler
from aumos_drift_patcher.core.services import (
    DriftAnalysisService,
    ModelRegistryService,
    PatchLifecycleService,
    PatchSynthesisService,
    StoreRetry,
)
from aumos_drift_patcher.core.validator import PatchValidator
from aumos_drift_patcher.observability import get_logger
from aumos_drift_patcher.settings import Settings

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived object of one application instance."""

    settings: Settings
    events: EventChannel
    models: ModelRegistryService
    analysis: DriftAnalysisService
    synthesis: PatchSynthesisService
    lifecycle: PatchLifecycleService
    scheduler: MonitoringScheduler
    log_source: IInferenceLogSource
    export_writer: FileExportWriter
    engine: AsyncEngine | None = None
    kafka_sink: KafkaNotificationSink | None = None
    _started: bool = field(default=False, repr=False)

    def new_fix_session(self) -> InteractiveFixOrchestrator:
        """A fresh interactive fix orchestrator sharing this container's services."""
        return InteractiveFixOrchestrator(
            models=self.models,
            analysis=self.analysis,
            synthesis=self.synthesis,
            lifecycle=self.lifecycle,
            export_writer=self.export_writer,
        )

    async def startup(self) -> None:
        """Create the schema, start the Kafka producer and, if configured, the scheduler."""
        if self._started:
            return
        if self.engine is not None:
            await create_schema(self.engine)
            logger.info("Database schema ready")
        if self.kafka_sink is not None:
            await self.kafka_sink.start()
        if self.settings.scheduler_autostart:
            await self.scheduler.start()
        self._started = True

    async def shutdown(self) -> None:
        """Stop the scheduler (waiting for in-flight applies), then Kafka and the engine."""
        await self.scheduler.stop()
        if self.kafka_sink is not None:
            await self.kafka_sink.stop()
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database engine disposed")
        self._started = False


def _log_source(settings: Settings) -> IInferenceLogSource:
    if settings.inference_log_source == "synthetic":
        return SyntheticInferenceLog(drift_magnitude=settings.synthetic_drift_magnitude)
    return InMemoryInferenceLog(window_size=settings.inference_window_size)


def build_container(settings: Settings) -> ServiceContainer:
    """Assemble repositories, services and the scheduler from settings.

    Args:
        settings: Service configuration.

    Returns:
        A ServiceContainer; call ``startup`` before serving traffic.
    """
    engine = None
    if settings.store_backend == "sql":
        engine = create_async_engine(settings.database_url, pool_pre_ping=True)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
        model_repo = SqlModelRepository(session_factory)
        drift_repo = SqlDriftResultRepository(session_factory)
        patch_store = SqlPatchStore(session_factory)
    else:
        model_repo = InMemoryModelRepository()
        drift_repo = InMemoryDriftResultRepository()
        patch_store = InMemoryPatchStore()

    kafka_sink = None
    events = EventChannel()
    if settings.kafka_enabled:
        kafka_sink = KafkaNotificationSink(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic_prefix=settings.kafka_topic_prefix,
            client_id=settings.service_name,
        )
        events.add_sink(kafka_sink)

    retry = StoreRetry(
        attempts=settings.store_retry_attempts,
        min_wait_seconds=settings.store_retry_min_wait_seconds,
        max_wait_seconds=settings.store_retry_max_wait_seconds,
    )
    comparator = DistributionComparator(
        psi_threshold=settings.psi_moderate_threshold,
        ks_alpha=settings.ks_alpha,
        num_bins=settings.psi_num_bins,
    )
    aggregator = DriftAggregator(
        comparator,
        detection_threshold=settings.psi_moderate_threshold,
        relationship_shift_threshold=settings.relationship_shift_threshold,
    )
    validator = PatchValidator(
        comparator,
        regression_floor=settings.regression_floor,
        min_validation_samples=settings.min_validation_samples,
        bootstrap_iterations=settings.bootstrap_iterations,
        bootstrap_seed=settings.bootstrap_seed,
    )

    models = ModelRegistryService(model_repo, retry)
    analysis = DriftAnalysisService(comparator, aggregator, drift_repo, patch_store, events, retry)
    lifecycle = PatchLifecycleService(patch_store, events, retry)
    synthesis = PatchSynthesisService(PatchCandidateGenerator(comparator), validator, lifecycle)

    log_source = _log_source(settings)
    scheduler = MonitoringScheduler(
        models=models,
        log_source=log_source,
        analysis=analysis,
        synthesis=synthesis,
        lifecycle=lifecycle,
        interval_seconds=settings.monitoring_interval_seconds,
        auto_evaluate_threshold=settings.auto_evaluate_threshold,
        auto_apply_safety_threshold=settings.auto_apply_safety_threshold,
        auto_apply_drift_reduction_threshold=settings.auto_apply_drift_reduction_threshold,
        retention_days=settings.drift_result_retention_days,
    )

    logger.info(
        "Service container built",
        store_backend=settings.store_backend,
        kafka_enabled=settings.kafka_enabled,
        inference_log_source=settings.inference_log_source,
    )
    return ServiceContainer(
        settings=settings,
        events=events,
        models=models,
        analysis=analysis,
        synthesis=synthesis,
        lifecycle=lifecycle,
        scheduler=scheduler,
        log_source=log_source,
        export_writer=FileExportWriter(settings.export_dir),
        engine=engine,
        kafka_sink=kafka_sink,
    )
