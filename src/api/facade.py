# src/api/facade.py — v1
"""Public API facade: assemble a PipelineOrchestrator from settings.

Usage:
    from stagegate.api.facade import build_orchestrator
    orchestrator = build_orchestrator(load_settings())
    result = await orchestrator.run_step(pipeline_id, 1, owner)

Every component can be injected; anything left as None is created from
``settings`` through the backend factories.
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING

from stagegate.config.settings import Settings
from stagegate.gateway.generation import GenerationGateway
from stagegate.gateway.judge import QAJudgeGateway
from stagegate.pipeline.approvals import ApprovalGate
from stagegate.pipeline.executor import StepExecutor
from stagegate.pipeline.orchestrator import PipelineOrchestrator
from stagegate.pipeline.panorama_loop import PanoramaRetryLoop
from stagegate.pipeline.restart import StepRestart
from stagegate.pipeline.retry_controller import QARetryController
from stagegate.pipeline.retry_queue import RetryQueue
from stagegate.pipeline.rollback import StepRollback
from stagegate.pipeline.space_analysis import SpaceAnalyzer

if TYPE_CHECKING:
    from stagegate.gateway.base_image_generator import BaseImageGenerator
    from stagegate.llm.base_client import BaseLLMClient
    from stagegate.storage.base_object_storage import BaseObjectStorage
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Settings | None = None,
    store: BasePipelineStore | None = None,
    storage: BaseObjectStorage | None = None,
    generator: BaseImageGenerator | None = None,
    judge_client: BaseLLMClient | None = None,
    analysis_client: BaseLLMClient | None = None,
    autostart_retries: bool = True,
    rng: random.Random | None = None,
) -> PipelineOrchestrator:
    """Wire store, storage, gateways and engine components together.

    Args:
        settings: Application settings. Loaded from .env if None.
        store: Pipeline store. Created from STORE_BACKEND if None.
        storage: Object storage. Created from STORAGE_BACKEND if None.
        generator: Image generator. Created from GENERATION_PROVIDER if None.
        judge_client: Vision LLM for the QA judge.
        analysis_client: Vision LLM for space analysis.
        autostart_retries: Run auto-retries as soon as they are queued.
            With False they wait for ``drain_retries()`` (worker mode).
        rng: Random source for retry seeds.
    """
    settings = settings or Settings()

    if store is None:
        from stagegate.store.store_factory import create_store

        store = create_store(settings)
    if storage is None:
        from stagegate.storage.storage_factory import create_object_storage

        storage = create_object_storage(settings)
    if generator is None:
        from stagegate.gateway.generator_factory import create_image_generator

        generator = create_image_generator(settings)
    if judge_client is None or analysis_client is None:
        from stagegate.llm.client_factory import create_llm_client

        if judge_client is None:
            judge_client = create_llm_client(settings.judge_provider, settings.judge_model, settings)
        if analysis_client is None:
            analysis_client = create_llm_client(
                settings.analysis_provider, settings.analysis_model, settings
            )

    cas = settings.store_cas_max_retries
    executor = StepExecutor(
        store=store,
        storage=storage,
        generation=GenerationGateway(generator, timeout_s=settings.generation_timeout_s),
        judge=QAJudgeGateway(
            judge_client,
            timeout_s=settings.judge_timeout_s,
            max_tokens=settings.judge_max_tokens,
        ),
        controller=QARetryController(
            max_attempts=settings.max_step_attempts,
            max_total_retries=settings.max_total_retries,
            rng=rng,
        ),
        panorama_loop=PanoramaRetryLoop(max_attempts=settings.panorama_max_attempts),
        max_output_count=settings.max_output_count,
        cas_max_retries=cas,
    )
    retry_queue = RetryQueue(store, executor.run_step, autostart=autostart_retries)
    executor.attach_retry_queue(retry_queue)

    logger.debug(
        "Orchestrator ready: store=%s, storage=%s, generator=%s, judge=%s",
        settings.store_backend, settings.storage_backend,
        generator.model_name, judge_client.model_name,
    )
    return PipelineOrchestrator(
        settings=settings,
        store=store,
        storage=storage,
        executor=executor,
        analyzer=SpaceAnalyzer(
            store, storage, analysis_client,
            max_tokens=settings.analysis_max_tokens, cas_max_retries=cas,
        ),
        approvals=ApprovalGate(store, cas_max_retries=cas),
        rollback=StepRollback(store, storage, cas_max_retries=cas),
        restart=StepRestart(store, cas_max_retries=cas),
        retry_queue=retry_queue,
    )
