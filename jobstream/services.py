"""Wiring: builds the executor, clients, pipelines and workflow engine once.

Everything is constructed explicitly from Settings and passed by reference;
nothing here is a module-level global. Any component can be swapped out (tests
pass a MemoryStore and a scripted extractor).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from extraction.client import ExtractionClient

from jobstream.config import Settings, settings as app_settings
from jobstream.db import build_engine, build_sessionmaker
from jobstream.executor import TaskExecutor
from jobstream.fetcher import HttpPageFetcher, PageFetcher
from jobstream.pipelines.ingest import Extractor, IngestionPipeline
from jobstream.pipelines.resolution import EntityResolver
from jobstream.pipelines.resume import ResumePipeline
from jobstream.storage import HttpObjectStorage, ObjectStorage
from jobstream.store import SqlAlchemyStore, Store
from jobstream.workflows.discovery import DiscoveryWorkflow, GreenhouseSource, PostingSource
from jobstream.workflows.engine import ConcurrencyPolicy, WorkflowEngine
from jobstream.workflows.status import HttpPostingStatusSource, StatusSource, StatusWorkflow

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    executor: TaskExecutor
    store: Store
    extractor: Extractor
    object_storage: ObjectStorage
    ingestion: IngestionPipeline
    resumes: ResumePipeline
    engine: WorkflowEngine
    db_engine: AsyncEngine | None = None
    _closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def start(self) -> None:
        if self.settings.workflows.scheduler_enabled:
            self.engine.start()
        else:
            logger.info("Scheduler disabled; workflows run only when triggered")

    async def aclose(self) -> None:
        """Stop workflows, drain the executor, then close clients and the DB pool."""
        await self.engine.stop()
        await self.executor.shutdown()
        for close in reversed(self._closers):
            try:
                await close()
            except Exception:
                logger.exception("Error while closing a service")
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_services(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    extractor: Extractor | None = None,
    object_storage: ObjectStorage | None = None,
    posting_sources: list[PostingSource] | None = None,
    status_source: StatusSource | None = None,
    fetcher: PageFetcher | None = None,
) -> Services:
    """Build the application graph from settings.

    Must be called inside a running event loop when the default HTTP clients
    are created.
    """
    settings = settings or app_settings
    closers: list[Callable[[], Awaitable[Any]]] = []
    db_engine = None

    if store is None:
        db_engine = build_engine(settings.db)
        store = SqlAlchemyStore(build_sessionmaker(db_engine), db_engine)
    if extractor is None:
        client = ExtractionClient(settings.extraction)
        closers.append(client.aclose)
        extractor = client
    if object_storage is None:
        http_storage = HttpObjectStorage(settings.storage)
        closers.append(http_storage.aclose)
        object_storage = http_storage
    if posting_sources is None:
        greenhouse = GreenhouseSource(store, settings.workflows)
        closers.append(greenhouse.aclose)
        posting_sources = [greenhouse]
    if status_source is None:
        http_status = HttpPostingStatusSource(settings.workflows)
        closers.append(http_status.aclose)
        status_source = http_status
    if fetcher is None:
        http_fetcher = HttpPageFetcher(settings.pipeline)
        closers.append(http_fetcher.aclose)
        fetcher = http_fetcher

    executor = TaskExecutor(settings.pipeline.max_concurrency, name=settings.app_name)
    ingestion = IngestionPipeline(
        extractor,
        store,
        executor,
        resolver=EntityResolver(store, settings.pipeline),
        fetcher=fetcher,
        config=settings.pipeline,
    )
    resumes = ResumePipeline(extractor, store, object_storage, executor, settings=settings)

    engine = WorkflowEngine(executor, config=settings.workflows)
    engine.register(
        DiscoveryWorkflow(ingestion, posting_sources),
        policy=ConcurrencyPolicy.REJECT,
        interval=settings.workflows.discovery_interval_seconds,
    )
    engine.register(
        StatusWorkflow(store, status_source, settings.workflows, pipeline_config=settings.pipeline),
        policy=ConcurrencyPolicy.REJECT,
        interval=settings.workflows.status_interval_seconds,
    )

    return Services(
        settings=settings,
        executor=executor,
        store=store,
        extractor=extractor,
        object_storage=object_storage,
        ingestion=ingestion,
        resumes=resumes,
        engine=engine,
        db_engine=db_engine,
        _closers=closers,
    )
