"""
Pytest configuration and shared fixtures.
"""

import pytest

from jobstream.config import (
    ExtractionSettings,
    PipelineSettings,
    Settings,
    WorkflowSettings,
)
from jobstream.executor import TaskExecutor
from jobstream.pipelines.ingest import IngestionPipeline
from jobstream.store import MemoryStore


@pytest.fixture
def settings() -> Settings:
    """Settings with zero backoff so retry tests run instantly."""
    return Settings(
        extraction=ExtractionSettings(
            base_url="https://gateway.test/v1",
            api_key="test-key",
            max_attempts=3,
            backoff_initial=0,
            backoff_max=0,
            backoff_jitter=0,
        ),
        pipeline=PipelineSettings(
            max_concurrency=4,
            persist_attempts=3,
            persist_backoff_initial=0,
            persist_backoff_max=0,
        ),
        workflows=WorkflowSettings(
            invocation_timeout_seconds=5,
            request_delay_seconds=0,
            closed_status_order=900,
        ),
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def executor():
    executor = TaskExecutor(4, name="test")
    yield executor
    await executor.shutdown()


@pytest.fixture
def make_pipeline(settings, executor):
    """Factory: ingestion pipeline over a given extractor and store."""

    def _make(extractor, store, fetcher=None) -> IngestionPipeline:
        return IngestionPipeline(extractor, store, executor, fetcher=fetcher, config=settings.pipeline)

    return _make


@pytest.fixture
def acme_posting_text() -> str:
    return "Acme Corp is hiring a Software Engineer, remote. Apply today."
