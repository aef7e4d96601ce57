"""Job ingestion pipeline: fetch, extract, resolve, persist.

Each request moves through
``RECEIVED -> [FETCHING] -> EXTRACTING -> RESOLVING -> PERSISTING -> COMPLETED``
and may end in ``FAILED`` from any non-terminal state. ``FETCHING`` only runs
for URL-only postings; when a job from that URL is already stored the run goes
straight from ``FETCHING`` to ``PERSISTING`` and reuses it. Steps run strictly
in order; only store calls are retried here (extraction retries live in the
client).
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from extraction.client import ExtractionSchema

from jobstream.config import PipelineSettings, settings as app_settings
from jobstream.domain import Company, ExtractedJobData, Job, JobApplication, JobStreamEntry, RawPosting
from jobstream.errors import Classification, ErrorKind, ExtractionError, FetchError, PipelineError, StoreError
from jobstream.executor import TaskExecutor
from jobstream.fetcher import PageFetcher
from jobstream.pipelines.normalization import (
    company_domain_from_url,
    html_title,
    looks_like_html,
    normalize_domain,
    normalize_url,
)
from jobstream.pipelines.resolution import EntityResolver
from jobstream.store import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ENRICHED_FIELDS = ("industry", "size", "description", "headquarters")


class IngestionState(str, Enum):
    RECEIVED = "received"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    RESOLVING = "resolving"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({IngestionState.COMPLETED, IngestionState.FAILED})

_NEXT = {
    IngestionState.RECEIVED: {IngestionState.FETCHING, IngestionState.EXTRACTING},
    IngestionState.FETCHING: {IngestionState.EXTRACTING, IngestionState.PERSISTING},
    IngestionState.EXTRACTING: {IngestionState.RESOLVING},
    IngestionState.RESOLVING: {IngestionState.PERSISTING},
    IngestionState.PERSISTING: {IngestionState.COMPLETED},
}


class Extractor(Protocol):
    async def extract(self, raw_text: str, schema: Any) -> Any: ...


@dataclass
class RunResult:
    """Outcome of one pipeline run, successful or not."""
    run_id: str
    state: IngestionState = IngestionState.RECEIVED
    history: list[IngestionState] = field(default_factory=lambda: [IngestionState.RECEIVED])
    error: PipelineError | None = None
    duration_ms: int = 0

    def advance(self, state: IngestionState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"run {self.run_id} already ended in {self.state.value}")
        if state != IngestionState.FAILED and state not in _NEXT.get(self.state, ()):
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: PipelineError) -> None:
        self.error = error
        self.advance(IngestionState.FAILED)

    @property
    def is_success(self) -> bool:
        return self.state == IngestionState.COMPLETED

    @property
    def failure_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @property
    def classification(self) -> Classification | None:
        return self.error.classification if self.error else None


@dataclass
class IngestionResult(RunResult):
    """Result of ``ingest_job``."""
    job: Job | None = None
    company: Company | None = None
    created: bool = False
    used_fallback: bool = False
    stream_entry: JobStreamEntry | None = None
    application: JobApplication | None = None

    def unwrap(self) -> Job:
        """Return the persisted job or raise the failure."""
        if self.error is not None:
            raise self.error
        assert self.job is not None
        return self.job


def is_store_transient(exc: BaseException) -> bool:
    return isinstance(exc, StoreError) and exc.kind == ErrorKind.UNAVAILABLE


async def with_store_retry(
    config: PipelineSettings,
    operation: Callable[[], Awaitable[T]],
    *,
    run_id: str | None = None,
) -> T:
    """Call a store operation, retrying only ``StoreError.Unavailable``."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.persist_attempts),
        wait=wait_exponential(multiplier=config.persist_backoff_initial, max=config.persist_backoff_max),
        retry=retry_if_exception(is_store_transient),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.warning(
                    f"Retrying store operation (attempt {attempt.retry_state.attempt_number})",
                    extra={"run_id": run_id},
                )
            return await operation()
    raise AssertionError("unreachable")


class IngestionPipeline:
    """Turns raw postings into persisted Job (and Company) records."""

    def __init__(
        self,
        extractor: Extractor,
        store: Store,
        executor: TaskExecutor,
        *,
        resolver: EntityResolver | None = None,
        fetcher: PageFetcher | None = None,
        config: PipelineSettings | None = None,
    ) -> None:
        self.extractor = extractor
        self.store = store
        self.executor = executor
        self.fetcher = fetcher
        self.config = config or app_settings.pipeline
        self.resolver = resolver or EntityResolver(store, self.config)

    async def ingest_job(self, raw: RawPosting) -> IngestionResult:
        """Ingest one posting within the executor's concurrency limit.

        Args:
            raw: Posting text or URL, plus optional domain and title hints and
                the profile to link the job to

        Returns:
            IngestionResult in COMPLETED or FAILED state. Failures carry a
            PipelineError whose classification tells "bad input" from "try
            again later".
        """
        return await self.executor.run(self._ingest_job(raw))

    async def _ingest_job(self, raw: RawPosting) -> IngestionResult:
        result = IngestionResult(run_id=uuid.uuid4().hex[:12])
        started = time.monotonic()
        log_ctx = {"run_id": result.run_id, "source": raw.source, "url": raw.url}
        logger.info("Ingestion received", extra=log_ctx)

        try:
            await self._run(raw, result)
            result.advance(IngestionState.COMPLETED)
        except PipelineError as e:
            result.fail(e)
            logger.warning(
                f"Ingestion failed in {result.history[-2].value}: {e.message}",
                extra={**log_ctx, "failure_kind": e.kind.value, "classification": e.classification.value},
            )
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.is_success:
            logger.info(
                f"Ingested job {result.job.job_id} ({'created' if result.created else 'updated'})",
                extra={**log_ctx, "job_id": result.job.job_id, "duration_ms": result.duration_ms},
            )
        return result

    async def _run(self, raw: RawPosting, result: IngestionResult) -> None:
        text = raw.text
        if not text:
            result.advance(IngestionState.FETCHING)
            source_url = normalize_url(raw.url)
            existing = await with_store_retry(
                self.config,
                lambda: self.store.find_job_by_source_url(source_url),
                run_id=result.run_id,
            )
            if existing is not None:
                logger.info(
                    f"Posting already stored as job {existing.job_id}, skipping fetch",
                    extra={"run_id": result.run_id, "job_id": existing.job_id},
                )
                result.advance(IngestionState.PERSISTING)
                result.job = existing
                if existing.company_id is not None:
                    result.company = await with_store_retry(
                        self.config,
                        lambda: self.store.get_company(existing.company_id),
                        run_id=result.run_id,
                    )
                await self._link_profile(raw, existing, result)
                return
            text = await self._fetch(raw.url)

        result.advance(IngestionState.EXTRACTING)
        extracted = await self._extract(raw, text, result)

        result.advance(IngestionState.RESOLVING)
        domain_hint = normalize_domain(raw.company_domain) or company_domain_from_url(raw.url)
        company = await with_store_retry(
            self.config,
            lambda: self.resolver.resolve_company(extracted, domain_hint=domain_hint),
            run_id=result.run_id,
        )
        if company is not None and company.company_id is None and self.config.enrich_companies:
            company = await self._enrich(company, raw, text, result.run_id)
        job = self.resolver.resolve_job(extracted, company, source_url=raw.url, raw_text=text)

        result.advance(IngestionState.PERSISTING)
        outcome = await with_store_retry(
            self.config,
            lambda: self.store.save_resolved(company, job),
            run_id=result.run_id,
        )
        result.job, result.company, result.created = outcome.job, outcome.company, outcome.created
        await self._link_profile(raw, outcome.job, result)

    async def _fetch(self, url: str) -> str:
        if self.fetcher is None:
            raise FetchError(ErrorKind.UPSTREAM_UNAVAILABLE, "no page fetcher configured for URL-only postings")
        text = await self.fetcher.fetch(url)
        if not text.strip():
            raise FetchError(ErrorKind.NOT_FOUND, f"{url} returned an empty page")
        return text

    async def _extract(self, raw: RawPosting, text: str, result: IngestionResult) -> ExtractedJobData:
        try:
            return await self.extractor.extract(text, ExtractionSchema.JOB)
        except ExtractionError as e:
            title = raw.title_hint or (html_title(text) if looks_like_html(text) else None)
            if e.kind != ErrorKind.INVALID_SCHEMA or not title or not self.config.allow_minimal_fallback:
                raise
            logger.warning(
                f"Extraction unusable, continuing with title only: {title!r}",
                extra={"run_id": result.run_id, "failure_kind": e.kind.value},
            )
            result.used_fallback = True
            return ExtractedJobData.minimal(title)

    async def _enrich(self, company: Company, raw: RawPosting, text: str, run_id: str) -> Company:
        """Fill missing details of a new company from the model; failures keep it as is."""
        header = [f"Company: {company.name or company.domain}"]
        if raw.url:
            header.append(f"Source URL: {raw.url}")
        try:
            details = await self.extractor.extract("\n".join(header) + "\n\n" + text, ExtractionSchema.COMPANY)
        except ExtractionError as e:
            logger.warning(
                f"Company enrichment failed for {company.name!r}: {e.message}",
                extra={"run_id": run_id, "failure_kind": e.kind.value},
            )
            return company
        fills = {
            name: getattr(details, name)
            for name in _ENRICHED_FIELDS
            if getattr(company, name) is None and getattr(details, name)
        }
        if fills:
            logger.info(f"Enriched company {company.name!r} with {sorted(fills)}", extra={"run_id": run_id})
        return company.model_copy(update=fills)

    async def _link_profile(self, raw: RawPosting, job: Job, result: IngestionResult) -> None:
        if raw.profile_id:
            entry = JobStreamEntry(job_id=job.job_id, profile_id=raw.profile_id, source=raw.source)
            result.stream_entry = await self._best_effort(
                lambda: self.store.append_stream_entry(entry),
                f"add job {job.job_id} to stream of {raw.profile_id}",
                result.run_id,
            )
        if raw.create_application:
            application = JobApplication(
                job_id=job.job_id,
                profile_id=raw.profile_id,
                status_order=0,
                application_date=date.today().isoformat(),
                notes=raw.notes,
            )
            result.application = await self._best_effort(
                lambda: self.store.create_application(application),
                f"create application to job {job.job_id} for {raw.profile_id}",
                result.run_id,
            )

    async def _best_effort(self, operation: Callable[[], Awaitable[T]], action: str, run_id: str) -> T | None:
        try:
            return await with_store_retry(self.config, operation, run_id=run_id)
        except StoreError as e:
            # The job itself is persisted; a missing link is recoverable
            logger.error(
                f"Could not {action}: {e.message}",
                extra={"run_id": run_id, "failure_kind": e.kind.value},
            )
            return None
