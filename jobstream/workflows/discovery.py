"""Discovery workflow: pull candidate postings from sources and ingest them.

Sources return RawPostings plus the failures they hit while fetching. Every
posting goes through the ingestion pipeline concurrently (bounded by the
shared executor); one bad posting never sinks the batch.
"""
from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from config.status_signals import GREENHOUSE_HOSTS

from jobstream.config import WorkflowSettings, settings as app_settings
from jobstream.domain import Company, RawPosting
from jobstream.errors import ErrorKind, ItemFailure, partial_batch_failure
from jobstream.pipelines.ingest import IngestionPipeline, IngestionResult
from jobstream.pipelines.normalization import clean_html, greenhouse_board_token
from jobstream.store import Store
from jobstream.workflows.engine import Invocation, Workflow, WorkflowSummary

logger = logging.getLogger(__name__)

GREENHOUSE_API = "https://boards-api.greenhouse.io/v1/boards/{token}/jobs"


@dataclass
class SourceBatch:
    postings: list[RawPosting] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)


class PostingSource(Protocol):
    name: str

    async def fetch_postings(self) -> SourceBatch: ...


class StaticPostingSource:
    """Fixed list of postings; used for manual batches and tests."""

    def __init__(self, postings: list[RawPosting], *, name: str = "static") -> None:
        self.name = name
        self.postings = list(postings)

    async def fetch_postings(self) -> SourceBatch:
        return SourceBatch(postings=list(self.postings))


class GreenhouseSource:
    """Reads open jobs from the public Greenhouse board API.

    Boards come from stored companies whose jobs URL points at Greenhouse.
    """
    name = "greenhouse"

    def __init__(
        self,
        store: Store,
        config: WorkflowSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.config = config or app_settings.workflows
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds,
            transport=transport,
            headers={"User-Agent": "jobstream/0.1 (+discovery)"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_postings(self) -> SourceBatch:
        batch = SourceBatch()
        companies = await self.store.find_companies_by_jobs_host(GREENHOUSE_HOSTS)
        boards = [(c, greenhouse_board_token(c.jobs_url)) for c in companies]
        boards = [(c, token) for c, token in boards if token][: self.config.discovery_boards_per_run]
        logger.info(f"Checking {len(boards)} Greenhouse board(s)")

        for i, (company, token) in enumerate(boards):
            if i and self.config.request_delay_seconds:
                await asyncio.sleep(self.config.request_delay_seconds)
            try:
                jobs = await self._fetch_board(token)
            except httpx.HTTPError as e:
                logger.warning(f"Greenhouse board {token} unavailable: {e}")
                batch.failures.append(
                    ItemFailure(item=f"greenhouse:{token}", kind=ErrorKind.UPSTREAM_UNAVAILABLE, message=str(e))
                )
                continue
            except ValueError as e:
                batch.failures.append(
                    ItemFailure(item=f"greenhouse:{token}", kind=ErrorKind.INVALID_SCHEMA, message=str(e))
                )
                continue
            for job in jobs[: self.config.discovery_jobs_per_board]:
                posting = self._posting(company, job)
                if posting is not None:
                    batch.postings.append(posting)
        return batch

    async def _fetch_board(self, token: str) -> list[dict]:
        response = await self._client.get(GREENHOUSE_API.format(token=token), params={"content": "true"})
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get("jobs", []), list):
            raise ValueError(f"unexpected board payload for {token}")
        return data.get("jobs", [])

    @staticmethod
    def _posting(company: Company, job: dict) -> RawPosting | None:
        title = (job.get("title") or "").strip()
        url = job.get("absolute_url") or ""
        if not title or not url:
            return None
        location = ((job.get("location") or {}).get("name") or "").strip()
        content = clean_html(html.unescape(job.get("content") or ""))
        text = "\n\n".join(p for p in [title, f"Location: {location}" if location else "", content] if p)
        return RawPosting(
            text=text,
            url=url,
            company_domain=company.domain,
            title_hint=title,
            source="greenhouse",
        )


class DiscoveryWorkflow(Workflow):
    """Fetches postings from every source and ingests each one."""
    name = "discovery"

    def __init__(self, pipeline: IngestionPipeline, sources: list[PostingSource]) -> None:
        self.pipeline = pipeline
        self.sources = list(sources)

    async def execute(self, invocation: Invocation) -> WorkflowSummary:
        failures: list[ItemFailure] = []
        per_source: dict[str, dict[str, int]] = {}
        items: list[tuple[str, RawPosting]] = []

        for source in self.sources:
            batch = await source.fetch_postings()
            failures.extend(batch.failures)
            per_source[source.name] = {"discovered": len(batch.postings), "created": 0, "updated": 0, "failed": 0}
            items.extend((source.name, p) for p in batch.postings)

        results = await asyncio.gather(
            *(self.pipeline.ingest_job(posting) for _, posting in items),
            return_exceptions=True,
        )

        counts = {"discovered": len(items), "created": 0, "updated": 0, "failed": 0}
        for (source_name, posting), result in zip(items, results):
            stats = per_source[source_name]
            if isinstance(result, IngestionResult) and result.is_success:
                key = "created" if result.created else "updated"
            else:
                key = "failed"
                failures.append(self._failure(posting, result))
            counts[key] += 1
            stats[key] += 1

        summary = WorkflowSummary(counts=counts, details={"per_source": per_source})
        if failures:
            summary.error = partial_batch_failure(failures)
        logger.info(
            f"Discovery ingested {counts['created']} new, {counts['updated']} updated, {counts['failed']} failed",
            extra={"run_id": invocation.invocation_id},
        )
        return summary

    @staticmethod
    def _failure(posting: RawPosting, result: IngestionResult | BaseException) -> ItemFailure:
        item = posting.url or posting.title_hint or posting.text[:60]
        if isinstance(result, IngestionResult):
            return ItemFailure(item=item, kind=result.failure_kind, message=result.error.message if result.error else "")
        return ItemFailure(item=item, kind=None, message=repr(result))
