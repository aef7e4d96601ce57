"""Status workflow: refresh tracked applications and detect closed postings.

Application stages only ever move forward. An observed stage at or behind the
stored one is dropped; a closed posting moves the application to the
configured "closed" stage, again only when that is a forward move.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from config.status_signals import CLOSED_STATUS_CODES, CLOSURE_PHRASES

from jobstream.config import PipelineSettings, WorkflowSettings, settings as app_settings
from jobstream.domain import Job, JobApplication, JobStatus
from jobstream.errors import ItemFailure, PipelineError, partial_batch_failure
from jobstream.pipelines.ingest import with_store_retry
from jobstream.store import Store
from jobstream.workflows.engine import Invocation, Workflow, WorkflowSummary

logger = logging.getLogger(__name__)


@dataclass
class StatusObservation:
    """What a source saw for one application. ``status_order`` None means no news."""
    status_order: int | None = None
    closed: bool = False
    reason: str = ""


class StatusSource(Protocol):
    async def check(self, application: JobApplication, job: Job | None) -> StatusObservation: ...


class StaticStatusSource:
    """Stages supplied up front, keyed by application id."""

    def __init__(self, stages: dict[int, int] | None = None) -> None:
        self.stages = dict(stages or {})

    async def check(self, application: JobApplication, job: Job | None) -> StatusObservation:
        return StatusObservation(status_order=self.stages.get(application.application_id))


class HttpPostingStatusSource:
    """Re-fetches a job's source URL to see whether the posting is closed.

    404/410 or a closure phrase in the page means closed. Network errors and
    other error responses say nothing, so the posting stays open.
    """

    def __init__(
        self,
        config: WorkflowSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or app_settings.workflows
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": "jobstream/0.1 (+status-check)"},
        )
        self._phrases = [p.lower() for p in CLOSURE_PHRASES]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _closed(self, reason: str) -> StatusObservation:
        return StatusObservation(status_order=self.config.closed_status_order, closed=True, reason=reason)

    async def check(self, application: JobApplication, job: Job | None) -> StatusObservation:
        if job is None or not job.source_url:
            return StatusObservation()
        if job.status == JobStatus.CLOSED.value:
            return self._closed("already closed")

        try:
            response = await self._client.get(job.source_url)
        except httpx.HTTPError as e:
            logger.warning(f"Could not reach {job.source_url}: {e}", extra={"job_id": job.job_id})
            return StatusObservation()

        if response.status_code in CLOSED_STATUS_CODES:
            return self._closed(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            return StatusObservation()

        body = response.text.lower()
        for phrase in self._phrases:
            if phrase in body:
                return self._closed(f"page says {phrase!r}")
        return StatusObservation()


class StatusWorkflow(Workflow):
    """Applies forward-only stage changes to tracked applications.

    Pass ``profile_id`` in the invocation params to limit the run to one profile.
    """
    name = "status-check"

    def __init__(
        self,
        store: Store,
        source: StatusSource,
        config: WorkflowSettings | None = None,
        *,
        pipeline_config: PipelineSettings | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.config = config or app_settings.workflows
        self.pipeline_config = pipeline_config or app_settings.pipeline

    async def _store_call(self, operation, run_id: str):
        return await with_store_retry(self.pipeline_config, operation, run_id=run_id)

    async def execute(self, invocation: Invocation) -> WorkflowSummary:
        run_id = invocation.invocation_id
        profile_id = invocation.params.get("profile_id")
        if profile_id:
            applications = await self._store_call(lambda: self.store.get_applications_for_user(profile_id), run_id)
            applications = [a for a in applications if a.job_id is not None]
        else:
            applications = await self._store_call(self.store.list_tracked_applications, run_id)

        counts = {"checked": 0, "advanced": 0, "unchanged": 0, "regressions": 0, "closed": 0, "failed": 0}
        failures: list[ItemFailure] = []
        closed_jobs: set[int] = set()

        for i, application in enumerate(applications):
            if i and self.config.request_delay_seconds:
                await asyncio.sleep(self.config.request_delay_seconds)
            counts["checked"] += 1
            try:
                outcome = await self._refresh(application, closed_jobs, run_id)
            except PipelineError as e:
                counts["failed"] += 1
                failures.append(ItemFailure(item=f"application:{application.application_id}", kind=e.kind, message=e.message))
                continue
            counts[outcome] += 1

        counts["closed"] = len(closed_jobs)
        summary = WorkflowSummary(counts=counts, details={"profile_id": profile_id} if profile_id else {})
        if failures:
            summary.error = partial_batch_failure(failures)
        return summary

    async def _refresh(self, application: JobApplication, closed_jobs: set[int], run_id: str) -> str:
        job = None
        if application.job_id is not None:
            job = await self._store_call(lambda: self.store.get_job(application.job_id), run_id)
        observation = await self.source.check(application, job)

        if observation.closed and job is not None and job.job_id not in closed_jobs:
            if job.status != JobStatus.CLOSED.value:
                await self._store_call(lambda: self.store.update_job_status(job.job_id, JobStatus.CLOSED.value), run_id)
                logger.info(
                    f"Job {job.job_id} closed ({observation.reason})",
                    extra={"run_id": run_id, "job_id": job.job_id},
                )
            closed_jobs.add(job.job_id)

        new_order = observation.status_order
        if new_order is None or new_order == application.status_order:
            return "unchanged"
        if new_order < application.status_order:
            logger.info(
                f"Dropped stage regression for application {application.application_id}: "
                f"{application.status_order} -> {new_order}",
                extra={"run_id": run_id, "profile_id": application.profile_id},
            )
            return "regressions"

        moved = await self._store_call(
            lambda: self.store.update_application_status(application.application_id, new_order),
            run_id,
        )
        return "advanced" if moved else "unchanged"
