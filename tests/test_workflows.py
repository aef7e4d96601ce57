"""
Tests for the discovery and status workflows.
"""

import httpx
import pytest

from jobstream.domain import Company, ExtractedJobData, Job, JobApplication, RawPosting
from jobstream.errors import ErrorKind, ExtractionError, StoreError
from jobstream.workflows.discovery import DiscoveryWorkflow, GreenhouseSource, StaticPostingSource
from jobstream.workflows.engine import Invocation, InvocationStatus, WorkflowEngine
from jobstream.workflows.status import (
    HttpPostingStatusSource,
    StaticStatusSource,
    StatusObservation,
    StatusWorkflow,
)

from .fakes import ScriptedExtractor


class ByTextExtractor(ScriptedExtractor):
    """Fails for postings whose text contains "broken"."""

    async def extract(self, raw_text, schema):
        self.calls.append((raw_text, schema))
        if "broken" in raw_text:
            raise ExtractionError(ErrorKind.INVALID_SCHEMA, "unusable output")
        return ExtractedJobData(title=raw_text.splitlines()[0], company_name="Acme")


def invocation(**params) -> Invocation:
    return Invocation(invocation_id="inv-1", workflow="test", params=params)


def greenhouse_handler(boards: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        token = request.url.path.split("/")[3]
        if token not in boards:
            return httpx.Response(404, json={"error": "not found"})
        if boards[token] == "down":
            return httpx.Response(503, text="down")
        return httpx.Response(200, json={"jobs": boards[token]})

    return handler


class TestDiscoveryWorkflow:
    async def test_partial_failure_isolated(self, make_pipeline, store):
        postings = [
            RawPosting(text="Backend Engineer\nGreat job", url="https://acme.com/jobs/1"),
            RawPosting(text="broken posting", url="https://acme.com/jobs/2"),
            RawPosting(text="Frontend Engineer\nAlso great", url="https://acme.com/jobs/3"),
        ]
        workflow = DiscoveryWorkflow(make_pipeline(ByTextExtractor(), store), [StaticPostingSource(postings)])

        summary = await workflow.execute(invocation())

        assert summary.counts == {"discovered": 3, "created": 2, "updated": 0, "failed": 1}
        assert summary.error.kind == ErrorKind.PARTIAL_BATCH_FAILURE
        assert [f.item for f in summary.error.failures] == ["https://acme.com/jobs/2"]
        assert summary.error.failures[0].kind == ErrorKind.INVALID_SCHEMA
        assert len(store.jobs) == 2

    async def test_rerun_updates(self, make_pipeline, store):
        postings = [RawPosting(text="Backend Engineer\nGreat job", url="https://acme.com/jobs/1")]
        workflow = DiscoveryWorkflow(make_pipeline(ByTextExtractor(), store), [StaticPostingSource(postings)])

        await workflow.execute(invocation())
        summary = await workflow.execute(invocation())

        assert summary.counts["updated"] == 1
        assert summary.error is None
        assert summary.details["per_source"]["static"]["updated"] == 1

    async def test_greenhouse_source(self, store, settings):
        await store.upsert_company(
            Company(name="Acme", domain="acme.com", jobs_url="https://boards.greenhouse.io/acme")
        )
        await store.upsert_company(
            Company(name="Globex", domain="globex.com", jobs_url="https://job-boards.greenhouse.io/globex")
        )
        await store.upsert_company(Company(name="Initech", domain="initech.com", jobs_url="https://initech.com/careers"))
        boards = {
            "acme": [
                {
                    "title": "Data Engineer",
                    "absolute_url": "https://boards.greenhouse.io/acme/jobs/1",
                    "location": {"name": "Remote"},
                    "content": "&lt;p&gt;Build pipelines&lt;/p&gt;",
                },
                {"title": "", "absolute_url": "https://boards.greenhouse.io/acme/jobs/2"},
            ],
            "globex": "down",
        }
        source = GreenhouseSource(store, settings.workflows, transport=httpx.MockTransport(greenhouse_handler(boards)))

        batch = await source.fetch_postings()
        await source.aclose()

        assert len(batch.postings) == 1
        posting = batch.postings[0]
        assert posting.title_hint == "Data Engineer"
        assert posting.company_domain == "acme.com"
        assert posting.source == "greenhouse"
        assert "Build pipelines" in posting.text
        assert "<p>" not in posting.text
        assert [f.item for f in batch.failures] == ["greenhouse:globex"]

    async def test_through_engine(self, make_pipeline, store, executor):
        postings = [RawPosting(text="Backend Engineer\nGreat job")]
        engine = WorkflowEngine(executor)
        engine.register(DiscoveryWorkflow(make_pipeline(ByTextExtractor(), store), [StaticPostingSource(postings)]))

        record = await (await engine.trigger("discovery", wait=True)).wait()

        assert record.status == InvocationStatus.SUCCEEDED
        assert record.summary.counts["created"] == 1


@pytest.fixture
async def tracked(store):
    saved = await store.save_resolved(
        Company(name="Acme", domain="acme.com"),
        Job(title="Engineer", source_url="https://acme.com/jobs/1"),
    )
    job = saved.job
    first = await store.create_application(JobApplication(job_id=job.job_id, profile_id="p-1", status_order=3))
    second = await store.create_application(JobApplication(job_id=job.job_id, profile_id="p-2", status_order=1))
    untracked = await store.create_application(JobApplication(job_id=None, profile_id="p-1", status_order=0))
    return job, first, second, untracked


class TestStatusWorkflow:
    async def test_forward_only(self, store, tracked):
        job, first, second, _ = tracked
        source = StaticStatusSource({first.application_id: 1, second.application_id: 4})
        workflow = StatusWorkflow(store, source)

        summary = await workflow.execute(invocation())

        assert store.applications[first.application_id].status_order == 3
        assert store.applications[second.application_id].status_order == 4
        assert summary.counts["advanced"] == 1
        assert summary.counts["regressions"] == 1
        assert summary.counts["checked"] == 2

    async def test_monotonic_over_many_runs(self, store, tracked):
        _, first, _, _ = tracked
        history = []
        for reported in [5, 2, 7, 0, 6, 7]:
            workflow = StatusWorkflow(store, StaticStatusSource({first.application_id: reported}))
            await workflow.execute(invocation())
            history.append(store.applications[first.application_id].status_order)
        assert history == [5, 5, 7, 7, 7, 7]

    async def test_single_profile(self, store, tracked):
        _, first, second, _ = tracked
        source = StaticStatusSource({first.application_id: 9, second.application_id: 9})
        workflow = StatusWorkflow(store, source)

        summary = await workflow.execute(invocation(profile_id="p-2"))

        assert summary.counts["checked"] == 1
        assert store.applications[first.application_id].status_order == 3
        assert store.applications[second.application_id].status_order == 9

    async def test_closed_posting(self, store, tracked, settings):
        job, first, second, _ = tracked
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        source = HttpPostingStatusSource(settings.workflows, transport=transport)
        workflow = StatusWorkflow(store, source, settings.workflows)

        summary = await workflow.execute(invocation())
        await source.aclose()

        assert store.jobs[job.job_id].status == "closed"
        assert store.applications[first.application_id].status_order == 900
        assert store.applications[second.application_id].status_order == 900
        assert summary.counts["closed"] == 1

    async def test_item_failure_isolated(self, store, tracked):
        _, first, second, _ = tracked

        class FlakySource:
            async def check(self, application, job):
                if application.application_id == first.application_id:
                    raise StoreError(ErrorKind.NOT_FOUND, "gone")
                return StatusObservation(status_order=2)

        summary = await StatusWorkflow(store, FlakySource()).execute(invocation())

        assert summary.counts["failed"] == 1
        assert summary.counts["advanced"] == 1
        assert summary.error.kind == ErrorKind.PARTIAL_BATCH_FAILURE


class TestHttpPostingStatusSource:
    @pytest.fixture
    def job(self):
        return Job(job_id=1, title="Engineer", source_url="https://acme.com/jobs/1")

    @pytest.fixture
    def application(self):
        return JobApplication(application_id=1, job_id=1, profile_id="p-1")

    async def check(self, settings, handler, application, job):
        source = HttpPostingStatusSource(settings.workflows, transport=httpx.MockTransport(handler))
        try:
            return await source.check(application, job)
        finally:
            await source.aclose()

    async def test_gone(self, settings, application, job):
        observation = await self.check(settings, lambda r: httpx.Response(410), application, job)
        assert observation.closed
        assert observation.status_order == settings.workflows.closed_status_order

    async def test_closure_phrase(self, settings, application, job):
        page = "<html><body><p>Sorry, this position has been filled.</p></body></html>"
        observation = await self.check(settings, lambda r: httpx.Response(200, text=page), application, job)
        assert observation.closed

    async def test_open_posting(self, settings, application, job):
        page = "<html><body><p>Apply now!</p></body></html>"
        observation = await self.check(settings, lambda r: httpx.Response(200, text=page), application, job)
        assert observation == StatusObservation()

    async def test_server_error_keeps_open(self, settings, application, job):
        observation = await self.check(settings, lambda r: httpx.Response(500), application, job)
        assert not observation.closed

    async def test_network_error_keeps_open(self, settings, application, job):
        def handler(request):
            raise httpx.ConnectError("refused")

        observation = await self.check(settings, handler, application, job)
        assert not observation.closed
        assert observation.status_order is None

    async def test_no_source_url(self, settings, application):
        observation = await self.check(
            settings, lambda r: httpx.Response(404), application, Job(job_id=1, title="Engineer")
        )
        assert observation == StatusObservation()
