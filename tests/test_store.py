"""
Tests for the record stores. Shared behaviour runs against both the
in-memory store and the SQLAlchemy store on SQLite.
"""

from datetime import date

import pytest

from jobstream import models
from jobstream.config import DatabaseSettings
from jobstream.db import build_engine, build_sessionmaker
from jobstream.domain import (
    Company,
    ContactInfo,
    ExtractedResumeData,
    Job,
    JobApplication,
    JobStreamEntry,
    StructuredResume,
)
from jobstream.errors import ErrorKind, StoreError
from jobstream.store import MemoryStore, SqlAlchemyStore, company_dedup_key, job_dedup_key


@pytest.fixture(params=["memory", "sqlalchemy"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStore()
        return
    engine = build_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"))
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield SqlAlchemyStore(build_sessionmaker(engine), engine)
    await engine.dispose()


async def seed_application(store, **fields) -> JobApplication:
    return await store.create_application(JobApplication(**fields))


def acme_job(**fields) -> Job:
    return Job(**{"title": "Engineer", **fields})


class TestCompanyDedupKey:
    def test_domain_wins(self):
        assert company_dedup_key(Company(name="Acme", domain="WWW.Acme.com")) == "acme.com"

    def test_name_fallback(self):
        assert company_dedup_key(Company(name="Acme")).startswith("name:")

    def test_nothing(self):
        assert company_dedup_key(Company(name="  ")) is None


class TestJobDedupKey:
    def test_normalized(self):
        assert job_dedup_key(7, "Software Engineer", "Remote") == job_dedup_key(7, "software  engineer", "remote")

    def test_location_and_company_matter(self):
        key = job_dedup_key(7, "Software Engineer", "Remote")
        assert key != job_dedup_key(7, "Software Engineer", "Berlin")
        assert key != job_dedup_key(8, "Software Engineer", "Remote")
        assert key != job_dedup_key(None, "Software Engineer", "Remote")


class TestUpserts:
    async def test_save_resolved_is_idempotent(self, any_store):
        company = Company(name="Acme", domain="acme.com")

        first = await any_store.save_resolved(company, acme_job())
        second = await any_store.save_resolved(company, acme_job())

        assert first.created and not second.created
        assert first.job.job_id == second.job.job_id
        assert first.company.company_id == second.company.company_id
        assert second.job.company_id == first.company.company_id
        assert len(await any_store.list_jobs()) == 1
        assert len(await any_store.list_companies()) == 1

    async def test_superset_merge(self, any_store):
        await any_store.save_resolved(
            Company(name="Acme", domain="acme.com", industry="Software"),
            acme_job(description="Build things", location="Berlin"),
        )
        outcome = await any_store.save_resolved(
            Company(name="Acme", domain="acme.com", size="51-200"),
            acme_job(salary_min=90000),
        )

        assert outcome.job.description == "Build things"
        assert outcome.job.location == "Berlin"
        assert outcome.job.salary_min == 90000
        assert outcome.company.industry == "Software"
        assert outcome.company.size == "51-200"

    async def test_defaults_never_overwrite_stored_values(self, any_store):
        first = await any_store.save_resolved(None, acme_job(salary_currency="EUR"))
        await any_store.update_job_status(first.job.job_id, "closed")

        outcome = await any_store.save_resolved(None, acme_job(description="Updated"))

        assert outcome.job.job_id == first.job.job_id
        assert outcome.job.salary_currency == "EUR"
        assert outcome.job.status == "closed"
        assert outcome.job.description == "Updated"

    async def test_defaults_written_on_insert(self, any_store):
        outcome = await any_store.save_resolved(None, acme_job())

        assert outcome.job.salary_currency == "USD"
        assert outcome.job.status == "active"

    async def test_domain_adoption_keeps_keys(self, any_store):
        first = await any_store.save_resolved(Company(name="Acme"), acme_job())
        company_id = first.company.company_id
        await any_store.upsert_company(Company(company_id=company_id, domain="acme.com"))

        by_name = await any_store.save_resolved(Company(name="Acme"), acme_job())
        adopted = Company(company_id=company_id, name="Acme", domain="acme.com")
        by_id = await any_store.save_resolved(adopted, acme_job())

        assert by_name.company.company_id == by_id.company.company_id == company_id
        assert by_name.company.domain == "acme.com"
        assert by_name.job.job_id == by_id.job.job_id == first.job.job_id
        assert len(await any_store.list_companies()) == 1
        assert len(await any_store.list_jobs()) == 1

    async def test_orphan_job(self, any_store):
        outcome = await any_store.save_resolved(None, acme_job())

        assert outcome.company is None
        assert outcome.job.company_id is None

    async def test_failed_save_leaves_nothing(self, any_store, monkeypatch):
        async def conflicting(*args):
            raise StoreError(ErrorKind.CONFLICT, "duplicate key")

        def conflicting_sync(*args):
            raise StoreError(ErrorKind.CONFLICT, "duplicate key")

        failing = conflicting_sync if isinstance(any_store, MemoryStore) else conflicting
        monkeypatch.setattr(any_store, "_upsert_job", failing)

        with pytest.raises(StoreError) as exc:
            await any_store.save_resolved(Company(name="Acme", domain="acme.com"), acme_job())

        assert exc.value.kind == ErrorKind.CONFLICT
        assert await any_store.list_companies() == []
        assert await any_store.list_jobs() == []

    async def test_update_missing_company(self, any_store):
        with pytest.raises(StoreError) as exc:
            await any_store.upsert_company(Company(company_id=42, name="Ghost"))
        assert exc.value.kind == ErrorKind.NOT_FOUND


class TestLookups:
    async def test_by_domain_and_name(self, any_store):
        stored = await any_store.upsert_company(Company(name="Acme", domain="acme.com"))

        assert (await any_store.get_company_by_domain("ACME.com")).company_id == stored.company_id
        assert [c.company_id for c in await any_store.find_companies_by_name("acme")] == [stored.company_id]
        assert await any_store.get_company_by_domain("globex.com") is None
        assert (await any_store.get_company(stored.company_id)).name == "Acme"

    async def test_by_jobs_host(self, any_store):
        await any_store.upsert_company(
            Company(name="Acme", domain="acme.com", jobs_url="https://boards.greenhouse.io/acme")
        )
        await any_store.upsert_company(Company(name="Initech", domain="initech.com", jobs_url="https://initech.com/jobs"))

        found = await any_store.find_companies_by_jobs_host(["boards.greenhouse.io"])

        assert [c.name for c in found] == ["Acme"]

    async def test_job_by_source_url(self, any_store):
        await any_store.save_resolved(None, acme_job(source_url="https://acme.com/jobs/1"))

        assert (await any_store.find_job_by_source_url("https://acme.com/jobs/1")).title == "Engineer"
        assert await any_store.find_job_by_source_url("https://acme.com/jobs/2") is None


class TestApplications:
    async def test_forward_only(self, any_store):
        job = (await any_store.save_resolved(None, acme_job())).job
        application = await seed_application(any_store, job_id=job.job_id, profile_id="p-1", status_order=2)

        assert await any_store.update_application_status(application.application_id, 1) is False
        assert await any_store.update_application_status(application.application_id, 2) is False
        assert await any_store.update_application_status(application.application_id, 5) is True

        [stored] = await any_store.get_applications_for_user("p-1")
        assert stored.status_order == 5

    async def test_create_is_idempotent_per_profile(self, any_store):
        job = (await any_store.save_resolved(None, acme_job())).job

        first = await any_store.create_application(JobApplication(job_id=job.job_id, profile_id="p-1", notes="referral"))
        again = await any_store.create_application(JobApplication(job_id=job.job_id, profile_id="p-1"))
        other = await any_store.create_application(JobApplication(job_id=job.job_id, profile_id="p-2"))

        assert again.application_id == first.application_id
        assert other.application_id != first.application_id
        assert first.status_order == 0
        assert first.notes == "referral"
        assert first.application_date == date.today().isoformat()
        assert [a.application_id for a in await any_store.get_applications_for_user("p-1")] == [first.application_id]

    async def test_create_for_missing_job(self, any_store):
        with pytest.raises(StoreError) as exc:
            await any_store.create_application(JobApplication(job_id=999, profile_id="p-1"))
        assert exc.value.kind == ErrorKind.NOT_FOUND

    async def test_missing_application(self, any_store):
        with pytest.raises(StoreError) as exc:
            await any_store.update_application_status(999, 3)
        assert exc.value.kind == ErrorKind.NOT_FOUND

    async def test_tracked_only(self, any_store):
        job = (await any_store.save_resolved(None, acme_job())).job
        await seed_application(any_store, job_id=job.job_id, profile_id="p-1")
        await seed_application(any_store, job_id=None, profile_id="p-1")

        tracked = await any_store.list_tracked_applications()

        assert [a.job_id for a in tracked] == [job.job_id]

    async def test_job_status(self, any_store):
        job = (await any_store.save_resolved(None, acme_job())).job

        await any_store.update_job_status(job.job_id, "closed")

        assert (await any_store.get_job(job.job_id)).status == "closed"
        with pytest.raises(StoreError):
            await any_store.update_job_status(999, "closed")


class TestStreamAndResumes:
    async def test_stream_entry(self, any_store):
        job = (await any_store.save_resolved(None, acme_job())).job

        entry = await any_store.append_stream_entry(JobStreamEntry(job_id=job.job_id, profile_id="p-1", source="api"))

        assert entry.stream_id is not None

    async def test_resume_replaced_per_file(self, any_store):
        def resume(name):
            return StructuredResume(
                profile_id="p-1",
                file_id="f-1",
                data=ExtractedResumeData(contact=ContactInfo(name=name)),
                raw_text=name,
            )

        first = await any_store.save_resume(resume("Jane"))
        second = await any_store.save_resume(resume("Jane Doe"))

        assert first.resume_id == second.resume_id
        assert second.parsed_at is not None
