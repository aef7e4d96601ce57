"""
Tests for company and job resolution.
"""

import logging

from jobstream.config import PipelineSettings
from jobstream.domain import Company, ExtractedJobData
from jobstream.pipelines.resolution import EntityResolver, clean_list


def extracted(**fields) -> ExtractedJobData:
    fields.setdefault("title", "Software Engineer")
    return ExtractedJobData(**fields)


class TestResolveCompany:
    async def test_new_company_by_name(self, store):
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(extracted(company_name="Acme Corp"))
        assert company == Company(name="Acme Corp")
        assert company.company_id is None

    async def test_new_company_by_domain(self, store):
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(
            extracted(company_name="Acme"), domain_hint="https://www.Acme.com/careers"
        )
        assert company.domain == "acme.com"
        assert company.name == "Acme"
        assert company.company_id is None

    async def test_no_name_no_domain_is_orphan(self, store):
        resolver = EntityResolver(store)
        assert await resolver.resolve_company(extracted()) is None

    async def test_domain_match_wins(self, store):
        stored = await store.upsert_company(Company(name="Acme Incorporated", domain="acme.com"))
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(extracted(company_name="Totally Different"), domain_hint="ACME.com")
        assert company.company_id == stored.company_id

    async def test_domain_match_fills_missing_name(self, store):
        stored = await store.upsert_company(Company(domain="acme.com"))
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(extracted(company_name="Acme"), domain_hint="acme.com")
        assert company.company_id == stored.company_id
        assert company.name == "Acme"

    async def test_exact_name_match(self, store):
        stored = await store.upsert_company(Company(name="Acme, Inc."))
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(extracted(company_name="ACME Corp"))
        assert company.company_id == stored.company_id

    async def test_name_match_adopts_domain(self, store):
        stored = await store.upsert_company(Company(name="Acme"))
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(extracted(company_name="Acme"), domain_hint="acme.com")
        assert company.company_id == stored.company_id
        assert company.domain == "acme.com"

    async def test_same_name_different_domain_is_new(self, store):
        await store.upsert_company(Company(name="Acme", domain="acme.com"))
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(extracted(company_name="Acme"), domain_hint="acme.io")
        assert company.company_id is None
        assert company.domain == "acme.io"

    async def test_ats_domain_ignored(self, store):
        resolver = EntityResolver(store)
        company = await resolver.resolve_company(
            extracted(company_name="Acme"), domain_hint="https://boards.greenhouse.io/acme"
        )
        assert company == Company(name="Acme")

    async def test_near_duplicate_logged_and_created(self, store, caplog):
        await store.upsert_company(Company(name="Acme Robotics"))
        resolver = EntityResolver(store, PipelineSettings(fuzzy_threshold=85))
        with caplog.at_level(logging.WARNING, logger="jobstream.pipelines.resolution"):
            company = await resolver.resolve_company(extracted(company_name="Acme Robotic"))
        assert company.company_id is None
        assert company.name == "Acme Robotic"
        assert "Ambiguous company match" in caplog.text

    async def test_several_exact_matches_pick_lowest_id(self, store, caplog):
        first = await store.upsert_company(Company(name="Globex", domain="globex.com"))
        await store.upsert_company(Company(name="Globex", domain="globex.io"))
        resolver = EntityResolver(store)
        with caplog.at_level(logging.WARNING, logger="jobstream.pipelines.resolution"):
            company = await resolver.resolve_company(extracted(company_name="Globex"))
        assert company.company_id == first.company_id
        assert "2 companies named" in caplog.text

    async def test_idempotent(self, store):
        await store.upsert_company(Company(name="Acme", domain="acme.com"))
        resolver = EntityResolver(store)
        first = await resolver.resolve_company(extracted(company_name="Acme"), domain_hint="acme.com")
        second = await resolver.resolve_company(extracted(company_name="Acme"), domain_hint="acme.com")
        assert first == second


class TestResolveJob:
    def test_defaults_usd_when_absent(self, store):
        job = EntityResolver(store).resolve_job(extracted(), None)
        assert job.salary_currency == "USD"
        assert job.company_id is None

    def test_explicit_currency_kept(self, store):
        resolver = EntityResolver(store)
        assert resolver.resolve_job(extracted(salary_currency=" EUR "), None).salary_currency == "EUR"
        assert resolver.resolve_job(extracted(salary_currency=""), None).salary_currency == ""

    def test_default_currency_not_explicit(self, store):
        job = EntityResolver(store).resolve_job(extracted(), None)
        assert "salary_currency" not in job.model_fields_set
        assert "status" not in job.model_fields_set
        assert job.status == "active"

    def test_remote_from_text(self, store):
        job = EntityResolver(store).resolve_job(extracted(), None, raw_text="Hiring, fully remote!")
        assert job.location == "Remote"

    def test_remote_flag(self, store):
        job = EntityResolver(store).resolve_job(extracted(is_remote=True), None)
        assert job.location == "Remote"

    def test_explicit_not_remote_wins_over_text(self, store):
        job = EntityResolver(store).resolve_job(extracted(is_remote=False), None, raw_text="no remote work")
        assert job.location is None

    def test_extracted_location_wins(self, store):
        job = EntityResolver(store).resolve_job(extracted(location=" Berlin "), None, raw_text="remote possible")
        assert job.location == "Berlin"

    def test_fields_cleaned(self, store):
        job = EntityResolver(store).resolve_job(
            extracted(title="  Engineer ", description="", qualifications=["Python", " ", " SQL "]),
            Company(company_id=7, name="Acme"),
            source_url="https://Acme.com/jobs/1/?ref=x",
        )
        assert job.title == "Engineer"
        assert job.description == ""
        assert job.qualifications == ["Python", "SQL"]
        assert job.company_id == 7
        assert job.source_url == "https://acme.com/jobs/1"

    def test_dedup_key_left_to_store(self, store):
        job = EntityResolver(store).resolve_job(extracted(), Company(company_id=7, name="Acme"))
        assert job.dedup_key is None


def test_clean_list():
    assert clean_list(None) is None
    assert clean_list([]) == []
    assert clean_list([" a ", "", "b"]) == ["a", "b"]
