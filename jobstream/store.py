"""Record store adapters.

``Store`` is the contract the pipelines and workflows depend on. Two
implementations share the same semantics:

* ``SqlAlchemyStore``: async SQLAlchemy sessions, ``INSERT ... ON CONFLICT DO
  UPDATE`` upserts on natural keys (PostgreSQL or SQLite dialect).
* ``MemoryStore``: dictionaries behind an ``asyncio.Lock`` for tests and local runs.

Upserts are superset merges: incoming non-null values win, nulls keep what is
already stored. Only fields set explicitly on the incoming record are merged;
model defaults apply when a row is first inserted.

Natural keys never change once assigned. A company keeps the key it was
inserted under even after it gains a domain, and a job's key is built from the
stored company id.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import AsyncIterator, Iterable, Protocol, runtime_checkable

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobstream import models
from jobstream.domain import Company, Job, JobApplication, JobStreamEntry, StructuredResume
from jobstream.errors import ErrorKind, StoreError
from jobstream.pipelines.normalization import (
    normalize_domain,
    normalize_location,
    normalize_name,
    normalize_title,
)

logger = logging.getLogger(__name__)

_COMPANY_FIELDS = ("name", "domain", "jobs_url", "linkedin_url", "industry", "size", "description", "headquarters")
_JOB_FIELDS = (
    "company_id", "title", "description", "location", "job_type", "experience_level",
    "education_level", "salary_min", "salary_max", "salary_currency", "qualifications",
    "preferred_qualifications", "responsibilities", "benefits", "category", "source_url",
    "application_url", "status", "posted_date", "closing_date",
)


@dataclass
class SaveOutcome:
    """Result of persisting one resolved (company, job) pair."""
    company: Company | None
    job: Job
    created: bool


def company_dedup_key(company: Company) -> str | None:
    """Natural key of a company: its domain, else its normalized name."""
    domain = normalize_domain(company.domain)
    if domain:
        return domain
    name = normalize_name(company.name)
    if name:
        return f"name:{name}"
    return None


def job_dedup_key(company_id: int | None, title: str, location: str | None) -> str:
    """Natural key of a job: stored company id + normalized title + normalized location."""
    owner = str(company_id) if company_id is not None else "-"
    raw = "|".join([owner, normalize_title(title), normalize_location(location)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@runtime_checkable
class Store(Protocol):
    """Operations the pipelines and workflows need from the record store.

    Every method may raise ``StoreError`` (Unavailable for transient
    failures, Conflict, NotFound).
    """

    async def get_company_by_domain(self, domain: str) -> Company | None: ...

    async def find_companies_by_name(self, name: str) -> list[Company]: ...

    async def list_companies(self, limit: int = 1000) -> list[Company]: ...

    async def get_company(self, company_id: int) -> Company | None: ...

    async def upsert_company(self, company: Company) -> Company: ...

    async def upsert_job(self, job: Job) -> Job: ...

    async def save_resolved(self, company: Company | None, job: Job) -> SaveOutcome: ...

    async def get_job(self, job_id: int) -> Job | None: ...

    async def list_jobs(self) -> list[Job]: ...

    async def find_job_by_source_url(self, source_url: str) -> Job | None: ...

    async def append_stream_entry(self, entry: JobStreamEntry) -> JobStreamEntry: ...

    async def create_application(self, application: JobApplication) -> JobApplication: ...

    async def get_applications_for_user(self, profile_id: str) -> list[JobApplication]: ...

    async def list_tracked_applications(self) -> list[JobApplication]: ...

    async def update_application_status(self, application_id: int, status_order: int) -> bool: ...

    async def update_job_status(self, job_id: int, status: str) -> None: ...

    async def find_companies_by_jobs_host(self, hosts: Iterable[str]) -> list[Company]: ...

    async def save_resume(self, resume: StructuredResume) -> StructuredResume: ...


def _explicit(record: Company | Job) -> dict:
    """Fields the caller set, leaving out model defaults."""
    return record.model_dump(include=record.model_fields_set)


def _owned_by(job: Job, company: Company | None) -> Job:
    """Attach a job to its stored company and key it by that company's id."""
    company_id = company.company_id if company is not None else job.company_id
    return job.model_copy(update={
        "company_id": company_id,
        "dedup_key": job_dedup_key(company_id, job.title, job.location),
    })


def _merge(old: dict, new: dict, fields: Iterable[str]) -> dict:
    merged = dict(old)
    for field in fields:
        value = new.get(field)
        if value is not None:
            merged[field] = value
    return merged


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryStore:
    """Dictionary-backed store; every operation runs under one asyncio lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.companies: dict[int, Company] = {}
        self.jobs: dict[int, Job] = {}
        self.stream: list[JobStreamEntry] = []
        self.applications: dict[int, JobApplication] = {}
        self.resumes: dict[str, StructuredResume] = {}
        self._company_keys: dict[int, str] = {}
        self._ids = {"company": 0, "job": 0, "stream": 0, "application": 0, "resume": 0}

    def _next_id(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]

    def _company_by_key(self, key: str) -> Company | None:
        for company_id, stored_key in self._company_keys.items():
            if stored_key == key:
                return self.companies[company_id]
        return None

    def _upsert_company(self, company: Company) -> Company:
        if company.company_id is not None:
            existing = self.companies.get(company.company_id)
            if existing is None:
                raise StoreError(ErrorKind.NOT_FOUND, f"company {company.company_id} does not exist")
        else:
            key = company_dedup_key(company)
            if key is None:
                raise StoreError(ErrorKind.CONFLICT, "company has neither domain nor name")
            existing = self._company_by_key(key)
        domain = normalize_domain(company.domain)
        if domain:
            for other in self.companies.values():
                if other.domain == domain and (existing is None or other.company_id != existing.company_id):
                    raise StoreError(ErrorKind.CONFLICT, f"domain {domain} belongs to company {other.company_id}")
        if existing is None:
            stored = Company(**{**company.model_dump(), "domain": domain, "company_id": self._next_id("company")})
            self._company_keys[stored.company_id] = key
        else:
            incoming = _explicit(company)
            if "domain" in incoming:
                incoming["domain"] = domain
            stored = Company(**_merge(existing.model_dump(), incoming, _COMPANY_FIELDS))
        self.companies[stored.company_id] = stored
        return stored

    def _upsert_job(self, job: Job) -> tuple[Job, bool]:
        key = job.dedup_key or job_dedup_key(job.company_id, job.title, job.location)
        existing = next((j for j in self.jobs.values() if j.dedup_key == key), None)
        if existing is None:
            stored = job.model_copy(update={"job_id": self._next_id("job"), "dedup_key": key})
            created = True
        else:
            stored = Job(**_merge(existing.model_dump(), _explicit(job), _JOB_FIELDS))
            created = False
        self.jobs[stored.job_id] = stored
        return stored, created

    async def get_company_by_domain(self, domain: str) -> Company | None:
        domain = normalize_domain(domain)
        async with self._lock:
            return next((c for c in self.companies.values() if domain and c.domain == domain), None)

    async def find_companies_by_name(self, name: str) -> list[Company]:
        target = normalize_name(name)
        async with self._lock:
            matches = [c for c in self.companies.values() if target and normalize_name(c.name) == target]
        return sorted(matches, key=lambda c: c.company_id)

    async def list_companies(self, limit: int = 1000) -> list[Company]:
        async with self._lock:
            return sorted(self.companies.values(), key=lambda c: c.company_id)[:limit]

    async def get_company(self, company_id: int) -> Company | None:
        async with self._lock:
            return self.companies.get(company_id)

    async def upsert_company(self, company: Company) -> Company:
        async with self._lock:
            return self._upsert_company(company)

    async def upsert_job(self, job: Job) -> Job:
        async with self._lock:
            stored, _ = self._upsert_job(job)
            return stored

    async def save_resolved(self, company: Company | None, job: Job) -> SaveOutcome:
        async with self._lock:
            # Work on copies so a failure leaves nothing half-written
            companies, jobs, ids = dict(self.companies), dict(self.jobs), dict(self._ids)
            company_keys = dict(self._company_keys)
            try:
                stored_company = None
                if company is not None:
                    stored_company = self._upsert_company(company)
                stored_job, created = self._upsert_job(_owned_by(job, stored_company))
            except Exception:
                self.companies, self.jobs, self._ids = companies, jobs, ids
                self._company_keys = company_keys
                raise
            return SaveOutcome(company=stored_company, job=stored_job, created=created)

    async def get_job(self, job_id: int) -> Job | None:
        async with self._lock:
            return self.jobs.get(job_id)

    async def list_jobs(self) -> list[Job]:
        async with self._lock:
            return sorted(self.jobs.values(), key=lambda j: j.job_id)

    async def find_job_by_source_url(self, source_url: str) -> Job | None:
        async with self._lock:
            return next((j for j in self.jobs.values() if j.source_url == source_url), None)

    async def append_stream_entry(self, entry: JobStreamEntry) -> JobStreamEntry:
        async with self._lock:
            if entry.job_id not in self.jobs:
                raise StoreError(ErrorKind.NOT_FOUND, f"job {entry.job_id} does not exist")
            stored = entry.model_copy(update={"stream_id": self._next_id("stream")})
            self.stream.append(stored)
            return stored

    async def create_application(self, application: JobApplication) -> JobApplication:
        async with self._lock:
            if application.job_id is not None:
                if application.job_id not in self.jobs:
                    raise StoreError(ErrorKind.NOT_FOUND, f"job {application.job_id} does not exist")
                existing = next(
                    (a for a in self.applications.values()
                     if a.job_id == application.job_id and a.profile_id == application.profile_id),
                    None,
                )
                if existing is not None:
                    return existing
            stored = application.model_copy(update={
                "application_id": self._next_id("application"),
                "application_date": application.application_date or date.today().isoformat(),
            })
            self.applications[stored.application_id] = stored
            return stored

    async def get_applications_for_user(self, profile_id: str) -> list[JobApplication]:
        async with self._lock:
            return [a for a in self.applications.values() if a.profile_id == profile_id]

    async def list_tracked_applications(self) -> list[JobApplication]:
        async with self._lock:
            return [a for a in self.applications.values() if a.job_id is not None]

    async def update_application_status(self, application_id: int, status_order: int) -> bool:
        async with self._lock:
            current = self.applications.get(application_id)
            if current is None:
                raise StoreError(ErrorKind.NOT_FOUND, f"application {application_id} does not exist")
            if status_order <= current.status_order:
                return False
            self.applications[application_id] = current.model_copy(update={"status_order": status_order})
            return True

    async def update_job_status(self, job_id: int, status: str) -> None:
        async with self._lock:
            current = self.jobs.get(job_id)
            if current is None:
                raise StoreError(ErrorKind.NOT_FOUND, f"job {job_id} does not exist")
            self.jobs[job_id] = current.model_copy(update={"status": status})

    async def find_companies_by_jobs_host(self, hosts: Iterable[str]) -> list[Company]:
        hosts = list(hosts)
        async with self._lock:
            return [
                c for c in sorted(self.companies.values(), key=lambda c: c.company_id)
                if c.jobs_url and any(h in c.jobs_url.lower() for h in hosts)
            ]

    async def save_resume(self, resume: StructuredResume) -> StructuredResume:
        async with self._lock:
            existing = self.resumes.get(resume.file_id)
            resume_id = existing.resume_id if existing else self._next_id("resume")
            stored = resume.model_copy(update={"resume_id": resume_id, "parsed_at": resume.parsed_at or datetime.utcnow()})
            self.resumes[resume.file_id] = stored
            return stored


# ---------------------------------------------------------------------------
# SQLAlchemy store
# ---------------------------------------------------------------------------


def _company_from_row(row: models.Company) -> Company:
    return Company(
        company_id=row.id,
        name=row.name,
        domain=row.domain,
        jobs_url=row.jobs_url,
        linkedin_url=row.linkedin_url,
        industry=row.industry,
        size=row.size,
        description=row.description,
        headquarters=row.headquarters,
    )


def _job_from_row(row: models.Job) -> Job:
    return Job(
        job_id=row.id,
        dedup_key=row.dedup_key,
        **{field: getattr(row, field) for field in _JOB_FIELDS},
    )


def _application_from_row(row: models.JobApplication) -> JobApplication:
    return JobApplication(
        application_id=row.id,
        job_id=row.job_id,
        profile_id=row.profile_id,
        status_id=row.status_id,
        status_order=row.status_order,
        application_date=row.application_date,
        notes=row.notes,
    )


class SqlAlchemyStore:
    """Store backed by an async SQLAlchemy engine (PostgreSQL or SQLite)."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], engine: AsyncEngine | None = None) -> None:
        self._sessionmaker = sessionmaker
        bind = engine or sessionmaker.kw.get("bind")
        self._dialect = bind.dialect.name if bind is not None else "postgresql"

    def _insert(self, table):
        if self._dialect == "sqlite":
            return sqlite.insert(table)
        return postgresql.insert(table)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One session and one transaction; driver errors become StoreError."""
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except StoreError:
            raise
        except IntegrityError as e:
            raise StoreError(ErrorKind.CONFLICT, f"constraint violated: {e.orig}") from e
        except (OperationalError, PoolTimeoutError, OSError) as e:
            raise StoreError(ErrorKind.UNAVAILABLE, f"database unavailable: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreError(ErrorKind.UNAVAILABLE, f"connection lost: {e}") from e
            raise StoreError(ErrorKind.CONFLICT, f"database rejected statement: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreError(ErrorKind.UNAVAILABLE, f"database error: {e}") from e

    async def _upsert_company(self, session: AsyncSession, company: Company) -> Company:
        values = {field: getattr(company, field) for field in _COMPANY_FIELDS}
        values["domain"] = normalize_domain(company.domain)
        values["name_normalized"] = normalize_name(company.name)
        table = models.Company.__table__

        explicit = company.model_fields_set | {"name_normalized"}
        if company.company_id is not None:
            merge = {k: v for k, v in values.items() if v is not None and k in explicit}
            merge["updated_at"] = datetime.utcnow()
            result = await session.execute(
                update(table).where(table.c.id == company.company_id).values(**merge).returning(table.c.id)
            )
            company_id = result.scalar_one_or_none()
            if company_id is None:
                raise StoreError(ErrorKind.NOT_FOUND, f"company {company.company_id} does not exist")
        else:
            key = company_dedup_key(company)
            if key is None:
                raise StoreError(ErrorKind.CONFLICT, "company has neither domain nor name")
            now = datetime.utcnow()
            stmt = self._insert(table).values(dedup_key=key, created_at=now, updated_at=now, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.dedup_key],
                set_={
                    **{k: func.coalesce(stmt.excluded[k], table.c[k]) for k in values if k in explicit},
                    "updated_at": now,
                },
            ).returning(table.c.id)
            company_id = (await session.execute(stmt)).scalar_one()

        row = await session.get(models.Company, company_id, populate_existing=True)
        return _company_from_row(row)

    async def _upsert_job(self, session: AsyncSession, job: Job) -> tuple[Job, bool]:
        key = job.dedup_key or job_dedup_key(job.company_id, job.title, job.location)
        table = models.Job.__table__
        existing_id = (
            await session.execute(select(table.c.id).where(table.c.dedup_key == key))
        ).scalar_one_or_none()

        # Defaults are written on insert only; the merge takes explicit fields
        values = {field: getattr(job, field) for field in _JOB_FIELDS}
        now = datetime.utcnow()
        stmt = self._insert(table).values(dedup_key=key, created_at=now, updated_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.dedup_key],
            set_={
                **{k: func.coalesce(stmt.excluded[k], table.c[k]) for k in values if k in job.model_fields_set},
                "updated_at": now,
            },
        ).returning(table.c.id)
        job_id = (await session.execute(stmt)).scalar_one()
        row = await session.get(models.Job, job_id, populate_existing=True)
        return _job_from_row(row), existing_id is None

    async def get_company_by_domain(self, domain: str) -> Company | None:
        domain = normalize_domain(domain)
        if not domain:
            return None
        async with self._transaction() as session:
            row = (await session.execute(
                select(models.Company).where(models.Company.domain == domain)
            )).scalar_one_or_none()
            return _company_from_row(row) if row else None

    async def find_companies_by_name(self, name: str) -> list[Company]:
        target = normalize_name(name)
        if not target:
            return []
        async with self._transaction() as session:
            rows = (await session.execute(
                select(models.Company).where(models.Company.name_normalized == target).order_by(models.Company.id)
            )).scalars().all()
            return [_company_from_row(r) for r in rows]

    async def list_companies(self, limit: int = 1000) -> list[Company]:
        async with self._transaction() as session:
            rows = (await session.execute(
                select(models.Company).order_by(models.Company.id).limit(limit)
            )).scalars().all()
            return [_company_from_row(r) for r in rows]

    async def get_company(self, company_id: int) -> Company | None:
        async with self._transaction() as session:
            row = await session.get(models.Company, company_id)
            return _company_from_row(row) if row else None

    async def upsert_company(self, company: Company) -> Company:
        async with self._transaction() as session:
            return await self._upsert_company(session, company)

    async def upsert_job(self, job: Job) -> Job:
        async with self._transaction() as session:
            stored, _ = await self._upsert_job(session, job)
            return stored

    async def save_resolved(self, company: Company | None, job: Job) -> SaveOutcome:
        async with self._transaction() as session:
            stored_company = None
            if company is not None:
                stored_company = await self._upsert_company(session, company)
            stored_job, created = await self._upsert_job(session, _owned_by(job, stored_company))
            return SaveOutcome(company=stored_company, job=stored_job, created=created)

    async def get_job(self, job_id: int) -> Job | None:
        async with self._transaction() as session:
            row = await session.get(models.Job, job_id)
            return _job_from_row(row) if row else None

    async def list_jobs(self) -> list[Job]:
        async with self._transaction() as session:
            rows = (await session.execute(select(models.Job).order_by(models.Job.id))).scalars().all()
            return [_job_from_row(r) for r in rows]

    async def find_job_by_source_url(self, source_url: str) -> Job | None:
        async with self._transaction() as session:
            row = (await session.execute(
                select(models.Job).where(models.Job.source_url == source_url).order_by(models.Job.id).limit(1)
            )).scalar_one_or_none()
            return _job_from_row(row) if row else None

    async def append_stream_entry(self, entry: JobStreamEntry) -> JobStreamEntry:
        async with self._transaction() as session:
            row = models.JobStreamEntry(
                job_id=entry.job_id,
                profile_id=entry.profile_id,
                source=entry.source,
                status=entry.status,
            )
            session.add(row)
            await session.flush()
            return entry.model_copy(update={"stream_id": row.id})

    async def create_application(self, application: JobApplication) -> JobApplication:
        async with self._transaction() as session:
            if application.job_id is not None:
                if await session.get(models.Job, application.job_id) is None:
                    raise StoreError(ErrorKind.NOT_FOUND, f"job {application.job_id} does not exist")
                existing = (await session.execute(
                    select(models.JobApplication)
                    .where(
                        models.JobApplication.job_id == application.job_id,
                        models.JobApplication.profile_id == application.profile_id,
                    )
                    .order_by(models.JobApplication.id)
                    .limit(1)
                )).scalar_one_or_none()
                if existing is not None:
                    return _application_from_row(existing)
            row = models.JobApplication(
                job_id=application.job_id,
                profile_id=application.profile_id,
                status_id=application.status_id,
                status_order=application.status_order,
                application_date=application.application_date or date.today().isoformat(),
                notes=application.notes,
            )
            session.add(row)
            await session.flush()
            return _application_from_row(row)

    async def get_applications_for_user(self, profile_id: str) -> list[JobApplication]:
        async with self._transaction() as session:
            rows = (await session.execute(
                select(models.JobApplication)
                .where(models.JobApplication.profile_id == profile_id)
                .order_by(models.JobApplication.id)
            )).scalars().all()
            return [_application_from_row(r) for r in rows]

    async def list_tracked_applications(self) -> list[JobApplication]:
        async with self._transaction() as session:
            rows = (await session.execute(
                select(models.JobApplication)
                .where(models.JobApplication.job_id.is_not(None))
                .order_by(models.JobApplication.id)
            )).scalars().all()
            return [_application_from_row(r) for r in rows]

    async def update_application_status(self, application_id: int, status_order: int) -> bool:
        async with self._transaction() as session:
            # Guarded in SQL too: a concurrent writer can never move it backward
            result = await session.execute(
                update(models.JobApplication)
                .where(
                    models.JobApplication.id == application_id,
                    models.JobApplication.status_order < status_order,
                )
                .values(status_order=status_order, updated_at=datetime.utcnow())
            )
            if result.rowcount:
                return True
            exists = await session.get(models.JobApplication, application_id)
            if exists is None:
                raise StoreError(ErrorKind.NOT_FOUND, f"application {application_id} does not exist")
            return False

    async def update_job_status(self, job_id: int, status: str) -> None:
        async with self._transaction() as session:
            result = await session.execute(
                update(models.Job).where(models.Job.id == job_id).values(status=status, updated_at=datetime.utcnow())
            )
            if not result.rowcount:
                raise StoreError(ErrorKind.NOT_FOUND, f"job {job_id} does not exist")

    async def find_companies_by_jobs_host(self, hosts: Iterable[str]) -> list[Company]:
        hosts = list(hosts)
        if not hosts:
            return []
        async with self._transaction() as session:
            rows = (await session.execute(
                select(models.Company)
                .where(or_(*[models.Company.jobs_url.ilike(f"%{h}%") for h in hosts]))
                .order_by(models.Company.id)
            )).scalars().all()
            return [_company_from_row(r) for r in rows]

    async def save_resume(self, resume: StructuredResume) -> StructuredResume:
        table = models.Resume.__table__
        parsed_at = resume.parsed_at or datetime.utcnow()
        values = {
            "profile_id": resume.profile_id,
            "file_id": resume.file_id,
            "resume_data": resume.to_json_dict(),
            "raw_text": resume.raw_text,
            "parsed_at": parsed_at,
        }
        async with self._transaction() as session:
            stmt = self._insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.file_id],
                set_={k: stmt.excluded[k] for k in ("resume_data", "raw_text", "parsed_at")},
            ).returning(table.c.id)
            resume_id = (await session.execute(stmt)).scalar_one()
        return resume.model_copy(update={"resume_id": resume_id, "parsed_at": parsed_at})
