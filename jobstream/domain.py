"""Domain records: companies, jobs, extraction payloads, stream entries, applications.

Optional fields are ``None`` when absent; an empty string is a real value and
survives serialization untouched.
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_SALARY_CURRENCY = "USD"


class _Record(BaseModel):
    """Base for records exchanged with the model and the store.

    Accepts both snake_case and camelCase keys so model output in either style
    validates.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Company(_Record):
    """A hiring company. ``domain`` is the preferred identity."""
    company_id: int | None = None
    name: str | None = None
    domain: str | None = None
    jobs_url: str | None = None
    linkedin_url: str | None = None
    industry: str | None = None
    size: str | None = None
    description: str | None = None
    headquarters: str | None = None

    @classmethod
    def from_domain(cls, domain: str, *, name: str | None = None) -> Company:
        return cls(domain=domain, name=name)

    @classmethod
    def from_name(cls, name: str) -> Company:
        return cls(name=name)


class JobStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class Job(_Record):
    """A job posting as stored. ``company_id`` is None for orphaned jobs.

    ``salary_currency`` and ``status`` carry defaults for new records. Only
    fields set explicitly take part in a merge, so a default never overwrites
    a stored value.
    """
    job_id: int | None = None
    company_id: int | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    job_type: str | None = None
    experience_level: str | None = None
    education_level: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    salary_currency: str | None = DEFAULT_SALARY_CURRENCY
    qualifications: list[str] | None = None
    preferred_qualifications: list[str] | None = None
    responsibilities: list[str] | None = None
    benefits: list[str] | None = None
    category: str | None = None
    source_url: str | None = None
    application_url: str | None = None
    status: str | None = JobStatus.ACTIVE.value
    posted_date: str | None = None
    closing_date: str | None = None
    dedup_key: str | None = None


class ExtractedJobData(_Record):
    """Structured job data as returned by the extraction model.

    Never persisted directly; the resolver turns it into a Job/Company pair.
    Optional fields that fail validation are dropped rather than failing the
    whole record.
    """
    title: str
    company_name: str | None = None
    description: str | None = None
    location: str | None = None
    job_type: str | None = None
    experience_level: str | None = None
    education_level: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    salary_currency: str | None = None
    qualifications: list[str] | None = None
    preferred_qualifications: list[str] | None = None
    responsibilities: list[str] | None = None
    benefits: list[str] | None = None
    category: str | None = None
    application_url: str | None = None
    is_remote: bool | None = None
    posted_date: str | None = None
    closing_date: str | None = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("title must not be blank")
        return v

    @field_validator(
        "company_name", "description", "location", "job_type", "experience_level",
        "education_level", "salary_min", "salary_max", "salary_currency", "qualifications",
        "preferred_qualifications", "responsibilities", "benefits", "category",
        "application_url", "is_remote", "posted_date", "closing_date",
        mode="wrap",
    )
    @classmethod
    def drop_unusable(cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo) -> Any:
        try:
            return handler(value)
        except ValidationError as e:
            logger.warning(
                f"Dropping unusable {info.field_name} from extraction: {value!r}",
                extra={"field": info.field_name, "errors": e.error_count()},
            )
            return None

    @classmethod
    def minimal(cls, title: str) -> ExtractedJobData:
        """Degraded record when only the title is known."""
        return cls(title=title)


class ExtractedCompanyData(_Record):
    """Company details inferred by the extraction model from a posting."""
    name: str | None = None
    domain: str | None = None
    industry: str | None = None
    size: str | None = None
    description: str | None = None
    headquarters: str | None = None
    website_url: str | None = None
    jobs_url: str | None = None


class ContactInfo(_Record):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    linked_in: str | None = None
    github: str | None = None
    portfolio: str | None = None


class SummaryInfo(_Record):
    headline: str | None = None
    summary: str | None = None


class WorkExperience(_Record):
    id: str | None = None
    company: str | None = None
    title: str | None = None
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    current: bool | None = None
    highlights: list[str] | None = None


class Education(_Record):
    id: str | None = None
    institution: str | None = None
    degree: str | None = None
    field: str | None = None
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    current: bool | None = None
    gpa: str | None = None
    honors: str | None = None
    coursework: list[str] | None = None


class SkillCategory(_Record):
    id: str | None = None
    name: str | None = None
    skills: list[str] | None = None


class SkillsData(_Record):
    categories: list[SkillCategory] | None = None


class Project(_Record):
    id: str | None = None
    name: str | None = None
    description: str | None = None
    url: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    current: bool | None = None
    technologies: list[str] | None = None
    highlights: list[str] | None = None


class Certification(_Record):
    id: str | None = None
    name: str | None = None
    issuer: str | None = None
    issue_date: str | None = None
    expiration_date: str | None = None
    credential_id: str | None = None
    credential_url: str | None = None
    no_expiration: bool | None = None


class LanguageEntry(_Record):
    id: str | None = None
    language: str | None = None
    proficiency: str | None = None


class LanguagesData(_Record):
    entries: list[LanguageEntry] | None = None


class VolunteerExperience(_Record):
    id: str | None = None
    organization: str | None = None
    role: str | None = None
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    current: bool | None = None
    highlights: list[str] | None = None


class Award(_Record):
    id: str | None = None
    title: str | None = None
    issuer: str | None = None
    date: str | None = None
    description: str | None = None


class CustomSection(_Record):
    title: str
    content: str | None = None
    items: list[str] | None = None


class ExtractedResumeData(_Record):
    """Structured résumé data as returned by the extraction model."""
    contact: ContactInfo | None = None
    summary: SummaryInfo | None = None
    experience: list[WorkExperience] | None = None
    education: list[Education] | None = None
    skills: SkillsData | None = None
    projects: list[Project] | None = None
    certifications: list[Certification] | None = None
    languages: LanguagesData | None = None
    volunteer: list[VolunteerExperience] | None = None
    awards: list[Award] | None = None
    custom_sections: list[CustomSection] | None = None

    @classmethod
    def empty(cls) -> ExtractedResumeData:
        return cls()


class JobStreamEntry(_Record):
    """One occurrence of a job surfaced to one profile."""
    stream_id: int | None = None
    job_id: int
    profile_id: str
    source: str
    status: str | None = "new"


class JobApplication(_Record):
    """A profile's application to a job. ``status_order`` only moves forward."""
    application_id: int | None = None
    job_id: int | None = None
    profile_id: str
    status_id: int | None = None
    status_order: int = 0
    application_date: str | None = None
    notes: str | None = None


class RawPosting(_Record):
    """Unstructured posting input for the job ingestion pipeline.

    Either ``text`` or ``url`` is required. With only a URL the page is
    fetched, unless a job from that URL is already stored.
    """
    text: str | None = None
    url: str | None = None
    company_domain: str | None = None
    title_hint: str | None = None
    source: str = "manual"
    profile_id: str | None = None
    create_application: bool = False
    notes: str | None = None

    @model_validator(mode="after")
    def check_inputs(self) -> RawPosting:
        if not self.text and not self.url:
            raise ValueError("either text or url is required")
        if self.create_application and not self.profile_id:
            raise ValueError("create_application requires profile_id")
        return self


class ResumeDocumentRef(_Record):
    """Pointer to a raw résumé document held in object storage."""
    file_id: str
    profile_id: str
    filename: str | None = None
    content_type: str | None = None


class StructuredResume(_Record):
    """A parsed and normalized résumé."""
    resume_id: int | None = None
    profile_id: str
    file_id: str
    data: ExtractedResumeData
    raw_text: str | None = None
    parsed_at: datetime | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.data.model_dump(mode="json", by_alias=True, exclude_none=True)
